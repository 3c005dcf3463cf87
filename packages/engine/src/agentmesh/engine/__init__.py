"""AgentMesh Engine -- agent 图任务执行引擎

packages/engine 的公开接口导出。
"""

from .config import EngineConfig, load_engine_config
from .context import (
    TASK_ID_GRAMMAR_VERSION,
    build_task_id,
    derive_context,
    derive_or_start,
    has_explicit_conversation,
    is_explicit_conversation_id,
    new_conversation_id,
    new_turn_suffix,
    propagate,
)
from .directives import (
    DelegateDirective,
    Directive,
    FinalAnswer,
    ToolCallDirective,
    TransferDirective,
    final_answer,
    parse_directive,
)
from .graph import (
    DELEGATE_TOOL_PREFIX,
    TRANSFER_TOOL_PREFIX,
    AgentGraphCache,
    AgentGraphResolver,
    GraphSource,
    InMemoryGraphSource,
    JsonDirectoryGraphSource,
    build_graph,
)
from .loop import InferenceClient, TaskExecutionLoop
from .recorder import TaskEventRecorder
from .router import Delegate, DelegationRouter, Handle, RouteDecision, Transfer
from .streams import STREAM_IDLE_TIMEOUT_CODE, StreamAffinityRegistry, StreamChannel
from .tools import (
    CredentialResolver,
    EnvCredentialResolver,
    HttpToolBackend,
    LocalToolBackend,
    StaticCredentialResolver,
    ToolInvoker,
    ToolResult,
)

__all__ = [
    # 配置
    "EngineConfig",
    "load_engine_config",
    # 会话上下文
    "TASK_ID_GRAMMAR_VERSION",
    "build_task_id",
    "derive_context",
    "derive_or_start",
    "has_explicit_conversation",
    "is_explicit_conversation_id",
    "new_conversation_id",
    "new_turn_suffix",
    "propagate",
    # directive / 路由
    "Directive",
    "ToolCallDirective",
    "TransferDirective",
    "DelegateDirective",
    "FinalAnswer",
    "final_answer",
    "parse_directive",
    "DelegationRouter",
    "RouteDecision",
    "Handle",
    "Transfer",
    "Delegate",
    # Agent Graph
    "TRANSFER_TOOL_PREFIX",
    "DELEGATE_TOOL_PREFIX",
    "GraphSource",
    "InMemoryGraphSource",
    "JsonDirectoryGraphSource",
    "AgentGraphResolver",
    "AgentGraphCache",
    "build_graph",
    # 工具
    "ToolInvoker",
    "ToolResult",
    "LocalToolBackend",
    "HttpToolBackend",
    "CredentialResolver",
    "StaticCredentialResolver",
    "EnvCredentialResolver",
    # 流
    "StreamChannel",
    "StreamAffinityRegistry",
    "STREAM_IDLE_TIMEOUT_CODE",
    # 执行
    "TaskEventRecorder",
    "TaskExecutionLoop",
    "InferenceClient",
]
