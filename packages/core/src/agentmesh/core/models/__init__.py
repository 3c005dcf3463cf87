"""AgentMesh Core Domain Models -- 公共类型导出

所有公共模型类型从此入口导入。
"""

from .agent import (
    AgentDefinition,
    AgentDescriptor,
    AgentGraph,
    AgentNode,
    ProjectDefinition,
    ToolDefinition,
    ToolHealth,
    ToolRef,
)
from .enums import (
    TERMINAL_EVENT_TYPES,
    TERMINAL_STATES,
    VALID_TRANSITIONS,
    ActorType,
    PartType,
    StreamEventType,
    TaskStatus,
    ToolHealthStatus,
    validate_transition,
)
from .event import StreamEvent
from .message import MessagePart, TaskInput
from .payloads import (
    DelegateResultPayload,
    DelegateStartPayload,
    ErrorPayload,
    FinalPayload,
    TokenPayload,
    ToolCallPayload,
    ToolResultPayload,
    TransferPayload,
)
from .task import Task, TaskError, TaskResult

__all__ = [
    # 枚举
    "TaskStatus",
    "StreamEventType",
    "ActorType",
    "ToolHealthStatus",
    "PartType",
    # 状态机
    "VALID_TRANSITIONS",
    "TERMINAL_STATES",
    "TERMINAL_EVENT_TYPES",
    "validate_transition",
    # Task
    "Task",
    "TaskError",
    "TaskResult",
    "TaskInput",
    "MessagePart",
    # Event
    "StreamEvent",
    # Agent Graph
    "ProjectDefinition",
    "AgentDefinition",
    "ToolDefinition",
    "AgentGraph",
    "AgentNode",
    "AgentDescriptor",
    "ToolRef",
    "ToolHealth",
    # Payloads
    "TokenPayload",
    "ToolCallPayload",
    "ToolResultPayload",
    "TransferPayload",
    "DelegateStartPayload",
    "DelegateResultPayload",
    "FinalPayload",
    "ErrorPayload",
]
