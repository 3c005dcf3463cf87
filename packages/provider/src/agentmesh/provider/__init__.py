"""AgentMesh Provider -- 模型推理能力抽象层

packages/provider 的公开接口导出。
"""

# 数据模型
from .alias import AliasConfig, AliasRegistry, load_alias_registry

# 核心组件
from .client import LiteLLMClient

# 配置
from .config import ProviderConfig, load_provider_config
from .cost import CostTracker, StreamSummary, UsageTotals
from .echo_adapter import EchoMessageAdapter

# 异常
from .exceptions import ProviderError, ProxyUnreachableError
from .fallback import FallbackManager
from .models import ModelCallResult, ModelChunk, TokenUsage, ToolCallRequest

__all__ = [
    "ModelCallResult",
    "ModelChunk",
    "TokenUsage",
    "ToolCallRequest",
    "LiteLLMClient",
    "AliasConfig",
    "AliasRegistry",
    "load_alias_registry",
    "CostTracker",
    "StreamSummary",
    "UsageTotals",
    "FallbackManager",
    "EchoMessageAdapter",
    "ProviderConfig",
    "load_provider_config",
    "ProviderError",
    "ProxyUnreachableError",
]
