"""ProviderConfig -- Provider 配置加载

从环境变量加载配置，不硬编码 provider/模型名。
"""

import os
from collections.abc import Callable
from typing import Any, Literal

import structlog
from pydantic import BaseModel, Field, SecretStr

log = structlog.get_logger()

_TRUE_VALUES = {"1", "true", "yes", "on"}


class ProviderConfig(BaseModel):
    """Provider 包配置 -- 从环境变量加载

    环境变量:
        LITELLM_PROXY_URL: Proxy 地址（默认 http://localhost:4000）
        LITELLM_PROXY_KEY: Proxy 访问密钥
        AGENTMESH_LLM_MODE: LLM 运行模式（litellm/echo）
        AGENTMESH_LLM_TIMEOUT_S: 调用超时（秒，默认 30）
        AGENTMESH_LLM_ECHO_FALLBACK: Proxy 不可达时是否降级为 echo（默认 false）
    """

    proxy_base_url: str = Field(
        default="http://localhost:4000",
        description="LiteLLM Proxy 基础 URL",
    )
    proxy_api_key: SecretStr = Field(
        default=SecretStr(""),
        description="Proxy 访问密钥（不是 LLM provider API key）",
    )
    llm_mode: Literal["litellm", "echo"] = Field(
        default="litellm",
        description="LLM 运行模式：litellm / echo",
    )
    timeout_s: int = Field(
        default=30,
        ge=1,
        description="LLM 调用超时（秒）",
    )
    echo_fallback: bool = Field(
        default=False,
        description="litellm 模式下 Proxy 不可达时降级为 echo 回声",
    )


def _parse_bool(val: str) -> bool:
    return val.strip().lower() in _TRUE_VALUES


# 环境变量 -> (字段名, 解析函数)
_ENV_MAPPING: dict[str, tuple[str, Callable[[str], Any]]] = {
    "LITELLM_PROXY_URL": ("proxy_base_url", str),
    "LITELLM_PROXY_KEY": ("proxy_api_key", SecretStr),
    "AGENTMESH_LLM_MODE": ("llm_mode", str),
    "AGENTMESH_LLM_TIMEOUT_S": ("timeout_s", int),
    "AGENTMESH_LLM_ECHO_FALLBACK": ("echo_fallback", _parse_bool),
}


def load_provider_config() -> ProviderConfig:
    """从环境变量加载；非法值记录 warning 并保留默认值，不阻塞启动"""
    defaults = ProviderConfig()
    kwargs: dict[str, Any] = {}

    for env_var, (field_name, parse) in _ENV_MAPPING.items():
        val = os.environ.get(env_var)
        if not val:
            continue
        try:
            parsed = parse(val)
            ProviderConfig(**{field_name: parsed})
        except ValueError:
            log.warning(
                "invalid_provider_config",
                env_var=env_var,
                value=val,
                fallback=getattr(defaults, field_name),
            )
            continue
        kwargs[field_name] = parsed

    return ProviderConfig(**kwargs)
