"""EngineConfig -- 执行引擎配置加载

从环境变量加载各类上限、重试、TTL 与超时参数。
非法值记录 warning 并回退到默认值，不阻塞启动。
"""

import os

import structlog
from pydantic import BaseModel, Field

log = structlog.get_logger()


class EngineConfig(BaseModel):
    """执行引擎配置

    环境变量:
        AGENTMESH_MAX_TRANSFERS: 单任务 transfer 次数上限（默认 10）
        AGENTMESH_MAX_STEPS: 单任务模型轮次上限（默认 20）
        AGENTMESH_MAX_DELEGATION_DEPTH: 委派深度上限（默认 5）
        AGENTMESH_INFERENCE_MAX_ATTEMPTS: 推理最大尝试次数（默认 3）
        AGENTMESH_INFERENCE_BACKOFF_S: 推理重试初始退避（秒，默认 0.5）
        AGENTMESH_TOOL_HEALTH_TTL_S: 工具健康检查缓存 TTL（秒，默认 30）
        AGENTMESH_TOOL_TIMEOUT_S: 工具调用超时（秒，默认 30）
        AGENTMESH_STREAM_IDLE_TIMEOUT_S: StreamChannel 空闲超时（秒，默认 120）
    """

    max_transfers: int = Field(default=10, ge=0, description="单任务 transfer 次数上限")
    max_steps: int = Field(default=20, ge=1, description="单任务模型轮次上限")
    max_delegation_depth: int = Field(default=5, ge=0, description="委派深度上限")
    inference_max_attempts: int = Field(default=3, ge=1, description="推理最大尝试次数")
    inference_backoff_s: float = Field(default=0.5, ge=0.0, description="推理重试初始退避")
    inference_backoff_max_s: float = Field(default=10.0, ge=0.0, description="推理重试退避上限")
    tool_health_ttl_s: float = Field(default=30.0, gt=0.0, description="工具健康缓存 TTL")
    tool_timeout_s: float = Field(default=30.0, gt=0.0, description="工具调用超时")
    stream_idle_timeout_s: float = Field(default=120.0, gt=0.0, description="流空闲超时")


# 环境变量 -> (字段名, 类型)
_ENV_MAPPING: dict[str, tuple[str, type]] = {
    "AGENTMESH_MAX_TRANSFERS": ("max_transfers", int),
    "AGENTMESH_MAX_STEPS": ("max_steps", int),
    "AGENTMESH_MAX_DELEGATION_DEPTH": ("max_delegation_depth", int),
    "AGENTMESH_INFERENCE_MAX_ATTEMPTS": ("inference_max_attempts", int),
    "AGENTMESH_INFERENCE_BACKOFF_S": ("inference_backoff_s", float),
    "AGENTMESH_TOOL_HEALTH_TTL_S": ("tool_health_ttl_s", float),
    "AGENTMESH_TOOL_TIMEOUT_S": ("tool_timeout_s", float),
    "AGENTMESH_STREAM_IDLE_TIMEOUT_S": ("stream_idle_timeout_s", float),
}


def load_engine_config() -> EngineConfig:
    """从环境变量加载 EngineConfig

    Returns:
        EngineConfig 实例
    """
    defaults = EngineConfig()
    kwargs: dict = {}

    for env_var, (field_name, cast) in _ENV_MAPPING.items():
        val = os.environ.get(env_var)
        if not val:
            continue
        fallback = getattr(defaults, field_name)
        try:
            parsed = cast(val)
            # 复用字段约束校验
            EngineConfig(**{field_name: parsed})
        except ValueError:
            log.warning(
                "invalid_engine_config",
                env_var=env_var,
                value=val,
                fallback=fallback,
            )
            continue
        kwargs[field_name] = parsed

    return EngineConfig(**kwargs)
