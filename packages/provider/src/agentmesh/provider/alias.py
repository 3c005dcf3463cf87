"""AliasRegistry -- agent model_alias -> Proxy model_name 解析

AgentDefinition.model_alias 是语义名（triage / specialist ...），
部署时通过 AGENTMESH_MODEL_ALIASES 覆盖映射，无需改动 agent 图配置。
"""

import os

import structlog
from pydantic import BaseModel, Field

log = structlog.get_logger()

# Proxy 侧已配置的 model_name
KNOWN_RUNTIME_GROUPS = frozenset({"cheap", "main", "fallback"})

ALIASES_ENV = "AGENTMESH_MODEL_ALIASES"


class AliasConfig(BaseModel):
    """单个语义 alias

    category 用于成本归因，runtime_group 即 Proxy model_name。
    """

    name: str = Field(description="语义 alias 名称")
    runtime_group: str = Field(default="main", description="Proxy model_name")
    category: str = Field(default="main", description="成本归因分类")
    description: str = Field(default="")


DEFAULT_ALIASES: tuple[AliasConfig, ...] = (
    AliasConfig(name="triage", runtime_group="cheap", category="cheap", description="入口分诊 / transfer 决策"),
    AliasConfig(name="summarizer", runtime_group="cheap", category="cheap", description="委派结果摘要"),
    AliasConfig(name="specialist", description="专业 agent 作答"),
    AliasConfig(name="planner", description="多步规划与委派"),
)


class AliasRegistry:
    """启动时构建，运行期间只读；同名 alias 后者覆盖前者"""

    def __init__(self, aliases: list[AliasConfig] | tuple[AliasConfig, ...] | None = None) -> None:
        self._aliases: dict[str, AliasConfig] = {
            a.name: a for a in (DEFAULT_ALIASES if aliases is None else aliases)
        }

    @property
    def aliases(self) -> list[AliasConfig]:
        return sorted(self._aliases.values(), key=lambda a: a.name)

    def get_alias(self, alias: str) -> AliasConfig | None:
        return self._aliases.get(alias)

    def resolve(self, alias: str) -> str:
        """alias -> runtime group

        注册的 alias 取其 runtime_group；运行时 group 名直接透传；
        其余一律回落到 "main" 并记录 warning。
        """
        config = self._aliases.get(alias)
        if config is not None:
            return config.runtime_group
        if alias in KNOWN_RUNTIME_GROUPS:
            return alias
        log.warning("unknown_alias_fallback_to_main", alias=alias)
        return "main"


def parse_alias_overrides(raw: str) -> list[AliasConfig]:
    """"triage=main, reviewer=cheap" -> [AliasConfig, ...]

    格式错误的条目记录 warning 后跳过。
    """
    overrides: list[AliasConfig] = []
    for entry in raw.split(","):
        entry = entry.strip()
        if not entry:
            continue
        name, sep, group = (part.strip() for part in entry.partition("="))
        if not sep or not name or not group:
            log.warning("invalid_alias_override", entry=entry, env_var=ALIASES_ENV)
            continue
        if group not in KNOWN_RUNTIME_GROUPS:
            log.warning("alias_override_unknown_group", alias=name, runtime_group=group)
        overrides.append(AliasConfig(name=name, runtime_group=group, category=group))
    return overrides


def load_alias_registry() -> AliasRegistry:
    """默认 alias + AGENTMESH_MODEL_ALIASES 覆盖"""
    raw = os.environ.get(ALIASES_ENV, "")
    overrides = parse_alias_overrides(raw) if raw else []
    if overrides:
        log.info("alias_overrides_loaded", aliases={a.name: a.runtime_group for a in overrides})
    return AliasRegistry([*DEFAULT_ALIASES, *overrides])
