"""Agent Graph Domain Models

ProjectDefinition 是配置存储提供的原始定义（可能非法），
AgentGraph 是经 resolver 校验后的只读内存图，解析后不可变，可无锁共享。
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from .enums import ToolHealthStatus

# agent / tool 标识需能直接拼进模型的 function name
IDENTIFIER_PATTERN = r"^[A-Za-z0-9_-]{1,48}$"


class ToolDefinition(BaseModel):
    """工具定义（配置存储原始形态）"""

    id: str = Field(pattern=IDENTIFIER_PATTERN, description="工具 ID")
    name: str = Field(pattern=IDENTIFIER_PATTERN, description="暴露给模型的 function name")
    description: str = Field(default="", description="工具描述")
    parameters: dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}},
        description="JSON Schema 参数定义",
    )
    endpoint: str = Field(default="", description="HTTP 工具服务地址，空表示本地工具")
    credential_scope: str | None = Field(default=None, description="凭据解析作用域")


class AgentDefinition(BaseModel):
    """Agent 定义（配置存储原始形态）"""

    id: str = Field(pattern=IDENTIFIER_PATTERN, description="Agent ID")
    name: str = Field(description="Agent 名称")
    description: str = Field(default="", description="能力摘要")
    prompt: str = Field(default="", description="行为描述（system prompt）")
    model_alias: str = Field(default="main", description="模型语义 alias")
    default_transfer_target_id: str | None = Field(default=None)
    transfer_target_ids: list[str] = Field(default_factory=list)
    allowed_delegate_ids: list[str] = Field(default_factory=list)
    tool_ids: list[str] = Field(default_factory=list)


class ProjectDefinition(BaseModel):
    """Project 定义 -- 配置存储中一个 project 的 agent / tool 全集"""

    project_id: str = Field(description="Project ID")
    name: str = Field(default="", description="Project 名称")
    entry_agent_id: str = Field(description="入口 agent")
    agents: list[AgentDefinition] = Field(default_factory=list)
    tools: list[ToolDefinition] = Field(default_factory=list)


class ToolRef(BaseModel):
    """已解析的工具引用"""

    model_config = ConfigDict(frozen=True)

    tool_id: str
    name: str
    description: str = ""
    parameters: dict[str, Any] = Field(default_factory=dict)
    endpoint: str = ""
    credential_scope: str | None = None

    def to_descriptor(self) -> dict[str, Any]:
        """转换为模型侧 tool descriptor（OpenAI function 格式）"""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters or {"type": "object", "properties": {}},
            },
        }


class ToolHealth(BaseModel):
    """工具健康检查结果"""

    tool_id: str
    status: ToolHealthStatus = ToolHealthStatus.UNKNOWN
    checked_at: datetime | None = None
    detail: str = ""


class AgentNode(BaseModel):
    """图中的 agent 节点

    transfers-to: 不可逆移交，不期待返回值
    delegates-to: 派生子任务，期待返回值
    """

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str = ""
    prompt: str = ""
    model_alias: str = "main"
    default_transfer_target_id: str | None = None
    transfer_target_ids: frozenset[str] = frozenset()
    allowed_delegate_ids: frozenset[str] = frozenset()
    tools: tuple[ToolRef, ...] = ()

    @property
    def permitted_transfer_ids(self) -> frozenset[str]:
        if self.default_transfer_target_id:
            return self.transfer_target_ids | {self.default_transfer_target_id}
        return self.transfer_target_ids

    def tool_by_name(self, name: str) -> ToolRef | None:
        for tool in self.tools:
            if tool.name == name:
                return tool
        return None


class AgentDescriptor(BaseModel):
    """Agent 发现描述符 -- 供对端校验 delegate / transfer 目标"""

    id: str
    name: str
    project_id: str
    description: str = Field(default="", description="能力摘要")
    transfer_targets: list[str] = Field(default_factory=list)
    delegate_targets: list[str] = Field(default_factory=list)
    tools: list[str] = Field(default_factory=list)
    capabilities: dict[str, bool] = Field(
        default_factory=lambda: {"streaming": True, "pushNotifications": False}
    )
    default_input_modes: list[str] = Field(default_factory=lambda: ["text"])
    default_output_modes: list[str] = Field(default_factory=lambda: ["text"])


class AgentGraph(BaseModel):
    """已解析的只读 agent 图"""

    model_config = ConfigDict(frozen=True)

    project_id: str
    name: str = ""
    entry_agent_id: str
    nodes: dict[str, AgentNode]
    resolved_at: datetime

    def get(self, agent_id: str) -> AgentNode | None:
        return self.nodes.get(agent_id)

    def describe(self, agent_id: str) -> AgentDescriptor | None:
        node = self.nodes.get(agent_id)
        if node is None:
            return None
        return AgentDescriptor(
            id=node.id,
            name=node.name,
            project_id=self.project_id,
            description=_describe_with_relations(node, self.nodes),
            transfer_targets=sorted(node.permitted_transfer_ids),
            delegate_targets=sorted(node.allowed_delegate_ids),
            tools=[t.name for t in node.tools],
        )

    def descriptors(self) -> list[AgentDescriptor]:
        return [self.describe(agent_id) for agent_id in sorted(self.nodes)]


def _describe_with_relations(node: AgentNode, nodes: dict[str, AgentNode]) -> str:
    """能力摘要附带可 transfer / delegate 的 agent 列表"""
    lines = [node.description or "No description provided"]
    if node.permitted_transfer_ids:
        names = ", ".join(nodes[t].name for t in sorted(node.permitted_transfer_ids) if t in nodes)
        lines.append(f"Can transfer to: {names}")
    if node.allowed_delegate_ids:
        names = ", ".join(nodes[d].name for d in sorted(node.allowed_delegate_ids) if d in nodes)
        lines.append(f"Can delegate to: {names}")
    return "\n".join(lines)
