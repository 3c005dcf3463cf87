"""packages/engine 测试配置 -- agent 图与脚本化推理 fixture"""

from collections.abc import Callable
from datetime import UTC, datetime

import pytest
from agentmesh.core.models import (
    AgentDefinition,
    ProjectDefinition,
    Task,
    TaskInput,
    TaskStatus,
    ToolDefinition,
)


@pytest.fixture
def support_project() -> ProjectDefinition:
    """三 agent 的客服图

    router --transfer--> billing / tech
    billing --delegate--> researcher（带本地工具 lookup）
    """
    return ProjectDefinition(
        project_id="support",
        name="Support",
        entry_agent_id="router",
        agents=[
            AgentDefinition(
                id="router",
                name="Router",
                description="Routes requests",
                prompt="You route customer requests.",
                default_transfer_target_id="billing",
                transfer_target_ids=["tech"],
            ),
            AgentDefinition(
                id="billing",
                name="Billing",
                description="Handles invoices",
                allowed_delegate_ids=["researcher"],
                transfer_target_ids=["tech"],
            ),
            AgentDefinition(
                id="tech",
                name="Tech",
                description="Technical support",
                transfer_target_ids=["router"],
            ),
            AgentDefinition(
                id="researcher",
                name="Researcher",
                description="Looks things up",
                tool_ids=["lookup"],
            ),
        ],
        tools=[
            ToolDefinition(
                id="lookup",
                name="lookup",
                description="Look up an invoice",
                parameters={
                    "type": "object",
                    "properties": {"invoice": {"type": "string"}},
                },
            )
        ],
    )


@pytest.fixture
def make_task() -> Callable[..., Task]:
    """构造根任务（task_id 满足会话语法）"""

    def _make(
        text: str = "hello",
        agent_id: str = "router",
        project_id: str = "support",
        task_id: str = "task_conv-abc-1700000000000-turn1",
        conversation_id: str | None = None,
        stream_id: str | None = None,
    ) -> Task:
        now = datetime.now(UTC)
        return Task(
            task_id=task_id,
            conversation_id=conversation_id,
            project_id=project_id,
            current_agent_id=agent_id,
            status=TaskStatus.CREATED,
            created_at=now,
            updated_at=now,
            stream_id=stream_id,
            input=TaskInput(text=text),
        )

    return _make
