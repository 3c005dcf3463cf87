"""packages/core 测试配置 -- 核心层 fixture"""

from collections.abc import Callable
from datetime import UTC, datetime

import pytest
from agentmesh.core.models import ActorType, StreamEvent, StreamEventType, Task, TaskInput


@pytest.fixture
def new_task() -> Callable[..., Task]:
    def _make(task_id: str = "task_conv-a-1-t1", **overrides) -> Task:
        now = datetime.now(UTC)
        fields = {
            "task_id": task_id,
            "conversation_id": "conv-a-1",
            "project_id": "support",
            "current_agent_id": "router",
            "created_at": now,
            "updated_at": now,
            "input": TaskInput(text="hello"),
        }
        fields.update(overrides)
        return Task(**fields)

    return _make


@pytest.fixture
def new_event() -> Callable[..., StreamEvent]:
    counter = {"n": 0}

    def _make(task_id: str, event_type: StreamEventType = StreamEventType.FINAL, **payload):
        counter["n"] += 1
        return StreamEvent(
            event_id=f"01JEVT{counter['n']:020d}",
            task_id=task_id,
            ts=datetime.now(UTC),
            type=event_type,
            actor=ActorType.AGENT,
            agent_id="router",
            payload=payload,
        )

    return _make
