"""SQLite Store 测试 -- 事务原子性、task_seq、会话、历史与保留窗口清理"""

from datetime import UTC, datetime, timedelta

import aiosqlite
import pytest
from agentmesh.core.models import StreamEventType, TaskStatus
from agentmesh.core.store import (
    append_event_and_update_task,
    create_task_with_conversation,
    purge_terminal_before,
    record_transfer,
    update_task_status,
)
from agentmesh.core.store.sqlite_init import verify_wal_mode


async def _create(store_group, task):
    await create_task_with_conversation(
        store_group.conn,
        store_group.task_store,
        store_group.conversation_store,
        task,
    )


class TestInit:
    async def test_wal_mode(self, db_conn):
        assert await verify_wal_mode(db_conn) is True


class TestTaskStore:
    async def test_create_and_get(self, store_group, new_task):
        task = new_task()
        await _create(store_group, task)

        loaded = await store_group.task_store.get_task(task.task_id)
        assert loaded == task
        assert await store_group.task_store.get_task("missing") is None
        assert (
            await store_group.conversation_store.get_active_agent("conv-a-1")
        ) == "router"

    async def test_child_does_not_touch_conversation(self, store_group, new_task):
        await _create(store_group, new_task())
        child = new_task(
            task_id="task_conv-a-1-del_1",
            current_agent_id="researcher",
            parent_task_id="task_conv-a-1-t1",
            delegation_depth=1,
        )
        await _create(store_group, child)
        assert await store_group.conversation_store.get_active_agent("conv-a-1") == "router"
        children = await store_group.task_store.list_children("task_conv-a-1-t1")
        assert [c.task_id for c in children] == [child.task_id]

    async def test_list_filters(self, store_group, new_task):
        await _create(store_group, new_task("task_conv-a-1-t1"))
        await _create(store_group, new_task("task_conv-b-2-t1", conversation_id="conv-b-2"))
        await update_task_status(
            store_group.conn,
            store_group.task_store,
            "task_conv-a-1-t1",
            TaskStatus.ROUTING.value,
            datetime.now(UTC),
        )

        routing = await store_group.task_store.list_tasks(status="ROUTING")
        assert [t.task_id for t in routing] == ["task_conv-a-1-t1"]
        by_conv = await store_group.task_store.list_tasks(conversation_id="conv-b-2")
        assert [t.task_id for t in by_conv] == ["task_conv-b-2-t1"]
        assert len(await store_group.task_store.list_tasks()) == 2

    async def test_conversation_turns_only_completed_roots(self, store_group, new_task, new_event):
        base = datetime.now(UTC)
        for i, status in enumerate(["COMPLETED", "FAILED", "COMPLETED"]):
            task = new_task(
                f"task_conv-a-1-t{i}",
                created_at=base + timedelta(seconds=i),
                updated_at=base + timedelta(seconds=i),
            )
            await _create(store_group, task)
            await append_event_and_update_task(
                store_group.conn,
                store_group.event_store,
                store_group.task_store,
                new_event(task.task_id),
                new_status=status,
                result_text=f"answer {i}",
            )

        turns = await store_group.task_store.list_conversation_turns(
            "conv-a-1", limit=10, exclude_task_id="task_conv-a-1-t2"
        )
        assert [t.task_id for t in turns] == ["task_conv-a-1-t0"]

        turns = await store_group.task_store.list_conversation_turns("conv-a-1", limit=10)
        assert [t.result_text for t in turns] == ["answer 0", "answer 2"]


class TestEventAppend:
    async def test_event_and_projection_atomic(self, store_group, new_task, new_event):
        task = new_task()
        await _create(store_group, task)
        event = new_event(task.task_id, StreamEventType.FINAL, text="done")
        event = event.model_copy(update={"task_seq": 1})

        await append_event_and_update_task(
            store_group.conn,
            store_group.event_store,
            store_group.task_store,
            event,
            new_status="COMPLETED",
            result_text="done",
        )

        loaded = await store_group.task_store.get_task(task.task_id)
        assert loaded.status == TaskStatus.COMPLETED
        assert loaded.result_text == "done"
        events = await store_group.event_store.get_events_for_task(task.task_id)
        assert [e.payload for e in events] == [{"text": "done"}]

    async def test_duplicate_seq_rolls_back(self, store_group, new_task, new_event):
        task = new_task()
        await _create(store_group, task)
        first = new_event(task.task_id).model_copy(update={"task_seq": 1})
        await append_event_and_update_task(
            store_group.conn, store_group.event_store, store_group.task_store, first
        )

        duplicate = new_event(task.task_id).model_copy(update={"task_seq": 1})
        with pytest.raises(aiosqlite.IntegrityError):
            await append_event_and_update_task(
                store_group.conn,
                store_group.event_store,
                store_group.task_store,
                duplicate,
                new_status="FAILED",
            )

        loaded = await store_group.task_store.get_task(task.task_id)
        assert loaded.status == TaskStatus.CREATED
        assert len(await store_group.event_store.get_events_for_task(task.task_id)) == 1

    async def test_next_task_seq(self, store_group, new_task, new_event):
        task = new_task()
        await _create(store_group, task)
        assert await store_group.event_store.get_next_task_seq(task.task_id) == 1
        for seq in (1, 2, 3):
            await append_event_and_update_task(
                store_group.conn,
                store_group.event_store,
                store_group.task_store,
                new_event(task.task_id).model_copy(update={"task_seq": seq}),
            )
        assert await store_group.event_store.get_next_task_seq(task.task_id) == 4


class TestTransfer:
    async def test_record_transfer_updates_agent_and_conversation(
        self, store_group, new_task, new_event
    ):
        task = new_task()
        await _create(store_group, task)
        event = new_event(task.task_id, StreamEventType.TRANSFER, to_agent_id="billing")

        await record_transfer(
            store_group.conn,
            store_group.event_store,
            store_group.task_store,
            store_group.conversation_store,
            event.model_copy(update={"task_seq": 1}),
            project_id="support",
            conversation_id="conv-a-1",
            target_agent_id="billing",
        )

        assert (await store_group.task_store.get_task(task.task_id)).current_agent_id == "billing"
        assert await store_group.conversation_store.get_active_agent("conv-a-1") == "billing"

    async def test_transfer_without_conversation_update(self, store_group, new_task, new_event):
        task = new_task()
        await _create(store_group, task)
        await record_transfer(
            store_group.conn,
            store_group.event_store,
            store_group.task_store,
            store_group.conversation_store,
            new_event(task.task_id, StreamEventType.TRANSFER).model_copy(update={"task_seq": 1}),
            project_id="support",
            conversation_id="conv-a-1",
            target_agent_id="tech",
            persist_conversation=False,
        )
        assert await store_group.conversation_store.get_active_agent("conv-a-1") == "router"


class TestPurge:
    async def test_purge_terminal_before_cutoff(self, store_group, new_task, new_event):
        old = datetime.now(UTC) - timedelta(hours=2)
        done = new_task("task_conv-a-1-old", created_at=old, updated_at=old)
        live = new_task("task_conv-a-1-live", created_at=old, updated_at=old)
        await _create(store_group, done)
        await _create(store_group, live)

        final = new_event(done.task_id).model_copy(update={"task_seq": 1, "ts": old})
        await append_event_and_update_task(
            store_group.conn,
            store_group.event_store,
            store_group.task_store,
            final,
            new_status="COMPLETED",
        )

        purged = await purge_terminal_before(
            store_group.conn,
            store_group.event_store,
            store_group.task_store,
            datetime.now(UTC) - timedelta(hours=1),
        )

        assert purged == 1
        assert await store_group.task_store.get_task(done.task_id) is None
        assert await store_group.event_store.get_events_for_task(done.task_id) == []
        # 非终态任务不清理
        assert await store_group.task_store.get_task(live.task_id) is not None

    async def test_nothing_to_purge(self, store_group):
        purged = await purge_terminal_before(
            store_group.conn,
            store_group.event_store,
            store_group.task_store,
            datetime.now(UTC),
        )
        assert purged == 0
