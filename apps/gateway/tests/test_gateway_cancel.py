"""任务取消测试

测试内容：
1. 取消运行中的任务返回 200 + CANCELLED，落盘唯一一条 TASK_CANCELLED error 事件
2. 取消终态任务返回 409
3. 取消不存在的任务返回 404
4. 委派子任务不可单独取消
5. 执行循环未在本进程运行时由服务直接落盘取消
"""

from datetime import UTC, datetime

from agentmesh.core.models import Task, TaskInput, TaskStatus
from agentmesh.core.store import create_task_with_conversation


class TestTaskCancel:
    async def test_cancel_running_task(self, make_client, scripted, store_group):
        inference = scripted("slow answer", gated=True)
        ac, app = await make_client(inference)
        submitted = (await ac.post("/api/tasks", json={"message": {"text": "wait"}})).json()
        await inference.started.wait()

        resp = await ac.post(f"/api/tasks/{submitted['task_id']}/cancel")

        assert resp.status_code == 200
        assert resp.json() == {"task_id": submitted["task_id"], "status": "CANCELLED"}

        events = await store_group.event_store.get_events_for_task(submitted["task_id"])
        errors = [e for e in events if e.type == "error"]
        assert len(errors) == 1
        assert errors[0].payload["code"] == "TASK_CANCELLED"
        assert events[-1].type == "error"
        assert app.state.task_service.running_count == 0

    async def test_cancel_terminal_task(self, client, wait_terminal):
        submitted = (await client.post("/api/tasks", json={"message": {"text": "hi"}})).json()
        await wait_terminal(submitted["task_id"])

        resp = await client.post(f"/api/tasks/{submitted['task_id']}/cancel")

        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "TASK_ALREADY_TERMINAL"

    async def test_cancel_nonexistent(self, client):
        resp = await client.post("/api/tasks/task_conv-x-1-missing/cancel")
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "TASK_NOT_FOUND"

    async def test_child_not_cancellable(self, client, store_group):
        now = datetime.now(UTC)
        child = Task(
            task_id="task_conv-x-1700000000000-del_1",
            conversation_id="conv-x-1700000000000",
            project_id="default",
            current_agent_id="researcher",
            status=TaskStatus.HANDLING,
            created_at=now,
            updated_at=now,
            parent_task_id="task_conv-x-1700000000000-turn1",
            delegation_depth=1,
            input=TaskInput(text="look it up"),
        )
        await create_task_with_conversation(
            store_group.conn,
            store_group.task_store,
            store_group.conversation_store,
            child,
        )

        resp = await client.post(f"/api/tasks/{child.task_id}/cancel")

        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "TASK_NOT_CANCELLABLE"

    async def test_cancel_task_not_running_here(self, client, store_group):
        """任务存在但执行循环不在本进程：服务直接落盘 CANCELLED"""
        now = datetime.now(UTC)
        task = Task(
            task_id="task_conv-y-1700000000000-turn1",
            conversation_id="conv-y-1700000000000",
            project_id="default",
            current_agent_id="desk",
            status=TaskStatus.CREATED,
            created_at=now,
            updated_at=now,
            input=TaskInput(text="orphan"),
        )
        await create_task_with_conversation(
            store_group.conn,
            store_group.task_store,
            store_group.conversation_store,
            task,
        )

        resp = await client.post(f"/api/tasks/{task.task_id}/cancel")

        assert resp.status_code == 200
        assert resp.json()["status"] == "CANCELLED"
        stored = await store_group.task_store.get_task(task.task_id)
        assert stored.error_code == "TASK_CANCELLED"
