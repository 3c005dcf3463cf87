"""任务提交与查询接口测试

测试内容：
1. 提交返回 201 + stream_url，后台执行至 COMPLETED
2. 空消息 400，未知 project / agent 404，非法图 422
3. 会话续轮：transfer 后下一轮从新的活跃 agent 开始
4. 列表 / 详情（含子任务）/ 已落盘事件查询
"""

from agentmesh.core.models import TaskStatus
from httpx import AsyncClient


class TestSubmitTask:
    async def test_submit_returns_stream_handle(self, client: AsyncClient, wait_terminal):
        resp = await client.post("/api/tasks", json={"message": {"text": "hello"}})

        assert resp.status_code == 201
        data = resp.json()
        assert data["task_id"].startswith(f"task_{data['conversation_id']}-")
        assert data["conversation_id"].startswith("conv-")
        assert data["agent_id"] == "desk"
        assert data["status"] == "CREATED"
        assert data["stream_url"] == f"/api/streams/{data['stream_id']}"
        assert data["instance_id"] == "inst-gw-test"

        task = await wait_terminal(data["task_id"])
        assert task.status == TaskStatus.COMPLETED
        assert task.result_text == "Echo: hello"

    async def test_empty_message_rejected(self, make_client):
        ac, app = await make_client()

        resp = await ac.post("/api/tasks", json={"message": {"text": "   "}})

        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "EMPTY_MESSAGE"
        assert len(app.state.stream_registry) == 0

    async def test_unknown_project(self, client: AsyncClient):
        resp = await client.post(
            "/api/tasks",
            json={"project_id": "nope", "message": {"text": "hi"}},
        )
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "PROJECT_NOT_FOUND"

    async def test_unknown_agent(self, client: AsyncClient):
        resp = await client.post(
            "/api/tasks",
            json={"agent_id": "ghost", "message": {"text": "hi"}},
        )
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "AGENT_NOT_FOUND"

    async def test_invalid_graph(self, client: AsyncClient):
        resp = await client.post(
            "/api/tasks",
            json={"project_id": "broken", "message": {"text": "hi"}},
        )
        assert resp.status_code == 422
        error = resp.json()["error"]
        assert error["code"] == "CONFIG_INVALID"
        assert any("ghost" in p for p in error["problems"])

    async def test_explicit_agent(self, client: AsyncClient, wait_terminal):
        resp = await client.post(
            "/api/tasks",
            json={"agent_id": "billing", "message": {"text": "invoice"}},
        )
        assert resp.json()["agent_id"] == "billing"
        task = await wait_terminal(resp.json()["task_id"])
        assert task.current_agent_id == "billing"


class TestConversation:
    async def test_next_turn_starts_at_active_agent(
        self, make_client, scripted, wait_terminal
    ):
        inference = scripted([("transfer_to_billing", {})], "Billing here.", "Still billing.")
        ac, _ = await make_client(inference)

        first = (await ac.post("/api/tasks", json={"message": {"text": "invoice?"}})).json()
        done = await wait_terminal(first["task_id"])
        assert done.current_agent_id == "billing"

        second = (
            await ac.post(
                "/api/tasks",
                json={
                    "conversation_id": first["conversation_id"],
                    "message": {"text": "and the refund?"},
                },
            )
        ).json()
        assert second["conversation_id"] == first["conversation_id"]
        assert second["agent_id"] == "billing"

        await wait_terminal(second["task_id"])
        # 第二轮注入了上一轮的问答历史
        history = [m["content"] for m in inference.calls[-1] if m["role"] in ("user", "assistant")]
        assert "invoice?" in history
        assert "Billing here." in history

    async def test_absent_conversation_starts_fresh(self, client: AsyncClient):
        a = (await client.post("/api/tasks", json={"message": {"text": "one"}})).json()
        b = (
            await client.post(
                "/api/tasks",
                json={"conversation_id": "default", "message": {"text": "two"}},
            )
        ).json()
        assert a["conversation_id"] != b["conversation_id"]


class TestTaskQueries:
    async def test_list_and_filter(self, client: AsyncClient, wait_terminal):
        first = (await client.post("/api/tasks", json={"message": {"text": "one"}})).json()
        await wait_terminal(first["task_id"])
        second = (await client.post("/api/tasks", json={"message": {"text": "two"}})).json()
        await wait_terminal(second["task_id"])

        all_tasks = (await client.get("/api/tasks")).json()["tasks"]
        assert {t["task_id"] for t in all_tasks} == {first["task_id"], second["task_id"]}

        filtered = (
            await client.get("/api/tasks", params={"conversation_id": first["conversation_id"]})
        ).json()["tasks"]
        assert [t["task_id"] for t in filtered] == [first["task_id"]]

        completed = (await client.get("/api/tasks", params={"status": "COMPLETED"})).json()
        assert len(completed["tasks"]) == 2

    async def test_detail_includes_children(self, make_client, scripted, wait_terminal):
        inference = scripted(
            [("delegate_to_researcher", {"message": "check invoice 7"})],
            "Invoice 7 is paid.",
            "It is paid.",
        )
        ac, _ = await make_client(inference)
        submitted = (
            await ac.post(
                "/api/tasks",
                json={"agent_id": "billing", "message": {"text": "invoice 7?"}},
            )
        ).json()
        await wait_terminal(submitted["task_id"])

        resp = await ac.get(f"/api/tasks/{submitted['task_id']}")

        assert resp.status_code == 200
        data = resp.json()
        assert data["task"]["status"] == "COMPLETED"
        assert data["task"]["result_text"] == "It is paid."
        assert data["task"]["input"]["text"] == "invoice 7?"
        assert len(data["children"]) == 1
        child = data["children"][0]
        assert child["parent_task_id"] == submitted["task_id"]
        assert child["current_agent_id"] == "researcher"
        assert child["delegation_depth"] == 1

    async def test_detail_not_found(self, client: AsyncClient):
        resp = await client.get("/api/tasks/task_conv-x-1-missing")
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "TASK_NOT_FOUND"

    async def test_events_exclude_tokens(self, client: AsyncClient, wait_terminal):
        submitted = (await client.post("/api/tasks", json={"message": {"text": "hi there"}})).json()
        await wait_terminal(submitted["task_id"])

        resp = await client.get(f"/api/tasks/{submitted['task_id']}/events")

        assert resp.status_code == 200
        events = resp.json()["events"]
        assert [e["type"] for e in events] == ["final"]
        assert events[0]["payload"]["text"] == "Echo: hi there"

    async def test_events_not_found(self, client: AsyncClient):
        resp = await client.get("/api/tasks/task_conv-x-1-missing/events")
        assert resp.status_code == 404
