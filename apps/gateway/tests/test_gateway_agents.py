"""Agent 发现与图缓存失效测试"""

from agentmesh.core.models import AgentDefinition, ProjectDefinition


class TestAgentDiscovery:
    async def test_list_agents(self, client):
        resp = await client.get("/api/projects/default/agents")

        assert resp.status_code == 200
        data = resp.json()
        assert data["entry_agent_id"] == "desk"
        assert [a["id"] for a in data["agents"]] == ["billing", "desk", "researcher"]

    async def test_get_agent_descriptor(self, client):
        resp = await client.get("/api/projects/default/agents/billing")

        assert resp.status_code == 200
        data = resp.json()
        assert data["project_id"] == "default"
        assert data["transfer_targets"] == ["desk"]
        assert data["delegate_targets"] == ["researcher"]
        assert data["capabilities"]["streaming"] is True
        assert "Researcher" in data["description"]

    async def test_unknown_agent(self, client):
        resp = await client.get("/api/projects/default/agents/ghost")
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "AGENT_NOT_FOUND"

    async def test_unknown_project(self, client):
        resp = await client.get("/api/projects/nope/agents")
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "PROJECT_NOT_FOUND"

    async def test_invalid_project(self, client):
        resp = await client.get("/api/projects/broken/agents")
        assert resp.status_code == 422


class TestReload:
    async def test_reload_picks_up_changes(self, client, graph_source):
        before = (await client.get("/api/projects/default/agents")).json()
        assert len(before["agents"]) == 3

        graph_source.put(
            ProjectDefinition(
                project_id="default",
                entry_agent_id="solo",
                agents=[AgentDefinition(id="solo", name="Solo")],
            )
        )
        # 未通知变更前仍命中缓存
        cached = (await client.get("/api/projects/default/agents")).json()
        assert cached["entry_agent_id"] == "desk"

        resp = await client.post("/api/projects/default/reload")
        assert resp.status_code == 200
        assert resp.json()["agent_count"] == 1

        after = (await client.get("/api/projects/default/agents")).json()
        assert after["entry_agent_id"] == "solo"

    async def test_reload_invalid_is_not_cached(self, client, graph_source):
        resp = await client.post("/api/projects/broken/reload")
        assert resp.status_code == 422

        graph_source.put(
            ProjectDefinition(
                project_id="broken",
                entry_agent_id="a",
                agents=[AgentDefinition(id="a", name="A")],
            )
        )
        resp = await client.get("/api/projects/broken/agents")
        assert resp.status_code == 200
