"""Agent Graph 解析、校验与缓存测试"""

import json

import pytest
from agentmesh.core.errors import ConfigInvalidError, GraphNotFoundError
from agentmesh.core.models import AgentDefinition, ProjectDefinition, ToolDefinition
from agentmesh.engine.graph import (
    AgentGraphCache,
    AgentGraphResolver,
    InMemoryGraphSource,
    JsonDirectoryGraphSource,
    build_graph,
)


def _project(agents, tools=(), entry="a") -> ProjectDefinition:
    return ProjectDefinition(
        project_id="p1",
        entry_agent_id=entry,
        agents=list(agents),
        tools=list(tools),
    )


class TestBuildGraph:
    def test_valid_graph(self, support_project):
        graph = build_graph(support_project)
        assert graph.entry_agent_id == "router"
        router = graph.get("router")
        assert router.permitted_transfer_ids == frozenset({"billing", "tech"})
        assert graph.get("researcher").tool_by_name("lookup").tool_id == "lookup"
        assert graph.get("missing") is None

    def test_dangling_transfer_target(self):
        project = _project(
            [AgentDefinition(id="a", name="A", transfer_target_ids=["ghost"])]
        )
        with pytest.raises(ConfigInvalidError) as exc:
            build_graph(project)
        assert "agent a transfers to unknown agent ghost" in exc.value.problems

    def test_missing_entry_agent(self):
        project = _project([AgentDefinition(id="a", name="A")], entry="zzz")
        with pytest.raises(ConfigInvalidError) as exc:
            build_graph(project)
        assert exc.value.code == "CONFIG_INVALID"
        assert any("entry agent zzz" in p for p in exc.value.problems)

    def test_unknown_tool_and_reserved_name(self):
        project = _project(
            [AgentDefinition(id="a", name="A", tool_ids=["t1", "nope"])],
            tools=[ToolDefinition(id="t1", name="transfer_to_x")],
        )
        with pytest.raises(ConfigInvalidError) as exc:
            build_graph(project)
        problems = exc.value.problems
        assert "tool t1 uses reserved name transfer_to_x" in problems
        assert "agent a references unknown tool nope" in problems

    def test_delegate_cycle_rejected(self):
        project = _project(
            [
                AgentDefinition(id="a", name="A", allowed_delegate_ids=["b"]),
                AgentDefinition(id="b", name="B", allowed_delegate_ids=["a"]),
            ]
        )
        with pytest.raises(ConfigInvalidError) as exc:
            build_graph(project)
        assert "delegate cycle a -> b -> a" in exc.value.problems

    def test_transfer_cycle_allowed(self):
        """transfer 成环合法（由 transfer 次数上限约束）"""
        project = _project(
            [
                AgentDefinition(id="a", name="A", transfer_target_ids=["b"]),
                AgentDefinition(id="b", name="B", transfer_target_ids=["a"]),
            ]
        )
        graph = build_graph(project)
        assert set(graph.nodes) == {"a", "b"}

    def test_self_transfer_rejected(self):
        project = _project([AgentDefinition(id="a", name="A", default_transfer_target_id="a")])
        with pytest.raises(ConfigInvalidError):
            build_graph(project)

    def test_descriptor_lists_relations(self, support_project):
        graph = build_graph(support_project)
        descriptor = graph.describe("router")
        assert descriptor.transfer_targets == ["billing", "tech"]
        assert descriptor.delegate_targets == []
        assert "Can transfer to: Billing, Tech" in descriptor.description
        assert [d.id for d in graph.descriptors()] == sorted(graph.nodes)


class TestResolverAndCache:
    async def test_unknown_project(self):
        resolver = AgentGraphResolver(InMemoryGraphSource())
        with pytest.raises(GraphNotFoundError):
            await resolver.resolve("nope")

    async def test_cache_until_invalidated(self, support_project):
        source = InMemoryGraphSource([support_project])
        cache = AgentGraphCache(AgentGraphResolver(source))

        first = await cache.get("support")
        assert await cache.get("support") is first

        updated = support_project.model_copy(update={"name": "Support v2"})
        source.put(updated)
        assert (await cache.get("support")).name == "Support"

        cache.invalidate("support")
        assert (await cache.get("support")).name == "Support v2"

    async def test_invalidate_all(self, support_project):
        source = InMemoryGraphSource([support_project])
        cache = AgentGraphCache(AgentGraphResolver(source))
        await cache.get("support")
        source.remove("support")
        cache.invalidate()
        with pytest.raises(GraphNotFoundError):
            await cache.get("support")


class TestJsonDirectoryGraphSource:
    async def test_load_from_file(self, tmp_path, support_project):
        (tmp_path / "support.json").write_text(support_project.model_dump_json())
        source = JsonDirectoryGraphSource(tmp_path)
        loaded = await source.load("support")
        assert loaded == support_project

    async def test_missing_file_and_unsafe_id(self, tmp_path):
        source = JsonDirectoryGraphSource(tmp_path)
        assert await source.load("absent") is None
        assert await source.load("../etc/passwd") is None

    async def test_invalid_json_definition(self, tmp_path):
        (tmp_path / "broken.json").write_text(json.dumps({"project_id": "broken"}))
        source = JsonDirectoryGraphSource(tmp_path)
        with pytest.raises(ConfigInvalidError):
            await source.load("broken")
