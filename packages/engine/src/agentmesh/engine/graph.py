"""Agent Graph Resolver -- 从配置源解析并校验 agent 图

GraphSource 提供原始 ProjectDefinition，AgentGraphResolver 校验后产出只读 AgentGraph，
AgentGraphCache 缓存解析结果，直到收到显式的变更通知（invalidate）。
"""

import asyncio
import re
from collections.abc import Iterable
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol

import structlog
from agentmesh.core.errors import ConfigInvalidError, GraphNotFoundError
from agentmesh.core.models import (
    AgentGraph,
    AgentNode,
    ProjectDefinition,
    ToolDefinition,
    ToolRef,
)
from pydantic import ValidationError

log = structlog.get_logger()

# 模型侧保留的 function name 前缀，工具不得占用
TRANSFER_TOOL_PREFIX = "transfer_to_"
DELEGATE_TOOL_PREFIX = "delegate_to_"
RESERVED_TOOL_PREFIXES = (TRANSFER_TOOL_PREFIX, DELEGATE_TOOL_PREFIX)

_PROJECT_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")


class GraphSource(Protocol):
    """Agent 图配置源接口"""

    async def load(self, project_id: str) -> ProjectDefinition | None:
        """加载 project 定义，不存在时返回 None"""
        ...


class InMemoryGraphSource:
    """内存配置源（测试与嵌入式使用）"""

    def __init__(self, projects: Iterable[ProjectDefinition] = ()) -> None:
        self._projects: dict[str, ProjectDefinition] = {p.project_id: p for p in projects}

    def put(self, project: ProjectDefinition) -> None:
        self._projects[project.project_id] = project

    def remove(self, project_id: str) -> None:
        self._projects.pop(project_id, None)

    async def load(self, project_id: str) -> ProjectDefinition | None:
        return self._projects.get(project_id)


class JsonDirectoryGraphSource:
    """JSON 文件配置源：{directory}/{project_id}.json"""

    def __init__(self, directory: str | Path) -> None:
        self._directory = Path(directory)

    async def load(self, project_id: str) -> ProjectDefinition | None:
        # project_id 直接拼进路径，先校验字符集
        if not _PROJECT_ID_PATTERN.match(project_id):
            return None
        path = self._directory / f"{project_id}.json"
        if not path.is_file():
            return None

        raw = await asyncio.to_thread(path.read_text, encoding="utf-8")
        try:
            definition = ProjectDefinition.model_validate_json(raw)
        except ValidationError as e:
            problems = [
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            ]
            raise ConfigInvalidError(project_id, problems) from e

        if definition.project_id != project_id:
            raise ConfigInvalidError(
                project_id,
                [f"file declares project_id {definition.project_id!r}"],
            )
        return definition


class AgentGraphResolver:
    """Agent 图解析器 -- 纯读操作"""

    def __init__(self, source: GraphSource) -> None:
        self._source = source

    async def resolve(self, project_id: str) -> AgentGraph:
        """解析 project 的 agent 图

        Raises:
            GraphNotFoundError: project 不存在
            ConfigInvalidError: 悬空引用、缺少入口 agent、保留前缀冲突、委派环
        """
        definition = await self._source.load(project_id)
        if definition is None:
            raise GraphNotFoundError(project_id)
        graph = build_graph(definition)
        log.info(
            "agent_graph_resolved",
            project_id=project_id,
            agent_count=len(graph.nodes),
        )
        return graph


def build_graph(definition: ProjectDefinition) -> AgentGraph:
    """校验 ProjectDefinition 并构建只读 AgentGraph

    Raises:
        ConfigInvalidError: 定义非法，problems 列出全部问题
    """
    problems: list[str] = []

    agent_defs = {}
    for agent in definition.agents:
        if agent.id in agent_defs:
            problems.append(f"duplicate agent id {agent.id}")
        agent_defs[agent.id] = agent

    tool_defs: dict[str, ToolDefinition] = {}
    for tool in definition.tools:
        if tool.id in tool_defs:
            problems.append(f"duplicate tool id {tool.id}")
        tool_defs[tool.id] = tool
        if tool.name.startswith(RESERVED_TOOL_PREFIXES):
            problems.append(f"tool {tool.id} uses reserved name {tool.name}")

    if definition.entry_agent_id not in agent_defs:
        problems.append(f"entry agent {definition.entry_agent_id} does not exist")

    for agent in definition.agents:
        transfer_ids = list(agent.transfer_target_ids)
        if agent.default_transfer_target_id:
            transfer_ids.append(agent.default_transfer_target_id)
        for target in transfer_ids:
            if target not in agent_defs:
                problems.append(f"agent {agent.id} transfers to unknown agent {target}")
            elif target == agent.id:
                problems.append(f"agent {agent.id} transfers to itself")
        for target in agent.allowed_delegate_ids:
            if target not in agent_defs:
                problems.append(f"agent {agent.id} delegates to unknown agent {target}")

        seen_names: set[str] = set()
        for tool_id in agent.tool_ids:
            tool = tool_defs.get(tool_id)
            if tool is None:
                problems.append(f"agent {agent.id} references unknown tool {tool_id}")
                continue
            if tool.name in seen_names:
                problems.append(f"agent {agent.id} binds tool name {tool.name} twice")
            seen_names.add(tool.name)

    cycle = _find_delegate_cycle(
        {a.id: [d for d in a.allowed_delegate_ids if d in agent_defs] for a in definition.agents}
    )
    if cycle:
        problems.append("delegate cycle " + " -> ".join(cycle))

    if problems:
        log.warning(
            "agent_graph_invalid",
            project_id=definition.project_id,
            problems=problems,
        )
        raise ConfigInvalidError(definition.project_id, problems)

    nodes = {
        agent.id: AgentNode(
            id=agent.id,
            name=agent.name,
            description=agent.description,
            prompt=agent.prompt,
            model_alias=agent.model_alias,
            default_transfer_target_id=agent.default_transfer_target_id,
            transfer_target_ids=frozenset(agent.transfer_target_ids),
            allowed_delegate_ids=frozenset(agent.allowed_delegate_ids),
            tools=tuple(_tool_ref(tool_defs[tool_id]) for tool_id in agent.tool_ids),
        )
        for agent in definition.agents
    }
    return AgentGraph(
        project_id=definition.project_id,
        name=definition.name,
        entry_agent_id=definition.entry_agent_id,
        nodes=nodes,
        resolved_at=datetime.now(UTC),
    )


def _tool_ref(tool: ToolDefinition) -> ToolRef:
    return ToolRef(
        tool_id=tool.id,
        name=tool.name,
        description=tool.description,
        parameters=tool.parameters,
        endpoint=tool.endpoint,
        credential_scope=tool.credential_scope,
    )


def _find_delegate_cycle(edges: dict[str, list[str]]) -> list[str] | None:
    """在委派边上查找环，返回环路径（首尾相同），无环返回 None"""
    visiting: set[str] = set()
    done: set[str] = set()
    path: list[str] = []

    def visit(node: str) -> list[str] | None:
        visiting.add(node)
        path.append(node)
        for nxt in edges.get(node, []):
            if nxt in visiting:
                return path[path.index(nxt):] + [nxt]
            if nxt not in done:
                found = visit(nxt)
                if found:
                    return found
        visiting.discard(node)
        done.add(node)
        path.pop()
        return None

    for start in sorted(edges):
        if start not in done:
            found = visit(start)
            if found:
                return found
    return None


class AgentGraphCache:
    """已解析 agent 图缓存

    图解析后不可变，可无锁读取；加载过程串行化，避免并发重复解析。
    失败结果不缓存。
    """

    def __init__(self, resolver: AgentGraphResolver) -> None:
        self._resolver = resolver
        self._graphs: dict[str, AgentGraph] = {}
        self._load_lock = asyncio.Lock()

    async def get(self, project_id: str) -> AgentGraph:
        graph = self._graphs.get(project_id)
        if graph is not None:
            return graph
        async with self._load_lock:
            graph = self._graphs.get(project_id)
            if graph is None:
                graph = await self._resolver.resolve(project_id)
                self._graphs[project_id] = graph
            return graph

    def invalidate(self, project_id: str | None = None) -> None:
        """变更通知：丢弃指定 project（或全部）的缓存"""
        if project_id is None:
            self._graphs.clear()
        else:
            self._graphs.pop(project_id, None)
        log.info("agent_graph_invalidated", project_id=project_id or "*")
