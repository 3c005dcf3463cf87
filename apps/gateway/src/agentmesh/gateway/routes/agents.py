"""Agent 发现路由

GET /api/projects/{project_id}/agents: project 内全部 agent 描述符。
GET /api/projects/{project_id}/agents/{agent_id}: 单个 agent 描述符。
POST /api/projects/{project_id}/reload: agent 图变更通知，丢弃缓存。
"""

import structlog
from agentmesh.core.errors import AgentMeshError, AgentNotFoundError
from agentmesh.engine import AgentGraphCache
from fastapi import APIRouter, Depends

from ..deps import get_graph_cache
from ..errors import from_error

log = structlog.get_logger()

router = APIRouter()


@router.get("/api/projects/{project_id}/agents")
async def list_agents(
    project_id: str,
    graphs: AgentGraphCache = Depends(get_graph_cache),
):
    try:
        graph = await graphs.get(project_id)
    except AgentMeshError as e:
        return from_error(e)

    return {
        "project_id": project_id,
        "entry_agent_id": graph.entry_agent_id,
        "agents": [d.model_dump() for d in graph.descriptors()],
    }


@router.get("/api/projects/{project_id}/agents/{agent_id}")
async def get_agent(
    project_id: str,
    agent_id: str,
    graphs: AgentGraphCache = Depends(get_graph_cache),
):
    try:
        graph = await graphs.get(project_id)
        descriptor = graph.describe(agent_id)
        if descriptor is None:
            raise AgentNotFoundError(project_id, agent_id)
    except AgentMeshError as e:
        return from_error(e)

    return descriptor.model_dump()


@router.post("/api/projects/{project_id}/reload")
async def reload_project(
    project_id: str,
    graphs: AgentGraphCache = Depends(get_graph_cache),
):
    """丢弃缓存后立即重新解析，配置非法时返回 422 且不缓存"""
    graphs.invalidate(project_id)
    try:
        graph = await graphs.get(project_id)
    except AgentMeshError as e:
        return from_error(e)

    return {
        "project_id": project_id,
        "agent_count": len(graph.nodes),
        "resolved_at": graph.resolved_at.isoformat(),
    }
