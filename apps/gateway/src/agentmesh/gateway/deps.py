"""依赖注入模块 -- 通过 FastAPI Depends 注入运行时组件

组件实例通过 app.state 管理，在 lifespan 中初始化/清理。
"""

from agentmesh.core.store import StoreGroup
from agentmesh.engine import AgentGraphCache, StreamAffinityRegistry
from fastapi import Request

from .services.task_service import TaskService


def get_store_group(request: Request) -> StoreGroup:
    """从 app.state 获取 StoreGroup 实例"""
    return request.app.state.store_group


def get_task_service(request: Request) -> TaskService:
    """从 app.state 获取 TaskService 实例"""
    return request.app.state.task_service


def get_registry(request: Request) -> StreamAffinityRegistry:
    """从 app.state 获取 StreamAffinityRegistry 实例"""
    return request.app.state.stream_registry


def get_graph_cache(request: Request) -> AgentGraphCache:
    """从 app.state 获取 AgentGraphCache 实例"""
    return request.app.state.graph_cache
