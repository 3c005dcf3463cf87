"""健康检查路由

GET /health  liveness，永远 200
GET /ready   readiness：SQLite、agent 图目录、磁盘；profile=llm/full 时额外探测 LiteLLM Proxy
"""

import shutil
from typing import Any

import structlog
from agentmesh.core.config import get_graph_dir
from fastapi import APIRouter, Query, Request
from starlette.responses import JSONResponse

log = structlog.get_logger()

router = APIRouter()

_PROXY_PROFILES = ("llm", "full")


@router.get("/health")
async def health():
    return {"status": "ok"}


async def _check_sqlite(request: Request) -> tuple[Any, bool]:
    try:
        cursor = await request.app.state.store_group.conn.execute("SELECT 1")
        await cursor.fetchone()
    except Exception as e:
        return f"error: {e}", False
    return "ok", True


def _check_graph_dir() -> tuple[Any, bool]:
    if get_graph_dir().is_dir():
        return "ok", True
    return "error: directory does not exist", False


def _check_disk() -> tuple[Any, bool]:
    try:
        return shutil.disk_usage("/").free // (1024 * 1024), True
    except OSError:
        return 0, False


async def _check_proxy(request: Request, profile: str) -> tuple[Any, bool]:
    # echo 模式没有 litellm_client
    client = getattr(request.app.state, "litellm_client", None)
    if profile not in _PROXY_PROFILES or client is None:
        return "skipped", True
    try:
        healthy = await client.health_check()
    except Exception as e:
        log.warning("proxy_health_check_error", error=str(e))
        healthy = False
    return ("ok" if healthy else "unreachable"), healthy


@router.get("/ready")
async def ready(
    request: Request,
    profile: str | None = Query(
        default=None,
        description="core（默认）仅核心检查；llm / full 额外探测 LiteLLM Proxy",
    ),
):
    profile = profile or "core"
    results = {
        "sqlite": await _check_sqlite(request),
        "graph_dir": _check_graph_dir(),
        "disk_space_mb": _check_disk(),
        "litellm_proxy": await _check_proxy(request, profile),
    }
    all_ok = all(ok for _, ok in results.values())

    registry = getattr(request.app.state, "stream_registry", None)
    task_service = getattr(request.app.state, "task_service", None)
    return JSONResponse(
        status_code=200 if all_ok else 503,
        content={
            "status": "ready" if all_ok else "not_ready",
            "profile": profile,
            "instance_id": registry.instance_id if registry is not None else None,
            "open_streams": len(registry) if registry is not None else 0,
            "running_tasks": task_service.running_count if task_service is not None else 0,
            "checks": {name: value for name, (value, _) in results.items()},
        },
    )
