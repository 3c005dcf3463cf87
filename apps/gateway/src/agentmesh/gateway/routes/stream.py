"""SSE 续流路由

GET /api/streams/{stream_id}: SSE 实时推送任务事件。
只服务本进程打开的 stream：找不到即 404 STREAM_NOT_FOUND_HERE（附 instance_id），
由部署层把请求路由回正确实例。任务结束后通道在空闲窗口内保留为只重放，迟到的客户端照常接入。
支持 Last-Event-ID 从重放缓冲续传、心跳保活。

POST /api/streams/{stream_id}/cancel: 按续流 ID 取消任务（同样的本地查找规则）。
"""

import json

import structlog
from agentmesh.core.config import SSE_HEARTBEAT_INTERVAL
from agentmesh.core.errors import AgentMeshError
from agentmesh.engine import StreamAffinityRegistry
from fastapi import APIRouter, Depends, Request
from sse_starlette.sse import EventSourceResponse

from ..deps import get_registry, get_task_service
from ..errors import error_response, from_error
from ..services.task_service import TaskService

log = structlog.get_logger()

router = APIRouter()


def _parse_last_event_id(raw: str | None) -> int | None:
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        log.warning("invalid_last_event_id", value=raw)
        return None


@router.get("/api/streams/{stream_id}")
async def stream_events(
    stream_id: str,
    request: Request,
    registry: StreamAffinityRegistry = Depends(get_registry),
):
    """SSE 事件流端点

    1. 本地查找 StreamChannel，找不到即拒绝
    2. 重放 Last-Event-ID 之后的缓冲事件
    3. 实时推送新事件，final（或唯一的 error）之后通道关闭
    4. 心跳保活
    """
    channel = registry.lookup_local(stream_id)
    if channel is None:
        return error_response(
            404,
            "STREAM_NOT_FOUND_HERE",
            f"Stream {stream_id} is not open on this instance",
            instance_id=registry.instance_id,
        )

    last_event_id = _parse_last_event_id(request.headers.get("last-event-id"))

    async def event_generator():
        async for event in channel.events(last_event_id, heartbeat_s=SSE_HEARTBEAT_INTERVAL):
            if event is None:
                yield {"comment": "heartbeat"}
                continue
            yield {
                "id": str(event.seq),
                "event": event.type.value,
                "data": json.dumps(event.to_wire(), ensure_ascii=False),
            }

    return EventSourceResponse(event_generator())


@router.post("/api/streams/{stream_id}/cancel")
async def cancel_stream(
    stream_id: str,
    service: TaskService = Depends(get_task_service),
):
    """取消续流对应的任务"""
    try:
        task = await service.cancel_stream(stream_id)
    except AgentMeshError as e:
        return from_error(e)

    return {
        "task_id": task.task_id,
        "stream_id": stream_id,
        "status": task.status.value,
    }
