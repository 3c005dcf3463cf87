"""TraceMiddleware -- 任务级追踪

从路径参数中提取 task_id / stream_id 绑定 trace_id，贯穿任务生命周期日志。
"""

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

# 路径段 -> trace_id 前缀
_TRACED_SEGMENTS = {"tasks": "task", "streams": "stream"}


def extract_trace_id(path: str) -> str | None:
    """/api/tasks/{task_id}[/...] 或 /api/streams/{stream_id}[/...] -> trace_id"""
    parts = [p for p in path.split("/") if p]
    for i, part in enumerate(parts[:-1]):
        kind = _TRACED_SEGMENTS.get(part)
        if kind is not None:
            return f"trace-{kind}-{parts[i + 1]}"
    return None


class TraceMiddleware(BaseHTTPMiddleware):
    """任务级追踪中间件 -- 为任务与续流操作绑定 trace_id"""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        trace_id = extract_trace_id(request.url.path)
        if trace_id:
            structlog.contextvars.bind_contextvars(trace_id=trace_id)

        return await call_next(request)
