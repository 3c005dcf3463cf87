"""HTTP 错误响应 -- AgentMeshError -> {"error": {"code", "message"}} 信封"""

from typing import Any

from agentmesh.core.errors import AgentMeshError, ConfigInvalidError
from starlette.responses import JSONResponse

# 稳定错误码 -> HTTP 状态码
STATUS_BY_CODE: dict[str, int] = {
    "EMPTY_MESSAGE": 400,
    "TASK_NOT_FOUND": 404,
    "PROJECT_NOT_FOUND": 404,
    "AGENT_NOT_FOUND": 404,
    "STREAM_NOT_FOUND_HERE": 404,
    "STREAM_CONFLICT": 409,
    "TASK_ALREADY_TERMINAL": 409,
    "TASK_NOT_CANCELLABLE": 409,
    "CONFIG_INVALID": 422,
}


def error_response(status_code: int, code: str, message: str, **extra: Any) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": {"code": code, "message": message, **extra}},
    )


def from_error(error: AgentMeshError) -> JSONResponse:
    """按错误码映射 HTTP 状态，未知错误码视为 500"""
    extra: dict[str, Any] = {}
    if isinstance(error, ConfigInvalidError):
        extra["problems"] = error.problems
    if "instance_id" in error.details:
        extra["instance_id"] = error.details["instance_id"]
    return error_response(
        STATUS_BY_CODE.get(error.code, 500),
        error.code,
        error.message,
        **extra,
    )


def task_not_found(task_id: str) -> JSONResponse:
    return error_response(404, "TASK_NOT_FOUND", f"Task with id {task_id} does not exist")
