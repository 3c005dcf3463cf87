"""任务取消路由

POST /api/tasks/{task_id}/cancel: 取消非终态的根任务。
- 200: 取消成功
- 404: 任务不存在
- 409: 任务已在终态 / 委派子任务不可单独取消
"""

from agentmesh.core.errors import AgentMeshError
from fastapi import APIRouter, Depends
from pydantic import BaseModel
from starlette.responses import JSONResponse

from ..deps import get_task_service
from ..errors import from_error, task_not_found
from ..services.task_service import TaskService

router = APIRouter()


class CancelResponse(BaseModel):
    """取消成功响应"""

    task_id: str
    status: str


@router.post("/api/tasks/{task_id}/cancel")
async def cancel_task(
    task_id: str,
    service: TaskService = Depends(get_task_service),
):
    """取消非终态的根任务，返回 CANCELLED 状态"""
    try:
        task = await service.cancel_task(task_id)
    except AgentMeshError as e:
        return from_error(e)

    if task is None:
        return task_not_found(task_id)

    return JSONResponse(
        status_code=200,
        content=CancelResponse(
            task_id=task.task_id,
            status=task.status.value,
        ).model_dump(),
    )
