"""任务路由

POST /api/tasks: 提交根任务，立即返回 stream_id，执行在后台进行。
GET /api/tasks: 任务列表查询，支持 status / conversation_id 筛选。
GET /api/tasks/{task_id}: 任务详情（含委派子任务）。
GET /api/tasks/{task_id}/events: 已落盘的任务事件（流关闭后的回看入口）。
"""

from agentmesh.core.errors import AgentMeshError
from agentmesh.core.models import MessagePart, Task
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from starlette.responses import JSONResponse

from ..deps import get_task_service
from ..errors import from_error, task_not_found
from ..services.task_service import TaskService

router = APIRouter()


class MessageBody(BaseModel):
    """输入消息"""

    text: str = Field(default="", description="消息文本")
    parts: list[MessagePart] = Field(default_factory=list, description="A2A 兼容 parts")


class SubmitTaskRequest(BaseModel):
    """任务提交请求体"""

    message: MessageBody
    conversation_id: str | None = Field(default=None, description="会话 ID，缺省时开启新会话")
    project_id: str | None = Field(default=None, description="project，缺省使用默认 project")
    agent_id: str | None = Field(default=None, description="起始 agent，缺省为会话活跃 agent 或入口 agent")


class SubmitTaskResponse(BaseModel):
    """任务提交响应"""

    task_id: str
    stream_id: str
    conversation_id: str
    agent_id: str
    status: str
    stream_url: str
    instance_id: str


class TaskSummary(BaseModel):
    """任务摘要（列表项）"""

    task_id: str
    conversation_id: str | None
    project_id: str
    current_agent_id: str
    status: str
    parent_task_id: str | None
    delegation_depth: int
    created_at: str
    updated_at: str
    error_code: str | None = None


class TaskListResponse(BaseModel):
    """任务列表响应"""

    tasks: list[TaskSummary]


def _summary(task: Task) -> TaskSummary:
    return TaskSummary(
        task_id=task.task_id,
        conversation_id=task.conversation_id,
        project_id=task.project_id,
        current_agent_id=task.current_agent_id,
        status=task.status.value,
        parent_task_id=task.parent_task_id,
        delegation_depth=task.delegation_depth,
        created_at=task.created_at.isoformat(),
        updated_at=task.updated_at.isoformat(),
        error_code=task.error_code,
    )


@router.post("/api/tasks")
async def submit_task(
    body: SubmitTaskRequest,
    service: TaskService = Depends(get_task_service),
):
    """提交任务

    - 201: 已创建，返回 stream_url
    - 400: 空消息（不打开流）
    - 404: project / agent 不存在
    - 409: stream 冲突
    - 422: agent 图配置非法
    """
    try:
        task = await service.submit(
            text=body.message.text,
            parts=body.message.parts,
            conversation_id=body.conversation_id,
            project_id=body.project_id,
            agent_id=body.agent_id,
        )
    except AgentMeshError as e:
        return from_error(e)

    return JSONResponse(
        status_code=201,
        content=SubmitTaskResponse(
            task_id=task.task_id,
            stream_id=task.stream_id,
            conversation_id=task.conversation_id,
            agent_id=task.current_agent_id,
            status=task.status.value,
            stream_url=f"/api/streams/{task.stream_id}",
            instance_id=service.instance_id,
        ).model_dump(),
    )


@router.get("/api/tasks", response_model=TaskListResponse)
async def list_tasks(
    status: str | None = Query(default=None, description="按状态筛选"),
    conversation_id: str | None = Query(default=None, description="按会话筛选"),
    service: TaskService = Depends(get_task_service),
):
    """查询任务列表，按 created_at 倒序"""
    tasks = await service.list_tasks(status, conversation_id)
    return TaskListResponse(tasks=[_summary(t) for t in tasks])


@router.get("/api/tasks/{task_id}")
async def get_task_detail(
    task_id: str,
    service: TaskService = Depends(get_task_service),
):
    """查询任务详情，包含输入、最终回答与委派子任务"""
    task = await service.get_task(task_id)
    if task is None:
        return task_not_found(task_id)

    children = await service.list_children(task_id)
    return {
        "task": {
            **_summary(task).model_dump(),
            "stream_id": task.stream_id,
            "input": task.input.model_dump(),
            "result_text": task.result_text,
        },
        "children": [_summary(c).model_dump() for c in children],
    }


@router.get("/api/tasks/{task_id}/events")
async def get_task_events(
    task_id: str,
    service: TaskService = Depends(get_task_service),
):
    """查询任务已落盘事件（token 不落盘），按 task_seq 正序"""
    task = await service.get_task(task_id)
    if task is None:
        return task_not_found(task_id)

    events = await service.list_events(task_id)
    return {
        "task_id": task_id,
        "status": task.status.value,
        "events": [
            {
                "event_id": e.event_id,
                "task_seq": e.task_seq,
                "ts": e.ts.isoformat(),
                "type": e.type.value,
                "actor": e.actor.value,
                "agent_id": e.agent_id,
                "payload": e.payload,
            }
            for e in events
        ],
    }
