"""Task Domain Model

tasks 表是任务的物化视图（projection），
状态更新通过写入 task_events 并原子更新 projection 完成，仅由执行循环发起。
"""

from datetime import datetime

from pydantic import BaseModel, Field

from .enums import TaskStatus
from .message import TaskInput


class Task(BaseModel):
    """Task 数据模型

    task_id 语法：task_<conversation-slug>-<turn-suffix>
    """

    task_id: str = Field(description="全局唯一，编码会话前缀 + 轮次后缀")
    conversation_id: str | None = Field(default=None, description="会话 ID，缺省时由 task_id 推导")
    project_id: str = Field(description="所属 project")
    current_agent_id: str = Field(description="当前处理任务的 agent")
    status: TaskStatus = Field(default=TaskStatus.CREATED, description="当前状态")
    created_at: datetime = Field(description="创建时间")
    updated_at: datetime = Field(description="更新时间")
    parent_task_id: str | None = Field(default=None, description="委派父任务 ID")
    stream_id: str | None = Field(default=None, description="根任务的 StreamChannel ID")
    delegation_depth: int = Field(default=0, ge=0, description="委派深度，根任务为 0")
    input: TaskInput = Field(description="输入消息")
    result_text: str | None = Field(default=None, description="最终回答")
    error_code: str | None = Field(default=None, description="失败时的稳定错误码")

    @property
    def is_delegation(self) -> bool:
        return self.parent_task_id is not None


class TaskError(BaseModel):
    """任务失败信息"""

    code: str
    message: str


class TaskResult(BaseModel):
    """执行循环的返回值"""

    task_id: str
    conversation_id: str
    status: TaskStatus
    agent_id: str = Field(description="结束时的当前 agent")
    text: str = Field(default="", description="最终回答文本")
    error: TaskError | None = None
    transfers: int = Field(default=0, description="本任务内发生的 transfer 次数")
