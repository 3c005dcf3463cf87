"""StreamEvent Domain Model

task_events 表 append-only，不允许更新（终态任务过保留窗口后整体清理）。
event_id 使用 ULID 格式，时间有序；task_seq 同一 task 内严格单调递增。
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from .enums import ActorType, StreamEventType


class StreamEvent(BaseModel):
    """任务流事件

    同一事件既落盘到 task_events，又（根任务）通过 StreamChannel 投递给客户端。
    seq 为 StreamChannel 内的投递序号（SSE id），仅对投递过的事件有值。
    """

    event_id: str = Field(description="唯一标识，ULID 格式，时间有序")
    task_id: str = Field(description="关联的 Task ID")
    task_seq: int = Field(default=0, description="任务内序号，严格单调递增")
    ts: datetime = Field(description="事件时间戳")
    type: StreamEventType = Field(description="事件类型")
    actor: ActorType = Field(default=ActorType.SYSTEM, description="操作者")
    agent_id: str = Field(default="", description="产生事件时的当前 agent")
    payload: dict[str, Any] = Field(default_factory=dict, description="结构化 payload")
    seq: int | None = Field(default=None, description="StreamChannel 投递序号")

    def to_wire(self) -> dict[str, Any]:
        """转换为 SSE data JSON"""
        return {
            "event_id": self.event_id,
            "task_id": self.task_id,
            "seq": self.seq,
            "ts": self.ts.isoformat(),
            "type": self.type.value,
            "agent_id": self.agent_id,
            "payload": self.payload,
        }
