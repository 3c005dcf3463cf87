"""StreamEvent Payload 子类型

所有流事件的结构化 payload 定义，执行循环通过 model_dump() 写入事件。
"""

from typing import Any

from pydantic import BaseModel, Field


class TokenPayload(BaseModel):
    """token 事件 payload"""

    text: str


class ToolCallPayload(BaseModel):
    """tool_call 事件 payload"""

    call_id: str
    tool_name: str
    arguments: dict[str, Any] = Field(default_factory=dict)


class ToolResultPayload(BaseModel):
    """tool_result 事件 payload"""

    call_id: str
    tool_name: str
    is_error: bool = False
    output: Any = None
    duration_ms: int = 0


class TransferPayload(BaseModel):
    """transfer 事件 payload"""

    from_agent_id: str
    to_agent_id: str
    reason: str = Field(default="")


class DelegateStartPayload(BaseModel):
    """delegate_start 事件 payload"""

    delegation_id: str
    child_task_id: str
    from_agent_id: str
    to_agent_id: str
    message_preview: str = Field(description="委派消息预览（截断到 200 字符）")


class DelegateResultPayload(BaseModel):
    """delegate_result 事件 payload"""

    delegation_id: str
    child_task_id: str
    status: str
    text: str = ""
    error: dict[str, Any] | None = None


class FinalPayload(BaseModel):
    """final 事件 payload"""

    text: str
    agent_id: str
    transfers: int = 0
    usage: dict[str, Any] = Field(default_factory=dict, description="本任务推理用量与成本累计")


class ErrorPayload(BaseModel):
    """error 事件 payload"""

    code: str = Field(description="稳定的机器可读错误码")
    message: str
    recoverable: bool = Field(default=False)
