"""枚举定义

包含 TaskStatus 状态机、StreamEventType、ActorType、ToolHealthStatus、PartType 枚举，
以及 VALID_TRANSITIONS 合法流转映射和 TERMINAL_STATES 终态集合。
"""

from enum import StrEnum


class TaskStatus(StrEnum):
    """Task 状态机

    Created -> Routing -> {Handling | Transferring | Delegating}
    Delegating -> AwaitingChild -> Routing
    Handling -> {Routing | Streaming}, Streaming -> Completed
    """

    CREATED = "CREATED"
    ROUTING = "ROUTING"
    HANDLING = "HANDLING"
    TRANSFERRING = "TRANSFERRING"
    DELEGATING = "DELEGATING"
    AWAITING_CHILD = "AWAITING_CHILD"
    STREAMING = "STREAMING"

    # 终态
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


TERMINAL_STATES: set[TaskStatus] = {
    TaskStatus.COMPLETED,
    TaskStatus.FAILED,
    TaskStatus.CANCELLED,
}

_ABORT = {TaskStatus.FAILED, TaskStatus.CANCELLED}

VALID_TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.CREATED: {TaskStatus.ROUTING} | _ABORT,
    TaskStatus.ROUTING: {
        TaskStatus.HANDLING,
        TaskStatus.TRANSFERRING,
        TaskStatus.DELEGATING,
    }
    | _ABORT,
    TaskStatus.HANDLING: {TaskStatus.ROUTING, TaskStatus.STREAMING} | _ABORT,
    TaskStatus.TRANSFERRING: {TaskStatus.ROUTING} | _ABORT,
    TaskStatus.DELEGATING: {TaskStatus.AWAITING_CHILD} | _ABORT,
    TaskStatus.AWAITING_CHILD: {TaskStatus.ROUTING} | _ABORT,
    TaskStatus.STREAMING: {TaskStatus.COMPLETED} | _ABORT,
    # 终态不可再流转
    TaskStatus.COMPLETED: set(),
    TaskStatus.FAILED: set(),
    TaskStatus.CANCELLED: set(),
}


class StreamEventType(StrEnum):
    """流事件类型 -- 按投递顺序下发，final（或唯一的 error）总是最后一条"""

    TOKEN = "token"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    TRANSFER = "transfer"
    DELEGATE_START = "delegate_start"
    DELEGATE_RESULT = "delegate_result"
    FINAL = "final"
    ERROR = "error"


TERMINAL_EVENT_TYPES: set[StreamEventType] = {
    StreamEventType.FINAL,
    StreamEventType.ERROR,
}


class ActorType(StrEnum):
    """操作者类型"""

    USER = "user"
    AGENT = "agent"
    TOOL = "tool"
    SYSTEM = "system"


class ToolHealthStatus(StrEnum):
    """工具健康状态"""

    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


class PartType(StrEnum):
    """消息 Part 类型 -- 对齐 A2A Part"""

    TEXT = "text"
    DATA = "data"
    FILE = "file"


def validate_transition(from_status: TaskStatus, to_status: TaskStatus) -> bool:
    """验证状态流转是否合法

    Args:
        from_status: 当前状态
        to_status: 目标状态

    Returns:
        True 如果流转合法，否则 False
    """
    allowed = VALID_TRANSITIONS.get(from_status, set())
    return to_status in allowed
