"""AgentMesh 异常体系

每个异常携带稳定的机器可读 code 与 recoverable 标记：
- recoverable=True: 组件内可恢复，转为模型可见的结构化结果（tool error）
- recoverable=False: 无恢复路径，任务进入 FAILED
"""

from typing import Any


class AgentMeshError(Exception):
    """AgentMesh 基础异常"""

    code: str = "INTERNAL_ERROR"
    recoverable: bool = False

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_payload(self) -> dict[str, Any]:
        """转换为模型可见 / 流事件可用的结构化错误"""
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class EmptyMessageError(AgentMeshError):
    """任务输入文本为空，在执行循环开始前拒绝"""

    code = "EMPTY_MESSAGE"

    def __init__(self, message: str = "No text content found in task input") -> None:
        super().__init__(message)


class ContextUnresolvableError(AgentMeshError):
    """无法从 task_id 推导会话 ID

    非致命：调用方应开启新的、未关联的会话并记录 warning。
    """

    code = "CONTEXT_UNRESOLVABLE"
    recoverable = True

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Cannot derive conversation id from task id: {task_id}", task_id=task_id)
        self.task_id = task_id


class ToolUnavailableError(AgentMeshError):
    """工具健康检查失败或任务内从未通过健康检查"""

    code = "TOOL_UNAVAILABLE"
    recoverable = True

    def __init__(self, tool_id: str, reason: str = "") -> None:
        message = f"Tool {tool_id} is unavailable"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message, tool_id=tool_id)
        self.tool_id = tool_id


class RoutingDeniedError(AgentMeshError):
    """transfer / delegate 目标未被授权"""

    code = "ROUTING_DENIED"
    recoverable = True

    def __init__(self, source_agent_id: str, target_agent_id: str, reason: str) -> None:
        super().__init__(
            f"Routing from {source_agent_id} to {target_agent_id} denied: {reason}",
            source_agent_id=source_agent_id,
            target_agent_id=target_agent_id,
        )
        self.target_agent_id = target_agent_id


class ChildTaskFailedError(AgentMeshError):
    """委派的子任务失败，以结构化结果交还父任务"""

    code = "CHILD_TASK_FAILED"
    recoverable = True

    def __init__(self, child_task_id: str, cause_code: str, cause_message: str) -> None:
        super().__init__(
            f"Delegated task {child_task_id} failed: {cause_message}",
            child_task_id=child_task_id,
            cause=cause_code,
        )
        self.child_task_id = child_task_id
        self.cause_code = cause_code


class InvalidDirectiveError(AgentMeshError):
    """模型输出无法解析为已知 directive 变体"""

    code = "INVALID_DIRECTIVE"
    recoverable = True


class StreamConflictError(AgentMeshError):
    """同一进程内 stream_id 已被占用，仅对新请求致命"""

    code = "STREAM_CONFLICT"

    def __init__(self, stream_id: str) -> None:
        super().__init__(f"Stream {stream_id} is already open", stream_id=stream_id)
        self.stream_id = stream_id


class StreamClosedError(AgentMeshError):
    """向已关闭的 StreamChannel 发布事件"""

    code = "STREAM_CLOSED"

    def __init__(self, stream_id: str) -> None:
        super().__init__(f"Stream {stream_id} is closed", stream_id=stream_id)
        self.stream_id = stream_id


class InferenceUnavailableError(AgentMeshError):
    """模型推理在有限重试后仍不可用"""

    code = "INFERENCE_UNAVAILABLE"


class LimitExceededError(AgentMeshError):
    """transfer 次数或模型轮次超过上限"""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code


class GraphNotFoundError(AgentMeshError):
    """project 不存在"""

    code = "PROJECT_NOT_FOUND"

    def __init__(self, project_id: str) -> None:
        super().__init__(f"Project {project_id} does not exist", project_id=project_id)
        self.project_id = project_id


class AgentNotFoundError(AgentMeshError):
    """project 内不存在指定 agent"""

    code = "AGENT_NOT_FOUND"

    def __init__(self, project_id: str, agent_id: str) -> None:
        super().__init__(
            f"Agent {agent_id} does not exist in project {project_id}",
            project_id=project_id,
            agent_id=agent_id,
        )


class ConfigInvalidError(AgentMeshError):
    """Agent Graph 配置非法（悬空引用、缺少入口、委派环等）"""

    code = "CONFIG_INVALID"

    def __init__(self, project_id: str, problems: list[str]) -> None:
        super().__init__(
            f"Invalid agent graph for project {project_id}: " + "; ".join(problems),
            project_id=project_id,
        )
        self.problems = problems
