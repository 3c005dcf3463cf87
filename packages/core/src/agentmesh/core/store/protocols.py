"""Store Protocol 接口定义

定义 TaskStore、EventStore、ConversationStore 的抽象接口，
使用 Python Protocol 实现结构化子类型（duck typing）。
"""

from datetime import datetime
from typing import Protocol

from ..models.event import StreamEvent
from ..models.task import Task


class TaskStore(Protocol):
    """Task 存储接口"""

    async def create_task(self, task: Task) -> None:
        """创建任务记录"""
        ...

    async def get_task(self, task_id: str) -> Task | None:
        """根据 task_id 查询任务"""
        ...

    async def list_tasks(
        self,
        status: str | None = None,
        conversation_id: str | None = None,
    ) -> list[Task]:
        """查询任务列表，支持按状态 / 会话筛选"""
        ...

    async def list_conversation_turns(
        self,
        conversation_id: str,
        limit: int,
        exclude_task_id: str | None = None,
    ) -> list[Task]:
        """查询会话内已完成的根任务"""
        ...

    async def update_task(
        self,
        task_id: str,
        updated_at: str,
        status: str | None = None,
        current_agent_id: str | None = None,
        result_text: str | None = None,
        error_code: str | None = None,
    ) -> None:
        """更新任务 projection（仅由执行循环调用）"""
        ...

    async def list_expired_terminal(self, cutoff: datetime) -> list[str]:
        """查询超过保留窗口的终态任务"""
        ...


class EventStore(Protocol):
    """StreamEvent 存储接口

    事件表 append-only：只允许插入，不允许更新。
    """

    async def append_event(self, event: StreamEvent) -> None:
        """追加事件（append-only）"""
        ...

    async def get_events_for_task(self, task_id: str) -> list[StreamEvent]:
        """查询指定任务的所有事件"""
        ...

    async def get_next_task_seq(self, task_id: str) -> int:
        """获取指定任务的下一个 task_seq（MAX+1）"""
        ...


class ConversationStore(Protocol):
    """会话活跃 agent 存储接口"""

    async def get_active_agent(self, conversation_id: str) -> str | None:
        """查询会话当前活跃 agent"""
        ...

    async def set_active_agent(
        self,
        conversation_id: str,
        project_id: str,
        agent_id: str,
    ) -> None:
        """写入会话活跃 agent"""
        ...
