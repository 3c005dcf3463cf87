"""TaskEventRecorder -- 任务事件落盘

同一任务的事件写入经 task 级别锁串行化，task_seq 取 MAX+1，
唯一约束冲突时重试。任务进入终态后清理锁。
"""

import asyncio
from datetime import UTC, datetime

import aiosqlite
import structlog
from agentmesh.core.models import TERMINAL_STATES, StreamEvent, TaskStatus
from agentmesh.core.store import (
    StoreGroup,
    append_event_and_update_task,
    record_transfer,
    update_task_status,
)

log = structlog.get_logger()


class TaskEventRecorder:
    """任务事件与 projection 写入器"""

    _max_task_seq_retries = 3

    def __init__(self, store_group: StoreGroup) -> None:
        self._stores = store_group
        self._task_locks: dict[str, asyncio.Lock] = {}
        self._task_locks_guard = asyncio.Lock()

    async def _get_task_lock(self, task_id: str) -> asyncio.Lock:
        """获取 task 级别锁，序列化同一任务的事件写入。"""
        async with self._task_locks_guard:
            lock = self._task_locks.get(task_id)
            if lock is None:
                lock = asyncio.Lock()
                self._task_locks[task_id] = lock
            return lock

    async def _cleanup_task_lock(self, task_id: str) -> None:
        """任务终态后清理 lock，避免全局字典无限增长。"""
        async with self._task_locks_guard:
            lock = self._task_locks.get(task_id)
            if lock is not None and not lock.locked():
                self._task_locks.pop(task_id, None)

    @staticmethod
    def _is_task_seq_conflict(error: Exception) -> bool:
        if not isinstance(error, aiosqlite.IntegrityError):
            return False
        text = str(error)
        return "idx_task_events_seq" in text or "task_events.task_id, task_events.task_seq" in text

    async def append(
        self,
        event: StreamEvent,
        new_status: TaskStatus | None = None,
        current_agent_id: str | None = None,
        result_text: str | None = None,
        error_code: str | None = None,
    ) -> StreamEvent:
        """写事件并更新 projection，在 task_seq 冲突时重试。

        Returns:
            带 task_seq 的事件
        """
        task_id = event.task_id
        lock = await self._get_task_lock(task_id)
        async with lock:
            for attempt in range(1, self._max_task_seq_retries + 1):
                seq = await self._stores.event_store.get_next_task_seq(task_id)
                stamped = event.model_copy(update={"task_seq": seq})
                try:
                    await append_event_and_update_task(
                        self._stores.conn,
                        self._stores.event_store,
                        self._stores.task_store,
                        stamped,
                        new_status=new_status.value if new_status else None,
                        current_agent_id=current_agent_id,
                        result_text=result_text,
                        error_code=error_code,
                    )
                    break
                except aiosqlite.IntegrityError as e:
                    if self._is_task_seq_conflict(e) and attempt < self._max_task_seq_retries:
                        log.warning("task_seq_conflict_retry", task_id=task_id, attempt=attempt)
                        continue
                    raise
        if new_status in TERMINAL_STATES:
            await self._cleanup_task_lock(task_id)
        return stamped

    async def append_transfer(
        self,
        event: StreamEvent,
        project_id: str,
        conversation_id: str,
        target_agent_id: str,
        persist_conversation: bool,
    ) -> StreamEvent:
        """写 transfer 事件，同事务更新任务当前 agent 与会话活跃 agent"""
        lock = await self._get_task_lock(event.task_id)
        async with lock:
            seq = await self._stores.event_store.get_next_task_seq(event.task_id)
            stamped = event.model_copy(update={"task_seq": seq})
            await record_transfer(
                self._stores.conn,
                self._stores.event_store,
                self._stores.task_store,
                self._stores.conversation_store,
                stamped,
                project_id=project_id,
                conversation_id=conversation_id,
                target_agent_id=target_agent_id,
                persist_conversation=persist_conversation,
            )
        return stamped

    async def set_status(self, task_id: str, status: TaskStatus) -> None:
        """不产生流事件的中间状态流转"""
        lock = await self._get_task_lock(task_id)
        async with lock:
            await update_task_status(
                self._stores.conn,
                self._stores.task_store,
                task_id,
                status.value,
                datetime.now(UTC),
            )
