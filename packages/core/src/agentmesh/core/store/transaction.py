"""跨表原子写入

事件追加与 tasks / conversations projection 更新必须在同一 SQLite 事务内提交，
任何一步失败整体回滚，避免 task_events 与 tasks 不一致。
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime

import aiosqlite

from ..models.event import StreamEvent
from ..models.task import Task
from .conversation_store import SqliteConversationStore
from .event_store import SqliteEventStore
from .task_store import SqliteTaskStore


@asynccontextmanager
async def atomic(conn: aiosqlite.Connection) -> AsyncIterator[None]:
    """正常退出时 commit，异常时 rollback 并原样抛出"""
    try:
        yield
    except BaseException:
        await conn.rollback()
        raise
    await conn.commit()


async def create_task_with_conversation(
    conn: aiosqlite.Connection,
    task_store: SqliteTaskStore,
    conversation_store: SqliteConversationStore,
    task: Task,
) -> None:
    """创建任务；根任务同时登记会话活跃 agent"""
    async with atomic(conn):
        await task_store.create_task(task)
        if task.conversation_id and not task.is_delegation:
            await conversation_store.set_active_agent(
                task.conversation_id, task.project_id, task.current_agent_id
            )


async def append_event_and_update_task(
    conn: aiosqlite.Connection,
    event_store: SqliteEventStore,
    task_store: SqliteTaskStore,
    event: StreamEvent,
    new_status: str | None = None,
    current_agent_id: str | None = None,
    result_text: str | None = None,
    error_code: str | None = None,
) -> None:
    """追加事件并同步任务 projection

    为 None 的字段保持不变；updated_at 取事件时间。
    """
    async with atomic(conn):
        await event_store.append_event(event)
        await task_store.update_task(
            task_id=event.task_id,
            updated_at=event.ts.isoformat(),
            status=new_status,
            current_agent_id=current_agent_id,
            result_text=result_text,
            error_code=error_code,
        )


async def update_task_status(
    conn: aiosqlite.Connection,
    task_store: SqliteTaskStore,
    task_id: str,
    new_status: str,
    updated_at: datetime,
    current_agent_id: str | None = None,
) -> None:
    """不产生流事件的中间状态流转（如 CREATED -> ROUTING）"""
    async with atomic(conn):
        await task_store.update_task(
            task_id=task_id,
            updated_at=updated_at.isoformat(),
            status=new_status,
            current_agent_id=current_agent_id,
        )


async def record_transfer(
    conn: aiosqlite.Connection,
    event_store: SqliteEventStore,
    task_store: SqliteTaskStore,
    conversation_store: SqliteConversationStore,
    event: StreamEvent,
    project_id: str,
    conversation_id: str,
    target_agent_id: str,
    persist_conversation: bool = True,
) -> None:
    """transfer 事件 + 任务当前 agent + 会话活跃 agent"""
    async with atomic(conn):
        await event_store.append_event(event)
        await task_store.update_task(
            task_id=event.task_id,
            updated_at=event.ts.isoformat(),
            current_agent_id=target_agent_id,
        )
        if persist_conversation:
            await conversation_store.set_active_agent(
                conversation_id, project_id, target_agent_id
            )


async def purge_terminal_before(
    conn: aiosqlite.Connection,
    event_store: SqliteEventStore,
    task_store: SqliteTaskStore,
    cutoff: datetime,
) -> int:
    """删除 updated_at 早于 cutoff 的终态任务及其事件，返回删除的任务数"""
    async with atomic(conn):
        task_ids = await task_store.list_expired_terminal(cutoff)
        if task_ids:
            await event_store.delete_events_for_tasks(task_ids)
            await task_store.delete_tasks(task_ids)
    return len(task_ids)
