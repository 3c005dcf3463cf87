"""EventStore SQLite 实现

task_events 表 append-only：只允许插入，不允许更新；
终态任务超过保留窗口后随任务整体删除。
task_seq 同一 task 内严格单调递增。
"""

import json
from datetime import datetime

import aiosqlite

from ..models.enums import ActorType, StreamEventType
from ..models.event import StreamEvent


class SqliteEventStore:
    """EventStore 的 SQLite 实现"""

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn

    async def append_event(self, event: StreamEvent) -> None:
        """追加事件（append-only）

        注意：此方法不自动提交事务，需由调用方管理事务。
        """
        await self._conn.execute(
            """
            INSERT INTO task_events (event_id, task_id, task_seq, ts, type,
                                     actor, agent_id, payload)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                event.event_id,
                event.task_id,
                event.task_seq,
                event.ts.isoformat(),
                event.type.value,
                event.actor.value,
                event.agent_id,
                json.dumps(event.payload, ensure_ascii=False),
            ),
        )

    async def get_events_for_task(self, task_id: str) -> list[StreamEvent]:
        """查询指定任务的所有事件，按 task_seq 正序"""
        cursor = await self._conn.execute(
            "SELECT * FROM task_events WHERE task_id = ? ORDER BY task_seq ASC",
            (task_id,),
        )
        rows = await cursor.fetchall()
        return [self._row_to_event(row) for row in rows]

    async def get_next_task_seq(self, task_id: str) -> int:
        """获取指定任务的下一个 task_seq（MAX+1）"""
        cursor = await self._conn.execute(
            "SELECT COALESCE(MAX(task_seq), 0) FROM task_events WHERE task_id = ?",
            (task_id,),
        )
        row = await cursor.fetchone()
        return (row[0] if row else 0) + 1

    async def delete_events_for_tasks(self, task_ids: list[str]) -> None:
        """删除过期任务的事件（仅由保留窗口清理调用）"""
        await self._conn.executemany(
            "DELETE FROM task_events WHERE task_id = ?",
            [(task_id,) for task_id in task_ids],
        )

    @staticmethod
    def _row_to_event(row: aiosqlite.Row) -> StreamEvent:
        """将数据库行转换为 StreamEvent 模型"""
        payload = json.loads(row["payload"]) if row["payload"] else {}
        return StreamEvent(
            event_id=row["event_id"],
            task_id=row["task_id"],
            task_seq=row["task_seq"],
            ts=datetime.fromisoformat(row["ts"]),
            type=StreamEventType(row["type"]),
            actor=ActorType(row["actor"]),
            agent_id=row["agent_id"],
            payload=payload,
        )
