"""TaskStore SQLite 实现

tasks 表是任务的物化视图（projection）。
状态更新由执行循环经 transaction 模块与事件一起原子提交，此处仅提供数据库操作。
"""

from datetime import datetime

import aiosqlite

from ..models.enums import TERMINAL_STATES, TaskStatus
from ..models.message import TaskInput
from ..models.task import Task


class SqliteTaskStore:
    """TaskStore 的 SQLite 实现"""

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn

    async def create_task(self, task: Task) -> None:
        """创建任务记录（不自动提交）"""
        await self._conn.execute(
            """
            INSERT INTO tasks (task_id, conversation_id, project_id, current_agent_id,
                               status, created_at, updated_at, parent_task_id,
                               stream_id, delegation_depth, input, result_text, error_code)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                task.task_id,
                task.conversation_id,
                task.project_id,
                task.current_agent_id,
                task.status.value,
                task.created_at.isoformat(),
                task.updated_at.isoformat(),
                task.parent_task_id,
                task.stream_id,
                task.delegation_depth,
                task.input.model_dump_json(),
                task.result_text,
                task.error_code,
            ),
        )

    async def get_task(self, task_id: str) -> Task | None:
        """根据 task_id 查询任务"""
        cursor = await self._conn.execute(
            "SELECT * FROM tasks WHERE task_id = ?",
            (task_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return self._row_to_task(row)

    async def list_tasks(
        self,
        status: str | None = None,
        conversation_id: str | None = None,
    ) -> list[Task]:
        """查询任务列表，支持按状态 / 会话筛选，按 created_at 倒序"""
        clauses: list[str] = []
        params: list[str] = []
        if status:
            clauses.append("status = ?")
            params.append(status)
        if conversation_id:
            clauses.append("conversation_id = ?")
            params.append(conversation_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        cursor = await self._conn.execute(
            f"SELECT * FROM tasks {where} ORDER BY created_at DESC",
            params,
        )
        rows = await cursor.fetchall()
        return [self._row_to_task(row) for row in rows]

    async def list_children(self, parent_task_id: str) -> list[Task]:
        """查询委派子任务"""
        cursor = await self._conn.execute(
            "SELECT * FROM tasks WHERE parent_task_id = ? ORDER BY created_at ASC",
            (parent_task_id,),
        )
        rows = await cursor.fetchall()
        return [self._row_to_task(row) for row in rows]

    async def list_conversation_turns(
        self,
        conversation_id: str,
        limit: int,
        exclude_task_id: str | None = None,
    ) -> list[Task]:
        """查询会话内已完成的根任务（最近 limit 条，按时间正序），用于历史回放"""
        cursor = await self._conn.execute(
            """
            SELECT * FROM tasks
            WHERE conversation_id = ? AND parent_task_id IS NULL
              AND status = ? AND task_id != ?
            ORDER BY created_at DESC
            LIMIT ?
            """,
            (conversation_id, TaskStatus.COMPLETED.value, exclude_task_id or "", limit),
        )
        rows = await cursor.fetchall()
        return [self._row_to_task(row) for row in reversed(rows)]

    async def update_task(
        self,
        task_id: str,
        updated_at: str,
        status: str | None = None,
        current_agent_id: str | None = None,
        result_text: str | None = None,
        error_code: str | None = None,
    ) -> None:
        """更新任务 projection（仅由执行循环经事务调用），None 字段保持不变"""
        await self._conn.execute(
            """
            UPDATE tasks
            SET updated_at = ?,
                status = COALESCE(?, status),
                current_agent_id = COALESCE(?, current_agent_id),
                result_text = COALESCE(?, result_text),
                error_code = COALESCE(?, error_code)
            WHERE task_id = ?
            """,
            (updated_at, status, current_agent_id, result_text, error_code, task_id),
        )

    async def list_expired_terminal(self, cutoff: datetime) -> list[str]:
        """查询终态且 updated_at 早于 cutoff 的任务 ID"""
        terminal = [s.value for s in TERMINAL_STATES]
        placeholders = ", ".join("?" for _ in terminal)
        cursor = await self._conn.execute(
            f"SELECT task_id FROM tasks WHERE status IN ({placeholders}) AND updated_at < ?",
            (*terminal, cutoff.isoformat()),
        )
        rows = await cursor.fetchall()
        return [row[0] for row in rows]

    async def delete_tasks(self, task_ids: list[str]) -> None:
        """删除任务记录（调用方需先删除其事件）"""
        await self._conn.executemany(
            "DELETE FROM tasks WHERE task_id = ?",
            [(task_id,) for task_id in task_ids],
        )

    @staticmethod
    def _row_to_task(row: aiosqlite.Row) -> Task:
        """将数据库行转换为 Task 模型"""
        return Task(
            task_id=row["task_id"],
            conversation_id=row["conversation_id"],
            project_id=row["project_id"],
            current_agent_id=row["current_agent_id"],
            status=TaskStatus(row["status"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
            parent_task_id=row["parent_task_id"],
            stream_id=row["stream_id"],
            delegation_depth=row["delegation_depth"],
            input=TaskInput.model_validate_json(row["input"]),
            result_text=row["result_text"],
            error_code=row["error_code"],
        )
