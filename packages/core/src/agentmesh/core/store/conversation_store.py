"""ConversationStore SQLite 实现

记录每个会话当前的活跃 agent：transfer 后更新，
同一会话的后续提交默认路由到该 agent。
"""

from datetime import UTC, datetime

import aiosqlite


class SqliteConversationStore:
    """ConversationStore 的 SQLite 实现"""

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn

    async def get_active_agent(self, conversation_id: str) -> str | None:
        """查询会话当前活跃 agent，会话不存在时返回 None"""
        cursor = await self._conn.execute(
            "SELECT active_agent_id FROM conversations WHERE conversation_id = ?",
            (conversation_id,),
        )
        row = await cursor.fetchone()
        return row[0] if row else None

    async def set_active_agent(
        self,
        conversation_id: str,
        project_id: str,
        agent_id: str,
    ) -> None:
        """写入会话活跃 agent（upsert，不自动提交）"""
        now = datetime.now(UTC).isoformat()
        await self._conn.execute(
            """
            INSERT INTO conversations (conversation_id, project_id, active_agent_id,
                                       created_at, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(conversation_id) DO UPDATE
            SET active_agent_id = excluded.active_agent_id,
                updated_at = excluded.updated_at
            """,
            (conversation_id, project_id, agent_id, now, now),
        )
