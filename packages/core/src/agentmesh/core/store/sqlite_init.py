"""SQLite 数据库初始化

PRAGMA 配置 + 三张表 DDL（tasks / task_events / conversations）+ 索引创建。
使用 aiosqlite 异步操作。
"""

import aiosqlite

# tasks 表 DDL（任务 projection）
_TASKS_DDL = """
CREATE TABLE IF NOT EXISTS tasks (
    task_id           TEXT PRIMARY KEY,
    conversation_id   TEXT,
    project_id        TEXT NOT NULL,
    current_agent_id  TEXT NOT NULL,
    status            TEXT NOT NULL DEFAULT 'CREATED',
    created_at        TEXT NOT NULL,
    updated_at        TEXT NOT NULL,
    parent_task_id    TEXT,
    stream_id         TEXT,
    delegation_depth  INTEGER NOT NULL DEFAULT 0,
    input             TEXT NOT NULL DEFAULT '{}',
    result_text       TEXT,
    error_code        TEXT
);
"""

_TASKS_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status);",
    "CREATE INDEX IF NOT EXISTS idx_tasks_conversation ON tasks(conversation_id, created_at);",
    "CREATE INDEX IF NOT EXISTS idx_tasks_parent ON tasks(parent_task_id);",
    "CREATE INDEX IF NOT EXISTS idx_tasks_created_at ON tasks(created_at DESC);",
]

# task_events 表 DDL（append-only）
_EVENTS_DDL = """
CREATE TABLE IF NOT EXISTS task_events (
    event_id   TEXT PRIMARY KEY,
    task_id    TEXT NOT NULL,
    task_seq   INTEGER NOT NULL,
    ts         TEXT NOT NULL,
    type       TEXT NOT NULL,
    actor      TEXT NOT NULL,
    agent_id   TEXT NOT NULL DEFAULT '',
    payload    TEXT NOT NULL DEFAULT '{}',

    FOREIGN KEY (task_id) REFERENCES tasks(task_id)
);
"""

_EVENTS_INDEXES = [
    # 任务内事件序号唯一约束（确保 task_seq 严格单调递增）
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_task_events_seq ON task_events(task_id, task_seq);",
]

# conversations 表 DDL（会话当前活跃 agent）
_CONVERSATIONS_DDL = """
CREATE TABLE IF NOT EXISTS conversations (
    conversation_id  TEXT PRIMARY KEY,
    project_id       TEXT NOT NULL,
    active_agent_id  TEXT NOT NULL,
    created_at       TEXT NOT NULL,
    updated_at       TEXT NOT NULL
);
"""


async def init_db(conn: aiosqlite.Connection) -> None:
    """初始化数据库：设置 PRAGMA + 创建表 + 创建索引

    Args:
        conn: aiosqlite 数据库连接
    """
    # 设置 PRAGMA
    await conn.execute("PRAGMA journal_mode = WAL;")
    await conn.execute("PRAGMA foreign_keys = ON;")
    await conn.execute("PRAGMA busy_timeout = 5000;")

    # 创建表
    await conn.execute(_TASKS_DDL)
    await conn.execute(_EVENTS_DDL)
    await conn.execute(_CONVERSATIONS_DDL)

    # 创建索引
    for idx_sql in _TASKS_INDEXES + _EVENTS_INDEXES:
        await conn.execute(idx_sql)

    await conn.commit()


async def verify_wal_mode(conn: aiosqlite.Connection) -> bool:
    """验证 WAL 模式是否生效

    Returns:
        True 如果 WAL 模式已启用
    """
    cursor = await conn.execute("PRAGMA journal_mode;")
    row = await cursor.fetchone()
    return row is not None and row[0].lower() == "wal"
