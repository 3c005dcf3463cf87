"""配置常量模块 -- 可通过环境变量覆盖

包含数据库路径、Agent Graph 定义目录、各类 TTL / 超时 / 保留窗口等可配置常量。
"""

import os
from pathlib import Path

from ulid import ULID


def _get_base_dir() -> Path:
    """获取项目 data 基础目录"""
    return Path(os.environ.get("AGENTMESH_DATA_DIR", "data"))


def get_db_path() -> str:
    """获取 SQLite 数据库路径"""
    return os.environ.get(
        "AGENTMESH_DB_PATH",
        str(_get_base_dir() / "sqlite" / "agentmesh.db"),
    )


def get_graph_dir() -> Path:
    """获取 Agent Graph 定义目录（每个 project 一个 JSON 文件）"""
    return Path(
        os.environ.get(
            "AGENTMESH_GRAPH_DIR",
            str(_get_base_dir() / "graphs"),
        )
    )


def get_instance_id() -> str:
    """获取当前进程实例标识

    未配置时每次进程启动生成一个新的 ULID，"not found here" 响应中会带上此值，
    供部署层把续流请求路由回正确实例。
    """
    return os.environ.get("AGENTMESH_INSTANCE_ID") or f"inst-{ULID()}"


# 默认 project（提交任务时未指定 project_id 时使用）
DEFAULT_PROJECT_ID: str = os.environ.get("AGENTMESH_DEFAULT_PROJECT", "default")

# 终态任务保留窗口（秒），超过后连同事件一起清理
TASK_REPLAY_WINDOW_S: int = int(
    os.environ.get("AGENTMESH_TASK_REPLAY_WINDOW_S", "3600")
)

# 后台维护（空闲流清理 + 过期任务清理）间隔（秒）
MAINTENANCE_INTERVAL_S: int = int(
    os.environ.get("AGENTMESH_MAINTENANCE_INTERVAL_S", "30")
)

# SSE 心跳间隔（秒）
SSE_HEARTBEAT_INTERVAL: int = int(
    os.environ.get("AGENTMESH_SSE_HEARTBEAT_INTERVAL", "15")
)

# StreamChannel 重放缓冲区大小（事件条数）
STREAM_REPLAY_BUFFER_SIZE: int = int(
    os.environ.get("AGENTMESH_STREAM_REPLAY_BUFFER_SIZE", "1000")
)

# 注入模型的历史轮次上限（同一会话内已完成的根任务）
CONVERSATION_HISTORY_LIMIT: int = 20

# 消息预览截断长度
MESSAGE_PREVIEW_LENGTH: int = 200
