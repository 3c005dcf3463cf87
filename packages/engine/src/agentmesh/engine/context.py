"""Context Tracker -- 会话标识的推导与传播

task_id 语法（版本 1）：task_<conversation-slug>-<turn-suffix>
conversation-slug 形如 <a>-<b>-<digits>，例如 conv-01j9zq4k7m-1718000000000。
显式 conversation_id 缺省（空或 "default"）时，按去后缀规则从 task_id 提取。
"""

import re
import time

import structlog
from agentmesh.core.errors import ContextUnresolvableError
from agentmesh.core.models import Task
from ulid import ULID

log = structlog.get_logger()

TASK_ID_GRAMMAR_VERSION = 1
TASK_ID_PATTERN = re.compile(r"^task_([^-]+-[^-]+-\d+)-")

# 视为"未提供"的显式会话值
_ABSENT_CONVERSATION_IDS = {"", "default"}


def is_explicit_conversation_id(conversation_id: str | None) -> bool:
    return conversation_id is not None and conversation_id not in _ABSENT_CONVERSATION_IDS


def has_explicit_conversation(task: Task) -> bool:
    return is_explicit_conversation_id(task.conversation_id)


def derive_context(task: Task) -> str:
    """返回任务的会话 ID

    同一输入总是得到同一结果（幂等），不修改 task。

    Raises:
        ContextUnresolvableError: 无显式会话且 task_id 不符合语法
    """
    if has_explicit_conversation(task):
        return task.conversation_id
    match = TASK_ID_PATTERN.match(task.task_id)
    if match is None:
        raise ContextUnresolvableError(task.task_id)
    return match.group(1)


def derive_or_start(task: Task) -> str:
    """推导会话 ID，失败时开启新的、未关联的会话"""
    try:
        return derive_context(task)
    except ContextUnresolvableError:
        conversation_id = new_conversation_id()
        log.warning(
            "context_unresolvable_new_conversation",
            task_id=task.task_id,
            conversation_id=conversation_id,
        )
        return conversation_id


def propagate(parent_context: str, child_task: Task) -> Task:
    """在委派边上将父会话 ID 写入子任务（派发前调用）"""
    return child_task.model_copy(update={"conversation_id": parent_context})


def new_conversation_id() -> str:
    """生成满足 task_id 语法的会话 ID：conv-<ulid>-<epoch-ms>"""
    return f"conv-{str(ULID()).lower()}-{int(time.time() * 1000)}"


def build_task_id(conversation_id: str, turn_suffix: str) -> str:
    """构建 task_id：task_<conversation-slug>-<turn-suffix>"""
    return f"task_{conversation_id}-{turn_suffix}"


def new_turn_suffix() -> str:
    return str(ULID()).lower()
