"""TaskService -- 任务提交/取消/查询业务逻辑

实现任务提交流程：
1. 拒绝空消息（不打开流）
2. 解析 agent 图，确定会话与起始 agent
3. 打开 StreamChannel 并创建 Task projection
4. 在后台 asyncio.Task 中运行 TaskExecutionLoop

同时负责后台维护：空闲流清理 + 过期终态任务清理。
"""

import asyncio
from datetime import UTC, datetime, timedelta

import structlog
from agentmesh.core.config import DEFAULT_PROJECT_ID, TASK_REPLAY_WINDOW_S
from agentmesh.core.errors import AgentMeshError, AgentNotFoundError, EmptyMessageError
from agentmesh.core.models import (
    TERMINAL_STATES,
    ActorType,
    ErrorPayload,
    MessagePart,
    StreamEvent,
    StreamEventType,
    Task,
    TaskInput,
    TaskStatus,
)
from agentmesh.core.store import (
    StoreGroup,
    create_task_with_conversation,
    purge_terminal_before,
)
from agentmesh.engine import (
    AgentGraphCache,
    StreamAffinityRegistry,
    StreamChannel,
    TaskEventRecorder,
    TaskExecutionLoop,
    build_task_id,
    is_explicit_conversation_id,
    new_conversation_id,
    new_turn_suffix,
)
from ulid import ULID

log = structlog.get_logger()

CANCELLED_CODE = "TASK_CANCELLED"


class TaskAlreadyTerminalError(AgentMeshError):
    """任务已在终态"""

    code = "TASK_ALREADY_TERMINAL"

    def __init__(self, task_id: str, status: TaskStatus) -> None:
        super().__init__(f"Task {task_id} is already {status.value}", task_id=task_id)


class TaskNotCancellableError(AgentMeshError):
    """委派子任务只能随根任务一起取消"""

    code = "TASK_NOT_CANCELLABLE"

    def __init__(self, task_id: str) -> None:
        super().__init__(
            f"Task {task_id} is a delegated child; cancel its root task instead",
            task_id=task_id,
        )


class StreamNotFoundHereError(AgentMeshError):
    """stream_id 不在本进程打开"""

    code = "STREAM_NOT_FOUND_HERE"

    def __init__(self, stream_id: str, instance_id: str) -> None:
        super().__init__(
            f"Stream {stream_id} is not open on this instance",
            stream_id=stream_id,
            instance_id=instance_id,
        )
        self.instance_id = instance_id


class TaskService:
    """任务业务服务

    持有本进程内运行中根任务的 asyncio.Task，取消即 cancel 对应 asyncio.Task。
    """

    def __init__(
        self,
        store_group: StoreGroup,
        graphs: AgentGraphCache,
        registry: StreamAffinityRegistry,
        loop: TaskExecutionLoop,
    ) -> None:
        self._stores = store_group
        self._graphs = graphs
        self._registry = registry
        self._loop = loop
        self._running: dict[str, asyncio.Task] = {}

    @property
    def instance_id(self) -> str:
        return self._registry.instance_id

    @property
    def running_count(self) -> int:
        return len(self._running)

    # ============================================================
    # 提交
    # ============================================================

    async def submit(
        self,
        text: str,
        parts: list[MessagePart] | None = None,
        conversation_id: str | None = None,
        project_id: str | None = None,
        agent_id: str | None = None,
    ) -> Task:
        """提交根任务并立即在后台开始执行

        Raises:
            EmptyMessageError: 输入无文本内容
            GraphNotFoundError / ConfigInvalidError: project 不存在或配置非法
            AgentNotFoundError: 指定 agent 不存在
            StreamConflictError: stream_id 冲突
        """
        message = TaskInput(text=text, parts=parts or [])
        if message.is_empty():
            raise EmptyMessageError()

        project_id = project_id or DEFAULT_PROJECT_ID
        graph = await self._graphs.get(project_id)

        if not is_explicit_conversation_id(conversation_id):
            conversation_id = new_conversation_id()

        if agent_id is not None:
            if graph.get(agent_id) is None:
                raise AgentNotFoundError(project_id, agent_id)
        else:
            agent_id = await self._resolve_active_agent(graph, conversation_id)

        now = datetime.now(UTC)
        turn_suffix = new_turn_suffix()
        task = Task(
            task_id=build_task_id(conversation_id, turn_suffix),
            conversation_id=conversation_id,
            project_id=project_id,
            current_agent_id=agent_id,
            status=TaskStatus.CREATED,
            created_at=now,
            updated_at=now,
            stream_id=f"strm_{turn_suffix}",
            input=message,
        )

        channel = await self._registry.open(task.stream_id, task.task_id)
        try:
            await create_task_with_conversation(
                self._stores.conn,
                self._stores.task_store,
                self._stores.conversation_store,
                task,
            )
        except Exception:
            await self._registry.close(task.stream_id)
            raise

        self._start(task, channel)
        log.info(
            "task_submitted",
            task_id=task.task_id,
            conversation_id=conversation_id,
            project_id=project_id,
            agent_id=agent_id,
            stream_id=task.stream_id,
        )
        return task

    async def _resolve_active_agent(self, graph, conversation_id: str) -> str:
        """会话活跃 agent（transfer 后更新）优先，否则使用入口 agent"""
        active = await self._stores.conversation_store.get_active_agent(conversation_id)
        if active is None:
            return graph.entry_agent_id
        if graph.get(active) is None:
            log.warning(
                "active_agent_missing_from_graph",
                conversation_id=conversation_id,
                agent_id=active,
                fallback=graph.entry_agent_id,
            )
            return graph.entry_agent_id
        return active

    def _start(self, task: Task, channel: StreamChannel) -> None:
        running = asyncio.create_task(
            self._loop.execute(task, channel),
            name=f"task-{task.task_id}",
        )
        self._running[task.task_id] = running
        running.add_done_callback(lambda _: self._running.pop(task.task_id, None))

    # ============================================================
    # 取消
    # ============================================================

    async def cancel_task(self, task_id: str) -> Task | None:
        """取消非终态根任务，等待其落盘 CANCELLED 后返回

        Returns:
            取消后的 Task；任务不存在时返回 None

        Raises:
            TaskNotCancellableError: 委派子任务
            TaskAlreadyTerminalError: 任务已在终态
        """
        task = await self._stores.task_store.get_task(task_id)
        if task is None:
            return None
        if task.is_delegation:
            raise TaskNotCancellableError(task_id)
        if task.status in TERMINAL_STATES:
            raise TaskAlreadyTerminalError(task_id, task.status)

        running = self._running.get(task_id)
        if running is not None:
            running.cancel()
            await asyncio.gather(running, return_exceptions=True)

        task = await self._stores.task_store.get_task(task_id)
        if task is not None and task.status not in TERMINAL_STATES:
            # 执行循环未启动（或不在本进程），由服务直接落盘取消
            await self._record_cancelled(task)
            task = await self._stores.task_store.get_task(task_id)

        log.info("task_cancel_requested", task_id=task_id, status=task.status.value)
        return task

    async def cancel_stream(self, stream_id: str) -> Task | None:
        """按续流 ID 取消：仅接受本进程打开的 stream

        Raises:
            StreamNotFoundHereError: stream_id 不在本进程
        """
        channel = self._registry.lookup_local(stream_id)
        if channel is None:
            raise StreamNotFoundHereError(stream_id, self.instance_id)
        return await self.cancel_task(channel.task_id)

    async def _record_cancelled(self, task: Task) -> None:
        recorder = TaskEventRecorder(self._stores)
        event = StreamEvent(
            event_id=str(ULID()),
            task_id=task.task_id,
            ts=datetime.now(UTC),
            type=StreamEventType.ERROR,
            actor=ActorType.SYSTEM,
            agent_id=task.current_agent_id,
            payload=ErrorPayload(code=CANCELLED_CODE, message="Task was cancelled").model_dump(),
        )
        event = await recorder.append(
            event,
            new_status=TaskStatus.CANCELLED,
            error_code=CANCELLED_CODE,
        )
        if task.stream_id:
            channel = self._registry.lookup_local(task.stream_id)
            if channel is not None and not channel.closed:
                channel.publish(event)
            await self._registry.close(task.stream_id)

    # ============================================================
    # 查询
    # ============================================================

    async def get_task(self, task_id: str) -> Task | None:
        return await self._stores.task_store.get_task(task_id)

    async def list_tasks(
        self,
        status: str | None = None,
        conversation_id: str | None = None,
    ) -> list[Task]:
        return await self._stores.task_store.list_tasks(status, conversation_id)

    async def list_events(self, task_id: str) -> list[StreamEvent]:
        return await self._stores.event_store.get_events_for_task(task_id)

    async def list_children(self, task_id: str) -> list[Task]:
        return await self._stores.task_store.list_children(task_id)

    # ============================================================
    # 后台维护
    # ============================================================

    async def run_maintenance(self) -> tuple[list[str], int]:
        """一次维护：关闭空闲流 + 清理超过保留窗口的终态任务

        Returns:
            (被清理的 stream_id 列表, 删除的任务数)
        """
        swept = await self._registry.sweep_idle()
        cutoff = datetime.now(UTC) - timedelta(seconds=TASK_REPLAY_WINDOW_S)
        purged = await purge_terminal_before(
            self._stores.conn,
            self._stores.event_store,
            self._stores.task_store,
            cutoff,
        )
        if purged:
            log.info("terminal_tasks_purged", count=purged, cutoff=cutoff.isoformat())
        return swept, purged

    async def maintenance_loop(self, interval_s: float) -> None:
        """周期维护，直到被取消"""
        while True:
            await asyncio.sleep(interval_s)
            try:
                await self.run_maintenance()
            except Exception as e:
                log.error("maintenance_failed", error_type=type(e).__name__, error=str(e))

    async def shutdown(self) -> None:
        """取消所有运行中的任务并等待其结束"""
        running = list(self._running.values())
        for task in running:
            task.cancel()
        if running:
            await asyncio.gather(*running, return_exceptions=True)
            log.info("running_tasks_cancelled", count=len(running))
