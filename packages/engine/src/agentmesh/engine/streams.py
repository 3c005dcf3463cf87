"""Stream Affinity Registry -- 进程内 StreamChannel 注册表

StreamChannel 只存在于接收请求的进程内：同一 stream_id 同一时刻只有一个活跃 channel，
续流请求通过 lookup_local 查找，找不到即拒绝（由部署层负责把请求路由回正确实例）。
任务结束后通道关闭但仍保留在注册表中（只重放），空闲超过 idle_timeout_s 后才移除，
因此快速完成的任务也能被稍后接入的客户端完整读取。
注册表从不发起网络调用。
"""

import asyncio
import time
from collections import deque
from collections.abc import AsyncIterator, Callable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime

import structlog
from agentmesh.core.errors import StreamClosedError, StreamConflictError
from agentmesh.core.models import ActorType, StreamEvent, StreamEventType
from ulid import ULID

log = structlog.get_logger()

# 订阅队列中的关闭哨兵
_CLOSED = object()

STREAM_IDLE_TIMEOUT_CODE = "STREAM_IDLE_TIMEOUT"


class StreamChannel:
    """单个流的投递通道

    - publish 为事件分配递增 seq（即 SSE id），写入有界重放缓冲并扇出给所有订阅者
    - subscribe(last_event_id) 先重放缓冲中 seq 更大的事件，再接收实时事件
    - close 只生效一次，之后 publish 抛 StreamClosedError
    """

    def __init__(
        self,
        stream_id: str,
        task_id: str,
        replay_buffer_size: int = 1000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.stream_id = stream_id
        self.task_id = task_id
        self._buffer: deque[StreamEvent] = deque(maxlen=replay_buffer_size)
        self._subscribers: set[asyncio.Queue] = set()
        self._seq = 0
        self._closed = False
        self._busy = 0
        self._clock = clock
        self.last_activity = clock()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    @property
    def busy(self) -> bool:
        """生产方正在等待子任务或工具，期间不算空闲"""
        return self._busy > 0

    def touch(self) -> None:
        self.last_activity = self._clock()

    @contextmanager
    def hold(self) -> Iterator[None]:
        """标记生产方仍在工作（可嵌套），退出时刷新活跃时间"""
        self._busy += 1
        try:
            yield
        finally:
            self._busy -= 1
            self.touch()

    def idle_for(self, now: float) -> float:
        if self.busy:
            return 0.0
        return now - self.last_activity

    def publish(self, event: StreamEvent) -> StreamEvent:
        """投递事件，返回带 seq 的事件

        Raises:
            StreamClosedError: 通道已关闭
        """
        if self._closed:
            raise StreamClosedError(self.stream_id)
        self._seq += 1
        stamped = event.model_copy(update={"seq": self._seq})
        self._buffer.append(stamped)
        for queue in self._subscribers:
            queue.put_nowait(stamped)
        self.last_activity = self._clock()
        return stamped

    def subscribe(self, last_event_id: int | None = None) -> asyncio.Queue:
        """订阅通道，返回的队列先包含需重放的事件"""
        queue: asyncio.Queue = asyncio.Queue()
        for event in self._buffer:
            if last_event_id is None or (event.seq or 0) > last_event_id:
                queue.put_nowait(event)
        if self._closed:
            queue.put_nowait(_CLOSED)
        else:
            self._subscribers.add(queue)
        self.last_activity = self._clock()
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._subscribers.discard(queue)

    def close(self) -> bool:
        """关闭通道，返回 True 表示本次调用完成了关闭"""
        if self._closed:
            return False
        self._closed = True
        for queue in self._subscribers:
            queue.put_nowait(_CLOSED)
        self._subscribers.clear()
        self.touch()
        return True

    async def events(
        self,
        last_event_id: int | None = None,
        heartbeat_s: float | None = None,
    ) -> AsyncIterator[StreamEvent | None]:
        """按序迭代事件直到通道关闭

        heartbeat_s 内无事件时产出 None，调用方据此发送心跳。
        """
        queue = self.subscribe(last_event_id)
        try:
            while True:
                try:
                    if heartbeat_s is None:
                        item = await queue.get()
                    else:
                        item = await asyncio.wait_for(queue.get(), timeout=heartbeat_s)
                except TimeoutError:
                    yield None
                    continue
                if item is _CLOSED:
                    return
                yield item
        finally:
            self.unsubscribe(queue)


class StreamAffinityRegistry:
    """进程内 StreamChannel 注册表

    open/close 在 per-stream_id 锁内执行；lookup_local 为无锁读。
    已关闭的通道保留为只重放状态，由 sweep_idle 在空闲窗口过后移除。
    """

    def __init__(
        self,
        instance_id: str,
        idle_timeout_s: float = 120.0,
        replay_buffer_size: int = 1000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.instance_id = instance_id
        self._idle_timeout_s = idle_timeout_s
        self._replay_buffer_size = replay_buffer_size
        self._clock = clock
        self._channels: dict[str, StreamChannel] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._locks_guard = asyncio.Lock()

    def __len__(self) -> int:
        """仍在投递中的通道数（不含只重放的已关闭通道）"""
        return sum(1 for channel in self._channels.values() if not channel.closed)

    async def _get_lock(self, stream_id: str) -> asyncio.Lock:
        """获取 stream 级别锁"""
        async with self._locks_guard:
            lock = self._locks.get(stream_id)
            if lock is None:
                lock = asyncio.Lock()
                self._locks[stream_id] = lock
            return lock

    async def _cleanup_lock(self, stream_id: str) -> None:
        """通道移除后清理 lock，避免字典无限增长"""
        async with self._locks_guard:
            lock = self._locks.get(stream_id)
            if lock is not None and not lock.locked():
                self._locks.pop(stream_id, None)

    async def open(self, stream_id: str, task_id: str) -> StreamChannel:
        """打开通道；同 id 的只重放通道会被替换

        Raises:
            StreamConflictError: stream_id 在本进程仍处于投递中
        """
        lock = await self._get_lock(stream_id)
        async with lock:
            existing = self._channels.get(stream_id)
            if existing is not None and not existing.closed:
                log.warning("stream_conflict", stream_id=stream_id, task_id=task_id)
                raise StreamConflictError(stream_id)
            channel = StreamChannel(
                stream_id,
                task_id,
                replay_buffer_size=self._replay_buffer_size,
                clock=self._clock,
            )
            self._channels[stream_id] = channel
        log.info(
            "stream_opened",
            stream_id=stream_id,
            task_id=task_id,
            instance_id=self.instance_id,
        )
        return channel

    def lookup_local(self, stream_id: str) -> StreamChannel | None:
        """本进程打开过且尚未移除的通道（可能已关闭、只重放）"""
        return self._channels.get(stream_id)

    async def close(self, stream_id: str) -> bool:
        """关闭通道并保留其重放缓冲，返回 True 表示本次调用完成了关闭"""
        lock = await self._get_lock(stream_id)
        async with lock:
            channel = self._channels.get(stream_id)
            closed = channel.close() if channel is not None else False
        if closed:
            log.info("stream_closed", stream_id=stream_id)
        return closed

    async def _evict(self, stream_id: str) -> None:
        lock = await self._get_lock(stream_id)
        async with lock:
            channel = self._channels.get(stream_id)
            if channel is not None and channel.closed:
                self._channels.pop(stream_id, None)
        await self._cleanup_lock(stream_id)

    async def sweep_idle(self) -> list[str]:
        """空闲清理

        - 投递中的通道空闲超时：收到一条 STREAM_IDLE_TIMEOUT error 事件后关闭；
          生产方处于 hold() 中（等待子任务或工具）的通道不算空闲
        - 已关闭的通道在关闭后空闲超时：从注册表移除

        Returns:
            本次因空闲而关闭的 stream_id 列表
        """
        now = self._clock()
        expired = [
            (stream_id, channel)
            for stream_id, channel in self._channels.items()
            if channel.idle_for(now) >= self._idle_timeout_s
        ]
        swept: list[str] = []
        evicted: list[str] = []
        for stream_id, channel in expired:
            if channel.closed:
                await self._evict(stream_id)
                evicted.append(stream_id)
                continue
            channel.publish(
                StreamEvent(
                    event_id=str(ULID()),
                    task_id=channel.task_id,
                    ts=datetime.now(UTC),
                    type=StreamEventType.ERROR,
                    actor=ActorType.SYSTEM,
                    payload={
                        "code": STREAM_IDLE_TIMEOUT_CODE,
                        "message": f"Stream idle for {self._idle_timeout_s:g}s",
                        "recoverable": False,
                    },
                )
            )
            if await self.close(stream_id):
                swept.append(stream_id)
        if swept:
            log.warning("stream_idle_swept", stream_ids=swept)
        if evicted:
            log.debug("stream_replay_evicted", stream_ids=evicted)
        return swept
