"""Task Execution Loop -- 驱动单个任务走完状态机

CREATED -> ROUTING -> {HANDLING | TRANSFERRING | DELEGATING}
HANDLING -> {ROUTING | STREAMING}, TRANSFERRING -> ROUTING
DELEGATING -> AWAITING_CHILD -> ROUTING, STREAMING -> COMPLETED
任意非终态 -> {FAILED | CANCELLED}

每个任务只到达一次终态；失败恰好产生一条 error 事件；
根任务的 StreamChannel 在所有路径（包括取消）上恰好关闭一次。
"""

import asyncio
import json
from contextlib import nullcontext
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol

import structlog
from agentmesh.core.config import CONVERSATION_HISTORY_LIMIT, MESSAGE_PREVIEW_LENGTH
from agentmesh.core.errors import (
    AgentMeshError,
    AgentNotFoundError,
    ChildTaskFailedError,
    EmptyMessageError,
    InferenceUnavailableError,
    InvalidDirectiveError,
    LimitExceededError,
    RoutingDeniedError,
    ToolUnavailableError,
)
from agentmesh.core.models import (
    TERMINAL_STATES,
    ActorType,
    AgentGraph,
    AgentNode,
    DelegateResultPayload,
    DelegateStartPayload,
    ErrorPayload,
    FinalPayload,
    StreamEvent,
    StreamEventType,
    Task,
    TaskError,
    TaskResult,
    TaskStatus,
    TokenPayload,
    ToolCallPayload,
    ToolResultPayload,
    TransferPayload,
    validate_transition,
)
from agentmesh.core.store import StoreGroup, create_task_with_conversation
from agentmesh.provider import (
    ModelCallResult,
    ModelChunk,
    ProviderError,
    ToolCallRequest,
    UsageTotals,
)
from ulid import ULID

from .config import EngineConfig
from .context import build_task_id, derive_or_start, propagate
from .directives import Directive, ToolCallDirective, final_answer, parse_directive
from .graph import AgentGraphCache
from .prompts import TRANSFER_CONTINUATION_PROMPT, build_system_prompt, build_tool_descriptors
from .recorder import TaskEventRecorder
from .router import Delegate, DelegationRouter, Handle, RouteDecision, Transfer
from .streams import StreamAffinityRegistry, StreamChannel
from .tools import ToolInvoker

log = structlog.get_logger()

CANCELLED_CODE = "TASK_CANCELLED"
INTERNAL_ERROR_CODE = "INTERNAL_ERROR"
SKIPPED_BY_TRANSFER_CODE = "SKIPPED_BY_TRANSFER"


class InferenceClient(Protocol):
    """模型推理能力：对话 + tool descriptors 输入，流式 token 与 tool call 输出"""

    def stream(
        self,
        messages: list[dict[str, Any]],
        model_alias: str,
        tools: list[dict[str, Any]] | None = None,
    ):
        ...


@dataclass
class _TaskRun:
    """单次执行的可变状态（仅执行循环持有）"""

    task: Task
    channel: StreamChannel | None
    status: TaskStatus
    conversation_id: str = ""
    graph: AgentGraph | None = None
    node: AgentNode | None = None
    messages: list[dict[str, Any]] = field(default_factory=list)
    transfers: int = 0
    steps: int = 0
    usage: UsageTotals = field(default_factory=UsageTotals)

    @property
    def agent_id(self) -> str:
        return self.node.id if self.node is not None else self.task.current_agent_id


@dataclass
class _PlannedCall:
    """一次 tool call 的解析与路由结果"""

    call: ToolCallRequest
    directive: Directive | None = None
    decision: RouteDecision | None = None
    error: AgentMeshError | None = None
    child: Task | None = None
    delegation_id: str = ""


@dataclass
class _CallOutcome:
    content: Any
    is_error: bool = False
    duration_ms: int = 0
    child_result: TaskResult | None = None


class TaskExecutionLoop:
    """任务执行循环

    根任务由 TaskService 在独立的 asyncio.Task 中调用 execute(task, channel)；
    委派子任务由父任务在同一 gather 中递归调用 execute(child)，不带 channel。
    """

    def __init__(
        self,
        store_group: StoreGroup,
        graphs: AgentGraphCache,
        inference: InferenceClient,
        tools: ToolInvoker,
        registry: StreamAffinityRegistry | None = None,
        config: EngineConfig | None = None,
    ) -> None:
        self._stores = store_group
        self._graphs = graphs
        self._inference = inference
        self._tools = tools
        self._registry = registry
        self._config = config or EngineConfig()
        self._recorder = TaskEventRecorder(store_group)

    async def execute(self, task: Task, channel: StreamChannel | None = None) -> TaskResult:
        run = _TaskRun(task=task, channel=channel, status=task.status)
        log.info(
            "task_execution_started",
            task_id=task.task_id,
            agent_id=task.current_agent_id,
            parent_task_id=task.parent_task_id,
            delegation_depth=task.delegation_depth,
        )
        try:
            if task.input.is_empty():
                raise EmptyMessageError()

            run.conversation_id = derive_or_start(task)
            run.graph = await self._graphs.get(task.project_id)
            run.node = run.graph.get(task.current_agent_id)
            if run.node is None:
                raise AgentNotFoundError(task.project_id, task.current_agent_id)

            await self._transition(run, TaskStatus.ROUTING)
            run.messages = await self._initial_messages(run)
            return await self._run_turns(run)

        except asyncio.CancelledError:
            await self._finish_cancelled(run)
            raise
        except AgentMeshError as e:
            return await self._fail(run, e.code, e.message)
        except Exception as e:
            log.exception(
                "task_execution_crashed",
                task_id=task.task_id,
                error_type=type(e).__name__,
            )
            return await self._fail(run, INTERNAL_ERROR_CODE, "Internal error, see server logs")
        finally:
            if channel is not None:
                if self._registry is not None:
                    await self._registry.close(channel.stream_id)
                else:
                    channel.close()
            self._tools.forget_task(task.task_id)

    # ============================================================
    # 主循环
    # ============================================================

    async def _run_turns(self, run: _TaskRun) -> TaskResult:
        router = DelegationRouter(run.graph, self._config.max_delegation_depth)

        while True:
            if run.steps >= self._config.max_steps:
                raise LimitExceededError(
                    "STEP_LIMIT_EXCEEDED",
                    f"Task exceeded {self._config.max_steps} model turns",
                )
            run.steps += 1

            tools = build_tool_descriptors(
                run.graph,
                run.node,
                allow_delegation=run.task.delegation_depth < self._config.max_delegation_depth,
            )
            result = await self._infer(run, tools)

            answer = final_answer(result)
            if answer is not None:
                return await self._complete(run, answer.text)

            run.messages.append(
                {
                    "role": "assistant",
                    "content": result.content or None,
                    "tool_calls": [c.to_message_dict() for c in result.tool_calls],
                }
            )
            planned = [self._plan(run, router, call) for call in result.tool_calls]

            transfer = next((p for p in planned if isinstance(p.decision, Transfer)), None)
            if transfer is not None:
                await self._apply_transfer(run, planned, transfer)
                continue

            await self._dispatch(run, planned)

    def _plan(
        self, run: _TaskRun, router: DelegationRouter, call: ToolCallRequest
    ) -> _PlannedCall:
        planned = _PlannedCall(call=call)
        try:
            planned.directive = parse_directive(call, run.node)
            planned.decision = router.route(run.task, run.node, planned.directive)
        except (InvalidDirectiveError, RoutingDeniedError) as e:
            planned.error = e
        return planned

    async def _infer(self, run: _TaskRun, tools: list[dict[str, Any]]) -> ModelCallResult:
        """流式推理，根任务的 token 实时投递

        仅当本次尝试尚未产出任何 token 时才重试，已投递的内容不可撤回。
        """
        delay = self._config.inference_backoff_s
        attempt = 0
        while True:
            attempt += 1
            emitted = False
            try:
                result: ModelCallResult | None = None
                chunk: ModelChunk
                async for chunk in self._inference.stream(
                    messages=run.messages,
                    model_alias=run.node.model_alias,
                    tools=tools or None,
                ):
                    if chunk.type == "token" and chunk.text:
                        emitted = True
                        if not run.task.is_delegation:
                            await self._emit(
                                run,
                                StreamEventType.TOKEN,
                                TokenPayload(text=chunk.text).model_dump(),
                            )
                    elif chunk.type == "done":
                        result = chunk.result
                if result is None:
                    raise ProviderError("Model stream ended without a result")
                run.usage.add(result)
                return result
            except ProviderError as e:
                if emitted or attempt >= self._config.inference_max_attempts:
                    log.error(
                        "inference_unavailable",
                        task_id=run.task.task_id,
                        attempts=attempt,
                        mid_stream=emitted,
                        error=str(e),
                    )
                    raise InferenceUnavailableError(
                        f"Model inference failed after {attempt} attempt(s): {e}"
                    ) from e
                log.warning(
                    "inference_retry",
                    task_id=run.task.task_id,
                    attempt=attempt,
                    delay_s=delay,
                    error=str(e),
                )
                await asyncio.sleep(delay)
                delay = min(delay * 2, self._config.inference_backoff_max_s)

    async def _complete(self, run: _TaskRun, text: str) -> TaskResult:
        await self._transition(run, TaskStatus.HANDLING)
        await self._transition(run, TaskStatus.STREAMING)
        await self._emit(
            run,
            StreamEventType.FINAL,
            FinalPayload(
                text=text,
                agent_id=run.agent_id,
                transfers=run.transfers,
                usage=run.usage.model_dump(),
            ).model_dump(),
            new_status=TaskStatus.COMPLETED,
            result_text=text,
        )
        log.info(
            "task_completed",
            task_id=run.task.task_id,
            agent_id=run.agent_id,
            steps=run.steps,
            transfers=run.transfers,
            total_tokens=run.usage.total_tokens,
            cost_usd=run.usage.cost_usd,
        )
        return self._result(run, text=text)

    # ============================================================
    # transfer
    # ============================================================

    async def _apply_transfer(
        self, run: _TaskRun, planned: list[_PlannedCall], transfer: _PlannedCall
    ) -> None:
        """transfer 优先：同轮其他 tool call 全部以 skipped 结果应答"""
        target_id = transfer.decision.target_id
        source_id = run.agent_id

        await self._transition(run, TaskStatus.TRANSFERRING)
        if run.transfers >= self._config.max_transfers:
            raise LimitExceededError(
                "TRANSFER_LIMIT_EXCEEDED",
                f"Task exceeded {self._config.max_transfers} transfers",
            )
        run.transfers += 1

        for p in planned:
            if p is transfer:
                content: Any = {
                    "type": "transfer",
                    "targetSubAgentId": target_id,
                    "fromSubAgentId": source_id,
                }
            else:
                content = {
                    "error": {
                        "code": SKIPPED_BY_TRANSFER_CODE,
                        "message": f"Not executed: conversation transferred to {target_id}",
                    }
                }
            run.messages.append(_tool_message(p.call.id, content))

        event = self._new_event(
            run,
            StreamEventType.TRANSFER,
            TransferPayload(from_agent_id=source_id, to_agent_id=target_id).model_dump(),
        )
        event = await self._recorder.append_transfer(
            event,
            project_id=run.task.project_id,
            conversation_id=run.conversation_id,
            target_agent_id=target_id,
            persist_conversation=not run.task.is_delegation,
        )
        self._deliver(run, event)

        run.node = run.graph.get(target_id)
        run.messages[0] = {"role": "system", "content": build_system_prompt(run.graph, run.node)}
        run.messages.append({"role": "user", "content": TRANSFER_CONTINUATION_PROMPT})
        log.info(
            "task_transferred",
            task_id=run.task.task_id,
            from_agent_id=source_id,
            to_agent_id=target_id,
            transfers=run.transfers,
        )
        await self._transition(run, TaskStatus.ROUTING)

    # ============================================================
    # tool call / delegate 派发
    # ============================================================

    async def _dispatch(self, run: _TaskRun, planned: list[_PlannedCall]) -> None:
        """并发执行本轮所有 tool call 与委派，结果按请求顺序回注"""
        has_delegate = any(isinstance(p.decision, Delegate) for p in planned)
        await self._transition(
            run, TaskStatus.DELEGATING if has_delegate else TaskStatus.HANDLING
        )

        for p in planned:
            if isinstance(p.decision, Delegate):
                await self._spawn_child(run, p)
            else:
                await self._emit(
                    run,
                    StreamEventType.TOOL_CALL,
                    ToolCallPayload(
                        call_id=p.call.id,
                        tool_name=p.call.name,
                        arguments=getattr(p.directive, "arguments", {}),
                    ).model_dump(),
                )

        if has_delegate:
            await self._transition(run, TaskStatus.AWAITING_CHILD)

        # 等待子任务与工具期间通道没有新事件，hold 使其不被空闲清理关闭
        with run.channel.hold() if run.channel is not None else nullcontext():
            outcomes = await asyncio.gather(*(self._resolve(run, p) for p in planned))

        for p, outcome in zip(planned, outcomes, strict=True):
            if p.child is not None:
                child_result = outcome.child_result
                await self._emit(
                    run,
                    StreamEventType.DELEGATE_RESULT,
                    DelegateResultPayload(
                        delegation_id=p.delegation_id,
                        child_task_id=p.child.task_id,
                        status=child_result.status.value,
                        text=child_result.text,
                        error=outcome.content.get("error") if outcome.is_error else None,
                    ).model_dump(),
                )
            else:
                await self._emit(
                    run,
                    StreamEventType.TOOL_RESULT,
                    ToolResultPayload(
                        call_id=p.call.id,
                        tool_name=p.call.name,
                        is_error=outcome.is_error,
                        output=outcome.content,
                        duration_ms=outcome.duration_ms,
                    ).model_dump(),
                    actor=ActorType.TOOL,
                )
            run.messages.append(_tool_message(p.call.id, outcome.content))

        await self._transition(run, TaskStatus.ROUTING)

    async def _resolve(self, run: _TaskRun, p: _PlannedCall) -> _CallOutcome:
        if p.error is not None:
            return _CallOutcome(content={"error": p.error.to_payload()}, is_error=True)
        if p.child is not None:
            return await self._await_child(run, p)
        if isinstance(p.directive, ToolCallDirective) and isinstance(p.decision, Handle):
            return await self._run_tool(run, p.directive)
        # 不会出现：transfer 已在 _apply_transfer 中处理
        return _CallOutcome(
            content={"error": {"code": "INVALID_DIRECTIVE", "message": "Unroutable call"}},
            is_error=True,
        )

    async def _run_tool(self, run: _TaskRun, directive: ToolCallDirective) -> _CallOutcome:
        tool = run.node.tool_by_name(directive.tool_name)
        try:
            await self._tools.ensure_healthy(tool, run.task.task_id)
            result = await self._tools.invoke(
                tool, directive.arguments, tool.credential_scope, run.task.task_id
            )
        except ToolUnavailableError as e:
            return _CallOutcome(content={"error": e.to_payload()}, is_error=True)
        return _CallOutcome(
            content=result.output,
            is_error=result.is_error,
            duration_ms=result.duration_ms,
        )

    async def _spawn_child(self, run: _TaskRun, p: _PlannedCall) -> None:
        """创建委派子任务（派发前传播会话上下文）并发出 delegate_start"""
        decision: Delegate = p.decision
        now = datetime.now(UTC)
        p.delegation_id = f"del_{str(ULID()).lower()}"
        child = Task(
            task_id=build_task_id(run.conversation_id, p.delegation_id),
            project_id=run.task.project_id,
            current_agent_id=decision.target_id,
            status=TaskStatus.CREATED,
            created_at=now,
            updated_at=now,
            parent_task_id=run.task.task_id,
            delegation_depth=run.task.delegation_depth + 1,
            input=decision.sub_input,
        )
        p.child = propagate(run.conversation_id, child)
        await create_task_with_conversation(
            self._stores.conn,
            self._stores.task_store,
            self._stores.conversation_store,
            p.child,
        )
        await self._emit(
            run,
            StreamEventType.DELEGATE_START,
            DelegateStartPayload(
                delegation_id=p.delegation_id,
                child_task_id=p.child.task_id,
                from_agent_id=run.agent_id,
                to_agent_id=decision.target_id,
                message_preview=decision.sub_input.text[:MESSAGE_PREVIEW_LENGTH],
            ).model_dump(),
        )
        log.info(
            "delegation_started",
            task_id=run.task.task_id,
            child_task_id=p.child.task_id,
            to_agent_id=decision.target_id,
        )

    async def _await_child(self, run: _TaskRun, p: _PlannedCall) -> _CallOutcome:
        child_result = await self.execute(p.child)
        if child_result.status == TaskStatus.COMPLETED:
            return _CallOutcome(content=child_result.text, child_result=child_result)
        cause = child_result.error or TaskError(code=INTERNAL_ERROR_CODE, message="unknown")
        error = ChildTaskFailedError(p.child.task_id, cause.code, cause.message)
        log.warning(
            "delegation_failed",
            task_id=run.task.task_id,
            child_task_id=p.child.task_id,
            cause=cause.code,
        )
        return _CallOutcome(
            content={"error": error.to_payload()},
            is_error=True,
            child_result=child_result,
        )

    # ============================================================
    # 会话历史
    # ============================================================

    async def _initial_messages(self, run: _TaskRun) -> list[dict[str, Any]]:
        messages: list[dict[str, Any]] = [
            {"role": "system", "content": build_system_prompt(run.graph, run.node)}
        ]
        if not run.task.is_delegation:
            turns = await self._stores.task_store.list_conversation_turns(
                run.conversation_id,
                CONVERSATION_HISTORY_LIMIT,
                exclude_task_id=run.task.task_id,
            )
            for turn in turns:
                messages.append({"role": "user", "content": turn.input.effective_text()})
                messages.append({"role": "assistant", "content": turn.result_text or ""})
        messages.append({"role": "user", "content": run.task.input.effective_text()})
        return messages

    # ============================================================
    # 事件 / 状态
    # ============================================================

    def _new_event(
        self,
        run: _TaskRun,
        event_type: StreamEventType,
        payload: dict[str, Any],
        actor: ActorType = ActorType.AGENT,
    ) -> StreamEvent:
        return StreamEvent(
            event_id=str(ULID()),
            task_id=run.task.task_id,
            ts=datetime.now(UTC),
            type=event_type,
            actor=actor,
            agent_id=run.agent_id,
            payload=payload,
        )

    def _deliver(self, run: _TaskRun, event: StreamEvent) -> None:
        # 空闲清理可能已提前关闭通道，此后事件只落盘
        if run.channel is not None and not run.channel.closed:
            run.channel.publish(event)

    async def _emit(
        self,
        run: _TaskRun,
        event_type: StreamEventType,
        payload: dict[str, Any],
        actor: ActorType = ActorType.AGENT,
        new_status: TaskStatus | None = None,
        result_text: str | None = None,
        error_code: str | None = None,
    ) -> StreamEvent:
        """落盘（token 除外）并投递到通道"""
        event = self._new_event(run, event_type, payload, actor)
        if new_status is not None:
            self._check_transition(run, new_status)
        if event_type != StreamEventType.TOKEN:
            event = await self._recorder.append(
                event,
                new_status=new_status,
                result_text=result_text,
                error_code=error_code,
            )
        if new_status is not None:
            run.status = new_status
        self._deliver(run, event)
        return event

    def _check_transition(self, run: _TaskRun, to_status: TaskStatus) -> None:
        if not validate_transition(run.status, to_status):
            raise RuntimeError(f"Illegal task transition {run.status} -> {to_status}")

    async def _transition(self, run: _TaskRun, to_status: TaskStatus) -> None:
        self._check_transition(run, to_status)
        await self._recorder.set_status(run.task.task_id, to_status)
        run.status = to_status

    async def _fail(self, run: _TaskRun, code: str, message: str) -> TaskResult:
        if run.status in TERMINAL_STATES:
            return self._result(run, error=TaskError(code=code, message=message))
        payload = ErrorPayload(code=code, message=message).model_dump()
        try:
            await self._emit(
                run,
                StreamEventType.ERROR,
                payload,
                actor=ActorType.SYSTEM,
                new_status=TaskStatus.FAILED,
                error_code=code,
            )
        except Exception as e:
            log.error(
                "failed_to_record_failure",
                task_id=run.task.task_id,
                error_type=type(e).__name__,
            )
            run.status = TaskStatus.FAILED
            self._deliver(run, self._new_event(run, StreamEventType.ERROR, payload, ActorType.SYSTEM))
        log.warning(
            "task_failed",
            task_id=run.task.task_id,
            agent_id=run.agent_id,
            code=code,
        )
        return self._result(run, error=TaskError(code=code, message=message))

    async def _finish_cancelled(self, run: _TaskRun) -> None:
        if run.status in TERMINAL_STATES:
            return
        payload = ErrorPayload(code=CANCELLED_CODE, message="Task was cancelled").model_dump()
        try:
            await self._emit(
                run,
                StreamEventType.ERROR,
                payload,
                actor=ActorType.SYSTEM,
                new_status=TaskStatus.CANCELLED,
                error_code=CANCELLED_CODE,
            )
        except Exception as e:
            log.error(
                "failed_to_record_cancellation",
                task_id=run.task.task_id,
                error_type=type(e).__name__,
            )
            run.status = TaskStatus.CANCELLED
            self._deliver(run, self._new_event(run, StreamEventType.ERROR, payload, ActorType.SYSTEM))
        log.info("task_cancelled", task_id=run.task.task_id, agent_id=run.agent_id)

    def _result(
        self, run: _TaskRun, text: str = "", error: TaskError | None = None
    ) -> TaskResult:
        return TaskResult(
            task_id=run.task.task_id,
            conversation_id=run.conversation_id,
            status=run.status,
            agent_id=run.agent_id,
            text=text,
            error=error,
            transfers=run.transfers,
        )


def _tool_message(call_id: str, content: Any) -> dict[str, Any]:
    if not isinstance(content, str):
        content = json.dumps(content, ensure_ascii=False, default=str)
    return {"role": "tool", "tool_call_id": call_id, "content": content}
