"""apps/gateway 测试配置 -- 手动装配 app.state（绕过 lifespan）+ httpx AsyncClient"""

import asyncio
import json
import re
from collections.abc import AsyncGenerator, Callable

import pytest
import pytest_asyncio
from agentmesh.core.models import (
    TERMINAL_STATES,
    AgentDefinition,
    ProjectDefinition,
    Task,
    ToolDefinition,
)
from agentmesh.engine import (
    AgentGraphCache,
    AgentGraphResolver,
    EngineConfig,
    InMemoryGraphSource,
    LocalToolBackend,
    StreamAffinityRegistry,
    TaskExecutionLoop,
    ToolInvoker,
)
from agentmesh.provider import ModelCallResult, ModelChunk, ToolCallRequest
from httpx import ASGITransport, AsyncClient

INSTANCE_ID = "inst-gw-test"


class ScriptedInference:
    """按顺序消费脚本：str 为最终回答，list[(name, args)] 为 tool calls

    gate 未 set 时在首个 token 之后阻塞，供 SSE / 取消测试在任务运行中接入。
    """

    def __init__(self, *steps, gated: bool = False) -> None:
        self.steps = list(steps)
        self.calls: list[list[dict]] = []
        self.gate = asyncio.Event()
        self.started = asyncio.Event()
        if not gated:
            self.gate.set()

    async def stream(self, messages, model_alias, tools=None):
        self.calls.append(list(messages))
        step = self.steps.pop(0) if self.steps else "Done."
        if isinstance(step, str):
            text, tool_calls = step, []
        else:
            text = ""
            tool_calls = [
                ToolCallRequest(id=f"call_{i}", name=name, arguments=json.dumps(args))
                for i, (name, args) in enumerate(step)
            ]

        tokens = re.findall(r"\S+\s*", text)
        if tokens:
            yield ModelChunk(type="token", text=tokens[0])
        self.started.set()
        await self.gate.wait()
        for token in tokens[1:]:
            yield ModelChunk(type="token", text=token)
        yield ModelChunk(
            type="done",
            result=ModelCallResult(
                content=text,
                tool_calls=tool_calls,
                model_alias=model_alias,
                duration_ms=0,
            ),
        )


@pytest.fixture
def graph_source() -> InMemoryGraphSource:
    """default: desk --transfer--> billing --delegate--> researcher
    broken: 悬空 transfer 目标
    """
    default = ProjectDefinition(
        project_id="default",
        name="Default",
        entry_agent_id="desk",
        agents=[
            AgentDefinition(
                id="desk",
                name="Desk",
                description="Front desk",
                default_transfer_target_id="billing",
            ),
            AgentDefinition(
                id="billing",
                name="Billing",
                description="Handles invoices",
                allowed_delegate_ids=["researcher"],
                transfer_target_ids=["desk"],
            ),
            AgentDefinition(
                id="researcher",
                name="Researcher",
                description="Looks things up",
                tool_ids=["lookup"],
            ),
        ],
        tools=[ToolDefinition(id="lookup", name="lookup", description="Look up an invoice")],
    )
    broken = ProjectDefinition(
        project_id="broken",
        entry_agent_id="a",
        agents=[AgentDefinition(id="a", name="A", transfer_target_ids=["ghost"])],
    )
    return InMemoryGraphSource([default, broken])


@pytest.fixture
def wire_app(store_group, graph_source, tmp_path, monkeypatch) -> Callable:
    """构造 app 并手动装配 app.state，inference 缺省为 echo 模式 LLMService"""
    monkeypatch.setenv("AGENTMESH_GRAPH_DIR", str(tmp_path))
    monkeypatch.setenv("LOGFIRE_SEND_TO_LOGFIRE", "false")

    def _wire(inference=None, **config):
        from agentmesh.gateway.main import create_app
        from agentmesh.gateway.services.llm_service import LLMService
        from agentmesh.gateway.services.task_service import TaskService

        app = create_app()
        graphs = AgentGraphCache(AgentGraphResolver(graph_source))
        registry = StreamAffinityRegistry(INSTANCE_ID)

        local = LocalToolBackend()

        async def lookup(args):
            return {"status": "paid"}

        local.register("lookup", lookup)
        tools = ToolInvoker(local_backend=local)

        config.setdefault("inference_backoff_s", 0.0)
        loop = TaskExecutionLoop(
            store_group,
            graphs,
            inference or LLMService(),
            tools,
            registry=registry,
            config=EngineConfig(**config),
        )
        app.state.store_group = store_group
        app.state.graph_cache = graphs
        app.state.stream_registry = registry
        app.state.litellm_client = None
        app.state.task_service = TaskService(store_group, graphs, registry, loop)
        return app

    return _wire


@pytest_asyncio.fixture
async def make_client(wire_app) -> AsyncGenerator[Callable, None]:
    """按需构造 (client, app)，测试结束时取消残留任务"""
    opened: list[tuple[AsyncClient, object]] = []

    async def _make(inference=None, **config):
        app = wire_app(inference, **config)
        ac = AsyncClient(transport=ASGITransport(app=app), base_url="http://test")
        opened.append((ac, app))
        return ac, app

    yield _make

    for ac, app in opened:
        await app.state.task_service.shutdown()
        await ac.aclose()


@pytest_asyncio.fixture
async def client(make_client) -> AsyncClient:
    """echo 模式 client"""
    ac, _ = await make_client()
    return ac


@pytest.fixture
def wait_terminal(store_group) -> Callable:
    """轮询任务直到进入终态"""

    async def _wait(task_id: str, timeout: float = 5.0) -> Task:
        async def poll() -> Task:
            while True:
                task = await store_group.task_store.get_task(task_id)
                if task is not None and task.status in TERMINAL_STATES:
                    return task
                await asyncio.sleep(0.01)

        return await asyncio.wait_for(poll(), timeout=timeout)

    return _wait


@pytest.fixture
def parse_sse() -> Callable[[str], list[dict]]:
    """SSE 文本 -> [{"id", "event", "data"}]，忽略注释行"""

    def _parse(body: str) -> list[dict]:
        frames = []
        for block in body.replace("\r\n", "\n").split("\n\n"):
            frame: dict = {}
            for line in block.split("\n"):
                if not line or line.startswith(":"):
                    continue
                field, _, value = line.partition(":")
                frame[field] = value.lstrip(" ")
            if "data" in frame:
                frame["data"] = json.loads(frame["data"])
                frames.append(frame)
        return frames

    return _parse


@pytest.fixture
def scripted() -> type[ScriptedInference]:
    return ScriptedInference
