"""集成测试共享 fixture -- JSON 图目录 + HTTP 工具服务（MockTransport）+ 手动装配 app"""

import asyncio
import json
import re
from collections.abc import AsyncGenerator, Callable
from pathlib import Path

import httpx
import pytest
import pytest_asyncio
from agentmesh.core.models import (
    TERMINAL_STATES,
    AgentDefinition,
    ProjectDefinition,
    Task,
    ToolDefinition,
)
from agentmesh.core.store import StoreGroup, create_store_group
from agentmesh.engine import (
    AgentGraphCache,
    AgentGraphResolver,
    EngineConfig,
    EnvCredentialResolver,
    HttpToolBackend,
    JsonDirectoryGraphSource,
    StreamAffinityRegistry,
    TaskExecutionLoop,
    ToolInvoker,
)
from agentmesh.provider import ModelCallResult, ModelChunk, ToolCallRequest
from httpx import ASGITransport, AsyncClient


class ScriptedInference:
    """按顺序消费脚本：str 为最终回答，list[(name, args)] 为 tool calls"""

    def __init__(self, *steps) -> None:
        self.steps = list(steps)
        self.calls: list[list[dict]] = []

    async def stream(self, messages, model_alias, tools=None):
        self.calls.append(list(messages))
        step = self.steps.pop(0)
        if isinstance(step, str):
            for token in re.findall(r"\S+\s*", step):
                yield ModelChunk(type="token", text=token)
            text, tool_calls = step, []
        else:
            text = ""
            tool_calls = [
                ToolCallRequest(id=f"call_{i}", name=name, arguments=json.dumps(args))
                for i, (name, args) in enumerate(step)
            ]
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
def scripted() -> type[ScriptedInference]:
    return ScriptedInference


@pytest.fixture
def graph_dir(tmp_path: Path) -> Path:
    """客服图：desk --transfer--> billing --delegate--> researcher（HTTP 工具 invoices）"""
    directory = tmp_path / "graphs"
    directory.mkdir()
    project = ProjectDefinition(
        project_id="default",
        name="Support",
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
                description="Looks up invoices",
                tool_ids=["invoices"],
            ),
        ],
        tools=[
            ToolDefinition(
                id="invoices",
                name="find_invoice",
                description="Find an invoice by number",
                endpoint="http://tools.internal/invoices",
                credential_scope="invoices",
            )
        ],
    )
    (directory / "default.json").write_text(project.model_dump_json(indent=2), encoding="utf-8")
    return directory


@pytest.fixture
def tool_service() -> dict:
    """HTTP 工具服务状态：requests 记录收到的请求，healthy=False 时 /health 返回 503"""
    return {"requests": [], "healthy": True}


@pytest.fixture
def tool_transport(tool_service) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        tool_service["requests"].append(request)
        if request.url.path.endswith("/health"):
            if not tool_service["healthy"]:
                return httpx.Response(503, json={"status": "down"})
            return httpx.Response(200, json={"status": "ok"})
        body = json.loads(request.content)
        number = body["arguments"].get("number")
        return httpx.Response(200, json={"result": {"number": number, "status": "paid"}})

    return httpx.MockTransport(handler)


@pytest_asyncio.fixture
async def integration_store(tmp_path: Path) -> AsyncGenerator[StoreGroup, None]:
    store_group = await create_store_group(str(tmp_path / "sqlite" / "integration.db"))
    yield store_group
    await store_group.conn.close()


@pytest.fixture
def build_app(integration_store, graph_dir, tool_transport, monkeypatch) -> Callable:
    """按 lifespan 的方式装配 app，inference 与工具传输层可注入"""
    monkeypatch.setenv("AGENTMESH_GRAPH_DIR", str(graph_dir))
    monkeypatch.setenv("AGENTMESH_CREDENTIAL_INVOICES", "secret-token")
    monkeypatch.setenv("LOGFIRE_SEND_TO_LOGFIRE", "false")

    def _build(inference, store_group: StoreGroup | None = None, **config):
        from agentmesh.gateway.main import create_app
        from agentmesh.gateway.services.task_service import TaskService

        stores = store_group or integration_store
        app = create_app()
        graphs = AgentGraphCache(AgentGraphResolver(JsonDirectoryGraphSource(graph_dir)))
        registry = StreamAffinityRegistry("inst-integration")
        tools = ToolInvoker(
            http_backend=HttpToolBackend(httpx.AsyncClient(transport=tool_transport)),
            credentials=EnvCredentialResolver(),
        )
        config.setdefault("inference_backoff_s", 0.0)
        loop = TaskExecutionLoop(
            stores,
            graphs,
            inference,
            tools,
            registry=registry,
            config=EngineConfig(**config),
        )
        app.state.store_group = stores
        app.state.graph_cache = graphs
        app.state.stream_registry = registry
        app.state.litellm_client = None
        app.state.task_service = TaskService(stores, graphs, registry, loop)
        return app

    return _build


@pytest.fixture
def client_for() -> Callable:
    def _client(app) -> AsyncClient:
        return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")

    return _client


@pytest.fixture
def wait_terminal() -> Callable:
    async def _wait(store_group: StoreGroup, task_id: str, timeout: float = 5.0) -> Task:
        async def poll() -> Task:
            while True:
                task = await store_group.task_store.get_task(task_id)
                if task is not None and task.status in TERMINAL_STATES:
                    return task
                await asyncio.sleep(0.01)

        return await asyncio.wait_for(poll(), timeout=timeout)

    return _wait
