"""FastAPI 应用主文件

app 创建 + lifespan 管理：DB 初始化/关闭、agent 图缓存、流注册表、
LLM 组件与执行循环初始化、后台维护任务、路由注册。
"""

import asyncio
import contextlib
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from agentmesh.core.config import (
    MAINTENANCE_INTERVAL_S,
    STREAM_REPLAY_BUFFER_SIZE,
    get_db_path,
    get_graph_dir,
    get_instance_id,
)
from agentmesh.core.store import create_store_group
from agentmesh.engine import (
    AgentGraphCache,
    AgentGraphResolver,
    EnvCredentialResolver,
    JsonDirectoryGraphSource,
    StreamAffinityRegistry,
    TaskExecutionLoop,
    ToolInvoker,
    load_engine_config,
)
from agentmesh.provider import (
    EchoMessageAdapter,
    FallbackManager,
    LiteLLMClient,
    load_alias_registry,
    load_provider_config,
)
from fastapi import FastAPI

from .middleware.logging_config import setup_logfire, setup_logging
from .middleware.logging_mw import LoggingMiddleware
from .middleware.trace_mw import TraceMiddleware
from .routes import agents, cancel, health, stream, tasks
from .services.llm_service import LLMService
from .services.task_service import TaskService

log = structlog.get_logger()


def _build_llm_service(app: FastAPI) -> LLMService:
    """根据 provider 配置选择 litellm / echo 模式"""
    provider_config = load_provider_config()
    app.state.provider_config = provider_config
    alias_registry = load_alias_registry()

    if provider_config.llm_mode == "litellm":
        litellm_client = LiteLLMClient(
            proxy_base_url=provider_config.proxy_base_url,
            proxy_api_key=provider_config.proxy_api_key.get_secret_value(),
            timeout_s=provider_config.timeout_s,
        )
        # Proxy 不可达时默认直接失败，由执行循环重试后报 INFERENCE_UNAVAILABLE
        fallback = EchoMessageAdapter() if provider_config.echo_fallback else None
        fallback_manager = FallbackManager(primary=litellm_client, fallback=fallback)
        app.state.litellm_client = litellm_client
        log.info(
            "llm_service_initialized",
            mode="litellm",
            proxy_url=provider_config.proxy_base_url,
            timeout_s=provider_config.timeout_s,
            echo_fallback=provider_config.echo_fallback,
        )
    else:
        fallback_manager = FallbackManager(primary=EchoMessageAdapter(), fallback=None)
        app.state.litellm_client = None
        log.info("llm_service_initialized", mode="echo")

    app.state.alias_registry = alias_registry
    return LLMService(fallback_manager=fallback_manager, alias_registry=alias_registry)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """应用生命周期管理"""
    engine_config = load_engine_config()
    app.state.engine_config = engine_config

    store_group = await create_store_group(get_db_path())
    app.state.store_group = store_group

    graph_dir = get_graph_dir()
    graph_dir.mkdir(parents=True, exist_ok=True)
    graph_cache = AgentGraphCache(AgentGraphResolver(JsonDirectoryGraphSource(graph_dir)))
    app.state.graph_cache = graph_cache

    registry = StreamAffinityRegistry(
        instance_id=get_instance_id(),
        idle_timeout_s=engine_config.stream_idle_timeout_s,
        replay_buffer_size=STREAM_REPLAY_BUFFER_SIZE,
    )
    app.state.stream_registry = registry

    tools = ToolInvoker(
        credentials=EnvCredentialResolver(),
        health_ttl_s=engine_config.tool_health_ttl_s,
        timeout_s=engine_config.tool_timeout_s,
    )
    app.state.tool_invoker = tools

    llm_service = _build_llm_service(app)
    app.state.llm_service = llm_service

    execution_loop = TaskExecutionLoop(
        store_group=store_group,
        graphs=graph_cache,
        inference=llm_service,
        tools=tools,
        registry=registry,
        config=engine_config,
    )
    task_service = TaskService(
        store_group=store_group,
        graphs=graph_cache,
        registry=registry,
        loop=execution_loop,
    )
    app.state.task_service = task_service

    maintenance = asyncio.create_task(task_service.maintenance_loop(MAINTENANCE_INTERVAL_S))
    log.info(
        "gateway_started",
        instance_id=registry.instance_id,
        graph_dir=str(graph_dir),
    )

    yield

    maintenance.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await maintenance
    await task_service.shutdown()
    await tools.aclose()
    await store_group.conn.close()
    log.info("gateway_stopped", instance_id=registry.instance_id)


def create_app() -> FastAPI:
    """创建 FastAPI 应用实例"""
    app = FastAPI(
        title="AgentMesh Gateway",
        version="0.1.0",
        description="AgentMesh A2A agent 图任务执行 API",
        lifespan=lifespan,
    )

    # 注册中间件（顺序：先 Trace 后 Logging）
    app.add_middleware(TraceMiddleware)
    app.add_middleware(LoggingMiddleware)

    setup_logging()
    setup_logfire(app)

    app.include_router(tasks.router, tags=["tasks"])
    app.include_router(cancel.router, tags=["cancel"])
    app.include_router(stream.router, tags=["stream"])
    app.include_router(agents.router, tags=["agents"])
    app.include_router(health.router, tags=["health"])

    return app


# 默认 app 实例（uvicorn 入口）
app = create_app()
