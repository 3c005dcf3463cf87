"""Tool Invoker -- 工具健康检查与调用

每个任务在调用某工具前必须先通过一次健康检查；
健康结果按 (task_id, tool_id) 缓存 30 秒，调用失败会把缓存改写为 unhealthy。
调用失败不重试，以 is_error=True 的 ToolResult 交还模型。
"""

import asyncio
import os
import re
import time
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any, Protocol

import httpx
import structlog
from agentmesh.core.errors import ToolUnavailableError
from agentmesh.core.models import ToolHealth, ToolHealthStatus, ToolRef
from pydantic import BaseModel, Field

log = structlog.get_logger()

ToolHandler = Callable[[dict[str, Any]], Awaitable[Any]]
HealthHandler = Callable[[], Awaitable[bool]]


class ToolResult(BaseModel):
    """单次工具调用结果"""

    tool_id: str
    output: Any = None
    is_error: bool = Field(default=False)
    duration_ms: int = Field(default=0, ge=0)


# ============================================================
# 凭据解析
# ============================================================


class CredentialResolver(Protocol):
    """凭据解析接口：credential scope -> 请求头"""

    async def resolve(self, scope: str) -> dict[str, str]:
        ...


class StaticCredentialResolver:
    """固定映射的凭据解析（测试与本地开发）"""

    def __init__(self, headers_by_scope: dict[str, dict[str, str]] | None = None) -> None:
        self._headers_by_scope = headers_by_scope or {}

    async def resolve(self, scope: str) -> dict[str, str]:
        return dict(self._headers_by_scope.get(scope, {}))


class EnvCredentialResolver:
    """从环境变量解析 Bearer 凭据

    scope "billing-api" 对应环境变量 AGENTMESH_CREDENTIAL_BILLING_API。
    """

    prefix = "AGENTMESH_CREDENTIAL_"

    async def resolve(self, scope: str) -> dict[str, str]:
        env_var = self.prefix + re.sub(r"[^A-Za-z0-9]", "_", scope).upper()
        token = os.environ.get(env_var)
        if not token:
            log.warning("credential_not_found", scope=scope, env_var=env_var)
            return {}
        return {"Authorization": f"Bearer {token}"}


# ============================================================
# 工具后端
# ============================================================


class ToolBackend(Protocol):
    """工具后端接口"""

    async def probe(self, tool: ToolRef, headers: dict[str, str]) -> None:
        """健康检查，不健康时抛出异常"""
        ...

    async def call(
        self, tool: ToolRef, arguments: dict[str, Any], headers: dict[str, str]
    ) -> Any:
        """执行工具调用，失败时抛出异常"""
        ...


class HttpToolBackend:
    """HTTP 工具服务后端

    GET  {endpoint}/health  -> 2xx 视为健康
    POST {endpoint}/invoke  -> {"tool": name, "arguments": {...}}，响应 JSON 的 result 字段为输出
    """

    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._client = client or httpx.AsyncClient()

    async def probe(self, tool: ToolRef, headers: dict[str, str]) -> None:
        resp = await self._client.get(f"{tool.endpoint.rstrip('/')}/health", headers=headers)
        resp.raise_for_status()

    async def call(
        self, tool: ToolRef, arguments: dict[str, Any], headers: dict[str, str]
    ) -> Any:
        resp = await self._client.post(
            f"{tool.endpoint.rstrip('/')}/invoke",
            json={"tool": tool.name, "arguments": arguments},
            headers=headers,
        )
        resp.raise_for_status()
        data = resp.json()
        if isinstance(data, dict) and "result" in data:
            return data["result"]
        return data

    async def aclose(self) -> None:
        await self._client.aclose()


class LocalToolBackend:
    """进程内工具后端：按 tool_id 注册的协程"""

    def __init__(self) -> None:
        self._handlers: dict[str, ToolHandler] = {}
        self._health_checks: dict[str, HealthHandler] = {}

    def register(
        self,
        tool_id: str,
        handler: ToolHandler,
        health_check: HealthHandler | None = None,
    ) -> None:
        self._handlers[tool_id] = handler
        if health_check is not None:
            self._health_checks[tool_id] = health_check

    async def probe(self, tool: ToolRef, headers: dict[str, str]) -> None:
        if tool.tool_id not in self._handlers:
            raise LookupError(f"no local handler registered for {tool.tool_id}")
        check = self._health_checks.get(tool.tool_id)
        if check is not None and not await check():
            raise RuntimeError("health check reported unhealthy")

    async def call(
        self, tool: ToolRef, arguments: dict[str, Any], headers: dict[str, str]
    ) -> Any:
        handler = self._handlers.get(tool.tool_id)
        if handler is None:
            raise LookupError(f"no local handler registered for {tool.tool_id}")
        return await handler(arguments)


# ============================================================
# Tool Invoker
# ============================================================


class ToolInvoker:
    """工具调用器

    endpoint 为空的工具走 LocalToolBackend，否则走 HttpToolBackend。
    健康缓存容忍并发写（后写者覆盖）。
    """

    def __init__(
        self,
        http_backend: ToolBackend | None = None,
        local_backend: ToolBackend | None = None,
        credentials: CredentialResolver | None = None,
        health_ttl_s: float = 30.0,
        timeout_s: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._http_backend = http_backend
        self._local_backend = local_backend or LocalToolBackend()
        self._credentials = credentials or StaticCredentialResolver()
        self._health_ttl_s = health_ttl_s
        self._timeout_s = timeout_s
        self._clock = clock
        self._health: dict[tuple[str, str], tuple[ToolHealth, float]] = {}

    @property
    def local_backend(self) -> ToolBackend:
        return self._local_backend

    def _backend_for(self, tool: ToolRef) -> ToolBackend:
        if not tool.endpoint:
            return self._local_backend
        if self._http_backend is None:
            self._http_backend = HttpToolBackend()
        return self._http_backend

    async def _headers(self, scope: str | None) -> dict[str, str]:
        if not scope:
            return {}
        return await self._credentials.resolve(scope)

    def _record(
        self, task_id: str, tool_id: str, status: ToolHealthStatus, detail: str = ""
    ) -> ToolHealth:
        health = ToolHealth(
            tool_id=tool_id,
            status=status,
            checked_at=datetime.now(UTC),
            detail=detail,
        )
        self._health[(task_id, tool_id)] = (health, self._clock())
        return health

    def cached_health(self, task_id: str, tool_id: str) -> ToolHealth | None:
        entry = self._health.get((task_id, tool_id))
        return entry[0] if entry else None

    async def ensure_healthy(self, tool: ToolRef, task_id: str) -> ToolHealth:
        """确保工具在本任务内健康

        同一任务 TTL 内的缓存结果直接复用（健康则返回，不健康则抛错）。

        Raises:
            ToolUnavailableError: 健康检查失败
        """
        entry = self._health.get((task_id, tool.tool_id))
        if entry is not None and self._clock() - entry[1] < self._health_ttl_s:
            health = entry[0]
            if health.status == ToolHealthStatus.HEALTHY:
                return health
            raise ToolUnavailableError(tool.tool_id, health.detail)

        backend = self._backend_for(tool)
        try:
            headers = await self._headers(tool.credential_scope)
            await asyncio.wait_for(backend.probe(tool, headers), timeout=self._timeout_s)
        except Exception as e:
            detail = str(e) or type(e).__name__
            self._record(task_id, tool.tool_id, ToolHealthStatus.UNHEALTHY, detail)
            log.warning(
                "tool_health_check_failed",
                task_id=task_id,
                tool_id=tool.tool_id,
                error=detail,
            )
            raise ToolUnavailableError(tool.tool_id, detail) from e

        log.debug("tool_health_check_passed", task_id=task_id, tool_id=tool.tool_id)
        return self._record(task_id, tool.tool_id, ToolHealthStatus.HEALTHY)

    async def invoke(
        self,
        tool: ToolRef,
        arguments: dict[str, Any],
        credential_scope: str | None,
        task_id: str,
    ) -> ToolResult:
        """调用工具（不重试）

        Raises:
            ToolUnavailableError: 本任务内该工具没有成功的健康检查
        """
        health = self.cached_health(task_id, tool.tool_id)
        if health is None or health.status != ToolHealthStatus.HEALTHY:
            raise ToolUnavailableError(tool.tool_id, "no successful health check in this task")

        backend = self._backend_for(tool)
        start = time.monotonic()
        try:
            headers = await self._headers(credential_scope)
            output = await asyncio.wait_for(
                backend.call(tool, arguments, headers), timeout=self._timeout_s
            )
        except Exception as e:
            duration_ms = int((time.monotonic() - start) * 1000)
            detail = str(e) or type(e).__name__
            self._record(task_id, tool.tool_id, ToolHealthStatus.UNHEALTHY, detail)
            log.warning(
                "tool_invoke_failed",
                task_id=task_id,
                tool_id=tool.tool_id,
                error=detail,
                duration_ms=duration_ms,
            )
            return ToolResult(
                tool_id=tool.tool_id,
                output={"error": {"code": "TOOL_INVOCATION_FAILED", "message": detail}},
                is_error=True,
                duration_ms=duration_ms,
            )

        duration_ms = int((time.monotonic() - start) * 1000)
        log.info(
            "tool_invoked",
            task_id=task_id,
            tool_id=tool.tool_id,
            duration_ms=duration_ms,
        )
        return ToolResult(tool_id=tool.tool_id, output=output, duration_ms=duration_ms)

    def forget_task(self, task_id: str) -> None:
        """任务结束后丢弃其健康缓存"""
        for key in [k for k in self._health if k[0] == task_id]:
            self._health.pop(key, None)

    async def aclose(self) -> None:
        if isinstance(self._http_backend, HttpToolBackend):
            await self._http_backend.aclose()
