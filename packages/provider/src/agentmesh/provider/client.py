"""LiteLLMClient -- 经 LiteLLM Proxy 的流式推理

每个 delta 的 content 立即作为 token chunk 产出；tool call 增量按 index 拼接，
流结束后连同用量、成本汇总到 done chunk。

proxy_api_key 是 Proxy 的访问密钥，上游 provider 的 API key 只存在于 Proxy 侧。
"""

import time
from collections.abc import AsyncIterator
from typing import Any

import httpx
import structlog
from litellm import acompletion

from .cost import CostTracker
from .exceptions import ProviderError, ProxyUnreachableError
from .models import ModelCallResult, ModelChunk, ToolCallRequest

log = structlog.get_logger()

LIVENESS_PATH = "/health/liveliness"
LIVENESS_TIMEOUT_S = 5.0

# litellm 把连接失败包装为自己的异常类型，按类名识别避免依赖其内部模块路径
_LITELLM_CONNECTION_ERRORS = frozenset({"APIConnectionError", "APITimeoutError", "Timeout"})


def classify_failure(exc: Exception, proxy_url: str) -> ProviderError:
    """把 acompletion 过程中的异常映射为 provider 异常

    连接类 -> ProxyUnreachableError（FallbackManager 据此降级）；其余 -> ProviderError。
    """
    if isinstance(exc, ConnectionError | TimeoutError | httpx.TransportError) or (
        type(exc).__name__ in _LITELLM_CONNECTION_ERRORS
    ):
        return ProxyUnreachableError(proxy_url=proxy_url, original_error=exc)
    return ProviderError(message=f"LLM 调用失败: {exc}", recoverable=True)


class ToolCallAssembler:
    """按 index 拼接流式 tool call 片段；缺 id 的补 call_<index>"""

    def __init__(self) -> None:
        self._ids: dict[int, str] = {}
        self._names: dict[int, str] = {}
        self._args: dict[int, list[str]] = {}

    def feed(self, fragments) -> None:
        for fragment in fragments or ():
            index = getattr(fragment, "index", None)
            if index is None:
                index = len(self._args)
            self._args.setdefault(index, [])
            if getattr(fragment, "id", None):
                self._ids[index] = fragment.id
            function = getattr(fragment, "function", None)
            if function is None:
                continue
            if getattr(function, "name", None):
                self._names[index] = function.name
            if getattr(function, "arguments", None):
                self._args[index].append(function.arguments)

    def finish(self) -> list[ToolCallRequest]:
        return [
            ToolCallRequest(
                id=self._ids.get(index) or f"call_{index}",
                name=self._names.get(index, ""),
                arguments="".join(parts) or "{}",
            )
            for index, parts in sorted(self._args.items())
        ]


class LiteLLMClient:
    def __init__(
        self,
        proxy_base_url: str = "http://localhost:4000",
        proxy_api_key: str = "",
        timeout_s: int = 30,
    ) -> None:
        self._proxy_base_url = proxy_base_url.rstrip("/")
        self._proxy_api_key = proxy_api_key
        self._timeout_s = timeout_s

    def _request(
        self,
        messages: list[dict[str, Any]],
        model_alias: str,
        tools: list[dict[str, Any]] | None,
        temperature: float,
        max_tokens: int | None,
        extra: dict[str, Any],
    ) -> dict[str, Any]:
        request: dict[str, Any] = dict(
            model=model_alias,
            messages=messages,
            api_base=self._proxy_base_url,
            api_key=self._proxy_api_key or "no-key",
            temperature=temperature,
            timeout=self._timeout_s,
            stream=True,
        )
        if tools:
            request["tools"] = tools
        if max_tokens is not None:
            request["max_tokens"] = max_tokens
        request.update(extra)
        return request

    async def stream(
        self,
        messages: list[dict[str, Any]],
        model_alias: str = "main",
        tools: list[dict[str, Any]] | None = None,
        temperature: float = 0.7,
        max_tokens: int | None = None,
        **kwargs,
    ) -> AsyncIterator[ModelChunk]:
        """流式推理

        model_alias 此处已是运行时 group 名（Proxy model_name）。
        产出若干 token chunk，最后一个为 done chunk。

        Raises:
            ProxyUnreachableError: Proxy 连接失败或超时
            ProviderError: Proxy 返回业务错误
        """
        started = time.monotonic()
        chunks: list = []
        text: list[str] = []
        assembler = ToolCallAssembler()

        log.debug(
            "litellm_stream_start",
            model_alias=model_alias,
            message_count=len(messages),
            tool_count=len(tools or []),
        )
        try:
            response = await acompletion(
                **self._request(messages, model_alias, tools, temperature, max_tokens, kwargs)
            )
            async for chunk in response:
                chunks.append(chunk)
                if not getattr(chunk, "choices", None):
                    continue
                delta = chunk.choices[0].delta
                piece = getattr(delta, "content", None)
                if piece:
                    text.append(piece)
                    yield ModelChunk(type="token", text=piece)
                assembler.feed(getattr(delta, "tool_calls", None))
        except ProviderError:
            raise
        except Exception as e:
            log.error(
                "litellm_call_failed",
                model_alias=model_alias,
                error=str(e),
                error_type=type(e).__name__,
                emitted_tokens=len(text),
                duration_ms=int((time.monotonic() - started) * 1000),
            )
            raise classify_failure(e, self._proxy_base_url) from e

        summary = CostTracker.summarize_stream(chunks, messages)
        result = ModelCallResult(
            content="".join(text),
            tool_calls=assembler.finish(),
            model_alias=model_alias,
            model_name=summary.model_name,
            provider=summary.provider,
            duration_ms=int((time.monotonic() - started) * 1000),
            token_usage=summary.token_usage,
            cost_usd=summary.cost_usd,
            cost_unavailable=summary.cost_unavailable,
        )
        log.info(
            "litellm_call_completed",
            model_alias=model_alias,
            model_name=result.model_name,
            duration_ms=result.duration_ms,
            total_tokens=result.token_usage.total_tokens,
            cost_usd=result.cost_usd,
            tool_calls=len(result.tool_calls),
        )
        yield ModelChunk(type="done", result=result)

    async def health_check(self) -> bool:
        """GET {proxy}/health/liveliness；不抛异常，任何失败返回 False"""
        url = self._proxy_base_url + LIVENESS_PATH
        try:
            async with httpx.AsyncClient(timeout=LIVENESS_TIMEOUT_S) as http:
                resp = await http.get(url)
        except httpx.HTTPError as e:
            log.debug("proxy_liveness_failed", url=url, error=str(e))
            return False
        return resp.status_code == 200
