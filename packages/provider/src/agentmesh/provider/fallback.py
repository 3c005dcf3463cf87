"""FallbackManager -- primary 失败时切换到后备 provider

每次调用都先走 primary，不缓存降级状态。
primary 一旦已向调用方产出 chunk 就不再降级：已输出的 token 无法撤回。
"""

from collections.abc import AsyncIterator
from typing import Any

import structlog

from .exceptions import ProviderError
from .models import ModelChunk

log = structlog.get_logger()


def _mark_fallback(chunk: ModelChunk, reason: str) -> ModelChunk:
    if chunk.type != "done" or chunk.result is None:
        return chunk
    result = chunk.result.model_copy(update={"is_fallback": True, "fallback_reason": reason})
    return chunk.model_copy(update={"result": result})


class FallbackManager:
    """primary（LiteLLMClient / EchoMessageAdapter）+ 可选 fallback

    Proxy 内部的 model 级 fallback 对这里透明。
    """

    def __init__(self, primary, fallback=None) -> None:
        self._primary = primary
        self._fallback = fallback

    async def stream_with_fallback(
        self,
        messages: list[dict[str, Any]],
        model_alias: str = "main",
        tools: list[dict[str, Any]] | None = None,
        **kwargs,
    ) -> AsyncIterator[ModelChunk]:
        """Raises:
        ProviderError: primary 中途失败；primary 失败且无 fallback；双方均失败（recoverable=False）
        """
        emitted = 0
        try:
            async for chunk in self._primary.stream(
                messages=messages, model_alias=model_alias, tools=tools, **kwargs
            ):
                emitted += 1
                yield chunk
            return
        except Exception as e:
            if emitted:
                log.error("primary_failed_mid_stream", error=str(e), model_alias=model_alias, emitted=emitted)
                if isinstance(e, ProviderError):
                    raise
                raise ProviderError(f"流式调用中断: {e}", recoverable=True) from e
            primary_error = e

        if self._fallback is None:
            raise ProviderError(
                f"Primary 调用失败且无 fallback 配置: {primary_error}", recoverable=True
            ) from primary_error

        reason = f"Primary 失败: {primary_error}"
        log.warning("primary_failed_attempting_fallback", error=str(primary_error), model_alias=model_alias)
        try:
            # fallback 不支持工具，只回答文本
            async for chunk in self._fallback.stream(messages=messages, model_alias=model_alias):
                if chunk.type == "done":
                    log.info("fallback_activated", fallback_reason=str(primary_error), model_alias=model_alias)
                yield _mark_fallback(chunk, reason)
        except Exception as fallback_error:
            log.error(
                "both_primary_and_fallback_failed",
                primary_error=str(primary_error),
                fallback_error=str(fallback_error),
            )
            raise ProviderError(
                f"Primary 和 Fallback 均失败。Primary: {primary_error}; Fallback: {fallback_error}",
                recoverable=False,
            ) from fallback_error
