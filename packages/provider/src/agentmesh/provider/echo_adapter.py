"""EchoMessageAdapter -- 回声 provider

回复 "Echo: <最后一条 user 消息>"，按词流式产出。
用于 echo 模式、离线测试，以及 echo_fallback 开启时的降级后备。
"""

import asyncio
import re
import time
from collections.abc import AsyncIterator
from typing import Any

from .models import ModelCallResult, ModelChunk, TokenUsage

# 每个词带上尾随空白，拼接后还原原文
_WORDS = re.compile(r"\S+\s*")

EMPTY_PLACEHOLDER = "(empty)"


def last_user_text(messages: list[dict[str, Any]]) -> str:
    """最后一条 user 消息；没有 user 消息时退回最后一条消息，再退回占位符"""
    user_texts = [m.get("content") or "" for m in messages if m.get("role") == "user"]
    if user_texts:
        return user_texts[-1]
    if messages:
        return messages[-1].get("content") or EMPTY_PLACEHOLDER
    return EMPTY_PLACEHOLDER


class EchoMessageAdapter:
    """从不发起 tool call，echo 模式下任务总是一轮即给出 final"""

    def __init__(self, token_delay_s: float = 0.0) -> None:
        self._token_delay_s = token_delay_s

    async def stream(
        self,
        messages: list[dict[str, Any]],
        model_alias: str = "echo",
        tools: list[dict[str, Any]] | None = None,
        **kwargs,
    ) -> AsyncIterator[ModelChunk]:
        started = time.monotonic()
        prompt = last_user_text(messages)
        reply = f"Echo: {prompt}"

        for word in _WORDS.findall(reply):
            # sleep(0) 也会让出事件循环，取消可以及时生效
            await asyncio.sleep(self._token_delay_s)
            yield ModelChunk(type="token", text=word)

        prompt_tokens = len(prompt.split())
        completion_tokens = len(reply.split())
        yield ModelChunk(
            type="done",
            result=ModelCallResult(
                content=reply,
                model_alias=model_alias,
                model_name="echo",
                provider="echo",
                duration_ms=int((time.monotonic() - started) * 1000),
                token_usage=TokenUsage(
                    prompt_tokens=prompt_tokens,
                    completion_tokens=completion_tokens,
                    total_tokens=prompt_tokens + completion_tokens,
                ),
            ),
        )
