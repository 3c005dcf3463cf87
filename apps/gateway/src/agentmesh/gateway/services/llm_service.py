"""LLMService -- 执行循环的推理入口

语义 alias 经 AliasRegistry 解析为运行时 group，再通过 FallbackManager 流式调用。
"""

from collections.abc import AsyncIterator
from typing import Any

import structlog
from agentmesh.provider import (
    AliasRegistry,
    EchoMessageAdapter,
    FallbackManager,
    ModelChunk,
)

log = structlog.get_logger()


class LLMService:
    """LLM 服务

    无参构造时自动创建 Echo 模式的 FallbackManager + AliasRegistry（本地开发与测试）。
    """

    def __init__(
        self,
        fallback_manager: FallbackManager | None = None,
        alias_registry: AliasRegistry | None = None,
    ) -> None:
        self._fallback_manager = fallback_manager or FallbackManager(
            primary=EchoMessageAdapter(),
            fallback=None,
        )
        self._alias_registry = alias_registry or AliasRegistry()

    @property
    def alias_registry(self) -> AliasRegistry:
        return self._alias_registry

    async def stream(
        self,
        messages: list[dict[str, Any]],
        model_alias: str | None = None,
        tools: list[dict[str, Any]] | None = None,
    ) -> AsyncIterator[ModelChunk]:
        """流式调用 LLM

        Args:
            messages: OpenAI 格式 messages
            model_alias:
                - 语义 alias（如 "planner"）-> AliasRegistry 解析为运行时 group
                - 运行时 group（如 "main"）-> 直接透传
                - None -> 使用 "main" 默认
            tools: tool descriptors（OpenAI function 格式）

        Yields:
            ModelChunk，最后一个为 done chunk
        """
        resolved_alias = self._alias_registry.resolve(model_alias or "main")
        log.debug(
            "llm_stream_requested",
            model_alias=model_alias,
            resolved_alias=resolved_alias,
            tool_count=len(tools or []),
        )
        async for chunk in self._fallback_manager.stream_with_fallback(
            messages=messages,
            model_alias=resolved_alias,
            tools=tools,
        ):
            yield chunk
