"""CostTracker -- 流式调用的成本与用量汇总

成本双通道：completion_cost() -> _hidden_params["response_cost"] -> 不可用。
流式调用先经 stream_chunk_builder 还原为完整响应再计算。
汇总过程不抛异常，任何一步失败都只降级对应字段。

UsageTotals 把一个任务内多轮推理的用量累加，随 final 事件下发。
"""

import contextlib
from typing import Any

import structlog
from litellm import completion_cost as litellm_completion_cost
from litellm import stream_chunk_builder
from pydantic import BaseModel, Field

from .models import ModelCallResult, TokenUsage

log = structlog.get_logger()


class StreamSummary(BaseModel):
    """一次流式调用还原后的汇总"""

    token_usage: TokenUsage = Field(default_factory=TokenUsage)
    cost_usd: float = 0.0
    cost_unavailable: bool = True
    model_name: str = ""
    provider: str = ""


class UsageTotals(BaseModel):
    """任务级用量累计（同一任务内所有推理轮次）"""

    calls: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    cost_usd: float = 0.0
    cost_unavailable: bool = Field(default=False, description="任一轮成本不可用即为 True")
    fallback_calls: int = 0

    def add(self, result: ModelCallResult) -> None:
        self.calls += 1
        self.prompt_tokens += result.token_usage.prompt_tokens
        self.completion_tokens += result.token_usage.completion_tokens
        self.total_tokens += result.token_usage.total_tokens
        self.cost_usd = round(self.cost_usd + result.cost_usd, 8)
        self.cost_unavailable = self.cost_unavailable or result.cost_unavailable
        if result.is_fallback:
            self.fallback_calls += 1


class CostTracker:
    """成本追踪器 -- 无状态，全部为静态方法"""

    @staticmethod
    def summarize_stream(chunks: list, messages: list[dict[str, Any]] | None = None) -> StreamSummary:
        """还原流式 chunk 并汇总用量、成本、模型信息"""
        response = CostTracker.assemble_stream(chunks, messages)
        if response is None:
            log.warning("cost_unavailable", reason="no_assembled_response")
            return StreamSummary()

        cost_usd, cost_unavailable = CostTracker.calculate_cost(response)
        model_name, provider = CostTracker.extract_model_info(response)
        return StreamSummary(
            token_usage=CostTracker.parse_usage(response),
            cost_usd=cost_usd,
            cost_unavailable=cost_unavailable,
            model_name=model_name,
            provider=provider,
        )

    @staticmethod
    def assemble_stream(chunks: list, messages: list[dict[str, Any]] | None = None):
        """流式 chunk -> 完整 ModelResponse；无 chunk 或还原失败时返回 None"""
        if not chunks:
            return None
        try:
            return stream_chunk_builder(chunks, messages=messages)
        except Exception as e:
            log.debug("stream_chunk_builder_failed", error=str(e))
            return None

    @staticmethod
    def calculate_cost(response) -> tuple[float, bool]:
        """Returns: (cost_usd, cost_unavailable)"""
        if response is None:
            return 0.0, True

        try:
            cost = litellm_completion_cost(completion_response=response)
        except Exception as e:
            log.debug("completion_cost_failed", error=str(e))
            cost = None
        if cost is None or cost < 0:
            hidden = getattr(response, "_hidden_params", None)
            cost = hidden.get("response_cost") if isinstance(hidden, dict) else None

        if isinstance(cost, int | float) and cost >= 0:
            return float(cost), False

        log.warning("cost_unavailable", reason="both_channels_failed")
        return 0.0, True

    @staticmethod
    def parse_usage(response) -> TokenUsage:
        """失败时返回全零"""
        usage = getattr(response, "usage", None)
        if usage is None:
            return TokenUsage()
        try:
            return TokenUsage(
                prompt_tokens=getattr(usage, "prompt_tokens", 0) or 0,
                completion_tokens=getattr(usage, "completion_tokens", 0) or 0,
                total_tokens=getattr(usage, "total_tokens", 0) or 0,
            )
        except (TypeError, ValueError) as e:
            log.debug("parse_usage_failed", error=str(e))
            return TokenUsage()

    @staticmethod
    def extract_model_info(response) -> tuple[str, str]:
        """Returns: (model_name, provider)"""
        model_name = ""
        provider = ""
        with contextlib.suppress(Exception):
            model_name = getattr(response, "model", "") or ""
        hidden = getattr(response, "_hidden_params", None)
        if isinstance(hidden, dict):
            provider = hidden.get("custom_llm_provider", "") or ""
        return model_name, provider
