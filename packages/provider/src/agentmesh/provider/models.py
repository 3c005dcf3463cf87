"""数据模型 -- TokenUsage + ToolCallRequest + ModelCallResult + ModelChunk

所有 provider（LiteLLM、Echo、Mock）统一以 ModelChunk 流输出，
最后一个 done chunk 携带汇总的 ModelCallResult。
"""

from typing import Literal

from pydantic import BaseModel, Field


class TokenUsage(BaseModel):
    """Token 使用统计

    key 命名对齐 OpenAI/LiteLLM 行业标准：
    prompt_tokens / completion_tokens / total_tokens
    """

    prompt_tokens: int = Field(default=0, ge=0, description="输入 token 数")
    completion_tokens: int = Field(default=0, ge=0, description="输出 token 数")
    total_tokens: int = Field(default=0, ge=0, description="总 token 数")


class ToolCallRequest(BaseModel):
    """模型发出的一次 tool call

    arguments 保持模型输出的原始 JSON 字符串，由 directive 解析层校验。
    """

    id: str = Field(description="tool call ID，回注 tool 消息时使用")
    name: str = Field(description="function name")
    arguments: str = Field(default="{}", description="原始 JSON 参数")

    def to_message_dict(self) -> dict:
        """转换为 assistant 消息中的 tool_calls 元素"""
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


class ModelCallResult(BaseModel):
    """LLM 调用结果

    包含响应内容、tool calls、路由信息、成本数据、降级标记等完整信息。
    """

    # 响应内容
    content: str = Field(description="LLM 响应文本内容")
    tool_calls: list[ToolCallRequest] = Field(
        default_factory=list,
        description="本轮请求的 tool calls，按模型输出顺序",
    )

    # 路由信息
    model_alias: str = Field(description="请求时使用的语义 alias 或运行时 group")
    model_name: str = Field(default="", description="实际调用的模型名称（如 gpt-4o-mini）")
    provider: str = Field(default="", description="实际 provider（如 openai/anthropic）")

    # 性能指标
    duration_ms: int = Field(ge=0, description="端到端耗时（毫秒）")

    # Token 使用
    token_usage: TokenUsage = Field(
        default_factory=TokenUsage,
        description="Token 使用详情",
    )

    # 成本数据
    cost_usd: float = Field(default=0.0, ge=0.0, description="本次调用的 USD 成本")
    cost_unavailable: bool = Field(
        default=False,
        description="成本数据是否不可用（双通道均失败时为 True）",
    )

    # 降级信息
    is_fallback: bool = Field(default=False, description="是否为降级调用")
    fallback_reason: str = Field(default="", description="降级原因说明")


class ModelChunk(BaseModel):
    """流式输出单元

    type="token": text 为增量文本
    type="done": result 为本次调用的汇总结果（总是最后一个 chunk）
    """

    type: Literal["token", "done"]
    text: str = ""
    result: ModelCallResult | None = None
