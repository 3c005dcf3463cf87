"""TaskInput Domain Model -- 任务输入消息

文本 + 可选结构化 parts（A2A Part 兼容）。
"""

from typing import Any

from pydantic import BaseModel, Field

from .enums import PartType


class MessagePart(BaseModel):
    """消息 Part -- 对齐 A2A Part 规范"""

    kind: PartType = Field(default=PartType.TEXT, description="Part 类型")
    text: str | None = Field(default=None, description="文本内容")
    data: dict[str, Any] | None = Field(default=None, description="结构化数据")
    mime: str = Field(default="text/plain", description="MIME 类型")


class TaskInput(BaseModel):
    """任务输入消息

    text 为主文本；parts 中的 text part 会在 effective_text() 中拼接，
    对齐 A2A 任务输入只携带 parts 的情况。
    """

    text: str = Field(default="", description="文本内容")
    parts: list[MessagePart] = Field(default_factory=list, description="结构化 parts")

    def effective_text(self) -> str:
        """合并 text 与所有 text part，作为模型可见的用户消息"""
        chunks = [self.text] if self.text else []
        chunks.extend(p.text for p in self.parts if p.kind == PartType.TEXT and p.text)
        return " ".join(chunks)

    def is_empty(self) -> bool:
        return not self.effective_text().strip()
