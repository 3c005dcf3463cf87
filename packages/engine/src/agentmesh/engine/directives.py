"""模型 directive -- 对模型输出的标签化解析

模型每轮输出要么是不带 tool call 的最终回答，要么是若干 tool call。
每个 tool call 按固定 schema 解析为 ToolCallDirective / TransferDirective / DelegateDirective 之一，
任何其他形态都是 InvalidDirectiveError。
"""

import json
from typing import Annotated, Any, Literal

from agentmesh.core.errors import InvalidDirectiveError
from agentmesh.core.models import AgentNode
from agentmesh.provider import ModelCallResult, ToolCallRequest
from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from .graph import DELEGATE_TOOL_PREFIX, TRANSFER_TOOL_PREFIX


class ToolCallDirective(BaseModel):
    """调用已绑定的工具"""

    kind: Literal["tool_call"] = "tool_call"
    call_id: str
    tool_name: str
    arguments: dict[str, Any] = Field(default_factory=dict)


class TransferDirective(BaseModel):
    """把任务不可逆地移交给另一个 agent"""

    kind: Literal["transfer"] = "transfer"
    call_id: str
    target_agent_id: str


class DelegateDirective(BaseModel):
    """派生子任务并等待其结果"""

    kind: Literal["delegate"] = "delegate"
    call_id: str
    target_agent_id: str
    message: str = Field(min_length=1)


class FinalAnswer(BaseModel):
    """不带 tool call 的模型输出"""

    kind: Literal["final_answer"] = "final_answer"
    text: str = ""


Directive = Annotated[
    ToolCallDirective | TransferDirective | DelegateDirective | FinalAnswer,
    Field(discriminator="kind"),
]
DirectiveAdapter: TypeAdapter[Directive] = TypeAdapter(Directive)


def _parse_arguments(call: ToolCallRequest) -> dict[str, Any]:
    raw = call.arguments.strip() or "{}"
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as e:
        raise InvalidDirectiveError(
            f"Arguments for {call.name} are not valid JSON: {e.msg}",
            tool_name=call.name,
        ) from e
    if not isinstance(value, dict):
        raise InvalidDirectiveError(
            f"Arguments for {call.name} must be a JSON object",
            tool_name=call.name,
        )
    return value


def parse_directive(call: ToolCallRequest, node: AgentNode) -> Directive:
    """把一个 tool call 解析为 directive

    transfer_to_<agent_id> / delegate_to_<agent_id> 只校验形态，
    目标是否被允许由 DelegationRouter 判定。

    Raises:
        InvalidDirectiveError: 未知的 function name、参数 JSON 非法或不符合 schema
    """
    arguments = _parse_arguments(call)

    if call.name.startswith(TRANSFER_TOOL_PREFIX):
        payload = {
            "kind": "transfer",
            "call_id": call.id,
            "target_agent_id": call.name[len(TRANSFER_TOOL_PREFIX):],
        }
    elif call.name.startswith(DELEGATE_TOOL_PREFIX):
        payload = {
            "kind": "delegate",
            "call_id": call.id,
            "target_agent_id": call.name[len(DELEGATE_TOOL_PREFIX):],
            "message": arguments.get("message"),
        }
    elif node.tool_by_name(call.name) is not None:
        payload = {
            "kind": "tool_call",
            "call_id": call.id,
            "tool_name": call.name,
            "arguments": arguments,
        }
    else:
        raise InvalidDirectiveError(f"Unknown tool {call.name}", tool_name=call.name)

    try:
        return DirectiveAdapter.validate_python(payload)
    except ValidationError as e:
        raise InvalidDirectiveError(
            f"Invalid directive for {call.name}: {e.errors()[0]['msg']}",
            tool_name=call.name,
        ) from e


def final_answer(result: ModelCallResult) -> FinalAnswer | None:
    """不带 tool call 的一轮输出即最终回答；否则返回 None，由 parse_directive 逐个解析"""
    if result.tool_calls:
        return None
    return FinalAnswer(text=result.content)
