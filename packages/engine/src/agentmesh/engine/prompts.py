"""模型输入构建 -- system prompt 与 tool descriptors

transfer_to_<id> / delegate_to_<id> 只为当前 agent 被允许的目标生成。
"""

from typing import Any

from agentmesh.core.models import AgentGraph, AgentNode

from .graph import DELEGATE_TOOL_PREFIX, TRANSFER_TOOL_PREFIX

# transfer 后追加给新 agent 的续写指令
TRANSFER_CONTINUATION_PROMPT = (
    "Please continue this conversation seamlessly. The previous response in "
    "conversation history was from another internal agent, but you must continue "
    "as if YOU made that response. All responses must appear as one unified agent "
    "- do not repeat what was already communicated."
)


def build_system_prompt(graph: AgentGraph, node: AgentNode) -> str:
    sections = [node.prompt or f"You are {node.name}."]

    transfer_targets = [graph.nodes[t] for t in sorted(node.permitted_transfer_ids)]
    if transfer_targets:
        lines = ["You can transfer the conversation to these agents when they are better suited:"]
        lines += [f"- {t.name} ({t.id}): {t.description or 'no description'}" for t in transfer_targets]
        sections.append("\n".join(lines))

    delegate_targets = [graph.nodes[d] for d in sorted(node.allowed_delegate_ids)]
    if delegate_targets:
        lines = ["You can delegate sub-tasks to these agents and use their answers:"]
        lines += [f"- {d.name} ({d.id}): {d.description or 'no description'}" for d in delegate_targets]
        sections.append("\n".join(lines))

    return "\n\n".join(sections)


def transfer_descriptor(target: AgentNode) -> dict[str, Any]:
    return {
        "type": "function",
        "function": {
            "name": f"{TRANSFER_TOOL_PREFIX}{target.id}",
            "description": (
                f"Hand off the conversation to {target.name}. "
                f"{target.description}".strip()
            ),
            "parameters": {"type": "object", "properties": {}},
        },
    }


def delegate_descriptor(target: AgentNode) -> dict[str, Any]:
    return {
        "type": "function",
        "function": {
            "name": f"{DELEGATE_TOOL_PREFIX}{target.id}",
            "description": (
                f"Delegate a sub-task to {target.name} and receive its answer. "
                f"{target.description}".strip()
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "message": {
                        "type": "string",
                        "description": "The complete instruction for the delegated agent",
                    }
                },
                "required": ["message"],
            },
        },
    }


def build_tool_descriptors(
    graph: AgentGraph,
    node: AgentNode,
    allow_delegation: bool = True,
) -> list[dict[str, Any]]:
    """构建当前 agent 可见的 tool descriptors

    Args:
        allow_delegation: 委派深度已达上限时为 False，不再暴露 delegate 工具
    """
    descriptors = [tool.to_descriptor() for tool in node.tools]
    descriptors += [transfer_descriptor(graph.nodes[t]) for t in sorted(node.permitted_transfer_ids)]
    if allow_delegation:
        descriptors += [
            delegate_descriptor(graph.nodes[d]) for d in sorted(node.allowed_delegate_ids)
        ]
    return descriptors
