"""Delegation Router -- 判定 directive 的路由结果

transfer 只允许指向 default_transfer_target_id 或 transfer_target_ids；
delegate 只允许指向 allowed_delegate_ids，且任务委派深度低于上限。
"""

from dataclasses import dataclass

import structlog
from agentmesh.core.errors import RoutingDeniedError
from agentmesh.core.models import AgentGraph, AgentNode, Task, TaskInput

from .directives import DelegateDirective, Directive, TransferDirective

log = structlog.get_logger()


@dataclass(frozen=True)
class Handle:
    """当前 agent 自行处理（工具调用或最终回答）"""


@dataclass(frozen=True)
class Transfer:
    target_id: str


@dataclass(frozen=True)
class Delegate:
    target_id: str
    sub_input: TaskInput


RouteDecision = Handle | Transfer | Delegate


class DelegationRouter:
    """委派路由器 -- 纯函数式判定，不修改任务"""

    def __init__(self, graph: AgentGraph, max_delegation_depth: int = 5) -> None:
        self._graph = graph
        self._max_delegation_depth = max_delegation_depth

    def route(self, task: Task, node: AgentNode, directive: Directive) -> RouteDecision:
        """
        Raises:
            RoutingDeniedError: 目标不存在、未被授权或委派深度超限
        """
        if isinstance(directive, TransferDirective):
            target = directive.target_agent_id
            self._require_known(node, target)
            if target not in node.permitted_transfer_ids:
                raise self._deny(task, node, target, "transfer target not permitted")
            return Transfer(target_id=target)

        if isinstance(directive, DelegateDirective):
            target = directive.target_agent_id
            self._require_known(node, target)
            if target not in node.allowed_delegate_ids:
                raise self._deny(task, node, target, "delegate target not permitted")
            if task.delegation_depth >= self._max_delegation_depth:
                raise self._deny(
                    task,
                    node,
                    target,
                    f"delegation depth limit {self._max_delegation_depth} reached",
                )
            return Delegate(target_id=target, sub_input=TaskInput(text=directive.message))

        return Handle()

    def _require_known(self, node: AgentNode, target: str) -> None:
        if self._graph.get(target) is None:
            raise RoutingDeniedError(node.id, target, "unknown agent")

    @staticmethod
    def _deny(task: Task, node: AgentNode, target: str, reason: str) -> RoutingDeniedError:
        log.warning(
            "routing_denied",
            task_id=task.task_id,
            source_agent_id=node.id,
            target_agent_id=target,
            reason=reason,
        )
        return RoutingDeniedError(node.id, target, reason)
