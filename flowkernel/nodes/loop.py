from __future__ import annotations

import json
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from flowkernel.logging import get_logger
from flowkernel.nodes.base import NodeProcessor
from flowkernel.nodes.branching import evaluate_condition
from flowkernel.service.context import ExecutionContext, NodeStatus
from flowkernel.service.errors import NodeError

logger = get_logger(__name__)

DEFAULT_MAX_ITERATIONS = 1000

BodyRunner = Callable[[Any, ExecutionContext], Awaitable[None]]


def _loop_variables(
    config, index: int, *, item: Any = None, total: Optional[int] = None
) -> Dict[str, Any]:
    loop = {
        "index": index,
        "iteration": index + 1,
        "isFirst": index == 0,
        "isLast": total is not None and index == total - 1,
        "total": total,
    }
    variables: Dict[str, Any] = {"loop": loop}
    if config.loop_type == "FOR":
        loop["item"] = item
        variables[config.for_config.item_name] = item
        variables[config.for_config.index_name] = index
    return variables


def _as_items(value: Any) -> Optional[List[Any]]:
    if isinstance(value, (list, tuple)):
        return list(value)
    if isinstance(value, str):
        stripped = value.strip()
        if stripped.startswith("["):
            try:
                parsed = json.loads(stripped)
            except ValueError:
                return None
            return parsed if isinstance(parsed, list) else None
    return None


class LoopProcessor(NodeProcessor):
    """Runs the loop body once per item (FOR) or while a condition holds (WHILE).

    Each iteration gets a fresh iteration scope; the body walk itself is
    delegated to ``body_runner`` so it follows the scheduler's rules.
    """

    node_type = "LOOP"

    def __init__(self, services, body_runner: BodyRunner) -> None:
        super().__init__(services)
        self.body_runner = body_runner

    def _cap(self, context: ExecutionContext, configured: Optional[int]) -> int:
        limit = context.max_loop_iterations or self.services.settings.max_loop_iterations or DEFAULT_MAX_ITERATIONS
        return max(1, min(configured or limit, limit))

    def _resolve_items(self, context: ExecutionContext, reference: str) -> List[Any]:
        found, value = context.lookup(reference)
        if not found and "{{" in reference:
            value = context.resolve(reference)
        items = _as_items(value) if (found or "{{" in reference) else None
        if items is None:
            raise NodeError(f"loop array {reference!r} did not resolve to an array")
        return items

    async def _iterate(self, node, context: ExecutionContext, variables: Dict[str, Any], index: int):
        scope = context.iteration_scope(variables, index)
        await self.body_runner(node, scope)
        failed = [
            result
            for result in scope.node_results.values()
            if result.status == NodeStatus.ERROR and not result.best_effort
        ]
        entry: Dict[str, Any] = {
            "index": index,
            "outputs": scope.successful_outputs(),
            "success": not failed,
        }
        if "item" in variables.get("loop", {}):
            entry["item"] = variables["loop"]["item"]
        if failed:
            entry["errors"] = {result.node_name: result.error for result in failed}
        return scope, entry

    async def run(self, node, context: ExecutionContext, *, upstream: Sequence[str] = ()):
        config = node.config
        results: List[Dict[str, Any]] = []
        extra: Dict[str, Any] = {}

        if config.loop_type == "FOR":
            items = self._resolve_items(context, config.for_config.array_variable)
            cap = self._cap(context, config.max_iterations)
            if len(items) > cap:
                logger.warning("workflow_loop_truncated", node=node.id, items=len(items), cap=cap)
                extra["truncated"] = True
                items = items[:cap]
            for index, item in enumerate(items):
                variables = _loop_variables(config, index, item=item, total=len(items))
                _, entry = await self._iterate(node, context, variables, index)
                results.append(entry)
                if not entry["success"] and not config.continue_on_error:
                    self._fail(node, index, entry, results)
        else:
            while_config = config.while_config
            cap = self._cap(context, while_config.max_iterations or config.max_iterations)
            probe: ExecutionContext = context.iteration_scope(_loop_variables(config, 0), 0)
            index = 0
            while True:
                check = evaluate_condition(probe, while_config.condition)
                if not check["result"]:
                    break
                if index >= cap:
                    logger.warning("workflow_loop_limit_reached", node=node.id, cap=cap)
                    extra["terminatedByLimit"] = True
                    break
                probe, entry = await self._iterate(node, context, _loop_variables(config, index), index)
                results.append(entry)
                if not entry["success"] and not config.continue_on_error:
                    self._fail(node, index, entry, results)
                index += 1

        data = {
            "iterations": len(results),
            "results": results,
            "allSucceeded": all(entry["success"] for entry in results),
        }
        data.update(extra)
        return data

    @staticmethod
    def _fail(node, index: int, entry: Dict[str, Any], results: List[Dict[str, Any]]) -> None:
        errors = entry.get("errors") or {}
        detail = "; ".join(f"{name}: {message}" for name, message in errors.items())
        raise NodeError(
            f"loop iteration {index} failed: {detail}",
            node_id=node.id,
            detail={"iterations": len(results), "results": results, "allSucceeded": False},
        )
