from __future__ import annotations

from typing import Any, Dict, List, Sequence

from flowkernel.nodes.base import NodeProcessor
from flowkernel.service.context import ExecutionContext, NodeStatus
from flowkernel.service.errors import NodeError
from flowkernel.service.variables import default_node_value


def merge_inputs(node, context: ExecutionContext, upstream: Sequence[str]) -> List[str]:
    """Node ids a MERGE waits for: configured names or ids, else all predecessors."""
    configured = node.config.inputs
    if not configured:
        return list(upstream)
    resolved: List[str] = []
    for reference in configured:
        node_id = context.node_names.get(reference, reference)
        if node_id not in resolved:
            resolved.append(node_id)
    return resolved


class MergeProcessor(NodeProcessor):
    node_type = "MERGE"

    async def run(self, node, context: ExecutionContext, *, upstream: Sequence[str] = ()):
        config = node.config
        merged: List[str] = []
        skipped: List[str] = []
        failed: Dict[str, str] = {}
        outputs: List[tuple] = []
        for input_id in merge_inputs(node, context, upstream):
            result = context.get_result(input_id)
            if result is None:
                raise NodeError(f"merge input {input_id!r} has not finished")
            if result.status == NodeStatus.SUCCESS:
                merged.append(result.node_name)
                outputs.append((result.node_name, result.data))
            elif result.status == NodeStatus.ERROR:
                failed[result.node_name] = result.error or "failed"
            else:
                skipped.append(result.node_name)

        if failed and config.error_strategy == "fail_fast":
            names = ", ".join(failed)
            raise NodeError(f"merge input(s) failed: {names}", detail={"failed": failed})
        if not outputs:
            raise NodeError("no merge input produced output")

        data: Dict[str, Any]
        if config.mode == "overwrite":
            data = {}
            for _, output in outputs:
                data.update(output)
        elif config.mode == "concat":
            items: List[Any] = []
            for _, output in outputs:
                value = default_node_value(output)
                if isinstance(value, list):
                    items.extend(value)
                else:
                    items.append(value)
            data = {"items": items, "result": items}
        else:
            data = {name: output for name, output in outputs}

        data["_merge"] = {"merged": merged, "skipped": skipped, "failed": list(failed)}
        if config.error_strategy == "collect" and failed:
            data["_errors"] = failed
        return data
