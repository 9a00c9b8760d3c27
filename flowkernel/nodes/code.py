from __future__ import annotations

from typing import Any, Dict, Sequence

from flowkernel.nodes.base import NodeProcessor
from flowkernel.service.context import ExecutionContext
from flowkernel.service.errors import NodeError


class CodeProcessor(NodeProcessor):
    """CODE nodes run through the sandbox; ``print`` output is kept as logs."""

    node_type = "CODE"

    def _payload(self, node, context: ExecutionContext) -> Dict[str, Any]:
        payload: Dict[str, Any] = context.template_namespace()
        payload.update(context.resolve_value(dict(node.config.inputs)))
        return payload

    async def run(self, node, context: ExecutionContext, *, upstream: Sequence[str] = ()):
        config = node.config
        if not config.code.strip():
            raise NodeError("code is empty", node_id=node.id)
        if self.services.sandbox is None:
            raise NodeError("code sandbox is not configured", node_id=node.id)
        outcome = await self.services.sandbox.execute(
            config.language,
            config.code,
            self._payload(node, context),
            timeout_ms=config.timeout_ms,
            max_output_bytes=config.max_output_bytes,
        )
        data = {
            "result": outcome.result,
            "结果": outcome.result,
            "logs": outcome.logs,
            "language": config.language,
            "executionTime": outcome.duration_ms,
        }
        if not outcome.ok:
            return self.error(node, outcome.error or "code execution failed", data=data)
        return data
