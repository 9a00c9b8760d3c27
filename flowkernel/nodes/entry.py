from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Dict, Sequence

from flowkernel.nodes.base import NodeProcessor
from flowkernel.service.context import ExecutionContext
from flowkernel.service.errors import NodeError

_MISSING = object()


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, dict)):
        return not value
    return False


class InputProcessor(NodeProcessor):
    """Materializes INPUT fields from the invocation payload or their defaults."""

    node_type = "INPUT"

    def _field_value(self, node, field, payload: Dict[str, Any]) -> Any:
        scoped = payload.get(node.name) if node.name else None
        if isinstance(scoped, Mapping):
            for key in (field.name, field.id):
                if key and key in scoped:
                    return scoped[key]
        for key in (field.name, field.id):
            if key and key in payload:
                return payload[key]
        return field.value if field.value is not None else _MISSING

    async def run(self, node, context: ExecutionContext, *, upstream: Sequence[str] = ()):
        values: Dict[str, Any] = {}
        missing = []
        for field in node.config.fields:
            value = self._field_value(node, field, context.input)
            if value is _MISSING or _is_blank(value):
                if field.required:
                    missing.append(field.name)
                    continue
                value = None if value is _MISSING else value
            values[field.name] = value
        if missing:
            raise NodeError(
                f"required input field(s) missing: {', '.join(missing)}",
                detail={"missingFields": missing},
            )
        context.global_variables.update(values)
        return values


class TriggerProcessor(NodeProcessor):
    node_type = "TRIGGER"

    async def run(self, node, context: ExecutionContext, *, upstream: Sequence[str] = ()):
        data: Dict[str, Any] = dict(context.input)
        data["triggerType"] = node.config.trigger_type
        data["input"] = context.input
        return data
