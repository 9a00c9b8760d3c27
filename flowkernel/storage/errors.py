from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness, reference or state constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class IllegalTransition(ConstraintViolation):
    """An execution status change not allowed by the lifecycle (e.g. out of a terminal state)."""

    def __init__(self, execution_id: str, current: str, requested: str):
        super().__init__(
            f"illegal execution transition {current} -> {requested}",
            {"execution_id": execution_id, "from": current, "to": requested},
        )
        self.execution_id = execution_id
        self.current = current
        self.requested = requested


__all__ = ["ConstraintViolation", "IllegalTransition"]
