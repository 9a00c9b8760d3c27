from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code used in the response envelope:
    - not_found (404)
    - validation_error (400)
    - conflict (409)
    - timeout (504)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class StructuralError(ValidationError):
    """The workflow graph is invalid; no node may run (400).

    Covers duplicate ids, dangling edges, unknown node types, malformed node
    configuration, nested groups and cycles. Never retried.
    """


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g. an illegal state transition (409)."""
    status_code = 409
    error_code = "conflict"


class ExecutionTimeoutError(ServiceError):
    """A whole-execution or whole-task deadline elapsed (504).

    The timed-out work is abandoned, not cancelled.
    """
    status_code = 504
    error_code = "timeout"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class NodeError(ServerError):
    """Failure inside one node processor.

    Always converted into an error NodeResult at the processor boundary.
    """

    def __init__(self, message: str, *, node_id: Optional[str] = None, detail: Optional[dict] = None) -> None:
        super().__init__(message, detail=detail)
        self.node_id = node_id


class TransientDependencyError(NodeError):
    """An AI provider, HTTP target or sandbox was temporarily unavailable."""


class OrphanedExecutionError(ServerError):
    """An execution left RUNNING or PENDING by a process that went away."""


__all__ = [
    "ServiceError",
    "ValidationError",
    "StructuralError",
    "NotFoundError",
    "ConflictError",
    "ExecutionTimeoutError",
    "ServerError",
    "NodeError",
    "TransientDependencyError",
    "OrphanedExecutionError",
]
