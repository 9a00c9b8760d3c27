from __future__ import annotations

from typing import Any, Dict, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

# Maximum nested JSON depth accepted in workflow graphs and run input
MAX_JSON_DEPTH = 32
# Maximum array items per level
MAX_ARRAY_ITEMS = 5000


def _validate_json_depth(obj: Any, max_depth: int = MAX_JSON_DEPTH, current_depth: int = 0) -> None:
    """Reject deeply nested or oversized JSON before it reaches the scheduler.

    Raises:
        ValueError: If depth or array length exceeds the maximum
    """
    if current_depth > max_depth:
        raise ValueError(f"JSON nesting depth exceeds maximum of {max_depth}")

    if isinstance(obj, dict):
        for value in obj.values():
            _validate_json_depth(value, max_depth, current_depth + 1)
    elif isinstance(obj, list):
        if len(obj) > MAX_ARRAY_ITEMS:
            raise ValueError(f"Array length {len(obj)} exceeds maximum of {MAX_ARRAY_ITEMS}")
        for item in obj:
            _validate_json_depth(item, max_depth, current_depth + 1)


def _validate_dict_field(value: Optional[dict], field_name: str = "field") -> Optional[dict]:
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ValueError(f"{field_name} must be a dict")
    _validate_json_depth(value)
    return value


_VALID_ERROR_CODES = frozenset({
    "not_found",
    "validation_error",
    "conflict",
    "timeout",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope format."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class WorkflowCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=4000)
    config: Dict[str, Any] = Field(..., description="Workflow graph: nodes, edges, settings")

    @field_validator("config")
    @classmethod
    def _validate_config(cls, value: Dict[str, Any]) -> Dict[str, Any]:
        return _validate_dict_field(value, "config")


class WorkflowDraftRequest(BaseModel):
    config: Dict[str, Any]

    @field_validator("config")
    @classmethod
    def _validate_config(cls, value: Dict[str, Any]) -> Dict[str, Any]:
        return _validate_dict_field(value, "config")


class ExecuteRequest(BaseModel):
    input: Dict[str, Any] = Field(default_factory=dict)
    mode: str = Field(default="production", pattern="^(production|draft)$")
    timeout_seconds: Optional[float] = Field(default=None, gt=0, le=3600)

    @field_validator("input")
    @classmethod
    def _validate_input(cls, value: Dict[str, Any]) -> Dict[str, Any]:
        return _validate_dict_field(value, "input")


class EnqueueRequest(BaseModel):
    input: Dict[str, Any] = Field(default_factory=dict)
    mode: str = Field(default="production", pattern="^(production|draft)$")

    @field_validator("input")
    @classmethod
    def _validate_input(cls, value: Dict[str, Any]) -> Dict[str, Any]:
        return _validate_dict_field(value, "input")


class CleanupRequest(BaseModel):
    """On-demand stuck-execution sweep.

    ``force`` sweeps every RUNNING/PENDING execution of the tenant regardless
    of age; otherwise only those older than ``threshold_minutes`` (or the
    configured default) are failed.
    """

    threshold_minutes: Optional[float] = Field(default=None, ge=0, le=60 * 24 * 30)
    force: bool = False

