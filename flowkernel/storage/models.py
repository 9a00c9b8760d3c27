from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ExecutionStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED)


# Legal persisted transitions; terminal states have no outgoing edges
EXECUTION_TRANSITIONS: Dict[ExecutionStatus, frozenset] = {
    ExecutionStatus.PENDING: frozenset({ExecutionStatus.RUNNING, ExecutionStatus.FAILED}),
    ExecutionStatus.RUNNING: frozenset({ExecutionStatus.COMPLETED, ExecutionStatus.FAILED}),
    ExecutionStatus.COMPLETED: frozenset(),
    ExecutionStatus.FAILED: frozenset(),
}


class ExecutionMode(str, Enum):
    PRODUCTION = "production"
    DRAFT = "draft"


@dataclass
class Workflow:
    id: str
    organization_id: str
    name: str
    draft_config: Dict[str, Any]
    published_config: Optional[Dict[str, Any]] = None
    description: Optional[str] = None
    created_by: Optional[str] = None
    version: int = 1
    published_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def config_for(self, mode: ExecutionMode | str) -> Dict[str, Any]:
        """Graph document executed in ``mode``; production falls back to the draft."""
        if ExecutionMode(mode) == ExecutionMode.PRODUCTION and self.published_config:
            return self.published_config
        return self.draft_config


@dataclass
class Execution:
    id: str
    workflow_id: str
    organization_id: str
    user_id: str
    status: ExecutionStatus = ExecutionStatus.PENDING
    mode: ExecutionMode = ExecutionMode.PRODUCTION
    input: Dict[str, Any] = field(default_factory=dict)
    output: Optional[Any] = None
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    estimated_cost: float = 0.0
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        workflow_id: str,
        organization_id: str,
        user_id: str,
        *,
        input: Optional[Dict[str, Any]] = None,
        mode: ExecutionMode | str = ExecutionMode.PRODUCTION,
        execution_id: Optional[str] = None,
    ) -> "Execution":
        return cls(
            id=execution_id or str(uuid.uuid4()),
            workflow_id=workflow_id,
            organization_id=organization_id,
            user_id=user_id,
            input=dict(input or {}),
            mode=ExecutionMode(mode),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "workflowId": self.workflow_id,
            "organizationId": self.organization_id,
            "userId": self.user_id,
            "status": self.status.value,
            "mode": self.mode.value,
            "input": self.input,
            "output": self.output,
            "error": self.error,
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
            "duration": self.duration_ms,
            "promptTokens": self.prompt_tokens,
            "completionTokens": self.completion_tokens,
            "totalTokens": self.total_tokens,
            "estimatedCost": self.estimated_cost,
            "createdAt": self.created_at.isoformat(),
        }


@dataclass
class OutputFile:
    id: str
    execution_id: str
    node_id: str
    file_name: str
    format: str
    path: str
    size: int = 0
    mime_type: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "executionId": self.execution_id,
            "nodeId": self.node_id,
            "fileName": self.file_name,
            "format": self.format,
            "path": self.path,
            "size": self.size,
            "mimeType": self.mime_type,
            "createdAt": self.created_at.isoformat(),
        }


@dataclass
class AIConfigRecord:
    """Provider credentials owned by one organization.

    ``key_encrypted`` holds a Fernet token; plaintext keys never reach storage.
    """

    id: str
    organization_id: str
    name: str
    provider: str
    key_encrypted: str
    base_url: Optional[str] = None
    default_model: Optional[str] = None
    is_default: bool = False
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
