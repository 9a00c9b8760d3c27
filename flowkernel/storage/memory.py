from __future__ import annotations

import json
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from flowkernel.logging import get_logger
from flowkernel.storage.errors import ConstraintViolation, IllegalTransition
from flowkernel.storage.models import (
    EXECUTION_TRANSITIONS,
    AIConfigRecord,
    Execution,
    ExecutionMode,
    ExecutionStatus,
    OutputFile,
    Workflow,
    utcnow,
)


class MemoryStore:
    """In-memory backing store persisted to a JSON state file.

    Executions survive a process restart through the state file, which is
    what lets the startup reconciliation sweep find orphaned runs.
    """

    def __init__(self, fs_root: str = "/tmp/flowkernel") -> None:
        self.logger = get_logger(__name__)
        self.workflows: Dict[str, Workflow] = {}
        self.executions: Dict[str, Execution] = {}
        self.output_files: Dict[str, List[OutputFile]] = {}
        self.ai_configs: Dict[str, AIConfigRecord] = {}
        # RLock so helpers can re-enter while a mutation holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    # -- workflows -------------------------------------------------------

    def create_workflow(
        self,
        organization_id: str,
        name: str,
        config: Dict[str, Any],
        *,
        description: Optional[str] = None,
        created_by: Optional[str] = None,
        workflow_id: Optional[str] = None,
    ) -> Workflow:
        with self._data_lock:
            wf_id = workflow_id or str(uuid.uuid4())
            if wf_id in self.workflows:
                raise ConstraintViolation("workflow already exists", {"workflow_id": wf_id})
            workflow = Workflow(
                id=wf_id,
                organization_id=organization_id,
                name=name,
                draft_config=dict(config),
                description=description,
                created_by=created_by,
            )
            self.workflows[wf_id] = workflow
            self._persist_state()
            return workflow

    def get_workflow(
        self, workflow_id: str, organization_id: Optional[str] = None
    ) -> Optional[Workflow]:
        with self._data_lock:
            workflow = self.workflows.get(workflow_id)
            if workflow and organization_id and workflow.organization_id != organization_id:
                return None
            return workflow

    def update_workflow_draft(
        self, workflow_id: str, config: Dict[str, Any], *, organization_id: Optional[str] = None
    ) -> Workflow:
        with self._data_lock:
            workflow = self.get_workflow(workflow_id, organization_id)
            if not workflow:
                raise ConstraintViolation("workflow missing", {"workflow_id": workflow_id})
            workflow.draft_config = dict(config)
            workflow.updated_at = utcnow()
            self._persist_state()
            return workflow

    def publish_workflow(
        self, workflow_id: str, *, organization_id: Optional[str] = None
    ) -> Workflow:
        with self._data_lock:
            workflow = self.get_workflow(workflow_id, organization_id)
            if not workflow:
                raise ConstraintViolation("workflow missing", {"workflow_id": workflow_id})
            workflow.published_config = json.loads(json.dumps(workflow.draft_config))
            workflow.version += 1
            workflow.published_at = utcnow()
            workflow.updated_at = workflow.published_at
            self._persist_state()
            return workflow

    # -- executions ------------------------------------------------------

    def create_execution(
        self,
        workflow_id: str,
        organization_id: str,
        user_id: str,
        *,
        input: Optional[Dict[str, Any]] = None,
        mode: ExecutionMode | str = ExecutionMode.PRODUCTION,
        execution_id: Optional[str] = None,
    ) -> Execution:
        with self._data_lock:
            execution = Execution.new(
                workflow_id,
                organization_id,
                user_id,
                input=input,
                mode=mode,
                execution_id=execution_id,
            )
            if execution.id in self.executions:
                raise ConstraintViolation("execution already exists", {"execution_id": execution.id})
            self.executions[execution.id] = execution
            self._persist_state()
            return execution

    def get_execution(
        self, execution_id: str, organization_id: Optional[str] = None
    ) -> Optional[Execution]:
        with self._data_lock:
            execution = self.executions.get(execution_id)
            if execution and organization_id and execution.organization_id != organization_id:
                return None
            return execution

    def transition_execution(
        self,
        execution_id: str,
        status: ExecutionStatus | str,
        *,
        output: Any = None,
        error: Optional[str] = None,
        duration_ms: Optional[int] = None,
        prompt_tokens: Optional[int] = None,
        completion_tokens: Optional[int] = None,
        total_tokens: Optional[int] = None,
        estimated_cost: Optional[float] = None,
    ) -> Execution:
        """Move an execution along its lifecycle.

        Raises IllegalTransition for any change out of a terminal state, so a
        COMPLETED or FAILED record is written exactly once.
        """
        target = ExecutionStatus(status)
        with self._data_lock:
            execution = self.executions.get(execution_id)
            if not execution:
                raise ConstraintViolation("execution missing", {"execution_id": execution_id})
            if target not in EXECUTION_TRANSITIONS[execution.status]:
                raise IllegalTransition(execution_id, execution.status.value, target.value)
            now = utcnow()
            execution.status = target
            if target == ExecutionStatus.RUNNING:
                execution.started_at = now
            if target.is_terminal:
                execution.completed_at = now
                execution.output = output
                execution.error = error
                if duration_ms is None and execution.started_at:
                    duration_ms = int((now - execution.started_at).total_seconds() * 1000)
                execution.duration_ms = duration_ms
            if prompt_tokens is not None:
                execution.prompt_tokens = prompt_tokens
            if completion_tokens is not None:
                execution.completion_tokens = completion_tokens
            if total_tokens is not None:
                execution.total_tokens = total_tokens
            if estimated_cost is not None:
                execution.estimated_cost = estimated_cost
            self._persist_state()
            return execution

    def list_executions(
        self,
        *,
        statuses: Optional[Iterable[ExecutionStatus | str]] = None,
        organization_id: Optional[str] = None,
        workflow_id: Optional[str] = None,
        created_before: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[Execution]:
        wanted = {ExecutionStatus(s) for s in statuses} if statuses else None
        with self._data_lock:
            rows = [
                e
                for e in self.executions.values()
                if (wanted is None or e.status in wanted)
                and (organization_id is None or e.organization_id == organization_id)
                and (workflow_id is None or e.workflow_id == workflow_id)
                and (created_before is None or e.created_at < created_before)
            ]
        rows.sort(key=lambda e: e.created_at)
        return rows[:limit] if limit else rows

    # -- output files ----------------------------------------------------

    def add_output_file(self, output_file: OutputFile) -> OutputFile:
        with self._data_lock:
            if output_file.execution_id not in self.executions:
                raise ConstraintViolation(
                    "execution missing", {"execution_id": output_file.execution_id}
                )
            self.output_files.setdefault(output_file.execution_id, []).append(output_file)
            self._persist_state()
            return output_file

    def list_output_files(self, execution_id: str) -> List[OutputFile]:
        with self._data_lock:
            return list(self.output_files.get(execution_id, []))

    # -- ai configs ------------------------------------------------------

    def create_ai_config(
        self,
        organization_id: str,
        name: str,
        provider: str,
        key_encrypted: str,
        *,
        base_url: Optional[str] = None,
        default_model: Optional[str] = None,
        is_default: bool = False,
        is_active: bool = True,
        config_id: Optional[str] = None,
    ) -> AIConfigRecord:
        with self._data_lock:
            record = AIConfigRecord(
                id=config_id or str(uuid.uuid4()),
                organization_id=organization_id,
                name=name,
                provider=provider,
                key_encrypted=key_encrypted,
                base_url=base_url,
                default_model=default_model,
                is_default=is_default,
                is_active=is_active,
            )
            if is_default:
                # one default per organization
                for other in self.ai_configs.values():
                    if other.organization_id == organization_id:
                        other.is_default = False
            self.ai_configs[record.id] = record
            self._persist_state()
            return record

    def find_ai_config(
        self, organization_id: str, config_id: Optional[str] = None
    ) -> Optional[AIConfigRecord]:
        """Resolve an explicit config id scoped to the org, else the org default."""
        with self._data_lock:
            if config_id:
                record = self.ai_configs.get(config_id)
                if record and record.organization_id == organization_id and record.is_active:
                    return record
                return None
            for record in self.ai_configs.values():
                if record.organization_id == organization_id and record.is_default and record.is_active:
                    return record
            return None

    # -- persistence -----------------------------------------------------

    def _persist_state(self) -> None:
        state = {
            "workflows": [self._serialize_workflow(w) for w in self.workflows.values()],
            "executions": [self._serialize_execution(e) for e in self.executions.values()],
            "output_files": [
                self._serialize_output_file(f)
                for files in self.output_files.values()
                for f in files
            ],
            "ai_configs": [self._serialize_ai_config(c) for c in self.ai_configs.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2, ensure_ascii=False, default=str))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.workflows = {
            w["id"]: self._deserialize_workflow(w) for w in data.get("workflows", [])
        }
        self.executions = {
            e["id"]: self._deserialize_execution(e) for e in data.get("executions", [])
        }
        self.output_files = {}
        for file_data in data.get("output_files", []):
            output_file = self._deserialize_output_file(file_data)
            self.output_files.setdefault(output_file.execution_id, []).append(output_file)
        self.ai_configs = {
            c["id"]: self._deserialize_ai_config(c) for c in data.get("ai_configs", [])
        }
        return True

    def _serialize_workflow(self, workflow: Workflow) -> dict:
        return {
            "id": workflow.id,
            "organization_id": workflow.organization_id,
            "name": workflow.name,
            "draft_config": workflow.draft_config,
            "published_config": workflow.published_config,
            "description": workflow.description,
            "created_by": workflow.created_by,
            "version": workflow.version,
            "published_at": self._serialize_datetime(workflow.published_at),
            "created_at": self._serialize_datetime(workflow.created_at),
            "updated_at": self._serialize_datetime(workflow.updated_at),
        }

    def _deserialize_workflow(self, data: dict) -> Workflow:
        return Workflow(
            id=data["id"],
            organization_id=data["organization_id"],
            name=data.get("name", ""),
            draft_config=data.get("draft_config") or {},
            published_config=data.get("published_config"),
            description=data.get("description"),
            created_by=data.get("created_by"),
            version=data.get("version", 1),
            published_at=self._deserialize_datetime(data.get("published_at")),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data.get("updated_at", data["created_at"])),
        )

    def _serialize_execution(self, execution: Execution) -> dict:
        return {
            "id": execution.id,
            "workflow_id": execution.workflow_id,
            "organization_id": execution.organization_id,
            "user_id": execution.user_id,
            "status": execution.status.value,
            "mode": execution.mode.value,
            "input": execution.input,
            "output": execution.output,
            "error": execution.error,
            "started_at": self._serialize_datetime(execution.started_at),
            "completed_at": self._serialize_datetime(execution.completed_at),
            "duration_ms": execution.duration_ms,
            "prompt_tokens": execution.prompt_tokens,
            "completion_tokens": execution.completion_tokens,
            "total_tokens": execution.total_tokens,
            "estimated_cost": execution.estimated_cost,
            "created_at": self._serialize_datetime(execution.created_at),
        }

    def _deserialize_execution(self, data: dict) -> Execution:
        return Execution(
            id=data["id"],
            workflow_id=data["workflow_id"],
            organization_id=data["organization_id"],
            user_id=data["user_id"],
            status=ExecutionStatus(data.get("status", "PENDING")),
            mode=ExecutionMode(data.get("mode", "production")),
            input=data.get("input") or {},
            output=data.get("output"),
            error=data.get("error"),
            started_at=self._deserialize_datetime(data.get("started_at")),
            completed_at=self._deserialize_datetime(data.get("completed_at")),
            duration_ms=data.get("duration_ms"),
            prompt_tokens=data.get("prompt_tokens", 0),
            completion_tokens=data.get("completion_tokens", 0),
            total_tokens=data.get("total_tokens", 0),
            estimated_cost=data.get("estimated_cost", 0.0),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_output_file(self, output_file: OutputFile) -> dict:
        return {
            "id": output_file.id,
            "execution_id": output_file.execution_id,
            "node_id": output_file.node_id,
            "file_name": output_file.file_name,
            "format": output_file.format,
            "path": output_file.path,
            "size": output_file.size,
            "mime_type": output_file.mime_type,
            "created_at": self._serialize_datetime(output_file.created_at),
        }

    def _deserialize_output_file(self, data: dict) -> OutputFile:
        return OutputFile(
            id=data["id"],
            execution_id=data["execution_id"],
            node_id=data["node_id"],
            file_name=data["file_name"],
            format=data.get("format", "txt"),
            path=data["path"],
            size=data.get("size", 0),
            mime_type=data.get("mime_type"),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_ai_config(self, record: AIConfigRecord) -> dict:
        return {
            "id": record.id,
            "organization_id": record.organization_id,
            "name": record.name,
            "provider": record.provider,
            "key_encrypted": record.key_encrypted,
            "base_url": record.base_url,
            "default_model": record.default_model,
            "is_default": record.is_default,
            "is_active": record.is_active,
            "created_at": self._serialize_datetime(record.created_at),
        }

    def _deserialize_ai_config(self, data: dict) -> AIConfigRecord:
        return AIConfigRecord(
            id=data["id"],
            organization_id=data["organization_id"],
            name=data.get("name", ""),
            provider=data.get("provider", "openai"),
            key_encrypted=data.get("key_encrypted", ""),
            base_url=data.get("base_url"),
            default_model=data.get("default_model"),
            is_default=bool(data.get("is_default", False)),
            is_active=bool(data.get("is_active", True)),
            created_at=self._deserialize_datetime(data["created_at"]),
        )
