from __future__ import annotations

import json
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

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

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS workflow (
        id TEXT PRIMARY KEY,
        organization_id TEXT NOT NULL,
        name TEXT NOT NULL,
        description TEXT,
        draft_config JSONB NOT NULL,
        published_config JSONB,
        created_by TEXT,
        version INTEGER NOT NULL DEFAULT 1,
        published_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS workflow_execution (
        id TEXT PRIMARY KEY,
        workflow_id TEXT NOT NULL REFERENCES workflow(id) ON DELETE CASCADE,
        organization_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        status TEXT NOT NULL,
        mode TEXT NOT NULL DEFAULT 'production',
        input JSONB NOT NULL DEFAULT '{}'::jsonb,
        output JSONB,
        error TEXT,
        started_at TIMESTAMPTZ,
        completed_at TIMESTAMPTZ,
        duration_ms INTEGER,
        prompt_tokens INTEGER NOT NULL DEFAULT 0,
        completion_tokens INTEGER NOT NULL DEFAULT 0,
        total_tokens INTEGER NOT NULL DEFAULT 0,
        estimated_cost DOUBLE PRECISION NOT NULL DEFAULT 0,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS workflow_execution_status_idx ON workflow_execution (status, created_at)",
    """
    CREATE TABLE IF NOT EXISTS execution_output_file (
        id TEXT PRIMARY KEY,
        execution_id TEXT NOT NULL REFERENCES workflow_execution(id) ON DELETE CASCADE,
        node_id TEXT NOT NULL,
        file_name TEXT NOT NULL,
        format TEXT NOT NULL,
        path TEXT NOT NULL,
        size BIGINT NOT NULL DEFAULT 0,
        mime_type TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ai_config (
        id TEXT PRIMARY KEY,
        organization_id TEXT NOT NULL,
        name TEXT NOT NULL,
        provider TEXT NOT NULL,
        key_encrypted TEXT NOT NULL,
        base_url TEXT,
        default_model TEXT,
        is_default BOOLEAN NOT NULL DEFAULT false,
        is_active BOOLEAN NOT NULL DEFAULT true,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)


def _json_or_none(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=False, default=str)


class PostgresStore:
    """Postgres-backed store for workflows, executions and provider configs."""

    def __init__(self, dsn: str, fs_root: str) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create engine tables when missing."""

        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

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
        wf_id = workflow_id or str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO workflow (id, organization_id, name, description, draft_config, created_by)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (wf_id, organization_id, name, description, _json_or_none(config), created_by),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("workflow already exists", {"workflow_id": wf_id})
        return self._workflow_from_row(row)

    def get_workflow(
        self, workflow_id: str, organization_id: Optional[str] = None
    ) -> Optional[Workflow]:
        query = "SELECT * FROM workflow WHERE id = %s"
        params: List[Any] = [workflow_id]
        if organization_id:
            query += " AND organization_id = %s"
            params.append(organization_id)
        with self._connect() as conn:
            row = conn.execute(query, params).fetchone()
        return self._workflow_from_row(row) if row else None

    def update_workflow_draft(
        self, workflow_id: str, config: Dict[str, Any], *, organization_id: Optional[str] = None
    ) -> Workflow:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE workflow SET draft_config = %s, updated_at = now()
                WHERE id = %s AND (%s::text IS NULL OR organization_id = %s)
                RETURNING *
                """,
                (_json_or_none(config), workflow_id, organization_id, organization_id),
            ).fetchone()
        if not row:
            raise ConstraintViolation("workflow missing", {"workflow_id": workflow_id})
        return self._workflow_from_row(row)

    def publish_workflow(
        self, workflow_id: str, *, organization_id: Optional[str] = None
    ) -> Workflow:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE workflow
                SET published_config = draft_config, version = version + 1,
                    published_at = now(), updated_at = now()
                WHERE id = %s AND (%s::text IS NULL OR organization_id = %s)
                RETURNING *
                """,
                (workflow_id, organization_id, organization_id),
            ).fetchone()
        if not row:
            raise ConstraintViolation("workflow missing", {"workflow_id": workflow_id})
        return self._workflow_from_row(row)

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
        execution = Execution.new(
            workflow_id, organization_id, user_id, input=input, mode=mode, execution_id=execution_id
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO workflow_execution
                        (id, workflow_id, organization_id, user_id, status, mode, input, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        execution.id,
                        workflow_id,
                        organization_id,
                        user_id,
                        execution.status.value,
                        execution.mode.value,
                        _json_or_none(execution.input),
                        execution.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("execution already exists", {"execution_id": execution.id})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("workflow missing", {"workflow_id": workflow_id})
        return execution

    def get_execution(
        self, execution_id: str, organization_id: Optional[str] = None
    ) -> Optional[Execution]:
        query = "SELECT * FROM workflow_execution WHERE id = %s"
        params: List[Any] = [execution_id]
        if organization_id:
            query += " AND organization_id = %s"
            params.append(organization_id)
        with self._connect() as conn:
            row = conn.execute(query, params).fetchone()
        return self._execution_from_row(row) if row else None

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
        target = ExecutionStatus(status)
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM workflow_execution WHERE id = %s FOR UPDATE", (execution_id,)
            ).fetchone()
            if not row:
                raise ConstraintViolation("execution missing", {"execution_id": execution_id})
            current = ExecutionStatus(row["status"])
            if target not in EXECUTION_TRANSITIONS[current]:
                raise IllegalTransition(execution_id, current.value, target.value)
            now = utcnow()
            started_at = row.get("started_at")
            if target == ExecutionStatus.RUNNING:
                started_at = now
            completed_at = now if target.is_terminal else None
            if target.is_terminal and duration_ms is None and started_at:
                duration_ms = int((now - started_at).total_seconds() * 1000)
            updated = conn.execute(
                """
                UPDATE workflow_execution
                SET status = %s, started_at = %s, completed_at = %s,
                    output = COALESCE(%s, output), error = COALESCE(%s, error),
                    duration_ms = COALESCE(%s, duration_ms),
                    prompt_tokens = COALESCE(%s, prompt_tokens),
                    completion_tokens = COALESCE(%s, completion_tokens),
                    total_tokens = COALESCE(%s, total_tokens),
                    estimated_cost = COALESCE(%s, estimated_cost)
                WHERE id = %s
                RETURNING *
                """,
                (
                    target.value,
                    started_at,
                    completed_at,
                    _json_or_none(output),
                    error,
                    duration_ms,
                    prompt_tokens,
                    completion_tokens,
                    total_tokens,
                    estimated_cost,
                    execution_id,
                ),
            ).fetchone()
        return self._execution_from_row(updated)

    def list_executions(
        self,
        *,
        statuses: Optional[Iterable[ExecutionStatus | str]] = None,
        organization_id: Optional[str] = None,
        workflow_id: Optional[str] = None,
        created_before: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[Execution]:
        clauses: List[str] = []
        params: List[Any] = []
        if statuses:
            clauses.append("status = ANY(%s)")
            params.append([ExecutionStatus(s).value for s in statuses])
        if organization_id:
            clauses.append("organization_id = %s")
            params.append(organization_id)
        if workflow_id:
            clauses.append("workflow_id = %s")
            params.append(workflow_id)
        if created_before:
            clauses.append("created_at < %s")
            params.append(created_before)
        query = "SELECT * FROM workflow_execution"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at ASC"
        if limit:
            query += " LIMIT %s"
            params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._execution_from_row(row) for row in rows]

    # -- output files ----------------------------------------------------

    def add_output_file(self, output_file: OutputFile) -> OutputFile:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO execution_output_file
                        (id, execution_id, node_id, file_name, format, path, size, mime_type, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        output_file.id,
                        output_file.execution_id,
                        output_file.node_id,
                        output_file.file_name,
                        output_file.format,
                        output_file.path,
                        output_file.size,
                        output_file.mime_type,
                        output_file.created_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "execution missing", {"execution_id": output_file.execution_id}
            )
        return output_file

    def list_output_files(self, execution_id: str) -> List[OutputFile]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM execution_output_file WHERE execution_id = %s ORDER BY created_at ASC",
                (execution_id,),
            ).fetchall()
        return [
            OutputFile(
                id=row["id"],
                execution_id=row["execution_id"],
                node_id=row["node_id"],
                file_name=row["file_name"],
                format=row["format"],
                path=row["path"],
                size=row.get("size") or 0,
                mime_type=row.get("mime_type"),
                created_at=row["created_at"],
            )
            for row in rows
        ]

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
        record_id = config_id or str(uuid.uuid4())
        with self._connect() as conn:
            if is_default:
                conn.execute(
                    "UPDATE ai_config SET is_default = false WHERE organization_id = %s",
                    (organization_id,),
                )
            row = conn.execute(
                """
                INSERT INTO ai_config
                    (id, organization_id, name, provider, key_encrypted, base_url,
                     default_model, is_default, is_active)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    record_id,
                    organization_id,
                    name,
                    provider,
                    key_encrypted,
                    base_url,
                    default_model,
                    is_default,
                    is_active,
                ),
            ).fetchone()
        return self._ai_config_from_row(row)

    def find_ai_config(
        self, organization_id: str, config_id: Optional[str] = None
    ) -> Optional[AIConfigRecord]:
        with self._connect() as conn:
            if config_id:
                row = conn.execute(
                    """
                    SELECT * FROM ai_config
                    WHERE id = %s AND organization_id = %s AND is_active
                    """,
                    (config_id, organization_id),
                ).fetchone()
            else:
                row = conn.execute(
                    """
                    SELECT * FROM ai_config
                    WHERE organization_id = %s AND is_default AND is_active
                    ORDER BY created_at DESC LIMIT 1
                    """,
                    (organization_id,),
                ).fetchone()
        return self._ai_config_from_row(row) if row else None

    # -- row mapping -----------------------------------------------------

    @staticmethod
    def _workflow_from_row(row: Dict[str, Any]) -> Workflow:
        return Workflow(
            id=row["id"],
            organization_id=row["organization_id"],
            name=row["name"],
            draft_config=row.get("draft_config") or {},
            published_config=row.get("published_config"),
            description=row.get("description"),
            created_by=row.get("created_by"),
            version=row.get("version") or 1,
            published_at=row.get("published_at"),
            created_at=row["created_at"],
            updated_at=row.get("updated_at") or row["created_at"],
        )

    @staticmethod
    def _execution_from_row(row: Dict[str, Any]) -> Execution:
        return Execution(
            id=row["id"],
            workflow_id=row["workflow_id"],
            organization_id=row["organization_id"],
            user_id=row["user_id"],
            status=ExecutionStatus(row["status"]),
            mode=ExecutionMode(row.get("mode") or "production"),
            input=row.get("input") or {},
            output=row.get("output"),
            error=row.get("error"),
            started_at=row.get("started_at"),
            completed_at=row.get("completed_at"),
            duration_ms=row.get("duration_ms"),
            prompt_tokens=row.get("prompt_tokens") or 0,
            completion_tokens=row.get("completion_tokens") or 0,
            total_tokens=row.get("total_tokens") or 0,
            estimated_cost=row.get("estimated_cost") or 0.0,
            created_at=row["created_at"],
        )

    @staticmethod
    def _ai_config_from_row(row: Dict[str, Any]) -> AIConfigRecord:
        return AIConfigRecord(
            id=row["id"],
            organization_id=row["organization_id"],
            name=row["name"],
            provider=row["provider"],
            key_encrypted=row["key_encrypted"],
            base_url=row.get("base_url"),
            default_model=row.get("default_model"),
            is_default=bool(row.get("is_default")),
            is_active=bool(row.get("is_active", True)),
            created_at=row["created_at"],
        )
