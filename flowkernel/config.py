from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from flowkernel.logging import get_logger

logger = get_logger(__name__)


class StoreBackend(str, Enum):
    """Persistence implementations the engine can run against."""

    POSTGRES = "postgres"
    MEMORY = "memory"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _parse_csv(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple, set)):
        return [str(item).strip() for item in value if str(item).strip()]
    return [item.strip() for item in str(value).split(",") if item.strip()]


class Settings(BaseModel):
    """Runtime settings for the workflow execution engine."""

    database_url: str = env_field(
        "postgresql://localhost:5432/flowkernel", "DATABASE_URL"
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    shared_fs_root: str = env_field("/srv/flowkernel", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic behaviors (stub AI provider, no outbound calls).",
    )

    # Execution queue
    queue_max_concurrent: int = env_field(
        5, "QUEUE_MAX_CONCURRENT", ge=1, description="Concurrent queued scheduler runs"
    )
    queue_task_timeout_seconds: float = env_field(
        300, "QUEUE_TASK_TIMEOUT_SECONDS", gt=0
    )
    queue_cleanup_interval_seconds: float = env_field(
        60, "QUEUE_CLEANUP_INTERVAL_SECONDS", gt=0
    )
    queue_task_retention_seconds: float = env_field(
        1800, "QUEUE_TASK_RETENTION_SECONDS", gt=0
    )
    sync_execution_timeout_seconds: float = env_field(
        300, "SYNC_EXECUTION_TIMEOUT_SECONDS", gt=0
    )
    stuck_execution_threshold_minutes: int = env_field(
        30,
        "STUCK_EXECUTION_THRESHOLD_MINUTES",
        ge=0,
        description="Age after which a live RUNNING/PENDING execution counts as stuck",
    )

    # Scheduler
    node_timeout_seconds: float = env_field(120, "NODE_TIMEOUT_SECONDS", gt=0)
    max_loop_iterations: int = env_field(1000, "MAX_LOOP_ITERATIONS", ge=1)
    max_parallel_nodes: int = env_field(4, "MAX_PARALLEL_NODES", ge=1)
    event_channel_capacity: int = env_field(256, "EVENT_CHANNEL_CAPACITY", ge=1)

    # Code sandbox
    code_execution_enabled: bool = env_field(True, "CODE_EXECUTION_ENABLED")
    code_python_executable: str | None = env_field(None, "CODE_PYTHON_EXECUTABLE")
    code_default_timeout_ms: int = env_field(2000, "CODE_DEFAULT_TIMEOUT_MS", ge=100)
    code_max_output_bytes: int = env_field(32000, "CODE_MAX_OUTPUT_BYTES", ge=1000)

    # HTTP egress
    http_default_timeout_ms: int = env_field(30000, "HTTP_DEFAULT_TIMEOUT_MS", ge=100)
    http_egress_allowlist: list[str] = env_field(
        [],
        "HTTP_EGRESS_ALLOWLIST",
        description="Comma-separated hosts, wildcards or CIDRs; empty means unrestricted",
    )

    # AI provider
    default_ai_provider: str = env_field("openai", "DEFAULT_AI_PROVIDER")
    default_model: str = env_field("gpt-4o-mini", "DEFAULT_MODEL")
    openai_api_key: str | None = env_field(None, "OPENAI_API_KEY")
    openai_base_url: str | None = env_field(None, "OPENAI_BASE_URL")
    credentials_secret: str = env_field(
        None, "CREDENTIALS_SECRET", validate_default=True
    )

    # HTTP surface
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @property
    def store_backend(self) -> StoreBackend:
        return StoreBackend.MEMORY if self.use_memory_store else StoreBackend.POSTGRES

    @field_validator("http_egress_allowlist", "cors_allow_origins", mode="before")
    @classmethod
    def _split_csv(cls, value: Any) -> list[str]:
        return _parse_csv(value)

    @field_validator("credentials_secret", mode="before")
    @classmethod
    def _ensure_credentials_secret(cls, value: str | None, info) -> str:
        if value:
            return value
        # Persist a generated secret so stored provider keys stay decryptable
        fs_root = Path(
            (info.data or {}).get("shared_fs_root")
            or os.getenv("SHARED_FS_ROOT", "/srv/flowkernel")
        )
        secret_path = fs_root / ".credentials_secret"
        try:
            fs_root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            logger.warning(
                "credentials_secret_dir_setup", error=str(exc), path=str(fs_root)
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error(
                    "credentials_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".credentials_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error(
                "credentials_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist credentials secret; set CREDENTIALS_SECRET or make SHARED_FS_ROOT writable"
            ) from exc
        return generated


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
