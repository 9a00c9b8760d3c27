from __future__ import annotations

from datetime import timedelta
from typing import Optional
from urllib.parse import urlparse, urlunparse

import httpx

from flowkernel.config import Settings, StoreBackend, get_settings
from flowkernel.logging import get_logger
from flowkernel.nodes.base import NodeServices
from flowkernel.service.credentials import CredentialCipher
from flowkernel.service.events import ExecutionEventBus
from flowkernel.service.llm import AIService, ProviderFactory
from flowkernel.service.queue import ExecutionQueue
from flowkernel.service.reconcile import ReconciliationReport, reconcile_stuck_executions
from flowkernel.service.sandbox import CodeSandbox, EgressClient, build_egress_policy
from flowkernel.service.workflow import WorkflowEngine
from flowkernel.storage.memory import MemoryStore
from flowkernel.storage.postgres import PostgresStore
from flowkernel.storage.redis_cache import MemoryStateCache, RedisStateCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse((parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment))


def build_store(settings: Settings):
    """MemoryStore or PostgresStore, per ``USE_MEMORY_STORE``."""
    backend = settings.store_backend
    try:
        if backend == StoreBackend.MEMORY:
            store = MemoryStore(fs_root=settings.shared_fs_root)
        else:
            if not settings.database_url:
                raise RuntimeError("DATABASE_URL is required unless USE_MEMORY_STORE=true")
            store = PostgresStore(settings.database_url, fs_root=settings.shared_fs_root)
    except Exception as exc:
        logger.error(
            "runtime_store_init_failed",
            store_type=backend.value,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        raise
    logger.info("runtime_store_initialized", store_type=backend.value)
    return store


class EngineRuntime:
    """Service container for one process.

    Built explicitly (the app lifespan stores it on ``app.state``), never a
    module-level singleton. Tests inject a store, a provider factory or an
    httpx transport.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store=None,
        state_cache=None,
        provider_factory: Optional[ProviderFactory] = None,
        egress_transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            store_backend=self.settings.store_backend.value,
            test_mode=self.settings.test_mode,
        )
        self.store = store if store is not None else build_store(self.settings)
        self.state_cache = state_cache if state_cache is not None else self._build_state_cache()
        self.cipher = CredentialCipher(self.settings.credentials_secret)
        self.ai = AIService(self.store, self.cipher, self.settings, provider_factory=provider_factory)
        self.sandbox = CodeSandbox(
            python_executable=self.settings.code_python_executable,
            default_timeout_ms=self.settings.code_default_timeout_ms,
            default_max_output=self.settings.code_max_output_bytes,
            enabled=self.settings.code_execution_enabled,
        )
        self.egress = EgressClient(
            build_egress_policy(self.settings.http_egress_allowlist), transport=egress_transport
        )
        self.events = ExecutionEventBus(
            capacity=self.settings.event_channel_capacity,
            state_cache=self.state_cache,
            state_ttl_seconds=int(self.settings.queue_task_retention_seconds),
        )
        self.services = NodeServices(
            settings=self.settings,
            store=self.store,
            ai=self.ai,
            sandbox=self.sandbox,
            egress=self.egress,
        )
        self.engine = WorkflowEngine(self.store, self.services, self.events)
        self.queue = ExecutionQueue(
            self.engine,
            max_concurrent=self.settings.queue_max_concurrent,
            task_timeout_seconds=self.settings.queue_task_timeout_seconds,
            cleanup_interval_seconds=self.settings.queue_cleanup_interval_seconds,
            retention_seconds=self.settings.queue_task_retention_seconds,
            events=self.events,
        )
        logger.info(
            "runtime_initialized",
            redis_enabled=isinstance(self.state_cache, RedisStateCache),
            code_execution_enabled=self.settings.code_execution_enabled,
            egress_allowlist=len(self.settings.http_egress_allowlist),
        )

    def _build_state_cache(self):
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisStateCache(self.settings.redis_url)
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc
        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev and self.settings.redis_url:
            raise RuntimeError(
                "Redis is unreachable; start Redis, unset REDIS_URL, or set "
                "ALLOW_REDIS_FALLBACK_DEV=true for the in-memory state cache."
            ) from redis_error
        if self.settings.redis_url:
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
            )
        return MemoryStateCache()

    async def reconcile(
        self, *, stale_after_minutes: Optional[float] = None, organization_id: Optional[str] = None
    ) -> ReconciliationReport:
        stale_after = timedelta(minutes=stale_after_minutes) if stale_after_minutes is not None else None
        return await reconcile_stuck_executions(
            self.store, stale_after=stale_after, organization_id=organization_id
        )

    async def start(self) -> ReconciliationReport:
        """Sweep executions orphaned by a previous process, then start the queue."""
        report = await self.reconcile()
        await self.queue.start()
        return report

    async def shutdown(self) -> None:
        await self.queue.stop()
        await self.ai.close()
        await self.egress.aclose()
        await self.state_cache.close()
        close = getattr(self.store, "close", None)
        if close is not None:
            close()
        logger.info("runtime_shutdown_complete")
