from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from flowkernel.api.error_handling import register_exception_handlers
from flowkernel.api.routes import router
from flowkernel.config import Settings, get_settings
from flowkernel.logging import get_logger, set_correlation_id
from flowkernel.service.runtime import EngineRuntime

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime (unless one was injected), sweep orphans, start the queue."""
    runtime: Optional[EngineRuntime] = getattr(app.state, "runtime", None)
    if runtime is None:
        runtime = EngineRuntime(app.state.settings)
        app.state.runtime = runtime
    report = await runtime.start()
    logger.info("startup_reconciliation", **report.to_dict())

    yield

    try:
        await runtime.shutdown()
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc), error_type=type(exc).__name__)


def _allowed_origins(settings: Settings) -> List[str]:
    if settings.cors_allow_origins:
        return settings.cors_allow_origins
    # Default to common local dev hosts
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


async def add_correlation_id(request: Request, call_next):
    """Take the correlation id from X-Request-ID, or generate one, and echo it back."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    response.headers.setdefault("API-Version", __version__)
    return response


async def health(request: Request) -> Dict[str, Any]:
    """Dependency checks for the store and the execution state cache."""
    runtime: EngineRuntime = request.app.state.runtime
    checks: Dict[str, Dict[str, Any]] = {}

    async def _run_bounded(label: str, func) -> bool:
        try:
            await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
            return True
        except asyncio.TimeoutError:
            logger.error("health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
        except Exception as exc:
            logger.error("health_check_failed", component=label, error=str(exc))
        return False

    if hasattr(runtime.store, "_connect"):

        def _db_probe() -> None:
            with runtime.store._connect() as conn:
                conn.execute("SELECT 1").fetchone()

        db_ok = await _run_bounded("database", _db_probe)
        checks["database"] = {"status": "healthy" if db_ok else "unhealthy"}
    else:
        db_ok = True
        checks["database"] = {"status": "healthy", "type": "memory"}

    cache_ok = await _run_bounded("state_cache", runtime.state_cache.verify_connection)
    checks["state_cache"] = {
        "status": "healthy" if cache_ok else "unhealthy",
        "type": type(runtime.state_cache).__name__,
    }
    checks["queue"] = {"status": "healthy", **runtime.queue.get_queue_status()}

    healthy = db_ok and cache_ok
    return {
        "status": "healthy" if healthy else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def create_app(settings: Optional[Settings] = None, *, runtime: Optional[EngineRuntime] = None) -> FastAPI:
    """Assemble the HTTP surface.

    Passing ``runtime`` skips runtime construction in the lifespan; tests use
    this to inject fakes.
    """
    settings = settings or (runtime.settings if runtime else get_settings())
    app = FastAPI(title="FlowKernel", version=__version__, lifespan=lifespan)
    app.state.settings = settings
    if runtime is not None:
        app.state.runtime = runtime

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(settings),
        allow_credentials=False,
        allow_methods=["GET", "POST", "PUT", "OPTIONS"],
        allow_headers=["Content-Type", "X-Tenant-ID", "X-User-ID", "X-Request-ID"],
        expose_headers=["X-Request-ID", "API-Version"],
        max_age=3600,
    )
    app.middleware("http")(add_correlation_id)
    app.middleware("http")(add_security_headers)

    register_exception_handlers(app)
    app.include_router(router)
    app.add_api_route("/healthz", health, methods=["GET"])
    return app
