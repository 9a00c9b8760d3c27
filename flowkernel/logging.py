from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, List, Optional

import structlog

# Per-request correlation id, set by the HTTP middleware
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Use the caller's X-Request-ID when given, else mint one."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


# Substrings of log keys whose values are provider keys, webhook tokens or DSNs
_LOG_SECRET_MARKERS = ("api_key", "apikey", "authorization", "password", "secret", "webhook", "token", "dsn")


def _stamp_correlation_id(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


def _mask_secrets(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in list(event_dict.items()):
        lower_key = key.lower()
        # prompt_tokens, total_tokens and friends are usage counters
        if lower_key.endswith("_tokens") or not isinstance(value, str) or len(value) <= 4:
            continue
        if any(marker in lower_key for marker in _LOG_SECRET_MARKERS):
            event_dict[key] = value[:2] + "***" + value[-2:]
    return event_dict


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


def configure_logging(level: str = "INFO", *, json_output: bool = True, development_mode: bool = False) -> None:
    """Install the structlog pipeline.

    JSON lines by default; ``development_mode`` or ``json_output=False``
    switches to the colored console renderer.
    """
    processors: List[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _stamp_correlation_id,
        _mask_secrets,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors.extend(
            [structlog.processors.format_exc_info, structlog.processors.JSONRenderer(ensure_ascii=False)]
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level.upper(), logging.INFO)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def bind_execution(execution_id: str, **extra: Any) -> None:
    """Attach the execution id to every log line emitted in this context."""
    structlog.contextvars.bind_contextvars(execution_id=execution_id, **extra)


def unbind_execution(*extra_keys: str) -> None:
    structlog.contextvars.unbind_contextvars("execution_id", *extra_keys)


def log_execution_trace(execution_id: str, trace: list, logger: Optional[Any] = None) -> None:
    """Log the per-node outcome list of a finished execution."""
    log = logger or get_logger("workflow")
    log.info("execution_trace", execution_id=execution_id, trace=trace)


# Fragments of node and storage errors that must not reach API callers:
# psycopg statements, shared-fs and sandbox paths, credentials echoed by
# providers or webhooks, and Python tracebacks from CODE nodes.
_ERROR_REDACTIONS = [
    re.compile(r"(?i)\b(select|insert|update|delete)\b\s+.{0,50}\b(from|into|set|where)\b.{0,50}"),
    re.compile(r"(?i)/(?:home|var|etc|usr|opt|srv|tmp)/[^\s'\"]+"),
    re.compile(r"(?i)(password|secret|token|api.?key|authorization)\s*[:=]\s*[^\s,;]+"),
    re.compile(r"(?i)bearer\s+[a-z0-9._\-]+"),
    re.compile(r"(?i)postgres(?:ql)?://\S+"),
    re.compile(r"(?i)traceback\s*\(most recent call last\)"),
]

MAX_ERROR_CHARS = 500

# Key fragments of execution payloads that hold credentials
_REDACTED_PAYLOAD_KEYS = ("password", "secret", "token", "api_key", "apikey", "authorization", "credentials")

# Usage counters that contain a redacted fragment
_USAGE_KEYS = frozenset({
    "prompt_tokens", "completion_tokens", "total_tokens", "max_tokens",
    "prompttokens", "completiontokens", "totaltokens", "maxtokens",
})


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Scrub an execution or node error before it is returned to API callers."""
    if not error or not isinstance(error, str):
        return "An error occurred"
    result = error
    for pattern in _ERROR_REDACTIONS:
        result = pattern.sub(replacement, result)
    if len(result) > MAX_ERROR_CHARS:
        result = result[: MAX_ERROR_CHARS - 3] + "..."
    return result


def sanitize_response_data(data: Any, *, depth: int = 0, max_depth: int = 20) -> Any:
    """Replace credential values in execution inputs, outputs and task details."""
    if depth > max_depth:
        return "[max depth exceeded]"
    if isinstance(data, list):
        return [sanitize_response_data(item, depth=depth + 1, max_depth=max_depth) for item in data]
    if not isinstance(data, dict):
        return data

    cleaned: Dict[Any, Any] = {}
    for key, value in data.items():
        normalized = str(key).lower().replace("-", "_").replace(" ", "_")
        if normalized not in _USAGE_KEYS and any(marker in normalized for marker in _REDACTED_PAYLOAD_KEYS):
            cleaned[key] = "[REDACTED]"
        else:
            cleaned[key] = sanitize_response_data(value, depth=depth + 1, max_depth=max_depth)
    return cleaned
