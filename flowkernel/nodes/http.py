from __future__ import annotations

import asyncio
import base64
import json
import time
from typing import Any, Dict, Optional, Sequence

import httpx

from flowkernel.logging import get_logger
from flowkernel.nodes.base import NodeProcessor
from flowkernel.service.context import ExecutionContext
from flowkernel.service.errors import NodeError, TransientDependencyError
from flowkernel.service.sandbox import EgressError

logger = get_logger(__name__)

REDACTED = "[redacted]"
SENSITIVE_HEADERS = frozenset(
    {"authorization", "proxy-authorization", "cookie", "set-cookie", "x-api-key", "x-auth-token"}
)
MAX_BODY_CHARS = 100_000
# retries stop once this share of the node timeout is spent
NODE_BUDGET_SHARE = 0.9
MIN_ATTEMPT_SECONDS = 0.1


def redact_headers(headers: Dict[str, str], extra: Sequence[str] = ()) -> Dict[str, str]:
    hidden = SENSITIVE_HEADERS | {name.lower() for name in extra}
    return {key: (REDACTED if key.lower() in hidden else value) for key, value in headers.items()}


def _decode_body(response: httpx.Response) -> Any:
    content_type = response.headers.get("content-type", "")
    if "json" in content_type:
        try:
            return response.json()
        except ValueError:
            pass
    text = response.text
    if len(text) > MAX_BODY_CHARS:
        return text[:MAX_BODY_CHARS]
    return text


class HttpProcessor(NodeProcessor):
    """HTTP requests with node-level exponential backoff."""

    node_type = "HTTP"

    def _request_parts(self, node, context: ExecutionContext) -> Dict[str, Any]:
        config = node.config
        headers = {key: str(context.resolve(value)) for key, value in config.headers.items()}
        params = {key: str(context.resolve(value)) for key, value in config.query_params.items()}
        parts: Dict[str, Any] = {"headers": headers, "params": params}

        body = config.body
        if body.type == "json":
            content = context.resolve_value(body.content)
            if isinstance(content, str):
                try:
                    content = json.loads(content)
                except ValueError as exc:
                    raise NodeError(f"request body is not valid JSON: {exc}") from exc
            parts["json"] = content
        elif body.type == "text":
            parts["content"] = str(context.resolve(body.content or ""))
        elif body.type == "form":
            content = context.resolve_value(body.content or {})
            if not isinstance(content, dict):
                raise NodeError("form body must be an object")
            parts["data"] = {key: "" if value is None else str(value) for key, value in content.items()}

        auth = config.auth
        if auth.type == "basic":
            username = context.resolve(auth.username)
            password = context.resolve(auth.password)
            token = base64.b64encode(f"{username}:{password}".encode()).decode()
            headers["Authorization"] = f"Basic {token}"
        elif auth.type == "bearer":
            headers["Authorization"] = f"Bearer {context.resolve(auth.token)}"
        elif auth.type == "apikey":
            value = str(context.resolve(auth.api_key_value))
            if auth.api_key_location == "query":
                params[auth.api_key_name] = value
            else:
                headers[auth.api_key_name] = value
        return parts

    async def run(self, node, context: ExecutionContext, *, upstream: Sequence[str] = ()):
        config = node.config
        if self.services.egress is None:
            raise NodeError("HTTP egress is not configured", node_id=node.id)
        url = context.resolve(config.url)
        unresolved = context.unresolved(config.url)
        if unresolved:
            raise NodeError(f"URL has unresolved variables: {', '.join(unresolved)}")
        parts = self._request_parts(node, context)
        timeout_ms = config.timeout_ms or self.services.settings.http_default_timeout_ms
        retry = config.retry
        hidden = [config.auth.api_key_name] if config.auth.type == "apikey" else []

        deadline = time.monotonic() + self.services.settings.node_timeout_seconds * NODE_BUDGET_SHARE

        def _exhausted(delay: float) -> bool:
            if attempt >= retry.max_retries:
                return True
            return time.monotonic() + delay + MIN_ATTEMPT_SECONDS > deadline

        attempt = 0
        response: Optional[httpx.Response] = None
        while True:
            delay = retry.retry_delay_ms * (2 ** attempt) / 1000.0
            attempt_timeout = max(min(timeout_ms / 1000.0, deadline - time.monotonic()), MIN_ATTEMPT_SECONDS)
            try:
                response = await self.services.egress.request(
                    config.method, url, timeout=attempt_timeout, **parts
                )
            except EgressError as exc:
                raise NodeError(str(exc), node_id=node.id) from exc
            except httpx.HTTPError as exc:
                if _exhausted(delay):
                    raise TransientDependencyError(
                        f"request failed after {attempt + 1} attempt(s): {type(exc).__name__}: {exc}",
                        node_id=node.id,
                        detail={"attempts": attempt + 1, "url": url},
                    ) from exc
                logger.warning(
                    "workflow_http_retry", node=node.id, attempt=attempt + 1, error=str(exc)
                )
            else:
                if response.status_code not in retry.retry_on_status or _exhausted(delay):
                    break
                logger.warning(
                    "workflow_http_retry",
                    node=node.id,
                    attempt=attempt + 1,
                    status_code=response.status_code,
                )
            attempt += 1
            if delay > 0:
                await asyncio.sleep(delay)

        body = _decode_body(response)
        data = {
            "statusCode": response.status_code,
            "ok": response.is_success,
            "headers": redact_headers(dict(response.headers), hidden),
            "body": body,
            "result": body,
            "attempts": attempt + 1,
            "request": {
                "method": config.method,
                "url": url,
                "headers": redact_headers(parts["headers"], hidden),
            },
        }
        if not response.is_success:
            return self.error(node, f"HTTP {response.status_code} from {config.method} {url}", data=data)
        return data
