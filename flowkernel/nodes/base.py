from __future__ import annotations

import re
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Sequence

from flowkernel.config import Settings
from flowkernel.logging import get_logger, sanitize_error_message
from flowkernel.service.context import ExecutionContext, NodeResult, NodeStatus
from flowkernel.service.errors import NodeError, ServiceError
from flowkernel.storage.models import OutputFile

logger = get_logger(__name__)


@dataclass
class NodeServices:
    """Collaborators shared by every processor of one engine."""

    settings: Settings
    store: Any
    ai: Any = None
    sandbox: Any = None
    egress: Any = None

    @property
    def fs_root(self) -> Path:
        return Path(self.settings.shared_fs_root)


class NodeProcessor:
    """Base processor: subclasses implement ``run`` and may raise NodeError.

    ``process`` is the boundary that turns every failure into an error
    NodeResult so nothing escapes to the scheduler.
    """

    node_type: str = ""

    def __init__(self, services: NodeServices) -> None:
        self.services = services

    async def run(
        self, node, context: ExecutionContext, *, upstream: Sequence[str] = ()
    ) -> NodeResult | Dict[str, Any]:
        raise NotImplementedError

    async def process(
        self, node, context: ExecutionContext, *, upstream: Sequence[str] = ()
    ) -> NodeResult:
        started = time.monotonic()
        try:
            outcome = await self.run(node, context, upstream=upstream)
        except NodeError as exc:
            logger.warning(
                "workflow_node_failed",
                node=node.id,
                node_type=node.kind,
                error=exc.message,
            )
            result = self.error(node, exc.message, data=exc.detail)
        except ServiceError as exc:
            logger.warning("workflow_node_failed", node=node.id, node_type=node.kind, error=exc.message)
            result = self.error(node, exc.message)
        except Exception as exc:
            logger.error(
                "workflow_node_crashed",
                node=node.id,
                node_type=node.kind,
                error=sanitize_error_message(str(exc)),
                exc_info=True,
            )
            result = self.error(node, f"{type(exc).__name__}: {exc}")
        else:
            result = outcome if isinstance(outcome, NodeResult) else self.success(node, outcome)
        result.duration_ms = int((time.monotonic() - started) * 1000)
        return result

    @staticmethod
    def success(node, data: Dict[str, Any], **extra: Any) -> NodeResult:
        return NodeResult(
            node_id=node.id,
            node_name=node.label,
            node_type=node.kind,
            status=NodeStatus.SUCCESS,
            data=data,
            **extra,
        )

    @staticmethod
    def error(node, message: str, *, data: Optional[Dict[str, Any]] = None, **extra: Any) -> NodeResult:
        return NodeResult(
            node_id=node.id,
            node_name=node.label,
            node_type=node.kind,
            status=NodeStatus.ERROR,
            data=dict(data or {}),
            error=message,
            **extra,
        )


_UNSAFE_FILE_CHARS = re.compile(r'[\\/:*?"<>|\x00-\x1f]')


def safe_file_name(name: str, fallback: str = "output") -> str:
    cleaned = _UNSAFE_FILE_CHARS.sub("_", name or "").strip(" .")
    return cleaned[:200] or fallback


def write_output_file(
    services: NodeServices,
    context: ExecutionContext,
    node,
    file_name: str,
    content: str | bytes,
    *,
    format: str,
    mime_type: Optional[str] = None,
) -> OutputFile:
    """Write under ``<fs_root>/outputs/<execution_id>/`` and record the file on the context."""
    directory = services.fs_root / "outputs" / context.execution_id
    name = safe_file_name(file_name)
    path = directory / name
    payload = content.encode("utf-8") if isinstance(content, str) else content
    try:
        directory.mkdir(parents=True, exist_ok=True)
        path.write_bytes(payload)
    except OSError as exc:
        raise NodeError(f"failed to write output file {name}: {exc.strerror or exc}") from exc
    record = OutputFile(
        id=str(uuid.uuid4()),
        execution_id=context.execution_id,
        node_id=node.id,
        file_name=name,
        format=format,
        path=str(path),
        size=len(payload),
        mime_type=mime_type,
    )
    context.output_files.append(record)
    return record
