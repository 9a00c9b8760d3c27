"""In-process execution queue.

Queued runs execute asynchronously with a bounded number in flight; the rest
wait in FIFO order. Synchronous runs bypass the cap and race a timeout. A
timed-out run is abandoned, never killed: it keeps going and persists its own
terminal state.
"""

from __future__ import annotations

import asyncio
import secrets
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Deque, Dict, List, Optional, Set

from flowkernel.logging import get_logger
from flowkernel.service.errors import ExecutionTimeoutError, NotFoundError, ServiceError
from flowkernel.storage.errors import ConstraintViolation
from flowkernel.storage.models import ExecutionMode, ExecutionStatus, utcnow

logger = get_logger(__name__)

DEFAULT_MAX_CONCURRENT = 5
DEFAULT_TASK_TIMEOUT_SECONDS = 300
DEFAULT_CLEANUP_INTERVAL_SECONDS = 60
DEFAULT_RETENTION_SECONDS = 1800
CANCELLED_ERROR = "cancelled"


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED)


def new_task_id() -> str:
    return f"task_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


@dataclass
class QueueTask:
    id: str
    workflow_id: str
    organization_id: str
    user_id: str
    input: Dict[str, Any] = field(default_factory=dict)
    mode: ExecutionMode = ExecutionMode.PRODUCTION
    status: TaskStatus = TaskStatus.PENDING
    execution_id: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "workflowId": self.workflow_id,
            "organizationId": self.organization_id,
            "userId": self.user_id,
            "mode": self.mode.value,
            "status": self.status.value,
            "executionId": self.execution_id,
            "result": self.result,
            "error": self.error,
            "createdAt": self.created_at.isoformat(),
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
        }


class ExecutionQueue:
    """Bounded FIFO of workflow runs.

    The task table, FIFO and running counter change only under ``_lock`` and
    never across an ``await``.
    """

    def __init__(
        self,
        engine,
        *,
        max_concurrent: int = DEFAULT_MAX_CONCURRENT,
        task_timeout_seconds: float = DEFAULT_TASK_TIMEOUT_SECONDS,
        cleanup_interval_seconds: float = DEFAULT_CLEANUP_INTERVAL_SECONDS,
        retention_seconds: float = DEFAULT_RETENTION_SECONDS,
        events=None,
    ) -> None:
        self.engine = engine
        self.max_concurrent = max(1, max_concurrent)
        self.task_timeout_seconds = task_timeout_seconds
        self.cleanup_interval_seconds = cleanup_interval_seconds
        self.retention_seconds = retention_seconds
        self.events = events
        self._lock = threading.Lock()
        self._tasks: Dict[str, QueueTask] = {}
        self._pending: Deque[str] = deque()
        self._running_count = 0
        self._inflight: Set[asyncio.Future] = set()
        self._cleanup_task: Optional[asyncio.Task] = None
        self._running = False

    # -- lifecycle ---------------------------------------------------------

    async def start(self) -> None:
        if self._running:
            logger.warning("execution_queue_already_running")
            return
        self._running = True
        self._cleanup_task = asyncio.create_task(self._cleanup_loop())
        logger.info(
            "execution_queue_started",
            max_concurrent=self.max_concurrent,
            cleanup_interval=self.cleanup_interval_seconds,
        )

    async def stop(self, *, grace_seconds: float = 5.0) -> None:
        self._running = False
        if self._cleanup_task:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None
        inflight = list(self._inflight)
        if inflight:
            _, still_running = await asyncio.wait(inflight, timeout=grace_seconds)
            for future in still_running:
                future.cancel()
            logger.info("execution_queue_abandoned_runs", count=len(still_running))
        logger.info("execution_queue_stopped")

    async def _cleanup_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.cleanup_interval_seconds)
            try:
                self.cleanup()
            except Exception as exc:
                logger.error("execution_queue_cleanup_error", error=str(exc), error_type=type(exc).__name__)

    def cleanup(self, *, now: Optional[datetime] = None) -> int:
        """Drop terminal tasks older than the retention window."""
        cutoff = (now or utcnow()) - timedelta(seconds=self.retention_seconds)
        with self._lock:
            expired = [
                task_id
                for task_id, task in self._tasks.items()
                if task.status.is_terminal and task.completed_at and task.completed_at < cutoff
            ]
            for task_id in expired:
                del self._tasks[task_id]
        if self.events is not None:
            self.events.prune(self.retention_seconds)
        if expired:
            logger.info("execution_queue_tasks_pruned", count=len(expired))
        return len(expired)

    # -- queued execution --------------------------------------------------

    def enqueue(
        self,
        workflow_id: str,
        organization_id: str,
        user_id: str,
        input: Optional[Dict[str, Any]] = None,
        *,
        mode: ExecutionMode | str = ExecutionMode.PRODUCTION,
    ) -> str:
        task = QueueTask(
            id=new_task_id(),
            workflow_id=workflow_id,
            organization_id=organization_id,
            user_id=user_id,
            input=dict(input or {}),
            mode=ExecutionMode(mode),
        )
        with self._lock:
            self._tasks[task.id] = task
            self._pending.append(task.id)
            depth = len(self._pending)
        logger.info("execution_queue_task_enqueued", task_id=task.id, workflow_id=workflow_id, depth=depth)
        self._pump()
        return task.id

    def _pump(self) -> None:
        claimed: List[QueueTask] = []
        with self._lock:
            while self._pending and self._running_count < self.max_concurrent:
                task = self._tasks.get(self._pending.popleft())
                if task is None or task.status != TaskStatus.PENDING:
                    continue
                task.status = TaskStatus.RUNNING
                task.started_at = utcnow()
                self._running_count += 1
                claimed.append(task)
        for task in claimed:
            self._track(asyncio.ensure_future(self._run_task(task)))

    def _track(self, future: asyncio.Future) -> asyncio.Future:
        self._inflight.add(future)
        future.add_done_callback(self._inflight.discard)
        return future

    async def _run_task(self, task: QueueTask) -> None:
        logger.info("execution_queue_task_claimed", task_id=task.id, workflow_id=task.workflow_id)
        try:
            execution = self.engine.create_execution(
                task.workflow_id, task.organization_id, task.user_id, task.input, mode=task.mode
            )
            task.execution_id = execution.id
            run = self._track(
                asyncio.ensure_future(
                    self.engine.execute_workflow(
                        task.workflow_id,
                        task.organization_id,
                        task.user_id,
                        task.input,
                        mode=task.mode,
                        execution_id=execution.id,
                    )
                )
            )
            try:
                result = await asyncio.wait_for(asyncio.shield(run), timeout=self.task_timeout_seconds)
            except asyncio.TimeoutError:
                logger.warning(
                    "execution_queue_task_timeout",
                    task_id=task.id,
                    execution_id=task.execution_id,
                    timeout_seconds=self.task_timeout_seconds,
                )
                self._finish(task, TaskStatus.FAILED, error=f"task exceeded its {self.task_timeout_seconds:g}s timeout")
                return
            status = TaskStatus.COMPLETED if result.status == ExecutionStatus.COMPLETED else TaskStatus.FAILED
            self._finish(task, status, result=result.to_dict(), error=result.error)
        except (ServiceError, ConstraintViolation) as exc:
            logger.warning("execution_queue_task_failed", task_id=task.id, error=exc.message)
            self._finish(task, TaskStatus.FAILED, error=exc.message)
        except Exception as exc:
            logger.error(
                "execution_queue_task_crashed",
                task_id=task.id,
                error=str(exc),
                error_type=type(exc).__name__,
                exc_info=True,
            )
            self._finish(task, TaskStatus.FAILED, error=f"{type(exc).__name__}: {exc}")

    def _finish(
        self,
        task: QueueTask,
        status: TaskStatus,
        *,
        result: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> None:
        with self._lock:
            if task.status.is_terminal:
                return
            was_running = task.status == TaskStatus.RUNNING
            task.status = status
            task.result = result
            task.error = error
            task.completed_at = utcnow()
            if was_running:
                self._running_count -= 1
        logger.info("execution_queue_task_finished", task_id=task.id, status=status.value)
        self._pump()

    # -- queries -----------------------------------------------------------

    def get_task(self, task_id: str) -> Optional[QueueTask]:
        with self._lock:
            return self._tasks.get(task_id)

    def get_task_with_details(self, task_id: str, organization_id: Optional[str] = None) -> Dict[str, Any]:
        task = self.get_task(task_id)
        if task is None or (organization_id and task.organization_id != organization_id):
            raise NotFoundError("task not found", detail={"task_id": task_id})
        payload = task.to_dict()
        execution = None
        if task.execution_id:
            execution = self.engine.store.get_execution(task.execution_id, task.organization_id)
        payload["execution"] = execution.to_dict() if execution else None
        return payload

    def cancel_task(self, task_id: str) -> bool:
        """Cancel a task that has not started; running and finished tasks are untouched."""
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None or task.status != TaskStatus.PENDING:
                return False
            task.status = TaskStatus.FAILED
            task.error = CANCELLED_ERROR
            task.completed_at = utcnow()
            if task_id in self._pending:
                self._pending.remove(task_id)
        logger.info("execution_queue_task_cancelled", task_id=task_id)
        return True

    def get_queue_status(self) -> Dict[str, int]:
        with self._lock:
            counts = {status.value: 0 for status in TaskStatus}
            for task in self._tasks.values():
                counts[task.status.value] += 1
            counts["max_concurrent"] = self.max_concurrent
            counts["queue_depth"] = len(self._pending)
        return counts

    # -- synchronous execution ---------------------------------------------

    async def execute_sync(
        self,
        workflow_id: str,
        organization_id: str,
        user_id: str,
        input: Optional[Dict[str, Any]] = None,
        *,
        mode: ExecutionMode | str = ExecutionMode.PRODUCTION,
        timeout: Optional[float] = None,
    ):
        """Run now, outside the concurrency cap, racing ``timeout`` seconds."""
        limit = timeout or self.task_timeout_seconds
        execution = self.engine.create_execution(
            workflow_id, organization_id, user_id, input, mode=mode
        )
        run = self._track(
            asyncio.ensure_future(
                self.engine.execute_workflow(
                    workflow_id,
                    organization_id,
                    user_id,
                    input,
                    mode=mode,
                    execution_id=execution.id,
                )
            )
        )
        try:
            return await asyncio.wait_for(asyncio.shield(run), timeout=limit)
        except asyncio.TimeoutError:
            logger.warning("execution_sync_timeout", execution_id=execution.id, timeout_seconds=limit)
            raise ExecutionTimeoutError(
                f"execution did not finish within {limit:g}s",
                detail={"execution_id": execution.id, "timeout_seconds": limit},
            ) from None
