"""Live execution progress: per-execution fan-out of node and run events.

Every subscriber owns a bounded queue. The producer never blocks: a
subscriber that falls behind is dropped. Terminal events close the channel,
and subscribers that arrive afterwards get an already-closed subscription
plus whatever ``get_state`` reports.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from flowkernel.logging import get_logger
from flowkernel.storage.models import utcnow

logger = get_logger(__name__)


class ExecutionEventType(str, Enum):
    NODE_START = "node_start"
    NODE_COMPLETE = "node_complete"
    NODE_ERROR = "node_error"
    EXECUTION_COMPLETE = "execution_complete"
    EXECUTION_ERROR = "execution_error"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionEventType.EXECUTION_COMPLETE, ExecutionEventType.EXECUTION_ERROR)


@dataclass
class ExecutionEvent:
    execution_id: str
    type: ExecutionEventType
    node_id: Optional[str] = None
    node_name: Optional[str] = None
    node_type: Optional[str] = None
    status: Optional[str] = None
    progress: int = 0
    completed_nodes: int = 0
    total_nodes: int = 0
    error: Optional[str] = None
    output: Any = None
    iteration: Optional[int] = None
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "executionId": self.execution_id,
            "type": self.type.value,
            "progress": self.progress,
            "completedNodes": self.completed_nodes,
            "totalNodes": self.total_nodes,
            "timestamp": self.timestamp.isoformat(),
        }
        optional = {
            "nodeId": self.node_id,
            "nodeName": self.node_name,
            "nodeType": self.node_type,
            "status": self.status,
            "error": self.error,
            "output": self.output,
            "iteration": self.iteration,
        }
        payload.update({key: value for key, value in optional.items() if value is not None})
        return payload


@dataclass
class ExecutionState:
    """Snapshot used by late subscribers instead of a replay."""

    execution_id: str
    organization_id: Optional[str] = None
    status: str = "running"
    progress: int = 0
    completed_nodes: int = 0
    total_nodes: int = 0
    current_node: Optional[str] = None
    node_statuses: Dict[str, str] = field(default_factory=dict)
    error: Optional[str] = None
    updated_at: datetime = field(default_factory=utcnow)

    def apply(self, event: ExecutionEvent) -> None:
        self.progress = event.progress
        self.completed_nodes = event.completed_nodes
        self.total_nodes = event.total_nodes
        self.updated_at = event.timestamp
        if event.node_id and event.iteration is None:
            self.node_statuses[event.node_id] = event.status or event.type.value
            self.current_node = event.node_id if event.type == ExecutionEventType.NODE_START else None
        if event.type == ExecutionEventType.EXECUTION_COMPLETE:
            self.status = "completed"
        elif event.type == ExecutionEventType.EXECUTION_ERROR:
            self.status = "failed"
            self.error = event.error

    def to_dict(self) -> Dict[str, Any]:
        return {
            "executionId": self.execution_id,
            "status": self.status,
            "progress": self.progress,
            "completedNodes": self.completed_nodes,
            "totalNodes": self.total_nodes,
            "currentNode": self.current_node,
            "nodeStatuses": dict(self.node_statuses),
            "error": self.error,
            "updatedAt": self.updated_at.isoformat(),
        }


_CLOSE = object()


class Subscription:
    """One consumer's view of an execution channel; iterate with ``async for``."""

    def __init__(self, execution_id: str, capacity: int) -> None:
        self.execution_id = execution_id
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max(1, capacity))
        self.closed = False
        self.dropped = False

    def offer(self, event: ExecutionEvent) -> bool:
        if self.closed:
            return False
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self._drop()
            return False
        return True

    def _drop(self) -> None:
        self.dropped = True
        while not self._queue.empty():
            self._queue.get_nowait()
        self.close()

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            self._queue.put_nowait(_CLOSE)
        except asyncio.QueueFull:
            # a full queue is drained by the consumer; the flag ends iteration
            pass

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> ExecutionEvent:
        if self.closed and self._queue.empty():
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSE:
            raise StopAsyncIteration
        return item


class ExecutionEventBus:
    """Process-local registry of execution channels."""

    def __init__(
        self,
        *,
        capacity: int = 256,
        state_cache=None,
        state_ttl_seconds: int = 1800,
    ) -> None:
        self.capacity = capacity
        self.state_cache = state_cache
        self.state_ttl_seconds = state_ttl_seconds
        self._subscribers: Dict[str, List[Subscription]] = {}
        self._states: Dict[str, ExecutionState] = {}
        self._finished: Dict[str, float] = {}

    def open(self, execution_id: str, *, total_nodes: int = 0, organization_id: Optional[str] = None) -> None:
        self._finished.pop(execution_id, None)
        self._subscribers.setdefault(execution_id, [])
        self._states[execution_id] = ExecutionState(
            execution_id=execution_id, organization_id=organization_id, total_nodes=total_nodes
        )

    def subscribe(self, execution_id: str, *, already_finished: bool = False) -> Subscription:
        subscription = Subscription(execution_id, self.capacity)
        if already_finished or execution_id in self._finished:
            subscription.close()
            return subscription
        self._subscribers.setdefault(execution_id, []).append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscribers = self._subscribers.get(subscription.execution_id)
        if subscribers and subscription in subscribers:
            subscribers.remove(subscription)
        subscription.close()

    def subscriber_count(self, execution_id: str) -> int:
        return len(self._subscribers.get(execution_id, []))

    async def publish(self, event: ExecutionEvent) -> None:
        execution_id = event.execution_id
        if execution_id in self._finished:
            logger.warning("execution_event_after_close", execution_id=execution_id, type=event.type.value)
            return
        state = self._states.get(execution_id)
        if state is None:
            state = ExecutionState(execution_id=execution_id, total_nodes=event.total_nodes)
            self._states[execution_id] = state
        state.apply(event)

        subscribers = self._subscribers.get(execution_id, [])
        for subscription in list(subscribers):
            if not subscription.offer(event):
                subscribers.remove(subscription)
                logger.warning(
                    "execution_subscriber_dropped",
                    execution_id=execution_id,
                    capacity=self.capacity,
                )
        if event.type.is_terminal:
            for subscription in subscribers:
                subscription.close()
            self._subscribers.pop(execution_id, None)
            self._finished[execution_id] = time.monotonic()
        await self._write_state(state)

    async def _write_state(self, state: ExecutionState) -> None:
        if self.state_cache is None:
            return
        try:
            await self.state_cache.set_execution_state(
                state.execution_id,
                state.to_dict(),
                ttl_seconds=self.state_ttl_seconds,
                tenant_id=state.organization_id,
            )
        except Exception as exc:
            logger.warning("execution_state_cache_failed", execution_id=state.execution_id, error=str(exc))

    async def get_state(self, execution_id: str, *, tenant_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        state = self._states.get(execution_id)
        if state is not None:
            if tenant_id and state.organization_id and state.organization_id != tenant_id:
                return None
            return state.to_dict()
        if self.state_cache is None:
            return None
        try:
            return await self.state_cache.get_execution_state(execution_id, tenant_id=tenant_id)
        except Exception as exc:
            logger.warning("execution_state_cache_failed", execution_id=execution_id, error=str(exc))
            return None

    def is_finished(self, execution_id: str) -> bool:
        return execution_id in self._finished

    def prune(self, max_age_seconds: float) -> int:
        """Forget finished executions older than ``max_age_seconds``."""
        cutoff = time.monotonic() - max_age_seconds
        stale = [eid for eid, finished in self._finished.items() if finished <= cutoff]
        for execution_id in stale:
            self._finished.pop(execution_id, None)
            self._states.pop(execution_id, None)
            self._subscribers.pop(execution_id, None)
        return len(stale)
