import asyncio
from datetime import timedelta

import httpx
import pytest

from flowkernel.service.errors import ExecutionTimeoutError, NotFoundError
from flowkernel.service.queue import CANCELLED_ERROR, ExecutionQueue, TaskStatus
from flowkernel.storage.models import ExecutionStatus, utcnow

TENANT = "org-test"
USER = "user-test"

_RANK = {TaskStatus.PENDING: 0, TaskStatus.RUNNING: 1, TaskStatus.COMPLETED: 2, TaskStatus.FAILED: 2}


def _simple_workflow(store):
    document = {
        "nodes": [
            {"id": "in", "type": "INPUT", "name": "Input", "config": {"fields": [{"name": "topic"}]}},
            {"id": "ai", "type": "AI", "name": "Writer", "config": {"userPrompt": "{{Input.topic}}"}},
            {"id": "out", "type": "OUTPUT", "name": "Output"},
        ],
        "edges": [{"source": "in", "target": "ai"}, {"source": "ai", "target": "out"}],
    }
    return store.create_workflow(TENANT, "simple", document)


def _slow_workflow(store, http_handler, delay=0.3):
    async def slow(request):
        await asyncio.sleep(delay)
        return httpx.Response(200, json={"ok": True})

    http_handler.handler = slow
    document = {
        "nodes": [
            {"id": "in", "type": "INPUT", "name": "Input"},
            {"id": "h", "type": "HTTP", "name": "Slow", "config": {"url": "https://api.test/slow"}},
            {"id": "out", "type": "OUTPUT", "name": "Output"},
        ],
        "edges": [{"source": "in", "target": "h"}, {"source": "h", "target": "out"}],
    }
    return store.create_workflow(TENANT, "slow", document)


async def _wait_terminal(queue, task_id, timeout=5.0):
    seen = []
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        status = queue.get_task(task_id).status
        if not seen or seen[-1] != status:
            seen.append(status)
        if status.is_terminal:
            return seen
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError(f"task {task_id} stuck in {status}")
        await asyncio.sleep(0.01)


async def test_enqueued_task_runs_to_completion(engine, store):
    queue = ExecutionQueue(engine, max_concurrent=2)
    workflow = _simple_workflow(store)

    task_id = queue.enqueue(workflow.id, TENANT, USER, {"topic": "tea"})
    seen = await _wait_terminal(queue, task_id)

    assert seen[-1] == TaskStatus.COMPLETED
    ranks = [_RANK[status] for status in seen]
    assert ranks == sorted(ranks)
    details = queue.get_task_with_details(task_id, TENANT)
    assert details["status"] == "completed"
    assert details["execution"]["status"] == ExecutionStatus.COMPLETED.value
    assert details["result"]["output"]["result"]
    await queue.stop()


async def test_tasks_beyond_capacity_wait_in_fifo_order(engine, store, http_handler):
    queue = ExecutionQueue(engine, max_concurrent=1)
    workflow = _slow_workflow(store, http_handler, delay=0.1)

    first = queue.enqueue(workflow.id, TENANT, USER)
    second = queue.enqueue(workflow.id, TENANT, USER)
    assert queue.get_task(first).status == TaskStatus.RUNNING
    assert queue.get_task(second).status == TaskStatus.PENDING
    status = queue.get_queue_status()
    assert status["running"] == 1
    assert status["queue_depth"] == 1
    assert status["max_concurrent"] == 1

    await _wait_terminal(queue, second)
    assert queue.get_task(first).completed_at <= queue.get_task(second).started_at
    await queue.stop()


async def test_cancel_only_affects_pending_tasks(engine, store, http_handler):
    queue = ExecutionQueue(engine, max_concurrent=1)
    workflow = _slow_workflow(store, http_handler, delay=0.2)

    running = queue.enqueue(workflow.id, TENANT, USER)
    waiting = queue.enqueue(workflow.id, TENANT, USER)

    assert queue.cancel_task(waiting) is True
    assert queue.get_task(waiting).status == TaskStatus.FAILED
    assert queue.get_task(waiting).error == CANCELLED_ERROR
    assert queue.cancel_task(waiting) is False
    assert queue.cancel_task(running) is False
    assert queue.cancel_task("task_missing") is False

    await _wait_terminal(queue, running)
    assert queue.get_task(running).status == TaskStatus.COMPLETED
    # the cancelled task never got an execution
    assert queue.get_task(waiting).execution_id is None
    await queue.stop()


async def test_unknown_workflow_fails_the_task(engine):
    queue = ExecutionQueue(engine)
    task_id = queue.enqueue("missing-workflow", TENANT, USER)
    seen = await _wait_terminal(queue, task_id)
    assert seen[-1] == TaskStatus.FAILED
    assert queue.get_task(task_id).error == "workflow not found"


async def test_task_details_are_tenant_scoped(engine, store):
    queue = ExecutionQueue(engine)
    task_id = queue.enqueue(_simple_workflow(store).id, TENANT, USER, {"topic": "x"})
    await _wait_terminal(queue, task_id)
    with pytest.raises(NotFoundError):
        queue.get_task_with_details(task_id, "other-org")
    with pytest.raises(NotFoundError):
        queue.get_task_with_details("task_missing", TENANT)


async def test_task_timeout_abandons_but_execution_finishes(engine, store, http_handler):
    queue = ExecutionQueue(engine, task_timeout_seconds=0.05)
    workflow = _slow_workflow(store, http_handler, delay=0.3)

    task_id = queue.enqueue(workflow.id, TENANT, USER)
    await _wait_terminal(queue, task_id)
    task = queue.get_task(task_id)
    assert task.status == TaskStatus.FAILED
    assert "timeout" in task.error

    await queue.stop(grace_seconds=5)
    execution = store.get_execution(task.execution_id, TENANT)
    assert execution.status == ExecutionStatus.COMPLETED


async def test_execute_sync_returns_result(engine, store):
    queue = ExecutionQueue(engine)
    result = await queue.execute_sync(_simple_workflow(store).id, TENANT, USER, {"topic": "tea"}, timeout=5)
    assert result.status == ExecutionStatus.COMPLETED
    assert queue.get_queue_status()["running"] == 0


async def test_execute_sync_timeout_reports_execution_id(engine, store, http_handler):
    queue = ExecutionQueue(engine)
    workflow = _slow_workflow(store, http_handler, delay=0.3)

    with pytest.raises(ExecutionTimeoutError) as excinfo:
        await queue.execute_sync(workflow.id, TENANT, USER, timeout=0.05)

    execution_id = excinfo.value.detail["execution_id"]
    await queue.stop(grace_seconds=5)
    assert store.get_execution(execution_id, TENANT).status == ExecutionStatus.COMPLETED


async def test_execute_sync_unknown_workflow(engine):
    queue = ExecutionQueue(engine)
    with pytest.raises(NotFoundError):
        await queue.execute_sync("missing-workflow", TENANT, USER, timeout=1)


async def test_cleanup_drops_old_terminal_tasks(engine, store):
    queue = ExecutionQueue(engine, retention_seconds=60)
    task_id = queue.enqueue(_simple_workflow(store).id, TENANT, USER, {"topic": "tea"})
    await _wait_terminal(queue, task_id)

    assert queue.cleanup() == 0
    assert queue.cleanup(now=utcnow() + timedelta(minutes=5)) == 1
    assert queue.get_task(task_id) is None


async def test_start_and_stop_are_idempotent(engine):
    queue = ExecutionQueue(engine, cleanup_interval_seconds=0.01)
    await queue.start()
    await queue.start()
    await asyncio.sleep(0.05)
    await queue.stop()
    await queue.stop()
