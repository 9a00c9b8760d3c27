from datetime import timedelta

import pytest

from flowkernel.service.reconcile import ORPHANED_EXECUTION_MESSAGE, reconcile_stuck_executions
from flowkernel.service.runtime import EngineRuntime
from flowkernel.storage.errors import IllegalTransition
from flowkernel.storage.memory import MemoryStore
from flowkernel.storage.models import ExecutionStatus, utcnow
from flowkernel.storage.redis_cache import MemoryStateCache

TENANT = "org-test"
USER = "user-test"


def _seed(store, organization_id=TENANT):
    workflow = store.create_workflow(organization_id, "wf", {"nodes": [{"id": "in", "type": "INPUT"}]})
    running = store.create_execution(workflow.id, organization_id, USER)
    store.transition_execution(running.id, ExecutionStatus.RUNNING)
    pending = store.create_execution(workflow.id, organization_id, USER)
    completed = store.create_execution(workflow.id, organization_id, USER)
    store.transition_execution(completed.id, ExecutionStatus.RUNNING)
    store.transition_execution(completed.id, ExecutionStatus.COMPLETED, output={"ok": True})
    return running, pending, completed


async def test_sweep_fails_only_in_flight_executions(store):
    running, pending, completed = _seed(store)

    report = await reconcile_stuck_executions(store)

    assert sorted(report.failed) == sorted([running.id, pending.id])
    assert report.scanned == 2
    for execution_id in (running.id, pending.id):
        execution = store.get_execution(execution_id)
        assert execution.status == ExecutionStatus.FAILED
        assert execution.error == ORPHANED_EXECUTION_MESSAGE
        assert execution.completed_at is not None
    assert store.get_execution(completed.id).status == ExecutionStatus.COMPLETED
    assert store.get_execution(completed.id).output == {"ok": True}


async def test_sweep_is_idempotent(store):
    _seed(store)
    await reconcile_stuck_executions(store)
    again = await reconcile_stuck_executions(store)
    assert again.scanned == 0
    assert again.failed == []


async def test_threshold_spares_recent_executions(store):
    running, pending, _ = _seed(store)

    recent = await reconcile_stuck_executions(store, stale_after=timedelta(minutes=30))
    assert recent.failed == []
    assert store.get_execution(running.id).status == ExecutionStatus.RUNNING

    later = await reconcile_stuck_executions(
        store, stale_after=timedelta(minutes=30), now=utcnow() + timedelta(hours=1)
    )
    assert sorted(later.failed) == sorted([running.id, pending.id])


async def test_sweep_can_be_scoped_to_one_tenant(store):
    mine, _, _ = _seed(store)
    theirs, _, _ = _seed(store, organization_id="other-org")

    report = await reconcile_stuck_executions(store, organization_id=TENANT)

    assert mine.id in report.failed
    assert theirs.id not in report.failed
    assert store.get_execution(theirs.id).status == ExecutionStatus.RUNNING


def test_terminal_executions_cannot_change(store):
    _, _, completed = _seed(store)
    with pytest.raises(IllegalTransition):
        store.transition_execution(completed.id, ExecutionStatus.FAILED, error="late")
    with pytest.raises(IllegalTransition):
        store.transition_execution(completed.id, ExecutionStatus.RUNNING)


async def test_restart_sweeps_executions_left_by_previous_process(settings):
    first = MemoryStore(fs_root=settings.shared_fs_root)
    running, pending, completed = _seed(first)

    # a new process loads the persisted state and sweeps before serving
    runtime = EngineRuntime(settings, state_cache=MemoryStateCache())
    report = await runtime.start()
    try:
        assert sorted(report.failed) == sorted([running.id, pending.id])
        assert runtime.store.get_execution(running.id).error == ORPHANED_EXECUTION_MESSAGE
        assert runtime.store.get_execution(completed.id).status == ExecutionStatus.COMPLETED
    finally:
        await runtime.shutdown()
