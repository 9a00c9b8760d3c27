import asyncio

from flowkernel.service.events import ExecutionEvent, ExecutionEventBus, ExecutionEventType
from flowkernel.storage.redis_cache import MemoryStateCache

TENANT = "org-test"
USER = "user-test"

_DOC = {
    "nodes": [
        {"id": "in", "type": "INPUT", "name": "Input", "config": {"fields": [{"name": "topic"}]}},
        {"id": "ai", "type": "AI", "name": "Writer", "config": {"userPrompt": "{{Input.topic}}"}},
        {"id": "out", "type": "OUTPUT", "name": "Output"},
    ],
    "edges": [{"source": "in", "target": "ai"}, {"source": "ai", "target": "out"}],
}


async def _collect(subscription):
    return [event async for event in subscription]


async def test_live_subscriber_sees_node_events_then_terminal(engine, store, runtime):
    workflow = store.create_workflow(TENANT, "stream", _DOC)
    execution = engine.create_execution(workflow.id, TENANT, USER, {"topic": "tea"})
    subscription = runtime.events.subscribe(execution.id)
    consumer = asyncio.create_task(_collect(subscription))

    await engine.execute_workflow(workflow.id, TENANT, USER, {"topic": "tea"}, execution_id=execution.id)
    events = await asyncio.wait_for(consumer, timeout=5)

    types = [event.type for event in events]
    assert types[0] == ExecutionEventType.NODE_START
    assert types[-1] == ExecutionEventType.EXECUTION_COMPLETE
    assert types.count(ExecutionEventType.NODE_START) == 3
    assert types.count(ExecutionEventType.NODE_COMPLETE) == 3
    progress = [event.progress for event in events]
    assert progress == sorted(progress)
    assert events[-1].progress == 100
    assert subscription.closed
    assert runtime.events.is_finished(execution.id)


async def test_late_subscriber_gets_state_not_replay(engine, store, runtime):
    workflow = store.create_workflow(TENANT, "late", _DOC)
    result = await engine.execute_workflow(workflow.id, TENANT, USER, {"topic": "tea"})

    late = runtime.events.subscribe(result.execution_id)
    assert late.closed
    assert await _collect(late) == []

    state = await runtime.events.get_state(result.execution_id, tenant_id=TENANT)
    assert state["status"] == "completed"
    assert state["progress"] == 100
    assert state["nodeStatuses"] == {"in": "success", "ai": "success", "out": "success"}
    assert await runtime.events.get_state(result.execution_id, tenant_id="other-org") is None


async def test_failed_execution_emits_error_terminal(engine, store, runtime, fake_ai):
    fake_ai.fail_with = RuntimeError("quota exceeded")
    workflow = store.create_workflow(TENANT, "failing", _DOC)
    execution = engine.create_execution(workflow.id, TENANT, USER, {"topic": "tea"})
    subscription = runtime.events.subscribe(execution.id)
    consumer = asyncio.create_task(_collect(subscription))

    await engine.execute_workflow(workflow.id, TENANT, USER, {"topic": "tea"}, execution_id=execution.id)
    events = await asyncio.wait_for(consumer, timeout=5)

    assert ExecutionEventType.NODE_ERROR in [event.type for event in events]
    assert events[-1].type == ExecutionEventType.EXECUTION_ERROR
    assert "quota exceeded" in events[-1].error


async def test_slow_subscriber_is_dropped_without_blocking():
    bus = ExecutionEventBus(capacity=1)
    bus.open("exec-1", total_nodes=2)
    slow = bus.subscribe("exec-1")
    for node_id in ("a", "b"):
        await bus.publish(ExecutionEvent(execution_id="exec-1", type=ExecutionEventType.NODE_START, node_id=node_id))

    assert slow.dropped
    assert slow.closed
    assert bus.subscriber_count("exec-1") == 0
    assert await _collect(slow) == []


async def test_events_after_terminal_are_ignored():
    bus = ExecutionEventBus()
    bus.open("exec-2")
    await bus.publish(ExecutionEvent(execution_id="exec-2", type=ExecutionEventType.EXECUTION_COMPLETE, progress=100))
    await bus.publish(ExecutionEvent(execution_id="exec-2", type=ExecutionEventType.NODE_START, node_id="x"))
    state = await bus.get_state("exec-2")
    assert state["status"] == "completed"
    assert state["currentNode"] is None


async def test_state_survives_in_cache_after_prune():
    cache = MemoryStateCache()
    bus = ExecutionEventBus(state_cache=cache)
    bus.open("exec-3", organization_id=TENANT)
    await bus.publish(ExecutionEvent(execution_id="exec-3", type=ExecutionEventType.EXECUTION_ERROR, error="boom"))
    assert bus.prune(0) == 1
    assert not bus.is_finished("exec-3")
    state = await bus.get_state("exec-3", tenant_id=TENANT)
    assert state["status"] == "failed"
    assert state["error"] == "boom"
