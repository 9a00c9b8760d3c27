from __future__ import annotations

import json
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import APIRouter, Depends, Header, Query, Request
from fastapi.responses import StreamingResponse

from flowkernel.api.schemas import (
    CleanupRequest,
    EnqueueRequest,
    Envelope,
    ExecuteRequest,
    WorkflowCreateRequest,
    WorkflowDraftRequest,
)
from flowkernel.logging import get_logger, sanitize_error_message, sanitize_response_data
from flowkernel.service.errors import NotFoundError, ValidationError
from flowkernel.service.runtime import EngineRuntime
from flowkernel.storage.models import Workflow

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


class Identity:
    def __init__(self, tenant_id: str, user_id: str) -> None:
        self.tenant_id = tenant_id
        self.user_id = user_id


def get_engine_runtime(request: Request) -> EngineRuntime:
    return request.app.state.runtime


def get_identity(
    x_tenant_id: Optional[str] = Header(default=None, alias="X-Tenant-ID"),
    x_user_id: Optional[str] = Header(default=None, alias="X-User-ID"),
) -> Identity:
    if not x_tenant_id or not x_tenant_id.strip():
        raise ValidationError("X-Tenant-ID header is required")
    return Identity(x_tenant_id.strip(), (x_user_id or "").strip() or "anonymous")


def _workflow_payload(workflow: Workflow) -> Dict[str, Any]:
    return {
        "id": workflow.id,
        "organizationId": workflow.organization_id,
        "name": workflow.name,
        "description": workflow.description,
        "version": workflow.version,
        "draftConfig": workflow.draft_config,
        "publishedConfig": workflow.published_config,
        "publishedAt": workflow.published_at.isoformat() if workflow.published_at else None,
        "createdAt": workflow.created_at.isoformat(),
        "updatedAt": workflow.updated_at.isoformat(),
    }


def _require_workflow(runtime: EngineRuntime, workflow_id: str, tenant_id: str) -> Workflow:
    workflow = runtime.store.get_workflow(workflow_id, tenant_id)
    if workflow is None:
        raise NotFoundError("workflow not found", detail={"workflow_id": workflow_id})
    return workflow


def _require_execution(runtime: EngineRuntime, execution_id: str, tenant_id: str):
    execution = runtime.store.get_execution(execution_id, tenant_id)
    if execution is None:
        raise NotFoundError("execution not found", detail={"execution_id": execution_id})
    return execution


# -- workflows --------------------------------------------------------------


@router.post("/workflows", response_model=Envelope, status_code=201, tags=["workflows"])
async def create_workflow(
    body: WorkflowCreateRequest,
    runtime: EngineRuntime = Depends(get_engine_runtime),
    identity: Identity = Depends(get_identity),
):
    workflow = runtime.store.create_workflow(
        identity.tenant_id,
        body.name,
        body.config,
        description=body.description,
        created_by=identity.user_id,
    )
    logger.info("workflow_created", workflow_id=workflow.id, tenant_id=identity.tenant_id)
    return Envelope(status="ok", data=_workflow_payload(workflow))


@router.get("/workflows/{workflow_id}", response_model=Envelope, tags=["workflows"])
async def get_workflow(
    workflow_id: str,
    runtime: EngineRuntime = Depends(get_engine_runtime),
    identity: Identity = Depends(get_identity),
):
    workflow = _require_workflow(runtime, workflow_id, identity.tenant_id)
    return Envelope(status="ok", data=_workflow_payload(workflow))


@router.put("/workflows/{workflow_id}/draft", response_model=Envelope, tags=["workflows"])
async def update_workflow_draft(
    workflow_id: str,
    body: WorkflowDraftRequest,
    runtime: EngineRuntime = Depends(get_engine_runtime),
    identity: Identity = Depends(get_identity),
):
    _require_workflow(runtime, workflow_id, identity.tenant_id)
    workflow = runtime.store.update_workflow_draft(
        workflow_id, body.config, organization_id=identity.tenant_id
    )
    return Envelope(status="ok", data=_workflow_payload(workflow))


@router.post("/workflows/{workflow_id}/publish", response_model=Envelope, tags=["workflows"])
async def publish_workflow(
    workflow_id: str,
    runtime: EngineRuntime = Depends(get_engine_runtime),
    identity: Identity = Depends(get_identity),
):
    """Publish the current draft after a structural check.

    A draft with structural errors cannot be published.
    """
    workflow = _require_workflow(runtime, workflow_id, identity.tenant_id)
    report = runtime.engine.validate(workflow.draft_config)
    if not report.valid:
        raise ValidationError("workflow draft is invalid", detail=report.to_dict())
    workflow = runtime.store.publish_workflow(workflow_id, organization_id=identity.tenant_id)
    logger.info("workflow_published", workflow_id=workflow_id, version=workflow.version)
    return Envelope(status="ok", data=_workflow_payload(workflow))


@router.post("/workflows/{workflow_id}/validate", response_model=Envelope, tags=["workflows"])
async def validate_workflow(
    workflow_id: str,
    mode: str = Query(default="draft", pattern="^(production|draft)$"),
    runtime: EngineRuntime = Depends(get_engine_runtime),
    identity: Identity = Depends(get_identity),
):
    workflow = _require_workflow(runtime, workflow_id, identity.tenant_id)
    report = runtime.engine.validate(workflow.config_for(mode))
    return Envelope(status="ok", data=report.to_dict())


# -- execution ----------------------------------------------------------------


@router.post("/workflows/{workflow_id}/execute", response_model=Envelope, tags=["executions"])
async def execute_workflow(
    workflow_id: str,
    body: ExecuteRequest,
    runtime: EngineRuntime = Depends(get_engine_runtime),
    identity: Identity = Depends(get_identity),
):
    """Run a workflow and wait for its result.

    Raises:
        404: Unknown workflow
        504: The run did not finish in time; it keeps running and its record
            can be polled with the execution id in the error details
    """
    result = await runtime.queue.execute_sync(
        workflow_id,
        identity.tenant_id,
        identity.user_id,
        body.input,
        mode=body.mode,
        timeout=body.timeout_seconds or runtime.settings.sync_execution_timeout_seconds,
    )
    payload = result.to_dict()
    if payload.get("error"):
        payload["error"] = sanitize_error_message(payload["error"])
    return Envelope(status="ok", data=payload)


@router.post("/workflows/{workflow_id}/enqueue", response_model=Envelope, status_code=202, tags=["executions"])
async def enqueue_workflow(
    workflow_id: str,
    body: EnqueueRequest,
    runtime: EngineRuntime = Depends(get_engine_runtime),
    identity: Identity = Depends(get_identity),
):
    _require_workflow(runtime, workflow_id, identity.tenant_id)
    task_id = runtime.queue.enqueue(
        workflow_id, identity.tenant_id, identity.user_id, body.input, mode=body.mode
    )
    return Envelope(status="ok", data={"taskId": task_id})


@router.get("/tasks/{task_id}", response_model=Envelope, tags=["queue"])
async def get_task(
    task_id: str,
    runtime: EngineRuntime = Depends(get_engine_runtime),
    identity: Identity = Depends(get_identity),
):
    details = sanitize_response_data(runtime.queue.get_task_with_details(task_id, identity.tenant_id))
    if details.get("error"):
        details["error"] = sanitize_error_message(details["error"])
    return Envelope(status="ok", data=details)


@router.post("/tasks/{task_id}/cancel", response_model=Envelope, tags=["queue"])
async def cancel_task(
    task_id: str,
    runtime: EngineRuntime = Depends(get_engine_runtime),
    identity: Identity = Depends(get_identity),
):
    task = runtime.queue.get_task(task_id)
    if task is None or task.organization_id != identity.tenant_id:
        raise NotFoundError("task not found", detail={"task_id": task_id})
    cancelled = runtime.queue.cancel_task(task_id)
    return Envelope(status="ok", data={"taskId": task_id, "cancelled": cancelled})


@router.get("/queue/status", response_model=Envelope, tags=["queue"])
async def queue_status(runtime: EngineRuntime = Depends(get_engine_runtime)):
    return Envelope(status="ok", data=runtime.queue.get_queue_status())


@router.get("/executions/{execution_id}", response_model=Envelope, tags=["executions"])
async def get_execution(
    execution_id: str,
    runtime: EngineRuntime = Depends(get_engine_runtime),
    identity: Identity = Depends(get_identity),
):
    execution = _require_execution(runtime, execution_id, identity.tenant_id)
    payload = sanitize_response_data(execution.to_dict())
    payload["outputFiles"] = [f.to_dict() for f in runtime.store.list_output_files(execution_id)]
    return Envelope(status="ok", data=payload)


@router.get("/executions/{execution_id}/state", response_model=Envelope, tags=["executions"])
async def get_execution_state(
    execution_id: str,
    runtime: EngineRuntime = Depends(get_engine_runtime),
    identity: Identity = Depends(get_identity),
):
    execution = _require_execution(runtime, execution_id, identity.tenant_id)
    state = await runtime.events.get_state(execution_id, tenant_id=identity.tenant_id)
    if state is None:
        # No live channel: report what the persisted record knows
        state = {
            "executionId": execution_id,
            "status": execution.status.value.lower(),
            "progress": 100 if execution.status.is_terminal else 0,
            "error": execution.error,
        }
    return Envelope(status="ok", data=state)


def _sse(event: str, payload: Dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(payload, ensure_ascii=False, default=str)}\n\n"


@router.get("/executions/{execution_id}/stream", tags=["executions"])
async def stream_execution(
    execution_id: str,
    runtime: EngineRuntime = Depends(get_engine_runtime),
    identity: Identity = Depends(get_identity),
):
    """Server-Sent Events feed of node and run events.

    Past events are not replayed: the stream opens with a ``state`` snapshot
    and closes after the terminal event. Finished executions get the snapshot
    only.
    """
    execution = _require_execution(runtime, execution_id, identity.tenant_id)
    subscription = runtime.events.subscribe(
        execution_id, already_finished=execution.status.is_terminal
    )

    async def _events() -> AsyncIterator[str]:
        try:
            state = await runtime.events.get_state(execution_id, tenant_id=identity.tenant_id)
            if state is not None:
                yield _sse("state", state)
            async for event in subscription:
                yield _sse(event.type.value, event.to_dict())
            if subscription.dropped:
                yield _sse("dropped", {"executionId": execution_id, "reason": "subscriber too slow"})
        finally:
            runtime.events.unsubscribe(subscription)

    return StreamingResponse(
        _events(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.post("/executions/cleanup", response_model=Envelope, tags=["executions"])
async def cleanup_executions(
    body: Optional[CleanupRequest] = None,
    runtime: EngineRuntime = Depends(get_engine_runtime),
    identity: Identity = Depends(get_identity),
):
    """Fail this tenant's executions stuck in RUNNING or PENDING."""
    body = body or CleanupRequest()
    if body.force:
        threshold = None
    elif body.threshold_minutes is not None:
        threshold = body.threshold_minutes
    else:
        threshold = runtime.settings.stuck_execution_threshold_minutes
    report = await runtime.reconcile(stale_after_minutes=threshold, organization_id=identity.tenant_id)
    return Envelope(status="ok", data=report.to_dict())
