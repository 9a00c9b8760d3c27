from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Tuple

from flowkernel.logging import bind_execution, get_logger, log_execution_trace, unbind_execution
from flowkernel.nodes.base import NodeProcessor, NodeServices
from flowkernel.nodes.registry import ProcessorRegistry, build_registry
from flowkernel.service.context import ExecutionContext, NodeResult, NodeStatus, SkipReason
from flowkernel.service.errors import ExecutionTimeoutError, NotFoundError, StructuralError
from flowkernel.service.events import ExecutionEvent, ExecutionEventBus, ExecutionEventType
from flowkernel.service.graph import (
    BRANCHING_TYPES,
    PreparedGraph,
    Subgraph,
    ValidationReport,
    prepare_graph,
    validate_graph,
)
from flowkernel.storage.errors import ConstraintViolation
from flowkernel.storage.models import Execution, ExecutionMode, ExecutionStatus, OutputFile

logger = get_logger(__name__)


@dataclass
class ExecutionResult:
    execution_id: str
    status: ExecutionStatus
    output: Any = None
    error: Optional[str] = None
    duration_ms: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    estimated_cost: float = 0.0
    output_files: List[OutputFile] = field(default_factory=list)
    node_results: List[NodeResult] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "executionId": self.execution_id,
            "status": self.status.value,
            "output": self.output,
            "duration": self.duration_ms,
            "promptTokens": self.prompt_tokens,
            "completionTokens": self.completion_tokens,
            "totalTokens": self.total_tokens,
            "estimatedCost": self.estimated_cost,
            "outputFiles": [f.to_dict() for f in self.output_files],
            "nodeResults": [r.to_dict() for r in self.node_results],
        }
        if self.error is not None:
            payload["error"] = self.error
        return payload


@dataclass
class _Walk:
    """Mutable bookkeeping for one subgraph walk."""

    graph: PreparedGraph
    subgraph: Subgraph
    main: bool
    halted: bool = False


class WorkflowEngine:
    """Graph scheduler: one walk per execution over the prepared graph.

    Nodes are decided once every predecessor is terminal. Edges out of a
    CONDITION/SWITCH are live only for the selected branch, failures make
    their outgoing edges dead, and nodes without a live incoming edge are
    skipped with the reason that killed their inputs.
    """

    def __init__(
        self,
        store,
        services: NodeServices,
        events: ExecutionEventBus,
        *,
        registry: Optional[ProcessorRegistry] = None,
    ) -> None:
        self.store = store
        self.services = services
        self.settings = services.settings
        self.events = events
        self.registry = registry or build_registry(services, self._run_loop_body)
        self._graphs: Dict[str, PreparedGraph] = {}
        self._progress: Dict[str, int] = {}

    # -- public API --------------------------------------------------------

    def validate(self, document: Any) -> ValidationReport:
        return validate_graph(document)

    def load_document(self, workflow_id: str, organization_id: str, mode: ExecutionMode | str):
        workflow = self.store.get_workflow(workflow_id, organization_id)
        if workflow is None:
            raise NotFoundError("workflow not found", detail={"workflow_id": workflow_id})
        return workflow.config_for(mode)

    def create_execution(
        self,
        workflow_id: str,
        organization_id: str,
        user_id: str,
        input: Optional[Dict[str, Any]] = None,
        *,
        mode: ExecutionMode | str = ExecutionMode.PRODUCTION,
    ) -> Execution:
        self.load_document(workflow_id, organization_id, mode)
        return self.store.create_execution(
            workflow_id, organization_id, user_id, input=input or {}, mode=mode
        )

    async def execute_workflow(
        self,
        workflow_id: str,
        organization_id: str,
        user_id: str,
        input: Optional[Dict[str, Any]] = None,
        *,
        mode: ExecutionMode | str = ExecutionMode.PRODUCTION,
        execution_id: Optional[str] = None,
    ) -> ExecutionResult:
        document = self.load_document(workflow_id, organization_id, mode)
        if execution_id:
            execution = self.store.get_execution(execution_id, organization_id)
            if execution is None:
                raise NotFoundError("execution not found", detail={"execution_id": execution_id})
        else:
            execution = self.store.create_execution(
                workflow_id, organization_id, user_id, input=input or {}, mode=mode
            )
        return await self.run_execution(execution, document)

    async def run_execution(self, execution: Execution, document: Any) -> ExecutionResult:
        bind_execution(execution.id, workflow_id=execution.workflow_id)
        started = time.monotonic()
        try:
            try:
                graph = prepare_graph(document)
            except StructuralError as exc:
                return await self._fail_before_start(execution, exc, started)

            try:
                self.store.transition_execution(execution.id, ExecutionStatus.RUNNING)
            except ConstraintViolation as exc:
                return await self._not_started(execution, exc, started)
            context =self._build_context(execution, graph)
            self._graphs[execution.id] = graph
            self._progress[execution.id] = 0
            self.events.open(
                execution.id,
                total_nodes=len(graph.main.order),
                organization_id=execution.organization_id,
            )
            logger.info("workflow_execution_started", nodes=len(graph.nodes))
            timeout = graph.settings.timeout
            timeout_error: Optional[ExecutionTimeoutError] = None
            try:
                await asyncio.wait_for(
                    self._walk(_Walk(graph, graph.main, main=True), context), timeout=timeout
                )
            except asyncio.TimeoutError:
                timeout_error = ExecutionTimeoutError(
                    f"execution exceeded its {timeout:g}s timeout",
                    detail={"timeout_seconds": timeout},
                )
                logger.warning("workflow_execution_timeout", timeout_seconds=timeout)
            return await self._finish(execution, graph, context, started, timeout_error)
        finally:
            self._graphs.pop(execution.id, None)
            self._progress.pop(execution.id, None)
            unbind_execution("workflow_id")

    # -- walk --------------------------------------------------------------

    def _build_context(self, execution: Execution, graph: PreparedGraph) -> ExecutionContext:
        context = ExecutionContext(
            execution.id,
            workflow_id=execution.workflow_id,
            organization_id=execution.organization_id,
            user_id=execution.user_id,
            input=execution.input,
            global_variables=graph.document.global_variables,
            node_names=graph.name_index,
        )
        cap = self.settings.max_loop_iterations
        configured = graph.settings.max_loop_iterations
        context.max_loop_iterations = min(configured, cap) if configured else cap
        return context

    async def _walk(self, walk: _Walk, context: ExecutionContext) -> None:
        settings = walk.graph.settings
        parallel = settings.enable_parallel_execution
        limit = settings.max_parallel_nodes or self.settings.max_parallel_nodes
        semaphore = asyncio.Semaphore(max(1, limit))
        pending = list(walk.subgraph.order)

        while pending:
            ready = [
                node_id
                for node_id in pending
                if all(p in context.node_results for p in walk.subgraph.predecessors(node_id))
            ]
            if not ready:
                # order is topological, so this only happens on a bookkeeping bug
                raise RuntimeError(f"no schedulable node among {pending}")
            batch = ready if parallel else ready[:1]
            to_run: List[str] = []
            for node_id in batch:
                pending.remove(node_id)
                runnable, reason = self._decide(walk, node_id, context)
                if runnable:
                    to_run.append(node_id)
                else:
                    await self._skip(walk, node_id, context, reason)
            if not to_run:
                continue
            if len(to_run) == 1:
                await self._dispatch(walk, to_run[0], context)
            else:
                async def _bounded(node_id: str) -> None:
                    async with semaphore:
                        await self._dispatch(walk, node_id, context)

                await asyncio.gather(*(_bounded(node_id) for node_id in to_run))

    def _decide(self, walk: _Walk, node_id: str, context: ExecutionContext) -> Tuple[bool, Optional[SkipReason]]:
        if walk.halted:
            return False, SkipReason.EXECUTION_HALTED
        incoming = walk.subgraph.incoming.get(node_id, [])
        if not incoming:
            return True, None
        failed_upstream = False
        for edge in incoming:
            result = context.node_results.get(edge.source)
            if self._edge_live(walk.graph, edge, result):
                return True, None
            if result is not None and (
                (result.status == NodeStatus.ERROR and not result.best_effort)
                or result.skip_reason in (SkipReason.UPSTREAM_FAILED.value, SkipReason.EXECUTION_HALTED.value)
            ):
                failed_upstream = True
        return False, SkipReason.UPSTREAM_FAILED if failed_upstream else SkipReason.BRANCH_NOT_TAKEN

    @staticmethod
    def _accepted_labels(result: NodeResult) -> Set[str]:
        labels = {result.branch} if result.branch is not None else set()
        if result.branch == "default" and result.data.get("matchedCase"):
            labels.add(result.data["matchedCase"])
        return labels

    def _edge_live(self, graph: PreparedGraph, edge, result: Optional[NodeResult]) -> bool:
        if result is None:
            return False
        if result.status == NodeStatus.ERROR:
            return result.best_effort
        if result.status != NodeStatus.SUCCESS:
            return False
        if graph.node(edge.source).kind not in BRANCHING_TYPES or edge.source_handle is None:
            return True
        return edge.source_handle in self._accepted_labels(result)

    async def _skip(
        self, walk: _Walk, node_id: str, context: ExecutionContext, reason: Optional[SkipReason]
    ) -> None:
        node = walk.graph.node(node_id)
        result = NodeResult(
            node_id=node.id,
            node_name=node.label,
            node_type=node.kind,
            status=NodeStatus.SKIPPED,
            skip_reason=reason.value if reason else None,
        )
        context.record_result(result)
        logger.debug("workflow_node_skipped", node=node_id, reason=result.skip_reason)
        await self._emit_node(walk, context, result, ExecutionEventType.NODE_COMPLETE)

    async def _dispatch(self, walk: _Walk, node_id: str, context: ExecutionContext) -> None:
        node = walk.graph.node(node_id)
        await self.events.publish(
            ExecutionEvent(
                execution_id=context.execution_id,
                type=ExecutionEventType.NODE_START,
                node_id=node.id,
                node_name=node.label,
                node_type=node.kind,
                status="running",
                iteration=context.iteration,
                **self._progress_fields(walk, context),
            )
        )
        processor = self.registry.get(node.kind)
        upstream = walk.subgraph.predecessors(node_id)
        if processor is None:
            result = NodeProcessor.error(node, f"no processor registered for node type {node.kind}")
        elif node.kind == "LOOP":
            result = await processor.process(node, context, upstream=upstream)
        else:
            timeout = self.settings.node_timeout_seconds
            started = time.monotonic()
            try:
                result = await asyncio.wait_for(
                    processor.process(node, context, upstream=upstream), timeout=timeout
                )
            except asyncio.TimeoutError:
                logger.warning("workflow_node_timeout", node=node_id, timeout_seconds=timeout)
                result = processor.error(node, f"node timed out after {timeout:g}s")
                result.duration_ms = int((time.monotonic() - started) * 1000)
        context.record_result(result)

        if result.status == NodeStatus.ERROR and walk.main and not result.best_effort:
            if walk.graph.settings.error_strategy == "fail_fast" and node_id in walk.graph.required:
                walk.halted = True
                logger.warning("workflow_execution_halted", node=node_id)
        event_type = ExecutionEventType.NODE_COMPLETE if result.succeeded else ExecutionEventType.NODE_ERROR
        await self._emit_node(walk, context, result, event_type)

    async def _run_loop_body(self, loop_node, scope: ExecutionContext) -> None:
        graph = self._graphs.get(scope.execution_id)
        if graph is None:
            raise RuntimeError(f"no active graph for execution {scope.execution_id}")
        body = graph.loop_bodies.get(loop_node.id)
        if body is None or not body.order:
            return
        await self._walk(_Walk(graph, body, main=False), scope)

    # -- events ------------------------------------------------------------

    def _progress_fields(self, walk: _Walk, context: ExecutionContext) -> Dict[str, int]:
        total = len(walk.graph.main.order)
        completed = self._progress.get(context.execution_id, 0)
        return {
            "progress": _percent(completed, total),
            "completed_nodes": completed,
            "total_nodes": total,
        }

    async def _emit_node(
        self,
        walk: _Walk,
        context: ExecutionContext,
        result: NodeResult,
        event_type: ExecutionEventType,
    ) -> None:
        if walk.main:
            self._progress[context.execution_id] = self._progress.get(context.execution_id, 0) + 1
        await self.events.publish(
            ExecutionEvent(
                execution_id=context.execution_id,
                type=event_type,
                node_id=result.node_id,
                node_name=result.node_name,
                node_type=result.node_type,
                status=result.status.value,
                error=result.error,
                output=result.data if result.succeeded else None,
                iteration=context.iteration,
                **self._progress_fields(walk, context),
            )
        )

    # -- completion --------------------------------------------------------

    def _targets(self, graph: PreparedGraph) -> List[str]:
        outputs = graph.output_nodes()
        if outputs:
            return outputs
        main = graph.main
        return [
            node_id
            for node_id in main.order
            if not main.outgoing.get(node_id) and graph.node(node_id).kind != "NOTIFICATION"
        ]

    def _root_cause(self, graph: PreparedGraph, context: ExecutionContext, target: str) -> str:
        candidates = graph.main.ancestors(target) | {target}
        for node_id in graph.main.order:
            result = context.node_results.get(node_id)
            if node_id in candidates and result and result.status == NodeStatus.ERROR and not result.best_effort:
                return f"node '{result.node_name}' failed: {result.error}"
        result = context.node_results.get(target)
        name = result.node_name if result else target
        return f"node '{name}' did not run: upstream failed"

    def _conclude(self, graph: PreparedGraph, context: ExecutionContext) -> Tuple[ExecutionStatus, Optional[str], Any]:
        targets = self._targets(graph)
        failing: List[str] = []
        for node_id in targets:
            result = context.node_results.get(node_id)
            if result is None:
                continue
            if result.status == NodeStatus.ERROR:
                failing.append(node_id)
            elif result.status == NodeStatus.SKIPPED and result.skip_reason in (
                SkipReason.UPSTREAM_FAILED.value,
                SkipReason.EXECUTION_HALTED.value,
            ):
                failing.append(node_id)

        succeeded = [
            context.node_results[node_id]
            for node_id in targets
            if node_id in context.node_results and context.node_results[node_id].succeeded
        ]
        if len(succeeded) == 1 and graph.output_nodes():
            output: Any = succeeded[0].data
        elif succeeded:
            output = {result.node_name: result.data for result in succeeded}
        else:
            output = None

        if failing:
            return ExecutionStatus.FAILED, self._root_cause(graph, context, failing[0]), output
        return ExecutionStatus.COMPLETED, None, output

    async def _finish(
        self,
        execution: Execution,
        graph: PreparedGraph,
        context: ExecutionContext,
        started: float,
        timeout_error: Optional[ExecutionTimeoutError],
    ) -> ExecutionResult:
        status, error, output = self._conclude(graph, context)
        if timeout_error is not None:
            status, error = ExecutionStatus.FAILED, timeout_error.message
        duration_ms = int((time.monotonic() - started) * 1000)
        usage = context.usage

        for output_file in context.output_files:
            try:
                self.store.add_output_file(output_file)
            except ConstraintViolation as exc:
                logger.warning("workflow_output_file_not_recorded", file=output_file.file_name, error=exc.message)
        try:
            self.store.transition_execution(
                execution.id,
                status,
                output=output,
                error=error,
                duration_ms=duration_ms,
                prompt_tokens=usage.prompt_tokens,
                completion_tokens=usage.completion_tokens,
                total_tokens=usage.total_tokens,
                estimated_cost=round(usage.estimated_cost, 6),
            )
        except ConstraintViolation as exc:
            logger.warning("workflow_execution_state_conflict", error=exc.message, detail=exc.detail)
            stored = self.store.get_execution(execution.id)
            if stored is not None and stored.status.is_terminal:
                # another writer finished the record first; report what it stored
                status, error, output = stored.status, stored.error, stored.output

        results =[context.node_results[node_id] for node_id in graph.main.order if node_id in context.node_results]
        log_execution_trace(
            execution.id,
            [{"node": r.node_id, "status": r.status.value, "duration_ms": r.duration_ms} for r in results],
            logger=logger,
        )
        terminal = (
            ExecutionEventType.EXECUTION_COMPLETE
            if status == ExecutionStatus.COMPLETED
            else ExecutionEventType.EXECUTION_ERROR
        )
        total = len(graph.main.order)
        completed = self._progress.get(execution.id, 0)
        await self.events.publish(
            ExecutionEvent(
                execution_id=execution.id,
                type=terminal,
                status=status.value,
                error=error,
                output=output if status == ExecutionStatus.COMPLETED else None,
                progress=_percent(completed, total),
                completed_nodes=completed,
                total_nodes=total,
            )
        )
        logger.info(
            "workflow_execution_finished",
            status=status.value,
            duration_ms=duration_ms,
            total_tokens=usage.total_tokens,
        )
        return ExecutionResult(
            execution_id=execution.id,
            status=status,
            output=output,
            error=error,
            duration_ms=duration_ms,
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
            total_tokens=usage.total_tokens,
            estimated_cost=round(usage.estimated_cost, 6),
            output_files=list(context.output_files),
            node_results=results,
        )

    async def _not_started(
        self, execution: Execution, exc: ConstraintViolation, started: float
    ) -> ExecutionResult:
        """The record left PENDING before this run claimed it, usually through a sweep."""
        stored = self.store.get_execution(execution.id) or execution
        logger.warning(
            "workflow_execution_not_started",
            stored_status=stored.status.value,
            error=exc.message,
        )
        if stored.status.is_terminal:
            self.events.open(execution.id, organization_id=execution.organization_id)
            await self.events.publish(
                ExecutionEvent(
                    execution_id=execution.id,
                    type=(
                        ExecutionEventType.EXECUTION_COMPLETE
                        if stored.status == ExecutionStatus.COMPLETED
                        else ExecutionEventType.EXECUTION_ERROR
                    ),
                    status=stored.status.value,
                    error=stored.error,
                )
            )
        return ExecutionResult(
            execution_id=execution.id,
            status=stored.status,
            output=stored.output,
            error=stored.error or exc.message,
            duration_ms=int((time.monotonic() - started) * 1000),
        )

    async def _fail_before_start(
        self, execution: Execution, exc: StructuralError, started: float
    ) -> ExecutionResult:
        problems = exc.detail.get("errors") or []
        error = exc.message + (": " + "; ".join(problems) if problems else "")
        duration_ms = int((time.monotonic() - started) * 1000)
        logger.warning("workflow_structure_invalid", errors=problems)
        try:
            self.store.transition_execution(
                execution.id, ExecutionStatus.FAILED, error=error, duration_ms=duration_ms
            )
        except ConstraintViolation as conflict:
            logger.warning("workflow_execution_state_conflict", error=conflict.message)
        self.events.open(execution.id, organization_id=execution.organization_id)
        await self.events.publish(
            ExecutionEvent(
                execution_id=execution.id,
                type=ExecutionEventType.EXECUTION_ERROR,
                status=ExecutionStatus.FAILED.value,
                error=error,
            )
        )
        return ExecutionResult(
            execution_id=execution.id,
            status=ExecutionStatus.FAILED,
            error=error,
            duration_ms=duration_ms,
        )


def _percent(completed: int, total: int) -> int:
    if total <= 0:
        return 100
    return int(completed * 100 / total + 0.5)
