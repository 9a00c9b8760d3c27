from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from flowkernel.service.variables import find_unresolved, lookup, resolve_template, resolve_value
from flowkernel.storage.models import OutputFile


class NodeStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    SKIPPED = "skipped"


class SkipReason(str, Enum):
    BRANCH_NOT_TAKEN = "branch_not_taken"
    UPSTREAM_FAILED = "upstream_failed"
    EXECUTION_HALTED = "execution_halted"


@dataclass
class NodeResult:
    """Outcome of one node dispatch.

    ``data`` of an error result is kept for diagnosis only; it never feeds
    variable resolution downstream.
    """

    node_id: str
    node_name: str
    node_type: str
    status: NodeStatus
    data: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    duration_ms: int = 0
    branch: Optional[str] = None
    skip_reason: Optional[str] = None
    model: Optional[str] = None
    prompt_tokens: int = 0
    completion_tokens: int = 0
    # error that leaves outgoing edges live (best-effort notifications)
    best_effort: bool = False

    @property
    def succeeded(self) -> bool:
        return self.status == NodeStatus.SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "nodeId": self.node_id,
            "nodeName": self.node_name,
            "nodeType": self.node_type,
            "status": self.status.value,
            "data": self.data,
            "duration": self.duration_ms,
        }
        if self.error is not None:
            payload["error"] = self.error
        if self.branch is not None:
            payload["branch"] = self.branch
        if self.skip_reason is not None:
            payload["skipReason"] = self.skip_reason
        if self.model:
            payload["model"] = self.model
            payload["promptTokens"] = self.prompt_tokens
            payload["completionTokens"] = self.completion_tokens
        return payload


@dataclass
class TokenUsage:
    """Running token and cost totals; they only ever grow."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    estimated_cost: float = 0.0

    def add(self, prompt_tokens: int = 0, completion_tokens: int = 0, cost: float = 0.0) -> None:
        prompt = max(0, int(prompt_tokens or 0))
        completion = max(0, int(completion_tokens or 0))
        self.prompt_tokens += prompt
        self.completion_tokens += completion
        self.total_tokens += prompt + completion
        self.estimated_cost += max(0.0, float(cost or 0.0))


@dataclass(frozen=True)
class ScopeMatch:
    kind: str
    value: Any


class ExecutionContext:
    """Per-run state owned by the scheduler; never shared between runs."""

    def __init__(
        self,
        execution_id: str,
        *,
        workflow_id: str = "",
        organization_id: str = "",
        user_id: str = "",
        input: Optional[Dict[str, Any]] = None,
        global_variables: Optional[Dict[str, Any]] = None,
        node_names: Optional[Dict[str, str]] = None,
    ) -> None:
        self.execution_id = execution_id
        self.workflow_id = workflow_id
        self.organization_id = organization_id
        self.user_id = user_id
        self.input: Dict[str, Any] = dict(input or {})
        self.node_names: Dict[str, str] = dict(node_names or {})
        self.node_outputs: Dict[str, Dict[str, Any]] = {}
        self.node_results: Dict[str, NodeResult] = {}
        self.global_variables: Dict[str, Any] = dict(global_variables or {})
        self.global_variables.update(self.input)
        self.global_variables["triggerInput"] = self.input
        self.ai_configs: Dict[str, Any] = {}
        self.usage = TokenUsage()
        self.output_files: List[OutputFile] = []
        self.loop_variables: Dict[str, Any] = {}
        self.iteration: Optional[int] = None
        self.parent: Optional[ExecutionContext] = None
        self.max_loop_iterations: Optional[int] = None

    def iteration_scope(self, loop_variables: Dict[str, Any], iteration: int) -> "ExecutionContext":
        """Child view for one loop iteration.

        Body results land in the child only; totals, globals, provider cache
        and files are shared with the parent.
        """
        child = ExecutionContext.__new__(ExecutionContext)
        child.execution_id = self.execution_id
        child.workflow_id = self.workflow_id
        child.organization_id = self.organization_id
        child.user_id = self.user_id
        child.input = self.input
        child.node_names = self.node_names
        child.node_outputs = {}
        child.node_results = {}
        child.global_variables = self.global_variables
        child.ai_configs = self.ai_configs
        child.usage = self.usage
        child.output_files = self.output_files
        child.loop_variables = dict(loop_variables)
        child.iteration = iteration
        child.parent = self
        child.max_loop_iterations = self.max_loop_iterations
        return child

    def record_result(self, result: NodeResult) -> None:
        if result.node_id in self.node_results:
            raise ValueError(f"node {result.node_id} already has a result")
        self.node_results[result.node_id] = result
        if result.status == NodeStatus.SUCCESS:
            self.node_outputs[result.node_id] = result.data

    def get_result(self, node_id: str) -> Optional[NodeResult]:
        if node_id in self.node_results:
            return self.node_results[node_id]
        return self.parent.get_result(node_id) if self.parent else None

    def get_output(self, node_id: str) -> Optional[Dict[str, Any]]:
        if node_id in self.node_outputs:
            return self.node_outputs[node_id]
        return self.parent.get_output(node_id) if self.parent else None

    def lookup_root(self, name: str) -> Optional[ScopeMatch]:
        if name in self.loop_variables:
            return ScopeMatch("loop", self.loop_variables[name])
        node_id = self.node_names.get(name)
        if node_id is not None:
            output = self.get_output(node_id)
            if output is not None:
                return ScopeMatch("node", output)
        output = self.get_output(name)
        if output is not None:
            return ScopeMatch("node", output)
        if self.parent is not None:
            parent_match = self.parent.lookup_root(name)
            if parent_match is not None:
                return parent_match
        if name in self.global_variables:
            return ScopeMatch("global", self.global_variables[name])
        return None

    def resolve(self, template: Any) -> Any:
        return resolve_template(template, self)

    def resolve_value(self, value: Any) -> Any:
        return resolve_value(value, self)

    def lookup(self, reference: str):
        return lookup(reference, self)

    def unresolved(self, template: Any) -> List[str]:
        return find_unresolved(template, self)

    def add_usage(self, prompt_tokens: int = 0, completion_tokens: int = 0, cost: float = 0.0) -> None:
        self.usage.add(prompt_tokens, completion_tokens, cost)

    def successful_outputs(self) -> Dict[str, Dict[str, Any]]:
        """Outputs keyed by node name, in completion order."""
        names = {node_id: name for name, node_id in self.node_names.items()}
        return {
            names.get(node_id, node_id): data for node_id, data in self.node_outputs.items()
        }

    def template_namespace(self) -> Dict[str, Any]:
        """Names exposed to sandboxed expressions."""
        return {
            "input": self.input,
            "vars": dict(self.global_variables),
            "nodes": self.successful_outputs(),
            "loop": self.loop_variables.get("loop", {}),
        }
