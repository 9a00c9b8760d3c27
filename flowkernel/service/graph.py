"""Graph preparation: validate, flatten groups, collapse loop bodies, order.

Preparation is a pure function of the workflow document. It runs before any
node executes; every hard violation surfaces as a StructuralError.
"""

from __future__ import annotations

import heapq
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from pydantic import ValidationError as PydanticValidationError

from flowkernel.nodes.config import WorkflowDocument, WorkflowEdge
from flowkernel.service.document_validation import document_errors
from flowkernel.service.errors import StructuralError
from flowkernel.service.variables import collect_references

BRANCHING_TYPES = ("CONDITION", "SWITCH")
ENTRY_TYPES = ("INPUT", "TRIGGER")


@dataclass
class Subgraph:
    """Ordered node ids plus the edges among them."""

    order: List[str]
    edges: List[WorkflowEdge]
    incoming: Dict[str, List[WorkflowEdge]] = field(default_factory=dict)
    outgoing: Dict[str, List[WorkflowEdge]] = field(default_factory=dict)

    @classmethod
    def build(cls, order: List[str], edges: List[WorkflowEdge]) -> "Subgraph":
        incoming: Dict[str, List[WorkflowEdge]] = {node_id: [] for node_id in order}
        outgoing: Dict[str, List[WorkflowEdge]] = {node_id: [] for node_id in order}
        for edge in edges:
            outgoing[edge.source].append(edge)
            incoming[edge.target].append(edge)
        return cls(order=order, edges=edges, incoming=incoming, outgoing=outgoing)

    def predecessors(self, node_id: str) -> List[str]:
        seen: List[str] = []
        for edge in self.incoming.get(node_id, []):
            if edge.source not in seen:
                seen.append(edge.source)
        return seen

    def ancestors(self, node_id: str) -> Set[str]:
        found: Set[str] = set()
        queue = deque(self.predecessors(node_id))
        while queue:
            current = queue.popleft()
            if current in found:
                continue
            found.add(current)
            queue.extend(self.predecessors(current))
        return found


@dataclass
class PreparedGraph:
    document: WorkflowDocument
    nodes: Dict[str, Any]
    main: Subgraph
    loop_bodies: Dict[str, Subgraph]
    body_owner: Dict[str, str]
    name_index: Dict[str, str]
    required: Set[str]

    @property
    def settings(self):
        return self.document.settings

    def node(self, node_id: str):
        return self.nodes[node_id]

    def subgraph_for(self, node_id: str) -> Subgraph:
        owner = self.body_owner.get(node_id)
        return self.loop_bodies[owner] if owner else self.main

    def output_nodes(self) -> List[str]:
        return [nid for nid in self.main.order if self.nodes[nid].kind == "OUTPUT"]


# -- parsing ---------------------------------------------------------------


def _format_pydantic_error(error: Dict[str, Any], document: Dict[str, Any]) -> str:
    loc = list(error.get("loc", ()))
    # Point at the node id rather than its list index
    if len(loc) >= 2 and loc[0] == "nodes" and isinstance(loc[1], int):
        try:
            node_id = document["nodes"][loc[1]].get("id", loc[1])
        except (IndexError, KeyError, AttributeError, TypeError):
            node_id = loc[1]
        # discriminated unions add the tag to the location
        rest = [str(part) for part in loc[2:] if not (isinstance(part, str) and part.isupper())]
        return f"node {node_id}: {'.'.join(rest) or 'node'}: {error.get('msg')}"
    return f"{'.'.join(str(part) for part in loc)}: {error.get('msg')}"


def parse_document(raw: Any) -> WorkflowDocument:
    """Validate a raw document against the JSON schema and the node models."""
    if isinstance(raw, WorkflowDocument):
        return raw
    errors = document_errors(raw)
    if errors:
        raise StructuralError("workflow document is invalid", detail={"errors": errors})
    try:
        return WorkflowDocument.model_validate(raw)
    except PydanticValidationError as exc:
        messages = [_format_pydantic_error(err, raw) for err in exc.errors()]
        raise StructuralError(
            "workflow node configuration is invalid", detail={"errors": messages}
        ) from exc


# -- structural checks ------------------------------------------------------


def _check_structure(document: WorkflowDocument) -> None:
    problems: List[str] = []
    by_id: Dict[str, Any] = {}
    for node in document.nodes:
        if node.id in by_id:
            problems.append(f"duplicate node id {node.id!r}")
            continue
        by_id[node.id] = node

    for edge in document.edges:
        for end in (edge.source, edge.target):
            if end not in by_id:
                problems.append(f"edge {edge.source}->{edge.target} references unknown node {end!r}")
        if edge.source == edge.target:
            problems.append(f"edge {edge.source}->{edge.target} is a self-loop")

    group_of: Dict[str, str] = {}
    for node in document.nodes:
        if node.kind != "GROUP":
            continue
        for child_id in node.config.child_node_ids:
            child = by_id.get(child_id)
            if child is None:
                problems.append(f"group {node.id!r} references unknown child {child_id!r}")
            elif child.kind == "GROUP":
                problems.append(f"group {node.id!r} contains nested group {child_id!r}")
            elif child_id in group_of:
                problems.append(
                    f"node {child_id!r} belongs to groups {group_of[child_id]!r} and {node.id!r}"
                )
            else:
                group_of[child_id] = node.id

    loop_of: Dict[str, str] = {}
    for node in document.nodes:
        if node.kind != "LOOP":
            continue
        for body_id in node.config.body_node_ids:
            body = by_id.get(body_id)
            if body is None:
                problems.append(f"loop {node.id!r} references unknown body node {body_id!r}")
            elif body_id == node.id:
                problems.append(f"loop {node.id!r} lists itself as a body node")
            elif body.kind in ("LOOP", "GROUP"):
                problems.append(f"loop {node.id!r} body contains {body.kind} node {body_id!r}")
            elif body_id in loop_of:
                problems.append(
                    f"node {body_id!r} belongs to loops {loop_of[body_id]!r} and {node.id!r}"
                )
            else:
                loop_of[body_id] = node.id

    if problems:
        raise StructuralError("workflow graph is invalid", detail={"errors": problems})


# -- transformation ----------------------------------------------------------


def _dedupe(edges: Iterable[WorkflowEdge]) -> List[WorkflowEdge]:
    seen: Set[Tuple[str, str, Optional[str]]] = set()
    unique: List[WorkflowEdge] = []
    for edge in edges:
        key = (edge.source, edge.target, edge.source_handle)
        if key in seen or edge.source == edge.target:
            continue
        seen.add(key)
        unique.append(edge)
    return unique


def flatten_groups(document: WorkflowDocument) -> Tuple[Dict[str, Any], List[WorkflowEdge]]:
    """Replace each GROUP by its ordered children.

    Children without edges among themselves are chained in configured order;
    edges into the group enter its first child and edges out of it leave
    from its last child.
    """
    nodes = {node.id: node for node in document.nodes}
    edges = list(document.edges)
    for group in [node for node in document.nodes if node.kind == "GROUP"]:
        children = list(group.config.child_node_ids)
        child_set = set(children)
        internal = [e for e in edges if e.source in child_set and e.target in child_set]
        if not internal:
            edges.extend(
                WorkflowEdge(source=a, target=b) for a, b in zip(children, children[1:])
            )
        incoming = [e for e in edges if e.target == group.id and e.source not in child_set]
        outgoing = [e for e in edges if e.source == group.id and e.target not in child_set]
        kept = [e for e in edges if group.id not in (e.source, e.target)]
        if children:
            kept.extend(e.model_copy(update={"target": children[0]}) for e in incoming)
            kept.extend(e.model_copy(update={"source": children[-1]}) for e in outgoing)
        else:
            kept.extend(
                WorkflowEdge(source=i.source, target=o.target, source_handle=i.source_handle)
                for i in incoming
                for o in outgoing
            )
        edges = kept
        del nodes[group.id]
    return nodes, _dedupe(edges)


def wire_merge_inputs(
    nodes: Dict[str, Any], edges: List[WorkflowEdge], declared: List[str]
) -> List[WorkflowEdge]:
    """Add an edge from every configured MERGE input into its MERGE.

    Inputs are named by node name or id. An input already connected to the
    MERGE keeps its own edge, branch handle included.
    """
    by_name: Dict[str, str] = {}
    for node_id in declared:
        name = nodes[node_id].name
        if name:
            by_name.setdefault(name, node_id)

    connected = {(edge.source, edge.target) for edge in edges}
    wired = list(edges)
    problems: List[str] = []
    for node_id in declared:
        node = nodes[node_id]
        if node.kind != "MERGE":
            continue
        for reference in node.config.inputs:
            source = by_name.get(reference) or (reference if reference in nodes else None)
            if source is None:
                problems.append(f"merge {node_id!r} references unknown input {reference!r}")
            elif source == node_id:
                problems.append(f"merge {node_id!r} lists itself as an input")
            elif (source, node_id) not in connected:
                connected.add((source, node_id))
                wired.append(WorkflowEdge(source=source, target=node_id))
    if problems:
        raise StructuralError("workflow graph is invalid", detail={"errors": problems})
    return wired


def collapse_loop_bodies(
    nodes: Dict[str, Any], edges: List[WorkflowEdge]
) -> Tuple[List[WorkflowEdge], Dict[str, List[WorkflowEdge]], Dict[str, str]]:
    """Split edges into the main walk and per-loop body edges."""
    body_owner: Dict[str, str] = {}
    for node in nodes.values():
        if node.kind == "LOOP":
            for body_id in node.config.body_node_ids:
                if body_id in nodes:
                    body_owner[body_id] = node.id

    main_edges: List[WorkflowEdge] = []
    body_edges: Dict[str, List[WorkflowEdge]] = defaultdict(list)
    for edge in edges:
        source_loop = body_owner.get(edge.source)
        target_loop = body_owner.get(edge.target)
        if source_loop and source_loop == target_loop:
            body_edges[source_loop].append(edge)
            continue
        if target_loop and edge.source == target_loop:
            continue
        if source_loop and edge.target == source_loop:
            continue
        update = {
            "source": source_loop or edge.source,
            "target": target_loop or edge.target,
        }
        if source_loop:
            update["source_handle"] = None
        main_edges.append(edge.model_copy(update=update))
    return _dedupe(main_edges), dict(body_edges), body_owner


def topological_order(node_ids: List[str], edges: List[WorkflowEdge]) -> List[str]:
    """Kahn's algorithm; ties go to the earliest declared node."""
    rank = {node_id: index for index, node_id in enumerate(node_ids)}
    indegree = {node_id: 0 for node_id in node_ids}
    successors: Dict[str, List[str]] = defaultdict(list)
    for edge in edges:
        successors[edge.source].append(edge.target)
        indegree[edge.target] += 1
    heap = [(rank[n], n) for n in node_ids if indegree[n] == 0]
    heapq.heapify(heap)
    order: List[str] = []
    while heap:
        _, current = heapq.heappop(heap)
        order.append(current)
        for target in successors[current]:
            indegree[target] -= 1
            if indegree[target] == 0:
                heapq.heappush(heap, (rank[target], target))
    if len(order) != len(node_ids):
        placed = set(order)
        remaining = [n for n in node_ids if n not in placed]
        raise StructuralError(
            "workflow graph contains a cycle", detail={"errors": [f"cycle through {remaining}"]}
        )
    return order


def required_nodes(main: Subgraph, nodes: Dict[str, Any]) -> Set[str]:
    """Nodes every entry-to-OUTPUT path passes through.

    Without OUTPUT nodes the targets are the non-notification sinks.
    """
    dominators: Dict[str, Set[str]] = {}
    for node_id in main.order:
        preds = main.predecessors(node_id)
        if not preds:
            dominators[node_id] = {node_id}
        else:
            dominators[node_id] = set.intersection(*(dominators[p] for p in preds)) | {node_id}

    targets = [nid for nid in main.order if nodes[nid].kind == "OUTPUT"]
    if not targets:
        targets = [
            nid
            for nid in main.order
            if not main.outgoing.get(nid) and nodes[nid].kind != "NOTIFICATION"
        ]
    required: Set[str] = set()
    for target in targets:
        required |= dominators[target]
    return required


def prepare_graph(raw: Any) -> PreparedGraph:
    document = parse_document(raw)
    _check_structure(document)
    nodes, edges = flatten_groups(document)
    declared = [node.id for node in document.nodes if node.id in nodes]
    edges = wire_merge_inputs(nodes, edges, declared)
    main_edges, body_edges, body_owner = collapse_loop_bodies(nodes, edges)

    main_ids = [node_id for node_id in declared if node_id not in body_owner]
    main = Subgraph.build(topological_order(main_ids, main_edges), main_edges)

    loop_bodies: Dict[str, Subgraph] = {}
    for node_id in main.order:
        node = nodes[node_id]
        if node.kind != "LOOP":
            continue
        body_ids = [b for b in node.config.body_node_ids if b in nodes]
        own_edges = body_edges.get(node_id, [])
        loop_bodies[node_id] = Subgraph.build(topological_order(body_ids, own_edges), own_edges)

    name_index: Dict[str, str] = {}
    for node_id in declared:
        name = nodes[node_id].name
        if name:
            name_index.setdefault(name, node_id)

    return PreparedGraph(
        document=document,
        nodes=nodes,
        main=main,
        loop_bodies=loop_bodies,
        body_owner=body_owner,
        name_index=name_index,
        required=required_nodes(main, nodes),
    )


# -- soft validation -------------------------------------------------------


@dataclass
class ValidationIssue:
    code: str
    message: str
    node_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload = {"code": self.code, "message": self.message}
        if self.node_id:
            payload["nodeId"] = self.node_id
        return payload


@dataclass
class ValidationReport:
    valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[ValidationIssue] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "errors": self.errors,
            "warnings": [w.to_dict() for w in self.warnings],
        }


def _reachable(main: Subgraph, starts: Iterable[str]) -> Set[str]:
    seen: Set[str] = set()
    queue = deque(starts)
    while queue:
        current = queue.popleft()
        if current in seen:
            continue
        seen.add(current)
        queue.extend(edge.target for edge in main.outgoing.get(current, []))
    return seen


def _known_roots(graph: PreparedGraph) -> Set[str]:
    roots: Set[str] = set(graph.name_index) | set(graph.nodes)
    roots |= set(graph.document.global_variables)
    roots.add("triggerInput")
    for node in graph.nodes.values():
        if node.kind == "INPUT":
            for input_field in node.config.fields:
                roots.add(input_field.name)
                if input_field.id:
                    roots.add(input_field.id)
    return roots


def _upstream_of(graph: PreparedGraph, node_id: str) -> Set[str]:
    owner = graph.body_owner.get(node_id)
    if owner:
        return graph.loop_bodies[owner].ancestors(node_id) | graph.main.ancestors(owner)
    return graph.main.ancestors(node_id)


def validate_graph(raw: Any) -> ValidationReport:
    """Hard errors plus warnings that do not stop execution.

    Warnings cover a missing or unreachable OUTPUT, unreachable nodes and
    ``{{...}}`` references that will not resolve or point at a node that does
    not run before the referencing node.
    """
    try:
        graph = prepare_graph(raw)
    except StructuralError as exc:
        return ValidationReport(valid=False, errors=list(exc.detail.get("errors") or [exc.message]))

    warnings: List[ValidationIssue] = []
    main = graph.main
    entries = [nid for nid in main.order if graph.nodes[nid].kind in ENTRY_TYPES]
    if not entries:
        entries = [nid for nid in main.order if not main.incoming.get(nid)]
    reachable = _reachable(main, entries)

    outputs = graph.output_nodes()
    if not outputs:
        warnings.append(ValidationIssue("no_output", "workflow has no OUTPUT node"))
    elif not any(nid in reachable for nid in outputs):
        warnings.append(
            ValidationIssue("output_unreachable", "no OUTPUT node is reachable from an entry node")
        )
    for node_id in main.order:
        if node_id not in reachable:
            warnings.append(
                ValidationIssue(
                    "unreachable_node",
                    f"node {graph.nodes[node_id].label!r} is not reachable from an entry node",
                    node_id,
                )
            )

    known = _known_roots(graph)
    for node_id, node in graph.nodes.items():
        local = set(known)
        owner = graph.body_owner.get(node_id)
        if owner:
            loop_config = graph.nodes[owner].config
            local.add("loop")
            if loop_config.for_config:
                local |= {loop_config.for_config.item_name, loop_config.for_config.index_name}
        upstream = _upstream_of(graph, node_id)
        config_values = node.config.model_dump(by_alias=True)
        for ref in collect_references([config_values]):
            if ref.root not in local:
                warnings.append(
                    ValidationIssue(
                        "unresolved_reference",
                        f"{ref.raw} in node {node.label!r} does not match a node, input field or variable",
                        node_id,
                    )
                )
                continue
            target = graph.name_index.get(ref.root) or (ref.root if ref.root in graph.nodes else None)
            if target and target != node_id and target not in upstream and target not in graph.document.global_variables:
                warnings.append(
                    ValidationIssue(
                        "reference_not_upstream",
                        f"{ref.raw} in node {node.label!r} refers to a node that does not run before it",
                        node_id,
                    )
                )
    return ValidationReport(valid=True, warnings=warnings)
