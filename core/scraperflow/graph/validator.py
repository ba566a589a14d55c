"""Structural validation and ordering for workflow graphs.

Checks performed before a run is created:
- duplicate node ids and duplicate port names
- connections referencing missing nodes or ports
- more than one incoming connection on an input port
- dependency cycles (reported with the full cycle path)
- orphan nodes: not reachable from any source node (warning only)

Ordering is Kahn's algorithm over a min-heap keyed by the node's position in
the authored graph, so nodes without an ordering constraint between them keep
their insertion order.
"""

import heapq
import logging
from dataclasses import dataclass, field
from enum import StrEnum

from scraperflow.errors import CycleError, GraphValidationError
from scraperflow.graph.edge import Connection, GraphSpec

logger = logging.getLogger(__name__)


class IssueSeverity(StrEnum):
    ERROR = "error"
    WARNING = "warning"


@dataclass
class ValidationIssue:
    """A single problem found in a graph."""

    code: str
    message: str
    severity: IssueSeverity = IssueSeverity.ERROR
    node_id: str | None = None
    connection_id: str | None = None
    path: list[str] = field(default_factory=list)

    @property
    def is_error(self) -> bool:
        return self.severity == IssueSeverity.ERROR

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "message": self.message,
            "severity": self.severity.value,
            "node_id": self.node_id,
            "connection_id": self.connection_id,
            "path": list(self.path),
        }


@dataclass
class ValidatedGraph:
    """A graph that passed validation, with its dependency DAG precomputed."""

    graph: GraphSpec
    order: list[str]
    upstream: dict[str, list[Connection]]
    downstream: dict[str, list[str]]
    index: dict[str, int]
    warnings: list[ValidationIssue] = field(default_factory=list)

    def dependencies(self, node_id: str) -> list[str]:
        """Distinct upstream node ids, in connection order."""
        seen: list[str] = []
        for conn in self.upstream[node_id]:
            if conn.source not in seen:
                seen.append(conn.source)
        return seen

    def descendants(self, node_id: str) -> list[str]:
        """Every node that transitively depends on ``node_id``, in topological order."""
        found: set[str] = set()
        stack = list(self.downstream[node_id])
        while stack:
            current = stack.pop()
            if current in found:
                continue
            found.add(current)
            stack.extend(self.downstream[current])
        return [nid for nid in self.order if nid in found]


def find_cycle(graph: GraphSpec) -> list[str] | None:
    """
    Depth-first search with white/grey/black colouring.

    Returns:
        The cycle path starting and ending on the same node, or None.
        Connections to unknown nodes are ignored here.
    """
    adjacency: dict[str, list[str]] = {node.id: [] for node in graph.nodes}
    for conn in graph.connections:
        if conn.source in adjacency and conn.target in adjacency:
            adjacency[conn.source].append(conn.target)

    white, grey, black = 0, 1, 2
    colour = dict.fromkeys(adjacency, white)

    for root in adjacency:
        if colour[root] != white:
            continue
        # Explicit stack of (node, iterator over successors); ``path`` mirrors
        # the grey nodes so a back edge yields the cycle directly.
        path = [root]
        colour[root] = grey
        stack = [(root, iter(adjacency[root]))]
        while stack:
            node, successors = stack[-1]
            advanced = False
            for succ in successors:
                if colour[succ] == grey:
                    start = path.index(succ)
                    return path[start:] + [succ]
                if colour[succ] == white:
                    colour[succ] = grey
                    path.append(succ)
                    stack.append((succ, iter(adjacency[succ])))
                    advanced = True
                    break
            if not advanced:
                colour[node] = black
                path.pop()
                stack.pop()
    return None


def topological_order(graph: GraphSpec) -> list[str]:
    """
    Order node ids so every node comes after all of its dependencies.

    Raises:
        CycleError: if the dependency relation is cyclic
    """
    index = {node.id: i for i, node in enumerate(graph.nodes)}
    in_degree = dict.fromkeys(index, 0)
    successors: dict[str, list[str]] = {nid: [] for nid in index}
    for conn in graph.connections:
        if conn.source in index and conn.target in index:
            successors[conn.source].append(conn.target)
            in_degree[conn.target] += 1

    heap = [(index[nid], nid) for nid, degree in in_degree.items() if degree == 0]
    heapq.heapify(heap)
    order: list[str] = []
    while heap:
        _, nid = heapq.heappop(heap)
        order.append(nid)
        for succ in successors[nid]:
            in_degree[succ] -= 1
            if in_degree[succ] == 0:
                heapq.heappush(heap, (index[succ], succ))

    if len(order) != len(index):
        raise CycleError(find_cycle(graph) or [nid for nid in index if nid not in order])
    return order


def find_unreachable(graph: GraphSpec) -> list[str]:
    """
    Return ids of nodes that no source node (one declaring no inputs) can
    reach, in graph order.

    A graph without declared sources, such as one built with the canvas
    defaults, starts from its unfed nodes instead and has nothing unreachable.
    """
    sources = [node.id for node in graph.nodes if node.is_source]
    if not sources:
        return []

    children: dict[str, list[str]] = {node.id: [] for node in graph.nodes}
    for conn in graph.connections:
        if conn.source in children and conn.target in children:
            children[conn.source].append(conn.target)

    reached = set(sources)
    stack = list(sources)
    while stack:
        for child in children[stack.pop()]:
            if child not in reached:
                reached.add(child)
                stack.append(child)
    return [node.id for node in graph.nodes if node.id not in reached]


def collect_issues(graph: GraphSpec) -> list[ValidationIssue]:
    """Run every structural check and return all issues (errors and warnings)."""
    issues: list[ValidationIssue] = []
    nodes: dict[str, object] = {}

    for node in graph.nodes:
        if node.id in nodes:
            issues.append(
                ValidationIssue(
                    code="duplicate_node",
                    message=f"Duplicate node id '{node.id}'",
                    node_id=node.id,
                )
            )
            continue
        nodes[node.id] = node
        for kind, ports in (("input", node.inputs), ("output", node.outputs)):
            duplicates = sorted({p for p in ports if ports.count(p) > 1})
            for port in duplicates:
                issues.append(
                    ValidationIssue(
                        code="duplicate_port",
                        message=f"Node '{node.id}' declares {kind} port '{port}' more than once",
                        node_id=node.id,
                    )
                )

    incoming: dict[tuple[str, str], Connection] = {}
    for conn in graph.connections:
        source = graph.get_node(conn.source)
        target = graph.get_node(conn.target)
        if source is None:
            issues.append(
                ValidationIssue(
                    code="dangling_reference",
                    message=f"Connection '{conn.id}' references missing source '{conn.source}'",
                    connection_id=conn.id,
                )
            )
        elif conn.source_port not in source.outputs:
            issues.append(
                ValidationIssue(
                    code="invalid_port",
                    message=(
                        f"Connection '{conn.id}' uses unknown output port "
                        f"'{conn.source_port}' on '{conn.source}'"
                    ),
                    node_id=conn.source,
                    connection_id=conn.id,
                )
            )
        if target is None:
            issues.append(
                ValidationIssue(
                    code="dangling_reference",
                    message=f"Connection '{conn.id}' references missing target '{conn.target}'",
                    connection_id=conn.id,
                )
            )
        elif conn.target_port not in target.inputs:
            issues.append(
                ValidationIssue(
                    code="invalid_port",
                    message=(
                        f"Connection '{conn.id}' uses unknown input port "
                        f"'{conn.target_port}' on '{conn.target}'"
                    ),
                    node_id=conn.target,
                    connection_id=conn.id,
                )
            )
        else:
            key = (conn.target, conn.target_port)
            if key in incoming:
                issues.append(
                    ValidationIssue(
                        code="port_arity",
                        message=(
                            f"Input port '{conn.target_port}' on '{conn.target}' already fed by "
                            f"'{incoming[key].id}'; '{conn.id}' needs an aggregator node"
                        ),
                        node_id=conn.target,
                        connection_id=conn.id,
                    )
                )
            else:
                incoming[key] = conn

    cycle = find_cycle(graph)
    if cycle:
        issues.append(
            ValidationIssue(
                code="cycle",
                message=f"Cycle detected: {' -> '.join(cycle)}",
                node_id=cycle[0],
                path=cycle,
            )
        )

    fed = {conn.target for conn in graph.connections}
    for node_id in find_unreachable(graph):
        if node_id in fed:
            message = f"Node '{node_id}' is not reachable from any source node"
        else:
            message = (
                f"Node '{node_id}' declares inputs but no connection feeds it; "
                "it will receive the run input"
            )
        issues.append(
            ValidationIssue(
                code="orphan_node",
                message=message,
                severity=IssueSeverity.WARNING,
                node_id=node_id,
            )
        )

    return issues


def validate_graph(graph: GraphSpec) -> ValidatedGraph:
    """
    Validate a graph and precompute its dependency DAG.

    Raises:
        GraphValidationError: carrying every error-level issue found
    """
    issues = collect_issues(graph)
    errors = [issue for issue in issues if issue.is_error]
    if errors:
        raise GraphValidationError(errors)

    warnings = [issue for issue in issues if not issue.is_error]
    for warning in warnings:
        logger.warning(warning.message)

    order = topological_order(graph)
    upstream: dict[str, list[Connection]] = {nid: [] for nid in order}
    downstream: dict[str, list[str]] = {nid: [] for nid in order}
    for conn in graph.connections:
        upstream[conn.target].append(conn)
        if conn.target not in downstream[conn.source]:
            downstream[conn.source].append(conn.target)

    return ValidatedGraph(
        graph=graph,
        order=order,
        upstream=upstream,
        downstream=downstream,
        index={nid: i for i, nid in enumerate(order)},
        warnings=warnings,
    )
