"""Graph model: nodes, connections, validation and ordering."""

from scraperflow.graph.edge import Connection, GraphSpec
from scraperflow.graph.node import DEFAULT_INPUT_PORT, DEFAULT_OUTPUT_PORT, NodeSpec, RetryPolicy
from scraperflow.graph.validator import (
    IssueSeverity,
    ValidatedGraph,
    ValidationIssue,
    collect_issues,
    find_cycle,
    find_unreachable,
    topological_order,
    validate_graph,
)

__all__ = [
    # Specs
    "NodeSpec",
    "RetryPolicy",
    "Connection",
    "GraphSpec",
    "DEFAULT_INPUT_PORT",
    "DEFAULT_OUTPUT_PORT",
    # Validation
    "IssueSeverity",
    "ValidationIssue",
    "ValidatedGraph",
    "collect_issues",
    "find_cycle",
    "find_unreachable",
    "topological_order",
    "validate_graph",
]
