"""
Error taxonomy for the workflow engine.

Graph-level errors are raised synchronously by validation and submission.
Node-level errors are raised inside node workers and converted by the
scheduler into ``node_failed`` events; they never crash a run.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from scraperflow.graph.validator import ValidationIssue


class FlowError(Exception):
    """Base class for all engine errors."""


# ---------------------------------------------------------------------------
# Graph-level (pre-run)
# ---------------------------------------------------------------------------


class GraphValidationError(FlowError):
    """The submitted graph violates one or more structural invariants."""

    def __init__(self, issues: list[ValidationIssue]):
        self.issues = list(issues)
        lines = [f"Graph validation failed with {len(self.issues)} error(s):"]
        lines.extend(f"  - {issue.message}" for issue in self.issues)
        super().__init__("\n".join(lines))


class CycleError(FlowError):
    """The dependency relation contains a cycle."""

    def __init__(self, path: list[str]):
        self.path = list(path)
        super().__init__(f"Cycle detected: {' -> '.join(self.path)}")


# ---------------------------------------------------------------------------
# Node-level (runtime)
# ---------------------------------------------------------------------------


class MissingSecretError(FlowError):
    """A secret reference could not be resolved. Never retried by default."""

    def __init__(self, key: str, secret_id: str, reason: str = "not found"):
        self.key = key
        self.secret_id = secret_id
        self.reason = reason
        super().__init__(f"Secret for '{key}' (id '{secret_id}') could not be resolved: {reason}")


class ExecutionError(FlowError):
    """Raised by executor business logic. Subject to the node's retry policy."""

    def __init__(self, message: str, *, retryable: bool = True):
        self.retryable = retryable
        super().__init__(message)


class NodeTimeoutError(ExecutionError):
    """A node attempt exceeded its deadline."""

    def __init__(self, node_id: str, timeout: float):
        self.node_id = node_id
        self.timeout = timeout
        super().__init__(f"Node '{node_id}' exceeded its deadline of {timeout:g}s")


class NodeCancelledError(FlowError):
    """The run (and therefore the node) was cancelled. Terminal."""


class ConfigurationError(FlowError):
    """Unknown node type or malformed node config. Fatal for that node."""


class ExecutorNotFoundError(ConfigurationError):
    """No executor is registered for a node type."""

    def __init__(self, node_type: str):
        self.node_type = node_type
        super().__init__(f"No executor registered for node type '{node_type}'")


class RunNotFoundError(FlowError):
    """The requested run id is unknown to the controller or store."""

    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Run '{run_id}' not found")
