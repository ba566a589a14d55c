"""Run and node state models.

``NodeRunState`` is the mutable record the scheduler's coordinating loop
updates. ``RunSnapshot`` and ``NodeSnapshot`` are the frozen views handed to
callers of the run controller.
"""

from __future__ import annotations

from copy import deepcopy
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class RunStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.CANCELLED)


class NodeStatus(StrEnum):
    WAITING = "waiting"
    READY = "ready"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            NodeStatus.SUCCEEDED,
            NodeStatus.FAILED,
            NodeStatus.SKIPPED,
            NodeStatus.CANCELLED,
        )


@dataclass
class NodeRunState:
    """Mutable per-node state. Owned by the scheduler."""

    node_id: str
    status: NodeStatus = NodeStatus.WAITING
    attempts: int = 0
    output: Any = None
    error: str | None = None
    error_type: str | None = None
    skip_reason: str | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None

    def snapshot(self) -> NodeSnapshot:
        return NodeSnapshot(
            node_id=self.node_id,
            status=self.status,
            attempts=self.attempts,
            output=deepcopy(self.output),
            error=self.error,
            error_type=self.error_type,
            skip_reason=self.skip_reason,
            started_at=self.started_at,
            ended_at=self.ended_at,
        )


class NodeSnapshot(BaseModel):
    """Read-only view of one node's state."""

    node_id: str
    status: NodeStatus
    attempts: int = 0
    output: Any = None
    error: str | None = None
    error_type: str | None = None
    skip_reason: str | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None

    model_config = {"frozen": True}


class RunSnapshot(BaseModel):
    """Read-only view of a run, as returned by ``RunController.status()``."""

    run_id: str
    graph_id: str
    status: RunStatus
    started_at: datetime | None = None
    ended_at: datetime | None = None
    nodes: dict[str, NodeSnapshot] = Field(default_factory=dict)
    warnings: list[str] = Field(default_factory=list)

    model_config = {"frozen": True}

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at is None or self.ended_at is None:
            return None
        return (self.ended_at - self.started_at).total_seconds()

    def nodes_with_status(self, status: NodeStatus) -> list[str]:
        return [nid for nid, node in self.nodes.items() if node.status == status]

    def to_summary(self) -> dict[str, Any]:
        """JSON-compatible summary, the format persisted as summary.json."""
        return self.model_dump(mode="json")
