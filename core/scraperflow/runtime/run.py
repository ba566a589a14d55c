"""A single execution of a workflow graph."""

import asyncio
import uuid
from copy import deepcopy
from datetime import UTC, datetime
from typing import Any

from scraperflow.graph import ValidatedGraph
from scraperflow.runtime.schemas import NodeRunState, RunSnapshot, RunStatus


def new_run_id() -> str:
    """Sortable run id, e.g. ``20260101T120000_ab12cd34``."""
    return f"{datetime.now(UTC).strftime('%Y%m%dT%H%M%S')}_{uuid.uuid4().hex[:8]}"


class Run:
    """
    State of one run: the graph snapshot, per-node state and the
    cancellation signal.

    Only the scheduler mutates ``nodes`` and ``status``. Everyone else reads
    through ``snapshot()``.
    """

    def __init__(
        self,
        validated: ValidatedGraph,
        input_data: dict[str, Any] | None = None,
        run_id: str | None = None,
    ):
        self.id = run_id or new_run_id()
        self.validated = validated
        self.input_data: dict[str, Any] = deepcopy(input_data) if input_data else {}
        self.status = RunStatus.PENDING
        self.started_at: datetime | None = None
        self.ended_at: datetime | None = None
        self.nodes: dict[str, NodeRunState] = {
            nid: NodeRunState(node_id=nid) for nid in validated.order
        }
        self.cancel_event = asyncio.Event()
        self.done = asyncio.Event()
        self._final_snapshot: RunSnapshot | None = None

    @property
    def graph(self):
        return self.validated.graph

    @property
    def cancel_requested(self) -> bool:
        return self.cancel_event.is_set()

    def request_cancel(self) -> bool:
        """Signal cancellation. Returns False if the run already finished."""
        if self.status.is_terminal:
            return False
        self.cancel_event.set()
        return True

    def finish(self, status: RunStatus) -> RunSnapshot:
        self.status = status
        self.ended_at = datetime.now(UTC)
        self._final_snapshot = self._build_snapshot()
        return self._final_snapshot

    def snapshot(self) -> RunSnapshot:
        """Current view; the same object on every call once the run ended."""
        if self._final_snapshot is not None:
            return self._final_snapshot
        return self._build_snapshot()

    def _build_snapshot(self) -> RunSnapshot:
        return RunSnapshot(
            run_id=self.id,
            graph_id=self.graph.id,
            status=self.status,
            started_at=self.started_at,
            ended_at=self.ended_at,
            nodes={nid: deepcopy(state).snapshot() for nid, state in self.nodes.items()},
            warnings=[w.message for w in self.validated.warnings],
        )
