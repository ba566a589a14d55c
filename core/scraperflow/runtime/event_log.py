"""
Event Log - append-only, per-run event streams.

Every state change of a run is recorded as a RunEvent. Callers can:
- Read the full history of a run
- Subscribe to a run: replay from any sequence number, then follow live
  events until ``run_ended``
- Persist events by attaching a RunLogStore

Example:
    log = EventLog()

    async for event in log.subscribe(run_id):
        print(event.type, event.node_id)
"""

import asyncio
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from scraperflow.runtime.log_store import RunLogStore

logger = logging.getLogger(__name__)


class RunEventType(StrEnum):
    """Types of events recorded for a run."""

    # Run lifecycle
    RUN_STARTED = "run_started"
    RUN_ENDED = "run_ended"

    # Node lifecycle
    NODE_READY = "node_ready"
    NODE_STARTED = "node_started"
    NODE_RETRYING = "node_retrying"
    NODE_SUCCEEDED = "node_succeeded"
    NODE_FAILED = "node_failed"
    NODE_SKIPPED = "node_skipped"
    NODE_CANCELLED = "node_cancelled"


@dataclass
class RunEvent:
    """An event in a run's log."""

    type: RunEventType
    run_id: str
    seq: int = 0  # assigned by the log on emit
    node_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "type": self.type.value,
            "run_id": self.run_id,
            "seq": self.seq,
            "node_id": self.node_id,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RunEvent":
        return cls(
            type=RunEventType(data["type"]),
            run_id=data["run_id"],
            seq=data.get("seq", 0),
            node_id=data.get("node_id"),
            data=data.get("data") or {},
            timestamp=datetime.fromisoformat(data["timestamp"]),
        )


class _RunStream:
    """Events of one run plus a wake-up signal for subscribers."""

    def __init__(self) -> None:
        self.events: list[RunEvent] = []
        self.changed = asyncio.Event()
        self.closed = False

    def append(self, event: RunEvent) -> None:
        self.events.append(event)
        if event.type == RunEventType.RUN_ENDED:
            self.closed = True
        # Wake everyone waiting on the current signal, then arm a new one.
        changed, self.changed = self.changed, asyncio.Event()
        changed.set()


class EventLog:
    """
    Per-run append-only event log with live subscriptions.

    Events are never mutated after they are emitted; ``seq`` increases by one
    per event within a run, starting at 1.
    """

    def __init__(self, store: "RunLogStore | None" = None):
        """
        Args:
            store: Optional file store; every event is also appended to the
                run's ``events.jsonl``.
        """
        self._streams: dict[str, _RunStream] = {}
        self._store = store

    def _stream(self, run_id: str) -> _RunStream:
        stream = self._streams.get(run_id)
        if stream is None:
            stream = _RunStream()
            self._streams[run_id] = stream
        return stream

    def open(self, run_id: str) -> None:
        """Register a run so that subscribers can attach before its first event."""
        self._stream(run_id)
        if self._store is not None:
            self._store.ensure_run_dir(run_id)

    def emit(self, event: RunEvent) -> RunEvent:
        """Append an event, assigning its sequence number."""
        stream = self._stream(event.run_id)
        if stream.closed:
            raise RuntimeError(f"Run '{event.run_id}' already ended; cannot emit {event.type}")
        event.seq = len(stream.events) + 1
        stream.append(event)

        if self._store is not None:
            try:
                self._store.append_event(event.run_id, event.to_dict())
            except OSError as e:
                logger.warning(f"Failed to persist event {event.seq} of run {event.run_id}: {e}")

        logger.debug(
            f"{event.type} node={event.node_id} seq={event.seq}",
            extra={"event": event.type.value},
        )
        return event

    def history(self, run_id: str) -> list[RunEvent]:
        """All events of a run so far (a copy)."""
        stream = self._streams.get(run_id)
        return list(stream.events) if stream else []

    def is_closed(self, run_id: str) -> bool:
        stream = self._streams.get(run_id)
        return bool(stream and stream.closed)

    def runs(self) -> list[str]:
        return list(self._streams)

    def discard(self, run_id: str) -> bool:
        """Forget a finished run's events. Returns False for live or unknown runs."""
        stream = self._streams.get(run_id)
        if stream is None or not stream.closed:
            return False
        del self._streams[run_id]
        return True

    async def subscribe(self, run_id: str, from_seq: int = 0) -> AsyncIterator[RunEvent]:
        """
        Replay events with ``seq > from_seq``, then follow live events.

        The iterator ends after yielding ``run_ended``. Breaking out of the
        loop early simply drops the subscriber; nothing else is held.

        Raises:
            KeyError: if the run is unknown to this log
        """
        stream = self._streams.get(run_id)
        if stream is None:
            raise KeyError(run_id)

        position = max(from_seq, 0)
        while True:
            while position < len(stream.events):
                event = stream.events[position]
                position += 1
                yield event
                if event.type == RunEventType.RUN_ENDED:
                    return
            if stream.closed:
                return
            await stream.changed.wait()
