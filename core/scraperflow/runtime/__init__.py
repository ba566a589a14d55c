"""Runtime: scheduling, run state, event log and the run controller."""

from scraperflow.runtime.controller import RunController
from scraperflow.runtime.event_log import EventLog, RunEvent, RunEventType
from scraperflow.runtime.log_store import RunLogStore
from scraperflow.runtime.run import Run, new_run_id
from scraperflow.runtime.scheduler import Scheduler
from scraperflow.runtime.schemas import (
    NodeRunState,
    NodeSnapshot,
    NodeStatus,
    RunSnapshot,
    RunStatus,
)

__all__ = [
    "RunController",
    "Scheduler",
    "Run",
    "new_run_id",
    "EventLog",
    "RunEvent",
    "RunEventType",
    "RunLogStore",
    "RunStatus",
    "NodeStatus",
    "NodeRunState",
    "NodeSnapshot",
    "RunSnapshot",
]
