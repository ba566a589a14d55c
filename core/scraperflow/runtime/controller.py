"""
Run Controller - the public interface to the engine.

Submits graphs, tracks their runs and exposes status and event streams.
All run state lives in memory; attach a RunLogStore to also persist events
and summaries on disk.

Example:
    registry = register_builtin_executors()
    controller = RunController(registry, SecretResolver(storage))

    run_id = await controller.submit(graph, {"query": "laptops"})
    async for event in controller.subscribe(run_id):
        print(event.type, event.node_id)

    snapshot = controller.status(run_id)
"""

import asyncio
import logging
from collections import OrderedDict
from collections.abc import AsyncIterator
from typing import Any

from scraperflow.config import EngineConfig
from scraperflow.credentials import SecretResolver
from scraperflow.errors import RunNotFoundError
from scraperflow.executors import ExecutorRegistry
from scraperflow.graph import GraphSpec, validate_graph
from scraperflow.runtime.event_log import EventLog, RunEvent
from scraperflow.runtime.log_store import RunLogStore
from scraperflow.runtime.run import Run
from scraperflow.runtime.scheduler import Scheduler
from scraperflow.runtime.schemas import RunSnapshot

logger = logging.getLogger(__name__)


class RunController:
    """
    Submit, cancel and observe runs.

    Runs execute as background tasks on the running event loop; ``submit``
    returns as soon as the run is created.
    """

    def __init__(
        self,
        registry: ExecutorRegistry,
        resolver: SecretResolver | None = None,
        config: EngineConfig | None = None,
        log_store: RunLogStore | None = None,
        result_retention_max: int | None = 1000,
    ):
        """
        Args:
            registry: Executors for every node type the graphs use
            resolver: Secret resolver; an empty in-memory one when omitted
            config: Engine settings
            log_store: Optional file store for events and summaries
            result_retention_max: Finished runs kept in memory before the
                oldest are forgotten (None keeps all)
        """
        self.config = config or EngineConfig()
        self.log_store = log_store
        self.event_log = EventLog(store=log_store)
        self.scheduler = Scheduler(
            registry=registry,
            resolver=resolver,
            event_log=self.event_log,
            config=self.config,
            log_store=log_store,
        )
        self._result_retention_max = result_retention_max
        self._runs: OrderedDict[str, Run] = OrderedDict()
        self._tasks: dict[str, asyncio.Task] = {}

    # -------------------------------------------------------------------
    # Submission
    # -------------------------------------------------------------------

    async def submit(self, graph: GraphSpec, input_data: dict[str, Any] | None = None) -> str:
        """
        Validate and start a run.

        The graph is deep-copied, so later edits by the caller never reach
        the in-flight run.

        Returns:
            The new run id

        Raises:
            GraphValidationError: if the graph is invalid; no run is created
        """
        validated = validate_graph(graph.model_copy(deep=True))
        run = Run(validated, input_data)

        self._runs[run.id] = run
        self.event_log.open(run.id)
        task = asyncio.create_task(self.scheduler.run(run), name=f"run:{run.id}")
        task.add_done_callback(lambda t, run_id=run.id: self._on_run_done(run_id, t))
        self._tasks[run.id] = task

        logger.info(f"Submitted run {run.id} for graph '{graph.id}'")
        return run.id

    def _on_run_done(self, run_id: str, task: asyncio.Task) -> None:
        self._tasks.pop(run_id, None)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Run {run_id} task failed: {task.exception()!r}")
        self._prune_finished()

    def _prune_finished(self) -> None:
        if self._result_retention_max is None:
            return
        finished = [rid for rid, run in self._runs.items() if run.done.is_set()]
        while len(finished) > self._result_retention_max:
            run_id = finished.pop(0)
            del self._runs[run_id]
            self.event_log.discard(run_id)

    def _get_run(self, run_id: str) -> Run:
        run = self._runs.get(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run

    # -------------------------------------------------------------------
    # Control
    # -------------------------------------------------------------------

    async def cancel(self, run_id: str) -> bool:
        """
        Request cancellation of a run.

        Returns:
            True if the request was accepted, False if the run already ended

        Raises:
            RunNotFoundError: if the run is unknown
        """
        run = self._get_run(run_id)
        if run.done.is_set() or not run.request_cancel():
            return False
        logger.info(f"Cancellation requested for run {run_id}")
        return True

    def status(self, run_id: str) -> RunSnapshot:
        """
        Current snapshot of a run. Once the run ended, every call returns
        the same object.

        Raises:
            RunNotFoundError: if the run is unknown
        """
        return self._get_run(run_id).snapshot()

    def subscribe(self, run_id: str, from_seq: int = 0) -> AsyncIterator[RunEvent]:
        """
        Event stream of a run: replays past events, follows live ones and
        ends after ``run_ended``.

        Raises:
            RunNotFoundError: if the run is unknown
        """
        self._get_run(run_id)
        return self.event_log.subscribe(run_id, from_seq=from_seq)

    def history(self, run_id: str) -> list[RunEvent]:
        self._get_run(run_id)
        return self.event_log.history(run_id)

    async def wait(self, run_id: str, timeout: float | None = None) -> RunSnapshot:
        """
        Wait for a run to end.

        Raises:
            RunNotFoundError: if the run is unknown
            TimeoutError: if the run is still going after ``timeout`` seconds
        """
        run = self._get_run(run_id)
        await asyncio.wait_for(run.done.wait(), timeout=timeout)
        return run.snapshot()

    def list_runs(self) -> list[RunSnapshot]:
        return [run.snapshot() for run in self._runs.values()]

    def get_active_count(self) -> int:
        return len([run for run in self._runs.values() if not run.done.is_set()])

    async def shutdown(self, timeout: float | None = None) -> None:
        """Cancel every active run and wait for them to finish."""
        for run in self._runs.values():
            run.request_cancel()

        tasks = list(self._tasks.values())
        if not tasks:
            return
        done, pending = await asyncio.wait(
            tasks, timeout=timeout if timeout is not None else self.config.cancel_grace_seconds + 5
        )
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        logger.info(f"Run controller shut down ({len(done)} run(s) finished cleanly)")
