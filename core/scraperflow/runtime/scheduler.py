"""
Scheduler - runs a validated graph as a dependency DAG.

One coordinating coroutine per run owns every NodeRunState and is the only
place events are emitted. Node workers run as separate tasks (at most
``concurrency`` at a time) and report progress back through an asyncio
queue:

    coordinator ──dispatch──▶ worker task (attempt loop, retries, backoff)
         ▲                          │
         └──────── queue ◀──────────┘  AttemptStarted / AttemptRetrying /
                                       NodeFinished / NodeErrored / NodeCancelled

Ready nodes are kept in a heap keyed by topological index, so independent
branches interleave but dispatch order is reproducible.
"""

import asyncio
import heapq
import logging
import random
import time
from copy import deepcopy
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from scraperflow.config import EngineConfig
from scraperflow.credentials import SecretResolver
from scraperflow.errors import (
    ConfigurationError,
    ExecutionError,
    MissingSecretError,
    NodeCancelledError,
    NodeTimeoutError,
)
from scraperflow.executors import ExecutionContext, ExecutorRegistry, NodeExecutor
from scraperflow.graph import NodeSpec
from scraperflow.observability import set_trace_context
from scraperflow.runtime.event_log import EventLog, RunEvent, RunEventType
from scraperflow.runtime.log_store import RunLogStore
from scraperflow.runtime.run import Run
from scraperflow.runtime.schemas import NodeStatus, RunSnapshot, RunStatus

logger = logging.getLogger(__name__)

RUN_CANCELLED_REASON = "run cancelled"


# ---------------------------------------------------------------------------
# Worker -> coordinator messages
# ---------------------------------------------------------------------------


@dataclass
class AttemptStarted:
    node_id: str
    attempt: int


@dataclass
class AttemptRetrying:
    node_id: str
    next_attempt: int
    delay: float
    error: str
    error_type: str


@dataclass
class NodeFinished:
    node_id: str
    output: Any


@dataclass
class NodeErrored:
    node_id: str
    error: str
    error_type: str


@dataclass
class NodeCancelled:
    node_id: str
    reason: str = RUN_CANCELLED_REASON


@dataclass
class CancelSignal:
    reason: str = "cancel requested"


def _now() -> datetime:
    return datetime.now(UTC)


class Scheduler:
    """
    Executes runs against an executor registry and secret resolver.

    A Scheduler holds no per-run state and can drive many runs concurrently.

    Example:
        scheduler = Scheduler(registry, SecretResolver(storage), EventLog())
        snapshot = await scheduler.run(Run(validate_graph(graph)))
    """

    def __init__(
        self,
        registry: ExecutorRegistry,
        resolver: SecretResolver | None = None,
        event_log: EventLog | None = None,
        config: EngineConfig | None = None,
        log_store: RunLogStore | None = None,
    ):
        self.registry = registry
        self.resolver = resolver or SecretResolver()
        self.event_log = event_log or EventLog()
        self.config = config or EngineConfig()
        self.log_store = log_store

    async def run(self, run: Run) -> RunSnapshot:
        """Execute ``run`` to completion and return its final snapshot."""
        set_trace_context(run_id=run.id, graph_id=run.graph.id)
        self.event_log.open(run.id)
        try:
            return await _RunCoordinator(self, run).execute()
        finally:
            run.done.set()

    # -------------------------------------------------------------------
    # Node worker
    # -------------------------------------------------------------------

    async def run_node(
        self,
        run: Run,
        node: NodeSpec,
        envelope: dict[str, Any],
        queue: asyncio.Queue,
    ) -> None:
        """Attempt loop for one node. Reports every outcome through ``queue``."""
        set_trace_context(node_id=node.id)

        try:
            executor = self.registry.lookup(node.type)
        except ConfigurationError as e:
            queue.put_nowait(NodeErrored(node.id, str(e), type(e).__name__))
            return

        policy = node.effective_retry(self.config.default_retry)
        timeout = node.timeout_seconds or self.config.node_timeout_seconds
        rng = random.Random(f"{self.config.seed}:{node.id}")

        attempt = 0
        while True:
            attempt += 1
            if run.cancel_requested:
                queue.put_nowait(NodeCancelled(node.id))
                return

            set_trace_context(attempt=attempt)
            queue.put_nowait(AttemptStarted(node.id, attempt))

            try:
                output = await self._attempt(run, node, executor, envelope, attempt, timeout)
            except NodeCancelledError:
                queue.put_nowait(NodeCancelled(node.id))
                return
            except ConfigurationError as e:
                queue.put_nowait(NodeErrored(node.id, str(e), type(e).__name__))
                return
            except MissingSecretError as e:
                if not policy.retry_on_missing_secret:
                    queue.put_nowait(NodeErrored(node.id, str(e), type(e).__name__))
                    return
                error: Exception = e
            except ExecutionError as e:
                if not e.retryable:
                    queue.put_nowait(NodeErrored(node.id, str(e), type(e).__name__))
                    return
                error = e
            except Exception as e:
                logger.warning(f"Node '{node.id}' raised {type(e).__name__}: {e}", exc_info=True)
                error = e
            else:
                queue.put_nowait(NodeFinished(node.id, output))
                return

            if attempt >= policy.max_attempts:
                queue.put_nowait(NodeErrored(node.id, str(error), type(error).__name__))
                return

            delay = policy.delay_for(attempt, rng)
            logger.info(
                f"↻ Retrying '{node.id}' ({attempt}/{policy.max_retries}) in {delay:.2f}s: {error}"
            )
            queue.put_nowait(
                AttemptRetrying(node.id, attempt + 1, delay, str(error), type(error).__name__)
            )
            if await self._backoff(run, delay):
                queue.put_nowait(NodeCancelled(node.id))
                return

    async def _attempt(
        self,
        run: Run,
        node: NodeSpec,
        executor: NodeExecutor,
        envelope: dict[str, Any],
        attempt: int,
        timeout: float | None,
    ) -> Any:
        secrets = await self.resolver.resolve(dict(node.secret_refs))
        config = executor.parse_config(deepcopy(node.config))
        ctx = ExecutionContext(
            run_id=run.id,
            node_id=node.id,
            node_type=node.type,
            attempt=attempt,
            cancel_event=run.cancel_event,
            deadline=time.monotonic() + timeout if timeout else None,
        )

        try:
            output = await asyncio.wait_for(
                executor.execute(deepcopy(envelope), config, secrets, ctx),
                timeout=timeout,
            )
        except TimeoutError as e:
            if timeout is None:
                raise
            raise NodeTimeoutError(node.id, timeout) from e

        if len(node.outputs) > 1 and not isinstance(output, dict):
            raise ExecutionError(
                f"Node '{node.id}' declares outputs {node.outputs} but returned "
                f"{type(output).__name__}, expected a dict keyed by port",
                retryable=False,
            )
        return output

    @staticmethod
    async def _backoff(run: Run, delay: float) -> bool:
        """Sleep ``delay`` seconds. Returns True if cancellation interrupted it."""
        if run.cancel_requested:
            return True
        if delay <= 0:
            return False
        try:
            await asyncio.wait_for(run.cancel_event.wait(), timeout=delay)
        except TimeoutError:
            return False
        return True


class _RunCoordinator:
    """Drives one run. Only this object mutates the run's node states."""

    def __init__(self, scheduler: Scheduler, run: Run):
        self.scheduler = scheduler
        self.run = run
        self.validated = run.validated
        self.config = scheduler.config
        self.queue: asyncio.Queue = asyncio.Queue()
        self.tasks: dict[str, asyncio.Task] = {}
        self.ready: list[tuple[int, str]] = []
        self.pending_deps: dict[str, set[str]] = {
            nid: set(self.validated.dependencies(nid)) for nid in self.validated.order
        }
        self.cancelling = False
        self.cancel_reason = ""
        self._loop = asyncio.get_running_loop()
        self._run_deadline: float | None = None
        self._grace_deadline: float | None = None

    # -------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------

    def emit(self, type: RunEventType, node_id: str | None = None, **data: Any) -> None:
        self.scheduler.event_log.emit(
            RunEvent(type=type, run_id=self.run.id, node_id=node_id, data=data)
        )

    # -------------------------------------------------------------------
    # Main loop
    # -------------------------------------------------------------------

    async def execute(self) -> RunSnapshot:
        run = self.run
        run.status = RunStatus.RUNNING
        run.started_at = _now()
        self.emit(
            RunEventType.RUN_STARTED,
            graph_id=run.graph.id,
            nodes=list(self.validated.order),
            warnings=[w.message for w in self.validated.warnings],
        )
        logger.info(f"Run {run.id} started ({len(run.nodes)} nodes)")

        if run.cancel_requested:
            self.cancelling = True
            self.cancel_reason = "cancelled before start"
            return await self._finalize()

        if self.config.run_timeout_seconds is not None:
            self._run_deadline = self._loop.time() + self.config.run_timeout_seconds

        watcher = asyncio.create_task(self._watch_cancel())
        try:
            for nid in self.validated.order:
                if not self.pending_deps[nid]:
                    self._mark_ready(nid)
            await self._loop_until_done()
        except asyncio.CancelledError:
            # The run task itself was cancelled (controller shutdown).
            await self._force_cancel()
            self.cancelling = True
            self.cancel_reason = self.cancel_reason or "run task cancelled"
            await self._finalize()
            raise
        except Exception:
            logger.exception(f"Run {run.id} coordinator crashed")
            await self._force_cancel()
            return await self._finalize(RunStatus.FAILED)
        finally:
            watcher.cancel()

        return await self._finalize()

    async def _loop_until_done(self) -> None:
        while True:
            if not self.cancelling:
                while self.ready and len(self.tasks) < self.config.concurrency:
                    _, nid = heapq.heappop(self.ready)
                    self._dispatch(nid)

            if not self.tasks:
                return

            try:
                message = await asyncio.wait_for(self.queue.get(), timeout=self._wait_budget())
            except TimeoutError:
                if self.cancelling:
                    logger.warning(
                        f"Run {self.run.id}: grace period expired with "
                        f"{len(self.tasks)} node(s) still running"
                    )
                    await self._force_cancel()
                    return
                self._begin_cancel("run timeout exceeded")
                continue

            self._handle(message)

    def _wait_budget(self) -> float | None:
        deadline = self._grace_deadline if self.cancelling else self._run_deadline
        if deadline is None:
            return None
        return max(deadline - self._loop.time(), 0.0)

    async def _watch_cancel(self) -> None:
        await self.run.cancel_event.wait()
        self.queue.put_nowait(CancelSignal())

    # -------------------------------------------------------------------
    # State transitions
    # -------------------------------------------------------------------

    def _mark_ready(self, nid: str) -> None:
        self.run.nodes[nid].status = NodeStatus.READY
        self.emit(RunEventType.NODE_READY, nid)
        heapq.heappush(self.ready, (self.validated.index[nid], nid))

    def _dispatch(self, nid: str) -> None:
        state = self.run.nodes[nid]
        state.status = NodeStatus.RUNNING
        state.started_at = _now()
        self.emit(RunEventType.NODE_STARTED, nid)

        node = self.validated.graph.get_node(nid)
        task = asyncio.create_task(
            self.scheduler.run_node(self.run, node, self._build_input(nid), self.queue),
            name=f"{self.run.id}:{nid}",
        )
        task.add_done_callback(lambda t, nid=nid: self._on_task_done(nid, t))
        self.tasks[nid] = task

    def _on_task_done(self, nid: str, task: asyncio.Task) -> None:
        # Workers report through the queue; an escaped exception is a bug in
        # the worker itself and must still unblock the coordinator.
        if task.cancelled() or task.exception() is None:
            return
        exc = task.exception()
        self.queue.put_nowait(NodeErrored(nid, str(exc), type(exc).__name__))

    def _build_input(self, nid: str) -> dict[str, Any]:
        connections = self.validated.upstream[nid]
        if not connections:
            return deepcopy(self.run.input_data)

        envelope: dict[str, Any] = {}
        for conn in connections:
            source = self.validated.graph.get_node(conn.source)
            output = self.run.nodes[conn.source].output
            if len(source.outputs) > 1:
                output = output.get(conn.source_port)
            envelope[conn.target_port] = deepcopy(output)
        return envelope

    def _handle(self, message: Any) -> None:
        if isinstance(message, CancelSignal):
            if not self.cancelling:
                self._begin_cancel(message.reason)
            return

        state = self.run.nodes[message.node_id]
        if state.status.is_terminal:
            return

        if isinstance(message, AttemptStarted):
            state.attempts = message.attempt
        elif isinstance(message, AttemptRetrying):
            self.emit(
                RunEventType.NODE_RETRYING,
                message.node_id,
                attempt=message.next_attempt,
                delay=message.delay,
                error=message.error,
                error_type=message.error_type,
            )
        elif isinstance(message, NodeFinished):
            self._on_succeeded(message.node_id, message.output)
        elif isinstance(message, NodeErrored):
            self._on_failed(message.node_id, message.error, message.error_type)
        elif isinstance(message, NodeCancelled):
            self._on_cancelled(message.node_id, message.reason)

    def _on_succeeded(self, nid: str, output: Any) -> None:
        state = self.run.nodes[nid]
        state.status = NodeStatus.SUCCEEDED
        state.output = output
        state.ended_at = _now()
        self.tasks.pop(nid, None)
        self.emit(
            RunEventType.NODE_SUCCEEDED, nid, output=deepcopy(output), attempts=state.attempts
        )

        if self.cancelling:
            return
        for child in self.validated.downstream[nid]:
            pending = self.pending_deps[child]
            pending.discard(nid)
            if not pending and self.run.nodes[child].status == NodeStatus.WAITING:
                self._mark_ready(child)

    def _on_failed(self, nid: str, error: str, error_type: str) -> None:
        state = self.run.nodes[nid]
        state.status = NodeStatus.FAILED
        state.error = error
        state.error_type = error_type
        state.ended_at = _now()
        self.tasks.pop(nid, None)
        logger.warning(f"Node '{nid}' failed after {state.attempts} attempt(s): {error}")
        self.emit(
            RunEventType.NODE_FAILED,
            nid,
            error=error,
            error_type=error_type,
            attempts=state.attempts,
        )

        reason = f"blocked by failed dependency '{nid}'"
        for descendant in self.validated.descendants(nid):
            if self.run.nodes[descendant].status == NodeStatus.WAITING:
                self._skip(descendant, reason)

    def _on_cancelled(self, nid: str, reason: str) -> None:
        state = self.run.nodes[nid]
        state.status = NodeStatus.CANCELLED
        state.skip_reason = reason
        state.ended_at = _now()
        self.tasks.pop(nid, None)
        self.emit(RunEventType.NODE_CANCELLED, nid, reason=reason, attempts=state.attempts)

    def _skip(self, nid: str, reason: str) -> None:
        state = self.run.nodes[nid]
        state.status = NodeStatus.SKIPPED
        state.skip_reason = reason
        state.ended_at = _now()
        self.emit(RunEventType.NODE_SKIPPED, nid, reason=reason)

    # -------------------------------------------------------------------
    # Cancellation
    # -------------------------------------------------------------------

    def _begin_cancel(self, reason: str) -> None:
        logger.info(f"Run {self.run.id}: {reason}, cancelling")
        self.cancelling = True
        self.cancel_reason = reason
        self.run.cancel_event.set()
        self._grace_deadline = self._loop.time() + self.config.cancel_grace_seconds

    async def _force_cancel(self) -> None:
        if not self.tasks:
            return
        tasks = list(self.tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        # Outcomes reported before the tasks died still count.
        while not self.queue.empty():
            message = self.queue.get_nowait()
            if not isinstance(message, CancelSignal):
                self._handle(message)

        for nid in list(self.tasks):
            self._on_cancelled(nid, "grace period expired")

    # -------------------------------------------------------------------
    # Completion
    # -------------------------------------------------------------------

    async def _finalize(self, status: RunStatus | None = None) -> RunSnapshot:
        run = self.run
        leftover_reason = RUN_CANCELLED_REASON if self.cancelling else "run aborted"
        for nid in self.validated.order:
            if not run.nodes[nid].status.is_terminal:
                self._skip(nid, leftover_reason)

        if status is None:
            if self.cancelling:
                status = RunStatus.CANCELLED
            elif any(s.status == NodeStatus.FAILED for s in run.nodes.values()):
                status = RunStatus.FAILED
            else:
                status = RunStatus.SUCCEEDED

        snapshot = run.finish(status)
        data: dict[str, Any] = {
            "status": status.value,
            "duration_seconds": snapshot.duration_seconds,
        }
        if self.cancelling:
            data["reason"] = self.cancel_reason
        self.emit(RunEventType.RUN_ENDED, **data)
        logger.info(f"Run {run.id} ended: {status}")

        if self.scheduler.log_store is not None:
            try:
                await self.scheduler.log_store.save_summary(run.id, snapshot.to_summary())
            except OSError as e:
                logger.warning(f"Failed to save summary for run {run.id}: {e}")
        return snapshot
