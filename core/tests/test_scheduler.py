"""
Tests for the Scheduler: DAG execution, data handoff, failure propagation,
retries, timeouts and cancellation.
"""

import asyncio
import random
from collections import defaultdict
from unittest.mock import AsyncMock

import pytest

from scraperflow.config import EngineConfig
from scraperflow.credentials import InMemoryStorage, SecretResolver
from scraperflow.errors import ExecutionError
from scraperflow.executors import ExecutorRegistry
from scraperflow.graph import Connection, GraphSpec, NodeSpec, RetryPolicy, validate_graph
from scraperflow.runtime import EventLog, NodeStatus, Run, RunEventType, RunStatus, Scheduler

NO_BACKOFF = RetryPolicy(max_retries=2, backoff_base_seconds=0, jitter=0)


class Recorder:
    """Registry of test executors that records every invocation."""

    def __init__(self):
        self.calls: dict[str, int] = defaultdict(int)
        self.inputs: dict[str, dict] = {}
        self.running = 0
        self.max_running = 0
        self.registry = ExecutorRegistry()
        self.registry.register("echo", self.echo)
        self.registry.register("fail", self.fail)
        self.registry.register("fatal", self.fatal)
        self.registry.register("flaky", self.flaky)
        self.registry.register("slow", self.slow)
        self.registry.register("stubborn", self.stubborn)
        self.registry.register("cooperative", self.cooperative)
        self.registry.register("split", self.split)

    async def echo(self, input, config, secrets, ctx):
        self.calls[ctx.node_id] += 1
        self.inputs[ctx.node_id] = input
        return {"node": ctx.node_id, "input": input, "secrets": secrets}

    async def fail(self, input, config, secrets, ctx):
        self.calls[ctx.node_id] += 1
        raise ExecutionError(f"{ctx.node_id} broke")

    async def fatal(self, input, config, secrets, ctx):
        self.calls[ctx.node_id] += 1
        raise ExecutionError("bad data", retryable=False)

    async def flaky(self, input, config, secrets, ctx):
        self.calls[ctx.node_id] += 1
        if ctx.attempt < config.get("succeed_on", 2):
            raise RuntimeError("transient")
        return ctx.attempt

    async def slow(self, input, config, secrets, ctx):
        self.calls[ctx.node_id] += 1
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        try:
            await asyncio.sleep(config.get("seconds", 0.05))
        finally:
            self.running -= 1
        return ctx.node_id

    async def stubborn(self, input, config, secrets, ctx):
        """Ignores cancellation entirely."""
        self.calls[ctx.node_id] += 1
        await asyncio.sleep(10)

    async def cooperative(self, input, config, secrets, ctx):
        self.calls[ctx.node_id] += 1
        await ctx.wait_cancelled()
        ctx.raise_if_cancelled()

    async def split(self, input, config, secrets, ctx):
        return {"left": [1, 2], "right": {"k": "v"}}


def _node(node_id: str, type: str = "echo", **kwargs) -> NodeSpec:
    return NodeSpec(id=node_id, type=type, **kwargs)


def _chain(*nodes: NodeSpec) -> GraphSpec:
    connections = [
        Connection(source=a.id, target=b.id) for a, b in zip(nodes, nodes[1:], strict=False)
    ]
    return GraphSpec(nodes=list(nodes), connections=connections)


async def _execute(
    graph: GraphSpec,
    recorder: Recorder,
    input_data: dict | None = None,
    secrets: dict[str, str] | None = None,
    **config,
):
    log = EventLog()
    scheduler = Scheduler(
        recorder.registry,
        SecretResolver(InMemoryStorage.from_values(secrets or {})),
        log,
        EngineConfig(**config),
    )
    run = Run(validate_graph(graph), input_data)
    snapshot = await scheduler.run(run)
    return snapshot, log.history(run.id), run


def _types(events, node_id=None):
    return [e.type for e in events if node_id is None or e.node_id == node_id]


# ---------------------------------------------------------------------------
# Happy paths
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_chain_all_succeed():
    recorder = Recorder()
    graph = _chain(_node("a", inputs=[]), _node("b"), _node("c"))

    snapshot, events, _ = await _execute(graph, recorder)

    assert snapshot.status == RunStatus.SUCCEEDED
    assert all(n.status == NodeStatus.SUCCEEDED for n in snapshot.nodes.values())
    assert events[0].type == RunEventType.RUN_STARTED
    assert events[-1].type == RunEventType.RUN_ENDED
    assert events[-1].data["status"] == "succeeded"
    assert [e.seq for e in events] == list(range(1, len(events) + 1))


@pytest.mark.asyncio
async def test_dependency_started_only_after_upstream_succeeded():
    recorder = Recorder()
    graph = _chain(_node("a", inputs=[]), _node("b"), _node("c"))

    _, events, _ = await _execute(graph, recorder)

    def seq_of(event_type, node_id):
        return next(e.seq for e in events if e.type == event_type and e.node_id == node_id)

    assert seq_of(RunEventType.NODE_SUCCEEDED, "a") < seq_of(RunEventType.NODE_STARTED, "b")
    assert seq_of(RunEventType.NODE_SUCCEEDED, "b") < seq_of(RunEventType.NODE_STARTED, "c")
    assert _types(events, "b") == [
        RunEventType.NODE_READY,
        RunEventType.NODE_STARTED,
        RunEventType.NODE_SUCCEEDED,
    ]


@pytest.mark.asyncio
async def test_no_connections_all_ready_at_once():
    recorder = Recorder()
    graph = GraphSpec(nodes=[_node(n, "slow", inputs=[]) for n in "abcd"])

    snapshot, events, _ = await _execute(graph, recorder, concurrency=4)

    ready = [e.node_id for e in events if e.type == RunEventType.NODE_READY]
    first_start = next(e.seq for e in events if e.type == RunEventType.NODE_STARTED)
    assert ready == ["a", "b", "c", "d"]
    assert all(
        e.seq < first_start for e in events if e.type == RunEventType.NODE_READY
    )
    assert snapshot.status == RunStatus.SUCCEEDED
    assert recorder.max_running == 4


@pytest.mark.asyncio
async def test_concurrency_limit():
    recorder = Recorder()
    graph = GraphSpec(nodes=[_node(f"n{i}", "slow", inputs=[]) for i in range(6)])

    snapshot, _, _ = await _execute(graph, recorder, concurrency=2)

    assert snapshot.status == RunStatus.SUCCEEDED
    assert recorder.max_running == 2


@pytest.mark.asyncio
async def test_data_flows_along_ports():
    recorder = Recorder()
    graph = GraphSpec(
        nodes=[
            _node("split", "split", inputs=[], outputs=["left", "right"]),
            _node("merge", inputs=["l", "r"]),
        ],
        connections=[
            Connection(source="split", source_port="left", target="merge", target_port="l"),
            Connection(source="split", source_port="right", target="merge", target_port="r"),
        ],
    )

    snapshot, _, _ = await _execute(graph, recorder)

    assert snapshot.status == RunStatus.SUCCEEDED
    assert recorder.inputs["merge"] == {"l": [1, 2], "r": {"k": "v"}}


@pytest.mark.asyncio
async def test_source_nodes_receive_run_input_copy():
    recorder = Recorder()
    input_data = {"query": "laptops"}
    graph = _chain(_node("a", inputs=[]), _node("b"))

    snapshot, _, _ = await _execute(graph, recorder, input_data=input_data)

    assert recorder.inputs["a"] == {"query": "laptops"}
    assert recorder.inputs["b"] == {"input": snapshot.nodes["a"].output}
    assert recorder.inputs["a"] is not input_data


@pytest.mark.asyncio
async def test_subscriber_mutation_does_not_leak_downstream():
    recorder = Recorder()
    recorder.registry.register("value", lambda input, config, secrets, ctx: {"v": 1})
    graph = GraphSpec(
        nodes=[
            _node("a", "value", inputs=[]),
            _node("blocker", "slow", inputs=[], config={"seconds": 0.05}),
            _node("b"),
        ],
        connections=[Connection(source="a", target="b")],
    )
    log = EventLog()
    scheduler = Scheduler(recorder.registry, event_log=log, config=EngineConfig(concurrency=1))
    run = Run(validate_graph(graph))
    log.open(run.id)

    async def tamper():
        async for event in log.subscribe(run.id):
            if event.type == RunEventType.NODE_SUCCEEDED and event.node_id == "a":
                event.data["output"]["v"] = 999

    subscriber = asyncio.create_task(tamper())
    snapshot = await scheduler.run(run)
    await asyncio.wait_for(subscriber, timeout=1)

    assert snapshot.status == RunStatus.SUCCEEDED
    assert recorder.inputs["b"] == {"input": {"v": 1}}
    assert snapshot.nodes["a"].output == {"v": 1}


@pytest.mark.asyncio
async def test_snapshot_output_is_a_copy():
    recorder = Recorder()
    graph = _chain(_node("a", inputs=[]), _node("b"))
    snapshot, _, run = await _execute(graph, recorder)

    snapshot.nodes["a"].output["node"] = "edited"
    assert run.nodes["a"].output["node"] == "a"


@pytest.mark.asyncio
async def test_executor_mutation_does_not_leak_downstream():
    recorder = Recorder()

    async def mutate(input, config, secrets, ctx):
        input["input"]["node"] = "tampered"
        return "ok"

    recorder.registry.register("mutate", mutate)
    graph = GraphSpec(
        nodes=[_node("a", inputs=[]), _node("m1", "mutate"), _node("b")],
        connections=[Connection(source="a", target="m1"), Connection(source="a", target="b")],
    )

    snapshot, _, _ = await _execute(graph, recorder)

    assert snapshot.nodes["a"].output["node"] == "a"
    assert recorder.inputs["b"]["input"]["node"] == "a"


@pytest.mark.asyncio
async def test_secrets_injected():
    recorder = Recorder()
    graph = GraphSpec(nodes=[_node("a", inputs=[], secret_refs={"apiKey": "secret-1"})])

    snapshot, _, _ = await _execute(graph, recorder, secrets={"secret-1": "sk-test"})

    assert snapshot.nodes["a"].output["secrets"] == {"apiKey": "sk-test"}


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_failure_skips_dependents_only():
    recorder = Recorder()
    graph = GraphSpec(
        nodes=[_node("a", "fatal", inputs=[]), _node("b"), _node("c", inputs=[])],
        connections=[Connection(source="a", target="b")],
    )

    snapshot, events, _ = await _execute(graph, recorder)

    assert snapshot.status == RunStatus.FAILED
    assert snapshot.nodes["a"].status == NodeStatus.FAILED
    assert snapshot.nodes["b"].status == NodeStatus.SKIPPED
    assert snapshot.nodes["b"].skip_reason == "blocked by failed dependency 'a'"
    assert snapshot.nodes["c"].status == NodeStatus.SUCCEEDED
    assert recorder.calls["b"] == 0
    failed = next(e for e in events if e.type == RunEventType.NODE_FAILED)
    assert failed.data["error_type"] == "ExecutionError"


@pytest.mark.asyncio
async def test_retries_exhausted():
    recorder = Recorder()
    graph = _chain(_node("a", inputs=[]), _node("b", "fail", retry=NO_BACKOFF), _node("c"))

    snapshot, events, _ = await _execute(graph, recorder)

    assert recorder.calls["b"] == 3
    assert snapshot.nodes["b"].status == NodeStatus.FAILED
    assert snapshot.nodes["b"].attempts == 3
    assert snapshot.nodes["c"].status == NodeStatus.SKIPPED
    assert snapshot.status == RunStatus.FAILED
    retrying = [e.data["attempt"] for e in events if e.type == RunEventType.NODE_RETRYING]
    assert retrying == [2, 3]


@pytest.mark.asyncio
async def test_retry_then_succeed():
    recorder = Recorder()
    graph = GraphSpec(
        nodes=[_node("a", "flaky", inputs=[], config={"succeed_on": 2}, retry=NO_BACKOFF)]
    )

    snapshot, _, _ = await _execute(graph, recorder)

    assert snapshot.status == RunStatus.SUCCEEDED
    assert snapshot.nodes["a"].output == 2
    assert snapshot.nodes["a"].attempts == 2


@pytest.mark.asyncio
async def test_non_retryable_error_not_retried():
    recorder = Recorder()
    graph = GraphSpec(nodes=[_node("a", "fatal", inputs=[], retry=NO_BACKOFF)])

    snapshot, _, _ = await _execute(graph, recorder)

    assert recorder.calls["a"] == 1
    assert snapshot.nodes["a"].status == NodeStatus.FAILED


@pytest.mark.asyncio
async def test_engine_default_retry_applies():
    recorder = Recorder()
    graph = GraphSpec(nodes=[_node("a", "fail", inputs=[])])

    snapshot, _, _ = await _execute(
        graph, recorder, default_max_retries=1, backoff_base_seconds=0, jitter=0
    )

    assert recorder.calls["a"] == 2
    assert snapshot.status == RunStatus.FAILED


@pytest.mark.asyncio
async def test_missing_secret_fails_without_invoking_executor():
    recorder = Recorder()
    graph = _chain(
        _node("a", inputs=[], secret_refs={"apiKey": "nope"}, retry=NO_BACKOFF), _node("b")
    )

    snapshot, _, _ = await _execute(graph, recorder)

    assert recorder.calls["a"] == 0
    assert snapshot.nodes["a"].status == NodeStatus.FAILED
    assert snapshot.nodes["a"].error_type == "MissingSecretError"
    assert snapshot.nodes["b"].status == NodeStatus.SKIPPED


@pytest.mark.asyncio
async def test_missing_secret_retried_when_policy_allows():
    recorder = Recorder()
    policy = RetryPolicy(max_retries=1, backoff_base_seconds=0, retry_on_missing_secret=True)
    graph = GraphSpec(nodes=[_node("a", inputs=[], secret_refs={"k": "nope"}, retry=policy)])

    snapshot, events, _ = await _execute(graph, recorder)

    assert snapshot.nodes["a"].attempts == 2
    assert RunEventType.NODE_RETRYING in _types(events)


@pytest.mark.asyncio
async def test_unknown_type_fails_node_not_run():
    recorder = Recorder()
    graph = GraphSpec(nodes=[_node("a", "No Such Type", inputs=[]), _node("b", inputs=[])])

    snapshot, _, _ = await _execute(graph, recorder)

    assert snapshot.nodes["a"].status == NodeStatus.FAILED
    assert snapshot.nodes["a"].error_type == "ExecutorNotFoundError"
    assert snapshot.nodes["b"].status == NodeStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_bad_config_is_not_retried():
    from pydantic import BaseModel

    class StrictConfig(BaseModel):
        limit: int

    recorder = Recorder()
    recorder.registry.register("typed", recorder.echo, config_model=StrictConfig)
    graph = GraphSpec(nodes=[_node("a", "typed", inputs=[], config={}, retry=NO_BACKOFF)])

    snapshot, _, _ = await _execute(graph, recorder)

    assert snapshot.nodes["a"].error_type == "ConfigurationError"
    assert snapshot.nodes["a"].attempts == 1


@pytest.mark.asyncio
async def test_multi_output_node_must_return_dict():
    recorder = Recorder()
    graph = GraphSpec(
        nodes=[_node("a", "flaky", inputs=[], outputs=["x", "y"], config={"succeed_on": 1})]
    )

    snapshot, _, _ = await _execute(graph, recorder)

    assert snapshot.nodes["a"].status == NodeStatus.FAILED
    assert snapshot.nodes["a"].error_type == "ExecutionError"
    assert "expected a dict keyed by port" in snapshot.nodes["a"].error


# ---------------------------------------------------------------------------
# Timeouts and cancellation
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_node_timeout_is_retryable():
    recorder = Recorder()
    policy = RetryPolicy(max_retries=1, backoff_base_seconds=0)
    graph = GraphSpec(
        nodes=[_node("a", "stubborn", inputs=[], timeout_seconds=0.01, retry=policy)]
    )

    snapshot, _, _ = await _execute(graph, recorder)

    assert recorder.calls["a"] == 2
    assert snapshot.nodes["a"].error_type == "NodeTimeoutError"


@pytest.mark.asyncio
async def test_cancel_before_start_skips_everything():
    recorder = Recorder()
    graph = _chain(_node("a", inputs=[]), _node("b"))
    log = EventLog()
    scheduler = Scheduler(recorder.registry, event_log=log)
    run = Run(validate_graph(graph))
    run.request_cancel()

    snapshot = await scheduler.run(run)

    assert snapshot.status == RunStatus.CANCELLED
    assert all(n.status == NodeStatus.SKIPPED for n in snapshot.nodes.values())
    events = log.history(run.id)
    assert events[0].type == RunEventType.RUN_STARTED
    assert events[-1].type == RunEventType.RUN_ENDED
    assert events[-1].data["status"] == "cancelled"
    assert recorder.calls == {}


@pytest.mark.asyncio
async def test_cancel_in_flight_cooperative_node():
    recorder = Recorder()
    graph = _chain(_node("a", "cooperative", inputs=[]), _node("b"))
    log = EventLog()
    scheduler = Scheduler(recorder.registry, event_log=log)
    run = Run(validate_graph(graph))

    task = asyncio.create_task(scheduler.run(run))
    await asyncio.sleep(0.05)
    run.request_cancel()
    snapshot = await asyncio.wait_for(task, timeout=2)

    assert snapshot.status == RunStatus.CANCELLED
    assert snapshot.nodes["a"].status == NodeStatus.CANCELLED
    assert snapshot.nodes["b"].status == NodeStatus.SKIPPED
    assert snapshot.nodes["b"].skip_reason == "run cancelled"
    assert RunEventType.NODE_CANCELLED in _types(log.history(run.id), "a")


@pytest.mark.asyncio
async def test_cancel_force_cancels_after_grace_period():
    recorder = Recorder()
    graph = GraphSpec(nodes=[_node("a", "stubborn", inputs=[])])
    scheduler = Scheduler(recorder.registry, config=EngineConfig(cancel_grace_seconds=0.05))
    run = Run(validate_graph(graph))

    task = asyncio.create_task(scheduler.run(run))
    await asyncio.sleep(0.02)
    run.request_cancel()
    snapshot = await asyncio.wait_for(task, timeout=2)

    assert snapshot.status == RunStatus.CANCELLED
    assert snapshot.nodes["a"].status == NodeStatus.CANCELLED
    assert snapshot.nodes["a"].skip_reason == "grace period expired"


@pytest.mark.asyncio
async def test_cancel_interrupts_backoff():
    recorder = Recorder()
    policy = RetryPolicy(max_retries=5, backoff_base_seconds=30, jitter=0)
    graph = GraphSpec(nodes=[_node("a", "fail", inputs=[], retry=policy)])
    scheduler = Scheduler(recorder.registry)
    run = Run(validate_graph(graph))

    task = asyncio.create_task(scheduler.run(run))
    await asyncio.sleep(0.05)
    run.request_cancel()
    snapshot = await asyncio.wait_for(task, timeout=2)

    assert recorder.calls["a"] == 1
    assert snapshot.nodes["a"].status == NodeStatus.CANCELLED


@pytest.mark.asyncio
async def test_run_timeout_cancels_run():
    recorder = Recorder()
    graph = GraphSpec(nodes=[_node("a", "cooperative", inputs=[])])

    snapshot, events, _ = await _execute(graph, recorder, run_timeout_seconds=0.05)

    assert snapshot.status == RunStatus.CANCELLED
    assert events[-1].data["reason"] == "run timeout exceeded"


@pytest.mark.asyncio
async def test_node_in_flight_may_finish_during_grace():
    recorder = Recorder()
    graph = _chain(_node("a", "slow", inputs=[], config={"seconds": 0.1}), _node("b"))
    scheduler = Scheduler(recorder.registry)
    run = Run(validate_graph(graph))

    task = asyncio.create_task(scheduler.run(run))
    await asyncio.sleep(0.02)
    run.request_cancel()
    snapshot = await asyncio.wait_for(task, timeout=2)

    assert snapshot.status == RunStatus.CANCELLED
    assert snapshot.nodes["a"].status == NodeStatus.SUCCEEDED
    assert snapshot.nodes["b"].status == NodeStatus.SKIPPED


@pytest.mark.asyncio
async def test_backoff_delays_use_seeded_jitter(monkeypatch):
    monkeypatch.setattr(Scheduler, "_backoff", staticmethod(AsyncMock(return_value=False)))
    policy = RetryPolicy(max_retries=2, backoff_base_seconds=1, jitter=0.5)
    graph = GraphSpec(nodes=[_node("a", "fail", inputs=[], retry=policy)])

    _, first, _ = await _execute(graph, Recorder(), seed=7)
    _, second, _ = await _execute(graph, Recorder(), seed=7)

    def delays(events):
        return [e.data["delay"] for e in events if e.type == RunEventType.NODE_RETRYING]

    rng = random.Random("7:a")
    expected = [policy.delay_for(1, rng), policy.delay_for(2, rng)]
    assert delays(first) == delays(second) == expected
    assert 0.5 <= expected[0] <= 1.5
