"""
scraperflow - workflow execution engine for scraper pipelines.

Runs the graphs built on the pipeline canvas: nodes (HTTP requests, parsers,
filters, transformers, aggregators) joined by connections, executed as a
dependency DAG with bounded concurrency, retries, timeouts and cancellation.

Example:
    from scraperflow import GraphSpec, RunController, register_builtin_executors

    controller = RunController(register_builtin_executors())
    run_id = await controller.submit(GraphSpec.from_json_file("pipeline.json"))
    snapshot = await controller.wait(run_id)
"""

from scraperflow.config import EngineConfig, load_config
from scraperflow.credentials import SecretResolver
from scraperflow.errors import (
    ConfigurationError,
    CycleError,
    ExecutionError,
    ExecutorNotFoundError,
    FlowError,
    GraphValidationError,
    MissingSecretError,
    NodeCancelledError,
    NodeTimeoutError,
    RunNotFoundError,
)
from scraperflow.executors import ExecutionContext, ExecutorRegistry, NodeExecutor, register_builtin_executors
from scraperflow.graph import Connection, GraphSpec, NodeSpec, RetryPolicy, validate_graph
from scraperflow.runtime import (
    EventLog,
    NodeStatus,
    RunController,
    RunEvent,
    RunEventType,
    RunLogStore,
    RunSnapshot,
    RunStatus,
)

__version__ = "0.1.0"

__all__ = [
    # Graph
    "GraphSpec",
    "NodeSpec",
    "Connection",
    "RetryPolicy",
    "validate_graph",
    # Executors
    "NodeExecutor",
    "ExecutionContext",
    "ExecutorRegistry",
    "register_builtin_executors",
    # Secrets
    "SecretResolver",
    # Runtime
    "RunController",
    "RunSnapshot",
    "RunStatus",
    "NodeStatus",
    "EventLog",
    "RunEvent",
    "RunEventType",
    "RunLogStore",
    # Config
    "EngineConfig",
    "load_config",
    # Errors
    "FlowError",
    "GraphValidationError",
    "CycleError",
    "MissingSecretError",
    "ExecutionError",
    "NodeTimeoutError",
    "NodeCancelledError",
    "ConfigurationError",
    "ExecutorNotFoundError",
    "RunNotFoundError",
]
