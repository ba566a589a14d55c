"""
Command-line interface for scraperflow.

Usage:
    scraperflow run pipeline.json --input '{"query": "laptops"}'
    scraperflow run pipeline.json --secrets secrets.json --json
    scraperflow validate pipeline.json
    scraperflow status <run-id>
    scraperflow cancel <run-id>
    scraperflow list --status failed

Exit codes:
    0  run succeeded / graph valid / command done
    1  run failed
    2  graph invalid or unreadable, bad arguments
    3  run cancelled
    4  unknown run id
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any

from scraperflow.config import EngineConfig, load_config
from scraperflow.credentials import CompositeStorage, EnvVarStorage, InMemoryStorage, SecretResolver
from scraperflow.errors import GraphValidationError
from scraperflow.executors import register_builtin_executors
from scraperflow.graph import GraphSpec, collect_issues
from scraperflow.observability import configure_logging
from scraperflow.runtime import RunController, RunEvent, RunLogStore, RunStatus

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INVALID = 2
EXIT_CANCELLED = 3
EXIT_NOT_FOUND = 4

STATUS_EXIT_CODES = {
    RunStatus.SUCCEEDED: EXIT_OK,
    RunStatus.FAILED: EXIT_FAILED,
    RunStatus.CANCELLED: EXIT_CANCELLED,
}

CANCEL_POLL_SECONDS = 0.5


def _load_graph(path: str) -> GraphSpec | None:
    try:
        return GraphSpec.from_json_file(path)
    except (OSError, ValueError) as e:
        print(f"Error: cannot read graph {path}: {e}", file=sys.stderr)
        return None


def _format_event(event: RunEvent) -> str:
    parts = [f"[{event.seq:>3}] {event.type.value:<15}"]
    if event.node_id:
        parts.append(event.node_id)
    data = {k: v for k, v in event.data.items() if k != "output"}
    if data:
        parts.append(json.dumps(data, default=str))
    return " ".join(parts)


def _build_resolver(secrets_file: str | None) -> SecretResolver:
    env_storage = EnvVarStorage()
    if secrets_file is None:
        return SecretResolver(env_storage)
    return SecretResolver(
        CompositeStorage(InMemoryStorage.from_json_file(secrets_file), [env_storage])
    )


# ---------------------------------------------------------------------------
# run
# ---------------------------------------------------------------------------


def cmd_run(args: argparse.Namespace) -> int:
    graph = _load_graph(args.graph)
    if graph is None:
        return EXIT_INVALID

    try:
        input_data = json.loads(args.input) if args.input else {}
    except json.JSONDecodeError as e:
        print(f"Error: --input is not valid JSON: {e}", file=sys.stderr)
        return EXIT_INVALID
    if not isinstance(input_data, dict):
        print("Error: --input must be a JSON object", file=sys.stderr)
        return EXIT_INVALID

    try:
        resolver = _build_resolver(args.secrets)
    except (OSError, ValueError) as e:
        print(f"Error: cannot read secrets {args.secrets}: {e}", file=sys.stderr)
        return EXIT_INVALID

    try:
        config = load_config().with_overrides(
            concurrency=args.concurrency,
            run_timeout_seconds=args.timeout,
        )
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_INVALID
    if args.storage:
        config = config.with_overrides(storage_path=Path(args.storage))

    return asyncio.run(_run_graph(graph, input_data, resolver, config, args.json))


async def _run_graph(
    graph: GraphSpec,
    input_data: dict[str, Any],
    resolver: SecretResolver,
    config: EngineConfig,
    as_json: bool,
) -> int:
    store = RunLogStore(config.storage_path)
    controller = RunController(
        registry=register_builtin_executors(),
        resolver=resolver,
        config=config,
        log_store=store,
    )

    try:
        run_id = await controller.submit(graph, input_data)
    except GraphValidationError as e:
        print(str(e), file=sys.stderr)
        return EXIT_INVALID

    print(f"Run {run_id}", file=sys.stderr)
    watcher = asyncio.create_task(_watch_cancel_requests(controller, store, run_id))
    try:
        async for event in controller.subscribe(run_id):
            if as_json:
                print(json.dumps(event.to_dict(), default=str), flush=True)
            else:
                print(_format_event(event), flush=True)
        snapshot = await controller.wait(run_id)
    finally:
        watcher.cancel()
        await controller.shutdown()

    return STATUS_EXIT_CODES[snapshot.status]


async def _watch_cancel_requests(controller: RunController, store: RunLogStore, run_id: str) -> None:
    """Forward cancel requests written by ``scraperflow cancel`` in another process."""
    while True:
        await asyncio.sleep(CANCEL_POLL_SECONDS)
        if store.cancel_requested(run_id):
            await controller.cancel(run_id)
            return


# ---------------------------------------------------------------------------
# validate
# ---------------------------------------------------------------------------


def cmd_validate(args: argparse.Namespace) -> int:
    graph = _load_graph(args.graph)
    if graph is None:
        return EXIT_INVALID

    issues = collect_issues(graph)
    for issue in issues:
        print(f"{issue.severity.value:<7} {issue.code}: {issue.message}")

    errors = [issue for issue in issues if issue.is_error]
    if errors:
        print(f"✗ {len(errors)} error(s)", file=sys.stderr)
        return EXIT_INVALID
    print(f"✓ Graph '{graph.id}' is valid ({len(graph.nodes)} nodes)")
    return EXIT_OK


# ---------------------------------------------------------------------------
# status / cancel / list
# ---------------------------------------------------------------------------


def _store_from_args(args: argparse.Namespace) -> RunLogStore:
    if args.storage:
        return RunLogStore(Path(args.storage))
    return RunLogStore(load_config().storage_path)


def cmd_status(args: argparse.Namespace) -> int:
    store = _store_from_args(args)
    if not store.has_run(args.run_id):
        print(f"Error: run '{args.run_id}' not found", file=sys.stderr)
        return EXIT_NOT_FOUND

    summary = asyncio.run(store.load_summary(args.run_id))
    if summary is None:
        events = asyncio.run(store.load_events(args.run_id))
        summary = {"run_id": args.run_id, "status": "running", "events": len(events)}
    print(json.dumps(summary, indent=2, default=str))
    return EXIT_OK


def cmd_cancel(args: argparse.Namespace) -> int:
    store = _store_from_args(args)
    if not store.request_cancel(args.run_id):
        print(f"Error: run '{args.run_id}' not found", file=sys.stderr)
        return EXIT_NOT_FOUND
    print(f"Cancel requested for run {args.run_id}")
    return EXIT_OK


def cmd_list(args: argparse.Namespace) -> int:
    store = _store_from_args(args)
    summaries = asyncio.run(store.list_runs(status=args.status, limit=args.limit))
    if not summaries:
        print("No runs found")
        return EXIT_OK
    for summary in summaries:
        print(f"{summary['run_id']}  {summary.get('status', '?'):<10} {summary.get('graph_id', '')}")
    return EXIT_OK


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def register_commands(subparsers: argparse._SubParsersAction) -> None:
    run_parser = subparsers.add_parser("run", help="Execute a workflow graph")
    run_parser.add_argument("graph", help="Path to the graph JSON file")
    run_parser.add_argument("--input", help="Run input as a JSON object")
    run_parser.add_argument("--secrets", help="JSON file with secret records")
    run_parser.add_argument("--concurrency", type=int, help="Max nodes running at once")
    run_parser.add_argument("--timeout", type=float, help="Run timeout in seconds")
    run_parser.add_argument("--json", action="store_true", help="Print events as JSON lines")
    run_parser.set_defaults(func=cmd_run)

    validate_parser = subparsers.add_parser("validate", help="Validate a workflow graph")
    validate_parser.add_argument("graph", help="Path to the graph JSON file")
    validate_parser.set_defaults(func=cmd_validate)

    status_parser = subparsers.add_parser("status", help="Show a persisted run summary")
    status_parser.add_argument("run_id")
    status_parser.set_defaults(func=cmd_status)

    cancel_parser = subparsers.add_parser("cancel", help="Request cancellation of a run")
    cancel_parser.add_argument("run_id")
    cancel_parser.set_defaults(func=cmd_cancel)

    list_parser = subparsers.add_parser("list", help="List persisted runs")
    list_parser.add_argument("--status", default="", help="Only runs with this status")
    list_parser.add_argument("--limit", type=int, default=20)
    list_parser.set_defaults(func=cmd_list)

    for sub in (run_parser, status_parser, cancel_parser, list_parser):
        sub.add_argument("--storage", help="Run log directory (default from config)")


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="scraperflow",
        description="scraperflow - run scraper pipeline graphs",
    )
    parser.add_argument("--log-level", default="WARNING", help="Logging level")
    parser.add_argument(
        "--log-format", default="auto", choices=["auto", "json", "human"], help="Log format"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)
    register_commands(subparsers)

    args = parser.parse_args(argv)
    configure_logging(level=args.log_level, format=args.log_format)

    if hasattr(args, "func"):
        sys.exit(args.func(args))


if __name__ == "__main__":
    main()
