"""
Conduit Command Line Interface

Validation of workflow files and read-only access to stored executions.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import List, Optional

from conduit.config import get_config
from conduit.errors import ConfigurationError
from conduit.execution.history import aggregate_metrics, error_analysis
from conduit.execution.store import JsonFileExecutionStore
from conduit.observability import setup_logging
from conduit.registry import WorkflowRegistry
from conduit.triggers.schedule import ScheduleTriggerHandler
from conduit.types import ExecutionStatus, TriggerType


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="conduit",
        description="Conduit - workflow orchestration CLI",
    )
    parser.add_argument("--log-level", default="WARNING", help="Log level")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Validate command
    validate_parser = subparsers.add_parser("validate", help="Validate workflow definition files")
    validate_parser.add_argument("files", nargs="+", help="JSON files or directories")

    # Schedule command
    schedule_parser = subparsers.add_parser("schedule", help="Show upcoming scheduled fire times")
    schedule_parser.add_argument("file", help="Workflow definition file")
    schedule_parser.add_argument("--count", type=int, default=5, help="Fire times per trigger")

    # Executions command
    executions_parser = subparsers.add_parser("executions", help="List stored executions")
    executions_parser.add_argument("--store", help="Execution store directory")
    executions_parser.add_argument("--status", choices=[s.value for s in ExecutionStatus])
    executions_parser.add_argument("--use-case", dest="use_case", help="Use case id")
    executions_parser.add_argument("--workflow", help="Workflow id")
    executions_parser.add_argument("--limit", type=int, default=50)

    # Status command
    status_parser = subparsers.add_parser("status", help="Show one stored execution")
    status_parser.add_argument("execution_id", help="Execution id")
    status_parser.add_argument("--store", help="Execution store directory")

    # Metrics command
    metrics_parser = subparsers.add_parser("metrics", help="Aggregate execution metrics")
    metrics_parser.add_argument("--store", help="Execution store directory")
    metrics_parser.add_argument("--use-case", dest="use_case", help="Use case id")
    metrics_parser.add_argument("--workflow", help="Workflow id")
    metrics_parser.add_argument("--errors", action="store_true", help="Include error analysis")

    args = parser.parse_args(argv)
    setup_logging(log_level=args.log_level, log_format="console")

    if args.command is None:
        parser.print_help()
        return 0

    try:
        if args.command == "validate":
            return cmd_validate(args.files)

        if args.command == "schedule":
            return cmd_schedule(args.file, args.count)

        store = _open_store(args.store)

        if args.command == "executions":
            return asyncio.run(cmd_executions(
                store, args.status, args.use_case, args.workflow, args.limit,
            ))

        if args.command == "status":
            return asyncio.run(cmd_status(store, args.execution_id))

        if args.command == "metrics":
            return asyncio.run(cmd_metrics(store, args.use_case, args.workflow, args.errors))

    except ConfigurationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    parser.print_help()
    return 0


def _open_store(path: Optional[str]) -> JsonFileExecutionStore:
    directory = path or get_config().store_path
    if not directory:
        raise ConfigurationError("No execution store: pass --store or set CONDUIT_STORE_PATH")
    directory = Path(directory)
    if not directory.is_dir():
        raise ConfigurationError(f"Execution store not found: {directory}")
    return JsonFileExecutionStore(directory)


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def cmd_validate(paths: List[str]) -> int:
    """Validate definition files; exit status 1 when any is invalid."""
    failed = 0
    for name in paths:
        path = Path(name)
        registry = WorkflowRegistry()
        try:
            if path.is_dir():
                loaded = registry.load_directory(path)
            else:
                loaded = registry.load_file(path)
        except ConfigurationError as e:
            failed += 1
            print(f"INVALID {path}: {e.message}")
            for problem in e.problems:
                print(f"  - {problem}")
            continue

        for definition in loaded:
            print(f"OK {path}: {definition.id} ({len(definition.steps)} steps, {len(definition.triggers)} triggers)")

    return 1 if failed else 0


def cmd_schedule(path: str, count: int) -> int:
    """Print the next fire times of every scheduled trigger in a file."""
    registry = WorkflowRegistry()
    definitions = registry.load_file(path)

    result = []
    for definition in definitions:
        for trigger in definition.triggers:
            if trigger.type != TriggerType.SCHEDULED:
                continue
            times = ScheduleTriggerHandler.next_fire_times(trigger.schedule, trigger.timezone, count=count)
            result.append({
                "workflowId": definition.id,
                "cron": trigger.schedule,
                "timezone": trigger.timezone,
                "next": [t.isoformat() for t in times],
            })

    _print_json(result)
    return 0


async def cmd_executions(
    store: JsonFileExecutionStore,
    status: Optional[str],
    use_case_id: Optional[str],
    workflow_id: Optional[str],
    limit: int,
) -> int:
    """List stored executions, newest first."""
    executions = await store.list(
        workflow_id=workflow_id,
        use_case_id=use_case_id,
        status=ExecutionStatus(status) if status else None,
    )
    executions.reverse()
    _print_json([e.summary() for e in executions[:limit]])
    return 0


async def cmd_status(store: JsonFileExecutionStore, execution_id: str) -> int:
    """Print one execution document."""
    try:
        execution = await store.get(execution_id)
    except ValueError as e:
        raise ConfigurationError(str(e)) from e
    if execution is None:
        print(f"Error: execution not found: {execution_id}", file=sys.stderr)
        return 1
    _print_json(execution.to_dict())
    return 0


async def cmd_metrics(
    store: JsonFileExecutionStore,
    use_case_id: Optional[str],
    workflow_id: Optional[str],
    include_errors: bool,
) -> int:
    """Print aggregate metrics."""
    executions = await store.list(workflow_id=workflow_id, use_case_id=use_case_id)
    result = aggregate_metrics(executions)
    if include_errors:
        result["errors"] = error_analysis(executions)
    _print_json(result)
    return 0


if __name__ == "__main__":
    sys.exit(main())
