"""
Command-line interface for taskgraph.

Usage:
    taskgraph run spec.json
    taskgraph run spec.json --tools my_tools.py --concurrency 2 --timeout 60
    taskgraph validate spec.json

``run`` prints exactly one JSON line on stdout:
    {"event": "final", "data": {"success", "result", "artifacts", "logsCount"}}
or, when the spec cannot be loaded or the run cannot be driven:
    {"event": "error", "data": {"message": "..."}}
Logs go to stderr.
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from taskgraph.config import RuntimeConfig
from taskgraph.errors import GraphValidationError
from taskgraph.graph.executor import ExecutorConfig, FailurePolicy
from taskgraph.graph.orchestrator import Orchestrator
from taskgraph.graph.plan import Planner
from taskgraph.graph.task import TaskSpec
from taskgraph.graph.validator import GraphValidator
from taskgraph.observability.logging import configure_logging
from taskgraph.tools.builtin import default_registry

logger = logging.getLogger(__name__)


def _emit(event: str, data: dict[str, Any]) -> None:
    print(json.dumps({"event": event, "data": data}, default=str), flush=True)


def _load_spec(path: str) -> TaskSpec:
    try:
        return TaskSpec.from_file(path)
    except FileNotFoundError:
        raise ValueError(f"Spec file not found: {path}") from None
    except json.JSONDecodeError as e:
        raise ValueError(f"Spec file is not valid JSON: {e}") from None
    except ValidationError as e:
        raise ValueError(f"Spec file does not describe a task: {e.error_count()} error(s)\n{e}") from None


def cmd_run(args: argparse.Namespace) -> int:
    """Load a TaskSpec, run it with the default tools, print the final line."""
    configure_logging(level=args.log_level, format=args.log_format)

    try:
        spec = _load_spec(args.spec)
    except (ValueError, OSError) as e:
        _emit("error", {"message": str(e)})
        return 1

    try:
        runtime = RuntimeConfig()
        config = ExecutorConfig.from_runtime_config(runtime)
        if args.concurrency is not None:
            config.max_concurrency = max(1, args.concurrency)
        if args.failure_policy is not None:
            config.failure_policy = FailurePolicy(args.failure_policy)

        fixtures = args.fixtures or runtime.fixtures_dir
        tools = default_registry(fixtures_dir=fixtures, code_exec_enabled=runtime.code_exec_enabled)
        if args.tools:
            tools_path = Path(args.tools)
            if not tools_path.is_file():
                raise ValueError(f"Tools module not found: {tools_path}")
            tools.discover_from_module(tools_path)

        result = asyncio.run(Orchestrator(config).run(spec, tools, timeout=args.timeout))
    except Exception as e:
        logger.exception("Run failed")
        _emit("error", {"message": str(e) or type(e).__name__})
        return 1

    _emit("final", result.summary())
    return 0 if result.success else 1


def cmd_validate(args: argparse.Namespace) -> int:
    """Check a spec's graph and print its level plan."""
    configure_logging(level=args.log_level, format=args.log_format)

    try:
        spec = _load_spec(args.spec)
    except (ValueError, OSError) as e:
        _emit("error", {"message": str(e)})
        return 1

    errors = GraphValidator().collect(spec.graph)
    levels: list[list[str]] = []
    if not errors:
        try:
            levels = Planner().plan(spec.graph).groupings()
        except GraphValidationError as e:
            errors = [e.message]

    _emit("validate", {"valid": not errors, "errors": errors, "levels": levels})
    return 0 if not errors else 1


def _add_common_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("spec", help="Path to a TaskSpec JSON file")
    parser.add_argument(
        "--log-level",
        default="WARNING",
        help="Log level for stderr (DEBUG, INFO, WARNING, ERROR)",
    )
    parser.add_argument(
        "--log-format",
        default="auto",
        choices=["auto", "json", "human"],
        help="Log output format",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="taskgraph",
        description="taskgraph - Run self-extending task graphs",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Execute a TaskSpec")
    _add_common_options(run_parser)
    run_parser.add_argument("--tools", help="Python module with extra tools (TOOLS dict or @tool)")
    run_parser.add_argument("--concurrency", type=int, help="Max nodes running at once")
    run_parser.add_argument("--timeout", type=float, help="Overall run deadline in seconds")
    run_parser.add_argument(
        "--failure-policy",
        choices=[p.value for p in FailurePolicy],
        help="What a failed node does to the rest of the run",
    )
    run_parser.add_argument("--fixtures", help="Directory of documents for web.search")
    run_parser.set_defaults(func=cmd_run)

    validate_parser = subparsers.add_parser("validate", help="Validate a TaskSpec graph")
    _add_common_options(validate_parser)
    validate_parser.set_defaults(func=cmd_validate)

    return parser


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    sys.exit(args.func(args))


if __name__ == "__main__":
    main()
