"""
Structured logging with automatic run context propagation.

Key Features:
- Plain logger.info() calls pick up the run context automatically
- ContextVar-based propagation: safe across threads and asyncio tasks
- Dual output modes: JSON for machines, colourised text for terminals

Architecture:
    Orchestrator.run() -> sets run_id, goal, task_type once
        | (propagated via ContextVar)
    LevelExecutor node task -> adds node_id, level (copied per asyncio task)
        | (propagated)
    Tool code -> logger.info("message") -> carries all of the above

Each asyncio task gets a copy of the context at creation time, so a node
setting its own ``node_id`` never leaks into sibling nodes of the level.
"""

import json
import logging
import os
import re
from contextvars import ContextVar, Token
from datetime import UTC, datetime
from typing import Any

trace_context: ContextVar[dict[str, Any] | None] = ContextVar("trace_context", default=None)

ANSI_ESCAPE_PATTERN = re.compile(r"\x1b\[[0-9;]*m|\033\[[0-9;]*m")

# LogRecord attributes copied into JSON entries when passed via ``extra``
_EXTRA_FIELDS = ("event", "node_id", "level_index", "tool", "latency_ms", "attempt")


def strip_ansi_codes(text: str) -> str:
    """Remove ANSI escape codes from text for clean JSON logging."""
    return ANSI_ESCAPE_PATTERN.sub("", text)


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Each line carries:
    - timestamp, level, logger, message
    - the current run context (run_id, goal, node_id...)
    - selected ``extra`` fields (event, node_id, tool, latency_ms...)
    """

    def format(self, record: logging.LogRecord) -> str:
        context = trace_context.get() or {}

        log_entry: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": strip_ansi_codes(record.getMessage()),
        }
        log_entry.update(context)

        for name in _EXTRA_FIELDS:
            value = getattr(record, name, None)
            if value is None:
                continue
            if isinstance(value, str):
                value = strip_ansi_codes(value)
            log_entry[name] = value

        if record.exc_info:
            log_entry["exception"] = strip_ansi_codes(self.formatException(record.exc_info))

        return json.dumps(log_entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    """
    Human-readable formatter for development.

    Prefixes each line with the short run id and the node being executed.
    """

    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        context = trace_context.get() or {}
        run_id = context.get("run_id", "")
        node_id = getattr(record, "node_id", None) or context.get("node_id", "")

        prefix_parts = []
        if run_id:
            prefix_parts.append(f"run:{run_id[:8]}")
        if node_id:
            prefix_parts.append(f"node:{node_id}")
        context_prefix = f"[{' | '.join(prefix_parts)}] " if prefix_parts else ""

        color = self.COLORS.get(record.levelname, "")
        level = f"{record.levelname:<8}"

        event = ""
        record_event = getattr(record, "event", None)
        if record_event is not None:
            event = f" [{record_event}]"

        line = f"{color}[{level}]{self.RESET} {context_prefix}{record.getMessage()}{event}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def configure_logging(
    level: str = "INFO",
    format: str = "auto",  # "json", "human", or "auto"
    stream: Any = None,
) -> None:
    """
    Configure logging for the process. Call once at startup (CLI, tests).

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format: "json", "human", or "auto" (JSON if LOG_FORMAT=json or
            ENV=production, else human)
        stream: Where log lines go (defaults to stderr, keeping stdout free
            for the CLI's JSON result line)
    """
    if format == "auto":
        log_format_env = os.getenv("LOG_FORMAT", "").lower()
        env = os.getenv("ENV", "development").lower()
        format = "json" if log_format_env == "json" or env == "production" else "human"

    if format == "json":
        formatter: logging.Formatter = StructuredFormatter()
        os.environ["NO_COLOR"] = "1"
    else:
        formatter = HumanReadableFormatter()

    handler = logging.StreamHandler(stream)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level.upper())

    if format == "json":
        # Route httpx/httpcore records through the root JSON handler
        for logger_name in ("httpx", "httpcore"):
            third_party = logging.getLogger(logger_name)
            third_party.handlers.clear()
            third_party.propagate = True


def set_trace_context(**kwargs: Any) -> Token:
    """
    Merge fields into the current run context.

    Called by the orchestrator (run_id, goal, task_type) and by the executor
    for each node task (node_id, level). Returns a token for
    reset_trace_context().
    """
    current = trace_context.get() or {}
    return trace_context.set({**current, **kwargs})


def reset_trace_context(token: Token) -> None:
    """Restore the context that was current before the matching set_trace_context()."""
    trace_context.reset(token)


def get_trace_context() -> dict:
    """Copy of the current run context; empty dict if none is set."""
    context = trace_context.get() or {}
    return context.copy()


def clear_trace_context() -> None:
    """Drop the current run context (test cleanup, new top-level run)."""
    trace_context.set(None)
