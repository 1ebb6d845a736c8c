"""
Observability: run-context propagation and structured logging.

- Run context (run_id, node_id...) propagates via ContextVar
- JSON log lines for machines, colourised lines for terminals
"""

from taskgraph.observability.logging import (
    clear_trace_context,
    configure_logging,
    get_trace_context,
    reset_trace_context,
    set_trace_context,
)

__all__ = [
    "configure_logging",
    "get_trace_context",
    "set_trace_context",
    "reset_trace_context",
    "clear_trace_context",
]
