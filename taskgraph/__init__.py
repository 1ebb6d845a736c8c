"""taskgraph - a dynamic task-graph orchestration engine."""

from taskgraph.errors import (
    CancellationError,
    GraphValidationError,
    MutationError,
    NotFoundError,
    TaskGraphError,
    ToolExecutionError,
    ToolNotFoundError,
)
from taskgraph.graph import (
    EdgeSpec,
    ExecutorConfig,
    FailurePolicy,
    GraphSpec,
    MutationRequest,
    NodeSpec,
    Orchestrator,
    TaskSpec,
    run_orchestration,
)
from taskgraph.runner.context import CancellationToken, ExecContext
from taskgraph.runner.tool_registry import ToolRegistry, tool
from taskgraph.runtime.memory import RunMemory
from taskgraph.runtime.trace import Trace
from taskgraph.schemas.run import ExecutionRecord, NodeStatus, RunResult

__version__ = "0.1.0"

__all__ = [
    "TaskSpec",
    "GraphSpec",
    "NodeSpec",
    "EdgeSpec",
    "MutationRequest",
    "Orchestrator",
    "ExecutorConfig",
    "FailurePolicy",
    "run_orchestration",
    "ToolRegistry",
    "tool",
    "ExecContext",
    "CancellationToken",
    "RunMemory",
    "Trace",
    "ExecutionRecord",
    "NodeStatus",
    "RunResult",
    "TaskGraphError",
    "GraphValidationError",
    "NotFoundError",
    "ToolNotFoundError",
    "ToolExecutionError",
    "MutationError",
    "CancellationError",
]
