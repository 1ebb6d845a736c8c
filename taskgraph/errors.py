"""
Error taxonomy for graph runs.

Every failure inside a run is captured as one of these and written into the
affected node's ExecutionRecord (via ``kind``) or the RunResult. Nothing here
is allowed to escape Orchestrator.run().
"""

from enum import StrEnum
from typing import Any


class ValidationReason(StrEnum):
    """Why a graph failed structural validation."""

    DUPLICATE_ID = "DuplicateId"
    DANGLING_EDGE = "DanglingEdge"
    CYCLE = "Cycle"


class MutationReason(StrEnum):
    """Why a proposed graph edit was rejected."""

    DUPLICATE_ID = "DuplicateId"
    DANGLING_EDGE = "DanglingEdge"
    CYCLE = "Cycle"
    UNKNOWN_NODE = "UnknownNode"
    UNKNOWN_EDGE = "UnknownEdge"
    STARTED_NODE = "StartedNode"  # edit touches a node that already started


class TaskGraphError(Exception):
    """Base class for all orchestration errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    @property
    def kind(self) -> str:
        """Name recorded in ExecutionRecord.error_type / RunResult.error_type."""
        return type(self).__name__

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": self.kind, "message": self.message}
        if self.details:
            data["details"] = self.details
        return data


class GraphValidationError(TaskGraphError):
    """Malformed graph: duplicate id, dangling edge or cycle."""

    def __init__(
        self,
        reason: ValidationReason,
        message: str,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.reason = reason

    @property
    def kind(self) -> str:
        return "ValidationError"

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["reason"] = str(self.reason)
        return data


class NotFoundError(TaskGraphError):
    """A name lookup failed."""


class ToolNotFoundError(NotFoundError):
    """No tool is registered under the requested name."""

    def __init__(self, tool_name: str, available: list[str] | None = None):
        available = sorted(available or [])
        super().__init__(
            f"Unknown tool: '{tool_name}'. Available tools: {available or 'none'}",
            {"tool": tool_name, "available": available},
        )
        self.tool_name = tool_name

    @property
    def kind(self) -> str:
        return "NotFoundError"


class ToolExecutionError(TaskGraphError):
    """A tool raised, or returned a result the caller could not use."""

    def __init__(self, tool_name: str, message: str, details: dict[str, Any] | None = None):
        super().__init__(f"Tool '{tool_name}' failed: {message}", details)
        self.tool_name = tool_name


class MutationError(TaskGraphError):
    """A proposed graph edit failed validation and was discarded."""

    def __init__(
        self,
        reason: MutationReason,
        message: str,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.reason = reason

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["reason"] = str(self.reason)
        return data


class TaskGraphTimeoutError(TaskGraphError):
    """A node or the whole run exceeded its deadline."""

    @property
    def kind(self) -> str:
        return "TimeoutError"


class NodeTimeoutError(TaskGraphTimeoutError):
    """A single node exceeded ``node_timeout_seconds``."""


class RunTimeoutError(TaskGraphTimeoutError):
    """The run exceeded its overall deadline."""


class CancellationError(TaskGraphError):
    """The caller aborted the run."""
