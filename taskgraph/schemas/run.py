"""
Run Schema - Per-node execution records and the final run result.

ExecutionRecords are the run's metrics: one per node, created when the node
is first scheduled (or at the end of the run for nodes never scheduled) and
frozen once they reach ``complete`` or ``error``.

Everything serializes with camelCase aliases to match the JSON the CLI
prints (``startedAt``, ``completedAt``, ``logsCount``...).
"""

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from taskgraph.graph.edge import GraphSpec


class NodeStatus(StrEnum):
    """Lifecycle status of a node."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETE = "complete"
    ERROR = "error"

    def is_terminal(self) -> bool:
        return self in (NodeStatus.COMPLETE, NodeStatus.ERROR)


class RecordFinalizedError(RuntimeError):
    """Raised on an attempt to modify a record that is already terminal."""


class ExecutionRecord(BaseModel):
    """
    Execution record for one node.

    State machine: pending -> running -> {complete | error}.

    Evaluation nodes stay ``running`` after their tool settles (with
    ``completed_at`` and ``output`` already stamped) until the mutation
    handler decides whether their proposed edit commits; only then is the
    record finalized. ``mutating`` is True during that interval.
    """

    node_id: str
    status: NodeStatus = NodeStatus.PENDING
    started_at: datetime | None = None
    completed_at: datetime | None = None
    output: str | None = None
    error: str | None = None
    error_type: str | None = None
    attempts: int = 0
    level: int | None = None
    elapsed_ms: int | None = None
    mutating: bool = False
    blocked_by: list[str] = Field(default_factory=list)

    # Filled from the node's last ``usage_*`` memory document, if a tool wrote one
    input_tokens: int | None = None
    output_tokens: int | None = None
    total_tokens: int | None = None

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal()

    def _ensure_open(self) -> None:
        if self.is_terminal:
            raise RecordFinalizedError(
                f"Record for node '{self.node_id}' is already {self.status}"
            )

    def _stamp_completion(self) -> None:
        if self.completed_at is None:
            self.completed_at = datetime.now(UTC)
        if self.started_at is not None:
            delta = self.completed_at - self.started_at
            self.elapsed_ms = int(delta.total_seconds() * 1000)

    def record_usage(self, usage: dict[str, Any]) -> None:
        """Copy token counts from a usage document (camelCase or snake_case keys)."""
        for field_name in ("input_tokens", "output_tokens", "total_tokens"):
            value = usage.get(to_camel(field_name), usage.get(field_name))
            if isinstance(value, int | float) and not isinstance(value, bool):
                setattr(self, field_name, int(value))
        if self.total_tokens is None and (self.input_tokens or self.output_tokens):
            self.total_tokens = (self.input_tokens or 0) + (self.output_tokens or 0)

    def mark_running(self, level: int | None = None) -> None:
        """Record the start of an attempt. ``started_at`` keeps the first attempt."""
        self._ensure_open()
        self.status = NodeStatus.RUNNING
        if self.started_at is None:
            self.started_at = datetime.now(UTC)
        if level is not None:
            self.level = level
        self.blocked_by = []
        self.attempts += 1

    def mark_complete(self, output: str) -> None:
        self._ensure_open()
        self.output = output
        self.status = NodeStatus.COMPLETE
        self.mutating = False
        self._stamp_completion()

    def mark_mutating(self, output: str) -> None:
        """Tool settled for an evaluation node; finalization is deferred."""
        self._ensure_open()
        self.output = output
        self.mutating = True
        self._stamp_completion()

    def finalize(self) -> None:
        """Commit a mutating evaluation node as complete."""
        self._ensure_open()
        self.status = NodeStatus.COMPLETE
        self.mutating = False
        self._stamp_completion()

    def mark_error(self, error: str, error_type: str) -> None:
        self._ensure_open()
        self.status = NodeStatus.ERROR
        self.error = error
        self.error_type = error_type
        self.mutating = False
        self._stamp_completion()


class RunResult(BaseModel):
    """Result of one orchestrated run."""

    success: bool
    result: str | None = None
    artifacts: dict[str, str] = Field(default_factory=dict)
    metrics: dict[str, ExecutionRecord] = Field(default_factory=dict)
    error: str | None = None
    error_type: str | None = None
    error_reason: str | None = None
    levels: list[list[str]] = Field(
        default_factory=list, description="Node ids per executed level, in execution order"
    )
    graph: GraphSpec = Field(default_factory=GraphSpec, description="Final live graph")
    logs_count: int = 0

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    @property
    def executed_nodes(self) -> list[str]:
        """Ids of nodes that were started, in level order."""
        return [
            nid
            for level in self.levels
            for nid in level
            if nid in self.metrics and self.metrics[nid].status != NodeStatus.PENDING
        ]

    def summary(self) -> dict[str, Any]:
        """The compact payload the CLI prints for a finished run."""
        return {
            "success": self.success,
            "result": self.result,
            "artifacts": self.artifacts,
            "logsCount": self.logs_count,
        }
