"""Execution context handed to every tool call, and the run's cancellation token."""

import asyncio
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from taskgraph.errors import CancellationError, TaskGraphError
from taskgraph.runtime.memory import NodeMemory, RunMemory
from taskgraph.runtime.trace import Trace

if TYPE_CHECKING:
    from taskgraph.graph.task import TaskSpec
    from taskgraph.storage.context_store import ContextStore


class CancellationToken:
    """
    Shared abort signal for one run.

    One token is threaded into every ExecContext, so a single ``cancel()``
    reaches all in-flight tool calls. Tools either poll ``cancelled`` /
    ``raise_if_cancelled()`` or await ``wait()``; the executor also races
    every tool call against ``wait()`` and abandons the call on cancel.

    Create it inside the running loop, or at least before awaiting ``wait()``.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str = ""
        self._error_type: type[TaskGraphError] = CancellationError

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(
        self,
        reason: str = "Run cancelled by caller",
        error_type: type[TaskGraphError] = CancellationError,
    ) -> None:
        """Set the signal. Only the first call decides reason and error type."""
        if not self._event.is_set():
            self.reason = reason
            self._error_type = error_type
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    def as_error(self) -> TaskGraphError:
        """The error in-flight nodes are failed with."""
        return self._error_type(self.reason or "Run cancelled")

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise self.as_error()


@dataclass
class ExecContext:
    """
    What a tool can see while it runs on behalf of a node.

    ``memory`` is namespaced to ``node_id``; ``trace`` is the run's shared
    append-only log.
    """

    node_id: str
    memory: NodeMemory
    trace: Trace
    cancel_token: CancellationToken
    task_spec: "TaskSpec | None" = None
    context_store: "ContextStore | None" = None
    extras: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def for_node(
        cls,
        node_id: str,
        memory: RunMemory,
        trace: Trace,
        cancel_token: CancellationToken,
        task_spec: "TaskSpec | None" = None,
        context_store: "ContextStore | None" = None,
    ) -> "ExecContext":
        return cls(
            node_id=node_id,
            memory=memory.for_node(node_id),
            trace=trace,
            cancel_token=cancel_token,
            task_spec=task_spec,
            context_store=context_store,
        )

    @property
    def cancelled(self) -> bool:
        return self.cancel_token.cancelled

    def raise_if_cancelled(self) -> None:
        self.cancel_token.raise_if_cancelled()
