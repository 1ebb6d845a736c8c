"""
Level Executor - Runs one planned level of the task graph.

For every node of the level the executor:
1. Gates it: all predecessors must be ``complete`` (see FailurePolicy)
2. Resolves ``{{channel:<id>.last}}`` / ``{{topic}}`` templates in prompt and config
3. Picks the tool for the node's kind and invokes it through the registry
4. Moves the node's ExecutionRecord pending -> running -> complete | error
5. Copies token counts from the node's last ``usage_*`` memory document

Nodes of one level run as concurrent asyncio tasks, bounded by a semaphore
that is shared by every level of the run. Evaluation nodes are executed
like any other node, but their output is parsed into a MutationRequest
and handed back to the orchestrator instead of being finalized here.
"""

import asyncio
import json
import logging
import traceback
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from taskgraph.config import RuntimeConfig
from taskgraph.errors import (
    NodeTimeoutError,
    TaskGraphError,
    ToolExecutionError,
)
from taskgraph.graph.edge import GraphSpec
from taskgraph.graph.mutation import (
    MutationProposal,
    MutationRequest,
    mutation_request_schema,
    parse_mutation_request,
)
from taskgraph.graph.node import NodeKind, NodeSpec
from taskgraph.graph.plan import Level
from taskgraph.graph.task import TaskSpec
from taskgraph.graph.templating import TemplateResolver
from taskgraph.observability.logging import set_trace_context
from taskgraph.runner.context import CancellationToken, ExecContext
from taskgraph.runner.tool_registry import ToolRegistry
from taskgraph.runtime.memory import RunMemory
from taskgraph.runtime.trace import Trace
from taskgraph.schemas.run import ExecutionRecord, NodeStatus
from taskgraph.storage.context_store import ContextStore

logger = logging.getLogger(__name__)

EVAL_TOOL_NAME = "eval_orchestrator"
EVAL_DESCRIPTION = "Return pass boolean and optional nodes/edges to add or remove"
USAGE_DOC_PREFIX = "usage_"

DEFAULT_KIND_TOOLS: dict[str, str] = {
    NodeKind.SEARCH: "web.search",
    NodeKind.FETCH: "web.fetch",
    NodeKind.ANSWER: "answer",
    NodeKind.SUMMARIZE: "summarize",
    NodeKind.STRUCTURED: "structured",
    NodeKind.EVAL: "structured",
    NodeKind.CODE_EXEC: "code.exec",
    NodeKind.CUSTOM: "code.exec",
}

# Config keys that steer dispatch and are never forwarded as tool args
_RESERVED_CONFIG_KEYS = {"tool", "payload", "terminal"}


class FailurePolicy(StrEnum):
    """What a node error does to the rest of the run."""

    SKIP_DEPENDENTS = "skip_dependents"  # block direct and transitive dependents only
    CONTINUE = "continue"  # run dependents anyway, failed outputs resolve to ""
    HALT = "halt"  # stop scheduling once any node errors


@dataclass
class ExecutorConfig:
    """Configuration for level execution behavior."""

    max_concurrency: int = 4
    node_timeout_seconds: float | None = None
    failure_policy: FailurePolicy = FailurePolicy.SKIP_DEPENDENTS

    # Retries only cover ToolExecutionError and node timeouts.
    # Backoff: retry_backoff_seconds * 2^(retry - 1) -> 1s, 2s, 4s...
    max_retries: int = 0
    retry_backoff_seconds: float = 1.0

    kind_tools: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_KIND_TOOLS))
    default_tool: str = "answer"

    def __post_init__(self) -> None:
        if self.max_concurrency < 1:
            raise ValueError(f"max_concurrency must be >= 1, got {self.max_concurrency}")
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")
        self.failure_policy = FailurePolicy(self.failure_policy)

    @classmethod
    def from_runtime_config(cls, runtime: RuntimeConfig | None = None) -> "ExecutorConfig":
        """Build from ~/.taskgraph/configuration.json and TASKGRAPH_* env vars."""
        runtime = runtime or RuntimeConfig()
        return cls(
            max_concurrency=runtime.max_concurrency,
            node_timeout_seconds=runtime.node_timeout_seconds,
            failure_policy=FailurePolicy(runtime.failure_policy),
            max_retries=runtime.max_retries,
            retry_backoff_seconds=runtime.retry_backoff_seconds,
        )

    def tool_for(self, node: NodeSpec) -> str:
        """Tool name a node is dispatched to. ``config["tool"]`` wins for any kind."""
        override = node.config.get("tool")
        if override:
            return str(override)
        return self.kind_tools.get(node.kind, self.default_tool)


@dataclass
class LevelOutcome:
    """Result of executing one level."""

    level: Level
    started: list[str] = field(default_factory=list)
    completed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    blocked: list[str] = field(default_factory=list)
    not_started: list[str] = field(default_factory=list)
    proposals: list[MutationProposal] = field(default_factory=list)

    @property
    def has_failures(self) -> bool:
        return bool(self.failed)


def _as_output(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str)


class LevelExecutor:
    """
    Executes levels of a task graph.

    Example:
        executor = LevelExecutor(tools=registry, trace=trace, memory=memory)
        outcome = await executor.execute_level(
            level, graph, records, outputs, task_spec, cancel_token
        )
    """

    def __init__(
        self,
        tools: ToolRegistry,
        trace: Trace,
        memory: RunMemory,
        config: ExecutorConfig | None = None,
        context_store: ContextStore | None = None,
    ):
        self.tools = tools
        self.trace = trace
        self.memory = memory
        self.config = config or ExecutorConfig()
        self.context_store = context_store
        self._semaphore = asyncio.Semaphore(self.config.max_concurrency)

    # === GATING ===

    def _unsatisfied_predecessors(
        self, node_id: str, graph: GraphSpec, records: dict[str, ExecutionRecord]
    ) -> list[str]:
        """Predecessors that do not let this node start under the failure policy."""
        unsatisfied = []
        for pred in graph.predecessors(node_id):
            record = records.get(pred)
            status = record.status if record else NodeStatus.PENDING
            if status == NodeStatus.COMPLETE:
                continue
            if status == NodeStatus.ERROR and self.config.failure_policy == FailurePolicy.CONTINUE:
                continue
            unsatisfied.append(pred)
        return unsatisfied

    # === ARGUMENTS ===

    def build_args(self, node: NodeSpec, resolver: TemplateResolver) -> dict[str, Any]:
        """Resolve templates and build the tool args for a node."""
        prompt = resolver.resolve_text(node.prompt)
        config = {
            k: resolver.resolve_value(v)
            for k, v in node.config.items()
            if k not in _RESERVED_CONFIG_KEYS
        }
        topic = resolver.topic

        if node.is_eval:
            args = {
                "prompt": prompt,
                "schema": mutation_request_schema(),
                "name": EVAL_TOOL_NAME,
                "description": EVAL_DESCRIPTION,
            }
        elif "payload" in node.config:
            payload = resolver.resolve_value(node.config["payload"])
            args = dict(payload) if isinstance(payload, dict) else {"payload": payload}
        elif node.kind == NodeKind.SEARCH:
            args = {"query": prompt or topic}
        elif node.kind == NodeKind.FETCH:
            args = {"url": prompt}
        elif node.kind == NodeKind.SUMMARIZE:
            args = {"text": prompt}
        elif node.kind in (NodeKind.STRUCTURED, NodeKind.CUSTOM, NodeKind.CODE_EXEC):
            args = {"prompt": prompt or topic}
        else:
            args = {"query": prompt or topic}

        for key, value in config.items():
            args.setdefault(key, value)
        return args

    # === EXECUTION ===

    async def execute_level(
        self,
        level: Level,
        graph: GraphSpec,
        records: dict[str, ExecutionRecord],
        outputs: dict[str, str],
        task_spec: TaskSpec,
        cancel_token: CancellationToken,
    ) -> LevelOutcome:
        """
        Run every node of ``level`` whose predecessors allow it.

        Returns once every started node has settled. Never raises for node
        failures; they are recorded on the node's ExecutionRecord.
        """
        outcome = LevelOutcome(level=level)
        runnable: list[NodeSpec] = []

        for node_id in level.node_ids:
            node = graph.get_node(node_id)
            if node is None:
                continue
            record = records.setdefault(node_id, ExecutionRecord(node_id=node_id))
            unsatisfied = self._unsatisfied_predecessors(node_id, graph, records)
            if unsatisfied:
                record.blocked_by = unsatisfied
                outcome.blocked.append(node_id)
                self.trace.warn("node.blocked", {"id": node_id, "blockedBy": unsatisfied})
                continue
            runnable.append(node)

        if len(runnable) > 1:
            logger.info(
                f"Level {level.index}: executing {len(runnable)} nodes concurrently "
                f"(limit {self.config.max_concurrency})"
            )

        tasks = [
            self._execute_node(node, level.index, records[node.id], outputs, task_spec, cancel_token)
            for node in runnable
        ]
        results = await asyncio.gather(*tasks)

        for node, proposal in zip(runnable, results, strict=True):
            record = records[node.id]
            if record.status == NodeStatus.PENDING:
                outcome.not_started.append(node.id)
                continue
            outcome.started.append(node.id)
            if record.status == NodeStatus.ERROR:
                outcome.failed.append(node.id)
            elif record.status == NodeStatus.COMPLETE:
                outcome.completed.append(node.id)
            if proposal is not None:
                outcome.proposals.append(proposal)

        return outcome

    async def _execute_node(
        self,
        node: NodeSpec,
        level_index: int,
        record: ExecutionRecord,
        outputs: dict[str, str],
        task_spec: TaskSpec,
        cancel_token: CancellationToken,
    ) -> MutationProposal | None:
        """Execute one node with retry logic. Runs in its own asyncio task."""
        async with self._semaphore:
            if cancel_token.cancelled:
                # Never started: stays pending
                return None

            set_trace_context(node_id=node.id, level=level_index)
            tool_name = self.config.tool_for(node)
            resolver = TemplateResolver(
                outputs=outputs, topic=task_spec.effective_topic, goal=task_spec.goal
            )
            args = self.build_args(node, resolver)
            if resolver.missing:
                self.trace.warn("template.unresolved", {"id": node.id, "refs": resolver.missing})

            ctx = ExecContext.for_node(
                node.id,
                self.memory,
                self.trace,
                cancel_token,
                task_spec=task_spec,
                context_store=self.context_store,
            )

            try:
                for attempt in range(self.config.max_retries + 1):
                    record.mark_running(level_index)
                    self.trace.info(
                        "node.start",
                        {
                            "id": node.id,
                            "kind": node.kind,
                            "tool": tool_name,
                            "level": level_index,
                            "attempt": attempt + 1,
                        },
                    )
                    try:
                        result = await self._invoke(node, tool_name, args, ctx, cancel_token)
                        break
                    except (ToolExecutionError, NodeTimeoutError) as e:
                        if attempt >= self.config.max_retries:
                            raise
                        delay = self.config.retry_backoff_seconds * (2 ** attempt)
                        logger.warning(
                            f"Node '{node.id}' failed ({e.message}); "
                            f"retry {attempt + 1}/{self.config.max_retries} in {delay}s"
                        )
                        self.trace.warn(
                            "node.retry",
                            {"id": node.id, "attempt": attempt + 1, "delay": delay, "error": e.message},
                        )
                        await self._backoff(delay, cancel_token)

                self._collect_usage(node.id, record)
                if node.is_eval:
                    return self._settle_eval(node, record, result, outputs, tool_name)

                output = _as_output(result)
                record.mark_complete(output)
                outputs[node.id] = output
                self.trace.info(
                    "node.end",
                    {
                        "id": node.id,
                        "ms": record.elapsed_ms,
                        "attempts": record.attempts,
                        "totalTokens": record.total_tokens,
                        "preview": output[:200],
                    },
                )
                return None

            except TaskGraphError as e:
                self._fail(node, record, e.message, e.kind)
                return None
            except asyncio.CancelledError:
                self._fail(node, record, "Node task cancelled", "CancellationError")
                raise
            except Exception as e:
                stack_trace = traceback.format_exc()
                logger.error(f"Node '{node.id}' crashed: {e}\n{stack_trace}")
                self._fail(node, record, str(e) or type(e).__name__, type(e).__name__)
                return None

    async def _invoke(
        self,
        node: NodeSpec,
        tool_name: str,
        args: dict[str, Any],
        ctx: ExecContext,
        cancel_token: CancellationToken,
    ) -> Any:
        """
        Call the tool, racing it against cancellation and the node timeout.

        If the tool finishes at the same moment cancellation fires, the tool
        result wins.
        """
        call = asyncio.ensure_future(self.tools.invoke(tool_name, args, ctx))
        cancelled = asyncio.ensure_future(cancel_token.wait())
        try:
            done, _ = await asyncio.wait(
                {call, cancelled},
                timeout=self.config.node_timeout_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            call.cancel()
            raise
        finally:
            cancelled.cancel()

        if call in done:
            return call.result()

        call.cancel()
        await asyncio.gather(call, return_exceptions=True)

        if cancel_token.cancelled:
            raise cancel_token.as_error()
        raise NodeTimeoutError(
            f"Node '{node.id}' timed out after {self.config.node_timeout_seconds}s",
            {"node": node.id, "tool": tool_name, "timeout": self.config.node_timeout_seconds},
        )

    async def _backoff(self, delay: float, cancel_token: CancellationToken) -> None:
        """Sleep between attempts, waking early on cancellation."""
        try:
            await asyncio.wait_for(cancel_token.wait(), timeout=delay)
        except TimeoutError:
            return
        raise cancel_token.as_error()

    def _collect_usage(self, node_id: str, record: ExecutionRecord) -> None:
        """Copy token counts from the last ``usage_*`` document the node's tool wrote."""
        docs = self.memory.docs_snapshot(node_id=node_id)
        usage_keys = [key for key in docs if key.startswith(USAGE_DOC_PREFIX)]
        if not usage_keys:
            return
        try:
            usage = json.loads(docs[usage_keys[-1]])
        except json.JSONDecodeError:
            logger.warning(f"Node '{node_id}' wrote an unreadable usage document '{usage_keys[-1]}'")
            return
        if isinstance(usage, dict):
            record.record_usage(usage)

    def _settle_eval(
        self,
        node: NodeSpec,
        record: ExecutionRecord,
        result: Any,
        outputs: dict[str, str],
        tool_name: str,
    ) -> MutationProposal:
        try:
            request: MutationRequest = parse_mutation_request(result)
        except ValueError as e:
            raise ToolExecutionError(tool_name, str(e), {"node": node.id}) from e

        output = request.to_json()
        record.mark_mutating(output)
        outputs[node.id] = output
        self.trace.info(
            "eval.result",
            {
                "id": node.id,
                "pass": request.passed,
                "reason": request.reason,
                "addNodes": [n.id for n in request.add_nodes],
                "addEdges": [str(e) for e in request.add_edges],
                "removeNodes": list(request.remove_nodes),
                "removeEdges": [str(e) for e in request.remove_edges],
            },
        )
        return MutationProposal(origin_id=node.id, request=request)

    def _fail(self, node: NodeSpec, record: ExecutionRecord, message: str, error_type: str) -> None:
        if record.is_terminal:
            return
        record.mark_error(message, error_type)
        logger.error(f"Node '{node.id}' failed [{error_type}]: {message}")
        self.trace.error(
            "node.error",
            {"id": node.id, "error": message, "errorType": error_type, "ms": record.elapsed_ms},
        )
