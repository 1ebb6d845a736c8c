"""
Orchestrator - The single entry point for one task-graph run.

Sequence:
    validate initial graph
      -> plan
      -> loop: execute level -> apply eval mutations -> re-plan if mutated
      -> assemble RunResult

The orchestrator owns the run's Trace, Memory and live graph. Every failure
(bad graph, tool errors, rejected mutations, cancellation, deadline) is
folded into the returned RunResult; ``run()`` does not raise for them.
"""

import asyncio
import logging
import uuid
from collections.abc import Mapping
from typing import Any

from taskgraph.errors import GraphValidationError, RunTimeoutError, TaskGraphError
from taskgraph.graph.edge import GraphSpec
from taskgraph.graph.executor import ExecutorConfig, FailurePolicy, LevelExecutor
from taskgraph.graph.mutation import MutationHandler
from taskgraph.graph.node import NodeKind
from taskgraph.graph.plan import ExecutionPlan, Level, Planner
from taskgraph.graph.task import TaskSpec
from taskgraph.graph.validator import GraphValidator
from taskgraph.observability.logging import reset_trace_context, set_trace_context
from taskgraph.runner.context import CancellationToken
from taskgraph.runner.tool_registry import ToolExecutor, ToolRegistry
from taskgraph.runtime.memory import RunMemory
from taskgraph.runtime.trace import Trace
from taskgraph.schemas.run import ExecutionRecord, NodeStatus, RunResult
from taskgraph.storage.context_store import ContextStore

logger = logging.getLogger(__name__)


class Orchestrator:
    """
    Runs a TaskSpec against a set of tools.

    Example:
        orchestrator = Orchestrator(ExecutorConfig(max_concurrency=2))
        result = await orchestrator.run(task_spec, registry)
        if result.success:
            print(result.result)

    One instance may drive several concurrent runs; each run gets its own
    cancellation token and ``cancel()`` aborts every run still in progress.
    Pass ``cancel_token`` to ``run()`` to abort a single run.
    """

    def __init__(
        self,
        config: ExecutorConfig | None = None,
        validator: GraphValidator | None = None,
        planner: Planner | None = None,
    ):
        self.config = config or ExecutorConfig()
        self.validator = validator or GraphValidator()
        self.planner = planner or Planner()
        self._active_tokens: set[CancellationToken] = set()

    @property
    def active_runs(self) -> int:
        return len(self._active_tokens)

    def cancel(self, reason: str = "Run cancelled by caller") -> None:
        """Cancel every run in progress on this instance, if any."""
        for token in list(self._active_tokens):
            token.cancel(reason)

    async def run(
        self,
        task_spec: TaskSpec | Mapping[str, Any],
        tools: ToolRegistry | Mapping[str, ToolExecutor],
        trace: Trace | None = None,
        memory: RunMemory | None = None,
        context_store: ContextStore | None = None,
        cancel_token: CancellationToken | None = None,
        timeout: float | None = None,
    ) -> RunResult:
        """
        Execute a task graph to completion.

        Args:
            task_spec: TaskSpec, or a dict in the TaskSpec JSON shape
            tools: ToolRegistry, or a plain {name: executor} mapping
            trace: Event log to append to (a new one if omitted)
            memory: Run memory (a new one if omitted)
            context_store: Optional durable store exposed to tools
            cancel_token: External abort signal
            timeout: Overall run deadline in seconds

        Returns:
            RunResult with success flag, result, artifacts and per-node metrics
        """
        if not isinstance(task_spec, TaskSpec):
            task_spec = TaskSpec.model_validate(task_spec)
        if not isinstance(tools, ToolRegistry):
            tools = ToolRegistry.from_mapping(tools)
        trace = trace if trace is not None else Trace()
        memory = memory if memory is not None else RunMemory()
        cancel_token = cancel_token or CancellationToken()

        run_id = uuid.uuid4().hex
        self._active_tokens.add(cancel_token)
        # The caller's log context is restored once the run returns
        context_token = set_trace_context(
            run_id=run_id, goal=task_spec.goal, task_type=task_spec.type
        )
        try:
            return await self._run(
                run_id, task_spec, tools, trace, memory, context_store, cancel_token, timeout
            )
        finally:
            reset_trace_context(context_token)
            self._active_tokens.discard(cancel_token)

    async def _run(
        self,
        run_id: str,
        task_spec: TaskSpec,
        tools: ToolRegistry,
        trace: Trace,
        memory: RunMemory,
        context_store: ContextStore | None,
        cancel_token: CancellationToken,
        timeout: float | None,
    ) -> RunResult:
        graph = task_spec.graph.copy_graph()
        records: dict[str, ExecutionRecord] = {}
        outputs: dict[str, str] = {}
        executed_levels: list[list[str]] = []

        trace.info(
            "orchestrator.start",
            {
                "runId": run_id,
                "goal": task_spec.goal,
                "type": task_spec.type,
                "nodes": len(graph.nodes),
                "edges": len(graph.edges),
            },
        )
        logger.info(f"Starting run {run_id}: {task_spec.goal}")

        # Fail fast on a malformed graph: zero nodes touched
        try:
            self.validator.validate(graph)
        except GraphValidationError as e:
            trace.error("graph.invalid", {"reason": str(e.reason), "message": e.message})
            logger.error(f"Graph validation failed: {e.message}")
            return self._finish(
                trace,
                memory,
                graph,
                records,
                outputs,
                executed_levels,
                error=e.message,
                error_type=e.kind,
                error_reason=str(e.reason),
            )

        deadline: asyncio.TimerHandle | None = None
        if timeout is not None:
            deadline = asyncio.get_running_loop().call_later(
                timeout,
                cancel_token.cancel,
                f"Run exceeded timeout of {timeout}s",
                RunTimeoutError,
            )

        executor = LevelExecutor(
            tools=tools,
            trace=trace,
            memory=memory,
            config=self.config,
            context_store=context_store,
        )
        mutations = MutationHandler(trace, validator=self.validator)

        try:
            plan = self.planner.plan(graph)
            trace.info("plan.ready", {"levels": plan.groupings()})

            while not plan.is_empty:
                if cancel_token.cancelled:
                    break

                level = Level(index=len(executed_levels), node_ids=plan.levels[0].node_ids)
                trace.info("level.start", {"index": level.index, "nodes": level.node_ids})
                outcome = await executor.execute_level(
                    level, graph, records, outputs, task_spec, cancel_token
                )
                executed_levels.append(list(level.node_ids))

                mutated = False
                if outcome.proposals:
                    result = await mutations.apply(graph, outcome.proposals, records)
                    if result.committed:
                        graph = result.graph
                        mutated = result.changed
                        if mutated:
                            trace.info(
                                "graph.mutation.applied",
                                {
                                    "origins": result.origins,
                                    "nodes": len(graph.nodes),
                                    "edges": len(graph.edges),
                                },
                            )

                statuses = {nid: records[nid].status for nid in level.node_ids if nid in records}
                failed = [nid for nid, s in statuses.items() if s == NodeStatus.ERROR]
                trace.info(
                    "level.complete",
                    {
                        "index": len(executed_levels) - 1,
                        "completed": [nid for nid, s in statuses.items() if s == NodeStatus.COMPLETE],
                        "failed": failed,
                        "blocked": outcome.blocked,
                        "mutated": mutated,
                    },
                )

                if self.config.failure_policy == FailurePolicy.HALT and any(
                    r.status == NodeStatus.ERROR for r in records.values()
                ):
                    trace.warn("orchestrator.halt", {"level": len(executed_levels) - 1})
                    logger.warning("Halting run after node failure (failure_policy=halt)")
                    break

                if mutated:
                    started = [nid for nid, r in records.items() if r.status != NodeStatus.PENDING]
                    plan = self.planner.plan(graph, started=started)
                    trace.info("plan.ready", {"levels": plan.groupings(), "replanned": True})
                else:
                    plan = ExecutionPlan(levels=plan.levels[1:])
        except TaskGraphError as e:
            logger.error(f"Run aborted: {e.message}")
            trace.error("orchestrator.error", {"error": e.message, "errorType": e.kind})
            return self._finish(
                trace,
                memory,
                graph,
                records,
                outputs,
                executed_levels,
                error=e.message,
                error_type=e.kind,
                error_reason=str(getattr(e, "reason", "")) or None,
            )
        finally:
            if deadline is not None:
                deadline.cancel()

        if cancel_token.cancelled:
            error = cancel_token.as_error()
            trace.warn("orchestrator.cancelled", {"reason": error.message, "errorType": error.kind})
            logger.warning(f"Run {run_id} stopped: {error.message}")
            return self._finish(
                trace,
                memory,
                graph,
                records,
                outputs,
                executed_levels,
                error=error.message,
                error_type=error.kind,
            )

        return self._finish(trace, memory, graph, records, outputs, executed_levels)

    def _finish(
        self,
        trace: Trace,
        memory: RunMemory,
        graph: GraphSpec,
        records: dict[str, ExecutionRecord],
        outputs: dict[str, str],
        executed_levels: list[list[str]],
        error: str | None = None,
        error_type: str | None = None,
        error_reason: str | None = None,
    ) -> RunResult:
        """Assemble the RunResult. Every node of the live graph gets a record."""
        metrics = {
            node_id: records.get(node_id) or ExecutionRecord(node_id=node_id)
            for node_id in graph.node_ids
        }
        failed = [nid for nid, r in metrics.items() if r.status == NodeStatus.ERROR]
        success = error is None and not failed
        if error is None and failed:
            first = metrics[failed[0]]
            error = f"{len(failed)} node(s) failed: {', '.join(failed)}"
            error_type = first.error_type

        result = select_result(graph, metrics, executed_levels)

        artifacts = dict(memory.docs_snapshot())
        for node_id in graph.node_ids:
            if node_id in outputs and metrics[node_id].status == NodeStatus.COMPLETE:
                artifacts[node_id] = outputs[node_id]

        trace.info(
            "orchestrator.complete",
            {
                "success": success,
                "executed": sum(1 for r in metrics.values() if r.status != NodeStatus.PENDING),
                "failed": failed,
                "levels": len(executed_levels),
            },
        )
        logger.info(
            f"Run finished: success={success}, "
            f"{sum(1 for r in metrics.values() if r.status == NodeStatus.COMPLETE)}"
            f"/{len(metrics)} nodes complete"
        )

        return RunResult(
            success=success,
            result=result,
            artifacts=artifacts,
            metrics=metrics,
            error=error,
            error_type=error_type,
            error_reason=error_reason,
            levels=executed_levels,
            graph=graph,
            logs_count=trace.count(),
        )


def select_result(
    graph: GraphSpec,
    metrics: Mapping[str, ExecutionRecord],
    executed_levels: list[list[str]],
) -> str | None:
    """
    Pick the run's primary result.

    1. The last node tagged ``config.terminal`` that completed
    2. The last answer-kind node of the latest executed level that completed
    3. The last completed node in graph insertion order
    """

    def completed(node_id: str) -> bool:
        record = metrics.get(node_id)
        return record is not None and record.status == NodeStatus.COMPLETE

    terminal = [n.id for n in graph.nodes if n.is_terminal and completed(n.id)]
    if terminal:
        return metrics[terminal[-1]].output

    position = {nid: i for i, nid in enumerate(graph.node_ids)}
    for level in reversed(executed_levels):
        answers = [
            nid
            for nid in level
            if nid in position
            and graph.get_node(nid).kind == NodeKind.ANSWER
            and completed(nid)
        ]
        if answers:
            return metrics[max(answers, key=position.__getitem__)].output

    done = [nid for nid in graph.node_ids if completed(nid)]
    if done:
        return metrics[done[-1]].output
    return None


async def run_orchestration(
    task_spec: TaskSpec | Mapping[str, Any],
    tools: ToolRegistry | Mapping[str, ToolExecutor],
    trace: Trace | None = None,
    memory: RunMemory | None = None,
    context_store: ContextStore | None = None,
    config: ExecutorConfig | None = None,
    cancel_token: CancellationToken | None = None,
    timeout: float | None = None,
) -> RunResult:
    """One-shot convenience wrapper around Orchestrator.run()."""
    return await Orchestrator(config).run(
        task_spec,
        tools,
        trace=trace,
        memory=memory,
        context_store=context_store,
        cancel_token=cancel_token,
        timeout=timeout,
    )
