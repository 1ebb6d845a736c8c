"""Shared fixtures: graph builders and a deterministic stub tool set."""

import asyncio
from collections.abc import Iterable
from typing import Any

import pytest

from taskgraph.graph.edge import EdgeSpec, GraphSpec
from taskgraph.graph.node import NodeSpec
from taskgraph.graph.task import TaskSpec
from taskgraph.observability.logging import clear_trace_context
from taskgraph.runner.context import ExecContext
from taskgraph.runner.tool_registry import ToolRegistry

STUB_TOOL_NAMES = ("answer", "summarize", "structured", "web.search", "web.fetch", "code.exec")


def build_graph(
    nodes: Iterable[tuple[str, str] | NodeSpec | dict],
    edges: Iterable[tuple[str, str]] = (),
) -> GraphSpec:
    """Nodes as (id, kind) pairs, NodeSpecs or dicts; edges as (source, target)."""
    specs = []
    for node in nodes:
        if isinstance(node, NodeSpec):
            specs.append(node)
        elif isinstance(node, dict):
            specs.append(NodeSpec.model_validate(node))
        else:
            node_id, kind = node
            specs.append(NodeSpec(id=node_id, kind=kind, label=node_id, prompt=f"do {node_id}"))
    return GraphSpec(
        nodes=specs,
        edges=[EdgeSpec(source_id=s, target_id=t) for s, t in edges],
    )


class StubTools:
    """
    Deterministic tools that record every call.

    Every tool returns "<node_id>: <input>" after ``delay`` seconds, raises
    for node ids in ``fail``, and for evaluation nodes returns the entry of
    ``eval_outputs`` (default: a passing verdict).
    """

    def __init__(
        self,
        delay: float = 0.0,
        fail: Iterable[str] = (),
        eval_outputs: dict[str, Any] | None = None,
        delays: dict[str, float] | None = None,
    ):
        self.delay = delay
        self.delays = delays or {}
        self.fail = set(fail)
        self.eval_outputs = eval_outputs or {}
        self.calls: list[tuple[str, str, dict[str, Any]]] = []

    def _make(self, tool_name: str):
        async def executor(args: dict[str, Any], ctx: ExecContext) -> Any:
            self.calls.append((tool_name, ctx.node_id, args))
            await asyncio.sleep(self.delays.get(ctx.node_id, self.delay))
            if ctx.node_id in self.fail:
                raise RuntimeError(f"boom in {ctx.node_id}")
            if args.get("name") == "eval_orchestrator":
                return self.eval_outputs.get(ctx.node_id, {"pass": True})
            text = args.get("query") or args.get("prompt") or args.get("text") or ""
            return f"{ctx.node_id}: {text}"

        return executor

    def registry(self) -> ToolRegistry:
        registry = ToolRegistry()
        for name in STUB_TOOL_NAMES:
            registry.register(name, self._make(name))
        return registry

    @property
    def called_nodes(self) -> list[str]:
        return [node_id for _, node_id, _ in self.calls]


@pytest.fixture(autouse=True)
def _reset_trace_context():
    clear_trace_context()
    yield
    clear_trace_context()


@pytest.fixture
def make_task():
    def _make(nodes, edges=(), goal="compare lisbon and porto", **kwargs) -> TaskSpec:
        return TaskSpec(goal=goal, graph=build_graph(nodes, edges), **kwargs)

    return _make


@pytest.fixture
def stub_tools():
    return StubTools


@pytest.fixture
def make_graph():
    return build_graph
