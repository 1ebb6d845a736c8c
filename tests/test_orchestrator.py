"""
Tests for the Orchestrator: ordering, dynamic growth, failure policies,
cancellation and result assembly.
"""

import asyncio
import json

import pytest

from taskgraph.graph.executor import ExecutorConfig, FailurePolicy
from taskgraph.graph.orchestrator import Orchestrator, run_orchestration, select_result
from taskgraph.observability.logging import get_trace_context, set_trace_context
from taskgraph.runtime.memory import RunMemory
from taskgraph.runtime.trace import Trace
from taskgraph.schemas.run import ExecutionRecord, NodeStatus, RunResult
from taskgraph.storage.context_store import InMemoryContextStore
from taskgraph.tools.builtin import default_registry

SPAWN_VERDICT = {
    "pass": False,
    "reason": "need porto data",
    "addNodes": [
        {"id": "s1", "kind": "search", "prompt": "porto weather"},
        {"id": "a1", "kind": "answer", "prompt": "{{channel:s1.last}}"},
    ],
    "addEdges": [{"from": "judge", "to": "s1"}, {"from": "s1", "to": "a1"}],
}


def assert_edges_respected(result):
    for edge in result.graph.edges:
        source = result.metrics[edge.source_id]
        target = result.metrics[edge.target_id]
        if target.started_at is not None:
            assert source.completed_at is not None
            assert source.completed_at <= target.started_at, str(edge)


# === BASIC RUNS ===


class TestBasicRun:
    @pytest.mark.asyncio
    async def test_chain_runs_in_order(self, make_task, stub_tools):
        task = make_task(
            [("search", "search"), ("sum", "summarize"), ("answer", "answer")],
            [("search", "sum"), ("sum", "answer")],
        )
        tools = stub_tools()

        result = await Orchestrator().run(task, tools.registry())

        assert result.success
        assert result.error is None
        assert tools.called_nodes == ["search", "sum", "answer"]
        assert result.levels == [["search"], ["sum"], ["answer"]]
        assert result.result == "answer: do answer"
        assert_edges_respected(result)

    @pytest.mark.asyncio
    async def test_every_node_has_a_terminal_record(self, make_task, stub_tools):
        task = make_task(
            [("a", "search"), ("b", "search"), ("c", "summarize"), ("d", "answer")],
            [("a", "c"), ("b", "c"), ("c", "d")],
        )

        result = await Orchestrator().run(task, stub_tools().registry())

        assert set(result.metrics) == {"a", "b", "c", "d"}
        assert all(r.status == NodeStatus.COMPLETE for r in result.metrics.values())
        assert result.executed_nodes == ["a", "b", "c", "d"]

    @pytest.mark.asyncio
    async def test_empty_graph(self, make_task, stub_tools):
        result = await Orchestrator().run(make_task([]), stub_tools().registry())

        assert result.success
        assert result.result is None
        assert result.metrics == {}
        assert result.levels == []

    @pytest.mark.asyncio
    async def test_accepts_dict_spec_and_tool_mapping(self):
        spec = {
            "goal": "say hi",
            "graph": {"nodes": [{"id": "a", "kind": "answer", "prompt": "hi"}], "edges": []},
        }

        result = await Orchestrator().run(spec, {"answer": lambda args, ctx: f"<{args['query']}>"})

        assert result.success
        assert result.result == "<hi>"

    @pytest.mark.asyncio
    async def test_same_input_same_result(self, make_task, stub_tools):
        task = make_task(
            [("a", "search"), ("b", "search"), ("j", "eval"), ("c", "answer")],
            [("a", "j"), ("b", "j"), ("j", "c")],
        )
        verdicts = {"j": SPAWN_VERDICT | {"addEdges": [{"from": "s1", "to": "a1"}]}}

        first = await Orchestrator().run(task, stub_tools(eval_outputs=verdicts).registry())
        second = await Orchestrator().run(task, stub_tools(eval_outputs=verdicts).registry())

        assert first.levels == second.levels
        assert first.result == second.result
        assert {k: r.output for k, r in first.metrics.items()} == {
            k: r.output for k, r in second.metrics.items()
        }

    @pytest.mark.asyncio
    async def test_task_spec_graph_is_not_mutated(self, make_task, stub_tools):
        task = make_task([("plan", "search"), ("judge", "eval")], [("plan", "judge")])
        tools = stub_tools(eval_outputs={"judge": SPAWN_VERDICT})

        result = await Orchestrator().run(task, tools.registry())

        assert result.graph.node_ids == ["plan", "judge", "s1", "a1"]
        assert task.graph.node_ids == ["plan", "judge"]

    @pytest.mark.asyncio
    async def test_run_orchestration_wrapper(self, make_task, stub_tools):
        trace = Trace()
        result = await run_orchestration(
            make_task([("a", "answer")]), stub_tools().registry(), trace=trace
        )
        assert result.success
        assert result.logs_count == trace.count()
        assert trace.events[0].event == "orchestrator.start"
        assert trace.events[-1].event == "orchestrator.complete"


# === VALIDATION ===


class TestValidation:
    @pytest.mark.asyncio
    async def test_cyclic_graph_runs_nothing(self, make_task, stub_tools):
        task = make_task([("a", "search"), ("b", "answer")], [("a", "b"), ("b", "a")])
        tools = stub_tools()
        trace = Trace()

        result = await Orchestrator().run(task, tools.registry(), trace=trace)

        assert not result.success
        assert result.error_type == "ValidationError"
        assert result.error_reason == "Cycle"
        assert tools.calls == []
        assert result.executed_nodes == []
        assert all(r.status == NodeStatus.PENDING for r in result.metrics.values())
        assert trace.filter(event="graph.invalid", level="error")

    @pytest.mark.asyncio
    async def test_dangling_edge(self, make_task, stub_tools):
        task = make_task([("a", "search")], [("a", "ghost")])

        result = await Orchestrator().run(task, stub_tools().registry())

        assert not result.success
        assert result.error_reason == "DanglingEdge"


# === CONCURRENCY ===


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_level_nodes_overlap(self, make_task, stub_tools):
        task = make_task([("a", "search"), ("b", "search"), ("c", "search")])
        config = ExecutorConfig(max_concurrency=3)

        result = await Orchestrator(config).run(task, stub_tools(delay=0.05).registry())

        records = result.metrics.values()
        assert max(r.started_at for r in records) < min(r.completed_at for r in records)

    @pytest.mark.parametrize("limit", [1, 2, 4])
    @pytest.mark.asyncio
    async def test_concurrency_limit(self, make_task, limit):
        state = {"running": 0, "peak": 0}

        async def slow_search(args, ctx):
            state["running"] += 1
            state["peak"] = max(state["peak"], state["running"])
            await asyncio.sleep(0.02)
            state["running"] -= 1
            return ctx.node_id

        task = make_task([(f"n{i}", "search") for i in range(4)])
        config = ExecutorConfig(max_concurrency=limit)

        result = await Orchestrator(config).run(task, {"web.search": slow_search})

        assert result.success
        assert state["peak"] == limit


# === DYNAMIC GRAPHS ===


class TestMutation:
    @pytest.mark.asyncio
    async def test_eval_spawns_nodes(self, make_task, stub_tools):
        task = make_task([("plan", "search"), ("judge", "eval")], [("plan", "judge")])
        tools = stub_tools(eval_outputs={"judge": SPAWN_VERDICT})
        trace = Trace()

        result = await Orchestrator().run(task, tools.registry(), trace=trace)

        assert result.success
        assert result.levels == [["plan"], ["judge"], ["s1"], ["a1"]]
        assert result.result == "a1: s1: porto weather"
        assert result.metrics["judge"].status == NodeStatus.COMPLETE
        assert json.loads(result.metrics["judge"].output)["pass"] is False
        assert len(trace.filter(event="graph.extend")) == 1
        assert any(e.data.get("replanned") for e in trace.filter(event="plan.ready"))
        assert_edges_respected(result)

    @pytest.mark.asyncio
    async def test_eval_spawns_nodes_with_default_tools(self, make_task):
        verdict = {
            "pass": False,
            "addNodes": [
                {"id": "s1", "kind": "search", "prompt": "porto"},
                {"id": "a1", "kind": "answer", "prompt": "porto in one line"},
            ],
            "addEdges": [{"from": "s1", "to": "a1"}],
        }
        task = make_task(
            [
                {"id": "plan", "kind": "search", "prompt": "lisbon"},
                {"id": "judge", "kind": "eval", "prompt": json.dumps(verdict)},
            ],
            [("plan", "judge")],
        )

        result = await Orchestrator().run(task, default_registry())

        assert result.success
        assert result.graph.node_ids == ["plan", "judge", "s1", "a1"]
        assert result.result == "Answer: porto in one line"

    @pytest.mark.asyncio
    async def test_single_eval_node_spawns_search_and_answer(self, make_task, stub_tools):
        verdict = {
            "pass": False,
            "addNodes": [
                {"id": "s1", "kind": "search", "prompt": "porto weather"},
                {"id": "a1", "kind": "answer", "prompt": "{{channel:s1.last}}"},
            ],
            "addEdges": [{"sourceId": "s1", "targetId": "a1"}],
        }
        task = make_task([("plan", "eval")])

        result = await Orchestrator().run(task, stub_tools(eval_outputs={"plan": verdict}).registry())

        assert result.success
        assert set(result.metrics) == {"plan", "s1", "a1"}
        assert result.levels == [["plan"], ["s1"], ["a1"]]
        assert result.result == "a1: s1: porto weather"

    @pytest.mark.asyncio
    async def test_eval_over_search_results_with_default_tools(self, make_task, tmp_path):
        (tmp_path / "porto.md").write_text("Porto has wine cellars.", encoding="utf-8")
        task = make_task(
            [
                {"id": "s", "kind": "search", "prompt": "porto wine"},
                {"id": "judge", "kind": "eval", "prompt": "Are these results enough? {{channel:s.last}}"},
            ],
            [("s", "judge")],
        )

        result = await Orchestrator().run(task, default_registry(fixtures_dir=tmp_path))

        assert result.success, result.metrics["judge"].error
        assert result.metrics["judge"].status == NodeStatus.COMPLETE
        assert json.loads(result.metrics["judge"].output)["pass"] is True
        assert result.graph.node_ids == ["s", "judge"]

    @pytest.mark.asyncio
    async def test_rejected_cycle_leaves_graph_unchanged(self, make_task, stub_tools):
        task = make_task(
            [("judge", "eval"), ("b", "search"), ("c", "answer")],
            [("judge", "b"), ("b", "c")],
        )
        tools = stub_tools(
            eval_outputs={"judge": {"pass": False, "addEdges": [{"from": "c", "to": "b"}]}}
        )
        trace = Trace()

        result = await Orchestrator().run(task, tools.registry(), trace=trace)

        assert not result.success
        assert result.error_type == "MutationError"
        assert not result.graph.has_edge("c", "b")
        assert result.metrics["judge"].status == NodeStatus.ERROR
        assert result.metrics["b"].status == NodeStatus.PENDING
        assert result.metrics["b"].blocked_by == ["judge"]
        assert result.metrics["c"].status == NodeStatus.PENDING
        assert tools.called_nodes == ["judge"]
        assert trace.filter(event="graph.mutation.rejected")

    @pytest.mark.asyncio
    async def test_eval_removes_pending_node(self, make_task, stub_tools):
        task = make_task(
            [("judge", "eval"), ("extra", "search"), ("answer", "answer")],
            [("judge", "extra"), ("judge", "answer")],
        )
        tools = stub_tools(eval_outputs={"judge": {"pass": True, "removeNodes": ["extra"]}})

        result = await Orchestrator().run(task, tools.registry())

        assert result.success
        assert "extra" not in result.metrics
        assert "extra" not in tools.called_nodes
        assert result.result == "answer: do answer"

    @pytest.mark.asyncio
    async def test_passing_verdict_does_not_change_graph(self, make_task, stub_tools):
        task = make_task([("judge", "eval"), ("a", "answer")], [("judge", "a")])
        trace = Trace()

        result = await Orchestrator().run(task, stub_tools().registry(), trace=trace)

        assert result.success
        assert trace.filter(event="graph.extend") == []
        assert result.levels == [["judge"], ["a"]]


# === FAILURE POLICIES ===


class TestFailurePolicy:
    @pytest.fixture
    def task(self, make_task):
        return make_task(
            [("a", "search"), ("c", "search"), ("b", "answer")],
            [("a", "b")],
        )

    @pytest.mark.asyncio
    async def test_skip_dependents(self, task, stub_tools):
        tools = stub_tools(fail={"a"})

        result = await Orchestrator().run(task, tools.registry())

        assert not result.success
        assert result.error == "1 node(s) failed: a"
        assert result.error_type == "ToolExecutionError"
        assert result.metrics["a"].status == NodeStatus.ERROR
        assert "boom in a" in result.metrics["a"].error
        assert result.metrics["b"].status == NodeStatus.PENDING
        assert result.metrics["b"].blocked_by == ["a"]
        assert result.metrics["c"].status == NodeStatus.COMPLETE
        assert "b" not in tools.called_nodes

    @pytest.mark.asyncio
    async def test_continue(self, task, stub_tools):
        config = ExecutorConfig(failure_policy=FailurePolicy.CONTINUE)

        result = await Orchestrator(config).run(task, stub_tools(fail={"a"}).registry())

        assert not result.success
        assert result.metrics["b"].status == NodeStatus.COMPLETE
        assert result.result == "b: do b"

    @pytest.mark.asyncio
    async def test_halt(self, task, stub_tools):
        config = ExecutorConfig(failure_policy=FailurePolicy.HALT)
        trace = Trace()

        result = await Orchestrator(config).run(
            task, stub_tools(fail={"a"}).registry(), trace=trace
        )

        assert not result.success
        assert result.levels == [["a", "c"]]
        assert result.metrics["c"].status == NodeStatus.COMPLETE
        assert result.metrics["b"].status == NodeStatus.PENDING
        assert trace.filter(event="orchestrator.halt")

    @pytest.mark.asyncio
    async def test_missing_tool_is_not_found(self, make_task, stub_tools):
        task = make_task([{"id": "img", "kind": "custom", "tool": "image.collect"}])

        result = await Orchestrator().run(task, stub_tools().registry())

        assert not result.success
        assert result.metrics["img"].error_type == "NotFoundError"


# === CANCELLATION ===


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_at_level_boundary(self, make_task, stub_tools):
        task = make_task(
            [("a", "search"), ("b", "summarize"), ("c", "answer")],
            [("a", "b"), ("b", "c")],
        )
        orchestrator = Orchestrator()
        trace = Trace()

        def stop_after_first_level(event):
            if event.event == "level.complete" and event.data["index"] == 0:
                orchestrator.cancel("stop after first level")

        trace.subscribe(stop_after_first_level)
        result = await orchestrator.run(task, stub_tools().registry(), trace=trace)

        assert not result.success
        assert result.error_type == "CancellationError"
        assert result.error == "stop after first level"
        assert result.metrics["a"].status == NodeStatus.COMPLETE
        assert result.metrics["b"].status == NodeStatus.PENDING
        assert result.metrics["c"].status == NodeStatus.PENDING
        assert result.levels == [["a"]]
        assert trace.filter(event="orchestrator.cancelled")

    @pytest.mark.asyncio
    async def test_cancel_in_flight(self, make_task, stub_tools):
        task = make_task([("a", "search"), ("b", "answer")], [("a", "b")])
        orchestrator = Orchestrator()

        run = asyncio.create_task(orchestrator.run(task, stub_tools(delay=5.0).registry()))
        await asyncio.sleep(0.05)
        orchestrator.cancel()
        result = await asyncio.wait_for(run, timeout=2.0)

        assert not result.success
        assert result.error_type == "CancellationError"
        assert result.metrics["a"].status == NodeStatus.ERROR
        assert result.metrics["a"].error_type == "CancellationError"
        assert result.metrics["b"].status == NodeStatus.PENDING

    @pytest.mark.asyncio
    async def test_run_deadline(self, make_task, stub_tools):
        task = make_task([("a", "search"), ("b", "answer")], [("a", "b")])

        result = await asyncio.wait_for(
            Orchestrator().run(task, stub_tools(delay=5.0).registry(), timeout=0.05),
            timeout=2.0,
        )

        assert not result.success
        assert result.error_type == "TimeoutError"
        assert result.metrics["a"].error_type == "TimeoutError"
        assert result.metrics["b"].status == NodeStatus.PENDING

    def test_cancel_without_run_is_noop(self):
        Orchestrator().cancel()


# === RESULT ASSEMBLY ===


def _complete(node_id: str, output: str) -> ExecutionRecord:
    record = ExecutionRecord(node_id=node_id)
    record.mark_running(0)
    record.mark_complete(output)
    return record


class TestResultSelection:
    @pytest.mark.asyncio
    async def test_terminal_node_wins(self, make_task, stub_tools):
        task = make_task(
            [
                {"id": "y", "kind": "search", "prompt": "find y", "config": {"terminal": True}},
                ("x", "answer"),
            ],
            [("y", "x")],
        )

        result = await Orchestrator().run(task, stub_tools().registry())

        assert result.result == "y: find y"

    def test_answer_in_latest_level(self, make_graph):
        graph = make_graph(
            [("s", "search"), ("a", "answer"), ("b", "answer"), ("z", "summarize")],
            [("s", "a"), ("s", "b"), ("a", "z")],
        )
        metrics = {nid: _complete(nid, f"out {nid}") for nid in graph.node_ids}

        assert select_result(graph, metrics, [["s"], ["a", "b"], ["z"]]) == "out b"

    def test_falls_back_to_last_completed(self, make_graph):
        graph = make_graph([("s", "search"), ("t", "summarize"), ("u", "search")])
        metrics = {
            "s": _complete("s", "out s"),
            "t": _complete("t", "out t"),
            "u": ExecutionRecord(node_id="u"),
        }

        assert select_result(graph, metrics, [["s", "t", "u"]]) == "out t"

    def test_nothing_completed(self, make_graph):
        graph = make_graph([("s", "search")])
        assert select_result(graph, {"s": ExecutionRecord(node_id="s")}, [["s"]]) is None


class TestArtifacts:
    @pytest.mark.asyncio
    async def test_artifacts_include_docs_and_outputs(self, make_task):
        task = make_task([{"id": "a", "kind": "answer", "prompt": "hello"}])
        memory = RunMemory()

        result = await Orchestrator().run(task, default_registry(), memory=memory)

        assert result.artifacts["a"] == "Answer: hello"
        assert result.artifacts["a/answer"] == "Answer: hello"
        assert memory.for_node("a").get_doc("answer") == "Answer: hello"

    @pytest.mark.asyncio
    async def test_failed_node_output_not_in_artifacts(self, make_task, stub_tools):
        task = make_task([("a", "search"), ("b", "search")])

        result = await Orchestrator().run(task, stub_tools(fail={"b"}).registry())

        assert "a" in result.artifacts
        assert "b" not in result.artifacts

    @pytest.mark.asyncio
    async def test_context_store_reaches_tools(self, make_task):
        store = InMemoryContextStore({"seed": "lisbon"})
        task = make_task([("a", "answer")])

        result = await Orchestrator().run(
            task,
            {"answer": lambda args, ctx: ctx.context_store.get("seed")},
            context_store=store,
        )

        assert result.result == "lisbon"

    def test_summary_is_json_serializable(self):
        summary = RunResult(success=False, artifacts={"a": "x"}).summary()
        assert json.loads(json.dumps(summary))["artifacts"] == {"a": "x"}


# === TOKEN USAGE ===


class TestTokenUsage:
    @pytest.mark.asyncio
    async def test_usage_doc_fills_node_metrics(self, make_task):
        def answer(args, ctx):
            ctx.memory.put_doc("usage_1", {"inputTokens": 5, "outputTokens": 5, "totalTokens": 10})
            ctx.memory.put_doc("usage_2", {"inputTokens": 12, "outputTokens": 30, "totalTokens": 42})
            return "done"

        task = make_task([("s", "search"), ("a", "answer")], [("s", "a")])

        result = await Orchestrator().run(
            task, {"answer": answer, "web.search": lambda args, ctx: "found"}
        )

        record = result.metrics["a"]
        assert (record.input_tokens, record.output_tokens, record.total_tokens) == (12, 30, 42)
        assert record.model_dump(by_alias=True)["totalTokens"] == 42
        assert result.metrics["s"].total_tokens is None

    @pytest.mark.asyncio
    async def test_unreadable_usage_doc_is_ignored(self, make_task):
        def answer(args, ctx):
            ctx.memory.put_doc("usage_1", "not json")
            return "done"

        result = await Orchestrator().run(make_task([("a", "answer")]), {"answer": answer})

        assert result.success
        assert result.metrics["a"].total_tokens is None


# === CONCURRENT RUNS AND LOG CONTEXT ===


class TestRunIsolation:
    @pytest.mark.asyncio
    async def test_cancel_reaches_run_still_in_progress(self, make_task, stub_tools):
        orchestrator = Orchestrator()
        slow = make_task([("a", "search"), ("b", "answer")], [("a", "b")])

        slow_run = asyncio.create_task(orchestrator.run(slow, stub_tools(delay=5.0).registry()))
        await asyncio.sleep(0.01)
        quick = await orchestrator.run(make_task([("q", "answer")]), stub_tools().registry())

        assert quick.success
        assert orchestrator.active_runs == 1

        orchestrator.cancel("stop the slow run")
        result = await asyncio.wait_for(slow_run, timeout=2.0)

        assert result.error_type == "CancellationError"
        assert result.error == "stop the slow run"
        assert orchestrator.active_runs == 0

    @pytest.mark.asyncio
    async def test_caller_log_context_is_restored(self, make_task):
        set_trace_context(request_id="outer")

        result = await Orchestrator().run(
            make_task([("a", "answer")]),
            {"answer": lambda args, ctx: get_trace_context()["run_id"]},
        )

        assert len(result.result) == 32
        assert get_trace_context() == {"request_id": "outer"}

    @pytest.mark.asyncio
    async def test_context_restored_after_invalid_graph(self, make_task, stub_tools):
        set_trace_context(request_id="outer")
        task = make_task([("a", "search"), ("b", "answer")], [("a", "b"), ("b", "a")])

        result = await Orchestrator().run(task, stub_tools().registry())

        assert not result.success
        assert get_trace_context() == {"request_id": "outer"}
