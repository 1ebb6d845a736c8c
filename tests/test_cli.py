"""Tests for the taskgraph command line."""

import json
import logging
import textwrap

import pytest

from taskgraph.cli import build_parser, main


@pytest.fixture(autouse=True)
def isolated_environment(tmp_path, monkeypatch):
    """No user config, and the root logger restored after configure_logging()."""
    monkeypatch.setenv("TASKGRAPH_CONFIG", str(tmp_path / "no-config.json"))
    monkeypatch.delenv("TASKGRAPH_FIXTURES_DIR", raising=False)
    monkeypatch.delenv("LOG_FORMAT", raising=False)
    monkeypatch.delenv("ENV", raising=False)
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


def write_spec(tmp_path, nodes, edges=(), goal="compare lisbon and porto"):
    path = tmp_path / "spec.json"
    path.write_text(
        json.dumps(
            {
                "goal": goal,
                "type": "orchestrate",
                "graph": {
                    "nodes": nodes,
                    "edges": [{"from": s, "to": t} for s, t in edges],
                },
            }
        ),
        encoding="utf-8",
    )
    return path


def run_cli(argv, capsys):
    with pytest.raises(SystemExit) as exc_info:
        main(argv)
    lines = [line for line in capsys.readouterr().out.splitlines() if line.strip()]
    assert len(lines) == 1, lines
    return exc_info.value.code, json.loads(lines[0])


class TestRun:
    def test_prints_final_line(self, tmp_path, capsys):
        spec = write_spec(
            tmp_path,
            [
                {"id": "research", "kind": "search", "prompt": "{{topic}}"},
                {"id": "answer", "kind": "answer", "prompt": "best of {{goal}}"},
            ],
            [("research", "answer")],
        )

        code, line = run_cli(["run", str(spec)], capsys)

        assert code == 0
        assert line["event"] == "final"
        assert line["data"]["success"] is True
        assert line["data"]["result"] == "Answer: best of compare lisbon and porto"
        assert "research/search_results" in line["data"]["artifacts"]
        assert line["data"]["logsCount"] > 0

    def test_failed_run_exits_non_zero(self, tmp_path, capsys):
        spec = write_spec(tmp_path, [{"id": "code", "kind": "code.exec", "prompt": "print(1)"}])

        code, line = run_cli(["run", str(spec)], capsys)

        assert code == 1
        assert line["event"] == "final"
        assert line["data"]["success"] is False

    def test_missing_spec(self, tmp_path, capsys):
        code, line = run_cli(["run", str(tmp_path / "nope.json")], capsys)

        assert code == 1
        assert line["event"] == "error"
        assert "not found" in line["data"]["message"]

    def test_invalid_json_spec(self, tmp_path, capsys):
        path = tmp_path / "spec.json"
        path.write_text("{not json", encoding="utf-8")

        code, line = run_cli(["run", str(path)], capsys)

        assert code == 1
        assert line["event"] == "error"

    def test_cyclic_spec_reports_final(self, tmp_path, capsys):
        spec = write_spec(
            tmp_path,
            [{"id": "a", "kind": "search"}, {"id": "b", "kind": "answer"}],
            [("a", "b"), ("b", "a")],
        )

        code, line = run_cli(["run", str(spec)], capsys)

        assert code == 1
        assert line["data"]["success"] is False
        assert line["data"]["result"] is None

    def test_tools_module(self, tmp_path, capsys):
        tools = tmp_path / "my_tools.py"
        tools.write_text(
            textwrap.dedent(
                """
                def _shout(args, ctx):
                    return args["prompt"].upper()

                TOOLS = {"text.shout": _shout}
                """
            ),
            encoding="utf-8",
        )
        spec = write_spec(
            tmp_path, [{"id": "s", "kind": "custom", "tool": "text.shout", "prompt": "hey"}]
        )

        code, line = run_cli(["run", str(spec), "--tools", str(tools)], capsys)

        assert code == 0
        assert line["data"]["result"] == "HEY"

    def test_missing_tools_module(self, tmp_path, capsys):
        spec = write_spec(tmp_path, [{"id": "a", "kind": "answer"}])

        code, line = run_cli(["run", str(spec), "--tools", str(tmp_path / "none.py")], capsys)

        assert code == 1
        assert line["event"] == "error"
        assert "Tools module not found" in line["data"]["message"]

    def test_fixtures_option(self, tmp_path, capsys):
        fixtures = tmp_path / "fixtures"
        fixtures.mkdir()
        (fixtures / "porto.md").write_text("Porto has wine cellars.", encoding="utf-8")
        spec = write_spec(
            tmp_path,
            [
                {"id": "s", "kind": "search", "prompt": "porto wine"},
                {"id": "sum", "kind": "summarize", "prompt": "{{channel:s.last}}"},
            ],
            [("s", "sum")],
        )

        code, line = run_cli(["run", str(spec), "--fixtures", str(fixtures)], capsys)

        assert code == 0
        results = json.loads(line["data"]["artifacts"]["s"])
        assert results["total"] == 1
        assert results["results"][0]["title"] == "porto"


class TestValidate:
    def test_valid_spec(self, tmp_path, capsys):
        spec = write_spec(
            tmp_path,
            [{"id": "a", "kind": "search"}, {"id": "b", "kind": "search"}, {"id": "c"}],
            [("a", "c"), ("b", "c")],
        )

        code, line = run_cli(["validate", str(spec)], capsys)

        assert code == 0
        assert line == {
            "event": "validate",
            "data": {"valid": True, "errors": [], "levels": [["a", "b"], ["c"]]},
        }

    def test_invalid_spec(self, tmp_path, capsys):
        spec = write_spec(tmp_path, [{"id": "a"}, {"id": "a"}])

        code, line = run_cli(["validate", str(spec)], capsys)

        assert code == 1
        assert line["data"]["valid"] is False
        assert line["data"]["errors"]


class TestParser:
    def test_run_options(self):
        args = build_parser().parse_args(
            [
                "run",
                "spec.json",
                "--concurrency",
                "2",
                "--timeout",
                "1.5",
                "--failure-policy",
                "halt",
            ]
        )
        assert args.concurrency == 2
        assert args.timeout == 1.5
        assert args.failure_policy == "halt"
        assert args.log_level == "WARNING"

    def test_unknown_policy_rejected(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["run", "spec.json", "--failure-policy", "explode"])
