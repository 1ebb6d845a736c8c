"""
Default tool bindings used by the CLI.

All tools are offline and deterministic except ``web.fetch``:

- answer       - compose an answer from the resolved prompt
- summarize    - extractive summary of the input text
- structured   - first JSON object in the prompt, else {"pass": true}
                 (for evaluation nodes, the first object carrying "pass")
- web.search   - keyword search over a local fixtures directory
- web.fetch    - HTTP GET via httpx
- code.exec    - run a Python snippet in a subprocess (disabled by default)

Hosts that talk to real search engines or LLMs register their own tools
under the same names; the orchestrator only sees the names.
"""

import asyncio
import json
import logging
import re
import sys
from pathlib import Path
from typing import Any

import httpx

from taskgraph.graph.executor import EVAL_TOOL_NAME
from taskgraph.runner.context import ExecContext
from taskgraph.runner.tool_registry import ToolRegistry

logger = logging.getLogger(__name__)

FIXTURE_SUFFIXES = (".json", ".md", ".txt")
MAX_FETCH_CHARS = 20_000
SUMMARY_SENTENCES = 3

_SENTENCE_END = re.compile(r"(?<=[.!?])\s+")
_WORD = re.compile(r"[a-z0-9]+")


def answer(args: dict[str, Any], ctx: ExecContext) -> str:
    """Compose an answer from the (already templated) query."""
    query = str(args.get("query") or "").strip()
    if not query:
        raise ValueError("answer requires a non-empty query")
    text = f"Answer: {query}"
    ctx.memory.put_doc("answer", text)
    return text


def summarize(args: dict[str, Any], ctx: ExecContext) -> str:
    """Keep the first sentences of the text."""
    text = " ".join(str(args.get("text") or "").split())
    sentences = [s for s in _SENTENCE_END.split(text) if s]
    limit = int(args.get("sentences") or SUMMARY_SENTENCES)
    summary = " ".join(sentences[:limit])
    ctx.memory.put_doc("summary", summary)
    return summary


def _json_objects(text: str):
    """Yield every top-level JSON object embedded in text, left to right."""
    decoder = json.JSONDecoder()
    index = text.find("{")
    while index != -1:
        try:
            value, end = decoder.raw_decode(text, index)
        except json.JSONDecodeError:
            index = text.find("{", index + 1)
            continue
        if isinstance(value, dict):
            yield value
        index = text.find("{", end)


def structured(args: dict[str, Any], ctx: ExecContext) -> dict[str, Any]:
    """
    Return the first JSON object found in the prompt.

    Evaluation calls (``name == "eval_orchestrator"`` or a ``schema`` arg)
    only take an object with a ``pass`` key, so upstream outputs templated
    into the prompt are never mistaken for a verdict. With no verdict in the
    prompt this is a passing one, so evaluation nodes are no-ops under the
    default bindings.
    """
    prompt = str(args.get("prompt") or "")
    objects = list(_json_objects(prompt))

    if args.get("name") == EVAL_TOOL_NAME or args.get("schema") is not None:
        verdicts = [obj for obj in objects if "pass" in obj]
        return verdicts[0] if verdicts else {"pass": True}

    if objects:
        return objects[0]
    if "{" in prompt:
        raise ValueError("Prompt contains malformed JSON")
    return {"pass": True}


def _tokens(text: str) -> set[str]:
    return set(_WORD.findall(text.lower()))


def _load_fixture(path: Path) -> dict[str, str]:
    raw = path.read_text(encoding="utf-8-sig")
    if path.suffix == ".json":
        data = json.loads(raw)
        if isinstance(data, dict):
            return {
                "title": str(data.get("title") or path.stem),
                "url": str(data.get("url") or path.as_uri()),
                "content": str(data.get("content") or data.get("snippet") or ""),
            }
        raw = json.dumps(data)
    return {"title": path.stem, "url": path.as_uri(), "content": raw}


def make_web_search(fixtures_dir: Path | None):
    """Build a web.search tool that ranks fixture documents by term overlap."""

    def web_search(args: dict[str, Any], ctx: ExecContext) -> dict[str, Any]:
        query = str(args.get("query") or "").strip()
        if not query or len(query) > 500:
            raise ValueError("Query must be 1-500 characters")
        num_results = int(args.get("num_results") or args.get("numResults") or 5)

        results = []
        if fixtures_dir is not None and fixtures_dir.is_dir():
            terms = _tokens(query)
            scored = []
            for path in sorted(fixtures_dir.rglob("*")):
                if path.suffix not in FIXTURE_SUFFIXES or not path.is_file():
                    continue
                doc = _load_fixture(path)
                score = len(terms & _tokens(f"{doc['title']} {doc['content']}"))
                if score:
                    scored.append((score, doc))
            scored.sort(key=lambda item: -item[0])
            for _, doc in scored[:num_results]:
                results.append(
                    {"title": doc["title"], "url": doc["url"], "snippet": doc["content"][:500]}
                )
        else:
            ctx.trace.warn("search.no_fixtures", {"id": ctx.node_id, "query": query})

        payload = {"query": query, "results": results, "total": len(results), "provider": "fixtures"}
        ctx.memory.put_doc("search_results", payload)
        return payload

    return web_search


async def web_fetch(args: dict[str, Any], ctx: ExecContext) -> str:
    """GET a URL and return its body text (truncated)."""
    url = str(args.get("url") or "").strip()
    if not url.startswith(("http://", "https://")):
        raise ValueError(f"web.fetch needs an http(s) URL, got {url!r}")
    timeout = float(args.get("timeout") or 30.0)

    async with httpx.AsyncClient(follow_redirects=True, timeout=timeout) as client:
        response = await client.get(url)
        response.raise_for_status()

    text = response.text[:MAX_FETCH_CHARS]
    ctx.memory.put_doc("page", text)
    logger.info(f"Fetched {url} ({response.status_code}, {len(response.text)} chars)")
    return text


def make_code_exec(enabled: bool, timeout: float = 30.0):
    """Build a code.exec tool. When disabled every call fails."""

    async def code_exec(args: dict[str, Any], ctx: ExecContext) -> dict[str, Any]:
        if not enabled:
            raise PermissionError(
                "code.exec is disabled; set tools.code_exec_enabled in configuration.json"
            )
        code = str(args.get("code") or args.get("prompt") or "")
        if not code.strip():
            raise ValueError("code.exec requires code")

        process = await asyncio.create_subprocess_exec(
            sys.executable,
            "-c",
            code,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except TimeoutError:
            process.kill()
            await process.wait()
            raise
        result = {
            "exitCode": process.returncode,
            "stdout": stdout.decode(errors="replace"),
            "stderr": stderr.decode(errors="replace"),
        }
        ctx.memory.put_doc("stdout", result["stdout"])
        if process.returncode != 0:
            raise RuntimeError(f"code exited with {process.returncode}: {result['stderr'][-500:]}")
        return result

    return code_exec


def default_registry(
    fixtures_dir: Path | str | None = None,
    code_exec_enabled: bool = False,
) -> ToolRegistry:
    """Registry with every default tool bound under its dispatch name."""
    fixtures = Path(fixtures_dir).expanduser() if fixtures_dir else None
    registry = ToolRegistry()
    registry.register("answer", answer)
    registry.register("summarize", summarize)
    registry.register("structured", structured)
    registry.register("web.search", make_web_search(fixtures), description="Search local fixtures")
    registry.register("web.fetch", web_fetch)
    registry.register(
        "code.exec", make_code_exec(code_exec_enabled), description="Run a Python snippet"
    )
    return registry
