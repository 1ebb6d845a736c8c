"""
Run Memory - Ephemeral key/value store and document scratchpad for one run.

Tools stash intermediate artifacts here. Each node sees a NodeMemory view
whose keys are namespaced by its own id, so concurrent nodes in a level
never write to the same key. Reads can reach into another node's
namespace explicitly (``get(key, node_id="search")``).

Documents are the run's artifacts: at the end of a run the orchestrator
returns ``docs_snapshot()`` as ``RunResult.artifacts``.

Example:
    memory = RunMemory()
    view = memory.for_node("search")
    view.set("query", "lisbon weather")
    view.put_doc("results", "...")
    memory.docs_snapshot()  # {"search/results": "..."}
"""

import json
import threading
from typing import Any

NAMESPACE_SEPARATOR = "/"


def _namespaced(node_id: str | None, key: str) -> str:
    if not node_id:
        return key
    return f"{node_id}{NAMESPACE_SEPARATOR}{key}"


def _as_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str)


class RunMemory:
    """Run-scoped storage shared by every node; safe for concurrent writers."""

    def __init__(self) -> None:
        self._values: dict[str, Any] = {}
        self._docs: dict[str, str] = {}
        self._lock = threading.Lock()

    # === KEY/VALUE ===

    def get(self, key: str, default: Any = None, node_id: str | None = None) -> Any:
        with self._lock:
            return self._values.get(_namespaced(node_id, key), default)

    def set(self, key: str, value: Any, node_id: str | None = None) -> None:
        with self._lock:
            self._values[_namespaced(node_id, key)] = value

    def read_all(self) -> dict[str, Any]:
        with self._lock:
            return dict(self._values)

    # === DOCUMENTS ===

    def put_doc(self, name: str, content: Any, node_id: str | None = None) -> None:
        with self._lock:
            self._docs[_namespaced(node_id, name)] = _as_text(content)

    def get_doc(self, name: str, node_id: str | None = None) -> str | None:
        with self._lock:
            return self._docs.get(_namespaced(node_id, name))

    def docs_snapshot(self, node_id: str | None = None) -> dict[str, str]:
        """All documents, or only those in one node's namespace (keys un-prefixed)."""
        with self._lock:
            if node_id is None:
                return dict(self._docs)
            prefix = _namespaced(node_id, "")
            return {k[len(prefix) :]: v for k, v in self._docs.items() if k.startswith(prefix)}

    def for_node(self, node_id: str) -> "NodeMemory":
        return NodeMemory(self, node_id)

    def clear(self) -> None:
        with self._lock:
            self._values.clear()
            self._docs.clear()


class NodeMemory:
    """A node's view of RunMemory. Writes always land in the node's namespace."""

    def __init__(self, memory: RunMemory, node_id: str) -> None:
        self._memory = memory
        self.node_id = node_id

    def get(self, key: str, default: Any = None, node_id: str | None = None) -> Any:
        return self._memory.get(key, default, node_id=node_id or self.node_id)

    def set(self, key: str, value: Any) -> None:
        self._memory.set(key, value, node_id=self.node_id)

    def put_doc(self, name: str, content: Any) -> None:
        self._memory.put_doc(name, content, node_id=self.node_id)

    def get_doc(self, name: str, node_id: str | None = None) -> str | None:
        return self._memory.get_doc(name, node_id=node_id or self.node_id)

    def docs_snapshot(self) -> dict[str, str]:
        return self._memory.docs_snapshot(node_id=self.node_id)
