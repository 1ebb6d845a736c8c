"""
Context store - optional durable key/value documents shared across runs.

The orchestrator never reads or writes the store itself; it only hands it
to tools through ExecContext.context_store. Hosts plug in their own
implementation; InMemoryContextStore covers tests and single-process use.
"""

import threading
from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class ContextStore(Protocol):
    """What the orchestrator requires of a context store."""

    def get(self, key: str) -> Any | None: ...

    def put(self, key: str, value: Any) -> None: ...


def validate_key(key: str) -> None:
    """
    Reject keys that cannot be stored safely.

    Raises:
        ValueError: If the key is empty or contains control characters
    """
    if not key or key.strip() == "":
        raise ValueError("Key cannot be empty")
    if "\x00" in key:
        raise ValueError("Invalid key format: null bytes not allowed")
    if any(ord(ch) < 32 for ch in key):
        raise ValueError(f"Invalid key format: control characters not allowed in {key!r}")


class InMemoryContextStore:
    """Dict-backed ContextStore. Lives as long as the process."""

    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self._data: dict[str, Any] = dict(initial or {})
        self._lock = threading.Lock()

    def get(self, key: str) -> Any | None:
        validate_key(key)
        with self._lock:
            return self._data.get(key)

    def put(self, key: str, value: Any) -> None:
        validate_key(key)
        with self._lock:
            self._data[key] = value

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._data.keys())

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)
