"""Shared taskgraph configuration utilities.

Centralises reading of ~/.taskgraph/configuration.json so the CLI and
embedding hosts resolve executor settings the same way.

Example configuration.json:

    {
      "executor": {
        "max_concurrency": 4,
        "node_timeout_seconds": 60,
        "failure_policy": "skip_dependents",
        "max_retries": 1
      },
      "tools": {"fixtures_dir": "~/taskgraph-fixtures", "code_exec_enabled": false}
    }

Environment variables win over the file.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Low-level config file access
# ---------------------------------------------------------------------------

TASKGRAPH_CONFIG_FILE = Path.home() / ".taskgraph" / "configuration.json"

DEFAULT_MAX_CONCURRENCY = 4
DEFAULT_RETRY_BACKOFF_SECONDS = 1.0


def get_config_path() -> Path:
    """Config file location; ``TASKGRAPH_CONFIG`` overrides the default."""
    override = os.environ.get("TASKGRAPH_CONFIG")
    return Path(override).expanduser() if override else TASKGRAPH_CONFIG_FILE


def get_taskgraph_config() -> dict[str, Any]:
    """Load configuration, or {} if the file is missing or unreadable."""
    path = get_config_path()
    if not path.exists():
        return {}
    try:
        with open(path, encoding="utf-8-sig") as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        logger.warning(f"Ignoring unreadable config {path}: {e}")
        return {}
    return data if isinstance(data, dict) else {}


# ---------------------------------------------------------------------------
# Derived helpers
# ---------------------------------------------------------------------------


def _executor_section() -> dict[str, Any]:
    return get_taskgraph_config().get("executor", {})


def _env_number(name: str, cast: type) -> Any:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return None
    try:
        return cast(raw)
    except ValueError:
        logger.warning(f"Ignoring invalid {name}={raw!r}")
        return None


def get_max_concurrency() -> int:
    value = _env_number("TASKGRAPH_MAX_CONCURRENCY", int)
    if value is None:
        value = _executor_section().get("max_concurrency", DEFAULT_MAX_CONCURRENCY)
    return max(1, int(value))


def get_node_timeout() -> float | None:
    """Per-node timeout in seconds; None (or <= 0) disables it."""
    value = _env_number("TASKGRAPH_NODE_TIMEOUT", float)
    if value is None:
        value = _executor_section().get("node_timeout_seconds")
    if value is None or float(value) <= 0:
        return None
    return float(value)


def get_failure_policy() -> str:
    value = os.environ.get("TASKGRAPH_FAILURE_POLICY")
    if not value:
        value = _executor_section().get("failure_policy", "skip_dependents")
    return str(value).lower()


def get_max_retries() -> int:
    value = _env_number("TASKGRAPH_MAX_RETRIES", int)
    if value is None:
        value = _executor_section().get("max_retries", 0)
    return max(0, int(value))


def get_retry_backoff() -> float:
    return float(_executor_section().get("retry_backoff_seconds", DEFAULT_RETRY_BACKOFF_SECONDS))


def get_fixtures_dir() -> Path | None:
    value = os.environ.get("TASKGRAPH_FIXTURES_DIR") or get_taskgraph_config().get(
        "tools", {}
    ).get("fixtures_dir")
    return Path(value).expanduser() if value else None


def get_code_exec_enabled() -> bool:
    return bool(get_taskgraph_config().get("tools", {}).get("code_exec_enabled", False))


# ---------------------------------------------------------------------------
# RuntimeConfig
# ---------------------------------------------------------------------------


@dataclass
class RuntimeConfig:
    """Run settings resolved from ~/.taskgraph/configuration.json and the environment."""

    max_concurrency: int = field(default_factory=get_max_concurrency)
    node_timeout_seconds: float | None = field(default_factory=get_node_timeout)
    failure_policy: str = field(default_factory=get_failure_policy)
    max_retries: int = field(default_factory=get_max_retries)
    retry_backoff_seconds: float = field(default_factory=get_retry_backoff)
    fixtures_dir: Path | None = field(default_factory=get_fixtures_dir)
    code_exec_enabled: bool = field(default_factory=get_code_exec_enabled)
