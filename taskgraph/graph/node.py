"""
Node Protocol - The unit of work in a task graph.

A node is a row in the graph arena: an id, a kind that selects the tool
that executes it, and the prompt/config handed to that tool. Nodes never
hold references to other nodes; dependencies live in EdgeSpec rows.

Prompts and string config values may reference upstream outputs with
``{{channel:<node_id>.last}}`` (see templating.py).
"""

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


class NodeKind(StrEnum):
    """Known node kinds. Unknown kinds are accepted and run with the answer tool."""

    EVAL = "eval"
    SEARCH = "search"
    ANSWER = "answer"
    STRUCTURED = "structured"
    SUMMARIZE = "summarize"
    FETCH = "fetch"
    CUSTOM = "custom"
    CODE_EXEC = "code.exec"


class NodeSpec(BaseModel):
    """
    Specification for a single node.

    Examples:
        NodeSpec(id="research", kind="search", label="Research", prompt="{{topic}}")

        NodeSpec(
            id="validate",
            kind="custom",
            config={"tool": "image.validate", "payload": "{{channel:collect.last}}"},
        )

    Fields the model does not know about (``tool``, ``payload``,
    ``includeImages``...) are folded into ``config`` so graphs written for
    the flat node shape keep working.
    """

    id: str = Field(min_length=1)
    kind: str = NodeKind.ANSWER
    label: str = ""
    prompt: str | None = None
    config: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(extra="ignore")

    @model_validator(mode="before")
    @classmethod
    def _fold_extra_fields(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        known = {"id", "kind", "label", "prompt", "config"}
        extra = {k: v for k, v in data.items() if k not in known}
        if not extra:
            return data
        folded = {k: v for k, v in data.items() if k in known}
        config = dict(folded.get("config") or {})
        for key, value in extra.items():
            config.setdefault(key, value)
        folded["config"] = config
        return folded

    @property
    def is_eval(self) -> bool:
        return self.kind == NodeKind.EVAL

    @property
    def is_terminal(self) -> bool:
        """True when the node is explicitly tagged as the run's result node."""
        return bool(self.config.get("terminal"))

    @property
    def display_name(self) -> str:
        return self.label or self.id
