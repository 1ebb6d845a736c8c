"""Reference templating for node prompts and config.

Supported placeholders:
    {{channel:<node_id>.last}}   last output of an upstream node
    {{channel:<node_id>}}        same as above
    {{node:<node_id>}}           same as above
    {{topic}}                    the TaskSpec topic (falls back to the goal)
    {{goal}}                     the TaskSpec goal

Unknown or not-yet-produced references resolve to an empty string; the
caller is told which ones via the ``missing`` list so it can warn.
"""

import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

NODE_REF_PATTERN = re.compile(r"\{\{\s*(?:channel|node):([^}]+?)(?:\.last)?\s*\}\}")
TOPIC_PATTERN = re.compile(r"\{\{\s*topic\s*\}\}")
GOAL_PATTERN = re.compile(r"\{\{\s*goal\s*\}\}")


def referenced_nodes(text: str | None) -> list[str]:
    """Node ids referenced by a template, in order of first appearance."""
    if not text:
        return []
    return list(dict.fromkeys(m.group(1).strip() for m in NODE_REF_PATTERN.finditer(text)))


@dataclass
class TemplateResolver:
    """
    Substitutes upstream outputs into prompts and config values.

    Args:
        outputs: node_id -> string output of every completed node
        topic: value for {{topic}}
        goal: value for {{goal}}
    """

    outputs: Mapping[str, str]
    topic: str = ""
    goal: str = ""
    missing: list[str] = field(default_factory=list)

    def _node_value(self, match: re.Match) -> str:
        node_id = match.group(1).strip()
        value = self.outputs.get(node_id)
        if value is None:
            if node_id not in self.missing:
                self.missing.append(node_id)
            return ""
        return value

    def resolve_text(self, template: str | None) -> str:
        if not template:
            return ""
        text = NODE_REF_PATTERN.sub(self._node_value, template)
        text = TOPIC_PATTERN.sub(lambda _: self.topic, text)
        return GOAL_PATTERN.sub(lambda _: self.goal, text)

    def resolve_value(self, value: Any) -> Any:
        """Resolve templates inside nested dicts/lists; other values pass through."""
        if isinstance(value, str):
            return self.resolve_text(value)
        if isinstance(value, dict):
            return {k: self.resolve_value(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self.resolve_value(v) for v in value]
        if isinstance(value, tuple):
            return tuple(self.resolve_value(v) for v in value)
        return value
