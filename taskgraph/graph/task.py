"""
TaskSpec - The declarative input to one run.

A TaskSpec says WHAT the run is for (goal, type, constraints) and gives the
initial graph of work. It is immutable; the orchestrator copies the graph
before executing so the caller's snapshot is never mutated.
"""

import json
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from taskgraph.graph.edge import GraphSpec


class TaskSpec(BaseModel):
    """
    Immutable description of a run.

    Example:
        spec = TaskSpec(
            goal="Plan a weekend in Lisbon",
            type="orchestrate",
            graph=GraphSpec(nodes=[...], edges=[...]),
            constraints={"maxSteps": 10},
        )
    """

    goal: str
    type: str = "orchestrate"
    graph: GraphSpec = Field(default_factory=GraphSpec)
    constraints: dict[str, Any] = Field(default_factory=dict)
    topic: str | None = Field(
        default=None, description="Substituted for {{topic}}; defaults to the goal"
    )

    model_config = ConfigDict(frozen=True, extra="allow", populate_by_name=True)

    @property
    def effective_topic(self) -> str:
        return self.topic or self.goal

    @classmethod
    def from_file(cls, path: str | Path) -> "TaskSpec":
        """Load a TaskSpec from a JSON file."""
        with open(path, encoding="utf-8-sig") as f:
            return cls.model_validate(json.load(f))
