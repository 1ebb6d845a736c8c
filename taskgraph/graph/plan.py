"""
Planner - Topological leveling of the remaining task graph.

The plan groups nodes into levels: every dependency of a node in level N
lives in a level < N or has already been executed. Nodes in one level are
mutually independent and may run concurrently.

The planner is re-run on the remaining (not yet started) subgraph after
every committed mutation. Nodes that already started are never planned
again; their edges only count as satisfied dependencies.
"""

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from taskgraph.errors import GraphValidationError, ValidationReason
from taskgraph.graph.edge import GraphSpec

logger = logging.getLogger(__name__)


@dataclass
class Level:
    """A set of mutually independent nodes, in graph insertion order."""

    index: int
    node_ids: list[str] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.node_ids)

    def __iter__(self):
        return iter(self.node_ids)


@dataclass
class ExecutionPlan:
    """Ordered levels for the remaining subgraph."""

    levels: list[Level] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.levels

    @property
    def node_ids(self) -> list[str]:
        return [nid for level in self.levels for nid in level.node_ids]

    def groupings(self) -> list[list[str]]:
        return [list(level.node_ids) for level in self.levels]

    def level_of(self, node_id: str) -> int | None:
        for level in self.levels:
            if node_id in level.node_ids:
                return level.index
        return None


class Planner:
    """
    Computes level groupings with a layered Kahn's algorithm.

    Example:
        plan = Planner().plan(graph)
        for level in plan.levels:
            ...

        # After a mutation: plan only what has not started yet
        plan = Planner().plan(graph, started=records.keys())
    """

    def plan(self, graph: GraphSpec, started: Iterable[str] = ()) -> ExecutionPlan:
        """
        Plan every node in ``graph`` that is not in ``started``.

        Raises:
            GraphValidationError: if the remaining subgraph contains a cycle
        """
        started_ids = set(started)
        remaining = [nid for nid in dict.fromkeys(graph.node_ids) if nid not in started_ids]
        remaining_set = set(remaining)

        indegree = {nid: 0 for nid in remaining}
        dependents: dict[str, list[str]] = {nid: [] for nid in remaining}
        for source, target in dict.fromkeys(e.key for e in graph.edges):
            if source in remaining_set and target in remaining_set:
                indegree[target] += 1
                dependents[source].append(target)

        position = {nid: i for i, nid in enumerate(remaining)}
        current = [nid for nid in remaining if indegree[nid] == 0]
        levels: list[Level] = []
        placed = 0

        while current:
            levels.append(Level(index=len(levels), node_ids=current))
            placed += len(current)
            next_ids: list[str] = []
            for nid in current:
                for dep in dependents[nid]:
                    indegree[dep] -= 1
                    if indegree[dep] == 0:
                        next_ids.append(dep)
            current = sorted(next_ids, key=position.__getitem__)

        if placed != len(remaining):
            stuck = [nid for nid in remaining if indegree[nid] > 0]
            raise GraphValidationError(
                ValidationReason.CYCLE,
                f"Cannot plan: cycle through nodes {stuck}",
                details={"subjects": stuck},
            )

        logger.debug("Planned %d nodes into %d levels", placed, len(levels))
        return ExecutionPlan(levels=levels)
