"""Structural validation for task graphs.

Checks the three rules every live graph must satisfy: unique node
ids, edges that resolve to existing nodes, and no cycles. Runs before the
first node executes and against every mutation candidate.
"""

import logging
from collections import deque
from dataclasses import dataclass, field

from taskgraph.errors import GraphValidationError, ValidationReason
from taskgraph.graph.edge import GraphSpec

logger = logging.getLogger(__name__)


@dataclass
class ValidationIssue:
    """One structural problem found in a graph."""

    reason: ValidationReason
    message: str
    subjects: list[str] = field(default_factory=list)


class GraphValidator:
    """
    Validates graph structure.

    ``validate`` raises on the first class of problem found (duplicates,
    then dangling edges, then cycles); ``collect`` reports everything.
    """

    def find_issues(self, graph: GraphSpec) -> list[ValidationIssue]:
        issues: list[ValidationIssue] = []

        seen: set[str] = set()
        duplicates: list[str] = []
        for node in graph.nodes:
            if node.id in seen and node.id not in duplicates:
                duplicates.append(node.id)
            seen.add(node.id)
        for node_id in duplicates:
            issues.append(
                ValidationIssue(
                    reason=ValidationReason.DUPLICATE_ID,
                    message=f"Duplicate node id: '{node_id}'",
                    subjects=[node_id],
                )
            )

        for edge in graph.edges:
            missing = [nid for nid in edge.key if nid not in seen]
            for nid in missing:
                role = "source" if nid == edge.source_id else "target"
                issues.append(
                    ValidationIssue(
                        reason=ValidationReason.DANGLING_EDGE,
                        message=f"Edge '{edge}' references missing {role} '{nid}'",
                        subjects=[edge.source_id, edge.target_id],
                    )
                )

        # Cycle detection only makes sense on a graph whose edges resolve
        if not any(i.reason == ValidationReason.DANGLING_EDGE for i in issues):
            cycle_nodes = self.find_cycle_nodes(graph)
            if cycle_nodes:
                issues.append(
                    ValidationIssue(
                        reason=ValidationReason.CYCLE,
                        message=f"Graph contains a cycle through nodes {cycle_nodes}",
                        subjects=cycle_nodes,
                    )
                )

        return issues

    def find_cycle_nodes(self, graph: GraphSpec) -> list[str]:
        """
        Kahn's algorithm over the distinct node ids.

        Returns the ids that could not be ordered (every node on a cycle plus
        anything downstream of one), in insertion order. Empty when acyclic.
        """
        order = list(dict.fromkeys(graph.node_ids))
        indegree = {nid: 0 for nid in order}
        adjacency: dict[str, list[str]] = {nid: [] for nid in order}
        for source, target in dict.fromkeys(e.key for e in graph.edges):
            if source in adjacency and target in indegree:
                adjacency[source].append(target)
                indegree[target] += 1

        queue = deque(nid for nid in order if indegree[nid] == 0)
        visited = 0
        while queue:
            current = queue.popleft()
            visited += 1
            for nxt in adjacency[current]:
                indegree[nxt] -= 1
                if indegree[nxt] == 0:
                    queue.append(nxt)

        if visited == len(order):
            return []
        return [nid for nid in order if indegree[nid] > 0]

    def validate(self, graph: GraphSpec) -> None:
        """Raise GraphValidationError if the graph is malformed."""
        issues = self.find_issues(graph)
        if not issues:
            return
        first = issues[0]
        same_reason = [i for i in issues if i.reason == first.reason]
        logger.debug("Graph validation failed: %s", [i.message for i in issues])
        raise GraphValidationError(
            first.reason,
            "; ".join(i.message for i in same_reason),
            details={"subjects": sorted({s for i in same_reason for s in i.subjects})},
        )

    def collect(self, graph: GraphSpec) -> list[str]:
        """Return every problem as a message (empty list when valid)."""
        return [issue.message for issue in self.find_issues(graph)]


def validate_graph(graph: GraphSpec) -> None:
    """Module-level shortcut for GraphValidator().validate()."""
    GraphValidator().validate(graph)
