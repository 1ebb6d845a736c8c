"""
Edge Protocol - How nodes connect in a task graph.

An edge is a plain "must-complete-before" dependency between two node ids.
The graph is an arena: nodes and edges are flat, id-indexed rows, so a
mutation is just inserting or removing rows and a candidate graph can be
built, validated and thrown away without touching the live one.

Edges accept several spellings on input:
    {"sourceId": "a", "targetId": "b"}
    {"source_id": "a", "target_id": "b"}
    {"from": "a", "to": "b"}
and always serialize as sourceId/targetId when dumped by alias.
"""

from collections.abc import Iterable
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from taskgraph.graph.node import NodeSpec


class EdgeSpec(BaseModel):
    """
    Specification for an edge between nodes.

    Example:
        EdgeSpec(source_id="search", target_id="answer")
    """

    source_id: str = Field(
        validation_alias=AliasChoices("sourceId", "source_id", "source", "from"),
        serialization_alias="sourceId",
        description="Node that must complete first",
    )
    target_id: str = Field(
        validation_alias=AliasChoices("targetId", "target_id", "target", "to"),
        serialization_alias="targetId",
        description="Node that waits for the source",
    )

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    @property
    def key(self) -> tuple[str, str]:
        return (self.source_id, self.target_id)

    def __str__(self) -> str:
        return f"{self.source_id}->{self.target_id}"


class GraphSpec(BaseModel):
    """
    Complete specification of a task graph.

    The TaskSpec's graph is only the initial snapshot; the orchestrator
    works on a deep copy (the live graph) which the mutation handler
    replaces wholesale on every committed edit.
    """

    nodes: list[NodeSpec] = Field(default_factory=list, description="All node specifications")
    edges: list[EdgeSpec] = Field(default_factory=list, description="All edge specifications")

    model_config = ConfigDict(populate_by_name=True)

    def get_node(self, node_id: str) -> NodeSpec | None:
        """Get a node by ID."""
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def has_node(self, node_id: str) -> bool:
        return self.get_node(node_id) is not None

    @property
    def node_ids(self) -> list[str]:
        """Node ids in insertion order."""
        return [node.id for node in self.nodes]

    def has_edge(self, source_id: str, target_id: str) -> bool:
        return any(e.key == (source_id, target_id) for e in self.edges)

    def get_outgoing_edges(self, node_id: str) -> list[EdgeSpec]:
        """Get all edges leaving a node."""
        return [e for e in self.edges if e.source_id == node_id]

    def get_incoming_edges(self, node_id: str) -> list[EdgeSpec]:
        """Get all edges entering a node."""
        return [e for e in self.edges if e.target_id == node_id]

    def predecessors(self, node_id: str) -> list[str]:
        """Direct dependencies of a node, without duplicates."""
        return list(dict.fromkeys(e.source_id for e in self.get_incoming_edges(node_id)))

    def successors(self, node_id: str) -> list[str]:
        """Direct dependents of a node, without duplicates."""
        return list(dict.fromkeys(e.target_id for e in self.get_outgoing_edges(node_id)))

    def descendants(self, node_ids: Iterable[str]) -> set[str]:
        """All nodes transitively reachable from ``node_ids`` (excluding the roots)."""
        seen: set[str] = set()
        to_visit = [t for n in node_ids for t in self.successors(n)]
        while to_visit:
            current = to_visit.pop()
            if current in seen:
                continue
            seen.add(current)
            to_visit.extend(self.successors(current))
        return seen

    def copy_graph(self) -> "GraphSpec":
        """Deep copy, used to build mutation candidates."""
        return self.model_copy(deep=True)

    def validate(self) -> list[str]:  # type: ignore[override]
        """Validate the graph structure. Returns human-readable errors."""
        from taskgraph.graph.validator import GraphValidator

        return GraphValidator().collect(self)

    def to_json_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
