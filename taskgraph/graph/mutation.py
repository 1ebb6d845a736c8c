"""
Graph mutation - structural edits proposed by evaluation nodes.

An evaluation node's tool returns a MutationRequest. After the level that
produced it finishes, every request of that level is merged into ONE
candidate graph (removes first, then adds), the candidate is checked and
run through the validator, and then either committed wholesale or thrown
away. There is no partial apply.

Rules on top of structural validity:
- removed nodes must exist and must not have started
- removed edges must exist and must not point at a started node
- added edges must not point at a started node (no reordering of history)
"""

import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from taskgraph.errors import GraphValidationError, MutationError, MutationReason
from taskgraph.graph.edge import EdgeSpec, GraphSpec
from taskgraph.graph.node import NodeSpec
from taskgraph.graph.validator import GraphValidator
from taskgraph.runtime.trace import Trace
from taskgraph.schemas.run import ExecutionRecord, NodeStatus

logger = logging.getLogger(__name__)

_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)


class MutationRequest(BaseModel):
    """
    Structured output of an evaluation node.

    ``pass`` is a signal only: it is recorded in metrics and trace but never
    fails the run by itself.
    """

    passed: bool = Field(alias="pass")
    add_nodes: list[NodeSpec] = Field(default_factory=list)
    add_edges: list[EdgeSpec] = Field(default_factory=list)
    remove_nodes: list[str] = Field(default_factory=list)
    remove_edges: list[EdgeSpec] = Field(default_factory=list)
    reason: str = ""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    @property
    def is_empty(self) -> bool:
        return not (self.add_nodes or self.add_edges or self.remove_nodes or self.remove_edges)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_defaults=True)


def mutation_request_schema() -> dict[str, Any]:
    """JSON schema handed to the structured tool for evaluation nodes."""
    return MutationRequest.model_json_schema(by_alias=True)


def parse_mutation_request(output: Any) -> MutationRequest:
    """
    Coerce a tool result into a MutationRequest.

    Accepts a MutationRequest, a dict, or a string containing a JSON object
    (surrounding prose is tolerated).

    Raises:
        ValueError: if the output cannot be parsed or does not match the shape
    """
    if isinstance(output, MutationRequest):
        return output
    if isinstance(output, BaseModel):
        output = output.model_dump(by_alias=True)
    if isinstance(output, str | bytes):
        text = output.decode() if isinstance(output, bytes) else output
        try:
            output = json.loads(text)
        except json.JSONDecodeError:
            match = _JSON_OBJECT.search(text)
            if not match:
                raise ValueError("Evaluation output is not JSON") from None
            try:
                output = json.loads(match.group())
            except json.JSONDecodeError as e:
                raise ValueError(f"Evaluation output is not valid JSON: {e}") from None
    if not isinstance(output, dict):
        raise ValueError(f"Evaluation output must be an object, got {type(output).__name__}")
    try:
        return MutationRequest.model_validate(output)
    except ValidationError as e:
        errors = [
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        ]
        raise ValueError(f"Evaluation output does not match MutationRequest: {errors}") from None


@dataclass
class MutationProposal:
    """A request together with the evaluation node that produced it."""

    origin_id: str
    request: MutationRequest


@dataclass
class MutationOutcome:
    """What happened to one level's batch of proposals."""

    committed: bool
    graph: GraphSpec
    origins: list[str] = field(default_factory=list)
    error: MutationError | None = None
    added_nodes: list[str] = field(default_factory=list)
    removed_nodes: list[str] = field(default_factory=list)
    added_edges: list[str] = field(default_factory=list)
    removed_edges: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return self.committed and bool(
            self.added_nodes or self.removed_nodes or self.added_edges or self.removed_edges
        )


_VALIDATION_TO_MUTATION = {
    "DuplicateId": MutationReason.DUPLICATE_ID,
    "DanglingEdge": MutationReason.DANGLING_EDGE,
    "Cycle": MutationReason.CYCLE,
}


class MutationHandler:
    """
    Applies evaluation-node edits to the live graph, one batch at a time.

    The handler is the single writer of the graph. It never mutates the
    graph it is given: a committed outcome carries a new GraphSpec that
    the orchestrator swaps in before re-planning.
    """

    def __init__(self, trace: Trace, validator: GraphValidator | None = None):
        self.trace = trace
        self.validator = validator or GraphValidator()
        self._lock = asyncio.Lock()

    def build_candidate(
        self,
        graph: GraphSpec,
        proposals: list[MutationProposal],
        started: set[str],
    ) -> MutationOutcome:
        """
        Merge proposals into a validated candidate graph.

        Raises:
            MutationError: if any part of the merged edit is invalid
        """
        candidate = graph.copy_graph()
        outcome = MutationOutcome(
            committed=False, graph=candidate, origins=[p.origin_id for p in proposals]
        )

        for proposal in proposals:
            request = proposal.request
            for node_id in request.remove_nodes:
                if not candidate.has_node(node_id):
                    raise MutationError(
                        MutationReason.UNKNOWN_NODE,
                        f"Cannot remove unknown node '{node_id}'",
                        {"origin": proposal.origin_id, "node": node_id},
                    )
                if node_id in started:
                    raise MutationError(
                        MutationReason.STARTED_NODE,
                        f"Cannot remove node '{node_id}': it has already started",
                        {"origin": proposal.origin_id, "node": node_id},
                    )
                candidate.nodes = [n for n in candidate.nodes if n.id != node_id]
                candidate.edges = [e for e in candidate.edges if node_id not in e.key]
                outcome.removed_nodes.append(node_id)

            for edge in request.remove_edges:
                if not candidate.has_edge(*edge.key):
                    raise MutationError(
                        MutationReason.UNKNOWN_EDGE,
                        f"Cannot remove unknown edge '{edge}'",
                        {"origin": proposal.origin_id, "edge": str(edge)},
                    )
                if edge.target_id in started:
                    raise MutationError(
                        MutationReason.STARTED_NODE,
                        f"Cannot remove edge '{edge}': target has already started",
                        {"origin": proposal.origin_id, "edge": str(edge)},
                    )
                candidate.edges = [e for e in candidate.edges if e.key != edge.key]
                outcome.removed_edges.append(str(edge))

        for proposal in proposals:
            request = proposal.request
            for node in request.add_nodes:
                if candidate.has_node(node.id):
                    raise MutationError(
                        MutationReason.DUPLICATE_ID,
                        f"Cannot add node '{node.id}': id already in graph",
                        {"origin": proposal.origin_id, "node": node.id},
                    )
                candidate.nodes.append(node.model_copy(deep=True))
                outcome.added_nodes.append(node.id)

        for proposal in proposals:
            for edge in proposal.request.add_edges:
                if edge.target_id in started:
                    raise MutationError(
                        MutationReason.STARTED_NODE,
                        f"Cannot add edge '{edge}': target has already started",
                        {"origin": proposal.origin_id, "edge": str(edge)},
                    )
                if candidate.has_edge(*edge.key):
                    continue
                candidate.edges.append(edge)
                outcome.added_edges.append(str(edge))

        try:
            self.validator.validate(candidate)
        except GraphValidationError as e:
            raise MutationError(
                _VALIDATION_TO_MUTATION[str(e.reason)],
                f"Mutation rejected: {e.message}",
                {"origins": outcome.origins, **e.details},
            ) from e

        return outcome

    async def apply(
        self,
        graph: GraphSpec,
        proposals: list[MutationProposal],
        records: dict[str, ExecutionRecord],
    ) -> MutationOutcome:
        """
        Validate and commit (or discard) one level's merged proposals.

        Finalizes every originating evaluation record: ``complete`` when the
        batch commits, ``error`` with a MutationError when it is rejected.
        """
        async with self._lock:
            origins = [p.origin_id for p in proposals]
            started = {nid for nid, rec in records.items() if rec.status != NodeStatus.PENDING}

            try:
                outcome = self.build_candidate(graph, proposals, started)
            except MutationError as e:
                logger.warning(f"Mutation from {origins} rejected: {e.message}")
                self.trace.warn(
                    "graph.mutation.rejected",
                    {"origins": origins, "reason": str(e.reason), "message": e.message},
                )
                for origin in origins:
                    records[origin].mark_error(e.message, e.kind)
                return MutationOutcome(committed=False, graph=graph, origins=origins, error=e)

            outcome.committed = True
            for origin in origins:
                records[origin].finalize()

            if outcome.changed:
                self.trace.info(
                    "graph.extend",
                    {
                        "origins": origins,
                        "addNodes": outcome.added_nodes,
                        "addEdges": outcome.added_edges,
                        "removeNodes": outcome.removed_nodes,
                        "removeEdges": outcome.removed_edges,
                    },
                )
                logger.info(
                    f"Graph mutated by {origins}: +{len(outcome.added_nodes)} nodes, "
                    f"-{len(outcome.removed_nodes)} nodes, +{len(outcome.added_edges)} edges, "
                    f"-{len(outcome.removed_edges)} edges"
                )
            return outcome
