"""Graph structures: Tasks, Nodes, Edges, Planning, Execution and Mutation."""

from taskgraph.graph.edge import EdgeSpec, GraphSpec
from taskgraph.graph.executor import (
    ExecutorConfig,
    FailurePolicy,
    LevelExecutor,
    LevelOutcome,
)
from taskgraph.graph.mutation import (
    MutationHandler,
    MutationOutcome,
    MutationProposal,
    MutationRequest,
    parse_mutation_request,
)
from taskgraph.graph.node import NodeKind, NodeSpec
from taskgraph.graph.orchestrator import Orchestrator, run_orchestration, select_result
from taskgraph.graph.plan import ExecutionPlan, Level, Planner
from taskgraph.graph.task import TaskSpec
from taskgraph.graph.templating import TemplateResolver, referenced_nodes
from taskgraph.graph.validator import GraphValidator, ValidationIssue, validate_graph

__all__ = [
    # Task / graph model
    "TaskSpec",
    "GraphSpec",
    "NodeSpec",
    "NodeKind",
    "EdgeSpec",
    # Validation and planning
    "GraphValidator",
    "ValidationIssue",
    "validate_graph",
    "Planner",
    "ExecutionPlan",
    "Level",
    # Templating
    "TemplateResolver",
    "referenced_nodes",
    # Execution
    "ExecutorConfig",
    "FailurePolicy",
    "LevelExecutor",
    "LevelOutcome",
    # Mutation
    "MutationRequest",
    "MutationProposal",
    "MutationOutcome",
    "MutationHandler",
    "parse_mutation_request",
    # Orchestration
    "Orchestrator",
    "run_orchestration",
    "select_result",
]
