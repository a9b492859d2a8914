"""Orchestrator module for graph building, planning and execution."""

from converge.orchestrator.dependency_graph import (
    DependencyGraph,
    DependencyNode,
    GraphBuilder,
    ResourceGraph
)
from converge.orchestrator.references import UNKNOWN, parse_value, resolve_value
from converge.orchestrator.planner import (
    ActionKind,
    AttributeDiff,
    Plan,
    PlanAction,
    Planner
)
from converge.orchestrator.executor import (
    ActionOutcome,
    ActionResult,
    ApplyReport,
    DeploymentExecutor
)
from converge.orchestrator.orchestrator import ReconcileOrchestrator

__all__ = [
    # Graph
    'DependencyGraph',
    'DependencyNode',
    'GraphBuilder',
    'ResourceGraph',

    # References
    'UNKNOWN',
    'parse_value',
    'resolve_value',

    # Planning
    'ActionKind',
    'AttributeDiff',
    'Plan',
    'PlanAction',
    'Planner',

    # Execution
    'ActionOutcome',
    'ActionResult',
    'ApplyReport',
    'DeploymentExecutor',

    # Main orchestrator
    'ReconcileOrchestrator',
]
