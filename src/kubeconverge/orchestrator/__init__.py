"""Planning and applying changes to the resource graph."""

from kubeconverge.orchestrator.graph import Direction, ResourceGraph, order_nodes
from kubeconverge.orchestrator.planner import (
    Action,
    AttributeChange,
    Plan,
    PlannedAction,
    Planner,
    diff_attributes,
)
from kubeconverge.orchestrator.executor import (
    ActionResult,
    ApplyEngine,
    ApplyReport,
    ExecutionStatus,
    Outcome,
    ProgressCallback,
)
from kubeconverge.orchestrator.reconciler import Reconciler, build_backend

__all__ = [
    # Graph
    'Direction',
    'ResourceGraph',
    'order_nodes',

    # Planning
    'Action',
    'AttributeChange',
    'Plan',
    'PlannedAction',
    'Planner',
    'diff_attributes',

    # Execution
    'ActionResult',
    'ApplyEngine',
    'ApplyReport',
    'ExecutionStatus',
    'Outcome',
    'ProgressCallback',

    # Facade
    'Reconciler',
    'build_backend',
]
