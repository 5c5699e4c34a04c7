"""Core modules for the workflow runtime."""

from flowsmith.core.graph_engine import GraphExecutor, NodeEvent
from flowsmith.core.graph_schema import Graph, StructuralError, validate_structure
from flowsmith.core.models import ExecutionRun, NodeStatus, RunStatus
from flowsmith.core.registry import ActionRegistry, get_registry, init_registry

__all__ = [
    "ActionRegistry",
    "ExecutionRun",
    "Graph",
    "GraphExecutor",
    "NodeEvent",
    "NodeStatus",
    "RunStatus",
    "StructuralError",
    "get_registry",
    "init_registry",
    "validate_structure",
]
