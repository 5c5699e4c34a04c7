"""Runtime models for workflow runs."""

import threading
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr

from flowsmith.core.graph_schema import Graph


def _now() -> datetime:
    return datetime.now(timezone.utc)


class NodeStatus(str, Enum):
    """Execution status for nodes"""

    PENDING = "pending"  # Waiting for predecessors
    RUNNING = "running"  # Currently executing
    SUCCESS = "success"  # Output published
    FAILED = "failed"  # Error recorded; no output
    SKIPPED = "skipped"  # Not activated (or cancelled)

    @property
    def is_terminal(self) -> bool:
        return self in (NodeStatus.SUCCESS, NodeStatus.FAILED, NodeStatus.SKIPPED)


class RunStatus(str, Enum):
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


class ErrorKind(str, Enum):
    RESOLUTION = "resolution"  # Template or identifier could not be resolved
    ACTION = "action"  # Action/transform failed after retries
    CREDENTIALS = "credentials"  # Credential source failed
    CONDITION = "condition"  # Expression could not be evaluated
    INTERNAL = "internal"  # Unexpected engine error


class NodeOutput(BaseModel):
    """Output of one successful node. Written once, read-only afterwards."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    node_id: str = Field(alias="nodeId")
    label: str = ""
    fields: dict[str, Any] = Field(default_factory=dict)


class NodeRunState(BaseModel):
    status: NodeStatus = NodeStatus.PENDING
    attempts: int = 0
    error: str | None = None
    error_kind: ErrorKind | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None


class ExecutionRun(BaseModel):
    """One run of a graph: snapshot, per-node states and outputs.

    State transitions are guarded: a node only moves
    ``pending -> running -> success | failed | skipped`` (or straight from
    pending to a terminal state), and terminal states never change.
    """

    run_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    graph: Graph
    trigger_payload: Any = None
    nodes: dict[str, NodeRunState] = Field(default_factory=dict)
    outputs: dict[str, NodeOutput] = Field(default_factory=dict)
    status: RunStatus = RunStatus.RUNNING
    cancelled: bool = False
    started_at: datetime = Field(default_factory=_now)
    finished_at: datetime | None = None

    _cancel_event: threading.Event = PrivateAttr(default_factory=threading.Event)

    @classmethod
    def create(cls, graph: Graph, trigger_payload: Any = None, run_id: str | None = None) -> "ExecutionRun":
        run = cls(graph=graph, trigger_payload=trigger_payload)
        if run_id:
            run.run_id = run_id
        run.nodes = {node.id: NodeRunState() for node in graph.nodes}
        return run

    # ========== Cancellation ==========

    def cancel(self) -> None:
        """Request cancellation. Safe to call from any thread."""
        self._cancel_event.set()

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_event.is_set()

    # ========== Transitions ==========

    def status_of(self, node_id: str) -> NodeStatus:
        return self.nodes[node_id].status

    def mark_running(self, node_id: str) -> bool:
        state = self.nodes[node_id]
        if state.status != NodeStatus.PENDING:
            return False
        state.status = NodeStatus.RUNNING
        state.started_at = _now()
        return True

    def mark_success(self, node_id: str, fields: dict[str, Any], attempts: int = 1) -> bool:
        state = self.nodes[node_id]
        if state.status.is_terminal:
            return False
        label = self.graph.get_node(node_id).label
        self.outputs[node_id] = NodeOutput(node_id=node_id, label=label, fields=fields)
        self._finish(state, NodeStatus.SUCCESS, attempts)
        return True

    def mark_failed(
        self, node_id: str, error: str, error_kind: ErrorKind, attempts: int = 1
    ) -> bool:
        state = self.nodes[node_id]
        if state.status.is_terminal:
            return False
        state.error = error
        state.error_kind = error_kind
        self._finish(state, NodeStatus.FAILED, attempts)
        return True

    def mark_skipped(self, node_id: str, reason: str | None = None) -> bool:
        state = self.nodes[node_id]
        if state.status.is_terminal:
            return False
        state.error = reason
        self._finish(state, NodeStatus.SKIPPED, state.attempts)
        return True

    def _finish(self, state: NodeRunState, status: NodeStatus, attempts: int) -> None:
        state.status = status
        state.attempts = attempts
        state.finished_at = _now()

    def finish(self, status: RunStatus) -> None:
        self.status = status
        self.cancelled = self.cancel_requested
        self.finished_at = _now()

    # ========== Views ==========

    def node_ids_with(self, status: NodeStatus) -> list[str]:
        return [node.id for node in self.graph.nodes if self.nodes[node.id].status == status]

    @property
    def failed_node_ids(self) -> list[str]:
        return self.node_ids_with(NodeStatus.FAILED)

    @property
    def skipped_node_ids(self) -> list[str]:
        return self.node_ids_with(NodeStatus.SKIPPED)

    @property
    def succeeded_node_ids(self) -> list[str]:
        return self.node_ids_with(NodeStatus.SUCCESS)

    def statuses(self) -> dict[str, str]:
        return {node_id: state.status.value for node_id, state in self.nodes.items()}

    @property
    def duration_seconds(self) -> float | None:
        if self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()
