"""Workflow graph schema definitions using Pydantic models.

A workflow is a directed graph with exactly one Trigger node and any number
of Action, Condition and Transform nodes. Graphs arrive as JSON, either in
the runtime shape (``{id, kind, label, config}``) or in the authoring canvas
shape (``{id, type, data: {label, config}}``); both normalise to the same
frozen models here.

Validation is separate from parsing: a graph that parses may still be
structurally invalid. ``validate_structure`` must pass before a graph is
executed or compiled.
"""

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Annotated, Any, Literal, Union

import networkx as nx
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator

from flowsmith.core.conditions import ConditionSyntaxError, parse_condition
from flowsmith.core.registry import ActionRegistry, RegistryError, get_registry
from flowsmith.core.transforms import get_transform

logger = logging.getLogger(__name__)


class NodeKind(str, Enum):
    """Supported node kinds"""

    TRIGGER = "trigger"  # Entry point; output is the run payload
    ACTION = "action"  # Registered side-effecting capability
    CONDITION = "condition"  # Boolean expression selecting outgoing branches
    TRANSFORM = "transform"  # Pure data shaping


class StructuralErrorReason(str, Enum):
    DUPLICATE_ID = "duplicate_id"
    TRIGGER_COUNT = "trigger_count"
    DANGLING_EDGE = "dangling_edge"
    UNKNOWN_TERMINAL = "unknown_terminal"
    TRIGGER_HAS_INCOMING = "trigger_has_incoming"
    MISPLACED_BRANCH = "misplaced_branch"
    CYCLE = "cycle"
    INCOMPLETE_NODE = "incomplete_node"


class StructuralError(Exception):
    """The graph violates a structural invariant. Never retried."""

    def __init__(
        self,
        reason: StructuralErrorReason,
        message: str,
        node_ids: Iterable[str] = (),
        edge_ids: Iterable[str] = (),
    ):
        self.reason = reason
        self.message = message
        self.node_ids = tuple(node_ids)
        self.edge_ids = tuple(edge_ids)
        super().__init__(message)

    def __repr__(self) -> str:
        return f"StructuralError({self.reason.value!r}, {self.message!r})"


# Trigger types and the config fields each one requires
TRIGGER_TYPES: dict[str, tuple[str, ...]] = {
    "Manual": (),
    "Webhook": ("webhookPath",),
    "Schedule": ("scheduleCron",),
}


# ========== Node configs ==========


class _NodeConfig(BaseModel):
    """Config base: known keys are typed, unknown keys are kept as-is."""

    model_config = ConfigDict(extra="allow", frozen=True, populate_by_name=True)

    def values(self) -> dict[str, Any]:
        """Config as authored (aliased keys, unset optionals dropped)."""
        return self.model_dump(by_alias=True, exclude_none=True)


class TriggerConfig(_NodeConfig):
    trigger_type: str | None = Field(default="Manual", alias="triggerType")
    webhook_path: str | None = Field(default=None, alias="webhookPath")
    webhook_method: str | None = Field(default=None, alias="webhookMethod")
    schedule_cron: str | None = Field(default=None, alias="scheduleCron")
    schedule_timezone: str | None = Field(default=None, alias="scheduleTimezone")
    mock_request: Any = Field(default=None, alias="mockRequest")


class ActionConfig(_NodeConfig):
    action_type: str | None = Field(default=None, alias="actionType")
    integration_id: str | None = Field(default=None, alias="integrationId")

    def action_fields(self) -> dict[str, Any]:
        """Config minus the routing keys; this is what the action receives."""
        fields = self.values()
        fields.pop("actionType", None)
        fields.pop("integrationId", None)
        return fields


class ConditionConfig(_NodeConfig):
    condition: str | None = None


class TransformConfig(_NodeConfig):
    transform_type: str | None = Field(default=None, alias="transformType")

    def transform_fields(self) -> dict[str, Any]:
        fields = self.values()
        fields.pop("transformType", None)
        return fields


# ========== Nodes ==========


class _BaseNode(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str = Field(min_length=1)
    label: str = ""
    description: str | None = None

    # Fan-in policy for nodes with several incoming edges
    join: Literal["any", "all"] = "any"

    # Canvas metadata (position, styling); ignored by the runtime
    ui_metadata: dict | None = Field(default=None, alias="uiMetadata")

    @property
    def display_name(self) -> str:
        return self.label or self.id


class TriggerNode(_BaseNode):
    kind: Literal["trigger"] = "trigger"
    config: TriggerConfig = Field(default_factory=TriggerConfig)


class ActionNode(_BaseNode):
    kind: Literal["action"] = "action"
    config: ActionConfig = Field(default_factory=ActionConfig)


class ConditionNode(_BaseNode):
    kind: Literal["condition"] = "condition"
    config: ConditionConfig = Field(default_factory=ConditionConfig)


class TransformNode(_BaseNode):
    kind: Literal["transform"] = "transform"
    config: TransformConfig = Field(default_factory=TransformConfig)


Node = Annotated[
    Union[TriggerNode, ActionNode, ConditionNode, TransformNode],
    Field(discriminator="kind"),
]


def normalize_node(raw: Any) -> Any:
    """Map the canvas node shape onto the runtime shape.

    ``{id, type, data: {label, description, config}}`` becomes
    ``{id, kind, label, description, config}``. Runtime-shaped input is
    returned unchanged apart from a lower-cased ``kind``.
    """
    if not isinstance(raw, Mapping):
        return raw
    node = dict(raw)
    data = node.pop("data", None)
    if isinstance(data, Mapping):
        for key in ("label", "description", "config"):
            if key in data and key not in node:
                node[key] = data[key]
        if "kind" not in node and "type" not in node and "type" in data:
            node["kind"] = data["type"]
    if "kind" not in node and "type" in node:
        node["kind"] = node.pop("type")
    else:
        node.pop("type", None)
    if isinstance(node.get("kind"), str):
        node["kind"] = node["kind"].lower()
    if "position" in node:
        node.setdefault("uiMetadata", {"position": node.pop("position")})
    for transient in ("status", "selected", "dragging", "measured", "width", "height"):
        node.pop(transient, None)
    if node.get("config") is None:
        node.pop("config", None)
    return node


# ========== Edges ==========


class Edge(BaseModel):
    """Directed edge; ``branch`` selects a Condition outcome."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    source: str
    target: str
    branch: Literal["true", "false"] | None = Field(
        default=None, validation_alias=AliasChoices("branch", "sourceHandle")
    )

    @model_validator(mode="before")
    @classmethod
    def normalize_edge(cls, data: Any) -> Any:
        if not isinstance(data, Mapping):
            return data
        edge = dict(data)
        if not edge.get("id") and edge.get("source") and edge.get("target"):
            edge["id"] = f"{edge['source']}->{edge['target']}"
        for key in ("branch", "sourceHandle"):
            if key not in edge:
                continue
            value = edge[key]
            if isinstance(value, bool):
                edge[key] = "true" if value else "false"
            elif isinstance(value, str) and value.lower() in ("true", "false"):
                edge[key] = value.lower()
            elif key == "sourceHandle":
                # Canvas handles other than true/false carry no branch meaning
                edge.pop(key)
        return edge


# ========== Graph ==========


class Graph(BaseModel):
    """Complete workflow definition"""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str | None = None
    name: str = "Untitled workflow"
    description: str | None = None

    nodes: list[Node]
    edges: list[Edge] = Field(default_factory=list)

    # Designated terminal outputs; nodes without outgoing edges when unset
    terminal_node_ids: list[str] | None = Field(default=None, alias="terminalNodeIds")

    @model_validator(mode="before")
    @classmethod
    def normalize_nodes(cls, data: Any) -> Any:
        if isinstance(data, Mapping) and isinstance(data.get("nodes"), list):
            data = {**data, "nodes": [normalize_node(n) for n in data["nodes"]]}
        return data

    # ========== Lookup helpers ==========

    def node_map(self) -> dict[str, Any]:
        return {node.id: node for node in self.nodes}

    def get_node(self, node_id: str):
        for node in self.nodes:
            if node.id == node_id:
                return node
        raise KeyError(node_id)

    def triggers(self) -> list[TriggerNode]:
        return [node for node in self.nodes if node.kind == NodeKind.TRIGGER]

    @property
    def trigger(self) -> TriggerNode | None:
        triggers = self.triggers()
        return triggers[0] if triggers else None

    def incoming(self, node_id: str) -> list[Edge]:
        return [edge for edge in self.edges if edge.target == node_id]

    def outgoing(self, node_id: str) -> list[Edge]:
        return [edge for edge in self.edges if edge.source == node_id]

    def predecessors(self, node_id: str) -> list[str]:
        """Direct predecessors, in edge order, without duplicates."""
        return list(dict.fromkeys(edge.source for edge in self.incoming(node_id)))

    def successors(self, node_id: str) -> list[str]:
        return list(dict.fromkeys(edge.target for edge in self.outgoing(node_id)))

    def to_networkx(self) -> nx.DiGraph:
        """Convert to NetworkX DiGraph for analysis"""
        G = nx.DiGraph()
        for node in self.nodes:
            G.add_node(node.id)
        for edge in self.edges:
            G.add_edge(edge.source, edge.target)
        return G

    def ancestors(self, node_id: str) -> set[str]:
        return nx.ancestors(self.to_networkx(), node_id)

    def topological_layers(self) -> list[list[str]]:
        """Nodes grouped into layers that can run concurrently.

        Within a layer, nodes keep their order from ``nodes`` so the result
        is deterministic. Only valid on an acyclic graph.
        """
        order = {node.id: index for index, node in enumerate(self.nodes)}
        return [
            sorted(layer, key=order.__getitem__)
            for layer in nx.topological_generations(self.to_networkx())
        ]

    def terminal_nodes(self) -> list[str]:
        """Designated terminal nodes, or every node without outgoing edges."""
        if self.terminal_node_ids:
            return list(self.terminal_node_ids)
        sources = {edge.source for edge in self.edges}
        return [node.id for node in self.nodes if node.id not in sources]


# ========== Structural validation ==========


def _check_duplicates(graph: Graph) -> list[StructuralError]:
    errors = []
    seen: set[str] = set()
    for node in graph.nodes:
        if node.id in seen:
            errors.append(
                StructuralError(
                    StructuralErrorReason.DUPLICATE_ID,
                    f"Duplicate node ID: '{node.id}'",
                    node_ids=[node.id],
                )
            )
        seen.add(node.id)
    seen_edges: set[str] = set()
    for edge in graph.edges:
        if edge.id in seen_edges:
            errors.append(
                StructuralError(
                    StructuralErrorReason.DUPLICATE_ID,
                    f"Duplicate edge ID: '{edge.id}'",
                    edge_ids=[edge.id],
                )
            )
        seen_edges.add(edge.id)
    return errors


def _check_trigger_count(graph: Graph) -> list[StructuralError]:
    trigger_ids = [node.id for node in graph.triggers()]
    if len(trigger_ids) == 1:
        return []
    if not trigger_ids:
        message = "Graph has no trigger node (exactly one is required)"
    else:
        message = (
            f"Graph has {len(trigger_ids)} trigger nodes (exactly one is required): "
            f"{', '.join(trigger_ids)}"
        )
    return [StructuralError(StructuralErrorReason.TRIGGER_COUNT, message, node_ids=trigger_ids)]


def _check_edges(graph: Graph) -> list[StructuralError]:
    nodes = graph.node_map()
    errors = []
    for edge in graph.edges:
        missing = [end for end in (edge.source, edge.target) if end not in nodes]
        if missing:
            errors.append(
                StructuralError(
                    StructuralErrorReason.DANGLING_EDGE,
                    f"Edge {edge.id}: endpoint(s) not found: {', '.join(missing)}",
                    node_ids=missing,
                    edge_ids=[edge.id],
                )
            )
            continue
        if nodes[edge.target].kind == NodeKind.TRIGGER:
            errors.append(
                StructuralError(
                    StructuralErrorReason.TRIGGER_HAS_INCOMING,
                    f"Edge {edge.id}: trigger '{edge.target}' cannot have incoming edges",
                    node_ids=[edge.target],
                    edge_ids=[edge.id],
                )
            )
        if edge.branch is not None and nodes[edge.source].kind != NodeKind.CONDITION:
            errors.append(
                StructuralError(
                    StructuralErrorReason.MISPLACED_BRANCH,
                    f"Edge {edge.id}: branch '{edge.branch}' set on an edge leaving "
                    f"non-condition node '{edge.source}'",
                    node_ids=[edge.source],
                    edge_ids=[edge.id],
                )
            )
    return errors


def _check_terminals(graph: Graph) -> list[StructuralError]:
    nodes = graph.node_map()
    unknown = [node_id for node_id in graph.terminal_node_ids or [] if node_id not in nodes]
    if not unknown:
        return []
    return [
        StructuralError(
            StructuralErrorReason.UNKNOWN_TERMINAL,
            f"Terminal node(s) not found: {', '.join(unknown)}",
            node_ids=unknown,
        )
    ]


def find_cycle(graph: Graph) -> list[str] | None:
    """Return the members of one cycle among non-trigger nodes, or None.

    Iterative depth-first search with white/grey/black colouring; a grey
    target is a back edge and closes a cycle.
    """
    trigger_ids = {node.id for node in graph.triggers()}
    adjacency: dict[str, list[str]] = {
        node.id: [] for node in graph.nodes if node.id not in trigger_ids
    }
    for edge in graph.edges:
        if edge.source in adjacency and edge.target in adjacency:
            adjacency[edge.source].append(edge.target)

    white, grey, black = 0, 1, 2
    colour = dict.fromkeys(adjacency, white)
    for root in adjacency:
        if colour[root] != white:
            continue
        colour[root] = grey
        path = [root]
        stack = [iter(adjacency[root])]
        while stack:
            child = next(stack[-1], None)
            if child is None:
                colour[path.pop()] = black
                stack.pop()
                continue
            if colour[child] == grey:
                return path[path.index(child) :]
            if colour[child] == white:
                colour[child] = grey
                path.append(child)
                stack.append(iter(adjacency[child]))
    return None


def _check_cycles(graph: Graph) -> list[StructuralError]:
    cycle = find_cycle(graph)
    if cycle is None:
        return []
    return [
        StructuralError(
            StructuralErrorReason.CYCLE,
            f"Cycle detected: {' -> '.join(cycle + cycle[:1])}",
            node_ids=cycle,
        )
    ]


def _trigger_problem(node: TriggerNode) -> str | None:
    trigger_type = node.config.trigger_type or "Manual"
    canonical = {name.lower(): name for name in TRIGGER_TYPES}.get(trigger_type.lower())
    if canonical is None:
        return f"unknown trigger type '{trigger_type}'"
    values = node.config.values()
    missing = [name for name in TRIGGER_TYPES[canonical] if not str(values.get(name) or "").strip()]
    if missing:
        return f"{canonical} trigger is missing {', '.join(missing)}"
    return None


def _action_problem(node: ActionNode, registry: ActionRegistry) -> str | None:
    action_type = node.config.action_type
    if not action_type:
        return "no action selected (actionType is empty)"
    try:
        descriptor = registry.resolve(action_type)
    except RegistryError as e:
        return str(e)
    if descriptor is None:
        return f"unknown action '{action_type}'"
    missing = descriptor.missing_fields(node.config.action_fields())
    if missing:
        return f"{descriptor.label} is missing required field(s): {', '.join(missing)}"
    return None


def _condition_problem(node: ConditionNode) -> str | None:
    if not (node.config.condition or "").strip():
        return "condition expression is empty"
    try:
        parse_condition(node.config.condition)
    except ConditionSyntaxError as e:
        return f"invalid condition: {e}"
    return None


def _transform_problem(node: TransformNode) -> str | None:
    spec = get_transform(node.config.transform_type)
    if spec is None:
        return f"unknown transform '{node.config.transform_type or ''}'"
    missing = spec.missing_fields(node.config.transform_fields())
    if missing:
        return f"{spec.label} is missing required field(s): {', '.join(missing)}"
    return None


def _check_completeness(graph: Graph, registry: ActionRegistry) -> list[StructuralError]:
    errors = []
    for node in graph.nodes:
        if node.kind == NodeKind.TRIGGER:
            problem = _trigger_problem(node)
        elif node.kind == NodeKind.ACTION:
            problem = _action_problem(node, registry)
        elif node.kind == NodeKind.CONDITION:
            problem = _condition_problem(node)
        else:
            problem = _transform_problem(node)
        if problem:
            errors.append(
                StructuralError(
                    StructuralErrorReason.INCOMPLETE_NODE,
                    f"Node '{node.id}' ({node.display_name}): {problem}",
                    node_ids=[node.id],
                )
            )
    return errors


_CHECKS = (
    ("duplicates", _check_duplicates),
    ("trigger count", _check_trigger_count),
    ("edges", _check_edges),
    ("terminals", _check_terminals),
    ("cycles", _check_cycles),
)


def structural_errors(graph: Graph, registry: ActionRegistry | None = None) -> list[StructuralError]:
    """Every structural problem, in check order. Empty means valid."""
    registry = registry if registry is not None else get_registry()
    errors: list[StructuralError] = []
    for _, check in _CHECKS:
        errors.extend(check(graph))
    errors.extend(_check_completeness(graph, registry))
    return errors


def validate_structure(graph: Graph, registry: ActionRegistry | None = None) -> None:
    """Raise the first structural problem found.

    Checks run in order: duplicate ids, trigger cardinality, edge endpoints,
    terminal node ids, cycles, node completeness.

    Raises:
        StructuralError: If the graph is not executable
    """
    registry = registry if registry is not None else get_registry()
    for _, check in _CHECKS:
        errors = check(graph)
        if errors:
            raise errors[0]
    errors = _check_completeness(graph, registry)
    if errors:
        raise errors[0]


# ========== Trigger repair ==========


@dataclass(frozen=True)
class TriggerRepair:
    """What :func:`repair_triggers` removed."""

    kept_trigger_id: str | None
    removed_node_ids: tuple[str, ...] = ()
    removed_edge_ids: tuple[str, ...] = ()

    @property
    def changed(self) -> bool:
        return bool(self.removed_node_ids)


def repair_triggers(graph: Graph) -> tuple[Graph, TriggerRepair]:
    """Keep the first trigger (in node order) and drop the rest.

    Edges touching a dropped trigger are removed with it. A graph with zero
    or one trigger is returned unchanged. This is an explicit, opt-in step;
    validation never repairs.
    """
    triggers = graph.triggers()
    if len(triggers) <= 1:
        return graph, TriggerRepair(kept_trigger_id=triggers[0].id if triggers else None)

    kept = triggers[0]
    removed = {t.id for t in triggers[1:]}
    removed_edges = [e.id for e in graph.edges if e.source in removed or e.target in removed]
    repaired = graph.model_copy(
        update={
            "nodes": [n for n in graph.nodes if n.id not in removed],
            "edges": [e for e in graph.edges if e.source not in removed and e.target not in removed],
            "terminal_node_ids": (
                [t for t in graph.terminal_node_ids if t not in removed]
                if graph.terminal_node_ids is not None
                else None
            ),
        }
    )
    repair = TriggerRepair(
        kept_trigger_id=kept.id,
        removed_node_ids=tuple(t.id for t in triggers[1:]),
        removed_edge_ids=tuple(removed_edges),
    )
    logger.warning(
        f"Repaired graph '{graph.name}': kept trigger '{kept.id}', removed triggers "
        f"{list(repair.removed_node_ids)} and edges {list(repair.removed_edge_ids)}"
    )
    return repaired, repair
