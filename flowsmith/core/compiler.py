"""Source compiler: graph -> standalone Python program.

The emitted program has one step function per distinct action (the
action's own source), the helpers its transforms and conditions need, and a
``run_workflow(trigger)`` function with one guarded block per node in
topological-layer order. Template tokens become direct subscripts of the
producing node's output variable, so the program has no template engine.

Every static problem is collected and raised as one :class:`CompileError`
before any text is rendered.
"""

import inspect
import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from jinja2 import FileSystemLoader, StrictUndefined
from jinja2.sandbox import SandboxedEnvironment

from flowsmith import __version__
from flowsmith.core import conditions
from flowsmith.core.config import RetryPolicy
from flowsmith.core.graph_schema import (
    Edge,
    Graph,
    NodeKind,
    StructuralError,
    validate_structure,
)
from flowsmith.core.registry import ActionDescriptor, ActionRegistry, EnvVar, get_registry
from flowsmith.core.templates import TEMPLATE_PATTERN, TemplateReference, find_references
from flowsmith.core.transforms import RenderContext, get_transform

logger = logging.getLogger(__name__)

TEMPLATE_DIR = Path(__file__).parent.parent / "templates"
PROGRAM_TEMPLATE = "program.py.j2"

BASE_IMPORTS = ("import copy", "import json", "import os", "import random", "import sys", "import time")

# Exceptions the generated program treats as "reference could not be resolved"
_RESOLUTION_EXCEPTIONS = "(KeyError, IndexError, TypeError)"


class CompileError(Exception):
    """The graph cannot be compiled. No partial output is produced."""

    def __init__(self, message: str, problems: Iterable[str] = (), node_ids: Iterable[str] = ()):
        self.problems = list(problems)
        self.node_ids = tuple(node_ids)
        super().__init__(message)


@dataclass
class CompiledWorkflow:
    """Generated program plus what it needs to run."""

    name: str
    source: str
    dependencies: dict[str, str] = field(default_factory=dict)
    env_vars: list[EnvVar] = field(default_factory=list)
    node_order: list[str] = field(default_factory=list)

    def requirements_txt(self) -> str:
        return "".join(f"{name}{spec}\n" for name, spec in self.dependencies.items())

    def env_example(self) -> str:
        lines = []
        for env_var in self.env_vars:
            if env_var.description:
                lines.append(f"# {env_var.description}")
            lines.append(f"{env_var.name}=")
        return "\n".join(lines) + ("\n" if lines else "")

    def write(self, output_dir: Path) -> list[Path]:
        """Write ``workflow.py``, ``requirements.txt`` and ``.env.example``."""
        output_dir.mkdir(parents=True, exist_ok=True)
        files = {
            "workflow.py": self.source,
            "requirements.txt": self.requirements_txt(),
            ".env.example": self.env_example(),
        }
        written = []
        for filename, content in files.items():
            path = output_dir / filename
            path.write_text(content, encoding="utf-8")
            written.append(path)
        return written


@dataclass
class _Block:
    node_id: str
    key: str
    label: str
    kind: str
    var: str
    lines: list[str]


def _identifier(node_id: str, used: set[str]) -> str:
    base = "out_" + re.sub(r"\W", "_", node_id).strip("_").lower()
    if base == "out_":
        base = "out_node"
    name = base
    counter = 2
    while name in used:
        name = f"{base}_{counter}"
        counter += 1
    used.add(name)
    return name


class SourceCompiler:
    """Compiles validated graphs into standalone Python programs.

    Args:
        registry: Action registry (process-wide registry by default)
        retry: Retry policy baked into the generated program
    """

    def __init__(self, registry: ActionRegistry | None = None, retry: RetryPolicy | None = None):
        self.registry = registry if registry is not None else get_registry()
        self.retry = retry or RetryPolicy()
        self.jinja_env = SandboxedEnvironment(
            loader=FileSystemLoader(TEMPLATE_DIR),
            undefined=StrictUndefined,
            autoescape=False,  # Python source, not HTML
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=True,
        )

    def compile(self, graph: Graph) -> CompiledWorkflow:
        """Compile a graph.

        Raises:
            CompileError: If the graph is structurally invalid or any node
                cannot be compiled
        """
        try:
            validate_structure(graph, self.registry)
        except StructuralError as e:
            raise CompileError(
                f"Invalid graph: {e}", problems=[str(e)], node_ids=e.node_ids
            ) from e

        descriptors = self._check(graph)

        used: set[str] = set()
        self._vars = {node.id: _identifier(node.id, used) for node in graph.nodes}
        self._graph = graph

        order = [node_id for layer in graph.topological_layers() for node_id in layer]
        blocks = [self._render_node(graph.get_node(node_id), descriptors) for node_id in order]

        steps = {d.function_name: d for d in descriptors.values()}
        imports = sorted(
            set(BASE_IMPORTS) | {line for d in steps.values() for line in d.source_imports},
            key=lambda line: (line.startswith("from "), line),
        )

        helpers = []
        if any(node.kind == NodeKind.CONDITION for node in graph.nodes):
            helpers.append(inspect.getsource(conditions.compare))
        for node in graph.nodes:
            if node.kind == NodeKind.TRANSFORM:
                for source in get_transform(node.config.transform_type).helper_sources():
                    if source not in helpers:
                        helpers.append(source)

        name = " ".join((graph.name or "Workflow").split()).replace('"""', "'''")
        source = self.jinja_env.get_template(PROGRAM_TEMPLATE).render(
            name=name,
            version=__version__,
            imports=imports,
            retry=self.retry,
            helpers=[h.rstrip() for h in helpers],
            steps=[d.source_template.rstrip() for d in steps.values()],
            blocks=blocks,
            terminal_node_ids=repr(graph.terminal_nodes()),
        )

        action_ids = [d.action_id for d in descriptors.values()]
        compiled = CompiledWorkflow(
            name=graph.name,
            source=source,
            dependencies=self.registry.dependencies_for(action_ids),
            env_vars=self.registry.env_vars_for(action_ids),
            node_order=order,
        )
        logger.info(
            f"Compiled graph '{graph.name}': {len(order)} nodes, "
            f"{len(steps)} step functions, {len(compiled.dependencies)} dependencies"
        )
        return compiled

    # ========== Static checks ==========

    def _check(self, graph: Graph) -> dict[str, ActionDescriptor]:
        """Collect every compile problem; return node id -> descriptor for actions."""
        problems: list[str] = []
        node_ids: list[str] = []
        descriptors: dict[str, ActionDescriptor] = {}
        functions: dict[str, str] = {}

        def problem(node_id: str, message: str) -> None:
            problems.append(f"Node '{node_id}': {message}")
            node_ids.append(node_id)

        for node in graph.nodes:
            ancestors = graph.ancestors(node.id)
            refs: list[TemplateReference] = []
            sources: list[str] = []

            if node.kind == NodeKind.ACTION:
                descriptor = self.registry.resolve(node.config.action_type)
                descriptors[node.id] = descriptor
                if not descriptor.source_template:
                    problem(node.id, f"action '{descriptor.action_id}' has no source template")
                owner = functions.setdefault(descriptor.function_name, descriptor.action_id)
                if owner != descriptor.action_id:
                    problem(
                        node.id,
                        f"step function name '{descriptor.function_name}' is used by both "
                        f"'{owner}' and '{descriptor.action_id}'",
                    )
                refs = [r for value in node.config.action_fields().values() for r in self._refs(value)]
            elif node.kind == NodeKind.CONDITION:
                refs = conditions.parse_condition(node.config.condition).references()
            elif node.kind == NodeKind.TRANSFORM:
                spec = get_transform(node.config.transform_type)
                config = node.config.transform_fields()
                refs = [r for value in config.values() for r in self._refs(value)]
                sources = spec.sources(config)
                if spec.slug == "map-data" and not isinstance(config.get("mapping"), dict):
                    problem(node.id, "Map Data requires 'mapping' to be an object")
                if spec.slug == "pick-fields" and not sources and len(graph.predecessors(node.id)) != 1:
                    problem(node.id, "Pick Fields needs a 'source' when it has several predecessors")

            for node_id in [r.node_id for r in refs] + sources:
                if node_id not in ancestors:
                    reason = "does not exist" if node_id not in graph.node_map() else "is not upstream"
                    problem(node.id, f"unresolved reference to '{node_id}' (node {reason})")

        if problems:
            raise CompileError(
                f"Cannot compile graph '{graph.name}': {len(problems)} problem(s)\n"
                + "\n".join(f"  - {p}" for p in problems),
                problems=problems,
                node_ids=dict.fromkeys(node_ids),
            )
        return descriptors

    @staticmethod
    def _refs(value: Any) -> list[TemplateReference]:
        if isinstance(value, str):
            return find_references(value)
        if isinstance(value, dict):
            return [r for item in value.values() for r in SourceCompiler._refs(item)]
        if isinstance(value, (list, tuple)):
            return [r for item in value for r in SourceCompiler._refs(item)]
        return []

    # ========== Expression rendering ==========

    def _reference_expr(self, ref: TemplateReference) -> str:
        var = self._vars[ref.node_id]
        if any(part.isdigit() for part in ref.path):
            return f"_dig({var}, {ref.field!r})"
        return var + "".join(f"[{part!r}]" for part in ref.path)

    def _template_expr(self, text: str) -> str:
        parts = []
        pos = 0
        for match in TEMPLATE_PATTERN.finditer(text):
            if match.start() > pos:
                parts.append(repr(text[pos : match.start()]))
            parts.append(f"_fmt({self._reference_expr(find_references(match.group(0))[0])})")
            pos = match.end()
        if pos < len(text):
            parts.append(repr(text[pos:]))
        return " + ".join(parts) if parts else "''"

    def _value_expr(self, value: Any) -> str:
        return self._template_expr(value) if isinstance(value, str) else repr(value)

    def _edge_expr(self, edge: Edge) -> str:
        var = self._vars[edge.source]
        if self._graph.get_node(edge.source).kind != NodeKind.CONDITION:
            return f"{var} is not None"
        expected = (edge.branch or "true") == "true"
        return f"({var} is not None and {var}['result'] is {expected})"

    def _guard_expr(self, node) -> str:
        incoming = self._graph.incoming(node.id)
        if not incoming:
            return "False"
        joiner = " and " if node.join == "all" else " or "
        return joiner.join(self._edge_expr(edge) for edge in incoming)

    def _scope_expr(self, node) -> str:
        entries = [
            f"{self._vars[edge.source]} if {self._edge_expr(edge)} else None"
            for edge in self._graph.incoming(node.id)
        ]
        return "[" + ", ".join(entries) + "]"

    # ========== Node blocks ==========

    def _render_node(self, node, descriptors: dict[str, ActionDescriptor]) -> _Block:
        var = self._vars[node.id]
        key = repr(node.id)

        if node.kind == NodeKind.TRIGGER:
            lines = [
                f"{var} = dict(trigger) if isinstance(trigger, dict) else "
                "({} if trigger is None else {'payload': trigger})",
                f"status[{key}] = 'success'",
            ]
            return _Block(node.id, key, " ".join(node.display_name.split()), node.kind, var, lines)

        if node.kind == NodeKind.ACTION:
            descriptor = descriptors[node.id]
            config = ", ".join(
                f"{name!r}: {self._value_expr(value)}"
                for name, value in node.config.action_fields().items()
            )
            body = [
                "try:",
                f"    config = {{{config}}}",
                f"except {_RESOLUTION_EXCEPTIONS} as exc:",
                f"    status[{key}] = 'failed'",
                f"    errors[{key}] = f'unresolved reference: {{exc!r}}'",
                "else:",
                f"    {var} = _run_step({key}, {descriptor.function_name}, config, "
                f"{descriptor.credential_keys!r}, status, errors)",
            ]
        else:
            if node.kind == NodeKind.CONDITION:
                expression = conditions.parse_condition(node.config.condition)
                scope = self._scope_expr(node)
                value = "{'result': bool(%s)}" % expression.to_python(
                    self._reference_expr,
                    lambda name: f"_scope_lookup({name!r}, {scope})",
                )
                caught = _RESOLUTION_EXCEPTIONS
            else:
                spec = get_transform(node.config.transform_type)
                ctx = RenderContext(
                    render_template=self._template_expr,
                    output_var=self._vars.__getitem__,
                    predecessor_ids=tuple(self._graph.predecessors(node.id)),
                    predecessor_exprs=tuple(
                        f"({self._vars[edge.source]} if {self._edge_expr(edge)} else None)"
                        for edge in self._graph.incoming(node.id)
                    ),
                )
                value = spec.render(node.config.transform_fields(), ctx)
                caught = "(KeyError, IndexError, TypeError, ValueError)"
            body = [
                "try:",
                f"    {var} = {value}",
                f"except {caught} as exc:",
                f"    status[{key}] = 'failed'",
                f"    errors[{key}] = repr(exc)",
                "else:",
                f"    status[{key}] = 'success'",
            ]

        lines = [f"{var} = None", f"if {self._guard_expr(node)}:"]
        lines += [f"    {line}" for line in body]
        lines += ["else:", f"    status[{key}] = 'skipped'"]
        return _Block(node.id, key, " ".join(node.display_name.split()), node.kind, var, lines)
