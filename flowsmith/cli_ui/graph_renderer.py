"""Terminal rendering for workflow graphs and runs using Rich.

All user-controlled strings (labels, ids, errors, outputs) are escaped
before they reach Rich markup.
"""

import json
from typing import Any

from rich.console import Console
from rich.markup import escape
from rich.table import Table
from rich.tree import Tree

from flowsmith.core.graph_schema import Edge, Graph, NodeKind
from flowsmith.core.models import ExecutionRun, NodeStatus


def _normalize_status(status: NodeStatus | str | None) -> str:
    """Normalize status to string for consistent lookup."""
    if isinstance(status, NodeStatus):
        return status.value
    return str(status) if status else "pending"


class TerminalGraphRenderer:
    """Renders workflow graphs as trees or topological layers."""

    # Node kind symbols and colors
    NODE_STYLES = {
        NodeKind.TRIGGER.value: ("[T]", "green"),
        NodeKind.ACTION.value: ("[A]", "cyan"),
        NodeKind.CONDITION.value: ("[?]", "magenta"),
        NodeKind.TRANSFORM.value: ("[~]", "blue"),
    }

    STATUS_COLORS = {
        "pending": "dim",
        "running": "blue bold",
        "success": "green",
        "failed": "red bold",
        "skipped": "dim strikethrough",
    }

    STATUS_MARKS = {"success": " ✓", "failed": " ✗", "running": " ⟳"}

    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    def _node_text(self, node, statuses: dict[str, Any] | None) -> str:
        symbol, color = self.NODE_STYLES.get(node.kind, ("[ ]", "white"))
        safe_label = escape(node.display_name)
        detail = self._node_detail(node)
        if detail:
            safe_label += f" [dim]{escape(detail)}[/dim]"

        status = _normalize_status(statuses.get(node.id)) if statuses else None
        if status and status != "pending":
            status_color = self.STATUS_COLORS.get(status, "white")
            return f"[{status_color}]{symbol} {safe_label}{self.STATUS_MARKS.get(status, '')}[/]"
        return f"[{color}]{symbol} {safe_label}[/]"

    @staticmethod
    def _node_detail(node) -> str:
        if node.kind == NodeKind.ACTION:
            return f"({node.config.action_type or 'no action'})"
        if node.kind == NodeKind.CONDITION:
            return f"({(node.config.condition or '')[:50]})"
        if node.kind == NodeKind.TRANSFORM:
            return f"({node.config.transform_type or 'no transform'})"
        return f"({node.config.trigger_type or 'Manual'})"

    def render_as_tree(
        self,
        graph: Graph,
        statuses: dict[str, NodeStatus | str] | None = None,
        max_depth: int = 50,
    ) -> Tree:
        """Render the graph as a Rich Tree rooted at the trigger.

        Nodes reachable along several paths appear under each parent;
        unreachable nodes are listed separately.
        """
        tree = Tree(f"[bold]{escape(graph.name)}[/]")
        node_map = graph.node_map()
        edge_map: dict[str, list[Edge]] = {n.id: [] for n in graph.nodes}
        for edge in graph.edges:
            if edge.source in edge_map:
                edge_map[edge.source].append(edge)

        trigger = graph.trigger
        if trigger is None:
            tree.add("[red]Error: graph has no trigger node[/]")
            return tree

        reached: set[str] = set()
        self._add_node_to_tree(
            tree, trigger, statuses, node_map, edge_map, set(), reached, 0, max_depth
        )

        orphans = [n for n in graph.nodes if n.id not in reached]
        if orphans:
            orphan_branch = tree.add("[yellow]Not reachable from trigger[/]")
            for node in orphans:
                orphan_branch.add(self._node_text(node, statuses))
        return tree

    def _add_node_to_tree(
        self,
        parent: Tree,
        node,
        statuses: dict[str, Any] | None,
        node_map: dict[str, Any],
        edge_map: dict[str, list[Edge]],
        visited: set,
        reached: set,
        depth: int,
        max_depth: int,
    ) -> None:
        if depth >= max_depth:
            parent.add("[dim]... (max depth reached)[/]")
            return
        if node.id in visited:
            parent.add(f"[dim]↩ {escape(node.id)} (cycle)[/]")
            return
        visited = visited | {node.id}
        reached.add(node.id)

        branch = parent.add(self._node_text(node, statuses))
        for edge in edge_map.get(node.id, []):
            child = node_map.get(edge.target)
            if child is None:
                branch.add(f"[red]→ {escape(edge.target)} (missing)[/]")
                continue
            target = branch
            if node.kind == NodeKind.CONDITION:
                target = branch.add(f"[dim]({edge.branch or 'true'})[/]")
            self._add_node_to_tree(
                target, child, statuses, node_map, edge_map, visited, reached, depth + 1, max_depth
            )

    def render_layers(self, graph: Graph, statuses: dict[str, Any] | None = None) -> str:
        """Render topological layers, one line each (nodes in a layer may run concurrently)."""
        node_map = graph.node_map()
        lines = []
        for index, layer in enumerate(graph.topological_layers()):
            texts = [self._node_text(node_map[node_id], statuses) for node_id in layer]
            lines.append(f"[bold]{index}[/]  " + "  |  ".join(texts))
        return "\n".join(lines)


class StatusTableRenderer:
    """Renders per-node run results as a Rich table."""

    STATUS_TEXT = {
        "success": "[green]✓ Success[/]",
        "failed": "[red]✗ Failed[/]",
        "running": "[blue]⟳ Running[/]",
        "skipped": "[dim]⊘ Skipped[/]",
        "pending": "[dim]○ Pending[/]",
    }

    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    def render_run_table(self, run: ExecutionRun, max_output: int = 60) -> Table:
        status_color = "green" if run.status.value == "success" else "red"
        table = Table(
            title=f"Run {escape(run.run_id[:8])}... [{status_color}]{run.status.value}[/]"
        )
        table.add_column("Node", style="cyan")
        table.add_column("Kind", style="magenta")
        table.add_column("Status", justify="center")
        table.add_column("Attempts", justify="right")
        table.add_column("Output / Error", max_width=max_output)

        for node in run.graph.nodes:
            state = run.nodes.get(node.id)
            status = _normalize_status(state.status if state else None)
            output = run.outputs.get(node.id)
            if state and state.error:
                kind = f"{state.error_kind.value}: " if state.error_kind else ""
                detail = f"[red]{escape(kind + state.error)}[/]"
            elif output is not None:
                text = json.dumps(output.fields, default=str)
                if len(text) > max_output:
                    text = text[: max_output - 3] + "..."
                detail = escape(text)
            else:
                detail = ""
            table.add_row(
                escape(node.display_name),
                str(node.kind),
                self.STATUS_TEXT.get(status, escape(status)),
                str(state.attempts if state else 0),
                detail,
            )
        return table
