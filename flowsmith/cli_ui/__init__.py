"""Terminal rendering for graphs and runs."""

from flowsmith.cli_ui.graph_renderer import StatusTableRenderer, TerminalGraphRenderer

__all__ = [
    "TerminalGraphRenderer",
    "StatusTableRenderer",
]
