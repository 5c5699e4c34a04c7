"""Loading graphs from files and from authoring-assistant output.

Assistant replies often wrap the graph JSON in Markdown fences or add prose
around it. :func:`parse_candidate_graph` extracts and parses the JSON; the
result still has to pass :func:`validate_structure` like any other graph.
"""

import json
import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from flowsmith.core.graph_schema import Graph, TriggerRepair, repair_triggers

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*\n(?P<body>.*?)\n?```", re.DOTALL)


class GraphParseError(ValueError):
    """Input is not a parseable graph document."""

    pass


@dataclass(frozen=True)
class CandidateGraph:
    graph: Graph
    repair: TriggerRepair | None = None


def extract_json_text(text: str) -> str:
    """Strip Markdown fences / surrounding prose from assistant output."""
    match = _FENCE_RE.search(text)
    if match:
        return match.group("body").strip()
    stripped = text.strip()
    if stripped.startswith("{"):
        return stripped
    start, end = stripped.find("{"), stripped.rfind("}")
    if start != -1 and end > start:
        return stripped[start : end + 1]
    return stripped


def graph_from_data(data: Any) -> Graph:
    """Validate a decoded document into a :class:`Graph`.

    Accepts the graph itself or a wrapper with the graph under ``workflow``.

    Raises:
        GraphParseError: If the document does not describe a graph
    """
    if isinstance(data, Mapping) and "nodes" not in data and isinstance(data.get("workflow"), Mapping):
        data = data["workflow"]
    if not isinstance(data, Mapping):
        raise GraphParseError(f"Expected a JSON object, got {type(data).__name__}")
    try:
        return Graph.model_validate(data)
    except ValidationError as e:
        raise GraphParseError(f"Invalid graph document: {e}") from e


def parse_candidate_graph(source: str | Mapping[str, Any], repair: bool = False) -> CandidateGraph:
    """Parse a graph produced by an authoring assistant.

    Args:
        source: Raw assistant text (possibly fenced) or an already-decoded mapping
        repair: Apply :func:`repair_triggers` when the graph has several triggers

    Raises:
        GraphParseError: If no graph can be decoded
    """
    if isinstance(source, str):
        text = extract_json_text(source)
        try:
            data = json.loads(text)
        except ValueError as e:
            raise GraphParseError(f"Assistant output is not valid JSON: {e}") from e
    else:
        data = source

    graph = graph_from_data(data)
    if not repair:
        return CandidateGraph(graph=graph)
    repaired, report = repair_triggers(graph)
    return CandidateGraph(graph=repaired, repair=report)


def load_graph_file(path: Path) -> Graph:
    """Load a graph from a JSON or YAML file.

    Raises:
        GraphParseError: If the file cannot be decoded or is not a graph
    """
    text = path.read_text(encoding="utf-8")
    try:
        if path.suffix.lower() in (".yaml", ".yml"):
            data = yaml.safe_load(text)
        else:
            data = json.loads(text)
    except (yaml.YAMLError, ValueError) as e:
        raise GraphParseError(f"Cannot parse {path}: {e}") from e
    return graph_from_data(data)
