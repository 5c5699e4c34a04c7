"""Built-in data-shaping operations for Transform nodes.

Each transform has two faces: ``apply`` runs it inside the engine, ``render``
emits an equivalent Python expression for the compiler. The small helper
functions below are shared by both; the compiler copies their source into
the generated program.
"""

import inspect
import json
import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from flowsmith.core.registry import ActionError
from flowsmith.core.templates import MissingField, UnresolvedReference, resolve

logger = logging.getLogger(__name__)


# ========== Shared helpers (copied verbatim into compiled programs) ==========


def merge_outputs(outputs):
    """Union of output mappings; later mappings win. ``None`` entries are ignored."""
    merged = {}
    for output in outputs:
        if output is not None:
            merged.update(output)
    return merged


def pick_fields(output, names):
    """Select ``names`` from an output mapping. Raises KeyError for a missing name."""
    if output is None:
        raise KeyError(names[0] if names else "")
    return {name: output[name] for name in names}


def parse_json_value(text):
    """Parse JSON text; objects become fields, anything else is wrapped as ``value``."""
    parsed = json.loads(text)
    if isinstance(parsed, dict):
        return parsed
    return {"value": parsed}


# ========== Contexts ==========


@dataclass(frozen=True)
class TransformContext:
    """What a transform may read at run time."""

    node_id: str
    outputs: Mapping[str, Any]
    predecessor_ids: tuple[str, ...] = ()

    def fields_of(self, node_id: str) -> Mapping[str, Any] | None:
        output = self.outputs.get(node_id)
        if output is None:
            return None
        return getattr(output, "fields", output)


@dataclass(frozen=True)
class RenderContext:
    """What a transform needs to emit source for the compiler."""

    render_template: Callable[[str], str]
    output_var: Callable[[str], str]
    predecessor_ids: tuple[str, ...] = ()
    # Per predecessor: its output variable, or None when its edge is not activated
    predecessor_exprs: tuple[str, ...] = ()


@dataclass(frozen=True)
class TransformSpec:
    slug: str
    label: str
    description: str
    apply: Callable[[Mapping[str, Any], TransformContext], dict[str, Any]]
    render: Callable[[Mapping[str, Any], RenderContext], str]
    required_fields: tuple[str, ...] = ()
    helpers: tuple[Callable, ...] = ()
    sources: Callable[[Mapping[str, Any]], list[str]] = field(default=lambda config: [])

    def missing_fields(self, config: Mapping[str, Any]) -> list[str]:
        missing = []
        for name in self.required_fields:
            value = config.get(name)
            if value is None or (isinstance(value, (str, list, dict)) and not value):
                missing.append(name)
        return missing

    def helper_sources(self) -> list[str]:
        return [inspect.getsource(helper) for helper in self.helpers]


def _field_names(value: Any) -> list[str]:
    if isinstance(value, str):
        return [name.strip() for name in value.split(",") if name.strip()]
    if isinstance(value, (list, tuple)):
        return [str(name) for name in value]
    return []


def _mapping(config: Mapping[str, Any], node_id: str) -> Mapping[str, Any]:
    mapping = config.get("mapping")
    if not isinstance(mapping, Mapping):
        raise ActionError(f"transform/{node_id}", "Map Data requires 'mapping' to be an object")
    return mapping


# ========== map-data ==========


def _apply_map_data(config, ctx: TransformContext) -> dict[str, Any]:
    return {
        key: resolve(value, ctx.outputs) if isinstance(value, str) else value
        for key, value in _mapping(config, ctx.node_id).items()
    }


def _render_map_data(config, ctx: RenderContext) -> str:
    mapping = config.get("mapping") or {}
    items = [
        f"{key!r}: {ctx.render_template(value) if isinstance(value, str) else repr(value)}"
        for key, value in mapping.items()
    ]
    return "{" + ", ".join(items) + "}"


# ========== merge ==========


def _apply_merge(config, ctx: TransformContext) -> dict[str, Any]:
    return merge_outputs([ctx.fields_of(node_id) for node_id in ctx.predecessor_ids])


def _render_merge(config, ctx: RenderContext) -> str:
    return f"merge_outputs([{', '.join(ctx.predecessor_exprs)}])"


# ========== pick-fields ==========


def _pick_source(config: Mapping[str, Any], predecessor_ids: Sequence[str]) -> str | None:
    source = config.get("source")
    if isinstance(source, str) and source.strip():
        return source.strip()
    if len(predecessor_ids) == 1:
        return predecessor_ids[0]
    return None


def _apply_pick_fields(config, ctx: TransformContext) -> dict[str, Any]:
    names = _field_names(config.get("fields"))
    source = _pick_source(config, ctx.predecessor_ids)
    if source is None:
        raise ActionError(
            f"transform/{ctx.node_id}",
            "Pick Fields needs a 'source' node when it has more than one predecessor",
        )
    fields = ctx.fields_of(source)
    if fields is None:
        raise UnresolvedReference(source, ",".join(names))
    try:
        return pick_fields(fields, names)
    except KeyError as e:
        raise MissingField(source, str(e.args[0]), list(fields)) from e


def _render_pick_fields(config, ctx: RenderContext) -> str:
    names = _field_names(config.get("fields"))
    source = _pick_source(config, ctx.predecessor_ids)
    return f"pick_fields({ctx.output_var(source)}, {names!r})"


def _pick_sources(config: Mapping[str, Any]) -> list[str]:
    source = config.get("source")
    return [source.strip()] if isinstance(source, str) and source.strip() else []


# ========== parse-json ==========


def _apply_parse_json(config, ctx: TransformContext) -> dict[str, Any]:
    value = config.get("value")
    if not isinstance(value, str):
        # Already structured (e.g. a literal object in the config)
        return value if isinstance(value, dict) else {"value": value}
    try:
        return parse_json_value(value)
    except ValueError as e:
        raise ActionError(f"transform/{ctx.node_id}", f"Parse JSON failed: {e}") from e


def _render_parse_json(config, ctx: RenderContext) -> str:
    value = config.get("value")
    if not isinstance(value, str):
        return repr(value if isinstance(value, dict) else {"value": value})
    return f"parse_json_value({ctx.render_template(value)})"


TRANSFORMS: dict[str, TransformSpec] = {
    spec.slug: spec
    for spec in (
        TransformSpec(
            slug="map-data",
            label="Map Data",
            description="Build new fields from templates over earlier outputs",
            apply=_apply_map_data,
            render=_render_map_data,
            required_fields=("mapping",),
        ),
        TransformSpec(
            slug="merge",
            label="Merge",
            description="Combine the outputs of all activated predecessors",
            apply=_apply_merge,
            render=_render_merge,
            helpers=(merge_outputs,),
        ),
        TransformSpec(
            slug="pick-fields",
            label="Pick Fields",
            description="Keep only the listed fields of one node's output",
            apply=_apply_pick_fields,
            render=_render_pick_fields,
            required_fields=("fields",),
            helpers=(pick_fields,),
            sources=_pick_sources,
        ),
        TransformSpec(
            slug="parse-json",
            label="Parse JSON",
            description="Parse a JSON string into fields",
            apply=_apply_parse_json,
            render=_render_parse_json,
            required_fields=("value",),
            helpers=(parse_json_value,),
        ),
    )
}


def get_transform(transform_type: str | None) -> TransformSpec | None:
    """Look up a transform by slug or display label (case-insensitive)."""
    if not transform_type:
        return None
    key = transform_type.strip().lower()
    for spec in TRANSFORMS.values():
        if key in (spec.slug, spec.label.lower()):
            return spec
    return None
