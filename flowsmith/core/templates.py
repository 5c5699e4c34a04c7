"""Cross-node value references.

A config string may embed references to earlier node outputs using the
``{{@nodeId:Label.field}}`` syntax. The node id is the lookup key; the label
is only a human-readable hint and is never compared against the node's
current label, since labels drift after authoring.

``field`` may be a dotted path (``data.items.0``) to reach into nested
output values. Resolution is pure: the same template and outputs always
produce the same string.
"""

import json
import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

TEMPLATE_PATTERN = re.compile(
    r"\{\{@(?P<node_id>[^:{}]+):(?P<label>[^.{}]*)\.(?P<field>[^{}]+)\}\}"
)


class ResolutionError(Exception):
    """A template reference could not be resolved."""

    def __init__(self, node_id: str, field: str, message: str):
        self.node_id = node_id
        self.field = field
        super().__init__(message)


class UnresolvedReference(ResolutionError):
    """The referenced node has no output (not executed, skipped, failed or unknown)."""

    def __init__(self, node_id: str, field: str):
        super().__init__(
            node_id,
            field,
            f"Unresolved reference to '{node_id}.{field}': node has no output",
        )


class MissingField(ResolutionError):
    """The referenced node produced output, but not the requested field."""

    def __init__(self, node_id: str, field: str, available: list[str] | None = None):
        self.available = sorted(available or [])
        message = f"Output of node '{node_id}' has no field '{field}'"
        if self.available:
            message += f" (available: {', '.join(self.available)})"
        super().__init__(node_id, field, message)


@dataclass(frozen=True)
class TemplateReference:
    """One ``{{@nodeId:Label.field}}`` token."""

    node_id: str
    label: str
    field: str
    raw: str

    @property
    def path(self) -> list[str]:
        return self.field.split(".")


def find_references(template: str) -> list[TemplateReference]:
    """Parse every reference token in a string, in order of appearance."""
    return [
        TemplateReference(
            node_id=m.group("node_id").strip(),
            label=m.group("label").strip(),
            field=m.group("field").strip(),
            raw=m.group(0),
        )
        for m in TEMPLATE_PATTERN.finditer(template)
    ]


def has_references(value: Any) -> bool:
    return isinstance(value, str) and TEMPLATE_PATTERN.search(value) is not None


def config_references(config: Mapping[str, Any]) -> list[TemplateReference]:
    """Collect references from every string in a config, including nested ones."""
    refs: list[TemplateReference] = []

    def walk(value: Any) -> None:
        if isinstance(value, str):
            refs.extend(find_references(value))
        elif isinstance(value, Mapping):
            for item in value.values():
                walk(item)
        elif isinstance(value, (list, tuple)):
            for item in value:
                walk(item)

    walk(config)
    return refs


def _output_fields(output: Any) -> Mapping[str, Any]:
    """Accept NodeOutput-like objects or plain field mappings."""
    fields = getattr(output, "fields", output)
    if not isinstance(fields, Mapping):
        return {}
    return fields


def lookup_field(node_id: str, fields: Mapping[str, Any], field: str) -> Any:
    """Walk a dotted field path through nested mappings and lists.

    Raises:
        MissingField: If any segment of the path is absent
    """
    parts = field.split(".")
    if parts[0] not in fields:
        raise MissingField(node_id, field, list(fields))
    value: Any = fields[parts[0]]
    for part in parts[1:]:
        if isinstance(value, Mapping) and part in value:
            value = value[part]
        elif isinstance(value, (list, tuple)) and part.isdigit() and int(part) < len(value):
            value = value[int(part)]
        else:
            raise MissingField(node_id, field)
    return value


def resolve_reference(ref: TemplateReference, outputs: Mapping[str, Any]) -> Any:
    """Return the raw (unrendered) value a reference points at."""
    if ref.node_id not in outputs or outputs[ref.node_id] is None:
        raise UnresolvedReference(ref.node_id, ref.field)
    return lookup_field(ref.node_id, _output_fields(outputs[ref.node_id]), ref.field)


def render_value(value: Any) -> str:
    """Render a resolved value for substitution into a string."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str)


def resolve(template: str, outputs: Mapping[str, Any]) -> str:
    """Substitute every reference token in ``template``.

    Args:
        template: String possibly containing ``{{@nodeId:Label.field}}`` tokens
        outputs: Mapping of node id to NodeOutput (or to a plain field mapping)

    Returns:
        The fully substituted string

    Raises:
        UnresolvedReference: A referenced node has no output
        MissingField: A referenced node's output lacks the field
    """
    # Resolve every token before substituting so a failure never yields
    # a partially substituted string.
    values = {}
    for ref in find_references(template):
        if ref.raw not in values:
            values[ref.raw] = render_value(resolve_reference(ref, outputs))

    if not values:
        return template
    return TEMPLATE_PATTERN.sub(lambda m: values[m.group(0)], template)


def resolve_config(config: Mapping[str, Any], outputs: Mapping[str, Any]) -> dict[str, Any]:
    """Resolve every top-level string value of a node config.

    Non-string values (numbers, booleans, lists, nested mappings) pass
    through untouched.
    """
    return {
        key: resolve(value, outputs) if isinstance(value, str) else value
        for key, value in config.items()
    }
