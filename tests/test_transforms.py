"""Tests for built-in transforms."""

from __future__ import annotations

import pytest

from flowsmith.core.registry import ActionError
from flowsmith.core.templates import MissingField, UnresolvedReference
from flowsmith.core.transforms import (
    RenderContext,
    TransformContext,
    get_transform,
    merge_outputs,
    parse_json_value,
    pick_fields,
)


@pytest.fixture
def ctx() -> TransformContext:
    return TransformContext(
        node_id="x",
        outputs={
            "t": {"email": "a@b.com", "name": "Ada"},
            "fetch": {"status": 200, "data": {"id": 7}},
        },
        predecessor_ids=("t", "fetch"),
    )


class TestLookup:
    @pytest.mark.parametrize("name", ["merge", "Merge", "  MERGE "])
    def test_by_slug_or_label(self, name):
        assert get_transform(name).slug == "merge"

    def test_label_lookup(self):
        assert get_transform("Pick Fields").slug == "pick-fields"

    def test_unknown(self):
        assert get_transform("reverse") is None
        assert get_transform(None) is None

    def test_required_fields(self):
        spec = get_transform("map-data")
        assert spec.missing_fields({}) == ["mapping"]
        assert spec.missing_fields({"mapping": {}}) == ["mapping"]
        assert spec.missing_fields({"mapping": {"a": "b"}}) == []


class TestMapData:
    def test_resolves_templates(self, ctx):
        spec = get_transform("map-data")
        result = spec.apply(
            {"mapping": {"to": "{{@t:T.email}}", "code": "{{@fetch:F.status}}", "fixed": 1}},
            ctx,
        )
        assert result == {"to": "a@b.com", "code": "200", "fixed": 1}

    def test_mapping_must_be_object(self, ctx):
        with pytest.raises(ActionError):
            get_transform("map-data").apply({"mapping": "nope"}, ctx)

    def test_missing_field(self, ctx):
        with pytest.raises(MissingField):
            get_transform("map-data").apply({"mapping": {"p": "{{@t:T.phone}}"}}, ctx)


class TestMerge:
    def test_later_predecessor_wins(self, ctx):
        ctx = TransformContext(
            node_id="m",
            outputs={"a": {"k": 1, "a": True}, "b": {"k": 2}},
            predecessor_ids=("a", "b"),
        )
        assert get_transform("merge").apply({}, ctx) == {"k": 2, "a": True}

    def test_helper_ignores_none(self):
        assert merge_outputs([None, {"a": 1}, None]) == {"a": 1}


class TestPickFields:
    def test_single_predecessor(self):
        ctx = TransformContext("p", {"t": {"a": 1, "b": 2, "c": 3}}, ("t",))
        assert get_transform("pick-fields").apply({"fields": "a, c"}, ctx) == {"a": 1, "c": 3}

    def test_explicit_source(self, ctx):
        result = get_transform("pick-fields").apply({"fields": ["data"], "source": "fetch"}, ctx)
        assert result == {"data": {"id": 7}}

    def test_ambiguous_source(self, ctx):
        with pytest.raises(ActionError):
            get_transform("pick-fields").apply({"fields": "email"}, ctx)

    def test_missing_field(self, ctx):
        with pytest.raises(MissingField) as exc_info:
            get_transform("pick-fields").apply({"fields": "phone", "source": "t"}, ctx)
        assert exc_info.value.node_id == "t"

    def test_source_without_output(self, ctx):
        with pytest.raises(UnresolvedReference):
            get_transform("pick-fields").apply({"fields": "x", "source": "ghost"}, ctx)

    def test_sources_reported_for_scheduling(self):
        assert get_transform("pick-fields").sources({"source": " fetch "}) == ["fetch"]
        assert get_transform("merge").sources({}) == []

    def test_helper_raises_key_error(self):
        with pytest.raises(KeyError):
            pick_fields({"a": 1}, ["b"])


class TestParseJson:
    def test_object(self, ctx):
        assert get_transform("parse-json").apply({"value": '{"a": [1, 2]}'}, ctx) == {"a": [1, 2]}

    def test_scalar_is_wrapped(self):
        assert parse_json_value("[1, 2]") == {"value": [1, 2]}

    def test_invalid_json(self, ctx):
        with pytest.raises(ActionError, match="Parse JSON failed"):
            get_transform("parse-json").apply({"value": "{not json"}, ctx)

    def test_structured_value_passes_through(self, ctx):
        assert get_transform("parse-json").apply({"value": {"a": 1}}, ctx) == {"a": 1}


class TestRender:
    """Transforms render to expressions over the compiled program's variables."""

    @pytest.fixture
    def render_ctx(self) -> RenderContext:
        return RenderContext(
            render_template=lambda text: f"T({text!r})",
            output_var=lambda node_id: f"out_{node_id}",
            predecessor_ids=("a",),
            predecessor_exprs=("(out_a if out_a is not None else None)",),
        )

    def test_map_data(self, render_ctx):
        source = get_transform("map-data").render({"mapping": {"k": "v", "n": 2}}, render_ctx)
        assert source == "{'k': T('v'), 'n': 2}"

    def test_merge(self, render_ctx):
        source = get_transform("merge").render({}, render_ctx)
        assert source == "merge_outputs([(out_a if out_a is not None else None)])"

    def test_pick_fields(self, render_ctx):
        source = get_transform("pick-fields").render({"fields": "x,y"}, render_ctx)
        assert source == "pick_fields(out_a, ['x', 'y'])"

    def test_parse_json(self, render_ctx):
        source = get_transform("parse-json").render({"value": "{{@a:A.body}}"}, render_ctx)
        assert source == "parse_json_value(T('{{@a:A.body}}'))"

    def test_helper_sources(self):
        (source,) = get_transform("parse-json").helper_sources()
        assert source.startswith("def parse_json_value(text):")
