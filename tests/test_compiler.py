"""Tests for the source compiler.

Generated programs are executed in-process with ``requests.post`` patched,
so compiled behaviour is checked against the same scenarios as the engine.
"""

from __future__ import annotations

from unittest.mock import Mock, patch

import pytest

from flowsmith.core.compiler import CompileError, SourceCompiler
from flowsmith.core.config import RetryPolicy
from flowsmith.core.registry import ActionDescriptor


@pytest.fixture
def compiler(registry) -> SourceCompiler:
    return SourceCompiler(registry=registry, retry=RetryPolicy(max_attempts=2, initial_delay=0.0, jitter=0.0))


@pytest.fixture
def env(monkeypatch):
    monkeypatch.setenv("RESEND_API_KEY", "re_test")
    monkeypatch.setenv("RESEND_FROM_EMAIL", "bot@example.com")
    monkeypatch.setenv("SLACK_API_KEY", "xoxb-test")


def load_program(source: str) -> dict:
    """Execute generated source as a module namespace."""
    namespace = {"__name__": "workflow"}
    exec(compile(source, "workflow.py", "exec"), namespace)
    return namespace


def _response(body: dict) -> Mock:
    response = Mock(ok=True, status_code=200)
    response.json.return_value = body
    return response


@pytest.fixture
def email_graph(graph_builder):
    return (
        graph_builder("Welcome email")
        .trigger("trigger-1", label="Form")
        .action(
            "send",
            "Send Email",
            label="Send Email",
            emailTo="{{@trigger-1:Form.email}}",
            emailSubject="Welcome",
            emailBody="Hi {{@trigger-1:Form.email}}",
        )
        .edge("trigger-1", "send")
        .build()
    )


@pytest.fixture
def branch_graph(graph_builder):
    return (
        graph_builder("Route by status")
        .trigger("t")
        .condition("check", 'status == "active"')
        .action("notify", "slack/send-message", slackChannel="#ops", slackMessage="{{@t:T.name}} is active")
        .action(
            "mail",
            "resend/send-email",
            emailTo="{{@t:T.email}}",
            emailSubject="Come back",
            emailBody="We miss you",
        )
        .edge("t", "check")
        .edge("check", "notify", branch="true")
        .edge("check", "mail", branch="false")
        .build()
    )


# =============================================================================
# Static checks
# =============================================================================


class TestCompileErrors:
    """Every problem is reported before any source is produced."""

    def test_unknown_action(self, compiler, graph_builder):
        graph = graph_builder().trigger("t").action("a", "nope/missing").edge("t", "a").build()
        with pytest.raises(CompileError) as exc_info:
            compiler.compile(graph)
        assert "unknown action 'nope/missing'" in str(exc_info.value)
        assert exc_info.value.node_ids == ("a",)

    def test_structural_error(self, compiler, graph_builder):
        graph = graph_builder().trigger("t1").trigger("t2").build()
        with pytest.raises(CompileError, match="Invalid graph"):
            compiler.compile(graph)

    def test_reference_to_non_ancestor(self, compiler, graph_builder):
        graph = (
            graph_builder()
            .trigger("t")
            .action("a", "http/request", endpoint="https://example.com")
            .action("b", "http/request", endpoint="https://example.com/{{@a:A.data}}")
            .action("c", "http/request", endpoint="https://example.com/{{@ghost:G.x}}")
            .edge("t", "a")
            .edge("t", "b")
            .edge("t", "c")
            .build()
        )
        with pytest.raises(CompileError) as exc_info:
            compiler.compile(graph)
        problems = exc_info.value.problems
        assert len(problems) == 2
        assert "'a' (node is not upstream)" in problems[0]
        assert "'ghost' (node does not exist)" in problems[1]

    def test_step_function_name_collision(self, compiler, registry, graph_builder):
        def first(config, credentials):
            return {"ok": True}

        def second(config, credentials):
            return {"ok": True}

        for slug, execute in (("one", first), ("two", second)):
            registry.register(
                ActionDescriptor(
                    integration="test",
                    slug=slug,
                    label=slug,
                    execute=execute,
                    function_name="run_step",
                )
            )
        graph = (
            graph_builder()
            .trigger("t")
            .action("a", "test/one")
            .action("b", "test/two")
            .edge("t", "a")
            .edge("t", "b")
            .build()
        )
        with pytest.raises(CompileError, match="run_step"):
            compiler.compile(graph)

    def test_pick_fields_needs_source(self, compiler, graph_builder):
        graph = (
            graph_builder()
            .trigger("t")
            .action("a", "http/request", endpoint="https://a")
            .transform("p", "pick-fields", fields="data")
            .edge("t", "a")
            .edge("t", "p")
            .edge("a", "p")
            .build()
        )
        with pytest.raises(CompileError, match="Pick Fields"):
            compiler.compile(graph)


# =============================================================================
# Generated program
# =============================================================================


class TestGeneratedProgram:
    """Compile, execute and compare against runtime semantics."""

    def test_email_success(self, compiler, email_graph, env):
        compiled = compiler.compile(email_graph)
        program = load_program(compiled.source)

        with patch("requests.post", return_value=_response({"id": "m1"})) as post:
            result = program["run_workflow"]({"email": "a@b.com"})

        assert result["status"] == "success"
        assert result["nodes"] == {"trigger-1": "success", "send": "success"}
        assert result["outputs"]["send"] == {"id": "m1"}
        payload = post.call_args.kwargs["json"]
        assert payload["to"] == ["a@b.com"]
        assert payload["text"] == "Hi a@b.com"
        assert post.call_args.kwargs["headers"] == {"Authorization": "Bearer re_test"}

    def test_missing_field_fails_without_calling_step(self, compiler, email_graph, env):
        program = load_program(compiler.compile(email_graph).source)

        with patch("requests.post") as post:
            result = program["run_workflow"]({"name": "Ada"})

        assert result["status"] == "failed"
        assert result["nodes"]["send"] == "failed"
        assert "email" in result["errors"]["send"]
        assert post.call_count == 0

    def test_condition_branches(self, compiler, branch_graph, env):
        program = load_program(compiler.compile(branch_graph).source)

        with patch("requests.post", return_value=_response({"ok": True, "ts": "1.0", "channel": "C1"})) as post:
            result = program["run_workflow"]({"status": "active", "name": "Ada", "email": "a@b.com"})

        assert result["nodes"] == {
            "t": "success",
            "check": "success",
            "notify": "success",
            "mail": "skipped",
        }
        assert result["outputs"]["check"] == {"result": True}
        assert post.call_count == 1
        assert post.call_args.kwargs["json"] == {"channel": "#ops", "text": "Ada is active"}

    def test_false_branch(self, compiler, branch_graph, env):
        program = load_program(compiler.compile(branch_graph).source)

        with patch("requests.post", return_value=_response({"id": "m2"})):
            result = program["run_workflow"]({"status": "gone", "name": "Ada", "email": "a@b.com"})

        assert result["nodes"]["notify"] == "skipped"
        assert result["nodes"]["mail"] == "success"
        assert result["status"] == "success"

    def test_retries_then_fails(self, compiler, email_graph, env):
        program = load_program(compiler.compile(email_graph).source)
        failing = Mock(ok=False, status_code=503, text="unavailable")

        with patch("requests.post", return_value=failing) as post:
            result = program["run_workflow"]({"email": "a@b.com"})

        assert post.call_count == 2
        assert result["nodes"]["send"] == "failed"
        assert "503" in result["errors"]["send"]

    def test_transforms(self, compiler, graph_builder, env):
        graph = (
            graph_builder()
            .trigger("t")
            .transform("shape", "map-data", mapping={"who": "{{@t:T.first}} {{@t:T.last}}", "n": 1})
            .transform("pick", "pick-fields", fields="who")
            .transform("merged", "merge")
            .action("notify", "slack/send-message", slackChannel="#x", slackMessage="{{@merged:M.who}}")
            .chain("t", "shape", "pick", "merged", "notify")
            .build()
        )
        program = load_program(compiler.compile(graph).source)

        with patch("requests.post", return_value=_response({"ok": True})) as post:
            result = program["run_workflow"]({"first": "Ada", "last": "Lovelace"})

        assert result["outputs"]["shape"] == {"who": "Ada Lovelace", "n": 1}
        assert result["outputs"]["pick"] == {"who": "Ada Lovelace"}
        assert post.call_args.kwargs["json"]["text"] == "Ada Lovelace"

    def test_join_policies(self, compiler, graph_builder):
        graph = (
            graph_builder()
            .trigger("t")
            .condition("check", 'status == "active"')
            .transform("yes", "map-data", mapping={"side": "yes"})
            .transform("no", "map-data", mapping={"side": "no"})
            .transform("either", "merge")
            .transform("both", "merge", join="all")
            .edge("t", "check")
            .edge("check", "yes", branch="true")
            .edge("check", "no", branch="false")
            .edge("yes", "either")
            .edge("no", "either")
            .edge("yes", "both")
            .edge("no", "both")
            .build()
        )
        program = load_program(compiler.compile(graph).source)

        result = program["run_workflow"]({"status": "active"})

        assert result["nodes"]["no"] == "skipped"
        assert result["nodes"]["either"] == "success"
        assert result["outputs"]["either"] == {"side": "yes"}
        assert result["nodes"]["both"] == "skipped"

    def test_parse_json_failure_is_reported(self, compiler, graph_builder):
        graph = (
            graph_builder()
            .trigger("t")
            .transform("parse", "parse-json", value="{{@t:T.body}}")
            .edge("t", "parse")
            .build()
        )
        program = load_program(compiler.compile(graph).source)
        result = program["run_workflow"]({"body": "{not json"})
        assert result["nodes"]["parse"] == "failed"
        assert result["status"] == "failed"


# =============================================================================
# Program layout and artifacts
# =============================================================================


class TestCompiledWorkflow:
    def test_one_step_per_distinct_action(self, compiler, graph_builder):
        graph = (
            graph_builder()
            .trigger("t")
            .action("a", "resend/send-email", emailTo="x@y.z", emailSubject="s", emailBody="b")
            .action("b", "Send Email", emailTo="x@y.z", emailSubject="s2", emailBody="b2")
            .chain("t", "a", "b")
            .build()
        )
        source = compiler.compile(graph).source
        assert source.count("def send_email(") == 1
        assert "def compare(" not in source

    def test_node_order_is_topological(self, compiler, branch_graph):
        compiled = compiler.compile(branch_graph)
        assert compiled.node_order == ["t", "check", "notify", "mail"]

    def test_retry_policy_is_embedded(self, compiler, email_graph):
        source = compiler.compile(email_graph).source
        assert "MAX_ATTEMPTS = 2" in source
        assert "import requests" in source
        assert "{{@" not in source.split("def run_workflow")[1]

    def test_write_artifacts(self, compiler, branch_graph, tmp_path):
        written = compiler.compile(branch_graph).write(tmp_path / "out")

        assert sorted(p.name for p in written) == [".env.example", "requirements.txt", "workflow.py"]
        assert (tmp_path / "out" / "requirements.txt").read_text() == "requests>=2.31\n"
        env_example = (tmp_path / "out" / ".env.example").read_text()
        assert "SLACK_API_KEY=" in env_example
        assert "RESEND_API_KEY=" in env_example
        assert "# Your Resend API key" in env_example

    def test_main_reads_payload_argument(self, compiler, graph_builder, capsys):
        graph = graph_builder().trigger("t").build()
        program = load_program(compiler.compile(graph).source)
        exit_code = program["main"](['{"a": 1}'])
        assert exit_code == 0
        assert '"a": 1' in capsys.readouterr().out
