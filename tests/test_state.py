"""Tests for the SQLite run history."""

from __future__ import annotations

import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from flowsmith.core.graph_engine import GraphExecutor
from flowsmith.core.models import ErrorKind, ExecutionRun, NodeStatus, RunStatus
from flowsmith.core.state import RunStore


@pytest.fixture
def store(tmp_path) -> RunStore:
    return RunStore(tmp_path / "history" / "runs.db")


@pytest.fixture
def finished_run(registry, credentials, fast_settings, fake_actions, graph_builder) -> ExecutionRun:
    fake_actions.add("ok", [{"ok": True, "id": "m1", "nested": {"a": [1, 2]}}])
    fake_actions.add("bad", [{"ok": False, "error": "nope"}])
    graph = (
        graph_builder("History test")
        .trigger("t")
        .action("ok", "test/ok")
        .action("bad", "test/bad")
        .action("after", "test/ok")
        .edge("t", "ok")
        .edge("t", "bad")
        .edge("bad", "after")
        .build()
    )
    return GraphExecutor(registry, credentials, fast_settings).run(graph, {"email": "a@b.com"}, run_id="run-1")


class TestRunStore:
    def test_creates_schema(self, store):
        with sqlite3.connect(store.db_path) as conn:
            tables = {row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}
        assert {"runs", "node_results"} <= tables

    def test_round_trip(self, store, finished_run):
        store.save_run(finished_run)

        loaded = store.get_run("run-1")

        assert loaded is not None
        assert loaded.run_id == "run-1"
        assert loaded.graph == finished_run.graph
        assert loaded.statuses() == finished_run.statuses()
        assert loaded.outputs["ok"].fields == {"id": "m1", "nested": {"a": [1, 2]}}
        assert loaded.nodes["bad"].error_kind == ErrorKind.ACTION
        assert loaded.trigger_payload == {"email": "a@b.com"}

    def test_node_results(self, store, finished_run):
        store.save_run(finished_run)

        results = {row["node_id"]: row for row in store.get_node_results("run-1")}

        assert results["ok"]["status"] == "success"
        assert results["ok"]["output"] == {"id": "m1", "nested": {"a": [1, 2]}}
        assert results["bad"]["status"] == "failed"
        assert results["bad"]["attempts"] == 3
        assert results["bad"]["error"] == "nope"
        assert results["after"]["status"] == "skipped"
        assert results["after"]["output"] is None

    def test_save_is_idempotent(self, store, finished_run):
        store.save_run(finished_run)
        store.save_run(finished_run)
        assert len(store.list_runs()) == 1
        assert len(store.get_node_results("run-1")) == 4

    def test_list_runs_newest_first(self, store, finished_run):
        older = finished_run.model_copy(
            update={"run_id": "run-0", "started_at": finished_run.started_at - timedelta(hours=1)}
        )
        store.save_run(older)
        store.save_run(finished_run)

        runs = store.list_runs()

        assert [r["run_id"] for r in runs] == ["run-1", "run-0"]
        assert runs[0]["graph_name"] == "History test"
        assert runs[0]["status"] == RunStatus.SUCCESS.value
        assert runs[0]["failed_nodes"] == 1
        assert runs[0]["skipped_nodes"] == 1
        assert store.list_runs(limit=1)[0]["run_id"] == "run-1"

    def test_unknown_run(self, store):
        assert store.get_run("missing") is None
        assert store.get_node_results("missing") == []


class TestExecutionRunModel:
    """Guarded state transitions on ExecutionRun."""

    @pytest.fixture
    def run(self, graph_builder) -> ExecutionRun:
        graph = graph_builder().trigger("t").action("a", "test/a").edge("t", "a").build()
        return ExecutionRun.create(graph)

    def test_terminal_states_are_final(self, run):
        assert run.mark_running("a")
        assert run.mark_success("a", {"x": 1})
        assert not run.mark_failed("a", "late", ErrorKind.ACTION)
        assert not run.mark_skipped("a")
        assert run.status_of("a") == NodeStatus.SUCCESS
        assert run.outputs["a"].fields == {"x": 1}

    def test_running_only_from_pending(self, run):
        assert run.mark_skipped("a", "cancelled")
        assert not run.mark_running("a")

    def test_finish_records_cancellation(self, run):
        run.cancel()
        run.finish(RunStatus.FAILED)
        assert run.cancelled
        assert run.finished_at >= run.started_at
        assert run.finished_at.tzinfo == timezone.utc
        assert run.duration_seconds is not None

    def test_started_at_is_utc(self, run):
        assert run.started_at <= datetime.now(timezone.utc)
