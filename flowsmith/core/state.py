"""SQLite run history.

Finished runs are stored as a JSON snapshot (``runs``) plus one row per node
(``node_results``) for querying. The engine never depends on this module.
"""

import json
import logging
import sqlite3
from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from flowsmith.core.models import ExecutionRun

logger = logging.getLogger(__name__)


class RunStore:
    """Persistent run history backed by SQLite."""

    SCHEMA = """
    CREATE TABLE IF NOT EXISTS runs (
        run_id TEXT PRIMARY KEY,
        graph_id TEXT,
        graph_name TEXT NOT NULL,
        status TEXT NOT NULL,
        cancelled INTEGER NOT NULL DEFAULT 0,
        started_at TEXT NOT NULL,
        finished_at TEXT,
        failed_nodes INTEGER NOT NULL DEFAULT 0,
        skipped_nodes INTEGER NOT NULL DEFAULT 0,
        snapshot TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS node_results (
        run_id TEXT NOT NULL REFERENCES runs(run_id) ON DELETE CASCADE,
        node_id TEXT NOT NULL,
        kind TEXT NOT NULL,
        label TEXT,
        status TEXT NOT NULL,
        attempts INTEGER NOT NULL DEFAULT 0,
        error TEXT,
        error_kind TEXT,
        output TEXT,
        PRIMARY KEY (run_id, node_id)
    );

    CREATE INDEX IF NOT EXISTS idx_runs_started ON runs(started_at);
    """

    def __init__(self, db_path: str | Path = ".flowsmith/runs.db"):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self) -> None:
        """Initialize database schema and enable WAL mode for better concurrency."""
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(self.SCHEMA)

    @contextmanager
    def _connect(self) -> Generator[sqlite3.Connection, None, None]:
        """Context manager for database connections.

        Uses a 30-second busy timeout to handle concurrent access gracefully
        instead of immediately failing with "database is locked".
        """
        conn = sqlite3.connect(self.db_path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA busy_timeout = 30000")
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def save_run(self, run: ExecutionRun) -> None:
        """Insert or replace a run and its node results."""
        with self._connect() as conn:
            conn.execute("DELETE FROM node_results WHERE run_id = ?", (run.run_id,))
            conn.execute(
                """
                INSERT OR REPLACE INTO runs
                (run_id, graph_id, graph_name, status, cancelled, started_at, finished_at,
                 failed_nodes, skipped_nodes, snapshot)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    run.run_id,
                    run.graph.id,
                    run.graph.name,
                    run.status.value,
                    int(run.cancelled),
                    run.started_at.isoformat(),
                    run.finished_at.isoformat() if run.finished_at else None,
                    len(run.failed_node_ids),
                    len(run.skipped_node_ids),
                    run.model_dump_json(by_alias=True),
                ),
            )
            for node in run.graph.nodes:
                state = run.nodes[node.id]
                output = run.outputs.get(node.id)
                conn.execute(
                    """
                    INSERT INTO node_results
                    (run_id, node_id, kind, label, status, attempts, error, error_kind, output)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        run.run_id,
                        node.id,
                        node.kind,
                        node.label,
                        state.status.value,
                        state.attempts,
                        state.error,
                        state.error_kind.value if state.error_kind else None,
                        json.dumps(output.fields, default=str) if output else None,
                    ),
                )
        logger.debug(f"Saved run {run.run_id} to {self.db_path}")

    def get_run(self, run_id: str) -> ExecutionRun | None:
        with self._connect() as conn:
            row = conn.execute("SELECT snapshot FROM runs WHERE run_id = ?", (run_id,)).fetchone()
        if row is None:
            return None
        return ExecutionRun.model_validate_json(row["snapshot"])

    def list_runs(self, limit: int = 20) -> list[dict[str, Any]]:
        """Most recent runs first (summary columns only)."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT run_id, graph_id, graph_name, status, cancelled, started_at,
                       finished_at, failed_nodes, skipped_nodes
                FROM runs ORDER BY started_at DESC LIMIT ?
                """,
                (limit,),
            ).fetchall()
        return [dict(row) for row in rows]

    def get_node_results(self, run_id: str) -> list[dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM node_results WHERE run_id = ? ORDER BY rowid",
                (run_id,),
            ).fetchall()
        results = []
        for row in rows:
            result = dict(row)
            result["output"] = json.loads(result["output"]) if result["output"] else None
            results.append(result)
        return results
