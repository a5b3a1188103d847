"""SQLite-backed, append-only history of pipeline runs and build manifests.

Every rendered build is recorded under its content address before it is
published, so the published branch can always be traced back to an exact
file manifest and the run that produced it.

Design notes
------------
- ``runs`` holds one row per finished run; rows are inserted, never updated.
- ``builds`` holds one row per (build_id, path) with the file's sha256.
- WAL mode is enabled. Suitable for single-writer, multi-reader local use.

Default location (if not provided):  ~/.sitedeploy/ledger.db
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final

from sitedeploy.models.pipeline import BuildOutput

if TYPE_CHECKING:  # pragma: no cover - for static type checking only
    from sitedeploy.services.pipeline import RunResult

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH: Final[Path] = Path.home() / ".sitedeploy" / "ledger.db"


def _to_iso8601(value: datetime | date) -> str:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat()
    # date -> midnight UTC ISO
    return datetime(value.year, value.month, value.day, tzinfo=timezone.utc).isoformat()


def _json(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"))


@dataclass(slots=True)
class RunRecord:
    """A stored run as read back from the ledger."""

    run_id: str
    target_key: str
    branch: str | None
    commit: str | None
    state: str
    failed_stage: str | None
    error: str | None
    exit_code: int | None
    build_id: str | None
    published_commit: str | None
    started_at: str
    finished_at: str
    transitions: list[dict[str, str]] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.state == "succeeded"


class RunLedger:
    """Append-only store of runs and the manifests of the builds they produced."""

    def __init__(self, db_path: str | Path | None = None) -> None:
        self._db_path = Path(db_path) if db_path else DEFAULT_DB_PATH

        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(self._db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        with self._conn:
            self._conn.execute("PRAGMA journal_mode = WAL;")
        self._bootstrap()

    @property
    def db_path(self) -> Path:
        return self._db_path

    # --- schema ----------------------------------------------------------------

    def _bootstrap(self) -> None:
        """Create required tables and indexes if they don't exist."""
        with self._conn:
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS runs (
                    run_id TEXT PRIMARY KEY,
                    target_key TEXT NOT NULL,
                    branch TEXT,
                    source_commit TEXT,
                    state TEXT NOT NULL,
                    failed_stage TEXT,
                    error TEXT,
                    exit_code INTEGER,
                    build_id TEXT,
                    published_commit TEXT,
                    started_at TEXT NOT NULL,
                    finished_at TEXT NOT NULL,
                    transitions_json TEXT NOT NULL,
                    warnings_json TEXT NOT NULL
                );
                """
            )
            self._conn.execute(
                """CREATE INDEX IF NOT EXISTS idx_runs_target_finished
                    ON runs(target_key, finished_at DESC);"""
            )
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS builds (
                    build_id TEXT NOT NULL,
                    path TEXT NOT NULL,
                    digest TEXT NOT NULL,
                    PRIMARY KEY (build_id, path)
                );
                """
            )

    # --- builds -----------------------------------------------------------------

    def record_build(self, build: BuildOutput) -> str:
        """Store the manifest of ``build`` under its build id and return the id."""
        build_id = build.build_id
        if self.has_build(build_id):
            return build_id

        with self._conn:
            self._conn.executemany(
                "INSERT INTO builds(build_id, path, digest) VALUES (?, ?, ?);",
                [(build_id, path, digest) for path, digest in sorted(build.files.items())],
            )
        logger.debug("Recorded manifest for build %s (%s files)", build_id[:12], build.file_count)
        return build_id

    def has_build(self, build_id: str) -> bool:
        row = self._conn.execute("SELECT 1 FROM builds WHERE build_id = ? LIMIT 1;", (build_id,)).fetchone()
        return row is not None

    def get_build_manifest(self, build_id: str) -> dict[str, str] | None:
        rows = self._conn.execute(
            "SELECT path, digest FROM builds WHERE build_id = ? ORDER BY path;",
            (build_id,),
        ).fetchall()
        if not rows:
            return None
        return {row["path"]: row["digest"] for row in rows}

    # --- runs -------------------------------------------------------------------

    def record_run(self, result: "RunResult") -> RunRecord:
        """Append a finished run."""
        snapshot_commit = result.snapshot.commit if result.snapshot else None
        transitions = [
            {"state": transition.state.value, "at": _to_iso8601(transition.at)}
            for transition in result.transitions
        ]
        with self._conn:
            self._conn.execute(
                """
                INSERT INTO runs(
                    run_id, target_key, branch, source_commit, state, failed_stage, error,
                    exit_code, build_id, published_commit, started_at, finished_at,
                    transitions_json, warnings_json
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
                """,
                (
                    result.run_id,
                    result.target.key,
                    result.event.branch,
                    snapshot_commit or result.event.commit,
                    result.state.value,
                    result.failed_stage.value if result.failed_stage else None,
                    result.error,
                    result.exit_code,
                    result.build.build_id if result.build else None,
                    result.publication.commit_hash if result.publication else None,
                    _to_iso8601(result.started_at),
                    _to_iso8601(result.finished_at or result.started_at),
                    _json(transitions),
                    _json(list(result.warnings)),
                ),
            )
        stored = self.get_run(result.run_id)
        if stored is None:
            raise RuntimeError(f"Run {result.run_id} was not stored")
        return stored

    def get_run(self, run_id: str) -> RunRecord | None:
        row = self._conn.execute("SELECT * FROM runs WHERE run_id = ?;", (run_id,)).fetchone()
        return self._row_to_run(row) if row else None

    def latest_runs(self, *, limit: int = 20, target_key: str | None = None) -> list[RunRecord]:
        """Return the newest runs, optionally restricted to one publish target."""
        if target_key is None:
            rows = self._conn.execute(
                "SELECT * FROM runs ORDER BY finished_at DESC, rowid DESC LIMIT ?;",
                (int(limit),),
            ).fetchall()
        else:
            rows = self._conn.execute(
                """
                SELECT * FROM runs WHERE target_key = ?
                ORDER BY finished_at DESC, rowid DESC LIMIT ?;
                """,
                (target_key, int(limit)),
            ).fetchall()
        return [self._row_to_run(r) for r in rows]

    def latest_published(self, target_key: str) -> RunRecord | None:
        """Return the most recent successful run for ``target_key``."""
        row = self._conn.execute(
            """
            SELECT * FROM runs WHERE target_key = ? AND state = 'succeeded'
            ORDER BY finished_at DESC, rowid DESC LIMIT 1;
            """,
            (target_key,),
        ).fetchone()
        return self._row_to_run(row) if row else None

    def close(self) -> None:
        self._conn.close()

    # --- Conversions ------------------------------------------------------------

    @staticmethod
    def _row_to_run(row: sqlite3.Row) -> RunRecord:
        return RunRecord(
            run_id=row["run_id"],
            target_key=row["target_key"],
            branch=row["branch"],
            commit=row["source_commit"],
            state=row["state"],
            failed_stage=row["failed_stage"],
            error=row["error"],
            exit_code=row["exit_code"],
            build_id=row["build_id"],
            published_commit=row["published_commit"],
            started_at=row["started_at"],
            finished_at=row["finished_at"],
            transitions=json.loads(row["transitions_json"] or "[]"),
            warnings=json.loads(row["warnings_json"] or "[]"),
        )


def create_ledger(db_path: str | Path | None = None) -> RunLedger:
    """Factory helper honouring ``SITEDEPLOY_DB_PATH``."""
    return RunLedger(db_path=db_path or os.getenv("SITEDEPLOY_DB_PATH"))
