from __future__ import annotations

import sqlite3
from contextlib import AbstractContextManager
from datetime import datetime, timezone
from pathlib import Path

from job_monitor.models import EmployerConfig, PollOutcome


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


class SnapshotStore(AbstractContextManager["SnapshotStore"]):
    def __init__(self, db_path: Path | str):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(self.db_path)
        self.conn.row_factory = sqlite3.Row
        self._init_schema()

    def _init_schema(self) -> None:
        with self.conn:
            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS employer_snapshots (
                    employer_name TEXT PRIMARY KEY,
                    external_id TEXT NOT NULL,
                    raw_snapshot TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS poll_runs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    employer_name TEXT NOT NULL,
                    polled_at TEXT NOT NULL,
                    status TEXT NOT NULL,
                    new_count INTEGER NOT NULL,
                    error TEXT
                )
                """
            )
            self.conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_poll_runs_employer ON poll_runs (employer_name)"
            )

    def add_employer(self, name: str, external_id: str, added_at_utc: str | None = None) -> bool:
        added_at = added_at_utc or _utc_now_iso()
        with self.conn:
            cursor = self.conn.execute(
                """
                INSERT OR IGNORE INTO employer_snapshots
                    (employer_name, external_id, raw_snapshot, created_at, updated_at)
                VALUES (?, ?, NULL, ?, ?)
                """,
                (name, external_id, added_at, added_at),
            )
        return cursor.rowcount == 1

    def list_employers(self) -> list[EmployerConfig]:
        rows = self.conn.execute(
            """
            SELECT DISTINCT employer_name, external_id FROM employer_snapshots
            ORDER BY employer_name
            """
        ).fetchall()
        return [EmployerConfig(name=row["employer_name"], external_id=row["external_id"]) for row in rows]

    def get_snapshot(self, employer_name: str) -> str | None:
        row = self.conn.execute(
            "SELECT raw_snapshot FROM employer_snapshots WHERE employer_name = ?",
            (employer_name,),
        ).fetchone()
        if row is None or row["raw_snapshot"] is None:
            return None
        return str(row["raw_snapshot"])

    def get_updated_at(self, employer_name: str) -> str | None:
        row = self.conn.execute(
            "SELECT updated_at FROM employer_snapshots WHERE employer_name = ?",
            (employer_name,),
        ).fetchone()
        return None if row is None else str(row["updated_at"])

    def upsert_snapshot(
        self,
        employer: EmployerConfig,
        raw_snapshot: str,
        updated_at_utc: str | None = None,
    ) -> None:
        updated_at = updated_at_utc or _utc_now_iso()
        with self.conn:
            self.conn.execute(
                """
                INSERT INTO employer_snapshots
                    (employer_name, external_id, raw_snapshot, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(employer_name) DO UPDATE SET
                    external_id = excluded.external_id,
                    raw_snapshot = excluded.raw_snapshot,
                    updated_at = excluded.updated_at
                """,
                (employer.name, employer.external_id, raw_snapshot, updated_at, updated_at),
            )

    def log_poll(self, outcome: PollOutcome, polled_at_utc: str | None = None) -> None:
        polled_at = polled_at_utc or _utc_now_iso()
        with self.conn:
            self.conn.execute(
                """
                INSERT INTO poll_runs (employer_name, polled_at, status, new_count, error)
                VALUES (?, ?, ?, ?, ?)
                """,
                (outcome.employer.name, polled_at, outcome.status.value, outcome.new_count, outcome.error),
            )

    def recent_polls(self, limit: int = 20) -> list[sqlite3.Row]:
        return self.conn.execute(
            """
            SELECT employer_name, polled_at, status, new_count, error FROM poll_runs
            ORDER BY id DESC
            LIMIT ?
            """,
            (limit,),
        ).fetchall()

    def count_employers(self) -> int:
        row = self.conn.execute("SELECT COUNT(*) AS c FROM employer_snapshots").fetchone()
        return int(row["c"]) if row else 0

    def close(self) -> None:
        self.conn.close()

    def __exit__(self, exc_type, exc, exc_tb) -> None:
        self.close()
