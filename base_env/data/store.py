"""Local data store — SQLite at ~/.base-env/data.db."""

from __future__ import annotations

import json
import os
import sqlite3
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator, Optional

from base_env.core.models import (
    CompatibilityState,
    IssueStatus,
    OperationRecord,
    RunResult,
)


_DEFAULT_DB_PATH = os.path.join(str(Path.home()), ".base-env", "data.db")

_SCHEMA = """\
CREATE TABLE IF NOT EXISTS runs (
    id TEXT PRIMARY KEY,
    started_at TEXT NOT NULL,
    finished_at TEXT,
    mode TEXT NOT NULL,
    adaptive INTEGER DEFAULT 0,
    platform TEXT,
    architecture TEXT,
    os_version TEXT,
    python_version TEXT,
    outcome TEXT,
    exit_code INTEGER,
    mutations INTEGER DEFAULT 0,
    fingerprint TEXT,
    duration_seconds REAL,
    error_message TEXT
);

CREATE TABLE IF NOT EXISTS operations (
    id TEXT PRIMARY KEY,
    run_id TEXT REFERENCES runs(id),
    name TEXT NOT NULL,
    expected_state TEXT,
    outcome TEXT NOT NULL,
    started_at TEXT NOT NULL,
    recorded_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS attempts (
    id TEXT PRIMARY KEY,
    operation_id TEXT NOT NULL REFERENCES operations(id),
    attempt_no INTEGER NOT NULL,
    exit_status INTEGER,
    verification_result TEXT,
    verified INTEGER NOT NULL,
    timestamp TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS compatibility_state (
    issue_id TEXT PRIMARY KEY,
    status TEXT NOT NULL,
    last_checked_at TEXT,
    last_upgrade_tested_at TEXT,
    chosen_version TEXT
);

CREATE TABLE IF NOT EXISTS config (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

INSERT OR IGNORE INTO config (key, value) VALUES ('adaptive', 'false');
INSERT OR IGNORE INTO config (key, value) VALUES ('python_series', '3.11,3.12,3.13');
"""


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class DataStore:
    """Local SQLite data store."""

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path or _DEFAULT_DB_PATH
        os.makedirs(os.path.dirname(self.db_path), exist_ok=True)
        self._conn: Optional[sqlite3.Connection] = None
        self._init_db()

    def _get_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(self.db_path)
            self._conn.row_factory = sqlite3.Row
        return self._conn

    def _init_db(self) -> None:
        conn = self._get_conn()
        conn.executescript(_SCHEMA)
        conn.commit()

    def close(self) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None

    # ── Config ───────────────────────────────────────────────────────

    def get_config(self, key: str) -> Optional[str]:
        conn = self._get_conn()
        row = conn.execute(
            "SELECT value FROM config WHERE key = ?", (key,)
        ).fetchone()
        return row["value"] if row else None

    def set_config(self, key: str, value: str) -> None:
        conn = self._get_conn()
        conn.execute(
            "INSERT OR REPLACE INTO config (key, value) VALUES (?, ?)",
            (key, value),
        )
        conn.commit()

    # ── Runs ─────────────────────────────────────────────────────────

    def create_run(self, run_id: str, mode: str, adaptive: bool) -> None:
        conn = self._get_conn()
        conn.execute(
            """INSERT INTO runs (id, started_at, mode, adaptive)
               VALUES (?, ?, ?, ?)""",
            (run_id, datetime.now().isoformat(), mode, 1 if adaptive else 0),
        )
        conn.commit()

    def set_run_platform(
        self, run_id: str, platform: str, architecture: str, os_version: str
    ) -> None:
        conn = self._get_conn()
        conn.execute(
            """UPDATE runs SET platform = ?, architecture = ?, os_version = ?
               WHERE id = ?""",
            (platform, architecture, os_version, run_id),
        )
        conn.commit()

    def complete_run(
        self,
        run_id: str,
        result: RunResult,
        fingerprint: Optional[str] = None,
    ) -> None:
        conn = self._get_conn()
        conn.execute(
            """UPDATE runs SET
               finished_at = ?,
               python_version = ?,
               outcome = ?,
               exit_code = ?,
               mutations = ?,
               fingerprint = ?,
               duration_seconds = ?,
               error_message = ?
               WHERE id = ?""",
            (
                datetime.now().isoformat(),
                result.python_version,
                "converged" if result.success else "failed",
                result.exit_code,
                result.mutations,
                fingerprint,
                result.duration_seconds,
                result.error_message,
                run_id,
            ),
        )
        conn.commit()

    def last_converged_fingerprint(self) -> Optional[str]:
        conn = self._get_conn()
        row = conn.execute(
            """SELECT fingerprint FROM runs
               WHERE outcome = 'converged' AND fingerprint IS NOT NULL
               ORDER BY finished_at DESC LIMIT 1"""
        ).fetchone()
        return row["fingerprint"] if row else None

    def last_run(self) -> Optional[dict]:
        conn = self._get_conn()
        row = conn.execute(
            "SELECT * FROM runs ORDER BY started_at DESC LIMIT 1"
        ).fetchone()
        return dict(row) if row else None

    # ── Operation log (append-only) ──────────────────────────────────

    def log_operation(self, run_id: Optional[str], record: OperationRecord) -> None:
        conn = self._get_conn()
        conn.execute(
            """INSERT INTO operations
               (id, run_id, name, expected_state, outcome, started_at,
                recorded_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                record.id,
                run_id,
                record.name,
                record.expected_state,
                record.outcome.value if record.outcome else "failed",
                record.started_at.isoformat(),
                datetime.now().isoformat(),
            ),
        )
        for attempt in record.attempts:
            conn.execute(
                """INSERT INTO attempts
                   (id, operation_id, attempt_no, exit_status,
                    verification_result, verified, timestamp)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (
                    str(uuid.uuid4()),
                    record.id,
                    attempt.attempt_no,
                    attempt.exit_status,
                    attempt.verification_result,
                    1 if attempt.verified else 0,
                    attempt.timestamp.isoformat(),
                ),
            )
        conn.commit()

    def get_operations(self, run_id: Optional[str] = None) -> list[dict]:
        conn = self._get_conn()
        if run_id:
            rows = conn.execute(
                "SELECT * FROM operations WHERE run_id = ? ORDER BY started_at",
                (run_id,),
            ).fetchall()
        else:
            rows = conn.execute(
                "SELECT * FROM operations ORDER BY started_at"
            ).fetchall()
        result = []
        for row in rows:
            d = dict(row)
            attempts = conn.execute(
                """SELECT attempt_no, exit_status, verification_result,
                          verified, timestamp
                   FROM attempts WHERE operation_id = ?
                   ORDER BY attempt_no""",
                (d["id"],),
            ).fetchall()
            d["attempts"] = [
                {**dict(a), "verified": bool(a["verified"])} for a in attempts
            ]
            result.append(d)
        return result

    def iter_operation_log(self, run_id: Optional[str] = None) -> Iterator[str]:
        """Yield the operation log as JSON lines."""
        for op in self.get_operations(run_id):
            yield json.dumps(op, sort_keys=True)

    # ── Compatibility state ──────────────────────────────────────────

    def get_compatibility_state(self, issue_id: str) -> Optional[CompatibilityState]:
        conn = self._get_conn()
        row = conn.execute(
            "SELECT * FROM compatibility_state WHERE issue_id = ?",
            (issue_id,),
        ).fetchone()
        if row is None:
            return None
        return CompatibilityState(
            issue_id=row["issue_id"],
            status=IssueStatus(row["status"]),
            last_checked_at=_parse_ts(row["last_checked_at"]),
            last_upgrade_tested_at=_parse_ts(row["last_upgrade_tested_at"]),
            chosen_version=row["chosen_version"],
        )

    def save_compatibility_state(self, state: CompatibilityState) -> None:
        conn = self._get_conn()
        conn.execute(
            """INSERT OR REPLACE INTO compatibility_state
               (issue_id, status, last_checked_at, last_upgrade_tested_at,
                chosen_version)
               VALUES (?, ?, ?, ?, ?)""",
            (
                state.issue_id,
                state.status.value,
                _ts(state.last_checked_at),
                _ts(state.last_upgrade_tested_at),
                state.chosen_version,
            ),
        )
        conn.commit()

    def list_compatibility_states(self) -> list[dict[str, Any]]:
        conn = self._get_conn()
        rows = conn.execute(
            "SELECT * FROM compatibility_state ORDER BY issue_id"
        ).fetchall()
        return [dict(row) for row in rows]
