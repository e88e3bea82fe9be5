from __future__ import annotations

import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from voicecal.models import JobStatus


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class StateStore:
    """SQLite record of terminal job results and calendar mutations.

    The in-memory ``JobStatusStore`` forgets everything on restart; results
    written here let a late poll still learn how its job ended.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS job_results (
            job_id TEXT PRIMARY KEY,
            kind TEXT NOT NULL,
            status TEXT NOT NULL,
            payload_json TEXT NOT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS audit_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            created_at TEXT NOT NULL,
            job_id TEXT,
            event_id TEXT NOT NULL,
            action TEXT NOT NULL,
            details_json TEXT NOT NULL
        );
        """
        with self._lock:
            with self._connect() as conn:
                conn.executescript(schema_sql)

    def record_job_result(self, job_id: str, kind: str, status: JobStatus) -> None:
        now = _utc_now()
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO job_results(job_id, kind, status, payload_json, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT(job_id) DO UPDATE SET
                        kind = excluded.kind,
                        status = excluded.status,
                        payload_json = excluded.payload_json,
                        updated_at = excluded.updated_at
                    """,
                    (job_id, kind, status.status, json.dumps(status.to_dict(), ensure_ascii=False), now, now),
                )
                conn.commit()

    def get_job_result(self, job_id: str) -> JobStatus | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT payload_json FROM job_results WHERE job_id = ?",
                    (job_id,),
                ).fetchone()
        if row is None:
            return None
        return JobStatus.from_dict(json.loads(row["payload_json"] or "{}"))

    def recent_job_results(self, limit: int = 20) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT job_id, kind, status, payload_json, created_at, updated_at
                    FROM job_results
                    ORDER BY updated_at DESC
                    LIMIT ?
                    """,
                    (max(1, limit),),
                ).fetchall()
        output: list[dict[str, Any]] = []
        for row in rows:
            item = dict(row)
            item["result"] = json.loads(item.pop("payload_json") or "{}")
            output.append(item)
        return output

    def delete_job_result(self, job_id: str) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute("DELETE FROM job_results WHERE job_id = ?", (job_id,))
                conn.commit()

    def record_audit_event(
        self,
        *,
        event_id: str,
        action: str,
        details: dict[str, Any],
        job_id: str | None = None,
    ) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO audit_events(created_at, job_id, event_id, action, details_json)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (_utc_now(), job_id, event_id, action, json.dumps(details, ensure_ascii=False, default=str)),
                )
                conn.commit()

    def recent_audit_events(self, limit: int = 100, job_id: str | None = None) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                if job_id is None:
                    rows = conn.execute(
                        """
                        SELECT id, created_at, job_id, event_id, action, details_json
                        FROM audit_events
                        ORDER BY id DESC
                        LIMIT ?
                        """,
                        (max(1, limit),),
                    ).fetchall()
                else:
                    rows = conn.execute(
                        """
                        SELECT id, created_at, job_id, event_id, action, details_json
                        FROM audit_events
                        WHERE job_id = ?
                        ORDER BY id DESC
                        LIMIT ?
                        """,
                        (job_id, max(1, limit)),
                    ).fetchall()
        output: list[dict[str, Any]] = []
        for row in rows:
            item = dict(row)
            item["details"] = json.loads(item.pop("details_json") or "{}")
            output.append(item)
        return output
