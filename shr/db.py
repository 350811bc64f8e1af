from __future__ import annotations

import os
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class Journal:
    """SQLite event log plus per-project status.

    Site mode is deliberately not stored here; it is always read back from
    the nginx links. Only what cannot be derived from the host lives in
    ``project_status``.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._initialized = False

    def _resolve_path(self) -> str:
        p = os.path.abspath(self.db_path)
        if os.path.isdir(p):
            p = os.path.join(p, "shr.db")
        parent = os.path.dirname(p)
        if parent and not os.path.exists(parent):
            os.makedirs(parent, exist_ok=True)
        return p

    def connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._resolve_path(), timeout=10)
        conn.row_factory = sqlite3.Row
        if not self._initialized:
            self._init(conn)
            self._initialized = True
        return conn

    def _init(self, conn: sqlite3.Connection) -> None:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS events (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              ts TEXT NOT NULL,
              level TEXT NOT NULL,
              project TEXT,
              step TEXT,
              message TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS project_status (
              project TEXT PRIMARY KEY,
              degraded INTEGER NOT NULL DEFAULT 0,
              reason TEXT,
              last_apply_at TEXT,
              last_probe_at TEXT,
              last_probe_ok INTEGER,
              restart_count INTEGER NOT NULL DEFAULT 0
            );

            CREATE INDEX IF NOT EXISTS idx_events_project ON events(project);
            """
        )

    def log_event(self, level: str, message: str, project: str | None = None, step: str | None = None) -> None:
        with self.connect() as conn:
            conn.execute(
                "INSERT INTO events (ts, level, project, step, message) VALUES (?, ?, ?, ?, ?)",
                (utc_now(), level.upper(), project, step, message),
            )

    def latest_events(self, limit: int = 100, project: str | None = None) -> list[dict[str, Any]]:
        with self.connect() as conn:
            if project:
                rows = conn.execute(
                    "SELECT * FROM events WHERE project=? ORDER BY id DESC LIMIT ?", (project, limit)
                ).fetchall()
            else:
                rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
            return [dict(r) for r in rows]

    def _ensure_row(self, conn: sqlite3.Connection, project: str) -> None:
        conn.execute("INSERT OR IGNORE INTO project_status (project) VALUES (?)", (project,))

    def record_apply(self, project: str, degraded: bool, reason: str | None) -> None:
        with self.connect() as conn:
            self._ensure_row(conn, project)
            conn.execute(
                "UPDATE project_status SET degraded=?, reason=?, last_apply_at=? WHERE project=?",
                (int(degraded), reason, utc_now(), project),
            )

    def record_probe(self, project: str, ok: bool, restarted: bool) -> None:
        with self.connect() as conn:
            self._ensure_row(conn, project)
            conn.execute(
                """
                UPDATE project_status
                SET last_probe_at=?, last_probe_ok=?, restart_count=restart_count+?
                WHERE project=?
                """,
                (utc_now(), int(ok), int(restarted), project),
            )

    def get_status(self, project: str) -> ProjectStatus | None:
        with self.connect() as conn:
            row = conn.execute("SELECT * FROM project_status WHERE project=?", (project,)).fetchone()
            return ProjectStatus.from_row(row) if row else None

    def forget(self, project: str) -> None:
        with self.connect() as conn:
            conn.execute("DELETE FROM project_status WHERE project=?", (project,))


@dataclass(frozen=True)
class ProjectStatus:
    project: str
    degraded: bool
    reason: str | None
    last_apply_at: str | None
    last_probe_at: str | None
    last_probe_ok: bool | None
    restart_count: int

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> ProjectStatus:
        ok = row["last_probe_ok"]
        return cls(
            project=row["project"],
            degraded=bool(row["degraded"]),
            reason=row["reason"],
            last_apply_at=row["last_apply_at"],
            last_probe_at=row["last_probe_at"],
            last_probe_ok=None if ok is None else bool(ok),
            restart_count=row["restart_count"],
        )
