"""SQLite persistence for agent sessions and their append-only step log."""

from __future__ import annotations

import json
import sqlite3
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any

from memoria.sessions.models import AgentSession, AgentStep, SessionStatus, StepStatus, StepType
from memoria.utils.helpers import ensure_dir, parse_iso, to_iso, utc_now


def new_step_id() -> str:
    return f"step_{uuid.uuid4().hex}"


class SessionStore:
    """Rows for ``agent_sessions`` and ``agent_session_steps``.

    Steps are only ever inserted and closed; ``delete_steps`` exists for
    recovery, which restarts a session from scratch.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path.expanduser()
        ensure_dir(self.db_path.parent)
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=NORMAL")
        self._create_schema()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _create_schema(self) -> None:
        with self._lock:
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS agent_sessions (
                    id TEXT PRIMARY KEY,
                    workspace_id TEXT NOT NULL,
                    stream_id TEXT NOT NULL,
                    triggering_event_id TEXT NOT NULL UNIQUE,
                    persona_id TEXT,
                    response_event_id TEXT,
                    status TEXT NOT NULL,
                    summary TEXT,
                    error_message TEXT,
                    helpfulness_score REAL,
                    started_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    completed_at TEXT
                )
                """
            )
            self._conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_agent_sessions_status ON agent_sessions (status, updated_at)"
            )
            self._conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_agent_sessions_stream ON agent_sessions (stream_id, started_at)"
            )
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS agent_session_steps (
                    id TEXT PRIMARY KEY,
                    session_id TEXT NOT NULL,
                    seq INTEGER NOT NULL,
                    step_type TEXT NOT NULL,
                    content TEXT NOT NULL,
                    tool_name TEXT,
                    tool_input_json TEXT,
                    tool_result TEXT,
                    status TEXT NOT NULL,
                    started_at TEXT NOT NULL,
                    completed_at TEXT
                )
                """
            )
            self._conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_agent_session_steps_session ON agent_session_steps (session_id, seq)"
            )
            self._conn.commit()

    @staticmethod
    def _row_to_step(row: sqlite3.Row) -> AgentStep:
        raw_input = row["tool_input_json"]
        return AgentStep(
            id=str(row["id"]),
            session_id=str(row["session_id"]),
            step_type=str(row["step_type"]),  # type: ignore[arg-type]
            content=str(row["content"]),
            status=str(row["status"]),  # type: ignore[arg-type]
            started_at=parse_iso(row["started_at"]) or utc_now(),
            completed_at=parse_iso(row["completed_at"]),
            tool_name=row["tool_name"],
            tool_input=json.loads(raw_input) if raw_input else None,
            tool_result=row["tool_result"],
        )

    def _row_to_session(self, row: sqlite3.Row) -> AgentSession:
        steps = self._conn.execute(
            "SELECT * FROM agent_session_steps WHERE session_id = ? ORDER BY seq ASC",
            (row["id"],),
        ).fetchall()
        started_at = parse_iso(row["started_at"]) or utc_now()
        score = row["helpfulness_score"]
        return AgentSession(
            id=str(row["id"]),
            workspace_id=str(row["workspace_id"]),
            stream_id=str(row["stream_id"]),
            triggering_event_id=str(row["triggering_event_id"]),
            status=str(row["status"]),  # type: ignore[arg-type]
            started_at=started_at,
            updated_at=parse_iso(row["updated_at"]) or started_at,
            persona_id=row["persona_id"],
            response_event_id=row["response_event_id"],
            summary=row["summary"],
            error_message=row["error_message"],
            completed_at=parse_iso(row["completed_at"]),
            helpfulness_score=float(score) if score is not None else None,
            steps=tuple(self._row_to_step(s) for s in steps),
        )

    def _fetch_one(self, sql: str, params: tuple[Any, ...]) -> AgentSession | None:
        with self._lock:
            row = self._conn.execute(sql, params).fetchone()
            return self._row_to_session(row) if row is not None else None

    def _fetch_all(self, sql: str, params: tuple[Any, ...]) -> list[AgentSession]:
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
            return [self._row_to_session(r) for r in rows]

    # ── Sessions ─────────────────────────────────────────────────────

    def insert_session(
        self,
        *,
        workspace_id: str,
        stream_id: str,
        triggering_event_id: str,
        persona_id: str | None,
    ) -> bool:
        """Insert an active session; False when the triggering event already has one."""
        now_iso = to_iso(utc_now())
        with self._lock:
            cursor = self._conn.execute(
                """
                INSERT OR IGNORE INTO agent_sessions (
                    id, workspace_id, stream_id, triggering_event_id, persona_id,
                    status, started_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, 'active', ?, ?)
                """,
                (
                    f"session_{uuid.uuid4().hex}",
                    workspace_id,
                    stream_id,
                    triggering_event_id,
                    persona_id,
                    now_iso,
                    now_iso,
                ),
            )
            self._conn.commit()
        return cursor.rowcount > 0

    def get(self, session_id: str) -> AgentSession | None:
        return self._fetch_one("SELECT * FROM agent_sessions WHERE id = ?", (session_id,))

    def get_by_triggering_event(self, event_id: str) -> AgentSession | None:
        return self._fetch_one("SELECT * FROM agent_sessions WHERE triggering_event_id = ?", (event_id,))

    def list_for_stream(self, stream_id: str, *, limit: int) -> list[AgentSession]:
        return self._fetch_all(
            "SELECT * FROM agent_sessions WHERE stream_id = ? ORDER BY started_at DESC LIMIT ?",
            (stream_id, max(1, int(limit))),
        )

    def list_with_status(self, statuses: tuple[str, ...], *, workspace_id: str | None = None) -> list[AgentSession]:
        marks = ",".join("?" for _ in statuses)
        sql = f"SELECT * FROM agent_sessions WHERE status IN ({marks})"
        params: tuple[Any, ...] = tuple(statuses)
        if workspace_id is not None:
            sql += " AND workspace_id = ?"
            params += (workspace_id,)
        return self._fetch_all(sql + " ORDER BY started_at ASC", params)

    def list_stale(self, statuses: tuple[str, ...], *, updated_before: datetime) -> list[str]:
        marks = ",".join("?" for _ in statuses)
        with self._lock:
            rows = self._conn.execute(
                f"SELECT id FROM agent_sessions WHERE status IN ({marks}) AND updated_at < ?",
                (*statuses, to_iso(updated_before)),
            ).fetchall()
        return [str(r["id"]) for r in rows]

    def update_session(self, session_id: str, **fields: Any) -> bool:
        """Set columns on a session and bump ``updated_at``."""
        fields["updated_at"] = to_iso(utc_now())
        assignments = ", ".join(f"{name} = ?" for name in fields)
        with self._lock:
            cursor = self._conn.execute(
                f"UPDATE agent_sessions SET {assignments} WHERE id = ?",
                (*fields.values(), session_id),
            )
            self._conn.commit()
        return cursor.rowcount > 0

    def get_status(self, session_id: str) -> SessionStatus | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT status FROM agent_sessions WHERE id = ? LIMIT 1", (session_id,)
            ).fetchone()
        return str(row["status"]) if row is not None else None  # type: ignore[return-value]

    def set_status(
        self,
        session_id: str,
        status: SessionStatus,
        *,
        expected: SessionStatus,
        error_message: str | None,
        close_steps_as: StepStatus | None,
    ) -> bool:
        """Move a session out of ``expected``, closing open steps when ``close_steps_as`` is given.

        Returns False, writing nothing, when the session is no longer in ``expected``.
        """
        now_iso = to_iso(utc_now())
        completed_at = now_iso if close_steps_as is not None else None
        with self._lock:
            try:
                cursor = self._conn.execute(
                    """
                    UPDATE agent_sessions
                    SET status = ?, error_message = COALESCE(?, error_message),
                        completed_at = COALESCE(?, completed_at), updated_at = ?
                    WHERE id = ? AND status = ?
                    """,
                    (status, error_message, completed_at, now_iso, session_id, expected),
                )
                if cursor.rowcount == 0:
                    self._conn.rollback()
                    return False
                if close_steps_as is not None:
                    self._conn.execute(
                        """
                        UPDATE agent_session_steps SET status = ?, completed_at = ?
                        WHERE session_id = ? AND status = 'active'
                        """,
                        (close_steps_as, now_iso, session_id),
                    )
                self._conn.commit()
            except sqlite3.Error:
                self._conn.rollback()
                raise
        return True

    def reset(self, session_id: str) -> bool:
        now_iso = to_iso(utc_now())
        with self._lock:
            self._conn.execute("DELETE FROM agent_session_steps WHERE session_id = ?", (session_id,))
            cursor = self._conn.execute(
                """
                UPDATE agent_sessions
                SET status = 'active', error_message = NULL, completed_at = NULL, updated_at = ?
                WHERE id = ?
                """,
                (now_iso, session_id),
            )
            self._conn.commit()
        return cursor.rowcount > 0

    # ── Steps ────────────────────────────────────────────────────────

    def insert_step(
        self,
        step_id: str,
        session_id: str,
        *,
        step_type: StepType,
        content: str,
        tool_name: str | None,
        tool_input: dict[str, Any] | None,
    ) -> None:
        now_iso = to_iso(utc_now())
        with self._lock:
            row = self._conn.execute(
                "SELECT COALESCE(MAX(seq), 0) AS seq FROM agent_session_steps WHERE session_id = ?",
                (session_id,),
            ).fetchone()
            self._conn.execute(
                """
                INSERT INTO agent_session_steps (
                    id, session_id, seq, step_type, content, tool_name, tool_input_json,
                    status, started_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, 'active', ?)
                """,
                (
                    step_id,
                    session_id,
                    int(row["seq"]) + 1,
                    step_type,
                    content,
                    tool_name,
                    json.dumps(tool_input, ensure_ascii=False) if tool_input is not None else None,
                    now_iso,
                ),
            )
            self._conn.execute(
                "UPDATE agent_sessions SET updated_at = ? WHERE id = ?",
                (now_iso, session_id),
            )
            self._conn.commit()

    def close_step(self, step_id: str, *, status: StepStatus, tool_result: str | None) -> str | None:
        """Close one active step; returns its session id, or None if nothing was open."""
        now_iso = to_iso(utc_now())
        with self._lock:
            row = self._conn.execute(
                "SELECT session_id FROM agent_session_steps WHERE id = ? AND status = 'active'",
                (step_id,),
            ).fetchone()
            if row is None:
                return None
            self._conn.execute(
                """
                UPDATE agent_session_steps
                SET status = ?, tool_result = COALESCE(?, tool_result), completed_at = ?
                WHERE id = ?
                """,
                (status, tool_result, now_iso, step_id),
            )
            self._conn.execute(
                "UPDATE agent_sessions SET updated_at = ? WHERE id = ?",
                (now_iso, row["session_id"]),
            )
            self._conn.commit()
        return str(row["session_id"])
