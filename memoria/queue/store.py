"""SQLite storage backend for the job queue."""

from __future__ import annotations

import sqlite3
import threading
import time
import uuid
from collections.abc import Callable
from pathlib import Path

from loguru import logger

from memoria.errors import JobPayloadError
from memoria.queue.models import Job, JobOptions, compute_backoff_seconds
from memoria.queue.payloads import JobPayload, decode_payload, encode_payload, job_type_of
from memoria.utils.helpers import ensure_dir


class SqliteJobStore:
    """Persist jobs and dedup windows; all state transitions are single statements.

    Dedup windows live in their own table keyed by ``(type, dedup_key)``, so the
    primary key is what collapses concurrent submissions of the same key.
    Claiming flips ``queued`` to ``active`` with a compare-and-set update and
    sets a lease; a lapsed lease puts the job back in the queue.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        lease_seconds: int = 300,
        default_expire_seconds: int = 900,
        max_backoff_seconds: int = 3600,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.db_path = db_path.expanduser()
        ensure_dir(self.db_path.parent)
        self.lease_seconds = max(1, int(lease_seconds))
        self.default_expire_seconds = max(1, int(default_expire_seconds))
        self.max_backoff_seconds = max(0, int(max_backoff_seconds))
        self._clock = clock
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False, timeout=10.0)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=NORMAL")
        self._create_schema()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def now(self) -> float:
        return float(self._clock())

    def _create_schema(self) -> None:
        with self._lock:
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS jobs (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT NOT NULL UNIQUE,
                    type TEXT NOT NULL,
                    payload_json TEXT NOT NULL,
                    priority INTEGER NOT NULL,
                    status TEXT NOT NULL,
                    retry_count INTEGER NOT NULL DEFAULT 0,
                    retry_limit INTEGER NOT NULL,
                    retry_delay INTEGER NOT NULL,
                    backoff INTEGER NOT NULL DEFAULT 0,
                    dedup_key TEXT,
                    dedup_until REAL,
                    expires_at REAL NOT NULL,
                    run_after REAL NOT NULL,
                    locked_until REAL,
                    worker_id TEXT,
                    last_error TEXT,
                    created_at REAL NOT NULL,
                    completed_at REAL
                )
                """
            )
            self._conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_jobs_claim
                ON jobs (type, status, priority, run_after, seq)
                """
            )
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS job_dedup (
                    type TEXT NOT NULL,
                    dedup_key TEXT NOT NULL,
                    job_id TEXT NOT NULL,
                    expires_at REAL NOT NULL,
                    PRIMARY KEY (type, dedup_key)
                )
                """
            )
            self._conn.commit()

    @staticmethod
    def _row_to_job(row: sqlite3.Row) -> Job:
        job_type = str(row["type"])
        return Job(
            id=str(row["id"]),
            type=job_type,  # type: ignore[arg-type]
            payload=decode_payload(job_type, str(row["payload_json"])),
            priority=int(row["priority"]),
            status=str(row["status"]),  # type: ignore[arg-type]
            retry_count=int(row["retry_count"]),
            retry_limit=int(row["retry_limit"]),
            retry_delay=int(row["retry_delay"]),
            backoff=bool(int(row["backoff"])),
            expires_at=float(row["expires_at"]),
            run_after=float(row["run_after"]),
            created_at=float(row["created_at"]),
            dedup_key=str(row["dedup_key"]) if row["dedup_key"] else None,
            dedup_until=float(row["dedup_until"]) if row["dedup_until"] is not None else None,
            locked_until=float(row["locked_until"]) if row["locked_until"] is not None else None,
            last_error=str(row["last_error"]) if row["last_error"] else None,
            completed_at=float(row["completed_at"]) if row["completed_at"] is not None else None,
        )

    def insert(self, payload: JobPayload, options: JobOptions) -> str | None:
        """Insert one job. Returns None when the dedup key is inside an open window."""
        job_type = job_type_of(payload)
        now = self.now()
        job_id = str(uuid.uuid4())
        expires_in = options.expires_in_seconds or self.default_expire_seconds
        dedup_until: float | None = None
        with self._lock:
            try:
                if options.dedup_key:
                    window = options.dedup_window_seconds or expires_in
                    dedup_until = now + float(window)
                    self._conn.execute(
                        "DELETE FROM job_dedup WHERE type = ? AND dedup_key = ? AND expires_at <= ?",
                        (job_type, options.dedup_key, now),
                    )
                    cursor = self._conn.execute(
                        """
                        INSERT OR IGNORE INTO job_dedup (type, dedup_key, job_id, expires_at)
                        VALUES (?, ?, ?, ?)
                        """,
                        (job_type, options.dedup_key, job_id, dedup_until),
                    )
                    if cursor.rowcount == 0:
                        self._conn.commit()
                        return None
                self._conn.execute(
                    """
                    INSERT INTO jobs (
                        id, type, payload_json, priority, status,
                        retry_count, retry_limit, retry_delay, backoff,
                        dedup_key, dedup_until, expires_at, run_after, created_at
                    ) VALUES (?, ?, ?, ?, 'queued', 0, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        job_id,
                        job_type,
                        encode_payload(payload),
                        int(options.priority),
                        int(options.retry_limit),
                        int(options.retry_delay),
                        1 if options.backoff else 0,
                        options.dedup_key,
                        dedup_until,
                        now + float(expires_in),
                        now,
                        now,
                    ),
                )
                self._conn.commit()
            except sqlite3.Error:
                self._conn.rollback()
                raise
        return job_id

    def get(self, job_id: str) -> Job | None:
        with self._lock:
            row = self._conn.execute("SELECT * FROM jobs WHERE id = ? LIMIT 1", (job_id,)).fetchone()
        return self._row_to_job(row) if row is not None else None

    def expire_due(self, job_type: str) -> int:
        """Move queued jobs and lapsed active jobs past their expiry to ``expired``."""
        now = self.now()
        with self._lock:
            cursor = self._conn.execute(
                """
                UPDATE jobs
                SET status = 'expired', completed_at = ?, locked_until = NULL
                WHERE type = ?
                  AND expires_at <= ?
                  AND (
                    status = 'queued'
                    OR (status = 'active' AND locked_until <= ?)
                  )
                """,
                (now, job_type, now, now),
            )
            self._conn.commit()
            return cursor.rowcount

    def release_lapsed(self, job_type: str) -> int:
        """Return active jobs whose lease ran out to the queue (redelivery)."""
        now = self.now()
        with self._lock:
            cursor = self._conn.execute(
                """
                UPDATE jobs
                SET status = 'queued', locked_until = NULL, worker_id = NULL
                WHERE type = ? AND status = 'active' AND locked_until <= ?
                """,
                (job_type, now),
            )
            self._conn.commit()
            return cursor.rowcount

    def claim(self, job_type: str, *, limit: int, worker_id: str) -> list[Job]:
        """Claim up to ``limit`` runnable jobs, highest priority first."""
        now = self.now()
        claimed: list[Job] = []
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT id FROM jobs
                WHERE type = ? AND status = 'queued' AND run_after <= ? AND expires_at > ?
                ORDER BY priority ASC, run_after ASC, seq ASC
                LIMIT ?
                """,
                (job_type, now, now, max(1, int(limit))),
            ).fetchall()
            for row in rows:
                cursor = self._conn.execute(
                    """
                    UPDATE jobs
                    SET status = 'active', locked_until = ?, worker_id = ?
                    WHERE id = ? AND status = 'queued'
                    """,
                    (now + self.lease_seconds, worker_id, row["id"]),
                )
                if cursor.rowcount != 1:
                    continue
                job_row = self._conn.execute(
                    "SELECT * FROM jobs WHERE id = ? LIMIT 1", (row["id"],)
                ).fetchone()
                try:
                    claimed.append(self._row_to_job(job_row))
                except JobPayloadError as e:
                    logger.error("dropping {} job {} with unreadable payload: {}", job_type, row["id"], e)
                    self._conn.execute(
                        """
                        UPDATE jobs
                        SET status = 'failed', last_error = ?, completed_at = ?,
                            locked_until = NULL, worker_id = NULL
                        WHERE id = ?
                        """,
                        (str(e), now, row["id"]),
                    )
            self._conn.commit()
        return claimed

    def complete(self, job_id: str) -> None:
        with self._lock:
            self._conn.execute(
                """
                UPDATE jobs
                SET status = 'completed', completed_at = ?, locked_until = NULL, last_error = NULL
                WHERE id = ? AND status = 'active'
                """,
                (self.now(), job_id),
            )
            self._conn.commit()

    def fail(self, job_id: str, error: str) -> tuple[bool, float]:
        """Record a handler failure.

        Returns ``(terminal, delay_seconds)``; terminal is True once the retry
        limit is exhausted and the job is parked in ``failed``.
        """
        now = self.now()
        with self._lock:
            row = self._conn.execute(
                "SELECT retry_count, retry_limit, retry_delay, backoff FROM jobs WHERE id = ? LIMIT 1",
                (job_id,),
            ).fetchone()
            if row is None:
                return True, 0.0
            attempt = int(row["retry_count"]) + 1
            if attempt > int(row["retry_limit"]):
                self._conn.execute(
                    """
                    UPDATE jobs
                    SET status = 'failed', retry_count = ?, last_error = ?,
                        completed_at = ?, locked_until = NULL
                    WHERE id = ?
                    """,
                    (attempt - 1, error, now, job_id),
                )
                self._conn.commit()
                return True, 0.0
            delay = compute_backoff_seconds(
                retry_delay=int(row["retry_delay"]),
                attempt=attempt,
                backoff=bool(int(row["backoff"])),
                max_seconds=self.max_backoff_seconds,
            )
            self._conn.execute(
                """
                UPDATE jobs
                SET status = 'queued', retry_count = ?, last_error = ?,
                    run_after = ?, locked_until = NULL, worker_id = NULL
                WHERE id = ?
                """,
                (attempt, error, now + delay, job_id),
            )
            self._conn.commit()
            return False, delay

    def counts(self) -> dict[tuple[str, str], int]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT type, status, COUNT(*) AS c FROM jobs GROUP BY type, status"
            ).fetchall()
        return {(str(row["type"]), str(row["status"])): int(row["c"]) for row in rows}

    def purge_terminal(self, *, older_than_seconds: float) -> int:
        cutoff = self.now() - float(older_than_seconds)
        with self._lock:
            cursor = self._conn.execute(
                """
                DELETE FROM jobs
                WHERE status IN ('completed', 'failed', 'expired')
                  AND completed_at IS NOT NULL
                  AND completed_at <= ?
                """,
                (cutoff,),
            )
            self._conn.execute("DELETE FROM job_dedup WHERE expires_at <= ?", (self.now(),))
            self._conn.commit()
            return cursor.rowcount
