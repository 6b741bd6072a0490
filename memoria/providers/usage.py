"""Per-workspace AI usage ledger and monthly budget checks."""

from __future__ import annotations

import json
import sqlite3
import threading
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from loguru import logger

from memoria.utils.helpers import ensure_dir, to_iso, utc_now


@dataclass(frozen=True, slots=True, kw_only=True)
class UsageRecord:
    workspace_id: str
    job_type: str
    model: str
    input_tokens: int
    output_tokens: int = 0
    cost_cents: float = 0.0
    user_id: str | None = None
    stream_id: str | None = None
    event_id: str | None = None
    job_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class MonthlyUsage:
    total_cost_cents: float
    total_input_tokens: int
    total_output_tokens: int
    job_count: int


@dataclass(frozen=True, slots=True)
class BudgetStatus:
    within_budget: bool
    used_cents: float
    budget_cents: float
    remaining_cents: float


@dataclass(frozen=True, slots=True)
class UsageBreakdown:
    job_type: str
    model: str
    calls: int
    input_tokens: int
    output_tokens: int
    cost_cents: float


def month_start(now: datetime) -> datetime:
    now = now.astimezone(UTC)
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


class UsageLedger:
    """SQLite ledger of model calls plus per-workspace AI settings."""

    def __init__(
        self,
        db_path: Path,
        *,
        default_budget_cents: float = 10000,
        ai_enabled_default: bool = True,
    ) -> None:
        self.db_path = db_path.expanduser()
        self.default_budget_cents = float(default_budget_cents)
        self.ai_enabled_default = ai_enabled_default
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
                CREATE TABLE IF NOT EXISTS ai_usage (
                    id TEXT PRIMARY KEY,
                    workspace_id TEXT NOT NULL,
                    user_id TEXT,
                    job_type TEXT NOT NULL,
                    model TEXT NOT NULL,
                    input_tokens INTEGER NOT NULL DEFAULT 0,
                    output_tokens INTEGER NOT NULL DEFAULT 0,
                    cost_cents REAL NOT NULL DEFAULT 0,
                    stream_id TEXT,
                    event_id TEXT,
                    job_id TEXT,
                    metadata_json TEXT NOT NULL DEFAULT '{}',
                    created_at TEXT NOT NULL
                )
                """
            )
            self._conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_ai_usage_workspace_created
                ON ai_usage (workspace_id, created_at)
                """
            )
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS workspace_ai_settings (
                    workspace_id TEXT PRIMARY KEY,
                    ai_enabled INTEGER,
                    budget_cents REAL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            self._conn.commit()

    def track_usage(self, record: UsageRecord, *, created_at: datetime | None = None) -> None:
        """Append one usage row. Failures are logged, never raised."""
        try:
            with self._lock:
                self._conn.execute(
                    """
                    INSERT INTO ai_usage (
                        id, workspace_id, user_id, job_type, model, input_tokens,
                        output_tokens, cost_cents, stream_id, event_id, job_id,
                        metadata_json, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        f"usage_{uuid.uuid4().hex}",
                        record.workspace_id,
                        record.user_id,
                        record.job_type,
                        record.model,
                        int(record.input_tokens),
                        int(record.output_tokens),
                        float(record.cost_cents),
                        record.stream_id,
                        record.event_id,
                        record.job_id,
                        json.dumps(record.metadata, default=str),
                        to_iso(created_at or utc_now()),
                    ),
                )
                self._conn.commit()
        except (sqlite3.Error, TypeError, ValueError) as e:
            logger.error("failed to track AI usage for workspace={}: {}", record.workspace_id, e)

    def get_monthly_usage(self, workspace_id: str, *, now: datetime | None = None) -> MonthlyUsage:
        since = month_start(now or utc_now())
        with self._lock:
            row = self._conn.execute(
                """
                SELECT
                  COALESCE(SUM(cost_cents), 0) AS cost,
                  COALESCE(SUM(input_tokens), 0) AS input_tokens,
                  COALESCE(SUM(output_tokens), 0) AS output_tokens,
                  COUNT(*) AS calls
                FROM ai_usage
                WHERE workspace_id = ? AND created_at >= ?
                """,
                (workspace_id, to_iso(since)),
            ).fetchone()
        return MonthlyUsage(
            total_cost_cents=float(row["cost"]),
            total_input_tokens=int(row["input_tokens"]),
            total_output_tokens=int(row["output_tokens"]),
            job_count=int(row["calls"]),
        )

    def _settings_row(self, workspace_id: str) -> sqlite3.Row | None:
        with self._lock:
            return self._conn.execute(
                "SELECT * FROM workspace_ai_settings WHERE workspace_id = ? LIMIT 1",
                (workspace_id,),
            ).fetchone()

    def get_workspace_budget(self, workspace_id: str) -> float:
        row = self._settings_row(workspace_id)
        if row is None or row["budget_cents"] is None:
            return self.default_budget_cents
        return float(row["budget_cents"])

    def check_budget(self, workspace_id: str, *, now: datetime | None = None) -> BudgetStatus:
        used = self.get_monthly_usage(workspace_id, now=now).total_cost_cents
        budget = self.get_workspace_budget(workspace_id)
        return BudgetStatus(
            within_budget=used < budget,
            used_cents=used,
            budget_cents=budget,
            remaining_cents=max(0.0, budget - used),
        )

    def is_ai_enabled(self, workspace_id: str) -> bool:
        row = self._settings_row(workspace_id)
        if row is None or row["ai_enabled"] is None:
            return self.ai_enabled_default
        return bool(row["ai_enabled"])

    def set_ai_enabled(self, workspace_id: str, enabled: bool) -> None:
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO workspace_ai_settings (workspace_id, ai_enabled, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(workspace_id) DO UPDATE SET
                  ai_enabled = excluded.ai_enabled,
                  updated_at = excluded.updated_at
                """,
                (workspace_id, 1 if enabled else 0, to_iso(utc_now())),
            )
            self._conn.commit()
        logger.info("AI {} for workspace={}", "enabled" if enabled else "disabled", workspace_id)

    def set_budget(self, workspace_id: str, budget_cents: float) -> None:
        if budget_cents < 0:
            raise ValueError("budget_cents must be >= 0")
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO workspace_ai_settings (workspace_id, budget_cents, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(workspace_id) DO UPDATE SET
                  budget_cents = excluded.budget_cents,
                  updated_at = excluded.updated_at
                """,
                (workspace_id, float(budget_cents), to_iso(utc_now())),
            )
            self._conn.commit()

    def get_usage_stats(
        self,
        workspace_id: str,
        *,
        days: int = 30,
        now: datetime | None = None,
    ) -> list[UsageBreakdown]:
        """Usage over the last ``days`` grouped by job type and model, costliest first."""
        since = (now or utc_now()) - timedelta(days=days)
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT job_type, model,
                       COUNT(*) AS calls,
                       SUM(input_tokens) AS input_tokens,
                       SUM(output_tokens) AS output_tokens,
                       SUM(cost_cents) AS cost
                FROM ai_usage
                WHERE workspace_id = ? AND created_at >= ?
                GROUP BY job_type, model
                ORDER BY cost DESC, calls DESC
                """,
                (workspace_id, to_iso(since)),
            ).fetchall()
        return [
            UsageBreakdown(
                job_type=str(row["job_type"]),
                model=str(row["model"]),
                calls=int(row["calls"]),
                input_tokens=int(row["input_tokens"] or 0),
                output_tokens=int(row["output_tokens"] or 0),
                cost_cents=float(row["cost"] or 0.0),
            )
            for row in rows
        ]
