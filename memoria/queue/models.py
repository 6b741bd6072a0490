"""Typed models for the priority job queue."""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
from typing import TYPE_CHECKING, Literal

if TYPE_CHECKING:
    from memoria.queue.payloads import JobPayload, JobType

JobStatus = Literal["queued", "active", "completed", "failed", "expired"]

TERMINAL_STATUSES: frozenset[str] = frozenset({"completed", "failed", "expired"})


class Priority(IntEnum):
    """Dequeue order; lower values are picked up first."""

    URGENT = 1
    HIGH = 2
    NORMAL = 3
    LOW = 4
    BACKGROUND = 5


@dataclass(frozen=True, slots=True, kw_only=True)
class JobOptions:
    """Per-enqueue scheduling options."""

    priority: Priority = Priority.NORMAL
    retry_limit: int = 2
    retry_delay: int = 60
    backoff: bool = False
    expires_in_seconds: int | None = None
    dedup_key: str | None = None
    dedup_window_seconds: int | None = None

    def __post_init__(self) -> None:
        if self.retry_limit < 0:
            raise ValueError("retry_limit must be >= 0")
        if self.retry_delay < 0:
            raise ValueError("retry_delay must be >= 0")
        if self.dedup_window_seconds is not None and not self.dedup_key:
            raise ValueError("dedup_window_seconds requires dedup_key")


@dataclass(frozen=True, slots=True, kw_only=True)
class WorkerOptions:
    """Polling options for one registered worker."""

    batch_size: int = 1
    poll_interval_seconds: float = 2.0


@dataclass(slots=True, kw_only=True)
class Job:
    """One stored job row."""

    id: str
    type: "JobType"
    payload: "JobPayload"
    priority: int
    status: JobStatus
    retry_count: int
    retry_limit: int
    retry_delay: int
    backoff: bool
    expires_at: float
    run_after: float
    created_at: float
    dedup_key: str | None = None
    dedup_until: float | None = None
    locked_until: float | None = None
    last_error: str | None = None
    completed_at: float | None = None


def compute_backoff_seconds(
    *,
    retry_delay: int,
    attempt: int,
    backoff: bool,
    max_seconds: int,
) -> float:
    """Delay before retry number ``attempt`` (1-based)."""
    if not backoff:
        return float(min(retry_delay, max_seconds))
    delay = retry_delay * (2 ** max(0, attempt - 1))
    return float(min(delay, max_seconds))
