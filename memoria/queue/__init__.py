"""Priority job queue with retry, backoff, dedup and expiry."""

from memoria.queue.manager import JobQueue
from memoria.queue.models import Job, JobOptions, Priority, WorkerOptions
from memoria.queue.payloads import (
    ClassifyJob,
    CreateMemoJob,
    EmbedJob,
    EnrichJob,
    JobPayload,
    MemoEvaluateJob,
    RespondJob,
)
from memoria.queue.store import SqliteJobStore

__all__ = [
    "ClassifyJob",
    "CreateMemoJob",
    "EmbedJob",
    "EnrichJob",
    "Job",
    "JobOptions",
    "JobPayload",
    "JobQueue",
    "MemoEvaluateJob",
    "Priority",
    "RespondJob",
    "SqliteJobStore",
    "WorkerOptions",
]
