"""Job queue facade: enqueue with dedup, and polling worker loops."""

from __future__ import annotations

import asyncio
import socket
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from loguru import logger

from memoria.queue.models import Job, JobOptions, WorkerOptions
from memoria.queue.payloads import JobPayload, JobType, job_type_of
from memoria.queue.store import SqliteJobStore
from memoria.telemetry.base import TelemetryPort

JobHandler = Callable[[Job], Awaitable[None]]
BatchHandler = Callable[[list[Job]], Awaitable[None]]


@dataclass(slots=True)
class _Registration:
    job_type: JobType
    options: WorkerOptions
    handler: JobHandler | None = None
    batch_handler: BatchHandler | None = None


class JobQueue:
    """Priority job queue over :class:`SqliteJobStore`.

    Delivery is at-least-once: a worker that crashes mid-job leaves an
    ``active`` row whose lease lapses, after which another poll picks it up
    again. Handlers must therefore be idempotent.
    """

    def __init__(self, store: SqliteJobStore, *, telemetry: TelemetryPort) -> None:
        self._store = store
        self._telemetry = telemetry
        self._registrations: dict[JobType, _Registration] = {}
        self._running = False
        self._stop_event: asyncio.Event | None = None
        self._worker_id = f"{socket.gethostname()}:{uuid.uuid4().hex[:8]}"

    @property
    def store(self) -> SqliteJobStore:
        return self._store

    def enqueue(self, payload: JobPayload, options: JobOptions | None = None) -> str | None:
        """Enqueue one job; returns None when collapsed into an existing dedup'd job."""
        options = options or JobOptions()
        job_type = job_type_of(payload)
        job_id = self._store.insert(payload, options)
        labels = (("type", job_type),)
        if job_id is None:
            self._telemetry.incr("jobs_deduplicated_total", labels=labels)
            logger.debug("job {} collapsed into existing dedup_key={}", job_type, options.dedup_key)
            return None
        self._telemetry.incr("jobs_enqueued_total", labels=labels)
        logger.debug(
            "enqueued {} job={} priority={}",
            job_type,
            job_id,
            options.priority.name,
        )
        return job_id

    def register_worker(
        self,
        job_type: JobType,
        options: WorkerOptions,
        handler: JobHandler,
    ) -> None:
        """Register a per-job handler. Each claimed job is acked or failed on its own."""
        self._registrations[job_type] = _Registration(job_type, options, handler=handler)

    def register_batch_worker(
        self,
        job_type: JobType,
        options: WorkerOptions,
        handler: BatchHandler,
    ) -> None:
        """Register a batch handler. A raising handler fails every job of the batch."""
        self._registrations[job_type] = _Registration(job_type, options, batch_handler=handler)

    @property
    def registered_types(self) -> list[JobType]:
        return list(self._registrations)

    async def run(self) -> None:
        """Run every registered worker loop until :meth:`stop` is called."""
        self._running = True
        self._stop_event = asyncio.Event()
        loops = [self._worker_loop(reg) for reg in self._registrations.values()]
        logger.info("job queue started workers={}", ",".join(self._registrations))
        await asyncio.gather(*loops)

    def stop(self) -> None:
        self._running = False
        if self._stop_event is not None:
            self._stop_event.set()

    async def _worker_loop(self, reg: _Registration) -> None:
        while self._running:
            try:
                processed = await self.run_once(reg.job_type)
            except Exception as e:
                logger.error("worker loop {} poll failed: {}", reg.job_type, e)
                processed = 0
            if processed:
                continue
            assert self._stop_event is not None
            try:
                await asyncio.wait_for(
                    self._stop_event.wait(),
                    timeout=reg.options.poll_interval_seconds,
                )
            except asyncio.TimeoutError:
                continue

    async def run_once(self, job_type: JobType) -> int:
        """Run one poll cycle for ``job_type``; returns the number of jobs handled."""
        reg = self._registrations.get(job_type)
        if reg is None:
            raise KeyError(f"no worker registered for {job_type}")

        expired = self._store.expire_due(job_type)
        if expired:
            self._telemetry.incr("jobs_expired_total", expired, labels=(("type", job_type),))
            logger.warning("{} {} job(s) expired before completion", expired, job_type)
        released = self._store.release_lapsed(job_type)
        if released:
            logger.warning("{} {} job(s) lease lapsed; requeued", released, job_type)

        jobs = self._store.claim(job_type, limit=reg.options.batch_size, worker_id=self._worker_id)
        if not jobs:
            return 0

        if reg.batch_handler is not None:
            started = time.monotonic()
            try:
                await reg.batch_handler(jobs)
            except Exception as e:
                for job in jobs:
                    self._record_failure(job, e)
            else:
                for job in jobs:
                    self._record_success(job, time.monotonic() - started)
            return len(jobs)

        assert reg.handler is not None
        for job in jobs:
            started = time.monotonic()
            try:
                await reg.handler(job)
            except Exception as e:
                self._record_failure(job, e)
            else:
                self._record_success(job, time.monotonic() - started)
        return len(jobs)

    def _record_success(self, job: Job, elapsed: float) -> None:
        self._store.complete(job.id)
        labels = (("type", job.type),)
        self._telemetry.incr("jobs_completed_total", labels=labels)
        self._telemetry.timing("job_duration_seconds", elapsed, labels=labels)

    def _record_failure(self, job: Job, error: Exception) -> None:
        message = f"{type(error).__name__}: {error}"
        terminal, delay = self._store.fail(job.id, message)
        self._telemetry.incr(
            "jobs_failed_total",
            labels=(("type", job.type), ("terminal", "true" if terminal else "false")),
        )
        if terminal:
            logger.error(
                "{} job={} failed permanently after {} retries: {}",
                job.type,
                job.id,
                job.retry_limit,
                message,
            )
        else:
            logger.warning(
                "{} job={} failed (attempt {}), retry in {:.0f}s: {}",
                job.type,
                job.id,
                job.retry_count + 1,
                delay,
                message,
            )

    def stats(self) -> dict[tuple[str, str], int]:
        counts = self._store.counts()
        for (job_type, status), count in counts.items():
            if status == "queued":
                self._telemetry.gauge("queue_depth", float(count), labels=(("type", job_type),))
        return counts

    def purge_completed(self, *, older_than_seconds: float) -> int:
        removed = self._store.purge_terminal(older_than_seconds=older_than_seconds)
        if removed:
            logger.info("purged {} finished job(s)", removed)
        return removed
