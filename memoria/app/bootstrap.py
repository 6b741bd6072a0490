"""Application bootstrap: dependency wiring and the worker runtime."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING, assert_never

from loguru import logger

from memoria.agent.responder import Responder
from memoria.agent.runner import AgentRunnerPort, MemoSearchAgent
from memoria.memory.store import MemoStore
from memoria.pipeline.classification import ClassificationStage
from memoria.pipeline.embedding import EMBED_BATCH_SIZE, EmbeddingStage
from memoria.pipeline.enrichment import EnrichmentStage, EnrichmentTriggers
from memoria.pipeline.memos import MemoStage
from memoria.providers.gateway import ProviderGateway
from memoria.providers.usage import UsageLedger
from memoria.queue.manager import JobQueue
from memoria.queue.models import Job, WorkerOptions
from memoria.queue.payloads import (
    ClassifyJob,
    CreateMemoJob,
    EmbedJob,
    EnrichJob,
    JobType,
    MemoEvaluateJob,
    RespondJob,
)
from memoria.queue.store import SqliteJobStore
from memoria.sessions.store import SessionStore
from memoria.sessions.tracker import AgentSessionTracker
from memoria.storage.chat_store import SqliteChatStore
from memoria.telemetry.base import TelemetryPort
from memoria.telemetry.inmemory import InMemoryTelemetry
from memoria.telemetry.prometheus import PrometheusConfig, PrometheusTelemetry

if TYPE_CHECKING:
    from memoria.config.schema import Config

SINGLE_JOB_TYPES: tuple[JobType, ...] = ("classify", "enrich", "memo-evaluate", "create-memo", "respond")


@dataclass(slots=True)
class PipelineContext:
    """Every store and stage of one process, built once and passed explicitly."""

    config: "Config"
    telemetry: TelemetryPort
    queue: JobQueue
    chat: SqliteChatStore
    memos: MemoStore
    ledger: UsageLedger
    gateway: ProviderGateway
    sessions: AgentSessionTracker
    classification: ClassificationStage
    enrichment: EnrichmentStage
    triggers: EnrichmentTriggers
    memo_stage: MemoStage
    embedding: EmbeddingStage
    responder: Responder

    def close(self) -> None:
        self.queue.store.close()
        self.sessions.store.close()
        self.memos.close()
        self.ledger.close()
        self.chat.close()


def build_telemetry(config: "Config") -> TelemetryPort:
    if config.telemetry.backend == "prometheus":
        telemetry = PrometheusTelemetry(
            PrometheusConfig(host=config.telemetry.host, port=config.telemetry.port)
        )
        telemetry.start()
        return telemetry
    return InMemoryTelemetry()


def build_context(
    config: "Config",
    *,
    telemetry: TelemetryPort | None = None,
    gateway: ProviderGateway | None = None,
    runner: AgentRunnerPort | None = None,
) -> PipelineContext:
    """Open the stores under the data directory and compose the stages."""
    telemetry = telemetry or build_telemetry(config)
    queue = JobQueue(
        SqliteJobStore(
            config.resolve_path(config.queue.db_path),
            lease_seconds=config.queue.lease_seconds,
            default_expire_seconds=config.queue.default_expire_seconds,
            max_backoff_seconds=config.queue.max_backoff_seconds,
        ),
        telemetry=telemetry,
    )
    chat = SqliteChatStore(config.resolve_path(config.storage.chat_db_path))
    memos = MemoStore(config.resolve_path(config.storage.memo_db_path))
    ledger = UsageLedger(
        config.resolve_path(config.storage.usage_db_path),
        default_budget_cents=config.usage.default_budget_cents,
        ai_enabled_default=config.usage.ai_enabled_default,
    )
    gateway = gateway or ProviderGateway.from_config(config, ledger=ledger, telemetry=telemetry)
    sessions = AgentSessionTracker(
        SessionStore(config.resolve_path(config.sessions.db_path)),
        telemetry=telemetry,
        config=config.sessions,
    )
    memo_stage = MemoStage(
        gateway=gateway,
        memos=memos,
        messages=chat,
        streams=chat,
        ledger=ledger,
        telemetry=telemetry,
        config=config.memo,
    )
    return PipelineContext(
        config=config,
        telemetry=telemetry,
        queue=queue,
        chat=chat,
        memos=memos,
        ledger=ledger,
        gateway=gateway,
        sessions=sessions,
        classification=ClassificationStage(
            queue=queue,
            gateway=gateway,
            streams=chat,
            ledger=ledger,
            telemetry=telemetry,
            config=config.classification,
        ),
        enrichment=EnrichmentStage(
            queue=queue,
            gateway=gateway,
            messages=chat,
            ledger=ledger,
            telemetry=telemetry,
            config=config.enrichment,
        ),
        triggers=EnrichmentTriggers(queue=queue, messages=chat, config=config.enrichment),
        memo_stage=memo_stage,
        embedding=EmbeddingStage(gateway=gateway, messages=chat, ledger=ledger, telemetry=telemetry),
        responder=Responder(
            runner=runner or MemoSearchAgent(gateway=gateway, memos=memos),
            sessions=sessions,
            messages=chat,
            streams=chat,
            poster=chat,
            ledger=ledger,
            memo_stage=memo_stage,
        ),
    )


class PipelineRuntime:
    """Registers one worker loop per job type and runs them until stopped."""

    def __init__(self, context: PipelineContext) -> None:
        self._ctx = context
        self._started = False

    @property
    def context(self) -> PipelineContext:
        return self._ctx

    def register_workers(self) -> None:
        options = WorkerOptions(poll_interval_seconds=self._ctx.config.queue.poll_interval_seconds)
        for job_type in SINGLE_JOB_TYPES:
            self._ctx.queue.register_worker(job_type, options, self.dispatch)
        self._ctx.queue.register_batch_worker(
            "embed",
            WorkerOptions(
                batch_size=EMBED_BATCH_SIZE,
                poll_interval_seconds=self._ctx.config.queue.poll_interval_seconds,
            ),
            self._embed_batch,
        )

    async def dispatch(self, job: Job) -> None:
        payload = job.payload
        match payload:
            case ClassifyJob():
                await self._ctx.classification.handle(payload, job_id=job.id)
            case EnrichJob():
                await self._ctx.enrichment.handle(payload, job_id=job.id)
            case MemoEvaluateJob():
                await self._ctx.memo_stage.evaluate(payload, job_id=job.id)
            case CreateMemoJob():
                await self._ctx.memo_stage.create_from_job(payload, job_id=job.id)
            case EmbedJob():
                await self._ctx.embedding.handle_batch([job])
            case RespondJob():
                await self._ctx.responder.handle(payload, job_id=job.id)
            case _:
                assert_never(payload)

    async def _embed_batch(self, jobs: list[Job]) -> None:
        await self._ctx.embedding.handle_batch(jobs)

    def recover(self) -> int:
        """Fail agent sessions left open by a previous process."""
        recovered = self._ctx.sessions.sweep_stale()
        if recovered:
            logger.info("startup sweep recovered {} agent session(s)", recovered)
        return recovered

    async def run(self) -> None:
        if not self._started:
            self.recover()
            self.register_workers()
            self._started = True
        retention = self._ctx.config.queue.completed_retention_days * 86400
        self._ctx.queue.purge_completed(older_than_seconds=retention)
        try:
            await self._ctx.queue.run()
        finally:
            self._ctx.queue.stop()

    def stop(self) -> None:
        self._ctx.queue.stop()


async def run_pipeline(config: "Config") -> None:
    context = build_context(config)
    runtime = PipelineRuntime(context)
    try:
        await runtime.run()
    except asyncio.CancelledError:
        logger.info("pipeline cancelled")
    finally:
        runtime.stop()
        context.close()
