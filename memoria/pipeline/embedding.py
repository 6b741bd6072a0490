"""Baseline message embeddings, batched per workspace."""

from __future__ import annotations

from collections import defaultdict

from loguru import logger

from memoria.core.ports import MessageStorePort
from memoria.providers.gateway import ProviderGateway, UsageContext
from memoria.providers.usage import UsageLedger
from memoria.queue.manager import JobQueue
from memoria.queue.models import Job, JobOptions, Priority
from memoria.queue.payloads import EmbedJob
from memoria.telemetry.base import TelemetryPort

MIN_EMBED_CHARS = 20
EMBED_BATCH_SIZE = 50


def queue_embedding(
    queue: JobQueue,
    *,
    workspace_id: str,
    text_message_id: str,
    content: str,
    event_id: str | None = None,
) -> str | None:
    """Enqueue a baseline embedding. Very short messages are not worth a vector."""
    if len(content.strip()) < MIN_EMBED_CHARS:
        return None
    return queue.enqueue(
        EmbedJob(
            workspace_id=workspace_id,
            text_message_id=text_message_id,
            content=content,
            event_id=event_id,
        ),
        JobOptions(priority=Priority.NORMAL, retry_limit=3, retry_delay=30, backoff=True),
    )


class EmbeddingStage:
    """Batch worker for ``embed`` jobs."""

    def __init__(
        self,
        *,
        gateway: ProviderGateway,
        messages: MessageStorePort,
        ledger: UsageLedger,
        telemetry: TelemetryPort,
    ) -> None:
        self._gateway = gateway
        self._messages = messages
        self._ledger = ledger
        self._telemetry = telemetry

    async def handle_batch(self, jobs: list[Job]) -> int:
        """Embed every job of the batch, grouped by workspace; returns vectors stored."""
        by_workspace: dict[str, list[EmbedJob]] = defaultdict(list)
        for job in jobs:
            payload = job.payload
            if not isinstance(payload, EmbedJob):
                logger.warning("embed worker got {} job {}, ignoring", job.type, job.id)
                continue
            by_workspace[payload.workspace_id].append(payload)

        stored = 0
        for workspace_id, payloads in by_workspace.items():
            if not self._ledger.is_ai_enabled(workspace_id):
                logger.info("AI disabled for workspace={}, skipping {} embedding(s)", workspace_id, len(payloads))
                continue
            results = await self._gateway.embed_batch(
                [p.content for p in payloads],
                usage=UsageContext(workspace_id=workspace_id, job_type="embed"),
            )
            for payload, result in zip(payloads, results, strict=True):
                self._messages.upsert_embedding(payload.text_message_id, result.vector, result.model)
            stored += len(results)
            self._telemetry.incr("embeddings_stored_total", len(results), labels=(("tier", results[0].tier),))
            logger.debug("stored {} embedding(s) for workspace={}", len(results), workspace_id)
        return stored
