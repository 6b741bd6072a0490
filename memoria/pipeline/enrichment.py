"""Contextual enrichment: header generation and re-embedding of engaged messages."""

from __future__ import annotations

from datetime import timedelta

from loguru import logger

from memoria.config.schema import EnrichmentConfig
from memoria.core.models import ChatMessage, EnrichmentSignals, EnrichmentState, EnrichmentTier
from memoria.core.ports import MessageStorePort
from memoria.providers.gateway import ProviderGateway, UsageContext
from memoria.providers.usage import UsageLedger
from memoria.queue.manager import JobQueue
from memoria.queue.models import JobOptions, Priority
from memoria.queue.payloads import EnrichJob, MemoEvaluateJob
from memoria.telemetry.base import TelemetryPort

ENRICH_DEDUP_WINDOW_SECONDS = 300
MEMO_EVAL_DEDUP_WINDOW_SECONDS = 86400


def should_enrich(signals: EnrichmentSignals, config: EnrichmentConfig | None = None) -> bool:
    config = config or EnrichmentConfig()
    return (
        signals.reactions >= config.reaction_threshold
        or signals.replies >= config.reply_threshold
        or signals.retrieved
    )


def queue_enrichment(
    queue: JobQueue,
    *,
    workspace_id: str,
    text_message_id: str,
    event_id: str,
    signals: EnrichmentSignals,
) -> str | None:
    """Enqueue enrichment; repeated signals for a message inside five minutes collapse."""
    return queue.enqueue(
        EnrichJob(
            workspace_id=workspace_id,
            text_message_id=text_message_id,
            event_id=event_id,
            signals=signals,
        ),
        JobOptions(
            priority=Priority.LOW,
            retry_limit=2,
            retry_delay=60,
            backoff=True,
            dedup_key=f"enrich-{text_message_id}",
            dedup_window_seconds=ENRICH_DEDUP_WINDOW_SECONDS,
        ),
    )


def queue_memo_evaluation(
    queue: JobQueue,
    *,
    workspace_id: str,
    event_id: str,
    text_message_id: str,
) -> str | None:
    return queue.enqueue(
        MemoEvaluateJob(workspace_id=workspace_id, event_id=event_id, text_message_id=text_message_id),
        JobOptions(
            priority=Priority.BACKGROUND,
            retry_limit=2,
            retry_delay=60,
            backoff=True,
            dedup_key=f"memo-eval-{event_id}",
            dedup_window_seconds=MEMO_EVAL_DEDUP_WINDOW_SECONDS,
        ),
    )


class EnrichmentStage:
    """Worker side of enrichment.

    Tier 0 is untouched, tier 1 means a header was attempted and failed (not
    retried), tier 2 means the message carries a header and was re-embedded
    with it.
    """

    def __init__(
        self,
        *,
        queue: JobQueue,
        gateway: ProviderGateway,
        messages: MessageStorePort,
        ledger: UsageLedger,
        telemetry: TelemetryPort,
        config: EnrichmentConfig | None = None,
    ) -> None:
        self._queue = queue
        self._gateway = gateway
        self._messages = messages
        self._ledger = ledger
        self._telemetry = telemetry
        self._config = config or EnrichmentConfig()

    async def handle(self, job: EnrichJob, *, job_id: str | None = None) -> EnrichmentTier:
        if not self._ledger.is_ai_enabled(job.workspace_id):
            logger.info("AI disabled for workspace={}, skipping enrichment", job.workspace_id)
            return self._messages.get_enrichment_state(job.text_message_id).tier

        state = self._messages.get_enrichment_state(job.text_message_id)
        if state.tier >= 2:
            logger.debug("message {} already enriched, skipping", job.text_message_id)
            return state.tier

        signals = state.signals.merge(job.signals)
        if not should_enrich(signals, self._config):
            logger.debug("signals below enrichment trigger for {}: {}", job.text_message_id, signals)
            self._messages.update_enrichment_state(
                job.text_message_id,
                EnrichmentState(tier=state.tier, signals=signals, contextual_header=state.contextual_header),
            )
            return state.tier

        message = self._messages.get_message_by_text_id(job.text_message_id)
        if message is None:
            logger.warning("message {} not found for enrichment", job.text_message_id)
            return state.tier

        usage = UsageContext(
            workspace_id=job.workspace_id,
            job_type="enrich",
            stream_id=message.stream_id,
            event_id=job.event_id,
            job_id=job_id,
        )
        context = self._messages.get_context_window(
            message.stream_id,
            around=message.created_at,
            start=message.created_at - timedelta(minutes=self._config.context_before_minutes),
            end=message.created_at + timedelta(minutes=self._config.context_after_minutes),
            exclude_event_id=message.event_id,
            before_limit=self._config.context_before_limit,
            after_limit=self._config.context_after_limit,
        )
        header = await self._gateway.generate_contextual_header(message, context, usage=usage)
        if not header:
            logger.warning("contextual header failed for {}; marking tier 1", job.text_message_id)
            self._messages.update_enrichment_state(
                job.text_message_id,
                EnrichmentState(tier=1, signals=signals, contextual_header=None),
            )
            self._telemetry.incr("enrichment_total", labels=(("tier", "1"),))
            return 1

        embedding = await self._gateway.embed(f"{header}\n\n{message.content}", usage=usage)
        self._messages.upsert_embedding(job.text_message_id, embedding.vector, embedding.model)
        self._messages.update_enrichment_state(
            job.text_message_id,
            EnrichmentState(tier=2, signals=signals, contextual_header=header),
        )
        self._telemetry.incr("enrichment_total", labels=(("tier", "2"),))
        logger.info("message {} enriched (header {} chars)", job.text_message_id, len(header))

        try:
            queue_memo_evaluation(
                self._queue,
                workspace_id=job.workspace_id,
                event_id=job.event_id,
                text_message_id=job.text_message_id,
            )
        except Exception as e:
            logger.warning("failed to queue memo evaluation for {}: {}", job.event_id, e)
        return 2


class EnrichmentTriggers:
    """Producers that translate chat activity into enrichment jobs."""

    def __init__(
        self,
        *,
        queue: JobQueue,
        messages: MessageStorePort,
        config: EnrichmentConfig | None = None,
    ) -> None:
        self._queue = queue
        self._messages = messages
        self._config = config or EnrichmentConfig()

    def _submit(self, message: ChatMessage, signals: EnrichmentSignals) -> str | None:
        """Fold ``signals`` into the stored state; enqueue only once the trigger is met.

        Below the trigger the merged signals are saved and nothing is queued,
        so the dedup window only ever holds a job that will enrich.
        """
        state = self._messages.get_enrichment_state(message.text_message_id)
        if state.tier >= 2:
            return None
        signals = state.signals.merge(signals)
        if not should_enrich(signals, self._config):
            self._messages.update_enrichment_state(
                message.text_message_id,
                EnrichmentState(tier=state.tier, signals=signals, contextual_header=state.contextual_header),
            )
            logger.debug("signals below enrichment trigger for {}: {}", message.text_message_id, signals)
            return None
        return queue_enrichment(
            self._queue,
            workspace_id=message.workspace_id,
            text_message_id=message.text_message_id,
            event_id=message.event_id,
            signals=signals,
        )

    def on_thread_parent(self, message: ChatMessage) -> str | None:
        """A thread was opened on ``message``; that counts as its first reply."""
        return self._submit(message, EnrichmentSignals(replies=1))

    def on_thread_reply(self, message: ChatMessage, reply_count: int) -> str | None:
        return self._submit(message, EnrichmentSignals(replies=reply_count))

    def on_reaction(self, message: ChatMessage, reaction_count: int) -> str | None:
        return self._submit(message, EnrichmentSignals(reactions=reaction_count))

    def on_retrieval(self, message: ChatMessage, *, helpful: bool) -> str | None:
        return self._submit(message, EnrichmentSignals(retrieved=True, helpful=helpful))

    def enrich_immediately(self, message: ChatMessage) -> str | None:
        return self._submit(message, EnrichmentSignals(retrieved=True, helpful=True))

    def mark_as_retrieved(self, text_message_ids: list[str]) -> int:
        """Flag messages the agent retrieved so the next backfill picks them up."""
        touched = self._messages.mark_retrieved(text_message_ids)
        if touched:
            logger.debug("marked {} message(s) as retrieved", touched)
        return touched

    def backfill(self, workspace_id: str, *, limit: int | None = None) -> int:
        """Enqueue enrichment for messages below tier 2 that already carry a signal."""
        pending = self._messages.find_messages_needing_enrichment(
            workspace_id,
            limit=limit or self._config.backfill_batch_size,
        )
        queued = 0
        for message, state in pending:
            signals = state.signals.merge(
                EnrichmentSignals(reactions=message.reaction_count, replies=message.reply_count)
            )
            if not should_enrich(signals, self._config):
                continue
            if self._submit(message, signals) is not None:
                queued += 1
        logger.info("backfill queued {} enrichment job(s) for workspace={}", queued, workspace_id)
        return queued
