"""Classification stage: structural pre-filter, tiered local/remote classifier and thread debounce."""

from __future__ import annotations

from datetime import datetime, timedelta

from loguru import logger

from memoria.config.schema import ClassificationConfig
from memoria.core.models import ClassificationResult, EnrichmentSignals, StreamInfo
from memoria.core.ports import MessageStorePort, StreamStorePort
from memoria.pipeline.enrichment import queue_enrichment
from memoria.pipeline.signals import extract_signals, structural_score
from memoria.providers.gateway import ProviderGateway, UsageContext
from memoria.providers.usage import UsageLedger
from memoria.queue.manager import JobQueue
from memoria.queue.models import JobOptions, Priority
from memoria.queue.payloads import ClassifyJob
from memoria.telemetry.base import TelemetryPort
from memoria.utils.helpers import utc_now

KNOWLEDGE_SUGGESTION = "knowledge_suggestion"
THREAD_TRANSCRIPT_LIMIT = 50


def should_classify_stream(
    stream: StreamInfo,
    *,
    now: datetime | None = None,
    config: ClassificationConfig | None = None,
) -> tuple[bool, str]:
    """Debounce thread classification. Returns (allowed, reason)."""
    config = config or ClassificationConfig()
    now = now or utc_now()
    if stream.stream_type != "thread":
        return False, "not a thread"
    if stream.knowledge_extracted_at is not None:
        return False, "knowledge already extracted"
    if stream.event_count < config.thread_min_events:
        return False, f"fewer than {config.thread_min_events} events"
    if stream.last_classified_at is not None and now - stream.last_classified_at < timedelta(
        hours=config.reclassify_after_hours
    ):
        return False, "classified recently"
    if stream.last_activity_at is not None and now - stream.last_activity_at < timedelta(
        minutes=config.quiet_period_minutes
    ):
        return False, "thread still active"
    return True, "ok"


def maybe_queue_classification(
    queue: JobQueue,
    job: ClassifyJob,
    *,
    force: bool = False,
    config: ClassificationConfig | None = None,
) -> str | None:
    """Enqueue a classification job when the structural score clears the threshold."""
    config = config or ClassificationConfig()
    score = structural_score(extract_signals(job.content), job.reaction_count)
    if not force and score < config.enqueue_threshold:
        logger.debug(
            "structural score {} below {} for stream={} event={}, not queueing",
            score,
            config.enqueue_threshold,
            job.stream_id,
            job.event_id,
        )
        return None
    return queue.enqueue(
        job,
        JobOptions(priority=Priority.LOW, retry_limit=2, retry_delay=60, backoff=True),
    )


def queue_thread_classification(
    queue: JobQueue,
    stream: StreamInfo,
    messages: MessageStorePort,
    *,
    now: datetime | None = None,
    config: ClassificationConfig | None = None,
) -> str | None:
    """Classify a whole thread once it has settled; debounced by :func:`should_classify_stream`."""
    allowed, reason = should_classify_stream(stream, now=now, config=config)
    if not allowed:
        logger.debug("thread {} not classified: {}", stream.id, reason)
        return None
    history = messages.get_recent_messages(stream.id, before=None, limit=THREAD_TRANSCRIPT_LIMIT)
    transcript = "\n".join(f"{m.author_name}: {m.content}" for m in history if not m.is_agent)
    if not transcript:
        return None
    return maybe_queue_classification(
        queue,
        ClassifyJob(
            workspace_id=stream.workspace_id,
            stream_id=stream.id,
            content=transcript,
            content_type="thread",
        ),
        config=config,
    )


class ClassificationStage:
    """Worker side of classification.

    Cheap local verdicts are used when confident; otherwise the remote model
    decides. Knowledge verdicts annotate the stream and feed enrichment.
    """

    def __init__(
        self,
        *,
        queue: JobQueue,
        gateway: ProviderGateway,
        streams: StreamStorePort,
        ledger: UsageLedger,
        telemetry: TelemetryPort,
        config: ClassificationConfig | None = None,
    ) -> None:
        self._queue = queue
        self._gateway = gateway
        self._streams = streams
        self._ledger = ledger
        self._telemetry = telemetry
        self._config = config or ClassificationConfig()

    async def handle(self, job: ClassifyJob, *, job_id: str | None = None) -> ClassificationResult | None:
        if not self._ledger.is_ai_enabled(job.workspace_id):
            logger.info("AI disabled for workspace={}, skipping classification", job.workspace_id)
            return None

        signals = extract_signals(job.content)
        score = structural_score(signals, job.reaction_count)
        if score < self._config.prefilter_threshold:
            logger.debug("event={} failed structural pre-filter (score {})", job.event_id, score)
            self._record(job, "not_applicable")
            return "not_applicable"

        usage = UsageContext(
            workspace_id=job.workspace_id,
            job_type="classify",
            stream_id=job.stream_id,
            event_id=job.event_id,
            job_id=job_id,
        )
        local = await self._gateway.classify(job.content, usage=usage)
        if local.confident:
            result: ClassificationResult = "knowledge_candidate" if local.is_knowledge else "not_applicable"
            self._record(job, result)
            if local.is_knowledge:
                self._suggest_knowledge(job, None)
                self._queue_enrichment(job)
            logger.info("classified event={} as {} (local)", job.event_id, result)
            return result

        escalated = await self._gateway.classify_escalate(job.content, usage=usage)
        result = "knowledge_candidate" if escalated.is_knowledge else "not_applicable"
        self._record(job, result)
        if escalated.is_knowledge and escalated.confidence > self._config.escalation_min_confidence:
            self._suggest_knowledge(job, escalated.suggested_title)
            self._queue_enrichment(job)
        elif escalated.is_knowledge:
            logger.info(
                "low-confidence knowledge for event={} ({:.2f}), not enriching",
                job.event_id,
                escalated.confidence,
            )
        logger.info(
            "classified event={} as {} (remote, confidence {:.2f})",
            job.event_id,
            result,
            escalated.confidence,
        )
        return result

    def _record(self, job: ClassifyJob, result: ClassificationResult) -> None:
        self._telemetry.incr("classification_total", labels=(("result", result),))
        if not job.stream_id:
            return
        self._streams.record_classification(job.stream_id, result, utc_now())

    def _suggest_knowledge(self, job: ClassifyJob, suggested_title: str | None) -> None:
        if not job.stream_id:
            return
        self._streams.add_annotation(
            job.stream_id,
            KNOWLEDGE_SUGGESTION,
            {
                "suggested_at": utc_now().isoformat(),
                "suggested_title": suggested_title,
                "source_event_id": job.event_id,
            },
        )

    def _queue_enrichment(self, job: ClassifyJob) -> None:
        if not (job.text_message_id and job.event_id):
            return
        try:
            queue_enrichment(
                self._queue,
                workspace_id=job.workspace_id,
                text_message_id=job.text_message_id,
                event_id=job.event_id,
                signals=EnrichmentSignals(retrieved=True, helpful=True),
            )
        except Exception as e:
            logger.warning("failed to queue enrichment for event={}: {}", job.event_id, e)
