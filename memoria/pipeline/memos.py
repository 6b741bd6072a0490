"""Memo stage: worthiness gate, reinforcement, evolution policy and memo creation."""

from __future__ import annotations

from dataclasses import dataclass
from typing import assert_never

from loguru import logger

from memoria.config.schema import MemoConfig
from memoria.core.models import ChatMessage
from memoria.core.ports import MessageStorePort, StreamStorePort
from memoria.memory.models import EvolutionAction, Memo, MemoCategory, MemoSource, NewMemo
from memoria.memory.store import MemoStore
from memoria.pipeline.evolution import OverlapFinder, decide_action
from memoria.pipeline.reinforcement import ReinforcementTracker
from memoria.pipeline.scoring import score_message
from memoria.providers.gateway import ProviderGateway, UsageContext
from memoria.providers.usage import UsageLedger
from memoria.queue.payloads import CreateMemoJob, MemoEvaluateJob
from memoria.telemetry.base import TelemetryPort
from memoria.utils.helpers import utc_now

USER_MEMO_CONFIDENCE = 1.0
DEFAULT_MEMO_CONFIDENCE = 0.6
AGENT_MEMO_CONFIDENCE = 0.6


def fallback_summary(content: str) -> str:
    """First line when it reads like a title, otherwise the first 80 characters."""
    first_line = content.split("\n", 1)[0].strip()
    if 10 < len(first_line) < 100:
        return first_line
    return content[:80] + ("..." if len(content) > 80 else "")


@dataclass(frozen=True, slots=True)
class MemoDraft:
    summary: str
    topics: tuple[str, ...]
    category: MemoCategory | None


class MemoStage:
    """Consumes ``memo-evaluate`` and ``create-memo`` jobs.

    The evaluate path only ever touches memo state through one of the
    evolution actions; archived memos are left as they are.
    """

    def __init__(
        self,
        *,
        gateway: ProviderGateway,
        memos: MemoStore,
        messages: MessageStorePort,
        streams: StreamStorePort,
        ledger: UsageLedger,
        telemetry: TelemetryPort,
        config: MemoConfig | None = None,
    ) -> None:
        self._gateway = gateway
        self._memos = memos
        self._messages = messages
        self._streams = streams
        self._ledger = ledger
        self._telemetry = telemetry
        self._config = config or MemoConfig()
        self._overlaps = OverlapFinder(gateway=gateway, memos=memos, config=self._config)
        self._reinforcement = ReinforcementTracker(memos=memos, messages=messages, config=self._config)

    @property
    def reinforcement(self) -> ReinforcementTracker:
        return self._reinforcement

    async def evaluate(self, job: MemoEvaluateJob, *, job_id: str | None = None) -> EvolutionAction | None:
        """Score one enriched message and apply the evolution policy. None means not memo-worthy."""
        if not self._ledger.is_ai_enabled(job.workspace_id):
            logger.info("AI disabled for workspace={}, skipping memo evaluation", job.workspace_id)
            return None

        message = self._messages.get_message(job.event_id)
        if message is None:
            logger.warning("message for event={} not found for memo evaluation", job.event_id)
            return None
        if message.is_ai_generated:
            logger.debug("skipping AI-generated event={}", job.event_id)
            return None

        worthiness = score_message(message)
        if not worthiness.should_create_memo:
            logger.debug("event={} not memo-worthy (score {})", job.event_id, worthiness.score)
            return None
        logger.info(
            "event={} memo-worthy (score {}, {})",
            job.event_id,
            worthiness.score,
            ", ".join(worthiness.reasons[:3]),
        )

        if self._memos.find_by_anchor(job.workspace_id, job.event_id):
            return self._decided("skip", job.event_id, "event already anchors a memo")
        if self._reinforcement.is_event_already_reinforcing(job.event_id):
            return self._decided("skip", job.event_id, "event already reinforces a memo")

        usage = UsageContext(
            workspace_id=job.workspace_id,
            job_type="memo-evaluate",
            stream_id=message.stream_id,
            event_id=job.event_id,
            job_id=job_id,
        )

        stored = self._messages.get_embedding(message.text_message_id)
        if stored is not None:
            match = self._reinforcement.find_similar_anchor(
                job.workspace_id,
                text_message_id=message.text_message_id,
                vector=stored.vector,
            )
            if match is not None:
                self._reinforcement.reinforce(
                    match.memo,
                    event_id=job.event_id,
                    text_message_id=message.text_message_id,
                    similarity=match.similarity,
                )
                return self._decided("reinforce", job.event_id, f"anchor match {match.similarity:.3f}")

        overlaps = await self._overlaps.find_overlaps(
            job.workspace_id,
            message.content,
            created_at=message.created_at,
            usage=usage,
        )
        decision = decide_action(overlaps, self._config)
        match decision.action:
            case "create_new":
                await self._create_for_message(message, confidence=worthiness.confidence, usage=usage)
            case "merge":
                assert decision.target is not None
                self._merge(decision.target.memo, message, similarity=decision.target.similarity)
            case "supersede":
                assert decision.target is not None
                await self._supersede(
                    decision.target.memo,
                    message,
                    confidence=worthiness.confidence,
                    usage=usage,
                )
            case "skip" | "reinforce":
                pass
            case _:
                assert_never(decision.action)
        return self._decided(decision.action, job.event_id, decision.reason)

    def _decided(self, action: EvolutionAction, event_id: str, reason: str) -> EvolutionAction:
        self._telemetry.incr("memo_decisions_total", labels=(("action", action),))
        logger.info("memo decision for event={}: {} ({})", event_id, action, reason)
        return action

    # ── Actions ──────────────────────────────────────────────────────

    async def _draft(
        self,
        content: str,
        *,
        workspace_id: str,
        usage: UsageContext,
        summary: str | None = None,
    ) -> MemoDraft:
        if summary is None:
            summary = await self._gateway.generate_summary(content[:1500], usage=usage) or fallback_summary(content)
        vocabulary = self._memos.top_tags(workspace_id, limit=self._config.tag_vocabulary_size)
        topics = await self._gateway.suggest_tags(content, vocabulary, usage=usage) or []
        category = await self._gateway.classify_category(content, usage=usage)
        return MemoDraft(summary=summary, topics=tuple(topics), category=category)

    async def _persist(
        self,
        draft: MemoDraft,
        *,
        workspace_id: str,
        anchor_event_ids: tuple[str, ...],
        anchor_message_ids: tuple[str, ...],
        stream_id: str | None,
        source: MemoSource,
        confidence: float,
        usage: UsageContext,
        supersedes: str | None = None,
    ) -> Memo | None:
        new_memo = NewMemo(
            workspace_id=workspace_id,
            summary=draft.summary,
            topics=draft.topics,
            category=draft.category,
            anchor_event_ids=anchor_event_ids,
            anchor_message_ids=anchor_message_ids,
            context_stream_id=stream_id,
            confidence=confidence,
            source=source,
        )
        text = f"{draft.summary} {' '.join(draft.topics)}".strip()
        embedding = await self._gateway.embed(text, usage=usage)
        if supersedes is None:
            memo = self._memos.create(new_memo, embedding=embedding.vector, embedding_model=embedding.model)
        else:
            memo = self._memos.supersede(
                supersedes,
                new_memo,
                embedding=embedding.vector,
                embedding_model=embedding.model,
            )
            if memo is None:
                logger.warning("memo {} was archived concurrently; not superseding", supersedes)
                return None
        self._reinforcement.record_original_anchor(memo)
        if draft.topics:
            self._memos.record_tag_usage(workspace_id, list(draft.topics))
        if stream_id:
            self._streams.mark_knowledge_extracted(stream_id, utc_now())
        return memo

    async def _create_for_message(
        self,
        message: ChatMessage,
        *,
        confidence: float,
        usage: UsageContext,
    ) -> Memo | None:
        draft = await self._draft(message.content, workspace_id=message.workspace_id, usage=usage)
        return await self._persist(
            draft,
            workspace_id=message.workspace_id,
            anchor_event_ids=(message.event_id,),
            anchor_message_ids=(message.text_message_id,),
            stream_id=message.stream_id,
            source="system",
            confidence=confidence,
            usage=usage,
        )

    def _merge(self, memo: Memo, message: ChatMessage, *, similarity: float) -> Memo | None:
        inserted = self._memos.record_reinforcement(
            memo.id,
            message.event_id,
            reinforcement_type="merge",
            similarity_score=similarity,
            weight=1.0,
        )
        if not inserted:
            return memo
        return self._memos.add_anchor(
            memo.id,
            message.event_id,
            message_id=message.text_message_id,
            confidence_boost=self._config.merge_confidence_boost,
        )

    async def _supersede(
        self,
        old: Memo,
        message: ChatMessage,
        *,
        confidence: float,
        usage: UsageContext,
    ) -> Memo | None:
        draft = await self._draft(message.content, workspace_id=message.workspace_id, usage=usage)
        draft = MemoDraft(
            summary=draft.summary,
            topics=draft.topics or old.topics,
            category=draft.category or old.category,
        )
        return await self._persist(
            draft,
            workspace_id=message.workspace_id,
            anchor_event_ids=(message.event_id,),
            anchor_message_ids=(message.text_message_id,),
            stream_id=message.stream_id,
            source="system",
            confidence=confidence,
            usage=usage,
            supersedes=old.id,
        )

    # ── Explicit creation ────────────────────────────────────────────

    async def create_from_job(self, job: CreateMemoJob, *, job_id: str | None = None) -> Memo | None:
        """Create a memo from explicit anchors (for example a user saving a message)."""
        if not self._ledger.is_ai_enabled(job.workspace_id):
            logger.info("AI disabled for workspace={}, skipping memo creation", job.workspace_id)
            return None
        anchors = [m for m in (self._messages.get_message(e) for e in job.anchor_event_ids) if m is not None]
        if not anchors:
            logger.warning("no anchor messages found for create-memo job {}", job_id)
            return None
        existing = self._memos.find_by_anchor(job.workspace_id, anchors[0].event_id)
        if existing:
            logger.info("event={} already anchors memo {}", anchors[0].event_id, existing[0].id)
            return existing[0]

        usage = UsageContext(
            workspace_id=job.workspace_id,
            job_type="create-memo",
            stream_id=job.stream_id,
            event_id=anchors[0].event_id,
            job_id=job_id,
        )
        draft = await self._draft(anchors[0].content, workspace_id=job.workspace_id, usage=usage)
        memo = await self._persist(
            draft,
            workspace_id=job.workspace_id,
            anchor_event_ids=tuple(m.event_id for m in anchors),
            anchor_message_ids=tuple(m.text_message_id for m in anchors),
            stream_id=job.stream_id or anchors[0].stream_id,
            source=job.source,
            confidence=USER_MEMO_CONFIDENCE if job.source == "user" else DEFAULT_MEMO_CONFIDENCE,
            usage=usage,
        )
        self._telemetry.incr("memo_decisions_total", labels=(("action", "create_new"),))
        return memo

    async def create_from_agent_success(
        self,
        *,
        workspace_id: str,
        query: str,
        response_event_id: str,
        stream_id: str,
        cited_event_ids: list[str],
    ) -> Memo | None:
        """Remember a question the agent answered well, or boost the memo that already covers it."""
        if not cited_event_ids:
            return None
        usage = UsageContext(
            workspace_id=workspace_id,
            job_type="respond",
            stream_id=stream_id,
            event_id=response_event_id,
        )
        embedding = await self._gateway.embed(query[: self._config.max_embed_chars], usage=usage)
        hits = self._memos.search_similar(
            workspace_id,
            embedding.vector,
            threshold=self._config.reinforcement_similarity,
            limit=1,
        )
        if hits:
            memo, similarity = hits[0]
            logger.debug("boosting memo {} ({:.3f}) instead of creating a new one", memo.id, similarity)
            return self._memos.boost_confidence(memo.id, self._config.merge_confidence_boost)

        anchor_messages = [self._messages.get_message(e) for e in cited_event_ids]
        memo = self._memos.create(
            NewMemo(
                workspace_id=workspace_id,
                summary=query.strip()[:200],
                anchor_event_ids=tuple(cited_event_ids),
                anchor_message_ids=tuple(m.text_message_id for m in anchor_messages if m is not None),
                context_stream_id=stream_id,
                confidence=AGENT_MEMO_CONFIDENCE,
                source="ariadne",
            ),
            embedding=embedding.vector,
            embedding_model=embedding.model,
        )
        self._reinforcement.record_original_anchor(memo)
        return memo

    def log_retrieval(self, memo_ids: list[str]) -> int:
        return self._memos.log_retrieval(memo_ids)
