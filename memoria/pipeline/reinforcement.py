"""Reinforcement tracking: events that restate an existing memo strengthen it."""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime

from loguru import logger

from memoria.config.schema import MemoConfig
from memoria.core.ports import MessageStorePort
from memoria.memory.models import Memo, ReinforcementType
from memoria.memory.store import MemoStore
from memoria.storage.vectors import cosine_similarity
from memoria.utils.helpers import utc_now

DECAY_RATE_PER_MONTH = 0.1
REINFORCEMENT_BOOST = 0.05
RECENCY_BONUS_7_DAYS = 0.1
RECENCY_BONUS_30_DAYS = 0.05
SECONDS_PER_MONTH = 30 * 24 * 60 * 60


@dataclass(frozen=True, slots=True)
class EffectiveStrength:
    base_confidence: float
    reinforcement_boost: float
    recency_bonus: float
    total: float


@dataclass(frozen=True, slots=True)
class AnchorMatch:
    memo: Memo
    anchor_message_id: str
    similarity: float


class ReinforcementTracker:
    def __init__(
        self,
        *,
        memos: MemoStore,
        messages: MessageStorePort,
        config: MemoConfig | None = None,
    ) -> None:
        self._memos = memos
        self._messages = messages
        self._config = config or MemoConfig()

    def record_original_anchor(self, memo: Memo) -> None:
        for event_id in memo.anchor_event_ids:
            self._memos.record_reinforcement(
                memo.id,
                event_id,
                reinforcement_type="original",
                similarity_score=1.0,
                weight=1.0,
            )

    def is_event_already_reinforcing(self, event_id: str) -> str | None:
        return self._memos.reinforcing_memo_id(event_id)

    def find_similar_anchor(
        self,
        workspace_id: str,
        *,
        text_message_id: str,
        vector: list[float],
    ) -> AnchorMatch | None:
        """Best active memo whose anchor message embedding is a near-duplicate of ``vector``."""
        best: AnchorMatch | None = None
        for memo in self._memos.list_active(workspace_id):
            for anchor_message_id in memo.anchor_message_ids:
                if anchor_message_id == text_message_id:
                    continue
                stored = self._messages.get_embedding(anchor_message_id)
                if stored is None or len(stored.vector) != len(vector):
                    continue
                similarity = cosine_similarity(vector, stored.vector)
                if similarity <= self._config.reinforcement_similarity:
                    continue
                if best is None or similarity > best.similarity:
                    best = AnchorMatch(memo=memo, anchor_message_id=anchor_message_id, similarity=similarity)
        return best

    def reinforce(
        self,
        memo: Memo,
        *,
        event_id: str,
        text_message_id: str | None,
        similarity: float,
        reinforcement_type: ReinforcementType = "merge",
        weight: float = 1.0,
    ) -> Memo | None:
        """Anchor ``event_id`` on ``memo`` and bump its confidence once per event."""
        inserted = self._memos.record_reinforcement(
            memo.id,
            event_id,
            reinforcement_type=reinforcement_type,
            similarity_score=similarity,
            weight=weight,
        )
        if not inserted:
            logger.debug("event {} already reinforces memo {}", event_id, memo.id)
            return self._memos.get(memo.id)
        updated = self._memos.add_anchor(
            memo.id,
            event_id,
            message_id=text_message_id,
            confidence_boost=REINFORCEMENT_BOOST,
        )
        logger.info(
            "memo {} reinforced by event={} ({}, similarity {:.3f})",
            memo.id,
            event_id,
            reinforcement_type,
            similarity,
        )
        return updated

    def calculate_effective_strength(self, memo_id: str, *, now: datetime | None = None) -> EffectiveStrength:
        memo = self._memos.get(memo_id)
        if memo is None:
            return EffectiveStrength(0.0, 0.0, 0.0, 0.0)
        now = now or utc_now()
        reinforcements = self._memos.list_reinforcements(memo_id)

        boost = 0.0
        for r in reinforcements:
            months_old = max(0.0, (now - r.created_at).total_seconds()) / SECONDS_PER_MONTH
            boost += r.weight * math.exp(-DECAY_RATE_PER_MONTH * months_old) * REINFORCEMENT_BOOST

        recency = 0.0
        if reinforcements:
            days_since = (now - max(r.created_at for r in reinforcements)).total_seconds() / 86400
            if days_since < 7:
                recency = RECENCY_BONUS_7_DAYS
            elif days_since < 30:
                recency = RECENCY_BONUS_30_DAYS

        total = min(1.0, memo.confidence + boost + recency)
        return EffectiveStrength(memo.confidence, boost, recency, total)
