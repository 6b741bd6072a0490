"""Memo domain models and evolution decisions."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal

MemoSource = Literal["user", "system", "ariadne"]
MemoCategory = Literal["decision", "learning", "procedure", "context", "reference"]
EvolutionAction = Literal["create_new", "merge", "supersede", "skip", "reinforce"]
ReinforcementType = Literal["original", "merge", "retrieval"]

MEMO_CATEGORIES: tuple[str, ...] = ("decision", "learning", "procedure", "context", "reference")


@dataclass(frozen=True, slots=True, kw_only=True)
class Memo:
    """A distilled unit of knowledge anchored to one or more chat events."""

    id: str
    workspace_id: str
    summary: str
    anchor_event_ids: tuple[str, ...]
    confidence: float
    source: MemoSource
    created_at: datetime
    updated_at: datetime
    topics: tuple[str, ...] = ()
    category: MemoCategory | None = None
    anchor_message_ids: tuple[str, ...] = ()
    context_stream_id: str | None = None
    retrieval_count: int = 0
    last_retrieved_at: datetime | None = None
    archived_at: datetime | None = None

    @property
    def is_archived(self) -> bool:
        return self.archived_at is not None

    def embedding_text(self) -> str:
        return f"{self.summary} {' '.join(self.topics)}".strip()


@dataclass(frozen=True, slots=True, kw_only=True)
class NewMemo:
    """Fields needed to insert a memo."""

    workspace_id: str
    summary: str
    anchor_event_ids: tuple[str, ...]
    confidence: float
    source: MemoSource
    topics: tuple[str, ...] = ()
    category: MemoCategory | None = None
    anchor_message_ids: tuple[str, ...] = ()
    context_stream_id: str | None = None

    def __post_init__(self) -> None:
        if not self.anchor_event_ids:
            raise ValueError("a memo needs at least one anchor event")
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError("confidence must be within [0, 1]")


@dataclass(frozen=True, slots=True)
class MemoOverlap:
    memo: Memo
    similarity: float
    is_more_recent: bool


@dataclass(frozen=True, slots=True)
class MemoDecision:
    action: EvolutionAction
    reason: str
    target: MemoOverlap | None = None


@dataclass(frozen=True, slots=True, kw_only=True)
class Reinforcement:
    memo_id: str
    event_id: str
    reinforcement_type: ReinforcementType
    similarity_score: float
    weight: float
    created_at: datetime


@dataclass(frozen=True, slots=True, kw_only=True)
class WorthinessScore:
    """Result of scoring one message for memo-worthiness."""

    score: int
    should_create_memo: bool
    confidence: float
    reasons: list[str] = field(default_factory=list)
