"""Domain models shared by the pipeline stages and collaborator ports."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Literal

StreamType = Literal["channel", "thread", "thinking_space"]
ClassificationResult = Literal["knowledge_candidate", "not_applicable"]
EnrichmentTier = Literal[0, 1, 2]
MessageId = str
EventId = str
WorkspaceId = str


@dataclass(frozen=True, slots=True, kw_only=True)
class ChatMessage:
    """One chat message as the pipeline sees it, with engagement counters."""

    event_id: EventId
    text_message_id: MessageId
    workspace_id: WorkspaceId
    stream_id: str
    content: str
    created_at: datetime
    author_id: str | None = None
    author_name: str = "Unknown"
    agent_id: str | None = None
    stream_type: StreamType = "channel"
    stream_name: str = ""
    reaction_count: int = 0
    reply_count: int = 0
    is_first_in_thread: bool = False

    @property
    def is_ai_generated(self) -> bool:
        return self.agent_id is not None


@dataclass(frozen=True, slots=True, kw_only=True)
class ContextMessage:
    """Neighbouring message used as surrounding context."""

    event_id: EventId
    author_name: str
    content: str
    created_at: datetime
    is_agent: bool = False


@dataclass(frozen=True, slots=True, kw_only=True)
class StreamInfo:
    """Classification bookkeeping for one stream."""

    id: str
    workspace_id: WorkspaceId
    stream_type: StreamType
    name: str = ""
    event_count: int = 0
    last_activity_at: datetime | None = None
    last_classified_at: datetime | None = None
    classification_result: ClassificationResult | None = None
    knowledge_extracted_at: datetime | None = None


@dataclass(frozen=True, slots=True, kw_only=True)
class EnrichmentSignals:
    """Engagement signals that make a message worth enriching."""

    reactions: int = 0
    replies: int = 0
    retrieved: bool = False
    helpful: bool = False

    def merge(self, other: "EnrichmentSignals") -> "EnrichmentSignals":
        """Combine two signal sets; counts keep the maximum, flags are OR-ed."""
        return replace(
            self,
            reactions=max(self.reactions, other.reactions),
            replies=max(self.replies, other.replies),
            retrieved=self.retrieved or other.retrieved,
            helpful=self.helpful or other.helpful,
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "reactions": self.reactions,
            "replies": self.replies,
            "retrieved": self.retrieved,
            "helpful": self.helpful,
        }

    @classmethod
    def from_dict(cls, data: dict[str, object] | None) -> "EnrichmentSignals":
        data = data or {}
        return cls(
            reactions=int(data.get("reactions") or 0),
            replies=int(data.get("replies") or 0),
            retrieved=bool(data.get("retrieved", False)),
            helpful=bool(data.get("helpful", False)),
        )


@dataclass(frozen=True, slots=True, kw_only=True)
class EnrichmentState:
    """Enrichment progress attached to a text message."""

    tier: EnrichmentTier = 0
    signals: EnrichmentSignals = field(default_factory=EnrichmentSignals)
    contextual_header: str | None = None


@dataclass(frozen=True, slots=True, kw_only=True)
class StoredEmbedding:
    """Embedding vector persisted for a text message."""

    text_message_id: MessageId
    vector: list[float]
    model: str
