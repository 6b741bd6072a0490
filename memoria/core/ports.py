"""Port interfaces for the chat layer the pipeline reads from and writes to."""

from __future__ import annotations

from datetime import datetime
from typing import Protocol

from memoria.core.models import (
    ChatMessage,
    ClassificationResult,
    ContextMessage,
    EnrichmentState,
    StoredEmbedding,
    StreamInfo,
)


class MessageStorePort(Protocol):
    """Message content, neighbours, embeddings and enrichment state."""

    def get_message(self, event_id: str) -> ChatMessage | None:
        """Look up one message by its stream event id."""

    def get_message_by_text_id(self, text_message_id: str) -> ChatMessage | None:
        """Look up one message by its text message id."""

    def get_context_window(
        self,
        stream_id: str,
        *,
        around: datetime,
        start: datetime,
        end: datetime,
        exclude_event_id: str | None,
        before_limit: int,
        after_limit: int,
    ) -> list[ContextMessage]:
        """Neighbours of ``around`` within ``[start, end]``, oldest first.

        At most ``before_limit`` messages at or before ``around`` and
        ``after_limit`` after it, always the ones closest to it.
        """

    def get_recent_messages(
        self,
        stream_id: str,
        *,
        before: datetime | None,
        limit: int,
    ) -> list[ContextMessage]:
        """Most recent messages of a stream (optionally before a timestamp), oldest first."""

    def get_enrichment_state(self, text_message_id: str) -> EnrichmentState:
        """Current enrichment state; tier 0 with empty signals when never touched."""

    def update_enrichment_state(self, text_message_id: str, state: EnrichmentState) -> None:
        """Persist enrichment state. Implementations never lower the stored tier."""

    def upsert_embedding(self, text_message_id: str, vector: list[float], model: str) -> None:
        """Insert or replace the searchable vector of a message."""

    def get_embedding(self, text_message_id: str) -> StoredEmbedding | None:
        """Stored vector of a message, if any."""

    def find_messages_needing_enrichment(
        self,
        workspace_id: str,
        *,
        limit: int,
    ) -> list[tuple[ChatMessage, EnrichmentState]]:
        """Messages below tier 2 that carry at least one engagement signal."""

    def mark_retrieved(self, text_message_ids: list[str]) -> int:
        """Flag messages as retrieved by the agent; returns rows touched."""


class StreamStorePort(Protocol):
    """Stream lookups and classification bookkeeping."""

    def get_stream(self, stream_id: str) -> StreamInfo | None:
        """Look up one stream."""

    def record_classification(
        self,
        stream_id: str,
        result: ClassificationResult,
        classified_at: datetime,
    ) -> None:
        """Store the latest classification verdict for a stream."""

    def mark_knowledge_extracted(self, stream_id: str, extracted_at: datetime) -> None:
        """Record that knowledge was extracted from a stream."""

    def add_annotation(self, stream_id: str, kind: str, payload: dict[str, object]) -> str:
        """Append a system annotation to a stream; returns its id."""


class ResponsePosterPort(Protocol):
    """Delivery of agent output back into a stream."""

    def post_response(self, stream_id: str, content: str, *, agent_id: str) -> str:
        """Post one agent message; returns the new event id."""
