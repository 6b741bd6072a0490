"""Typed domain models and collaborator ports."""

from memoria.core.models import (
    ChatMessage,
    ContextMessage,
    EnrichmentSignals,
    EnrichmentState,
    StoredEmbedding,
    StreamInfo,
)
from memoria.core.ports import MessageStorePort, ResponsePosterPort, StreamStorePort

__all__ = [
    "ChatMessage",
    "ContextMessage",
    "EnrichmentSignals",
    "EnrichmentState",
    "MessageStorePort",
    "ResponsePosterPort",
    "StoredEmbedding",
    "StreamInfo",
    "StreamStorePort",
]
