"""Persistent storage helpers."""

from memoria.storage.chat_store import SqliteChatStore

__all__ = ["SqliteChatStore"]
