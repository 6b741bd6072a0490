"""Memo storage package."""

from memoria.memory.models import (
    MEMO_CATEGORIES,
    Memo,
    MemoCategory,
    MemoDecision,
    MemoOverlap,
    MemoSource,
    NewMemo,
    Reinforcement,
    WorthinessScore,
)
from memoria.memory.store import MemoStore

__all__ = [
    "MEMO_CATEGORIES",
    "Memo",
    "MemoCategory",
    "MemoDecision",
    "MemoOverlap",
    "MemoSource",
    "MemoStore",
    "NewMemo",
    "Reinforcement",
    "WorthinessScore",
]
