"""Memo-worthiness scoring of individual messages."""

from __future__ import annotations

from memoria.core.models import ChatMessage
from memoria.memory.models import WorthinessScore
from memoria.pipeline.signals import TRIVIAL_PATTERNS, extract_signals

__all__ = ["TRIVIAL_PATTERNS", "score_message"]


def score_message(message: ChatMessage) -> WorthinessScore:
    """Score a message 0..100 and decide whether it deserves a memo.

    AI-authored messages never qualify. The decision ladder favours high
    scores, then announcements and decisions at lower bars, then engaged
    borderline content.
    """
    if message.is_ai_generated:
        return WorthinessScore(score=0, should_create_memo=False, confidence=0.0, reasons=["ai_generated"])

    signals = extract_signals(message.content)
    if signals.is_trivial:
        return WorthinessScore(score=0, should_create_memo=False, confidence=0.0, reasons=["trivial"])

    score = 0
    reasons: list[str] = []

    def add(points: int, reason: str) -> None:
        nonlocal score
        score += points
        reasons.append(reason)

    if signals.is_announcement:
        add(25, "announcement")
    if signals.is_explanation:
        add(20, "explanation")
    if signals.is_decision:
        add(20, "decision")
    if signals.is_how_to:
        add(15, "how_to")

    if signals.has_code_block:
        add(10, "code_block")
    if signals.has_list_items:
        add(10, "list")
    if signals.has_inline_code:
        add(5, "inline_code")
    if signals.has_links:
        add(5, "links")
    if signals.length > 300:
        add(10, "substantial_length")
    elif signals.length > 150:
        add(5, "moderate_length")
    if signals.line_count > 5:
        add(5, "multi_line")

    if message.is_first_in_thread:
        add(5, "thread_starter")
    if signals.has_knowledge_emoji:
        add(3, "knowledge_emoji")

    if message.reaction_count > 0:
        add(min(message.reaction_count * 2, 10), f"reactions:{message.reaction_count}")
    if message.reply_count > 0:
        add(min(message.reply_count * 3, 15), f"replies:{message.reply_count}")

    if signals.is_question and not signals.is_explanation:
        add(-10, "question")
    if signals.length < 50:
        add(-10, "too_short")

    score = max(0, min(100, score))

    should_create = False
    confidence = 0.0
    if score >= 50:
        should_create = True
        confidence = min(0.9, 0.5 + (score - 50) / 100)
    elif signals.is_announcement and score >= 30:
        should_create, confidence = True, 0.7
        reasons.append("announcement_threshold")
    elif signals.is_decision and score >= 35:
        should_create, confidence = True, 0.6
        reasons.append("decision_threshold")
    elif score >= 40 and (message.reaction_count >= 3 or message.reply_count >= 2):
        should_create, confidence = True, 0.5
        reasons.append("engagement_threshold")

    return WorthinessScore(
        score=score,
        should_create_memo=should_create,
        confidence=round(confidence, 4),
        reasons=reasons,
    )
