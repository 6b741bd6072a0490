"""Language-agnostic structural signals extracted from message text."""

from __future__ import annotations

import re
from dataclasses import dataclass

ANNOUNCEMENT_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(
        r"\b(we('ve|'re| have| are| just)|i('ve| have| just))\s+"
        r"(implemented|launched|shipped|released|deployed|built|created|added|introduced|finished|completed)",
        re.IGNORECASE,
    ),
    re.compile(r"\b(introducing|announcing|new feature|just (launched|shipped|released|deployed))", re.IGNORECASE),
    re.compile(r"\bhey (all|everyone|team|folks),?\s+we", re.IGNORECASE),
    re.compile(r"\b(fyi|heads up|psa|update):?\s", re.IGNORECASE),
    re.compile(r"\b(rolling out|going live|now available)", re.IGNORECASE),
)

EXPLANATION_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(
        r"\b(for those (curious|wondering|interested)|here'?s (how|why|what)|let me explain"
        r"|the (way|reason) (it|this|we))",
        re.IGNORECASE,
    ),
    re.compile(
        r"\b(basically|essentially|in (short|summary|essence)|to (summarize|explain)|this (means|is because))",
        re.IGNORECASE,
    ),
    re.compile(r"\binspired by\b", re.IGNORECASE),
    re.compile(r"\bworks by\b", re.IGNORECASE),
    re.compile(r"\bthe (trick|key|secret) is\b", re.IGNORECASE),
    re.compile(r"\bhere'?s what (you need|to do|happens)\b", re.IGNORECASE),
)

DECISION_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(
        r"\b(we('ve)? decided|the decision (is|was)|going (with|forward with)|the plan is|we('re| are) going to)",
        re.IGNORECASE,
    ),
    re.compile(r"\b(after (discussing|consideration|review)|based on (feedback|discussion))", re.IGNORECASE),
    re.compile(r"\bwe'?ll (use|go with|adopt|implement)\b", re.IGNORECASE),
)

HOWTO_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\bhow to\b", re.IGNORECASE),
    re.compile(r"\bsteps? to\b", re.IGNORECASE),
    re.compile(r"\bto (do this|get started|set up)\b", re.IGNORECASE),
    re.compile(r"\bhere'?s the (process|steps|way)\b", re.IGNORECASE),
)

TRIVIAL_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(
        r"^(thanks|thank you|thx|ty|ok|okay|k|lol|haha|nice|cool|great|awesome|perfect|got it"
        r"|makes sense|understood|sure|yep|yes|no|nope|agreed|exactly|right|true|same|this|100%"
        r"|lgtm|\+1|done|fixed|merged|noted|ack)[\s!.]*$",
        re.IGNORECASE,
    ),
    re.compile(r"^[\W_]{1,8}$"),
)

KNOWLEDGE_EMOJIS = re.compile("[\U0001F4E2\U0001F4E3\U0001F389\U0001F680\U0001F4A1\U0001F4DD\U0001F4D6\U0001F4DA✨\U0001F514⚡\U0001F195\U0001F914ℹ\U0001F4AD\U0001F50D]")

_CODE_BLOCK = re.compile(r"```[\s\S]*?```")
_INLINE_CODE = re.compile(r"`[^`]+`")
_LIST_ITEM = re.compile(r"^\s*[-*•]\s|^\s*\d+[.)]\s", re.MULTILINE)
_LINK = re.compile(r"https?://\S+")
_TRAILING_QUESTION = re.compile(r"\?\s*$")


@dataclass(frozen=True, slots=True)
class ContentSignals:
    length: int
    has_code_block: bool
    has_inline_code: bool
    has_list_items: bool
    has_links: bool
    line_count: int
    is_announcement: bool
    is_explanation: bool
    is_decision: bool
    is_how_to: bool
    has_knowledge_emoji: bool
    is_trivial: bool
    is_question: bool


def _any(patterns: tuple[re.Pattern[str], ...], text: str) -> bool:
    return any(p.search(text) for p in patterns)


def extract_signals(content: str) -> ContentSignals:
    stripped = content.strip()
    return ContentSignals(
        length=len(content),
        has_code_block=bool(_CODE_BLOCK.search(content)),
        has_inline_code=bool(_INLINE_CODE.search(content)),
        has_list_items=bool(_LIST_ITEM.search(content)),
        has_links=bool(_LINK.search(content)),
        line_count=sum(1 for line in content.split("\n") if line.strip()),
        is_announcement=_any(ANNOUNCEMENT_PATTERNS, content),
        is_explanation=_any(EXPLANATION_PATTERNS, content),
        is_decision=_any(DECISION_PATTERNS, content),
        is_how_to=_any(HOWTO_PATTERNS, content),
        has_knowledge_emoji=bool(KNOWLEDGE_EMOJIS.search(content)),
        is_trivial=not stripped or _any(TRIVIAL_PATTERNS, stripped),
        is_question=bool(_TRAILING_QUESTION.search(stripped)) and len(content) < 200,
    )


def structural_score(signals: ContentSignals, reaction_count: int = 0) -> int:
    """Integer pre-filter score; each signal only ever adds weight."""
    score = 0
    score += 1 if signals.length > 200 else 0
    score += 1 if signals.length > 500 else 0
    score += 2 if signals.has_code_block else 0
    score += 1 if signals.has_inline_code else 0
    score += 2 if signals.has_list_items else 0
    score += 1 if signals.has_links else 0
    score += 1 if signals.line_count > 3 else 0
    score += 3 if signals.is_announcement else 0
    score += 3 if signals.is_explanation else 0
    score += 2 if signals.is_decision else 0
    score += 1 if signals.has_knowledge_emoji else 0
    score += 1 if reaction_count >= 3 else 0
    score += 1 if reaction_count >= 5 else 0
    return score


def score_content(content: str, reaction_count: int = 0) -> int:
    return structural_score(extract_signals(content), reaction_count)
