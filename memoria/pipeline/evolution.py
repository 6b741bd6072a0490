"""Memo evolution: overlap search against existing memos and the action policy."""

from __future__ import annotations

from datetime import datetime

from loguru import logger

from memoria.config.schema import MemoConfig
from memoria.memory.models import MemoDecision, MemoOverlap
from memoria.memory.store import MemoStore
from memoria.providers.gateway import ProviderGateway, UsageContext


def decide_action(overlaps: list[MemoOverlap], config: MemoConfig | None = None) -> MemoDecision:
    """Pick create_new / merge / supersede / skip from the best overlap.

    * near-duplicate of a low-confidence system memo, and newer: supersede
    * near-duplicate otherwise: skip
    * strong overlap with a user memo: create_new (user memos are never merged into)
    * strong overlap otherwise: merge
    * weak or no overlap: create_new
    """
    config = config or MemoConfig()
    if not overlaps:
        return MemoDecision("create_new", "no overlapping memo")

    best = max(overlaps, key=lambda o: o.similarity)
    memo = best.memo
    pct = f"{best.similarity * 100:.1f}%"
    if best.similarity > config.duplicate_threshold:
        if (
            best.is_more_recent
            and memo.source == "system"
            and memo.confidence < config.supersede_max_confidence
        ):
            return MemoDecision("supersede", f"near-duplicate ({pct}) of low-confidence memo", best)
        return MemoDecision("skip", f"near-duplicate ({pct}) of existing memo", best)
    if best.similarity > config.merge_threshold:
        if memo.source == "user":
            return MemoDecision("create_new", f"overlap ({pct}) with user-authored memo", best)
        return MemoDecision("merge", f"overlap ({pct}) with {memo.source} memo", best)
    return MemoDecision("create_new", f"weak overlap ({pct})", best)


class OverlapFinder:
    """Embeds candidate content and searches active memos in the workspace."""

    def __init__(
        self,
        *,
        gateway: ProviderGateway,
        memos: MemoStore,
        config: MemoConfig | None = None,
    ) -> None:
        self._gateway = gateway
        self._memos = memos
        self._config = config or MemoConfig()

    async def find_overlaps(
        self,
        workspace_id: str,
        content: str,
        *,
        created_at: datetime,
        usage: UsageContext,
    ) -> list[MemoOverlap]:
        embedding = await self._gateway.embed(content[: self._config.max_embed_chars], usage=usage)
        hits = self._memos.search_similar(
            workspace_id,
            embedding.vector,
            threshold=self._config.overlap_threshold,
            limit=self._config.overlap_limit,
        )
        overlaps = [
            MemoOverlap(memo=memo, similarity=similarity, is_more_recent=created_at > memo.created_at)
            for memo, similarity in hits
        ]
        if overlaps:
            logger.debug(
                "{} overlapping memo(s) in workspace={}, best {:.3f}",
                len(overlaps),
                workspace_id,
                overlaps[0].similarity,
            )
        return overlaps
