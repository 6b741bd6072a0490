from datetime import timedelta

import pytest
from conftest import at_similarity

from memoria.errors import ProviderUnavailableError
from memoria.memory.models import NewMemo
from memoria.pipeline.memos import MemoStage, fallback_summary
from memoria.queue.payloads import CreateMemoJob, MemoEvaluateJob
from memoria.utils.helpers import utc_now

EXPLANATION = (
    "Here's how the deploy pipeline works now. Basically every merge to main builds an image, "
    "then staging picks it up automatically.\n"
    "- run `make release` to tag\n"
    "- watch https://ci.example.com for the promotion\n"
    "- ping #ops if the canary fails\n"
    "This means nobody needs to ssh into the boxes anymore, which was the main pain point "
    "we kept hitting during the last few incidents."
)
CONTENT_KEY = "Here's how the deploy pipeline works"


@pytest.fixture
def stage(gateway, memos, chat, ledger, telemetry) -> MemoStage:
    return MemoStage(gateway=gateway, memos=memos, messages=chat, streams=chat, ledger=ledger, telemetry=telemetry)


@pytest.fixture
def message(chat):
    chat.upsert_stream("c1", workspace_id="ws1", name="eng")
    msg = chat.add_message(stream_id="c1", content=EXPLANATION, author_name="alice")
    chat.set_engagement(msg.event_id, reactions=2)
    return chat.get_message(msg.event_id)


def _evaluate(msg) -> MemoEvaluateJob:
    return MemoEvaluateJob(workspace_id="ws1", event_id=msg.event_id, text_message_id=msg.text_message_id)


def _existing(memos, *, source="system", confidence=0.5, topics=(), category=None, days_old=1, **kwargs):
    return memos.create(
        NewMemo(
            workspace_id="ws1",
            summary="Old deploy notes",
            anchor_event_ids=("evt_old",),
            confidence=confidence,
            source=source,
            topics=topics,
            category=category,
            **kwargs,
        ),
        embedding=[1.0, 0.0, 0.0, 0.0],
        embedding_model="test",
        created_at=utc_now() - timedelta(days=days_old),
    )


async def test_create_new_memo(stage, memos, chat, message, local, telemetry) -> None:
    assert await stage.evaluate(_evaluate(message)) == "create_new"

    [memo] = memos.list_active("ws1")
    assert memo.summary == local.summary
    assert memo.topics == ("deploy", "ci")
    assert memo.category == "procedure"
    assert memo.source == "system"
    assert memo.anchor_event_ids == (message.event_id,)
    assert memo.anchor_message_ids == (message.text_message_id,)
    assert 0.5 <= memo.confidence <= 0.9
    assert memos.tag_usage("ws1", "deploy") == 1
    assert chat.get_stream("c1").knowledge_extracted_at is not None
    assert [r.reinforcement_type for r in memos.list_reinforcements(memo.id)] == ["original"]
    assert telemetry.get_counter("memo_decisions_total", labels=(("action", "create_new"),)) == 1


async def test_message_already_anchoring_a_memo_is_skipped(stage, memos, message) -> None:
    old = _existing(memos)
    memos.add_anchor(old.id, message.event_id)
    assert await stage.evaluate(_evaluate(message)) == "skip"
    assert len(memos.list_active("ws1")) == 1


async def test_unworthy_and_agent_messages_are_ignored(stage, chat, memos, local) -> None:
    chat.upsert_stream("c1", workspace_id="ws1")
    trivial = chat.add_message(stream_id="c1", content="thanks!")
    agent = chat.add_message(stream_id="c1", content=EXPLANATION, agent_id="ariadne")
    assert await stage.evaluate(_evaluate(trivial)) is None
    assert await stage.evaluate(_evaluate(agent)) is None
    assert memos.list_active("ws1") == []
    assert local.prompts == []


async def test_supersede_archives_old_and_carries_metadata(stage, memos, message, local) -> None:
    old = _existing(memos, confidence=0.5, topics=("release",), category="decision")
    local.vectors[CONTENT_KEY] = at_similarity(0.95)
    local.tags = "[]"
    local.category = "none of those"

    assert await stage.evaluate(_evaluate(message)) == "supersede"

    archived = memos.get(old.id)
    assert archived.is_archived
    assert archived.summary == old.summary
    assert archived.confidence == old.confidence
    assert archived.anchor_event_ids == old.anchor_event_ids

    [new] = memos.list_active("ws1")
    assert new.id != old.id
    assert new.topics == ("release",)
    assert new.category == "decision"
    assert new.anchor_event_ids == (message.event_id,)


async def test_failed_supersede_keeps_old_memo_active(stage, memos, message, local, remote, monkeypatch) -> None:
    old = _existing(memos, confidence=0.5, topics=("release",), category="decision")
    local.vectors[CONTENT_KEY] = at_similarity(0.95)
    local.tags = "[]"
    embed = local.embed
    embedded: list[str] = []

    async def embed_once(text: str, *, model: str) -> list[float]:
        embedded.append(text)
        if len(embedded) > 1:
            raise ProviderUnavailableError("embed", "down")
        return await embed(text, model=model)

    monkeypatch.setattr(local, "embed", embed_once)
    remote.fail_embeddings = True

    with pytest.raises(ProviderUnavailableError):
        await stage.evaluate(_evaluate(message))
    assert memos.list_active("ws1") == [old]

    monkeypatch.setattr(local, "embed", embed)
    remote.fail_embeddings = False
    assert await stage.evaluate(_evaluate(message)) == "supersede"
    [new] = memos.list_active("ws1")
    assert new.topics == ("release",)
    assert memos.get(old.id).is_archived


def test_supersede_of_archived_memo_writes_nothing(memos) -> None:
    old = _existing(memos)
    replacement = NewMemo(
        workspace_id="ws1",
        summary="New deploy notes",
        anchor_event_ids=("evt_new",),
        confidence=0.6,
        source="system",
    )
    first = memos.supersede(old.id, replacement, embedding=[1.0, 0.0, 0.0, 0.0], embedding_model="test")
    assert first is not None
    assert memos.supersede(old.id, replacement) is None
    assert [m.id for m in memos.list_active("ws1")] == [first.id]


async def test_near_duplicate_of_user_memo_is_skipped(stage, memos, message, local) -> None:
    old = _existing(memos, source="user", confidence=1.0)
    local.vectors[CONTENT_KEY] = at_similarity(0.95)
    assert await stage.evaluate(_evaluate(message)) == "skip"
    assert memos.get(old.id) == old


async def test_merge_adds_anchor_and_boosts(stage, memos, message, local) -> None:
    old = _existing(memos, confidence=0.6)
    local.vectors[CONTENT_KEY] = at_similarity(0.85)

    assert await stage.evaluate(_evaluate(message)) == "merge"

    merged = memos.get(old.id)
    assert merged.anchor_event_ids == ("evt_old", message.event_id)
    assert message.text_message_id in merged.anchor_message_ids
    assert merged.confidence == pytest.approx(0.65)
    assert len(memos.list_active("ws1")) == 1


async def test_weak_overlap_creates_new(stage, memos, message, local) -> None:
    _existing(memos)
    local.vectors[CONTENT_KEY] = at_similarity(0.78)
    assert await stage.evaluate(_evaluate(message)) == "create_new"
    assert len(memos.list_active("ws1")) == 2


async def test_similar_anchor_message_reinforces(stage, memos, chat, message, local) -> None:
    earlier = chat.add_message(stream_id="c1", content="deploys go via staging", event_id="evt_old")
    chat.upsert_embedding(earlier.text_message_id, [1.0, 0.0, 0.0, 0.0], "test")
    chat.upsert_embedding(message.text_message_id, at_similarity(0.9), "test")
    old = _existing(memos, confidence=0.6, anchor_message_ids=(earlier.text_message_id,))

    assert await stage.evaluate(_evaluate(message)) == "reinforce"

    updated = memos.get(old.id)
    assert message.event_id in updated.anchor_event_ids
    assert updated.confidence == pytest.approx(0.65)
    assert local.embedded == []

    assert await stage.evaluate(_evaluate(message)) == "skip"
    assert memos.get(old.id).confidence == pytest.approx(0.65)


async def test_create_from_job_uses_user_confidence(stage, memos, message) -> None:
    job = CreateMemoJob(workspace_id="ws1", anchor_event_ids=(message.event_id,), stream_id="c1")
    memo = await stage.create_from_job(job)
    assert memo is not None
    assert memo.source == "user"
    assert memo.confidence == 1.0

    again = await stage.create_from_job(job)
    assert again.id == memo.id


async def test_create_from_job_without_anchors(stage, chat) -> None:
    job = CreateMemoJob(workspace_id="ws1", anchor_event_ids=("missing",), stream_id="c1")
    assert await stage.create_from_job(job) is None


async def test_agent_success_creates_memo(stage, memos, message) -> None:
    memo = await stage.create_from_agent_success(
        workspace_id="ws1",
        query="  How do deploys reach production?  ",
        response_event_id="evt_answer",
        stream_id="c1",
        cited_event_ids=[message.event_id],
    )
    assert memo.source == "ariadne"
    assert memo.summary == "How do deploys reach production?"
    assert memo.confidence == 0.6
    assert memo.anchor_message_ids == (message.text_message_id,)


async def test_agent_success_boosts_existing_memo(stage, memos, message) -> None:
    old = _existing(memos, confidence=0.6)
    boosted = await stage.create_from_agent_success(
        workspace_id="ws1",
        query="How do deploys reach production?",
        response_event_id="evt_answer",
        stream_id="c1",
        cited_event_ids=[message.event_id],
    )
    assert boosted.id == old.id
    assert boosted.confidence == pytest.approx(0.65)
    assert len(memos.list_active("ws1")) == 1


async def test_agent_success_without_citations_is_ignored(stage, memos) -> None:
    result = await stage.create_from_agent_success(
        workspace_id="ws1", query="hi", response_event_id="e", stream_id="c1", cited_event_ids=[]
    )
    assert result is None


async def test_ai_disabled_skips_evaluation(stage, ledger, memos, message) -> None:
    ledger.set_ai_enabled("ws1", False)
    assert await stage.evaluate(_evaluate(message)) is None
    assert memos.list_active("ws1") == []


def test_fallback_summary() -> None:
    assert fallback_summary("Deploy checklist\nstep one, step two") == "Deploy checklist"
    long_text = "x" * 120
    assert fallback_summary(long_text) == "x" * 80 + "..."
    assert fallback_summary("short") == "short"


def test_effective_strength_decays(stage, memos) -> None:
    memo = _existing(memos, confidence=0.6, days_old=0)
    stage.reinforcement.record_original_anchor(memo)

    fresh = stage.reinforcement.calculate_effective_strength(memo.id)
    assert fresh.recency_bonus == 0.1
    assert fresh.total == pytest.approx(0.75, abs=1e-3)

    later = stage.reinforcement.calculate_effective_strength(memo.id, now=utc_now() + timedelta(days=60))
    assert later.recency_bonus == 0.0
    assert later.reinforcement_boost == pytest.approx(0.05 * 0.8187, abs=1e-3)
