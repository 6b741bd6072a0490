from datetime import timedelta

import pytest

from memoria.core.models import EnrichmentSignals, EnrichmentState
from memoria.errors import ProviderError
from memoria.pipeline.enrichment import (
    EnrichmentStage,
    EnrichmentTriggers,
    queue_enrichment,
    should_enrich,
)
from memoria.queue.payloads import EnrichJob, MemoEvaluateJob
from memoria.utils.helpers import utc_now


@pytest.fixture
def stage(queue, gateway, chat, ledger, telemetry) -> EnrichmentStage:
    return EnrichmentStage(queue=queue, gateway=gateway, messages=chat, ledger=ledger, telemetry=telemetry)


@pytest.fixture
def triggers(queue, chat) -> EnrichmentTriggers:
    return EnrichmentTriggers(queue=queue, messages=chat)


@pytest.fixture
def message(chat):
    chat.upsert_stream("c1", workspace_id="ws1", name="eng")
    now = utc_now()
    chat.add_message(stream_id="c1", content="what's the deploy story?", author_name="bob", created_at=now - timedelta(minutes=5))
    msg = chat.add_message(
        stream_id="c1",
        content="We deploy from main through staging, then promote with the release bot.",
        author_name="alice",
        created_at=now,
    )
    chat.add_message(stream_id="c1", content="way too old to matter", created_at=now - timedelta(hours=3))
    return msg


def _job(msg, **signals) -> EnrichJob:
    return EnrichJob(
        workspace_id="ws1",
        text_message_id=msg.text_message_id,
        event_id=msg.event_id,
        signals=EnrichmentSignals(**signals),
    )


@pytest.mark.parametrize(
    ("signals", "expected"),
    [
        (EnrichmentSignals(reactions=3, replies=0), True),
        (EnrichmentSignals(replies=2), True),
        (EnrichmentSignals(retrieved=True), True),
        (EnrichmentSignals(reactions=1, replies=1, retrieved=False), False),
        (EnrichmentSignals(helpful=True), False),
    ],
)
def test_should_enrich(signals: EnrichmentSignals, expected: bool) -> None:
    assert should_enrich(signals) is expected


async def test_enrichment_sets_header_and_reembeds(stage, chat, message, local, job_store, telemetry) -> None:
    tier = await stage.handle(_job(message, reactions=2))
    assert tier == 2

    state = chat.get_enrichment_state(message.text_message_id)
    assert state.tier == 2
    assert state.contextual_header == local.header
    assert state.signals.reactions == 2

    embedded = local.embedded[-1]
    assert embedded == f"{local.header}\n\n{message.content}"
    assert chat.get_embedding(message.text_message_id) is not None

    header_prompt = next(p for p in local.prompts if "situating the message" in p)
    assert "what's the deploy story?" in header_prompt
    assert "way too old" not in header_prompt

    claimed = job_store.claim("memo-evaluate", limit=5, worker_id="t")
    assert len(claimed) == 1
    assert isinstance(claimed[0].payload, MemoEvaluateJob)
    assert claimed[0].priority == 5
    assert telemetry.get_counter("enrichment_total", labels=(("tier", "2"),)) == 1


def test_context_window_keeps_nearest_neighbours(chat) -> None:
    chat.upsert_stream("c2", workspace_id="ws1")
    now = utc_now()
    for i in range(10):
        chat.add_message(stream_id="c2", content=f"early chatter {i}", created_at=now - timedelta(minutes=55 - i))
    chat.add_message(stream_id="c2", content="did anyone fix the canary?", created_at=now - timedelta(minutes=1))
    target = chat.add_message(stream_id="c2", content="yes, rolled back the flag", created_at=now)
    chat.add_message(stream_id="c2", content="thanks, confirmed green", created_at=now + timedelta(minutes=1))
    for i in range(3):
        chat.add_message(stream_id="c2", content=f"later chatter {i}", created_at=now + timedelta(minutes=3 + i))

    window = chat.get_context_window(
        "c2",
        around=now,
        start=now - timedelta(hours=1),
        end=now + timedelta(minutes=10),
        exclude_event_id=target.event_id,
        before_limit=5,
        after_limit=2,
    )

    assert [m.content for m in window] == [
        "early chatter 6",
        "early chatter 7",
        "early chatter 8",
        "early chatter 9",
        "did anyone fix the canary?",
        "thanks, confirmed green",
        "later chatter 0",
    ]


async def test_header_failure_marks_tier_one(stage, chat, message, local, remote, job_store) -> None:
    local.available = False
    remote.completions.append(ProviderError("remote down"))
    tier = await stage.handle(_job(message, retrieved=True))
    assert tier == 1
    state = chat.get_enrichment_state(message.text_message_id)
    assert state.tier == 1
    assert state.contextual_header is None
    assert chat.get_embedding(message.text_message_id) is None
    assert job_store.counts() == {}


async def test_enriched_message_short_circuits(stage, chat, message, local) -> None:
    chat.update_enrichment_state(
        message.text_message_id,
        EnrichmentState(tier=2, contextual_header="already done"),
    )
    assert await stage.handle(_job(message, reactions=5)) == 2
    assert local.prompts == []


async def test_signals_accumulate_until_trigger(stage, chat, message, local) -> None:
    assert await stage.handle(_job(message, reactions=1)) == 0
    assert local.prompts == []
    assert chat.get_enrichment_state(message.text_message_id).signals.reactions == 1

    assert await stage.handle(_job(message, replies=2)) == 2
    signals = chat.get_enrichment_state(message.text_message_id).signals
    assert signals.reactions == 1
    assert signals.replies == 2


async def test_tier_never_decreases(stage, chat, message) -> None:
    assert await stage.handle(_job(message, reactions=2)) == 2
    chat.update_enrichment_state(message.text_message_id, EnrichmentState(tier=1))
    assert chat.get_enrichment_state(message.text_message_id).tier == 2


def test_enrichment_jobs_dedup_per_message(queue, message) -> None:
    first = queue_enrichment(
        queue,
        workspace_id="ws1",
        text_message_id=message.text_message_id,
        event_id=message.event_id,
        signals=EnrichmentSignals(reactions=1),
    )
    second = queue_enrichment(
        queue,
        workspace_id="ws1",
        text_message_id=message.text_message_id,
        event_id=message.event_id,
        signals=EnrichmentSignals(reactions=2),
    )
    assert first is not None
    assert second is None


def test_backfill_queues_engaged_messages(triggers, chat, message, job_store) -> None:
    chat.set_engagement(message.event_id, reactions=4)
    assert triggers.backfill("ws1") == 1
    claimed = job_store.claim("enrich", limit=5, worker_id="t")
    assert claimed[0].payload.signals.reactions == 4


def test_mark_as_retrieved_feeds_backfill(triggers, chat, message) -> None:
    assert triggers.mark_as_retrieved([message.text_message_id]) == 1
    assert triggers.mark_as_retrieved([message.text_message_id]) == 0
    assert triggers.backfill("ws1") == 1


def test_trigger_producers_enqueue(triggers, message, job_store) -> None:
    assert triggers.on_reaction(message, 3) is not None
    assert job_store.counts() == {("enrich", "queued"): 1}


async def test_producer_signals_accumulate_across_submissions(triggers, stage, chat, message, job_store) -> None:
    assert triggers.on_reaction(message, 1) is None
    assert job_store.counts() == {}
    assert chat.get_enrichment_state(message.text_message_id).signals.reactions == 1

    assert triggers.on_thread_parent(message) is None
    assert triggers.on_reaction(message, 2) is not None
    [job] = job_store.claim("enrich", limit=5, worker_id="t")
    assert job.payload.signals.reactions == 2
    assert job.payload.signals.replies == 1

    assert await stage.handle(job.payload, job_id=job.id) == 2
    assert triggers.on_reaction(message, 3) is None
