from datetime import timedelta

import pytest

from memoria.config.schema import ClassificationConfig
from memoria.core.models import StreamInfo
from memoria.pipeline.classification import (
    KNOWLEDGE_SUGGESTION,
    ClassificationStage,
    maybe_queue_classification,
    queue_thread_classification,
    should_classify_stream,
)
from memoria.queue.payloads import ClassifyJob, EnrichJob
from memoria.utils.helpers import utc_now

KNOWLEDGE = (
    "Here's how the cache invalidation works: every write publishes an event and the "
    "edge nodes drop their copy.\n- writes go through `CacheBus`\n- reads fall back to origin"
)


@pytest.fixture
def stage(queue, gateway, chat, ledger, telemetry) -> ClassificationStage:
    return ClassificationStage(queue=queue, gateway=gateway, streams=chat, ledger=ledger, telemetry=telemetry)


@pytest.fixture
def thread(chat) -> str:
    chat.upsert_stream("t1", workspace_id="ws1", stream_type="thread", name="cache")
    return "t1"


def _thread_info(**overrides) -> StreamInfo:
    now = utc_now()
    values = dict(
        id="t1",
        workspace_id="ws1",
        stream_type="thread",
        event_count=8,
        last_activity_at=now - timedelta(hours=2),
        last_classified_at=None,
        knowledge_extracted_at=None,
    )
    values.update(overrides)
    return StreamInfo(**values)


@pytest.mark.parametrize(
    ("overrides", "reason"),
    [
        ({"stream_type": "channel"}, "not a thread"),
        ({"knowledge_extracted_at": utc_now()}, "knowledge already extracted"),
        ({"event_count": 2}, "fewer than 5 events"),
        ({"last_classified_at": utc_now() - timedelta(hours=1)}, "classified recently"),
        ({"last_activity_at": utc_now() - timedelta(minutes=5)}, "thread still active"),
    ],
)
def test_thread_debounce_rejections(overrides: dict, reason: str) -> None:
    allowed, why = should_classify_stream(_thread_info(**overrides))
    assert allowed is False
    assert why == reason


def test_settled_thread_is_classified() -> None:
    stream = _thread_info(last_classified_at=utc_now() - timedelta(hours=30))
    assert should_classify_stream(stream) == (True, "ok")


def test_low_structural_score_is_not_queued(queue, job_store) -> None:
    job = ClassifyJob(workspace_id="ws1", content="sounds good")
    assert maybe_queue_classification(queue, job) is None
    assert job_store.counts() == {}


def test_force_bypasses_structural_threshold(queue, job_store) -> None:
    job_id = maybe_queue_classification(queue, ClassifyJob(workspace_id="ws1", content="sounds good"), force=True)
    stored = job_store.get(job_id)
    assert stored is not None
    assert stored.priority == 4
    assert stored.retry_limit == 2
    assert stored.backoff is True


def test_thread_classification_uses_transcript(queue, job_store, chat, thread) -> None:
    start = utc_now() - timedelta(hours=3)
    for i in range(6):
        chat.add_message(
            stream_id=thread,
            content=KNOWLEDGE if i == 0 else f"reply number {i}",
            author_name="alice" if i % 2 == 0 else "bob",
            created_at=start + timedelta(minutes=i),
        )
    stream = chat.get_stream(thread)
    job_id = queue_thread_classification(queue, stream, chat, config=ClassificationConfig())
    assert job_id is not None
    payload = job_store.get(job_id).payload
    assert payload.content_type == "thread"
    assert payload.content.startswith("alice: Here's how")


async def test_prefilter_rejects_without_provider_calls(stage, local, remote, telemetry) -> None:
    result = await stage.handle(ClassifyJob(workspace_id="ws1", content="lol ok"))
    assert result == "not_applicable"
    assert local.prompts == []
    assert remote.calls == []
    assert telemetry.get_counter("classification_total", labels=(("result", "not_applicable"),)) == 1


async def test_confident_local_yes_annotates_and_enriches(stage, chat, thread, job_store) -> None:
    job = ClassifyJob(
        workspace_id="ws1",
        stream_id=thread,
        event_id="e1",
        text_message_id="m1",
        content=KNOWLEDGE,
    )
    assert await stage.handle(job) == "knowledge_candidate"

    stream = chat.get_stream(thread)
    assert stream.classification_result == "knowledge_candidate"
    annotations = chat.list_annotations(thread)
    assert [a["kind"] for a in annotations] == [KNOWLEDGE_SUGGESTION]

    claimed = job_store.claim("enrich", limit=5, worker_id="t")
    assert len(claimed) == 1
    payload = claimed[0].payload
    assert isinstance(payload, EnrichJob)
    assert payload.signals.retrieved and payload.signals.helpful


async def test_confident_local_no(stage, local, remote, job_store) -> None:
    local.verdict = "NO"
    result = await stage.handle(ClassifyJob(workspace_id="ws1", content=KNOWLEDGE))
    assert result == "not_applicable"
    assert remote.calls == []
    assert job_store.counts() == {}


async def test_unsure_local_escalates_and_enriches_high_confidence(stage, local, remote, job_store) -> None:
    local.verdict = "maybe"
    remote.reply('{"isKnowledge": true, "confidence": 0.9, "suggestedTitle": "Cache invalidation"}')
    job = ClassifyJob(workspace_id="ws1", event_id="e1", text_message_id="m1", content=KNOWLEDGE)
    assert await stage.handle(job) == "knowledge_candidate"
    assert len(remote.calls) == 1
    assert job_store.counts() == {("enrich", "queued"): 1}


async def test_low_confidence_escalation_does_not_enrich(stage, local, remote, job_store) -> None:
    local.available = False
    remote.reply('{"isKnowledge": true, "confidence": 0.6}')
    job = ClassifyJob(workspace_id="ws1", event_id="e1", text_message_id="m1", content=KNOWLEDGE)
    assert await stage.handle(job) == "knowledge_candidate"
    assert job_store.counts() == {}


async def test_malformed_escalation_reply_is_negative(stage, local, remote) -> None:
    local.verdict = "hmm"
    remote.reply("I think this might be knowledge")
    assert await stage.handle(ClassifyJob(workspace_id="ws1", content=KNOWLEDGE)) == "not_applicable"


async def test_ai_disabled_workspace_is_skipped(stage, ledger, local) -> None:
    ledger.set_ai_enabled("ws1", False)
    assert await stage.handle(ClassifyJob(workspace_id="ws1", content=KNOWLEDGE)) is None
    assert local.prompts == []
