from datetime import timedelta

import pytest
from conftest import minutes_ago

from memoria.agent.responder import BUDGET_EXCEEDED_MESSAGE, FALLBACK_MESSAGE, queue_response
from memoria.agent.runner import AgentAnswer, AgentRequest, StepRecorder
from memoria.app.bootstrap import PipelineRuntime, build_context
from memoria.pipeline.classification import maybe_queue_classification
from memoria.pipeline.embedding import queue_embedding
from memoria.queue.payloads import ClassifyJob, RespondJob
from memoria.utils.helpers import utc_now


class ScriptedRunner:
    """Agent runner that records one tool step and returns a canned answer."""

    def __init__(self) -> None:
        self.requests: list[AgentRequest] = []
        self.error: Exception | None = None
        self.cited: list[str] = []

    async def run(self, request: AgentRequest, recorder: StepRecorder) -> AgentAnswer:
        self.requests.append(request)
        step_id = recorder.begin("tool_call", "searching memos", tool_name="search_memos", tool_input={"query": "x"})
        if self.error is not None:
            raise self.error
        recorder.finish(step_id, result="1 memo")
        return AgentAnswer(content="Deploys go through staging.", cited_event_ids=list(self.cited))


@pytest.fixture
def runner() -> ScriptedRunner:
    return ScriptedRunner()


@pytest.fixture
def ctx(config, telemetry, gateway, runner):
    context = build_context(config, telemetry=telemetry, gateway=gateway, runner=runner)
    yield context
    context.close()


@pytest.fixture
def runtime(ctx) -> PipelineRuntime:
    runtime = PipelineRuntime(ctx)
    runtime.register_workers()
    return runtime


@pytest.fixture
def mention(ctx):
    ctx.chat.upsert_stream("c1", workspace_id="ws1", name="eng")
    ctx.chat.add_message(stream_id="c1", content="we moved CI last week", author_name="alice", created_at=minutes_ago(3))
    trigger = ctx.chat.add_message(
        stream_id="c1",
        content="@ariadne how do deploys work now?",
        author_name="bob",
        created_at=minutes_ago(1),
    )
    return RespondJob(
        workspace_id="ws1",
        stream_id="c1",
        event_id=trigger.event_id,
        mentioned_by="bob",
        question="how do deploys work now?",
    )


async def test_respond_job_runs_through_worker(ctx, runtime, runner, mention) -> None:
    source = ctx.chat.add_message(stream_id="c1", content="staging promotes builds", created_at=minutes_ago(30))
    runner.cited = [source.event_id]

    job_id = queue_response(ctx.queue, mention)
    assert await ctx.queue.run_once("respond") == 1
    assert ctx.queue.store.get(job_id).status == "completed"

    [request] = runner.requests
    assert "alice: we moved CI last week" in request.context_lines
    assert all("@ariadne" not in line for line in request.context_lines)

    session = ctx.sessions.get_session_by_triggering_event(mention.event_id)
    assert session.status == "completed"
    assert [s.step_type for s in session.steps] == ["gathering_context", "tool_call", "synthesizing"]
    assert all(s.status == "completed" for s in session.steps)

    response = ctx.chat.get_message(session.response_event_id)
    assert response.content == "Deploys go through staging."
    assert response.agent_id == "ariadne"

    [memo] = ctx.memos.list_active("ws1")
    assert memo.source == "ariadne"
    assert memo.anchor_event_ids == (source.event_id,)


async def test_completed_session_is_not_rerun(ctx, runner, mention) -> None:
    first = await ctx.responder.handle(mention)
    second = await ctx.responder.handle(mention)
    assert second == first
    assert len(runner.requests) == 1


async def test_respond_jobs_dedup_per_event(ctx, mention) -> None:
    assert queue_response(ctx.queue, mention) is not None
    assert queue_response(ctx.queue, mention) is None


async def test_over_budget_posts_notice_without_session(ctx, runner, mention) -> None:
    ctx.ledger.set_budget("ws1", 0)
    assert await ctx.responder.handle(mention) is None
    assert runner.requests == []
    assert ctx.sessions.get_session_by_triggering_event(mention.event_id) is None
    last = ctx.chat.get_recent_messages("c1", before=None, limit=1)[0]
    assert last.is_agent
    assert last.content == BUDGET_EXCEEDED_MESSAGE


async def test_failure_marks_session_failed_and_retry_resumes(ctx, runtime, runner, mention) -> None:
    runner.error = RuntimeError("model timeout")
    job_id = queue_response(ctx.queue, mention)
    assert await ctx.queue.run_once("respond") == 1

    job = ctx.queue.store.get(job_id)
    assert job.status == "queued"
    assert job.retry_count == 1

    failed = ctx.sessions.get_session_by_triggering_event(mention.event_id)
    assert failed.status == "failed"
    assert failed.error_message == "model timeout"
    assert all(s.status == "failed" for s in failed.steps if s.step_type == "tool_call")
    last = ctx.chat.get_recent_messages("c1", before=None, limit=1)[0]
    assert last.content == FALLBACK_MESSAGE

    runner.error = None
    response_event_id = await ctx.responder.handle(mention)
    resumed = ctx.sessions.get_session_by_triggering_event(mention.event_id)
    assert resumed.id == failed.id
    assert resumed.status == "completed"
    assert resumed.response_event_id == response_event_id
    assert resumed.error_message is None
    assert [s.step_type for s in resumed.steps] == ["gathering_context", "tool_call", "synthesizing"]


async def test_embed_jobs_are_batched(ctx, runtime, telemetry) -> None:
    ctx.chat.upsert_stream("c1", workspace_id="ws1")
    long_message = ctx.chat.add_message(stream_id="c1", content="the deploy checklist lives in the wiki now")
    short_message = ctx.chat.add_message(stream_id="c1", content="ok!")
    assert queue_embedding(
        ctx.queue,
        workspace_id="ws1",
        text_message_id=short_message.text_message_id,
        content=short_message.content,
    ) is None
    queue_embedding(
        ctx.queue,
        workspace_id="ws1",
        text_message_id=long_message.text_message_id,
        content=long_message.content,
        event_id=long_message.event_id,
    )

    assert await ctx.queue.run_once("embed") == 1
    assert ctx.chat.get_embedding(long_message.text_message_id) is not None
    assert telemetry.get_counter("embeddings_stored_total", labels=(("tier", "local"),)) == 1


async def test_classify_job_dispatch(ctx, runtime) -> None:
    job_id = maybe_queue_classification(ctx.queue, ClassifyJob(workspace_id="ws1", content="lol ok"), force=True)
    assert await ctx.queue.run_once("classify") == 1
    assert ctx.queue.store.get(job_id).status == "completed"


def test_recover_fails_interrupted_sessions(ctx, runtime, monkeypatch) -> None:
    session, _ = ctx.sessions.create_or_resume(workspace_id="ws1", stream_id="c1", triggering_event_id="evt_x")
    later = utc_now() + timedelta(minutes=10)
    monkeypatch.setattr("memoria.sessions.tracker.utc_now", lambda: later)
    assert runtime.recover() == 1
    assert ctx.sessions.get_session(session.id).status == "failed"
