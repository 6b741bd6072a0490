"""Respond worker: runs the agent for a mention inside a tracked session."""

from __future__ import annotations

from loguru import logger

from memoria.agent.runner import AgentAnswer, AgentRequest, AgentRunnerPort, StepRecorder
from memoria.core.ports import MessageStorePort, ResponsePosterPort, StreamStorePort
from memoria.pipeline.memos import MemoStage
from memoria.providers.usage import UsageLedger
from memoria.queue.manager import JobQueue
from memoria.queue.models import JobOptions, Priority
from memoria.queue.payloads import RespondJob
from memoria.sessions.tracker import AgentSessionTracker

AGENT_ID = "ariadne"
RESPOND_EXPIRE_SECONDS = 300
RESPOND_DEDUP_WINDOW_SECONDS = 300
THREAD_HISTORY_LIMIT = 20
CHANNEL_BACKGROUND_LIMIT = 5

BUDGET_EXCEEDED_MESSAGE = (
    "This workspace has used its AI budget for the month, so I can't answer right now. "
    "An admin can raise the budget to turn me back on."
)
FALLBACK_MESSAGE = "Sorry, something went wrong while I was working on that. I'll try again shortly."


def queue_response(queue: JobQueue, job: RespondJob) -> str | None:
    """Enqueue an agent response; one job per triggering event inside the dedup window."""
    return queue.enqueue(
        job,
        JobOptions(
            priority=Priority.URGENT,
            retry_limit=2,
            retry_delay=10,
            expires_in_seconds=RESPOND_EXPIRE_SECONDS,
            dedup_key=job.event_id,
            dedup_window_seconds=RESPOND_DEDUP_WINDOW_SECONDS,
        ),
    )


class Responder:
    """Worker side of ``respond`` jobs.

    A job retried after a crash resumes the session created for its
    triggering event; a session that already completed is never re-run.
    """

    def __init__(
        self,
        *,
        runner: AgentRunnerPort,
        sessions: AgentSessionTracker,
        messages: MessageStorePort,
        streams: StreamStorePort,
        poster: ResponsePosterPort,
        ledger: UsageLedger,
        memo_stage: MemoStage | None = None,
    ) -> None:
        self._runner = runner
        self._sessions = sessions
        self._messages = messages
        self._streams = streams
        self._poster = poster
        self._ledger = ledger
        self._memo_stage = memo_stage

    async def handle(self, job: RespondJob, *, job_id: str | None = None) -> str | None:
        """Answer one mention; returns the posted response event id."""
        if not self._ledger.is_ai_enabled(job.workspace_id):
            logger.info("AI disabled for workspace={}, not responding to event={}", job.workspace_id, job.event_id)
            return None

        budget = self._ledger.check_budget(job.workspace_id)
        if not budget.within_budget:
            logger.warning(
                "workspace={} over budget ({:.2f}/{} cents), not responding",
                job.workspace_id,
                budget.used_cents,
                budget.budget_cents,
            )
            self._poster.post_response(job.stream_id, BUDGET_EXCEEDED_MESSAGE, agent_id=AGENT_ID)
            return None

        session, is_new = self._sessions.create_or_resume(
            workspace_id=job.workspace_id,
            stream_id=job.stream_id,
            triggering_event_id=job.event_id,
        )
        if not is_new:
            if session.status == "completed":
                logger.info("session {} already completed, skipping job {}", session.id, job_id)
                return session.response_event_id
            session = self._sessions.reset_for_recovery(session.id)

        recorder = StepRecorder(self._sessions, session.id)
        try:
            context_lines = self._gather_context(job, recorder)
            answer = await self._runner.run(
                AgentRequest(
                    workspace_id=job.workspace_id,
                    stream_id=job.stream_id,
                    event_id=job.event_id,
                    question=job.question,
                    mode=job.mode,
                    context_lines=context_lines,
                ),
                recorder,
            )

            synth_id = recorder.begin("synthesizing", "posting response")
            self._sessions.update_status(session.id, "summarizing")
            response_event_id = self._poster.post_response(job.stream_id, answer.content, agent_id=AGENT_ID)
            recorder.finish(synth_id, result=f"posted {response_event_id}")
            self._sessions.link_response_event(session.id, response_event_id)
            self._sessions.update_status(session.id, "completed")
        except Exception as e:
            self._sessions.update_status(session.id, "failed", error_message=str(e))
            self._poster.post_response(job.stream_id, FALLBACK_MESSAGE, agent_id=AGENT_ID)
            raise

        logger.info(
            "responded to event={} in stream={} ({} in / {} out tokens, {:.4f} cents)",
            job.event_id,
            job.stream_id,
            answer.input_tokens,
            answer.output_tokens,
            answer.cost_cents,
        )
        await self._remember(job, answer, response_event_id)
        return response_event_id

    def _gather_context(self, job: RespondJob, recorder: StepRecorder) -> tuple[str, ...]:
        stream = self._streams.get_stream(job.stream_id)
        is_thread = stream is not None and stream.stream_type == "thread"
        step_id = recorder.begin(
            "gathering_context",
            "reading conversation history" if is_thread else "reading recent channel messages",
        )
        limit = THREAD_HISTORY_LIMIT if is_thread else CHANNEL_BACKGROUND_LIMIT
        history = self._messages.get_recent_messages(job.stream_id, before=None, limit=limit)
        lines = tuple(
            f"{'assistant' if m.is_agent else m.author_name}: {m.content}"
            for m in history
            if m.event_id != job.event_id
        )
        recorder.finish(step_id, result=f"{len(lines)} message(s)")
        return lines

    async def _remember(self, job: RespondJob, answer: AgentAnswer, response_event_id: str) -> None:
        if self._memo_stage is None or not answer.cited_event_ids:
            return
        try:
            await self._memo_stage.create_from_agent_success(
                workspace_id=job.workspace_id,
                query=job.question,
                response_event_id=response_event_id,
                stream_id=job.stream_id,
                cited_event_ids=answer.cited_event_ids,
            )
        except Exception as e:
            logger.warning("failed to record agent outcome for event={}: {}", job.event_id, e)
