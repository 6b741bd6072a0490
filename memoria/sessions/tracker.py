"""Agent session lifecycle: creation, step log, terminal states and crash recovery."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from loguru import logger

from memoria.config.schema import SessionsConfig
from memoria.errors import InvalidSessionTransitionError, SessionNotFoundError
from memoria.sessions.models import (
    INTERRUPTED_MESSAGE,
    OPEN_SESSION_STATUSES,
    SESSION_TRANSITIONS,
    AgentSession,
    SessionStatus,
    StepType,
)
from memoria.sessions.store import SessionStore, new_step_id
from memoria.telemetry.base import TelemetryPort
from memoria.utils.helpers import truncate_string, utc_now


class AgentSessionTracker:
    """Tracks one agent run per triggering event.

    Status moves ``active -> summarizing -> completed`` or to ``failed`` from
    either open state. Terminal sessions only leave their status through
    ``reset_for_recovery``. Steps still open when a session reaches a terminal
    state are closed with a matching status.
    """

    def __init__(
        self,
        store: SessionStore,
        *,
        telemetry: TelemetryPort,
        config: SessionsConfig | None = None,
    ) -> None:
        self._store = store
        self._telemetry = telemetry
        self._config = config or SessionsConfig()

    @property
    def store(self) -> SessionStore:
        return self._store

    def create_or_resume(
        self,
        *,
        workspace_id: str,
        stream_id: str,
        triggering_event_id: str,
        persona_id: str | None = None,
    ) -> tuple[AgentSession, bool]:
        """Return the session for ``triggering_event_id``, creating it if needed."""
        created = self._store.insert_session(
            workspace_id=workspace_id,
            stream_id=stream_id,
            triggering_event_id=triggering_event_id,
            persona_id=persona_id,
        )
        session = self._store.get_by_triggering_event(triggering_event_id)
        assert session is not None
        if created:
            logger.info("agent session {} started for event={}", session.id, triggering_event_id)
        else:
            logger.info(
                "resuming agent session {} for event={} (status {}, {} steps)",
                session.id,
                triggering_event_id,
                session.status,
                len(session.steps),
            )
        return session, created

    def add_step(
        self,
        session_id: str,
        *,
        step_type: StepType,
        content: str,
        tool_name: str | None = None,
        tool_input: dict[str, Any] | None = None,
    ) -> str:
        step_id = new_step_id()
        if self._store.get(session_id) is None:
            logger.warning("add_step on unknown agent session {}", session_id)
            return step_id
        self._store.insert_step(
            step_id,
            session_id,
            step_type=step_type,
            content=content,
            tool_name=tool_name,
            tool_input=tool_input,
        )
        logger.debug("session {} step {} ({})", session_id, step_id, step_type)
        return step_id

    def complete_step(self, step_id: str, *, result: str | None = None, failed: bool = False) -> None:
        tool_result = None
        if result is not None:
            tool_result = truncate_string(result, self._config.tool_result_max_length)
        session_id = self._store.close_step(
            step_id,
            status="failed" if failed else "completed",
            tool_result=tool_result,
        )
        if session_id is None:
            logger.debug("step {} already closed or unknown", step_id)

    def update_status(
        self,
        session_id: str,
        status: SessionStatus,
        *,
        error_message: str | None = None,
    ) -> None:
        current = self._store.get_status(session_id)
        if current is None:
            raise SessionNotFoundError(session_id)
        if status not in SESSION_TRANSITIONS[current]:
            raise InvalidSessionTransitionError(session_id, current, status)
        close_as = None
        if status == "completed":
            close_as = "completed"
        elif status == "failed":
            close_as = "failed"
        if not self._store.set_status(
            session_id,
            status,
            expected=current,
            error_message=error_message,
            close_steps_as=close_as,
        ):
            raise InvalidSessionTransitionError(session_id, current, status)
        if status == "failed":
            logger.warning("agent session {} failed: {}", session_id, error_message or "unknown error")
        else:
            logger.info("agent session {} -> {}", session_id, status)

    def sweep_stale(self, *, minutes: int | None = None, now: datetime | None = None) -> int:
        """Fail open sessions not touched for ``minutes``; run once at startup."""
        minutes = minutes if minutes is not None else self._config.stale_after_minutes
        cutoff = (now or utc_now()) - timedelta(minutes=minutes)
        stale = self._store.list_stale(OPEN_SESSION_STATUSES, updated_before=cutoff)
        swept = 0
        for session_id in stale:
            try:
                self.update_status(session_id, "failed", error_message=INTERRUPTED_MESSAGE)
            except InvalidSessionTransitionError:
                logger.debug("session {} finished during the sweep", session_id)
                continue
            swept += 1
        if swept:
            self._telemetry.incr("sessions_recovered_total", swept)
            logger.warning("marked {} stale agent session(s) as failed", swept)
        return swept

    def reset_for_recovery(self, session_id: str) -> AgentSession:
        if not self._store.reset(session_id):
            raise SessionNotFoundError(session_id)
        session = self._store.get(session_id)
        assert session is not None
        logger.info("agent session {} reset for recovery", session_id)
        return session

    # ── Lookups and bookkeeping ──────────────────────────────────────

    def get_session(self, session_id: str) -> AgentSession | None:
        return self._store.get(session_id)

    def get_session_by_triggering_event(self, event_id: str) -> AgentSession | None:
        return self._store.get_by_triggering_event(event_id)

    def get_sessions_for_stream(self, stream_id: str, *, limit: int = 20) -> list[AgentSession]:
        return self._store.list_for_stream(stream_id, limit=limit)

    def get_active_sessions(self, workspace_id: str | None = None) -> list[AgentSession]:
        return self._store.list_with_status(OPEN_SESSION_STATUSES, workspace_id=workspace_id)

    def set_summary(self, session_id: str, summary: str) -> None:
        self._require(self._store.update_session(session_id, summary=summary), session_id)

    def link_response_event(self, session_id: str, response_event_id: str) -> None:
        self._require(
            self._store.update_session(session_id, response_event_id=response_event_id),
            session_id,
        )

    def move_to_stream(self, session_id: str, stream_id: str) -> None:
        self._require(self._store.update_session(session_id, stream_id=stream_id), session_id)

    def set_helpfulness_score(self, session_id: str, score: float) -> None:
        clamped = max(0.0, min(1.0, float(score)))
        self._require(self._store.update_session(session_id, helpfulness_score=clamped), session_id)

    @staticmethod
    def _require(updated: bool, session_id: str) -> None:
        if not updated:
            raise SessionNotFoundError(session_id)
