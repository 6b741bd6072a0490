"""Agent session and step models."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Literal

SessionStatus = Literal["active", "summarizing", "completed", "failed"]
StepType = Literal["gathering_context", "reasoning", "tool_call", "synthesizing"]
StepStatus = Literal["active", "completed", "failed"]

OPEN_SESSION_STATUSES: tuple[str, ...] = ("active", "summarizing")
TERMINAL_SESSION_STATUSES: tuple[str, ...] = ("completed", "failed")
INTERRUPTED_MESSAGE = "Session interrupted by server restart"

SESSION_TRANSITIONS: dict[str, tuple[str, ...]] = {
    "active": ("summarizing", "completed", "failed"),
    "summarizing": ("completed", "failed"),
    "completed": (),
    "failed": (),
}


@dataclass(frozen=True, slots=True, kw_only=True)
class AgentStep:
    id: str
    session_id: str
    step_type: StepType
    content: str
    status: StepStatus
    started_at: datetime
    completed_at: datetime | None = None
    tool_name: str | None = None
    tool_input: dict[str, Any] | None = None
    tool_result: str | None = None


@dataclass(frozen=True, slots=True, kw_only=True)
class AgentSession:
    """One agent run, keyed by the event that triggered it."""

    id: str
    workspace_id: str
    stream_id: str
    triggering_event_id: str
    status: SessionStatus
    started_at: datetime
    updated_at: datetime
    persona_id: str | None = None
    response_event_id: str | None = None
    summary: str | None = None
    error_message: str | None = None
    completed_at: datetime | None = None
    helpfulness_score: float | None = None
    steps: tuple[AgentStep, ...] = ()

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_SESSION_STATUSES
