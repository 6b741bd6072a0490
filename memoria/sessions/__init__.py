"""Agent session tracking."""

from memoria.sessions.models import AgentSession, AgentStep, SessionStatus, StepType
from memoria.sessions.store import SessionStore
from memoria.sessions.tracker import AgentSessionTracker

__all__ = [
    "AgentSession",
    "AgentSessionTracker",
    "AgentStep",
    "SessionStatus",
    "SessionStore",
    "StepType",
]
