"""Exception hierarchy shared by queue, providers and pipeline stages."""

from __future__ import annotations


class MemoriaError(Exception):
    """Base error for the knowledge pipeline."""


class ProviderError(MemoriaError):
    """A model backend returned an error response."""


class ProviderUnavailableError(ProviderError):
    """Neither the local nor the remote backend could serve a request."""

    def __init__(self, capability: str, detail: str = "") -> None:
        self.capability = capability
        message = f"no backend available for {capability}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class BudgetExceededError(MemoriaError):
    """Workspace spent its monthly AI budget."""

    def __init__(self, workspace_id: str, used_cents: float, budget_cents: float) -> None:
        self.workspace_id = workspace_id
        self.used_cents = used_cents
        self.budget_cents = budget_cents
        super().__init__(
            f"workspace {workspace_id} over AI budget ({used_cents:.2f}/{budget_cents:.2f} cents)"
        )


class JobPayloadError(MemoriaError):
    """Stored job payload does not match any known job type."""


class SessionNotFoundError(MemoriaError):
    """Agent session id is unknown."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"agent session not found: {session_id}")


class InvalidSessionTransitionError(MemoriaError):
    """Requested status change is not allowed from the session's current status."""

    def __init__(self, session_id: str, current: str, requested: str) -> None:
        self.session_id = session_id
        self.current = current
        self.requested = requested
        super().__init__(f"agent session {session_id} cannot move from {current} to {requested}")

