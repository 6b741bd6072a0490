"""Centralized opinionated defaults for generated/migrated config files."""

from __future__ import annotations

from copy import deepcopy
from typing import Any

DEFAULT_LOCAL_CHAT_MODEL = "granite4:350m"
DEFAULT_LOCAL_EMBEDDING_MODEL = "nomic-embed-text"
DEFAULT_REMOTE_EMBEDDING_MODEL = "text-embedding-3-small"
DEFAULT_ESCALATION_MODEL = "anthropic/claude-3-5-haiku-latest"
DEFAULT_AGENT_MODEL = "anthropic/claude-sonnet-4-5"

DEFAULT_MODEL_PROFILES: dict[str, dict[str, Any]] = {
    "local_chat": {
        "kind": "chat",
        "provider": "ollama",
        "model": DEFAULT_LOCAL_CHAT_MODEL,
        "max_tokens": 120,
        "temperature": 0.1,
        "timeout_ms": 30000,
    },
    "local_embedding": {
        "kind": "embedding",
        "provider": "ollama",
        "model": DEFAULT_LOCAL_EMBEDDING_MODEL,
        "timeout_ms": 30000,
    },
    "remote_embedding": {
        "kind": "embedding",
        "provider": "litellm",
        "model": DEFAULT_REMOTE_EMBEDDING_MODEL,
        "timeout_ms": 30000,
    },
    "escalation": {
        "kind": "chat",
        "provider": "litellm",
        "model": DEFAULT_ESCALATION_MODEL,
        "max_tokens": 300,
        "temperature": 0.0,
        "timeout_ms": 30000,
    },
    "agent": {
        "kind": "chat",
        "provider": "litellm",
        "model": DEFAULT_AGENT_MODEL,
        "max_tokens": 4096,
        "temperature": 0.7,
        "timeout_ms": 120000,
    },
}

DEFAULT_MODEL_ROUTES: dict[str, str] = {
    "classify.local": "local_chat",
    "classify.escalate": "escalation",
    "embed.local": "local_embedding",
    "embed.remote": "remote_embedding",
    "text.local": "local_chat",
    "text.remote": "escalation",
    "agent.chat": "agent",
}

DEFAULT_QUEUE: dict[str, Any] = {
    "db_path": "data/queue.db",
    "poll_interval_seconds": 2.0,
    "lease_seconds": 300,
    "default_expire_seconds": 900,
    "max_backoff_seconds": 3600,
    "completed_retention_days": 7,
}

DEFAULT_CLASSIFICATION: dict[str, Any] = {
    "enqueue_threshold": 3,
    "prefilter_threshold": 2,
    "escalation_min_confidence": 0.8,
    "thread_min_events": 5,
    "reclassify_after_hours": 24,
    "quiet_period_minutes": 60,
}

DEFAULT_ENRICHMENT: dict[str, Any] = {
    "reaction_threshold": 2,
    "reply_threshold": 2,
    "context_before_minutes": 60,
    "context_after_minutes": 10,
    "context_before_limit": 5,
    "context_after_limit": 2,
    "backfill_batch_size": 100,
}

DEFAULT_MEMO: dict[str, Any] = {
    "overlap_threshold": 0.75,
    "merge_threshold": 0.82,
    "duplicate_threshold": 0.92,
    "overlap_limit": 5,
    "max_embed_chars": 2000,
    "merge_confidence_boost": 0.05,
    "supersede_max_confidence": 0.7,
    "reinforcement_similarity": 0.85,
    "tag_vocabulary_size": 50,
}

DEFAULT_SESSIONS: dict[str, Any] = {
    "db_path": "data/sessions.db",
    "stale_after_minutes": 5,
    "tool_result_max_length": 500,
}

DEFAULT_USAGE: dict[str, Any] = {
    "default_budget_cents": 10000,
    "ai_enabled_default": True,
}


def default_model_profiles() -> dict[str, dict[str, Any]]:
    """Return a deep-copied models.profiles payload."""
    return deepcopy(DEFAULT_MODEL_PROFILES)


def default_model_routes() -> dict[str, str]:
    """Return a copied models.routes payload."""
    return dict(DEFAULT_MODEL_ROUTES)


_SECTION_DEFAULTS: dict[str, dict[str, Any]] = {
    "queue": DEFAULT_QUEUE,
    "classification": DEFAULT_CLASSIFICATION,
    "enrichment": DEFAULT_ENRICHMENT,
    "memo": DEFAULT_MEMO,
    "sessions": DEFAULT_SESSIONS,
    "usage": DEFAULT_USAGE,
}


def apply_missing_defaults(snake_config: dict[str, Any]) -> None:
    """Inject missing config defaults without overriding existing user values."""
    if not isinstance(snake_config, dict):
        return

    models = snake_config.setdefault("models", {})
    if isinstance(models, dict):
        profiles = models.setdefault("profiles", {})
        if isinstance(profiles, dict):
            for name, payload in default_model_profiles().items():
                current = profiles.get(name)
                if not isinstance(current, dict):
                    profiles[name] = payload
                else:
                    for k, v in payload.items():
                        current.setdefault(k, v)

        routes = models.setdefault("routes", {})
        if isinstance(routes, dict):
            for route, profile_name in default_model_routes().items():
                routes.setdefault(route, profile_name)

    for section, seeded in _SECTION_DEFAULTS.items():
        current = snake_config.get(section)
        if not isinstance(current, dict):
            snake_config[section] = deepcopy(seeded)
            continue
        for k, v in seeded.items():
            current.setdefault(k, deepcopy(v))
