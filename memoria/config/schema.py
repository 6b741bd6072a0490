"""Configuration schema using Pydantic."""

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from memoria.config.defaults import (
    DEFAULT_CLASSIFICATION,
    DEFAULT_ENRICHMENT,
    DEFAULT_MEMO,
    DEFAULT_QUEUE,
    DEFAULT_SESSIONS,
    DEFAULT_USAGE,
    default_model_profiles,
    default_model_routes,
)


def _default_model_profiles() -> dict[str, "ModelProfile"]:
    return {
        name: ModelProfile.model_validate(payload)
        for name, payload in default_model_profiles().items()
    }


class ModelProfile(BaseModel):
    """One model profile used for a specific capability route."""

    model_config = ConfigDict(extra="ignore")

    kind: Literal["chat", "embedding"]
    provider: Literal["ollama", "litellm"] = "litellm"
    model: str | None = None
    max_tokens: int | None = None
    temperature: float | None = None
    timeout_ms: int | None = None

    @property
    def timeout_seconds(self) -> float:
        return (self.timeout_ms or 30000) / 1000.0


class ModelRoutingConfig(BaseModel):
    """Capability-oriented model routing configuration."""

    model_config = ConfigDict(extra="ignore")

    profiles: dict[str, ModelProfile] = Field(default_factory=_default_model_profiles)
    routes: dict[str, str] = Field(default_factory=default_model_routes)

    @model_validator(mode="after")
    def _validate_routes(self) -> "ModelRoutingConfig":
        missing = sorted({name for name in self.routes.values() if name not in self.profiles})
        if missing:
            raise ValueError("models.routes references unknown profiles: " + ", ".join(missing))
        return self

    def resolve(self, route_key: str) -> ModelProfile:
        route_name = self.routes.get(route_key)
        if not route_name:
            raise KeyError(f"models.routes missing '{route_key}'")
        return self.profiles[route_name]


class ProviderConfig(BaseModel):
    """Provider credential configuration."""

    model_config = ConfigDict(extra="ignore")

    api_key: str = ""
    api_base: str | None = None
    extra_headers: dict[str, str] | None = None


class OllamaConfig(BaseModel):
    """Local model server settings."""

    model_config = ConfigDict(extra="ignore")

    enabled: bool = True
    base_url: str = "http://localhost:11434"
    health_ttl_seconds: int = 60


class ProvidersConfig(BaseModel):
    """Configuration for model providers."""

    ollama: OllamaConfig = Field(default_factory=OllamaConfig)
    anthropic: ProviderConfig = Field(default_factory=ProviderConfig)
    openai: ProviderConfig = Field(default_factory=ProviderConfig)
    openrouter: ProviderConfig = Field(default_factory=ProviderConfig)


class QueueConfig(BaseModel):
    """Job queue storage and polling settings."""

    model_config = ConfigDict(extra="ignore")

    db_path: str = str(DEFAULT_QUEUE["db_path"])
    poll_interval_seconds: float = float(DEFAULT_QUEUE["poll_interval_seconds"])
    lease_seconds: int = Field(default=int(DEFAULT_QUEUE["lease_seconds"]), ge=1)
    default_expire_seconds: int = Field(default=int(DEFAULT_QUEUE["default_expire_seconds"]), ge=1)
    max_backoff_seconds: int = int(DEFAULT_QUEUE["max_backoff_seconds"])
    completed_retention_days: int = int(DEFAULT_QUEUE["completed_retention_days"])


class ClassificationConfig(BaseModel):
    """Structural pre-filter and thread debounce thresholds."""

    model_config = ConfigDict(extra="ignore")

    enqueue_threshold: int = int(DEFAULT_CLASSIFICATION["enqueue_threshold"])
    prefilter_threshold: int = int(DEFAULT_CLASSIFICATION["prefilter_threshold"])
    escalation_min_confidence: float = float(DEFAULT_CLASSIFICATION["escalation_min_confidence"])
    thread_min_events: int = int(DEFAULT_CLASSIFICATION["thread_min_events"])
    reclassify_after_hours: int = int(DEFAULT_CLASSIFICATION["reclassify_after_hours"])
    quiet_period_minutes: int = int(DEFAULT_CLASSIFICATION["quiet_period_minutes"])


class EnrichmentConfig(BaseModel):
    """Enrichment trigger and context window settings."""

    model_config = ConfigDict(extra="ignore")

    reaction_threshold: int = int(DEFAULT_ENRICHMENT["reaction_threshold"])
    reply_threshold: int = int(DEFAULT_ENRICHMENT["reply_threshold"])
    context_before_minutes: int = int(DEFAULT_ENRICHMENT["context_before_minutes"])
    context_after_minutes: int = int(DEFAULT_ENRICHMENT["context_after_minutes"])
    context_before_limit: int = Field(default=int(DEFAULT_ENRICHMENT["context_before_limit"]), ge=0)
    context_after_limit: int = Field(default=int(DEFAULT_ENRICHMENT["context_after_limit"]), ge=0)
    backfill_batch_size: int = Field(default=int(DEFAULT_ENRICHMENT["backfill_batch_size"]), ge=1)


class MemoConfig(BaseModel):
    """Memo overlap search and evolution thresholds."""

    model_config = ConfigDict(extra="ignore")

    overlap_threshold: float = float(DEFAULT_MEMO["overlap_threshold"])
    merge_threshold: float = float(DEFAULT_MEMO["merge_threshold"])
    duplicate_threshold: float = float(DEFAULT_MEMO["duplicate_threshold"])
    overlap_limit: int = Field(default=int(DEFAULT_MEMO["overlap_limit"]), ge=1)
    max_embed_chars: int = int(DEFAULT_MEMO["max_embed_chars"])
    merge_confidence_boost: float = float(DEFAULT_MEMO["merge_confidence_boost"])
    supersede_max_confidence: float = float(DEFAULT_MEMO["supersede_max_confidence"])
    reinforcement_similarity: float = float(DEFAULT_MEMO["reinforcement_similarity"])
    tag_vocabulary_size: int = int(DEFAULT_MEMO["tag_vocabulary_size"])

    @model_validator(mode="after")
    def _validate_thresholds(self) -> "MemoConfig":
        if not (self.overlap_threshold <= self.merge_threshold <= self.duplicate_threshold):
            raise ValueError(
                "memo thresholds must satisfy overlap_threshold <= merge_threshold <= duplicate_threshold"
            )
        return self


class SessionsConfig(BaseModel):
    """Agent session tracker settings."""

    model_config = ConfigDict(extra="ignore")

    db_path: str = str(DEFAULT_SESSIONS["db_path"])
    stale_after_minutes: int = Field(default=int(DEFAULT_SESSIONS["stale_after_minutes"]), ge=1)
    tool_result_max_length: int = Field(default=int(DEFAULT_SESSIONS["tool_result_max_length"]), ge=1)


class UsageConfig(BaseModel):
    """AI usage ledger and budget settings."""

    model_config = ConfigDict(extra="ignore")

    default_budget_cents: int = int(DEFAULT_USAGE["default_budget_cents"])
    ai_enabled_default: bool = bool(DEFAULT_USAGE["ai_enabled_default"])


class TelemetryConfig(BaseModel):
    """Metrics backend selection."""

    model_config = ConfigDict(extra="ignore")

    backend: Literal["memory", "prometheus"] = "memory"
    host: str = "127.0.0.1"  # localhost only by default
    port: int = 9464


class StorageConfig(BaseModel):
    """Locations of the memo store, usage ledger and bundled chat store."""

    model_config = ConfigDict(extra="ignore")

    memo_db_path: str = "data/memos.db"
    usage_db_path: str = "data/usage.db"
    chat_db_path: str = "data/chat.db"


class Config(BaseSettings):
    """Root configuration for memoria."""

    model_config = SettingsConfigDict(
        extra="ignore",
        populate_by_name=True,
        env_prefix="MEMORIA_",
        env_nested_delimiter="__",
    )

    config_version: int = 1
    models: ModelRoutingConfig = Field(default_factory=ModelRoutingConfig)
    providers: ProvidersConfig = Field(default_factory=ProvidersConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    classification: ClassificationConfig = Field(default_factory=ClassificationConfig)
    enrichment: EnrichmentConfig = Field(default_factory=EnrichmentConfig)
    memo: MemoConfig = Field(default_factory=MemoConfig)
    sessions: SessionsConfig = Field(default_factory=SessionsConfig)
    usage: UsageConfig = Field(default_factory=UsageConfig)
    telemetry: TelemetryConfig = Field(default_factory=TelemetryConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)

    def get_provider(self, model: str | None = None) -> ProviderConfig | None:
        """Get matched remote provider config for a model id. Falls back to first keyed provider."""
        model_lower = (model or "").lower()
        by_keyword = (
            ("anthropic", ("anthropic", "claude")),
            ("openai", ("openai", "gpt", "text-embedding")),
            ("openrouter", ("openrouter",)),
        )
        for name, keywords in by_keyword:
            p: ProviderConfig = getattr(self.providers, name)
            if p.api_key and any(kw in model_lower for kw in keywords):
                return p
        for name, _ in by_keyword:
            p = getattr(self.providers, name)
            if p.api_key:
                return p
        return None

    def resolve_path(self, raw: str) -> Path:
        from memoria.utils.helpers import resolve_data_file

        return resolve_data_file(raw)
