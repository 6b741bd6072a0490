"""Provider gateway: local-first model access with remote fallback and usage tracking."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Literal

from loguru import logger

from memoria.config.schema import ModelProfile
from memoria.errors import ProviderError, ProviderUnavailableError
from memoria.memory.models import MEMO_CATEGORIES, MemoCategory
from memoria.providers.costs import calculate_cost
from memoria.providers.local import OllamaClient
from memoria.providers.parsing import clamp_float, clean_single_line, extract_json_payload, parse_tag_list
from memoria.providers.remote import LiteLLMClient, ToolCallRequest
from memoria.providers.usage import UsageLedger, UsageRecord
from memoria.telemetry.base import TelemetryPort
from memoria.utils.helpers import estimate_tokens

if TYPE_CHECKING:
    from memoria.config.schema import Config
    from memoria.core.models import ChatMessage, ContextMessage

Tier = Literal["local", "remote"]

EMBED_BATCH_LIMIT = 100

# Titles a model falls back to when it has nothing to say.
REJECTED_NAMES: frozenset[str] = frozenset(
    {
        "new conversation",
        "untitled",
        "general discussion",
        "discussion",
        "conversation",
        "chat",
        "general",
        "message",
        "summary",
    }
)

_CLASSIFY_PROMPT = (
    "Does the following message contain durable, reusable knowledge "
    "(a decision, explanation, procedure or reference)? Answer YES or NO.\n\n{text}"
)
_ESCALATE_SYSTEM = (
    "You classify chat content as reusable knowledge. Reply with JSON only: "
    '{"isKnowledge": bool, "confidence": 0..1, "suggestedTitle": string|null}'
)
_HEADER_PROMPT = (
    "Write one short sentence situating the message below within its conversation "
    "(who, what topic, which channel). Reply with the sentence only.\n\n"
    "Channel: {stream}\nContext:\n{context}\n\nMessage from {author}:\n{content}"
)
_SUMMARY_PROMPT = "Give a concise title (max 12 words) for this knowledge:\n\n{text}"
_TAGS_PROMPT = (
    "Suggest up to 5 lowercase topic tags for the text below as a JSON array. "
    "Prefer these existing tags when they fit: {existing}\n\n{text}"
)
_CATEGORY_PROMPT = (
    "Classify the text below as exactly one of: decision, learning, procedure, "
    "context, reference. Reply with the single word.\n\n{text}"
)


@dataclass(frozen=True, slots=True, kw_only=True)
class UsageContext:
    """Attribution of model calls to a workspace and job."""

    workspace_id: str
    job_type: str
    user_id: str | None = None
    stream_id: str | None = None
    event_id: str | None = None
    job_id: str | None = None


@dataclass(frozen=True, slots=True)
class EmbeddingResult:
    vector: list[float]
    model: str
    token_count: int
    tier: Tier = "local"


@dataclass(frozen=True, slots=True)
class LocalClassification:
    is_knowledge: bool
    confident: bool
    confidence: float | None = None


@dataclass(frozen=True, slots=True)
class EscalatedClassification:
    is_knowledge: bool
    confidence: float
    suggested_title: str | None = None


@dataclass(frozen=True, slots=True)
class ChatResult:
    content: str
    model: str
    input_tokens: int
    output_tokens: int
    cost_cents: float
    tool_calls: list[ToolCallRequest] = field(default_factory=list)


class ProviderGateway:
    """Single entry point for embeddings, classification and text generation.

    Embedding, classification and the small text helpers try the local model
    server first and only fall back to the remote provider when the local one
    is unavailable. Every call is recorded in the usage ledger.
    """

    def __init__(
        self,
        config: "Config",
        *,
        local: OllamaClient,
        remote: LiteLLMClient,
        ledger: UsageLedger,
        telemetry: TelemetryPort,
    ) -> None:
        self._config = config
        self._local = local
        self._remote = remote
        self._ledger = ledger
        self._telemetry = telemetry

    @classmethod
    def from_config(
        cls,
        config: "Config",
        *,
        ledger: UsageLedger,
        telemetry: TelemetryPort,
    ) -> "ProviderGateway":
        ollama = config.providers.ollama
        local = OllamaClient(
            ollama.base_url,
            enabled=ollama.enabled,
            health_ttl_seconds=ollama.health_ttl_seconds,
            timeout_seconds=config.models.resolve("embed.local").timeout_seconds,
        )
        return cls(config, local=local, remote=LiteLLMClient(config), ledger=ledger, telemetry=telemetry)

    @property
    def ledger(self) -> UsageLedger:
        return self._ledger

    def _profile(self, route_key: str) -> ModelProfile:
        return self._config.models.resolve(route_key)

    @staticmethod
    def _model_name(profile: ModelProfile, route_key: str) -> str:
        if not profile.model:
            raise ProviderError(f"models.routes['{route_key}'] has no model configured")
        return profile.model

    def _track(
        self,
        usage: UsageContext,
        *,
        model: str,
        tier: Tier,
        capability: str,
        input_tokens: int,
        output_tokens: int = 0,
    ) -> float:
        cost = 0.0 if tier == "local" else calculate_cost(
            model, input_tokens=input_tokens, output_tokens=output_tokens
        )
        self._telemetry.incr(
            "provider_requests_total", labels=(("capability", capability), ("tier", tier))
        )
        self._ledger.track_usage(
            UsageRecord(
                workspace_id=usage.workspace_id,
                user_id=usage.user_id,
                job_type=usage.job_type,
                model=model,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                cost_cents=cost,
                stream_id=usage.stream_id,
                event_id=usage.event_id,
                job_id=usage.job_id,
                metadata={"capability": capability, "tier": tier},
            )
        )
        return cost

    # ── Embeddings ───────────────────────────────────────────────────

    async def embed(self, text: str, *, usage: UsageContext) -> EmbeddingResult:
        results = await self.embed_batch([text], usage=usage)
        return results[0]

    async def embed_batch(self, texts: list[str], *, usage: UsageContext) -> list[EmbeddingResult]:
        """Embed texts in chunks of ``EMBED_BATCH_LIMIT``; order is preserved."""
        results: list[EmbeddingResult] = []
        for start in range(0, len(texts), EMBED_BATCH_LIMIT):
            chunk = texts[start : start + EMBED_BATCH_LIMIT]
            results.extend(await self._embed_chunk(chunk, usage=usage))
        return results

    async def _embed_chunk(self, texts: list[str], *, usage: UsageContext) -> list[EmbeddingResult]:
        local_profile = self._profile("embed.local")
        if local_profile.model and await self._local.is_available():
            model = local_profile.model
            try:
                vectors = [await self._local.embed(text, model=model) for text in texts]
            except ProviderUnavailableError as e:
                logger.warning("local embedding unavailable, falling back to remote: {}", e)
            else:
                results = []
                for text, vector in zip(texts, vectors, strict=True):
                    tokens = estimate_tokens(text)
                    results.append(EmbeddingResult(vector, model, tokens, "local"))
                self._track(
                    usage,
                    model=model,
                    tier="local",
                    capability="embed",
                    input_tokens=sum(r.token_count for r in results),
                )
                return results

        remote_profile = self._profile("embed.remote")
        model = self._model_name(remote_profile, "embed.remote")
        try:
            response = await self._remote.embed(texts, model=model, timeout=remote_profile.timeout_seconds)
        except ProviderError as e:
            logger.error("embedding failed on every backend: {}", e)
            raise ProviderUnavailableError("embed", str(e)) from e
        total_tokens = response.input_tokens or sum(estimate_tokens(t) for t in texts)
        self._track(usage, model=model, tier="remote", capability="embed", input_tokens=total_tokens)
        return [
            EmbeddingResult(vector, model, estimate_tokens(text), "remote")
            for text, vector in zip(texts, response.vectors, strict=True)
        ]

    # ── Classification ───────────────────────────────────────────────

    async def classify(self, text: str, *, usage: UsageContext) -> LocalClassification:
        """Cheap YES/NO verdict from the local model.

        Any reply that does not start with YES or NO, or an unavailable local
        model, yields a non-confident verdict so the caller escalates.
        """
        profile = self._profile("classify.local")
        if not profile.model or not await self._local.is_available():
            return LocalClassification(is_knowledge=False, confident=False)
        try:
            generation = await self._local.generate(
                _CLASSIFY_PROMPT.format(text=text),
                model=profile.model,
                max_tokens=profile.max_tokens or 10,
                temperature=profile.temperature if profile.temperature is not None else 0.0,
            )
        except ProviderUnavailableError as e:
            logger.warning("local classifier unavailable: {}", e)
            return LocalClassification(is_knowledge=False, confident=False)

        self._track(
            usage,
            model=profile.model,
            tier="local",
            capability="classify",
            input_tokens=estimate_tokens(text),
            output_tokens=estimate_tokens(generation.text),
        )
        verdict = generation.text.strip().upper()
        if verdict.startswith("YES"):
            return LocalClassification(is_knowledge=True, confident=True)
        if verdict.startswith("NO"):
            return LocalClassification(is_knowledge=False, confident=True)
        logger.debug("local classifier unsure: {!r}", generation.text[:60])
        return LocalClassification(is_knowledge=False, confident=False)

    async def classify_escalate(
        self,
        text: str,
        *,
        context: str | None = None,
        usage: UsageContext,
    ) -> EscalatedClassification:
        """Remote classification with confidence and optional title.

        Malformed replies are logged and mapped to a negative verdict.
        """
        profile = self._profile("classify.escalate")
        model = self._model_name(profile, "classify.escalate")
        user_content = text if not context else f"Context:\n{context}\n\nContent:\n{text}"
        try:
            completion = await self._remote.complete(
                [
                    {"role": "system", "content": _ESCALATE_SYSTEM},
                    {"role": "user", "content": user_content},
                ],
                model=model,
                max_tokens=profile.max_tokens or 300,
                temperature=profile.temperature if profile.temperature is not None else 0.0,
                timeout=profile.timeout_seconds,
            )
        except ProviderError as e:
            raise ProviderUnavailableError("classify", str(e)) from e

        self._track(
            usage,
            model=model,
            tier="remote",
            capability="classify",
            input_tokens=completion.input_tokens,
            output_tokens=completion.output_tokens,
        )
        payload = extract_json_payload(completion.content)
        if not isinstance(payload, dict):
            logger.warning("escalation reply was not JSON: {!r}", completion.content[:120])
            return EscalatedClassification(is_knowledge=False, confidence=0.0)
        title = payload.get("suggestedTitle")
        return EscalatedClassification(
            is_knowledge=bool(payload.get("isKnowledge", False)),
            confidence=clamp_float(payload.get("confidence"), default=0.0),
            suggested_title=str(title).strip() or None if isinstance(title, str) else None,
        )

    # ── Agent chat ───────────────────────────────────────────────────

    async def chat(
        self,
        messages: list[dict[str, Any]],
        *,
        tools: list[dict[str, Any]] | None = None,
        usage: UsageContext,
    ) -> ChatResult:
        profile = self._profile("agent.chat")
        model = self._model_name(profile, "agent.chat")
        completion = await self._remote.complete(
            messages,
            model=model,
            tools=tools,
            max_tokens=profile.max_tokens or 4096,
            temperature=profile.temperature if profile.temperature is not None else 0.7,
            timeout=profile.timeout_seconds,
        )
        cost = self._track(
            usage,
            model=model,
            tier="remote",
            capability="chat",
            input_tokens=completion.input_tokens,
            output_tokens=completion.output_tokens,
        )
        return ChatResult(
            content=completion.content,
            model=model,
            input_tokens=completion.input_tokens,
            output_tokens=completion.output_tokens,
            cost_cents=cost,
            tool_calls=list(completion.tool_calls),
        )

    # ── Text helpers (never raise) ───────────────────────────────────

    async def _generate_text(
        self,
        prompt: str,
        *,
        capability: str,
        usage: UsageContext,
        max_tokens: int,
    ) -> str | None:
        local_profile = self._profile("text.local")
        if local_profile.model and await self._local.is_available():
            try:
                generation = await self._local.generate(
                    prompt,
                    model=local_profile.model,
                    max_tokens=max_tokens,
                    temperature=local_profile.temperature if local_profile.temperature is not None else 0.1,
                )
            except ProviderUnavailableError as e:
                logger.warning("local {} unavailable, falling back to remote: {}", capability, e)
            else:
                self._track(
                    usage,
                    model=local_profile.model,
                    tier="local",
                    capability=capability,
                    input_tokens=generation.input_tokens,
                    output_tokens=generation.output_tokens,
                )
                if generation.text:
                    return generation.text

        remote_profile = self._profile("text.remote")
        if not remote_profile.model:
            return None
        try:
            completion = await self._remote.complete(
                [{"role": "user", "content": prompt}],
                model=remote_profile.model,
                max_tokens=max_tokens,
                temperature=remote_profile.temperature if remote_profile.temperature is not None else 0.0,
                timeout=remote_profile.timeout_seconds,
            )
        except ProviderError as e:
            logger.error("{} failed on every backend: {}", capability, e)
            return None
        self._track(
            usage,
            model=remote_profile.model,
            tier="remote",
            capability=capability,
            input_tokens=completion.input_tokens,
            output_tokens=completion.output_tokens,
        )
        return completion.content or None

    async def generate_contextual_header(
        self,
        message: "ChatMessage",
        context: list["ContextMessage"],
        *,
        usage: UsageContext,
    ) -> str | None:
        context_lines = "\n".join(f"{c.author_name}: {c.content[:300]}" for c in context) or "(none)"
        prompt = _HEADER_PROMPT.format(
            stream=message.stream_name or message.stream_id,
            context=context_lines,
            author=message.author_name,
            content=message.content[:2000],
        )
        raw = await self._generate_text(prompt, capability="header", usage=usage, max_tokens=100)
        if raw is None:
            return None
        header = clean_single_line(raw, max_chars=300)
        return header or None

    async def generate_summary(self, text: str, *, usage: UsageContext) -> str | None:
        raw = await self._generate_text(
            _SUMMARY_PROMPT.format(text=text[:2000]),
            capability="summary",
            usage=usage,
            max_tokens=40,
        )
        if raw is None:
            return None
        title = clean_single_line(raw, max_chars=120).rstrip(".")
        if len(title) < 3 or title.lower() in REJECTED_NAMES:
            logger.debug("rejected generic summary {!r}", title)
            return None
        return title

    async def suggest_tags(
        self,
        text: str,
        existing_tags: list[str],
        *,
        usage: UsageContext,
    ) -> list[str] | None:
        raw = await self._generate_text(
            _TAGS_PROMPT.format(existing=", ".join(existing_tags) or "(none)", text=text[:2000]),
            capability="tags",
            usage=usage,
            max_tokens=60,
        )
        if raw is None:
            return None
        tags = parse_tag_list(raw, limit=5)
        known = set(existing_tags)
        return sorted(tags, key=lambda tag: tag not in known)

    async def classify_category(self, text: str, *, usage: UsageContext) -> MemoCategory | None:
        raw = await self._generate_text(
            _CATEGORY_PROMPT.format(text=text[:2000]),
            capability="category",
            usage=usage,
            max_tokens=10,
        )
        if raw is None:
            return None
        lowered = raw.strip().lower()
        for category in MEMO_CATEGORIES:
            if category in lowered:
                return category  # type: ignore[return-value]
        return None
