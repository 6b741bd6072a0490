"""Job payload variants, one per job type, and their JSON codec."""

from __future__ import annotations

import json
from dataclasses import dataclass, field, fields
from typing import Any, Literal, assert_never

from memoria.core.models import EnrichmentSignals
from memoria.errors import JobPayloadError
from memoria.memory.models import MemoSource

JobType = Literal["classify", "enrich", "memo-evaluate", "create-memo", "embed", "respond"]
ContentType = Literal["message", "thread"]
RespondMode = Literal["retrieval", "thinking_partner"]

JOB_TYPES: tuple[str, ...] = (
    "classify",
    "enrich",
    "memo-evaluate",
    "create-memo",
    "embed",
    "respond",
)


@dataclass(frozen=True, slots=True, kw_only=True)
class ClassifyJob:
    """Decide whether a message or thread is knowledge-worthy."""

    workspace_id: str
    content: str
    content_type: ContentType = "message"
    stream_id: str | None = None
    event_id: str | None = None
    text_message_id: str | None = None
    reaction_count: int = 0


@dataclass(frozen=True, slots=True, kw_only=True)
class EnrichJob:
    """Generate a contextual header and re-embed one message."""

    workspace_id: str
    text_message_id: str
    event_id: str
    signals: EnrichmentSignals = field(default_factory=EnrichmentSignals)


@dataclass(frozen=True, slots=True, kw_only=True)
class MemoEvaluateJob:
    """Score one enriched message and apply the memo evolution policy."""

    workspace_id: str
    event_id: str
    text_message_id: str


@dataclass(frozen=True, slots=True, kw_only=True)
class CreateMemoJob:
    """Create a memo explicitly from anchor events."""

    workspace_id: str
    anchor_event_ids: tuple[str, ...]
    stream_id: str
    source: MemoSource = "user"


@dataclass(frozen=True, slots=True, kw_only=True)
class EmbedJob:
    """Compute the baseline embedding of a new message."""

    workspace_id: str
    text_message_id: str
    content: str
    event_id: str | None = None


@dataclass(frozen=True, slots=True, kw_only=True)
class RespondJob:
    """Invoke the agent for a mention and post its answer."""

    workspace_id: str
    stream_id: str
    event_id: str
    mentioned_by: str
    question: str
    mode: RespondMode = "retrieval"


JobPayload = ClassifyJob | EnrichJob | MemoEvaluateJob | CreateMemoJob | EmbedJob | RespondJob


def job_type_of(payload: JobPayload) -> JobType:
    match payload:
        case ClassifyJob():
            return "classify"
        case EnrichJob():
            return "enrich"
        case MemoEvaluateJob():
            return "memo-evaluate"
        case CreateMemoJob():
            return "create-memo"
        case EmbedJob():
            return "embed"
        case RespondJob():
            return "respond"
        case _:
            assert_never(payload)


def encode_payload(payload: JobPayload) -> str:
    data: dict[str, Any] = {f.name: getattr(payload, f.name) for f in fields(payload)}
    if isinstance(payload, EnrichJob):
        data["signals"] = payload.signals.to_dict()
    if isinstance(payload, CreateMemoJob):
        data["anchor_event_ids"] = list(payload.anchor_event_ids)
    return json.dumps(data, sort_keys=True)


def decode_payload(job_type: str, raw: str) -> JobPayload:
    """Rebuild the payload variant stored for ``job_type``."""
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise JobPayloadError(f"invalid payload JSON for {job_type}: {exc}") from exc
    if not isinstance(data, dict):
        raise JobPayloadError(f"payload for {job_type} must be an object")

    try:
        match job_type:
            case "classify":
                return ClassifyJob(**data)
            case "enrich":
                signals = EnrichmentSignals.from_dict(data.pop("signals", None))
                return EnrichJob(signals=signals, **data)
            case "memo-evaluate":
                return MemoEvaluateJob(**data)
            case "create-memo":
                anchors = tuple(str(a) for a in data.pop("anchor_event_ids", ()))
                return CreateMemoJob(anchor_event_ids=anchors, **data)
            case "embed":
                return EmbedJob(**data)
            case "respond":
                return RespondJob(**data)
            case _:
                raise JobPayloadError(f"unknown job type: {job_type}")
    except TypeError as exc:
        raise JobPayloadError(f"payload does not match {job_type}: {exc}") from exc
