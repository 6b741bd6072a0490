"""Lenient parsing of model output (JSON blocks, numbers, tag lists)."""

from __future__ import annotations

import json
import re
from typing import Any


def extract_json_payload(text: str) -> dict[str, Any] | list[object] | None:
    stripped = text.strip()
    for candidate in _json_candidates(stripped):
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, (dict, list)):
            return parsed
    return None


def _json_candidates(text: str) -> list[str]:
    candidates: list[str] = [text]
    fenced = re.findall(r"```(?:json)?\s*(.*?)```", text, flags=re.IGNORECASE | re.DOTALL)
    candidates.extend(chunk.strip() for chunk in fenced if chunk.strip())

    first_obj = text.find("{")
    last_obj = text.rfind("}")
    if 0 <= first_obj < last_obj:
        candidates.append(text[first_obj : last_obj + 1])
    first_arr = text.find("[")
    last_arr = text.rfind("]")
    if 0 <= first_arr < last_arr:
        candidates.append(text[first_arr : last_arr + 1])
    return candidates


def clamp_float(value: object, *, default: float) -> float:
    try:
        parsed = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        parsed = default
    if parsed < 0.0:
        return 0.0
    if parsed > 1.0:
        return 1.0
    return parsed


def parse_tag_list(text: str, *, limit: int = 5) -> list[str]:
    """Parse a JSON array or comma/newline separated list into normalized tags."""
    payload = extract_json_payload(text)
    if isinstance(payload, dict):
        payload = payload.get("tags")
    raw_items: list[object] = payload if isinstance(payload, list) else re.split(r"[,\n]", text)

    tags: list[str] = []
    for item in raw_items:
        tag = re.sub(r"[^a-z0-9\- ]+", "", str(item).strip().lower()).strip().replace(" ", "-")
        if len(tag) < 2 or tag in tags:
            continue
        tags.append(tag)
        if len(tags) >= limit:
            break
    return tags


def clean_single_line(text: str, *, max_chars: int) -> str:
    """First non-empty line without wrapping quotes or markdown emphasis."""
    for line in text.splitlines():
        cleaned = line.strip().strip("\"'`*#").strip()
        if cleaned:
            return cleaned[:max_chars]
    return ""
