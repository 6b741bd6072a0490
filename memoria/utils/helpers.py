"""Utility functions for memoria."""

import math
import os
from datetime import UTC, datetime
from pathlib import Path


def ensure_dir(path: Path) -> Path:
    """Ensure a directory exists, creating it if necessary."""
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_data_path() -> Path:
    """Get the memoria data directory.

    Respects MEMORIA_HOME environment variable; falls back to ~/.memoria.
    """
    memoria_home = os.environ.get("MEMORIA_HOME", "").strip()
    if memoria_home:
        return ensure_dir(Path(memoria_home))
    return ensure_dir(Path.home() / ".memoria")


def get_operational_data_path() -> Path:
    """Get the long-lived operational data directory (~/.memoria/data)."""
    return ensure_dir(get_data_path() / "data")


def resolve_data_file(raw: str) -> Path:
    """Resolve a configured database path; relative paths live under the data directory."""
    candidate = Path(raw).expanduser()
    return candidate if candidate.is_absolute() else get_data_path() / candidate


def utc_now() -> datetime:
    return datetime.now(UTC)


def to_iso(ts: datetime) -> str:
    """Normalize a timestamp to an aware UTC ISO string."""
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=UTC)
    return ts.astimezone(UTC).isoformat(timespec="microseconds")


def parse_iso(raw: str | None) -> datetime | None:
    if not raw:
        return None
    try:
        dt = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def truncate_string(s: str, max_len: int = 100, suffix: str = "...") -> str:
    """Truncate a string to max length, adding suffix if truncated."""
    if len(s) <= max_len:
        return s
    return s[:max_len] + suffix


def estimate_tokens(text: str) -> int:
    """Rough token estimate (4 chars per token) used when a backend reports none."""
    return math.ceil(len(text) / 4)
