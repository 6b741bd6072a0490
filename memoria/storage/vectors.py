"""Embedding vector packing and similarity helpers for SQLite BLOB columns."""

from __future__ import annotations

from array import array


def serialize_vector(vector: list[float]) -> bytes:
    packed = array("f", [float(v) for v in vector])
    return packed.tobytes()


def deserialize_vector(blob: bytes) -> list[float]:
    unpacked = array("f")
    unpacked.frombytes(blob)
    return unpacked.tolist()


def cosine_similarity(a: list[float], b: list[float]) -> float:
    dot = 0.0
    norm_a = 0.0
    norm_b = 0.0
    for x, y in zip(a, b, strict=False):
        dot += x * y
        norm_a += x * x
        norm_b += y * y
    if norm_a <= 0.0 or norm_b <= 0.0:
        return 0.0
    return dot / ((norm_a ** 0.5) * (norm_b ** 0.5))
