"""Model pricing table and cost calculation (cents)."""

from __future__ import annotations

import math
from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class ModelPrice:
    """Price in cents per million tokens."""

    input_cents: float
    output_cents: float


# Matched by substring of the lower-cased model id, first hit wins.
MODEL_PRICES: tuple[tuple[str, ModelPrice], ...] = (
    ("text-embedding", ModelPrice(input_cents=2.0, output_cents=0.0)),
    ("sonnet", ModelPrice(input_cents=300.0, output_cents=1500.0)),
    ("haiku", ModelPrice(input_cents=25.0, output_cents=125.0)),
)


def price_for(model: str) -> ModelPrice | None:
    lowered = model.lower()
    for keyword, price in MODEL_PRICES:
        if keyword in lowered:
            return price
    return None


def calculate_cost(model: str, *, input_tokens: int, output_tokens: int = 0) -> float:
    """Cost in cents, rounded up to four decimals. Unknown (local) models are free."""
    price = price_for(model)
    if price is None:
        return 0.0
    cost = (input_tokens / 1_000_000) * price.input_cents + (output_tokens / 1_000_000) * price.output_cents
    return math.ceil(cost * 10_000) / 10_000
