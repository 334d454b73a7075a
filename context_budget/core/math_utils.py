"""Shared math utilities."""

from __future__ import annotations

import statistics


def cosine_similarity(a: list[float], b: list[float]) -> float:
    """Compute cosine similarity between two vectors."""
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = sum(x * x for x in a) ** 0.5
    norm_b = sum(x * x for x in b) ** 0.5
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


def ema(previous: float, observed: float, alpha: float) -> float:
    """Exponential moving average step."""
    return alpha * observed + (1 - alpha) * previous


def population_stdev(values: list[int] | list[float]) -> float:
    if len(values) < 2:
        return 0.0
    return statistics.pstdev(values)


def clamp(value: int, low: int, high: int) -> int:
    return max(low, min(value, high))
