"""Timing, token estimation and cost accounting."""

from __future__ import annotations

import math
import time
from dataclasses import dataclass

from agent_router.types import TokenUsage

_CHARS_PER_TOKEN = 4


@dataclass(slots=True)
class CostModel:
    """Per-backend price in USD per 1K input and output tokens."""

    input_per_1k: float = 0.005
    output_per_1k: float = 0.015

    def cost_of(self, usage: TokenUsage) -> float:
        return self.estimate_cost(usage.input_tokens, usage.output_tokens)

    def estimate_cost(self, input_tokens: int, output_tokens: int) -> float:
        weighted = input_tokens * self.input_per_1k + output_tokens * self.output_per_1k
        return weighted / 1000.0


class Timer:
    """Wall-clock milliseconds spent inside a ``with`` block."""

    __slots__ = ("_started", "elapsed_ms")

    def __init__(self) -> None:
        self._started: float | None = None
        self.elapsed_ms = 0.0

    def __enter__(self) -> Timer:
        self._started = time.perf_counter()
        return self

    def __exit__(self, *exc_info: object) -> None:
        if self._started is not None:
            self.elapsed_ms = (time.perf_counter() - self._started) * 1000.0


def estimate_tokens(text: str) -> int:
    """Rough token count: one token per four characters, rounded up."""
    if not text:
        return 0
    return math.ceil(len(text) / _CHARS_PER_TOKEN)
