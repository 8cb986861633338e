"""Backoff schedules addressed by 1-based attempt number.

``ExponentialBackoff`` spaces out liveness probes after a deployment;
``LinearBackoff`` spaces out self-healing build attempts, where the wait
grows by a fixed step per attempt.  Both cap at ``max_s``.
"""

from __future__ import annotations

import random
from dataclasses import dataclass


def _check_attempt(attempt: int) -> None:
    if attempt < 1:
        raise ValueError("attempt must be >= 1")


@dataclass(frozen=True)
class ExponentialBackoff:
    """``initial_s * multiplier ** (attempt - 1)``, capped at ``max_s``.

    With ``jitter`` each delay is scaled by ``random.uniform(0.5, 1.0)``.
    """

    initial_s: float = 1.0
    max_s: float = 30.0
    multiplier: float = 2.0
    jitter: bool = False

    def __post_init__(self) -> None:
        if self.initial_s <= 0:
            raise ValueError("initial_s must be positive")
        if self.max_s < self.initial_s:
            raise ValueError("max_s must be >= initial_s")
        if self.multiplier < 1.0:
            raise ValueError("multiplier must be >= 1.0")

    def delay(self, attempt: int) -> float:
        _check_attempt(attempt)
        value = min(self.initial_s * self.multiplier ** (attempt - 1), self.max_s)
        if self.jitter:
            value *= random.uniform(0.5, 1.0)
        return round(value, 4)

    def delays(self, count: int) -> list[float]:
        return [self.delay(n) for n in range(1, count + 1)]


@dataclass(frozen=True)
class LinearBackoff:
    """``step_s * attempt``, capped at ``max_s``.  ``step_s=0`` never waits."""

    step_s: float = 1.0
    max_s: float = 60.0

    def __post_init__(self) -> None:
        if self.step_s < 0:
            raise ValueError("step_s must be >= 0")
        if self.max_s < self.step_s:
            raise ValueError("max_s must be >= step_s")

    def delay(self, attempt: int) -> float:
        _check_attempt(attempt)
        return min(self.step_s * attempt, self.max_s)

    def delays(self, count: int) -> list[float]:
        return [self.delay(n) for n in range(1, count + 1)]


__all__ = [
    "ExponentialBackoff",
    "LinearBackoff",
]
