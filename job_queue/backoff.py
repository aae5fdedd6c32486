"""
Retry delay and dead-letter decisions for failed reply jobs.

    delay(attempts) = min(cap, floor(base * growth ** attempts))

With the defaults (5, 3, 300): 1 → 15s, 2 → 45s, 3 → 135s, 4+ → 300s.
"""
from __future__ import annotations

import math
from dataclasses import dataclass

from config.settings import BackoffConfig
from models.schemas import Job


@dataclass(frozen=True)
class FailurePlan:
    attempts_after: int
    is_dead: bool
    delay_seconds: int


@dataclass(frozen=True)
class BackoffPolicy:
    base: float = 5
    growth: float = 3
    cap_seconds: int = 300

    @classmethod
    def from_config(cls, config: BackoffConfig) -> BackoffPolicy:
        return cls(base=config.base, growth=config.growth, cap_seconds=config.cap_seconds)

    def delay(self, attempts: int) -> int:
        """Seconds to wait before the next attempt, given attempts made so far."""
        try:
            raw = self.base * self.growth ** attempts
        except OverflowError:
            return self.cap_seconds
        return min(self.cap_seconds, math.floor(raw))

    @staticmethod
    def is_dead(attempts_after: int, max_attempts: int) -> bool:
        return attempts_after >= max_attempts

    def plan(self, job: Job) -> FailurePlan:
        attempts_after = job.attempts + 1
        dead = self.is_dead(attempts_after, job.max_attempts)
        # dead rows keep their run_after; the delay is unused
        return FailurePlan(
            attempts_after=attempts_after,
            is_dead=dead,
            delay_seconds=0 if dead else self.delay(attempts_after),
        )
