"""Exponential backoff strategy shared by restart and renewal loops."""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from typing import Callable


@dataclass(frozen=True)
class BackoffStrategy:
    """Immutable backoff config and calculation helpers.

    Attributes:
        floor_seconds: Minimum delay returned for any attempt.
        base_seconds: Base delay for exponential growth.
        max_seconds: Exponential delay cap before jitter.
        jitter_min_multiplier: Minimum jitter multiplier.
        jitter_max_multiplier: Maximum jitter multiplier.
        random_unit_interval_provider: Provider returning value in [0.0, 1.0].
    """

    floor_seconds: float
    base_seconds: float
    max_seconds: float
    jitter_min_multiplier: float = 1.0
    jitter_max_multiplier: float = 1.0
    random_unit_interval_provider: Callable[[], float] = field(default=random.random, compare=False)

    def __post_init__(self) -> None:
        if self.floor_seconds < 0:
            raise ValueError("floor_seconds must be >= 0")
        if self.base_seconds < 0:
            raise ValueError("base_seconds must be >= 0")
        if self.max_seconds <= 0:
            raise ValueError("max_seconds must be > 0")
        if self.jitter_min_multiplier <= 0:
            raise ValueError("jitter_min_multiplier must be > 0")
        if self.jitter_max_multiplier < self.jitter_min_multiplier:
            raise ValueError("jitter_max_multiplier must be >= jitter_min_multiplier")

    def strategy_calculate_wait_seconds(self, attempt_index: int) -> float:
        """Calculate exponential wait with cap, jitter and floor.

        Args:
            attempt_index: Zero-based retry attempt index.

        Returns:
            float: Computed wait seconds for the attempt.

        Raises:
            ValueError: Raised when attempt index is negative.
            RuntimeError: Raised when jitter provider returns out-of-range value.
        """

        if attempt_index < 0:
            raise ValueError("attempt_index must be >= 0")

        # Cap the exponent so very long failure streaks cannot overflow.
        backoff_seconds = self.base_seconds * (2 ** min(attempt_index, 32))
        capped_backoff_seconds = min(backoff_seconds, self.max_seconds)
        jittered_backoff_seconds = capped_backoff_seconds * self.strategy_calculate_jitter_multiplier()
        return max(float(self.floor_seconds), float(jittered_backoff_seconds))

    def strategy_calculate_jitter_multiplier(self) -> float:
        """Return jitter multiplier using configured min/max bounds.

        Returns:
            float: Jitter multiplier value.

        Raises:
            RuntimeError: Raised when jitter source returns value outside [0.0, 1.0].
        """

        random_ratio = float(self.random_unit_interval_provider())
        if random_ratio < 0.0 or random_ratio > 1.0:
            raise RuntimeError("random_unit_interval_provider must return a value in [0.0, 1.0]")

        jitter_span = self.jitter_max_multiplier - self.jitter_min_multiplier
        return self.jitter_min_multiplier + (random_ratio * jitter_span)
