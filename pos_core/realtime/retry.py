"""
Reconnect backoff.

Exponential backoff with jitter so terminals that lose the stream together do
not all resubscribe at the same instant.
"""

from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Final

from shared.config.settings import settings

# ±25% of the computed delay
DEFAULT_JITTER_FACTOR: Final[float] = 0.25
DEFAULT_BACKOFF_BASE: Final[float] = 2.0


@dataclass(frozen=True, slots=True)
class RetryConfig:
    """Resubscription backoff. Delays are in seconds; attempts count from 0."""

    initial_delay: float = 1.0
    max_delay: float = 30.0
    backoff_base: float = DEFAULT_BACKOFF_BASE
    jitter_factor: float = DEFAULT_JITTER_FACTOR
    max_attempts: int = 10

    def __post_init__(self) -> None:
        problems = [
            message
            for broken, message in (
                (self.initial_delay <= 0, f"initial_delay={self.initial_delay} is not positive"),
                (self.max_delay < self.initial_delay, f"max_delay={self.max_delay} is below initial_delay"),
                (self.backoff_base < 1, f"backoff_base={self.backoff_base} would shrink delays"),
                (not 0 <= self.jitter_factor <= 1, f"jitter_factor={self.jitter_factor} is outside [0, 1]"),
                (self.max_attempts < 1, f"max_attempts={self.max_attempts} allows no attempt"),
            )
            if broken
        ]
        if problems:
            raise ValueError("Invalid reconnect backoff: " + "; ".join(problems))


def calculate_delay_with_jitter(attempt: int, config: RetryConfig | None = None) -> float:
    """
    Seconds to wait before resubscription attempt `attempt`.

    The exponential delay is capped at max_delay first and jittered second,
    so a capped delay can still land up to jitter_factor above the cap.
    """
    cfg = config or RetryConfig()
    base = min(cfg.max_delay, cfg.initial_delay * cfg.backoff_base ** attempt)
    if not cfg.jitter_factor:
        return base
    return max(0.0, base * (1 + random.uniform(-cfg.jitter_factor, cfg.jitter_factor)))


def reconnect_config() -> RetryConfig:
    """Backoff for change stream resubscription, from settings."""
    return RetryConfig(
        initial_delay=settings.reconnect_initial_delay,
        max_delay=settings.reconnect_max_delay,
        max_attempts=settings.reconnect_max_attempts,
    )
