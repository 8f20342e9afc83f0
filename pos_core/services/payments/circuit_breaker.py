"""
Circuit breaker around the payment gateway.

After ``failure_threshold`` consecutive gateway failures the breaker opens and
charges fail fast with CircuitOpenError, so the pending record is marked failed
without waiting on a gateway that is known to be down. Once
``recovery_seconds`` have passed the breaker lets ``half_open_max_calls`` trial
calls through: ``success_threshold`` trial successes close it again, a single
failed trial reopens it.

State is derived from the clock on read, so no lock is needed: every mutation
happens between awaits on the event loop.
"""

import asyncio
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator

from shared.config.logging import payments_logger as logger
from shared.config.settings import settings
from shared.utils.exceptions import ExternalFailure


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerConfig:
    name: str
    failure_threshold: int = 5
    recovery_seconds: float = 30.0
    success_threshold: int = 1
    half_open_max_calls: int = 1


@dataclass
class CircuitBreakerStats:
    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    rejected_calls: int = 0
    state_changes: int = 0


class CircuitOpenError(ExternalFailure):
    """The gateway was not called because the breaker is open."""

    def __init__(self, breaker_name: str, retry_after: float):
        self.breaker_name = breaker_name
        self.retry_after = retry_after
        super().__init__(
            breaker_name,
            f"{breaker_name} unavailable, retry in {retry_after:.1f}s",
            retry_after=round(retry_after, 1),
        )


class CircuitBreaker:
    """Failure tracking shared by every payment task that talks to one gateway."""

    def __init__(self, config: CircuitBreakerConfig):
        self.config = config
        self.stats = CircuitBreakerStats()
        self._opened_at: float | None = None
        self._consecutive_failures = 0
        self._trial_successes = 0
        self._trials_in_flight = 0

    @property
    def state(self) -> CircuitState:
        if self._opened_at is None:
            return CircuitState.CLOSED
        if self._retry_after() > 0:
            return CircuitState.OPEN
        return CircuitState.HALF_OPEN

    def _retry_after(self) -> float:
        if self._opened_at is None:
            return 0.0
        return max(0.0, self.config.recovery_seconds - (time.monotonic() - self._opened_at))

    def _open(self) -> None:
        self._opened_at = time.monotonic()
        self._trial_successes = 0
        self._trials_in_flight = 0
        self.stats.state_changes += 1
        logger.warning(
            "Payment gateway breaker opened",
            breaker=self.config.name,
            consecutive_failures=self._consecutive_failures,
            recovery_seconds=self.config.recovery_seconds,
        )

    def _close(self) -> None:
        self._opened_at = None
        self._consecutive_failures = 0
        self._trial_successes = 0
        self._trials_in_flight = 0
        self.stats.state_changes += 1
        logger.info("Payment gateway breaker closed", breaker=self.config.name)

    def _admit(self) -> bool:
        state = self.state
        if state == CircuitState.CLOSED:
            return True
        if state == CircuitState.HALF_OPEN and self._trials_in_flight < self.config.half_open_max_calls:
            self._trials_in_flight += 1
            return True
        return False

    def _on_success(self, probing: bool) -> None:
        self.stats.total_calls += 1
        self.stats.successful_calls += 1
        self._consecutive_failures = 0
        if probing:
            self._trials_in_flight = max(0, self._trials_in_flight - 1)
            self._trial_successes += 1
            if self._trial_successes >= self.config.success_threshold:
                self._close()

    def _on_failure(self, probing: bool, error: BaseException) -> None:
        self.stats.total_calls += 1
        self.stats.failed_calls += 1
        self._consecutive_failures += 1
        logger.warning(
            "Payment gateway call failed",
            breaker=self.config.name,
            error=str(error),
            consecutive_failures=self._consecutive_failures,
        )
        if probing or self._consecutive_failures >= self.config.failure_threshold:
            self._open()

    @asynccontextmanager
    async def call(self) -> AsyncIterator[None]:
        """
        Guard one gateway call.

        Raises:
            CircuitOpenError: the breaker is open, or every trial slot is taken
        """
        probing = self.state == CircuitState.HALF_OPEN
        if not self._admit():
            self.stats.rejected_calls += 1
            raise CircuitOpenError(self.config.name, self._retry_after())

        try:
            yield
        except asyncio.CancelledError:
            # A cancelled trial says nothing about the gateway; free its slot.
            if probing:
                self._trials_in_flight = max(0, self._trials_in_flight - 1)
            raise
        except Exception as e:
            self._on_failure(probing, e)
            raise
        else:
            self._on_success(probing)

    def reset(self) -> None:
        if self._opened_at is not None:
            self._close()
        self._consecutive_failures = 0


def gateway_breaker() -> CircuitBreaker:
    """Breaker for the payment gateway, tuned from settings."""
    return CircuitBreaker(
        CircuitBreakerConfig(
            name="payment_gateway",
            failure_threshold=settings.gateway_failure_threshold,
            recovery_seconds=settings.gateway_recovery_seconds,
        )
    )
