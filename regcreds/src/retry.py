from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

LOGGER = logging.getLogger(__name__)

RETRY_SIMPLE = "simple"
RETRY_EXPONENTIAL = "exponential"
RETRY_STRATEGIES = frozenset({RETRY_SIMPLE, RETRY_EXPONENTIAL})

DEFAULT_RETRY_STRATEGY = RETRY_SIMPLE
DEFAULT_TOKEN_RETRIES = 3
DEFAULT_TOKEN_RETRY_DELAY_SECONDS = 5


@dataclass(frozen=True)
class RetryConfig:
    """Validated retry settings for token generation.

    Built once at startup by :mod:`regcreds.src.config`; every refresh cycle
    derives its own :class:`RetryPolicy` from it via :func:`new_retry_policy`.
    """

    strategy: str = DEFAULT_RETRY_STRATEGY
    max_retries: int = DEFAULT_TOKEN_RETRIES
    delay_seconds: int = DEFAULT_TOKEN_RETRY_DELAY_SECONDS

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1


class RetryPolicy(Protocol):
    def reset(self) -> None: ...

    def next_delay(self) -> float | None:
        """Return seconds to wait before the next attempt, or ``None`` to stop."""
        ...


class ConstantRetryPolicy:
    """Always waits the same delay; exhaustion is left to the caller's attempt count."""

    def __init__(self, delay_seconds: float) -> None:
        self.delay_seconds = float(delay_seconds)

    def reset(self) -> None:
        return None

    def next_delay(self) -> float | None:
        return self.delay_seconds


class ExponentialRetryPolicy:
    """Jittered exponential backoff bounded by a maximum elapsed time.

    Each call grows the base interval by ``multiplier`` (capped at
    ``max_interval_seconds``) and returns it randomized by
    ``±randomization_factor``.  Returned delays never go below the previous
    one, so a sequence is non-decreasing until the elapsed time since
    :meth:`reset` exceeds ``max_elapsed_seconds``, after which ``None`` is
    returned regardless of how many attempts the caller has left.

    Defaults match the usual client-go style backoff: 0.5 s initial
    interval, 1.5x multiplier, 50 % jitter, 60 s interval cap and a 15
    minute budget.
    """

    def __init__(
        self,
        initial_interval_seconds: float = 0.5,
        multiplier: float = 1.5,
        randomization_factor: float = 0.5,
        max_interval_seconds: float = 60.0,
        max_elapsed_seconds: float = 900.0,
        clock: Callable[[], float] = time.monotonic,
        random_fn: Callable[[], float] = random.random,
    ) -> None:
        if initial_interval_seconds <= 0:
            raise ValueError("initial_interval_seconds must be > 0")
        if multiplier < 1:
            raise ValueError("multiplier must be >= 1")
        if not 0 <= randomization_factor < 1:
            raise ValueError("randomization_factor must be in [0, 1)")
        self.initial_interval_seconds = initial_interval_seconds
        self.multiplier = multiplier
        self.randomization_factor = randomization_factor
        self.max_interval_seconds = max_interval_seconds
        self.max_elapsed_seconds = max_elapsed_seconds
        self.clock = clock
        self.random_fn = random_fn
        self.reset()

    def reset(self) -> None:
        self._current_interval = self.initial_interval_seconds
        self._last_delay = 0.0
        self._started_at = self.clock()

    def elapsed_seconds(self) -> float:
        return self.clock() - self._started_at

    def next_delay(self) -> float | None:
        if self.max_elapsed_seconds > 0 and self.elapsed_seconds() > self.max_elapsed_seconds:
            return None

        delta = self.randomization_factor * self._current_interval
        jittered = self._current_interval - delta + self.random_fn() * (2 * delta)
        delay = max(self._last_delay, jittered)

        self._last_delay = delay
        self._current_interval = min(
            self._current_interval * self.multiplier, self.max_interval_seconds
        )
        return delay


def new_retry_policy(config: RetryConfig) -> RetryPolicy:
    """Build a fresh policy for one refresh cycle.

    Policies hold per-sequence state, so concurrent refresh cycles must
    never share an instance.
    """
    if config.strategy == RETRY_EXPONENTIAL:
        return ExponentialRetryPolicy()
    if config.strategy != RETRY_SIMPLE:
        LOGGER.warning(
            "Unknown retry strategy %r; retrying every %ds",
            config.strategy,
            config.delay_seconds,
        )
    return ConstantRetryPolicy(config.delay_seconds)
