from __future__ import annotations

import time
from collections.abc import Callable
from typing import Protocol

from receipt_check.core.config import settings


class Pacer(Protocol):
    def reset(self) -> None: ...

    def wait(self) -> None: ...


class FixedIntervalPacer:
    """Sleeps ``interval`` seconds before every call except the first after ``reset``."""

    def __init__(
        self,
        interval: float,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._interval = max(0.0, interval)
        self._sleep = sleep
        self._first = True

    def reset(self) -> None:
        self._first = True

    def wait(self) -> None:
        if self._first:
            self._first = False
            return
        if self._interval:
            self._sleep(self._interval)


class TokenBucketPacer:
    """Sustained ``rate`` calls per second with bursts of up to ``capacity``."""

    def __init__(
        self,
        rate: float,
        capacity: int = 1,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if rate <= 0:
            raise ValueError("rate must be positive")
        self._rate = rate
        self._capacity = max(1, capacity)
        self._sleep = sleep
        self._clock = clock
        self._tokens = float(self._capacity)
        self._updated = clock()

    def reset(self) -> None:
        # The bucket outlives chunk boundaries; refill is purely time based.
        self._refill()

    def wait(self) -> None:
        self._refill()
        if self._tokens < 1.0:
            deficit = (1.0 - self._tokens) / self._rate
            self._sleep(deficit)
            self._refill()
            self._tokens = max(self._tokens, 1.0)
        self._tokens -= 1.0

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._updated)
        self._updated = now
        self._tokens = min(float(self._capacity), self._tokens + elapsed * self._rate)


def pacer_from_settings(*, sleep: Callable[[float], None] = time.sleep) -> Pacer:
    if settings.pacing_policy == "token_bucket":
        return TokenBucketPacer(
            settings.pacing_rate_per_second,
            settings.pacing_burst,
            sleep=sleep,
        )
    return FixedIntervalPacer(settings.pacing_interval_ms / 1000.0, sleep=sleep)
