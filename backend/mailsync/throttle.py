"""
Latency-aware pacing for Gmail detail fetches.

messages.get costs 5 quota units and Gmail allows 250 units/s per user, so
the hard ceiling is 50 messages/s. With N messages per batch and observed
latency L the achieved rate is N / (L + delay); the throttle tracks L with an
exponential moving average and picks the delay (or grows N when latency alone
keeps the rate under target) to hold ~47 messages/s. Rate limits trigger a
hard backoff window and lower the target until things calm down.
"""
import logging
import math
import threading
import time
from typing import Callable, Optional

logger = logging.getLogger(__name__)

DEFAULT_TARGET_RATE = 47.0
RATE_LIMIT_TARGET_STEP = 5.0
RECOVERY_PERIOD_S = 30.0


class AdaptiveThrottle:
    def __init__(
        self,
        min_delay_s: float = 0.0,
        initial_delay_s: float = 0.1,
        max_delay_s: float = 60.0,
        concurrency: int = 20,
        max_concurrency: int = 40,
        target_rate: float = DEFAULT_TARGET_RATE,
        min_target_rate: float = 30.0,
        latency_smoothing: float = 0.3,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.min_delay_s = min_delay_s
        self.initial_delay_s = initial_delay_s
        self.max_delay_s = max_delay_s
        self.base_concurrency = concurrency
        self.max_concurrency = max_concurrency
        self.default_target_rate = target_rate
        self.min_target_rate = min_target_rate
        self.latency_smoothing = latency_smoothing
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self.reset()

    def reset(self) -> None:
        with self._lock:
            self._delay_s = self.initial_delay_s
            self._concurrency = self.base_concurrency
            self._target_rate = self.default_target_rate
            self._avg_latency_s: Optional[float] = None
            self._backoff_until = 0.0
            self._rate_limit_count = 0
            self._last_rate_limit_at = 0.0
            self.batch_count = 0
            self.total_messages = 0

    @property
    def delay_s(self) -> float:
        return self._delay_s

    @property
    def concurrency(self) -> int:
        return self._concurrency

    @property
    def target_rate(self) -> float:
        return self._target_rate

    @property
    def avg_latency_s(self) -> Optional[float]:
        return self._avg_latency_s

    def backoff_remaining_s(self) -> float:
        return max(0.0, self._backoff_until - self._clock())

    def wait(self) -> None:
        """Block before the next batch: the backoff window if one is open, else the current delay."""
        remaining = self.backoff_remaining_s()
        if remaining > 0:
            logger.info(f"Gmail throttle backing off for {remaining:.1f}s")
            self._sleep(remaining)
            return
        if self._delay_s > 0:
            self._sleep(self._delay_s)

    def on_batch_complete(self, latency_s: float, success_count: int) -> None:
        with self._lock:
            self.batch_count += 1
            self.total_messages += success_count

            if self._avg_latency_s is None:
                self._avg_latency_s = latency_s
            else:
                a = self.latency_smoothing
                self._avg_latency_s = a * latency_s + (1 - a) * self._avg_latency_s

            # target_rate = concurrency / (latency + delay)
            cycle_s = self._concurrency / self._target_rate
            required_delay = cycle_s - self._avg_latency_s

            if required_delay >= self.min_delay_s:
                self._delay_s = min(self.max_delay_s, required_delay)
                if self._concurrency > self.base_concurrency and self._delay_s > 0.05:
                    self._concurrency = max(self.base_concurrency, self._concurrency - 2)
            else:
                self._delay_s = self.min_delay_s
                required = math.ceil(self._target_rate * self._avg_latency_s)
                if required > self._concurrency:
                    step = min(5, required - self._concurrency)
                    self._concurrency = min(self.max_concurrency, self._concurrency + step)

            self._recover_target_rate()

    def on_rate_limit(self, retry_after_s: Optional[float] = None) -> None:
        with self._lock:
            now = self._clock()
            self._rate_limit_count += 1
            self._last_rate_limit_at = now
            self._backoff_until = now + (retry_after_s if retry_after_s is not None else 60.0)
            self._target_rate = max(
                self.min_target_rate,
                self._target_rate - RATE_LIMIT_TARGET_STEP * self._rate_limit_count,
            )
            self._concurrency = max(self.base_concurrency, self._concurrency - 5)
            self._delay_s = min(self.max_delay_s, self._delay_s * 2 + 0.1)
        logger.warning(
            f"Gmail rate limit hit (#{self._rate_limit_count}); target rate now {self._target_rate:.0f}/s"
        )

    def on_error(self) -> None:
        with self._lock:
            self._delay_s = min(self.max_delay_s, self._delay_s * 1.2)

    def _recover_target_rate(self) -> None:
        # +1 msg/s for every quiet 30s since the last rate limit
        if self._rate_limit_count == 0:
            return
        quiet_s = self._clock() - self._last_rate_limit_at
        if quiet_s > RECOVERY_PERIOD_S:
            periods = int(quiet_s // RECOVERY_PERIOD_S)
            self._target_rate = min(self.default_target_rate, self._target_rate + periods)
            self._last_rate_limit_at += periods * RECOVERY_PERIOD_S
            if self._target_rate >= self.default_target_rate:
                self._rate_limit_count = 0

    def stats(self) -> dict:
        return {
            "batch_count": self.batch_count,
            "total_messages": self.total_messages,
            "avg_latency_s": self._avg_latency_s,
            "delay_s": self._delay_s,
            "concurrency": self._concurrency,
            "target_rate": self._target_rate,
            "rate_limit_count": self._rate_limit_count,
        }


def create_gmail_throttle(settings, sleep: Callable[[float], None] = time.sleep) -> AdaptiveThrottle:
    return AdaptiveThrottle(
        concurrency=settings.gmail_detail_batch_size,
        max_concurrency=settings.gmail_detail_max_batch_size,
        target_rate=settings.gmail_target_rate,
        sleep=sleep,
    )
