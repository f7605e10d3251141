"""
FILE DESCRIPTION: Politeness pacing between batches.
KEY FUNCTIONS/CLASSES: TrafficControl, AdaptiveRateLimiter

TrafficControl keeps per-host pause windows after 429/503 responses.
AdaptiveRateLimiter shrinks the effective batch size while a site keeps rate limiting
and grows it back once responses are healthy again.
"""

import threading
import time
from typing import Callable, Dict, Optional
from urllib.parse import urlparse

from auditcrawler.core import logger

RATE_LIMIT_STATUSES = (429, 503)


class TrafficControl:
    """
    FLOW: Records host-wide pauses on rate limiting -> Scheduler asks for the remaining
    pause before forming the next batch.
    """

    def __init__(self, default_pause: float = 5.0, max_pause: float = 120.0,
                 clock: Callable[[], float] = time.time):
        self.default_pause = default_pause
        self.max_pause = max_pause
        self._clock = clock
        self._pauses: Dict[str, float] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _host(url: str) -> str:
        return (urlparse(url).netloc or url).lower()

    def set_pause(self, url: str, seconds: Optional[float] = None) -> None:
        seconds = self.default_pause if seconds is None else min(seconds, self.max_pause)
        host = self._host(url)
        with self._lock:
            now = self._clock()
            if seconds > 0:
                if self._pauses.get(host, 0) < now:
                    logger.info(f"[THROTTLE] {host} rate limited on {url}. Pausing host for {seconds:.1f}s.")
                self._pauses[host] = max(self._pauses.get(host, 0), now + seconds)
            else:
                self._pauses[host] = 0

    def get_remaining_pause(self, url: Optional[str] = None) -> float:
        """Remaining pause for one host, or the longest remaining pause when url is None."""
        with self._lock:
            now = self._clock()
            if url is not None:
                return max(0.0, self._pauses.get(self._host(url), 0) - now)
            if not self._pauses:
                return 0.0
            return max(0.0, max(self._pauses.values()) - now)


class AdaptiveRateLimiter:
    """
    Concurrency follows server health:
    - `error_threshold` consecutive rate-limited responses -> concurrency - 1 (floor `min_concurrency`)
    - `recovery_threshold` consecutive successes -> concurrency + 1 (ceiling `max_concurrency`)
    """

    def __init__(self, max_concurrency: int, min_concurrency: int = 1,
                 error_threshold: int = 2, recovery_threshold: int = 10):
        self.max_concurrency = max_concurrency
        self.min_concurrency = min(min_concurrency, max_concurrency)
        self.error_threshold = error_threshold
        self.recovery_threshold = recovery_threshold
        self._concurrency = max_concurrency
        self._consecutive_errors = 0
        self._consecutive_successes = 0
        self.total_responses = 0
        self.rate_limited_responses = 0
        self._lock = threading.Lock()

    @property
    def concurrency(self) -> int:
        with self._lock:
            return self._concurrency

    def on_response(self, status_code: Optional[int]) -> None:
        if status_code is None:
            return
        with self._lock:
            self.total_responses += 1
            if status_code in RATE_LIMIT_STATUSES:
                self.rate_limited_responses += 1
                self._consecutive_errors += 1
                self._consecutive_successes = 0
                if self._consecutive_errors >= self.error_threshold:
                    old = self._concurrency
                    self._concurrency = max(self.min_concurrency, self._concurrency - 1)
                    self._consecutive_errors = 0
                    if old != self._concurrency:
                        logger.warning(f"[THROTTLE] Reducing concurrency {old} -> {self._concurrency}")
            elif 200 <= status_code < 300:
                self._consecutive_successes += 1
                self._consecutive_errors = 0
                if self._consecutive_successes >= self.recovery_threshold:
                    old = self._concurrency
                    self._concurrency = min(self.max_concurrency, self._concurrency + 1)
                    self._consecutive_successes = 0
                    if old != self._concurrency:
                        logger.info(f"[THROTTLE] Recovering concurrency {old} -> {self._concurrency}")

    def get_stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "concurrency": self._concurrency,
                "total_responses": self.total_responses,
                "rate_limited_responses": self.rate_limited_responses,
            }
