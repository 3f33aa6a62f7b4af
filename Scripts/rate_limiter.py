"""
Per-identity sliding-window rate limiter.

Each identity key owns a window record with its own lock, so callers for
different identities never contend and callers for the same identity
serialise only on that record. Idle windows are swept periodically.
"""

import itertools
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional

logger = logging.getLogger("nlq_gateway.rate_limiter")

ANONYMOUS_KEY = "anonymous"


@dataclass(frozen=True)
class RateLimitDecision:
    admitted: bool
    limit: int
    remaining: int
    retry_after_seconds: int = 0


class _RateWindow:
    __slots__ = ("lock", "timestamps", "retired")

    def __init__(self):
        self.lock = threading.Lock()
        self.timestamps: List[float] = []
        self.retired = False

    def purge(self, cutoff: float) -> None:
        # timestamps are appended in order, so the stale ones form a prefix
        stale = 0
        for ts in self.timestamps:
            if ts >= cutoff:
                break
            stale += 1
        if stale:
            del self.timestamps[:stale]


class SlidingWindowRateLimiter:
    def __init__(
        self,
        limit_per_minute: int = 10,
        window_seconds: float = 60.0,
        retry_after_seconds: int = 60,
        sweep_interval: int = 1000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.limit = limit_per_minute
        self.window_seconds = window_seconds
        self.retry_after_seconds = retry_after_seconds
        self.sweep_interval = max(1, sweep_interval)
        self._clock = clock
        self._windows: Dict[str, _RateWindow] = {}
        self._calls = itertools.count(1)
        self._sweep_lock = threading.Lock()

    @classmethod
    def from_config(cls, cfg: dict) -> "SlidingWindowRateLimiter":
        section = cfg.get("rate_limiter") or {}
        nlp = cfg.get("nlp_query") or {}
        return cls(
            limit_per_minute=int(nlp.get("rate_limit_per_minute", 10)),
            window_seconds=float(section.get("window_seconds", 60)),
            retry_after_seconds=int(section.get("retry_after_seconds", 60)),
            sweep_interval=int(section.get("sweep_interval", 1000)),
        )

    def admit(self, identity_key: str) -> RateLimitDecision:
        """Admit or deny one call for ``identity_key`` and report the remaining quota."""
        key = identity_key or ANONYMOUS_KEY
        now = self._clock()
        cutoff = now - self.window_seconds

        while True:
            window = self._windows.get(key)
            if window is None:
                window = self._windows.setdefault(key, _RateWindow())
            with window.lock:
                if window.retired:
                    # swept between lookup and lock; fetch the replacement
                    continue
                window.purge(cutoff)
                # denied attempts are recorded too; the list never holds more than limit + 1
                window.timestamps.append(now)
                count = len(window.timestamps)
                admitted = count <= self.limit
                overflow = count - (self.limit + 1)
                if overflow > 0:
                    del window.timestamps[:overflow]
            break

        if next(self._calls) % self.sweep_interval == 0:
            self.sweep()

        if not admitted:
            logger.warning(
                "Rate limit exceeded for %s. %d requests in the last %d seconds.",
                key, count, int(self.window_seconds),
            )
            return RateLimitDecision(False, self.limit, 0, self.retry_after_seconds)

        return RateLimitDecision(True, self.limit, max(0, self.limit - count))

    def sweep(self) -> int:
        """Drop windows with no timestamps left in the current window. Returns how many."""
        if not self._sweep_lock.acquire(blocking=False):
            return 0
        removed = 0
        try:
            cutoff = self._clock() - self.window_seconds
            for key, window in list(self._windows.items()):
                with window.lock:
                    window.purge(cutoff)
                    if window.timestamps:
                        continue
                    window.retired = True
                    if self._windows.get(key) is window:
                        del self._windows[key]
                        removed += 1
        finally:
            self._sweep_lock.release()
        if removed:
            logger.debug("Swept %d idle rate-limit windows", removed)
        return removed

    def tracked_keys(self) -> int:
        return len(self._windows)


def resolve_identity_key(claims: Optional[Mapping[str, Any]], remote_addr: Optional[str]) -> str:
    """Strongest available identity: manager id, then subject, then network origin."""
    claims = claims or {}
    for claim in ("manager_id", "sub"):
        value = claims.get(claim)
        if value:
            return str(value)
    if remote_addr:
        return remote_addr
    return ANONYMOUS_KEY
