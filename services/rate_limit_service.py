"""
Rate limit service: sliding-window event counter per key

Disabled unless settings.rate_limit_enabled is true.
"""
from collections import defaultdict, deque
from dataclasses import dataclass
import threading
import time
from typing import Callable, Deque, Dict


@dataclass
class RateLimitDecision:
    allowed: bool
    retry_after: float = 0.0


class RateLimitService:
    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._events: Dict[str, Deque[float]] = defaultdict(deque)
        self._lock = threading.Lock()

    def check(self, key: str, limit: int, window_seconds: float) -> RateLimitDecision:
        """
        Count one event for key; refuse it when limit is already reached

        A refused event is not counted, so a client that backs off for
        retry_after seconds gets through.
        """
        now = self._clock()
        with self._lock:
            events = self._events[key]
            while events and now - events[0] >= window_seconds:
                events.popleft()
            if len(events) >= limit:
                return RateLimitDecision(
                    allowed=False,
                    retry_after=max(0.0, window_seconds - (now - events[0]))
                )
            events.append(now)
            return RateLimitDecision(allowed=True)

    def reset(self, key: str) -> None:
        with self._lock:
            self._events.pop(key, None)
