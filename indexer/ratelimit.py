import time, logging
from collections import defaultdict, deque
from typing import Any, Awaitable, Callable, Dict

from helpers import now_ms

log = logging.getLogger(__name__)

SLOW_INFO_MS = 5_000
SLOW_WARN_MS = 10_000

class RateLimiter:
    """Sliding-window call budget per key. Never sleeps; callers skip on False."""

    def __init__(self, clock: Callable[[], int] | None = None):
        self._clock = clock or now_ms
        self._calls: Dict[str, deque] = defaultdict(deque)

    def _prune(self, key: str, window_ms: int) -> deque:
        calls = self._calls[key]
        cutoff = self._clock() - window_ms
        while calls and calls[0] <= cutoff:
            calls.popleft()
        return calls

    def can_proceed(self, key: str, max_calls: int, window_ms: int) -> bool:
        calls = self._prune(key, window_ms)
        if len(calls) >= max_calls:
            log.warning(f"[ratelimit] {key}: {len(calls)}/{max_calls} calls in {window_ms}ms window, rejecting")
            return False
        calls.append(self._clock())
        return True

    def remaining(self, key: str, max_calls: int, window_ms: int) -> int:
        return max(0, max_calls - len(self._prune(key, window_ms)))

    def reset(self, key: str | None = None):
        if key is None:
            self._calls.clear()
        else:
            self._calls.pop(key, None)


class PerformanceMonitor:
    def __init__(self):
        self._stats: Dict[str, Dict[str, float]] = {}

    async def measure(self, name: str, fn: Callable[[], Awaitable[Any]]) -> Any:
        t0 = time.perf_counter()
        try:
            return await fn()
        finally:
            self._record(name, (time.perf_counter() - t0) * 1000.0)

    def _record(self, name: str, ms: float):
        s = self._stats.setdefault(name, {"count": 0, "total_ms": 0.0, "max_ms": 0.0})
        s["count"] += 1
        s["total_ms"] += ms
        s["max_ms"] = max(s["max_ms"], ms)
        if ms > SLOW_WARN_MS:
            log.warning(f"[perf] {name} took {ms:.0f}ms")
        elif ms > SLOW_INFO_MS:
            log.info(f"[perf] {name} took {ms:.0f}ms")

    def stats(self) -> Dict[str, Dict[str, float]]:
        return {k: dict(v) for k, v in self._stats.items()}
