"""
Per-API request pacing and soft usage tracking.

throttle() keeps a minimum gap between consecutive requests to the same API,
either the configured per-API interval or one the caller passes in. record_usage()
keeps per-minute counters in the state store and only warns when a counter
passes the provider's published limit; hard blocking is left to quota checks.

Clock and sleep are injectable so pacing can be tested without real delays.
"""
import logging
import threading
import time
from datetime import datetime
from typing import Callable, Dict, Optional

from ch_lead_gen.config import MIN_REQUEST_INTERVALS, PROVIDER_MINUTE_LIMITS, USAGE_COUNTER_TTL

logger = logging.getLogger('services.rate_limiter')

DEFAULT_MIN_INTERVAL = 0.5


class RateLimiter:

    def __init__(
        self,
        store,
        min_intervals: Dict[str, float] = None,
        minute_limits: Dict[str, int] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        now: Callable[[], datetime] = datetime.now,
    ):
        self.store = store
        self.min_intervals = dict(MIN_REQUEST_INTERVALS if min_intervals is None else min_intervals)
        self.minute_limits = dict(PROVIDER_MINUTE_LIMITS if minute_limits is None else minute_limits)
        self._clock = clock
        self._sleep = sleep
        self._now = now
        self._last_request: Dict[str, float] = {}
        self._lock = threading.Lock()

    def throttle(self, api_name: str, min_interval: Optional[float] = None) -> float:
        """
        Block until at least min_interval has passed since the previous call
        for api_name. Returns the seconds slept (0 on the first call).

        The slot is reserved under the lock and the sleep happens outside it,
        so a caller pacing one API never stalls callers of another.
        """
        interval = min_interval if min_interval is not None else self.min_intervals.get(api_name, DEFAULT_MIN_INTERVAL)
        with self._lock:
            now = self._clock()
            last = self._last_request.get(api_name)
            waited = max(0.0, interval - (now - last)) if last is not None else 0.0
            self._last_request[api_name] = now + waited
        if waited:
            logger.debug("Throttling %s for %.2fs", api_name, waited)
            self._sleep(waited)
        return waited

    def mark(self, api_name: str) -> None:
        """Record a request time without waiting (for calls exempt from pacing)."""
        with self._lock:
            self._last_request[api_name] = self._clock()

    def _minute_key(self, api_name: str) -> str:
        return f"api_usage:{api_name}:{self._now().strftime('%Y-%m-%d_%H:%M')}"

    def record_usage(self, api_name: str, endpoint: str = 'general') -> int:
        """Increment this minute's counter for api_name. Returns the new count."""
        key = self._minute_key(api_name)
        usage = self.store.get(key) or {'total': 0, 'endpoints': {}}
        usage['total'] += 1
        usage['endpoints'][endpoint] = usage['endpoints'].get(endpoint, 0) + 1
        self.store.put(key, usage, USAGE_COUNTER_TTL)

        limit = self.minute_limits.get(api_name)
        if limit and usage['total'] > limit:
            logger.warning(
                "%s usage %d this minute exceeds provider limit %d (endpoint=%s)",
                api_name, usage['total'], limit, endpoint,
            )
        return usage['total']

    def get_minute_usage(self, api_name: str) -> dict:
        """Counters for the current minute window."""
        return self.store.get(self._minute_key(api_name)) or {'total': 0, 'endpoints': {}}
