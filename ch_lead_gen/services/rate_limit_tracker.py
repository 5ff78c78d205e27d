"""
Rate-limit error tracking shared by every rule run.

Each HTTP 429 seen while processing a company is recorded as a timestamp.
Once `threshold` errors fall inside the trailing `window`, callers should
cool down before the next company and then clear() the tracker:

  - record()       → add a 429 occurrence
  - should_pause() → threshold reached inside the window
  - clear()        → forget all occurrences (after the cool-down)
"""
import logging
import time
from typing import Callable, List

import requests

from ch_lead_gen.config import RATE_LIMIT_ERROR_WINDOW, RATE_LIMIT_ERROR_THRESHOLD

logger = logging.getLogger('services.rate_limit_tracker')

ERRORS_KEY = 'apollo_rate_limit_errors'


def is_rate_limit_error(exc: BaseException) -> bool:
    """True for HTTP 429 / 'Too Many Requests' failures."""
    if isinstance(exc, requests.HTTPError) and exc.response is not None and exc.response.status_code == 429:
        return True
    message = str(exc)
    return '429' in message or 'Too Many Requests' in message


class RateLimitErrorTracker:

    def __init__(self, store, window: int = RATE_LIMIT_ERROR_WINDOW,
                 threshold: int = RATE_LIMIT_ERROR_THRESHOLD, clock: Callable[[], float] = time.time):
        self.store = store
        self.window = window
        self.threshold = threshold
        self._clock = clock

    def _recent(self) -> List[float]:
        cutoff = self._clock() - self.window
        return [t for t in self.store.get(ERRORS_KEY, []) if t > cutoff]

    def record(self) -> int:
        errors = self._recent()
        errors.append(self._clock())
        self.store.put(ERRORS_KEY, errors, self.window)
        logger.warning("Rate limit error recorded (%d in the last %ds)", len(errors), self.window)
        return len(errors)

    def count(self) -> int:
        return len(self._recent())

    def should_pause(self) -> bool:
        return self.count() >= self.threshold

    def clear(self):
        self.store.forget(ERRORS_KEY)
        logger.info("Rate limit error tracking reset")
