"""
Key-value state store with per-key TTLs.

Job state, last-run markers, execution history and rate-limit counters all
live here. Everything stored is best-effort: an evicted key simply reads back
as missing.

Two backends share the same get/put/forget contract:
  - RedisStore  → JSON values written with SETEX (production)
  - MemoryStore → in-process dict with expiry (local runs, tests)
"""
import json
import logging
import threading
import time
from typing import Any, Callable, Dict, Optional, Tuple

logger = logging.getLogger('services.state_store')


class StateStore:
    """Interface for the TTL key-value store."""

    def get(self, key: str, default: Any = None) -> Any:
        raise NotImplementedError

    def put(self, key: str, value: Any, ttl: int) -> None:
        raise NotImplementedError

    def forget(self, key: str) -> None:
        raise NotImplementedError


class RedisStore(StateStore):
    """
    Redis-backed store.

    Expects a client created with decode_responses=True.
    """

    def __init__(self, redis_client):
        self.redis = redis_client

    def get(self, key, default=None):
        raw = self.redis.get(key)
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("Discarding undecodable value at %s", key)
            return default

    def put(self, key, value, ttl):
        self.redis.setex(key, int(ttl), json.dumps(value))

    def forget(self, key):
        self.redis.delete(key)


class MemoryStore(StateStore):
    """Thread-safe in-process store. Values are JSON round-tripped like Redis."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}
        self._lock = threading.Lock()

    def get(self, key, default=None):
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return default
            raw, expires_at = entry
            if expires_at is not None and self._clock() >= expires_at:
                del self._data[key]
                return default
        return json.loads(raw)

    def put(self, key, value, ttl):
        expires_at = self._clock() + ttl if ttl else None
        with self._lock:
            self._data[key] = (json.dumps(value), expires_at)

    def forget(self, key):
        with self._lock:
            self._data.pop(key, None)

    def keys(self):
        """Live keys (expired entries excluded)."""
        now = self._clock()
        with self._lock:
            return [k for k, (_, exp) in self._data.items() if exp is None or exp > now]
