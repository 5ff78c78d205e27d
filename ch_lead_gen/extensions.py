"""
Shared client instances: Redis, the state store and the RQ queue.

Lazily initialized on first access so importing this module is always safe
(even when env vars are missing during tests).
"""
import logging
import redis

from ch_lead_gen.config import REDIS_URL, STATE_BACKEND

logger = logging.getLogger('ch_lead_gen.extensions')

# ── Redis ─────────────────────────────────────────────────────────────────────
# from_url does not connect until the first command
redis_client = redis.from_url(REDIS_URL, decode_responses=True)

# ── State store ───────────────────────────────────────────────────────────────
_store = None


def get_store():
    """Return the process-wide state store selected by STATE_BACKEND."""
    global _store
    if _store is None:
        from ch_lead_gen.services.state_store import MemoryStore, RedisStore
        if STATE_BACKEND == 'memory':
            logger.warning("STATE_BACKEND=memory: job state and stats are per-process only")
            _store = MemoryStore()
        else:
            _store = RedisStore(redis_client)
    return _store


# ── Rules config store ────────────────────────────────────────────────────────
_config_store = None


def get_config_store():
    """Return the shared rules config store."""
    global _config_store
    if _config_store is None:
        from ch_lead_gen.config import RULES_CONFIG_PATH
        from ch_lead_gen.services.rule_config import RuleConfigStore
        _config_store = RuleConfigStore(RULES_CONFIG_PATH)
    return _config_store


# ── RQ queue ──────────────────────────────────────────────────────────────────
_queue = None


def get_queue():
    """Lazy RQ queue, so no Redis connection is needed at import time."""
    global _queue
    if _queue is None:
        from rq import Queue
        _queue = Queue('ch_lead_gen', connection=redis.from_url(REDIS_URL))
    return _queue
