"""
Structured logging configuration.

Called once from create_app() and from the CLI. Supports text (human-readable)
and JSON formats via LOG_FORMAT env var. LOG_LEVEL defaults to INFO.

When a Redis client is passed, recent application log lines are also mirrored
into a capped Redis list that the control panel polls via /api/logs.
"""
import json
import logging
import os
import sys
from datetime import datetime, timezone

from ch_lead_gen.config import RECENT_LOGS_KEY, RECENT_LOGS_MAX


class JSONFormatter(logging.Formatter):
    """Single-line JSON log formatter for production log aggregators."""

    def format(self, record):
        entry = {
            'timestamp': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
        }
        if record.exc_info and record.exc_info[0] is not None:
            entry['exception'] = self.formatException(record.exc_info)
        return json.dumps(entry)


class RecentLogHandler(logging.Handler):
    """Push formatted records onto a capped Redis list (newest first)."""

    def __init__(self, redis_client, key=RECENT_LOGS_KEY, max_entries=RECENT_LOGS_MAX):
        super().__init__()
        self.redis = redis_client
        self.key = key
        self.max_entries = max_entries

    def emit(self, record):
        try:
            entry = json.dumps({
                'timestamp': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
                'level': record.levelname,
                'logger': record.name,
                'message': record.getMessage(),
            })
            self.redis.lpush(self.key, entry)
            self.redis.ltrim(self.key, 0, self.max_entries - 1)
        except Exception:
            self.handleError(record)


def get_recent_logs(redis_client, limit=100, level=None):
    """Read back the newest mirrored log lines, optionally filtered by level."""
    raw = redis_client.lrange(RECENT_LOGS_KEY, 0, max(limit, 1) - 1)
    entries = []
    for item in raw:
        try:
            entry = json.loads(item)
        except ValueError:
            continue
        if level and entry.get('level') != level.upper():
            continue
        entries.append(entry)
    return entries


# Third-party loggers that are noisy at INFO
_NOISY_LOGGERS = [
    'urllib3',
    'requests',
    'rq.worker',
]

# Loggers mirrored into the recent-logs list
_APP_LOGGERS = [
    'ch_lead_gen',
    'services',
    'pipeline',
    'routes',
]


def configure_logging(app=None, redis_client=None):
    """
    Set up root logger with format/level from env vars.

    Environment variables:
        LOG_LEVEL  : Python log level name (default: INFO)
        LOG_FORMAT : "text" (default) or "json"
    """
    level_name = os.getenv('LOG_LEVEL', 'INFO').upper()
    level = getattr(logging, level_name, logging.INFO)

    log_format = os.getenv('LOG_FORMAT', 'text').lower()

    root = logging.getLogger()
    root.setLevel(level)

    # Remove any existing handlers to avoid duplicates on re-init
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)

    if log_format == 'json':
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            '[%(asctime)s] %(levelname)s %(name)s: %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S',
        ))

    root.addHandler(handler)

    # Quiet noisy third-party loggers
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    if redis_client is not None:
        for name in _APP_LOGGERS:
            app_logger = logging.getLogger(name)
            app_logger.handlers = [h for h in app_logger.handlers if not isinstance(h, RecentLogHandler)]
            app_logger.addHandler(RecentLogHandler(redis_client))
