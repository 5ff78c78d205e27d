"""
Centralized configuration: env vars, API endpoints, limits and TTLs.
"""
import os


# ── Logging ──────────────────────────────────────────────────────────────────
LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')
LOG_FORMAT = os.getenv('LOG_FORMAT', 'text')
RECENT_LOGS_KEY = 'ch_lead_gen:logs'
RECENT_LOGS_MAX = int(os.getenv('RECENT_LOGS_MAX', 500))

# ── Redis / state ─────────────────────────────────────────────────────────────
REDIS_URL = os.getenv('REDIS_URL', 'redis://localhost:6379/0')
STATE_BACKEND = os.getenv('STATE_BACKEND', 'redis')  # redis | memory

# ── Rules ─────────────────────────────────────────────────────────────────────
RULES_CONFIG_PATH = os.getenv(
    'RULES_CONFIG_PATH',
    os.path.join(os.path.dirname(os.path.dirname(__file__)), 'rules.yaml'),
)

# ── Companies House ───────────────────────────────────────────────────────────
COMPANIES_HOUSE_API_KEY = os.getenv('COMPANIES_HOUSE_API_KEY')
COMPANIES_HOUSE_API_URL = os.getenv('COMPANIES_HOUSE_API_URL', 'https://api.company-information.service.gov.uk')
COMPANIES_HOUSE_TIMEOUT = (10, 30)

# ── Apollo ────────────────────────────────────────────────────────────────────
APOLLO_API_KEY = os.getenv('APOLLO_API_KEY')
APOLLO_MASTER_API_KEY = os.getenv('APOLLO_MASTER_API_KEY') or APOLLO_API_KEY
APOLLO_API_URL = os.getenv('APOLLO_API_URL', 'https://api.apollo.io/api/v1')
APOLLO_TIMEOUT = (10, 30)
APOLLO_SAFETY_MARGIN = float(os.getenv('APOLLO_SAFETY_MARGIN', 0.8))
APOLLO_FALLBACK_LIMITS = {
    'per_minute': int(os.getenv('APOLLO_LIMIT_PER_MINUTE', 50)),
    'per_hour': int(os.getenv('APOLLO_LIMIT_PER_HOUR', 200)),
    'per_day': int(os.getenv('APOLLO_LIMIT_PER_DAY', 600)),
}
# can_make_api_call() refuses at or below these remaining counts
APOLLO_THRESHOLDS = {
    'minute': int(os.getenv('APOLLO_MINUTE_THRESHOLD', 5)),
    'hour': int(os.getenv('APOLLO_HOUR_THRESHOLD', 20)),
    'day': int(os.getenv('APOLLO_DAY_THRESHOLD', 50)),
}
# Mid-run early stop thresholds polled by the orchestrator
APOLLO_STOP_HOURLY_THRESHOLD = int(os.getenv('APOLLO_STOP_HOURLY_THRESHOLD', 10))
APOLLO_STOP_MINUTE_THRESHOLD = int(os.getenv('APOLLO_STOP_MINUTE_THRESHOLD', 3))
APOLLO_LIMITS_CACHE_TTL = 300
# Request spacing stretches the tightest window's remaining quota by this factor
APOLLO_PACING_SAFETY_FACTOR = float(os.getenv('APOLLO_PACING_SAFETY_FACTOR', 1.25))
# Low-quota warnings fire at this multiple of APOLLO_THRESHOLDS
APOLLO_WARN_FACTOR = 2

# ── Instantly ─────────────────────────────────────────────────────────────────
INSTANTLY_API_KEY = os.getenv('INSTANTLY_API_KEY')
INSTANTLY_API_URL = os.getenv('INSTANTLY_API_URL', 'https://api.instantly.ai/api/v2')
INSTANTLY_TIMEOUT = (10, 20)

# ── Webhooks ──────────────────────────────────────────────────────────────────
WEBHOOK_TIMEOUT = (10, 30)
WEBHOOK_MAX_ATTEMPTS = int(os.getenv('WEBHOOK_MAX_ATTEMPTS', 2))
WEBHOOK_RETRY_BACKOFF = float(os.getenv('WEBHOOK_RETRY_BACKOFF', 5))
WEBHOOK_USER_AGENT = 'CH-Lead-Gen-Webhook/1.0'

# ── Rate limiting ─────────────────────────────────────────────────────────────
# Minimum seconds between consecutive requests to the same API
MIN_REQUEST_INTERVALS = {
    'companies_house': 0.5,
    'apollo': 0.5,
    'instantly': 0.5,
}
# Published per-minute limits, used for soft warnings only
PROVIDER_MINUTE_LIMITS = {
    'companies_house': 120,
    'apollo': APOLLO_FALLBACK_LIMITS['per_minute'],
    'instantly': 100,
}

# ── Orchestration ─────────────────────────────────────────────────────────────
INTER_COMPANY_DELAY = float(os.getenv('INTER_COMPANY_DELAY', 2))
RATE_LIMIT_COOLDOWN = int(os.getenv('RATE_LIMIT_COOLDOWN', 300))
RATE_LIMIT_ERROR_WINDOW = 600
RATE_LIMIT_ERROR_THRESHOLD = 5
CONFIRMATION_STATEMENT_MAX_PAGES = 3
JOB_TIMEOUT = int(os.getenv('JOB_TIMEOUT', 14400))

# ── State TTLs (seconds) ──────────────────────────────────────────────────────
JOB_TTL = 3600
EXECUTION_DETAIL_TTL = 86400
HISTORY_TTL = 86400 * 30
LAST_RUN_TTL = 86400 * 7
USAGE_COUNTER_TTL = 7200
DAILY_USAGE_TTL = 86400 * 7
HISTORY_LIMIT = 50

# ── Auth ─────────────────────────────────────────────────────────────────────
DASHBOARD_PASSWORD = os.getenv('DASHBOARD_PASSWORD')

# ── Rule value sets ───────────────────────────────────────────────────────────
COMPANY_STATUSES = ['active', 'dissolved', 'liquidation']
COMPANY_TYPES = ['ltd', 'plc', 'llp', 'partnership']
SCHEDULE_FREQUENCIES = ['daily', 'weekly', 'monthly']
