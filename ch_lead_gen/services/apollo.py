"""
Apollo contact enrichment client.

Two-stage discovery: search people at a company by name, then bulk-match
them to reveal emails. Quota introspection is derived from the usage-stats
endpoint, with every plan limit scaled down by a safety margin so the
effective ceiling leaves headroom. Requests are spaced so the tightest
window's remaining quota lasts until that window resets.
"""
import logging
from datetime import datetime
from typing import Dict, List

import requests

from ch_lead_gen.config import (
    APOLLO_API_KEY, APOLLO_MASTER_API_KEY, APOLLO_API_URL, APOLLO_TIMEOUT,
    APOLLO_SAFETY_MARGIN, APOLLO_FALLBACK_LIMITS, APOLLO_THRESHOLDS,
    APOLLO_LIMITS_CACHE_TTL, APOLLO_PACING_SAFETY_FACTOR, APOLLO_WARN_FACTOR, MIN_REQUEST_INTERVALS,
)

logger = logging.getLogger('services.apollo')

API_NAME = 'apollo'
SEARCH_PAGE_SIZE = 25
ENRICH_BATCH_SIZE = 10
LIMITS_CACHE_KEY = 'apollo_rate_limits'

WINDOW_SECONDS = {
    'per_minute': 60,
    'per_hour': 3600,
    'per_day': 86400,
}

WINDOWS = {
    'per_minute': 'minute',
    'per_hour': 'hour',
    'per_day': 'day',
}

# Response headers carrying the raw per-window counters
_HEADER_NAMES = {
    'per_minute': ('x-rate-limit-minute', 'x-minute-requests-left', 'x-minute-usage'),
    'per_hour': ('x-rate-limit-hourly', 'x-hourly-requests-left', 'x-hourly-usage'),
    'per_day': ('x-rate-limit-24-hour', 'x-24-hour-requests-left', 'x-24-hour-usage'),
}


class ApolloError(Exception):
    """Apollo request refused or returned an unusable response."""


class ApolloRateLimitError(ApolloError):
    """Local quota check refused the call before it was made."""


def _int_header(headers, name, default):
    try:
        return int(headers.get(name, default))
    except (TypeError, ValueError):
        return default


def pacing_interval(limits: Dict, floor: float = MIN_REQUEST_INTERVALS['apollo']) -> float:
    """
    Seconds to leave between Apollo requests.

    Each window's remaining quota is spread evenly over the window's length;
    the slowest resulting rate wins, stretched by the pacing safety factor
    and never below `floor`.
    """
    interval = max(
        seconds / max(1, limits[window]['remaining'])
        for window, seconds in WINDOW_SECONDS.items()
    )
    return max(floor, interval * APOLLO_PACING_SAFETY_FACTOR)


class ApolloClient:

    def __init__(self, api_key=None, master_api_key=None, rate_limiter=None, store=None,
                 base_url=APOLLO_API_URL, timeout=APOLLO_TIMEOUT,
                 safety_margin=APOLLO_SAFETY_MARGIN, fallback_limits=None, thresholds=None):
        self.api_key = api_key if api_key is not None else APOLLO_API_KEY
        self.master_api_key = master_api_key or APOLLO_MASTER_API_KEY or self.api_key
        self.rate_limiter = rate_limiter
        self.store = store
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.safety_margin = safety_margin
        self.fallback_limits = dict(fallback_limits or APOLLO_FALLBACK_LIMITS)
        self.thresholds = dict(thresholds or APOLLO_THRESHOLDS)

    def _headers(self, api_key=None):
        return {
            'Accept': 'application/json',
            'Content-Type': 'application/json',
            'Cache-Control': 'no-cache',
            'X-Api-Key': api_key or self.api_key or '',
        }

    def _before_request(self, endpoint: str, limits: Dict):
        for window, period in WINDOWS.items():
            remaining = limits[window]['remaining']
            if remaining <= self.thresholds[period] * APOLLO_WARN_FACTOR:
                logger.warning("Apollo API %s limit nearly reached: %d requests remaining", period, remaining)
        if self.rate_limiter:
            self.rate_limiter.throttle(API_NAME, min_interval=pacing_interval(limits))
            self.rate_limiter.record_usage(API_NAME, endpoint)

    def _ensure_quota(self) -> Dict:
        """Current limits, or ApolloRateLimitError when any window is at its threshold."""
        status = self.can_make_api_call()
        if not status['can_proceed']:
            raise ApolloRateLimitError(status['message'])
        return status['limits']

    # ── People search / enrichment ────────────────────────────────────

    def find_people(self, company_name: str) -> List[Dict]:
        """Search people at a company. Returns [] when nobody matches."""
        limits = self._ensure_quota()
        self._before_request('people_search', limits)

        response = requests.post(
            f'{self.base_url}/mixed_people/search',
            json={'q_organization_name': company_name, 'per_page': SEARCH_PAGE_SIZE},
            headers=self._headers(),
            timeout=self.timeout,
        )
        response.raise_for_status()
        data = response.json() or {}

        people = []
        for person in data.get('people') or []:
            people.append({
                'id': person.get('id'),
                'name': person.get('name') or 'N/A',
                'title': person.get('title') or 'N/A',
                'first_name': person.get('first_name'),
                'last_name': person.get('last_name'),
                'organization_id': person.get('organization_id'),
                'linkedin_url': person.get('linkedin_url'),
                'company_name_input': company_name,
            })

        logger.info("Apollo found %d people for %s", len(people), company_name)
        return people

    def enrich_people(self, people: List[Dict]) -> List[Dict]:
        """
        Bulk-match people in batches of 10 and keep those with an email.

        Entries with neither a usable name nor a first+last pair are not sent.
        Any failed batch aborts the whole call.
        """
        if not people:
            return []

        contacts = []
        for start in range(0, len(people), ENRICH_BATCH_SIZE):
            batch = people[start:start + ENRICH_BATCH_SIZE]
            sent, details = [], []
            for person in batch:
                detail = _match_details(person)
                if detail:
                    sent.append(person)
                    details.append(detail)

            if not details:
                logger.debug("Skipping enrichment batch at %d: no identifiable people", start)
                continue

            limits = self._ensure_quota()
            self._before_request('bulk_enrich', limits)

            response = requests.post(
                f'{self.base_url}/people/bulk_match',
                json={'reveal_personal_emails': True, 'details': details},
                headers=self._headers(),
                timeout=self.timeout,
            )
            response.raise_for_status()
            data = response.json() or {}

            matches = data.get('matches') or data.get('people') or []
            for idx, match in enumerate(matches):
                if not match or not match.get('email'):
                    continue
                source = sent[idx] if idx < len(sent) else {}
                contacts.append({
                    'name': match.get('name') or source.get('name'),
                    'first_name': match.get('first_name') or source.get('first_name'),
                    'last_name': match.get('last_name') or source.get('last_name'),
                    'email': match['email'],
                    'title': match.get('title') or source.get('title'),
                    'linkedin_url': match.get('linkedin_url') or source.get('linkedin_url'),
                    'company_name_input': source.get('company_name_input'),
                })

        logger.info("Apollo enriched %d/%d people with emails", len(contacts), len(people))
        return contacts

    # ── Quota introspection ───────────────────────────────────────────

    def _fallback(self) -> Dict:
        return {
            window: {'limit': self.fallback_limits[window], 'used': 0, 'remaining': self.fallback_limits[window]}
            for window in WINDOWS
        }

    def _fetch_usage_stats(self):
        response = requests.post(
            f'{self.base_url}/usage_stats/api_usage_stats',
            headers=self._headers(self.master_api_key),
            timeout=self.timeout,
        )
        response.raise_for_status()
        return response.json() or {}, {k.lower(): v for k, v in response.headers.items()}

    def get_rate_limits(self) -> Dict:
        """
        Effective per-window limits: {'per_minute': {limit, used, remaining}, ...}.

        Limits are the summed plan limits times the safety margin; remaining
        is that ceiling minus consumption, floored at zero. Cached for five
        minutes; fallback limits are used when the stats call fails.
        """
        if self.store is not None:
            cached = self.store.get(LIMITS_CACHE_KEY)
            if cached:
                return cached

        try:
            data, headers = self._fetch_usage_stats()
        except Exception as e:
            logger.warning("Failed to fetch Apollo rate limits, using fallback limits: %s", e)
            return self._fallback()

        limits = {}
        for window, (limit_h, left_h, used_h) in _HEADER_NAMES.items():
            default = self.fallback_limits[window]
            limits[window] = {
                'limit': _int_header(headers, limit_h, default),
                'remaining': _int_header(headers, left_h, default),
                'used': _int_header(headers, used_h, 0),
            }

        totals = {window: [0, 0] for window in WINDOWS}
        for usage in data.values() if isinstance(data, dict) else []:
            if not isinstance(usage, dict):
                continue
            for window, period in WINDOWS.items():
                bucket = usage.get(period) or {}
                if 'limit' in bucket:
                    totals[window][0] += int(bucket.get('limit') or 0)
                    totals[window][1] += int(bucket.get('consumed') or 0)

        for window, (total_limit, total_used) in totals.items():
            if total_limit > 0:
                adjusted = int(total_limit * self.safety_margin)
                limits[window] = {
                    'limit': adjusted,
                    'used': total_used,
                    'remaining': max(0, adjusted - total_used),
                }

        if self.store is not None:
            self.store.put(LIMITS_CACHE_KEY, limits, APOLLO_LIMITS_CACHE_TTL)
        logger.debug("Apollo rate limits refreshed: %s", limits)
        return limits

    def clear_cached_limits(self):
        if self.store is not None:
            self.store.forget(LIMITS_CACHE_KEY)

    def get_remaining_daily_requests(self) -> int:
        return self.get_rate_limits()['per_day']['remaining']

    def can_make_api_call(self) -> Dict:
        """Whether every window still has more than its threshold remaining."""
        limits = self.get_rate_limits()
        remaining = {
            'minute': limits['per_minute']['remaining'],
            'hour': limits['per_hour']['remaining'],
            'day': limits['per_day']['remaining'],
        }
        exhausted = [
            f"{period} remaining {remaining[period]} <= threshold {self.thresholds[period]}"
            for period in ('minute', 'hour', 'day')
            if remaining[period] <= self.thresholds[period]
        ]
        if exhausted:
            message = 'Apollo API rate limits reached: ' + '; '.join(exhausted)
        else:
            message = 'Apollo API quota available'
        return {
            'can_proceed': not exhausted,
            'minute_remaining': remaining['minute'],
            'hour_remaining': remaining['hour'],
            'day_remaining': remaining['day'],
            'minute_threshold': self.thresholds['minute'],
            'hour_threshold': self.thresholds['hour'],
            'day_threshold': self.thresholds['day'],
            'message': message,
            'limits': limits,
        }

    def is_hourly_limit_approaching(self, hourly_threshold: int = 10, minute_threshold: int = 3) -> Dict:
        """Early-stop signal: hourly or minute quota at or below the thresholds."""
        limits = self.get_rate_limits()
        hourly_remaining = limits['per_hour']['remaining']
        minute_remaining = limits['per_minute']['remaining']
        should_stop = hourly_remaining <= hourly_threshold or minute_remaining <= minute_threshold

        if hourly_remaining <= hourly_threshold:
            message = f'Hourly limit approaching: {hourly_remaining} requests remaining (threshold {hourly_threshold})'
        elif minute_remaining <= minute_threshold:
            message = f'Minute limit approaching: {minute_remaining} requests remaining (threshold {minute_threshold})'
        else:
            message = 'Rate limits healthy'

        return {
            'should_stop': should_stop,
            'hourly_remaining': hourly_remaining,
            'hourly_threshold': hourly_threshold,
            'minute_remaining': minute_remaining,
            'minute_threshold': minute_threshold,
            'message': message,
        }

    def get_api_usage_stats(self) -> Dict:
        """Raw per-endpoint usage for dashboards. Returns {'error', 'message'} on failure."""
        if not self.master_api_key:
            return {
                'error': 'master_key_required',
                'message': 'Master API key required for usage stats (APOLLO_MASTER_API_KEY).',
            }
        try:
            if self.rate_limiter:
                self.rate_limiter.throttle(API_NAME)
            data, headers = self._fetch_usage_stats()
        except requests.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            logger.error("Apollo usage stats HTTP error %s: %s", status, e)
            if status == 401:
                return {'error': 'unauthorized', 'message': 'Invalid master API key.'}
            if status == 403:
                return {'error': 'forbidden', 'message': 'Master API key lacks permission for usage stats.'}
            return {'error': 'http_error', 'message': f'HTTP error {status}: {e}'}
        except Exception as e:
            logger.error("Error fetching Apollo usage stats: %s", e)
            return {'error': 'general_error', 'message': f'Network or general error: {e}'}

        if not isinstance(data, dict) or not data:
            return {'error': 'invalid_response', 'message': 'Empty or invalid response from Apollo API'}

        raw_limits = {
            window: {
                'limit': _int_header(headers, limit_h, 0),
                'used': _int_header(headers, used_h, 0),
                'remaining': _int_header(headers, left_h, 0),
            }
            for window, (limit_h, left_h, used_h) in _HEADER_NAMES.items()
        }

        endpoint_usage, quota_info = {}, {}
        overall = {p: {'total_limit': 0, 'total_consumed': 0, 'total_remaining': 0} for p in WINDOWS.values()}
        for endpoint, usage in data.items():
            if not isinstance(usage, dict) or 'consumed' not in (usage.get('day') or {}):
                continue
            name = endpoint.replace('["', '').replace('"]', '').replace('", "', ' - ')
            endpoint_usage[name] = usage['day']['consumed']
            quota_info[name] = {}
            for period in WINDOWS.values():
                bucket = usage.get(period) or {}
                limit = int(bucket.get('limit') or 0)
                consumed = int(bucket.get('consumed') or 0)
                left = int(bucket.get('left_over') or 0)
                quota_info[name][period] = {
                    'limit': limit,
                    'consumed': consumed,
                    'remaining': left,
                    'percentage_used': round(consumed / limit * 100, 1) if limit else 0,
                }
                overall[period]['total_limit'] += limit
                overall[period]['total_consumed'] += consumed
                overall[period]['total_remaining'] += left

        for period, totals in overall.items():
            totals['percentage_used'] = (
                round(totals['total_consumed'] / totals['total_limit'] * 100, 1) if totals['total_limit'] else 0
            )

        return {
            'total_requests_today': sum(endpoint_usage.values()),
            'rate_limits': raw_limits,
            'endpoint_usage': endpoint_usage,
            'quota_info': quota_info,
            'overall_quota': overall,
            'fetched_at': datetime.now().isoformat(),
        }


def _match_details(person: Dict) -> Dict:
    """Non-empty identity fields for bulk_match, or {} if the person is unidentifiable."""
    name = person.get('name')
    if name == 'N/A':
        name = None
    first, last = person.get('first_name'), person.get('last_name')
    if not name and not (first and last):
        return {}

    detail = {
        'id': person.get('id'),
        'name': name,
        'first_name': first,
        'last_name': last,
        'organization_name': person.get('company_name_input'),
        'linkedin_url': person.get('linkedin_url'),
    }
    return {k: v for k, v in detail.items() if v}
