"""
Per-rule execution history, summary counters and API usage tallies.

All of it lives in the state store and is best-effort: evicted keys read back
as empty history / zeroed summaries. History entries are appended, never
rewritten.
"""
import logging
import time
import uuid
from datetime import datetime, timedelta
from typing import Callable, Dict, List

from ch_lead_gen.config import (
    EXECUTION_DETAIL_TTL, HISTORY_TTL, HISTORY_LIMIT, DAILY_USAGE_TTL, USAGE_COUNTER_TTL,
)

logger = logging.getLogger('services.stats')

PREFIX = 'ch_lead_gen_stats_'
SERVICES = ['companies_house', 'apollo', 'instantly']
KNOWN_ENDPOINTS = {
    'companies_house': ['search', 'filing_history'],
    'apollo': ['people_search', 'bulk_enrich'],
    'instantly': ['add_contacts', 'create_list'],
}


def empty_summary() -> Dict:
    return {
        'total_executions': 0,
        'successful_executions': 0,
        'partial_executions': 0,
        'failed_executions': 0,
        'cancelled_executions': 0,
        'total_companies_found': 0,
        'total_contacts_found': 0,
        'total_contacts_added': 0,
        'average_execution_time': 0,
        'last_run': None,
        'last_success': None,
    }


class StatsService:

    def __init__(self, store, now: Callable[[], datetime] = datetime.now):
        self.store = store
        self._now = now

    def _execution_key(self, rule_key, execution_id):
        return f'{PREFIX}execution_{rule_key}_{execution_id}'

    # ── Execution lifecycle ───────────────────────────────────────────

    def start_rule_execution(self, rule_key: str) -> str:
        execution_id = uuid.uuid4().hex[:13]
        self.store.put(self._execution_key(rule_key, execution_id), {
            'rule_key': rule_key,
            'execution_id': execution_id,
            'start_time': time.time(),
            'start_datetime': self._now().isoformat(),
            'status': 'running',
        }, 3600)
        self.store.put(f'{PREFIX}current_execution_{rule_key}', execution_id, 3600)
        return execution_id

    def _finish(self, rule_key: str, execution_id: str, status: str, **fields) -> Dict:
        record = {
            'rule_key': rule_key,
            'execution_id': execution_id,
            'end_time': time.time(),
            'end_datetime': self._now().isoformat(),
            'status': status,
            **fields,
        }
        self.store.put(self._execution_key(rule_key, execution_id), record, EXECUTION_DETAIL_TTL)
        self._append_history(rule_key, record)
        self._update_summary(rule_key, record)
        return record

    def complete_rule_execution(self, rule_key: str, execution_id: str, results: Dict) -> Dict:
        status = 'completed_partial' if results.get('partial_execution') else 'completed'
        return self._finish(
            rule_key, execution_id, status,
            companies_found=results.get('companies_found', 0),
            companies_processed=results.get('companies_processed', 0),
            contacts_found=results.get('contacts_found', 0),
            contacts_added=results.get('contacts_added', 0),
            execution_time=results.get('execution_time', 0),
        )

    def cancel_rule_execution(self, rule_key: str, execution_id: str, results: Dict) -> Dict:
        return self._finish(
            rule_key, execution_id, 'cancelled',
            companies_found=results.get('companies_found', 0),
            companies_processed=results.get('companies_processed', 0),
            contacts_found=results.get('contacts_found', 0),
            execution_time=results.get('execution_time', 0),
        )

    def record_rule_error(self, rule_key: str, execution_id: str, error_message: str) -> Dict:
        return self._finish(rule_key, execution_id, 'error', error_message=str(error_message))

    def _append_history(self, rule_key, record):
        key = f'{PREFIX}rule_history_{rule_key}'
        history = self.store.get(key, [])
        history.append(record)
        self.store.put(key, history[-HISTORY_LIMIT:], HISTORY_TTL)

    def _update_summary(self, rule_key, record):
        summary = self.get_rule_summary_stats(rule_key)
        summary['total_executions'] += 1
        summary['last_run'] = record['end_datetime']

        status = record['status']
        if status in ('completed', 'completed_partial'):
            summary['successful_executions'] += 1
            if status == 'completed_partial':
                summary['partial_executions'] += 1
            summary['last_success'] = record['end_datetime']
            summary['total_companies_found'] += record.get('companies_found', 0)
            summary['total_contacts_found'] += record.get('contacts_found', 0)
            summary['total_contacts_added'] += record.get('contacts_added', 0)
            n = summary['successful_executions']
            previous_total = summary['average_execution_time'] * (n - 1)
            summary['average_execution_time'] = (previous_total + record.get('execution_time', 0)) / n
        elif status == 'cancelled':
            summary['cancelled_executions'] += 1
        else:
            summary['failed_executions'] += 1

        self.store.put(f'{PREFIX}rule_summary_{rule_key}', summary, HISTORY_TTL)

    # ── API usage ─────────────────────────────────────────────────────

    def track_api_usage(self, rule_key: str, service: str, endpoint: str, count: int = 1):
        now = self._now()
        date, hour = now.strftime('%Y-%m-%d'), now.strftime('%H')
        counters = [
            (f'{PREFIX}api_usage_daily_{rule_key}_{service}_{endpoint}_{date}', DAILY_USAGE_TTL),
            (f'{PREFIX}api_usage_hourly_{rule_key}_{service}_{endpoint}_{date}_{hour}', USAGE_COUNTER_TTL),
            (f'{PREFIX}api_usage_service_{service}_{date}', DAILY_USAGE_TTL),
        ]
        for key, ttl in counters:
            self.store.put(key, self.store.get(key, 0) + count, ttl)

    def _dates(self, days):
        today = self._now()
        return [(today - timedelta(days=i)).strftime('%Y-%m-%d') for i in range(days)]

    def get_rule_api_usage(self, rule_key: str, days: int = 7) -> List[Dict]:
        """Per-day request totals per service, most recent first."""
        stats = []
        for date in self._dates(days):
            day = {'date': date}
            for service in SERVICES:
                day[service] = sum(
                    self.store.get(f'{PREFIX}api_usage_daily_{rule_key}_{service}_{endpoint}_{date}', 0)
                    for endpoint in KNOWN_ENDPOINTS[service]
                )
            stats.append(day)
        return stats

    def get_overall_api_usage(self, days: int = 7) -> List[Dict]:
        stats = []
        for date in self._dates(days):
            day = {'date': date}
            for service in SERVICES:
                day[service] = self.store.get(f'{PREFIX}api_usage_service_{service}_{date}', 0)
            stats.append(day)
        return stats

    # ── Reads ─────────────────────────────────────────────────────────

    def get_rule_history(self, rule_key: str, limit: int = 10) -> List[Dict]:
        """Last `limit` executions, oldest first."""
        history = self.store.get(f'{PREFIX}rule_history_{rule_key}', [])
        return history[-limit:] if limit else history

    def get_rule_summary_stats(self, rule_key: str) -> Dict:
        summary = empty_summary()
        summary.update(self.store.get(f'{PREFIX}rule_summary_{rule_key}') or {})
        return summary

    def get_all_rules_stats(self, rules: Dict) -> Dict:
        """Summary plus last-day usage for each rule in a {key: Rule} map."""
        return {
            key: {
                'rule_name': rule.name,
                'enabled': rule.enabled,
                'summary': self.get_rule_summary_stats(key),
                'recent_api_usage': self.get_rule_api_usage(key, 1),
            }
            for key, rule in rules.items()
        }
