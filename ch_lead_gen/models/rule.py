"""
Rule model: a named search + schedule + integrations bundle.

Rules are read from the YAML config store and handed to the orchestrator as
independent snapshots; nothing in a run mutates them.
"""
import re
from dataclasses import asdict, dataclass, field
from typing import Dict, List, Optional

from ch_lead_gen.config import COMPANY_STATUSES, COMPANY_TYPES, SCHEDULE_FREQUENCIES

DEFAULT_DAYS_AGO = 180
DEFAULT_MAX_RESULTS = 50
MAX_RESULTS_CEILING = 1000

_TIME_RE = re.compile(r'^([01]\d|2[0-3]):([0-5]\d)$')


def as_bool(value) -> bool:
    """Config booleans arrive as bools, ints or strings ('1', 'true', 'on')."""
    if isinstance(value, str):
        return value.strip().lower() in ('1', 'true', 'yes', 'on')
    return bool(value)


def _as_int(value, default):
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _as_time(value) -> str:
    """HH:MM string. YAML 1.1 reads an unquoted 10:00 as sexagesimal 600."""
    if isinstance(value, int) and not isinstance(value, bool):
        return f'{value // 60:02d}:{value % 60:02d}'
    return str(value or '09:00').strip()


@dataclass
class SearchParameters:
    days_ago: int = DEFAULT_DAYS_AGO
    company_status: str = 'active'
    company_type: str = 'ltd'
    allowed_countries: List[str] = field(default_factory=lambda: ['GB'])
    max_results: int = DEFAULT_MAX_RESULTS
    check_confirmation_statement: bool = False

    @classmethod
    def from_dict(cls, data: Dict, defaults: Dict = None) -> 'SearchParameters':
        data = data or {}
        merged = dict(defaults or {})
        merged.update(data)
        if data.get('days_ago') in (None, '') and data.get('months_ago') not in (None, ''):
            # Legacy rules count in 30-day months
            days_ago = _as_int(data['months_ago'], 6) * 30
        else:
            days_ago = _as_int(merged.get('days_ago'), DEFAULT_DAYS_AGO)
        countries = merged.get('allowed_countries') or ['GB']
        if isinstance(countries, str):
            countries = countries.split(',')
        return cls(
            days_ago=days_ago,
            company_status=str(merged.get('company_status') or 'active').lower(),
            company_type=str(merged.get('company_type') or 'ltd').lower(),
            allowed_countries=[str(c).strip().upper() for c in countries if str(c).strip()],
            max_results=_as_int(merged.get('max_results'), DEFAULT_MAX_RESULTS),
            check_confirmation_statement=as_bool(merged.get('check_confirmation_statement', False)),
        )


@dataclass
class Schedule:
    enabled: bool = False
    frequency: str = 'daily'
    time: str = '09:00'
    day_of_week: int = 1
    day_of_month: int = 1

    @classmethod
    def from_dict(cls, data: Dict) -> 'Schedule':
        data = data or {}
        return cls(
            enabled=as_bool(data.get('enabled', False)),
            frequency=str(data.get('frequency') or 'daily').lower(),
            time=_as_time(data.get('time')),
            day_of_week=_as_int(data.get('day_of_week'), 1),
            day_of_month=_as_int(data.get('day_of_month'), 1),
        )

    def time_of_day(self):
        """(hour, minute) parsed from HH:MM."""
        hour, _, minute = self.time.partition(':')
        return int(hour), int(minute or 0)


@dataclass
class InstantlyConfig:
    enabled: bool = False
    lead_list_name: str = ''
    enable_enrichment: bool = True

    @classmethod
    def from_dict(cls, data: Dict) -> 'InstantlyConfig':
        data = data or {}
        return cls(
            enabled=as_bool(data.get('enabled', False)),
            lead_list_name=str(data.get('lead_list_name') or ''),
            enable_enrichment=as_bool(data.get('enable_enrichment', True)),
        )


@dataclass
class WebhookConfig:
    enabled: bool = False
    url: str = ''
    secret: str = ''

    @classmethod
    def from_dict(cls, data: Dict) -> 'WebhookConfig':
        data = data or {}
        return cls(
            enabled=as_bool(data.get('enabled', False)),
            url=str(data.get('url') or '').strip(),
            secret=str(data.get('secret') or ''),
        )


@dataclass
class Rule:
    key: str
    name: str
    description: str = ''
    enabled: bool = True
    search_parameters: SearchParameters = field(default_factory=SearchParameters)
    schedule: Schedule = field(default_factory=Schedule)
    instantly: InstantlyConfig = field(default_factory=InstantlyConfig)
    webhook: WebhookConfig = field(default_factory=WebhookConfig)

    @classmethod
    def from_dict(cls, key: str, data: Dict, defaults: Optional[Dict] = None) -> 'Rule':
        data = data or {}
        return cls(
            key=key,
            name=str(data.get('name') or key),
            description=str(data.get('description') or ''),
            enabled=as_bool(data.get('enabled', True)),
            search_parameters=SearchParameters.from_dict(data.get('search_parameters'), defaults),
            schedule=Schedule.from_dict(data.get('schedule')),
            instantly=InstantlyConfig.from_dict(data.get('instantly')),
            webhook=WebhookConfig.from_dict(data.get('webhook')),
        )

    @property
    def lead_list_name(self) -> str:
        return self.instantly.lead_list_name or f'CH - {self.name}'

    def to_dict(self) -> Dict:
        d = asdict(self)
        d.pop('key')
        return d

    def validate(self) -> List[str]:
        """Return a list of human-readable problems (empty when valid)."""
        errors = []
        sp = self.search_parameters
        if not self.name.strip():
            errors.append('name is required')
        if sp.days_ago < 0:
            errors.append('search_parameters.days_ago must be >= 0')
        if sp.company_status not in COMPANY_STATUSES:
            errors.append(f'search_parameters.company_status must be one of {COMPANY_STATUSES}')
        if sp.company_type not in COMPANY_TYPES:
            errors.append(f'search_parameters.company_type must be one of {COMPANY_TYPES}')
        if not sp.allowed_countries:
            errors.append('search_parameters.allowed_countries must not be empty')
        if not 0 <= sp.max_results <= MAX_RESULTS_CEILING:
            errors.append(f'search_parameters.max_results must be 0 (dynamic) or 1..{MAX_RESULTS_CEILING}')

        sc = self.schedule
        if sc.frequency not in SCHEDULE_FREQUENCIES:
            errors.append(f'schedule.frequency must be one of {SCHEDULE_FREQUENCIES}')
        if not _TIME_RE.match(sc.time):
            errors.append('schedule.time must be HH:MM')
        if sc.frequency == 'weekly' and not 1 <= sc.day_of_week <= 7:
            errors.append('schedule.day_of_week must be 1-7')
        if sc.frequency == 'monthly' and not 1 <= sc.day_of_month <= 31:
            errors.append('schedule.day_of_month must be 1-31')

        if self.webhook.enabled and not self.webhook.url.startswith(('http://', 'https://')):
            errors.append('webhook.url must be an http(s) URL when the webhook is enabled')
        return errors
