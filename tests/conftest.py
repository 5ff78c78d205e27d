"""Shared test fixtures."""
import logging

import pytest
import yaml

from ch_lead_gen.logging_config import RecentLogHandler
from ch_lead_gen.services.rule_config import RuleConfigStore
from ch_lead_gen.services.state_store import MemoryStore


class FakeRedis:
    """Minimal in-memory Redis fake (strings + lists, TTLs ignored)."""

    def __init__(self):
        self.data = {}
        self.lists = {}
        self.ttls = {}

    def get(self, key):
        return self.data.get(key)

    def setex(self, key, ttl, value):
        self.data[key] = value
        self.ttls[key] = ttl
        return True

    def delete(self, *keys):
        for k in keys:
            self.data.pop(k, None)
            self.lists.pop(k, None)

    def lpush(self, key, *values):
        lst = self.lists.setdefault(key, [])
        for v in values:
            lst.insert(0, v)
        return len(lst)

    def ltrim(self, key, start, end):
        lst = self.lists.get(key, [])
        self.lists[key] = lst[start:] if end == -1 else lst[start:end + 1]

    def lrange(self, key, start, end):
        lst = self.lists.get(key, [])
        return lst[start:] if end == -1 else lst[start:end + 1]


class FakeClock:
    """Manually advanced clock; sleep() advances time instead of blocking."""

    def __init__(self, start=1000.0):
        self.now = start
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds

    def advance(self, seconds):
        self.now += seconds


SAMPLE_RULES = {
    'version': 3,
    'defaults': {
        'days_ago': 180,
        'company_status': 'active',
        'company_type': 'ltd',
        'allowed_countries': ['GB'],
        'max_results': 50,
    },
    'rules': {
        'new_companies': {
            'name': 'New Companies',
            'description': 'Recently incorporated UK companies',
            'enabled': True,
            'search_parameters': {'days_ago': 30, 'allowed_countries': ['GB'], 'max_results': 20},
            'schedule': {'enabled': True, 'frequency': 'daily', 'time': '09:00'},
            'instantly': {'enabled': True, 'lead_list_name': 'CH - New'},
            'webhook': {'enabled': True, 'url': 'https://hooks.example.com/ch', 'secret': 's3cret'},
        },
        'paused_rule': {
            'name': 'Paused Rule',
            'enabled': False,
            'search_parameters': {'days_ago': 90},
            'schedule': {'enabled': True, 'frequency': 'weekly', 'day_of_week': 3},
        },
    },
}


@pytest.fixture
def fake_redis():
    """In-memory Redis fake with dict-backed storage."""
    return FakeRedis()


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def memory_store(fake_clock):
    """MemoryStore driven by the fake clock."""
    return MemoryStore(clock=fake_clock)


@pytest.fixture
def rules_path(tmp_path):
    """rules.yaml with two sample rules, written to a temp dir."""
    path = tmp_path / 'rules.yaml'
    path.write_text(yaml.safe_dump(SAMPLE_RULES, sort_keys=False))
    return str(path)


@pytest.fixture
def config_store(rules_path):
    return RuleConfigStore(rules_path)


@pytest.fixture
def app(monkeypatch, fake_redis, memory_store, config_store):
    """Flask test app wired to the memory store, temp rules file and fake Redis."""
    import ch_lead_gen.extensions as extensions
    monkeypatch.setattr(extensions, 'redis_client', fake_redis)
    monkeypatch.setattr(extensions, '_store', memory_store)
    monkeypatch.setattr(extensions, '_config_store', config_store)
    monkeypatch.setattr('ch_lead_gen.config.DASHBOARD_PASSWORD', None)

    from ch_lead_gen import create_app
    app = create_app()
    app.config['TESTING'] = True
    yield app

    for name in ('ch_lead_gen', 'services', 'pipeline', 'routes'):
        app_logger = logging.getLogger(name)
        app_logger.handlers = [h for h in app_logger.handlers if not isinstance(h, RecentLogHandler)]


@pytest.fixture
def client(app):
    """Flask test client."""
    with app.test_client() as c:
        yield c
