"""Tests for the rules blueprint: CRUD, per-rule stats, webhook test, dashboard auth."""
from unittest.mock import MagicMock, patch

import pytest
import requests

from ch_lead_gen.services.stats import StatsService


NEW_RULE = {
    'key': 'fresh_llps',
    'name': 'Fresh LLPs',
    'search_parameters': {'days_ago': 14, 'company_type': 'llp'},
    'schedule': {'enabled': True, 'frequency': 'weekly', 'day_of_week': 2},
}


class TestRead:

    def test_list_rules(self, client):
        body = client.get('/api/rules').get_json()
        assert body['version'] == 3
        assert [r['key'] for r in body['rules']] == ['new_companies', 'paused_rule']

    def test_get_rule(self, client):
        body = client.get('/api/rules/new_companies').get_json()
        assert body['name'] == 'New Companies'
        assert body['search_parameters']['days_ago'] == 30
        assert body['instantly']['lead_list_name'] == 'CH - New'

    def test_get_unknown(self, client):
        resp = client.get('/api/rules/nope')
        assert resp.status_code == 404
        assert resp.get_json()['error'] == "Rule 'nope' not found"


class TestWrite:
    """Writes validate first and bump the config version."""

    def test_create(self, client):
        resp = client.post('/api/rules', json=NEW_RULE)
        assert resp.status_code == 201
        assert resp.get_json()['search_parameters']['company_type'] == 'llp'
        assert client.get('/api/rules').get_json()['version'] == 4
        assert client.get('/api/rules/fresh_llps').status_code == 200

    def test_create_requires_key(self, client):
        resp = client.post('/api/rules', json={'name': 'No key'})
        assert resp.status_code == 400
        assert resp.get_json()['error'] == 'key is required'

    def test_create_duplicate(self, client):
        resp = client.post('/api/rules', json={'key': 'new_companies', 'name': 'Again'})
        assert resp.status_code == 400
        assert "Rule 'new_companies' already exists" in resp.get_json()['errors']

    def test_create_invalid(self, client):
        resp = client.post('/api/rules', json={
            'key': 'bad', 'name': 'Bad',
            'search_parameters': {'company_status': 'zombie'},
            'webhook': {'enabled': True, 'url': 'ftp://example.com'},
        })
        body = resp.get_json()
        assert resp.status_code == 400
        assert body['error'] == 'Invalid rule'
        assert len(body['errors']) == 2
        assert client.get('/api/rules').get_json()['version'] == 3

    def test_update(self, client):
        resp = client.put('/api/rules/paused_rule', json={'name': 'Now Active', 'enabled': True})
        assert resp.status_code == 200
        assert resp.get_json()['enabled'] is True
        assert client.get('/api/rules/paused_rule').get_json()['name'] == 'Now Active'

    def test_update_unknown(self, client):
        assert client.put('/api/rules/nope', json={'name': 'X'}).status_code == 404

    def test_delete(self, client):
        resp = client.delete('/api/rules/paused_rule')
        assert resp.get_json() == {'deleted': 'paused_rule'}
        assert client.get('/api/rules/paused_rule').status_code == 404

    def test_delete_unknown(self, client):
        assert client.delete('/api/rules/nope').status_code == 404


class TestRuleStats:

    def test_stats_for_rule(self, client, memory_store):
        stats = StatsService(memory_store)
        execution_id = stats.start_rule_execution('new_companies')
        stats.complete_rule_execution('new_companies', execution_id, {
            'companies_found': 4, 'companies_processed': 4,
            'contacts_found': 6, 'contacts_added': 6, 'execution_time': 12.5,
        })

        body = client.get('/api/rules/new_companies/stats?days=2').get_json()

        assert body['rule_name'] == 'New Companies'
        assert body['summary']['total_executions'] == 1
        assert body['history'][0]['contacts_found'] == 6
        assert len(body['api_usage']) == 2

    def test_stats_unknown_rule(self, client):
        assert client.get('/api/rules/nope/stats').status_code == 404


class TestWebhookTest:

    @patch('ch_lead_gen.services.webhook.requests.post')
    def test_uses_rule_webhook(self, mock_post, client):
        mock_post.return_value = MagicMock(status_code=200)

        resp = client.post('/api/rules/new_companies/test-webhook')

        assert resp.get_json()['success'] is True
        args, kwargs = mock_post.call_args
        assert args[0] == 'https://hooks.example.com/ch'
        assert kwargs['headers']['X-Webhook-Signature'].startswith('sha256=')

    @patch('ch_lead_gen.services.webhook.requests.post')
    def test_url_override(self, mock_post, client):
        mock_post.return_value = MagicMock(status_code=500)
        resp = client.post('/api/rules/paused_rule/test-webhook', json={'url': 'https://other.example.com/h'})
        body = resp.get_json()
        assert body['success'] is False
        assert body['status_code'] == 500
        assert 'X-Webhook-Signature' not in mock_post.call_args[1]['headers']

    @patch('ch_lead_gen.services.webhook.requests.post')
    def test_connection_error(self, mock_post, client):
        mock_post.side_effect = requests.ConnectionError('refused')
        body = client.post('/api/rules/new_companies/test-webhook').get_json()
        assert body['success'] is False
        assert 'refused' in body['message']

    def test_no_url(self, client):
        resp = client.post('/api/rules/paused_rule/test-webhook')
        assert resp.status_code == 400
        assert resp.get_json()['success'] is False


class TestDashboardAuth:
    """With DASHBOARD_PASSWORD set, everything except /health and /login needs auth."""

    @pytest.fixture
    def locked_client(self, app, monkeypatch):
        monkeypatch.setattr('ch_lead_gen.config.DASHBOARD_PASSWORD', 'pw')
        from ch_lead_gen import create_app
        locked = create_app()
        locked.config['TESTING'] = True
        with locked.test_client() as c:
            yield c

    def test_health_open(self, locked_client):
        assert locked_client.get('/health').status_code == 200

    def test_api_requires_auth(self, locked_client):
        resp = locked_client.get('/api/rules')
        assert resp.status_code == 401
        assert resp.get_json()['error'] == 'Authentication required'

    def test_header_auth(self, locked_client):
        assert locked_client.get('/api/rules', headers={'X-Dashboard-Password': 'pw'}).status_code == 200

    def test_login_session(self, locked_client):
        assert locked_client.post('/login', json={'password': 'wrong'}).status_code == 401
        assert locked_client.post('/login', json={'password': 'pw'}).get_json() == {'authenticated': True}
        assert locked_client.get('/api/rules').status_code == 200
        locked_client.post('/logout')
        assert locked_client.get('/api/rules').status_code == 401
