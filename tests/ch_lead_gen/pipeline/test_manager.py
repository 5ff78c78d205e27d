"""Tests for ch_lead_gen.pipeline.manager — rule execution, scheduling fan-out, RQ dispatch."""
from datetime import datetime
from unittest.mock import MagicMock, patch

import pytest
import requests

from ch_lead_gen.pipeline.manager import RuleManager, launch_job, run_job
from ch_lead_gen.services.companies_house import CompaniesHouseClient
from ch_lead_gen.services.job_tracking import JobTracker
from ch_lead_gen.services.rate_limit_tracker import RateLimitErrorTracker
from ch_lead_gen.services.rule_config import RuleDisabled, RuleNotFound
from ch_lead_gen.services.stats import StatsService

NOW = datetime(2025, 6, 1, 10, 0)


def _company(i, country='England'):
    return {
        'company_number': f'{i:08d}',
        'company_name': f'COMPANY {i} LTD',
        'date_of_creation': '2024-05-01',
        'registered_office_address': {'country': country},
    }


def _rate_limited():
    resp = MagicMock(status_code=429)
    return requests.HTTPError('429 Client Error: Too Many Requests', response=resp)


@pytest.fixture
def companies_house():
    ch = MagicMock()
    ch.search_companies.return_value = {'items': [_company(i) for i in range(3)]}
    return ch


@pytest.fixture
def apollo():
    apollo = MagicMock()
    apollo.is_hourly_limit_approaching.return_value = {'should_stop': False, 'message': 'Rate limits healthy'}
    apollo.find_people.side_effect = lambda name: [{'id': name, 'name': f'Director of {name}'}]
    apollo.enrich_people.side_effect = lambda people: [
        {'name': p['name'], 'email': f"{p['id'].split()[1]}@example.test", 'company_name_input': p['id']}
        for p in people
    ]
    apollo.get_remaining_daily_requests.return_value = 42
    return apollo


@pytest.fixture
def instantly():
    instantly = MagicMock()
    instantly.add_contacts.side_effect = lambda name, contacts: len(contacts)
    return instantly


@pytest.fixture
def webhook():
    webhook = MagicMock()
    webhook.send_rule_results.return_value = True
    return webhook


@pytest.fixture
def jobs(memory_store):
    return JobTracker(memory_store)


@pytest.fixture
def stats(memory_store):
    return StatsService(memory_store, now=lambda: NOW)


@pytest.fixture
def manager(config_store, companies_house, apollo, instantly, webhook, stats, memory_store, jobs, fake_clock):
    return RuleManager(
        config_store=config_store,
        companies_house=companies_house,
        apollo=apollo,
        instantly=instantly,
        webhook=webhook,
        stats=stats,
        store=memory_store,
        jobs=jobs,
        error_tracker=RateLimitErrorTracker(memory_store, window=600, threshold=5, clock=fake_clock),
        sleep=fake_clock.sleep,
        clock=fake_clock,
        now=lambda: NOW,
    )


class TestExecuteRule:
    """Happy path: search → people → enrich → upload → notify."""

    def test_completed_run(self, manager, apollo, instantly, webhook, stats):
        result = manager.execute_rule('new_companies')

        assert result['success'] is True
        assert result['status'] == 'completed'
        assert result['rule_name'] == 'New Companies'
        assert result['companies_found'] == 3
        assert result['companies_processed'] == 3
        assert result['contacts_found'] == 3
        assert result['contacts_added'] == 3
        assert result['partial_execution'] is False
        assert result['rate_limit_reached'] is False
        assert result['instantly_lead_list'] == 'CH - New'
        assert [c['email'] for c in result['contacts']] == [
            '0@example.test', '1@example.test', '2@example.test',
        ]
        instantly.add_contacts.assert_called_once()
        assert instantly.add_contacts.call_args[0][0] == 'CH - New'
        webhook.send_rule_results.assert_called_once()
        assert stats.get_rule_history('new_companies')[-1]['status'] == 'completed'

    def test_companies_processed_in_registry_order(self, manager, apollo):
        manager.execute_rule('new_companies')
        names = [c[0][0] for c in apollo.find_people.call_args_list]
        assert names == ['COMPANY 0 LTD', 'COMPANY 1 LTD', 'COMPANY 2 LTD']

    def test_inter_company_delay_skipped_after_last(self, manager, fake_clock):
        manager.execute_rule('new_companies')
        assert fake_clock.sleeps == [2, 2]

    def test_marks_rule_as_run(self, manager):
        assert manager.get_last_run('new_companies') is None
        manager.execute_rule('new_companies')
        assert manager.get_last_run('new_companies') == NOW

    def test_no_people_skips_enrichment(self, manager, apollo):
        apollo.find_people.side_effect = None
        apollo.find_people.return_value = []
        result = manager.execute_rule('new_companies')
        apollo.enrich_people.assert_not_called()
        assert result['contacts_found'] == 0

    def test_job_progress_updated(self, manager, jobs):
        jobs.start_job('job1', rule_key='new_companies')
        manager.execute_rule('new_companies', job_id='job1')
        progress = jobs.get_job('job1')['progress']
        assert progress['companies_found'] == 3
        assert progress['companies_processed'] == 3
        assert progress['contacts_found'] == 3
        assert progress['current_company'] == 'COMPANY 2 LTD'

    def test_api_usage_tracked(self, manager, stats):
        manager.execute_rule('new_companies')
        usage = stats.get_rule_api_usage('new_companies', days=1)[0]
        assert usage['companies_house'] == 1
        assert usage['apollo'] == 6
        assert usage['instantly'] == 4


class TestConfigurationErrors:
    """Unknown or disabled rules fail before any state changes."""

    def test_unknown_rule(self, manager, companies_house, stats):
        with pytest.raises(RuleNotFound):
            manager.execute_rule('nope')
        companies_house.search_companies.assert_not_called()
        assert stats.get_rule_history('nope') == []

    def test_disabled_rule(self, manager, companies_house, stats):
        with pytest.raises(RuleDisabled):
            manager.execute_rule('paused_rule')
        companies_house.search_companies.assert_not_called()
        assert stats.get_rule_history('paused_rule') == []
        assert manager.get_last_run('paused_rule') is None

    def test_force_runs_disabled_rule(self, manager):
        result = manager.execute_rule('paused_rule', force_run=True)
        assert result['status'] == 'completed'


class TestRegistryFailures:

    @patch('ch_lead_gen.services.companies_house.requests.get')
    def test_search_error_is_zero_companies(self, mock_get, manager, webhook, stats):
        mock_get.side_effect = requests.ConnectionError('registry down')
        manager.companies_house = CompaniesHouseClient(api_key='key')

        result = manager.execute_rule('new_companies')

        assert result['success'] is True
        assert result['status'] == 'completed'
        assert result['companies_found'] == 0
        webhook.send_rule_results.assert_not_called()
        assert manager.get_last_run('new_companies') == NOW
        assert stats.get_rule_history('new_companies')[-1]['status'] == 'completed'

    def test_confirmation_check_error_skips_one_company(self, manager, config_store, companies_house, apollo):
        config_store.update_rule('new_companies', {
            'name': 'New Companies',
            'search_parameters': {'days_ago': 350, 'check_confirmation_statement': True},
        })
        companies = [_company(i) for i in range(5)]
        companies_house.search_companies.return_value = {'items': companies}

        def check(company, today=None):
            if company['company_number'] == '00000002':
                raise requests.HTTPError('503 Server Error')
            return {'missing': True, 'company': company, 'reason': 'No confirmation statements found'}
        companies_house.check_confirmation_statement.side_effect = check

        result = manager.execute_rule('new_companies')

        assert result['companies_found'] == 4
        assert result['companies_processed'] == 4
        names = [c[0][0] for c in apollo.find_people.call_args_list]
        assert 'COMPANY 2 LTD' not in names
        assert len(names) == 4

    def test_unexpected_error_recorded_and_raised(self, manager, companies_house, stats):
        companies_house.search_companies.side_effect = RuntimeError('boom')
        with pytest.raises(RuntimeError):
            manager.execute_rule('new_companies')
        entry = stats.get_rule_history('new_companies')[-1]
        assert entry['status'] == 'error'
        assert entry['error_message'] == 'boom'
        assert manager.get_last_run('new_companies') is None


class TestSearchCompaniesForRule:

    def test_daily_rule_searches_single_day(self, manager, config_store, companies_house):
        manager.search_companies_for_rule('new_companies', config_store.get_rule('new_companies'))
        filters, max_results = companies_house.search_companies.call_args[0]
        assert filters['incorporated_from'] == filters['incorporated_to'] == '2025-05-02'
        assert filters['company_status'] == 'active'
        assert filters['company_type'] == 'ltd'
        assert max_results == 20

    def test_weekly_rule_searches_thirty_day_window(self, manager, config_store, companies_house):
        manager.search_companies_for_rule('paused_rule', config_store.get_rule('paused_rule'))
        filters = companies_house.search_companies.call_args[0][0]
        assert filters['incorporated_from'] == '2025-02-01'
        assert filters['incorporated_to'] == '2025-03-03'

    def test_dynamic_max_results_uses_apollo_quota(self, manager, config_store, companies_house):
        config_store.update_rule('new_companies', {'name': 'N', 'search_parameters': {'max_results': 0}})
        manager.search_companies_for_rule('new_companies', config_store.get_rule('new_companies'))
        assert companies_house.search_companies.call_args[0][1] == 42

    def test_country_filter(self, manager, config_store, companies_house):
        companies_house.search_companies.return_value = {'items': [
            _company(1, 'England'), _company(2, 'France'), _company(3, 'USA'), _company(4, ' great britain '),
        ]}
        companies = manager.search_companies_for_rule('new_companies', config_store.get_rule('new_companies'))
        assert [c['company_number'] for c in companies] == ['00000001', '00000004']

    def test_confirmation_filter_keeps_only_missing(self, manager, config_store, companies_house):
        config_store.update_rule('new_companies', {
            'name': 'N', 'search_parameters': {'check_confirmation_statement': True},
        })
        companies_house.check_confirmation_statement.side_effect = lambda company, today=None: {
            'missing': company['company_number'] == '00000001', 'company': company,
        }
        companies = manager.search_companies_for_rule('new_companies', config_store.get_rule('new_companies'))
        assert [c['company_number'] for c in companies] == ['00000001']


class TestPerCompanyFailures:

    def test_company_error_does_not_abort(self, manager, apollo):
        def find(name):
            if name == 'COMPANY 1 LTD':
                raise requests.ConnectionError('reset')
            return [{'id': name, 'name': 'X'}]
        apollo.find_people.side_effect = find

        result = manager.execute_rule('new_companies')

        assert result['success'] is True
        assert result['companies_processed'] == 3
        assert result['contacts_found'] == 2

    def test_rate_limit_errors_trigger_cooldown(self, manager, companies_house, apollo, fake_clock):
        companies_house.search_companies.return_value = {'items': [_company(i) for i in range(6)]}
        apollo.find_people.side_effect = _rate_limited()

        result = manager.execute_rule('new_companies')

        assert result['companies_processed'] == 6
        assert fake_clock.sleeps == [2, 2, 2, 2, 2, 300]
        assert manager.error_tracker.count() == 1

    def test_non_rate_limit_errors_not_tracked(self, manager, apollo):
        apollo.find_people.side_effect = ValueError('bad data')
        manager.execute_rule('new_companies')
        assert manager.error_tracker.count() == 0


class TestNonFatalIntegrations:

    def test_instantly_failure_keeps_success(self, manager, instantly, webhook):
        instantly.add_contacts.side_effect = requests.HTTPError('500 Server Error')
        result = manager.execute_rule('new_companies')
        assert result['success'] is True
        assert result['contacts_added'] == 0
        assert 'instantly_error' in result
        webhook.send_rule_results.assert_called_once()

    def test_webhook_exception_keeps_success(self, manager, webhook):
        webhook.send_rule_results.side_effect = ValueError('no url')
        result = manager.execute_rule('new_companies')
        assert result['success'] is True
        assert result['status'] == 'completed'

    def test_webhook_false_keeps_success(self, manager, webhook):
        webhook.send_rule_results.return_value = False
        assert manager.execute_rule('new_companies')['success'] is True

    def test_instantly_disabled_skips_upload(self, manager, config_store, instantly):
        config_store.update_rule('new_companies', {'name': 'N', 'instantly': {'enabled': False}})
        result = manager.execute_rule('new_companies')
        instantly.add_contacts.assert_not_called()
        assert result['instantly_lead_list'] is None


class TestCancellation:
    """Cancellation is honoured before start and before each company."""

    def test_cancelled_before_start(self, manager, jobs, companies_house, stats):
        jobs.start_job('job1')
        jobs.cancel_job('job1')

        result = manager.execute_rule('new_companies', job_id='job1')

        assert result['status'] == 'cancelled'
        companies_house.search_companies.assert_not_called()
        assert stats.get_rule_history('new_companies')[-1]['status'] == 'cancelled'

    def test_cancelled_mid_run(self, manager, jobs, apollo, instantly, webhook):
        jobs.start_job('job1')

        def find(name):
            jobs.cancel_job('job1')
            return [{'id': name, 'name': 'X'}]
        apollo.find_people.side_effect = find

        result = manager.execute_rule('new_companies', job_id='job1')

        assert result['status'] == 'cancelled'
        assert result['companies_processed'] == 1
        assert apollo.find_people.call_count == 1
        instantly.add_contacts.assert_not_called()
        webhook.send_rule_results.assert_not_called()
        assert manager.get_last_run('new_companies') is None


class TestPartialExecution:
    """Low Apollo quota ends the run early with what was gathered."""

    def test_stops_when_quota_low(self, manager, apollo, webhook, jobs, stats):
        apollo.is_hourly_limit_approaching.side_effect = [
            {'should_stop': False, 'message': 'Rate limits healthy'},
            {'should_stop': True, 'message': 'Hourly limit approaching: 8 requests remaining (threshold 10)'},
        ]

        result = manager.execute_rule('new_companies')

        assert result['success'] is True
        assert result['status'] == 'completed_partial'
        assert result['partial_execution'] is True
        assert result['rate_limit_reached'] is True
        assert result['companies_found'] == 3
        assert result['companies_processed'] == 1
        assert result['contacts_found'] == 1
        webhook.send_rule_results.assert_called_once()
        assert manager.get_last_run('new_companies') == NOW
        assert stats.get_rule_history('new_companies')[-1]['status'] == 'completed_partial'

    def test_stop_thresholds_passed_through(self, manager, apollo):
        manager.execute_rule('new_companies')
        apollo.is_hourly_limit_approaching.assert_called_with(10, 3)


class TestScheduling:

    def test_due_rules_only_enabled(self, manager):
        assert set(manager.get_due_rules()) == {'new_companies'}

    def test_not_due_after_run(self, manager):
        manager.execute_rule('new_companies')
        assert manager.get_due_rules() == {}

    def test_execute_scheduled_rules_isolates_failures(self, manager, config_store, companies_house):
        config_store.add_rule('second_rule', {
            'name': 'Second', 'schedule': {'enabled': True, 'frequency': 'daily', 'time': '08:00'},
        })

        def search(filters, max_results):
            if max_results == 20:
                raise RuntimeError('kaboom')
            return {'items': [_company(9)]}
        companies_house.search_companies.side_effect = search

        outcomes = manager.execute_scheduled_rules()

        assert outcomes['new_companies']['success'] is False
        assert outcomes['new_companies']['error'] == 'kaboom'
        assert outcomes['second_rule']['success'] is True
        assert outcomes['second_rule']['companies_found'] == 1

    def test_unparseable_last_run_ignored(self, manager, memory_store):
        memory_store.put('ch_lead_gen_rule_last_run_new_companies', 'yesterday-ish', 60)
        assert manager.get_last_run('new_companies') is None

    def test_unquoted_time_rule_runs_in_batch(self, manager, rules_path, memory_store, companies_house):
        with open(rules_path, 'a') as f:
            f.write(
                "  hand_edited:\n"
                "    name: Hand Edited\n"
                "    schedule:\n"
                "      enabled: true\n"
                "      frequency: daily\n"
                "      time: 10:00\n"
            )
        memory_store.put('ch_lead_gen_rule_last_run_hand_edited', '2025-05-31T10:00:00', 60)
        companies_house.search_companies.return_value = {'items': [_company(1)]}

        outcomes = manager.execute_scheduled_rules()

        assert set(outcomes) == {'new_companies', 'hand_edited'}
        assert outcomes['hand_edited']['success'] is True

    def test_unevaluable_schedule_is_not_due(self, manager, config_store, memory_store, caplog):
        config_store.add_rule('broken_rule', {
            'name': 'Broken', 'schedule': {'enabled': True, 'frequency': 'daily', 'time': '08:00'},
        })
        memory_store.put('ch_lead_gen_rule_last_run_broken_rule', '2025-05-01T08:00:00', 60)
        broken = config_store.get_rule('broken_rule')
        broken.schedule.time = '25:99'

        with patch.object(config_store, 'get_enabled_rules',
                          return_value={'new_companies': config_store.get_rule('new_companies'),
                                        'broken_rule': broken}):
            outcomes = manager.execute_scheduled_rules()

        assert set(outcomes) == {'new_companies'}
        assert outcomes['new_companies']['success'] is True
        assert 'Cannot evaluate schedule for rule broken_rule' in caplog.text


class TestRqDispatch:
    """launch_job() registers and enqueues; run_job() records the outcome."""

    @pytest.fixture
    def wired(self, monkeypatch, memory_store, config_store):
        import ch_lead_gen.extensions as extensions
        queue = MagicMock()
        monkeypatch.setattr(extensions, '_store', memory_store)
        monkeypatch.setattr(extensions, '_config_store', config_store)
        monkeypatch.setattr(extensions, '_queue', queue)
        return queue

    def test_launch_job_enqueues(self, wired, memory_store):
        job = launch_job(rule_key='new_companies')

        assert job['status'] == 'running'
        assert job['rule_key'] == 'new_companies'
        args, kwargs = wired.enqueue.call_args
        assert args == (run_job, job['job_id'], 'new_companies', False)
        assert kwargs['job_timeout'] == 14400
        assert JobTracker(memory_store).get_current_job()['job_id'] == job['job_id']

    def test_launch_unknown_rule_rejected(self, wired):
        with pytest.raises(RuleNotFound):
            launch_job(rule_key='nope')
        wired.enqueue.assert_not_called()

    def test_enqueue_failure_fails_job(self, wired, memory_store):
        wired.enqueue.side_effect = ConnectionError('redis down')

        with pytest.raises(ConnectionError):
            launch_job(rule_key='new_companies')

        jobs = JobTracker(memory_store)
        assert jobs.get_current_job() is None
        assert jobs.get_running_jobs() == []
        job_id = wired.enqueue.call_args[1]['job_id']
        job = jobs.get_job(job_id)
        assert job['status'] == 'failed'
        assert 'redis down' in job['error']

    def test_launch_disabled_rule_rejected_unless_forced(self, wired):
        with pytest.raises(RuleDisabled):
            launch_job(rule_key='paused_rule')
        launch_job(rule_key='paused_rule', force_run=True)
        wired.enqueue.assert_called_once()

    def test_run_job_completes(self, manager, jobs):
        jobs.start_job('job1', rule_key='new_companies')
        with patch('ch_lead_gen.pipeline.manager.build_rule_manager', return_value=manager):
            run_job('job1', 'new_companies')
        job = jobs.get_job('job1')
        assert job['status'] == 'completed'
        assert job['partial'] is False
        assert job['result']['contacts_found'] == 3
        assert 'contacts' not in job['result']

    def test_run_job_partial(self, manager, jobs, apollo):
        apollo.is_hourly_limit_approaching.return_value = {'should_stop': True, 'message': 'low'}
        jobs.start_job('job1', rule_key='new_companies')
        with patch('ch_lead_gen.pipeline.manager.build_rule_manager', return_value=manager):
            run_job('job1', 'new_companies')
        job = jobs.get_job('job1')
        assert job['status'] == 'completed'
        assert job['partial'] is True

    def test_run_job_failure(self, manager, jobs):
        jobs.start_job('job1', rule_key='nope')
        with patch('ch_lead_gen.pipeline.manager.build_rule_manager', return_value=manager):
            with pytest.raises(RuleNotFound):
                run_job('job1', 'nope')
        job = jobs.get_job('job1')
        assert job['status'] == 'failed'
        assert "Rule 'nope' not found" in job['error']

    def test_run_job_all_due(self, manager, jobs):
        jobs.start_job('job1')
        with patch('ch_lead_gen.pipeline.manager.build_rule_manager', return_value=manager):
            outcomes = run_job('job1')
        assert set(outcomes) == {'new_companies'}
        assert jobs.get_job('job1')['result']['new_companies']['status'] == 'completed'
