"""
Rule Manager: executes lead-generation rules end to end.

A rule run walks:
  SEARCH (Companies House) → [per company] FIND + ENRICH (Apollo)
  → UPLOAD (Instantly) → NOTIFY (webhook)

Companies are processed one at a time, in registry order. One company's
failure never aborts the run; HTTP 429s feed the shared rate-limit error
tracker, which triggers a cool-down once too many pile up. Apollo quota is
polled before each company, and a low quota ends the run early with partial
results. Cancellation is cooperative: the job record is checked before the
run starts, before each company and before the upload.

Runs are dispatched to RQ via launch_job() and executed by run_job().
"""
import logging
import time
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from ch_lead_gen.config import (
    INTER_COMPANY_DELAY, RATE_LIMIT_COOLDOWN, LAST_RUN_TTL, JOB_TIMEOUT,
    APOLLO_STOP_HOURLY_THRESHOLD, APOLLO_STOP_MINUTE_THRESHOLD,
)
from ch_lead_gen.pipeline.schedule import is_due
from ch_lead_gen.services.companies_house import (
    normalize_country, company_country, company_display_name,
)
from ch_lead_gen.services.rate_limit_tracker import RateLimitErrorTracker, is_rate_limit_error
from ch_lead_gen.services.rule_config import RuleDisabled, RuleNotFound

logger = logging.getLogger('pipeline.manager')

LAST_RUN_PREFIX = 'ch_lead_gen_rule_last_run_'
DEFAULT_MAX_RESULTS = 200
NON_DAILY_WINDOW_DAYS = 30
ENRICH_BATCH_SIZE = 10


class RuleManager:

    def __init__(self, config_store, companies_house, apollo, instantly, webhook, stats, store,
                 jobs=None, error_tracker: RateLimitErrorTracker = None,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.monotonic,
                 now: Callable[[], datetime] = datetime.now,
                 inter_company_delay: float = INTER_COMPANY_DELAY,
                 cooldown: float = RATE_LIMIT_COOLDOWN,
                 hourly_stop_threshold: int = APOLLO_STOP_HOURLY_THRESHOLD,
                 minute_stop_threshold: int = APOLLO_STOP_MINUTE_THRESHOLD):
        self.config_store = config_store
        self.companies_house = companies_house
        self.apollo = apollo
        self.instantly = instantly
        self.webhook = webhook
        self.stats = stats
        self.store = store
        self.jobs = jobs
        self.error_tracker = error_tracker or RateLimitErrorTracker(store)
        self._sleep = sleep
        self._clock = clock
        self._now = now
        self.inter_company_delay = inter_company_delay
        self.cooldown = cooldown
        self.hourly_stop_threshold = hourly_stop_threshold
        self.minute_stop_threshold = minute_stop_threshold

    # ── Rules and schedule ────────────────────────────────────────────

    def get_rule(self, rule_key: str):
        return self.config_store.get_rule(rule_key)

    def get_all_rules(self):
        return self.config_store.get_all_rules()

    def get_last_run(self, rule_key: str) -> Optional[datetime]:
        value = self.store.get(f'{LAST_RUN_PREFIX}{rule_key}')
        if not value:
            return None
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            logger.warning("Ignoring unparseable last-run marker for %s: %r", rule_key, value)
            return None

    def mark_rule_as_run(self, rule_key: str):
        self.store.put(f'{LAST_RUN_PREFIX}{rule_key}', self._now().isoformat(), LAST_RUN_TTL)

    def is_rule_due(self, rule_key: str, rule, now: datetime = None) -> bool:
        """A rule whose schedule cannot be evaluated is reported and treated as not due."""
        try:
            return is_due(rule, self.get_last_run(rule_key), now or self._now())
        except Exception as e:
            logger.error("Cannot evaluate schedule for rule %s (%r): %s", rule_key, rule.schedule, e)
            return False

    def get_due_rules(self, now: datetime = None) -> Dict:
        now = now or self._now()
        return {
            key: rule for key, rule in self.config_store.get_enabled_rules().items()
            if self.is_rule_due(key, rule, now)
        }

    # ── Search ────────────────────────────────────────────────────────

    def search_companies_for_rule(self, rule_key: str, rule) -> List[Dict]:
        """
        Companies for a rule after country and (optional) confirmation
        statement filtering. Registry failures come back as [].
        """
        sp = rule.search_parameters
        max_results = sp.max_results if sp.max_results is not None else DEFAULT_MAX_RESULTS
        if max_results == 0:
            max_results = self.apollo.get_remaining_daily_requests()
            logger.info("max_results=0 for %s, using remaining Apollo daily quota: %d", rule_key, max_results)

        today = self._now().date()
        to_date = today - timedelta(days=sp.days_ago)
        if rule.schedule.frequency == 'daily':
            # One incorporation day per daily run, so consecutive runs never overlap
            from_date = to_date
        else:
            from_date = today - timedelta(days=sp.days_ago + NON_DAILY_WINDOW_DAYS)

        filters = {
            'incorporated_from': from_date.isoformat(),
            'incorporated_to': to_date.isoformat(),
            'company_status': sp.company_status,
            'company_type': sp.company_type,
        }
        logger.info("Searching companies for %s: %s (max %d)", rule_key, filters, max_results)

        response = self.companies_house.search_companies(filters, max_results)
        self.stats.track_api_usage(rule_key, 'companies_house', 'search')
        if not response or not response.get('items'):
            return []

        allowed = {c.upper() for c in sp.allowed_countries}
        companies = []
        for company in response['items']:
            country = normalize_country(company_country(company))
            if country in allowed:
                companies.append(company)
            else:
                logger.debug("Filtered out %s (country %s)", company_display_name(company), country)
        logger.info("%d of %d companies match allowed countries %s",
                    len(companies), len(response['items']), sorted(allowed))

        if not sp.check_confirmation_statement:
            return companies

        missing = []
        for company in companies:
            try:
                verdict = self.companies_house.check_confirmation_statement(company, today=today)
                self.stats.track_api_usage(rule_key, 'companies_house', 'filing_history')
            except Exception as e:
                logger.warning("Error checking confirmation statement for %s: %s",
                               company.get('company_number'), e)
                continue
            if verdict['missing']:
                missing.append(verdict['company'])
        logger.info("%d of %d companies are missing confirmation statements", len(missing), len(companies))
        return missing

    # ── Execution ─────────────────────────────────────────────────────

    def _cancelled(self, job_id) -> bool:
        return bool(job_id and self.jobs and self.jobs.is_job_cancelled(job_id))

    def _progress(self, job_id, **progress):
        if job_id and self.jobs:
            self.jobs.update_progress(job_id, **progress)

    def execute_rule(self, rule_key: str, force_run: bool = False, job_id: str = None) -> Dict:
        """
        Run one rule. Raises RuleNotFound / RuleDisabled before touching any
        state; any other unexpected error is recorded and re-raised.
        """
        rule = self.config_store.get_rule(rule_key)
        if rule is None:
            raise RuleNotFound(rule_key)
        if not rule.enabled and not force_run:
            raise RuleDisabled(rule_key)

        logger.info("Starting rule %s (%s)%s", rule_key, rule.name, ' [forced]' if force_run else '')
        started = self._clock()
        execution_id = self.stats.start_rule_execution(rule_key)
        results = {
            'success': True,
            'status': 'completed',
            'rule_key': rule_key,
            'rule_name': rule.name,
            'companies_found': 0,
            'companies_processed': 0,
            'contacts_found': 0,
            'contacts_added': 0,
            'execution_time': 0,
            'contacts': [],
            'rate_limit_reached': False,
            'partial_execution': False,
            'instantly_lead_list': rule.lead_list_name if rule.instantly.enabled else None,
        }

        try:
            if self._cancelled(job_id):
                return self._finish_cancelled(rule_key, execution_id, results, started)

            companies = self.search_companies_for_rule(rule_key, rule)
            results['companies_found'] = len(companies)
            self._progress(job_id, companies_found=len(companies))

            if not companies:
                logger.info("No companies found for rule %s", rule_key)
                return self._finish_completed(rule_key, rule, execution_id, results, started, notify=False)

            contacts = results['contacts']
            for index, company in enumerate(companies):
                if self._cancelled(job_id):
                    return self._finish_cancelled(rule_key, execution_id, results, started)

                quota = self.apollo.is_hourly_limit_approaching(self.hourly_stop_threshold, self.minute_stop_threshold)
                if quota['should_stop']:
                    logger.warning("Stopping rule %s early after %d/%d companies: %s",
                                   rule_key, index, len(companies), quota['message'])
                    results['rate_limit_reached'] = True
                    results['partial_execution'] = True
                    results['status'] = 'completed_partial'
                    results['stop_reason'] = quota['message']
                    break

                if self.error_tracker.should_pause():
                    logger.warning("Too many rate limit errors, pausing %ss before continuing", self.cooldown)
                    self._sleep(self.cooldown)
                    self.error_tracker.clear()

                name = company_display_name(company)
                self._progress(job_id, current_company=name)
                logger.info("Processing company %d/%d for %s: %s", index + 1, len(companies), rule_key, name)

                try:
                    people = self.apollo.find_people(name)
                    self.stats.track_api_usage(rule_key, 'apollo', 'people_search')
                    if people:
                        enriched = self.apollo.enrich_people(people)
                        self.stats.track_api_usage(rule_key, 'apollo', 'bulk_enrich',
                                                   -(-len(people) // ENRICH_BATCH_SIZE))
                        if enriched:
                            contacts.extend(enriched)
                            logger.info("Added %d contacts for %s", len(enriched), name)
                except Exception as e:
                    logger.error("Error processing company %s for rule %s: %s", name, rule_key, e)
                    if is_rate_limit_error(e):
                        self.error_tracker.record()

                results['companies_processed'] = index + 1
                results['contacts_found'] = len(contacts)
                self._progress(job_id, companies_processed=index + 1, contacts_found=len(contacts))

                if index < len(companies) - 1:
                    self._sleep(self.inter_company_delay)

            if self._cancelled(job_id):
                return self._finish_cancelled(rule_key, execution_id, results, started)

            if contacts and rule.instantly.enabled:
                try:
                    results['contacts_added'] = self.instantly.add_contacts(rule.lead_list_name, contacts)
                    self.stats.track_api_usage(rule_key, 'instantly', 'create_list')
                    self.stats.track_api_usage(rule_key, 'instantly', 'add_contacts', len(contacts))
                    logger.info("Added %d contacts to Instantly list %s",
                                results['contacts_added'], rule.lead_list_name)
                except Exception as e:
                    logger.error("Instantly upload failed for rule %s: %s", rule_key, e)
                    results['instantly_error'] = str(e)
            elif contacts:
                logger.info("Instantly disabled for rule %s, skipping upload", rule_key)

            return self._finish_completed(rule_key, rule, execution_id, results, started, notify=True)

        except Exception as e:
            logger.error("Rule %s failed: %s", rule_key, e, exc_info=True)
            self.stats.record_rule_error(rule_key, execution_id, str(e))
            raise

    def _finish_completed(self, rule_key, rule, execution_id, results, started, notify) -> Dict:
        results['contacts_found'] = len(results['contacts'])
        results['execution_time'] = round(self._clock() - started, 2)
        self.mark_rule_as_run(rule_key)
        self.stats.complete_rule_execution(rule_key, execution_id, results)
        logger.info("Completed rule %s: %d companies, %d contacts, %d added in %.2fs%s",
                    rule_key, results['companies_found'], results['contacts_found'],
                    results['contacts_added'], results['execution_time'],
                    ' (partial)' if results['partial_execution'] else '')

        if notify:
            try:
                if not self.webhook.send_rule_results(rule_key, rule, results):
                    logger.warning("Webhook delivery failed for rule %s", rule_key)
            except Exception as e:
                logger.error("Failed to send webhook for rule %s: %s", rule_key, e)
        return results

    def _finish_cancelled(self, rule_key, execution_id, results, started) -> Dict:
        results['status'] = 'cancelled'
        results['success'] = False
        results['cancelled'] = True
        results['contacts_found'] = len(results['contacts'])
        results['execution_time'] = round(self._clock() - started, 2)
        self.stats.cancel_rule_execution(rule_key, execution_id, results)
        logger.info("Rule %s cancelled after %d companies", rule_key, results['companies_processed'])
        return results

    def execute_scheduled_rules(self, job_id: str = None, now: datetime = None) -> Dict[str, Dict]:
        """Run every due rule; one rule's failure is recorded and the batch continues."""
        due = self.get_due_rules(now)
        logger.info("%d rule(s) due: %s", len(due), ', '.join(due) or '-')

        outcomes = {}
        for rule_key, rule in due.items():
            if self._cancelled(job_id):
                logger.info("Job %s cancelled, skipping remaining rules", job_id)
                break
            try:
                outcomes[rule_key] = self.execute_rule(rule_key, job_id=job_id)
            except Exception as e:
                logger.error("Scheduled rule %s failed: %s", rule_key, e)
                outcomes[rule_key] = {
                    'success': False,
                    'status': 'failed',
                    'rule_key': rule_key,
                    'rule_name': rule.name,
                    'error': str(e),
                }
        return outcomes


# ── Wiring ────────────────────────────────────────────────────────────────────

def build_rule_manager(store=None, config_store=None) -> RuleManager:
    """RuleManager wired to the production clients and shared state store."""
    from ch_lead_gen.extensions import get_config_store, get_store
    from ch_lead_gen.services.apollo import ApolloClient
    from ch_lead_gen.services.companies_house import CompaniesHouseClient
    from ch_lead_gen.services.instantly import InstantlyClient
    from ch_lead_gen.services.job_tracking import JobTracker
    from ch_lead_gen.services.rate_limiter import RateLimiter
    from ch_lead_gen.services.stats import StatsService
    from ch_lead_gen.services.webhook import WebhookClient

    store = store or get_store()
    limiter = RateLimiter(store)
    return RuleManager(
        config_store=config_store or get_config_store(),
        companies_house=CompaniesHouseClient(rate_limiter=limiter),
        apollo=ApolloClient(rate_limiter=limiter, store=store),
        instantly=InstantlyClient(rate_limiter=limiter),
        webhook=WebhookClient(),
        stats=StatsService(store),
        store=store,
        jobs=JobTracker(store),
    )


# ── Async dispatch (RQ) ───────────────────────────────────────────────────────

def launch_job(rule_key: str = None, force_run: bool = False) -> Dict:
    """
    Register a job and enqueue it on the RQ worker queue.

    Unknown or disabled rules are rejected here, before anything is queued.
    """
    from ch_lead_gen.extensions import get_config_store, get_queue, get_store
    from ch_lead_gen.services.job_tracking import JobTracker, generate_job_id

    if rule_key:
        rule = get_config_store().get_rule(rule_key)
        if rule is None:
            raise RuleNotFound(rule_key)
        if not rule.enabled and not force_run:
            raise RuleDisabled(rule_key)

    jobs = JobTracker(get_store())
    job_id = generate_job_id()
    job = jobs.start_job(job_id, rule_key=rule_key, force_run=force_run)
    try:
        get_queue().enqueue(run_job, job_id, rule_key, force_run, job_timeout=JOB_TIMEOUT, job_id=job_id)
    except Exception as e:
        jobs.fail_job(job_id, f'Failed to enqueue: {e}')
        raise
    logger.info("Enqueued job %s", job_id)
    return job


def run_job(job_id: str, rule_key: str = None, force_run: bool = False) -> Dict:
    """RQ entry point: run one rule or every due rule, recording the job outcome."""
    manager = build_rule_manager()
    jobs = manager.jobs
    logger.info("Worker picked up job %s (rule=%s)", job_id, rule_key or 'all due')

    try:
        if rule_key:
            result = manager.execute_rule(rule_key, force_run=force_run, job_id=job_id)
            partial = result.get('partial_execution', False)
            summary = {k: v for k, v in result.items() if k != 'contacts'}
        else:
            outcomes = manager.execute_scheduled_rules(job_id=job_id)
            partial = any(o.get('partial_execution') for o in outcomes.values())
            summary = {
                key: {k: v for k, v in outcome.items() if k != 'contacts'}
                for key, outcome in outcomes.items()
            }
            result = outcomes
    except Exception as e:
        jobs.fail_job(job_id, str(e))
        raise

    if partial:
        jobs.complete_job_with_partial_results(job_id, summary, reason='Apollo rate limit approaching')
    else:
        jobs.complete_job(job_id, summary)
    return result
