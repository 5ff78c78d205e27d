"""
Dashboard routes: health check, job dispatch/monitoring, logs, quota and stats.
"""
import logging
from flask import Blueprint, request, jsonify

from ch_lead_gen.extensions import redis_client, get_store, get_config_store
from ch_lead_gen.logging_config import get_recent_logs
from ch_lead_gen.pipeline.manager import launch_job
from ch_lead_gen.services.apollo import ApolloClient
from ch_lead_gen.services.job_tracking import JobTracker
from ch_lead_gen.services.rate_limiter import RateLimiter
from ch_lead_gen.services.rule_config import RuleError, RuleNotFound
from ch_lead_gen.services.stats import StatsService

logger = logging.getLogger('routes.dashboard')

bp = Blueprint('dashboard', __name__)


def _jobs():
    return JobTracker(get_store())


def _apollo():
    store = get_store()
    return ApolloClient(rate_limiter=RateLimiter(store), store=store)


@bp.route('/health')
def health_check():
    """Health check endpoint."""
    return jsonify({"status": "healthy"}), 200


# ── Jobs ─────────────────────────────────────────────────────────────────────

@bp.route('/api/run', methods=['POST'])
def run_rules():
    """Queue a run of one rule (`rule_key`) or of every due rule."""
    data = request.get_json(silent=True) or {}
    rule_key = data.get('rule_key') or None
    force_run = bool(data.get('force_run', False))
    try:
        job = launch_job(rule_key=rule_key, force_run=force_run)
    except RuleNotFound as e:
        return jsonify({'error': str(e)}), 404
    except RuleError as e:
        return jsonify({'error': str(e)}), 400
    except Exception as e:
        logger.error("Failed to queue job: %s", e, exc_info=True)
        return jsonify({'error': str(e)}), 500
    return jsonify(job), 202


@bp.route('/api/jobs/current')
def current_job():
    """The running job behind the current-job pointer, if any."""
    job = _jobs().get_current_job()
    return jsonify({'job': job, 'running': job is not None})


@bp.route('/api/jobs/<job_id>')
def get_job(job_id):
    job = _jobs().get_job(job_id)
    if not job:
        return jsonify({'error': 'Job not found'}), 404
    return jsonify(job)


@bp.route('/api/jobs/<job_id>/cancel', methods=['POST'])
def cancel_job(job_id):
    """Request cooperative cancellation; the worker stops at its next checkpoint."""
    jobs = _jobs()
    job = jobs.get_job(job_id)
    if not job:
        return jsonify({'error': 'Job not found'}), 404
    if not jobs.cancel_job(job_id):
        return jsonify({'error': f"Job already {job['status']}", 'job': job}), 409
    return jsonify(jobs.get_job(job_id))


# ── Logs / quota / stats ─────────────────────────────────────────────────────

@bp.route('/api/logs')
def recent_logs():
    limit = request.args.get('limit', 100, type=int)
    level = request.args.get('level')
    try:
        logs = get_recent_logs(redis_client, limit=limit, level=level)
    except Exception as e:
        logger.error("Error reading recent logs: %s", e)
        return jsonify({'logs': [], 'error': str(e)})
    return jsonify({'logs': logs})


@bp.route('/api/apollo/limits')
def apollo_limits():
    """Current Apollo quota with the go/no-go verdict used before each call."""
    apollo = _apollo()
    if request.args.get('refresh') in ('1', 'true'):
        apollo.clear_cached_limits()
    return jsonify({
        'limits': apollo.get_rate_limits(),
        'can_proceed': apollo.can_make_api_call(),
        'hourly': apollo.is_hourly_limit_approaching(),
    })


@bp.route('/api/stats')
def get_stats():
    """Overall API usage plus per-rule summaries."""
    days = request.args.get('days', 7, type=int)
    stats = StatsService(get_store())
    try:
        rules = get_config_store().get_all_rules()
    except Exception as e:
        logger.error("Error loading rules for stats: %s", e, exc_info=True)
        rules = {}
    return jsonify({
        'api_usage': stats.get_overall_api_usage(days),
        'rules': stats.get_all_rules_stats(rules),
    })
