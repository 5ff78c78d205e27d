"""
Rule routes: CRUD over the rules config, per-rule stats and webhook testing.
"""
import logging
from flask import Blueprint, request, jsonify

from ch_lead_gen.extensions import get_store, get_config_store
from ch_lead_gen.services.rule_config import RuleNotFound, RuleValidationError
from ch_lead_gen.services.stats import StatsService
from ch_lead_gen.services.webhook import WebhookClient

logger = logging.getLogger('routes.rules')

bp = Blueprint('rules', __name__)


def _rule_json(key, rule):
    return {'key': key, **rule.to_dict()}


@bp.errorhandler(RuleNotFound)
def _not_found(e):
    return jsonify({'error': str(e)}), 404


@bp.errorhandler(RuleValidationError)
def _invalid(e):
    return jsonify({'error': 'Invalid rule', 'errors': e.errors}), 400


@bp.route('/api/rules')
def list_rules():
    store = get_config_store()
    rules = store.get_all_rules()
    return jsonify({
        'version': store.version,
        'rules': [_rule_json(key, rule) for key, rule in rules.items()],
    })


@bp.route('/api/rules', methods=['POST'])
def create_rule():
    data = request.get_json(silent=True) or {}
    rule_key = data.pop('key', None)
    if not rule_key:
        return jsonify({'error': 'key is required'}), 400
    rule = get_config_store().add_rule(rule_key, data)
    logger.info("Rule %s created", rule_key)
    return jsonify(_rule_json(rule_key, rule)), 201


@bp.route('/api/rules/<rule_key>')
def get_rule(rule_key):
    rule = get_config_store().get_rule(rule_key)
    if rule is None:
        raise RuleNotFound(rule_key)
    return jsonify(_rule_json(rule_key, rule))


@bp.route('/api/rules/<rule_key>', methods=['PUT'])
def update_rule(rule_key):
    data = request.get_json(silent=True) or {}
    data.pop('key', None)
    rule = get_config_store().update_rule(rule_key, data)
    logger.info("Rule %s updated", rule_key)
    return jsonify(_rule_json(rule_key, rule))


@bp.route('/api/rules/<rule_key>', methods=['DELETE'])
def delete_rule(rule_key):
    get_config_store().delete_rule(rule_key)
    logger.info("Rule %s deleted", rule_key)
    return jsonify({'deleted': rule_key})


@bp.route('/api/rules/<rule_key>/stats')
def rule_stats(rule_key):
    rule = get_config_store().get_rule(rule_key)
    if rule is None:
        raise RuleNotFound(rule_key)
    limit = request.args.get('limit', 10, type=int)
    days = request.args.get('days', 7, type=int)
    stats = StatsService(get_store())
    return jsonify({
        'rule_key': rule_key,
        'rule_name': rule.name,
        'summary': stats.get_rule_summary_stats(rule_key),
        'history': stats.get_rule_history(rule_key, limit),
        'api_usage': stats.get_rule_api_usage(rule_key, days),
    })


@bp.route('/api/rules/<rule_key>/test-webhook', methods=['POST'])
def test_webhook(rule_key):
    """Send a test event to the rule's webhook (or a URL given in the body)."""
    rule = get_config_store().get_rule(rule_key)
    if rule is None:
        raise RuleNotFound(rule_key)
    data = request.get_json(silent=True) or {}
    url = data.get('url') or rule.webhook.url
    secret = data.get('secret', rule.webhook.secret)
    if not url:
        return jsonify({'success': False, 'message': 'No webhook URL configured'}), 400
    return jsonify(WebhookClient().test_webhook(url, secret))
