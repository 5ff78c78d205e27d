#!/usr/bin/env python3
"""
Command-line entry point.

Usage:
    ch-lead-gen run                      # run every rule that is due
    ch-lead-gen run --rule KEY [--force] # run one rule now
    ch-lead-gen run --list               # show rules and whether they are due
    ch-lead-gen rules list
    ch-lead-gen rules show KEY [--stats]
    ch-lead-gen rules stats KEY
    ch-lead-gen rules test KEY [--yes]   # due check, then optional run
    ch-lead-gen rules rate-limits
    ch-lead-gen rules clear-cache

Runs started here execute in-process (no RQ worker needed).
"""
import argparse
import sys

from ch_lead_gen.logging_config import configure_logging
from ch_lead_gen.services.rule_config import RuleError

DAY_NAMES = ['', 'Monday', 'Tuesday', 'Wednesday', 'Thursday', 'Friday', 'Saturday', 'Sunday']


def _manager():
    from ch_lead_gen.pipeline.manager import build_rule_manager
    return build_rule_manager()


def _print_result(result):
    status = result.get('status', 'completed')
    print(f"  [{result['rule_key']}] {result.get('rule_name', '')}: {status}")
    if 'error' in result:
        print(f"    Error: {result['error']}")
        return
    print(f"    Companies found:     {result['companies_found']}")
    print(f"    Companies processed: {result['companies_processed']}")
    print(f"    Contacts found:      {result['contacts_found']}")
    print(f"    Contacts added:      {result['contacts_added']}")
    print(f"    Execution time:      {result['execution_time']}s")
    if result.get('partial_execution'):
        print(f"    Stopped early: {result.get('stop_reason', 'Apollo rate limit approaching')}")


def _schedule_label(rule):
    schedule = rule.schedule
    if not schedule.enabled:
        return 'Manual only'
    return f'{schedule.frequency.capitalize()} at {schedule.time}'


# ── run ──────────────────────────────────────────────────────────────────────

def cmd_run(args):
    manager = _manager()

    if args.list:
        rules = manager.get_all_rules()
        if not rules:
            print('No rules configured.')
            return 0
        for key, rule in rules.items():
            last_run = manager.get_last_run(key)
            due = rule.enabled and manager.is_rule_due(key, rule)
            print(f"  {key:<35} {'enabled ' if rule.enabled else 'disabled'}  "
                  f"{_schedule_label(rule):<22} due={'yes' if due else 'no':<3} "
                  f"last run: {last_run.strftime('%Y-%m-%d %H:%M') if last_run else 'never'}")
        return 0

    if args.rule:
        print(f'Running rule {args.rule}...')
        _print_result(manager.execute_rule(args.rule, force_run=args.force))
        return 0

    outcomes = manager.execute_scheduled_rules()
    if not outcomes:
        print('No rules due to run.')
        return 0
    for result in outcomes.values():
        _print_result(result)
    return 0 if all(r.get('success') for r in outcomes.values()) else 1


# ── rules ────────────────────────────────────────────────────────────────────

def _require_rule(manager, rule_key):
    if not rule_key:
        print('Please specify a rule key. Use "rules list" to see available rules.', file=sys.stderr)
        return None
    rule = manager.get_rule(rule_key)
    if rule is None:
        print(f"Rule '{rule_key}' not found.", file=sys.stderr)
    return rule


def _print_stats(manager, rule_key):
    summary = manager.stats.get_rule_summary_stats(rule_key)
    total = summary['total_executions']
    rate = f"{summary['successful_executions'] / total * 100:.1f}%" if total else 'N/A'
    print('Statistics:')
    print(f"  Executions:       {total} ({summary['successful_executions']} ok, "
          f"{summary['partial_executions']} partial, {summary['failed_executions']} failed, "
          f"{summary['cancelled_executions']} cancelled)")
    print(f"  Success rate:     {rate}")
    print(f"  Companies found:  {summary['total_companies_found']}")
    print(f"  Contacts found:   {summary['total_contacts_found']}")
    print(f"  Contacts added:   {summary['total_contacts_added']}")
    print(f"  Avg. run time:    {summary['average_execution_time']:.2f}s")
    print(f"  Last run:         {summary['last_run'] or 'never'}")

    history = manager.stats.get_rule_history(rule_key, 5)
    if history:
        print('Recent executions:')
        for entry in reversed(history):
            print(f"  {entry['end_datetime']}  {entry['status']:<18} "
                  f"companies={entry.get('companies_found', 0)} contacts={entry.get('contacts_found', 0)}")


def rules_list(manager, args):
    rules = manager.get_all_rules()
    if not rules:
        print('No rules configured.')
        return 0
    for key, rule in rules.items():
        summary = manager.stats.get_rule_summary_stats(key)
        print(f"  {key:<35} {rule.name:<40} {'enabled ' if rule.enabled else 'disabled'}  "
              f"{_schedule_label(rule):<22} list: {rule.lead_list_name}  "
              f"last run: {summary['last_run'] or 'never'}")
    return 0


def rules_show(manager, args):
    rule = _require_rule(manager, args.rule)
    if rule is None:
        return 1
    sp = rule.search_parameters
    print(f'Rule: {args.rule}')
    print(f'  Name:        {rule.name}')
    print(f'  Description: {rule.description}')
    print(f"  Status:      {'Enabled' if rule.enabled else 'Disabled'}")
    print(f'  Schedule:    {_schedule_label(rule)}')
    if rule.schedule.enabled and rule.schedule.frequency == 'weekly':
        print(f'    Day: {DAY_NAMES[rule.schedule.day_of_week]}')
    elif rule.schedule.enabled and rule.schedule.frequency == 'monthly':
        print(f'    Day of month: {rule.schedule.day_of_month}')
    print('  Search:')
    print(f'    Company age:   {sp.days_ago} days')
    print(f'    Status / type: {sp.company_status} / {sp.company_type}')
    print(f"    Countries:     {', '.join(sp.allowed_countries)}")
    print(f"    Max results:   {sp.max_results if sp.max_results else 'dynamic (Apollo quota)'}")
    print(f"    Confirmation statement check: {'Yes' if sp.check_confirmation_statement else 'No'}")
    print(f"  Instantly:   {'Enabled, list ' + rule.lead_list_name if rule.instantly.enabled else 'Disabled'}")
    if rule.webhook.enabled:
        print(f"  Webhook:     {rule.webhook.url} (secret {'configured' if rule.webhook.secret else 'not set'})")
    else:
        print('  Webhook:     Disabled')
    if args.stats:
        _print_stats(manager, args.rule)
    return 0


def rules_stats(manager, args):
    if _require_rule(manager, args.rule) is None:
        return 1
    _print_stats(manager, args.rule)
    return 0


def rules_test(manager, args):
    rule = _require_rule(manager, args.rule)
    if rule is None:
        return 1
    if not rule.enabled:
        print('Warning: rule is currently disabled')
    print(f"Scheduled to run now: {'yes' if manager.is_rule_due(args.rule, rule) else 'no'}")

    if not args.yes:
        answer = input('Run this rule now? [y/N] ').strip().lower()
        if answer not in ('y', 'yes'):
            return 0
    _print_result(manager.execute_rule(args.rule, force_run=True))
    return 0


def rules_rate_limits(manager, args):
    verdict = manager.apollo.can_make_api_call()
    print('Apollo rate limits:')
    for window, data in verdict['limits'].items():
        print(f"  {window:<11} limit={data['limit']:<6} used={data['used']:<6} remaining={data['remaining']}")
    print(f"  Can proceed: {'yes' if verdict['can_proceed'] else 'no'} ({verdict['message']})")

    usage = manager.apollo.get_api_usage_stats()
    if 'error' in usage:
        print(f"  Usage stats unavailable: {usage['message']}")
    else:
        print(f"  Requests today: {usage['total_requests_today']}")
        for endpoint, count in sorted(usage['endpoint_usage'].items()):
            print(f'    {endpoint}: {count}')
    return 0


def rules_clear_cache(manager, args):
    manager.apollo.clear_cached_limits()
    manager.config_store.reload()
    print('Cleared cached Apollo rate limits and reloaded rules config.')
    return 0


RULE_ACTIONS = {
    'list': rules_list,
    'show': rules_show,
    'stats': rules_stats,
    'test': rules_test,
    'rate-limits': rules_rate_limits,
    'clear-cache': rules_clear_cache,
}


def cmd_rules(args):
    return RULE_ACTIONS[args.action](_manager(), args)


def build_parser():
    parser = argparse.ArgumentParser(prog='ch-lead-gen', description='Companies House lead generation')
    sub = parser.add_subparsers(dest='command', required=True)

    run = sub.add_parser('run', help='Run due rules, or one rule with --rule')
    run.add_argument('--rule', help='Rule key to run')
    run.add_argument('--force', action='store_true', help='Run even if the rule is disabled')
    run.add_argument('--list', action='store_true', help='List rules and whether they are due')
    run.set_defaults(func=cmd_run)

    rules = sub.add_parser('rules', help='Inspect and manage rules')
    rules.add_argument('action', choices=sorted(RULE_ACTIONS))
    rules.add_argument('rule', nargs='?', help='Rule key')
    rules.add_argument('--stats', action='store_true', help='Include statistics with "show"')
    rules.add_argument('--yes', action='store_true', help='Do not prompt before running with "test"')
    rules.set_defaults(func=cmd_rules)
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    configure_logging()
    try:
        return args.func(args)
    except RuleError as e:
        print(f'Error: {e}', file=sys.stderr)
        return 1


if __name__ == '__main__':
    sys.exit(main())
