"""
Scheduler predicate: is a rule due to run now?

Pure function of the rule's schedule, its last-run time and `now`. Weeks
start on Monday (day_of_week 1) and day offsets are added to the start of
the week/month, so day_of_month 31 in a 30-day month lands on the 1st of
the next month.

Weekly and monthly rules compare against the most recent trigger instant at
or before `now`: a Wednesday rule that has not run since last Wednesday
09:00 is still due on the following Monday.
"""
from datetime import datetime, timedelta
from typing import Optional


def _naive_local(dt: datetime) -> datetime:
    if dt.tzinfo is not None:
        return dt.astimezone().replace(tzinfo=None)
    return dt


def _period_instant(schedule, frequency, period_start: datetime) -> datetime:
    hour, minute = schedule.time_of_day()
    if frequency == 'daily':
        base = period_start
    elif frequency == 'weekly':
        base = period_start + timedelta(days=schedule.day_of_week - 1)
    else:
        base = period_start + timedelta(days=schedule.day_of_month - 1)
    return base.replace(hour=hour, minute=minute)


def scheduled_instant(schedule, now: datetime) -> Optional[datetime]:
    """
    Trigger instant to compare against: today's for daily rules, otherwise
    the latest weekly/monthly instant at or before `now`. None for unknown
    frequencies.
    """
    frequency = schedule.frequency
    day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)

    if frequency == 'daily':
        return _period_instant(schedule, frequency, day_start)

    if frequency == 'weekly':
        week_start = day_start - timedelta(days=now.weekday())
        instant = _period_instant(schedule, frequency, week_start)
        if instant > now:
            instant = _period_instant(schedule, frequency, week_start - timedelta(days=7))
        return instant

    if frequency == 'monthly':
        month_start = day_start.replace(day=1)
        instant = _period_instant(schedule, frequency, month_start)
        if instant > now:
            previous_month = (month_start - timedelta(days=1)).replace(day=1)
            instant = _period_instant(schedule, frequency, previous_month)
        return instant

    return None


def is_due(rule, last_run: Optional[datetime], now: datetime) -> bool:
    schedule = rule.schedule
    if not schedule.enabled:
        return False
    if last_run is None:
        return True

    now = _naive_local(now)
    last_run = _naive_local(last_run)

    instant = scheduled_instant(schedule, now)
    if instant is None:
        return False

    if schedule.frequency == 'daily':
        # Calendar-day comparison, not a rolling 24h window
        return now >= instant and last_run.date() != now.date()
    return now >= instant and last_run < instant
