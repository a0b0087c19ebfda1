"""Next-occurrence computation for repeat rules.

Pure and deterministic: the caller supplies ``now``. Arithmetic is wall-clock
in the tzinfo of ``current_due``, so a 09:00 Europe/Berlin daily reminder
stays at 09:00 across DST changes.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

from dateutil.relativedelta import relativedelta

from app.types.contracts import WEEKDAYS, RepeatRule
from app.types.errors import UnsupportedFrequencyError


def _next_listed_weekday(rule: RepeatRule, current_due: datetime) -> datetime:
    listed = sorted(WEEKDAYS.index(d) for d in rule.by_day)
    today = current_due.weekday()
    later = [d for d in listed if d > today]
    if later:
        return current_due + timedelta(days=later[0] - today)
    # Wrap into the next active week.
    week_start = current_due - timedelta(days=today)
    return week_start + timedelta(weeks=rule.interval, days=listed[0])


def next_run(
    rule: RepeatRule,
    current_due: datetime,
    run_count: int,
    now: Optional[datetime] = None,
) -> Optional[datetime]:
    """Return the occurrence after ``current_due``, or None when the rule is exhausted.

    Raises UnsupportedFrequencyError for CRON rules, which are never
    recurred automatically.
    """
    if current_due.tzinfo is None:
        raise ValueError("current_due must be timezone-aware")
    now = now or datetime.now(timezone.utc)

    if rule.freq == "CRON":
        raise UnsupportedFrequencyError("Cron schedules are not supported for automatic repetition")
    if rule.until is not None and rule.until < now:
        return None
    if rule.count is not None and run_count >= rule.count:
        return None

    if rule.freq == "DAILY":
        candidate = current_due + timedelta(days=rule.interval)
    elif rule.freq == "WEEKLY":
        if rule.by_day:
            candidate = _next_listed_weekday(rule, current_due)
        else:
            candidate = current_due + timedelta(weeks=rule.interval)
    elif rule.freq == "MONTHLY":
        # relativedelta clamps to the last day: Jan 31 + 1 month -> Feb 28/29.
        candidate = current_due + relativedelta(months=rule.interval)
    else:
        raise UnsupportedFrequencyError(f"Unsupported repeat frequency: {rule.freq}")

    if rule.until is not None and candidate > rule.until:
        return None
    return candidate
