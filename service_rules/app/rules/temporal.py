"""
Temporal evaluation: effective window, day-of-week mask and time-of-day windows.
"""

from datetime import datetime
from typing import List, Tuple
from zoneinfo import ZoneInfo

from .models import RuleConditions, as_utc


# Diagnostic scoring weights
EFFECTIVE_WINDOW_POINTS = 10.0
DAY_OF_WEEK_POINTS = 5.0
TIME_WINDOW_POINTS = 5.0
TEMPORAL_VIOLATION_PENALTY = -100.0


def local_time(conditions: RuleConditions, now: datetime) -> datetime:
    """``now`` as seen in the rule's timezone (or its own, if none is set)."""
    if conditions.timezone:
        return as_utc(now).astimezone(ZoneInfo(conditions.timezone))
    return now


def weekday_index(moment: datetime) -> int:
    """0=Sunday .. 6=Saturday."""
    return (moment.weekday() + 1) % 7


def within_effective_window(conditions: RuleConditions, now: datetime) -> bool:
    """Both boundaries are inclusive."""
    instant = as_utc(now)
    if instant < as_utc(conditions.effective_from):
        return False
    if conditions.effective_to is not None and instant > as_utc(conditions.effective_to):
        return False
    return True


def on_allowed_day(conditions: RuleConditions, now: datetime) -> bool:
    if conditions.days_of_week is None:
        return True
    return weekday_index(local_time(conditions, now)) in conditions.days_of_week


def within_time_windows(conditions: RuleConditions, now: datetime) -> bool:
    if not conditions.time_windows:
        return True
    moment = local_time(conditions, now).time()
    return any(window.contains(moment) for window in conditions.time_windows)


def is_temporally_active(conditions: RuleConditions, now: datetime) -> bool:
    """Strict gate used by resolution."""
    return (
        within_effective_window(conditions, now)
        and on_allowed_day(conditions, now)
        and within_time_windows(conditions, now)
    )


def score_temporal(conditions: RuleConditions, now: datetime) -> Tuple[float, List[str], List[str]]:
    """Diagnostic variant: points per satisfied check, a large penalty per violated one."""
    score = 0.0
    matched: List[str] = []
    unmatched: List[str] = []

    if within_effective_window(conditions, now):
        score += EFFECTIVE_WINDOW_POINTS
        matched.append("effective_window")
    else:
        score += TEMPORAL_VIOLATION_PENALTY
        unmatched.append("effective_window")

    if conditions.days_of_week is not None:
        if on_allowed_day(conditions, now):
            score += DAY_OF_WEEK_POINTS
            matched.append("days_of_week")
        else:
            score += TEMPORAL_VIOLATION_PENALTY
            unmatched.append("days_of_week")

    if conditions.time_windows:
        if within_time_windows(conditions, now):
            score += TIME_WINDOW_POINTS
            matched.append("time_windows")
        else:
            score += TEMPORAL_VIOLATION_PENALTY
            unmatched.append("time_windows")

    return score, matched, unmatched
