"""Multi-stage reminder date computation."""

from collections import namedtuple
from datetime import timedelta

ScheduledReminder = namedtuple("ScheduledReminder", ["reminder_date", "is_custom"])

# (minimum renewal period, days-before-expiry offsets), checked top-down
REMINDER_STAGES = (
    (90, (60, 30, 7)),
    (30, (30, 14, 3)),
    (14, (14, 7, 2)),
)
DEFAULT_OFFSETS = (7, 3, 1)


def stage_offsets(renewal_period_days):
    for threshold, offsets in REMINDER_STAGES:
        if renewal_period_days >= threshold:
            return offsets
    return DEFAULT_OFFSETS


def schedule(expiry_date, renewal_period_days, custom_date=None):
    """
    Reminder dates for a document, earliest first.

    The custom date is appended as its own flagged entry and is not merged
    with the computed stages, so it may repeat one of them. Dates already in
    the past are kept; the dispatcher skips them.
    """
    reminders = [
        ScheduledReminder(expiry_date - timedelta(days=offset), False)
        for offset in stage_offsets(renewal_period_days)
    ]
    if custom_date is not None:
        reminders.append(ScheduledReminder(custom_date, True))
    return reminders
