"""
CareAlert — Recurrence rules.

The one place that decides a reminder's next trigger time. Both the
due-check and a "taken" acknowledgment call advance(), so the two paths can
never disagree about what the next occurrence is.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from carealert.data.models import Recurrence, Reminder, to_utc

_STEP = {
    Recurrence.DAILY: timedelta(days=1),
    Recurrence.WEEKLY: timedelta(days=7),
}


def advance(reminder: Reminder) -> Reminder:
    """Apply recurrence-advance in place and return the reminder.

    none -> deactivate; daily -> +24h; weekly -> +7d. The step is taken from
    the scheduled time, not from now, so the wall-clock slot is kept.
    """
    step = _STEP.get(reminder.recurrence)
    if step is None:
        reminder.active = False
    else:
        reminder.next_fire_at = reminder.next_fire_at + step
    return reminder


def snooze(reminder: Reminder, now: datetime, minutes: int) -> Reminder:
    """Push the reminder to now + minutes and force it active."""
    reminder.next_fire_at = to_utc(now) + timedelta(minutes=minutes)
    reminder.active = True
    return reminder
