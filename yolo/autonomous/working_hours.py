"""Working-hours gate.

Pure functions of ``(now, window)``: no I/O, no clock reads. The
window is ``[start, end)`` in the window's IANA timezone on the
configured weekdays. A window whose start is after its end wraps past
midnight and belongs to the weekday on which it opened. ``start ==
end`` means the whole day.
"""

from datetime import datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from .models import WorkingHours


def _localize(now: datetime, window: WorkingHours) -> datetime:
    # Naive values are local system time
    if now.tzinfo is None:
        now = now.astimezone()
    return now.astimezone(ZoneInfo(window.timezone))


def is_working_time(now: datetime, window: WorkingHours) -> bool:
    """True if ``now`` falls inside the working-hours window."""
    local = _localize(now, window)
    current = local.time().replace(tzinfo=None)
    weekday = local.weekday()

    if window.start == window.end:
        return weekday in window.weekdays

    if window.start < window.end:
        return weekday in window.weekdays and window.start <= current < window.end

    # Overnight window, e.g. 22:00-06:00
    if current >= window.start:
        return weekday in window.weekdays
    if current < window.end:
        return (weekday - 1) % 7 in window.weekdays
    return False


def next_window_start(now: datetime, window: WorkingHours) -> Optional[datetime]:
    """Earliest instant at or after ``now`` when the gate is open.

    Returns ``now`` (localized) if the window is already open, or None
    when no weekday is enabled.
    """
    if not window.weekdays:
        return None

    local = _localize(now, window)
    if is_working_time(local, window):
        return local

    tz = ZoneInfo(window.timezone)
    for offset in range(8):
        day = (local + timedelta(days=offset)).date()
        candidate = datetime.combine(day, window.start, tzinfo=tz)
        if candidate > local and candidate.weekday() in window.weekdays:
            return candidate
    return None
