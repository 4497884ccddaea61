"""
Timezone utilities for the reminder scheduler.

The database stores naive UTC timestamps. Times of day on a schedule are
minutes since local midnight, interpreted in REMINDER_TIMEZONE.
"""
from datetime import datetime, time, timedelta
import pytz
from flask import current_app, has_app_context

from medisafe.config.config import Config

MINUTES_PER_DAY = 24 * 60


def get_timezone(name=None):
    """Resolve a pytz timezone, defaulting to the configured reminder zone"""
    if name is None and has_app_context():
        name = current_app.config.get('REMINDER_TIMEZONE')
    return pytz.timezone(name or Config.REMINDER_TIMEZONE)


def utcnow():
    """Current instant as an aware UTC datetime"""
    return datetime.now(pytz.utc)


def as_utc(dt):
    """Treat naive datetimes as UTC (database convention) and return aware UTC"""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return pytz.utc.localize(dt)
    return dt.astimezone(pytz.utc)


def to_db(dt):
    """Convert any datetime to naive UTC for storage"""
    if dt is None:
        return None
    return as_utc(dt).replace(tzinfo=None)


def parse_time_slot(value):
    """
    Normalise one time-of-day slot to minutes since midnight.

    Accepts an int (540) or an "HH:MM" string ("09:00").

    Raises:
        ValueError: slot is malformed or outside the day
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid time slot: {value!r}")
    if isinstance(value, str):
        if ':' in value:
            try:
                hour, minute = (int(part) for part in value.split(':', 1))
            except ValueError:
                raise ValueError(f"Invalid time slot: {value!r}")
            if not (0 <= hour < 24 and 0 <= minute < 60):
                raise ValueError(f"Invalid time slot: {value!r}")
            return hour * 60 + minute
        if not value.strip().isdigit():
            raise ValueError(f"Invalid time slot: {value!r}")
        value = int(value)
    if not isinstance(value, int):
        raise ValueError(f"Invalid time slot: {value!r}")
    if not 0 <= value < MINUTES_PER_DAY:
        raise ValueError(f"Time slot out of range: {value}")
    return value


def format_time_slot(minutes):
    hour, minute = divmod(minutes, 60)
    return f"{hour:02d}:{minute:02d}"


def next_occurrence(times, now=None, tz=None, end_date=None):
    """
    Compute the next instant a schedule should fire.

    Each slot becomes today's instant in `tz`; a slot that is already at or
    before `now` rolls to the same wall-clock time tomorrow. The earliest
    candidate wins.

    Args:
        times: Minutes since midnight, e.g. [540, 1260] for 09:00 and 21:00
        now: Reference instant (defaults to the current time)
        tz: pytz timezone the slots are expressed in
        end_date: Optional instant after which no occurrence is allowed

    Returns:
        Aware UTC datetime strictly after `now`, or None when the schedule
        has no slots (or none before `end_date`).
    """
    if not times:
        return None

    tz = tz or get_timezone()
    now = as_utc(now) if now is not None else utcnow()
    end_date = as_utc(end_date)
    today = now.astimezone(tz).date()

    candidates = []
    for slot in times:
        hour, minute = divmod(parse_time_slot(slot), 60)
        slot_time = time(hour, minute)

        candidate = tz.localize(datetime.combine(today, slot_time))
        if candidate <= now:
            # Localize tomorrow's wall time again so DST shifts are respected
            candidate = tz.localize(datetime.combine(today + timedelta(days=1), slot_time))

        if end_date is not None and candidate > end_date:
            continue
        candidates.append(candidate)

    if not candidates:
        return None
    return min(candidates).astimezone(pytz.utc)
