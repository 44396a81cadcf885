from __future__ import annotations

from datetime import date, datetime, timedelta, tzinfo
from typing import Any, Iterable, Mapping, TypeVar

from .models import Event, parse_timestamp
from .recurrence import parse_recurrence_rule, sunday_based_weekday

EventLike = TypeVar("EventLike", Event, Mapping[str, Any])

END_OF_DAY_OFFSET = timedelta(days=1, milliseconds=-1)


def _target_calendar_date(target_date: str | date) -> date:
    if isinstance(target_date, datetime):
        return target_date.date()
    if isinstance(target_date, date):
        return target_date
    year, month, day = (int(part) for part in target_date.strip().split("-"))
    return date(year, month, day)


def localize(value: datetime, timezone_value: tzinfo | None) -> datetime:
    if value.tzinfo is not None:
        return value
    if timezone_value is None:
        return value.astimezone()
    return value.replace(tzinfo=timezone_value)


def day_bounds(
    target_date: str | date,
    timezone_value: tzinfo | None = None,
) -> tuple[datetime, datetime]:
    """Return local 00:00:00.000 and 23:59:59.999 of a ``YYYY-MM-DD`` day."""
    day = _target_calendar_date(target_date)
    start = localize(datetime(day.year, day.month, day.day), timezone_value)
    end = localize(datetime(day.year, day.month, day.day) + END_OF_DAY_OFFSET, timezone_value)
    return start, end


def weekday_of(target_date: str | date) -> int:
    """Day of week of a ``YYYY-MM-DD`` day, 0 = Sunday."""
    return sunday_based_weekday(_target_calendar_date(target_date))


def _field(event: Event | Mapping[str, Any], name: str) -> Any:
    if isinstance(event, Mapping):
        return event.get(name)
    return getattr(event, name, None)


def _event_timestamp(event: Event | Mapping[str, Any], name: str, timezone_value: tzinfo | None) -> datetime | None:
    try:
        parsed = parse_timestamp(_field(event, name))
    except ValueError:
        return None
    if parsed is None:
        return None
    return localize(parsed, timezone_value)


def event_matches_date(
    event: Event | Mapping[str, Any],
    target_date: str | date,
    *,
    timezone_value: tzinfo | None = None,
) -> bool:
    day_start, day_end = day_bounds(target_date, timezone_value)
    selected_weekday = weekday_of(target_date)

    event_start = _event_timestamp(event, "start_date_time", timezone_value)
    event_end = _event_timestamp(event, "end_date_time", timezone_value)

    if event_start is None:
        return False

    raw_rule = _field(event, "recurrence_rule")
    recurrence = parse_recurrence_rule(raw_rule) if raw_rule else None
    if recurrence is not None:
        if not recurrence.weekdays:
            return False
        in_window = event_start <= day_end and (event_end is None or event_end >= day_start)
        if not in_window:
            return False
        return recurrence.occurs_on_weekday(selected_weekday)

    if event_end is not None:
        return event_start <= day_end and event_end >= day_start

    return day_start <= event_start <= day_end


def filter_events_for_date(
    events: Iterable[EventLike],
    target_date: str | date | None,
    *,
    timezone_value: tzinfo | None = None,
) -> list[EventLike]:
    """Keep the events happening on ``target_date``, in their original order."""
    if not target_date:
        return list(events)
    return [
        event
        for event in events
        if event_matches_date(event, target_date, timezone_value=timezone_value)
    ]
