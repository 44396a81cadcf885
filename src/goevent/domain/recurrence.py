"""Weekly recurrence rules stored in the ``events.recurrence_rule`` text column.

Two shapes exist on the wire::

    {"type": "weekly", "weekdays": [1, 3], "start_date": "2025-11-03",
     "times": {"1": {"start": "19:00", "end": "21:00"}, "3": {...}}}
    {"type": "weekly", "weekday": 3}

The second one is the legacy single-day form. Both are normalized into a
:class:`WeeklyRecurrence` as soon as they are decoded so callers never have
to sniff the format themselves.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Iterable, Mapping

from .models import DayTimes

LOGGER = logging.getLogger(__name__)

WEEKLY = "weekly"
FIRST_OCCURRENCE_SEARCH_DAYS = 14

# 0 = Sunday, matching the stored weekday numbers.
WEEKDAY_NAMES_FR = (
    "dimanche",
    "lundi",
    "mardi",
    "mercredi",
    "jeudi",
    "vendredi",
    "samedi",
)


@dataclass(slots=True, frozen=True)
class CurrentWeeklyRule:
    weekdays: list[Any]
    times: Mapping[str, Any] = field(default_factory=dict)
    start_date: Any = None


@dataclass(slots=True, frozen=True)
class LegacyWeeklyRule:
    weekday: int | float


@dataclass(slots=True, frozen=True)
class WeeklyRecurrence:
    weekdays: tuple[int, ...] = ()
    times: Mapping[int, DayTimes] = field(default_factory=dict)
    start_date: date | None = None

    @property
    def weekday_set(self) -> frozenset[int]:
        return frozenset(self.weekdays)

    def occurs_on_weekday(self, weekday: int) -> bool:
        return weekday in self.weekday_set

    def times_for(self, weekday: int) -> DayTimes | None:
        return self.times.get(weekday)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _valid_weekday(value: Any) -> int | None:
    if not _is_number(value):
        return None
    if isinstance(value, float):
        if not value.is_integer():
            return None
        value = int(value)
    if 0 <= value <= 6:
        return value
    return None


def _normalize_weekdays(values: Iterable[Any]) -> tuple[int, ...]:
    valid = (_valid_weekday(value) for value in values)
    return tuple(dict.fromkeys(day for day in valid if day is not None))


def _normalize_times(raw_times: Any) -> dict[int, DayTimes]:
    if not isinstance(raw_times, Mapping):
        return {}
    times: dict[int, DayTimes] = {}
    for raw_key, raw_value in raw_times.items():
        try:
            weekday = _valid_weekday(int(raw_key))
        except (TypeError, ValueError):
            continue
        if weekday is None or not isinstance(raw_value, Mapping):
            continue
        start = raw_value.get("start")
        end = raw_value.get("end")
        times[weekday] = DayTimes(
            start=start if isinstance(start, str) and start else "10:00",
            end=end if isinstance(end, str) else "",
        )
    return times


def _parse_start_date(raw_value: Any) -> date | None:
    if not isinstance(raw_value, str):
        return None
    try:
        return date.fromisoformat(raw_value.strip())
    except ValueError:
        return None


def _decode(raw_rule: Any) -> Any:
    if isinstance(raw_rule, (str, bytes)):
        return json.loads(raw_rule)
    return raw_rule


def _select_variant(rule: Mapping[str, Any]) -> CurrentWeeklyRule | LegacyWeeklyRule | None:
    weekdays = rule.get("weekdays")
    if isinstance(weekdays, list):
        return CurrentWeeklyRule(
            weekdays=weekdays,
            times=rule.get("times") or {},
            start_date=rule.get("start_date"),
        )
    weekday = rule.get("weekday")
    if _is_number(weekday):
        return LegacyWeeklyRule(weekday=weekday)
    return None


def parse_recurrence_rule(raw_rule: Any) -> WeeklyRecurrence | None:
    """Decode a stored rule.

    Returns ``None`` when the event should be treated as non-recurring: no
    rule, text that is not JSON, or a payload missing ``type`` or any weekday
    field. A rule whose ``type`` is not ``"weekly"`` decodes to an empty
    weekday set, which never matches.
    """
    if raw_rule is None or (isinstance(raw_rule, str) and not raw_rule.strip()):
        return None

    try:
        rule = _decode(raw_rule)
    except (TypeError, ValueError, RecursionError):
        LOGGER.debug("Ignoring unparsable recurrence rule %.80r", raw_rule)
        return None

    if not isinstance(rule, Mapping) or "type" not in rule:
        LOGGER.debug("Ignoring recurrence rule without a type: %r", raw_rule)
        return None

    if rule.get("type") != WEEKLY:
        return WeeklyRecurrence()

    variant = _select_variant(rule)
    if variant is None:
        LOGGER.debug("Ignoring weekly recurrence rule without weekdays: %r", raw_rule)
        return None

    if isinstance(variant, LegacyWeeklyRule):
        return WeeklyRecurrence(weekdays=_normalize_weekdays([variant.weekday]))

    return WeeklyRecurrence(
        weekdays=_normalize_weekdays(variant.weekdays),
        times=_normalize_times(variant.times),
        start_date=_parse_start_date(variant.start_date),
    )


def build_recurrence_rule(
    weekdays: Iterable[int],
    times: Mapping[int, DayTimes] | None = None,
    *,
    start_date: date | None = None,
) -> str:
    selected = _normalize_weekdays(weekdays)
    if not selected:
        raise ValueError("A weekly recurrence needs at least one weekday")

    times = times or {}
    times_payload: dict[str, dict[str, str]] = {}
    for weekday in selected:
        day_times = times.get(weekday) or DayTimes()
        times_payload[str(weekday)] = {
            "start": day_times.start or "10:00",
            "end": day_times.end or "",
        }

    payload: dict[str, Any] = {"type": WEEKLY}
    if start_date is not None:
        payload["start_date"] = start_date.isoformat()
    payload["weekdays"] = list(selected)
    payload["times"] = times_payload
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":"))


def describe_recurrence(raw_rule: Any) -> str | None:
    recurrence = parse_recurrence_rule(raw_rule)
    if recurrence is None or not recurrence.weekdays:
        return None
    labels = [WEEKDAY_NAMES_FR[weekday] for weekday in recurrence.weekdays]
    return f"Tous les {', '.join(labels)}"


def sunday_based_weekday(value: date) -> int:
    return value.isoweekday() % 7


def first_weekly_occurrence(base_date: date, weekdays: Iterable[int]) -> date | None:
    selected = set(_normalize_weekdays(weekdays))
    if not selected:
        return None
    for offset in range(FIRST_OCCURRENCE_SEARCH_DAYS):
        candidate = base_date + timedelta(days=offset)
        if sunday_based_weekday(candidate) in selected:
            return candidate
    return None
