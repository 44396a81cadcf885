from __future__ import annotations

import logging
from datetime import date, datetime, timezone, tzinfo
from typing import Any, Iterable

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..backend import DataService, Filter, Query, table
from ..domain.matching import day_bounds, filter_events_for_date
from ..domain.models import Event, EventNotFound, EventStatus

LOGGER = logging.getLogger(__name__)


class SearchFilters(BaseModel):
    model_config = ConfigDict(extra="ignore")

    city: str | None = None
    date: str | None = None
    categories: list[str] = Field(default_factory=list)

    @field_validator("city")
    @classmethod
    def validate_city(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip() or None

    @field_validator("date")
    @classmethod
    def validate_date(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        text = value.strip()
        try:
            parsed = date.fromisoformat(text)
        except ValueError as exc:
            raise ValueError("date must be a calendar date like '2025-12-01'") from exc
        return parsed.isoformat()

    @field_validator("categories")
    @classmethod
    def validate_categories(cls, values: list[str]) -> list[str]:
        normalized = [value.strip() for value in values if isinstance(value, str) and value.strip()]
        return list(dict.fromkeys(normalized))


def utc_iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds")


def events_from_rows(rows: Iterable[dict[str, Any]]) -> list[Event]:
    events: list[Event] = []
    for row in rows:
        try:
            events.append(Event.model_validate(row))
        except ValidationError as exc:
            LOGGER.warning("Skipping event row %r: %s", row.get("id"), exc.errors()[0]["msg"])
    return events


def build_search_query(filters: SearchFilters, *, timezone_value: tzinfo | None = None) -> Query:
    query = (
        table("events")
        .eq("status", EventStatus.PUBLISHED)
        .order("start_date_time", ascending=True)
    )
    if filters.city:
        query.ilike("city", filters.city)
    if filters.categories:
        query.in_("category", filters.categories)

    if filters.date:
        # Over-selects on purpose; the date matcher narrows the rows afterwards.
        day_start, day_end = day_bounds(filters.date, timezone_value)
        query.lte("start_date_time", utc_iso(day_end))
        query.or_(
            Filter("end_date_time", "is", None),
            Filter("end_date_time", "gte", utc_iso(day_start)),
        )
    return query


def search_events(
    service: DataService,
    filters: SearchFilters,
    *,
    timezone_value: tzinfo | None = None,
) -> list[Event]:
    rows = service.select(build_search_query(filters, timezone_value=timezone_value))
    events = events_from_rows(rows)
    return filter_events_for_date(events, filters.date, timezone_value=timezone_value)


def get_event(service: DataService, event_id: str | int) -> Event:
    row = service.select_one(table("events").eq("id", event_id))
    if row is None:
        raise EventNotFound(f"Event {event_id} does not exist")
    return Event.model_validate(row)
