from __future__ import annotations

import logging
from datetime import tzinfo
from typing import Any, Iterable

from ..backend import DataService, Query, table
from ..domain.matching import day_bounds
from ..domain.models import Event, EventNotFound, EventStatus, ModerationStats
from .search import events_from_rows, utc_iso

LOGGER = logging.getLogger(__name__)


class ModerationError(ValueError):
    """Raised for a moderation action the review workflow does not allow."""


# Review listings accept this in place of a status to show every event.
ANY_STATUS = "all"


def compute_stats(rows: Iterable[dict[str, Any]]) -> ModerationStats:
    total = pending = published = refused = 0
    organizers: set[str] = set()
    for row in rows:
        total += 1
        status = row.get("status")
        if status == EventStatus.PENDING:
            pending += 1
        elif status == EventStatus.PUBLISHED:
            published += 1
            organizer_id = row.get("organizer_id")
            if organizer_id:
                organizers.add(str(organizer_id))
        elif status == EventStatus.REFUSED:
            refused += 1

    return ModerationStats(
        total=total,
        pending=pending,
        published=published,
        refused=refused,
        active_organizers=len(organizers),
    )


def fetch_stats(service: DataService) -> ModerationStats:
    rows = service.select(table("events").select("id,status,organizer_id"))
    return compute_stats(rows)


def build_review_query(
    status: str = EventStatus.PENDING,
    *,
    city: str | None = None,
    title: str | None = None,
    category: str | None = None,
    target_date: str | None = None,
    timezone_value: tzinfo | None = None,
) -> Query:
    if status != ANY_STATUS and status not in EventStatus.ALL:
        raise ModerationError(f"Unknown event status: {status}")

    query = table("events").order("created_at", ascending=False)
    if status != ANY_STATUS:
        query.eq("status", status)
    if city and city.strip():
        query.ilike("city", city.strip())
    if title and title.strip():
        query.ilike("title", title.strip())
    if category and category != ANY_STATUS:
        query.eq("category", category)
    if target_date:
        # Review lists only look at the start day; recurrence is not expanded here.
        day_start, day_end = day_bounds(target_date, timezone_value)
        query.gte("start_date_time", utc_iso(day_start))
        query.lte("start_date_time", utc_iso(day_end))
    return query


def list_review_queue(
    service: DataService,
    status: str = EventStatus.PENDING,
    **filters: Any,
) -> list[Event]:
    return events_from_rows(service.select(build_review_query(status, **filters)))


def moderate(service: DataService, event_id: str | int, status: str, *, moderator_id: str) -> Event:
    if status not in EventStatus.MODERATION_TARGETS:
        raise ModerationError(f"Events can only be moved to {', '.join(EventStatus.MODERATION_TARGETS)}")

    rows = service.update(table("events").eq("id", event_id), {"status": status})
    if not rows:
        raise EventNotFound(f"Event {event_id} does not exist")

    LOGGER.info("Moderator %s set event %s to '%s'", moderator_id, event_id, status)
    return Event.model_validate(rows[0])
