from __future__ import annotations

import logging

from ..backend import DataService, table
from ..domain.models import Event, Favorite, SessionUser
from .search import events_from_rows

LOGGER = logging.getLogger(__name__)


class AuthenticationRequired(PermissionError):
    """Raised when an action needs a signed-in user."""


def _require_user(user: SessionUser | None) -> SessionUser:
    if user is None:
        raise AuthenticationRequired("Sign in to manage favorites")
    return user


def _favorite_query(user_id: str, event_id: str | int):
    return table("favorites").eq("user_id", user_id).eq("event_id", event_id)


def list_favorites(service: DataService, user: SessionUser | None) -> list[Favorite]:
    if user is None:
        return []
    rows = service.select(table("favorites").select("user_id,event_id").eq("user_id", user.id))
    return [Favorite.model_validate(row) for row in rows if row.get("event_id") is not None]


def list_favorite_ids(service: DataService, user: SessionUser | None) -> list[str | int]:
    return [favorite.event_id for favorite in list_favorites(service, user)]


def list_favorite_events(service: DataService, user: SessionUser | None) -> list[Event]:
    user = _require_user(user)
    ids = list_favorite_ids(service, user)
    if not ids:
        return []
    rows = service.select(
        table("events").in_("id", ids).order("start_date_time", ascending=True)
    )
    return events_from_rows(rows)


def remove_favorite(service: DataService, user: SessionUser | None, event_id: str | int) -> None:
    user = _require_user(user)
    service.delete(_favorite_query(user.id, event_id))
    LOGGER.info("User %s removed favorite %s", user.id, event_id)


def toggle_favorite(service: DataService, user: SessionUser | None, event_id: str | int) -> bool:
    """Flip the favorite flag of an event and return the new state."""
    user = _require_user(user)
    existing = service.select_one(_favorite_query(user.id, event_id).select("event_id"))
    if existing is not None:
        remove_favorite(service, user, event_id)
        return False

    service.insert("favorites", Favorite(user_id=user.id, event_id=event_id).model_dump())
    LOGGER.info("User %s added favorite %s", user.id, event_id)
    return True
