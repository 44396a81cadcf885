from __future__ import annotations

import json
from datetime import date, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


class EventStatus:
    PENDING = "en_verification"
    PUBLISHED = "publie"
    REFUSED = "refuse"

    ALL = (PENDING, PUBLISHED, REFUSED)
    MODERATION_TARGETS = (PUBLISHED, REFUSED)


DEFAULT_CATEGORY = "autre"


def parse_timestamp(value: Any) -> datetime | None:
    """Parse a backend timestamp; offset-less and date-only values stay naive."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if not isinstance(value, str):
        raise ValueError(f"Unsupported timestamp value: {value!r}")

    text = value.strip()
    if not text:
        return None
    if text.endswith(("Z", "z")):
        text = f"{text[:-1]}+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError as exc:
        raise ValueError(f"Invalid timestamp: {value}") from exc


class DayTimes(BaseModel):
    model_config = ConfigDict(extra="ignore")

    start: str = "10:00"
    end: str = ""


class Event(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str | int | None = None
    organizer_id: str | None = None
    title: str = ""
    description: str | None = None
    category: str | None = None
    start_date_time: datetime | None = None
    end_date_time: datetime | None = None
    recurrence_rule: str | None = None
    address_full: str | None = None
    place_name: str | None = None
    city: str | None = None
    price_type: str | None = None
    price: float | None = None
    tickets_url: str | None = None
    contact_name: str | None = None
    contact_email: str | None = None
    contact_phone: str | None = None
    visibility_mode: str | None = None
    status: str | None = None
    image_url: str | None = None
    created_at: datetime | None = None

    @field_validator("start_date_time", "end_date_time", "created_at", mode="before")
    @classmethod
    def validate_timestamp(cls, value: Any) -> datetime | None:
        return parse_timestamp(value)

    @field_validator("recurrence_rule", mode="before")
    @classmethod
    def validate_recurrence_rule(cls, value: Any) -> str | None:
        # Some rows come back with the rule already decoded as a JSON object.
        if value is None:
            return None
        if isinstance(value, (dict, list)):
            return json.dumps(value)
        if isinstance(value, str):
            return value if value.strip() else None
        return str(value)

    @field_validator("title")
    @classmethod
    def validate_title(cls, value: str | None) -> str:
        return (value or "").strip()


class Favorite(BaseModel):
    model_config = ConfigDict(extra="ignore")

    user_id: str
    event_id: str | int


class SessionUser(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    email: str | None = None
    access_token: str = Field(default="", repr=False)

    @field_validator("id")
    @classmethod
    def validate_id(cls, value: str) -> str:
        text = value.strip()
        if not text:
            raise ValueError("session user id must not be empty")
        return text


class ModerationStats(BaseModel):
    model_config = ConfigDict(extra="ignore")

    total: int = Field(default=0, ge=0)
    pending: int = Field(default=0, ge=0)
    published: int = Field(default=0, ge=0)
    refused: int = Field(default=0, ge=0)
    active_organizers: int = Field(default=0, ge=0)


PriceType = Literal["gratuit", "payant"]
RecurrenceType = Literal["none", "weekly"]


class EventNotFound(LookupError):
    """Raised when an event id matches no visible row."""
