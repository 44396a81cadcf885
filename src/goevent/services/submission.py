from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import date, datetime, time as time_of_day, tzinfo
from pathlib import PurePosixPath
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ..backend import BackendError, DataService, table
from ..domain.matching import localize
from ..domain.models import (
    DEFAULT_CATEGORY,
    DayTimes,
    Event,
    EventNotFound,
    EventStatus,
    PriceType,
    RecurrenceType,
    SessionUser,
)
from ..domain.recurrence import build_recurrence_rule, first_weekly_occurrence, sunday_based_weekday
from .search import utc_iso

LOGGER = logging.getLogger(__name__)


class SubmissionError(ValueError):
    """Raised when an event form cannot be turned into an event record."""


@dataclass(slots=True)
class UploadedImage:
    filename: str
    content: bytes
    content_type: str = "application/octet-stream"

    @property
    def extension(self) -> str:
        suffix = PurePosixPath(self.filename).suffix.lstrip(".").lower()
        return suffix or "bin"


def _parse_clock(value: str) -> time_of_day:
    try:
        return time_of_day.fromisoformat(value.strip())
    except ValueError as exc:
        raise ValueError(f"Invalid time of day: {value!r}, expected HH:MM") from exc


class EventForm(BaseModel):
    model_config = ConfigDict(extra="ignore")

    title: str = ""
    description: str = ""
    address: str = ""
    place_name: str | None = None
    city: str = ""
    categories: list[str] = Field(default_factory=list)
    price_type: PriceType = "gratuit"
    price: float | None = None
    tickets_url: str | None = None
    contact_name: str | None = None
    contact_email: str | None = None
    contact_phone: str | None = None

    recurrence_type: RecurrenceType = "none"
    start_date: datetime | None = None
    end_date: datetime | None = None
    recurrence_start_date: date | None = None
    recurrence_weekdays: list[int] = Field(default_factory=list)
    weekly_times: dict[int, DayTimes] = Field(default_factory=dict)

    @field_validator("title", "description", "address", "city")
    @classmethod
    def validate_required_text(cls, value: str) -> str:
        return value.strip()

    @field_validator("place_name", "tickets_url", "contact_name", "contact_email", "contact_phone")
    @classmethod
    def validate_optional_text(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip() or None

    @field_validator("recurrence_weekdays")
    @classmethod
    def validate_weekdays(cls, values: list[int]) -> list[int]:
        for value in values:
            if value < 0 or value > 6:
                raise ValueError("recurrence_weekdays entries must be between 0 (Sunday) and 6 (Saturday)")
        return list(dict.fromkeys(values))

    @field_validator("weekly_times")
    @classmethod
    def validate_weekly_times(cls, values: dict[int, DayTimes]) -> dict[int, DayTimes]:
        for day_times in values.values():
            if day_times.start:
                _parse_clock(day_times.start)
            if day_times.end:
                _parse_clock(day_times.end)
        return values

    @model_validator(mode="after")
    def validate_form(self) -> EventForm:
        if not (self.title and self.description and self.address and self.city):
            raise ValueError("title, description, address and city are required")

        if self.price_type == "payant":
            if self.price is None or self.price < 0:
                raise ValueError("a paid event needs a price >= 0")

        if self.recurrence_type == "none":
            if self.start_date is None:
                raise ValueError("start_date is required for a one-off event")
            if self.end_date is not None and self.end_date < self.start_date:
                raise ValueError("end_date must be >= start_date")
            return self

        if self.recurrence_start_date is None:
            raise ValueError("recurrence_start_date is required for a weekly event")
        if not self.recurrence_weekdays:
            raise ValueError("select at least one weekday for a weekly event")
        for weekday in self.recurrence_weekdays:
            day_times = self.weekly_times.get(weekday)
            if day_times is None or not day_times.start:
                raise ValueError("a start time is required for every selected weekday")
        return self

    @property
    def category(self) -> str:
        return self.categories[0] if self.categories else DEFAULT_CATEGORY


def _combine(day: date, clock: str, timezone_value: tzinfo | None) -> str:
    moment = datetime.combine(day, _parse_clock(clock))
    return utc_iso(localize(moment, timezone_value))


def _one_off_bounds(form: EventForm, timezone_value: tzinfo | None) -> tuple[str, str | None]:
    start_iso = utc_iso(localize(form.start_date, timezone_value))
    end_iso = utc_iso(localize(form.end_date, timezone_value)) if form.end_date else None
    return start_iso, end_iso


def _weekly_bounds(form: EventForm, timezone_value: tzinfo | None) -> tuple[str, str | None]:
    first_date = first_weekly_occurrence(form.recurrence_start_date, form.recurrence_weekdays)
    if first_date is None:
        raise SubmissionError("Unable to find the first occurrence of the weekly event")

    day_times = form.weekly_times.get(sunday_based_weekday(first_date)) or DayTimes()
    start_iso = _combine(first_date, day_times.start, timezone_value)
    end_iso = _combine(first_date, day_times.end, timezone_value) if day_times.end else None
    return start_iso, end_iso


def build_event_record(form: EventForm, *, timezone_value: tzinfo | None = None) -> dict[str, Any]:
    """Column values shared by a new submission and an organizer edit."""
    if form.recurrence_type == "weekly":
        start_iso, end_iso = _weekly_bounds(form, timezone_value)
        recurrence_rule = build_recurrence_rule(
            form.recurrence_weekdays,
            form.weekly_times,
            start_date=form.recurrence_start_date,
        )
    else:
        start_iso, end_iso = _one_off_bounds(form, timezone_value)
        recurrence_rule = None

    return {
        "title": form.title,
        "description": form.description,
        "category": form.category,
        "start_date_time": start_iso,
        "end_date_time": end_iso,
        "address_full": form.address,
        "place_name": form.place_name,
        "city": form.city,
        "price_type": form.price_type,
        "price": form.price if form.price_type == "payant" else None,
        "tickets_url": form.tickets_url,
        "contact_name": form.contact_name,
        "contact_email": form.contact_email,
        "contact_phone": form.contact_phone,
        "recurrence_rule": recurrence_rule,
    }


def upload_event_image(
    service: DataService,
    user: SessionUser,
    image: UploadedImage,
    *,
    bucket: str,
    cache_control_seconds: int = 3600,
) -> str | None:
    """Store the image and return its public URL; a failed upload keeps the event image-less."""
    object_path = f"{user.id}/{int(time.time() * 1000)}.{image.extension}"
    try:
        service.upload_file(
            bucket,
            object_path,
            image.content,
            content_type=image.content_type,
            upsert=True,
            cache_control_seconds=cache_control_seconds,
        )
    except BackendError as exc:
        LOGGER.warning("Image upload for user %s failed: %s", user.id, exc)
        return None
    return service.public_url(bucket, object_path)


def submit_event(
    service: DataService,
    user: SessionUser,
    form: EventForm,
    *,
    image: UploadedImage | None = None,
    bucket: str = "event-images",
    cache_control_seconds: int = 3600,
    timezone_value: tzinfo | None = None,
) -> Event:
    record = build_event_record(form, timezone_value=timezone_value)
    image_url = None
    if image is not None and image.content:
        image_url = upload_event_image(
            service,
            user,
            image,
            bucket=bucket,
            cache_control_seconds=cache_control_seconds,
        )

    record.update(
        {
            "organizer_id": user.id,
            "visibility_mode": EventStatus.PUBLISHED,
            "status": EventStatus.PENDING,
            "image_url": image_url,
        }
    )
    stored = service.insert("events", record)
    LOGGER.info("User %s submitted event %s for review", user.id, stored.get("id"))
    return Event.model_validate(stored)


def update_event(
    service: DataService,
    user: SessionUser,
    event_id: str | int,
    form: EventForm,
    *,
    image: UploadedImage | None = None,
    bucket: str = "event-images",
    cache_control_seconds: int = 3600,
    timezone_value: tzinfo | None = None,
) -> Event:
    record = build_event_record(form, timezone_value=timezone_value)
    if image is not None and image.content:
        image_url = upload_event_image(
            service,
            user,
            image,
            bucket=bucket,
            cache_control_seconds=cache_control_seconds,
        )
        if image_url is not None:
            record["image_url"] = image_url

    rows = service.update(
        table("events").eq("id", event_id).eq("organizer_id", user.id),
        record,
    )
    if not rows:
        raise EventNotFound(f"Event {event_id} was not found for this organizer")
    LOGGER.info("User %s updated event %s", user.id, event_id)
    return Event.model_validate(rows[0])
