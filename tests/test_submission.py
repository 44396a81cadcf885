import json

import pytest
from conftest import FakeDataService
from pydantic import ValidationError

from goevent.domain.models import EventNotFound, EventStatus, SessionUser
from goevent.services.submission import (
    EventForm,
    UploadedImage,
    build_event_record,
    submit_event,
    update_event,
    upload_event_image,
)

ORGANIZER = SessionUser(id="org-1", email="orga@example.test", access_token="token-org")


def one_off_form(**overrides):
    data = {
        "title": "  Concert au parc ",
        "description": "Plein air",
        "address": "1 rue de la Paix",
        "city": "Paris",
        "categories": ["concert", "autre"],
        "start_date": "2025-12-01T19:00",
        "end_date": "2025-12-01T22:30",
    }
    data.update(overrides)
    return EventForm.model_validate(data)


def weekly_form(**overrides):
    data = {
        "title": "Yoga",
        "description": "Cours hebdomadaire",
        "address": "2 place du Marche",
        "city": "Paris",
        "recurrence_type": "weekly",
        "recurrence_start_date": "2025-12-02",
        "recurrence_weekdays": [1, 3],
        "weekly_times": {"1": {"start": "19:00", "end": "20:00"}, "3": {"start": "18:00", "end": ""}},
    }
    data.update(overrides)
    return EventForm.model_validate(data)


def test_one_off_record_is_stored_in_utc(paris):
    record = build_event_record(one_off_form(), timezone_value=paris)

    assert record["title"] == "Concert au parc"
    assert record["category"] == "concert"
    assert record["start_date_time"] == "2025-12-01T18:00:00.000+00:00"
    assert record["end_date_time"] == "2025-12-01T21:30:00.000+00:00"
    assert record["recurrence_rule"] is None
    assert record["price"] is None


def test_weekly_record_starts_on_first_occurrence(paris):
    record = build_event_record(weekly_form(), timezone_value=paris)

    # Tuesday Dec 2 is the base date, Wednesday Dec 3 is the first selected day.
    assert record["start_date_time"] == "2025-12-03T17:00:00.000+00:00"
    assert record["end_date_time"] is None
    rule = json.loads(record["recurrence_rule"])
    assert rule == {
        "type": "weekly",
        "start_date": "2025-12-02",
        "weekdays": [1, 3],
        "times": {"1": {"start": "19:00", "end": "20:00"}, "3": {"start": "18:00", "end": ""}},
    }


def test_weekly_end_time_is_kept_for_first_occurrence(paris):
    form = weekly_form(recurrence_start_date="2025-12-01")
    record = build_event_record(form, timezone_value=paris)
    assert record["start_date_time"] == "2025-12-01T18:00:00.000+00:00"
    assert record["end_date_time"] == "2025-12-01T19:00:00.000+00:00"


def test_category_defaults_to_other():
    assert one_off_form(categories=[]).category == "autre"


@pytest.mark.parametrize(
    "overrides",
    [
        {"title": "   "},
        {"city": ""},
        {"start_date": None},
        {"end_date": "2025-12-01T18:00"},
        {"price_type": "payant"},
        {"price_type": "payant", "price": -1},
        {"recurrence_type": "weekly"},
    ],
)
def test_invalid_one_off_forms(overrides):
    with pytest.raises(ValidationError):
        one_off_form(**overrides)


@pytest.mark.parametrize(
    "overrides",
    [
        {"recurrence_weekdays": []},
        {"recurrence_weekdays": [7]},
        {"recurrence_start_date": None},
        {"weekly_times": {"1": {"start": "19:00"}}},
        {"weekly_times": {"1": {"start": "19h"}, "3": {"start": "18:00"}}},
    ],
)
def test_invalid_weekly_forms(overrides):
    with pytest.raises(ValidationError):
        weekly_form(**overrides)


def test_paid_event_keeps_price(paris):
    record = build_event_record(one_off_form(price_type="payant", price=12.5), timezone_value=paris)
    assert record["price_type"] == "payant"
    assert record["price"] == 12.5


def test_submit_event_goes_to_review(fake_service, paris):
    event = submit_event(fake_service, ORGANIZER, one_off_form(), timezone_value=paris)

    assert event.status == EventStatus.PENDING
    assert event.organizer_id == "org-1"
    assert event.image_url is None
    stored = fake_service.tables["events"][0]
    assert stored["visibility_mode"] == "publie"
    assert stored["status"] == "en_verification"


def test_submit_event_with_image(fake_service, paris):
    image = UploadedImage(filename="affiche.PNG", content=b"\x89PNG", content_type="image/png")

    event = submit_event(fake_service, ORGANIZER, one_off_form(), image=image, timezone_value=paris)

    upload = fake_service.uploads[0]
    assert upload["bucket"] == "event-images"
    assert upload["path"].startswith("org-1/")
    assert upload["path"].endswith(".png")
    assert upload["content_type"] == "image/png"
    assert event.image_url == f"https://backend.test/storage/v1/object/public/event-images/{upload['path']}"


def test_failed_upload_still_creates_the_event(fake_service, paris, caplog):
    fake_service.fail_uploads = True
    image = UploadedImage(filename="affiche.jpg", content=b"jpeg")

    with caplog.at_level("WARNING"):
        event = submit_event(fake_service, ORGANIZER, one_off_form(), image=image, timezone_value=paris)

    assert event.image_url is None
    assert len(fake_service.tables["events"]) == 1
    assert "Image upload for user org-1 failed" in caplog.text


def test_upload_without_extension(fake_service):
    url = upload_event_image(fake_service, ORGANIZER, UploadedImage(filename="photo", content=b"x"), bucket="b")
    assert url.endswith(".bin")


def test_update_event_only_touches_own_events(paris):
    service = FakeDataService(
        {
            "events": [
                {"id": "7", "organizer_id": "org-1", "title": "Old", "status": "publie", "image_url": "old.png"},
                {"id": "8", "organizer_id": "org-2", "title": "Other", "status": "publie"},
            ]
        }
    )

    updated = update_event(service, ORGANIZER, "7", one_off_form(title="New"), timezone_value=paris)

    assert updated.title == "New"
    assert updated.image_url == "old.png"
    assert updated.status == "publie"
    with pytest.raises(EventNotFound):
        update_event(service, ORGANIZER, "8", one_off_form(), timezone_value=paris)
    assert service.tables["events"][1]["title"] == "Other"
