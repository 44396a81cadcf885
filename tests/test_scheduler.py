from conftest import FakeDataService

from goevent.backend import BackendError
from goevent.scheduler import (
    MODERATION_STATS_SNAPSHOT,
    TODAY_EVENTS_SNAPSHOT,
    build_scheduler,
    run_moderation_stats_job,
    run_today_events_job,
)
from goevent.storage import load_snapshot

EVERY_DAY = '{"type":"weekly","weekdays":[0,1,2,3,4,5,6]}'


def test_today_events_job_stores_snapshot(settings):
    service = FakeDataService(
        {
            "events": [
                {"id": str(index), "title": f"Cours {index}", "status": "publie",
                 "start_date_time": "2024-01-01T10:00:00+01:00", "recurrence_rule": EVERY_DAY}
                for index in range(3)
            ]
            + [{"id": "99", "title": "Brouillon", "status": "en_verification",
                "start_date_time": "2024-01-01T10:00:00+01:00", "recurrence_rule": EVERY_DAY}]
        }
    )
    settings.yaml.ui.today_list_size = 2

    run_today_events_job(settings, service)

    snapshot = load_snapshot(settings.db_path, TODAY_EVENTS_SNAPSHOT)
    assert snapshot.payload["count"] == 3
    assert snapshot.payload["timezone"] == "Europe/Paris"
    assert [event["id"] for event in snapshot.payload["events"]] == ["0", "1"]
    assert snapshot.ttl_seconds == 1200


def test_today_events_job_keeps_previous_snapshot_on_failure(settings, caplog):
    service = FakeDataService()

    def broken_select(query):
        raise BackendError("timeout")

    service.select = broken_select

    with caplog.at_level("ERROR"):
        run_today_events_job(settings, service)

    assert load_snapshot(settings.db_path, TODAY_EVENTS_SNAPSHOT) is None
    assert "Today events refresh failed" in caplog.text


def test_moderation_stats_job(settings):
    service = FakeDataService(
        {
            "events": [
                {"id": "1", "status": "en_verification", "organizer_id": "a"},
                {"id": "2", "status": "publie", "organizer_id": "b"},
            ]
        }
    )

    run_moderation_stats_job(settings, service)

    payload = load_snapshot(settings.db_path, MODERATION_STATS_SNAPSHOT).payload
    assert payload["stats"] == {"total": 2, "pending": 1, "published": 1, "refused": 0, "active_organizers": 1}


def test_build_scheduler_registers_refresh_jobs(settings, fake_service):
    scheduler = build_scheduler(settings, fake_service)
    assert sorted(job.id for job in scheduler.get_jobs()) == ["moderation_stats_job", "today_events_job"]
    assert scheduler.running is False
