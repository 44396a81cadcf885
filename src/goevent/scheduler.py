from __future__ import annotations

import logging
from datetime import datetime, timezone

from apscheduler.schedulers.background import BackgroundScheduler

from .backend import BackendError, DataService, RestDataService
from .services.moderation import fetch_stats
from .services.search import SearchFilters, search_events
from .settings import AppSettings
from .storage import prune_snapshots, save_snapshot

LOGGER = logging.getLogger(__name__)

TODAY_EVENTS_SNAPSHOT = "events.today"
MODERATION_STATS_SNAPSHOT = "moderation.stats"


def build_data_service(settings: AppSettings) -> RestDataService:
    return RestDataService(
        base_url=settings.env.goevent_backend_url,
        api_key=settings.env.goevent_backend_anon_key,
    )


def _snapshot_ttl_seconds(settings: AppSettings) -> int:
    return max(settings.yaml.refresh.interval_minutes * 120, 300)


def run_today_events_job(settings: AppSettings, service: DataService) -> None:
    refreshed_at = datetime.now(timezone.utc)
    target_date = datetime.now(settings.timezone).date().isoformat()
    filters = SearchFilters(city=settings.yaml.search.default_city, date=target_date)
    try:
        events = search_events(service, filters, timezone_value=settings.timezone)
    except BackendError:
        LOGGER.exception("Today events refresh failed")
        return

    payload = {
        "target_date": target_date,
        "timezone": settings.env.goevent_timezone,
        "city": filters.city,
        "count": len(events),
        "refreshed_at_utc": refreshed_at.isoformat(),
        "events": [
            event.model_dump(mode="json")
            for event in events[: settings.yaml.ui.today_list_size]
        ],
    }
    save_snapshot(
        settings.db_path,
        TODAY_EVENTS_SNAPSHOT,
        payload,
        ttl_seconds=_snapshot_ttl_seconds(settings),
        captured_at=refreshed_at,
    )
    LOGGER.info("Today events refresh stored %d events for %s", len(events), target_date)


def run_moderation_stats_job(settings: AppSettings, service: DataService) -> None:
    refreshed_at = datetime.now(timezone.utc)
    try:
        stats = fetch_stats(service)
    except BackendError:
        LOGGER.exception("Moderation stats refresh failed")
        return

    payload = {
        "refreshed_at_utc": refreshed_at.isoformat(),
        "stats": stats.model_dump(mode="json"),
    }
    save_snapshot(
        settings.db_path,
        MODERATION_STATS_SNAPSHOT,
        payload,
        ttl_seconds=_snapshot_ttl_seconds(settings),
        captured_at=refreshed_at,
    )
    pruned = prune_snapshots(settings.db_path)
    LOGGER.info(
        "Moderation stats refresh: %d pending, %d published (%d stale snapshots pruned)",
        stats.pending,
        stats.published,
        pruned,
    )


def build_scheduler(settings: AppSettings, service: DataService) -> BackgroundScheduler:
    scheduler = BackgroundScheduler(timezone=settings.timezone)
    scheduler.add_job(
        run_today_events_job,
        "interval",
        kwargs={"settings": settings, "service": service},
        minutes=settings.yaml.refresh.interval_minutes,
        jitter=settings.yaml.refresh.jitter_seconds,
        id="today_events_job",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        misfire_grace_time=120,
    )
    scheduler.add_job(
        run_moderation_stats_job,
        "interval",
        kwargs={"settings": settings, "service": service},
        minutes=settings.yaml.refresh.interval_minutes,
        jitter=settings.yaml.refresh.jitter_seconds,
        id="moderation_stats_job",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        misfire_grace_time=120,
    )
    return scheduler
