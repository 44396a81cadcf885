from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from fastapi import FastAPI, File, Form, HTTPException, Query, Request, UploadFile
from fastapi.responses import HTMLResponse, JSONResponse
from fastapi.templating import Jinja2Templates
from pydantic import BaseModel, ValidationError
from starlette.concurrency import run_in_threadpool

from .backend import BackendError, DataService
from .domain.models import Event, EventNotFound, EventStatus, SessionUser
from .domain.recurrence import describe_recurrence
from .scheduler import (
    MODERATION_STATS_SNAPSHOT,
    TODAY_EVENTS_SNAPSHOT,
    build_data_service,
    build_scheduler,
    run_moderation_stats_job,
    run_today_events_job,
)
from .services.favorites import (
    AuthenticationRequired,
    list_favorite_events,
    list_favorite_ids,
    toggle_favorite,
)
from .services.moderation import ANY_STATUS, ModerationError, fetch_stats, list_review_queue, moderate
from .services.search import SearchFilters, get_event, search_events
from .services.submission import EventForm, SubmissionError, UploadedImage, submit_event, update_event
from .settings import AppSettings, load_settings
from .storage import initialize_database, load_snapshot

LOGGER = logging.getLogger(__name__)

BASE_DIR = Path(__file__).resolve().parent
TEMPLATES_DIR = BASE_DIR / "web" / "templates"

ACCESS_TOKEN_COOKIE = "sb-access-token"

STATUS_LABELS = {
    EventStatus.PENDING: "En attente",
    EventStatus.PUBLISHED: "Publié",
    EventStatus.REFUSED: "Refusé",
}

REVIEW_TABS = {ANY_STATUS: "Tous", **STATUS_LABELS}

templates = Jinja2Templates(directory=str(TEMPLATES_DIR))


class ModerationDecision(BaseModel):
    status: str


def _get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def _get_service(request: Request) -> DataService:
    return request.app.state.service


def _access_token(request: Request) -> str | None:
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() == "bearer" and token.strip():
        return token.strip()
    cookie = request.cookies.get(ACCESS_TOKEN_COOKIE)
    if cookie and cookie.strip():
        return cookie.strip()
    return None


def _current_user(request: Request) -> SessionUser | None:
    token = _access_token(request)
    if token is None:
        return None
    return _get_service(request).get_user(token)


def _user_service(request: Request, user: SessionUser | None) -> DataService:
    service = _get_service(request)
    if user is None:
        return service
    return service.with_access_token(user.access_token)


def _require_user(request: Request) -> SessionUser:
    user = _current_user(request)
    if user is None:
        raise HTTPException(status_code=401, detail="Sign in required")
    return user


def _require_admin(request: Request) -> SessionUser:
    user = _require_user(request)
    if not _get_settings(request).is_admin(user.id):
        raise HTTPException(status_code=403, detail="Administrator access required")
    return user


def _validation_messages(exc: ValidationError) -> list[str]:
    return [str(error.get("msg", "invalid value")) for error in exc.errors()]


def _parse_filters(city: str | None, target_date: str | None, categories: list[str]) -> SearchFilters:
    try:
        return SearchFilters(city=city, date=target_date, categories=categories)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=_validation_messages(exc)) from exc


def _category_labels(settings: AppSettings) -> dict[str, str]:
    return {category.key: category.label for category in settings.yaml.categories}


def _format_local(value: datetime | None, settings: AppSettings) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=settings.timezone)
    return value.astimezone(settings.timezone).strftime("%d/%m/%Y %H:%M")


def _event_row(event: Event, settings: AppSettings, favorite_ids: set[str] | None = None) -> dict[str, Any]:
    recurrence_text = describe_recurrence(event.recurrence_rule)
    start_display = _format_local(event.start_date_time, settings)
    end_display = _format_local(event.end_date_time, settings)
    if recurrence_text:
        when_label = recurrence_text
    elif start_display and end_display:
        when_label = f"{start_display} - {end_display}"
    else:
        when_label = start_display or "--"

    if event.price_type == "payant" and event.price is not None:
        price_label = f"{event.price:g} €"
    else:
        price_label = "Gratuit"

    return {
        "id": event.id,
        "title": event.title or "Sans titre",
        "description": event.description or "",
        "city": event.city or "",
        "place_name": event.place_name or "",
        "address": event.address_full or "",
        "category": event.category,
        "category_label": _category_labels(settings).get(event.category or "", event.category or ""),
        "when_label": when_label,
        "recurrence_text": recurrence_text,
        "price_label": price_label,
        "tickets_url": event.tickets_url,
        "image_url": event.image_url,
        "status": event.status,
        "status_label": STATUS_LABELS.get(event.status or "", event.status or ""),
        "is_favorite": favorite_ids is not None and str(event.id) in favorite_ids,
    }


async def _read_submission(payload: str, image: UploadFile | None) -> tuple[EventForm, UploadedImage | None]:
    try:
        form = EventForm.model_validate_json(payload)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=_validation_messages(exc)) from exc

    uploaded = None
    if image is not None and image.filename:
        uploaded = UploadedImage(
            filename=image.filename,
            content=await image.read(),
            content_type=image.content_type or "application/octet-stream",
        )
    return form, uploaded


@asynccontextmanager
async def lifespan(application: FastAPI):
    settings = load_settings()
    initialize_database(settings.db_path)
    service = build_data_service(settings)
    run_today_events_job(settings, service)
    run_moderation_stats_job(settings, service)
    scheduler = build_scheduler(settings, service)
    scheduler.start()

    application.state.settings = settings
    application.state.service = service
    application.state.scheduler = scheduler
    application.state.started_at_utc = datetime.now(timezone.utc)

    try:
        yield
    finally:
        if scheduler.running:
            scheduler.shutdown(wait=False)


app = FastAPI(title="GoEvent", version="0.1.0", lifespan=lifespan)


@app.exception_handler(BackendError)
async def backend_error_handler(request: Request, exc: BackendError) -> JSONResponse:
    LOGGER.warning("Backend request failed for %s: %s", request.url.path, exc)
    return JSONResponse({"detail": "The event service is unavailable"}, status_code=502)


@app.exception_handler(EventNotFound)
async def event_not_found_handler(request: Request, exc: EventNotFound) -> JSONResponse:
    return JSONResponse({"detail": str(exc)}, status_code=404)


@app.exception_handler(AuthenticationRequired)
async def authentication_required_handler(request: Request, exc: AuthenticationRequired) -> JSONResponse:
    return JSONResponse({"detail": str(exc)}, status_code=401)


@app.exception_handler(ModerationError)
@app.exception_handler(SubmissionError)
async def rejected_request_handler(request: Request, exc: ValueError) -> JSONResponse:
    return JSONResponse({"detail": str(exc)}, status_code=422)


@app.get("/", response_class=HTMLResponse)
def home_page(request: Request) -> HTMLResponse:
    settings = _get_settings(request)
    snapshot = load_snapshot(settings.db_path, TODAY_EVENTS_SNAPSHOT)
    events: list[dict[str, Any]] = []
    target_date = None
    if snapshot is not None and isinstance(snapshot.payload, dict):
        target_date = snapshot.payload.get("target_date")
        for item in snapshot.payload.get("events") or []:
            if isinstance(item, dict):
                events.append(_event_row(Event.model_validate(item), settings))

    return templates.TemplateResponse(
        request,
        "index.html",
        {
            "title": settings.yaml.ui.title,
            "events": events,
            "target_date": target_date,
            "is_stale": snapshot is None or snapshot.is_stale(),
        },
    )


@app.get("/search", response_class=HTMLResponse)
def search_page(
    request: Request,
    city: str | None = None,
    date: str | None = None,
    category: list[str] = Query(default=[]),
) -> HTMLResponse:
    settings = _get_settings(request)
    filters = _parse_filters(city, date, category)
    user = _current_user(request)
    service = _user_service(request, user)
    events = search_events(service, filters, timezone_value=settings.timezone)
    favorite_ids = {str(item) for item in list_favorite_ids(service, user)}

    return templates.TemplateResponse(
        request,
        "search.html",
        {
            "title": settings.yaml.ui.title,
            "filters": filters,
            "categories": settings.yaml.categories,
            "events": [_event_row(event, settings, favorite_ids) for event in events],
            "signed_in": user is not None,
        },
    )


@app.get("/events/{event_id}", response_class=HTMLResponse)
def event_page(request: Request, event_id: str) -> HTMLResponse:
    settings = _get_settings(request)
    event = get_event(_get_service(request), event_id)
    return templates.TemplateResponse(
        request,
        "event.html",
        {
            "title": settings.yaml.ui.title,
            "event": _event_row(event, settings),
        },
    )


@app.get("/favorites", response_class=HTMLResponse)
def favorites_page(request: Request) -> HTMLResponse:
    settings = _get_settings(request)
    user = _current_user(request)
    events: list[dict[str, Any]] = []
    if user is not None:
        favorites = list_favorite_events(_user_service(request, user), user)
        favorite_ids = {str(event.id) for event in favorites}
        events = [_event_row(event, settings, favorite_ids) for event in favorites]

    return templates.TemplateResponse(
        request,
        "favorites.html",
        {
            "title": settings.yaml.ui.title,
            "events": events,
            "signed_in": user is not None,
        },
    )


@app.get("/organizer/dashboard", response_class=HTMLResponse)
def moderation_page(
    request: Request,
    status: str = EventStatus.PENDING,
    city: str | None = None,
    title: str | None = None,
    category: str = "all",
    date: str | None = None,
) -> HTMLResponse:
    settings = _get_settings(request)
    user = _require_admin(request)
    service = _user_service(request, user)
    filters = _parse_filters(None, date, [])
    events = list_review_queue(
        service,
        status,
        city=city,
        title=title,
        category=category,
        target_date=filters.date,
        timezone_value=settings.timezone,
    )

    return templates.TemplateResponse(
        request,
        "moderation.html",
        {
            "title": settings.yaml.ui.title,
            "stats": fetch_stats(service),
            "active_status": status,
            "status_tabs": REVIEW_TABS,
            "categories": settings.yaml.categories,
            "events": [_event_row(event, settings) for event in events],
        },
    )


@app.get("/health", response_class=JSONResponse)
def health(request: Request) -> JSONResponse:
    settings = _get_settings(request)
    today = load_snapshot(settings.db_path, TODAY_EVENTS_SNAPSHOT)
    stats = load_snapshot(settings.db_path, MODERATION_STATS_SNAPSHOT)
    scheduler = getattr(request.app.state, "scheduler", None)

    return JSONResponse(
        {
            "status": "ok",
            "service": "goevent",
            "environment": settings.env.goevent_env,
            "timezone": settings.env.goevent_timezone,
            "scheduler_running": bool(scheduler and scheduler.running),
            "today_events": today.payload if today else None,
            "moderation_stats": stats.payload if stats else None,
            "timestamp_utc": datetime.now(timezone.utc).isoformat(),
        }
    )


@app.get("/api/events")
def api_search_events(
    request: Request,
    city: str | None = None,
    date: str | None = None,
    category: list[str] = Query(default=[]),
) -> list[dict[str, Any]]:
    settings = _get_settings(request)
    filters = _parse_filters(city, date, category)
    events = search_events(_get_service(request), filters, timezone_value=settings.timezone)
    return [event.model_dump(mode="json") for event in events]


@app.get("/api/events/{event_id}")
def api_get_event(request: Request, event_id: str) -> dict[str, Any]:
    event = get_event(_get_service(request), event_id)
    payload = event.model_dump(mode="json")
    payload["recurrence_text"] = describe_recurrence(event.recurrence_rule)
    return payload


@app.get("/api/favorites")
def api_list_favorites(request: Request) -> list[dict[str, Any]]:
    user = _require_user(request)
    events = list_favorite_events(_user_service(request, user), user)
    return [event.model_dump(mode="json") for event in events]


@app.post("/api/favorites/{event_id}")
def api_toggle_favorite(request: Request, event_id: str) -> dict[str, Any]:
    user = _require_user(request)
    is_favorite = toggle_favorite(_user_service(request, user), user, event_id)
    return {"event_id": event_id, "is_favorite": is_favorite}


@app.post("/api/organizer/events", status_code=201)
async def api_submit_event(
    request: Request,
    payload: str = Form(...),
    image: UploadFile | None = File(default=None),
) -> dict[str, Any]:
    settings = _get_settings(request)
    user = await run_in_threadpool(_require_user, request)
    form, uploaded = await _read_submission(payload, image)
    event = await run_in_threadpool(
        submit_event,
        _user_service(request, user),
        user,
        form,
        image=uploaded,
        bucket=settings.yaml.storage.image_bucket,
        cache_control_seconds=settings.yaml.storage.cache_control_seconds,
        timezone_value=settings.timezone,
    )
    return event.model_dump(mode="json")


@app.put("/api/organizer/events/{event_id}")
async def api_update_event(
    request: Request,
    event_id: str,
    payload: str = Form(...),
    image: UploadFile | None = File(default=None),
) -> dict[str, Any]:
    settings = _get_settings(request)
    user = await run_in_threadpool(_require_user, request)
    form, uploaded = await _read_submission(payload, image)
    event = await run_in_threadpool(
        update_event,
        _user_service(request, user),
        user,
        event_id,
        form,
        image=uploaded,
        bucket=settings.yaml.storage.image_bucket,
        cache_control_seconds=settings.yaml.storage.cache_control_seconds,
        timezone_value=settings.timezone,
    )
    return event.model_dump(mode="json")


@app.get("/api/moderation/stats")
def api_moderation_stats(request: Request) -> dict[str, Any]:
    user = _require_admin(request)
    return fetch_stats(_user_service(request, user)).model_dump(mode="json")


@app.get("/api/moderation/events")
def api_review_queue(
    request: Request,
    status: str = EventStatus.PENDING,
    city: str | None = None,
    title: str | None = None,
    category: str = "all",
    date: str | None = None,
) -> list[dict[str, Any]]:
    settings = _get_settings(request)
    user = _require_admin(request)
    filters = _parse_filters(None, date, [])
    events = list_review_queue(
        _user_service(request, user),
        status,
        city=city,
        title=title,
        category=category,
        target_date=filters.date,
        timezone_value=settings.timezone,
    )
    return [event.model_dump(mode="json") for event in events]


@app.post("/api/moderation/events/{event_id}")
def api_moderate_event(request: Request, event_id: str, decision: ModerationDecision) -> dict[str, Any]:
    user = _require_admin(request)
    event = moderate(_user_service(request, user), event_id, decision.status, moderator_id=user.id)
    return event.model_dump(mode="json")
