from __future__ import annotations

import copy
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo

import pytest

from goevent.backend import Filter, Query
from goevent.domain.models import SessionUser
from goevent.settings import AppSettings, EnvSettings, GoEventYamlSettings


def _comparable(value: Any) -> Any:
    if isinstance(value, str):
        text = value[:-1] + "+00:00" if value.endswith("Z") else value
        try:
            value = datetime.fromisoformat(text)
        except ValueError:
            return value
    if isinstance(value, datetime) and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _matches(row: dict[str, Any], item: Filter) -> bool:
    current = row.get(item.column)
    if item.operator == "is":
        return current is None
    if current is None:
        return False
    if item.operator == "eq":
        return str(current) == str(item.value)
    if item.operator == "ilike":
        return str(item.value).lower() in str(current).lower()
    if item.operator == "in":
        return str(current) in {str(value) for value in item.value}
    if item.operator == "gte":
        return _comparable(current) >= _comparable(item.value)
    if item.operator == "lte":
        return _comparable(current) <= _comparable(item.value)
    raise AssertionError(f"unsupported operator {item.operator}")


class FakeDataService:
    """In-memory stand-in for the managed backend."""

    def __init__(self, tables: dict[str, list[dict[str, Any]]] | None = None) -> None:
        self.tables: dict[str, list[dict[str, Any]]] = {
            name: [dict(row) for row in rows] for name, rows in (tables or {}).items()
        }
        self.users: dict[str, SessionUser] = {}
        self.queries: list[Query] = []
        self.uploads: list[dict[str, Any]] = []
        self.tokens_used: list[str | None] = []
        self.fail_uploads = False
        self._next_id = 1000

    def add_user(self, token: str, user_id: str, email: str | None = None) -> SessionUser:
        user = SessionUser(id=user_id, email=email, access_token=token)
        self.users[token] = user
        return user

    def with_access_token(self, access_token: str | None) -> FakeDataService:
        self.tokens_used.append(access_token)
        return self

    def _filter(self, query: Query) -> list[dict[str, Any]]:
        rows = [
            row
            for row in self.tables.get(query.table, [])
            if all(_matches(row, item) for item in query.filters)
            and all(any(_matches(row, item) for item in group) for group in query.any_of)
        ]
        for column, ascending in reversed(query.ordering):
            present = [row for row in rows if row.get(column) is not None]
            missing = [row for row in rows if row.get(column) is None]
            present.sort(key=lambda row: _comparable(row[column]), reverse=not ascending)
            rows = present + missing
        if query.row_limit is not None:
            rows = rows[: query.row_limit]
        return rows

    def select(self, query: Query) -> list[dict[str, Any]]:
        self.queries.append(query)
        return [copy.deepcopy(row) for row in self._filter(query)]

    def select_one(self, query: Query) -> dict[str, Any] | None:
        rows = self.select(query.limit(1))
        return rows[0] if rows else None

    def insert(self, table: str, record: dict[str, Any]) -> dict[str, Any]:
        stored = dict(record)
        stored.setdefault("id", str(self._next_id))
        self._next_id += 1
        self.tables.setdefault(table, []).append(stored)
        return copy.deepcopy(stored)

    def update(self, query: Query, changes: dict[str, Any]) -> list[dict[str, Any]]:
        rows = self._filter(query)
        for row in rows:
            row.update(changes)
        return [copy.deepcopy(row) for row in rows]

    def delete(self, query: Query) -> int:
        doomed = self._filter(query)
        self.tables[query.table] = [row for row in self.tables.get(query.table, []) if row not in doomed]
        return len(doomed)

    def upload_file(self, bucket, path, content, *, content_type, upsert=True, cache_control_seconds=3600):
        if self.fail_uploads:
            from goevent.backend import BackendError

            raise BackendError("storage is down", status_code=503)
        self.uploads.append(
            {"bucket": bucket, "path": path, "content": content, "content_type": content_type}
        )
        return path

    def public_url(self, bucket: str, path: str) -> str:
        return f"https://backend.test/storage/v1/object/public/{bucket}/{path}"

    def get_user(self, access_token: str) -> SessionUser | None:
        return self.users.get(access_token)


PARIS = ZoneInfo("Europe/Paris")


@pytest.fixture
def paris() -> ZoneInfo:
    return PARIS


@pytest.fixture
def fake_service() -> FakeDataService:
    return FakeDataService()


@pytest.fixture
def settings(tmp_path: Path) -> AppSettings:
    env = EnvSettings(
        goevent_env="test",
        goevent_timezone="Europe/Paris",
        goevent_db_path=tmp_path / "goevent.db",
        goevent_backend_url="https://backend.test",
    )
    yaml_settings = GoEventYamlSettings.model_validate(
        {
            "moderation": {"admin_user_ids": ["admin-1"]},
            "categories": [
                {"key": "concert", "label": "Concert / Musique"},
                {"key": "sport", "label": "Sport"},
                {"key": "autre", "label": "Autre"},
            ],
        }
    )
    return AppSettings(
        env=env,
        yaml=yaml_settings,
        project_root=tmp_path,
        config_path=tmp_path / "goevent.yaml",
        db_path=tmp_path / "goevent.db",
        timezone=PARIS,
    )
