from __future__ import annotations

import json
import logging
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.parse import quote, urlencode
from urllib.request import Request, urlopen

from ..domain.models import SessionUser
from .base import BackendError
from .query import Query

LOGGER = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10
USER_AGENT = "goevent/0.1"


def _object_path(path: str) -> str:
    parts = [part for part in path.replace("\\", "/").split("/") if part not in ("", ".")]
    if not parts or any(part == ".." for part in parts):
        raise BackendError(f"Invalid storage object path: {path}")
    return "/".join(quote(part) for part in parts)


class RestDataService:
    """Client for the managed backend's REST, storage and auth endpoints."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        access_token: str | None = None,
        timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._access_token = access_token
        self._timeout_seconds = timeout_seconds

    def with_access_token(self, access_token: str | None) -> RestDataService:
        return RestDataService(
            base_url=self._base_url,
            api_key=self._api_key,
            access_token=access_token,
            timeout_seconds=self._timeout_seconds,
        )

    def _headers(self, extra: dict[str, str] | None = None, *, token: str | None = None) -> dict[str, str]:
        bearer = token or self._access_token or self._api_key
        headers = {
            "User-Agent": USER_AGENT,
            "apikey": self._api_key,
            "Authorization": f"Bearer {bearer}",
            "Accept": "application/json",
        }
        if extra:
            headers.update(extra)
        return headers

    def _send(
        self,
        method: str,
        url: str,
        *,
        body: bytes | None = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        request = Request(url, data=body, method=method, headers=headers or self._headers())
        try:
            with urlopen(request, timeout=self._timeout_seconds) as response:
                raw_payload = response.read()
        except HTTPError as exc:
            detail = ""
            try:
                detail = exc.read().decode("utf-8", errors="replace")
            except OSError:
                pass
            raise BackendError(
                f"{method} {url} failed with HTTP {exc.code}: {detail}".strip(),
                status_code=exc.code,
            ) from exc
        except (URLError, TimeoutError, OSError) as exc:
            raise BackendError(f"{method} {url} failed: {exc}") from exc

        if not raw_payload:
            return None
        try:
            return json.loads(raw_payload.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise BackendError(f"{method} {url} returned a non-JSON payload") from exc

    def _rest_url(self, query: Query, *, include_select: bool = True) -> str:
        params = urlencode(query.to_params(include_select=include_select))
        url = f"{self._base_url}/rest/v1/{quote(query.table)}"
        return f"{url}?{params}" if params else url

    def _json_body(self, payload: Any) -> bytes:
        return json.dumps(payload, ensure_ascii=False, default=str).encode("utf-8")

    @staticmethod
    def _rows(payload: Any, *, context: str) -> list[dict[str, Any]]:
        if payload is None:
            return []
        if not isinstance(payload, list):
            raise BackendError(f"Unexpected response shape for {context}")
        return [row for row in payload if isinstance(row, dict)]

    def select(self, query: Query) -> list[dict[str, Any]]:
        payload = self._send("GET", self._rest_url(query))
        return self._rows(payload, context=f"select on {query.table}")

    def select_one(self, query: Query) -> dict[str, Any] | None:
        rows = self.select(query.limit(1))
        return rows[0] if rows else None

    def insert(self, table: str, record: dict[str, Any]) -> dict[str, Any]:
        url = f"{self._base_url}/rest/v1/{quote(table)}"
        headers = self._headers({"Content-Type": "application/json", "Prefer": "return=representation"})
        payload = self._send("POST", url, body=self._json_body(record), headers=headers)
        rows = self._rows(payload, context=f"insert into {table}")
        if not rows:
            raise BackendError(f"Insert into {table} returned no row")
        return rows[0]

    def update(self, query: Query, changes: dict[str, Any]) -> list[dict[str, Any]]:
        if not query.filters and not query.any_of:
            raise BackendError("Refusing to update without a filter")
        headers = self._headers({"Content-Type": "application/json", "Prefer": "return=representation"})
        payload = self._send(
            "PATCH",
            self._rest_url(query, include_select=False),
            body=self._json_body(changes),
            headers=headers,
        )
        return self._rows(payload, context=f"update on {query.table}")

    def delete(self, query: Query) -> int:
        if not query.filters and not query.any_of:
            raise BackendError("Refusing to delete without a filter")
        headers = self._headers({"Prefer": "return=representation"})
        payload = self._send("DELETE", self._rest_url(query, include_select=False), headers=headers)
        return len(self._rows(payload, context=f"delete on {query.table}"))

    def upload_file(
        self,
        bucket: str,
        path: str,
        content: bytes,
        *,
        content_type: str,
        upsert: bool = True,
        cache_control_seconds: int = 3600,
    ) -> str:
        object_path = _object_path(path)
        url = f"{self._base_url}/storage/v1/object/{quote(bucket)}/{object_path}"
        headers = self._headers(
            {
                "Content-Type": content_type or "application/octet-stream",
                "Cache-Control": f"max-age={cache_control_seconds}",
                "x-upsert": "true" if upsert else "false",
            }
        )
        self._send("POST", url, body=content, headers=headers)
        LOGGER.info("Uploaded %d bytes to %s/%s", len(content), bucket, path)
        return path

    def public_url(self, bucket: str, path: str) -> str:
        return f"{self._base_url}/storage/v1/object/public/{quote(bucket)}/{_object_path(path)}"

    def get_user(self, access_token: str) -> SessionUser | None:
        token = access_token.strip()
        if not token:
            return None
        try:
            payload = self._send(
                "GET",
                f"{self._base_url}/auth/v1/user",
                headers=self._headers(token=token),
            )
        except BackendError as exc:
            if exc.status_code not in (401, 403):
                raise
            LOGGER.info("Access token was rejected: %s", exc)
            return None
        if not isinstance(payload, dict) or not payload.get("id"):
            return None
        return SessionUser(id=str(payload["id"]), email=payload.get("email"), access_token=token)
