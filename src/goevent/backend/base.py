from __future__ import annotations

from typing import Any, Protocol

from ..domain.models import SessionUser
from .query import Query


class BackendError(RuntimeError):
    """Raised when the managed data service cannot complete a request."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class DataService(Protocol):
    def with_access_token(self, access_token: str | None) -> DataService:
        """Return a client acting on behalf of the given signed-in user."""

    def select(self, query: Query) -> list[dict[str, Any]]:
        """Return the rows matching the query, in the order the service sends them."""

    def select_one(self, query: Query) -> dict[str, Any] | None:
        """Return the first matching row, or ``None``."""

    def insert(self, table: str, record: dict[str, Any]) -> dict[str, Any]:
        """Insert one record and return the stored representation."""

    def update(self, query: Query, changes: dict[str, Any]) -> list[dict[str, Any]]:
        """Apply changes to every row matching the query."""

    def delete(self, query: Query) -> int:
        """Delete every row matching the query and return how many went away."""

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
        """Store a file object and return its path inside the bucket."""

    def public_url(self, bucket: str, path: str) -> str:
        """Public download URL of a stored object."""

    def get_user(self, access_token: str) -> SessionUser | None:
        """Resolve an access token to its user, or ``None`` when it is not valid."""
