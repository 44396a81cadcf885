from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .db import open_db


@dataclass(slots=True)
class Snapshot:
    name: str
    payload: Any
    captured_at: datetime
    ttl_seconds: int

    def age_seconds(self, now: datetime | None = None) -> float:
        reference = now or datetime.now(timezone.utc)
        return (reference - self.captured_at).total_seconds()

    def is_stale(self, now: datetime | None = None) -> bool:
        return self.age_seconds(now) > self.ttl_seconds


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def save_snapshot(
    db_path: Path,
    name: str,
    payload: Any,
    *,
    ttl_seconds: int,
    captured_at: datetime | None = None,
) -> Snapshot:
    if ttl_seconds < 0:
        raise ValueError("ttl_seconds must be >= 0")

    snapshot = Snapshot(
        name=name,
        payload=payload,
        captured_at=_as_utc(captured_at or datetime.now(timezone.utc)),
        ttl_seconds=ttl_seconds,
    )
    with open_db(db_path) as connection:
        connection.execute(
            """
            INSERT INTO snapshots (name, payload_json, captured_at, ttl_seconds)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(name) DO UPDATE SET
                payload_json=excluded.payload_json,
                captured_at=excluded.captured_at,
                ttl_seconds=excluded.ttl_seconds
            """,
            (
                name,
                json.dumps(payload, ensure_ascii=False, separators=(",", ":")),
                snapshot.captured_at.isoformat(),
                ttl_seconds,
            ),
        )
        connection.commit()
    return snapshot


def load_snapshot(db_path: Path, name: str, *, allow_stale: bool = True) -> Snapshot | None:
    with open_db(db_path) as connection:
        row = connection.execute(
            "SELECT name, payload_json, captured_at, ttl_seconds FROM snapshots WHERE name = ?",
            (name,),
        ).fetchone()

    if row is None:
        return None

    snapshot = Snapshot(
        name=row["name"],
        payload=json.loads(row["payload_json"]),
        captured_at=_as_utc(datetime.fromisoformat(row["captured_at"])),
        ttl_seconds=int(row["ttl_seconds"]),
    )
    if not allow_stale and snapshot.is_stale():
        return None
    return snapshot


def prune_snapshots(db_path: Path, *, now: datetime | None = None) -> int:
    reference = _as_utc(now) if now is not None else datetime.now(timezone.utc)
    with open_db(db_path) as connection:
        rows = connection.execute("SELECT name, captured_at, ttl_seconds FROM snapshots").fetchall()
        expired = [
            row["name"]
            for row in rows
            if (reference - _as_utc(datetime.fromisoformat(row["captured_at"]))).total_seconds()
            > int(row["ttl_seconds"])
        ]
        connection.executemany("DELETE FROM snapshots WHERE name = ?", [(name,) for name in expired])
        connection.commit()
    return len(expired)
