# src/align_planner/sync/sync_state.py

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from ..core.db import Database

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SyncState:
    """Persisted per-device sync bookkeeping. `dirty_shards` is filled from the DirtyTracker."""

    url: str = ""
    username: str = ""
    password: str | None = None
    last_sync_time: datetime | None = None
    dirty_shards: list[str] = field(default_factory=list)

    @property
    def configured(self) -> bool:
        return bool(self.url and self.username)

    def to_dict(self, *, include_password: bool = False) -> dict[str, Any]:
        out: dict[str, Any] = {
            "url": self.url,
            "username": self.username,
            "lastSyncTime": int(self.last_sync_time.timestamp() * 1000) if self.last_sync_time else None,
            "dirtyShards": sorted(self.dirty_shards),
        }
        if include_password:
            out["password"] = self.password
        return out


def _to_ts(dt: datetime) -> float:
    return (dt if dt.tzinfo is not None else dt.replace(tzinfo=UTC)).timestamp()


class SyncStateStore:
    """Single-row table holding remote credentials and the last successful sync instant."""

    def __init__(self, db: Database) -> None:
        self._db = db
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        with self._db.transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS sync_state (
                    id INTEGER PRIMARY KEY CHECK (id = 1),
                    url TEXT NOT NULL DEFAULT '',
                    username TEXT NOT NULL DEFAULT '',
                    password TEXT,
                    last_sync_ts REAL
                )
                """
            )
            conn.execute("INSERT OR IGNORE INTO sync_state(id) VALUES (1)")

    def load(self) -> SyncState:
        with self._db.reader() as conn:
            row = conn.execute(
                "SELECT url, username, password, last_sync_ts FROM sync_state WHERE id = 1"
            ).fetchone()
        ts = row["last_sync_ts"]
        return SyncState(
            url=row["url"],
            username=row["username"],
            password=row["password"],
            last_sync_time=datetime.fromtimestamp(ts, tz=UTC) if ts is not None else None,
        )

    def save_credentials(self, url: str, username: str, password: str | None) -> None:
        url = (url or "").strip().rstrip("/")
        username = (username or "").strip()
        if not url or not username:
            raise ValueError("url and username are required")

        with self._db.transaction() as conn:
            conn.execute(
                "UPDATE sync_state SET url = ?, username = ?, password = ? WHERE id = 1",
                (url, username, password),
            )
        logger.info("Sync credentials saved url=%s user=%s", url, username)

    def advance_last_sync_time(self, instant: datetime) -> datetime:
        """Set last_sync_time to max(current, instant). Never moves backwards. Returns the stored value."""
        ts = _to_ts(instant)
        with self._db.transaction() as conn:
            conn.execute(
                """
                UPDATE sync_state
                SET last_sync_ts = CASE
                    WHEN last_sync_ts IS NULL OR last_sync_ts < ? THEN ?
                    ELSE last_sync_ts
                END
                WHERE id = 1
                """,
                (ts, ts),
            )
            (stored,) = conn.execute("SELECT last_sync_ts FROM sync_state WHERE id = 1").fetchone()
        return datetime.fromtimestamp(stored, tz=UTC)
