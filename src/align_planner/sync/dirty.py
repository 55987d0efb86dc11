# src/align_planner/sync/dirty.py

"""
Dirty tracker: the set of shard keys with local changes not yet pushed.

Every mark gets a fresh sequence number from a persistent counter. A snapshot
remembers the sequence of each key it saw, and clearing with that snapshot only
removes keys whose sequence is unchanged. A shard re-marked while a push is in
flight therefore stays dirty: its newest change is not in the pushed payload.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterable, Iterator
from dataclasses import dataclass

from ..core.db import Database

logger = logging.getLogger(__name__)

# Reserved key for the combined configuration document (not a month).
CONFIG_SHARD_KEY = "config"


@dataclass(frozen=True, slots=True)
class DirtySnapshot:
    seqs: dict[str, int]
    # Highest sequence number handed out when the snapshot was taken.
    watermark: int = 0

    @property
    def keys(self) -> frozenset[str]:
        return frozenset(self.seqs)

    def __contains__(self, key: object) -> bool:
        return key in self.seqs

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self.seqs))

    def __len__(self) -> int:
        return len(self.seqs)


class DirtyTracker:
    def __init__(self, db: Database) -> None:
        self._db = db
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        with self._db.transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS dirty_shards (
                    shard_key TEXT PRIMARY KEY,
                    seq INTEGER NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS dirty_counter (
                    id INTEGER PRIMARY KEY CHECK (id = 1),
                    value INTEGER NOT NULL
                )
                """
            )
            conn.execute("INSERT OR IGNORE INTO dirty_counter(id, value) VALUES (1, 0)")

    # ---- in-transaction primitives (used by TaskStore/SyncEngine to stay atomic) ----

    @staticmethod
    def mark_dirty_in(conn: sqlite3.Connection, shard_keys: Iterable[str]) -> None:
        for key in sorted({k for k in shard_keys if k}):
            conn.execute("UPDATE dirty_counter SET value = value + 1 WHERE id = 1")
            (seq,) = conn.execute("SELECT value FROM dirty_counter WHERE id = 1").fetchone()
            conn.execute(
                """
                INSERT INTO dirty_shards(shard_key, seq) VALUES (?, ?)
                ON CONFLICT(shard_key) DO UPDATE SET seq = excluded.seq
                """,
                (key, int(seq)),
            )
            logger.debug("Shard marked dirty key=%s seq=%s", key, seq)

    @staticmethod
    def clear_dirty_in(conn: sqlite3.Connection, shard_keys: Iterable[str] | DirtySnapshot) -> int:
        removed = 0
        if isinstance(shard_keys, DirtySnapshot):
            for key, seq in shard_keys.seqs.items():
                cur = conn.execute(
                    "DELETE FROM dirty_shards WHERE shard_key = ? AND seq = ?", (key, seq)
                )
                if cur.rowcount == 0:
                    logger.debug("Shard %s re-marked since snapshot; keeping it dirty", key)
                removed += cur.rowcount
            return removed

        for key in set(shard_keys):
            cur = conn.execute("DELETE FROM dirty_shards WHERE shard_key = ?", (key,))
            removed += cur.rowcount
        return removed

    @staticmethod
    def seq_in(conn: sqlite3.Connection, shard_key: str) -> int | None:
        row = conn.execute("SELECT seq FROM dirty_shards WHERE shard_key = ?", (shard_key,)).fetchone()
        return int(row["seq"]) if row else None

    # ---- public API ----

    def mark_dirty(self, shard_key: str) -> None:
        with self._db.transaction() as conn:
            self.mark_dirty_in(conn, [shard_key])

    def clear_dirty(self, shard_keys: Iterable[str] | DirtySnapshot) -> int:
        """
        Remove only the given keys.

        With a DirtySnapshot, a key is removed only if it was not re-marked after the snapshot.
        Returns the number of keys removed.
        """
        with self._db.transaction() as conn:
            return self.clear_dirty_in(conn, shard_keys)

    def snapshot(self) -> DirtySnapshot:
        # Same transaction for both reads: every row's seq is <= the watermark.
        with self._db.transaction() as conn:
            rows = conn.execute("SELECT shard_key, seq FROM dirty_shards").fetchall()
            (watermark,) = conn.execute("SELECT value FROM dirty_counter WHERE id = 1").fetchone()
        return DirtySnapshot(seqs={r["shard_key"]: int(r["seq"]) for r in rows}, watermark=int(watermark))

    def dirty_keys(self) -> set[str]:
        return set(self.snapshot().seqs)
