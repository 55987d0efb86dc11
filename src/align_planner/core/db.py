# src/align_planner/core/db.py

from __future__ import annotations

import contextlib
import logging
import sqlite3
from collections.abc import Iterator
from pathlib import Path

from ..errors import StorageError

logger = logging.getLogger(__name__)


class Database:
    """
    Shared SQLite file for tasks, config documents, dirty shards and sync state.

    Keeping them in one file is what lets a task write and its dirty-mark commit
    in the same transaction.

    Thread-safety:
    - each call opens its own SQLite connection (no shared cursors)
    - write transactions start with BEGIN IMMEDIATE so writers serialize on the file lock
    """

    def __init__(self, db_path: str | Path = "align.sqlite3") -> None:
        self.path = Path(db_path)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Cannot create data directory for {self.path}: {e}") from e

    def _get_conn(self) -> sqlite3.Connection:
        # isolation_level=None: we issue BEGIN/COMMIT ourselves.
        conn = sqlite3.connect(str(self.path), timeout=30.0, isolation_level=None)
        conn.row_factory = sqlite3.Row
        with contextlib.suppress(sqlite3.Error):
            conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    @contextlib.contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        One atomic write unit. Commits on success, rolls back on any exception.

        sqlite3 errors surface as StorageError (chained); other exceptions pass through unchanged.
        """
        try:
            conn = self._get_conn()
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open database {self.path}: {e}") from e
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.execute("COMMIT")
        except sqlite3.Error as e:
            with contextlib.suppress(sqlite3.Error):
                conn.execute("ROLLBACK")
            logger.error("SQLite transaction failed db=%s: %s", self.path, e)
            raise StorageError(f"Local storage failure: {e}") from e
        except BaseException:
            with contextlib.suppress(sqlite3.Error):
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    @contextlib.contextmanager
    def reader(self) -> Iterator[sqlite3.Connection]:
        """Read-only access; no explicit transaction."""
        try:
            conn = self._get_conn()
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open database {self.path}: {e}") from e
        try:
            yield conn
        except sqlite3.Error as e:
            raise StorageError(f"Local storage failure: {e}") from e
        finally:
            conn.close()
