# src/align_planner/sync/engine.py

"""
Sync engine: user-triggered push and pull between the local store and a remote file store.

Push uploads every dirty month shard as a full snapshot (plus config.json when needed).
Pull downloads month shards changed since the last sync and replaces the local months
wholesale. There is no per-task merge: the last writer of a shard wins.

One operation at a time: a push/pull arriving while another is running is rejected
immediately with SYNC_IN_PROGRESS (no queue).
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum

from ..core.ports import RemoteStore
from ..errors import ConfigMissing, ParseError, RemoteError, RemoteNotFound, StorageError
from ..tasks.task_models import now_utc
from ..tasks.task_store import ReplaceSession, TaskStore
from .codec import (
    CONFIG_FILENAME,
    deserialize_config,
    deserialize_shard,
    serialize_config,
    serialize_shard,
    shard_filename,
    shard_key_from_filename,
)
from .dirty import CONFIG_SHARD_KEY, DirtySnapshot, DirtyTracker
from .sync_state import SyncState, SyncStateStore

logger = logging.getLogger(__name__)

RemoteFactory = Callable[[SyncState], RemoteStore]


class SyncOutcome(StrEnum):
    SUCCESS = "success"
    NOTHING_TO_SYNC = "nothing_to_sync"
    UP_TO_DATE = "up_to_date"
    FAILED = "failed"


class FailureReason(StrEnum):
    CONFIG_MISSING = "config_missing"
    SYNC_IN_PROGRESS = "sync_in_progress"
    NETWORK_ERROR = "network_error"
    UNEXPECTED = "unexpected"


@dataclass(slots=True)
class SyncResult:
    operation: str  # "push" | "pull"
    outcome: SyncOutcome = SyncOutcome.SUCCESS
    reason: FailureReason | None = None
    message: str = ""

    # push
    shards_written: list[str] = field(default_factory=list)
    shards_pending: list[str] = field(default_factory=list)
    config_written: bool = False

    # pull
    shards_downloaded: list[str] = field(default_factory=list)
    shards_skipped: list[str] = field(default_factory=list)
    shards_kept_local: list[str] = field(default_factory=list)
    config_applied: bool = False

    started_at: datetime | None = None
    finished_at: datetime | None = None
    last_sync_time: datetime | None = None

    @property
    def ok(self) -> bool:
        return self.outcome != SyncOutcome.FAILED

    def fail(self, reason: FailureReason, message: str) -> None:
        self.outcome = SyncOutcome.FAILED
        self.reason = reason
        self.message = message

    def summary(self) -> str:
        """One human-readable line for the user. Per-shard detail lives in the logs."""
        op = self.operation.capitalize()
        if self.outcome == SyncOutcome.FAILED:
            if self.reason == FailureReason.SYNC_IN_PROGRESS:
                return f"{op} rejected: sync already in progress."
            if self.reason == FailureReason.CONFIG_MISSING:
                return f"{op} failed: sync is not configured (use /remote <url> <user> <password>)."
            return f"{op} failed: {self.message or self.reason}"
        if self.outcome == SyncOutcome.NOTHING_TO_SYNC:
            return "Nothing to sync."
        if self.outcome == SyncOutcome.UP_TO_DATE:
            extra = " (settings updated)" if self.config_applied else ""
            return f"Already up to date{extra}."
        if self.operation == "push":
            parts = [f"{len(self.shards_written)} shard(s) uploaded"]
            if self.config_written:
                parts.append("settings uploaded")
            if self.shards_pending:
                parts.append(f"{len(self.shards_pending)} changed during push (will go next time)")
            return "Push complete: " + ", ".join(parts) + "."
        parts = [f"{len(self.shards_downloaded)} shard(s) downloaded"]
        if self.config_applied:
            parts.append("settings updated")
        if self.shards_skipped:
            parts.append(f"{len(self.shards_skipped)} skipped")
        if self.shards_kept_local:
            parts.append(f"{len(self.shards_kept_local)} kept local")
        return "Pull complete: " + ", ".join(parts) + "."


SyncBody = Callable[[SyncState, SyncResult], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class SyncStatus:
    syncing: bool
    configured: bool
    last_sync_time: datetime | None
    dirty_shards: list[str]


class SyncEngine:
    """
    Owns the sync guard and drives push/pull.

    Errors:
    - ConfigMissing, RemoteError and anything unexpected become a FAILED SyncResult
    - StorageError always propagates (after the guard is released)
    """

    def __init__(
            self,
            store: TaskStore,
            dirty: DirtyTracker,
            state_store: SyncStateStore,
            *,
            remote_factory: RemoteFactory,
            base_dir: str = "/align",
            clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self._store = store
        self._dirty = dirty
        self._state = state_store
        self._remote_factory = remote_factory
        self._base_dir = "/" + base_dir.strip("/")
        self._data_dir = f"{self._base_dir}/data"
        self._clock = clock
        self._syncing = False

    @property
    def syncing(self) -> bool:
        return self._syncing

    @property
    def data_dir(self) -> str:
        return self._data_dir

    def config_path(self) -> str:
        return f"{self._base_dir}/{CONFIG_FILENAME}"

    def shard_path(self, shard_key: str) -> str:
        return f"{self._data_dir}/{shard_filename(shard_key)}"

    # ---- upward API ----

    def configure_sync(self, url: str, username: str, password: str | None) -> None:
        self._state.save_credentials(url, username, password)

    def status(self) -> SyncStatus:
        state = self._state.load()
        return SyncStatus(
            syncing=self._syncing,
            configured=state.configured,
            last_sync_time=state.last_sync_time,
            dirty_shards=sorted(self._dirty.dirty_keys()),
        )

    def sync_state(self) -> SyncState:
        state = self._state.load()
        state.dirty_shards = sorted(self._dirty.dirty_keys())
        return state

    async def push(self) -> SyncResult:
        return await self._guarded("push", self._push)

    async def pull(self) -> SyncResult:
        return await self._guarded("pull", self._pull)

    # ---- plumbing ----

    async def _guarded(self, operation: str, body: SyncBody) -> SyncResult:
        # Check-and-set with no await in between: atomic on the event loop.
        if self._syncing:
            logger.info("%s rejected: sync already in progress", operation)
            result = SyncResult(operation=operation, started_at=self._clock())
            result.fail(FailureReason.SYNC_IN_PROGRESS, "sync already in progress")
            result.finished_at = result.started_at
            return result

        self._syncing = True
        result = SyncResult(operation=operation, started_at=self._clock())
        try:
            state = self._state.load()
            if not state.configured:
                raise ConfigMissing("no remote credentials saved")
            logger.info("%s started url=%s last_sync=%s", operation, state.url, state.last_sync_time)
            await body(state, result)
        except ConfigMissing as e:
            logger.info("%s refused: %s", operation, e)
            result.fail(FailureReason.CONFIG_MISSING, str(e))
        except StorageError:
            logger.error("%s aborted by local storage failure", operation)
            raise
        except RemoteError as e:
            logger.warning("%s failed: %s", operation, e)
            result.fail(FailureReason.NETWORK_ERROR, str(e))
        except Exception as e:
            logger.exception("%s failed unexpectedly", operation)
            result.fail(FailureReason.UNEXPECTED, f"{e.__class__.__name__}: {e}")
        finally:
            self._syncing = False

        result.finished_at = self._clock()
        logger.info("%s finished: %s", operation, result.summary())
        return result

    async def _close(self, remote: RemoteStore) -> None:
        try:
            await remote.aclose()
        except Exception as e:
            logger.warning("Remote close failed: %s", e)

    async def _ensure_directories(self, remote: RemoteStore) -> None:
        for path in (self._base_dir, self._data_dir):
            if not await remote.exists(path):
                logger.info("Creating remote directory %s", path)
                await remote.create_directory(path)

    # ---- push ----

    async def _push(self, state: SyncState, result: SyncResult) -> None:
        snapshot = self._dirty.snapshot()
        shard_keys = [k for k in snapshot if k != CONFIG_SHARD_KEY]
        write_config = CONFIG_SHARD_KEY in snapshot or state.last_sync_time is None

        if not shard_keys and not write_config:
            result.outcome = SyncOutcome.NOTHING_TO_SYNC
            return

        remote = self._remote_factory(state)
        try:
            await self._ensure_directories(remote)

            for key in shard_keys:
                payload = serialize_shard(self._store.tasks_in_shard(key))
                try:
                    await remote.put(self.shard_path(key), payload)
                except RemoteError:
                    result.shards_pending = [k for k in shard_keys if k not in result.shards_written]
                    logger.warning(
                        "Push stopped at shard %s; still dirty: %s", key, ", ".join(result.shards_pending)
                    )
                    raise
                # Confirmed on the remote: clear this key unless it was re-marked meanwhile.
                self._dirty.clear_dirty(DirtySnapshot(seqs={key: snapshot.seqs[key]}))
                result.shards_written.append(key)
                logger.info("Shard %s uploaded (%d bytes)", key, len(payload))

            if write_config:
                payload = serialize_config(self._store.get_config_snapshot())
                await remote.put(self.config_path(), payload)
                if CONFIG_SHARD_KEY in snapshot:
                    self._dirty.clear_dirty(DirtySnapshot(seqs={CONFIG_SHARD_KEY: snapshot.seqs[CONFIG_SHARD_KEY]}))
                result.config_written = True
                logger.info("Config uploaded (%d bytes)", len(payload))
        finally:
            await self._close(remote)

        # Keys re-marked while the push was in flight stay dirty for the next push.
        live = self._dirty.dirty_keys()
        result.shards_pending = sorted(k for k in snapshot.keys if k in live)
        result.last_sync_time = self._state.advance_last_sync_time(self._clock())
        result.outcome = SyncOutcome.SUCCESS

    # ---- pull ----

    async def _pull(self, state: SyncState, result: SyncResult) -> None:
        started = result.started_at or self._clock()
        # Shards re-marked after this point were edited during the pull and are not overwritten.
        watermark = self._dirty.snapshot().watermark
        session = ReplaceSession()
        last_sync = state.last_sync_time

        remote = self._remote_factory(state)
        try:
            await self._pull_config(remote, result)

            try:
                entries = await remote.list(self._data_dir)
            except RemoteNotFound:
                logger.info("Remote data directory %s does not exist yet", self._data_dir)
                entries = []

            selected: list[str] = []
            for entry in entries:
                if entry.is_directory:
                    continue
                key = shard_key_from_filename(entry.name)
                if key is None:
                    continue
                if last_sync is None or entry.last_modified is None or entry.last_modified > last_sync:
                    selected.append(key)
            selected.sort()
            logger.info("Pull selected %d of %d remote file(s): %s", len(selected), len(entries), selected)

            for key in selected:
                await self._pull_shard(remote, key, watermark, session, result)
        finally:
            await self._close(remote)

        result.outcome = SyncOutcome.SUCCESS if selected else SyncOutcome.UP_TO_DATE
        result.last_sync_time = self._state.advance_last_sync_time(started)

    async def _pull_config(self, remote: RemoteStore, result: SyncResult) -> None:
        try:
            data = await remote.get(self.config_path())
        except RemoteNotFound:
            logger.info("No remote config at %s", self.config_path())
            return
        try:
            snapshot = deserialize_config(data)
        except ParseError as e:
            logger.warning("Skipping remote config: %s", e)
            return
        replaced = self._store.replace_config(snapshot)
        result.config_applied = bool(replaced)

    async def _pull_shard(
            self,
            remote: RemoteStore,
            key: str,
            watermark: int,
            session: ReplaceSession,
            result: SyncResult,
    ) -> None:
        path = self.shard_path(key)
        try:
            tasks = deserialize_shard(await remote.get(path))
        except (RemoteError, ParseError) as e:
            logger.warning("Skipping shard %s: %s", key, e)
            result.shards_skipped.append(key)
            return

        if self._store.replace_shard(key, tasks, preserve_after=watermark, session=session):
            result.shards_downloaded.append(key)
        else:
            result.shards_kept_local.append(key)
