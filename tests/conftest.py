# tests/conftest.py

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from types import SimpleNamespace

import pytest

from align_planner.cli.bootstrap import create_initial_state
from align_planner.core.db import Database
from align_planner.core.state import AppState
from align_planner.sync.dirty import DirtyTracker
from align_planner.sync.engine import SyncEngine
from align_planner.sync.sync_state import SyncStateStore
from align_planner.tasks.task_store import TaskStore

from .fakes import FakeClock, FakeLLMClient, InMemoryRemoteStore

REMOTE_URL = "https://dav.example.com/remote.php/dav/files/alice"


@pytest.fixture()
def settings(tmp_path: Path) -> SimpleNamespace:
    """
    Minimal settings object compatible with AppState and core modules.

    We intentionally use a SimpleNamespace rather than importing real config,
    to keep unit tests isolated and deterministic.
    """
    return SimpleNamespace(
        app_name="align-test",
        log_level="DEBUG",
        console_enabled=False,
        data_dir=tmp_path,
        db_path=tmp_path / "align.sqlite3",
        timezone="UTC",
        remote_base_dir="/align",
        webdav_timeout_seconds=5.0,
        llm_timeout_seconds=5.0,
        llm_temperature=0.0,
    )


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def remote(clock: FakeClock) -> InMemoryRemoteStore:
    return InMemoryRemoteStore(clock=clock)


@pytest.fixture()
def db(tmp_path: Path) -> Database:
    return Database(tmp_path / "store.sqlite3")


@pytest.fixture()
def dirty(db: Database) -> DirtyTracker:
    return DirtyTracker(db)


@pytest.fixture()
def store(db: Database, dirty: DirtyTracker) -> TaskStore:
    return TaskStore(db, dirty)


@pytest.fixture()
def state(settings: SimpleNamespace, remote: InMemoryRemoteStore) -> AppState:
    """
    AppState wired with deterministic fakes.

    NOTE: We keep the real SQLite stores here because their correctness
    is part of what we want to test.
    """
    return create_initial_state(settings=settings, remote_factory=lambda _s: remote, llm=FakeLLMClient())


@dataclass
class Device:
    """One installation of the app: its own database, sharing a remote with other devices."""

    store: TaskStore
    dirty: DirtyTracker
    state_store: SyncStateStore
    engine: SyncEngine


@pytest.fixture()
def make_device(
        tmp_path: Path, remote: InMemoryRemoteStore, clock: FakeClock
) -> Callable[..., Device]:
    def make(name: str, *, configured: bool = True) -> Device:
        db = Database(tmp_path / name / "align.sqlite3")
        dirty = DirtyTracker(db)
        store = TaskStore(db, dirty)
        state_store = SyncStateStore(db)
        if configured:
            state_store.save_credentials(REMOTE_URL, "alice", "secret")
        engine = SyncEngine(store, dirty, state_store, remote_factory=lambda _s: remote, clock=clock)
        return Device(store=store, dirty=dirty, state_store=state_store, engine=engine)

    return make
