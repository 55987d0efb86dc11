# src/align_planner/cli/bootstrap.py

"""
CLI bootstrap helpers.

This module is the "composition root":
- loads settings once,
- ensures the local data directory exists,
- wires concrete implementations into AppState (SQLite stores, sync engine, WebDAV, LLM).
"""

from __future__ import annotations

import logging
from datetime import UTC, tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ..config import get_settings
from ..core.db import Database
from ..core.ports import LLMClient, RemoteStore
from ..core.state import AppState
from ..llm.client import OpenAIChatClient
from ..llm.task_parser import TaskParser
from ..sync.dirty import DirtyTracker
from ..sync.engine import RemoteFactory, SyncEngine
from ..sync.sync_state import SyncState, SyncStateStore
from ..sync.webdav import WebDAVRemoteStore
from ..tasks.task_store import TaskStore

logger = logging.getLogger(__name__)


def resolve_timezone(name: str | None) -> tzinfo:
    name = (name or "").strip()
    if not name or name.upper() == "UTC":
        return UTC
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r, falling back to UTC", name)
        return UTC


def webdav_factory(settings) -> RemoteFactory:
    timeout = float(getattr(settings, "webdav_timeout_seconds", 30.0))

    def make(state: SyncState) -> RemoteStore:
        return WebDAVRemoteStore(state.url, state.username, state.password, timeout_seconds=timeout)

    return make


def create_initial_state(
        *,
        settings=None,
        remote_factory: RemoteFactory | None = None,
        llm: LLMClient | None = None,
) -> AppState:
    """
    Create AppState from the provided settings.

    If settings is None, falls back to get_settings().
    remote_factory/llm are injectable for tests; defaults are WebDAV and the configured LLM.
    """
    if settings is None:
        settings = get_settings()

    settings.data_dir.mkdir(parents=True, exist_ok=True)
    tz = resolve_timezone(getattr(settings, "timezone", "UTC"))

    db = Database(settings.db_path)
    dirty = DirtyTracker(db)
    store = TaskStore(db, dirty, tz=tz)
    engine = SyncEngine(
        store,
        dirty,
        SyncStateStore(db),
        remote_factory=remote_factory or webdav_factory(settings),
        base_dir=getattr(settings, "remote_base_dir", "/align"),
    )

    return AppState(settings=settings, db=db, task_store=store, dirty=dirty, engine=engine, llm=llm)


def make_task_parser(state: AppState) -> TaskParser:
    llm = state.llm
    if llm is None:
        llm = OpenAIChatClient(
            state.task_store.get_ai_settings(),
            timeout_seconds=float(getattr(state.settings, "llm_timeout_seconds", 60.0)),
            temperature=float(getattr(state.settings, "llm_temperature", 0.7)),
        )
    return TaskParser(llm, tz=state.task_store.tz)
