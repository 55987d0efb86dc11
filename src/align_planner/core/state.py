# src/align_planner/core/state.py

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any

from ..sync.dirty import DirtyTracker
from ..sync.engine import SyncEngine
from ..tasks.task_store import TaskStore
from .db import Database
from .ports import LLMClient


@dataclass
class AppState:
    """
    Shared runtime state (used by the CLI console and commands).

    Holds the concrete store / engine instances built by the composition root.
    `llm` is optional: when None, an OpenAI-compatible client is built from the
    stored AI settings on demand.
    """

    settings: Any
    db: Database
    task_store: TaskStore
    dirty: DirtyTracker
    engine: SyncEngine
    llm: LLMClient | None = None

    # Serializes command handling if more than one front-end shares the state.
    lock: threading.RLock = field(default_factory=threading.RLock)
