# src/align_planner/errors.py

"""
Error taxonomy shared by the store, the codecs, the remote adapters and the sync engine.

Stores and adapters raise these; the sync engine classifies them into a SyncResult.
StorageError is the exception: it always propagates to the caller.
"""

from __future__ import annotations


class AlignError(Exception):
    """Base class for all application errors."""


class ConfigMissing(AlignError):
    """No remote credentials saved; sync refuses to start."""


class RemoteError(AlignError):
    """Any failure reported by the remote store capability."""


class NetworkError(RemoteError):
    """Transport/connection failure or an unexpected remote response."""


class RemoteNotFound(RemoteError):
    """The requested remote path does not exist."""

    def __init__(self, path: str) -> None:
        super().__init__(f"Remote path not found: {path}")
        self.path = path


class ParseError(AlignError):
    """A remote snapshot (shard or config) is malformed or fails validation."""


class StorageError(AlignError):
    """Local persistence failed (database unavailable, full, locked...)."""


class TaskNotFound(AlignError, KeyError):
    def __init__(self, task_id: str) -> None:
        super().__init__(task_id)
        self.task_id = task_id

    def __str__(self) -> str:
        return f"Task not found: {self.task_id}"


class LLMError(AlignError):
    """The language-model collaborator failed or returned something unusable."""
