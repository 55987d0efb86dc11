# src/align_planner/core/ports.py

from __future__ import annotations

"""
Ports (interfaces) used by the core.

The sync engine and the task parser depend on Protocols instead of concrete
implementations, so the WebDAV adapter and the LLM provider are swappable and
tests can use in-memory fakes.
"""

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

ChatMessage = dict[str, str]
# OpenAI-style chat messages: {"role": "...", "content": "..."}.


@dataclass(frozen=True, slots=True)
class RemoteEntry:
    name: str
    last_modified: datetime | None = None
    is_directory: bool = False


class RemoteStore(Protocol):
    """
    Remote file store (WebDAV-like). Paths are absolute, '/'-separated.

    Errors:
    - get() of a missing file raises RemoteNotFound
    - anything else that fails raises NetworkError
    """

    async def exists(self, path: str) -> bool: ...
    async def create_directory(self, path: str) -> None: ...
    async def list(self, path: str) -> list[RemoteEntry]: ...
    async def get(self, path: str) -> bytes: ...
    async def put(self, path: str, data: bytes) -> None: ...
    async def aclose(self) -> None: ...


class LLMClient(Protocol):
    """Streaming chat completion client (OpenAI-compatible)."""
    def stream_chat(self, messages: list[ChatMessage], system_prompt: str | None = None) -> Iterable[str]: ...
