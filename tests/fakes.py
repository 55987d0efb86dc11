# tests/fakes.py

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable
from datetime import UTC, datetime, timedelta

from align_planner.core.ports import ChatMessage, RemoteEntry
from align_planner.errors import NetworkError, RemoteNotFound


class FakeClock:
    """Strictly increasing clock: every call advances one second."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 6, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        self.now += timedelta(seconds=1)
        return self.now


class FakeLLMClient:
    """
    Deterministic LLM client for unit tests.

    - Captures calls for assertions
    - Yields a predefined text as a single chunk
    """

    def __init__(self, next_text: str = "{}") -> None:
        self.next_text = next_text
        self.calls: list[tuple[list[ChatMessage], str | None]] = []

    def stream_chat(self, messages: list[ChatMessage], system_prompt: str | None = None) -> Iterable[str]:
        self.calls.append((messages, system_prompt))
        yield self.next_text


def _parent(path: str) -> str:
    head = path.rstrip("/").rsplit("/", 1)[0]
    return head or "/"


class InMemoryRemoteStore:
    """
    In-memory RemoteStore with failure injection.

    - fail_put / fail_get: paths whose put/get raise NetworkError
    - fail_list: list() raises NetworkError
    - list_gate / put_gate: when set to an Event, the call signals *_started and waits on the gate
    - put() into a missing directory fails like a WebDAV 409
    """

    def __init__(self, clock: Callable[[], datetime] | None = None) -> None:
        self._clock = clock or (lambda: datetime.now(UTC))
        self.files: dict[str, bytes] = {}
        self.mtimes: dict[str, datetime] = {}
        self.dirs: set[str] = {"/"}
        self.calls: list[tuple[str, str]] = []

        self.fail_put: set[str] = set()
        self.fail_get: set[str] = set()
        self.fail_list = False

        self.list_gate: asyncio.Event | None = None
        self.list_started = asyncio.Event()
        self.put_gate: asyncio.Event | None = None
        self.put_started = asyncio.Event()
        self.closed = 0

    def calls_of(self, method: str) -> list[str]:
        return [p for m, p in self.calls if m == method]

    async def exists(self, path: str) -> bool:
        self.calls.append(("exists", path))
        path = path.rstrip("/") or "/"
        return path in self.dirs or path in self.files

    async def create_directory(self, path: str) -> None:
        self.calls.append(("mkcol", path))
        path = path.rstrip("/") or "/"
        if _parent(path) not in self.dirs:
            raise NetworkError(f"MKCOL {path}: HTTP 409")
        self.dirs.add(path)

    async def list(self, path: str) -> list[RemoteEntry]:
        self.calls.append(("list", path))
        if self.list_gate is not None:
            self.list_started.set()
            await self.list_gate.wait()
        if self.fail_list:
            raise NetworkError(f"PROPFIND {path}: simulated failure")
        path = path.rstrip("/") or "/"
        if path not in self.dirs:
            raise RemoteNotFound(path)

        out: list[RemoteEntry] = []
        for d in sorted(self.dirs):
            if d != path and _parent(d) == path:
                out.append(RemoteEntry(name=d.rsplit("/", 1)[-1], is_directory=True))
        for f in sorted(self.files):
            if _parent(f) == path:
                out.append(RemoteEntry(name=f.rsplit("/", 1)[-1], last_modified=self.mtimes.get(f)))
        return out

    async def get(self, path: str) -> bytes:
        self.calls.append(("get", path))
        if path in self.fail_get:
            raise NetworkError(f"GET {path}: simulated failure")
        if path not in self.files:
            raise RemoteNotFound(path)
        return self.files[path]

    async def put(self, path: str, data: bytes) -> None:
        self.calls.append(("put", path))
        if self.put_gate is not None:
            self.put_started.set()
            await self.put_gate.wait()
        if path in self.fail_put:
            raise NetworkError(f"PUT {path}: simulated failure")
        if _parent(path) not in self.dirs:
            raise NetworkError(f"PUT {path}: HTTP 409")
        self.files[path] = bytes(data)
        self.mtimes[path] = self._clock()

    async def aclose(self) -> None:
        self.closed += 1
