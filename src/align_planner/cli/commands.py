# src/align_planner/cli/commands.py

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from collections.abc import Callable
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import cast

from ..core.state import AppState
from ..errors import LLMError
from ..sync.codec import is_shard_key
from ..sync.engine import SyncResult
from ..tasks.task_models import Task, TaskStatus
from .bootstrap import make_task_parser

CommandEmitter = Callable[[str], None]
CommandHandler2 = Callable[[AppState, list[str]], str]
CommandHandler3 = Callable[[AppState, list[str], CommandEmitter | None], str]
CommandHandler = CommandHandler2 | CommandHandler3

logger = logging.getLogger(__name__)


class CommandRegistry:
    """Simple slash-command registry used by the console (/help, /push, ...)."""

    def __init__(self) -> None:
        self._handlers: dict[str, CommandHandler] = {}
        self._help: dict[str, str] = {}

    def register(
        self,
        name: str,
        handler: CommandHandler,
        help_text: str,
        aliases: list[str] | None = None,
    ) -> None:
        aliases = aliases or []
        key = name.lower()
        self._handlers[key] = handler
        self._help[key] = help_text
        for alias in aliases:
            self._handlers[alias.lower()] = handler

    def handle(
        self,
        state: AppState,
        line: str,
        emit: CommandEmitter | None = None,
    ) -> str | None:
        """
        Handle a string like "/command args".
        Returns a reply string or None if not a command.
        """
        if not line.startswith("/"):
            return None

        parts = line[1:].split()
        if not parts:
            return "Empty command. Use /help to list available commands."

        name = parts[0].lower()
        args = parts[1:]

        handler = self._handlers.get(name)
        if not handler:
            return f"Unknown command: /{name}. Use /help to list available commands."

        try:
            nparams = len(inspect.signature(handler).parameters)
        except (TypeError, ValueError):
            nparams = 3

        if nparams >= 3:
            h3 = cast(CommandHandler3, handler)
            return h3(state, args, emit)

        h2 = cast(CommandHandler2, handler)
        return h2(state, args)

    def build_help(self) -> str:
        lines = ["Available commands:"]
        for name, help_text in self._help.items():
            lines.append(f"  /{name} - {help_text}")
        return "\n".join(lines)


registry = CommandRegistry()


def _fmt_dt(state: AppState, dt: datetime | None) -> str:
    if dt is None:
        return "never"
    return dt.astimezone(state.task_store.tz).strftime("%Y-%m-%d %H:%M")


def _fmt_task(state: AppState, t: Task) -> str:
    mark = "x" if t.status == TaskStatus.COMPLETED else " "
    subs = f" ({sum(s.status == TaskStatus.COMPLETED for s in t.subtasks)}/{len(t.subtasks)})" if t.subtasks else ""
    return f"[{mark}] {t.id[:8]}  {_fmt_dt(state, t.start_time)}  {t.title}{subs}  <{t.category.value}>"


def _resolve_ids(state: AppState, prefixes: list[str]) -> tuple[list[str], list[str]]:
    """Expand id prefixes to full ids. Returns (ids, unresolved_or_ambiguous)."""
    all_ids = [t.id for t in state.task_store.get_all_tasks()]
    found: list[str] = []
    bad: list[str] = []
    for p in prefixes:
        matches = [i for i in all_ids if i.startswith(p.lower())]
        if len(matches) == 1:
            found.append(matches[0])
        else:
            bad.append(p)
    return found, bad


def _run_sync(coro) -> SyncResult:
    return asyncio.run(coro)


def cmd_help(state: AppState, args: list[str]) -> str:
    return registry.build_help()


def cmd_status(state: AppState, args: list[str]) -> str:
    st = state.engine.status()
    remote = state.engine.sync_state()
    dirty = ", ".join(st.dirty_shards) or "-"
    return (
        "Status:\n"
        f"  Tasks: {state.task_store.count_tasks()}\n"
        f"  Remote: {remote.url or 'not configured'}"
        f"{f' (user {remote.username})' if remote.username else ''}\n"
        f"  Last sync: {_fmt_dt(state, st.last_sync_time)}\n"
        f"  Unsynced months: {dirty}\n"
        f"  Syncing: {'yes' if st.syncing else 'no'}"
    )


def cmd_tasks(state: AppState, args: list[str]) -> str:
    """
    /tasks           -> tasks of the current month
    /tasks 2024-03   -> tasks of that month
    /tasks all       -> everything
    """
    store = state.task_store
    if args and args[0].lower() == "all":
        tasks = store.get_all_tasks()
        label = "all"
    else:
        key = args[0] if args else store.shard_key_of(datetime.now(store.tz))
        if not is_shard_key(key):
            return "Usage: /tasks [YYYY-MM|all]"
        tasks = store.tasks_in_shard(key)
        label = key

    if not tasks:
        return f"No tasks ({label})."
    lines = [f"Tasks ({label}):"]
    lines.extend(f"  {_fmt_task(state, t)}" for t in tasks)
    return "\n".join(lines)


def cmd_add(state: AppState, args: list[str]) -> str:
    """/add YYYY-MM-DD HH:MM [minutes] title..."""
    usage = "Usage: /add YYYY-MM-DD HH:MM [minutes] <title>"
    if len(args) < 3:
        return usage
    try:
        start = datetime.strptime(f"{args[0]} {args[1]}", "%Y-%m-%d %H:%M")
    except ValueError:
        return usage

    rest = args[2:]
    minutes = 60
    if rest and rest[0].isdigit():
        minutes = int(rest[0])
        rest = rest[1:]
    title = " ".join(rest).strip()
    if not title:
        return usage

    start = start.replace(tzinfo=state.task_store.tz)
    task = state.task_store.add_task(
        Task(title=title, start_time=start, end_time=start + timedelta(minutes=minutes), estimated_duration=minutes)
    )
    return f"Added {task.id[:8]}: {task.title} at {_fmt_dt(state, task.start_time)}."


def cmd_done(state: AppState, args: list[str]) -> str:
    if not args:
        return "Usage: /done <id> [<id> ...]"
    ids, bad = _resolve_ids(state, args)
    n = state.task_store.batch_update_status(ids, TaskStatus.COMPLETED) if ids else 0
    tail = f" Unknown or ambiguous: {', '.join(bad)}." if bad else ""
    return f"Completed {n} task(s).{tail}"


def cmd_rm(state: AppState, args: list[str]) -> str:
    if not args:
        return "Usage: /rm <id> [<id> ...]"
    ids, bad = _resolve_ids(state, args)
    n = state.task_store.batch_delete(ids) if ids else 0
    tail = f" Unknown or ambiguous: {', '.join(bad)}." if bad else ""
    return f"Deleted {n} task(s).{tail}"


def cmd_remote(state: AppState, args: list[str]) -> str:
    """/remote <url> <username> <password>"""
    if len(args) < 2:
        remote = state.engine.sync_state()
        if not remote.configured:
            return "Remote is not configured. Usage: /remote <url> <username> <password>"
        return f"Remote: {remote.url} (user {remote.username})"
    password = args[2] if len(args) > 2 else None
    try:
        state.engine.configure_sync(args[0], args[1], password)
    except ValueError as e:
        return f"Invalid remote: {e}"
    return f"Remote saved: {args[0].rstrip('/')} (user {args[1]})."


def cmd_push(state: AppState, args: list[str], emit: CommandEmitter | None = None) -> str:
    if emit:
        emit("[SYNC] Pushing...")
    return _run_sync(state.engine.push()).summary()


def cmd_pull(state: AppState, args: list[str], emit: CommandEmitter | None = None) -> str:
    if emit:
        emit("[SYNC] Pulling...")
    return _run_sync(state.engine.pull()).summary()


def cmd_parse(state: AppState, args: list[str], emit: CommandEmitter | None = None) -> str:
    """/parse <natural language>  -> creates the parsed task"""
    text = " ".join(args).strip()
    if not text:
        return "Usage: /parse <task description>"
    if emit:
        emit("[AI] Parsing...")
    try:
        draft = make_task_parser(state).parse(text)
    except LLMError as e:
        logger.info("Task parse failed: %s", e)
        return f"[AI] {e}"

    task = state.task_store.add_task(draft.to_task(default_start=datetime.now(state.task_store.tz)))
    return (
        f"Added {task.id[:8]}: {task.title} at {_fmt_dt(state, task.start_time)} "
        f"({task.estimated_duration} min, {task.category.value}, {task.priority.value})."
    )


def cmd_ai(state: AppState, args: list[str]) -> str:
    """
    /ai                   -> show AI settings (key masked)
    /ai key <key>
    /ai model <model>
    /ai endpoint <url>
    """
    store = state.task_store
    if len(args) >= 2:
        field_map = {"key": "api_key", "model": "model", "endpoint": "api_endpoint"}
        name = field_map.get(args[0].lower())
        if name is None:
            return "Usage: /ai [key|model|endpoint <value>]"
        store.update_ai_settings(**{name: args[1]})
        return f"AI {args[0].lower()} updated."

    ai = store.get_ai_settings()
    key = f"{ai.api_key[:4]}..." if ai.api_key else "not set"
    return f"AI settings:\n  Endpoint: {ai.api_endpoint}\n  Model: {ai.model}\n  Key: {key}"


def cmd_export(state: AppState, args: list[str]) -> str:
    """/export [path]  -> align-backup-YYYY-MM-DD.json by default"""
    path = Path(args[0]) if args else Path(f"align-backup-{date.today().isoformat()}.json")
    doc = state.task_store.export_data()
    path.write_text(json.dumps(doc, ensure_ascii=False, indent=2), encoding="utf-8")
    logger.info("Backup exported path=%s tasks=%d", path, len(doc["tasks"]))
    return f"Exported {len(doc['tasks'])} task(s) to {path}."


def cmd_import(state: AppState, args: list[str]) -> str:
    """/import <path>  -> replaces ALL local data; changed months are pushed next time"""
    if not args:
        return "Usage: /import <path>"
    path = Path(args[0])
    try:
        doc = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return f"File not found: {path}"
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        return f"Cannot read backup {path}: {e}"
    n = state.task_store.import_data(doc)
    return f"Imported {n} task(s) from {path}. Use /push to upload them."


registry.register("help", cmd_help, help_text="Show available commands.", aliases=["h", "?"])
registry.register("status", cmd_status, help_text="Show task count, remote and sync state.")
registry.register("tasks", cmd_tasks, help_text="List tasks: /tasks [YYYY-MM|all].", aliases=["ls"])
registry.register("add", cmd_add, help_text="Add a task: /add YYYY-MM-DD HH:MM [minutes] <title>.")
registry.register("done", cmd_done, help_text="Complete tasks by id prefix: /done <id> ...")
registry.register("rm", cmd_rm, help_text="Delete tasks by id prefix: /rm <id> ...")
registry.register("remote", cmd_remote, help_text="Configure WebDAV: /remote <url> <user> <password>.")
registry.register("push", cmd_push, help_text="Upload local changes.")
registry.register("pull", cmd_pull, help_text="Download remote changes (remote wins per month).")
registry.register("parse", cmd_parse, help_text="Add a task from natural language (AI).")
registry.register("ai", cmd_ai, help_text="AI settings: /ai [key|model|endpoint <value>].")
registry.register("export", cmd_export, help_text="Back up all local data: /export [path].")
registry.register("import", cmd_import, help_text="Replace all local data from a backup: /import <path>.")
