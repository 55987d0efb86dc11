# src/align_planner/tasks/task_store.py

from __future__ import annotations

import dataclasses
import json
import logging
import sqlite3
from collections.abc import Callable, Iterable
from datetime import UTC, date, datetime, time, timedelta, tzinfo
from typing import Any

from ..core.db import Database
from ..errors import StorageError, TaskNotFound
from ..sync.codec import month_window, shard_key_of
from ..sync.dirty import CONFIG_SHARD_KEY, DirtyTracker
from .task_models import (
    AI_SETTINGS_KEY,
    TEMPLATES_KEY,
    WORK_SCHEDULE_KEY,
    AISettings,
    ConfigSnapshot,
    SubTask,
    Task,
    TaskStatus,
    Template,
    WorkSchedule,
    now_utc,
)

logger = logging.getLogger(__name__)

# Fields a caller may not change through update_task().
_IMMUTABLE_FIELDS = frozenset({"id", "created_at", "updated_at"})
_TASK_FIELDS = frozenset(f.name for f in dataclasses.fields(Task))
BACKUP_VERSION = 1


@dataclasses.dataclass(slots=True)
class ReplaceSession:
    """
    Bookkeeping shared by the replace_shard() calls of one pull.

    - marks: dirty sequence numbers the pull itself handed out, per month
    - carried: ids written under another month than the file they came from
    """

    marks: dict[str, int] = dataclasses.field(default_factory=dict)
    carried: set[str] = dataclasses.field(default_factory=set)

    def owns(self, shard_key: str, seq: int | None) -> bool:
        return seq is not None and self.marks.get(shard_key) == seq


class TaskStore:
    """
    SQLite task + configuration document store.

    Every task write computes the shard key(s) it touches (old and new month when the
    start instant moves) and marks them dirty in the SAME transaction, so a committed
    write without its dirty mark can never be observed, and vice versa.

    Queried fields live in columns; the full record is kept as the wire-format JSON body.

    Errors:
    - sqlite failures surface as StorageError (from Database.transaction), never swallowed
    - unknown task ids raise TaskNotFound
    """

    def __init__(self, db: Database, dirty: DirtyTracker, *, tz: tzinfo = UTC) -> None:
        self._db = db
        self._dirty = dirty
        self._tz = tz
        self._ensure_schema()
        logger.info("TaskStore ready db=%s total=%s", db.path, self.count_tasks())

    @property
    def tz(self) -> tzinfo:
        return self._tz

    # ---- low-level helpers ----

    def _ensure_schema(self) -> None:
        with self._db.transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS tasks (
                    id TEXT PRIMARY KEY,
                    shard_key TEXT NOT NULL,
                    start_ts REAL NOT NULL,
                    status TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    body TEXT NOT NULL
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_tasks_shard ON tasks(shard_key)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_tasks_start ON tasks(start_ts)")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS config_docs (
                    key TEXT PRIMARY KEY,
                    body TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )

    def _aware(self, dt: datetime) -> datetime:
        return dt if dt.tzinfo is not None else dt.replace(tzinfo=self._tz)

    def shard_key_of(self, instant: datetime) -> str:
        return shard_key_of(self._aware(instant), self._tz)

    def _normalize(self, task: Task, *, validate: bool = True) -> Task:
        start = self._aware(task.start_time)
        end = self._aware(task.end_time)
        if validate:
            if not task.title or not task.title.strip():
                raise ValueError("title is required")
            if end < start:
                raise ValueError("end_time must not be before start_time")
            task.title = task.title.strip()
        task.start_time = start
        task.end_time = end
        task.created_at = self._aware(task.created_at)
        task.updated_at = self._aware(task.updated_at)
        if task.completed_at is not None:
            task.completed_at = self._aware(task.completed_at)
        return task

    @staticmethod
    def _row_to_task(row: sqlite3.Row) -> Task:
        try:
            return Task.from_dict(json.loads(row["body"]))
        except (KeyError, TypeError, ValueError) as e:
            raise StorageError(f"Corrupted task row id={row['id']}: {e}") from e

    def _write(self, conn: sqlite3.Connection, task: Task) -> str:
        key = self.shard_key_of(task.start_time)
        conn.execute(
            """
            INSERT INTO tasks(id, shard_key, start_ts, status, updated_at, body)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                shard_key = excluded.shard_key,
                start_ts = excluded.start_ts,
                status = excluded.status,
                updated_at = excluded.updated_at,
                body = excluded.body
            """,
            (
                task.id,
                key,
                task.start_time.timestamp(),
                task.status.value,
                task.updated_at.isoformat(),
                json.dumps(task.to_dict(), ensure_ascii=False),
            ),
        )
        return key

    def _load(self, conn: sqlite3.Connection, task_id: str) -> Task | None:
        row = conn.execute("SELECT id, body FROM tasks WHERE id = ?", (task_id,)).fetchone()
        return self._row_to_task(row) if row else None

    def _shard_of_id(self, conn: sqlite3.Connection, task_id: str) -> str | None:
        row = conn.execute("SELECT shard_key FROM tasks WHERE id = ?", (task_id,)).fetchone()
        return row["shard_key"] if row else None

    @staticmethod
    def _apply_status(task: Task, status: TaskStatus, now: datetime) -> None:
        if status == TaskStatus.COMPLETED and task.status != TaskStatus.COMPLETED:
            task.completed_at = now
        elif status != TaskStatus.COMPLETED:
            task.completed_at = None
        task.status = status

    def _mutate(self, task_id: str, fn: Callable[[Task], Any]) -> tuple[Task, Any]:
        """Load, apply fn, re-validate, write and mark old/new shards dirty in one transaction."""
        with self._db.transaction() as conn:
            task = self._load(conn, task_id)
            if task is None:
                raise TaskNotFound(task_id)
            old_key = self.shard_key_of(task.start_time)
            result = fn(task)
            task.updated_at = now_utc()
            self._normalize(task)
            new_key = self._write(conn, task)
            self._dirty.mark_dirty_in(conn, {old_key, new_key})
        if old_key != new_key:
            logger.debug("Task %s moved shard %s -> %s", task_id, old_key, new_key)
        return task, result

    # ---- tasks: public API ----

    def count_tasks(self) -> int:
        with self._db.reader() as conn:
            (n,) = conn.execute("SELECT COUNT(*) FROM tasks").fetchone()
        return int(n)

    def add_task(self, task: Task) -> Task:
        now = now_utc()
        task.created_at = now
        task.updated_at = now
        if task.status == TaskStatus.COMPLETED and task.completed_at is None:
            task.completed_at = now
        self._normalize(task)

        with self._db.transaction() as conn:
            if self._shard_of_id(conn, task.id) is not None:
                raise ValueError(f"task id already exists: {task.id}")
            key = self._write(conn, task)
            self._dirty.mark_dirty_in(conn, [key])

        logger.debug("Task added id=%s shard=%s status=%s", task.id, key, task.status.value)
        return task

    def get_task(self, task_id: str) -> Task | None:
        with self._db.reader() as conn:
            return self._load(conn, task_id)

    def get_all_tasks(self) -> list[Task]:
        with self._db.reader() as conn:
            rows = conn.execute("SELECT id, body FROM tasks ORDER BY start_ts ASC, id ASC").fetchall()
        return [self._row_to_task(r) for r in rows]

    def get_tasks_in_range(self, start: datetime, end: datetime) -> list[Task]:
        """Tasks whose start instant lies in [start, end] (both ends inclusive)."""
        with self._db.reader() as conn:
            rows = conn.execute(
                """
                SELECT id, body FROM tasks
                WHERE start_ts >= ? AND start_ts <= ?
                ORDER BY start_ts ASC, id ASC
                """,
                (self._aware(start).timestamp(), self._aware(end).timestamp()),
            ).fetchall()
        return [self._row_to_task(r) for r in rows]

    def tasks_in_shard(self, shard_key: str) -> list[Task]:
        with self._db.reader() as conn:
            rows = conn.execute(
                "SELECT id, body FROM tasks WHERE shard_key = ? ORDER BY start_ts ASC, id ASC",
                (shard_key,),
            ).fetchall()
        return [self._row_to_task(r) for r in rows]

    def update_task(self, task_id: str, **changes: Any) -> Task:
        """
        Partial update. Accepts any Task field except id/created_at/updated_at.

        Changing start_time into another month marks both the old and the new month dirty.
        """
        unknown = set(changes) - _TASK_FIELDS
        if unknown:
            raise TypeError(f"unknown task fields: {sorted(unknown)}")
        frozen = set(changes) & _IMMUTABLE_FIELDS
        if frozen:
            raise TypeError(f"fields cannot be updated: {sorted(frozen)}")

        def apply(task: Task) -> None:
            status = changes.get("status")
            for name, value in changes.items():
                if name == "status":
                    continue
                setattr(task, name, value)
            if status is not None:
                self._apply_status(task, TaskStatus(status), now_utc())

        task, _ = self._mutate(task_id, apply)
        return task

    def move_task(self, task_id: str, start_time: datetime, end_time: datetime) -> Task:
        return self.update_task(task_id, start_time=start_time, end_time=end_time)

    def delete_task(self, task_id: str) -> None:
        with self._db.transaction() as conn:
            key = self._shard_of_id(conn, task_id)
            if key is None:
                raise TaskNotFound(task_id)
            conn.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
            self._dirty.mark_dirty_in(conn, [key])
        logger.debug("Task deleted id=%s shard=%s", task_id, key)

    def batch_update_status(self, task_ids: Iterable[str], status: TaskStatus) -> int:
        """Update status of many tasks in one transaction. Unknown ids are skipped."""
        status = TaskStatus(status)
        now = now_utc()
        updated = 0
        with self._db.transaction() as conn:
            touched: set[str] = set()
            for task_id in dict.fromkeys(task_ids):
                task = self._load(conn, task_id)
                if task is None:
                    logger.debug("batch_update_status: unknown id=%s", task_id)
                    continue
                self._apply_status(task, status, now)
                task.updated_at = now
                touched.add(self._write(conn, task))
                updated += 1
            self._dirty.mark_dirty_in(conn, touched)
        logger.info("Batch status update: %d task(s) -> %s", updated, status.value)
        return updated

    def batch_delete(self, task_ids: Iterable[str]) -> int:
        deleted = 0
        with self._db.transaction() as conn:
            touched: set[str] = set()
            for task_id in dict.fromkeys(task_ids):
                key = self._shard_of_id(conn, task_id)
                if key is None:
                    continue
                conn.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
                touched.add(key)
                deleted += 1
            self._dirty.mark_dirty_in(conn, touched)
        logger.info("Batch delete: %d task(s)", deleted)
        return deleted

    # ---- subtasks ----

    def add_subtask(self, task_id: str, title: str, *, estimated_duration: int = 30) -> SubTask:
        if not title or not title.strip():
            raise ValueError("subtask title is required")

        def apply(task: Task) -> SubTask:
            order = max((st.order for st in task.subtasks), default=-1) + 1
            st = SubTask(title=title.strip(), estimated_duration=estimated_duration, order=order)
            task.subtasks.append(st)
            return st

        _, subtask = self._mutate(task_id, apply)
        return subtask

    def update_subtask(self, task_id: str, subtask_id: str, **changes: Any) -> SubTask:
        def apply(task: Task) -> SubTask:
            for i, st in enumerate(task.subtasks):
                if st.id == subtask_id:
                    if "status" in changes:
                        changes["status"] = TaskStatus(changes["status"])
                    task.subtasks[i] = dataclasses.replace(st, **changes)
                    return task.subtasks[i]
            raise TaskNotFound(f"{task_id}/{subtask_id}")

        _, subtask = self._mutate(task_id, apply)
        return subtask

    def delete_subtask(self, task_id: str, subtask_id: str) -> None:
        def apply(task: Task) -> None:
            remaining = [st for st in task.subtasks if st.id != subtask_id]
            if len(remaining) == len(task.subtasks):
                raise TaskNotFound(f"{task_id}/{subtask_id}")
            for i, st in enumerate(remaining):
                st.order = i
            task.subtasks = remaining

        self._mutate(task_id, apply)

    # ---- shard replacement (pull) ----

    def replace_shard(
            self,
            shard_key: str,
            tasks: list[Task],
            *,
            preserve_after: int | None = None,
            session: ReplaceSession | None = None,
    ) -> bool:
        """
        Replace the local month `shard_key` wholesale with `tasks`, in one transaction.

        - Deletes every local task whose start instant falls in the month window, then inserts `tasks`.
        - If the shard was marked dirty with a sequence newer than `preserve_after`
          (i.e. edited locally after the pull started), nothing is replaced and False is returned.
          Marks recorded in `session` were made by the pull itself and do not count as edits.
        - An incoming task that currently lives in another local month moves here; that other
          month is marked dirty so its remote snapshot stops listing the task.
        - An incoming task whose start lies outside this month is kept, and its own month is marked dirty.
          Within a session, replacing that month later keeps the task.
        - On success the shard's dirty mark is cleared: local now mirrors remote.
        """
        session = session if session is not None else ReplaceSession()
        start, end = month_window(shard_key, self._tz)
        with self._db.transaction() as conn:
            seq = self._dirty.seq_in(conn, shard_key)
            own = session.owns(shard_key, seq)
            if preserve_after is not None and seq is not None and seq > preserve_after and not own:
                logger.warning(
                    "Shard %s was edited locally during pull; keeping local version (stays dirty)",
                    shard_key,
                )
                return False
            if seq is not None and not own:
                logger.warning("Shard %s had unpushed local changes; replaced by remote snapshot", shard_key)

            rows = conn.execute(
                "SELECT id FROM tasks WHERE start_ts >= ? AND start_ts < ?",
                (start.timestamp(), end.timestamp()),
            ).fetchall()
            doomed = [r["id"] for r in rows if r["id"] not in session.carried]
            kept = {r["id"] for r in rows} - set(doomed)
            conn.executemany("DELETE FROM tasks WHERE id = ?", [(i,) for i in doomed])

            also_dirty: set[str] = set()
            for task in tasks:
                self._normalize(task, validate=False)
                previous = self._shard_of_id(conn, task.id)
                key = self._write(conn, task)
                kept.discard(task.id)
                if previous is not None and previous != shard_key:
                    also_dirty.add(previous)
                if key != shard_key:
                    logger.warning(
                        "Task %s in remote shard %s starts in %s; marking %s dirty",
                        task.id,
                        shard_key,
                        key,
                        key,
                    )
                    also_dirty.add(key)
                    session.carried.add(task.id)
                else:
                    session.carried.discard(task.id)

            self._dirty.clear_dirty_in(conn, [shard_key])
            session.marks.pop(shard_key, None)
            if kept:
                # Carried tasks the remote month does not list yet: next push files them here.
                also_dirty.add(shard_key)
            else:
                also_dirty.discard(shard_key)
            self._mark_for_session(conn, also_dirty, preserve_after, session)

        logger.info(
            "Shard %s replaced: removed=%d inserted=%d kept=%d", shard_key, len(doomed), len(tasks), len(kept)
        )
        return True

    def _mark_for_session(
            self,
            conn: sqlite3.Connection,
            keys: set[str],
            preserve_after: int | None,
            session: ReplaceSession,
    ) -> None:
        for key in sorted(keys):
            prior = self._dirty.seq_in(conn, key)
            # A local edit made during the pull stays a local edit.
            edited = (
                preserve_after is not None
                and prior is not None
                and prior > preserve_after
                and not session.owns(key, prior)
            )
            self._dirty.mark_dirty_in(conn, [key])
            if edited:
                session.marks.pop(key, None)
            else:
                session.marks[key] = self._dirty.seq_in(conn, key)

    # ---- configuration documents ----

    def _get_doc(self, key: str) -> Any | None:
        with self._db.reader() as conn:
            row = conn.execute("SELECT body FROM config_docs WHERE key = ?", (key,)).fetchone()
        if row is None:
            return None
        try:
            return json.loads(row["body"])
        except ValueError as e:
            raise StorageError(f"Corrupted config document {key}: {e}") from e

    @staticmethod
    def _put_doc_in(conn: sqlite3.Connection, key: str, body: Any) -> None:
        conn.execute(
            """
            INSERT INTO config_docs(key, body, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET body = excluded.body, updated_at = excluded.updated_at
            """,
            (key, json.dumps(body, ensure_ascii=False), now_utc().isoformat()),
        )

    def _put_doc(self, key: str, body: Any) -> None:
        with self._db.transaction() as conn:
            self._put_doc_in(conn, key, body)
            self._dirty.mark_dirty_in(conn, [CONFIG_SHARD_KEY])

    def get_work_schedule(self) -> WorkSchedule:
        raw = self._get_doc(WORK_SCHEDULE_KEY)
        return WorkSchedule.from_dict(raw) if raw else WorkSchedule()

    def update_work_schedule(self, **changes: Any) -> WorkSchedule:
        schedule = dataclasses.replace(self.get_work_schedule(), **changes)
        self._put_doc(WORK_SCHEDULE_KEY, schedule.to_dict())
        return schedule

    def get_ai_settings(self) -> AISettings:
        raw = self._get_doc(AI_SETTINGS_KEY)
        return AISettings.from_dict(raw) if raw else AISettings()

    def update_ai_settings(self, **changes: Any) -> AISettings:
        settings = dataclasses.replace(self.get_ai_settings(), **changes)
        self._put_doc(AI_SETTINGS_KEY, settings.to_dict())
        return settings

    def list_templates(self) -> list[Template]:
        raw = self._get_doc(TEMPLATES_KEY) or []
        return [Template.from_dict(t) for t in raw]

    def add_template(self, template: Template) -> Template:
        templates = [t for t in self.list_templates() if t.id != template.id]
        templates.append(template)
        self._put_doc(TEMPLATES_KEY, [t.to_dict() for t in templates])
        return template

    def delete_template(self, template_id: str) -> None:
        templates = self.list_templates()
        remaining = [t for t in templates if t.id != template_id]
        if len(remaining) == len(templates):
            raise KeyError(template_id)
        self._put_doc(TEMPLATES_KEY, [t.to_dict() for t in remaining])

    def apply_template(self, template_id: str, target_date: date) -> list[Task]:
        """Instantiate a template's tasks on `target_date` (+ each task's day offset)."""
        template = next((t for t in self.list_templates() if t.id == template_id), None)
        if template is None:
            raise KeyError(template_id)

        now = now_utc()
        created: list[Task] = []
        for tt in template.tasks:
            hh, mm = (int(p) for p in tt.start_time.split(":", 1))
            day = target_date + timedelta(days=tt.day_offset)
            start = datetime.combine(day, time(hh, mm), tzinfo=self._tz)
            task = Task(
                title=tt.title,
                description=tt.description,
                start_time=start,
                end_time=start + timedelta(minutes=tt.estimated_duration),
                estimated_duration=tt.estimated_duration,
                category=tt.category,
                priority=tt.priority,
                subtasks=[SubTask(title=s, order=i) for i, s in enumerate(tt.subtasks)],
                created_at=now,
                updated_at=now,
            )
            created.append(self._normalize(task))

        with self._db.transaction() as conn:
            touched = {self._write(conn, t) for t in created}
            self._dirty.mark_dirty_in(conn, touched)

        logger.info("Template %s applied on %s: %d task(s)", template.name, target_date, len(created))
        return created

    def get_config_snapshot(self) -> ConfigSnapshot:
        return ConfigSnapshot(
            work_schedule=self.get_work_schedule(),
            ai_settings=self.get_ai_settings(),
            templates=self.list_templates(),
            timestamp=now_utc(),
        )

    def replace_config(self, snapshot: ConfigSnapshot) -> list[str]:
        """
        Overwrite every local configuration document present in `snapshot` (no field merge).

        Remote content is not a local change: the config dirty mark is left as it is.
        Returns the keys that were replaced.
        """
        replaced: list[str] = []
        with self._db.transaction() as conn:
            if snapshot.work_schedule is not None:
                self._put_doc_in(conn, WORK_SCHEDULE_KEY, snapshot.work_schedule.to_dict())
                replaced.append(WORK_SCHEDULE_KEY)
            if snapshot.ai_settings is not None:
                self._put_doc_in(conn, AI_SETTINGS_KEY, snapshot.ai_settings.to_dict())
                replaced.append(AI_SETTINGS_KEY)
            if snapshot.templates is not None:
                self._put_doc_in(conn, TEMPLATES_KEY, [t.to_dict() for t in snapshot.templates])
                replaced.append(TEMPLATES_KEY)
        logger.info("Config documents replaced from remote: %s", ", ".join(replaced) or "-")
        return replaced

    # ---- backup ----

    def export_data(self) -> dict[str, Any]:
        """Full local backup: every task plus the configuration documents."""
        tasks = sorted(self.get_all_tasks(), key=lambda t: (t.start_time, t.id))
        return {
            "version": BACKUP_VERSION,
            "exportedAt": now_utc().isoformat(),
            "tasks": [t.to_dict() for t in tasks],
            WORK_SCHEDULE_KEY: self.get_work_schedule().to_dict(),
            AI_SETTINGS_KEY: self.get_ai_settings().to_dict(),
            TEMPLATES_KEY: [t.to_dict() for t in self.list_templates()],
        }

    def import_data(self, doc: dict[str, Any]) -> int:
        """
        Replace ALL local data with a backup made by export_data().

        The document is validated completely before anything is written. Every month
        that had or now has tasks is marked dirty, and so is config, in the same transaction.
        Returns the number of imported tasks.
        """
        if not isinstance(doc, dict):
            raise ValueError("backup must be a JSON object")
        raw_tasks = doc.get("tasks", [])
        if not isinstance(raw_tasks, list):
            raise ValueError("backup: 'tasks' must be a list")
        try:
            tasks = [self._normalize(Task.from_dict(raw), validate=False) for raw in raw_tasks]
            schedule = doc.get(WORK_SCHEDULE_KEY)
            ai = doc.get(AI_SETTINGS_KEY)
            templates = doc.get(TEMPLATES_KEY)
            docs: dict[str, Any] = {}
            if schedule:
                docs[WORK_SCHEDULE_KEY] = WorkSchedule.from_dict(schedule).to_dict()
            if ai:
                docs[AI_SETTINGS_KEY] = AISettings.from_dict(ai).to_dict()
            if templates:
                docs[TEMPLATES_KEY] = [Template.from_dict(t).to_dict() for t in templates]
        except (AttributeError, KeyError, TypeError, ValueError, OverflowError) as e:
            raise ValueError(f"backup: invalid content ({e.__class__.__name__}: {e})") from e

        ids = [t.id for t in tasks]
        if len(ids) != len(set(ids)):
            raise ValueError("backup: duplicate task ids")

        with self._db.transaction() as conn:
            touched = {r["shard_key"] for r in conn.execute("SELECT DISTINCT shard_key FROM tasks")}
            conn.execute("DELETE FROM tasks")
            conn.execute("DELETE FROM config_docs")
            touched.update(self._write(conn, t) for t in tasks)
            for key, body in docs.items():
                self._put_doc_in(conn, key, body)
            self._dirty.mark_dirty_in(conn, touched | {CONFIG_SHARD_KEY})

        logger.info("Backup imported: tasks=%d months=%d config=%s", len(tasks), len(touched), sorted(docs))
        return len(tasks)
