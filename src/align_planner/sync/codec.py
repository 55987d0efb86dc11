# src/align_planner/sync/codec.py

"""
Shard codec.

A shard is "all tasks whose start instant falls in calendar month K" (K = "YYYY-MM",
computed in the configured sync timezone). Remotely, each shard is one snapshot file
`tasks_<K>.json` holding {"tasks": [...]}; configuration documents travel together
in config.json.

Deserialization is the validation boundary: anything malformed raises ParseError,
and the caller decides to skip that shard/document.
"""

from __future__ import annotations

import json
import re
from collections.abc import Iterable
from datetime import UTC, datetime, tzinfo
from typing import Any

from ..errors import ParseError
from ..tasks.task_models import (
    AI_SETTINGS_KEY,
    TEMPLATES_KEY,
    WORK_SCHEDULE_KEY,
    AISettings,
    ConfigSnapshot,
    Task,
    Template,
    WorkSchedule,
    now_utc,
    parse_instant,
)

SHARD_FILE_PREFIX = "tasks_"
SHARD_FILE_SUFFIX = ".json"
CONFIG_FILENAME = "config.json"

_SHARD_KEY_RE = re.compile(r"^(\d{4})-(0[1-9]|1[0-2])$")


# ---- shard keys ----


def shard_key_of(instant: datetime, tz: tzinfo = UTC) -> str:
    """Stable 7-character year-month key, e.g. '2024-03'."""
    if instant.tzinfo is None:
        local = instant
    else:
        local = instant.astimezone(tz)
    return f"{local.year:04d}-{local.month:02d}"


def is_shard_key(key: str) -> bool:
    return bool(_SHARD_KEY_RE.match(key or ""))


def month_window(shard_key: str, tz: tzinfo = UTC) -> tuple[datetime, datetime]:
    """Half-open [start, end) window of the shard's calendar month, as aware datetimes."""
    m = _SHARD_KEY_RE.match(shard_key or "")
    if not m:
        raise ValueError(f"not a shard key: {shard_key!r}")
    year, month = int(m.group(1)), int(m.group(2))
    start = datetime(year, month, 1, tzinfo=tz)
    if month == 12:
        end = datetime(year + 1, 1, 1, tzinfo=tz)
    else:
        end = datetime(year, month + 1, 1, tzinfo=tz)
    return start, end


def shard_filename(shard_key: str) -> str:
    return f"{SHARD_FILE_PREFIX}{shard_key}{SHARD_FILE_SUFFIX}"


def shard_key_from_filename(name: str) -> str | None:
    """'tasks_2024-03.json' -> '2024-03'; anything else -> None."""
    if not name.startswith(SHARD_FILE_PREFIX) or not name.endswith(SHARD_FILE_SUFFIX):
        return None
    key = name[len(SHARD_FILE_PREFIX) : -len(SHARD_FILE_SUFFIX)]
    return key if is_shard_key(key) else None


# ---- encoding helpers ----


def _dump(obj: Any) -> bytes:
    return json.dumps(obj, ensure_ascii=False, indent=2, sort_keys=True).encode("utf-8")


def _load_object(data: bytes, what: str) -> dict[str, Any]:
    try:
        obj = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ParseError(f"{what}: invalid JSON ({e})") from e
    if not isinstance(obj, dict):
        raise ParseError(f"{what}: expected a JSON object, got {type(obj).__name__}")
    return obj


# ---- shards ----


def serialize_shard(tasks: Iterable[Task]) -> bytes:
    """
    Encode a shard's full task set.

    Tasks are ordered by (start_time, id) and keys are sorted, so re-serializing
    an unchanged set yields byte-identical output.
    """
    ordered = sorted(tasks, key=lambda t: (t.start_time, t.id))
    return _dump({"tasks": [t.to_dict() for t in ordered]})


def deserialize_shard(data: bytes) -> list[Task]:
    obj = _load_object(data, "shard")
    raw_tasks = obj.get("tasks")
    if not isinstance(raw_tasks, list):
        raise ParseError("shard: 'tasks' must be a list")

    tasks: list[Task] = []
    seen: set[str] = set()
    for i, raw in enumerate(raw_tasks):
        try:
            task = Task.from_dict(raw)
        except (AttributeError, KeyError, TypeError, ValueError, OverflowError) as e:
            raise ParseError(f"shard: task #{i} is invalid ({e.__class__.__name__}: {e})") from e
        if task.id in seen:
            raise ParseError(f"shard: duplicate task id {task.id}")
        seen.add(task.id)
        tasks.append(task)
    return tasks


# ---- configuration documents ----


def serialize_config(snapshot: ConfigSnapshot) -> bytes:
    ts = snapshot.timestamp or now_utc()
    body: dict[str, Any] = {"timestamp": int(ts.timestamp() * 1000)}
    if snapshot.work_schedule is not None:
        body[WORK_SCHEDULE_KEY] = snapshot.work_schedule.to_dict()
    if snapshot.ai_settings is not None:
        body[AI_SETTINGS_KEY] = snapshot.ai_settings.to_dict()
    if snapshot.templates is not None:
        body[TEMPLATES_KEY] = [t.to_dict() for t in snapshot.templates]
    return _dump(body)


def deserialize_config(data: bytes) -> ConfigSnapshot:
    obj = _load_object(data, "config")
    try:
        work_schedule = obj.get(WORK_SCHEDULE_KEY)
        ai_settings = obj.get(AI_SETTINGS_KEY)
        templates = obj.get(TEMPLATES_KEY)
        if templates is not None and not isinstance(templates, list):
            raise TypeError("templates must be a list")

        raw_ts = obj.get("timestamp")
        if isinstance(raw_ts, (int, float)) and not isinstance(raw_ts, bool):
            timestamp = datetime.fromtimestamp(raw_ts / 1000.0, tz=UTC)
        elif raw_ts is not None:
            timestamp = parse_instant(raw_ts)
        else:
            timestamp = None

        return ConfigSnapshot(
            work_schedule=WorkSchedule.from_dict(work_schedule) if work_schedule else None,
            ai_settings=AISettings.from_dict(ai_settings) if ai_settings else None,
            templates=[Template.from_dict(t) for t in templates] if templates is not None else None,
            timestamp=timestamp,
        )
    except (AttributeError, KeyError, TypeError, ValueError, OverflowError) as e:
        raise ParseError(f"config: invalid document ({e.__class__.__name__}: {e})") from e
