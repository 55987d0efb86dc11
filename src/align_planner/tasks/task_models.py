# src/align_planner/tasks/task_models.py

"""
Planner data model: tasks, subtasks and the singleton configuration documents.

to_dict()/from_dict() use the remote wire format (camelCase keys, ISO-8601 datetimes).
from_dict() is strict: it raises ValueError/TypeError/KeyError on anything it cannot coerce,
and the codec turns those into ParseError.
"""

from __future__ import annotations

import math
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any


def new_id() -> str:
    return uuid.uuid4().hex


def now_utc() -> datetime:
    return datetime.now(UTC)


def parse_instant(raw: Any) -> datetime:
    """ISO-8601 string (or datetime) -> timezone-aware datetime. Naive values are taken as UTC."""
    if isinstance(raw, datetime):
        dt = raw
    elif isinstance(raw, str) and raw.strip():
        dt = datetime.fromisoformat(raw.strip().replace("Z", "+00:00"))
    else:
        raise ValueError(f"not an instant: {raw!r}")
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt


def _opt_instant(raw: Any) -> datetime | None:
    return None if raw is None else parse_instant(raw)


def _iso(dt: datetime | None) -> str | None:
    return dt.isoformat() if dt is not None else None


def _int(raw: Any) -> int:
    # Remote payloads written by the web client sometimes carry numbers as strings.
    if isinstance(raw, bool):
        raise TypeError("boolean is not a duration")
    if isinstance(raw, str):
        raw = raw.strip()
    value = float(raw)
    if not math.isfinite(value):
        raise ValueError(f"not a finite number: {raw!r}")
    return int(value)


def _opt_int(raw: Any) -> int | None:
    return None if raw is None else _int(raw)


def _str(raw: Any, name: str) -> str:
    if not isinstance(raw, str):
        raise TypeError(f"{name} must be a string")
    return raw


class TaskStatus(StrEnum):
    PLANNING = "planning"
    NOT_STARTED = "not-started"
    IN_PROGRESS = "in-progress"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class TaskCategory(StrEnum):
    WORK = "work"
    STUDY = "study"
    HEALTH = "health"
    LIFE = "life"
    OTHER = "other"


class TaskPriority(StrEnum):
    """Eisenhower quadrants."""

    URGENT_IMPORTANT = "urgent-important"
    URGENT_UNIMPORTANT = "urgent-unimportant"
    IMPORTANT_NOT_URGENT = "important-not-urgent"
    NOT_IMPORTANT_NOT_URGENT = "not-important-not-urgent"


@dataclass(slots=True)
class SubTask:
    title: str
    id: str = field(default_factory=new_id)
    status: TaskStatus = TaskStatus.NOT_STARTED
    estimated_duration: int = 30
    actual_duration: int | None = None
    order: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "status": self.status.value,
            "estimatedDuration": self.estimated_duration,
            "actualDuration": self.actual_duration,
            "order": self.order,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], *, index: int = 0) -> SubTask:
        return cls(
            id=_str(data["id"], "subtask id"),
            title=_str(data.get("title", ""), "subtask title"),
            status=TaskStatus(data.get("status", TaskStatus.NOT_STARTED.value)),
            estimated_duration=_int(data.get("estimatedDuration", 30)),
            actual_duration=_opt_int(data.get("actualDuration")),
            order=_int(data.get("order", index)),
        )


@dataclass(slots=True)
class Task:
    title: str
    start_time: datetime
    end_time: datetime
    estimated_duration: int = 60
    id: str = field(default_factory=new_id)
    description: str | None = None
    status: TaskStatus = TaskStatus.NOT_STARTED
    category: TaskCategory = TaskCategory.OTHER
    priority: TaskPriority = TaskPriority.NOT_IMPORTANT_NOT_URGENT
    subtasks: list[SubTask] = field(default_factory=list)
    actual_duration: int | None = None
    created_at: datetime = field(default_factory=now_utc)
    updated_at: datetime = field(default_factory=now_utc)
    completed_at: datetime | None = None
    ai_suggested: bool = False
    reminder_minutes: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "startTime": _iso(self.start_time),
            "endTime": _iso(self.end_time),
            "estimatedDuration": self.estimated_duration,
            "actualDuration": self.actual_duration,
            "status": self.status.value,
            "category": self.category.value,
            "priority": self.priority.value,
            "subtasks": [st.to_dict() for st in self.subtasks],
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
            "completedAt": _iso(self.completed_at),
            "aiSuggested": self.ai_suggested,
            "reminderMinutes": self.reminder_minutes,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Task:
        if not isinstance(data, dict):
            raise TypeError("task record must be an object")

        raw_subtasks = data.get("subtasks") or []
        if not isinstance(raw_subtasks, list):
            raise TypeError("subtasks must be a list")

        description = data.get("description")
        created_at = parse_instant(data["createdAt"]) if data.get("createdAt") else now_utc()

        return cls(
            id=_str(data["id"], "id"),
            title=_str(data["title"], "title"),
            description=None if description is None else _str(description, "description"),
            start_time=parse_instant(data["startTime"]),
            end_time=parse_instant(data["endTime"]),
            estimated_duration=_int(data.get("estimatedDuration", 60)),
            actual_duration=_opt_int(data.get("actualDuration")),
            status=TaskStatus(data.get("status", TaskStatus.NOT_STARTED.value)),
            category=TaskCategory(data.get("category", TaskCategory.OTHER.value)),
            priority=TaskPriority(data.get("priority", TaskPriority.NOT_IMPORTANT_NOT_URGENT.value)),
            subtasks=[SubTask.from_dict(st, index=i) for i, st in enumerate(raw_subtasks)],
            created_at=created_at,
            updated_at=parse_instant(data["updatedAt"]) if data.get("updatedAt") else created_at,
            completed_at=_opt_instant(data.get("completedAt")),
            ai_suggested=bool(data.get("aiSuggested", False)),
            reminder_minutes=_opt_int(data.get("reminderMinutes")),
        )


# --------------------------------------------------------------------------------------
# Configuration documents (singletons, synced together as config.json)
# --------------------------------------------------------------------------------------

WORK_SCHEDULE_KEY = "workSchedule"
AI_SETTINGS_KEY = "aiConfig"
TEMPLATES_KEY = "templates"


@dataclass(slots=True)
class TimeSlot:
    start_time: str  # HH:MM
    end_time: str  # HH:MM
    date: str | None = None  # YYYY-MM-DD; None means every day

    def to_dict(self) -> dict[str, Any]:
        return {"startTime": self.start_time, "endTime": self.end_time, "date": self.date}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TimeSlot:
        return cls(
            start_time=_str(data["startTime"], "startTime"),
            end_time=_str(data["endTime"], "endTime"),
            date=data.get("date"),
        )


@dataclass(slots=True)
class Holiday:
    name: str
    start_date: str
    end_date: str
    is_work_day: bool = False  # make-up working day

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "startDate": self.start_date,
            "endDate": self.end_date,
            "isWorkDay": self.is_work_day,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Holiday:
        return cls(
            name=_str(data["name"], "name"),
            start_date=_str(data["startDate"], "startDate"),
            end_date=_str(data["endDate"], "endDate"),
            is_work_day=bool(data.get("isWorkDay", False)),
        )


@dataclass(slots=True)
class WorkSchedule:
    work_days: list[int] = field(default_factory=lambda: [1, 2, 3, 4, 5])  # 0=Sunday
    work_start_time: str = "09:00"
    work_end_time: str = "18:00"
    lunch_start_time: str = "12:00"
    lunch_end_time: str = "13:00"
    excluded_time_slots: list[TimeSlot] = field(default_factory=list)
    holidays: list[Holiday] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": "default",
            "workDays": list(self.work_days),
            "workStartTime": self.work_start_time,
            "workEndTime": self.work_end_time,
            "lunchStartTime": self.lunch_start_time,
            "lunchEndTime": self.lunch_end_time,
            "excludedTimeSlots": [s.to_dict() for s in self.excluded_time_slots],
            "holidays": [h.to_dict() for h in self.holidays],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkSchedule:
        default = cls()
        work_days = [_int(d) for d in data.get("workDays", default.work_days)]
        if any(d < 0 or d > 6 for d in work_days):
            raise ValueError(f"invalid work days: {work_days}")
        return cls(
            work_days=work_days,
            work_start_time=_str(data.get("workStartTime", default.work_start_time), "workStartTime"),
            work_end_time=_str(data.get("workEndTime", default.work_end_time), "workEndTime"),
            lunch_start_time=_str(data.get("lunchStartTime", default.lunch_start_time), "lunchStartTime"),
            lunch_end_time=_str(data.get("lunchEndTime", default.lunch_end_time), "lunchEndTime"),
            excluded_time_slots=[TimeSlot.from_dict(s) for s in data.get("excludedTimeSlots") or []],
            holidays=[Holiday.from_dict(h) for h in data.get("holidays") or []],
        )


@dataclass(slots=True)
class AIFeatures:
    natural_language_parse: bool = True
    time_estimation: bool = True
    auto_schedule: bool = False
    daily_suggestion: bool = False
    progress_analysis: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "naturalLanguageParse": self.natural_language_parse,
            "timeEstimation": self.time_estimation,
            "autoSchedule": self.auto_schedule,
            "dailySuggestion": self.daily_suggestion,
            "progressAnalysis": self.progress_analysis,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AIFeatures:
        d = cls()
        return cls(
            natural_language_parse=bool(data.get("naturalLanguageParse", d.natural_language_parse)),
            time_estimation=bool(data.get("timeEstimation", d.time_estimation)),
            auto_schedule=bool(data.get("autoSchedule", d.auto_schedule)),
            daily_suggestion=bool(data.get("dailySuggestion", d.daily_suggestion)),
            progress_analysis=bool(data.get("progressAnalysis", d.progress_analysis)),
        )


@dataclass(slots=True)
class HealthReminders:
    water_reminder: bool = True
    water_interval: int = 120  # minutes
    stand_reminder: bool = True
    stand_interval: int = 60
    eye_rest_reminder: bool = True
    eye_rest_interval: int = 45

    def to_dict(self) -> dict[str, Any]:
        return {
            "waterReminder": self.water_reminder,
            "waterInterval": self.water_interval,
            "standReminder": self.stand_reminder,
            "standInterval": self.stand_interval,
            "eyeRestReminder": self.eye_rest_reminder,
            "eyeRestInterval": self.eye_rest_interval,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HealthReminders:
        d = cls()
        return cls(
            water_reminder=bool(data.get("waterReminder", d.water_reminder)),
            water_interval=_int(data.get("waterInterval", d.water_interval)),
            stand_reminder=bool(data.get("standReminder", d.stand_reminder)),
            stand_interval=_int(data.get("standInterval", d.stand_interval)),
            eye_rest_reminder=bool(data.get("eyeRestReminder", d.eye_rest_reminder)),
            eye_rest_interval=_int(data.get("eyeRestInterval", d.eye_rest_interval)),
        )


@dataclass(slots=True)
class AISettings:
    api_endpoint: str = "https://api.siliconflow.cn/v1"
    api_key: str = ""
    model: str = "Qwen/Qwen3-8B"
    enabled_features: AIFeatures = field(default_factory=AIFeatures)
    health_reminders: HealthReminders = field(default_factory=HealthReminders)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": "default",
            "apiEndpoint": self.api_endpoint,
            "apiKey": self.api_key,
            "model": self.model,
            "enabledFeatures": self.enabled_features.to_dict(),
            "healthReminders": self.health_reminders.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AISettings:
        d = cls()
        return cls(
            api_endpoint=_str(data.get("apiEndpoint", d.api_endpoint), "apiEndpoint"),
            api_key=_str(data.get("apiKey", d.api_key) or "", "apiKey"),
            model=_str(data.get("model", d.model), "model"),
            enabled_features=AIFeatures.from_dict(data.get("enabledFeatures") or {}),
            health_reminders=HealthReminders.from_dict(data.get("healthReminders") or {}),
        )


class TemplateType(StrEnum):
    DAILY = "daily"
    WEEKLY = "weekly"


@dataclass(slots=True)
class TemplateTask:
    """A task blueprint: placed at `day_offset` days after the target date, at `start_time` (HH:MM)."""

    title: str
    start_time: str = "09:00"
    estimated_duration: int = 60
    day_offset: int = 0
    description: str | None = None
    category: TaskCategory = TaskCategory.OTHER
    priority: TaskPriority = TaskPriority.NOT_IMPORTANT_NOT_URGENT
    subtasks: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "description": self.description,
            "startTime": self.start_time,
            "dayOffset": self.day_offset,
            "estimatedDuration": self.estimated_duration,
            "category": self.category.value,
            "priority": self.priority.value,
            "subtasks": list(self.subtasks),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TemplateTask:
        return cls(
            title=_str(data["title"], "title"),
            description=data.get("description"),
            start_time=_str(data.get("startTime", "09:00"), "startTime"),
            day_offset=_int(data.get("dayOffset", 0)),
            estimated_duration=_int(data.get("estimatedDuration", 60)),
            category=TaskCategory(data.get("category", TaskCategory.OTHER.value)),
            priority=TaskPriority(data.get("priority", TaskPriority.NOT_IMPORTANT_NOT_URGENT.value)),
            subtasks=[_str(s, "subtask") for s in data.get("subtasks") or []],
        )


@dataclass(slots=True)
class Template:
    name: str
    type: TemplateType = TemplateType.DAILY
    tasks: list[TemplateTask] = field(default_factory=list)
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=now_utc)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type.value,
            "tasks": [t.to_dict() for t in self.tasks],
            "createdAt": _iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Template:
        return cls(
            id=_str(data["id"], "id"),
            name=_str(data["name"], "name"),
            type=TemplateType(data.get("type", TemplateType.DAILY.value)),
            tasks=[TemplateTask.from_dict(t) for t in data.get("tasks") or []],
            created_at=parse_instant(data["createdAt"]) if data.get("createdAt") else now_utc(),
        )


@dataclass(slots=True)
class ConfigSnapshot:
    """
    The combined configuration document pushed as config.json.

    A None field means "not present in the snapshot": pull leaves that local document alone.
    """

    work_schedule: WorkSchedule | None = None
    ai_settings: AISettings | None = None
    templates: list[Template] | None = None
    timestamp: datetime | None = None
