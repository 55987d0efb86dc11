# src/align_planner/llm/task_parser.py

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta, tzinfo
from typing import Any

from ..core.ports import LLMClient
from ..errors import LLMError
from ..tasks.task_models import SubTask, Task, TaskCategory, TaskPriority, TaskStatus

logger = logging.getLogger(__name__)

# Relative day words (Chinese UI + English) -> day offset from today.
RELATIVE_DAYS: dict[str, int] = {
    "大前天": -3,
    "前天": -2,
    "昨天": -1,
    "今天": 0,
    "明天": 1,
    "后天": 2,
    "大后天": 3,
    "day before yesterday": -2,
    "yesterday": -1,
    "today": 0,
    "tomorrow": 1,
    "day after tomorrow": 2,
}

# Longest first, so "大后天" wins over "后天" and "day after tomorrow" over "tomorrow".
_RELATIVE_RE = re.compile(
    "|".join(
        rf"\b{re.escape(w)}\b" if w.isascii() else re.escape(w)
        for w in sorted(RELATIVE_DAYS, key=len, reverse=True)
    ),
    re.IGNORECASE,
)

_FENCE_OPEN_RE = re.compile(r"^```(?:json)?\s*", re.IGNORECASE)
_FENCE_CLOSE_RE = re.compile(r"\s*```$")
_OBJECT_RE = re.compile(r"\{[\s\S]*\}")

PARSE_PROMPT = """Parse the following task description and extract its key information.
Input: "{text}"
Current time: {now}

Rules:
1. "description" = the input condensed to its key information (keep the concrete dates above).
2. Lines starting with "-" in the input are subtasks.

Reply with JSON only:
{{
  "title": "task title",
  "description": "condensed description",
  "startTime": "YYYY-MM-DD HH:mm",
  "endTime": "YYYY-MM-DD HH:mm",
  "estimatedDuration": "minutes",
  "category": "work/study/health/life/other",
  "priority": "urgent-important/urgent-unimportant/important-not-urgent/not-important-not-urgent",
  "subtasks": [{{"title": "subtask 1"}}, {{"title": "subtask 2"}}]
}}"""


def expand_relative_days(text: str, now: datetime) -> str:
    """'明天 3pm' -> '2024-03-16 (明天) 3pm'. Single pass, so replaced text is never re-expanded."""

    def repl(m: re.Match[str]) -> str:
        word = m.group(0)
        offset = RELATIVE_DAYS[word.lower()]
        day = (now + timedelta(days=offset)).strftime("%Y-%m-%d")
        return f"{day} ({word})"

    return _RELATIVE_RE.sub(repl, text)


def extract_json_object(content: str) -> dict[str, Any]:
    """Strip ```json fences and pull the outermost {...} out of a model reply."""
    clean = _FENCE_CLOSE_RE.sub("", _FENCE_OPEN_RE.sub("", content.strip()))
    candidates = []
    m = _OBJECT_RE.search(clean)
    if m:
        candidates.append(m.group(0))
    candidates.append(clean)

    for raw in candidates:
        try:
            obj = json.loads(raw)
        except ValueError:
            continue
        if isinstance(obj, dict):
            return obj
    raise LLMError("AI reply did not contain a JSON object")


@dataclass(slots=True)
class TaskDraft:
    """A parsed-but-unsaved task. Missing times stay None; the caller decides defaults."""

    title: str
    description: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    estimated_duration: int | None = None
    category: TaskCategory = TaskCategory.OTHER
    priority: TaskPriority = TaskPriority.NOT_IMPORTANT_NOT_URGENT
    subtasks: list[SubTask] = field(default_factory=list)

    def to_task(self, *, default_start: datetime) -> Task:
        start = self.start_time or default_start
        duration = self.estimated_duration or 60
        end = self.end_time if self.end_time and self.end_time >= start else start + timedelta(minutes=duration)
        return Task(
            title=self.title,
            description=self.description,
            start_time=start,
            end_time=end,
            estimated_duration=duration,
            category=self.category,
            priority=self.priority,
            status=TaskStatus.NOT_STARTED,
            subtasks=list(self.subtasks),
            ai_suggested=True,
        )


def _category(raw: Any) -> TaskCategory:
    try:
        return TaskCategory(str(raw).strip().lower())
    except ValueError:
        return TaskCategory.OTHER


def _priority(raw: Any) -> TaskPriority:
    try:
        return TaskPriority(str(raw).strip().lower())
    except ValueError:
        return TaskPriority.NOT_IMPORTANT_NOT_URGENT


def _minutes(raw: Any) -> int | None:
    if raw is None or isinstance(raw, bool):
        return None
    m = re.search(r"\d+(?:\.\d+)?", str(raw))
    if not m:
        return None
    value = int(float(m.group(0)))
    return value if value > 0 else None


class TaskParser:
    """Natural-language task entry through an OpenAI-compatible LLM."""

    def __init__(
            self,
            llm: LLMClient,
            *,
            tz: tzinfo = UTC,
            clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._llm = llm
        self._tz = tz
        self._clock = clock or (lambda: datetime.now(self._tz))

    def build_prompt(self, text: str) -> str:
        now = self._clock().astimezone(self._tz)
        expanded = expand_relative_days(text, now)
        return PARSE_PROMPT.format(text=expanded, now=now.strftime("%A %Y-%m-%d %H:%M"))

    def _when(self, raw: Any) -> datetime | None:
        if not raw or not isinstance(raw, str):
            return None
        try:
            dt = datetime.fromisoformat(raw.strip().replace("Z", "+00:00"))
        except ValueError:
            logger.debug("Unparseable time from model: %r", raw)
            return None
        return dt if dt.tzinfo is not None else dt.replace(tzinfo=self._tz)

    def normalize(self, parsed: dict[str, Any]) -> TaskDraft:
        title = str(parsed.get("title") or "").strip()
        if not title:
            raise LLMError("AI reply has no task title")

        start = self._when(parsed.get("startTime"))
        end = self._when(parsed.get("endTime"))
        duration = _minutes(parsed.get("estimatedDuration"))
        if duration is None and start and end and end > start:
            duration = int((end - start).total_seconds() // 60)

        subtasks: list[SubTask] = []
        raw_subtasks = parsed.get("subtasks")
        if isinstance(raw_subtasks, list):
            for item in raw_subtasks:
                st_title = item.get("title") if isinstance(item, dict) else item
                st_title = str(st_title or "").strip()
                if st_title:
                    subtasks.append(SubTask(title=st_title, order=len(subtasks)))

        description = parsed.get("description")
        return TaskDraft(
            title=title,
            description=str(description) if description else None,
            start_time=start,
            end_time=end,
            estimated_duration=duration,
            category=_category(parsed.get("category")),
            priority=_priority(parsed.get("priority")),
            subtasks=subtasks,
        )

    def parse(self, text: str) -> TaskDraft:
        text = (text or "").strip()
        if not text:
            raise LLMError("Nothing to parse")

        prompt = self.build_prompt(text)
        reply = "".join(self._llm.stream_chat([{"role": "user", "content": prompt}]))
        logger.debug("Task parse reply (%d chars)", len(reply))
        draft = self.normalize(extract_json_object(reply))
        logger.info("Parsed task draft title=%r start=%s", draft.title, draft.start_time)
        return draft
