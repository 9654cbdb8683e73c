"""Load-time normalization of persisted task records - stacker_lite.

Older documents carry full ISO timestamps in date fields, legacy key names
(``rrule``, ``isCompleted``, ``originalTaskId``...) and occasionally broken
records. Everything read from storage passes through here before it
reaches the engine.
"""

import logging
import re
from collections.abc import Mapping
from datetime import date
from typing import Any, Optional

from pydantic import ValidationError

from .lite_models import Task

logger = logging.getLogger(__name__)

_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")

# legacy key -> current persisted key
LEGACY_KEYS = {
    "rrule": "recurrenceRule",
    "originalTaskId": "detachedFromId",
    "taskType": "type",
}


def strip_time(value: Any) -> Optional[str]:
    """Reduce a date or date-time string to ``YYYY-MM-DD``; None if invalid."""
    if isinstance(value, date):
        return value.isoformat()[:10]
    if not isinstance(value, str) or not value.strip():
        return None
    candidate = value.strip().split("T", 1)[0].split(" ", 1)[0]
    if not _DATE_RE.match(candidate):
        return None
    try:
        date.fromisoformat(candidate)
    except ValueError:
        return None
    return candidate


def _clean_dates(values: Any) -> list[str]:
    if not isinstance(values, list):
        return []
    return [day for day in (strip_time(value) for value in values) if day]


def _clean_rule(rule: Any) -> Optional[str]:
    """Keep only the RRULE line of a rule that embeds DTSTART."""
    if not isinstance(rule, str) or not rule.strip():
        return None
    lines = [line.strip() for line in rule.strip().splitlines() if line.strip()]
    kept = [line for line in lines if not line.upper().startswith("DTSTART")]
    if len(kept) != len(lines):
        logger.debug("Dropped embedded DTSTART from rule %r", rule)
    if not kept:
        return None
    text = kept[0]
    if text.upper().startswith("RRULE:"):
        text = text[len("RRULE:"):]
    return text or None


def _clean_subtasks(values: Any) -> list[dict[str, Any]]:
    if not isinstance(values, list):
        return []
    cleaned = []
    for value in values:
        if not isinstance(value, Mapping) or not value.get("id") or value.get("title") is None:
            continue
        subtask = dict(value)
        subtask["id"] = str(subtask["id"])
        legacy_done = subtask.pop("isCompleted", False)
        subtask["completed"] = bool(subtask.get("completed") or legacy_done)
        if "deadline" in subtask:
            subtask["deadline"] = strip_time(subtask["deadline"])
        cleaned.append(subtask)
    return cleaned


def sanitize_task(raw: Any, today: Optional[date] = None) -> Optional[Task]:
    """Normalize one persisted record into a ``Task``.

    Records without an id or title are dropped (None). A missing or invalid
    date falls back to ``today``.
    """
    if not isinstance(raw, Mapping) or not raw.get("id") or not raw.get("title"):
        return None

    data = dict(raw)
    for legacy, current in LEGACY_KEYS.items():
        if legacy in data:
            value = data.pop(legacy)
            if data.get(current) in (None, ""):
                data[current] = value

    data["id"] = str(data["id"])
    data["title"] = str(data["title"])
    legacy_done = data.pop("isCompleted", False)
    data["completed"] = bool(data.get("completed") or legacy_done)
    data["date"] = strip_time(data.get("date")) or (today or date.today()).isoformat()
    data["completedDates"] = _clean_dates(data.get("completedDates"))
    data["exceptionDates"] = _clean_dates(data.get("exceptionDates"))
    data["recurrenceRule"] = _clean_rule(data.get("recurrenceRule"))
    data["subtasks"] = _clean_subtasks(data.get("subtasks"))
    if "deadline" in data:
        data["deadline"] = strip_time(data["deadline"])
    if "originalDate" in data:
        data["originalDate"] = strip_time(data["originalDate"])

    if not data["recurrenceRule"]:
        # Singles keep completion in ``completed`` only.
        if data["date"] in data["completedDates"]:
            data["completed"] = True
        data["completedDates"] = []
        data["exceptionDates"] = []
        data.pop("instanceSubtasks", None)

    try:
        return Task.model_validate(data)
    except ValidationError as exc:
        logger.warning("Dropping task %s that failed validation: %s", data["id"], exc)
        return None


def sanitize_tasks(raw_tasks: Any, today: Optional[date] = None) -> list[Task]:
    """Normalize a persisted document; invalid and duplicate-id records are dropped."""
    if not isinstance(raw_tasks, list):
        logger.warning("Task document is not a list (%s), ignoring it", type(raw_tasks).__name__)
        return []

    tasks: list[Task] = []
    seen: set[str] = set()
    dropped = 0
    for raw in raw_tasks:
        task = sanitize_task(raw, today)
        if task is None:
            dropped += 1
            continue
        if task.id in seen:
            logger.warning("Duplicate task id %s in document, keeping the first record", task.id)
            dropped += 1
            continue
        seen.add(task.id)
        tasks.append(task)

    if dropped:
        logger.info("Sanitizer dropped %d of %d task records", dropped, len(raw_tasks))
    return tasks
