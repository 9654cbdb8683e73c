"""Data models for recurring-task projection - stacker_lite.

Persisted field names are camelCase (``recurrenceRule``, ``completedDates``...)
while Python code uses snake_case. Unknown persisted keys are preserved as
opaque payload and travel with every task derived from the record.
"""

from __future__ import annotations

import datetime as dt
import logging
import time
import uuid
from collections.abc import Mapping
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel, to_snake

logger = logging.getLogger(__name__)

_CAMEL_CONFIG = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

# Fields owned by the engine; everything else on a Task is display payload.
ENGINE_FIELDS = frozenset(
    {
        "id",
        "title",
        "date",
        "recurrence_rule",
        "completed",
        "completed_dates",
        "exception_dates",
        "subtasks",
        "instance_subtasks",
        "series_id",
        "detached_from_id",
        "original_date",
        "days_rolled",
        "created_at",
    }
)

# Older spellings of engine keys; the load-time sanitizer maps them back onto engine fields.
LEGACY_ENGINE_KEYS = frozenset({"rrule", "originalTaskId", "isCompleted"})


def new_id() -> str:
    """Return a fresh opaque task identifier."""
    return uuid.uuid4().hex


def now_ms() -> int:
    """Return the current time as epoch milliseconds."""
    return int(time.time() * 1000)


class Frequency(str, Enum):
    """Supported recurrence frequencies."""

    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"


class Weekday(str, Enum):
    """BYDAY weekday codes, Monday first."""

    MO = "MO"
    TU = "TU"
    WE = "WE"
    TH = "TH"
    FR = "FR"
    SA = "SA"
    SU = "SU"

    @property
    def number(self) -> int:
        """Python weekday number (Monday == 0)."""
        return list(Weekday).index(self)


class RecurrencePattern(BaseModel):
    """Structured recurrence rule.

    ``until`` and ``count`` are the two mutually exclusive end conditions;
    neither means the series is open-ended. ``weekdays`` is only meaningful
    for weekly rules.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    frequency: Frequency
    interval: int = Field(default=1, ge=1)
    weekdays: Optional[tuple[Weekday, ...]] = None
    until: Optional[dt.date] = None
    count: Optional[int] = Field(default=None, ge=1)

    @field_validator("weekdays")
    @classmethod
    def _normalize_weekdays(cls, value: Optional[tuple[Weekday, ...]]) -> Optional[tuple[Weekday, ...]]:
        if not value:
            return None
        return tuple(sorted(set(value), key=lambda day: day.number))

    @model_validator(mode="after")
    def _check_end_conditions(self) -> RecurrencePattern:
        if self.until is not None and self.count is not None:
            raise ValueError("UNTIL and COUNT are mutually exclusive")
        if self.weekdays and self.frequency != Frequency.WEEKLY:
            raise ValueError("BYDAY is only supported with FREQ=WEEKLY")
        return self

    @property
    def is_open_ended(self) -> bool:
        return self.until is None and self.count is None


class Subtask(BaseModel):
    """Checklist item embedded in a task (one level deep)."""

    model_config = _CAMEL_CONFIG

    id: str = Field(..., min_length=1)
    title: str
    completed: bool = False
    deadline: Optional[str] = None
    estimated_time: Optional[str] = None


class Task(BaseModel):
    """The only persisted entity: a recurring master or a single task.

    A task carrying ``recurrence_rule`` is a master whose ``date`` is the
    rule's start. Without a rule it is a single task scheduled on ``date``.
    """

    model_config = _CAMEL_CONFIG

    id: str = Field(..., min_length=1)
    title: str
    date: dt.date
    recurrence_rule: Optional[str] = None

    # Completion / skip bookkeeping
    completed: bool = False
    completed_dates: list[dt.date] = Field(default_factory=list)
    exception_dates: list[dt.date] = Field(default_factory=list)

    # Checklist shared by every occurrence, plus the optional per-date overlay
    subtasks: list[Subtask] = Field(default_factory=list)
    instance_subtasks: dict[dt.date, dict[str, bool]] = Field(default_factory=dict)

    # Lineage (bookkeeping only, never used for equality)
    series_id: Optional[str] = None
    detached_from_id: Optional[str] = None
    original_date: Optional[dt.date] = None

    days_rolled: int = 0
    created_at: Optional[int] = None

    # Display payload
    deadline: Optional[str] = None
    estimated_time: Optional[str] = None
    reminder_time: Optional[str] = None
    color: Optional[str] = None
    importance: Optional[int] = None
    tag_ids: Optional[list[str]] = None
    type: Optional[str] = None

    @field_validator("completed_dates", "exception_dates")
    @classmethod
    def _sorted_unique(cls, value: list[dt.date]) -> list[dt.date]:
        return sorted(set(value))

    @property
    def is_master(self) -> bool:
        return bool(self.recurrence_rule)

    def is_single_completed(self) -> bool:
        """Completion marker of a non-recurring task."""
        return self.completed or self.date in self.completed_dates

    def subtasks_on(self, day: dt.date) -> list[Subtask]:
        """Return copies of the subtasks as seen on ``day``.

        Without an overlay entry for ``day`` every occurrence shares the
        master's completion state.
        """
        overlay = self.instance_subtasks.get(day, {})
        return [
            subtask.model_copy(update={"completed": overlay[subtask.id]})
            if subtask.id in overlay
            else subtask.model_copy()
            for subtask in self.subtasks
        ]

    def payload(self) -> dict[str, Any]:
        """Display payload (auxiliary and unknown fields), None values dropped."""
        data = self.model_dump(exclude=set(ENGINE_FIELDS))
        return {key: value for key, value in data.items() if value is not None}

    def derive(self, changes: Optional[Mapping[str, Any]] = None, **fields: Any) -> Task:
        """Build a validated copy with ``changes`` then ``fields`` applied."""
        data = self.model_dump()
        if changes:
            data.update(changes)
        data.update(fields)
        return Task.model_validate(data)


def new_task(
    title: str,
    day: dt.date,
    *,
    recurrence_rule: Optional[str] = None,
    task_id: Optional[str] = None,
    **payload: Any,
) -> Task:
    """Create a fresh master (with a rule) or single task."""
    return Task.model_validate(
        {
            **payload,
            "id": task_id or new_id(),
            "title": title,
            "date": day,
            "recurrence_rule": recurrence_rule,
            "created_at": now_ms(),
        }
    )


class TaskEdit(BaseModel):
    """User edit payload; only explicitly set fields are applied.

    ``recurrence`` carries edited recurrence parameters and ``date`` a moved
    target date. Unknown keys are kept and copied onto the edited task.
    """

    model_config = _CAMEL_CONFIG

    title: Optional[str] = None
    date: Optional[dt.date] = None
    recurrence: Optional[RecurrencePattern] = None
    subtasks: Optional[list[Subtask]] = None
    deadline: Optional[str] = None
    estimated_time: Optional[str] = None
    reminder_time: Optional[str] = None
    color: Optional[str] = None
    importance: Optional[int] = None
    tag_ids: Optional[list[str]] = None
    type: Optional[str] = None

    def field_changes(self) -> dict[str, Any]:
        """Set fields other than ``date`` and ``recurrence``, by Python name.

        Unknown keys naming an engine field (in either spelling) are dropped:
        ids, rules, completion and lineage only change through intents.
        """
        changes = self.model_dump(exclude_unset=True, exclude={"date", "recurrence"})
        for key, value in (self.model_extra or {}).items():
            if key in ENGINE_FIELDS or to_snake(key) in ENGINE_FIELDS or key in LEGACY_ENGINE_KEYS:
                logger.warning("Ignoring engine field %r in task edit", key)
                continue
            changes[key] = value
        return changes

    @property
    def sets_date(self) -> bool:
        return "date" in self.model_fields_set and self.date is not None

    @property
    def sets_recurrence(self) -> bool:
        return "recurrence" in self.model_fields_set and self.recurrence is not None


class ProjectedOccurrence(BaseModel):
    """Derived, never persisted, date-bound view of a task.

    ``occurrence_id`` is ``<master_id>_<YYYY-MM-DD>`` for recurring instances
    and the task id for singles. ``origin_id``/``source_date`` identify the
    schedule slot an occurrence fills, which for a detached single is the
    master occurrence it replaced.
    """

    occurrence_id: str
    master_id: str
    origin_id: str
    date: dt.date
    source_date: dt.date
    is_recurring_instance: bool
    is_completed: bool = False
    title: str
    subtasks: list[Subtask] = Field(default_factory=list)
    days_rolled: int = 0
    payload: dict[str, Any] = Field(default_factory=dict)

    @property
    def slot(self) -> tuple[str, dt.date]:
        return self.origin_id, self.source_date
