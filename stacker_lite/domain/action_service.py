"""Intent resolution for recurring and single tasks - stacker_lite.

``ActionService`` turns a user intent on a projected occurrence into a
``MutationPlan`` describing the persisted writes. It never touches storage
and never mutates its inputs; applying a plan is the controller's job.

Usage:
    service = ActionService()
    plan = service.plan(occurrence, master, Intent.EDIT_FUTURE, TaskEdit(title="New"))
    await controller.apply(plan)
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any, Optional, Union

from stacker_lite.lite_exceptions import InvalidIntentError
from stacker_lite.lite_models import ProjectedOccurrence, Task, TaskEdit, new_id, now_ms
from stacker_lite.lite_rrule_expander import RuleExpander, format_rule

logger = logging.getLogger(__name__)


class Intent(str, Enum):
    """User intents on an occurrence."""

    TOGGLE = "toggle"
    EDIT_INSTANCE = "editInstance"
    EDIT_SERIES = "editSeries"
    EDIT_FUTURE = "editFuture"
    DELETE_INSTANCE = "deleteInstance"
    DELETE_FUTURE = "deleteFuture"
    DELETE_ALL = "deleteAll"


@dataclass(frozen=True)
class UpdateMaster:
    """Patch an existing task (master or single) in place."""

    task_id: str
    patch: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ReplaceMaster:
    """Split a series: patch the old master and append a new one."""

    task_id: str
    old_patch: dict[str, Any]
    new_master: Task


@dataclass(frozen=True)
class CreateDetached:
    """Patch a master (exception date) and append a detached single."""

    task_id: str
    master_patch: dict[str, Any]
    new_single: Task


@dataclass(frozen=True)
class RemoveTask:
    """Delete a task by id."""

    task_id: str


MutationPlan = Union[UpdateMaster, ReplaceMaster, CreateDetached, RemoveTask]


def _drop_overlay(master: Task, *days: date) -> dict[date, dict[str, bool]]:
    return {day: dict(values) for day, values in master.instance_subtasks.items() if day not in days}


def exception_patch(master: Task, *days: date) -> dict[str, Any]:
    """Patch adding ``days`` to the master's exceptions and dropping their overlays."""
    exceptions = set(master.exception_dates).union(days)
    return {"exception_dates": sorted(exceptions), "instance_subtasks": _drop_overlay(master, *days)}


class ActionService:
    """Maps (occurrence, master, intent, edit) to a mutation plan.

    Args:
        expander: Rule expander used for splits and end-date clamping.
        id_factory: Generates ids for detached singles and split masters.
        clock: Returns the creation timestamp (epoch ms) for new tasks.
    """

    def __init__(
        self,
        expander: Optional[RuleExpander] = None,
        id_factory: Optional[Callable[[], str]] = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.expander = expander or RuleExpander()
        self.id_factory = id_factory or new_id
        self.clock = clock or now_ms

    def plan(
        self,
        occurrence: ProjectedOccurrence,
        master: Task,
        intent: Union[Intent, str],
        edit: Optional[TaskEdit] = None,
    ) -> MutationPlan:
        """Resolve ``intent`` into a plan.

        Raises:
            InvalidIntentError: If the intent is unknown or cannot apply to
                this occurrence/master pair.
            RuleParseError: If the master's rule is needed and malformed.
        """
        try:
            intent = Intent(intent)
        except ValueError as exc:
            raise InvalidIntentError(f"Unknown intent {intent!r}") from exc

        self._check_pair(occurrence, master)
        edit = edit or TaskEdit()

        if intent is Intent.TOGGLE:
            return self.toggle(occurrence, master)
        if intent is Intent.EDIT_INSTANCE:
            return self.edit_instance(occurrence, master, edit)
        if intent is Intent.EDIT_SERIES:
            return self.edit_series(occurrence, master, edit)
        if intent is Intent.EDIT_FUTURE:
            return self.edit_future(occurrence, master, edit)
        if intent is Intent.DELETE_INSTANCE:
            return self.delete_instance(occurrence, master)
        if intent is Intent.DELETE_FUTURE:
            return self.delete_future(occurrence, master)
        return self.delete_all(occurrence, master)

    def _check_pair(self, occurrence: ProjectedOccurrence, master: Task) -> None:
        if occurrence.master_id != master.id:
            raise InvalidIntentError(f"Occurrence {occurrence.occurrence_id} does not belong to task {master.id}")
        if occurrence.is_recurring_instance and not master.is_master:
            raise InvalidIntentError(f"Task {master.id} has no recurrence rule for {occurrence.occurrence_id}")

    # -- toggle ---------------------------------------------------------

    def toggle(self, occurrence: ProjectedOccurrence, master: Task) -> UpdateMaster:
        """Flip completion of one occurrence (involutive)."""
        if master.is_master:
            completed = set(master.completed_dates) ^ {occurrence.date}
            return UpdateMaster(master.id, {"completed_dates": sorted(completed)})

        if master.is_single_completed():
            return UpdateMaster(
                master.id,
                {"completed": False, "completed_dates": [d for d in master.completed_dates if d != master.date]},
            )
        return UpdateMaster(master.id, {"completed": True})

    def toggle_subtask(
        self,
        occurrence: ProjectedOccurrence,
        master: Task,
        subtask_id: str,
        per_occurrence: bool = False,
    ) -> UpdateMaster:
        """Flip one subtask, either on the shared list or in the per-date overlay."""
        self._check_pair(occurrence, master)
        subtask = next((item for item in master.subtasks if item.id == subtask_id), None)
        if subtask is None:
            raise InvalidIntentError(f"Subtask {subtask_id} not found on task {master.id}")

        if per_occurrence and master.is_master:
            overlay = _drop_overlay(master)
            day_overlay = overlay.setdefault(occurrence.date, {})
            day_overlay[subtask_id] = not day_overlay.get(subtask_id, subtask.completed)
            return UpdateMaster(master.id, {"instance_subtasks": overlay})

        subtasks = [
            item.model_copy(update={"completed": not item.completed}) if item.id == subtask_id else item
            for item in master.subtasks
        ]
        return UpdateMaster(master.id, {"subtasks": subtasks})

    # -- edits ----------------------------------------------------------

    def _single_patch(self, master: Task, edit: TaskEdit) -> dict[str, Any]:
        patch = edit.field_changes()
        if edit.sets_date:
            patch["date"] = edit.date
        if edit.sets_recurrence:
            patch["recurrence_rule"] = format_rule(edit.recurrence)
            patch["completed"] = False
        return patch

    def edit_instance(self, occurrence: ProjectedOccurrence, master: Task, edit: TaskEdit) -> MutationPlan:
        """Edit only this occurrence; a master occurrence is detached into a single."""
        if not master.is_master:
            return UpdateMaster(master.id, self._single_patch(master, edit))

        if edit.sets_recurrence:
            logger.warning("Ignoring recurrence change on single-instance edit of %s", occurrence.occurrence_id)

        fields: dict[str, Any] = {
            "id": self.id_factory(),
            "date": edit.date if edit.sets_date else occurrence.date,
            "recurrence_rule": None,
            "completed": False,
            "completed_dates": [],
            "exception_dates": [],
            "instance_subtasks": {},
            "series_id": master.series_id or master.id,
            "detached_from_id": master.id,
            "original_date": occurrence.date,
            "days_rolled": 0,
            "created_at": self.clock(),
        }
        changes = edit.field_changes()
        if "subtasks" not in changes:
            fields["subtasks"] = master.subtasks_on(occurrence.date)
        new_single = master.derive(changes, **fields)

        logger.debug("Detaching %s from %s as %s", occurrence.date, master.id, new_single.id)
        return CreateDetached(master.id, exception_patch(master, occurrence.date), new_single)

    def edit_series(self, occurrence: ProjectedOccurrence, master: Task, edit: TaskEdit) -> UpdateMaster:
        """Edit every occurrence; the series start date is never moved."""
        if not master.is_master:
            return UpdateMaster(master.id, self._single_patch(master, edit))

        patch = edit.field_changes()
        if edit.sets_date and edit.date != master.date:
            logger.warning("Ignoring date change on series edit of %s; the start date is fixed", master.id)
        if edit.sets_recurrence:
            patch["recurrence_rule"] = format_rule(edit.recurrence)
        return UpdateMaster(master.id, patch)

    def edit_future(self, occurrence: ProjectedOccurrence, master: Task, edit: TaskEdit) -> MutationPlan:
        """Edit this and following occurrences by splitting the series.

        The old master ends the day before the occurrence; a new master starts
        on it. An inherited COUNT is reduced by the occurrences already used.
        """
        if not master.is_master:
            raise InvalidIntentError(f"editFuture requires a recurring task, {master.id} is a single")
        if occurrence.date == master.date:
            return self.edit_series(occurrence, master, edit)
        if occurrence.date < master.date:
            raise InvalidIntentError(f"Occurrence {occurrence.date} precedes series start {master.date}")

        old_pattern = self.expander.parse(master.recurrence_rule)
        if self.expander.count_before(old_pattern, master.date, occurrence.date) == 0:
            # first real occurrence of a series whose start date is not itself an occurrence
            return self.edit_series(occurrence, master, edit)
        clamped = self.expander.clamp_until(old_pattern, occurrence.date)

        if edit.sets_recurrence:
            new_pattern = edit.recurrence
        elif old_pattern.count is not None:
            remaining = old_pattern.count - self.expander.count_before(old_pattern, master.date, occurrence.date)
            if remaining < 1:
                raise InvalidIntentError(f"Series {master.id} has no occurrences left at {occurrence.date}")
            new_pattern = old_pattern.model_copy(update={"count": remaining})
        else:
            new_pattern = old_pattern

        if edit.sets_date and edit.date != occurrence.date:
            logger.warning("Ignoring date change on future edit of %s; the split date is fixed", master.id)

        new_master = master.derive(
            edit.field_changes(),
            id=self.id_factory(),
            date=occurrence.date,
            recurrence_rule=format_rule(new_pattern),
            completed=False,
            completed_dates=[],
            exception_dates=[],
            instance_subtasks={},
            series_id=master.series_id or master.id,
            detached_from_id=None,
            original_date=None,
            days_rolled=0,
            created_at=self.clock(),
        )
        logger.debug("Splitting series %s at %s into %s", master.id, occurrence.date, new_master.id)
        return ReplaceMaster(master.id, {"recurrence_rule": format_rule(clamped)}, new_master)

    # -- deletes --------------------------------------------------------

    def delete_instance(self, occurrence: ProjectedOccurrence, master: Task) -> MutationPlan:
        if not master.is_master:
            return RemoveTask(master.id)
        return UpdateMaster(master.id, exception_patch(master, occurrence.date))

    def delete_future(self, occurrence: ProjectedOccurrence, master: Task) -> MutationPlan:
        """End the series before this occurrence; from the first occurrence it removes the master."""
        if not master.is_master:
            return RemoveTask(master.id)
        if occurrence.date < master.date:
            raise InvalidIntentError(f"Occurrence {occurrence.date} precedes series start {master.date}")
        pattern = self.expander.parse(master.recurrence_rule)
        if occurrence.date == master.date or self.expander.count_before(pattern, master.date, occurrence.date) == 0:
            return RemoveTask(master.id)
        clamped = self.expander.clamp_until(pattern, occurrence.date)
        return UpdateMaster(master.id, {"recurrence_rule": format_rule(clamped)})

    def delete_all(self, occurrence: ProjectedOccurrence, master: Task) -> RemoveTask:
        return RemoveTask(master.id)
