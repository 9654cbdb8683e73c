"""Projection of persisted tasks into date-bound occurrences - stacker_lite.

The projector is a pure function of the task list and the window: it never
mutates tasks and never raises for a single bad record. Recurring masters
are expanded into ghost occurrences, singles are passed through, and the
combined stream is deduplicated, sorted and trimmed to the view window.
"""

import logging
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Optional

from .lite_exceptions import RuleParseError
from .lite_models import ProjectedOccurrence, Task
from .lite_rrule_expander import RuleExpander

logger = logging.getLogger(__name__)

DEFAULT_BUFFER_DAYS = 30


def occurrence_id_for(master_id: str, day: date) -> str:
    """Deterministic id of the occurrence of ``master_id`` on ``day``."""
    return f"{master_id}_{day.isoformat()}"


def parse_occurrence_id(occurrence_id: str) -> tuple[str, Optional[date]]:
    """Split an occurrence id into ``(master_id, date)``.

    Returns ``(occurrence_id, None)`` when the id carries no date suffix,
    which is the case for single tasks.
    """
    master_id, sep, suffix = occurrence_id.rpartition("_")
    if not sep or not master_id:
        return occurrence_id, None
    try:
        return master_id, date.fromisoformat(suffix)
    except ValueError:
        return occurrence_id, None


def ghost_occurrence(master: Task, day: date, is_completed: bool) -> ProjectedOccurrence:
    """Build the projected instance of ``master`` on ``day``."""
    return ProjectedOccurrence(
        occurrence_id=occurrence_id_for(master.id, day),
        master_id=master.id,
        origin_id=master.id,
        date=day,
        source_date=day,
        is_recurring_instance=True,
        is_completed=is_completed,
        title=master.title,
        subtasks=master.subtasks_on(day),
        days_rolled=0,
        payload=master.payload(),
    )


def single_occurrence(task: Task) -> ProjectedOccurrence:
    """Build the projection of a non-recurring task."""
    detached = task.detached_from_id is not None and task.original_date is not None
    return ProjectedOccurrence(
        occurrence_id=task.id,
        master_id=task.id,
        origin_id=task.detached_from_id if detached else task.id,
        date=task.date,
        source_date=task.original_date if detached else task.date,
        is_recurring_instance=False,
        is_completed=task.is_single_completed(),
        title=task.title,
        subtasks=[subtask.model_copy() for subtask in task.subtasks],
        days_rolled=task.days_rolled,
        payload=task.payload(),
    )


def prefer_occurrence(existing: ProjectedOccurrence, candidate: ProjectedOccurrence) -> ProjectedOccurrence:
    """Pick the winner of two occurrences colliding on the same key.

    A real (non-ghost) occurrence beats a ghost; otherwise the first one
    seen in store order wins.
    """
    if existing.is_recurring_instance and not candidate.is_recurring_instance:
        return candidate
    return existing


def _dedupe_by(occurrences: Iterable[ProjectedOccurrence], key_func) -> list[ProjectedOccurrence]:
    winners: dict = {}
    for occurrence in occurrences:
        key = key_func(occurrence)
        existing = winners.get(key)
        winners[key] = occurrence if existing is None else prefer_occurrence(existing, occurrence)
    return list(winners.values())


def deduplicate_occurrences(occurrences: list[ProjectedOccurrence]) -> list[ProjectedOccurrence]:
    """Collapse occurrences filling the same schedule slot, then enforce unique ids.

    A detached single and a ghost of the slot it replaced (an exception date
    that failed to persist, for instance) collapse to the single.
    """
    by_slot = _dedupe_by(occurrences, lambda occ: occ.slot)
    unique = _dedupe_by(by_slot, lambda occ: occ.occurrence_id)

    removed = len(occurrences) - len(unique)
    if removed:
        logger.debug("Deduplication removed %d duplicate occurrences", removed)
    return unique


@dataclass
class ProjectionResult:
    """Projected occurrences plus the masters that could not be expanded."""

    occurrences: list[ProjectedOccurrence] = field(default_factory=list)
    skipped_master_ids: list[str] = field(default_factory=list)


class Projector:
    """Turns the persisted task list into a sorted list of occurrences.

    Masters are expanded ``buffer_days`` past the visible window so that
    deduplication sees detached singles moved out of their slot; the
    result is trimmed back to ``[window_start, window_start + days)``.
    """

    def __init__(self, expander: Optional[RuleExpander] = None, buffer_days: int = DEFAULT_BUFFER_DAYS):
        self.expander = expander or RuleExpander()
        self.buffer_days = buffer_days

    def project(
        self,
        tasks: Iterable[Task],
        window_start: date,
        days: int,
        *,
        include_completed: bool = False,
    ) -> list[ProjectedOccurrence]:
        """Project ``tasks`` onto ``days`` days starting at ``window_start``."""
        return self.project_with_report(tasks, window_start, days, include_completed=include_completed).occurrences

    def project_with_report(
        self,
        tasks: Iterable[Task],
        window_start: date,
        days: int,
        *,
        include_completed: bool = False,
    ) -> ProjectionResult:
        """Like ``project`` but also reports masters skipped for bad rules."""
        if days < 0:
            raise ValueError(f"days must be non-negative, got {days}")

        window_end = window_start + timedelta(days=days)
        expansion_last_day = window_end + timedelta(days=self.buffer_days - 1)
        result = ProjectionResult()
        candidates: list[ProjectedOccurrence] = []

        for task in tasks:
            if not task.is_master:
                if task.date >= window_start and (include_completed or not task.is_single_completed()):
                    candidates.append(single_occurrence(task))
                continue

            try:
                ghosts = list(self._expand_master(task, window_start, expansion_last_day, include_completed))
            except RuleParseError as exc:
                logger.warning("Skipping master %s with malformed rule %r: %s", task.id, task.recurrence_rule, exc)
                result.skipped_master_ids.append(task.id)
                continue
            except Exception:
                logger.exception("Unexpected error expanding master %s", task.id)
                result.skipped_master_ids.append(task.id)
                continue
            candidates.extend(ghosts)

        deduplicated = deduplicate_occurrences(candidates)
        visible = [occ for occ in deduplicated if window_start <= occ.date < window_end]
        visible.sort(key=lambda occ: occ.date)
        result.occurrences = visible

        logger.debug(
            "Projected %d occurrences for %s +%d days (%d candidates, %d skipped masters)",
            len(visible),
            window_start,
            days,
            len(candidates),
            len(result.skipped_master_ids),
        )
        return result

    def _expand_master(
        self, master: Task, window_start: date, last_day: date, include_completed: bool
    ) -> Iterator[ProjectedOccurrence]:
        exceptions = set(master.exception_dates)
        completed = set(master.completed_dates)
        for day in self.expander.iter_occurrences(master.recurrence_rule, master.date, window_start, last_day):
            if day in exceptions:
                continue
            is_completed = day in completed
            if is_completed and not include_completed:
                continue
            yield ghost_occurrence(master, day, is_completed)
