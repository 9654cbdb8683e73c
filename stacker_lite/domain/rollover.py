"""Daily rollover of overdue work to today - stacker_lite.

Open singles dated before today move to today and record how many days
they slipped. Open occurrences of recurring masters inside the lookback
window are detached: the master gains an exception for the missed date
and a fresh single carrying the occurrence's checklist lands on today.
"""

import logging
from collections.abc import Callable, Iterable
from datetime import date, timedelta
from typing import Optional

from stacker_lite.lite_exceptions import RuleParseError
from stacker_lite.lite_models import Task, new_id, now_ms
from stacker_lite.lite_rrule_expander import RuleExpander

from .action_service import CreateDetached, MutationPlan, UpdateMaster, exception_patch

logger = logging.getLogger(__name__)

DEFAULT_LOOKBACK_DAYS = 60


def plan_rollover(
    tasks: Iterable[Task],
    today: date,
    *,
    lookback_days: int = DEFAULT_LOOKBACK_DAYS,
    expander: Optional[RuleExpander] = None,
    id_factory: Optional[Callable[[], str]] = None,
    clock: Optional[Callable[[], int]] = None,
) -> list[MutationPlan]:
    """Build the plans that roll overdue work onto ``today``.

    Plans for one master are cumulative, so applying them in order leaves
    every missed date in its exception list.
    """
    expander = expander or RuleExpander()
    id_factory = id_factory or new_id
    clock = clock or now_ms
    lookback_start = today - timedelta(days=lookback_days)
    plans: list[MutationPlan] = []

    for task in tasks:
        if not task.is_master:
            if not task.is_single_completed() and lookback_start <= task.date < today:
                slipped = (today - task.date).days
                plans.append(UpdateMaster(task.id, {"date": today, "days_rolled": task.days_rolled + slipped}))
            continue

        try:
            missed = [
                day
                for day in expander.iter_occurrences(
                    task.recurrence_rule, task.date, lookback_start, today - timedelta(days=1)
                )
                if day not in task.exception_dates and day not in task.completed_dates
            ]
        except RuleParseError as exc:
            logger.warning("Skipping rollover for master %s with malformed rule: %s", task.id, exc)
            continue

        for index, day in enumerate(missed):
            # Fresh checklist: only progress recorded for that day carries over.
            overlay = task.instance_subtasks.get(day, {})
            subtasks = [
                subtask.model_copy(update={"id": id_factory(), "completed": overlay.get(subtask.id, False)})
                for subtask in task.subtasks
            ]
            single = task.derive(
                id=id_factory(),
                date=today,
                recurrence_rule=None,
                completed=False,
                completed_dates=[],
                exception_dates=[],
                subtasks=subtasks,
                instance_subtasks={},
                series_id=task.series_id or task.id,
                detached_from_id=task.id,
                original_date=day,
                days_rolled=(today - day).days,
                created_at=clock(),
            )
            plans.append(CreateDetached(task.id, exception_patch(task, *missed[: index + 1]), single))

    if plans:
        logger.info("Rollover to %s planned %d mutations", today, len(plans))
    return plans
