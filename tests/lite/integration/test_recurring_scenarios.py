"""
Recurring-series scenarios exercised end to end through the controller.

Each scenario starts from a weekly Monday series beginning 2026-01-05 (or a
parametrized series) and checks what a four-week projection looks like
after the intent has been applied and persisted.
"""

from datetime import date, timedelta

import pytest

from stacker_lite.domain.action_service import Intent
from stacker_lite.domain.task_controller import apply_plan
from stacker_lite.domain.task_store import TaskStore
from stacker_lite.lite_models import TaskEdit
from stacker_lite.lite_projector import ghost_occurrence

pytestmark = pytest.mark.integration

JAN_5 = date(2026, 1, 5)
JAN_12 = date(2026, 1, 12)
JAN_19 = date(2026, 1, 19)
JAN_26 = date(2026, 1, 26)


def _dates(occurrences):
    return [occ.date for occ in occurrences]


@pytest.mark.asyncio
async def test_weekly_projection(controller_factory, memory_repository, weekly_monday):
    memory_repository.tasks = [weekly_monday]
    controller = controller_factory(memory_repository)
    await controller.load()
    assert _dates(controller.project(JAN_5, 28)) == [JAN_5, JAN_12, JAN_19, JAN_26]


@pytest.mark.asyncio
async def test_delete_instance_hides_one_occurrence(controller_factory, memory_repository, weekly_monday):
    memory_repository.tasks = [weekly_monday]
    controller = controller_factory(memory_repository)
    await controller.load()

    await controller.perform(controller.resolve_occurrence("gym_2026-01-19"), Intent.DELETE_INSTANCE)

    assert _dates(controller.project(JAN_5, 28)) == [JAN_5, JAN_12, JAN_26]
    assert controller.project(JAN_19, 1) == []


@pytest.mark.asyncio
async def test_toggle_twice_restores_projection(controller_factory, memory_repository, weekly_monday):
    memory_repository.tasks = [weekly_monday]
    controller = controller_factory(memory_repository)
    await controller.load()

    await controller.perform(controller.resolve_occurrence("gym_2026-01-12"), Intent.TOGGLE)
    assert controller.get_task("gym").completed_dates == [JAN_12]
    assert _dates(controller.project(JAN_5, 28)) == [JAN_5, JAN_19, JAN_26]

    await controller.perform(controller.resolve_occurrence("gym_2026-01-12"), Intent.TOGGLE)
    assert controller.get_task("gym").completed_dates == []
    assert _dates(controller.project(JAN_5, 28)) == [JAN_5, JAN_12, JAN_19, JAN_26]


@pytest.mark.asyncio
async def test_edit_future_splits_the_series(controller_factory, memory_repository, weekly_monday):
    memory_repository.tasks = [weekly_monday]
    controller = controller_factory(memory_repository)
    await controller.load()

    result = await controller.perform(
        controller.resolve_occurrence("gym_2026-01-19"), Intent.EDIT_FUTURE, TaskEdit(title="Gym v2")
    )

    assert result.success
    old, new = controller.tasks
    assert old.recurrence_rule == "FREQ=WEEKLY;BYDAY=MO;UNTIL=20260118T235959Z"
    assert (new.date, new.recurrence_rule, new.title) == (JAN_19, "FREQ=WEEKLY;BYDAY=MO", "Gym v2")
    projected = controller.project(JAN_5, 28)
    assert [(occ.date, occ.title) for occ in projected] == [
        (JAN_5, "Gym"),
        (JAN_12, "Gym"),
        (JAN_19, "Gym v2"),
        (JAN_26, "Gym v2"),
    ]
    assert len({occ.occurrence_id for occ in projected}) == 4


@pytest.mark.asyncio
async def test_delete_future_from_start_removes_series(controller_factory, memory_repository, weekly_monday):
    memory_repository.tasks = [weekly_monday]
    controller = controller_factory(memory_repository)
    await controller.load()

    await controller.perform(controller.resolve_occurrence("gym_2026-01-05"), Intent.DELETE_FUTURE)

    assert controller.get_task("gym") is None
    assert controller.project(JAN_5, 365) == []
    assert memory_repository.tasks == []


@pytest.mark.asyncio
async def test_edit_instance_detaches_exactly_one(controller_factory, memory_repository, weekly_monday):
    memory_repository.tasks = [weekly_monday]
    controller = controller_factory(memory_repository)
    await controller.load()

    await controller.perform(
        controller.resolve_occurrence("gym_2026-01-12"),
        Intent.EDIT_INSTANCE,
        TaskEdit(title="Gym (Tuesday)", date=date(2026, 1, 13)),
    )

    master = controller.get_task("gym")
    assert master.exception_dates == [JAN_12]
    singles = [task for task in controller.tasks if not task.is_master]
    assert [(task.date, task.title) for task in singles] == [(date(2026, 1, 13), "Gym (Tuesday)")]
    assert controller.project(JAN_12, 1) == []
    assert [occ.title for occ in controller.project(JAN_5, 28)] == ["Gym", "Gym (Tuesday)", "Gym", "Gym"]


SERIES = [
    ("FREQ=DAILY", date(2026, 1, 1), date(2026, 1, 17)),
    ("FREQ=DAILY;INTERVAL=3", date(2026, 1, 1), date(2026, 1, 16)),
    ("FREQ=WEEKLY;BYDAY=MO,WE,FR", date(2026, 1, 5), date(2026, 1, 21)),
    ("FREQ=WEEKLY;INTERVAL=2;BYDAY=TU,TH", date(2026, 1, 6), date(2026, 2, 3)),
    ("FREQ=MONTHLY", date(2026, 1, 31), date(2026, 5, 31)),
    ("FREQ=MONTHLY;COUNT=8", date(2026, 1, 10), date(2026, 4, 10)),
    ("FREQ=WEEKLY;UNTIL=20260401T235959Z", date(2026, 1, 7), date(2026, 2, 11)),
]


@pytest.mark.parametrize(("rule", "start", "split_at"), SERIES)
def test_split_preserves_occurrences(rule, start, split_at, make_task, action_service, projector):
    """Old clamped master plus new master yield exactly the original schedule."""
    master = make_task("series", day=start, recurrence_rule=rule)
    window_start, days = start - timedelta(days=3), 400
    original = _dates(projector.project([master], window_start, days))
    assert split_at in original

    plan = action_service.plan(ghost_occurrence(master, split_at, False), master, Intent.EDIT_FUTURE, TaskEdit())
    store = TaskStore([master])
    apply_plan(store, plan)
    old, new = store.snapshot()

    before = _dates(projector.project([old], window_start, days))
    after = _dates(projector.project([new], window_start, days))
    assert all(day < split_at for day in before)
    assert all(day >= split_at for day in after)
    assert before + after == original


@pytest.mark.parametrize("intent", [Intent.EDIT_INSTANCE, Intent.DELETE_INSTANCE])
def test_detach_removes_exactly_one_occurrence(intent, weekly_monday, action_service, projector):
    plan = action_service.plan(ghost_occurrence(weekly_monday, JAN_19, False), weekly_monday, intent, TaskEdit())
    store = TaskStore([weekly_monday])
    apply_plan(store, plan)

    master = store.require("gym")
    assert projector.project([master], JAN_19, 1) == []
    assert _dates(projector.project([master], JAN_5, 28)) == [JAN_5, JAN_12, JAN_26]
    singles = [task for task in store if not task.is_master]
    assert len(singles) == (1 if intent is Intent.EDIT_INSTANCE else 0)
