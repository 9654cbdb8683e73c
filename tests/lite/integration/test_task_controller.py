"""Integration tests for TaskController: apply, persistence failures and flush."""

import asyncio
from datetime import date

import pytest

from stacker_lite.config_loader import Config
from stacker_lite.domain.action_service import Intent, RemoveTask, UpdateMaster
from stacker_lite.domain.task_repository import JsonTaskRepository
from stacker_lite.lite_exceptions import InvalidIntentError, PersistenceError
from stacker_lite.lite_models import Subtask, TaskEdit

pytestmark = pytest.mark.integration

JAN_5 = date(2026, 1, 5)
JAN_12 = date(2026, 1, 12)


@pytest.mark.asyncio
async def test_load_and_project(controller_factory, memory_repository, weekly_monday):
    memory_repository.tasks = [weekly_monday]
    controller = controller_factory(memory_repository)
    assert await controller.load() == 1
    assert [occ.date for occ in controller.project(days=14)] == [JAN_5, JAN_12]


@pytest.mark.asyncio
async def test_perform_applies_and_persists(controller_factory, memory_repository, weekly_monday):
    memory_repository.tasks = [weekly_monday]
    controller = controller_factory(memory_repository)
    await controller.load()

    occ = controller.resolve_occurrence("gym_2026-01-12")
    result = await controller.perform(occ, Intent.TOGGLE)

    assert result.success
    assert controller.get_task("gym").completed_dates == [JAN_12]
    assert memory_repository.saves[-1][0].completed_dates == [JAN_12]
    assert not controller.dirty


@pytest.mark.asyncio
async def test_rejected_intent_is_a_logged_no_op(controller_factory, memory_repository, make_task):
    single = make_task("call", day=JAN_12)
    memory_repository.tasks = [single]
    controller = controller_factory(memory_repository)
    await controller.load()

    occ = controller.resolve_occurrence("call")
    result = await controller.perform(occ, Intent.EDIT_FUTURE, TaskEdit(title="x"))

    assert not result.success
    assert result.warnings
    assert result.plans == []
    assert controller.tasks == [single]
    assert memory_repository.saves == []


@pytest.mark.asyncio
async def test_perform_on_vanished_master(controller_factory, memory_repository, weekly_monday):
    memory_repository.tasks = [weekly_monday]
    controller = controller_factory(memory_repository)
    await controller.load()
    occ = controller.resolve_occurrence("gym_2026-01-12")
    await controller.apply(RemoveTask("gym"))

    result = await controller.perform(occ, Intent.TOGGLE)
    assert not result.success


@pytest.mark.asyncio
async def test_failed_save_keeps_memory_marks_dirty_and_flush_recovers(
    controller_factory, memory_repository, weekly_monday
):
    memory_repository.tasks = [weekly_monday]
    controller = controller_factory(memory_repository, Config(save_retries=0, save_timeout_seconds=1.0))
    await controller.load()

    memory_repository.failures_remaining = 1
    with pytest.raises(PersistenceError):
        await controller.apply(UpdateMaster("gym", {"title": "Swim"}))

    assert controller.dirty
    assert controller.get_task("gym").title == "Swim"
    assert memory_repository.tasks[0].title == "Gym"

    assert await controller.flush() is True
    assert not controller.dirty
    assert memory_repository.tasks[0].title == "Swim"
    assert await controller.flush() is False


@pytest.mark.asyncio
async def test_save_is_retried(controller_factory, memory_repository, weekly_monday):
    memory_repository.tasks = [weekly_monday]
    controller = controller_factory(memory_repository, Config(save_retries=1, save_timeout_seconds=1.0))
    await controller.load()

    memory_repository.failures_remaining = 1
    await controller.apply(UpdateMaster("gym", {"title": "Swim"}))
    assert not controller.dirty
    assert memory_repository.tasks[0].title == "Swim"


@pytest.mark.asyncio
async def test_slow_save_times_out(controller_factory, weekly_monday):
    class SlowRepository:
        def load(self):
            return [weekly_monday]

        def save(self, tasks):
            import time

            time.sleep(0.3)

    controller = controller_factory(SlowRepository(), Config(save_retries=0, save_timeout_seconds=0.05))
    await controller.load()
    with pytest.raises(PersistenceError):
        await controller.apply(UpdateMaster("gym", {"title": "Swim"}))
    assert controller.dirty


@pytest.mark.asyncio
async def test_timed_out_save_never_lands_after_a_newer_one(controller_factory, weekly_monday):
    class FirstSaveStallsRepository:
        def __init__(self):
            self.tasks = [weekly_monday]
            self.calls = 0

        def load(self):
            return list(self.tasks)

        def save(self, tasks):
            import time

            self.calls += 1
            if self.calls == 1:
                time.sleep(0.5)
            self.tasks = list(tasks)

    repo = FirstSaveStallsRepository()
    controller = controller_factory(repo, Config(save_retries=0, save_timeout_seconds=0.1))
    await controller.load()

    with pytest.raises(PersistenceError):
        await controller.apply(UpdateMaster("gym", {"title": "A"}))
    # The stalled write still holds the file, so the newer one is not started.
    with pytest.raises(PersistenceError):
        await controller.apply(UpdateMaster("gym", {"title": "B"}))
    assert controller.dirty
    assert repo.calls == 1

    await asyncio.sleep(0.6)
    assert repo.tasks[0].title == "A"
    assert await controller.flush()
    assert not controller.dirty
    assert repo.tasks[0].title == "B"

    await asyncio.sleep(0.2)
    assert controller.get_task("gym").title == repo.tasks[0].title == "B"


@pytest.mark.asyncio
async def test_retry_waits_for_the_timed_out_attempt(controller_factory, weekly_monday):
    class SlowFirstSaveRepository:
        def __init__(self):
            self.titles = []

        def load(self):
            return [weekly_monday]

        def save(self, tasks):
            import time

            if not self.titles:
                self.titles.append("pending")
                time.sleep(0.3)
            self.titles.append(tasks[0].title)

    repo = SlowFirstSaveRepository()
    controller = controller_factory(repo, Config(save_retries=1, save_timeout_seconds=0.2))
    await controller.load()

    await controller.apply(UpdateMaster("gym", {"title": "Swim"}))
    assert not controller.dirty
    assert repo.titles == ["pending", "Swim", "Swim"]


@pytest.mark.asyncio
async def test_plans_apply_all_or_nothing(controller_factory, memory_repository, weekly_monday):
    memory_repository.tasks = [weekly_monday]
    controller = controller_factory(memory_repository)
    await controller.load()

    with pytest.raises(InvalidIntentError):
        await controller.apply(UpdateMaster("gym", {"title": "Swim"}), RemoveTask("missing"))
    assert controller.get_task("gym").title == "Gym"


@pytest.mark.asyncio
async def test_add_task_rejects_duplicate_id(controller_factory, memory_repository, weekly_monday):
    controller = controller_factory(memory_repository)
    await controller.add_task(weekly_monday)
    with pytest.raises(InvalidIntentError):
        await controller.add_task(weekly_monday)
    assert len(controller.tasks) == 1


@pytest.mark.asyncio
async def test_concurrent_writes_are_serialized(controller_factory, memory_repository, make_task):
    controller = controller_factory(memory_repository)
    await asyncio.gather(*(controller.add_task(make_task(f"t{i}")) for i in range(10)))
    assert len(controller.tasks) == 10
    assert len(memory_repository.tasks) == 10


@pytest.mark.asyncio
async def test_resolve_occurrence(controller_factory, memory_repository, weekly_monday, make_task):
    memory_repository.tasks = [weekly_monday.derive(completed_dates=[JAN_12]), make_task("call_me", day=JAN_12)]
    controller = controller_factory(memory_repository)
    await controller.load()

    occ = controller.resolve_occurrence("gym_2026-01-12")
    assert occ is not None and occ.is_completed
    assert controller.resolve_occurrence("call_me").occurrence_id == "call_me"
    assert controller.resolve_occurrence("gym_2026-01-13") is None
    assert controller.resolve_occurrence("nobody_2026-01-12") is None


@pytest.mark.asyncio
async def test_toggle_subtask_per_occurrence(controller_factory, memory_repository, weekly_monday):
    memory_repository.tasks = [weekly_monday.derive(subtasks=[Subtask(id="s1", title="Warm up")])]
    controller = controller_factory(memory_repository, Config(per_occurrence_subtasks=True))
    await controller.load()

    result = await controller.toggle_subtask(controller.resolve_occurrence("gym_2026-01-12"), "s1")

    assert result.success
    jan5, jan12 = controller.project(JAN_5, 8)
    assert jan5.subtasks[0].completed is False
    assert jan12.subtasks[0].completed is True


@pytest.mark.asyncio
async def test_rollover_through_controller(controller_factory, memory_repository, make_task):
    memory_repository.tasks = [make_task("call", day=date(2026, 1, 2))]
    controller = controller_factory(memory_repository, today=JAN_5)
    await controller.load()

    result = await controller.rollover()

    assert len(result.plans) == 1
    task = controller.get_task("call")
    assert (task.date, task.days_rolled) == (JAN_5, 3)


@pytest.mark.asyncio
async def test_json_repository_round_trip(controller_factory, tmp_path, weekly_monday):
    repo = JsonTaskRepository(tmp_path / "tasks.json")
    controller = controller_factory(repo)
    await controller.add_task(weekly_monday)
    occ = controller.resolve_occurrence("gym_2026-01-19")
    await controller.perform(occ, Intent.EDIT_FUTURE, TaskEdit(title="Gym v2"))

    reloaded = controller_factory(JsonTaskRepository(tmp_path / "tasks.json"))
    await reloaded.load()
    assert reloaded.tasks == controller.tasks
    assert [occ.title for occ in reloaded.project(JAN_5, 28)] == ["Gym", "Gym", "Gym v2", "Gym v2"]
