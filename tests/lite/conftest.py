"""Shared fixtures for stacker_lite tests."""

from collections.abc import Callable, Generator, Sequence
from datetime import date
from itertools import count
from typing import Any, Optional

import pytest

from stacker_lite.config_loader import Config
from stacker_lite.domain.action_service import ActionService
from stacker_lite.domain.task_controller import TaskController
from stacker_lite.lite_exceptions import StorageError
from stacker_lite.lite_models import Task
from stacker_lite.lite_projector import Projector
from stacker_lite.lite_rrule_expander import RuleExpander, parse_rule


class MemoryTaskRepository:
    """In-memory repository that records saves and can be told to fail."""

    def __init__(self, tasks: Optional[Sequence[Task]] = None) -> None:
        self.tasks: list[Task] = list(tasks or [])
        self.saves: list[list[Task]] = []
        self.failures_remaining = 0

    def load(self) -> list[Task]:
        return list(self.tasks)

    def save(self, tasks: Sequence[Task]) -> None:
        if self.failures_remaining > 0:
            self.failures_remaining -= 1
            raise StorageError("disk unavailable")
        self.tasks = list(tasks)
        self.saves.append(list(tasks))


@pytest.fixture(autouse=True)
def clean_test_environment(monkeypatch: Any) -> Generator[None, Any, None]:
    """Keep STACKER_* variables from the host out of every test."""
    for name in (
        "STACKER_CONFIG",
        "STACKER_DATA_PATH",
        "STACKER_BUFFER_DAYS",
        "STACKER_LOOKBACK_DAYS",
        "STACKER_SAVE_TIMEOUT",
        "STACKER_SAVE_RETRIES",
        "STACKER_MAX_OCCURRENCES",
        "STACKER_PER_OCCURRENCE_SUBTASKS",
        "STACKER_LOG_LEVEL",
        "STACKER_DEBUG",
    ):
        monkeypatch.delenv(name, raising=False)
    parse_rule.cache_clear()
    yield


@pytest.fixture
def id_factory() -> Callable[[], str]:
    """Deterministic ids: new-1, new-2, ..."""
    counter = count(1)
    return lambda: f"new-{next(counter)}"


@pytest.fixture
def expander() -> RuleExpander:
    return RuleExpander()


@pytest.fixture
def projector(expander: RuleExpander) -> Projector:
    return Projector(expander, buffer_days=30)


@pytest.fixture
def action_service(expander: RuleExpander, id_factory: Callable[[], str]) -> ActionService:
    return ActionService(expander, id_factory=id_factory, clock=lambda: 1_700_000_000_000)


@pytest.fixture
def make_task() -> Callable[..., Task]:
    """Factory for tasks with sensible defaults."""

    def _make(task_id: str, title: Optional[str] = None, day: date = date(2026, 1, 5), **fields: Any) -> Task:
        return Task(id=task_id, title=title or task_id.title(), date=day, **fields)

    return _make


@pytest.fixture
def weekly_monday(make_task: Callable[..., Task]) -> Task:
    """Weekly Monday master starting Monday 2026-01-05."""
    return make_task("gym", "Gym", date(2026, 1, 5), recurrence_rule="FREQ=WEEKLY;BYDAY=MO")


@pytest.fixture
def memory_repository() -> MemoryTaskRepository:
    return MemoryTaskRepository()


@pytest.fixture
def controller_factory(
    action_service: ActionService, projector: Projector, expander: RuleExpander
) -> Callable[..., TaskController]:
    """Build controllers with deterministic ids and a fixed 'today'."""

    def _build(repository: Any, config: Optional[Config] = None, today: date = date(2026, 1, 5)) -> TaskController:
        return TaskController(
            repository,
            config or Config(save_timeout_seconds=1.0, save_retries=1),
            expander=expander,
            action_service=action_service,
            projector=projector,
            today=lambda: today,
        )

    return _build
