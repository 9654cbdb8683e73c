"""In-memory task collection with id uniqueness - stacker_lite."""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from typing import Optional

from stacker_lite.lite_models import Task


class TaskStore:
    """Ordered collection of tasks keyed by id.

    Insertion order is preserved (it is the projection tie-breaker) and ids
    are unique. Tasks are immutable by convention; updates replace the
    stored instance in place.
    """

    def __init__(self, tasks: Iterable[Task] = ()) -> None:
        self._tasks: dict[str, Task] = {}
        for task in tasks:
            self.add(task)

    def __len__(self) -> int:
        return len(self._tasks)

    def __iter__(self) -> Iterator[Task]:
        return iter(list(self._tasks.values()))

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._tasks

    def get(self, task_id: str) -> Optional[Task]:
        return self._tasks.get(task_id)

    def require(self, task_id: str) -> Task:
        """Return the task or raise KeyError."""
        try:
            return self._tasks[task_id]
        except KeyError:
            raise KeyError(f"Task {task_id} not found") from None

    def add(self, task: Task) -> None:
        """Append a new task; raises ValueError on a duplicate id."""
        if task.id in self._tasks:
            raise ValueError(f"Task id {task.id} already exists")
        self._tasks[task.id] = task

    def replace(self, task: Task) -> None:
        """Swap in a new version of an existing task, keeping its position."""
        self.require(task.id)
        self._tasks[task.id] = task

    def remove(self, task_id: str) -> Task:
        self.require(task_id)
        return self._tasks.pop(task_id)

    def copy(self) -> TaskStore:
        clone = TaskStore()
        clone._tasks = dict(self._tasks)
        return clone

    def snapshot(self) -> list[Task]:
        """Tasks in store order."""
        return list(self._tasks.values())

    def masters(self) -> list[Task]:
        return [task for task in self._tasks.values() if task.is_master]
