"""Task orchestration: in-memory state, plan application and persistence.

Mutations are applied to a copy of the store, swapped in, and then saved.
Reads never wait for a save: they always see the latest applied state.
A failed save keeps the in-memory change, marks the controller dirty and
raises ``PersistenceError``; the next successful save clears the flag.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date
from typing import Optional, Union

from stacker_lite.config_loader import Config
from stacker_lite.lite_exceptions import InvalidIntentError, PersistenceError, RuleParseError, StorageError
from stacker_lite.lite_models import ProjectedOccurrence, Task, TaskEdit
from stacker_lite.lite_projector import Projector, parse_occurrence_id, single_occurrence
from stacker_lite.lite_rrule_expander import RuleExpander

from .action_service import (
    ActionService,
    CreateDetached,
    Intent,
    MutationPlan,
    RemoveTask,
    ReplaceMaster,
    UpdateMaster,
)
from .rollover import plan_rollover
from .task_repository import TaskRepository
from .task_store import TaskStore

logger = logging.getLogger(__name__)


@dataclass
class ActionResult:
    """Outcome of a user action.

    ``success`` is False when the intent was rejected; the store is then
    unchanged and ``warnings`` says why.
    """

    action: str = ""
    success: bool = True
    plans: list[MutationPlan] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def add_warning(self, message: str) -> None:
        """Record a rejection reason and mark the action as not applied."""
        self.warnings.append(message)
        self.success = False
        logger.warning("[%s] %s", self.action, message)


def apply_plan(store: TaskStore, plan: MutationPlan) -> None:
    """Apply one plan to ``store`` in place.

    Raises:
        InvalidIntentError: If the plan references a missing task or would
            create a duplicate id.
    """
    try:
        if isinstance(plan, UpdateMaster):
            store.replace(store.require(plan.task_id).derive(plan.patch))
        elif isinstance(plan, ReplaceMaster):
            store.replace(store.require(plan.task_id).derive(plan.old_patch))
            store.add(plan.new_master)
        elif isinstance(plan, CreateDetached):
            store.replace(store.require(plan.task_id).derive(plan.master_patch))
            store.add(plan.new_single)
        elif isinstance(plan, RemoveTask):
            store.remove(plan.task_id)
        else:
            raise InvalidIntentError(f"Unknown mutation plan {plan!r}")
    except (KeyError, ValueError) as exc:
        raise InvalidIntentError(f"Cannot apply {type(plan).__name__}: {exc}") from exc


class TaskController:
    """Owns the task store and serializes writes.

    Args:
        repository: Storage backend for the task document.
        config: Engine settings (buffer, lookback, save timeout/retries).
        expander, action_service, projector: Optional overrides, mainly
            for deterministic ids in tests.
    """

    def __init__(
        self,
        repository: TaskRepository,
        config: Optional[Config] = None,
        *,
        expander: Optional[RuleExpander] = None,
        action_service: Optional[ActionService] = None,
        projector: Optional[Projector] = None,
        today: Optional[Callable[[], date]] = None,
    ) -> None:
        self.config = config or Config()
        self._repository = repository
        self._expander = expander or RuleExpander(self.config)
        self._actions = action_service or ActionService(self._expander)
        self._projector = projector or Projector(self._expander, buffer_days=self.config.buffer_days)
        self._today = today or date.today
        self._store = TaskStore()
        self._lock = asyncio.Lock()
        self._inflight_save: Optional[asyncio.Future] = None
        self.dirty = False

    # -- reads ----------------------------------------------------------

    @property
    def tasks(self) -> list[Task]:
        return self._store.snapshot()

    def get_task(self, task_id: str) -> Optional[Task]:
        return self._store.get(task_id)

    def project(
        self, window_start: Optional[date] = None, days: int = 7, *, include_completed: bool = False
    ) -> list[ProjectedOccurrence]:
        """Project the current store (defaults to a week from today)."""
        start = window_start or self._today()
        return self._projector.project(self._store.snapshot(), start, days, include_completed=include_completed)

    def resolve_occurrence(self, occurrence_id: str) -> Optional[ProjectedOccurrence]:
        """Find the occurrence with ``occurrence_id``, completed or not."""
        task = self._store.get(occurrence_id)
        if task is not None and not task.is_master:
            return single_occurrence(task)

        master_id, day = parse_occurrence_id(occurrence_id)
        master = self._store.get(master_id)
        if day is None or master is None or not master.is_master:
            return None
        for occurrence in self._projector.project([master], day, 1, include_completed=True):
            if occurrence.occurrence_id == occurrence_id:
                return occurrence
        return None

    # -- writes ---------------------------------------------------------

    async def load(self) -> int:
        """Replace in-memory state with the repository contents."""
        async with self._lock:
            tasks = await asyncio.to_thread(self._repository.load)
            self._store = TaskStore(tasks)
            self.dirty = False
        logger.info("Loaded %d tasks", len(tasks))
        return len(tasks)

    async def add_task(self, task: Task) -> Task:
        """Append a new master or single and persist."""
        async with self._lock:
            store = self._store.copy()
            try:
                store.add(task)
            except ValueError as exc:
                raise InvalidIntentError(str(exc)) from exc
            await self._commit(store)
        return task

    async def apply(self, *plans: MutationPlan) -> None:
        """Apply plans atomically (all or none) and persist."""
        async with self._lock:
            await self._apply_locked(list(plans))

    async def _apply_locked(self, plans: list[MutationPlan]) -> None:
        store = self._store.copy()
        for plan in plans:
            apply_plan(store, plan)
        logger.debug("Applied %d plans: %s", len(plans), ", ".join(type(plan).__name__ for plan in plans))
        await self._commit(store)

    async def perform(
        self,
        occurrence: ProjectedOccurrence,
        intent: Union[Intent, str],
        edit: Optional[TaskEdit] = None,
    ) -> ActionResult:
        """Resolve and apply a user intent on ``occurrence``.

        Rejected intents leave the store untouched and are reported on the
        result. Raises PersistenceError if the change could not be saved.
        """
        result = ActionResult(action=str(getattr(intent, "value", intent)))
        async with self._lock:
            master = self._store.get(occurrence.master_id)
            if master is None:
                result.add_warning(f"Task {occurrence.master_id} no longer exists")
                return result
            try:
                plan = self._actions.plan(occurrence, master, intent, edit)
                result.plans.append(plan)
                await self._apply_locked([plan])
            except (InvalidIntentError, RuleParseError) as exc:
                result.plans.clear()
                result.add_warning(str(exc))
        return result

    async def toggle_subtask(self, occurrence: ProjectedOccurrence, subtask_id: str) -> ActionResult:
        """Flip a subtask, per occurrence when configured."""
        result = ActionResult(action="toggleSubtask")
        async with self._lock:
            master = self._store.get(occurrence.master_id)
            if master is None:
                result.add_warning(f"Task {occurrence.master_id} no longer exists")
                return result
            try:
                plan = self._actions.toggle_subtask(
                    occurrence, master, subtask_id, per_occurrence=self.config.per_occurrence_subtasks
                )
                result.plans.append(plan)
                await self._apply_locked([plan])
            except InvalidIntentError as exc:
                result.plans.clear()
                result.add_warning(str(exc))
        return result

    async def rollover(self, today: Optional[date] = None) -> ActionResult:
        """Move overdue work onto ``today`` (defaults to the current date)."""
        day = today or self._today()
        result = ActionResult(action="rollover")
        async with self._lock:
            plans = plan_rollover(
                self._store.snapshot(),
                day,
                lookback_days=self.config.lookback_days,
                expander=self._expander,
                id_factory=self._actions.id_factory,
                clock=self._actions.clock,
            )
            if plans:
                await self._apply_locked(plans)
            result.plans.extend(plans)
        return result

    async def flush(self) -> bool:
        """Retry a failed save. Returns True if a save was performed."""
        async with self._lock:
            if not self.dirty:
                return False
            await self._persist()
            return True

    # -- persistence ----------------------------------------------------

    async def _commit(self, store: TaskStore) -> None:
        self._store = store
        await self._persist()

    async def _persist(self) -> None:
        snapshot = self._store.snapshot()
        attempts = 1 + self.config.save_retries
        timeout = self.config.save_timeout_seconds
        last_exc: Optional[BaseException] = None

        for attempt in range(1, attempts + 1):
            try:
                await self._wait_for_inflight_save(timeout)
                save = asyncio.ensure_future(asyncio.to_thread(self._repository.save, snapshot))
                self._inflight_save = save
                try:
                    await asyncio.wait_for(asyncio.shield(save), timeout=timeout)
                except TimeoutError:
                    save.add_done_callback(_report_late_save)
                    raise
            except (StorageError, OSError, TimeoutError) as exc:
                last_exc = exc
                logger.warning("Saving %d tasks failed (attempt %d/%d): %s", len(snapshot), attempt, attempts, exc)
                continue
            self.dirty = False
            return

        self.dirty = True
        raise PersistenceError(f"Failed to persist {len(snapshot)} tasks after {attempts} attempts") from last_exc

    async def _wait_for_inflight_save(self, timeout: float) -> None:
        """Let a timed-out save finish before a newer snapshot is written.

        The worker thread of a timed-out save cannot be stopped; writing over
        it would let the older snapshot land last.
        """
        pending = self._inflight_save
        if pending is None or pending.done():
            return
        logger.debug("Waiting for an earlier save that is still running")
        done, _ = await asyncio.wait({pending}, timeout=timeout)
        if not done:
            raise TimeoutError("an earlier save is still running")


def _report_late_save(future: asyncio.Future) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logger.warning("Save finished with an error after timing out: %s", exc)
