"""Persistence of the task document - stacker_lite.

The whole task list is stored as one JSON array and rewritten atomically
on every save (temp file in the same directory, fsync, replace).
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
import tempfile
from collections.abc import Sequence
from pathlib import Path
from typing import Protocol

from stacker_lite.lite_exceptions import StorageError
from stacker_lite.lite_models import Task
from stacker_lite.lite_sanitizer import sanitize_tasks

logger = logging.getLogger(__name__)


class TaskRepository(Protocol):
    """Storage backend for the full task list."""

    def load(self) -> list[Task]:
        """Return every persisted task, sanitized, in stored order."""
        ...

    def save(self, tasks: Sequence[Task]) -> None:
        """Replace the persisted task list. Raises StorageError on failure."""
        ...


def serialize_tasks(tasks: Sequence[Task]) -> list[dict]:
    """Persisted (camelCase, None-free) form of the task list."""
    return [task.model_dump(mode="json", by_alias=True, exclude_none=True) for task in tasks]


class JsonTaskRepository:
    """Task list stored as a single JSON document on disk."""

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self._path = Path(path).expanduser()

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> list[Task]:
        """Load and sanitize the document; a missing file is an empty list.

        Raises:
            StorageError: If the file cannot be read or is not valid JSON.
        """
        if not self._path.exists():
            logger.debug("Task document not found; starting empty: %s", self._path)
            return []

        try:
            with self._path.open("r", encoding="utf-8") as fh:
                data = json.load(fh)
        except (OSError, json.JSONDecodeError) as exc:
            raise StorageError(f"Failed to read task document {self._path}: {exc}") from exc

        if not isinstance(data, list):
            raise StorageError(f"Task document {self._path} root must be a list")

        tasks = sanitize_tasks(data)
        logger.debug("Loaded %d tasks from %s", len(tasks), self._path)
        return tasks

    def save(self, tasks: Sequence[Task]) -> None:
        """Atomically replace the document with ``tasks``.

        Raises:
            StorageError: If the document cannot be written.
        """
        payload = serialize_tasks(tasks)
        tmp_path = None
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                "w", dir=self._path.parent, delete=False, encoding="utf-8", suffix=".tmp"
            ) as tf:
                tmp_path = Path(tf.name)
                json.dump(payload, tf, ensure_ascii=False, indent=2)
                tf.flush()
                with contextlib.suppress(OSError):
                    os.fsync(tf.fileno())
            tmp_path.replace(self._path)
        except (OSError, TypeError, ValueError) as exc:
            if tmp_path is not None:
                with contextlib.suppress(OSError):
                    tmp_path.unlink(missing_ok=True)
            raise StorageError(f"Failed to write task document {self._path}: {exc}") from exc

        logger.debug("Saved %d tasks to %s", len(payload), self._path)
