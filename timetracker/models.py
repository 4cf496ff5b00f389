"""Entity types for projects, tasks and sessions.

The entities are immutable; the state manager replaces them with
``dataclasses.replace`` when something changes. Relations are plain ids
(Task.project_id, Session.task_id) and lookups are explicit joins.

Persisted shape (one JSON array per collection):
    projects: {"id", "name", "completed"}
    tasks:    {"id", "projectId", "title", "isRunning"}
    sessions: {"id", "taskId", "startTime", "endTime"}

Example:
    >>> session = Session.from_dict({"id": 1, "taskId": 2,
    ...                              "startTime": "2025-03-02T09:00:00+00:00",
    ...                              "endTime": None})
    >>> session.is_open
    True
"""

import logging
import math
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable, Optional, Union

from . import timeutils

logger = logging.getLogger(__name__)

# Ids written by older backups can be non-integral numbers.
EntityId = Union[int, float]


def coerce_id(value) -> Optional[EntityId]:
    """Normalise a stored id to a number, or None if it isn't one."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            return None
        return int(value) if value.is_integer() else value
    if isinstance(value, str):
        text = value.strip()
        if text.isdigit():
            return int(text)
        try:
            return coerce_id(float(text))
        except ValueError:
            return None
    return None


def _coerce_timestamp(value) -> Optional[str]:
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        parsed = timeutils.from_epoch_ms(value)
        return timeutils.to_iso(parsed) if parsed else None
    return None


@dataclass(frozen=True)
class Project:
    """A named container of tasks.

    Attributes:
        id: Unique identifier.
        name: Display name, never blank.
        completed: Whether the project has been marked done.
    """
    id: EntityId
    name: str
    completed: bool = False

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "completed": self.completed}

    @classmethod
    def from_dict(cls, data) -> Optional["Project"]:
        if not isinstance(data, dict):
            return None
        project_id = coerce_id(data.get("id"))
        name = data.get("name")
        if project_id is None or not isinstance(name, str):
            return None
        return cls(id=project_id, name=name, completed=bool(data.get("completed", False)))


@dataclass(frozen=True)
class Task:
    """A unit of work under a project.

    Attributes:
        id: Unique identifier.
        project_id: Owning project's id. May dangle; readers must tolerate it.
        title: Display title, never blank.
        is_running: True iff this task owns the single open session.
    """
    id: EntityId
    project_id: Optional[EntityId]
    title: str
    is_running: bool = False

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "projectId": self.project_id,
            "title": self.title,
            "isRunning": self.is_running,
        }

    @classmethod
    def from_dict(cls, data) -> Optional["Task"]:
        if not isinstance(data, dict):
            return None
        task_id = coerce_id(data.get("id"))
        title = data.get("title")
        if task_id is None or not isinstance(title, str):
            return None
        return cls(
            id=task_id,
            project_id=coerce_id(data.get("projectId")),
            title=title,
            is_running=bool(data.get("isRunning", False)),
        )


@dataclass(frozen=True)
class Session:
    """One contiguous interval of work on a task.

    Times are kept as the ISO-8601 strings that get persisted; use
    ``started_at``/``ended_at`` for parsed values. An invalid string parses
    to None and the session then contributes nothing to totals.

    Attributes:
        id: Unique identifier.
        task_id: Owning task's id.
        start_time: ISO-8601 start timestamp.
        end_time: ISO-8601 end timestamp, None while the session is open.
    """
    id: EntityId
    task_id: Optional[EntityId]
    start_time: str
    end_time: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.end_time is None

    @property
    def started_at(self) -> Optional[datetime]:
        return timeutils.parse_timestamp(self.start_time)

    @property
    def ended_at(self) -> Optional[datetime]:
        return timeutils.parse_timestamp(self.end_time)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "taskId": self.task_id,
            "startTime": self.start_time,
            "endTime": self.end_time,
        }

    @classmethod
    def from_dict(cls, data) -> Optional["Session"]:
        if not isinstance(data, dict):
            return None
        session_id = coerce_id(data.get("id"))
        start_time = _coerce_timestamp(data.get("startTime"))
        if session_id is None or start_time is None:
            return None
        end_raw = data.get("endTime")
        end_time = _coerce_timestamp(end_raw) if end_raw is not None else None
        if end_raw is not None and end_time is None:
            # Unusable end value; keep the row but treat it as closed at start.
            end_time = start_time
        return cls(
            id=session_id,
            task_id=coerce_id(data.get("taskId")),
            start_time=start_time,
            end_time=end_time,
        )


def load_entities(items, factory: Callable[[dict], Optional[object]], kind: str) -> list:
    """Build entities from a loosely-shaped list, skipping unusable items.

    Args:
        items: Decoded JSON value expected to be a list of dicts.
        factory: ``from_dict`` of the entity class.
        kind: Collection name for log messages.

    Returns:
        List of entities. Non-list input yields an empty list.
    """
    if not isinstance(items, list):
        if items is not None:
            logger.warning(f"Expected a list for {kind}, got {type(items).__name__}; using empty")
        return []

    entities = []
    skipped = 0
    for item in items:
        entity = factory(item)
        if entity is None:
            skipped += 1
            continue
        entities.append(entity)

    if skipped:
        logger.warning(f"Skipped {skipped} malformed {kind} entries")
    return entities


class IdGenerator:
    """Monotonic id source based on epoch milliseconds.

    Ids look like the wall-clock ids older data already uses, but two calls
    in the same millisecond still get distinct values.
    """

    def __init__(self, clock: Callable[[], datetime] = timeutils.now):
        self._clock = clock
        self._lock = threading.Lock()
        self._last = 0

    def seed(self, existing: Iterable[EntityId]) -> None:
        """Make sure future ids are greater than every existing one."""
        with self._lock:
            for value in existing:
                if isinstance(value, (int, float)) and math.isfinite(value):
                    self._last = max(self._last, math.floor(value))

    def next_id(self) -> int:
        with self._lock:
            candidate = timeutils.epoch_ms(self._clock())
            self._last = max(self._last + 1, candidate)
            return self._last
