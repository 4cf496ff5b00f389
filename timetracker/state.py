"""Domain state manager for projects, tasks and sessions.

``TrackerState`` is the only component that mutates the three collections.
Every mutation runs under one lock, replaces the collections as a whole,
bumps the version exactly once and writes the new snapshot to the store
before returning. Readers get immutable ``Snapshot`` objects, so they never
see a half-applied change such as a new session created while the previous
one is still open.

Guarantees after every public call:
- at most one session has no end time
- a task's ``is_running`` is true iff it owns that open session
- no session references a task deleted through this API

Example:
    >>> state = TrackerState(TrackerStore("/tmp/tracker.db"))
    >>> state.load()
    >>> project = state.add_project("Writing")
    >>> task = state.add_task(project.id, "Draft")
    >>> state.start_session(task.id)
    >>> state.running_task().title
    'Draft'
"""

import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from . import timeutils
from .errors import StorageError, ValidationError
from .models import IdGenerator, Project, Session, Task, load_entities

logger = logging.getLogger(__name__)

COPY_SUFFIX = " (Copy)"


@dataclass(frozen=True)
class Snapshot:
    """Immutable view of the tracker data at one version."""
    projects: Tuple[Project, ...] = ()
    tasks: Tuple[Task, ...] = ()
    sessions: Tuple[Session, ...] = ()
    version: int = 0

    def project(self, project_id) -> Optional[Project]:
        return next((p for p in self.projects if p.id == project_id), None)

    def task(self, task_id) -> Optional[Task]:
        return next((t for t in self.tasks if t.id == task_id), None)

    def session(self, session_id) -> Optional[Session]:
        return next((s for s in self.sessions if s.id == session_id), None)

    def project_of(self, task: Optional[Task]) -> Optional[Project]:
        return self.project(task.project_id) if task else None

    def open_session(self) -> Optional[Session]:
        return next((s for s in self.sessions if s.is_open), None)

    def running_task(self) -> Optional[Task]:
        return next((t for t in self.tasks if t.is_running), None)

    def tasks_for(self, project_id) -> List[Task]:
        return [t for t in self.tasks if t.project_id == project_id]

    def to_dict(self) -> dict:
        return {
            "projects": [p.to_dict() for p in self.projects],
            "tasks": [t.to_dict() for t in self.tasks],
            "sessions": [s.to_dict() for s in self.sessions],
        }


def _require_text(value, label: str) -> str:
    if not isinstance(value, str) or not value.strip():
        logger.warning(f"Refused mutation: {label} is empty")
        raise ValidationError(f"{label} cannot be empty")
    return value.strip()


class TrackerState:
    """Owns the canonical project, task and session collections.

    Attributes:
        store: TrackerStore used for persistence, or None for memory only.
        dirty: True while the last write to the store failed.
    """

    def __init__(self, store=None, clock: Callable[[], datetime] = timeutils.now):
        """Initialize an empty state.

        Args:
            store: TrackerStore instance, or None to keep data in memory.
            clock: Callable returning the current aware datetime.
        """
        self.store = store
        self._clock = clock
        self._lock = threading.RLock()
        self._ids = IdGenerator(clock)
        self._snapshot = Snapshot()
        self._subscribers: List[Callable[[int], None]] = []
        self.dirty = False

    # ------------------------------------------------------------------
    # Reading

    def snapshot(self) -> Snapshot:
        with self._lock:
            return self._snapshot

    @property
    def version(self) -> int:
        return self.snapshot().version

    def now(self) -> datetime:
        return self._clock()

    def get_project(self, project_id) -> Optional[Project]:
        return self.snapshot().project(project_id)

    def get_task(self, task_id) -> Optional[Task]:
        return self.snapshot().task(task_id)

    def get_session(self, session_id) -> Optional[Session]:
        return self.snapshot().session(session_id)

    def running_task(self) -> Optional[Task]:
        return self.snapshot().running_task()

    def open_session(self) -> Optional[Session]:
        return self.snapshot().open_session()

    # ------------------------------------------------------------------
    # Change notification

    def subscribe(self, callback: Callable[[int], None]) -> Callable[[], None]:
        """Register ``callback(version)`` to run after every change.

        Returns:
            A function that removes the subscription.
        """
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe():
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def _notify(self, version: int) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(version)
            except Exception as e:
                logger.error(f"State subscriber error: {e}")

    # ------------------------------------------------------------------
    # Internals; callers hold self._lock

    def _commit(self, projects=None, tasks=None, sessions=None, persist: bool = True) -> int:
        current = self._snapshot
        self._snapshot = Snapshot(
            projects=tuple(projects) if projects is not None else current.projects,
            tasks=tuple(tasks) if tasks is not None else current.tasks,
            sessions=tuple(sessions) if sessions is not None else current.sessions,
            version=current.version + 1,
        )
        if persist:
            self._persist()
        return self._snapshot.version

    def _persist(self) -> None:
        if self.store is None:
            return
        data = self._snapshot.to_dict()
        try:
            self.store.save_collections(data["projects"], data["tasks"], data["sessions"])
            self.dirty = False
        except StorageError as e:
            self.dirty = True
            logger.error(f"Failed to persist tracker data, keeping in-memory state: {e}")

    @staticmethod
    def _end_time_for(session: Session, now: datetime) -> str:
        """End timestamp for closing ``session`` at ``now``, never before its start."""
        started = session.started_at
        if started is not None and started > now:
            return session.start_time
        return timeutils.to_iso(now)

    def _close(self, session: Session, now: datetime) -> Session:
        return replace(session, end_time=self._end_time_for(session, now))

    def _normalise(self, projects, tasks, sessions, now: datetime):
        """Restore the running-timer invariants on loaded data.

        Keeps the latest-started open session whose task exists, closes any
        other open session, and recomputes every task's running flag.

        Returns:
            (tasks, sessions, changed)
        """
        task_ids = {t.id for t in tasks}
        open_sessions = [s for s in sessions if s.is_open]
        candidates = [s for s in open_sessions if s.task_id in task_ids]

        keep = None
        if candidates:
            keep = max(
                candidates,
                key=lambda s: s.started_at.timestamp() if s.started_at else float("-inf"),
            )

        changed = False
        fixed_sessions = []
        for session in sessions:
            if session.is_open and session is not keep:
                fixed_sessions.append(self._close(session, now))
                changed = True
            else:
                fixed_sessions.append(session)

        running_id = keep.task_id if keep else None
        fixed_tasks = []
        for task in tasks:
            should_run = running_id is not None and task.id == running_id
            if task.is_running != should_run:
                fixed_tasks.append(replace(task, is_running=should_run))
                changed = True
            else:
                fixed_tasks.append(task)

        if changed:
            logger.warning(
                f"Repaired running state: closed {len(open_sessions) - (1 if keep else 0)} "
                f"open session(s)"
            )
        return fixed_tasks, fixed_sessions, changed

    def _seed_ids(self, projects, tasks, sessions) -> None:
        self._ids.seed(
            [p.id for p in projects] + [t.id for t in tasks] + [s.id for s in sessions]
        )

    # ------------------------------------------------------------------
    # Loading and bulk replacement

    def load(self) -> Snapshot:
        """Load collections from the store, repairing invariants if needed.

        Malformed stored data degrades to empty collections.
        """
        if self.store is None:
            return self.snapshot()

        projects = load_entities(self.store.load_collection("projects"), Project.from_dict, "projects")
        tasks = load_entities(self.store.load_collection("tasks"), Task.from_dict, "tasks")
        sessions = load_entities(self.store.load_collection("sessions"), Session.from_dict, "sessions")

        with self._lock:
            tasks, sessions, changed = self._normalise(projects, tasks, sessions, self._clock())
            self._seed_ids(projects, tasks, sessions)
            version = self._commit(projects, tasks, sessions, persist=changed)

        logger.info(
            f"Loaded {len(projects)} projects, {len(tasks)} tasks, {len(sessions)} sessions"
        )
        self._notify(version)
        return self.snapshot()

    def replace_all_data(self, bundle) -> Snapshot:
        """Replace all three collections, typically from an import.

        Args:
            bundle: Dict with optional "projects", "tasks" and "sessions"
                lists. Anything malformed becomes an empty collection;
                malformed items are skipped.
        """
        if not isinstance(bundle, dict):
            logger.warning(f"replace_all_data expected a dict, got {type(bundle).__name__}")
            bundle = {}

        projects = load_entities(bundle.get("projects"), Project.from_dict, "projects")
        tasks = load_entities(bundle.get("tasks"), Task.from_dict, "tasks")
        sessions = load_entities(bundle.get("sessions"), Session.from_dict, "sessions")

        with self._lock:
            tasks, sessions, _ = self._normalise(projects, tasks, sessions, self._clock())
            self._seed_ids(projects, tasks, sessions)
            version = self._commit(projects, tasks, sessions)

        logger.info(
            f"Replaced data: {len(projects)} projects, {len(tasks)} tasks, {len(sessions)} sessions"
        )
        self._notify(version)
        return self.snapshot()

    def clear_all_data(self) -> None:
        """Remove every project, task and session."""
        with self._lock:
            version = self._commit([], [], [])
        logger.info("Cleared all tracker data")
        self._notify(version)

    def flush(self) -> bool:
        """Retry a failed write.

        Returns:
            True if the store is up to date.
        """
        with self._lock:
            if self.dirty:
                self._persist()
            return not self.dirty

    # ------------------------------------------------------------------
    # Projects

    def add_project(self, name: str) -> Project:
        """Create a project.

        Raises:
            ValidationError: If ``name`` is blank.
        """
        name = _require_text(name, "Project name")
        with self._lock:
            project = Project(id=self._ids.next_id(), name=name, completed=False)
            version = self._commit(projects=self._snapshot.projects + (project,))
        logger.info(f"Added project {project.id} '{name}'")
        self._notify(version)
        return project

    def rename_project(self, project_id, name: str) -> Optional[Project]:
        """Rename a project.

        Returns:
            The updated project, or None if it doesn't exist.

        Raises:
            ValidationError: If ``name`` is blank.
        """
        name = _require_text(name, "Project name")
        return self._update_project(project_id, name=name)

    def complete_project(self, project_id) -> Optional[Project]:
        return self._update_project(project_id, completed=True)

    def reopen_project(self, project_id) -> Optional[Project]:
        return self._update_project(project_id, completed=False)

    def _update_project(self, project_id, **changes) -> Optional[Project]:
        with self._lock:
            current = self._snapshot.project(project_id)
            if current is None:
                logger.warning(f"No project with id {project_id}")
                return None
            updated = replace(current, **changes)
            if updated == current:
                return current
            projects = [updated if p.id == project_id else p for p in self._snapshot.projects]
            version = self._commit(projects=projects)
        logger.info(f"Updated project {project_id}: {changes}")
        self._notify(version)
        return updated

    def delete_project(self, project_id) -> bool:
        """Delete a project with all its tasks and their sessions.

        Returns:
            True if the project existed.
        """
        with self._lock:
            snap = self._snapshot
            if snap.project(project_id) is None:
                logger.warning(f"No project with id {project_id}")
                return False
            task_ids = {t.id for t in snap.tasks if t.project_id == project_id}
            projects = [p for p in snap.projects if p.id != project_id]
            tasks = [t for t in snap.tasks if t.project_id != project_id]
            sessions = [s for s in snap.sessions if s.task_id not in task_ids]
            removed_sessions = len(snap.sessions) - len(sessions)
            version = self._commit(projects, tasks, sessions)
        logger.info(
            f"Deleted project {project_id} with {len(task_ids)} tasks and {removed_sessions} sessions"
        )
        self._notify(version)
        return True

    def duplicate_project(self, project_id) -> Optional[Project]:
        """Copy a project and its tasks. Sessions are not copied.

        Returns:
            The new project, or None if the source doesn't exist.
        """
        with self._lock:
            snap = self._snapshot
            source = snap.project(project_id)
            if source is None:
                logger.warning(f"No project with id {project_id}")
                return None
            copy = Project(id=self._ids.next_id(), name=f"{source.name}{COPY_SUFFIX}", completed=False)
            copied_tasks = [
                Task(id=self._ids.next_id(), project_id=copy.id, title=t.title, is_running=False)
                for t in snap.tasks_for(project_id)
            ]
            version = self._commit(
                projects=snap.projects + (copy,),
                tasks=snap.tasks + tuple(copied_tasks),
            )
        logger.info(f"Duplicated project {project_id} as {copy.id} with {len(copied_tasks)} tasks")
        self._notify(version)
        return copy

    # ------------------------------------------------------------------
    # Tasks

    def add_task(self, project_id, title: str) -> Task:
        """Create a task under ``project_id``.

        A project id that doesn't resolve is accepted; readers attribute its
        time to the unknown-project bucket.

        Raises:
            ValidationError: If ``title`` is blank.
        """
        title = _require_text(title, "Task title")
        with self._lock:
            if self._snapshot.project(project_id) is None:
                logger.warning(f"Adding task '{title}' under unknown project {project_id}")
            task = Task(id=self._ids.next_id(), project_id=project_id, title=title, is_running=False)
            version = self._commit(tasks=self._snapshot.tasks + (task,))
        logger.info(f"Added task {task.id} '{title}' to project {project_id}")
        self._notify(version)
        return task

    def rename_task(self, task_id, title: str) -> Optional[Task]:
        """Rename a task.

        Raises:
            ValidationError: If ``title`` is blank.
        """
        title = _require_text(title, "Task title")
        with self._lock:
            current = self._snapshot.task(task_id)
            if current is None:
                logger.warning(f"No task with id {task_id}")
                return None
            if current.title == title:
                return current
            updated = replace(current, title=title)
            tasks = [updated if t.id == task_id else t for t in self._snapshot.tasks]
            version = self._commit(tasks=tasks)
        logger.info(f"Renamed task {task_id} to '{title}'")
        self._notify(version)
        return updated

    def delete_task(self, task_id) -> bool:
        """Delete a task and all its sessions.

        Returns:
            True if the task existed.
        """
        with self._lock:
            snap = self._snapshot
            if snap.task(task_id) is None:
                logger.warning(f"No task with id {task_id}")
                return False
            tasks = [t for t in snap.tasks if t.id != task_id]
            sessions = [s for s in snap.sessions if s.task_id != task_id]
            removed_sessions = len(snap.sessions) - len(sessions)
            version = self._commit(tasks=tasks, sessions=sessions)
        logger.info(f"Deleted task {task_id} with {removed_sessions} sessions")
        self._notify(version)
        return True

    # ------------------------------------------------------------------
    # Sessions

    def start_session(self, task_id) -> Optional[Session]:
        """Start the timer on ``task_id``, stopping whatever was running.

        Closing the previous session, clearing its task's flag, opening the
        new session and flagging the new task happen in one version bump.
        Starting the task that is already running closes its session and
        opens a fresh one.

        Args:
            task_id: Id of the task to start.

        Returns:
            The new open session, or None if ``task_id`` is empty or unknown.
        """
        if not task_id:
            logger.warning("start_session called without a task id; ignoring")
            return None

        with self._lock:
            snap = self._snapshot
            if snap.task(task_id) is None:
                logger.warning(f"start_session: no task with id {task_id}; ignoring")
                return None

            now = self._clock()
            sessions = [self._close(s, now) if s.is_open else s for s in snap.sessions]
            stopped = [s for s in snap.sessions if s.is_open]
            session = Session(
                id=self._ids.next_id(),
                task_id=task_id,
                start_time=timeutils.to_iso(now),
                end_time=None,
            )
            sessions.append(session)
            tasks = [
                t if t.is_running == (t.id == task_id) else replace(t, is_running=(t.id == task_id))
                for t in snap.tasks
            ]
            version = self._commit(tasks=tasks, sessions=sessions)

        for previous in stopped:
            logger.info(f"Stopped session {previous.id} (task {previous.task_id})")
        logger.info(f"Started session {session.id} for task {task_id}")
        self._notify(version)
        return session

    def stop_session(self, task_id) -> Optional[Session]:
        """Close the open session owned by ``task_id``.

        Returns:
            The closed session, or None if the task had none.
        """
        with self._lock:
            snap = self._snapshot
            now = self._clock()
            closed = None
            sessions = []
            for s in snap.sessions:
                if s.is_open and s.task_id == task_id:
                    closed = self._close(s, now)
                    sessions.append(closed)
                else:
                    sessions.append(s)

            task = snap.task(task_id)
            flag_set = task is not None and task.is_running
            if closed is None and not flag_set:
                logger.debug(f"stop_session: task {task_id} not running")
                return None

            tasks = [replace(t, is_running=False) if t.id == task_id and t.is_running else t
                     for t in snap.tasks]
            version = self._commit(tasks=tasks, sessions=sessions)

        if closed is not None:
            logger.info(f"Stopped session {closed.id} for task {task_id}")
        self._notify(version)
        return closed

    def stop_all_sessions(self) -> List[Session]:
        """Close every open session and clear every running flag.

        Safe to call repeatedly; a call with nothing running changes nothing.

        Returns:
            The sessions that were closed by this call.
        """
        with self._lock:
            snap = self._snapshot
            if not any(s.is_open for s in snap.sessions) and not any(t.is_running for t in snap.tasks):
                return []

            now = self._clock()
            closed = []
            sessions = []
            for s in snap.sessions:
                if s.is_open:
                    s = self._close(s, now)
                    closed.append(s)
                sessions.append(s)
            tasks = [replace(t, is_running=False) if t.is_running else t for t in snap.tasks]
            version = self._commit(tasks=tasks, sessions=sessions)

        logger.info(f"Stopped all sessions ({len(closed)} closed)")
        self._notify(version)
        return closed

    def delete_session(self, session_id) -> bool:
        """Delete a single session.

        Deleting the open session also clears its task's running flag.

        Returns:
            True if the session existed.
        """
        with self._lock:
            snap = self._snapshot
            target = snap.session(session_id)
            if target is None:
                logger.warning(f"No session with id {session_id}")
                return False
            sessions = [s for s in snap.sessions if s.id != session_id]
            tasks = None
            if target.is_open:
                tasks = [replace(t, is_running=False) if t.id == target.task_id and t.is_running else t
                         for t in snap.tasks]
            version = self._commit(tasks=tasks, sessions=sessions)
        logger.info(f"Deleted session {session_id}")
        self._notify(version)
        return True
