"""Time aggregation over tracker snapshots.

Everything here is a pure function of its arguments: pass the collections
from a ``Snapshot`` plus an explicit ``now`` and get numbers or plain
structures back. Nothing is cached, so results always reflect the snapshot
they were computed from.

Durations are float seconds. Sessions with unparseable timestamps, negative
spans (clock skew) or non-finite results contribute zero. Sessions whose task
or project no longer exists are skipped or attributed to ``UNKNOWN_PROJECT``
as documented per function; none of these functions raise for bad data.

Example:
    >>> snap = state.snapshot()
    >>> per_project_totals(snap.sessions, snap.tasks, snap.projects, now)
    {'Writing': 3600.0}
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from . import timeutils
from .models import EntityId, Project, Session, Task

logger = logging.getLogger(__name__)

UNKNOWN_PROJECT = "Unknown Project"
UNKNOWN_TASK = "Unknown Task"

WINDOWS = ("day", "week", "month")
# Denominators for dashboard progress bars
WINDOW_HOURS = {"day": 24, "week": 168, "month": 720}


@dataclass(frozen=True)
class TaskTotal:
    """Time spent on one (task title, project name) pair."""
    task_title: str
    project_name: str
    seconds: float


@dataclass(frozen=True)
class TaskBreakdown:
    task_id: EntityId
    title: str
    seconds: float


@dataclass(frozen=True)
class ProjectBreakdown:
    """Per-project total with its tasks, as shown in reports."""
    project_id: Optional[EntityId]
    name: str
    completed: bool
    seconds: float
    tasks: Tuple[TaskBreakdown, ...] = ()


@dataclass(frozen=True)
class SessionGroup:
    """A history group: sessions sharing a date or a project.

    Attributes:
        key: Sortable group key (ISO date or project name).
        label: Display label.
        sessions: Sessions in the group, newest first.
        total_seconds: Sum of the sessions' positive durations.
    """
    key: str
    label: str
    sessions: Tuple[Session, ...] = field(default_factory=tuple)
    total_seconds: float = 0.0


def _finite(value: float) -> float:
    return value if isinstance(value, (int, float)) and math.isfinite(value) else 0.0


def session_duration(session: Session, now: datetime) -> float:
    """Seconds from start to end (or ``now`` while open), clamped to >= 0.

    Returns 0.0 when either timestamp is invalid.
    """
    start = session.started_at
    if start is None:
        return 0.0
    if session.end_time is None:
        end = now
    else:
        end = session.ended_at
        if end is None:
            return 0.0
    try:
        seconds = (end - start).total_seconds()
    except (TypeError, OverflowError):
        return 0.0
    if not math.isfinite(seconds) or seconds < 0:
        return 0.0
    return seconds


def total_duration(
    sessions: Iterable[Session],
    predicate: Optional[Callable[[Session], bool]] = None,
    now: Optional[datetime] = None,
) -> float:
    """Sum clamped durations of sessions matching ``predicate``.

    Args:
        sessions: Sessions to sum.
        predicate: Optional filter; all sessions count when None.
        now: End time for open sessions. Defaults to the current time.
    """
    now = now or timeutils.now()
    total = 0.0
    for session in sessions:
        if predicate is not None and not predicate(session):
            continue
        total += session_duration(session, now)
    return _finite(total)


def _local_date(dt: Optional[datetime]) -> Optional[date]:
    if dt is None:
        return None
    try:
        return dt.astimezone().date()
    except (OverflowError, OSError, ValueError):
        return None


def in_window(start: Optional[datetime], window: str, reference: datetime) -> bool:
    """Whether a start time falls in the ``window`` around ``reference``.

    day: same local calendar date. week: the 7 local days ending with the
    reference date, inclusive. month: same calendar month and year.
    """
    if window not in WINDOWS:
        raise ValueError(f"Unknown window: {window}")
    start_date = _local_date(start)
    if start_date is None:
        return False
    ref_date = _local_date(reference)
    if window == "day":
        return start_date == ref_date
    if window == "week":
        return ref_date - timedelta(days=6) <= start_date <= ref_date
    return (start_date.year, start_date.month) == (ref_date.year, ref_date.month)


def filter_by_window(sessions: Iterable[Session], window: str, reference: datetime) -> List[Session]:
    """Sessions whose start time falls in the window around ``reference``.

    Sessions with invalid start times are excluded.

    Raises:
        ValueError: If ``window`` is not one of WINDOWS.
    """
    if window not in WINDOWS:
        raise ValueError(f"Unknown window: {window}")
    return [s for s in sessions if in_window(s.started_at, window, reference)]


def per_task_totals(sessions: Iterable[Session], tasks: Iterable[Task], now: datetime) -> Dict[EntityId, float]:
    """Total seconds per task id. Sessions of missing tasks are skipped."""
    known = {t.id for t in tasks}
    totals: Dict[EntityId, float] = {}
    for session in sessions:
        if session.task_id not in known:
            logger.debug(f"Skipping session {session.id}: task {session.task_id} not found")
            continue
        totals[session.task_id] = totals.get(session.task_id, 0.0) + session_duration(session, now)
    return totals


def _project_name_for(task: Optional[Task], projects_by_id: Dict) -> str:
    if task is None:
        return UNKNOWN_PROJECT
    project = projects_by_id.get(task.project_id)
    return project.name if project else UNKNOWN_PROJECT


def per_project_totals(
    sessions: Iterable[Session],
    tasks: Iterable[Task],
    projects: Iterable[Project],
    now: datetime,
) -> Dict[str, float]:
    """Total seconds per project name.

    Sessions whose task or project is missing go to UNKNOWN_PROJECT so that
    the grand total still matches the sum of all sessions.
    """
    tasks_by_id = {t.id: t for t in tasks}
    projects_by_id = {p.id: p for p in projects}
    totals: Dict[str, float] = {}
    for session in sessions:
        name = _project_name_for(tasks_by_id.get(session.task_id), projects_by_id)
        totals[name] = totals.get(name, 0.0) + session_duration(session, now)
    return totals


def task_project_totals(
    sessions: Iterable[Session],
    tasks: Iterable[Task],
    projects: Iterable[Project],
    now: datetime,
) -> List[TaskTotal]:
    """Totals per (task title, project name), largest first.

    Sessions of missing tasks are skipped; a missing project shows as
    UNKNOWN_PROJECT.
    """
    tasks_by_id = {t.id: t for t in tasks}
    projects_by_id = {p.id: p for p in projects}
    totals: Dict[Tuple[str, str], float] = {}
    for session in sessions:
        task = tasks_by_id.get(session.task_id)
        if task is None:
            continue
        key = (task.title, _project_name_for(task, projects_by_id))
        totals[key] = totals.get(key, 0.0) + session_duration(session, now)
    return [
        TaskTotal(task_title=title, project_name=project, seconds=seconds)
        for (title, project), seconds in top_totals(totals)
    ]


def project_task_breakdown(
    sessions: Iterable[Session],
    tasks: Sequence[Task],
    projects: Sequence[Project],
    now: datetime,
) -> List[ProjectBreakdown]:
    """Every project with its per-task totals, largest project first.

    Time from sessions whose task or project is missing is reported as a
    trailing UNKNOWN_PROJECT row when there is any.
    """
    sessions = list(sessions)
    task_totals = per_task_totals(sessions, tasks, now)
    project_ids = {p.id for p in projects}

    rows = []
    for project in projects:
        task_rows = tuple(
            TaskBreakdown(task_id=t.id, title=t.title, seconds=task_totals.get(t.id, 0.0))
            for t in tasks if t.project_id == project.id
        )
        rows.append(ProjectBreakdown(
            project_id=project.id,
            name=project.name,
            completed=project.completed,
            seconds=sum(row.seconds for row in task_rows),
            tasks=task_rows,
        ))

    orphan_task_ids = {t.id for t in tasks if t.project_id not in project_ids}
    known_task_ids = {t.id for t in tasks}
    unknown_seconds = total_duration(
        sessions,
        lambda s: s.task_id in orphan_task_ids or s.task_id not in known_task_ids,
        now,
    )

    rows.sort(key=lambda row: -row.seconds)
    if unknown_seconds > 0:
        rows.append(ProjectBreakdown(
            project_id=None, name=UNKNOWN_PROJECT, completed=False, seconds=unknown_seconds,
        ))
    return rows


def daily_histogram(sessions: Iterable[Session], reference: datetime, now: datetime) -> Dict[str, float]:
    """Seconds per weekday (Sun..Sat) for the week containing ``reference``.

    Weeks start on Sunday. A session counts in full toward the day it
    started, even if it runs past midnight.
    """
    buckets = {name: 0.0 for name in timeutils.DAY_NAMES}
    first_day = timeutils.week_start(reference).date()
    last_day = first_day + timedelta(days=6)
    for session in sessions:
        start = session.started_at
        start_date = _local_date(start)
        if start_date is None or not (first_day <= start_date <= last_day):
            continue
        buckets[timeutils.day_name(start)] += session_duration(session, now)
    return buckets


def hourly_histogram(entries: Iterable[Tuple[object, float]]) -> List[float]:
    """Seconds per local hour of day.

    Args:
        entries: (timestamp, seconds) pairs. Timestamps may be datetimes,
            ISO strings or epoch milliseconds; invalid ones are skipped.

    Returns:
        24 values, index = hour.
    """
    buckets = [0.0] * 24
    for timestamp, seconds in entries:
        when = timeutils.parse_timestamp(timestamp)
        if when is None:
            continue
        buckets[when.astimezone().hour] += _finite(seconds)
    return buckets


def top_totals(totals: Dict, limit: Optional[int] = None) -> List[Tuple[object, float]]:
    """Mapping items sorted by descending total.

    The sort is stable, so equal totals keep the mapping's insertion order.
    """
    ranked = sorted(totals.items(), key=lambda item: -_finite(item[1]))
    return ranked[:limit] if limit is not None else ranked


def window_totals(sessions: Sequence[Session], reference: datetime, now: datetime) -> Dict[str, float]:
    """Total seconds for the day, week and month around ``reference``."""
    return {
        window: total_duration(filter_by_window(sessions, window, reference), now=now)
        for window in WINDOWS
    }


def window_progress(totals: Dict[str, float]) -> Dict[str, float]:
    """Percent of the window's wall-clock hours that were tracked, capped at 100."""
    return {
        window: min(100.0, _finite(totals.get(window, 0.0)) / (WINDOW_HOURS[window] * 3600) * 100)
        for window in WINDOWS
    }


def daily_goal_progress(
    sessions: Sequence[Session],
    goal_hours: float,
    reference: datetime,
    now: datetime,
) -> Tuple[float, float]:
    """Today's tracked seconds and the fraction of the goal reached (max 1.0)."""
    worked = total_duration(filter_by_window(sessions, "day", reference), now=now)
    goal_seconds = _finite(goal_hours) * 3600
    if goal_seconds <= 0:
        return worked, 0.0
    return worked, min(1.0, worked / goal_seconds)


def last_stopped_session(sessions: Iterable[Session]) -> Optional[Session]:
    """The closed session with the latest valid end time."""
    latest = None
    latest_end = None
    for session in sessions:
        end = session.ended_at
        if session.is_open or end is None:
            continue
        if latest_end is None or end > latest_end:
            latest, latest_end = session, end
    return latest


def tasks_by_recent_activity(tasks: Iterable[Task], sessions: Iterable[Session], projects: Iterable[Project]) -> List[Task]:
    """Running task first, then most recently active, then by project name."""
    last_activity: Dict[EntityId, float] = {}
    for session in sessions:
        when = session.ended_at if session.end_time else session.started_at
        if when is None:
            continue
        stamp = when.timestamp()
        if stamp > last_activity.get(session.task_id, 0.0):
            last_activity[session.task_id] = stamp

    project_names = {p.id: p.name for p in projects}
    return sorted(
        tasks,
        key=lambda t: (
            not t.is_running,
            -last_activity.get(t.id, 0.0),
            project_names.get(t.project_id, ""),
        ),
    )


def group_by_date(sessions: Iterable[Session], now: datetime) -> List[SessionGroup]:
    """Group sessions by local start date, newest date first.

    Sessions with invalid start times are left out.
    """
    groups: Dict[date, List[Session]] = {}
    for session in sessions:
        start_date = _local_date(session.started_at)
        if start_date is None:
            continue
        groups.setdefault(start_date, []).append(session)

    return [
        _make_group(day.isoformat(), f"{day.strftime('%B')} {day.day}, {day.year}", members, now)
        for day, members in sorted(groups.items(), key=lambda item: item[0], reverse=True)
    ]


def group_by_project(
    sessions: Iterable[Session],
    tasks: Iterable[Task],
    projects: Iterable[Project],
    now: datetime,
) -> List[SessionGroup]:
    """Group sessions by project name, alphabetically."""
    tasks_by_id = {t.id: t for t in tasks}
    projects_by_id = {p.id: p for p in projects}
    groups: Dict[str, List[Session]] = {}
    for session in sessions:
        name = _project_name_for(tasks_by_id.get(session.task_id), projects_by_id)
        groups.setdefault(name, []).append(session)

    return [
        _make_group(name, name, members, now)
        for name, members in sorted(groups.items(), key=lambda item: item[0].lower())
    ]


def _make_group(key: str, label: str, members: List[Session], now: datetime) -> SessionGroup:
    members = sorted(
        members,
        key=lambda s: s.started_at.timestamp() if s.started_at else float("-inf"),
        reverse=True,
    )
    return SessionGroup(
        key=key,
        label=label,
        sessions=tuple(members),
        total_seconds=total_duration(members, now=now),
    )


def format_duration(seconds: float) -> str:
    """Format seconds as HH:MM:SS."""
    whole = int(_finite(seconds)) if _finite(seconds) > 0 else 0
    hours, remainder = divmod(whole, 3600)
    minutes, secs = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"
