"""Screenshot association and timeline analytics.

Screenshots are stored as files named ``<epoch-ms>-<label>.<ext>``, where the
label is ``"<project>-<task>"`` made filesystem-safe at capture time. This
module only reads those names; it never opens the images.

Two read paths are provided, because they answer different questions:

- ``resolve`` is session-exact. An artifact belongs to a session when its
  label matches the session's project and task and its timestamp lies
  within the session. It is used by history and reports.
- ``build_timeline`` is coarse. Artifacts are sorted, each one "lasts" until
  the next, and time is attributed to the project segment of the label (or
  Idle). It is used by the analytics view.

Example:
    >>> artifacts = parse_artifacts(["1000-ProjA_TaskX.png", "junk.png"])
    >>> [a.timestamp_ms for a in artifacts]
    [1000]
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from . import timeutils
from .aggregation import hourly_histogram, top_totals
from .models import EntityId, Session

logger = logging.getLogger(__name__)

IDLE = "Idle"
UNKNOWN = "Unknown"
IMAGE_EXTENSIONS = (".png", ".jpg", ".jpeg", ".webp")

_ARTIFACT_RE = re.compile(r'^(\d+)-(.*)$')
_UNSAFE_RE = re.compile(r'[^A-Za-z0-9_\-]')
_NON_ALNUM_RE = re.compile(r'[^A-Za-z0-9]+')
_WHITESPACE_RE = re.compile(r'\s+')


@dataclass(frozen=True)
class Artifact:
    """A parsed screenshot identifier.

    Attributes:
        identifier: Original identifier (path or basename) as listed.
        timestamp_ms: Capture time in epoch milliseconds.
        label: Free-text label encoded after the timestamp, without extension.
    """
    identifier: str
    timestamp_ms: int
    label: str

    @property
    def name(self) -> str:
        return basename(self.identifier)

    @property
    def captured_at(self) -> Optional[datetime]:
        return timeutils.from_epoch_ms(self.timestamp_ms)


@dataclass(frozen=True)
class TimelineEntry:
    timestamp_ms: int
    project: str
    duration_ms: int


@dataclass
class Resolution:
    """Result of session-exact matching.

    Attributes:
        by_session: Session id -> artifacts inside that session.
        unmatched: Artifacts that matched no session (the Idle bucket).
    """
    by_session: Dict[EntityId, List[Artifact]] = field(default_factory=dict)
    unmatched: List[Artifact] = field(default_factory=list)


@dataclass
class TimelineAnalytics:
    """Aggregates over the coarse timeline. Durations are seconds."""
    time_by_project: Dict[str, float] = field(default_factory=dict)
    active_vs_idle_by_day: Dict[str, Dict[str, float]] = field(default_factory=dict)
    daily_trend: List[Tuple[str, float]] = field(default_factory=list)
    hourly: List[float] = field(default_factory=lambda: [0.0] * 24)
    total_seconds: float = 0.0
    top_projects: List[Tuple[str, float]] = field(default_factory=list)


def basename(identifier: str) -> str:
    """Last path component, accepting both / and \\ separators."""
    return re.split(r'[/\\]', identifier)[-1]


def parse_artifact(identifier) -> Optional[Artifact]:
    """Parse ``<epoch-ms>-<label>.<ext>``.

    Returns:
        Artifact, or None when the name has no leading numeric timestamp.
    """
    if not isinstance(identifier, str):
        return None
    name = basename(identifier)
    stem, dot, ext = name.rpartition('.')
    if not dot:
        stem = name
    match = _ARTIFACT_RE.match(stem)
    if not match:
        logger.debug(f"Ignoring screenshot with unparseable name: {identifier}")
        return None
    return Artifact(identifier=identifier, timestamp_ms=int(match.group(1)), label=match.group(2))


def parse_artifacts(identifiers: Optional[Iterable]) -> List[Artifact]:
    """Parse many identifiers, dropping the ones that don't parse."""
    if not identifiers:
        return []
    artifacts = []
    for identifier in identifiers:
        artifact = parse_artifact(identifier)
        if artifact is not None:
            artifacts.append(artifact)
    return artifacts


def safe_label(text: str) -> str:
    """File-name-safe form of a label: anything but [A-Za-z0-9_-] becomes _."""
    return _UNSAFE_RE.sub('_', text)


def session_label(project_name: Optional[str], task_title: Optional[str]) -> str:
    """Label for a project/task pair with whitespace runs joined by _."""
    label = f"{project_name or UNKNOWN}-{task_title or UNKNOWN}"
    return _WHITESPACE_RE.sub('_', label)


def normalise_label(label: str) -> str:
    """Comparison form: each run of non-alphanumeric characters becomes one _."""
    return _NON_ALNUM_RE.sub('_', label)


def labels_match(artifact_label: str, expected_label: str) -> bool:
    return normalise_label(artifact_label) == normalise_label(expected_label)


def _session_bounds_ms(session: Session, now: datetime) -> Optional[Tuple[int, int]]:
    start = session.started_at
    if start is None:
        return None
    if session.end_time is None:
        end = now
    else:
        end = session.ended_at
        if end is None:
            return None
    return timeutils.epoch_ms(start), timeutils.epoch_ms(end)


def artifact_in_session(artifact: Artifact, session: Session, label: str, now: datetime) -> bool:
    """Label matches and start <= timestamp <= (end or now)."""
    if not labels_match(artifact.label, label):
        return False
    bounds = _session_bounds_ms(session, now)
    if bounds is None:
        return False
    start_ms, end_ms = bounds
    return start_ms <= artifact.timestamp_ms <= end_ms


def labels_by_session(snapshot) -> Dict[EntityId, str]:
    """Session id -> label, from a state Snapshot."""
    tasks = {t.id: t for t in snapshot.tasks}
    projects = {p.id: p for p in snapshot.projects}
    labels = {}
    for session in snapshot.sessions:
        task = tasks.get(session.task_id)
        project = projects.get(task.project_id) if task else None
        labels[session.id] = session_label(
            project.name if project else None,
            task.title if task else None,
        )
    return labels


def resolve(artifacts: Iterable[Artifact], snapshot, now: datetime) -> Resolution:
    """Assign each artifact to the session it was captured in.

    When sessions overlap (which only happens with imported data), the
    earliest-starting match wins.
    """
    labels = labels_by_session(snapshot)
    ordered = sorted(
        snapshot.sessions,
        key=lambda s: s.started_at.timestamp() if s.started_at else float("inf"),
    )
    result = Resolution(by_session={s.id: [] for s in snapshot.sessions})
    for artifact in artifacts:
        owner = next(
            (s for s in ordered if artifact_in_session(artifact, s, labels[s.id], now)),
            None,
        )
        if owner is None:
            result.unmatched.append(artifact)
        else:
            result.by_session[owner.id].append(artifact)
    return result


def artifacts_for_session(artifacts: Iterable[Artifact], session: Session, snapshot, now: datetime) -> List[Artifact]:
    label = labels_by_session(snapshot).get(session.id)
    if label is None:
        return []
    return [a for a in artifacts if artifact_in_session(a, session, label, now)]


def artifacts_for_project(artifacts: Iterable[Artifact], project, tasks) -> List[Artifact]:
    """Artifacts whose label names one of the project's tasks, at any time."""
    labels = [session_label(project.name, t.title) for t in tasks if t.project_id == project.id]
    return [a for a in artifacts if any(labels_match(a.label, label) for label in labels)]


def _timeline_project(label: str) -> str:
    segment = label.split('-')[0]
    return segment or IDLE


def build_timeline(artifacts: Iterable[Artifact], now: datetime) -> List[TimelineEntry]:
    """Sorted entries, each lasting until the next capture (or ``now``)."""
    ordered = sorted(artifacts, key=lambda a: a.timestamp_ms)
    now_ms = timeutils.epoch_ms(now)
    entries = []
    for index, artifact in enumerate(ordered):
        end_ms = ordered[index + 1].timestamp_ms if index + 1 < len(ordered) else now_ms
        entries.append(TimelineEntry(
            timestamp_ms=artifact.timestamp_ms,
            project=_timeline_project(artifact.label),
            duration_ms=max(0, end_ms - artifact.timestamp_ms),
        ))
    return entries


def timeline_analytics(entries: Iterable[TimelineEntry], top: int = 5) -> TimelineAnalytics:
    """Project pie, active/idle per weekday, daily trend, hourly and top projects."""
    analytics = TimelineAnalytics(
        active_vs_idle_by_day={day: {"active": 0.0, "idle": 0.0} for day in timeutils.DAY_NAMES},
    )
    trend: Dict[str, float] = {}
    hourly_entries = []

    for entry in entries:
        seconds = entry.duration_ms / 1000
        analytics.time_by_project[entry.project] = analytics.time_by_project.get(entry.project, 0.0) + seconds
        analytics.total_seconds += seconds

        when = timeutils.from_epoch_ms(entry.timestamp_ms)
        if when is None:
            continue
        bucket = "idle" if entry.project == IDLE else "active"
        analytics.active_vs_idle_by_day[timeutils.day_name(when)][bucket] += seconds
        day_key = when.date().isoformat()
        trend[day_key] = trend.get(day_key, 0.0) + seconds
        hourly_entries.append((when, seconds))

    analytics.hourly = hourly_histogram(hourly_entries)
    analytics.daily_trend = sorted(trend.items())
    analytics.top_projects = [
        (name, seconds) for name, seconds in top_totals(analytics.time_by_project)
        if name != IDLE and seconds > 0
    ][:top]
    return analytics


class ScreenshotDirectory:
    """Listing and deletion of screenshot files in one directory.

    Any filesystem problem yields empty results rather than an exception.

    Attributes:
        path: Directory holding the screenshots.
    """

    def __init__(self, path):
        self.path = Path(path).expanduser()

    def list(self) -> List[str]:
        """Sorted basenames of image files in the directory."""
        try:
            if not self.path.is_dir():
                return []
            return sorted(
                entry.name for entry in self.path.iterdir()
                if entry.is_file() and entry.suffix.lower() in IMAGE_EXTENSIONS
            )
        except OSError as e:
            logger.warning(f"Could not list screenshots in {self.path}: {e}")
            return []

    def artifacts(self) -> List[Artifact]:
        return parse_artifacts(self.list())

    def path_for(self, identifier: str) -> Optional[Path]:
        """Path of a screenshot by basename, or None if the name is unsafe."""
        name = basename(identifier)
        if not name or name in ('.', '..') or name != identifier.strip():
            return None
        return self.path / name

    def delete(self, identifier: str) -> bool:
        """Delete a screenshot by basename.

        Returns:
            True if the file was removed.
        """
        target = self.path_for(identifier)
        if target is None:
            logger.warning(f"Refusing to delete screenshot with unsafe name: {identifier!r}")
            return False
        try:
            target.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.warning(f"Could not delete screenshot {target}: {e}")
            return False
        logger.info(f"Deleted screenshot {target.name}")
        return True
