"""Time Report Generator for Time Tracker.

Builds a report for a natural-language time range: time per project with
the per-task breakdown, totals, the busiest weekday and how many screenshots
were captured per project.

Example:
    >>> from timetracker.reports import ReportGenerator
    >>> generator = ReportGenerator(state, screenshots=ScreenshotDirectory(path))
    >>> report = generator.generate("last week")
    >>> print(report.total_seconds)
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, TYPE_CHECKING
import logging

from . import aggregation, timeutils
from .screenshots import artifacts_for_project
from .timeparser import TimeParser

if TYPE_CHECKING:
    from .screenshots import ScreenshotDirectory
    from .state import TrackerState

logger = logging.getLogger(__name__)


@dataclass
class Report:
    """A complete time report.

    Attributes:
        title: Report title.
        time_range: Human-readable time range description.
        generated_at: When the report was generated.
        start: Range start.
        end: Range end.
        projects: Project rows, largest first, with an Unknown Project row
            when time couldn't be attributed.
        task_totals: Time per (task, project), largest first.
        total_seconds: Total tracked time in the range.
        session_count: Sessions that started in the range.
        top_project: Name of the project with the most time, if any.
        daily_histogram: Seconds per weekday for the week containing ``end``.
        screenshot_counts: Screenshots per project name.
    """
    title: str
    time_range: str
    generated_at: datetime
    start: datetime
    end: datetime
    projects: List[aggregation.ProjectBreakdown] = field(default_factory=list)
    task_totals: List[aggregation.TaskTotal] = field(default_factory=list)
    total_seconds: float = 0.0
    session_count: int = 0
    top_project: Optional[str] = None
    daily_histogram: Dict[str, float] = field(default_factory=dict)
    screenshot_counts: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            'title': self.title,
            'time_range': self.time_range,
            'generated_at': self.generated_at.isoformat(),
            'start': self.start.isoformat(),
            'end': self.end.isoformat(),
            'total_seconds': round(self.total_seconds, 3),
            'session_count': self.session_count,
            'top_project': self.top_project,
            'projects': [
                {
                    'id': row.project_id,
                    'name': row.name,
                    'completed': row.completed,
                    'seconds': round(row.seconds, 3),
                    'tasks': [
                        {'id': t.task_id, 'title': t.title, 'seconds': round(t.seconds, 3)}
                        for t in row.tasks
                    ],
                }
                for row in self.projects
            ],
            'task_totals': [
                {'task': t.task_title, 'project': t.project_name, 'seconds': round(t.seconds, 3)}
                for t in self.task_totals
            ],
            'daily_histogram': {day: round(s, 3) for day, s in self.daily_histogram.items()},
            'screenshot_counts': self.screenshot_counts,
        }


class ReportGenerator:
    """Generate time reports for ranges.

    Attributes:
        state: TrackerState to read snapshots from.
        screenshots: Optional ScreenshotDirectory for screenshot counts.
    """

    def __init__(
        self,
        state: "TrackerState",
        screenshots: Optional["ScreenshotDirectory"] = None,
        clock: Callable[[], datetime] = timeutils.now,
    ):
        self.state = state
        self.screenshots = screenshots
        self._clock = clock

    def generate(self, time_range: str) -> Report:
        """Generate a report for the given time range.

        Args:
            time_range: Natural language time range (e.g., "last week").

        Returns:
            Report object with all data populated.

        Raises:
            ValueError: If time_range cannot be parsed.
        """
        now = self._clock()
        parser = TimeParser(now)
        start, end = parser.parse(time_range)
        range_description = parser.describe_range(start, end)
        logger.info(f"Generating report for {range_description}")

        snap = self.state.snapshot()
        sessions = [
            s for s in snap.sessions
            if s.started_at is not None and start <= s.started_at <= end
        ]
        logger.debug(f"Found {len(sessions)} sessions in range")

        projects = aggregation.project_task_breakdown(sessions, snap.tasks, snap.projects, now)
        task_totals = aggregation.task_project_totals(sessions, snap.tasks, snap.projects, now)
        total = aggregation.total_duration(sessions, now=now)
        top = next((row.name for row in projects if row.seconds > 0), None)

        return Report(
            title=f"Time Report: {range_description}",
            time_range=range_description,
            generated_at=now,
            start=start,
            end=end,
            projects=projects,
            task_totals=task_totals,
            total_seconds=total,
            session_count=len(sessions),
            top_project=top,
            daily_histogram=aggregation.daily_histogram(sessions, min(end, now), now),
            screenshot_counts=self._screenshot_counts(snap),
        )

    def _screenshot_counts(self, snap) -> Dict[str, int]:
        if self.screenshots is None:
            return {}
        artifacts = self.screenshots.artifacts()
        if not artifacts:
            return {}
        return {
            project.name: len(artifacts_for_project(artifacts, project, snap.tasks))
            for project in snap.projects
        }
