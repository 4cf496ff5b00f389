"""Tests for the time aggregation engine."""

import pytest

from conftest import local_time
from timetracker import aggregation
from timetracker.models import Project, Session, Task

NOW = local_time(2025, 3, 5, 18, 0)  # Wednesday


def session(session_id, task_id, start, end=None):
    return Session(
        id=session_id,
        task_id=task_id,
        start_time=start.isoformat() if hasattr(start, "isoformat") else start,
        end_time=end.isoformat() if hasattr(end, "isoformat") else end,
    )


PROJECTS = (Project(1, "Writing"), Project(2, "Email", completed=True))
TASKS = (
    Task(10, 1, "Draft"),
    Task(11, 1, "Edit"),
    Task(20, 2, "Inbox"),
    Task(30, 99, "Orphan"),
)


class TestDurations:
    """Clamping and invalid timestamps."""

    def test_closed_session(self):
        s = session(1, 10, local_time(2025, 3, 5, 9), local_time(2025, 3, 5, 10, 30))
        assert aggregation.session_duration(s, NOW) == 5400

    def test_open_session_runs_until_now(self):
        s = session(1, 10, local_time(2025, 3, 5, 17))
        assert aggregation.session_duration(s, NOW) == 3600

    def test_negative_span_is_zero(self):
        s = session(1, 10, local_time(2025, 3, 5, 10), local_time(2025, 3, 5, 9))
        assert aggregation.session_duration(s, NOW) == 0.0

    def test_invalid_timestamps_are_zero(self):
        assert aggregation.session_duration(session(1, 10, "garbage"), NOW) == 0.0
        assert aggregation.session_duration(session(1, 10, local_time(2025, 3, 5, 9), "garbage"), NOW) == 0.0

    def test_total_with_predicate(self):
        sessions = [
            session(1, 10, local_time(2025, 3, 5, 9), local_time(2025, 3, 5, 10)),
            session(2, 20, local_time(2025, 3, 5, 11), local_time(2025, 3, 5, 11, 30)),
        ]
        assert aggregation.total_duration(sessions, now=NOW) == 5400
        assert aggregation.total_duration(sessions, lambda s: s.task_id == 20, NOW) == 1800


class TestWindows:
    """Day, week and month filters."""

    SESSIONS = (
        session(1, 10, local_time(2025, 3, 5, 9), local_time(2025, 3, 5, 10)),    # today
        session(2, 10, local_time(2025, 2, 27, 9), local_time(2025, 2, 27, 10)),  # 6 days ago
        session(3, 10, local_time(2025, 2, 26, 9), local_time(2025, 2, 26, 10)),  # 7 days ago
        session(4, 10, local_time(2025, 3, 1, 9), local_time(2025, 3, 1, 10)),    # this month
        session(5, 10, "garbage", None),
    )

    def test_day(self):
        assert [s.id for s in aggregation.filter_by_window(self.SESSIONS, "day", NOW)] == [1]

    def test_week_is_seven_days_ending_today(self):
        ids = [s.id for s in aggregation.filter_by_window(self.SESSIONS, "week", NOW)]
        assert ids == [1, 2, 4]

    def test_month(self):
        assert [s.id for s in aggregation.filter_by_window(self.SESSIONS, "month", NOW)] == [1, 4]

    def test_unknown_window(self):
        with pytest.raises(ValueError):
            aggregation.filter_by_window(self.SESSIONS, "year", NOW)

    def test_deterministic_for_same_inputs(self):
        first = aggregation.window_totals(self.SESSIONS, NOW, NOW)
        second = aggregation.window_totals(self.SESSIONS, NOW, NOW)
        assert first == second == {"day": 3600.0, "week": 10800.0, "month": 7200.0}

    def test_progress_and_goal(self):
        totals = aggregation.window_totals(self.SESSIONS, NOW, NOW)
        assert aggregation.window_progress(totals)["day"] == pytest.approx(100 / 24)
        worked, fraction = aggregation.daily_goal_progress(self.SESSIONS, 2, NOW, NOW)
        assert worked == 3600
        assert fraction == 0.5
        assert aggregation.daily_goal_progress(self.SESSIONS, 0, NOW, NOW)[1] == 0.0


class TestTotals:
    """Per-task and per-project totals with referential gaps."""

    SESSIONS = (
        session(1, 10, local_time(2025, 3, 5, 9), local_time(2025, 3, 5, 10)),
        session(2, 11, local_time(2025, 3, 5, 10), local_time(2025, 3, 5, 10, 30)),
        session(3, 20, local_time(2025, 3, 5, 11), local_time(2025, 3, 5, 13)),
        session(4, 30, local_time(2025, 3, 5, 14), local_time(2025, 3, 5, 14, 15)),
        session(5, 77, local_time(2025, 3, 5, 15), local_time(2025, 3, 5, 15, 10)),
    )

    def test_per_task_skips_missing_tasks(self):
        totals = aggregation.per_task_totals(self.SESSIONS, TASKS, NOW)
        assert totals == {10: 3600.0, 11: 1800.0, 20: 7200.0, 30: 900.0}

    def test_per_project_keeps_grand_total(self):
        totals = aggregation.per_project_totals(self.SESSIONS, TASKS, PROJECTS, NOW)
        assert totals == {"Writing": 5400.0, "Email": 7200.0, aggregation.UNKNOWN_PROJECT: 1500.0}
        assert sum(totals.values()) == aggregation.total_duration(self.SESSIONS, now=NOW)

    def test_task_project_totals_sorted(self):
        rows = aggregation.task_project_totals(self.SESSIONS, TASKS, PROJECTS, NOW)
        assert [(r.task_title, r.project_name) for r in rows] == [
            ("Inbox", "Email"),
            ("Draft", "Writing"),
            ("Edit", "Writing"),
            ("Orphan", aggregation.UNKNOWN_PROJECT),
        ]

    def test_project_breakdown_has_unknown_row_last(self):
        rows = aggregation.project_task_breakdown(self.SESSIONS, TASKS, PROJECTS, NOW)
        assert [r.name for r in rows] == ["Email", "Writing", aggregation.UNKNOWN_PROJECT]
        assert rows[1].tasks[0].seconds == 3600
        assert rows[0].completed is True
        assert rows[-1].seconds == 1500

    def test_top_totals_is_stable(self):
        ranked = aggregation.top_totals({"b": 5.0, "a": 5.0, "c": 9.0, "d": 1.0}, limit=3)
        assert ranked == [("c", 9.0), ("b", 5.0), ("a", 5.0)]


class TestHistograms:
    """Weekly and hourly buckets."""

    def test_week_starts_sunday_and_does_not_split_midnight(self):
        sessions = [
            session(1, 10, local_time(2025, 3, 2, 10), local_time(2025, 3, 2, 11)),     # Sunday
            session(2, 10, local_time(2025, 3, 4, 23), local_time(2025, 3, 5, 1)),      # Tue night
            session(3, 10, local_time(2025, 3, 1, 10), local_time(2025, 3, 1, 11)),     # previous Sat
        ]
        histogram = aggregation.daily_histogram(sessions, NOW, NOW)
        assert list(histogram) == ["Sun", "Mon", "Tue", "Wed", "Thu", "Fri", "Sat"]
        assert histogram["Sun"] == 3600
        assert histogram["Tue"] == 7200
        assert histogram["Wed"] == 0
        assert histogram["Sat"] == 0

    def test_hourly_skips_invalid(self):
        buckets = aggregation.hourly_histogram([
            (local_time(2025, 3, 5, 9, 15), 60),
            (local_time(2025, 3, 5, 9, 45), 30),
            ("garbage", 100),
        ])
        assert len(buckets) == 24
        assert buckets[9] == 90
        assert sum(buckets) == 90


class TestGrouping:
    """History views and ordering helpers."""

    SESSIONS = (
        session(1, 10, local_time(2025, 3, 4, 9), local_time(2025, 3, 4, 10)),
        session(2, 20, local_time(2025, 3, 5, 9), local_time(2025, 3, 5, 9, 30)),
        session(3, 11, local_time(2025, 3, 5, 11), local_time(2025, 3, 5, 12)),
    )

    def test_group_by_date_newest_first(self):
        groups = aggregation.group_by_date(self.SESSIONS, NOW)
        assert [g.label for g in groups] == ["March 5, 2025", "March 4, 2025"]
        assert [s.id for s in groups[0].sessions] == [3, 2]
        assert groups[0].total_seconds == 5400

    def test_group_by_project_alphabetical(self):
        groups = aggregation.group_by_project(self.SESSIONS, TASKS, PROJECTS, NOW)
        assert [g.label for g in groups] == ["Email", "Writing"]
        assert groups[1].total_seconds == 7200

    def test_tasks_by_recent_activity(self):
        tasks = TASKS[:3] + (Task(40, 1, "Running", is_running=True),)
        ordered = aggregation.tasks_by_recent_activity(tasks, self.SESSIONS, PROJECTS)
        assert [t.id for t in ordered][:3] == [40, 11, 20]

    def test_last_stopped_session(self):
        assert aggregation.last_stopped_session(self.SESSIONS).id == 3
        assert aggregation.last_stopped_session([]) is None

    def test_format_duration(self):
        assert aggregation.format_duration(3725.9) == "01:02:05"
        assert aggregation.format_duration(-5) == "00:00:00"
        assert aggregation.format_duration(float("nan")) == "00:00:00"
