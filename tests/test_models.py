"""Tests for entity parsing, id handling and timestamp helpers."""

from datetime import datetime, timezone

from conftest import local_time
from timetracker import timeutils
from timetracker.models import IdGenerator, Project, Session, Task, coerce_id, load_entities


class TestCoerceId:
    """Ids come from JSON, URLs and command lines."""

    def test_integers_and_integral_floats(self):
        assert coerce_id(5) == 5
        assert coerce_id(5.0) == 5
        assert isinstance(coerce_id(5.0), int)

    def test_fractional_ids_survive(self):
        assert coerce_id(1700000000000.5) == 1700000000000.5
        assert coerce_id("1700000000000.5") == 1700000000000.5

    def test_strings(self):
        assert coerce_id(" 42 ") == 42
        assert coerce_id("abc") is None

    def test_rejects_bools_and_non_finite(self):
        assert coerce_id(True) is None
        assert coerce_id(float("nan")) is None
        assert coerce_id(None) is None


class TestEntities:
    """Loose from_dict parsing and camelCase output."""

    def test_task_round_trip_keys(self):
        task = Task.from_dict({"id": 1, "projectId": 2, "title": "Draft", "isRunning": True})
        assert task.to_dict() == {"id": 1, "projectId": 2, "title": "Draft", "isRunning": True}

    def test_project_missing_name(self):
        assert Project.from_dict({"id": 1}) is None
        assert Project.from_dict("Writing") is None

    def test_session_epoch_ms_start(self):
        session = Session.from_dict({"id": 1, "taskId": 2, "startTime": 1000, "endTime": None})
        assert session.is_open
        assert session.started_at == datetime(1970, 1, 1, 0, 0, 1, tzinfo=timezone.utc)

    def test_session_unusable_end_is_closed_at_start(self):
        session = Session.from_dict({"id": 1, "taskId": 2, "startTime": "2025-03-05T09:00:00+00:00",
                                     "endTime": {"bad": True}})
        assert session.end_time == session.start_time
        assert not session.is_open

    def test_invalid_start_string_parses_to_none(self):
        session = Session(id=1, task_id=2, start_time="not a date")
        assert session.started_at is None

    def test_load_entities_skips_bad_items(self):
        items = [{"id": 1, "name": "A"}, {"name": "no id"}, 7, {"id": 2, "name": "B"}]
        assert [p.name for p in load_entities(items, Project.from_dict, "projects")] == ["A", "B"]
        assert load_entities({"id": 1}, Project.from_dict, "projects") == []


class TestIdGenerator:
    """Monotonic epoch-millisecond ids."""

    def test_monotonic_with_frozen_clock(self):
        when = local_time(2025, 3, 5, 9, 0)
        ids = IdGenerator(lambda: when)
        first, second = ids.next_id(), ids.next_id()
        assert first == timeutils.epoch_ms(when)
        assert second == first + 1

    def test_seed_moves_past_existing(self):
        ids = IdGenerator(lambda: local_time(2025, 3, 5, 9, 0))
        ids.seed([10 ** 14, 5.5, "junk"])
        assert ids.next_id() == 10 ** 14 + 1


class TestTimeutils:
    """Timestamp parsing and calendar helpers."""

    def test_naive_strings_are_local(self):
        parsed = timeutils.parse_timestamp("2025-03-05T09:00:00")
        assert parsed.tzinfo is not None
        assert parsed.hour == 9

    def test_invalid_values(self):
        assert timeutils.parse_timestamp("") is None
        assert timeutils.parse_timestamp(None) is None
        assert timeutils.parse_timestamp(False) is None
        assert timeutils.parse_timestamp("yesterday-ish") is None
        assert timeutils.from_epoch_ms(float("inf")) is None

    def test_week_starts_on_sunday(self):
        wednesday = local_time(2025, 3, 5, 15, 30)
        start = timeutils.week_start(wednesday)
        assert start.date().isoformat() == "2025-03-02"
        assert (start.hour, start.minute) == (0, 0)
        assert timeutils.day_name(start) == "Sun"
        assert timeutils.day_name(wednesday) == "Wed"
