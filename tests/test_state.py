"""Tests for the domain state manager."""

import json

import pytest

from conftest import local_time
from timetracker import aggregation
from timetracker.errors import StorageError, ValidationError
from timetracker.state import TrackerState


def open_sessions(state):
    return [s for s in state.snapshot().sessions if s.is_open]


def running_tasks(state):
    return [t for t in state.snapshot().tasks if t.is_running]


class TestProjectsAndTasks:
    """Creating, renaming and validating projects and tasks."""

    def test_add_project_and_task(self, state):
        project = state.add_project("  Writing ")
        task = state.add_task(project.id, "Draft")

        assert project.name == "Writing"
        assert state.get_task(task.id).project_id == project.id
        assert task.is_running is False

    def test_ids_are_unique_when_clock_does_not_move(self, state):
        ids = [state.add_project(f"P{i}").id for i in range(5)]
        assert len(set(ids)) == 5
        assert ids == sorted(ids)

    def test_blank_project_name_is_rejected(self, state):
        version = state.version
        with pytest.raises(ValidationError):
            state.add_project("   ")
        assert state.version == version
        assert state.snapshot().projects == ()

    def test_blank_task_title_is_rejected(self, state):
        project = state.add_project("Writing")
        with pytest.raises(ValidationError):
            state.add_task(project.id, "")
        assert state.snapshot().tasks == ()

    def test_rename_missing_project_returns_none(self, state):
        assert state.rename_project(12345, "Nope") is None

    def test_complete_and_reopen(self, state):
        project = state.add_project("Writing")
        assert state.complete_project(project.id).completed is True
        assert state.reopen_project(project.id).completed is False

    def test_task_under_unknown_project_is_accepted(self, state):
        task = state.add_task(999, "Orphan")
        assert state.get_task(task.id) is not None

    def test_duplicate_project_copies_tasks_not_sessions(self, state, clock):
        project = state.add_project("Writing")
        task = state.add_task(project.id, "Draft")
        state.start_session(task.id)
        clock.advance(60)
        state.stop_session(task.id)

        copy = state.duplicate_project(project.id)
        snap = state.snapshot()

        assert copy.name == "Writing (Copy)"
        copied = snap.tasks_for(copy.id)
        assert [t.title for t in copied] == ["Draft"]
        assert all(not t.is_running for t in copied)
        assert all(s.task_id == task.id for s in snap.sessions)


class TestTimer:
    """Starting and stopping sessions."""

    def test_scenario_a_one_hour_session(self, state, clock):
        project = state.add_project("Writing")
        task = state.add_task(project.id, "Draft")

        state.start_session(task.id)
        clock.advance(3600)
        state.stop_session(task.id)

        snap = state.snapshot()
        now = clock()
        assert aggregation.per_task_totals(snap.sessions, snap.tasks, now) == {task.id: 3600.0}
        assert aggregation.per_project_totals(snap.sessions, snap.tasks, snap.projects, now) == {
            "Writing": 3600.0
        }

    def test_scenario_b_switch_stops_previous(self, state, clock):
        p1 = state.add_project("Writing")
        p2 = state.add_project("Email")
        t1 = state.add_task(p1.id, "Draft")
        t2 = state.add_task(p2.id, "Inbox")

        first = state.start_session(t1.id)
        version = state.version
        clock.advance(600)
        second = state.start_session(t2.id)

        snap = state.snapshot()
        closed = snap.session(first.id)
        assert closed.end_time is not None
        assert aggregation.session_duration(closed, clock()) == 600
        assert snap.session(second.id).is_open
        assert snap.task(t2.id).is_running is True
        assert snap.task(t1.id).is_running is False
        # One change, one version bump
        assert state.version == version + 1

    def test_single_runner_invariant(self, state, clock):
        project = state.add_project("Writing")
        tasks = [state.add_task(project.id, f"T{i}") for i in range(4)]

        for task in tasks * 2:
            state.start_session(task.id)
            clock.advance(30)
            assert len(open_sessions(state)) == 1
            assert [t.id for t in running_tasks(state)] == [task.id]
            assert state.open_session().task_id == task.id

    def test_restart_running_task_opens_new_session(self, state, clock):
        project = state.add_project("Writing")
        task = state.add_task(project.id, "Draft")
        first = state.start_session(task.id)
        clock.advance(10)
        second = state.start_session(task.id)

        assert first.id != second.id
        assert state.get_session(first.id).end_time is not None
        assert len(open_sessions(state)) == 1

    def test_start_unknown_task_is_ignored(self, state):
        version = state.version
        assert state.start_session(424242) is None
        assert state.start_session(None) is None
        assert state.version == version

    def test_stop_task_that_is_not_running(self, state):
        project = state.add_project("Writing")
        task = state.add_task(project.id, "Draft")
        version = state.version
        assert state.stop_session(task.id) is None
        assert state.version == version

    def test_stop_all_is_idempotent(self, state, clock):
        project = state.add_project("Writing")
        task = state.add_task(project.id, "Draft")
        state.start_session(task.id)
        clock.advance(120)

        closed = state.stop_all_sessions()
        version = state.version
        snapshot = state.snapshot()

        assert len(closed) == 1
        assert state.stop_all_sessions() == []
        assert state.version == version
        assert state.snapshot() == snapshot
        assert running_tasks(state) == []

    def test_stop_never_ends_before_start(self, state, clock):
        project = state.add_project("Writing")
        task = state.add_task(project.id, "Draft")
        session = state.start_session(task.id)
        clock.advance(-300)
        closed = state.stop_session(task.id)

        assert closed.end_time == session.start_time
        assert aggregation.session_duration(closed, clock()) == 0.0

    def test_delete_open_session_clears_running_flag(self, state):
        project = state.add_project("Writing")
        task = state.add_task(project.id, "Draft")
        session = state.start_session(task.id)

        assert state.delete_session(session.id) is True
        assert state.get_task(task.id).is_running is False
        assert state.delete_session(session.id) is False


class TestCascadeDelete:
    """Deleting projects and tasks removes everything beneath them."""

    def test_scenario_c_delete_project(self, state, clock):
        p1 = state.add_project("Writing")
        other = state.add_project("Email")
        t1 = state.add_task(p1.id, "Draft")
        t2 = state.add_task(other.id, "Inbox")
        for _ in range(2):
            state.start_session(t1.id)
            clock.advance(60)
            state.stop_session(t1.id)
        state.start_session(t2.id)
        clock.advance(60)
        state.stop_session(t2.id)

        assert state.delete_project(p1.id) is True

        snap = state.snapshot()
        assert [p.id for p in snap.projects] == [other.id]
        assert all(t.project_id != p1.id for t in snap.tasks)
        assert all(s.task_id != t1.id for s in snap.sessions)
        assert len(snap.sessions) == 1

    def test_delete_running_task(self, state):
        project = state.add_project("Writing")
        task = state.add_task(project.id, "Draft")
        state.start_session(task.id)

        assert state.delete_task(task.id) is True
        assert state.snapshot().sessions == ()
        assert state.open_session() is None

    def test_delete_missing_project(self, state):
        assert state.delete_project(1) is False


class TestPersistence:
    """Every change is mirrored to the store."""

    def test_changes_survive_reload(self, store, state, clock):
        project = state.add_project("Writing")
        task = state.add_task(project.id, "Draft")
        state.start_session(task.id)

        reloaded = TrackerState(store, clock=clock)
        reloaded.load()

        assert reloaded.get_project(project.id).name == "Writing"
        assert reloaded.running_task().id == task.id

    def test_load_repairs_multiple_open_sessions(self, store, clock):
        store.set_many({
            "projects": json.dumps([{"id": 1, "name": "Writing", "completed": False}]),
            "tasks": json.dumps([
                {"id": 2, "projectId": 1, "title": "A", "isRunning": True},
                {"id": 3, "projectId": 1, "title": "B", "isRunning": True},
            ]),
            "sessions": json.dumps([
                {"id": 4, "taskId": 2, "startTime": local_time(2025, 3, 5, 7).isoformat(), "endTime": None},
                {"id": 5, "taskId": 3, "startTime": local_time(2025, 3, 5, 8).isoformat(), "endTime": None},
                {"id": 6, "taskId": 99, "startTime": local_time(2025, 3, 5, 8, 30).isoformat(), "endTime": None},
            ]),
        })

        state = TrackerState(store, clock=clock)
        state.load()

        assert [s.id for s in open_sessions(state)] == [5]
        assert [t.id for t in running_tasks(state)] == [3]
        assert json.loads(store.get("sessions"))[0]["endTime"] is not None

    def test_new_ids_exceed_loaded_ids(self, store, clock):
        far_future_id = 10 ** 15
        store.set("projects", json.dumps([{"id": far_future_id, "name": "Old"}]))
        state = TrackerState(store, clock=clock)
        state.load()
        assert state.add_project("New").id > far_future_id

    def test_write_failure_marks_dirty_and_flush_retries(self, state):
        original = state.store.save_collections
        calls = []

        def failing(*args):
            calls.append(args)
            raise StorageError("disk full")

        state.store.save_collections = failing
        project = state.add_project("Writing")
        assert state.dirty is True
        assert state.get_project(project.id) is not None

        state.store.save_collections = original
        assert state.flush() is True
        assert state.dirty is False
        assert json.loads(state.store.get("projects"))[0]["name"] == "Writing"

    def test_memory_only_state(self, clock):
        state = TrackerState(clock=clock)
        state.load()
        project = state.add_project("Writing")
        assert state.get_project(project.id) is not None
        assert state.flush() is True


class TestBulkReplace:
    """replace_all_data and clear_all_data."""

    def test_replace_normalises_running_flags(self, state):
        state.replace_all_data({
            "projects": [{"id": 1, "name": "Writing"}],
            "tasks": [{"id": 2, "projectId": 1, "title": "Draft", "isRunning": True}],
            "sessions": [],
        })
        assert running_tasks(state) == []

    def test_replace_with_garbage_gives_empty_collections(self, state):
        state.add_project("Writing")
        state.replace_all_data({"projects": "nope", "tasks": [1, 2], "sessions": None})
        snap = state.snapshot()
        assert snap.projects == ()
        assert snap.tasks == ()
        assert snap.sessions == ()

    def test_float_ids_are_kept(self, state):
        state.replace_all_data({
            "projects": [{"id": 1700000000000.25, "name": "Legacy"}],
            "tasks": [{"id": 1700000000001.5, "projectId": 1700000000000.25, "title": "Old"}],
            "sessions": [],
        })
        task = state.get_task(1700000000001.5)
        assert state.snapshot().project_of(task).name == "Legacy"

    def test_clear_all_data(self, state):
        project = state.add_project("Writing")
        state.add_task(project.id, "Draft")
        state.clear_all_data()
        assert state.snapshot().to_dict() == {"projects": [], "tasks": [], "sessions": []}


class TestSubscribers:
    """Change notifications."""

    def test_subscriber_gets_each_version(self, state):
        versions = []
        unsubscribe = state.subscribe(versions.append)

        project = state.add_project("Writing")
        task = state.add_task(project.id, "Draft")
        state.start_session(task.id)
        unsubscribe()
        state.stop_all_sessions()

        assert len(versions) == 3
        assert versions == sorted(versions)
        assert versions[-1] == state.version - 1

    def test_failing_subscriber_does_not_break_mutation(self, state):
        def broken(version):
            raise RuntimeError("boom")

        state.subscribe(broken)
        project = state.add_project("Writing")
        assert state.get_project(project.id) is not None
