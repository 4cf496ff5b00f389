"""Tests for the daemon lifecycle without display or input devices."""

import threading

import pytest
import yaml

from timetracker.config import ConfigManager
from timetracker.daemon import TrackerDaemon


@pytest.fixture
def daemon(tmp_path):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(yaml.dump({"storage": {"data_dir": str(tmp_path / "data")}}))
    return TrackerDaemon(
        config_manager=ConfigManager(config_path),
        enable_idle=False,
        enable_screenshots=False,
        install_signal_handlers=False,
    )


def start_task(daemon):
    project = daemon.state.add_project("Writing")
    task = daemon.state.add_task(project.id, "Draft")
    daemon.state.start_session(task.id)
    return task


class TestTrackerDaemon:
    """Signals, idleness and shutdown all stop the timers."""

    def test_idle_stops_timers(self, daemon):
        start_task(daemon)
        daemon._handle_idle()
        assert daemon.state.running_task() is None

    def test_signal_only_ends_loop(self, daemon):
        start_task(daemon)
        daemon.running = True
        version = daemon.state.version
        daemon._signal_handler(15, None)
        assert daemon.running is False
        assert daemon.state.version == version
        assert daemon.state.open_session() is not None

    def test_signal_during_run_stops_timers_on_shutdown(self, daemon):
        task = start_task(daemon)
        threading.Timer(0.05, daemon._signal_handler, args=(15, None)).start()
        daemon.run()
        assert daemon.state.open_session() is None
        assert daemon.state.get_task(task.id).is_running is False

    def test_shutdown_persists_closed_sessions(self, daemon, tmp_path):
        task = start_task(daemon)
        daemon.shutdown()

        sessions = daemon.store.load_collection("sessions")
        assert len(sessions) == 1
        assert sessions[0]["endTime"] is not None
        assert sessions[0]["taskId"] == task.id
        assert not (tmp_path / "data" / "exports").exists()

    def test_shutdown_auto_export(self, daemon, tmp_path):
        daemon.settings.update(autoExport=True)
        daemon.shutdown()
        assert list((tmp_path / "data" / "exports").glob("time-tracker-backup-*.json"))

    def test_run_exits_when_stopped(self, daemon):
        threading.Timer(0.05, daemon.stop).start()
        daemon.run()
        assert daemon.running is False
