"""Tests for the Flask JSON API."""

import json

import pytest

from conftest import local_time
from timetracker import timeutils
from timetracker.report_export import ReportExporter
from timetracker.screenshots import ScreenshotDirectory
from web.app import create_app


@pytest.fixture
def shots_dir(tmp_path):
    path = tmp_path / "screenshots"
    path.mkdir()
    return path


@pytest.fixture
def client(state, settings, shots_dir, tmp_path):
    app = create_app(
        state,
        settings,
        screenshots=ScreenshotDirectory(shots_dir),
        exporter=ReportExporter(tmp_path / "reports"),
    )
    app.config["TESTING"] = True
    return app.test_client()


def make_task(client, project="Writing", title="Draft"):
    project_id = client.post("/api/projects", json={"name": project}).get_json()["id"]
    return client.post("/api/tasks", json={"projectId": project_id, "title": title}).get_json()


class TestProjectsAndTasks:
    """CRUD routes."""

    def test_create_and_list(self, client):
        task = make_task(client)
        projects = client.get("/api/projects").get_json()
        assert [p["name"] for p in projects] == ["Writing"]
        tasks = client.get(f"/api/tasks?project={task['projectId']}").get_json()
        assert tasks[0]["title"] == "Draft"
        assert tasks[0]["totalSeconds"] == 0

    def test_blank_name_is_400(self, client):
        response = client.post("/api/projects", json={"name": " "})
        assert response.status_code == 400
        assert "error" in response.get_json()

    def test_patch_project(self, client):
        project_id = client.post("/api/projects", json={"name": "Writing"}).get_json()["id"]
        response = client.patch(f"/api/projects/{project_id}", json={"name": "Prose", "completed": True})
        assert response.get_json() == {"id": project_id, "name": "Prose", "completed": True}

    def test_missing_entities_are_404(self, client):
        assert client.patch("/api/projects/1", json={"name": "x"}).status_code == 404
        assert client.delete("/api/tasks/1").status_code == 404
        assert client.post("/api/tasks/abc/start").status_code == 404

    def test_duplicate_and_delete(self, client, state):
        task = make_task(client)
        copy = client.post(f"/api/projects/{task['projectId']}/duplicate").get_json()
        assert copy["name"] == "Writing (Copy)"
        assert client.delete(f"/api/projects/{task['projectId']}").get_json() == {"success": True}
        assert [t.project_id for t in state.snapshot().tasks] == [copy["id"]]


class TestTimer:
    """Start, stop and status."""

    def test_start_switch_and_stop_all(self, client, clock):
        first = make_task(client)
        second = make_task(client, "Email", "Inbox")

        client.post(f"/api/tasks/{first['id']}/start")
        clock.advance(600)
        client.post(f"/api/tasks/{second['id']}/start")

        status = client.get("/api/status").get_json()
        assert status["running"] is True
        assert status["task"]["id"] == second["id"]
        assert status["project"]["name"] == "Email"

        assert client.post("/api/stop-all").get_json() == {"stopped": 1}
        assert client.post("/api/stop-all").get_json() == {"stopped": 0}
        assert client.get("/api/status").get_json()["running"] is False

    def test_stop_task(self, client, clock):
        task = make_task(client)
        client.post(f"/api/tasks/{task['id']}/start")
        clock.advance(90)
        body = client.post(f"/api/tasks/{task['id']}/stop").get_json()
        assert body["stopped"] is True
        assert body["session"]["durationSeconds"] == 90


class TestViews:
    """Dashboard, history and analytics."""

    def test_dashboard(self, client, clock, settings):
        settings.update(dailyGoal=1)
        task = make_task(client)
        client.post(f"/api/tasks/{task['id']}/start")
        clock.advance(1800)

        body = client.get("/api/dashboard").get_json()
        assert body["totals"]["day"] == 1800
        assert body["goal"]["fraction"] == 0.5
        assert body["activeTasks"] == 1
        assert body["weekly"]["Wed"] == 1800

    def test_history_includes_screenshots(self, client, clock, shots_dir):
        task = make_task(client, "ProjA", "TaskX")
        client.post(f"/api/tasks/{task['id']}/start")
        inside = timeutils.epoch_ms(clock.advance(60))
        clock.advance(60)
        client.post(f"/api/tasks/{task['id']}/stop")
        (shots_dir / f"{inside}-ProjA_TaskX.png").write_bytes(b"")

        body = client.get("/api/history?by=date").get_json()
        session_id = body["groups"][0]["sessions"][0]["id"]
        assert body["groups"][0]["label"] == "March 5, 2025"
        assert body["screenshots"] == {str(session_id): [f"{inside}-ProjA_TaskX.png"]}

    def test_history_rejects_unknown_grouping(self, client):
        assert client.get("/api/history?by=week").status_code == 400

    def test_analytics_and_screenshot_delete(self, client, shots_dir, clock):
        base = timeutils.epoch_ms(local_time(2025, 3, 5, 8, 0))
        (shots_dir / f"{base}-Writing-Draft.png").write_bytes(b"")

        body = client.get("/api/analytics").get_json()
        assert body["topProjects"] == [{"name": "Writing", "seconds": 3600.0}]

        name = f"{base}-Writing-Draft.png"
        assert client.get("/api/screenshots").get_json() == [name]
        assert client.delete(f"/api/screenshots/{name}").status_code == 200
        assert client.delete(f"/api/screenshots/{name}").status_code == 404


class TestSettingsAndBackup:
    """Settings, export, import and reports."""

    def test_settings_patch_and_reset(self, client):
        body = client.patch("/api/settings", json={"darkMode": True}).get_json()
        assert body["success"] is True
        assert body["settings"]["darkMode"] is True
        assert client.patch("/api/settings", json={"dailyGoal": "x"}).status_code == 400
        assert client.post("/api/settings/reset").get_json()["settings"]["darkMode"] is False

    def test_export_then_import(self, client, state):
        make_task(client)
        exported = client.get("/api/export").get_json()
        client.post("/api/projects", json={"name": "Extra"})

        response = client.post("/api/import", data=json.dumps(exported), content_type="application/json")
        assert response.get_json()["success"] is True
        assert [p.name for p in state.snapshot().projects] == ["Writing"]

    def test_import_rejects_garbage(self, client):
        response = client.post("/api/import", data="not json")
        assert response.status_code == 400
        assert "Invalid backup file" in response.get_json()["error"]

    def test_generate_report(self, client, clock):
        task = make_task(client)
        client.post(f"/api/tasks/{task['id']}/start")
        clock.advance(3600)
        client.post("/api/stop-all")

        body = client.post("/api/reports/generate", json={"time_range": "today"}).get_json()
        assert body["total_seconds"] == 3600
        assert body["top_project"] == "Writing"

        body = client.post("/api/reports/generate", json={"time_range": "today", "format": "csv"}).get_json()
        assert body["path"].endswith(".csv")

        response = client.post("/api/reports/generate", json={"time_range": "all time"})
        assert response.status_code == 200
        assert response.get_json()["total_seconds"] == 3600

    def test_generate_report_validation(self, client):
        assert client.post("/api/reports/generate", json={}).status_code == 400
        assert client.post("/api/reports/generate", json={"time_range": "today", "format": "pdf"}).status_code == 400
        assert client.post("/api/reports/generate", json={"time_range": "2025-13-45"}).status_code == 400
