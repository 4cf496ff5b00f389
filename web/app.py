#!/usr/bin/env python3
"""Local JSON API for Time Tracker.

``create_app`` builds a Flask app around an explicit TrackerState and
SettingsManager; nothing is global, so the daemon and the tests each pass in
their own instances.
"""

from typing import Optional

from flask import Flask, jsonify, request, abort

from timetracker import aggregation
from timetracker.errors import ImportFormatError, ValidationError
from timetracker.models import coerce_id
from timetracker.reports import ReportGenerator
from timetracker.report_export import FORMATS, ReportExporter
from timetracker.screenshots import (
    ScreenshotDirectory,
    build_timeline,
    labels_by_session,
    resolve,
    timeline_analytics,
)
from timetracker.settings import SettingsManager
from timetracker.state import TrackerState
from timetracker.transfer import export_bundle, import_bundle


def _session_json(session, now, label=None) -> dict:
    data = session.to_dict()
    data['durationSeconds'] = round(aggregation.session_duration(session, now), 3)
    if label is not None:
        data['label'] = label
    return data


def _group_json(group, now) -> dict:
    return {
        'key': group.key,
        'label': group.label,
        'totalSeconds': round(group.total_seconds, 3),
        'sessions': [_session_json(s, now) for s in group.sessions],
    }


def create_app(
    state: TrackerState,
    settings: SettingsManager,
    screenshots: Optional[ScreenshotDirectory] = None,
    exporter: Optional[ReportExporter] = None,
) -> Flask:
    """Build the Flask app.

    Args:
        state: Tracker state to read and mutate.
        settings: User settings manager.
        screenshots: Screenshot directory; screenshot routes return empty
            results without it.
        exporter: Report exporter used by /api/reports/generate when a
            format is requested.
    """
    app = Flask(__name__)

    def entity_id(raw):
        value = coerce_id(raw)
        if value is None:
            abort(404, f"Invalid id: {raw}")
        return value

    def request_json() -> dict:
        data = request.get_json(silent=True)
        return data if isinstance(data, dict) else {}

    @app.errorhandler(ValidationError)
    def handle_validation_error(e):
        return jsonify({"error": str(e)}), 400

    @app.errorhandler(ImportFormatError)
    def handle_import_error(e):
        return jsonify({"error": str(e)}), 400

    @app.errorhandler(404)
    def handle_not_found(e):
        return jsonify({"error": getattr(e, 'description', 'Not found')}), 404

    @app.route('/api/status', methods=['GET'])
    def get_status():
        """Return the running task and its open session, if any."""
        snap = state.snapshot()
        now = state.now()
        task = snap.running_task()
        project = snap.project_of(task)
        session = snap.open_session()
        return jsonify({
            "version": snap.version,
            "running": task is not None,
            "task": task.to_dict() if task else None,
            "project": project.to_dict() if project else None,
            "session": _session_json(session, now) if session else None,
        })

    # ------------------------------------------------------------------
    # Projects

    @app.route('/api/projects', methods=['GET'])
    def list_projects():
        return jsonify([p.to_dict() for p in state.snapshot().projects])

    @app.route('/api/projects', methods=['POST'])
    def create_project():
        """Create a project.

        Request body:
            {"name": "Writing"}
        """
        project = state.add_project(request_json().get('name', ''))
        return jsonify(project.to_dict()), 201

    @app.route('/api/projects/<project_id>', methods=['PATCH'])
    def update_project(project_id):
        """Rename and/or complete or reopen a project.

        Request body:
            {"name": "New name", "completed": true}
        """
        pid = entity_id(project_id)
        data = request_json()
        project = state.get_project(pid)
        if project is None:
            abort(404, f"No project with id {project_id}")
        if 'name' in data:
            project = state.rename_project(pid, data['name'])
        if 'completed' in data:
            project = state.complete_project(pid) if data['completed'] else state.reopen_project(pid)
        return jsonify(project.to_dict())

    @app.route('/api/projects/<project_id>', methods=['DELETE'])
    def delete_project(project_id):
        if not state.delete_project(entity_id(project_id)):
            abort(404, f"No project with id {project_id}")
        return jsonify({"success": True})

    @app.route('/api/projects/<project_id>/duplicate', methods=['POST'])
    def duplicate_project(project_id):
        copy = state.duplicate_project(entity_id(project_id))
        if copy is None:
            abort(404, f"No project with id {project_id}")
        return jsonify(copy.to_dict()), 201

    # ------------------------------------------------------------------
    # Tasks

    @app.route('/api/tasks', methods=['GET'])
    def list_tasks():
        """List tasks, running first then most recently active.

        Query params:
            project: Optional project id filter
        """
        snap = state.snapshot()
        tasks = aggregation.tasks_by_recent_activity(snap.tasks, snap.sessions, snap.projects)
        project_filter = request.args.get('project')
        if project_filter is not None:
            pid = entity_id(project_filter)
            tasks = [t for t in tasks if t.project_id == pid]
        totals = aggregation.per_task_totals(snap.sessions, snap.tasks, state.now())
        return jsonify([
            dict(t.to_dict(), totalSeconds=round(totals.get(t.id, 0.0), 3)) for t in tasks
        ])

    @app.route('/api/tasks', methods=['POST'])
    def create_task():
        """Create a task.

        Request body:
            {"projectId": 123, "title": "Draft"}
        """
        data = request_json()
        task = state.add_task(coerce_id(data.get('projectId')), data.get('title', ''))
        return jsonify(task.to_dict()), 201

    @app.route('/api/tasks/<task_id>', methods=['PATCH'])
    def update_task(task_id):
        data = request_json()
        task = state.rename_task(entity_id(task_id), data.get('title', ''))
        if task is None:
            abort(404, f"No task with id {task_id}")
        return jsonify(task.to_dict())

    @app.route('/api/tasks/<task_id>', methods=['DELETE'])
    def delete_task(task_id):
        if not state.delete_task(entity_id(task_id)):
            abort(404, f"No task with id {task_id}")
        return jsonify({"success": True})

    @app.route('/api/tasks/<task_id>/start', methods=['POST'])
    def start_task(task_id):
        session = state.start_session(entity_id(task_id))
        if session is None:
            abort(404, f"No task with id {task_id}")
        return jsonify(_session_json(session, state.now())), 201

    @app.route('/api/tasks/<task_id>/stop', methods=['POST'])
    def stop_task(task_id):
        session = state.stop_session(entity_id(task_id))
        return jsonify({
            "stopped": session is not None,
            "session": _session_json(session, state.now()) if session else None,
        })

    @app.route('/api/stop-all', methods=['POST'])
    def stop_all():
        closed = state.stop_all_sessions()
        return jsonify({"stopped": len(closed)})

    # ------------------------------------------------------------------
    # Sessions and views

    @app.route('/api/sessions', methods=['GET'])
    def list_sessions():
        snap = state.snapshot()
        now = state.now()
        labels = labels_by_session(snap)
        return jsonify([_session_json(s, now, labels.get(s.id)) for s in snap.sessions])

    @app.route('/api/sessions/<session_id>', methods=['DELETE'])
    def delete_session(session_id):
        if not state.delete_session(entity_id(session_id)):
            abort(404, f"No session with id {session_id}")
        return jsonify({"success": True})

    @app.route('/api/dashboard', methods=['GET'])
    def dashboard():
        """Totals for today, the last 7 days and this month, plus goal progress."""
        snap = state.snapshot()
        now = state.now()
        totals = aggregation.window_totals(snap.sessions, now, now)
        worked, fraction = aggregation.daily_goal_progress(
            snap.sessions, settings.settings.daily_goal, now, now
        )
        last = aggregation.last_stopped_session(snap.sessions)
        return jsonify({
            "totals": {k: round(v, 3) for k, v in totals.items()},
            "progress": {k: round(v, 2) for k, v in aggregation.window_progress(totals).items()},
            "goal": {
                "hours": settings.settings.daily_goal,
                "workedSeconds": round(worked, 3),
                "fraction": round(fraction, 4),
            },
            "weekly": {k: round(v, 3) for k, v in aggregation.daily_histogram(snap.sessions, now, now).items()},
            "taskTotals": [
                {"task": t.task_title, "project": t.project_name, "seconds": round(t.seconds, 3)}
                for t in aggregation.task_project_totals(snap.sessions, snap.tasks, snap.projects, now)
            ],
            "activeTasks": sum(1 for t in snap.tasks if t.is_running),
            "lastStopped": _session_json(last, now) if last else None,
        })

    @app.route('/api/history', methods=['GET'])
    def history():
        """Sessions grouped by date (newest first) or project.

        Query params:
            by: "date" (default) or "project"
        """
        snap = state.snapshot()
        now = state.now()
        by = request.args.get('by', 'date')
        if by == 'date':
            groups = aggregation.group_by_date(snap.sessions, now)
        elif by == 'project':
            groups = aggregation.group_by_project(snap.sessions, snap.tasks, snap.projects, now)
        else:
            return jsonify({"error": "by must be date or project"}), 400

        screenshots_by_session = {}
        if screenshots is not None:
            resolution = resolve(screenshots.artifacts(), snap, now)
            screenshots_by_session = {
                str(sid): [a.name for a in artifacts]
                for sid, artifacts in resolution.by_session.items() if artifacts
            }
        return jsonify({
            "groups": [_group_json(g, now) for g in groups],
            "screenshots": screenshots_by_session,
        })

    # ------------------------------------------------------------------
    # Screenshots

    @app.route('/api/screenshots', methods=['GET'])
    def list_screenshots():
        return jsonify(screenshots.list() if screenshots else [])

    @app.route('/api/screenshots/<name>', methods=['DELETE'])
    def delete_screenshot(name):
        if screenshots is None or not screenshots.delete(name):
            abort(404, f"No screenshot named {name}")
        return jsonify({"success": True})

    @app.route('/api/analytics', methods=['GET'])
    def analytics():
        """Timeline analytics derived from screenshot capture times."""
        artifacts = screenshots.artifacts() if screenshots else []
        result = timeline_analytics(build_timeline(artifacts, state.now()))
        return jsonify({
            "timeByProject": {k: round(v, 3) for k, v in result.time_by_project.items()},
            "activeVsIdleByDay": result.active_vs_idle_by_day,
            "dailyTrend": [{"date": d, "seconds": round(s, 3)} for d, s in result.daily_trend],
            "hourly": [round(s, 3) for s in result.hourly],
            "totalSeconds": round(result.total_seconds, 3),
            "topProjects": [{"name": n, "seconds": round(s, 3)} for n, s in result.top_projects],
        })

    # ------------------------------------------------------------------
    # Settings, backup and reports

    @app.route('/api/settings', methods=['GET'])
    def get_settings():
        return jsonify(settings.to_dict())

    @app.route('/api/settings', methods=['PATCH'])
    def update_settings():
        """Update settings.

        Request body:
            {"dailyGoal": 8, "idleTimeout": 10}

        Returns:
            {"success": true/false, "settings": {...}}
        """
        changed = settings.update(**request_json())
        return jsonify({"success": changed, "settings": settings.to_dict()})

    @app.route('/api/settings/reset', methods=['POST'])
    def reset_settings():
        settings.reset()
        return jsonify({"success": True, "settings": settings.to_dict()})

    @app.route('/api/export', methods=['GET'])
    def export_data():
        return jsonify(export_bundle(state, settings))

    @app.route('/api/import', methods=['POST'])
    def import_data():
        """Apply a backup document sent as the raw request body."""
        bundle = import_bundle(request.get_data(as_text=True), state, settings)
        return jsonify({"success": True, "imported": sorted(bundle)})

    @app.route('/api/reports/generate', methods=['POST'])
    def generate_report():
        """Generate a report for a time range.

        Request body:
            {
                "time_range": "last week",
                "format": "markdown"   // optional: markdown, json, csv
            }
        """
        data = request_json()
        time_range = data.get('time_range')
        if not time_range:
            return jsonify({"error": "time_range is required"}), 400

        export_format = data.get('format')
        if export_format is not None and export_format not in FORMATS:
            return jsonify({"error": f"format must be one of {', '.join(FORMATS)}"}), 400

        try:
            report = ReportGenerator(state, screenshots=screenshots, clock=state.now).generate(time_range)
        except ValueError as e:
            return jsonify({"error": str(e)}), 400

        body = report.to_dict()
        if export_format and exporter is not None:
            path = exporter.export(report, format=export_format)
            body['path'] = str(path)
        return jsonify(body)

    return app
