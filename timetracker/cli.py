"""Command-line interface for Time Tracker.

Every invocation loads the tracker data, applies one command and exits; the
store is written by the state manager as part of each mutation.

Example:
    $ timetracker project add "Writing"
    $ timetracker task add 1733750400000 "Draft"
    $ timetracker start 1733750400001
    $ timetracker status
    $ timetracker stop
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional

import yaml

from . import aggregation
from .config import Config, ConfigManager
from .errors import ImportFormatError, StorageError, TrackerError, ValidationError
from .logs import setup_logging
from .models import coerce_id
from .report_export import FORMATS, ReportExporter
from .reports import ReportGenerator
from .screenshots import ScreenshotDirectory, build_timeline, timeline_analytics
from .settings import FIELD_KEYS, SettingsManager
from .state import TrackerState
from .storage import TrackerStore
from .transfer import import_bundle, write_export

logger = logging.getLogger(__name__)

fmt = aggregation.format_duration


class CliContext:
    """Objects a command works with, built from the configuration."""

    def __init__(self, config: Config):
        self.config = config
        self.store = TrackerStore(config.db_path, write_retries=config.storage.write_retries)
        self.state = TrackerState(self.store)
        self.state.load()
        self.settings = SettingsManager(self.store)
        self.screenshots = ScreenshotDirectory(config.screenshots_dir)


def _id(value: str):
    parsed = coerce_id(value)
    if parsed is None:
        raise argparse.ArgumentTypeError(f"invalid id: {value}")
    return parsed


def _out(line: str = ""):
    print(line)


# ----------------------------------------------------------------------
# Projects and tasks

def cmd_project(args, ctx: CliContext) -> int:
    state = ctx.state
    if args.action == "add":
        project = state.add_project(args.name)
        _out(f"Added project {project.id}: {project.name}")
    elif args.action == "list":
        snap = state.snapshot()
        totals = aggregation.per_project_totals(snap.sessions, snap.tasks, snap.projects, state.now())
        if not snap.projects:
            _out("No projects.")
        for project in snap.projects:
            status = " [completed]" if project.completed else ""
            _out(f"{project.id}  {project.name}{status}  {fmt(totals.get(project.name, 0.0))}")
    elif args.action == "rename":
        if state.rename_project(args.id, args.name) is None:
            return _missing("project", args.id)
        _out(f"Renamed project {args.id} to {args.name.strip()}")
    elif args.action == "complete":
        if state.complete_project(args.id) is None:
            return _missing("project", args.id)
        _out(f"Completed project {args.id}")
    elif args.action == "reopen":
        if state.reopen_project(args.id) is None:
            return _missing("project", args.id)
        _out(f"Reopened project {args.id}")
    elif args.action == "delete":
        if not state.delete_project(args.id):
            return _missing("project", args.id)
        _out(f"Deleted project {args.id}")
    elif args.action == "duplicate":
        copy = state.duplicate_project(args.id)
        if copy is None:
            return _missing("project", args.id)
        _out(f"Duplicated project {args.id} as {copy.id}: {copy.name}")
    return 0


def cmd_task(args, ctx: CliContext) -> int:
    state = ctx.state
    if args.action == "add":
        task = state.add_task(args.project_id, args.title)
        _out(f"Added task {task.id}: {task.title}")
    elif args.action == "list":
        snap = state.snapshot()
        totals = aggregation.per_task_totals(snap.sessions, snap.tasks, state.now())
        tasks = aggregation.tasks_by_recent_activity(snap.tasks, snap.sessions, snap.projects)
        if args.project is not None:
            tasks = [t for t in tasks if t.project_id == args.project]
        if not tasks:
            _out("No tasks.")
        for task in tasks:
            project = snap.project_of(task)
            marker = "* " if task.is_running else "  "
            project_name = project.name if project else aggregation.UNKNOWN_PROJECT
            _out(f"{marker}{task.id}  {task.title} ({project_name})  {fmt(totals.get(task.id, 0.0))}")
    elif args.action == "rename":
        if state.rename_task(args.id, args.title) is None:
            return _missing("task", args.id)
        _out(f"Renamed task {args.id} to {args.title.strip()}")
    elif args.action == "delete":
        if not state.delete_task(args.id):
            return _missing("task", args.id)
        _out(f"Deleted task {args.id}")
    return 0


def _missing(kind: str, entity_id) -> int:
    print(f"Error: no {kind} with id {entity_id}", file=sys.stderr)
    return 1


# ----------------------------------------------------------------------
# Timer

def cmd_start(args, ctx: CliContext) -> int:
    session = ctx.state.start_session(args.task_id)
    if session is None:
        return _missing("task", args.task_id)
    task = ctx.state.get_task(args.task_id)
    _out(f"Started {task.title} (session {session.id})")
    return 0


def cmd_stop(args, ctx: CliContext) -> int:
    now = ctx.state.now()
    if args.task_id is None:
        closed = ctx.state.stop_all_sessions()
    else:
        session = ctx.state.stop_session(args.task_id)
        closed = [session] if session else []

    if not closed:
        _out("Nothing running.")
    for session in closed:
        _out(f"Stopped session {session.id} after {fmt(aggregation.session_duration(session, now))}")
    return 0


def cmd_status(args, ctx: CliContext) -> int:
    snap = ctx.state.snapshot()
    task = snap.running_task()
    if task is None:
        _out("No task running.")
        last = aggregation.last_stopped_session(snap.sessions)
        if last is not None:
            _out(f"Last stopped: {last.end_time}")
        return 0
    project = snap.project_of(task)
    session = snap.open_session()
    elapsed = aggregation.session_duration(session, ctx.state.now()) if session else 0.0
    project_name = project.name if project else aggregation.UNKNOWN_PROJECT
    _out(f"Running: {task.title} ({project_name}) for {fmt(elapsed)}")
    return 0


# ----------------------------------------------------------------------
# Views

def cmd_summary(args, ctx: CliContext) -> int:
    snap = ctx.state.snapshot()
    now = ctx.state.now()
    totals = aggregation.window_totals(snap.sessions, now, now)
    progress = aggregation.window_progress(totals)
    worked, fraction = aggregation.daily_goal_progress(
        snap.sessions, ctx.settings.settings.daily_goal, now, now
    )

    _out(f"Today:       {fmt(totals['day'])}  ({progress['day']:.1f}% of 24h)")
    _out(f"Last 7 days: {fmt(totals['week'])}  ({progress['week']:.1f}% of 168h)")
    _out(f"This month:  {fmt(totals['month'])}  ({progress['month']:.1f}% of 720h)")
    _out(f"Daily goal:  {fmt(worked)} of {ctx.settings.settings.daily_goal}h ({fraction * 100:.0f}%)")
    _out()
    _out("This week:")
    for day, seconds in aggregation.daily_histogram(snap.sessions, now, now).items():
        _out(f"  {day}  {fmt(seconds)}")

    task_totals = aggregation.task_project_totals(snap.sessions, snap.tasks, snap.projects, now)
    if task_totals:
        _out()
        _out("By task:")
        for row in task_totals:
            _out(f"  {row.task_title} ({row.project_name})  {fmt(row.seconds)}")
    return 0


def cmd_history(args, ctx: CliContext) -> int:
    snap = ctx.state.snapshot()
    now = ctx.state.now()
    if args.by == "project":
        groups = aggregation.group_by_project(snap.sessions, snap.tasks, snap.projects, now)
    else:
        groups = aggregation.group_by_date(snap.sessions, now)

    if not groups:
        _out("No sessions.")
    for group in groups:
        _out(f"{group.label}  {fmt(group.total_seconds)}")
        for session in group.sessions:
            task = snap.task(session.task_id)
            title = task.title if task else aggregation.UNKNOWN_TASK
            end = session.end_time or "running"
            _out(f"  {session.id}  {title}  {session.start_time} -> {end}  "
                 f"{fmt(aggregation.session_duration(session, now))}")
    return 0


def cmd_session(args, ctx: CliContext) -> int:
    if not ctx.state.delete_session(args.id):
        return _missing("session", args.id)
    _out(f"Deleted session {args.id}")
    return 0


def cmd_report(args, ctx: CliContext) -> int:
    try:
        report = ReportGenerator(ctx.state, screenshots=ctx.screenshots).generate(args.range)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    exporter = ReportExporter(args.output or ctx.config.data_dir / "reports")
    if args.format:
        try:
            path = exporter.export(report, format=args.format)
        except OSError as e:
            print(f"Error: cannot write report: {e}", file=sys.stderr)
            return 1
        _out(f"Report written to {path}")
    else:
        _out(exporter.render_markdown(report))
    return 0


# ----------------------------------------------------------------------
# Backup, screenshots, settings

def cmd_export(args, ctx: CliContext) -> int:
    directory = Path(args.path).expanduser() if args.path else ctx.config.export_dir
    try:
        path = write_export(ctx.state, ctx.settings, directory)
    except OSError as e:
        print(f"Error: cannot write export to {directory}: {e}", file=sys.stderr)
        return 1
    _out(f"Exported to {path}")
    return 0


def cmd_import(args, ctx: CliContext) -> int:
    try:
        text = Path(args.path).expanduser().read_text()
    except OSError as e:
        print(f"Error: cannot read {args.path}: {e}", file=sys.stderr)
        return 1
    bundle = import_bundle(text, ctx.state, ctx.settings)
    _out(f"Imported {', '.join(sorted(bundle))}")
    return 0


def cmd_screenshots(args, ctx: CliContext) -> int:
    if args.action == "list":
        names = ctx.screenshots.list()
        if not names:
            _out("No screenshots.")
        for name in names:
            _out(name)
    elif args.action == "timeline":
        analytics = timeline_analytics(build_timeline(ctx.screenshots.artifacts(), ctx.state.now()))
        _out(f"Total: {fmt(analytics.total_seconds)}")
        for name, seconds in analytics.top_projects:
            _out(f"  {name}  {fmt(seconds)}")
        for day, buckets in analytics.active_vs_idle_by_day.items():
            _out(f"  {day}  active {fmt(buckets['active'])}  idle {fmt(buckets['idle'])}")
    elif args.action == "delete":
        if not ctx.screenshots.delete(args.name):
            print(f"Error: could not delete {args.name}", file=sys.stderr)
            return 1
        _out(f"Deleted {args.name}")
    return 0


def cmd_settings(args, ctx: CliContext) -> int:
    if args.action == "set":
        changed = ctx.settings.update(**{args.key: args.value})
        _out("Updated." if changed else "No change.")
    elif args.action == "reset":
        ctx.settings.reset()
        _out("Settings reset.")
    for key, value in ctx.settings.to_dict().items():
        _out(f"{key}: {value}")
    return 0


def cmd_config(args, manager: ConfigManager) -> int:
    """Deployment configuration; works without opening the tracker store."""
    try:
        if args.action == "init":
            if not manager.create_default_file():
                print(f"Error: {manager.path} already exists", file=sys.stderr)
                return 1
            _out(f"Wrote {manager.path}")
            return 0
        if args.action == "set":
            # YAML scalars so "8080" becomes an int and "false" a bool
            value = yaml.safe_load(args.value)
            if not manager.update(args.section, args.key, value):
                _out("No change.")
                return 0
    except (yaml.YAMLError, ValueError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    _out(yaml.safe_dump(manager.to_dict(), default_flow_style=False, sort_keys=False).rstrip())
    return 0


# ----------------------------------------------------------------------
# Parser

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="timetracker", description="Local time tracker")
    parser.add_argument("--config", type=Path, help="Path to config.yaml")
    parser.add_argument("--log-level", default="WARNING", help="Log level (default: WARNING)")
    sub = parser.add_subparsers(dest="command", required=True)

    project = sub.add_parser("project", help="Manage projects")
    project_sub = project.add_subparsers(dest="action", required=True)
    p = project_sub.add_parser("add")
    p.add_argument("name")
    project_sub.add_parser("list")
    p = project_sub.add_parser("rename")
    p.add_argument("id", type=_id)
    p.add_argument("name")
    for action in ("complete", "reopen", "delete", "duplicate"):
        project_sub.add_parser(action).add_argument("id", type=_id)
    project.set_defaults(func=cmd_project)

    task = sub.add_parser("task", help="Manage tasks")
    task_sub = task.add_subparsers(dest="action", required=True)
    p = task_sub.add_parser("add")
    p.add_argument("project_id", type=_id)
    p.add_argument("title")
    p = task_sub.add_parser("list")
    p.add_argument("--project", type=_id)
    p = task_sub.add_parser("rename")
    p.add_argument("id", type=_id)
    p.add_argument("title")
    task_sub.add_parser("delete").add_argument("id", type=_id)
    task.set_defaults(func=cmd_task)

    p = sub.add_parser("start", help="Start the timer on a task")
    p.add_argument("task_id", type=_id)
    p.set_defaults(func=cmd_start)

    p = sub.add_parser("stop", help="Stop a task, or everything when no id is given")
    p.add_argument("task_id", type=_id, nargs="?")
    p.set_defaults(func=cmd_stop)

    sub.add_parser("status", help="Show the running task").set_defaults(func=cmd_status)
    sub.add_parser("summary", help="Totals, goal progress and weekly histogram").set_defaults(func=cmd_summary)

    p = sub.add_parser("history", help="Session history")
    p.add_argument("--by", choices=("date", "project"), default="date")
    p.set_defaults(func=cmd_history)

    session = sub.add_parser("session", help="Manage sessions")
    session_sub = session.add_subparsers(dest="action", required=True)
    session_sub.add_parser("delete").add_argument("id", type=_id)
    session.set_defaults(func=cmd_session)

    p = sub.add_parser("report", help="Build a report for a time range")
    p.add_argument("range", help='e.g. "today", "last week", "2025-03-01 to 2025-03-07"')
    p.add_argument("--format", choices=FORMATS, help="Write a file instead of printing")
    p.add_argument("--output", type=Path, help="Directory for report files")
    p.set_defaults(func=cmd_report)

    p = sub.add_parser("export", help="Write a backup file")
    p.add_argument("path", nargs="?", help="Directory for the backup (default from config)")
    p.set_defaults(func=cmd_export)

    p = sub.add_parser("import", help="Apply a backup file")
    p.add_argument("path")
    p.set_defaults(func=cmd_import)

    shots = sub.add_parser("screenshots", help="Screenshot listing and analytics")
    shots_sub = shots.add_subparsers(dest="action", required=True)
    shots_sub.add_parser("list")
    shots_sub.add_parser("timeline")
    shots_sub.add_parser("delete").add_argument("name")
    shots.set_defaults(func=cmd_screenshots)

    settings = sub.add_parser("settings", help="View and change settings")
    settings_sub = settings.add_subparsers(dest="action", required=True)
    settings_sub.add_parser("show")
    p = settings_sub.add_parser("set")
    p.add_argument("key", choices=sorted(FIELD_KEYS.values()))
    p.add_argument("value")
    settings_sub.add_parser("reset")
    settings.set_defaults(func=cmd_settings)

    config = sub.add_parser("config", help="View and edit the YAML configuration")
    config_sub = config.add_subparsers(dest="action", required=True)
    config_sub.add_parser("show")
    config_sub.add_parser("init")
    p = config_sub.add_parser("set")
    p.add_argument("section")
    p.add_argument("key")
    p.add_argument("value")

    return parser


def main(argv=None, context: Optional[CliContext] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.log_level)

    try:
        if args.command == "config":
            return cmd_config(args, ConfigManager(args.config))
        if context is None:
            context = CliContext(ConfigManager(args.config).config)
        return args.func(args, context)
    except (ValidationError, ImportFormatError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except StorageError as e:
        print(f"Storage error: {e}", file=sys.stderr)
        return 2
    except TrackerError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
