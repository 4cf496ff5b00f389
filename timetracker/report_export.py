"""Report files for Time Tracker.

Writes a generated ``Report`` to disk in one of three formats:
- markdown: overview, project table, per-project task lists, week by day
- json: ``Report.to_dict()``
- csv: one row per project total followed by its task rows

Example:
    >>> from timetracker.report_export import ReportExporter
    >>> path = ReportExporter("~/time-tracker-data/reports").export(report, format='csv')
    >>> path.suffix
    '.csv'
"""

from pathlib import Path
from datetime import datetime
import csv
import json
import logging
import re
from typing import TYPE_CHECKING

from .aggregation import format_duration

if TYPE_CHECKING:
    from .reports import Report

logger = logging.getLogger(__name__)

FORMATS = ('markdown', 'json', 'csv')
SUFFIXES = {'markdown': '.md', 'json': '.json', 'csv': '.csv'}


class ReportExporter:
    """Writes reports into one directory.

    Attributes:
        output_dir: Directory receiving the files; created if missing.
    """

    def __init__(self, output_dir: Path = None):
        self.output_dir = Path(output_dir).expanduser() if output_dir else Path.home() / 'time-tracker-data' / 'reports'
        self.output_dir.mkdir(parents=True, exist_ok=True)

    def filename_for(self, report: "Report", format: str) -> str:
        """``<title>_<YYYYmmdd_HHMMSS><suffix>`` with the title made path-safe."""
        stem = re.sub(r'[^A-Za-z0-9_-]+', '_', report.title).strip('_')[:50]
        return f"{stem}_{datetime.now().strftime('%Y%m%d_%H%M%S')}{SUFFIXES[format]}"

    def export(self, report: "Report", format: str = 'markdown') -> Path:
        """Write ``report`` in ``format``.

        Returns:
            Path of the written file.

        Raises:
            ValueError: For a format outside FORMATS.
        """
        writers = {
            'markdown': self._export_markdown,
            'json': self._export_json,
            'csv': self._export_csv,
        }
        if format not in writers:
            raise ValueError(f"Unknown format: {format}")
        path = self.output_dir / self.filename_for(report, format)
        writers[format](report, path)
        logger.info(f"Exported {format} report to {path}")
        return path

    def render_markdown(self, report: "Report") -> str:
        lines = [
            f"# {report.title}",
            "",
            f"*Generated: {report.generated_at.strftime('%B %d, %Y at %I:%M %p')}*",
            "",
            "## Overview",
            "",
            f"- **Total Tracked Time:** {format_duration(report.total_seconds)}",
            f"- **Sessions:** {report.session_count}",
            f"- **Top Project:** {report.top_project or 'None'}",
            "",
            "## Projects",
            "",
            "| Project | Status | Time | Screenshots |",
            "|---------|--------|------|-------------|",
        ]

        for row in report.projects:
            status = "Completed" if row.completed else "Active"
            shots = report.screenshot_counts.get(row.name, 0)
            lines.append(f"| {row.name} | {status} | {format_duration(row.seconds)} | {shots} |")
        lines.append("")

        for row in report.projects:
            if not row.tasks:
                continue
            lines.extend([f"### {row.name}", ""])
            for task in row.tasks:
                lines.append(f"- {task.title}: {format_duration(task.seconds)}")
            lines.append("")

        lines.extend(["## Week by Day", ""])
        for day, seconds in report.daily_histogram.items():
            lines.append(f"- {day}: {format_duration(seconds)}")
        lines.append("")

        return '\n'.join(lines)

    def _export_markdown(self, report: "Report", path: Path) -> None:
        path.write_text(self.render_markdown(report))

    def _export_json(self, report: "Report", path: Path) -> None:
        path.write_text(json.dumps(report.to_dict(), indent=2))

    def _export_csv(self, report: "Report", path: Path) -> None:
        """Project total rows have an empty task column; task rows follow them."""
        with open(path, 'w', newline='') as f:
            writer = csv.writer(f)
            writer.writerow(['project', 'completed', 'task', 'seconds', 'duration'])
            for row in report.projects:
                writer.writerow([row.name, row.completed, '', round(row.seconds, 3), format_duration(row.seconds)])
                for task in row.tasks:
                    writer.writerow([row.name, row.completed, task.title, round(task.seconds, 3),
                                     format_duration(task.seconds)])
