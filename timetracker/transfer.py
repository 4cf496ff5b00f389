"""Backup export and import.

A backup is one JSON document mirroring the four store keys:

    {"projects": [...], "tasks": [...], "sessions": [...], "settings": {...}}

Import validates the whole document before touching anything. Collections
present in the document replace the current ones; missing keys keep the
current data.

Example:
    >>> path = write_export(state, settings, Path("~/backups").expanduser())
    >>> import_bundle(path.read_text(), state, settings)
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING

from .errors import ImportFormatError
from .storage import COLLECTION_KEYS

if TYPE_CHECKING:
    from .settings import SettingsManager
    from .state import TrackerState

logger = logging.getLogger(__name__)


def export_bundle(state: "TrackerState", settings: "SettingsManager") -> dict:
    """Current data and settings as a backup dict."""
    bundle = state.snapshot().to_dict()
    bundle["settings"] = settings.to_dict()
    return bundle


def export_json(state: "TrackerState", settings: "SettingsManager") -> str:
    return json.dumps(export_bundle(state, settings), indent=2)


def write_export(state: "TrackerState", settings: "SettingsManager", directory: Path) -> Path:
    """Write a timestamped backup file into ``directory``.

    Returns:
        Path of the written file.

    Raises:
        OSError: If the directory or file cannot be written.
    """
    directory = Path(directory).expanduser()
    directory.mkdir(parents=True, exist_ok=True)
    timestamp = datetime.now().strftime('%Y%m%d_%H%M%S')
    path = directory / f"time-tracker-backup-{timestamp}.json"
    path.write_text(export_json(state, settings))
    logger.info(f"Exported backup to {path}")
    return path


def parse_bundle(text) -> dict:
    """Decode and validate a backup document.

    Returns:
        The decoded dict, containing only recognised keys.

    Raises:
        ImportFormatError: If the document is not valid JSON, not an object,
            has a wrongly-typed section, or has no recognised section.
    """
    if isinstance(text, bytes):
        try:
            text = text.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ImportFormatError(f"Invalid backup file: not UTF-8 ({e})") from e
    if not isinstance(text, str):
        raise ImportFormatError("Invalid backup file: expected JSON text")

    try:
        data = json.loads(text)
    except ValueError as e:
        raise ImportFormatError(f"Invalid backup file: {e}") from e

    if not isinstance(data, dict):
        raise ImportFormatError("Invalid backup file: top level must be an object")

    bundle = {}
    for key in COLLECTION_KEYS:
        if key in data:
            if not isinstance(data[key], list):
                raise ImportFormatError(f"Invalid backup file: '{key}' must be a list")
            bundle[key] = data[key]

    if "settings" in data:
        if not isinstance(data["settings"], dict):
            raise ImportFormatError("Invalid backup file: 'settings' must be an object")
        bundle["settings"] = data["settings"]

    if not bundle:
        raise ImportFormatError("Invalid backup file: no projects, tasks, sessions or settings")
    return bundle


def import_bundle(text, state: "TrackerState", settings: "SettingsManager") -> dict:
    """Validate and apply a backup document.

    Nothing is changed if validation fails.

    Returns:
        The parsed bundle that was applied.

    Raises:
        ImportFormatError: If the document is malformed.
    """
    bundle = parse_bundle(text)

    if any(key in bundle for key in COLLECTION_KEYS):
        current = state.snapshot().to_dict()
        merged = {key: bundle.get(key, current[key]) for key in COLLECTION_KEYS}
        state.replace_all_data(merged)

    if "settings" in bundle:
        settings.replace_all(bundle["settings"])

    logger.info(f"Imported backup sections: {', '.join(sorted(bundle))}")
    return bundle
