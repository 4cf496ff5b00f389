"""User preferences stored alongside the tracker data.

Unlike ``config`` (a YAML file for deployment settings), these preferences
travel with exports and imports and are stored under the ``settings`` key of
the tracker store.

Persisted shape:
    {"screenshotEnabled": bool, "idleTimeout": int minutes,
     "darkMode": bool, "dailyGoal": number hours, "autoExport": bool}
"""

import logging
import math
import threading
from dataclasses import dataclass, asdict, replace
from typing import TYPE_CHECKING

from .errors import StorageError, ValidationError

if TYPE_CHECKING:
    from .storage import TrackerStore

logger = logging.getLogger(__name__)

# field name -> persisted key
FIELD_KEYS = {
    "screenshot_enabled": "screenshotEnabled",
    "idle_timeout": "idleTimeout",
    "dark_mode": "darkMode",
    "daily_goal": "dailyGoal",
    "auto_export": "autoExport",
}
KEY_FIELDS = {key: name for name, key in FIELD_KEYS.items()}


@dataclass(frozen=True)
class Settings:
    """User preferences.

    Attributes:
        screenshot_enabled: Capture periodic screenshots while a task runs (default: True)
        idle_timeout: Minutes without input before all timers stop; 0 disables (default: 5)
        dark_mode: UI theme preference (default: False)
        daily_goal: Target hours of tracked work per day (default: 6)
        auto_export: Write a backup file when the daemon shuts down (default: False)
    """
    screenshot_enabled: bool = True
    idle_timeout: int = 5
    dark_mode: bool = False
    daily_goal: float = 6
    auto_export: bool = False

    def to_dict(self) -> dict:
        return {FIELD_KEYS[name]: value for name, value in asdict(self).items()}


def _coerce_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "1", "yes", "on"):
            return True
        if lowered in ("false", "0", "no", "off"):
            return False
    if isinstance(value, (int, float)):
        return bool(value)
    raise ValueError(f"Not a boolean: {value!r}")


def _coerce_number(value) -> float:
    if isinstance(value, bool):
        raise ValueError(f"Not a number: {value!r}")
    number = float(value)
    if not math.isfinite(number) or number < 0:
        raise ValueError(f"Must be a non-negative number: {value!r}")
    return number


def coerce_value(field_name: str, value):
    """Coerce a raw value to the type of ``field_name``.

    Raises:
        ValueError: If the value cannot be used for that field.
    """
    if field_name in ("screenshot_enabled", "dark_mode", "auto_export"):
        return _coerce_bool(value)
    if field_name == "idle_timeout":
        return int(_coerce_number(value))
    if field_name == "daily_goal":
        number = _coerce_number(value)
        return int(number) if number.is_integer() else number
    raise KeyError(field_name)


def _normalise_key(key: str):
    if key in FIELD_KEYS:
        return key
    return KEY_FIELDS.get(key)


def settings_from_dict(data) -> Settings:
    """Merge a stored record over the defaults, dropping unusable values."""
    if not isinstance(data, dict):
        return Settings()

    values = {}
    for key, raw in data.items():
        name = _normalise_key(key)
        if name is None:
            logger.debug(f"Ignoring unknown setting: {key}")
            continue
        try:
            values[name] = coerce_value(name, raw)
        except (TypeError, ValueError) as e:
            logger.warning(f"Invalid stored value for {key}, using default: {e}")
    return Settings(**values)


class SettingsManager:
    """Loads, updates and persists user settings.

    Every change is written to the store immediately. A failed write is
    logged and the in-memory value is kept.

    Example:
        >>> manager = SettingsManager(store)
        >>> manager.update(dailyGoal=8)
        True
        >>> manager.settings.daily_goal
        8
    """

    def __init__(self, store: "TrackerStore"):
        self.store = store
        self._lock = threading.Lock()
        self._settings = settings_from_dict(store.load_settings())

    @property
    def settings(self) -> Settings:
        with self._lock:
            return self._settings

    def to_dict(self) -> dict:
        return self.settings.to_dict()

    def update(self, **changes) -> bool:
        """Update one or more settings.

        Keys may be field names (``daily_goal``) or persisted keys
        (``dailyGoal``). Unknown keys are ignored with a warning.

        Returns:
            True if anything changed and was saved.

        Raises:
            ValidationError: If a value cannot be used for its setting.
        """
        values = {}
        for key, raw in changes.items():
            name = _normalise_key(key)
            if name is None:
                logger.warning(f"Ignoring unknown setting: {key}")
                continue
            try:
                values[name] = coerce_value(name, raw)
            except (TypeError, ValueError) as e:
                raise ValidationError(f"Invalid value for {key}: {e}") from e

        with self._lock:
            updated = replace(self._settings, **values)
            if updated == self._settings:
                return False
            self._settings = updated
            self._persist()

        logger.info(f"Updated settings: {', '.join(sorted(values))}")
        return True

    def reset(self) -> Settings:
        """Restore all settings to their defaults."""
        with self._lock:
            self._settings = Settings()
            self._persist()
        logger.info("Settings reset to defaults")
        return self._settings

    def replace_all(self, data: dict) -> Settings:
        """Replace settings with ``data`` merged over the defaults."""
        with self._lock:
            self._settings = settings_from_dict(data)
            self._persist()
        logger.info("Settings replaced")
        return self._settings

    def _persist(self) -> None:
        try:
            self.store.save_settings(self._settings.to_dict())
        except StorageError as e:
            logger.error(f"Failed to persist settings: {e}")
