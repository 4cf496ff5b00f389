"""Deployment configuration for Time Tracker.

Settings that describe where the tracker keeps its files and how the daemon
and local API run are read from a YAML file into dataclass sections. User
preferences such as the daily goal are not here; they travel with the data
in the tracker store (see ``settings``).

Sections:
- storage: Data directory, database file and write retries
- screenshots: Screenshot directory, capture delay window and image format
- idle: Idle watcher switch and polling interval
- web: Bind address of the local JSON API
- export: Backup export directory
- logging: Log level and optional log file

Missing sections and fields take their dataclass defaults; unknown ones are
ignored so older or newer files keep loading.

Example:
    >>> from timetracker.config import ConfigManager
    >>> manager = ConfigManager()
    >>> manager.config.screenshots.min_delay_minutes
    10
    >>> manager.update('web', 'port', 8080)
    True
"""

import dataclasses
import logging
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Optional
import yaml

logger = logging.getLogger(__name__)


@dataclass
class StorageConfig:
    """Data storage configuration.

    Attributes:
        data_dir: Directory for the database, screenshots and exports (default: ~/time-tracker-data)
        db_name: SQLite file name inside data_dir (default: tracker.db)
        write_retries: Attempts per store write before giving up (default: 3)
    """
    data_dir: str = "~/time-tracker-data"
    db_name: str = "tracker.db"
    write_retries: int = 3


@dataclass
class ScreenshotConfig:
    """Screenshot capture configuration.

    Attributes:
        dir_name: Screenshot directory inside data_dir (default: screenshots)
        min_delay_minutes: Shortest wait between captures (default: 10)
        max_delay_minutes: Longest wait between captures (default: 15)
        image_format: Pillow format name for saved images (default: png)
    """
    dir_name: str = "screenshots"
    min_delay_minutes: float = 10
    max_delay_minutes: float = 15
    image_format: str = "png"


@dataclass
class IdleConfig:
    """Idle detection configuration.

    The idle timeout itself is a user setting (idleTimeout, minutes).

    Attributes:
        enabled: Run the idle watcher in the daemon (default: True)
        poll_seconds: How often to check for idleness (default: 5.0)
    """
    enabled: bool = True
    poll_seconds: float = 5.0


@dataclass
class WebConfig:
    """Web server configuration.

    Attributes:
        host: Host address to bind to (default: 127.0.0.1)
        port: Port number for the JSON API (default: 55556)
    """
    host: str = "127.0.0.1"
    port: int = 55556


@dataclass
class ExportConfig:
    """Backup export configuration.

    Attributes:
        dir_name: Export directory inside data_dir (default: exports)
    """
    dir_name: str = "exports"


@dataclass
class LoggingConfig:
    """Logging configuration.

    Attributes:
        level: Root log level name (default: INFO)
        file: Optional log file path; empty logs to stderr only
    """
    level: str = "INFO"
    file: str = ""


@dataclass
class Config:
    """Top-level configuration container."""
    storage: StorageConfig = field(default_factory=StorageConfig)
    screenshots: ScreenshotConfig = field(default_factory=ScreenshotConfig)
    idle: IdleConfig = field(default_factory=IdleConfig)
    web: WebConfig = field(default_factory=WebConfig)
    export: ExportConfig = field(default_factory=ExportConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @property
    def data_dir(self) -> Path:
        return Path(self.storage.data_dir).expanduser()

    @property
    def db_path(self) -> Path:
        return self.data_dir / self.storage.db_name

    @property
    def screenshots_dir(self) -> Path:
        return self.data_dir / self.screenshots.dir_name

    @property
    def export_dir(self) -> Path:
        return self.data_dir / self.export.dir_name


SECTION_TYPES = {
    'storage': StorageConfig,
    'screenshots': ScreenshotConfig,
    'idle': IdleConfig,
    'web': WebConfig,
    'export': ExportConfig,
    'logging': LoggingConfig,
}


def value_fits(default, value) -> bool:
    """Whether ``value`` has the type of the field whose default is ``default``.

    Ints are accepted for float fields; bools only for bool fields.
    """
    if isinstance(default, bool) or isinstance(value, bool):
        return isinstance(default, bool) and isinstance(value, bool)
    if isinstance(default, float):
        return isinstance(value, (int, float))
    return isinstance(value, type(default))


class ConfigManager:
    """Reads, writes and edits the YAML configuration file.

    Attributes:
        DEFAULT_PATH: Where the file lives unless another path is given
        path: File this manager reads and writes
        config: Loaded Config

    Example:
        >>> manager = ConfigManager(Path("/tmp/tracker.yaml"))
        >>> manager.config.storage.write_retries
        3
    """

    DEFAULT_PATH = Path("~/.config/time-tracker/config.yaml").expanduser()

    def __init__(self, path: Optional[Path] = None):
        """Load the configuration.

        Args:
            path: Config file to use; DEFAULT_PATH when None
        """
        self.path = Path(path).expanduser() if path else self.DEFAULT_PATH
        self.config = self._load()

    def _load(self) -> Config:
        """Read the file into a Config.

        A missing, unreadable or malformed file gives the defaults; loading
        never raises.
        """
        if not self.path.exists():
            logger.info(f"No config file at {self.path}, using defaults")
            return Config()

        try:
            with open(self.path) as f:
                data = yaml.safe_load(f) or {}
            config = self._dict_to_config(data)
        except (yaml.YAMLError, OSError, TypeError) as e:
            logger.warning(f"Could not read config {self.path}, using defaults: {e}")
            return Config()

        logger.info(f"Loaded configuration from {self.path}")
        return config

    def _dict_to_config(self, data: dict) -> Config:
        """Build a Config from decoded YAML, keeping only known fields."""
        if not isinstance(data, dict):
            raise TypeError(f"Config root must be a mapping, got {type(data).__name__}")

        sections = {}
        for name, section_type in SECTION_TYPES.items():
            raw = data.get(name)
            if not isinstance(raw, dict):
                sections[name] = section_type()
                continue
            defaults = section_type()
            allowed = {f.name for f in dataclasses.fields(section_type)}
            ignored = set(raw) - allowed
            if ignored:
                logger.debug(f"Ignoring unknown keys in config section {name}: {sorted(ignored)}")
            values = {}
            for key in allowed & set(raw):
                if value_fits(getattr(defaults, key), raw[key]):
                    values[key] = raw[key]
                else:
                    logger.warning(f"Invalid value for {name}.{key}: {raw[key]!r}, using default")
            sections[name] = section_type(**values)
        return Config(**sections)

    def save(self) -> None:
        """Write the current configuration back to ``path``.

        Raises:
            OSError: If the file cannot be written
        """
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, 'w') as f:
                yaml.safe_dump(self.to_dict(), f, default_flow_style=False, sort_keys=False, indent=2)
        except OSError as e:
            logger.error(f"Could not write config {self.path}: {e}")
            raise
        logger.info(f"Saved configuration to {self.path}")

    def update(self, section: str, key: str, value) -> bool:
        """Set ``section.key`` to ``value`` and save the file.

        Returns:
            True if the value changed; False for unknown names or no change

        Raises:
            ValueError: If ``value`` does not have the field's type
        """
        if section not in SECTION_TYPES:
            logger.warning(f"Unknown config section: {section}")
            return False
        target = getattr(self.config, section)
        if key not in {f.name for f in dataclasses.fields(target)}:
            logger.warning(f"Unknown config key: {section}.{key}")
            return False

        previous = getattr(target, key)
        if not value_fits(getattr(type(target)(), key), value):
            raise ValueError(f"Invalid value for {section}.{key}: {value!r}")
        if previous == value:
            return False
        setattr(target, key, value)
        self.save()
        logger.info(f"Config {section}.{key}: {previous!r} -> {value!r}")
        return True

    def to_dict(self) -> dict:
        return asdict(self.config)

    def create_default_file(self) -> bool:
        """Write a file with the current values if none exists yet.

        Returns:
            True if a file was written
        """
        if self.path.exists():
            logger.warning(f"Config file already exists at {self.path}")
            return False
        self.save()
        return True
