"""Screenshot capture and scheduling.

This module provides the capture side of the screenshot feature: grabbing the
primary monitor with MSS, saving it through Pillow under a name that encodes
the capture time and the running task, and a background scheduler that does
this at random intervals while a task is running.

File names have the form ``<epoch-ms>-<safe label>.<ext>``, where the label is
``"<project name>-<task title>"`` with anything outside [A-Za-z0-9_-]
replaced by an underscore. ``screenshots`` parses these names back.

Key Classes:
    ScreenCapture: Grabs and saves one screenshot
    ScreenshotScheduler: Background thread capturing every 10-15 minutes

Dependencies:
    - mss: Multi-platform screenshot library
    - PIL (Pillow): Image conversion and encoding

Example:
    >>> from timetracker.capture import ScreenCapture
    >>> capture = ScreenCapture("~/time-tracker-data/screenshots")
    >>> path = capture.capture("Writing-Draft")
    >>> print(path.name)
    1733750400000-Writing-Draft.png
"""

import logging
import random
import threading
import time
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Optional

import mss
from PIL import Image

from .errors import CaptureError
from .screenshots import UNKNOWN, safe_label

if TYPE_CHECKING:
    from .settings import SettingsManager
    from .state import TrackerState

logger = logging.getLogger(__name__)

PIL_FORMATS = {"jpg": "JPEG", "jpeg": "JPEG"}


class ScreenCapture:
    """Captures the primary monitor to a labelled image file.

    Attributes:
        output_dir (Path): Directory where screenshots are written
        image_format (str): Pillow format name and file extension
    """

    def __init__(self, output_dir: str = "~/time-tracker-data/screenshots", image_format: str = "png"):
        """Initialize the screen capture instance.

        Args:
            output_dir (str): Directory path to save screenshots. Can use
                tilde notation.
            image_format (str): Image format, e.g. png or webp.

        Raises:
            CaptureError: If the output directory cannot be created.
        """
        self.output_dir = Path(output_dir).expanduser()
        self.image_format = image_format.lower()
        try:
            self.output_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise CaptureError(f"Cannot create screenshot directory {self.output_dir}: {e}") from e

    def filename_for(self, label: str, timestamp_ms: Optional[int] = None) -> str:
        """Build ``<epoch-ms>-<safe label>.<ext>``."""
        if timestamp_ms is None:
            timestamp_ms = int(time.time() * 1000)
        return f"{timestamp_ms}-{safe_label(label)}.{self.image_format}"

    def capture(self, label: str) -> Path:
        """Capture the primary monitor and save it under ``label``.

        Args:
            label (str): "<project>-<task>" label for the running task.

        Returns:
            Path: Path of the saved image.

        Raises:
            CaptureError: If the display cannot be grabbed or the image
                cannot be written.
        """
        try:
            with mss.mss() as sct:
                if len(sct.monitors) < 2:
                    raise CaptureError("No monitors detected")
                # monitors[0] is all monitors combined
                screenshot = sct.grab(sct.monitors[1])
                img = Image.frombytes("RGB", screenshot.size, screenshot.rgb)
        except CaptureError:
            raise
        except Exception as e:
            if "display" in str(e).lower():
                raise CaptureError(f"Cannot connect to display server: {e}") from e
            raise CaptureError(f"Failed to capture screenshot: {e}") from e

        filepath = self.output_dir / self.filename_for(label)
        try:
            img.save(filepath, PIL_FORMATS.get(self.image_format, self.image_format.upper()))
        except (OSError, ValueError, KeyError) as e:
            raise CaptureError(f"Failed to save screenshot to {filepath}: {e}") from e

        logger.info(f"Screenshot saved: {filepath}")
        return filepath


class ScreenshotScheduler:
    """Captures a screenshot at random intervals while a task is running.

    Each cycle waits a random delay between ``min_delay`` and ``max_delay``
    seconds, then captures if screenshots are enabled and a task is running.
    Capture failures go to ``on_error`` and never stop the scheduler.

    Attributes:
        min_delay: Shortest wait in seconds.
        max_delay: Longest wait in seconds.
    """

    def __init__(
        self,
        state: "TrackerState",
        settings: "SettingsManager",
        capture: ScreenCapture,
        min_delay: float = 600,
        max_delay: float = 900,
        on_saved: Optional[Callable[[Path], None]] = None,
        on_error: Optional[Callable[[CaptureError], None]] = None,
    ):
        self.state = state
        self.settings = settings
        self.capture = capture
        self.min_delay = min_delay
        self.max_delay = max(min_delay, max_delay)
        self.on_saved = on_saved
        self.on_error = on_error

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def next_delay(self) -> float:
        return random.uniform(self.min_delay, self.max_delay)

    def current_label(self) -> Optional[str]:
        """Label for the running task, or None if nothing is running."""
        snap = self.state.snapshot()
        task = snap.running_task()
        if task is None:
            return None
        project = snap.project_of(task)
        return f"{project.name if project else UNKNOWN}-{task.title}"

    def capture_now(self) -> Optional[Path]:
        """Capture once if enabled and a task is running.

        Returns:
            The saved path, or None if skipped or failed.
        """
        if not self.settings.settings.screenshot_enabled:
            logger.debug("Screenshots disabled; skipping capture")
            return None

        label = self.current_label()
        if label is None:
            logger.debug("No running task; skipping capture")
            return None

        try:
            path = self.capture.capture(label)
        except CaptureError as e:
            logger.warning(f"Screenshot failed: {e}")
            if self.on_error:
                try:
                    self.on_error(e)
                except Exception as callback_error:
                    logger.error(f"on_error callback error: {callback_error}")
            return None

        if self.on_saved:
            try:
                self.on_saved(path)
            except Exception as e:
                logger.error(f"on_saved callback error: {e}")
        return path

    def _run_loop(self):
        logger.info(
            f"Screenshot scheduler started (delay {self.min_delay:.0f}-{self.max_delay:.0f}s)"
        )
        while not self._stop_event.is_set():
            if self._stop_event.wait(self.next_delay()):
                break
            self.capture_now()
        logger.info("Screenshot scheduler stopped")

    def start(self):
        if self._thread and self._thread.is_alive():
            logger.warning("ScreenshotScheduler already running")
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, daemon=True)
        self._thread.start()

    def stop(self):
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=2.0)
            self._thread = None
