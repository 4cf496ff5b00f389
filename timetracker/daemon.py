"""Time Tracking Daemon Module.

This module implements the background process that keeps the tracker's
watchers running: idle detection that stops timers when the user walks away,
periodic screenshots of the running task, and optionally the local web API.

The daemon provides:
- Idle detection that stops all timers after the idleTimeout setting
- Screenshots every 10-15 minutes while a task is running
- Signal handling that stops all timers before exiting (SIGTERM, SIGINT)
- Optional backup export on shutdown (autoExport setting)
- Optional Flask web API in a background thread

Example:
    # Run daemon programmatically
    >>> from timetracker.daemon import TrackerDaemon
    >>> daemon = TrackerDaemon()
    >>> daemon.run()  # Runs until interrupted

    # Or via command line
    $ timetracker-daemon --web
"""

import argparse
import logging
import signal
import threading
from pathlib import Path
from typing import Optional

from .capture import ScreenCapture, ScreenshotScheduler
from .config import ConfigManager
from .errors import CaptureError
from .idle import IdleWatcher
from .logs import setup_logging
from .screenshots import ScreenshotDirectory
from .settings import SettingsManager
from .state import TrackerState
from .storage import TrackerStore
from .transfer import write_export

logger = logging.getLogger(__name__)


class TrackerDaemon:
    """Coordinates the idle watcher, screenshot scheduler and web API.

    Attributes:
        config (Config): Loaded configuration
        store (TrackerStore): Persistent store
        state (TrackerState): Domain state manager
        settings (SettingsManager): User settings
        screenshots (ScreenshotDirectory): Screenshot listing capability
        running (bool): Controls the main loop
    """

    def __init__(
        self,
        config_manager: Optional[ConfigManager] = None,
        enable_web: bool = False,
        web_port: Optional[int] = None,
        enable_idle: bool = True,
        enable_screenshots: bool = True,
        install_signal_handlers: bool = True,
    ):
        """Initialize the daemon and load tracker data.

        Args:
            config_manager: ConfigManager to use (default location if None)
            enable_web: Whether to start the web API
            web_port: Override for the configured web port
            enable_idle: Whether to run idle detection
            enable_screenshots: Whether to run the screenshot scheduler
            install_signal_handlers: Register SIGTERM/SIGINT handlers

        Signal handlers are registered for:
        - SIGTERM: Graceful shutdown (systemd stop)
        - SIGINT: Interrupt signal (Ctrl+C)
        """
        self.config_manager = config_manager or ConfigManager()
        self.config = self.config_manager.config

        self.store = TrackerStore(self.config.db_path, write_retries=self.config.storage.write_retries)
        self.state = TrackerState(self.store)
        self.state.load()
        self.settings = SettingsManager(self.store)
        self.screenshots = ScreenshotDirectory(self.config.screenshots_dir)

        self.running = False
        self._stop_event = threading.Event()
        self.enable_web = enable_web
        self.web_port = web_port or self.config.web.port
        self.web_thread: Optional[threading.Thread] = None

        self.idle_watcher: Optional[IdleWatcher] = None
        if enable_idle and self.config.idle.enabled:
            self.idle_watcher = IdleWatcher(
                timeout_provider=lambda: self.settings.settings.idle_timeout,
                poll_time=self.config.idle.poll_seconds,
                on_idle=self._handle_idle,
            )

        self.scheduler: Optional[ScreenshotScheduler] = None
        if enable_screenshots:
            try:
                capture = ScreenCapture(self.config.screenshots_dir, self.config.screenshots.image_format)
                self.scheduler = ScreenshotScheduler(
                    self.state,
                    self.settings,
                    capture,
                    min_delay=self.config.screenshots.min_delay_minutes * 60,
                    max_delay=self.config.screenshots.max_delay_minutes * 60,
                    on_saved=lambda path: logger.info(f"Captured {Path(path).name}"),
                    on_error=self._handle_capture_error,
                )
            except CaptureError as e:
                logger.warning(f"Screenshots disabled: {e}")

        if install_signal_handlers:
            signal.signal(signal.SIGTERM, self._signal_handler)
            signal.signal(signal.SIGINT, self._signal_handler)

    def _signal_handler(self, signum, frame):
        """Handle termination signals by ending the run loop.

        The handler interrupts the main thread, which may be inside a state
        write, so it only sets the stop event. ``shutdown()`` stops the timers
        once the loop has exited.

        Args:
            signum (int): Signal number received
            frame: Current stack frame (unused)
        """
        logger.info(f"Received signal {signum}, shutting down...")
        self.stop()

    def _handle_idle(self):
        """Called when the user goes idle; stops every running timer."""
        closed = self.state.stop_all_sessions()
        if closed:
            logger.info(f"Idle timeout reached, stopped {len(closed)} session(s)")

    def _handle_capture_error(self, error: CaptureError):
        logger.warning(f"Screenshot capture failed, tracking continues: {error}")

    def _start_web_server(self):
        """Start the Flask web API in a separate thread."""
        from web.app import create_app

        app = create_app(self.state, self.settings, screenshots=self.screenshots)
        host = self.config.web.host
        logger.info(f"Starting web server on http://{host}:{self.web_port}")
        self.web_thread = threading.Thread(
            target=lambda: app.run(host=host, port=self.web_port, debug=False, use_reloader=False),
            daemon=True,
        )
        self.web_thread.start()

    def start(self):
        """Start the watchers and, if enabled, the web server."""
        self.running = True
        self._stop_event.clear()
        if self.idle_watcher:
            self.idle_watcher.start()
        if self.scheduler:
            self.scheduler.start()
        if self.enable_web:
            self._start_web_server()
        logger.info("Time tracker daemon started")

    def stop(self):
        """Ask the main loop to exit."""
        self.running = False
        self._stop_event.set()

    def shutdown(self):
        """Stop watchers, close timers, flush and optionally export."""
        logger.info("Shutting down...")
        if self.idle_watcher:
            self.idle_watcher.stop()
        if self.scheduler:
            self.scheduler.stop()

        self.state.stop_all_sessions()
        if not self.state.flush():
            logger.error("Tracker data could not be written before exit")

        if self.settings.settings.auto_export:
            try:
                write_export(self.state, self.settings, self.config.export_dir)
            except OSError as e:
                logger.error(f"Auto-export failed: {e}")

        logger.info("Time tracker daemon stopped")

    def run(self):
        """Run until a signal arrives, retrying pending writes periodically."""
        self.start()
        try:
            while self.running:
                if self._stop_event.wait(30):
                    break
                if self.state.dirty:
                    self.state.flush()
        finally:
            self.shutdown()


def main(argv=None):
    parser = argparse.ArgumentParser(description="Time tracking daemon")
    parser.add_argument("--config", type=Path, help="Path to config.yaml")
    parser.add_argument("--web", action="store_true", help="Enable web API")
    parser.add_argument("--web-port", type=int, help="Web API port (default from config)")
    parser.add_argument("--no-idle", action="store_true", help="Disable idle detection")
    parser.add_argument("--no-screenshots", action="store_true", help="Disable screenshot capture")
    parser.add_argument("--log-level", help="Log level (default from config)")
    args = parser.parse_args(argv)

    config_manager = ConfigManager(args.config)
    setup_logging(args.log_level or config_manager.config.logging.level,
                  config_manager.config.logging.file or None)

    daemon = TrackerDaemon(
        config_manager=config_manager,
        enable_web=args.web,
        web_port=args.web_port,
        enable_idle=not args.no_idle,
        enable_screenshots=not args.no_screenshots,
    )
    daemon.run()


if __name__ == "__main__":
    main()
