"""
Idle detection module.

Detects when the user has stopped using the keyboard and mouse by listening
to input events with pynput. When no input arrives for the configured number
of minutes, ``on_idle`` fires once; the daemon wires it to
``TrackerState.stop_all_sessions`` so timers don't keep running while the
user is away.

The timeout is read from a provider on every poll, so changing the
``idleTimeout`` setting takes effect without restarting the watcher.
"""

import logging
import threading
import time
from typing import Callable, Optional

logger = logging.getLogger(__name__)

# Track whether pynput is available; without it the watcher stays inert
PYNPUT_AVAILABLE = True
try:
    from pynput import keyboard, mouse
except ImportError as e:
    PYNPUT_AVAILABLE = False
    logger.warning(f"pynput not available, idle detection disabled: {e}")


class IdleWatcher:
    """
    Monitors keyboard and mouse activity to detect idleness.

    Attributes:
        timeout_provider: Returns the idle timeout in minutes; 0 disables.
        poll_time: How often to check idle status, in seconds.
        is_idle: Current idle state.
    """

    def __init__(
        self,
        timeout_provider: Callable[[], float],
        poll_time: float = 5.0,
        on_idle: Optional[Callable[[], None]] = None,
        on_active: Optional[Callable[[], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the idle watcher.

        Args:
            timeout_provider: Callable returning the timeout in minutes.
            poll_time: How often to check status in seconds (default 5.0).
            on_idle: Callback fired when the user becomes idle.
            on_active: Callback fired when input resumes after idleness.
            clock: Monotonic seconds source.
        """
        self.timeout_provider = timeout_provider
        self.poll_time = poll_time
        self.on_idle = on_idle
        self.on_active = on_active
        self._clock = clock

        self._lock = threading.Lock()
        self._last_activity = clock()
        self._is_idle = False
        self._running = False
        self._stop_event = threading.Event()
        self._poll_thread: Optional[threading.Thread] = None
        self._keyboard_listener = None
        self._mouse_listener = None

    @property
    def is_idle(self) -> bool:
        """Returns current idle state (thread-safe)."""
        with self._lock:
            return self._is_idle

    def seconds_since_last_input(self) -> float:
        with self._lock:
            return self._clock() - self._last_activity

    def timeout_seconds(self) -> float:
        """Current timeout in seconds, 0 when disabled or invalid."""
        try:
            minutes = float(self.timeout_provider())
        except (TypeError, ValueError) as e:
            logger.warning(f"Invalid idle timeout: {e}")
            return 0.0
        return max(0.0, minutes * 60)

    def _fire(self, callback: Optional[Callable[[], None]], name: str):
        if not callback:
            return
        try:
            callback()
        except Exception as e:
            logger.error(f"{name} callback error: {e}")

    def record_activity(self, *args, **kwargs):
        """Called on any keyboard or mouse event."""
        fire_active = False
        with self._lock:
            self._last_activity = self._clock()
            if self._is_idle:
                self._is_idle = False
                fire_active = True
                logger.info("User became active")

        # Fire callback outside lock to avoid deadlocks
        if fire_active:
            self._fire(self.on_active, "on_active")

    def check(self) -> bool:
        """Run one poll step.

        Returns:
            True if this call transitioned to idle.
        """
        timeout = self.timeout_seconds()
        if timeout <= 0:
            return False

        idle_seconds = self.seconds_since_last_input()
        with self._lock:
            if idle_seconds < timeout or self._is_idle:
                return False
            self._is_idle = True

        logger.info(f"User idle after {idle_seconds:.0f}s without input")
        self._fire(self.on_idle, "on_idle")
        return True

    def _poll_loop(self):
        logger.info(f"Idle poll loop started (poll={self.poll_time}s)")
        while not self._stop_event.wait(self.poll_time):
            try:
                self.check()
            except Exception as e:
                logger.error(f"Poll loop error: {e}")
        logger.info("Idle poll loop stopped")

    def start(self):
        """
        Start keyboard and mouse listeners and the polling thread.

        If pynput is not available, logs a warning and does nothing.
        """
        if not PYNPUT_AVAILABLE:
            logger.warning("pynput not available - idle detection disabled")
            return

        if self._running:
            logger.warning("IdleWatcher already running")
            return

        self._running = True
        self._stop_event.clear()
        with self._lock:
            self._last_activity = self._clock()
            self._is_idle = False

        try:
            self._keyboard_listener = keyboard.Listener(
                on_press=self.record_activity,
                on_release=self.record_activity,
            )
            self._keyboard_listener.start()
        except Exception as e:
            logger.error(f"Failed to start keyboard listener: {e}")

        try:
            self._mouse_listener = mouse.Listener(
                on_move=self.record_activity,
                on_click=self.record_activity,
                on_scroll=self.record_activity,
            )
            self._mouse_listener.start()
        except Exception as e:
            logger.error(f"Failed to start mouse listener: {e}")

        self._poll_thread = threading.Thread(target=self._poll_loop, daemon=True)
        self._poll_thread.start()
        logger.info("IdleWatcher started")

    def stop(self):
        """Clean shutdown of listeners and thread."""
        if not self._running:
            return

        self._running = False
        self._stop_event.set()

        for listener in (self._keyboard_listener, self._mouse_listener):
            if listener:
                try:
                    listener.stop()
                except Exception as e:
                    logger.debug(f"Error stopping listener: {e}")
        self._keyboard_listener = None
        self._mouse_listener = None

        if self._poll_thread:
            self._poll_thread.join(timeout=2.0)
            self._poll_thread = None

        logger.info("IdleWatcher stopped")
