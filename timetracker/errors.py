"""Exception types for the time tracker.

Only hard validation failures and explicit import problems are raised to
callers. Data-quality problems found while aggregating are skipped and logged
instead; see ``aggregation`` and ``screenshots``.

Example:
    >>> from timetracker.errors import ValidationError
    >>> try:
    ...     state.add_project("   ")
    ... except ValidationError as e:
    ...     print(f"Refused: {e}")
"""


class TrackerError(Exception):
    """Base class for all time tracker errors."""


class ValidationError(TrackerError):
    """A required user-supplied text field was empty.

    The mutation that raised it has not been applied.
    """


class StorageError(TrackerError):
    """Persistent store read or write failed.

    Raised by the store on write failure after retries. The state manager
    catches it, logs it, and keeps the in-memory data as the source of truth.
    """


class ImportFormatError(TrackerError):
    """An import payload was malformed. Nothing was applied."""


class CaptureError(TrackerError):
    """Screenshot capture failed.

    Raised when the display cannot be grabbed or the image cannot be written.
    Capture failures are reported but never interrupt tracking.
    """
