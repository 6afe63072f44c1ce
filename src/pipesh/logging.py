"""Interpreter logging and audit trail.

The logger records structured entries for interpreter events: pipelines
planned, children launched and reaped, builtins run, and every failure
that was reported to the user.

It mirrors a kernel log buffer (``dmesg``) rather than a file logger:

- **LogLevel** — severity levels ordered for filtering (DEBUG < ERROR).
- **LogEntry** — a single structured record (level, message, source).
- **Logger** — an append-only log with filtering, clearing, and an
  optional echo of important entries to a text stream.

Design choices:
    - **IntEnum for levels** so they compare naturally with ``<``.
    - **Frozen dataclass for entries** — log records should be immutable.
    - **Filter returns a list, not a generator** — the log is typically
      small and callers usually want to iterate multiple times.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from typing import TextIO


class LogLevel(IntEnum):
    """Severity levels for log entries."""

    DEBUG = 0
    INFO = 1
    WARNING = 2
    ERROR = 3

    @classmethod
    def from_name(cls, name: str) -> LogLevel:
        """Look up a level by case-insensitive name.

        Raises:
            ValueError: If *name* is not a level.

        """
        try:
            return cls[name.upper()]
        except KeyError:
            msg = f"unknown log level: {name}"
            raise ValueError(msg) from None


@dataclass(frozen=True)
class LogEntry:
    """A single structured log record.

    Attributes:
        level: The severity of this event.
        message: A human-readable description of what happened.
        source: The component that generated the event (e.g. "executor").

    """

    level: LogLevel
    message: str
    source: str

    def __str__(self) -> str:
        """Format as ``[LEVEL] source: message``."""
        return f"[{self.level.name}] {self.source}: {self.message}"


class Logger:
    """Append-only log buffer with filtering.

    When an ``echo_level`` and a ``stream`` are given, every entry at or
    above that level is also written to the stream as it is recorded.
    """

    def __init__(self, *, echo_level: LogLevel | None = None, stream: TextIO | None = None) -> None:
        """Create an empty logger.

        Args:
            echo_level: Minimum level echoed to *stream*; None disables echo.
            stream: Where echoed entries are written.

        """
        self._entries: list[LogEntry] = []
        self._echo_level = echo_level
        self._stream = stream

    @property
    def entries(self) -> list[LogEntry]:
        """Return all log entries in chronological order."""
        return list(self._entries)

    def log(self, level: LogLevel, message: str, *, source: str) -> None:
        """Append a new entry to the log.

        Args:
            level: Severity of the event.
            message: Human-readable event description.
            source: Component that generated the event.

        """
        entry = LogEntry(level=level, message=message, source=source)
        self._entries.append(entry)
        if self._echo_level is not None and self._stream is not None and level >= self._echo_level:
            self._stream.write(f"{entry}\n")
            self._stream.flush()

    def debug(self, message: str, *, source: str) -> None:
        """Record a DEBUG entry."""
        self.log(LogLevel.DEBUG, message, source=source)

    def info(self, message: str, *, source: str) -> None:
        """Record an INFO entry."""
        self.log(LogLevel.INFO, message, source=source)

    def warning(self, message: str, *, source: str) -> None:
        """Record a WARNING entry."""
        self.log(LogLevel.WARNING, message, source=source)

    def error(self, message: str, *, source: str) -> None:
        """Record an ERROR entry."""
        self.log(LogLevel.ERROR, message, source=source)

    def filter(
        self,
        *,
        min_level: LogLevel | None = None,
        source: str | None = None,
    ) -> list[LogEntry]:
        """Return entries matching the given criteria.

        Args:
            min_level: If set, only return entries at or above this level.
            source: If set, only return entries from this source.

        Returns:
            A filtered list of log entries.

        """
        result = self._entries
        if min_level is not None:
            result = [e for e in result if e.level >= min_level]
        if source is not None:
            result = [e for e in result if e.source == source]
        return result if result is not self._entries else list(result)

    def clear(self) -> None:
        """Remove all log entries."""
        self._entries.clear()
