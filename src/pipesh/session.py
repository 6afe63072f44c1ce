"""Session state — everything one interpreter instance mutates.

Builtins like ``cd`` must change the interpreter's own state, which is
why they never run in a child process.  Rather than letting them poke
at ambient process state directly, the state lives here and is passed
explicitly to the dispatcher and the executor:

- **env** — the variables handed to every child on ``exec``.
- **cwd** — the working directory, behind the ``WorkingDirectory``
  protocol.  ``ProcessWorkingDirectory`` really calls ``os.chdir``;
  ``VirtualWorkingDirectory`` only tracks a path, which keeps tests
  free of process-wide side effects.
- **logger**, **config**, and the **stdout** / **stderr** streams.

Children are always started in ``cwd.path``, so both implementations
behave the same from the point of view of external programs.
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol

from pipesh.config import ShellConfig
from pipesh.env import Environment
from pipesh.logging import Logger, LogLevel

if TYPE_CHECKING:
    from typing import TextIO


class WorkingDirectory(Protocol):
    """Something that knows, and can change, the current directory."""

    @property
    def path(self) -> str:
        """Return the current directory as an absolute path."""
        ...

    def change(self, target: str) -> None:
        """Move to *target*, relative to the current directory.

        Raises:
            OSError: If *target* is not an accessible directory.

        """
        ...


class ProcessWorkingDirectory:
    """The real working directory of the interpreter process."""

    @property
    def path(self) -> str:
        """Return ``os.getcwd()``."""
        return os.getcwd()

    def change(self, target: str) -> None:
        """Call ``os.chdir``."""
        os.chdir(target)


class VirtualWorkingDirectory:
    """A working directory tracked in memory only.

    ``change`` validates the target against the real filesystem but never
    touches the process's own working directory.
    """

    def __init__(self, start: str) -> None:
        """Start at *start* (made absolute against the process cwd)."""
        self._path = os.path.abspath(start)

    @property
    def path(self) -> str:
        """Return the tracked path."""
        return self._path

    def change(self, target: str) -> None:
        """Resolve *target* against the tracked path and move there."""
        resolved = os.path.normpath(os.path.join(self._path, target))
        if not os.path.exists(resolved):
            raise FileNotFoundError(2, "No such file or directory", target)
        if not os.path.isdir(resolved):
            raise NotADirectoryError(20, "Not a directory", target)
        if not os.access(resolved, os.X_OK):
            raise PermissionError(13, "Permission denied", target)
        self._path = resolved


@dataclass
class Session:
    """Interpreter state shared by the builtins and the executor."""

    env: Environment = field(default_factory=Environment)
    cwd: WorkingDirectory = field(default_factory=ProcessWorkingDirectory)
    config: ShellConfig = field(default_factory=ShellConfig)
    stdout: TextIO = field(default_factory=lambda: sys.stdout)
    stderr: TextIO = field(default_factory=lambda: sys.stderr)
    log: Logger = field(init=False, repr=False)

    def __post_init__(self) -> None:
        """Create the logger, echoing to stderr at the configured level."""
        self.log = Logger(echo_level=self.config.echo_level, stream=self.stderr)

    @classmethod
    def from_os(cls, *, prompt: str | None = None, echo_level: LogLevel | None = None) -> Session:
        """Build the default interactive session from the running process.

        Args:
            prompt: Overrides ``PIPESH_PROMPT`` when given.
            echo_level: Echo log entries at or above this level to stderr.

        """
        env = Environment.from_os()
        config = ShellConfig.from_env(env, prompt=prompt, echo_level=echo_level)
        return cls(env=env, cwd=ProcessWorkingDirectory(), config=config)

    def report(self, message: str) -> None:
        """Write a ``pipesh: <message>`` diagnostic to the error stream."""
        self.stderr.write(f"pipesh: {message}\n")
        self.stderr.flush()
