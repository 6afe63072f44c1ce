"""Program launcher — find a program, start it in a child, reap it.

This is the thin layer over ``fork``/``exec``/``waitpid``:

1. ``resolve_program`` searches ``PATH`` (from the session environment,
   not ``os.environ``) in the parent, so "command not found" is a
   ``LaunchError`` the executor can report without forking.
2. ``spawn`` forks.  The child wires descriptors onto 0 and 1, restores
   default ``SIGPIPE`` handling, moves to the session's directory, and
   replaces itself with the program.  If ``exec`` fails the child prints
   a diagnostic and leaves with ``os._exit``; it never returns into
   interpreter code.
3. ``wait_for`` blocks until a child exits and converts its wait status
   into a shell-style exit status.
"""

from __future__ import annotations

import os
import shutil
import signal
import sys
from typing import TYPE_CHECKING

from pipesh.errors import LaunchError, ResourceExhaustionError

if TYPE_CHECKING:
    from collections.abc import Sequence

# Shells report death-by-signal as 128 + the signal number.
_SIGNAL_STATUS_BASE = 128


def resolve_program(name: str, *, path: str | None, cwd: str) -> str:
    """Locate the executable for *name*.

    Names containing a ``/`` are taken relative to *cwd* and not looked
    up in *path*.

    Args:
        name: The program name as typed (``arguments[0]``).
        path: The search path (the session's ``PATH``).
        cwd: The session working directory.

    Returns:
        The path to execute.

    Raises:
        LaunchError: If nothing executable matches.

    """
    if "/" in name:
        candidate = os.path.join(cwd, name)
        if not os.path.exists(candidate):
            raise LaunchError(name)
        if os.path.isdir(candidate) or not os.access(candidate, os.X_OK):
            raise LaunchError(name, status=LaunchError.NOT_EXECUTABLE)
        return candidate
    if path is None:
        path = os.defpath
    # Empty PATH entries mean the current directory.
    search = os.pathsep.join(entry or cwd for entry in path.split(os.pathsep))
    found = shutil.which(name, path=search)
    if found is None:
        raise LaunchError(name)
    return found


def spawn(
    program: str,
    arguments: Sequence[str],
    *,
    stdin_fd: int | None,
    stdout_fd: int | None,
    cwd: str,
    env: dict[str, str],
) -> int:
    """Fork a child running *program* and return its pid.

    Args:
        program: Resolved executable path.
        arguments: The full argument vector (``arguments[0]`` included).
        stdin_fd: Descriptor to become the child's stdin, or None to inherit.
        stdout_fd: Descriptor to become the child's stdout, or None to inherit.
        cwd: Directory the child starts in.
        env: The child's environment.

    Raises:
        ResourceExhaustionError: If ``fork`` fails.

    """
    # Anything still buffered would otherwise be written twice.
    sys.stdout.flush()
    sys.stderr.flush()
    try:
        pid = os.fork()
    except OSError as e:
        msg = f"cannot fork: {e.strerror or e}"
        raise ResourceExhaustionError(msg) from e
    if pid == 0:
        _exec_child(program, arguments, stdin_fd=stdin_fd, stdout_fd=stdout_fd, cwd=cwd, env=env)
    return pid


def _exec_child(
    program: str,
    arguments: Sequence[str],
    *,
    stdin_fd: int | None,
    stdout_fd: int | None,
    cwd: str,
    env: dict[str, str],
) -> None:
    """Become *program*; only ever leaves through ``exec`` or ``os._exit``."""
    status = LaunchError.NOT_EXECUTABLE
    try:
        signal.signal(signal.SIGPIPE, signal.SIG_DFL)
        if stdin_fd is not None:
            os.dup2(stdin_fd, 0)
        if stdout_fd is not None:
            os.dup2(stdout_fd, 1)
        os.chdir(cwd)
        os.execve(program, list(arguments), env)
    except FileNotFoundError as e:
        status = LaunchError.NOT_FOUND
        _child_diagnostic(arguments[0], e)
    except OSError as e:
        _child_diagnostic(arguments[0], e)
    finally:
        os._exit(status)


def _child_diagnostic(name: str, error: OSError) -> None:
    line = f"pipesh: {name}: {error.strerror or error}\n"
    os.write(2, line.encode(errors="replace"))


def exit_status(wait_status: int) -> int:
    """Convert a raw ``waitpid`` status into a shell exit status."""
    code = os.waitstatus_to_exitcode(wait_status)
    return code if code >= 0 else _SIGNAL_STATUS_BASE - code


def wait_for(pid: int) -> int:
    """Block until child *pid* exits and return its exit status."""
    _, wait_status = os.waitpid(pid, 0)
    return exit_status(wait_status)
