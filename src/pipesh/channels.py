"""Pipe and redirect handles with scoped ownership.

Every descriptor the executor creates is wrapped in an object that
knows whether it has been closed, so each one is closed exactly once no
matter which path (success, stage failure, exception) the pipeline run
takes.

- **PipeChannel** — one OS pipe between two adjacent stages.  The read
  end feeds the later stage, the write end is the earlier stage's
  standard output.  Usable as a context manager: leaving the block
  closes whichever ends are still open.
- **open_input_redirect / open_output_redirect** — context managers that
  open a redirect target and yield the raw descriptor, translating
  ``OSError`` into ``RedirectionError``.

Descriptors created here are non-inheritable (the Python default), so a
child only keeps the ones it explicitly duplicates onto 0 and 1 before
``exec``.
"""

from __future__ import annotations

import contextlib
import os
from typing import TYPE_CHECKING, Self

from pipesh.errors import RedirectionError, ResourceExhaustionError
from pipesh.parser import RedirectMode

if TYPE_CHECKING:
    from collections.abc import Iterator
    from types import TracebackType

# rw-r--r--, before the umask.
FILE_MODE = 0o644


class PipeChannel:
    """A one-way OS pipe connecting two adjacent stages."""

    def __init__(self, read_fd: int, write_fd: int) -> None:
        """Wrap an existing pair of pipe descriptors."""
        self._read_fd: int | None = read_fd
        self._write_fd: int | None = write_fd

    @classmethod
    def open(cls) -> PipeChannel:
        """Create a fresh pipe.

        Raises:
            ResourceExhaustionError: If the OS refuses (e.g. EMFILE).

        """
        try:
            read_fd, write_fd = os.pipe()
        except OSError as e:
            msg = f"cannot create pipe: {e.strerror or e}"
            raise ResourceExhaustionError(msg) from e
        return cls(read_fd, write_fd)

    @property
    def read_fd(self) -> int:
        """Return the read end.

        Raises:
            ValueError: If the read end has been closed.

        """
        if self._read_fd is None:
            msg = "read end already closed"
            raise ValueError(msg)
        return self._read_fd

    @property
    def write_fd(self) -> int:
        """Return the write end.

        Raises:
            ValueError: If the write end has been closed.

        """
        if self._write_fd is None:
            msg = "write end already closed"
            raise ValueError(msg)
        return self._write_fd

    @property
    def closed(self) -> bool:
        """Return True once both ends are closed."""
        return self._read_fd is None and self._write_fd is None

    def close_read(self) -> None:
        """Close the read end; later calls do nothing."""
        if self._read_fd is not None:
            fd, self._read_fd = self._read_fd, None
            os.close(fd)

    def close_write(self) -> None:
        """Close the write end; later calls do nothing."""
        if self._write_fd is not None:
            fd, self._write_fd = self._write_fd, None
            os.close(fd)

    def feed(self, data: bytes) -> bool:
        """Write all of *data* into the pipe, then close the write end.

        Returns:
            False if the reader had already gone away (the rest of the
            data is dropped), True otherwise.

        """
        delivered = True
        try:
            write_all(self.write_fd, data)
        except BrokenPipeError:
            delivered = False
        finally:
            self.close_write()
        return delivered

    def close(self) -> None:
        """Close both ends."""
        try:
            self.close_write()
        finally:
            self.close_read()

    def __enter__(self) -> Self:
        """Return the channel itself."""
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        """Close whatever is still open."""
        self.close()

    def __repr__(self) -> str:
        """Show both descriptor numbers (None once closed)."""
        return f"PipeChannel(read={self._read_fd}, write={self._write_fd})"


@contextlib.contextmanager
def open_input_redirect(path: str, *, cwd: str | None = None) -> Iterator[int]:
    """Open *path* read-only for a ``<`` redirect.

    Relative paths are resolved against *cwd* when it is given.

    Raises:
        RedirectionError: If the file does not exist or cannot be read.

    """
    try:
        fd = os.open(_resolve(path, cwd), os.O_RDONLY)
    except OSError as e:
        raise RedirectionError(path, e.strerror or str(e)) from e
    try:
        yield fd
    finally:
        os.close(fd)


@contextlib.contextmanager
def open_output_redirect(
    path: str, mode: RedirectMode, *, cwd: str | None = None
) -> Iterator[int]:
    """Open *path* for a ``>`` or ``>>`` redirect, creating it if absent.

    Relative paths are resolved against *cwd* when it is given.

    Raises:
        RedirectionError: If the file cannot be opened for writing.

    """
    flags = os.O_WRONLY | os.O_CREAT
    flags |= os.O_APPEND if mode is RedirectMode.APPEND else os.O_TRUNC
    try:
        fd = os.open(_resolve(path, cwd), flags, FILE_MODE)
    except OSError as e:
        raise RedirectionError(path, e.strerror or str(e)) from e
    try:
        yield fd
    finally:
        os.close(fd)


def _resolve(path: str, cwd: str | None) -> str:
    return os.path.join(cwd, path) if cwd is not None else path


def write_all(fd: int, data: bytes) -> None:
    """Write every byte of *data* to *fd*, looping over short writes."""
    view = memoryview(data)
    while view:
        written = os.write(fd, view)
        view = view[written:]
