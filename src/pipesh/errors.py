"""Error taxonomy for the interpreter.

Every recoverable failure derives from ``ShellError`` so the session
loop can contain it with a single ``except`` clause and move on to the
next line.  ``ShellExit`` is deliberately *not* a ``ShellError``: the
``exit`` builtin ends the session, it does not fail.

- **MalformedRedirectError** — a redirection operator with no path.
- **RedirectionError** — a redirect target could not be opened.
- **LaunchError** — an external program could not be found or run.
- **ResourceExhaustionError** — the OS refused a pipe or a process.
"""


class ShellError(Exception):
    """Raise when the interpreter cannot carry out part of a command line."""


class MalformedRedirectError(ShellError):
    """Raise when a redirection operator is not followed by a path."""

    def __init__(self, operator: str) -> None:
        """Create the error for the dangling *operator*."""
        self.operator = operator
        super().__init__(f"syntax error: expected a path after '{operator}'")


class RedirectionError(ShellError):
    """Raise when a redirect target cannot be opened in the requested mode."""

    def __init__(self, path: str, reason: str) -> None:
        """Create the error for *path*, with the OS *reason*."""
        self.path = path
        super().__init__(f"{path}: {reason}")


class LaunchError(ShellError):
    """Raise when an external program cannot be located or executed.

    Attributes:
        name: The program name as typed.
        status: The exit status the stage is reported with
            (127 = not found, 126 = found but not executable).

    """

    NOT_FOUND = 127
    NOT_EXECUTABLE = 126

    def __init__(self, name: str, *, status: int = NOT_FOUND) -> None:
        """Create the error for program *name*."""
        self.name = name
        self.status = status
        reason = "command not found" if status == self.NOT_FOUND else "permission denied"
        super().__init__(f"{name}: {reason}")


class ResourceExhaustionError(ShellError):
    """Raise when pipe or process creation fails at the OS level."""


class ShellExit(SystemExit):  # noqa: N818
    """Raised by the ``exit`` builtin to end the interpreter session."""

    def __init__(self, code: int = 0) -> None:
        """Create an exit request with status *code*."""
        super().__init__(code)
