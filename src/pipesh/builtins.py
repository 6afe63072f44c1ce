"""Builtin commands — the ones that must run inside the interpreter.

A builtin is a command whose effect has to be seen by the interpreter's
own process: ``cd`` changes the session's working directory and ``exit``
ends the session.  Running them in a child would make the effect vanish
as soon as the child exited, so the dispatcher always runs them in
process.  ``pwd``, ``echo`` and ``type`` are builtins for speed and
simplicity.

Design choices:
    - **Dispatch via a dict** of handler methods, one per name.
    - **Output goes to a stream the caller supplies.**  The executor
      decides whether that text ends up on the terminal, in a redirect
      file, or in the next stage's pipe.
    - **Diagnostics go to the session's error stream** and never stop
      the session.
"""

from __future__ import annotations

from collections.abc import Callable
from enum import Enum, auto
from typing import TYPE_CHECKING, TypeAlias

from pipesh.errors import ShellExit

if TYPE_CHECKING:
    from typing import TextIO

    from pipesh.parser import CommandDescriptor
    from pipesh.session import Session

# A handler takes the arguments after the name and an output stream and
# returns the exit status.
_Handler: TypeAlias = "Callable[[list[str], TextIO], int]"

_SOURCE = "builtins"


class BuiltinOutcome(Enum):
    """Whether the dispatcher ran the stage."""

    HANDLED = auto()
    NOT_HANDLED = auto()


class BuiltinDispatcher:
    """Recognise and run interpreter-local commands for a session."""

    def __init__(self, session: Session) -> None:
        """Create a dispatcher that mutates *session*."""
        self._session = session
        self.last_status = 0
        self._builtins: dict[str, _Handler] = {
            "exit": self._cmd_exit,
            "cd": self._cmd_cd,
            "pwd": self._cmd_pwd,
            "echo": self._cmd_echo,
            "type": self._cmd_type,
        }

    @property
    def names(self) -> list[str]:
        """Return the builtin names, sorted."""
        return sorted(self._builtins)

    def is_builtin(self, stage: CommandDescriptor) -> bool:
        """Return True if *stage* names a builtin (exact, case-sensitive)."""
        return stage.name is not None and stage.name in self._builtins

    def try_builtin(self, stage: CommandDescriptor, *, out: TextIO) -> BuiltinOutcome:
        """Run *stage* if it is a builtin.

        Args:
            stage: The stage to run.
            out: Where the builtin writes its standard output.

        Returns:
            ``HANDLED`` if the stage ran here, ``NOT_HANDLED`` if it is an
            external program (or has no arguments at all).

        Raises:
            ShellExit: For ``exit``.

        """
        handler = self._builtins.get(stage.name) if stage.name is not None else None
        if handler is None:
            return BuiltinOutcome.NOT_HANDLED
        self._session.log.debug(f"running builtin {stage.name}", source=_SOURCE)
        self.last_status = handler(stage.arguments[1:], out)
        return BuiltinOutcome.HANDLED

    # -- Handlers -----------------------------------------------------------

    def _cmd_exit(self, _args: list[str], _out: TextIO) -> int:
        """End the session with status 0."""
        self._session.log.info("exit requested", source=_SOURCE)
        raise ShellExit(0)

    def _cmd_cd(self, args: list[str], _out: TextIO) -> int:
        """Change the session's working directory (default: ``$HOME``)."""
        target = args[0] if args else self._session.env.get("HOME")
        if not target:
            self._session.report("cd: HOME not set")
            self._session.log.warning("cd without HOME", source=_SOURCE)
            return 1
        try:
            self._session.cwd.change(target)
        except OSError as e:
            self._session.report(f"cd: {target}: {e.strerror or e}")
            self._session.log.warning(f"cd {target} failed: {e}", source=_SOURCE)
            return 1
        return 0

    def _cmd_pwd(self, _args: list[str], out: TextIO) -> int:
        """Print the working directory."""
        out.write(f"{self._session.cwd.path}\n")
        return 0

    def _cmd_echo(self, args: list[str], out: TextIO) -> int:
        """Print the arguments space-joined."""
        out.write(" ".join(args) + "\n")
        return 0

    def _cmd_type(self, args: list[str], out: TextIO) -> int:
        """Describe the first argument as a shell builtin."""
        if not args:
            self._session.report("type: usage: type name")
            return 2
        out.write(f"{args[0]} is a shell builtin\n")
        return 0
