"""Interactive REPL (Read-Eval-Print Loop) for the interpreter.

The REPL is the thin I/O wrapper around the core:

    1. **Read** — display a prompt and read one line.
    2. **Eval** — lex, parse, and run the pipeline.
    3. **Loop** — repeat until end of input or ``exit``.

Unlike the executor, nothing here touches descriptors or processes.
``run_line`` is the single place where a ``ShellError`` stops: it is
reported, logged, and the loop carries on with the next line.  Ctrl+C
while a line runs abandons only that line; at the prompt it ends the
loop.
"""

from __future__ import annotations

import argparse
import signal
from typing import TYPE_CHECKING

from pipesh.errors import ShellError, ShellExit
from pipesh.executor import PipelineExecutor, PipelineResult
from pipesh.lexer import tokenize
from pipesh.logging import LogLevel
from pipesh.parser import parse
from pipesh.session import Session

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

_SOURCE = "repl"

# Status reported for a line that failed before anything ran.
_SYNTAX_STATUS = 2

# Status of a line abandoned with Ctrl+C (128 + SIGINT).
_INTERRUPTED_STATUS = 128 + signal.SIGINT


def build_prompt(session: Session) -> str:
    """Return the prompt shown before each line."""
    return session.config.prompt


def run_line(
    session: Session, line: str, *, executor: PipelineExecutor | None = None
) -> PipelineResult | None:
    """Lex, parse and execute one input line.

    Args:
        session: The interpreter session.
        line: The raw line, with or without a trailing newline.
        executor: Reused across lines by ``run``; created if omitted.

    Returns:
        The pipeline result, or None if the line failed as a whole.

    Raises:
        ShellExit: If the line ran ``exit``.

    """
    executor = executor or PipelineExecutor(session)
    tokens = tokenize(line.rstrip("\n"))
    try:
        chain = parse(tokens)
        return executor.run(chain)
    except ShellError as e:
        session.report(str(e))
        session.log.warning(str(e), source=_SOURCE)
        return None


def run(session: Session, read_line: Callable[[str], str] = input) -> int:
    """Read and run lines until end of input or ``exit``.

    Args:
        session: The interpreter session.
        read_line: Called with the prompt; raises ``EOFError`` at end of
            input.  Defaults to ``input``.

    Returns:
        The session's exit status.

    """
    executor = PipelineExecutor(session)
    status = 0
    try:
        while True:
            try:
                line = read_line(build_prompt(session))
            except EOFError:
                # Ctrl+D: graceful exit
                session.stdout.write("\n")
                break
            try:
                result = run_line(session, line, executor=executor)
            except KeyboardInterrupt:
                # Ctrl+C while a line runs abandons that line only.
                session.stdout.write("\n")
                session.log.warning(f"interrupted: {line.strip()}", source=_SOURCE)
                status = _INTERRUPTED_STATUS
                continue
            status = result.status if result is not None else _SYNTAX_STATUS
    except ShellExit as e:
        return int(e.code or 0)
    except KeyboardInterrupt:
        session.stdout.write("\nInterrupted.\n")
    finally:
        session.stdout.flush()
    return status


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the ``pipesh`` command.

    Returns:
        The exit status for the process.

    """
    args = _parse_args(argv)
    echo_level = LogLevel.from_name(args.log_level) if args.log_level else None
    session = Session.from_os(prompt=args.prompt, echo_level=echo_level)
    if args.command is not None:
        try:
            result = run_line(session, args.command)
        except ShellExit as e:
            return int(e.code or 0)
        return result.status if result is not None else _SYNTAX_STATUS
    return run(session)


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="pipesh", description="A small pipeline shell.")
    parser.add_argument("-c", dest="command", default=None, help="Run one command line and exit.")
    parser.add_argument("--prompt", default=None, help="Prompt shown before each line.")
    parser.add_argument(
        "--log-level",
        default=None,
        choices=[level.name.lower() for level in LogLevel],
        help="Echo interpreter log entries at or above this level to stderr.",
    )
    return parser.parse_args(argv)
