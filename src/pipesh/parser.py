"""Parser — group tokens into a chain of pipeline stages.

Each stage is a ``CommandDescriptor``: an argument list plus optional
input and output redirects, linked to the stage after it.  The parser
walks the tokens left to right with a single "current stage":

- a **word** is appended to the current stage's arguments;
- a **pipe** starts a new, empty stage;
- a **redirect** operator consumes the token after it as a path.

The chain always has at least one stage.  An empty line parses to a
single stage with no arguments, which the executor treats as a no-op.

A redirect operator with nothing after it raises
``MalformedRedirectError`` rather than reading past the end of the
input.  When a stage names the same redirect twice, the last one wins.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING

from pipesh.errors import MalformedRedirectError
from pipesh.lexer import Token, TokenKind

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence


class RedirectMode(StrEnum):
    """How an output redirect treats an existing file."""

    TRUNCATE = "truncate"
    APPEND = "append"


@dataclass(frozen=True)
class OutputRedirect:
    """Where a stage's standard output goes instead of the next pipe."""

    path: str
    mode: RedirectMode = RedirectMode.TRUNCATE

    @property
    def append(self) -> bool:
        """Return True for ``>>``."""
        return self.mode is RedirectMode.APPEND


@dataclass
class CommandDescriptor:
    """One pipeline stage.

    Attributes:
        arguments: ``arguments[0]`` is the program or builtin name.
            An empty list is a valid, no-op stage.
        input_redirect: Path to read standard input from, if any.
        output_redirect: Where to send standard output, if anywhere.
        next: The following stage, or None for the last one.

    """

    arguments: list[str] = field(default_factory=list)
    input_redirect: str | None = None
    output_redirect: OutputRedirect | None = None
    next: CommandDescriptor | None = field(default=None, repr=False)

    @property
    def name(self) -> str | None:
        """Return the program name, or None for an empty stage."""
        return self.arguments[0] if self.arguments else None

    @property
    def is_last(self) -> bool:
        """Return True if no stage follows this one."""
        return self.next is None

    def stages(self) -> Iterator[CommandDescriptor]:
        """Yield this stage and every stage after it, in order."""
        stage: CommandDescriptor | None = self
        while stage is not None:
            yield stage
            stage = stage.next

    def __len__(self) -> int:
        """Return the number of stages from here to the end of the chain."""
        return sum(1 for _ in self.stages())


_OUTPUT_MODES = {
    TokenKind.REDIRECT_OUT: RedirectMode.TRUNCATE,
    TokenKind.REDIRECT_APPEND: RedirectMode.APPEND,
}


def parse(tokens: Sequence[Token]) -> CommandDescriptor:
    """Build the stage chain for one line of tokens.

    Args:
        tokens: The output of ``tokenize``.

    Returns:
        The first stage of the chain.

    Raises:
        MalformedRedirectError: If a redirect operator is the last token.

    """
    head = CommandDescriptor()
    current = head
    i = 0
    while i < len(tokens):
        token = tokens[i]
        if token.kind is TokenKind.WORD:
            current.arguments.append(token.text)
        elif token.kind is TokenKind.PIPE:
            current.next = CommandDescriptor()
            current = current.next
        else:
            i += 1
            if i >= len(tokens):
                raise MalformedRedirectError(token.text)
            path = tokens[i].text
            if token.kind is TokenKind.REDIRECT_IN:
                current.input_redirect = path
            else:
                current.output_redirect = OutputRedirect(path, _OUTPUT_MODES[token.kind])
        i += 1
    return head
