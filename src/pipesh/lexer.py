"""Lexer — turn a raw command line into a stream of typed tokens.

The grammar is deliberately tiny.  Spaces and tabs separate words and
are discarded; ``|``, ``<``, ``>`` and ``>>`` are operators that end any
word in progress.  Every other character is literal: there is no
quoting, escaping, or comment syntax.

Tokenising never fails: any string, including the empty one, yields a
(possibly empty) list of tokens.
"""

from dataclasses import dataclass
from enum import StrEnum

_WHITESPACE = frozenset(" \t")


class TokenKind(StrEnum):
    """The five kinds of token the lexer produces."""

    WORD = "word"
    PIPE = "pipe"
    REDIRECT_IN = "redirect_in"
    REDIRECT_OUT = "redirect_out"
    REDIRECT_APPEND = "redirect_append"

    @property
    def is_redirect(self) -> bool:
        """Return True for the three redirection operators."""
        return self in _REDIRECT_KINDS


_REDIRECT_KINDS = frozenset(
    [TokenKind.REDIRECT_IN, TokenKind.REDIRECT_OUT, TokenKind.REDIRECT_APPEND]
)


@dataclass(frozen=True)
class Token:
    """A single lexical token.

    Attributes:
        text: The characters the token was built from.
        kind: What the token means to the parser.

    """

    text: str
    kind: TokenKind

    def __str__(self) -> str:
        """Format as ``kind(text)``."""
        return f"{self.kind}({self.text})"


def tokenize(line: str) -> list[Token]:
    """Split *line* into words and operators.

    Args:
        line: The raw input line, without its trailing newline.

    Returns:
        The tokens in input order.

    """
    tokens: list[Token] = []
    word: list[str] = []

    def _flush_word() -> None:
        if word:
            tokens.append(Token("".join(word), TokenKind.WORD))
            word.clear()

    i = 0
    while i < len(line):
        ch = line[i]
        if ch in _WHITESPACE:
            _flush_word()
        elif ch == "|":
            _flush_word()
            tokens.append(Token("|", TokenKind.PIPE))
        elif ch == "<":
            _flush_word()
            tokens.append(Token("<", TokenKind.REDIRECT_IN))
        elif ch == ">":
            _flush_word()
            if line.startswith(">>", i):
                tokens.append(Token(">>", TokenKind.REDIRECT_APPEND))
                i += 1
            else:
                tokens.append(Token(">", TokenKind.REDIRECT_OUT))
        else:
            word.append(ch)
        i += 1
    _flush_word()
    return tokens
