"""Interpreter configuration.

There is no configuration file.  The few knobs the interpreter has come
from the environment (``PIPESH_PROMPT``) and the command line, with the
command line winning.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any

from pipesh.logging import LogLevel

if TYPE_CHECKING:
    from pipesh.env import Environment

DEFAULT_PROMPT = "$ "
PROMPT_VARIABLE = "PIPESH_PROMPT"


@dataclass(frozen=True)
class ShellConfig:
    """Settings for one interpreter session.

    Attributes:
        prompt: Text shown before each line is read.
        echo_level: Log entries at or above this level are echoed to the
            error stream; None keeps the log silent.

    """

    prompt: str = DEFAULT_PROMPT
    echo_level: LogLevel | None = None

    @classmethod
    def from_env(cls, env: Environment, **overrides: Any) -> ShellConfig:  # noqa: ANN401
        """Build a config from *env*, then apply non-None *overrides*."""
        config = cls(prompt=env.get(PROMPT_VARIABLE, DEFAULT_PROMPT) or DEFAULT_PROMPT)
        explicit = {key: value for key, value in overrides.items() if value is not None}
        return replace(config, **explicit)
