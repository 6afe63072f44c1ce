"""Environment variables — the interpreter's key-value configuration.

Every process has an environment: a set of ``KEY=VALUE`` string pairs
inherited from its parent.  The interpreter keeps its own snapshot so
that ``cd`` can consult ``HOME``, the launcher can search ``PATH``, and
every child receives the same variables on ``exec`` without anything
reaching into ``os.environ``.

Key design properties:
    - **Copy on creation** — an ``Environment`` never aliases the dict
      it was built from, and ``as_dict`` never hands out its own.
    - **Strings only** — both keys and values are strings.
"""

import os


class Environment:
    """A read-mostly snapshot of environment variables."""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        """Create an environment, optionally pre-populated.

        Args:
            initial: Starting variables (copied, not referenced).

        """
        self._vars: dict[str, str] = dict(initial) if initial else {}

    @classmethod
    def from_os(cls) -> "Environment":
        """Snapshot the current process environment."""
        return cls(initial=dict(os.environ))

    def get(self, key: str, default: str | None = None) -> str | None:
        """Return the value for *key*, or *default* if not set."""
        return self._vars.get(key, default)

    def as_dict(self) -> dict[str, str]:
        """Return a plain dict copy, suitable for ``os.execve``."""
        return dict(self._vars)
