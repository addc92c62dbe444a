"""Environment overlays for launched template projects.

An :class:`EnvironmentOverlay` is a set of environment variables scoped to one
instance's child process. By default it is merged into the child's own
environment block only, so concurrently running instances never share mutable
state through ``os.environ``.

Some process models read configuration from the parent's environment (for
example a host process that forks its own workers). For those,
:meth:`EnvironmentOverlay.applied` installs the variables process-wide and
restores the previous values on exit. Tests that install overlapping variable
names this way must not run concurrently.
"""

import os
import threading
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from types import MappingProxyType

from scaffoldkit.utils.logger import get_logger

logger = get_logger("lifecycle")

_UNSET = object()


class EnvironmentOverlay(Mapping[str, str | None]):
    """Immutable mapping of environment variable names to values.

    A value of ``None`` removes the variable from the child environment.
    """

    def __init__(self, variables: Mapping[str, object | None] | None = None):
        normalized: dict[str, str | None] = {}
        for name, value in (variables or {}).items():
            if not name or not name.strip():
                raise ValueError("Environment variable names cannot be blank")
            normalized[name] = None if value is None else str(value)
        self._variables = MappingProxyType(normalized)

    def __getitem__(self, name: str) -> str | None:
        return self._variables[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._variables)

    def __len__(self) -> int:
        return len(self._variables)

    def __repr__(self) -> str:
        return f"EnvironmentOverlay({sorted(self._variables)})"

    def with_variable(self, name: str, value: object | None) -> "EnvironmentOverlay":
        return EnvironmentOverlay({**self._variables, name: value})

    def merged(self, other: Mapping[str, object | None]) -> "EnvironmentOverlay":
        """Return a new overlay where ``other`` wins on conflicting names."""
        return EnvironmentOverlay({**self._variables, **other})

    def child_environment(self, base: Mapping[str, str] | None = None) -> dict[str, str]:
        """Build the full environment block for a child process."""
        env = dict(os.environ if base is None else base)
        for name, value in self._variables.items():
            if value is None:
                env.pop(name, None)
            else:
                env[name] = value
        return env

    @contextmanager
    def applied(self) -> Iterator["InstalledOverlay"]:
        """Install the overlay into ``os.environ`` for the duration of the block."""
        installed = self.install()
        try:
            yield installed
        finally:
            installed.restore()

    def install(self) -> "InstalledOverlay":
        """Install the overlay into ``os.environ``; call ``restore()`` on the result to undo."""
        return InstalledOverlay(self)


class InstalledOverlay:
    """Handle on an overlay installed into the process environment."""

    def __init__(self, overlay: EnvironmentOverlay):
        self._lock = threading.Lock()
        self._previous: dict[str, object] = {}
        self._restored = False
        for name, value in overlay.items():
            self._previous[name] = os.environ.get(name, _UNSET)
            if value is None:
                os.environ.pop(name, None)
            else:
                os.environ[name] = value
        logger.debug(f"Installed process-wide environment variables: {', '.join(sorted(overlay))}")

    @property
    def restored(self) -> bool:
        return self._restored

    def restore(self) -> None:
        """Reset every installed variable to its prior value. Idempotent."""
        with self._lock:
            if self._restored:
                return
            self._restored = True
            for name, previous in self._previous.items():
                if previous is _UNSET:
                    os.environ.pop(name, None)
                else:
                    os.environ[name] = previous
        logger.debug(f"Restored process-wide environment variables: {', '.join(sorted(self._previous))}")
