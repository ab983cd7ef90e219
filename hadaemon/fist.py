"""Fault insertion self test (FIST) points."""

from __future__ import annotations

import threading
from collections.abc import Iterable


class FistRegistry:
    """A fixed set of named fault insertion points that can be switched on and off."""

    def __init__(self, names: Iterable[str] = ()):
        self._points: dict[str, bool] = {name: False for name in names}
        self._lock = threading.Lock()

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(self._points)

    def _set(self, name: str, enabled: bool) -> None:
        with self._lock:
            if name not in self._points:
                raise KeyError(f"unknown FIST point: {name!r}")
            self._points[name] = enabled

    def enable(self, name: str) -> None:
        """Switch a fault point on; KeyError if the name is not known."""
        self._set(name, True)

    def disable(self, name: str) -> None:
        """Switch a fault point off; KeyError if the name is not known."""
        self._set(name, False)

    def is_on(self, name: str) -> bool:
        """True if the named point is enabled; unknown names are never on."""
        with self._lock:
            return self._points.get(name, False)

    def enabled(self) -> list[str]:
        """Return the names of all enabled points."""
        with self._lock:
            return [name for name, on in self._points.items() if on]