"""Host weight table used to arbitrate the surviving partition."""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping

from hadaemon.halog import Priority

HA_HOST_WEIGHT_FILE = "/var/run/xhad.weight"
MAX_HOST_WEIGHT_VALUE = 65535
MAX_HOST_WEIGHT_CLASSNAME_LEN = 64
MAX_HOST_WEIGHT_CLASS_NUM = 16
BUILTIN_HOST_WEIGHT_CLASSNAME = "native"
BUILTIN_HOST_WEIGHT_VALUE = 1


class HostWeightError(Exception):
    """Raised when the weight table cannot be loaded or is invalid."""


def _normalize(entries) -> dict[str, int]:
    items = entries.items() if isinstance(entries, Mapping) else entries
    table: dict[str, int] = {}
    for name, weight in items:
        if not name:
            continue
        if len(name) > MAX_HOST_WEIGHT_CLASSNAME_LEN:
            raise HostWeightError(f"class name too long: {name!r}")
        if not 0 <= weight <= MAX_HOST_WEIGHT_VALUE:
            raise HostWeightError(f"weight out of range for {name!r}: {weight}")
        table[name] = weight
    if len(table) > MAX_HOST_WEIGHT_CLASS_NUM:
        raise HostWeightError(f"too many weight classes: {len(table)}")
    return table


class HostWeights:
    """Weight classes of this host and their sum."""

    def __init__(self, log=None):
        self._log = log
        self._table: dict[str, int] = {}
        self._error_reported = False

    def _message(self, priority, text: str) -> None:
        if self._log is not None:
            self._log.message(priority, text)

    @property
    def classes(self) -> dict[str, int]:
        return dict(self._table)

    def total(self) -> int:
        """Return the built-in weight plus all class weights."""
        return BUILTIN_HOST_WEIGHT_VALUE + sum(self._table.values())

    def weight_of(self, classname: str) -> int:
        """Return the weight of a class, 0 if it is not present."""
        return self._table.get(classname, 0)

    def _log_table(self) -> None:
        self._message(Priority.INFO,
                      f"SC:     builtinclass={BUILTIN_HOST_WEIGHT_CLASSNAME} "
                      f"weight={BUILTIN_HOST_WEIGHT_VALUE}\n")
        for name, weight in self._table.items():
            self._message(Priority.INFO, f"SC:     class={name} weight={weight}\n")

    def update(self, entries) -> list[tuple[str, int, int]]:
        """Replace the table and return the reported (class, old, new) changes."""
        new = _normalize(entries)
        changes = []
        for name, weight in self._table.items():
            if new.get(name, 0) == 0:
                changes.append((name, weight, 0))
        for name, weight in new.items():
            current = self._table.get(name, 0)
            if current != weight:
                changes.append((name, current, weight))
        for name, old, value in changes:
            self._message(Priority.INFO,
                          f"SC: class={name} weight has changed from {old} to {value}\n")
        self._table = new
        return changes

    def _apply_to_state(self, state) -> None:
        weight = self.total()
        if state is None:
            self._message(Priority.WARNING, "SC: (hostweight_set_sm) sm data is NULL.\n")
            return
        if state.weight != weight:
            self._message(Priority.INFO,
                          f"SC: host weight has changed from {state.weight} to {weight}\n")
            self._log_table()
            state.weight = weight

    def reload(self, loader: Callable[[], Iterable], state=None) -> int:
        """Load new entries, update the table and the state's weight."""
        try:
            entries = loader()
            new = _normalize(entries)
        except (OSError, HostWeightError) as err:
            if not self._error_reported:
                self._message(Priority.ERR, f"open hostweight file error. ({err})\n")
                self._error_reported = True
            raise HostWeightError(str(err)) from err
        self._error_reported = False
        self.update(new)
        self._apply_to_state(state)
        return self.total()

    def initialize(self, phase: int, loader=None, state=None) -> None:
        """Phase 0 clears the table, phase 1 loads it, others do nothing."""
        if phase == 0:
            self._message(Priority.INFO, "SC: hostweight_initialize(0).\n")
            self._table = {}
        elif phase == 1:
            self._message(Priority.INFO, "SC: hostweight_initialize(1).\n")
            if loader is None:
                raise ValueError("phase 1 needs a loader")
            self.reload(loader, state)
        else:
            self._message(Priority.INFO, "SC: hostweight_initialize(-1).\n")