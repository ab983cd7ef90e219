"""Distributed lock over the shared state file, used to elect the pool master.

Every host keeps a request flag and a set of grants in the state file.
A host holds the lock when it is online and every online host grants it.
Lower host indexes have higher priority.
"""

from __future__ import annotations

import copy
import logging
import threading
import time
from dataclasses import dataclass, field

MAX_HOST_NUM = 64
_PROCESS_INTERVAL = 0.1

_log = logging.getLogger(__name__)


@dataclass
class LockEntry:
    """One host's lock fields in the state file."""

    request: bool = False
    grant: set[int] = field(default_factory=set)


def _blank_entries() -> list[LockEntry]:
    return [LockEntry() for _ in range(MAX_HOST_NUM)]


@dataclass
class StateFileView:
    """The part of the state file the lock manager reads and writes."""

    sf_access: bool = False
    lm: list[LockEntry] = field(default_factory=_blank_entries)


def initialize_lock_fields(view: StateFileView, my_index: int) -> None:
    """Reset all lock fields; this host grants the lock to every host."""
    for entry in view.lm:
        entry.request = False
        entry.grant = set()
    view.lm[my_index].request = False
    view.lm[my_index].grant = set(range(len(view.lm)))


class LockManager:
    """Lock manager for one host.

    ``store`` must provide ``writer()``, a context manager yielding the
    writable StateFileView of this host.  ``set_master`` is called with the
    master UUID once this host holds the lock.  ``accelerator``, if given,
    has ``accelerate()`` and ``cancel_accelerate()`` to speed up state file
    updates while a request is pending.
    """

    def __init__(self, my_index, host_count, store, set_master, accelerator=None):
        if not 1 <= host_count <= MAX_HOST_NUM:
            raise ValueError(f"host_count out of range: {host_count}")
        if not 0 <= my_index < host_count:
            raise ValueError(f"my_index out of range: {my_index}")
        self.my_index = my_index
        self.host_count = host_count
        self._store = store
        self._set_master = set_master
        self._accelerator = accelerator
        self._cond = threading.Condition(threading.RLock())
        self._pending_request = False
        self._cancel_request = False
        self._terminate = False
        self._first_cleanup_done = False
        self._sf = StateFileView()
        self._liveset: frozenset[int] = frozenset()
        self._thread: threading.Thread | None = None

    # ----- lifecycle -----------------------------------------------------

    def start(self) -> "LockManager":
        """Start the background thread that maintains the lock fields."""
        with self._cond:
            self._terminate = False
        self._thread = threading.Thread(target=self._run, name="lock_mgr", daemon=True)
        self._thread.start()
        return self

    def stop(self) -> None:
        """Cancel any request and ask the background thread to finish."""
        thread = self._thread
        if thread is None:
            return
        with self._cond:
            self._pending_request = False
            self._cancel_request = True
            self._terminate = True
            self._cond.notify_all()
        thread.join(timeout=1.0)
        self._thread = None

    def _run(self) -> None:
        _log.info("LM: Thread ID = %d", threading.get_native_id())
        while True:
            with self._cond:
                if not self._terminate:
                    self._cond.wait()
                if self._terminate:
                    break
            if self.process_once():
                time.sleep(_PROCESS_INTERVAL)

    # ----- callbacks -----------------------------------------------------

    def state_file_updated(self, view: StateFileView) -> None:
        """Cache a new state file image and wake waiters."""
        with self._cond:
            self._sf = copy.deepcopy(view)
            self._cond.notify_all()

    def liveset_updated(self, liveset) -> None:
        """Cache the set of online host indexes and wake waiters."""
        with self._cond:
            self._liveset = frozenset(liveset)
            self._cond.notify_all()

    # ----- public interface ----------------------------------------------

    def request_lock(self, master_uuid) -> bool:
        """Try to take the lock; True if this host holds it."""
        _log.debug("LM: enter lm_request_lock.")
        with self._cond:
            self._cond.wait_for(lambda: self._first_cleanup_done)
            index = self.lock_holder()

        if index == self.my_index:
            _log.debug("LM: I already have the lock.")
            self._set_master(master_uuid)
            return True
        if index is not None:
            _log.debug("LM: host (%d) has the lock.", index)
            return False

        with self._cond:
            self._pending_request = True
            self._cond.notify_all()

        if self._accelerator is not None:
            self._accelerator.accelerate()

        with self._cond:
            while (index := self.lock_holder()) is None:
                self._cond.wait()
                if not self._is_requesting(self.my_index) or not self._sf.sf_access:
                    _log.debug("LM: lock request canceled, (my request, SF_access) = (%s, %s).",
                               self._is_requesting(self.my_index), self._sf.sf_access)
                    break

        if self._accelerator is not None:
            self._accelerator.cancel_accelerate()

        if index == self.my_index:
            _log.debug("LM: I have acquired the lock.")
            self._set_master(master_uuid)
            return True

        _log.debug("LM: host (%s) has acquired the lock.", index)
        with self._cond:
            self._cancel_request = True
            self._cond.notify_all()
        return False

    def cancel_lock(self) -> None:
        """Withdraw this host's request and wait until it is processed."""
        _log.debug("LM: enter lm_cancel_lock.")
        with self._cond:
            self._cancel_request = True
            self._cond.notify_all()
            self._cond.wait_for(lambda: not self._cancel_request)
        _log.debug("LM: cancel acknowledged.")

    def process_once(self) -> bool:
        """Run one update of this host's lock fields; False if skipped."""
        with self._cond:
            if not self._sf.sf_access or not self.is_online(self.my_index):
                return False

        with self._store.writer() as psf:
            with self._cond:
                mine = psf.lm[self.my_index]

                for index in range(self.host_count):
                    if not self._sf.lm[index].request or not self.is_online(index):
                        if index in mine.grant:
                            _log.debug("LM: the GRANT flag for host (%d) has turned to FALSE.",
                                       index)
                        mine.grant.discard(index)

                if self._pending_request and self.ready_to_request():
                    _log.debug("LM: my REQUEST flag has turned to TRUE.")
                    mine.request = True
                    self._pending_request = False
                    self._cond.notify_all()

                if self._cancel_request:
                    _log.debug("LM: my REQUEST flag has turned to FALSE.")
                    mine.request = False
                    self._pending_request = False
                    self._cancel_request = False
                    self._cond.notify_all()

                for index in range(self.host_count):
                    if self._sf.lm[index].request and self.is_online(index):
                        if not mine.request or self._is_equal_or_prior(index):
                            if index not in mine.grant:
                                _log.debug("LM: the GRANT flag for host (%d) has turned to TRUE.",
                                           index)
                            mine.grant.add(index)

                self._first_cleanup_done = True
                self._cond.notify_all()
                self._sf = copy.deepcopy(psf)
        return True

    # ----- queries -------------------------------------------------------

    def lock_holder(self) -> int | None:
        """Return the index of the host holding the lock, or None."""
        with self._cond:
            for index in range(self.host_count):
                if self.is_locked(index):
                    return index
            return None

    def is_locked(self, index: int) -> bool:
        """True if the host is online and every online host grants it."""
        with self._cond:
            if not self.is_online(index):
                return False
            return all(index in self._sf.lm[other].grant
                       for other in range(self.host_count)
                       if self.is_online(other))

    def is_online(self, index: int) -> bool:
        """True if the host is in the current liveset."""
        with self._cond:
            return index in self._liveset

    def ready_to_request(self) -> bool:
        """True if no online host grants this host and it grants no lower host."""
        with self._cond:
            me = self.my_index
            for index in range(self.host_count):
                if self.is_online(index) and me in self._sf.lm[index].grant:
                    return False
            my_grant = self._sf.lm[me].grant
            for index in range(self.host_count):
                if (not self._is_equal_or_prior(index) and self.is_online(index)
                        and index in my_grant):
                    return False
            return True

    # ----- helpers -------------------------------------------------------

    def _is_equal_or_prior(self, index: int) -> bool:
        return self.my_index >= index

    def _is_requesting(self, index: int) -> bool:
        return self._pending_request or self._sf.lm[index].request