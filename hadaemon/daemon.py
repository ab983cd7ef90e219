"""HA daemon process: single-instance lock, module start-up, signal handling and shutdown."""

from __future__ import annotations

import fcntl
import os
import signal
import sys
import threading
from collections.abc import Callable

from hadaemon.fist import FistRegistry
from hadaemon.halog import HaLog, Priority
from hadaemon.protocol import (
    ScriptType,
    pack_u32,
    unpack_fist_request,
)
from hadaemon.server import ScriptServer

DEFAULT_LOCK_PATH = "/var/run/xhad.lock"
MAIN_IDLE_INTERVAL = 1.0
SERVER_IO_TIMEOUT = 10.0
FIST_POINTS = ("sc.socket", "sc.pthread")

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_INVALID_PARAMETER = 2
EXIT_DAEMON_EXISTS = 3
EXIT_CONFIG_ERROR = 4

Component = Callable[[int], None]


class DaemonExists(Exception):
    """Raised when another daemon already holds the lock file."""


class Daemon:
    """Runs the daemon's components through their start-up phases and shuts them down.

    Each component is a callable taking a phase: 0 to initialize, 1 to
    start and -1 to stop.  A component reports failure by raising.
    """

    def __init__(self, config_path, lock_path=DEFAULT_LOCK_PATH, log=None, components=()):
        self.config_path = os.fspath(config_path)
        self.lock_path = os.fspath(lock_path)
        self.log = log
        self.components: list[Component] = list(components)
        self.exit_status = EXIT_SUCCESS
        self.interval = MAIN_IDLE_INTERVAL
        self._terminate = threading.Event()
        self._catch_sighup = False
        self._unexpected_signo = 0
        self._lock_fd: int | None = None

    def _message(self, priority, text: str) -> None:
        if self.log is not None:
            self.log.message(priority, text)

    @property
    def terminate_requested(self) -> bool:
        return self._terminate.is_set()

    # ----- single instance -----------------------------------------------

    def acquire_lock(self) -> None:
        """Take the daemon lock file and write this process id into it."""
        try:
            fd = os.open(self.lock_path, os.O_RDWR | os.O_CREAT, 0o640)
        except OSError as err:
            raise DaemonExists(f"cannot open lock file {self.lock_path}: {err}") from err
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as err:
            os.close(fd)
            raise DaemonExists(f"another HA daemon holds {self.lock_path}") from err
        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode())
        self._lock_fd = fd

    def _release_lock(self) -> None:
        if self._lock_fd is not None:
            os.close(self._lock_fd)
            self._lock_fd = None

    # ----- start-up and shutdown -----------------------------------------

    def initialize(self) -> None:
        """Run phase 0 then phase 1 of every component, rolling back on failure."""
        for phase in (0, 1):
            for position, component in enumerate(self.components):
                try:
                    component(phase)
                except Exception:
                    for earlier in reversed(self.components[:position]):
                        try:
                            earlier(-1)
                        except Exception as err:
                            self._message(Priority.WARNING,
                                          f"component stop failed during rollback ({err}).\n")
                    raise

    def shutdown(self) -> None:
        """Stop every component in reverse order, continuing past failures."""
        for component in reversed(self.components):
            try:
                component(-1)
            except Exception as err:
                self._message(Priority.WARNING, f"component stop failed ({err}).\n")

    def request_terminate(self, status=EXIT_SUCCESS) -> None:
        """Ask the main loop to shut down; the first failing status is kept."""
        if self.exit_status == EXIT_SUCCESS:
            self.exit_status = status
        self._terminate.set()

    # ----- signals -------------------------------------------------------

    def handle_signal(self, signo: int) -> None:
        """Record a signal; the main loop acts on it on its next pass."""
        if signo == signal.SIGTERM:
            self._terminate.set()
        elif signo == signal.SIGCHLD:
            pass
        elif signo == signal.SIGHUP:
            self._catch_sighup = True
        else:
            self._unexpected_signo = signo

    def _service_signals(self) -> None:
        if self._catch_sighup:
            self._catch_sighup = False
            self._message(Priority.DEBUG, "HA daemon received SIGHUP.\n")
            if self.log is not None:
                self.log.reopen()
        if self._unexpected_signo:
            signo = self._unexpected_signo
            self._unexpected_signo = 0
            self._message(Priority.WARNING,
                          f"HA daemon received an unexpected signal({signo}).\n")

    # ----- main loop -----------------------------------------------------

    def run(self) -> int:
        """Idle until termination is requested, then shut down; return the exit status."""
        while True:
            self._service_signals()
            if self._terminate.is_set():
                break
            self._terminate.wait(self.interval)
        self._message(Priority.NOTICE, "HA daemon started shutdown process.\n")
        self.shutdown()
        self._message(Priority.NOTICE, "HA daemon completed shutdown process.\n")
        if self.log is not None:
            self.log.close()
        self._release_lock()
        return self.exit_status


def _server_component(server: ScriptServer) -> Component:
    def component(phase: int) -> None:
        if phase == 0:
            server.bind()
        elif phase == 1:
            server.start()
        else:
            server.stop()
    return component


def _build_services(log: HaLog, fist: FistRegistry) -> dict:
    def do_pid(body: bytes) -> bytes:
        return pack_u32(os.getpid())

    def do_getlogmask(body: bytes) -> bytes:
        return pack_u32(log.mask & 0xFFFFFFFF)

    def do_fist(body: bytes) -> bytes:
        name, enable = unpack_fist_request(body)
        try:
            fist.enable(name) if enable else fist.disable(name)
            retval = 0
        except KeyError:
            retval = 1
        log.message(Priority.DEBUG,
                    f"SC: fist \"{name}\" {'enable' if enable else 'disable'} returns {retval}.\n")
        return pack_u32(retval)

    return {
        ScriptType.PID: do_pid,
        ScriptType.GETLOGMASK: do_getlogmask,
        ScriptType.FIST: do_fist,
    }


def main(argv=None) -> int:
    """Start the HA daemon: hadaemon CONFIG_FILE [FIST_POINT ...]."""
    args = list(sys.argv[1:] if argv is None else argv)
    if not args:
        print("usage: hadaemon CONFIG_FILE [FIST_POINT ...]", file=sys.stderr)
        return EXIT_INVALID_PARAMETER

    previous_hup = signal.signal(signal.SIGHUP, signal.SIG_IGN)
    config_path = args[0]
    log = HaLog()
    fist = FistRegistry(FIST_POINTS)
    server = ScriptServer(_build_services(log, fist), io_timeout=SERVER_IO_TIMEOUT, log=log)
    daemon = Daemon(config_path, DEFAULT_LOCK_PATH, log, [_server_component(server)])

    try:
        daemon.acquire_lock()
    except DaemonExists:
        signal.signal(signal.SIGHUP, previous_hup)
        return EXIT_DAEMON_EXISTS

    if not os.path.isfile(config_path):
        daemon._release_lock()
        signal.signal(signal.SIGHUP, previous_hup)
        return EXIT_CONFIG_ERROR

    log.open()
    log.message(Priority.NOTICE, "HA daemon started\n")
    log.log_mask([])

    for name in args[1:]:
        try:
            fist.enable(name)
            log.message(Priority.DEBUG, f"Accepted an initial FIST point {name}.\n")
        except KeyError:
            log.message(Priority.DEBUG, f"FIST point {name} is not valid.\n")

    os.setpgrp()
    os.umask(0o027)

    try:
        daemon.initialize()
    except Exception as err:
        log.message(Priority.ERR, f"HA daemon initialization failed ({err}).\n")
        log.close()
        daemon._release_lock()
        return EXIT_FAILURE

    for sig in (signal.SIGTERM, signal.SIGCHLD, signal.SIGHUP):
        signal.signal(sig, lambda signo, frame: daemon.handle_signal(signo))

    return daemon.run()


if __name__ == "__main__":
    sys.exit(main())