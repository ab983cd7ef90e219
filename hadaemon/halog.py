"""Private log file and syslog output for the HA daemon."""

from __future__ import annotations

import enum
import os
import threading
import traceback
from datetime import datetime

try:
    import syslog as _syslog
except ImportError:  # pragma: no cover - platforms without syslog
    _syslog = None

DEFAULT_LOG_PATH = "/var/log/xha.log"
MODULE_NAME = "xha"
BACKTRACE_SIZE = 10
_MAX_COL = 16

_MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun",
           "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")


class Priority(enum.IntEnum):
    """Syslog priority levels."""

    EMERG = 0
    ALERT = 1
    CRIT = 2
    ERR = 3
    WARNING = 4
    NOTICE = 5
    INFO = 6
    DEBUG = 7

    @property
    def label(self) -> str:
        return _LABELS[self]


_LABELS = {
    Priority.EMERG: "emerg",
    Priority.ALERT: "alert",
    Priority.CRIT: "crit",
    Priority.ERR: "err",
    Priority.WARNING: "warn",
    Priority.NOTICE: "notice",
    Priority.INFO: "info",
    Priority.DEBUG: "debug",
}


def format_header(priority, when: datetime) -> str:
    """Return the prefix written before every private log line."""
    if when.tzinfo is None:
        when = when.astimezone()
    zone = when.tzname() or ""
    return (f"{_MONTHS[when.month - 1]} {when.day:02d} "
            f"{when.hour:02d}:{when.minute:02d}:{when.second:02d} "
            f"{zone} {when.year:04d} [{Priority(priority).label}] ")


def hex_dump(data: bytes) -> str:
    """Render bytes as numbered lines of 16 hex columns plus printable text."""
    lines = []
    for line, start in enumerate(range(0, len(data), _MAX_COL)):
        chunk = data[start:start + _MAX_COL]
        hex_part = "".join(f"{byte:02x} " for byte in chunk)
        hex_part += "   " * (_MAX_COL - len(chunk))
        text = "".join(chr(b) if 0x20 <= b < 0x7F else "." for b in chunk)
        lines.append(f"\t{line:04x}: {hex_part}: {text}\n")
    return "".join(lines)


class HaLog:
    """Thread-safe writer for the daemon's private log and syslog."""

    def __init__(self, path=DEFAULT_LOG_PATH, use_syslog=False):
        self.path = os.fspath(path)
        self.use_syslog = use_syslog
        self.private_log = True
        self.mask = 0
        self.mask_base = 0
        self._file = None
        self._initialized = False
        self._lock = threading.RLock()

    def __enter__(self) -> "HaLog":
        self.open()
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    @property
    def initialized(self) -> bool:
        return self._initialized

    def _open_file(self) -> None:
        try:
            self._file = open(self.path, "a", encoding="utf-8")
        except OSError as err:
            self._file = None
            if _syslog is not None and self.use_syslog:
                _syslog.syslog(_syslog.LOG_WARNING,
                               f"can't open local log file. (sys {err.errno})")

    def open(self) -> "HaLog":
        """Open the private log file and start accepting messages."""
        if _syslog is not None and self.use_syslog:
            _syslog.openlog(MODULE_NAME, _syslog.LOG_PID, _syslog.LOG_DAEMON)
        with self._lock:
            self._open_file()
            self._initialized = True
        return self

    def reopen(self) -> None:
        """Close and reopen the log file, e.g. after rotation."""
        with self._lock:
            if self._file is not None:
                self._file.close()
            self._open_file()

    def close(self) -> None:
        """Stop logging and close the file."""
        self._initialized = False
        with self._lock:
            if self._file is not None:
                self._file.close()
                self._file = None
            if _syslog is not None and self.use_syslog:
                _syslog.closelog()

    def message(self, priority, text: str) -> None:
        """Write a message to the private log and, if enabled, to syslog."""
        if not self._initialized:
            return
        priority = Priority(priority)
        if self.private_log:
            with self._lock:
                if self._file is not None:
                    self._file.write(format_header(priority, datetime.now()) + text)
                    self._file.flush()
        if self.use_syslog and _syslog is not None:
            _syslog.syslog(int(priority), text)

    def binary(self, priority, data: bytes) -> None:
        """Write a hex dump of data to the private log."""
        if not self._initialized or not self.private_log:
            return
        with self._lock:
            if self._file is not None:
                self._file.write(hex_dump(bytes(data)))
                self._file.flush()

    def log_mask(self, names) -> None:
        """Log the current mask and the state of each named bit."""
        self.message(Priority.INFO, f"LOG: logmask = {self.mask:x}\n")
        for offset, name in enumerate(names):
            bit = offset + self.mask_base
            on = self.mask & (1 << bit)
            if name is None and not on:
                continue
            self.message(Priority.INFO,
                         f"LOG:  {'ON ' if on else 'OFF'}:{bit:02d}"
                         f"({name if name is not None else 'UNKNOWN_MASK'})\n")

    def status(self, message: str, status: int, suffix=None) -> None:
        """Log an error built from a status message and code."""
        if not suffix:
            self.message(Priority.ERR, f"{message} ({status}).\n")
        else:
            self.message(Priority.ERR, f"{message} ({status}) {suffix}.\n")

    def fsync(self) -> None:
        """Force the log file to disk."""
        if not self._initialized:
            return
        with self._lock:
            if self._file is not None:
                self._file.flush()
                os.fsync(self._file.fileno())

    def thread_id(self, thread_name: str) -> None:
        """Log the native id of the calling thread."""
        self.message(Priority.INFO,
                     f"{thread_name}: Thread ID = {threading.get_native_id()}\n")

    def backtrace(self, priority) -> None:
        """Log the innermost frames of the current call stack."""
        frames = traceback.extract_stack()[:-1][-BACKTRACE_SIZE:]
        frames.reverse()
        self.message(priority, "backtrace -------------\n")
        if not frames:
            self.message(priority, "Cannot get backtrace")
            return
        for level, frame in enumerate(frames):
            self.message(priority,
                         f"  {level:2d}: ({frame.filename}:{frame.lineno}) {frame.name}\n")
        self.message(priority, "backtrace -------------\n")