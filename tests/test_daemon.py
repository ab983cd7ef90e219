import os
import signal

import pytest

from hadaemon import daemon as daemon_module
from hadaemon.daemon import (
    EXIT_CONFIG_ERROR,
    EXIT_INVALID_PARAMETER,
    Daemon,
    DaemonExists,
    main,
)
from hadaemon.halog import Priority


class RecordingLog:
    def __init__(self):
        self.messages = []
        self.reopened = 0
        self.closed = False

    def message(self, priority, text):
        self.messages.append((priority, text))

    def reopen(self):
        self.reopened += 1

    def close(self):
        self.closed = True


def recorder(calls, name, fail_phase=None):
    def component(phase):
        calls.append((name, phase))
        if phase == fail_phase:
            raise RuntimeError(f"{name} failed")
    return component


def make_daemon(tmp_path, components=(), log=None):
    d = Daemon(tmp_path / "xhad.conf", tmp_path / "xhad.lock", log, components)
    d.interval = 0.01
    return d


def test_acquire_lock_writes_pid(tmp_path):
    d = make_daemon(tmp_path)
    d.acquire_lock()
    assert (tmp_path / "xhad.lock").read_text() == f"{os.getpid()}\n"
    d._release_lock()


def test_second_daemon_is_refused(tmp_path):
    first = make_daemon(tmp_path)
    first.acquire_lock()
    second = make_daemon(tmp_path)
    with pytest.raises(DaemonExists):
        second.acquire_lock()
    first._release_lock()


def test_initialize_runs_phases_in_order(tmp_path):
    calls = []
    d = make_daemon(tmp_path, [recorder(calls, "a"), recorder(calls, "b")])
    d.initialize()
    assert calls == [("a", 0), ("b", 0), ("a", 1), ("b", 1)]


def test_initialize_failure_rolls_back_earlier_components(tmp_path):
    calls = []
    components = [recorder(calls, "a"), recorder(calls, "b"), recorder(calls, "c", fail_phase=0)]
    d = make_daemon(tmp_path, components)
    with pytest.raises(RuntimeError):
        d.initialize()
    assert calls == [("a", 0), ("b", 0), ("c", 0), ("b", -1), ("a", -1)]


def test_initialize_failure_in_phase_one(tmp_path):
    calls = []
    components = [recorder(calls, "a"), recorder(calls, "b", fail_phase=1)]
    d = make_daemon(tmp_path, components)
    with pytest.raises(RuntimeError, match="b failed"):
        d.initialize()
    assert calls[-2:] == [("b", 1), ("a", -1)]


def test_shutdown_reverse_order_continues_past_errors(tmp_path):
    calls = []
    log = RecordingLog()
    components = [recorder(calls, "a"), recorder(calls, "b", fail_phase=-1), recorder(calls, "c")]
    d = make_daemon(tmp_path, components, log)
    d.shutdown()
    assert calls == [("c", -1), ("b", -1), ("a", -1)]
    assert any(p == Priority.WARNING for p, _ in log.messages)


def test_request_terminate_keeps_first_status(tmp_path):
    d = make_daemon(tmp_path)
    d.request_terminate(7)
    d.request_terminate(9)
    assert d.terminate_requested
    assert d.exit_status == 7


def test_sigterm_requests_termination(tmp_path):
    d = make_daemon(tmp_path)
    assert not d.terminate_requested
    d.handle_signal(signal.SIGCHLD)
    assert not d.terminate_requested
    d.handle_signal(signal.SIGTERM)
    assert d.terminate_requested


def test_run_reopens_log_on_sighup_and_shuts_down(tmp_path):
    calls = []
    log = RecordingLog()
    d = make_daemon(tmp_path, [recorder(calls, "a"), recorder(calls, "b")], log)
    d.acquire_lock()
    d.handle_signal(signal.SIGHUP)
    d.handle_signal(signal.SIGTERM)
    status = d.run()
    assert status == 0
    assert log.reopened == 1
    assert log.closed
    assert calls == [("b", -1), ("a", -1)]
    texts = [text for _, text in log.messages]
    assert "HA daemon completed shutdown process.\n" in texts
    other = make_daemon(tmp_path)
    other.acquire_lock()
    other._release_lock()


def test_run_reports_unexpected_signal(tmp_path):
    log = RecordingLog()
    d = make_daemon(tmp_path, log=log)
    d.handle_signal(signal.SIGUSR1)
    d.request_terminate(5)
    assert d.run() == 5
    warnings = [text for p, text in log.messages if p == Priority.WARNING]
    assert f"HA daemon received an unexpected signal({int(signal.SIGUSR1)}).\n" in warnings


def test_main_without_arguments():
    assert main([]) == EXIT_INVALID_PARAMETER


def test_main_missing_config(tmp_path, monkeypatch):
    lock_path = tmp_path / "xhad.lock"
    monkeypatch.setattr(daemon_module, "DEFAULT_LOCK_PATH", str(lock_path))
    assert main([str(tmp_path / "missing.conf")]) == EXIT_CONFIG_ERROR
    d = Daemon(tmp_path / "missing.conf", lock_path)
    d.acquire_lock()
    assert lock_path.read_text() == f"{os.getpid()}\n"
    d._release_lock()