import re
import threading
from datetime import datetime, timezone

import pytest

from hadaemon.halog import HaLog, Priority, format_header, hex_dump

HEADER = re.compile(r"^[A-Z][a-z]{2} \d\d \d\d:\d\d:\d\d \S* \d{4} \[(\w+)\] ")


@pytest.fixture
def log(tmp_path):
    h = HaLog(tmp_path / "xha.log")
    h.open()
    yield h
    h.close()


def read(log):
    with open(log.path, encoding="utf-8") as f:
        return f.read()


def test_format_header_utc():
    when = datetime(2008, 3, 4, 5, 6, 7, tzinfo=timezone.utc)
    assert format_header(Priority.INFO, when) == "Mar 04 05:06:07 UTC 2008 [info] "


def test_format_header_warning_label():
    when = datetime(2008, 11, 11, 0, 0, 0, tzinfo=timezone.utc)
    assert format_header(Priority.WARNING, when).endswith("[warn] ")


def test_hex_dump_short_line():
    out = hex_dump(b"AB")
    assert out == "\t0000: 41 42 " + "   " * 14 + ": AB\n"


def test_hex_dump_nonprintable_and_line_numbers():
    data = bytes(range(20))
    lines = hex_dump(data).splitlines()
    assert len(lines) == 2
    assert lines[0].startswith("\t0000: 00 01 02")
    assert lines[1].startswith("\t0001: 10 11 12 13 ")
    assert lines[0].endswith(": " + "." * 16)


def test_hex_dump_empty():
    assert hex_dump(b"") == ""


def test_message_written_with_header(log):
    log.message(Priority.NOTICE, "hello\n")
    content = read(log)
    m = HEADER.match(content)
    assert m and m.group(1) == "notice"
    assert content.endswith("hello\n")


def test_message_before_open_is_dropped(tmp_path):
    h = HaLog(tmp_path / "x.log")
    h.message(Priority.INFO, "lost\n")
    assert not (tmp_path / "x.log").exists()


def test_private_log_disabled(log):
    log.private_log = False
    log.message(Priority.INFO, "hidden\n")
    assert read(log) == ""


def test_binary(log):
    log.binary(Priority.INFO, b"xyz")
    assert read(log) == hex_dump(b"xyz")


def test_status_with_and_without_suffix(log):
    log.status("failed", 1702, None)
    log.status("failed", 1702, "propose_master failed")
    lines = read(log).splitlines()
    assert lines[0].endswith("[err] failed (1702).")
    assert lines[1].endswith("failed (1702) propose_master failed.")


def test_log_mask(log):
    log.mask = 0b101
    log.log_mask(["A", None, None, "D"])
    lines = [HEADER.sub("", l) for l in read(log).splitlines()]
    assert lines[0] == "LOG: logmask = 5"
    assert lines[1] == "LOG:  ON :00(A)"
    assert lines[2] == "LOG:  ON :02(UNKNOWN_MASK)"
    assert lines[3] == "LOG:  OFF:03(D)"
    assert len(lines) == 4


def test_reopen_after_rotation(log, tmp_path):
    log.message(Priority.INFO, "first\n")
    rotated = tmp_path / "xha.log.1"
    (tmp_path / "xha.log").rename(rotated)
    log.reopen()
    log.message(Priority.INFO, "second\n")
    assert "first" in rotated.read_text()
    assert "second" in read(log)
    assert "first" not in read(log)


def test_close_stops_logging(log):
    log.close()
    log.message(Priority.INFO, "after\n")
    assert log.initialized is False
    assert read(log) == ""


def test_thread_id(log):
    log.thread_id("LM")
    assert f"LM: Thread ID = {threading.get_native_id()}" in read(log)


def test_backtrace(log):
    log.backtrace(Priority.DEBUG)
    lines = read(log).splitlines()
    assert lines[0].endswith("backtrace -------------")
    assert lines[-1].endswith("backtrace -------------")
    assert 3 <= len(lines) <= 12
    assert "test_backtrace" in lines[1]


def test_fsync_keeps_content(log):
    log.message(Priority.INFO, "synced\n")
    log.fsync()
    assert "synced" in read(log)


def test_context_manager(tmp_path):
    with HaLog(tmp_path / "c.log") as h:
        h.message(Priority.ERR, "boom\n")
        assert h.initialized
    assert h.initialized is False
    assert "boom" in (tmp_path / "c.log").read_text()