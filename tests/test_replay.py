import io

import pytest

from ubiblk.device import SECTOR_SIZE
from ubiblk.replay import ReplayError, first_difference, main, replay_log


def _record(command, sector, data):
    return [command, str(sector), str(len(data)), data.hex()]


def test_first_difference():
    assert first_difference(b"abcd", b"abxd") == 2
    assert first_difference(b"abc", b"abc") is None
    assert first_difference(b"abc", b"abcdef") is None


def test_write_then_read_round_trip():
    disk = io.BytesIO(bytes(4 * SECTOR_SIZE))
    payload = b"hello sector"
    lines = _record("WRITE", 1, payload) + _record("READ", 1, payload)
    assert replay_log(lines, disk) == []
    value = disk.getvalue()
    assert value[SECTOR_SIZE : SECTOR_SIZE + len(payload)] == payload
    assert value[:SECTOR_SIZE] == bytes(SECTOR_SIZE)


def test_read_mismatch_is_reported():
    disk = io.BytesIO(bytes(2 * SECTOR_SIZE))
    lines = _record("WRITE", 0, b"abcdef") + _record("READ", 0, b"abXdef")
    mismatches = replay_log(lines, disk)
    assert mismatches == [(5, 2)]


def test_lines_with_newlines_and_spaces():
    disk = io.BytesIO(bytes(SECTOR_SIZE))
    lines = [line + "\n" for line in _record(" WRITE ", 0, b"\x01\x02")]
    replay_log(lines, disk)
    assert disk.getvalue()[:2] == b"\x01\x02"


@pytest.mark.parametrize(
    "lines",
    [
        ["WRITE"],
        ["WRITE", "0"],
        ["WRITE", "0", "2"],
        ["WRITE", "x", "2", "0102"],
        ["WRITE", "-1", "2", "0102"],
        ["WRITE", "0", "two", "0102"],
        ["WRITE", "0", "2", "01zz"],
        ["WRITE", "0", "2", "010"],
        ["WRITE", "0", "3", "0102"],
        ["ERASE", "0", "2", "0102"],
    ],
)
def test_malformed_logs(lines):
    disk = io.BytesIO(bytes(SECTOR_SIZE))
    with pytest.raises(ReplayError):
        replay_log(lines, disk)


def test_read_past_end():
    disk = io.BytesIO(bytes(SECTOR_SIZE))
    with pytest.raises(ReplayError):
        replay_log(_record("READ", 1, b"\x00\x00"), disk)


def test_main_applies_log(tmp_path):
    disk_path = tmp_path / "disk.raw"
    disk_path.write_bytes(bytes(2 * SECTOR_SIZE))
    log_path = tmp_path / "ops.log"
    payload = b"main payload"
    log_path.write_text("\n".join(_record("WRITE", 1, payload)) + "\n")

    assert main(["--log", str(log_path), "--disk", str(disk_path)]) == 0
    assert disk_path.read_bytes()[SECTOR_SIZE : SECTOR_SIZE + len(payload)] == payload


def test_main_missing_files(tmp_path):
    log_path = tmp_path / "ops.log"
    log_path.write_text("")
    assert main(["-l", str(tmp_path / "missing.log"), "-d", str(log_path)]) == 1
    assert main(["-l", str(log_path), "-d", str(tmp_path / "missing.raw")]) == 1


def test_main_bad_log(tmp_path):
    disk_path = tmp_path / "disk.raw"
    disk_path.write_bytes(bytes(SECTOR_SIZE))
    log_path = tmp_path / "ops.log"
    log_path.write_text("BOGUS\n0\n1\n00\n")
    assert main(["-l", str(log_path), "-d", str(disk_path)]) == 1