"""Replay a recorded log of sector reads and writes against a disk image."""

from __future__ import annotations

import argparse
import binascii
import logging
import re
import sys
from collections.abc import Iterable, Sequence
from typing import BinaryIO

from .device import SECTOR_SIZE

log = logging.getLogger(__name__)

_UNSIGNED = re.compile(r"\+?[0-9]+")


class ReplayError(Exception):
    """The log is malformed or the disk could not be accessed."""


def first_difference(a: Sequence, b: Sequence) -> int | None:
    """Index of the first position where ``a`` and ``b`` differ, if any."""
    return next((i for i, (x, y) in enumerate(zip(a, b)) if x != y), None)


def _parse_unsigned(text: str) -> int:
    if not _UNSIGNED.fullmatch(text):
        raise ValueError(text)
    return int(text)


def _next_line(lines, line_no: int, what: str) -> str:
    try:
        _, line = next(lines)
    except StopIteration:
        raise ReplayError(f"Error reading line {line_no}: expected {what}") from None
    return line


def replay_log(log_lines: Iterable[str], disk: BinaryIO) -> list[tuple[int, int]]:
    """Apply WRITE records to ``disk`` and check READ records against it.

    Each record is four lines: command, sector, length and hex data.
    Returns ``(line_number, index)`` for every READ whose data differs.
    """
    mismatches: list[tuple[int, int]] = []
    lines = enumerate(log_lines)
    for line_num, line in lines:
        command = line.strip()

        sector_text = _next_line(lines, line_num + 1, "sector number")
        try:
            sector = _parse_unsigned(sector_text.strip())
        except ValueError:
            raise ReplayError(
                f"Error parsing sector number on line {line_num + 1}: {sector_text}"
            ) from None

        len_text = _next_line(lines, line_num + 2, "length")
        try:
            length = _parse_unsigned(len_text.strip())
        except ValueError:
            raise ReplayError(
                f"Error parsing length on line {line_num + 2}: {len_text}"
            ) from None

        data_text = _next_line(lines, line_num + 3, "data")
        try:
            data = binascii.unhexlify(data_text.strip())
        except (binascii.Error, ValueError):
            raise ReplayError(
                f"Error decoding hex data on line {line_num + 3}: {data_text}"
            ) from None
        if len(data) != length:
            raise ReplayError(
                f"Error: length mismatch on line {line_num + 3}: "
                f"expected {length}, got {len(data)}"
            )

        offset = sector * SECTOR_SIZE
        log.info("[%d] %s: sector %d, len %d", line_num + 1, command, sector, length)

        if command == "WRITE":
            try:
                disk.seek(offset)
                disk.write(data)
            except OSError as e:
                raise ReplayError(f"Error writing data to disk: {e}") from e
        elif command == "READ":
            try:
                disk.seek(offset)
                found = disk.read(length)
            except OSError as e:
                raise ReplayError(f"Error reading data from disk: {e}") from e
            if len(found) != length:
                raise ReplayError("Error reading data from disk: failed to fill whole buffer")
            index = first_difference(data, found)
            if index is not None:
                log.error(
                    "Data mismatch on line %d: expected %r..., got %r... at index %d",
                    line_num + 1,
                    list(data[index : index + 10]),
                    list(found[index : index + 10]),
                    index,
                )
                mismatches.append((line_num + 1, index))
        else:
            raise ReplayError(f"Unknown command on line {line_num + 1}: {command}")
    return mismatches


def main(argv: Sequence[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="replay-log", description="Replay a log file.")
    parser.add_argument("-l", "--log", required=True, help="Path to the log file")
    parser.add_argument("-d", "--disk", required=True, help="Disk path")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")

    try:
        log_file = open(args.log, encoding="utf-8")
    except OSError as e:
        log.error("Error opening log file %s: %s", args.log, e)
        return 1
    with log_file:
        try:
            disk_file = open(args.disk, "r+b")
        except OSError as e:
            log.error("Error opening disk file %s: %s", args.disk, e)
            return 1
        with disk_file:
            try:
                replay_log(log_file, disk_file)
            except ReplayError as e:
                log.error("%s", e)
                return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())