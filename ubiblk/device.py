"""Block devices, I/O channels, buffer pools and the errors they raise."""

from __future__ import annotations

import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO

log = logging.getLogger(__name__)

SECTOR_SIZE = 512

Completion = tuple[int, bool]


class BlockDeviceError(Exception):
    """Base class for all block device errors."""


class InvalidParameterError(BlockDeviceError):
    """A parameter passed to a device or channel is not acceptable."""


class DeviceIoError(BlockDeviceError):
    """An operating-system level I/O operation failed."""


class MetadataError(BlockDeviceError):
    """Device metadata is missing, unreadable or inconsistent."""


class ChannelError(BlockDeviceError):
    """Communication with a background worker failed."""


class IoChannel(ABC):
    """A queue of block requests whose completions are collected by polling."""

    @abstractmethod
    def add_read(self, sector_offset: int, sector_count: int, buf: bytearray, request_id: int) -> None:
        """Queue a read of ``sector_count`` sectors into ``buf``."""

    @abstractmethod
    def add_write(self, sector_offset: int, sector_count: int, buf: bytearray, request_id: int) -> None:
        """Queue a write of ``sector_count`` sectors from ``buf``."""

    @abstractmethod
    def add_flush(self, request_id: int) -> None:
        """Queue a flush of everything written so far."""

    @abstractmethod
    def submit(self) -> None:
        """Hand queued requests to the device."""

    @abstractmethod
    def poll(self) -> list[Completion]:
        """Return and forget the ``(request_id, success)`` pairs completed so far."""

    @abstractmethod
    def busy(self) -> bool:
        """Whether requests are still in flight."""


class BlockDevice(ABC):
    """A device of fixed size, made of 512-byte sectors."""

    @abstractmethod
    def create_channel(self) -> IoChannel:
        """Open a new I/O channel on the device."""

    @abstractmethod
    def sector_count(self) -> int:
        """Size of the device in sectors."""


class BufferPool:
    """A fixed set of equally sized buffers handed out by index."""

    def __init__(self, alignment: int, count: int, size: int) -> None:
        if alignment <= 0 or alignment & (alignment - 1):
            raise InvalidParameterError(f"alignment {alignment} is not a power of two")
        self.alignment = alignment
        self.size = size
        self._buffers = [bytearray(size) for _ in range(count)]
        self._free = list(range(count - 1, -1, -1))

    def has_available(self) -> bool:
        return bool(self._free)

    def get_buffer(self) -> tuple[bytearray, int]:
        """Take a free buffer; returns the buffer and its index."""
        if not self._free:
            raise BlockDeviceError("no buffer available in pool")
        index = self._free.pop()
        return self._buffers[index], index

    def return_buffer(self, index: int) -> None:
        if not 0 <= index < len(self._buffers):
            raise ValueError(f"buffer index {index} out of range")
        if index in self._free:
            raise ValueError(f"buffer {index} already returned")
        self._free.append(index)


@dataclass
class DeviceMetrics:
    """Counts of successful operations on a memory device."""

    reads: int = 0
    writes: int = 0
    flushes: int = 0


class _MemoryIoChannel(IoChannel):
    def __init__(self, mem: bytearray, metrics: DeviceMetrics) -> None:
        self._mem = mem
        self._metrics = metrics
        self._finished: list[Completion] = []

    def _span(self, sector_offset: int, sector_count: int) -> slice | None:
        start = sector_offset * SECTOR_SIZE
        end = start + sector_count * SECTOR_SIZE
        if end > len(self._mem):
            return None
        return slice(start, end)

    def add_read(self, sector_offset, sector_count, buf, request_id):
        span = self._span(sector_offset, sector_count)
        if span is None:
            self._finished.append((request_id, False))
            return
        buf[: span.stop - span.start] = self._mem[span]
        self._finished.append((request_id, True))
        self._metrics.reads += 1

    def add_write(self, sector_offset, sector_count, buf, request_id):
        span = self._span(sector_offset, sector_count)
        if span is None:
            self._finished.append((request_id, False))
            return
        self._mem[span] = buf[: span.stop - span.start]
        self._finished.append((request_id, True))
        self._metrics.writes += 1

    def add_flush(self, request_id):
        self._finished.append((request_id, True))
        self._metrics.flushes += 1

    def submit(self):
        pass

    def poll(self):
        finished, self._finished = self._finished, []
        return finished

    def busy(self):
        return False


class MemoryBlockDevice(BlockDevice):
    """A block device backed by memory, shared by all its channels."""

    def __init__(self, size: int) -> None:
        if size % SECTOR_SIZE:
            raise InvalidParameterError("Size must be a multiple of SECTOR_SIZE")
        self.mem = bytearray(size)
        self.metrics = DeviceMetrics()
        self._sector_count = size // SECTOR_SIZE

    def create_channel(self) -> IoChannel:
        return _MemoryIoChannel(self.mem, self.metrics)

    def sector_count(self) -> int:
        return self._sector_count

    def read(self, offset: int, length: int) -> bytes:
        """Read bytes directly from the backing memory."""
        return bytes(self.mem[offset : offset + length])

    def write(self, offset: int, data: bytes) -> None:
        """Write bytes directly into the backing memory."""
        self.mem[offset : offset + len(data)] = data

    def flushes(self) -> int:
        return self.metrics.flushes


class SyncIoChannel(IoChannel):
    """Performs each request immediately on a file."""

    def __init__(self, path: str | os.PathLike, readonly: bool) -> None:
        mode = "rb" if readonly else "r+b"
        try:
            self._file: BinaryIO = open(path, mode, buffering=0)
        except OSError as e:
            log.error("Failed to open file %s: %s", path, e)
            raise DeviceIoError(f"Failed to open file {path}: {e}") from e
        self._finished: list[Completion] = []

    def close(self) -> None:
        self._file.close()

    def __enter__(self) -> SyncIoChannel:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _read_exact(self, length: int) -> bytes:
        chunks = []
        remaining = length
        while remaining:
            chunk = self._file.read(remaining)
            if not chunk:
                raise OSError("failed to fill whole buffer")
            chunks.append(chunk)
            remaining -= len(chunk)
        return b"".join(chunks)

    def _write_all(self, data: memoryview) -> None:
        while data:
            written = self._file.write(data)
            if not written:
                raise OSError("failed to write whole buffer")
            data = data[written:]

    def add_read(self, sector_offset, sector_count, buf, request_id):
        length = sector_count * SECTOR_SIZE
        try:
            self._file.seek(sector_offset * SECTOR_SIZE)
            data = self._read_exact(length)
        except (OSError, ValueError) as e:
            log.error("Error reading from sector %d: %s", sector_offset, e)
            self._finished.append((request_id, False))
            return
        buf[:length] = data
        self._finished.append((request_id, True))

    def add_write(self, sector_offset, sector_count, buf, request_id):
        length = sector_count * SECTOR_SIZE
        try:
            self._file.seek(sector_offset * SECTOR_SIZE)
            self._write_all(memoryview(buf)[:length])
        except (OSError, ValueError) as e:
            log.error("Error writing to sector %d: %s", sector_offset, e)
            self._finished.append((request_id, False))
            return
        self._finished.append((request_id, True))

    def add_flush(self, request_id):
        try:
            self._file.flush()
            os.fsync(self._file.fileno())
        except (OSError, ValueError) as e:
            log.error("Error flushing file: %s", e)
            self._finished.append((request_id, False))
            return
        self._finished.append((request_id, True))

    def submit(self):
        pass

    def poll(self):
        finished, self._finished = self._finished, []
        return finished

    def busy(self):
        return False


class SyncBlockDevice(BlockDevice):
    """A block device backed by a regular file, accessed synchronously."""

    def __init__(self, path: str | os.PathLike, readonly: bool) -> None:
        self.path = Path(path)
        self.readonly = readonly
        try:
            size = os.stat(self.path).st_size
        except OSError as e:
            log.error("Failed to get metadata for file %s: %s", self.path, e)
            raise DeviceIoError(f"Failed to get metadata for file {self.path}: {e}") from e
        if size % SECTOR_SIZE:
            log.error("File %s size is not a multiple of sector size", self.path)
            raise InvalidParameterError("File size is not a multiple of sector size")
        self._sector_count = size // SECTOR_SIZE

    def create_channel(self) -> IoChannel:
        return SyncIoChannel(self.path, self.readonly)

    def sector_count(self) -> int:
        return self._sector_count