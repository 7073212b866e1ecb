"""On-disk stripe metadata: layout, shared in-memory state, initialisation and loading."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field

from .device import (
    SECTOR_SIZE,
    DeviceIoError,
    InvalidParameterError,
    IoChannel,
    MetadataError,
)

log = logging.getLogger(__name__)

UBI_MAGIC = b"BDEV_UBI\0"
UBI_MAGIC_SIZE = len(UBI_MAGIC)
HEADER_SIZE = UBI_MAGIC_SIZE + 2 + 2 + 1

STRIPE_FETCHED = 0b01
STRIPE_WRITTEN = 0b10

METADATA_WRITE_ID = 0
METADATA_FLUSH_ID = 1

_COMPLETION_TIMEOUT = 5.0
_MAX_U32 = 2**32 - 1


@dataclass
class UbiMetadata:
    """Header sector followed by one status byte per stripe.

    Bit 0 of a stripe header marks it fetched, bit 1 marks it written.
    """

    magic: bytes = UBI_MAGIC
    version_major: bytes = b"\0\0"
    version_minor: bytes = b"\0\0"
    stripe_sector_count_shift: int = 0
    stripe_headers: bytearray = field(default_factory=bytearray)

    @classmethod
    def create(
        cls,
        stripe_sector_count_shift: int,
        base_stripe_count: int,
        image_stripe_count: int,
    ) -> UbiMetadata:
        """New metadata; stripes beyond the image are already fetched."""
        headers = bytearray(
            0 if i < image_stripe_count else STRIPE_FETCHED
            for i in range(base_stripe_count)
        )
        return cls(
            stripe_sector_count_shift=stripe_sector_count_shift,
            stripe_headers=headers,
        )

    @classmethod
    def from_bytes(cls, buf: bytes | bytearray | memoryview) -> UbiMetadata:
        """Parse metadata; every byte after the first sector is a stripe header."""
        if len(buf) < SECTOR_SIZE:
            raise MetadataError(
                f"Metadata buffer too small: {len(buf)} < {SECTOR_SIZE}"
            )
        data = bytes(buf)
        m = UBI_MAGIC_SIZE
        return cls(
            magic=data[:m],
            version_major=data[m : m + 2],
            version_minor=data[m + 2 : m + 4],
            stripe_sector_count_shift=data[m + 4],
            stripe_headers=bytearray(data[SECTOR_SIZE:]),
        )

    def write_to_buf(self, buf: bytearray | memoryview) -> None:
        """Serialise into ``buf``, which must hold at least ``metadata_size()`` bytes."""
        total = self.metadata_size()
        if len(buf) < total:
            raise ValueError(f"buffer too small: {len(buf)} < {total}")
        header = (
            bytes(self.magic)
            + bytes(self.version_major)
            + bytes(self.version_minor)
            + bytes([self.stripe_sector_count_shift])
        )
        buf[:HEADER_SIZE] = header
        buf[SECTOR_SIZE:total] = self.stripe_headers

    def to_bytes(self) -> bytes:
        buf = bytearray(self.metadata_size())
        self.write_to_buf(buf)
        return bytes(buf)

    def metadata_size(self) -> int:
        return SECTOR_SIZE + len(self.stripe_headers)

    def stripe_size(self) -> int:
        """Sectors per stripe."""
        return 1 << self.stripe_sector_count_shift

    def stripe_count(self) -> int:
        return len(self.stripe_headers)


class SharedMetadataState:
    """Stripe status shared between I/O channels and the background worker."""

    def __init__(self, metadata: UbiMetadata) -> None:
        self._headers = bytearray(metadata.stripe_headers)
        self._shift = metadata.stripe_sector_count_shift

    def stripe_sector_count(self) -> int:
        return 1 << self._shift

    def sector_to_stripe_id(self, sector: int) -> int:
        return sector >> self._shift

    def stripe_fetched(self, stripe_id: int) -> bool:
        return bool(self._headers[stripe_id] & STRIPE_FETCHED)

    def stripe_written(self, stripe_id: int) -> bool:
        return bool(self._headers[stripe_id] & STRIPE_WRITTEN)

    def set_stripe_header(self, stripe_id: int, header: int) -> None:
        self._headers[stripe_id] = header


def _wait_for_completion(channel: IoChannel, request_id: int) -> None:
    op = "write" if request_id == METADATA_WRITE_ID else "flush"
    deadline = time.monotonic() + _COMPLETION_TIMEOUT
    while time.monotonic() < deadline:
        time.sleep(0.001)
        completions = channel.poll()
        if not completions:
            continue
        cid, success = completions[0]
        if cid != request_id:
            log.error("Unexpected completion ID: %d, expected %d", cid, request_id)
            raise DeviceIoError(f"Unexpected ID: {cid}")
        if not success:
            log.error("Failed to %s metadata", op)
            raise DeviceIoError(f"Failed to {op} metadata")
        if request_id == METADATA_WRITE_ID:
            log.info("Metadata written successfully, flushing...")
        else:
            log.info("Metadata flushed successfully")
        return
    log.error("Timeout while waiting for metadata %s", op)
    raise DeviceIoError(f"Timeout while waiting for metadata {op}")


def init_metadata(metadata: UbiMetadata, channel: IoChannel) -> None:
    """Write ``metadata`` to the start of the device and flush it."""
    sectors = -(-metadata.metadata_size() // SECTOR_SIZE)
    buf = bytearray(sectors * SECTOR_SIZE)
    metadata.write_to_buf(buf)

    channel.add_write(0, sectors, buf, METADATA_WRITE_ID)
    channel.submit()
    _wait_for_completion(channel, METADATA_WRITE_ID)

    channel.add_flush(METADATA_FLUSH_ID)
    channel.submit()
    _wait_for_completion(channel, METADATA_FLUSH_ID)


def load_metadata(channel: IoChannel, sector_count: int) -> UbiMetadata:
    """Read ``sector_count`` sectors of metadata and check the magic."""
    log.info("Loading metadata from device")
    if sector_count > _MAX_U32:
        raise InvalidParameterError("Metadata file too large")

    buf = bytearray(sector_count * SECTOR_SIZE)
    channel.add_read(0, sector_count, buf, 0)
    channel.submit()

    results = channel.poll()
    while channel.busy():
        time.sleep(0.001)
        results.extend(channel.poll())

    if len(results) != 1:
        log.error("Failed to read metadata: expected 1 result, got %d", len(results))
        raise MetadataError(f"Expected 1 result, got {len(results)}")

    request_id, success = results[0]
    if not success or request_id != 0:
        log.error("Failed to read metadata: id %d, success %s", request_id, success)
        raise MetadataError(
            f"Failed to read metadata, id: {request_id}, success: {success}"
        )

    metadata = UbiMetadata.from_bytes(buf)
    if metadata.magic != UBI_MAGIC:
        log.error(
            "Metadata magic mismatch: expected %r, found %r", UBI_MAGIC, metadata.magic
        )
        raise MetadataError(
            f"Metadata magic mismatch! Expected: {UBI_MAGIC!r}, Found: {metadata.magic!r}"
        )

    log.info("Metadata loaded successfully")
    return metadata