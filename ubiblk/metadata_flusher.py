"""Persists stripe status changes to the metadata device, one sector at a time."""

from __future__ import annotations

import enum
import logging
from collections import deque
from dataclasses import dataclass

from .device import (
    SECTOR_SIZE,
    BlockDevice,
    BlockDeviceError,
    BufferPool,
    InvalidParameterError,
)
from .metadata import (
    STRIPE_FETCHED,
    STRIPE_WRITTEN,
    SharedMetadataState,
    load_metadata,
)

log = logging.getLogger(__name__)

MAX_CONCURRENT_CHANGES = 16
_BUFFER_ALIGNMENT = 4096


class _RequestKind(enum.Enum):
    SET_FETCHED = enum.auto()
    SET_WRITTEN = enum.auto()


@dataclass(frozen=True)
class _FlusherRequest:
    stripe_id: int
    kind: _RequestKind


class _Stage(enum.Enum):
    WRITING = enum.auto()
    FLUSHING = enum.auto()


@dataclass
class _HeaderUpdate:
    buffer_index: int
    stage: _Stage
    stripe_id: int
    header: int
    sector: int


class MetadataFlusher:
    """Queues stripe header changes and writes and flushes them to the metadata device.

    Updates that touch the same metadata sector are serialised; once a change
    is durable, it is published to the shared metadata state.
    """

    def __init__(self, metadata_dev: BlockDevice, source_sector_count: int) -> None:
        self._channel = metadata_dev.create_channel()
        self._metadata = load_metadata(self._channel, metadata_dev.sector_count())

        stripe_size = self._metadata.stripe_size()
        source_stripe_count = -(-source_sector_count // stripe_size)
        if source_stripe_count > self._metadata.stripe_count():
            raise InvalidParameterError(
                f"Source stripe count {source_stripe_count} exceeds metadata "
                f"stripe count {self._metadata.stripe_count()}"
            )

        self._shared_state = SharedMetadataState(self._metadata)
        self._sectors_being_updated: set[int] = set()
        self._header_updates: dict[int, _HeaderUpdate] = {}
        self._queued: deque[_FlusherRequest] = deque()
        self._pool = BufferPool(_BUFFER_ALIGNMENT, MAX_CONCURRENT_CHANGES, SECTOR_SIZE)

    def shared_state(self) -> SharedMetadataState:
        return self._shared_state

    def busy(self) -> bool:
        return bool(self._sectors_being_updated) or bool(self._queued)

    def stripe_sector_count(self) -> int:
        return 1 << self._metadata.stripe_sector_count_shift

    def set_stripe_fetched(self, stripe_id: int) -> None:
        self._queued.append(_FlusherRequest(stripe_id, _RequestKind.SET_FETCHED))

    def set_stripe_written(self, stripe_id: int) -> None:
        self._queued.append(_FlusherRequest(stripe_id, _RequestKind.SET_WRITTEN))

    def update(self) -> None:
        """Start queued writes and process completions."""
        self._start_writes()
        self._poll_channel()

    def _submit(self) -> None:
        try:
            self._channel.submit()
        except BlockDeviceError as e:
            log.error("Failed to submit metadata writes: %s", e)

    def _poll_channel(self) -> None:
        finished: list[tuple[int, int]] = []

        for stripe_id, success in self._channel.poll():
            status = self._header_updates.get(stripe_id)
            if status is None:
                log.error("Received unexpected response for stripe %d", stripe_id)
                continue
            if not success:
                log.error("Failed to write metadata for stripe %d", stripe_id)
                if status.stage is _Stage.WRITING:
                    self._pool.return_buffer(status.buffer_index)
                self._sectors_being_updated.discard(status.sector)
                del self._header_updates[stripe_id]
                continue
            if status.stage is _Stage.WRITING:
                self._pool.return_buffer(status.buffer_index)
                self._channel.add_flush(stripe_id)
                status.stage = _Stage.FLUSHING
            else:
                self._sectors_being_updated.discard(status.sector)
                finished.append((status.stripe_id, status.header))

        for stripe_id, header in finished:
            log.debug("Stripe %d metadata updated with header %d", stripe_id, header)
            self._header_updates.pop(stripe_id, None)
            self._shared_state.set_stripe_header(stripe_id, header)

        self._submit()

    def _start_writes(self) -> None:
        headers = self._metadata.stripe_headers
        while self._queued and self._pool.has_available():
            req = self._queued[0]
            group = req.stripe_id // SECTOR_SIZE
            sector = group + 1
            if sector in self._sectors_being_updated:
                # Updates to each sector are serialised.
                break
            self._queued.popleft()

            buf, index = self._pool.get_buffer()
            headers[req.stripe_id] |= (
                STRIPE_FETCHED if req.kind is _RequestKind.SET_FETCHED else STRIPE_WRITTEN
            )

            chunk = headers[group * SECTOR_SIZE : (group + 1) * SECTOR_SIZE]
            buf[: len(chunk)] = chunk
            buf[len(chunk) :] = bytes(SECTOR_SIZE - len(chunk))

            self._channel.add_write(sector, 1, buf, req.stripe_id)
            self._sectors_being_updated.add(sector)
            self._header_updates[req.stripe_id] = _HeaderUpdate(
                buffer_index=index,
                stage=_Stage.WRITING,
                stripe_id=req.stripe_id,
                header=headers[req.stripe_id],
                sector=sector,
            )

        self._submit()