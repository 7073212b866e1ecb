"""Copies whole stripes from a source device to a target device in the background."""

from __future__ import annotations

import enum
import logging
from collections import deque

from .device import (
    SECTOR_SIZE,
    BlockDevice,
    BlockDeviceError,
    BufferPool,
    Completion,
    InvalidParameterError,
)
from .metadata import SharedMetadataState

log = logging.getLogger(__name__)

MAX_CONCURRENT_FETCHES = 16
_MAX_U64 = 2**64 - 1


class _FetchState(enum.Enum):
    QUEUED = enum.auto()
    FETCHING = enum.auto()
    FLUSHING = enum.auto()


class StripeFetcher:
    """Reads stripes from the source, writes them to the target and flushes.

    Each finished fetch is reported through ``take_finished_fetches``.
    """

    def __init__(
        self,
        source_dev: BlockDevice,
        target_dev: BlockDevice,
        stripe_sector_count: int,
        shared_metadata_state: SharedMetadataState,
        alignment: int,
    ) -> None:
        self._source = source_dev.create_channel()
        self._target = target_dev.create_channel()

        stripe_size = stripe_sector_count * SECTOR_SIZE
        if stripe_size > _MAX_U64:
            raise InvalidParameterError("stripe size too large")

        self._pool = BufferPool(alignment, MAX_CONCURRENT_FETCHES, stripe_size)
        self._source_sector_count = source_dev.sector_count()
        self._target_sector_count = target_dev.sector_count()
        if self._target_sector_count < self._source_sector_count:
            raise InvalidParameterError("target device too small")

        self._stripe_sector_count = stripe_sector_count
        self._state = shared_metadata_state
        self._queue: deque[int] = deque()
        self._stripe_states: dict[int, _FetchState] = {}
        self._allocated: dict[int, tuple[bytearray, int]] = {}
        self._finished: list[Completion] = []

    def busy(self) -> bool:
        return (
            bool(self._queue)
            or self._source.busy()
            or self._target.busy()
            or bool(self._finished)
        )

    def handle_fetch_request(self, stripe_id: int) -> None:
        if self._state.stripe_fetched(stripe_id):
            log.debug("Stripe %d already fetched", stripe_id)
            return
        if stripe_id in self._stripe_states:
            log.debug("Stripe %d is already queued or fetching", stripe_id)
            return
        log.debug("Enqueueing stripe %d for fetch", stripe_id)
        self._queue.append(stripe_id)
        self._stripe_states[stripe_id] = _FetchState.QUEUED

    def update(self) -> None:
        self._start_fetches()
        self._poll_fetches()

    def take_finished_fetches(self) -> list[Completion]:
        """Return and forget the ``(stripe_id, success)`` pairs finished so far."""
        finished, self._finished = self._finished, []
        return finished

    def _start_fetches(self) -> None:
        while self._queue and self._pool.has_available():
            stripe_id = self._queue.popleft()
            buf, index = self._pool.get_buffer()
            self._allocated[stripe_id] = (buf, index)

            offset = stripe_id * self._stripe_sector_count
            if offset >= self._source_sector_count:
                log.error("Stripe %d beyond end of source", stripe_id)
                self._fetch_completed(stripe_id, False)
                continue

            count = min(self._stripe_sector_count, self._source_sector_count - offset)
            self._source.add_read(offset, count, buf, stripe_id)
            try:
                self._source.submit()
            except BlockDeviceError as e:
                log.error("Failed to submit read for stripe %d: %s", stripe_id, e)
                self._fetch_completed(stripe_id, False)
                continue

            self._stripe_states[stripe_id] = _FetchState.FETCHING

    def _poll_fetches(self) -> None:
        # Source read done -> write to target -> flush target -> report.
        for stripe_id, success in self._source.poll():
            allocated = self._allocated.get(stripe_id)
            if allocated is None:
                log.error("Received completion for unknown stripe %d", stripe_id)
                continue
            if not success or not self._start_write(allocated[0], stripe_id):
                self._fetch_completed(stripe_id, False)

        for stripe_id, success in self._target.poll():
            if not success:
                self._fetch_completed(stripe_id, False)
                continue
            state = self._stripe_states.get(stripe_id)
            if state is _FetchState.FETCHING:
                log.debug("Stripe %d write completed, flushing...", stripe_id)
                if self._start_flush(stripe_id):
                    self._stripe_states[stripe_id] = _FetchState.FLUSHING
                else:
                    self._fetch_completed(stripe_id, False)
            elif state is _FetchState.FLUSHING:
                self._fetch_completed(stripe_id, True)
            else:
                log.error("Unexpected state for stripe %d after write", stripe_id)

    def _start_write(self, buf: bytearray, stripe_id: int) -> bool:
        offset = stripe_id * self._stripe_sector_count
        count = min(self._stripe_sector_count, self._target_sector_count - offset)
        self._target.add_write(offset, count, buf, stripe_id)
        try:
            self._target.submit()
        except BlockDeviceError as e:
            log.error("Failed to submit write for stripe %d: %s", stripe_id, e)
            return False
        return True

    def _start_flush(self, stripe_id: int) -> bool:
        self._target.add_flush(stripe_id)
        try:
            self._target.submit()
        except BlockDeviceError as e:
            log.error("Failed to submit flush for stripe %d: %s", stripe_id, e)
            return False
        return True

    def _fetch_completed(self, stripe_id: int, success: bool) -> None:
        log.debug("Fetch completed for stripe %d, success=%s", stripe_id, success)
        self._stripe_states.pop(stripe_id, None)
        allocated = self._allocated.pop(stripe_id, None)
        if allocated is not None:
            self._pool.return_buffer(allocated[1])
        else:
            log.error("No buffer allocated for stripe %d on completion", stripe_id)
        self._finished.append((stripe_id, success))