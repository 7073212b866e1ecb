"""A block device whose stripes are copied from a source on first use."""

from __future__ import annotations

import enum
import logging
import queue
from collections import deque
from dataclasses import dataclass

from .bgworker import BgWorker, BgWorkerRequest, RequestKind
from .device import BlockDevice, BlockDeviceError, ChannelError, Completion, IoChannel
from .metadata import SharedMetadataState

log = logging.getLogger(__name__)


class _Kind(enum.Enum):
    IN = enum.auto()
    OUT = enum.auto()


@dataclass
class _RWRequest:
    request_id: int
    kind: _Kind
    sector_offset: int
    sector_count: int
    buf: bytearray
    stripe_first: int
    stripe_last: int

    def stripes(self) -> range:
        return range(self.stripe_first, self.stripe_last + 1)


class LazyIoChannel(IoChannel):
    """Holds back I/O on stripes not yet fetched until the background worker has them."""

    def __init__(
        self,
        base: IoChannel,
        image: IoChannel | None,
        bgworker_queue: queue.Queue[BgWorkerRequest],
        metadata_state: SharedMetadataState,
        track_written: bool,
    ) -> None:
        self._base = base
        self._image = image
        self._bgworker_queue = bgworker_queue
        self._state = metadata_state
        self._track_written = track_written
        self._queued: deque[_RWRequest] = deque()
        self._finished: list[Completion] = []
        self._fetches_requested: set[int] = set()

    def _make_request(self, kind, sector_offset, sector_count, buf, request_id) -> _RWRequest:
        return _RWRequest(
            request_id=request_id,
            kind=kind,
            sector_offset=sector_offset,
            sector_count=sector_count,
            buf=buf,
            stripe_first=self._state.sector_to_stripe_id(sector_offset),
            stripe_last=self._state.sector_to_stripe_id(sector_offset + sector_count - 1),
        )

    def _stripes_fetched(self, request: _RWRequest) -> bool:
        return all(self._state.stripe_fetched(s) for s in request.stripes())

    def _stripes_written(self, request: _RWRequest) -> bool:
        return all(self._state.stripe_written(s) for s in request.stripes())

    def _send(self, req: BgWorkerRequest) -> None:
        try:
            self._bgworker_queue.put_nowait(req)
        except queue.Full as e:
            log.error("Failed to send request for stripe %s: %s", req.stripe_id, e)
            raise ChannelError(f"Failed to send request for stripe {req.stripe_id}") from e

    def _start_stripe_fetches(self, request: _RWRequest) -> None:
        for stripe_id in request.stripes():
            if not self._state.stripe_fetched(stripe_id) and stripe_id not in self._fetches_requested:
                self._send(BgWorkerRequest(RequestKind.FETCH, stripe_id))
                self._fetches_requested.add(stripe_id)

    def _start_stripe_set_written(self, request: _RWRequest) -> None:
        for stripe_id in request.stripes():
            if not self._state.stripe_written(stripe_id):
                self._send(BgWorkerRequest(RequestKind.SET_WRITTEN, stripe_id))

    def _process_queued(self) -> None:
        added: list[int] = []
        while self._queued:
            front = self._queued[0]
            if not self._stripes_fetched(front):
                break
            if self._track_written and front.kind is _Kind.OUT and not self._stripes_written(front):
                break
            self._fetches_requested.difference_update(front.stripes())
            request = self._queued.popleft()
            if request.kind is _Kind.IN:
                self._base.add_read(
                    request.sector_offset, request.sector_count, request.buf, request.request_id
                )
            else:
                self._base.add_write(
                    request.sector_offset, request.sector_count, request.buf, request.request_id
                )
            added.append(request.request_id)

        if added:
            try:
                self._base.submit()
            except BlockDeviceError as e:
                log.error("Failed to submit %d queued requests: %s", len(added), e)
                self._finished.extend((request_id, False) for request_id in added)

    def add_read(self, sector_offset, sector_count, buf, request_id):
        request = self._make_request(_Kind.IN, sector_offset, sector_count, buf, request_id)
        if self._stripes_fetched(request):
            self._base.add_read(sector_offset, sector_count, buf, request_id)
        elif self._image is not None:
            self._image.add_read(sector_offset, sector_count, buf, request_id)
        else:
            try:
                self._start_stripe_fetches(request)
            except ChannelError as e:
                log.error(
                    "Failed to send fetch request for stripe range %d-%d: %s",
                    request.stripe_first, request.stripe_last, e,
                )
                self._finished.append((request_id, False))
                return
            self._queued.append(request)

    def add_write(self, sector_offset, sector_count, buf, request_id):
        request = self._make_request(_Kind.OUT, sector_offset, sector_count, buf, request_id)
        can_start = self._stripes_fetched(request) and (
            not self._track_written or self._stripes_written(request)
        )
        if can_start:
            self._base.add_write(sector_offset, sector_count, buf, request_id)
            return

        try:
            self._start_stripe_fetches(request)
        except ChannelError as e:
            log.error(
                "Failed to send fetch request for stripe range %d-%d: %s",
                request.stripe_first, request.stripe_last, e,
            )
            self._finished.append((request_id, False))
            return

        if self._track_written:
            try:
                self._start_stripe_set_written(request)
            except ChannelError as e:
                log.error(
                    "Failed to send set written request for stripe range %d-%d: %s",
                    request.stripe_first, request.stripe_last, e,
                )
                self._finished.append((request_id, False))
                return

        self._queued.append(request)

    def add_flush(self, request_id):
        self._base.add_flush(request_id)

    def submit(self):
        if self._image is not None:
            self._image.submit()
        self._base.submit()

    def poll(self) -> list[Completion]:
        self._process_queued()
        results, self._finished = self._finished, []
        results.extend(self._base.poll())
        if self._image is not None:
            results.extend(self._image.poll())
        return results

    def busy(self):
        return (
            self._base.busy()
            or (self._image is not None and self._image.busy())
            or bool(self._queued)
        )


class LazyBlockDevice(BlockDevice):
    """A target device filled stripe by stripe by a background worker."""

    def __init__(
        self,
        base: BlockDevice,
        image: BlockDevice | None,
        bgworker: BgWorker,
        track_written: bool,
    ) -> None:
        self._base = base
        self._image = image
        self._bgworker = bgworker
        self._track_written = track_written

    def create_channel(self) -> IoChannel:
        base_channel = self._base.create_channel()
        image_channel = self._image.create_channel() if self._image is not None else None
        return LazyIoChannel(
            base_channel,
            image_channel,
            self._bgworker.req_sender(),
            self._bgworker.shared_state(),
            self._track_written,
        )

    def sector_count(self) -> int:
        return self._base.sector_count()