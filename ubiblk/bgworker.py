"""Background worker that fetches stripes and persists stripe status changes."""

from __future__ import annotations

import enum
import logging
import queue
from dataclasses import dataclass

from .device import BlockDevice
from .metadata import SharedMetadataState
from .metadata_flusher import MetadataFlusher
from .stripe_fetcher import StripeFetcher

log = logging.getLogger(__name__)


class RequestKind(enum.Enum):
    """What a request asks the background worker to do."""

    FETCH = enum.auto()
    SET_WRITTEN = enum.auto()
    SHUTDOWN = enum.auto()


@dataclass(frozen=True)
class BgWorkerRequest:
    """A request to the background worker; ``stripe_id`` is unused for shutdown."""

    kind: RequestKind
    stripe_id: int | None = None


class BgWorker:
    """Drives a stripe fetcher and a metadata flusher from a request queue."""

    def __init__(
        self,
        source_dev: BlockDevice,
        target_dev: BlockDevice,
        metadata_dev: BlockDevice,
        alignment: int,
    ) -> None:
        self._metadata_flusher = MetadataFlusher(metadata_dev, source_dev.sector_count())
        self._stripe_fetcher = StripeFetcher(
            source_dev,
            target_dev,
            self._metadata_flusher.stripe_sector_count(),
            self._metadata_flusher.shared_state(),
            alignment,
        )
        self._requests: queue.Queue[BgWorkerRequest] = queue.Queue()
        self._done = False

    def req_sender(self) -> queue.Queue[BgWorkerRequest]:
        """The queue on which requests for this worker are placed."""
        return self._requests

    def shared_state(self) -> SharedMetadataState:
        return self._metadata_flusher.shared_state()

    def process_request(self, req: BgWorkerRequest) -> None:
        if req.kind is RequestKind.FETCH:
            self._stripe_fetcher.handle_fetch_request(req.stripe_id)
        elif req.kind is RequestKind.SET_WRITTEN:
            self._metadata_flusher.set_stripe_written(req.stripe_id)
        else:
            log.info("Received shutdown request, stopping worker")
            self._done = True

    def receive_requests(self, block: bool) -> None:
        """Process pending requests, first waiting for one if ``block`` is set."""
        if block:
            self.process_request(self._requests.get())
        while True:
            try:
                req = self._requests.get_nowait()
            except queue.Empty:
                break
            self.process_request(req)

    def update(self) -> None:
        """Advance fetches and metadata writes by one step."""
        self._stripe_fetcher.update()
        for stripe_id, success in self._stripe_fetcher.take_finished_fetches():
            if success:
                self._metadata_flusher.set_stripe_fetched(stripe_id)
            else:
                log.error("Stripe %d fetch failed", stripe_id)
        self._metadata_flusher.update()

    def run(self) -> None:
        """Serve requests until a shutdown request arrives."""
        while not self._done:
            busy = self._stripe_fetcher.busy() or self._metadata_flusher.busy()
            self.receive_requests(not busy)
            self.update()