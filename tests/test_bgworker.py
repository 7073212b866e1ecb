import pytest

from ubiblk.bgworker import BgWorker, BgWorkerRequest, RequestKind
from ubiblk.device import SECTOR_SIZE, MemoryBlockDevice
from ubiblk.metadata import UbiMetadata, init_metadata


@pytest.fixture
def devices():
    source = MemoryBlockDevice(1024 * 1024)
    target = MemoryBlockDevice(1024 * 1024)
    metadata_dev = MemoryBlockDevice(1024 * 1024)
    init_metadata(UbiMetadata.create(11, 16, 16), metadata_dev.create_channel())
    return source, target, metadata_dev


def _settle(worker, condition):
    for _ in range(1000):
        worker.update()
        if condition():
            return
    raise AssertionError("worker did not reach the expected state")


def test_bg_worker_shutdown(devices):
    source, target, metadata_dev = devices
    worker = BgWorker(source, target, metadata_dev, 4096)
    sender = worker.req_sender()
    sender.put(BgWorkerRequest(RequestKind.SHUTDOWN))
    worker.run()
    assert sender.empty()


def test_fetch_request_copies_stripe(devices):
    source, target, metadata_dev = devices
    source.write(0, b"stripe-data")
    worker = BgWorker(source, target, metadata_dev, 4096)
    state = worker.shared_state()
    assert not state.stripe_fetched(0)

    worker.process_request(BgWorkerRequest(RequestKind.FETCH, 0))
    _settle(worker, lambda: state.stripe_fetched(0))

    assert target.read(0, 11) == b"stripe-data"
    assert metadata_dev.read(SECTOR_SIZE, 1) == b"\x01"
    assert not state.stripe_written(0)


def test_set_written_request(devices):
    source, target, metadata_dev = devices
    worker = BgWorker(source, target, metadata_dev, 4096)
    state = worker.shared_state()

    worker.process_request(BgWorkerRequest(RequestKind.SET_WRITTEN, 0))
    _settle(worker, lambda: state.stripe_written(0))

    assert not state.stripe_fetched(0)
    assert metadata_dev.read(SECTOR_SIZE, 1) == b"\x02"


def test_receive_requests_without_blocking(devices):
    source, target, metadata_dev = devices
    source.write(0, b"queued")
    worker = BgWorker(source, target, metadata_dev, 4096)
    state = worker.shared_state()
    worker.req_sender().put(BgWorkerRequest(RequestKind.FETCH, 0))

    worker.receive_requests(False)
    assert worker.req_sender().empty()
    _settle(worker, lambda: state.stripe_fetched(0))
    assert target.read(0, 6) == b"queued"


def test_receive_requests_on_empty_queue_returns(devices):
    source, target, metadata_dev = devices
    worker = BgWorker(source, target, metadata_dev, 4096)
    worker.receive_requests(False)
    worker.update()
    assert not worker.shared_state().stripe_fetched(0)