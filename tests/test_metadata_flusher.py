import time

import pytest

from ubiblk.device import (
    SECTOR_SIZE,
    InvalidParameterError,
    MemoryBlockDevice,
    MetadataError,
)
from ubiblk.metadata import UbiMetadata, init_metadata, load_metadata
from ubiblk.metadata_flusher import MetadataFlusher


def init_metadata_device():
    metadata = UbiMetadata.create(11, 16, 16)
    device = MemoryBlockDevice(8 * 1024)
    init_metadata(metadata, device.create_channel())
    return device


def wait_for_completion(flusher):
    start = time.monotonic()
    while time.monotonic() - start < 1 and flusher.busy():
        flusher.update()


def test_metadata_flusher():
    metadata_dev = init_metadata_device()
    flusher = MetadataFlusher(metadata_dev, 8 * 1024)
    state = flusher.shared_state()

    flusher.set_stripe_fetched(5)
    flusher.set_stripe_fetched(6)

    for stripe_id in (5, 6):
        assert not state.stripe_fetched(stripe_id)
        assert not state.stripe_written(stripe_id)

    wait_for_completion(flusher)

    for stripe_id in (5, 6):
        assert state.stripe_fetched(stripe_id)
        assert not state.stripe_written(stripe_id)

    flusher.set_stripe_written(7)
    assert not state.stripe_written(7)
    assert not state.stripe_fetched(7)

    wait_for_completion(flusher)

    assert not state.stripe_fetched(7)
    assert state.stripe_written(7)


def test_source_stripe_count_too_large():
    metadata_dev = init_metadata_device()
    with pytest.raises(InvalidParameterError):
        MetadataFlusher(metadata_dev, 1024 * 1024 * 1024)


def test_not_busy_initially_and_stripe_sector_count():
    flusher = MetadataFlusher(init_metadata_device(), 8 * 1024)
    assert flusher.busy() is False
    assert flusher.stripe_sector_count() == 1 << 11


def test_busy_while_changes_pending():
    flusher = MetadataFlusher(init_metadata_device(), 8 * 1024)
    flusher.set_stripe_fetched(1)
    assert flusher.busy() is True
    wait_for_completion(flusher)
    assert flusher.busy() is False


def test_changes_are_persisted_and_flushed():
    metadata_dev = init_metadata_device()
    flushes_before = metadata_dev.flushes()
    flusher = MetadataFlusher(metadata_dev, 8 * 1024)

    flusher.set_stripe_fetched(5)
    flusher.set_stripe_written(7)
    wait_for_completion(flusher)

    assert metadata_dev.read(SECTOR_SIZE + 5, 1) == b"\x01"
    assert metadata_dev.read(SECTOR_SIZE + 7, 1) == b"\x02"
    assert metadata_dev.flushes() == flushes_before + 2

    reloaded = load_metadata(metadata_dev.create_channel(), metadata_dev.sector_count())
    assert reloaded.stripe_headers[5] == 0b01
    assert reloaded.stripe_headers[7] == 0b10
    assert reloaded.stripe_headers[6] == 0


def test_fetched_and_written_combine():
    flusher = MetadataFlusher(init_metadata_device(), 8 * 1024)
    state = flusher.shared_state()
    flusher.set_stripe_fetched(3)
    flusher.set_stripe_written(3)
    wait_for_completion(flusher)
    assert state.stripe_fetched(3)
    assert state.stripe_written(3)


def test_same_sector_updates_are_serialised():
    metadata_dev = init_metadata_device()
    flusher = MetadataFlusher(metadata_dev, 8 * 1024)
    state = flusher.shared_state()
    flusher.set_stripe_fetched(0)
    flusher.set_stripe_fetched(1)
    flusher.update()
    # Only the first change has been written; the second waits for its sector.
    assert metadata_dev.read(SECTOR_SIZE, 2) == b"\x01\x00"
    assert not state.stripe_fetched(1)
    wait_for_completion(flusher)
    assert metadata_dev.read(SECTOR_SIZE, 2) == b"\x01\x01"
    assert state.stripe_fetched(0) and state.stripe_fetched(1)


def test_bad_magic_is_rejected():
    device = MemoryBlockDevice(8 * 1024)
    with pytest.raises(MetadataError, match="(?i)magic"):
        MetadataFlusher(device, 8 * 1024)