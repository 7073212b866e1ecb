import pytest

from ubiblk.device import (
    SECTOR_SIZE,
    DeviceIoError,
    InvalidParameterError,
    IoChannel,
    MemoryBlockDevice,
    MetadataError,
)
from ubiblk.metadata import (
    UBI_MAGIC,
    SharedMetadataState,
    UbiMetadata,
    init_metadata,
    load_metadata,
)


def test_ubi_metadata_serialization():
    stripes = 20
    metadata = UbiMetadata.create(9, stripes, stripes)
    for i in range(stripes):
        metadata.stripe_headers[i] = i * 2

    size = metadata.metadata_size()
    buf_size = -(-size // SECTOR_SIZE) * SECTOR_SIZE
    buf = bytearray(buf_size)
    metadata.write_to_buf(memoryview(buf)[:size])

    loaded = UbiMetadata.from_bytes(buf[:size])
    assert loaded.magic == metadata.magic
    assert loaded.version_major == metadata.version_major
    assert loaded.version_minor == metadata.version_minor
    assert loaded.stripe_sector_count_shift == metadata.stripe_sector_count_shift
    assert list(loaded.stripe_headers) == list(metadata.stripe_headers)


def test_new_marks_stripes_past_image_as_fetched():
    metadata = UbiMetadata.create(9, 10, 4)
    assert list(metadata.stripe_headers[:4]) == [0] * 4
    assert list(metadata.stripe_headers[4:]) == [1] * 6


def test_to_bytes_layout():
    metadata = UbiMetadata.create(11, 3, 1)
    data = metadata.to_bytes()
    assert data[:9] == b"BDEV_UBI\0"
    assert data[9:13] == b"\0\0\0\0"
    assert data[13] == 11
    assert len(data) == SECTOR_SIZE + 3
    assert data[SECTOR_SIZE:] == bytes([0, 1, 1])


def test_sizes():
    metadata = UbiMetadata.create(6, 7, 7)
    assert metadata.stripe_size() == 64
    assert metadata.stripe_count() == 7
    assert metadata.metadata_size() == SECTOR_SIZE + 7


def test_write_to_buf_too_small():
    metadata = UbiMetadata.create(9, 4, 4)
    with pytest.raises(ValueError):
        metadata.write_to_buf(bytearray(SECTOR_SIZE))


def test_from_bytes_too_small():
    with pytest.raises(MetadataError):
        UbiMetadata.from_bytes(b"\0" * 100)


def test_shared_state():
    metadata = UbiMetadata.create(11, 8, 4)
    state = SharedMetadataState(metadata)
    assert state.stripe_sector_count() == 2048
    assert state.sector_to_stripe_id(2047) == 0
    assert state.sector_to_stripe_id(2048) == 1
    assert not state.stripe_fetched(0)
    assert state.stripe_fetched(5)
    assert not state.stripe_written(5)

    state.set_stripe_header(2, 0b10)
    assert state.stripe_written(2)
    assert not state.stripe_fetched(2)
    state.set_stripe_header(2, 0b11)
    assert state.stripe_written(2) and state.stripe_fetched(2)


def test_init_and_load_round_trip():
    dev = MemoryBlockDevice(8 * 1024)
    metadata = UbiMetadata.create(11, 16, 10)
    init_metadata(metadata, dev.create_channel())
    assert dev.flushes() == 1
    assert dev.read(0, 9) == UBI_MAGIC

    loaded = load_metadata(dev.create_channel(), dev.sector_count())
    assert loaded.stripe_sector_count_shift == 11
    assert loaded.stripe_count() == dev.sector_count() * SECTOR_SIZE - SECTOR_SIZE
    assert bytes(loaded.stripe_headers[:16]) == bytes(metadata.stripe_headers)


def test_load_bad_magic():
    dev = MemoryBlockDevice(4 * SECTOR_SIZE)
    with pytest.raises(MetadataError):
        load_metadata(dev.create_channel(), dev.sector_count())


def test_load_read_failure():
    dev = MemoryBlockDevice(2 * SECTOR_SIZE)
    with pytest.raises(MetadataError):
        load_metadata(dev.create_channel(), 4)


def test_load_too_large():
    dev = MemoryBlockDevice(SECTOR_SIZE)
    with pytest.raises(InvalidParameterError):
        load_metadata(dev.create_channel(), 2**32)


def test_init_write_failure():
    dev = MemoryBlockDevice(SECTOR_SIZE)
    metadata = UbiMetadata.create(11, 16, 16)
    with pytest.raises(DeviceIoError):
        init_metadata(metadata, dev.create_channel())


class _WrongIdChannel(IoChannel):
    def __init__(self):
        self._done = []

    def add_read(self, sector_offset, sector_count, buf, request_id):
        self._done.append((request_id, True))

    def add_write(self, sector_offset, sector_count, buf, request_id):
        self._done.append((request_id + 7, True))

    def add_flush(self, request_id):
        self._done.append((request_id, True))

    def submit(self):
        pass

    def poll(self):
        done, self._done = self._done, []
        return done

    def busy(self):
        return False


def test_init_unexpected_completion_id():
    with pytest.raises(DeviceIoError, match="Unexpected ID"):
        init_metadata(UbiMetadata.create(9, 2, 2), _WrongIdChannel())