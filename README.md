# ubiblk

Building blocks for a virtual disk backend. Each one is a small layer, and the
layers stack on top of each other.

- **Devices backed by a file or by memory.** `SyncBlockDevice`
  (`ubiblk.device`) serves 512-byte sectors from a regular file. It opens the
  file read-write or read-only. `MemoryBlockDevice` keeps its sectors in a
  `bytearray`. It counts its successful reads, writes and flushes in
  `metrics`.
- **Encryption.** `CryptBlockDevice` (`ubiblk.crypt`) encrypts every sector
  with XTS-AES-256 and uses the sector number as the tweak. You can give its
  two data keys in the clear. You can also give them wrapped with AES-256-GCM
  under a key encryption key (`KeyEncryptionCipher`).
- **Lazy fetching.** `LazyBlockDevice` (`ubiblk.lazy_device`) fills a target
  device from a source device, one stripe at a time, when a stripe is first
  used. A background worker (`BgWorker`, `ubiblk.bgworker`) copies the
  stripes. It records which stripes are fetched, and which are written, in a
  metadata area (`UbiMetadata`, `ubiblk.metadata`) on a separate device. When
  a worker starts, it loads that area, so stripes that were already fetched
  are not copied again.

All devices share the same interface:

1. `BlockDevice.create_channel()` returns an `IoChannel`.
2. On the channel, queue requests with `add_read`, `add_write` and
   `add_flush`. Each request takes a request id that you choose.
3. Call `submit()`.
4. Collect `(request_id, success)` pairs from `poll()` until `busy()` returns
   false.

## Installation

```
pip install ubiblk
```

The package needs Python 3.10 or later. Its only dependency is `cryptography`.

## Reading and writing sectors

```python
from ubiblk.device import SyncBlockDevice

device = SyncBlockDevice("disk.raw", False)   # the file size must be a multiple of 512
channel = device.create_channel()

buf = bytearray(b"\xab" * 512)
channel.add_write(0, 1, buf, 1)
channel.add_flush(2)                           # flushes and fsyncs the file
channel.submit()
print(channel.poll())                          # [(1, True), (2, True)]
```

A failed request does not raise. It appears in `poll()` with
`success=False`, for example after a read past the end of the file, or after a
write to a read-only device.

Setting up a device can raise. All of these errors derive from
`BlockDeviceError`:

- `InvalidParameterError`
- `DeviceIoError`
- `MetadataError`
- `ChannelError`

For example, `SyncBlockDevice` raises `DeviceIoError` for a missing file, and
`InvalidParameterError` when the file size is not a multiple of 512 bytes.

## Encrypting a device

```python
from ubiblk.crypt import CryptBlockDevice, KeyEncryptionCipher
from ubiblk.device import MemoryBlockDevice

base = MemoryBlockDevice(1024 * 1024)
key1 = bytes(32)           # example keys only
key2 = bytes([1]) * 32
encrypted = CryptBlockDevice(base, key1, key2, KeyEncryptionCipher())
```

The default `KeyEncryptionCipher` uses `CipherMethod.NONE`, which takes both
keys as plain 32-byte values.

With `CipherMethod.AES256_GCM`, the keys are wrapped and the cipher needs:

- `key`: 32 bytes
- `init_vector`: 12 bytes
- `auth_data`

Each wrapped key must then decrypt to exactly 32 bytes. A missing field, a
wrong length or a failed decryption raises `InvalidParameterError`.

## Lazy stripe fetching

```python
from ubiblk.bgworker import BgWorker
from ubiblk.device import MemoryBlockDevice
from ubiblk.lazy_device import LazyBlockDevice
from ubiblk.metadata import UbiMetadata, init_metadata

source = MemoryBlockDevice(4 * 2048 * 512)
target = MemoryBlockDevice(4 * 2048 * 512)
metadata_dev = MemoryBlockDevice(8 * 1024 * 1024)

# 2**11 sectors per stripe, 4 stripes
init_metadata(UbiMetadata.create(11, 4, 4), metadata_dev.create_channel())

worker = BgWorker(source, target, metadata_dev, 4096)
lazy = LazyBlockDevice(target, None, worker, False)
```

There are two ways to drive the worker:

- Run `worker.run()` in a thread of its own. It stops when it receives
  `BgWorkerRequest(RequestKind.SHUTDOWN)` on the queue returned by
  `worker.req_sender()`.
- Call `worker.receive_requests(False)` and `worker.update()` from your own
  loop.

A read or write to a stripe that has not been fetched yet waits in the
channel. It goes ahead once the worker has fetched the stripe.

The second argument of `LazyBlockDevice` can be an image device. If you give
one, reads of unfetched stripes are served from the image directly.

With `track_written=True`, a write also waits until the metadata marks its
stripes as written.

## Replaying an I/O log

`ubiblk-replay-log` plays a recorded I/O log against a disk file:

```
ubiblk-replay-log --log io.log --disk disk.raw
```

Each entry in the log takes four lines, in this order:

1. `WRITE` or `READ`
2. the starting sector
3. the length in bytes
4. the data, in hex

The command applies each write to the disk. For each read, it compares the
disk's contents with the logged data and logs the first byte that differs.

The command exits with status 1 in any of these cases:

- the log is malformed
- a file cannot be opened
- the disk cannot be read or written

From Python, `ubiblk.replay.replay_log(lines, disk_file)` does the same work.
It returns the `(line_number, index)` of every mismatching read and raises
`ReplayError` on a malformed log.

## What the package does not do

The package provides device layers and the metadata format. It does not serve
a disk to a virtual machine, and it has no backend server and no
configuration file. Apart from the log replay, it has no command. For
example, there is no command to initialise metadata; to write a metadata
area, call `init_metadata` from Python. All I/O is synchronous: channels
complete requests as they are added.

## Running the tests

```
pip install "ubiblk[test]"
pytest
```