"""Sector encryption layered over another block device (AES-256-XTS)."""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .device import SECTOR_SIZE, BlockDevice, Completion, InvalidParameterError, IoChannel

log = logging.getLogger(__name__)

KEY_SIZE = 32
NONCE_SIZE = 12


class CipherMethod(enum.Enum):
    """How the data keys handed to a crypt device are themselves protected."""

    NONE = "none"
    AES256_GCM = "aes256-gcm"


@dataclass
class KeyEncryptionCipher:
    """Parameters for unwrapping the XTS data keys."""

    method: CipherMethod = CipherMethod.NONE
    key: bytes | None = None
    init_vector: bytes | None = None
    auth_data: bytes | None = None


@dataclass
class _ReadRequest:
    sector_offset: int
    sector_count: int
    buf: bytearray


class CryptIoChannel(IoChannel):
    """Encrypts writes before passing them on and decrypts completed reads."""

    def __init__(self, base: IoChannel, key1: bytes, key2: bytes) -> None:
        self._base = base
        self._key1 = bytes(key1)
        self._key2 = bytes(key2)
        self._read_requests: dict[int, _ReadRequest] = {}

    def initial_tweak(self, sector: int) -> bytes:
        """Eight zero bytes followed by the sector number, little-endian."""
        return bytes(8) + sector.to_bytes(8, "little")

    def _cipher(self, sector: int) -> Cipher:
        return Cipher(
            algorithms.AES(self._key1 + self._key2),
            modes.XTS(self.initial_tweak(sector)),
        )

    def _transform(self, buf: bytearray, sector_start: int, sector_count: int, encrypt: bool) -> None:
        view = memoryview(buf)
        for i in range(sector_count):
            sector = sector_start + i
            part = view[i * SECTOR_SIZE : (i + 1) * SECTOR_SIZE]
            cipher = self._cipher(sector)
            ctx = cipher.encryptor() if encrypt else cipher.decryptor()
            part[:] = ctx.update(part) + ctx.finalize()

    def encrypt(self, buf: bytearray, sector_start: int, sector_count: int) -> None:
        """Encrypt ``sector_count`` sectors of ``buf`` in place."""
        self._transform(buf, sector_start, sector_count, encrypt=True)

    def decrypt(self, buf: bytearray, sector_start: int, sector_count: int) -> None:
        """Decrypt ``sector_count`` sectors of ``buf`` in place."""
        self._transform(buf, sector_start, sector_count, encrypt=False)

    def add_read(self, sector_offset, sector_count, buf, request_id):
        self._read_requests[request_id] = _ReadRequest(sector_offset, sector_count, buf)
        self._base.add_read(sector_offset, sector_count, buf, request_id)

    def add_write(self, sector_offset, sector_count, buf, request_id):
        self.encrypt(buf, sector_offset, sector_count)
        self._base.add_write(sector_offset, sector_count, buf, request_id)

    def add_flush(self, request_id):
        self._base.add_flush(request_id)

    def submit(self):
        self._base.submit()

    def poll(self) -> list[Completion]:
        results = []
        for request_id, success in self._base.poll():
            req = self._read_requests.pop(request_id, None)
            if req is not None and success:
                self.decrypt(req.buf, req.sector_offset, req.sector_count)
            results.append((request_id, success))
        return results

    def busy(self):
        return self._base.busy()


class CryptBlockDevice(BlockDevice):
    """A block device whose sectors are stored encrypted on ``base``."""

    def __init__(self, base: BlockDevice, key1: bytes, key2: bytes, kek: KeyEncryptionCipher) -> None:
        self._base = base
        self.key1, self.key2 = decrypt_keys(key1, key2, kek)

    def create_channel(self) -> IoChannel:
        return CryptIoChannel(self._base.create_channel(), self.key1, self.key2)

    def sector_count(self) -> int:
        return self._base.sector_count()


def _invalid(description: str) -> InvalidParameterError:
    log.error("%s", description)
    return InvalidParameterError(description)


def decrypt_keys(key1: bytes, key2: bytes, kek: KeyEncryptionCipher) -> tuple[bytes, bytes]:
    """Return the clear XTS keys, unwrapping them with ``kek`` if needed."""
    if kek.method is CipherMethod.NONE:
        if len(key1) != KEY_SIZE or len(key2) != KEY_SIZE:
            raise _invalid("Key length must be 32 bytes")
        return bytes(key1), bytes(key2)

    if kek.key is None:
        raise InvalidParameterError("Key is required")
    if kek.init_vector is None:
        raise InvalidParameterError("Initialization vector is required")
    if kek.auth_data is None:
        raise InvalidParameterError("Authentication data is required")

    if len(kek.key) != KEY_SIZE:
        raise _invalid("Failed to initialize cipher: Invalid length")
    cipher = AESGCM(bytes(kek.key))

    if len(kek.init_vector) != NONCE_SIZE:
        raise _invalid("Initial vector must be exactly 12 bytes")
    nonce = bytes(kek.init_vector)

    clear1 = decrypt_block(cipher, nonce, kek.auth_data, key1)
    clear2 = decrypt_block(cipher, nonce, kek.auth_data, key2)
    return clear1, clear2


def decrypt_block(cipher: AESGCM, nonce: bytes, auth_data: bytes, enc: bytes) -> bytes:
    """Decrypt and authenticate one wrapped 32-byte key."""
    try:
        plain = cipher.decrypt(bytes(nonce), bytes(enc), bytes(auth_data))
    except (InvalidTag, ValueError) as e:
        raise _invalid(f"Failed to decrypt key: {e or 'aead::Error'}") from e
    if len(plain) != KEY_SIZE:
        raise _invalid("Decrypted key must be exactly 32 bytes")
    return plain