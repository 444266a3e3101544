"""MIFARE Classic (Mini, 1k, 4k) tags: memory layout, access bits and commands."""

from __future__ import annotations

import struct
from dataclasses import dataclass
from enum import Enum, IntFlag
from typing import Optional, Tuple

from .transport import (
    AuthenticationError,
    BaudRate,
    Device,
    Modulation,
    NfcError,
    TagStateError,
    Target,
    TransceiveError,
)

_MC_OK = 0x0A
_MC_AUTH_A = 0x60
_MC_AUTH_B = 0x61
_MC_READ = 0x30
_MC_WRITE = 0xA0
_MC_TRANSFER = 0xB0
_MC_DECREMENT = 0xC0
_MC_INCREMENT = 0xC1
_MC_RESTORE = 0xC2

BLOCK_SIZE = 16
KEY_SIZE = 6

NFCFORUM_PUBLIC_KEY_A = bytes((0xD3, 0xF7, 0xD3, 0xF7, 0xD3, 0xF7))

# Indexed by the C3C2C1 access bits of a data block.  High nibble: key A
# (read, write, decrement, increment); low nibble: key B.
_DATA_ACCESS_PERMISSIONS = (0xFF, 0x8C, 0x88, 0xAF, 0xAA, 0x08, 0x0C, 0x00)

# Indexed by the C3C2C1 access bits of a trailer block.  Three groups of four
# bits (key A, access bits, key B), each: read by A, read by B, write by A,
# write by B.
_TRAILER_ACCESS_PERMISSIONS = (0x28A, 0x1C1, 0x088, 0x0C0, 0x2AA, 0x0D0, 0x1D1, 0x0C0)

_DEFAULT_TRAILER_BLOCK = bytes(
    (0xFF,) * 6 + (0xFF, 0x07, 0x80) + (0x69,) + (0xFF,) * 6
)

_MINI_SAKS = frozenset({0x09})
_CLASSIC_1K_SAKS = frozenset({0x08, 0x28, 0x68, 0x88})
_CLASSIC_4K_SAKS = frozenset({0x18, 0x38})


class ClassicTagType(Enum):
    MINI = "mifare_mini"
    CLASSIC_1K = "mifare_classic_1k"
    CLASSIC_4K = "mifare_classic_4k"


class KeyType(Enum):
    A = "A"
    B = "B"


class DataPermission(IntFlag):
    """Operations on a data block, as seen with key B (key A is shifted by 4)."""

    READ = 0x8
    WRITE = 0x4
    DECREMENT = 0x2
    INCREMENT = 0x1


class TrailerPermission(IntFlag):
    """Operations on a trailer block, as seen with key B (key A is shifted by 1)."""

    READ_KEYA = 0x400
    WRITE_KEYA = 0x100
    READ_ACCESS_BITS = 0x040
    WRITE_ACCESS_BITS = 0x010
    READ_KEYB = 0x004
    WRITE_KEYB = 0x001


def is_mini(target: Target) -> bool:
    """Whether the target looks like a MIFARE Mini."""
    return target.modulation is Modulation.ISO14443A and target.sak in _MINI_SAKS


def is_classic_1k(target: Target) -> bool:
    """Whether the target looks like a MIFARE Classic 1k."""
    return target.modulation is Modulation.ISO14443A and target.sak in _CLASSIC_1K_SAKS


def is_classic_4k(target: Target) -> bool:
    """Whether the target looks like a MIFARE Classic 4k."""
    return target.modulation is Modulation.ISO14443A and target.sak in _CLASSIC_4K_SAKS


def block_sector(block: int) -> int:
    """The sector holding a block."""
    if block < 32 * 4:
        return block // 4
    return 32 + (block - 32 * 4) // 16


def sector_first_block(sector: int) -> int:
    """The first block of a sector."""
    if sector < 32:
        return sector * 4
    return 32 * 4 + (sector - 32) * 16


def sector_block_count(sector: int) -> int:
    """The number of blocks in a sector."""
    return 4 if sector < 32 else 16


def sector_last_block(sector: int) -> int:
    """The last block of a sector, i.e. its trailer block."""
    return sector_first_block(sector) + sector_block_count(sector) - 1


def _check_key(key: bytes, name: str) -> bytes:
    key = bytes(key)
    if len(key) != KEY_SIZE:
        raise ValueError(f"{name} must be {KEY_SIZE} bytes long")
    return key


def _check_access_bits(value: int, name: str) -> int:
    if not 0 <= value <= 7:
        raise ValueError(f"{name} must be in range 0..7")
    return value


def trailer_block(
    key_a: bytes, ab_0: int, ab_1: int, ab_2: int, ab_tb: int, gpb: int, key_b: bytes
) -> bytes:
    """Build a sector trailer block from keys, C3C2C1 access bits and general purpose byte."""
    key_a = _check_key(key_a, "key_a")
    key_b = _check_key(key_b, "key_b")
    groups = (
        _check_access_bits(ab_0, "ab_0"),
        _check_access_bits(ab_1, "ab_1"),
        _check_access_bits(ab_2, "ab_2"),
        _check_access_bits(ab_tb, "ab_tb"),
    )
    access_bits = 0
    for shift, bits in enumerate(groups):
        spread = (((bits & 0x4) >> 2) << 8) | (((bits & 0x2) >> 1) << 4) | (bits & 0x1)
        access_bits |= spread << shift
    packed = (access_bits << 12) | (~access_bits & 0xFFF)
    return key_a + packed.to_bytes(3, "little") + bytes((gpb & 0xFF,)) + key_b


def encode_value_block(value: int, address: int) -> bytes:
    """Lay out a signed 32-bit value and a one-byte address as a value block."""
    if not -(2**31) <= value < 2**31:
        raise ValueError("value must fit in a signed 32-bit integer")
    if not 0 <= address <= 0xFF:
        raise ValueError("address must fit in one byte")
    raw = value & 0xFFFFFFFF
    inverted = address ^ 0xFF
    return struct.pack("<III4B", raw, raw ^ 0xFFFFFFFF, raw, address, inverted, address, inverted)


def decode_value_block(data: bytes) -> Tuple[int, int]:
    """Return (value, address) from a value block, checking its redundancy."""
    if len(data) != BLOCK_SIZE:
        raise ValueError(f"a value block is {BLOCK_SIZE} bytes long")
    value, value_inv, value_copy, adr, adr_inv, adr_copy, adr_inv_copy = struct.unpack(
        "<III4B", bytes(data)
    )
    if value != value_inv ^ 0xFFFFFFFF or value != value_copy:
        raise ValueError("inconsistent value in value block")
    if adr != adr_inv ^ 0xFF or adr != adr_copy or adr_inv != adr_inv_copy:
        raise ValueError("inconsistent address in value block")
    (signed,) = struct.unpack("<i", bytes(data[:4]))
    return signed, adr


def _access_bits_shift(block: int, trailer: int) -> int:
    if block == trailer:
        return 3
    if block < 128:
        return block % 4
    return ((block - 128) % 16) // 5


def _key_shift(key_type: Optional[KeyType], shift: int) -> int:
    return shift if key_type is KeyType.A else 0


@dataclass
class _AccessBitsCache:
    trailer: Optional[int] = None
    sector_bits: int = 0
    block: Optional[int] = None
    block_bits: int = 0


class ClassicTag:
    """A MIFARE Classic tag reached through a reader."""

    def __init__(self, device: Device, target: Target, tag_type: ClassicTagType):
        self.device = device
        self.target = target
        self.tag_type = tag_type
        self.active = False
        self.last_authentication_key_type: Optional[KeyType] = None
        self._cache = _AccessBitsCache()

    # Connection handling

    def _require_active(self) -> None:
        if not self.active:
            raise TagStateError("tag is not connected")

    def connect(self) -> None:
        """Select the tag on the reader."""
        if self.active:
            raise TagStateError("tag is already connected")
        try:
            self.device.select_passive_target(Modulation.ISO14443A, BaudRate.BR_106, self.target.uid)
        except NfcError as exc:
            raise TransceiveError("cannot select tag") from exc
        self.active = True

    def disconnect(self) -> None:
        """Release the tag."""
        self._require_active()
        try:
            self.device.deselect_target()
        except NfcError as exc:
            raise TransceiveError("cannot deselect tag") from exc
        self.active = False

    def _transceive(self, command: bytes, disconnect_on_error: bool = False) -> bytes:
        try:
            return bytes(self.device.transceive(command, 0))
        except AuthenticationError:
            if disconnect_on_error:
                self.active = False
            raise
        except NfcError as exc:
            if disconnect_on_error:
                self.active = False
            raise TransceiveError("transceive failed") from exc

    @staticmethod
    def _status(response: bytes) -> int:
        return response[0] if response else 0

    # Card commands

    def authenticate(self, block: int, key: bytes, key_type: KeyType) -> int:
        """Authenticate the sector holding ``block``; return the reader's status byte or 0."""
        self._require_active()
        key = _check_key(key, "key")
        opcode = _MC_AUTH_A if key_type is KeyType.A else _MC_AUTH_B
        command = bytes((opcode, block)) + key + self.target.auth_uid
        response = self._transceive(command, disconnect_on_error=True)
        self._cache.trailer = None
        self._cache.sector_bits = 0
        self.last_authentication_key_type = key_type
        return self._status(response)

    def read(self, block: int) -> bytes:
        """Read one 16-byte block."""
        self._require_active()
        response = self._transceive(bytes((_MC_READ, block)))
        if len(response) != BLOCK_SIZE:
            raise TransceiveError(f"expected {BLOCK_SIZE} bytes, got {len(response)}")
        return response

    def write(self, block: int, data: bytes) -> int:
        """Write one 16-byte block; return the reader's status byte or 0."""
        self._require_active()
        data = bytes(data)
        if len(data) != BLOCK_SIZE:
            raise ValueError(f"a block is {BLOCK_SIZE} bytes long")
        return self._status(self._transceive(bytes((_MC_WRITE, block)) + data))

    def init_value(self, block: int, value: int, address: int) -> int:
        """Format ``block`` as a value block."""
        return self.write(block, encode_value_block(value, address))

    def read_value(self, block: int) -> Tuple[int, int]:
        """Read a value block; return (value, address)."""
        data = self.read(block)
        try:
            return decode_value_block(data)
        except ValueError as exc:
            raise TransceiveError(str(exc)) from exc

    def _value_operation(self, opcode: int, block: int, amount: int) -> int:
        self._require_active()
        if not 0 <= amount <= 0xFFFFFFFF:
            raise ValueError("amount must fit in an unsigned 32-bit integer")
        command = bytes((opcode, block)) + amount.to_bytes(4, "little")
        return self._status(self._transceive(command))

    def increment(self, block: int, amount: int) -> int:
        """Add ``amount`` to a value block into the internal data register."""
        return self._value_operation(_MC_INCREMENT, block, amount)

    def decrement(self, block: int, amount: int) -> int:
        """Subtract ``amount`` from a value block into the internal data register."""
        return self._value_operation(_MC_DECREMENT, block, amount)

    def restore(self, block: int) -> int:
        """Load a value block into the internal data register."""
        return self._value_operation(_MC_RESTORE, block, 0)

    def transfer(self, block: int) -> int:
        """Store the internal data register into ``block``; 0 on success."""
        self._require_active()
        response = self._transceive(bytes((_MC_TRANSFER, block)))
        # Some readers answer nothing, others a single ACK byte.
        if not response or (len(response) == 1 and response[0] == _MC_OK):
            return 0
        return response[0]

    # Access bits

    def _block_access_bits(self, block: int) -> int:
        if block == 0:
            raise ValueError("the manufacturer block has no usable access bits")
        trailer = sector_last_block(block_sector(block))
        cache = self._cache
        if cache.trailer == trailer:
            sector_bits = cache.sector_bits
        else:
            data = self.read(trailer)
            inverted = data[6] | ((data[7] & 0x0F) << 8) | 0xF000
            sector_bits = ((data[7] & 0xF0) >> 4) | (data[8] << 4)
            if sector_bits != (~inverted & 0xFFFF):
                raise TransceiveError("sector access bits are inconsistent (sector locked)")
            cache.trailer = trailer
            cache.block = None
            cache.sector_bits = sector_bits

        if cache.block == block:
            return cache.block_bits

        mask = 0x0111 << _access_bits_shift(block, trailer)
        bits = 0
        if sector_bits & mask & 0x000F:
            bits |= 0x01
        if sector_bits & mask & 0x00F0:
            bits |= 0x02
        if sector_bits & mask & 0x0F00:
            bits |= 0x04
        cache.block = block
        cache.block_bits = bits
        return bits

    def get_trailer_block_permission(
        self, block: int, permission: TrailerPermission, key_type: KeyType
    ) -> bool:
        """Whether ``key_type`` grants ``permission`` on the trailer ``block``."""
        bits = self._block_access_bits(block)
        if self._cache.trailer != block:
            raise ValueError(f"block {block} is not a trailer block")
        return bool(_TRAILER_ACCESS_PERMISSIONS[bits] & (int(permission) << _key_shift(key_type, 1)))

    def get_data_block_permission(
        self, block: int, permission: DataPermission, key_type: KeyType
    ) -> bool:
        """Whether ``key_type`` grants ``permission`` on the data ``block``."""
        bits = self._block_access_bits(block)
        if self._cache.trailer == block:
            raise ValueError(f"block {block} is a trailer block")
        return bool(_DATA_ACCESS_PERMISSIONS[bits] & (int(permission) << _key_shift(key_type, 4)))

    # Miscellaneous

    def format_sector(self, sector: int) -> None:
        """Reset a sector to factory defaults: zeroed data, default trailer."""
        first = sector_first_block(sector)
        last = sector_last_block(sector)
        if first == 0:
            first = 1  # the manufacturer block is read-only
        key_type = self.last_authentication_key_type

        def permitted(check, block, permission) -> bool:
            try:
                return check(block, permission, key_type)
            except (NfcError, ValueError):
                return False

        for block in range(first, last):
            if not permitted(self.get_data_block_permission, block, DataPermission.WRITE):
                raise PermissionError(f"cannot write block {block}")
        for permission in (
            TrailerPermission.WRITE_KEYA,
            TrailerPermission.WRITE_ACCESS_BITS,
            TrailerPermission.WRITE_KEYB,
        ):
            if not permitted(self.get_trailer_block_permission, last, permission):
                raise PermissionError(f"cannot rewrite trailer block {last}")

        try:
            for block in range(first, last):
                self.write(block, bytes(BLOCK_SIZE))
            self.write(last, _DEFAULT_TRAILER_BLOCK)
        except NfcError as exc:
            raise TransceiveError(f"cannot format sector {sector}") from exc