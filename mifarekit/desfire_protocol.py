"""MIFARE DESFire wire format: status codes, framing, file settings and crypto hooks."""

from __future__ import annotations

import errno as _errno
import struct
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import IntEnum
from typing import Optional, Union

from .transport import Modulation, NfcError, Target, TransceiveError

# Longest native command wrapped into an ISO 7816-4 APDU, and longest answer.
MAX_CAPDU_SIZE = 55
MAX_RAPDU_SIZE = 60

MAX_APPLICATION_COUNT = 28
MAX_FILE_COUNT = 32
CMAC_LENGTH = 8

# Access right key numbers with a special meaning.
ACCESS_FREE = 0xE
ACCESS_DENY = 0xF

# Flags combined with a communication mode in the ``mode`` argument of a
# crypto processor.  The low nibble holds the communication mode itself.
MODE_MASK = 0x000F
CMAC_COMMAND = 0x0010
CMAC_VERIFY = 0x0020
MAC_COMMAND = 0x0100
MAC_VERIFY = 0x0200
ENC_COMMAND = 0x1000
NO_CRC = 0x2000

_STANDALONE_DESFIRE = bytes((0x75, 0x77, 0x81, 0x02))
_JCOP_DESFIRE = bytes((0x75, 0xF7, 0xB1, 0x02))
_JCOP3_DESFIRE = bytes((0x78, 0x77, 0x71, 0x02))


class PiccStatus(IntEnum):
    """Status codes returned by a DESFire PICC."""

    OPERATION_OK = 0x00
    NO_CHANGES = 0x0C
    OUT_OF_EEPROM_ERROR = 0x0E
    ILLEGAL_COMMAND_CODE = 0x1C
    INTEGRITY_ERROR = 0x1E
    NO_SUCH_KEY = 0x40
    LENGTH_ERROR = 0x7E
    PERMISSION_ERROR = 0x9D
    PARAMETER_ERROR = 0x9E
    APPLICATION_NOT_FOUND = 0xA0
    APPL_INTEGRITY_ERROR = 0xA1
    AUTHENTICATION_ERROR = 0xAE
    ADDITIONAL_FRAME = 0xAF
    BOUNDARY_ERROR = 0xBE
    PICC_INTEGRITY_ERROR = 0xC1
    COMMAND_ABORTED = 0xCA
    PICC_DISABLED_ERROR = 0xCD
    COUNT_ERROR = 0xCE
    DUPLICATE_ERROR = 0xDE
    EEPROM_ERROR = 0xEE
    FILE_NOT_FOUND = 0xF0
    FILE_INTEGRITY_ERROR = 0xF1


class DesfireError(NfcError):
    """A DESFire command failed; ``status`` holds the PICC status when there is one."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        if status is not None:
            try:
                status = PiccStatus(status)
            except ValueError:
                pass
        self.status: Optional[Union[PiccStatus, int]] = status

    @property
    def errno(self) -> int:  # type: ignore[override]
        if self.status == PiccStatus.AUTHENTICATION_ERROR:
            return _errno.EACCES
        if self.status is None:
            return _errno.EINVAL
        return _errno.EIO


class CommunicationMode(IntEnum):
    """How file data travels between reader and card."""

    PLAIN = 0x00
    MACED = 0x01
    ENCIPHERED = 0x03


class FileType(IntEnum):
    STANDARD_DATA_FILE = 0x00
    BACKUP_DATA_FILE = 0x01
    VALUE_FILE_WITH_BACKUP = 0x02
    LINEAR_RECORD_FILE_WITH_BACKUP = 0x03
    CYCLIC_RECORD_FILE_WITH_BACKUP = 0x04


def is_desfire(target: Target) -> bool:
    """Whether the target looks like a DESFire card (standalone, JCOP or JCOP3)."""
    if target.modulation is not Modulation.ISO14443A or target.sak != 0x20:
        return False
    ats = bytes(target.ats)
    if len(ats) >= 5 and ats[:4] in (_STANDALONE_DESFIRE, _JCOP_DESFIRE):
        return True
    return len(ats) == 4 and ats == _JCOP3_DESFIRE


def check_communication_mode(cs: int) -> CommunicationMode:
    """Validate a communication settings value given by the caller."""
    if cs < 0 or cs == 0x02 or cs > 0x03:
        raise ValueError(f"invalid communication settings: {cs}")
    return CommunicationMode(cs)


def wrap_command(message: bytes) -> bytes:
    """Wrap a native DESFire command into an ISO 7816-4 APDU."""
    message = bytes(message)
    if not message:
        raise ValueError("a command holds at least its command code")
    if len(message) > MAX_CAPDU_SIZE:
        raise ValueError(f"a command is at most {MAX_CAPDU_SIZE} bytes long")
    header = bytes((0x90, message[0], 0x00, 0x00))
    if len(message) > 1:
        return header + bytes((len(message) - 1,)) + message[1:] + b"\x00"
    return header + b"\x00"


def unwrap_response(frame: bytes) -> bytes:
    """Turn an ISO 7816-4 answer into data followed by the native status byte.

    An answer made of a status word alone that is neither success nor
    additional frame raises :class:`DesfireError`.
    """
    frame = bytes(frame)
    if len(frame) < 2:
        raise TransceiveError("answer too short")
    if len(frame) - 1 > MAX_RAPDU_SIZE:
        raise TransceiveError("answer too long")
    status = frame[-1]
    if len(frame) == 2 and status not in (PiccStatus.ADDITIONAL_FRAME, PiccStatus.OPERATION_OK):
        raise DesfireError(f"PICC returned status 0x{status:02x}", status)
    return frame[:-2] + bytes((status,))


def _le24(data: bytes) -> int:
    return int.from_bytes(data[:3], "little")


@dataclass(frozen=True)
class AccessRights:
    """The four key numbers guarding a file: read, write, read & write, change rights."""

    read: int
    write: int
    read_write: int
    change_access_rights: int

    def __post_init__(self) -> None:
        for name in ("read", "write", "read_write", "change_access_rights"):
            if not 0 <= getattr(self, name) <= 0xF:
                raise ValueError(f"{name} must be in range 0..15")

    @classmethod
    def from_int(cls, value: int) -> "AccessRights":
        if not 0 <= value <= 0xFFFF:
            raise ValueError("access rights fit in 16 bits")
        return cls(
            read=(value >> 12) & 0xF,
            write=(value >> 8) & 0xF,
            read_write=(value >> 4) & 0xF,
            change_access_rights=value & 0xF,
        )

    def to_int(self) -> int:
        return (
            (self.read << 12)
            | (self.write << 8)
            | (self.read_write << 4)
            | self.change_access_rights
        )


@dataclass(frozen=True)
class FileSettings:
    """Settings of a file; only the fields of its type are set."""

    file_type: FileType
    communication_settings: int
    access_rights: AccessRights
    file_size: Optional[int] = None
    lower_limit: Optional[int] = None
    upper_limit: Optional[int] = None
    limited_credit_value: Optional[int] = None
    limited_credit_enabled: Optional[int] = None
    record_size: Optional[int] = None
    max_number_of_records: Optional[int] = None
    current_number_of_records: Optional[int] = None

    @classmethod
    def from_bytes(cls, data: bytes) -> "FileSettings":
        """Parse the payload of a GetFileSettings answer (without status byte)."""
        data = bytes(data)
        if len(data) < 4:
            raise ValueError("file settings are at least 4 bytes long")
        try:
            file_type = FileType(data[0])
        except ValueError as exc:
            raise ValueError(f"unknown file type 0x{data[0]:02x}") from exc
        common = dict(
            file_type=file_type,
            communication_settings=data[1],
            access_rights=AccessRights.from_int(int.from_bytes(data[2:4], "little")),
        )
        body = data[4:]
        if file_type in (FileType.STANDARD_DATA_FILE, FileType.BACKUP_DATA_FILE):
            if len(body) < 3:
                raise ValueError("data file settings are truncated")
            return cls(**common, file_size=_le24(body))
        if file_type is FileType.VALUE_FILE_WITH_BACKUP:
            if len(body) < 13:
                raise ValueError("value file settings are truncated")
            lower, upper, credit, enabled = struct.unpack("<iiiB", body[:13])
            return cls(
                **common,
                lower_limit=lower,
                upper_limit=upper,
                limited_credit_value=credit,
                limited_credit_enabled=enabled,
            )
        if len(body) < 9:
            raise ValueError("record file settings are truncated")
        return cls(
            **common,
            record_size=_le24(body[0:3]),
            max_number_of_records=_le24(body[3:6]),
            current_number_of_records=_le24(body[6:9]),
        )


@dataclass(frozen=True)
class VersionInfo:
    """Answer to GetVersion.

    ``hardware`` and ``software`` each hold seven bytes: vendor id, type,
    subtype, major version, minor version, storage size and protocol.
    """

    hardware: bytes
    software: bytes
    uid: bytes
    batch_number: bytes
    production_week: int
    production_year: int

    @classmethod
    def from_bytes(cls, data: bytes) -> "VersionInfo":
        """Parse the 28 bytes gathered from the three GetVersion frames."""
        data = bytes(data)
        if len(data) < 28:
            raise ValueError("version information is 28 bytes long")
        return cls(
            hardware=data[0:7],
            software=data[7:14],
            uid=data[14:21],
            batch_number=data[21:26],
            production_week=data[26],
            production_year=data[27],
        )

    @property
    def storage_size(self) -> int:
        """The hardware storage size byte."""
        return self.hardware[5]


@dataclass(frozen=True)
class DfName:
    """An application's AID, ISO file identifier and DF name."""

    aid: int
    fid: int
    df_name: bytes

    @classmethod
    def from_bytes(cls, data: bytes) -> "DfName":
        """Parse the payload of one GetDFNames frame (without status byte)."""
        data = bytes(data)
        if len(data) < 5:
            raise ValueError("a DF name entry is at least 5 bytes long")
        return cls(
            aid=_le24(data[0:3]),
            fid=int.from_bytes(data[3:5], "little"),
            df_name=data[5:],
        )


class CryptoProcessor(ABC):
    """Secures outgoing commands and checks incoming answers for a session.

    ``mode`` combines a :class:`CommunicationMode` with the flags of this
    module (CMAC_COMMAND, MAC_VERIFY, ENC_COMMAND, ...).
    """

    @abstractmethod
    def preprocess(self, data: bytes, offset: int, mode: int) -> bytes:
        """Return the command to send; bytes before ``offset`` stay in clear."""

    @abstractmethod
    def postprocess(self, data: bytes, mode: int) -> bytes:
        """Return the checked answer; raise :class:`DesfireError` if it does not verify."""


class PlainProcessor(CryptoProcessor):
    """Processor for sessions without a session key: data passes unchanged."""

    def preprocess(self, data: bytes, offset: int, mode: int) -> bytes:
        check_communication_mode(mode & MODE_MASK)
        data = bytes(data)
        if not 0 <= offset <= len(data):
            raise ValueError("offset lies outside the command")
        return data

    def postprocess(self, data: bytes, mode: int) -> bytes:
        check_communication_mode(mode & MODE_MASK)
        return bytes(data)