"""Reader-side transport: targets, device interface and NFC errors."""

from __future__ import annotations

import errno as _errno
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol, runtime_checkable


class NfcError(Exception):
    """Base class for every error raised while talking to a tag."""

    errno: Optional[int] = None


class TransceiveError(NfcError):
    """The reader failed to exchange a frame with the tag (EIO)."""

    errno = _errno.EIO


class AuthenticationError(NfcError):
    """The tag refused an authentication or an access (EACCES)."""

    errno = _errno.EACCES


class TagStateError(NfcError):
    """The tag is not in the connection state the operation needs."""


class Modulation(Enum):
    """Modulation types a reader can select a target with."""

    ISO14443A = "iso14443a"
    ISO14443B = "iso14443b"
    FELICA = "felica"
    JEWEL = "jewel"
    DEP = "dep"


class BaudRate(Enum):
    """Air-interface bit rates, in kbit/s."""

    BR_106 = 106
    BR_212 = 212
    BR_424 = 424
    BR_847 = 847


@dataclass(frozen=True)
class Target:
    """A tag as seen by the reader during anticollision."""

    modulation: Modulation
    sak: int
    uid: bytes
    ats: bytes = b""

    @property
    def auth_uid(self) -> bytes:
        """The four UID bytes used in authentication (works for 4 and 7 byte UIDs)."""
        if len(self.uid) < 4:
            raise ValueError("a UID holds at least four bytes")
        return bytes(self.uid[-4:])


@runtime_checkable
class Device(Protocol):
    """What a reader must offer to drive a tag.

    Implementations raise :class:`NfcError` (or a subclass) on failure;
    :class:`AuthenticationError` signals a refused MIFARE authentication.
    """

    def select_passive_target(
        self, modulation: Modulation, baud_rate: BaudRate, uid: bytes
    ) -> Optional[Target]:
        """Select the target with the given UID; return it, or None if none answered."""
        ...

    def deselect_target(self) -> None:
        """Release the currently selected target."""
        ...

    def transceive(self, data: bytes, timeout: int) -> bytes:
        """Send a frame and return the tag's answer."""
        ...