"""MIFARE DESFire application identifiers (24-bit AIDs)."""

from __future__ import annotations

from dataclasses import dataclass

_AID_MAX = 0x00FFFFFF
_AID_SIZE = 3


@dataclass(frozen=True)
class DesfireAid:
    """A DESFire application identifier, a 24-bit unsigned number."""

    value: int

    def __post_init__(self) -> None:
        if not 0 <= self.value <= _AID_MAX:
            raise ValueError("a DESFire AID fits in 24 bits")

    def __int__(self) -> int:
        return self.value

    @classmethod
    def from_mad_aid(cls, function_cluster_code: int, application_code: int, n: int) -> "DesfireAid":
        """Build the AID that maps a MIFARE Classic MAD AID to DESFire (0xF prefix)."""
        if not 0 <= n <= 0x0F:
            raise ValueError("n must be in range 0..15")
        if not 0 <= function_cluster_code <= 0xFF:
            raise ValueError("function_cluster_code must fit in one byte")
        if not 0 <= application_code <= 0xFF:
            raise ValueError("application_code must fit in one byte")
        return cls(0xF00000 | (function_cluster_code << 12) | (application_code << 4) | n)

    @classmethod
    def from_bytes(cls, data: bytes) -> "DesfireAid":
        """Decode the three little-endian bytes sent on the wire."""
        data = bytes(data)
        if len(data) != _AID_SIZE:
            raise ValueError(f"a DESFire AID is {_AID_SIZE} bytes long")
        return cls(int.from_bytes(data, "little"))

    def to_bytes(self) -> bytes:
        """The three little-endian bytes sent on the wire."""
        return self.value.to_bytes(_AID_SIZE, "little")