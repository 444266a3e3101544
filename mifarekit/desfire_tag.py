"""MIFARE DESFire card-level commands: connection, keys settings and applications."""

from __future__ import annotations

from typing import List, Optional, Tuple, Union

from .desfire_aid import DesfireAid
from .desfire_protocol import (
    CMAC_COMMAND,
    CMAC_VERIFY,
    ENC_COMMAND,
    MAC_COMMAND,
    MAC_VERIFY,
    CommunicationMode,
    CryptoProcessor,
    DesfireError,
    DfName,
    FileSettings,
    PiccStatus,
    PlainProcessor,
    VersionInfo,
    unwrap_response,
    wrap_command,
)
from .transport import (
    BaudRate,
    Device,
    Modulation,
    NfcError,
    TagStateError,
    Target,
    TransceiveError,
)

APPLICATION_CRYPTO_3K3DES = 0x40
APPLICATION_CRYPTO_AES = 0x80

# ISO 7816-4 SELECT of the registered DESFire AID D2760000850100 (selects the MF).
_SELECT_DESFIRE_AID = bytes((0x00, 0xA4, 0x04, 0x00, 0x07, 0xD2, 0x76, 0x00, 0x00, 0x85, 0x01, 0x00))
_ISO_OK = bytes((0x90, 0x00))

_ADDITIONAL_FRAME = bytes((PiccStatus.ADDITIONAL_FRAME,))
_MAX_ISO_FILE_NAME = 16

_PLAIN = int(CommunicationMode.PLAIN)
_ENCIPHERED = int(CommunicationMode.ENCIPHERED)

AidLike = Union[DesfireAid, int]


def _as_aid(aid: AidLike) -> DesfireAid:
    if isinstance(aid, DesfireAid):
        return aid
    if isinstance(aid, int):
        return DesfireAid(aid)
    raise TypeError("aid must be a DesfireAid or an int")


def _require_length(data: bytes, length: int) -> None:
    if len(data) < length:
        raise DesfireError(f"answer too short: expected {length} bytes, got {len(data)}")


class DesfireTag:
    """A MIFARE DESFire card reached through a reader.

    Security of the exchanges is delegated to ``processor``; without one,
    commands and answers travel in clear.
    """

    def __init__(self, device: Device, target: Target, processor: Optional[CryptoProcessor] = None):
        self.device = device
        self.target = target
        self.processor: CryptoProcessor = processor if processor is not None else PlainProcessor()
        self.active = False
        self.timeout = 0
        self.last_picc_error: Union[PiccStatus, int] = PiccStatus.OPERATION_OK
        self.authenticated_key_no: Optional[int] = None
        self.session_key: Optional[bytes] = None
        self.selected_application = 0
        self._file_settings: dict[int, FileSettings] = {}

    # Connection handling

    def _require_active(self) -> None:
        if not self.active:
            raise TagStateError("tag is not connected")

    def _require_authenticated(self) -> None:
        if self.authenticated_key_no is None:
            raise DesfireError("not authenticated")

    def _clear_session(self) -> None:
        self.session_key = None

    def connect(self) -> None:
        """Select the card and its DESFire master file."""
        if self.active:
            raise TagStateError("tag is already connected")
        try:
            selected = self.device.select_passive_target(
                Modulation.ISO14443A, BaudRate.BR_424, self.target.uid
            )
            if selected is None:
                raise TransceiveError("no target answered")
            response = bytes(self.device.transceive(_SELECT_DESFIRE_AID, self.timeout))
        except TransceiveError:
            raise
        except NfcError as exc:
            raise TransceiveError("cannot select tag") from exc
        if response[:2] != _ISO_OK:
            raise TransceiveError("card refused the DESFire application selection")
        self.active = True
        self._clear_session()
        self.last_picc_error = PiccStatus.OPERATION_OK
        self.authenticated_key_no = None
        self.selected_application = 0

    def disconnect(self) -> None:
        """Release the card and forget the session."""
        self._require_active()
        self._clear_session()
        try:
            self.device.deselect_target()
        except NfcError:
            return
        self.active = False

    # Exchanges

    def transceive(self, message: bytes) -> bytes:
        """Send a native command; return the answer data followed by its status byte."""
        apdu = wrap_command(message)
        self.last_picc_error = PiccStatus.OPERATION_OK
        try:
            frame = bytes(self.device.transceive(apdu, self.timeout))
        except NfcError as exc:
            raise TransceiveError("transceive failed") from exc
        try:
            return unwrap_response(frame)
        except DesfireError as exc:
            if exc.status is not None:
                self.last_picc_error = exc.status
            raise

    def _run(self, command: bytes, offset: int, pre_mode: int, post_mode: int) -> bytes:
        self._require_active()
        sent = self.processor.preprocess(command, offset, pre_mode)
        answer = self.transceive(sent)
        return self.processor.postprocess(answer, post_mode)

    def _collect_frames(self, first: bytes) -> bytes:
        """Send ``first`` and gather the data of every additional frame, then the final status."""
        data = b""
        answer = self.transceive(first)
        while answer[-1:] == _ADDITIONAL_FRAME:
            data += answer[:-1]
            answer = self.transceive(_ADDITIONAL_FRAME)
        return data + answer

    # Key management

    def change_key_settings(self, settings: int) -> None:
        """Change the master key settings of the selected application."""
        self._require_active()
        self._require_authenticated()
        self._run(
            bytes((0x54, settings & 0xFF)),
            1,
            _ENCIPHERED | ENC_COMMAND,
            _PLAIN | CMAC_COMMAND | CMAC_VERIFY | MAC_COMMAND | MAC_VERIFY,
        )

    def get_key_settings(self) -> Tuple[int, int]:
        """Return (key settings, maximum number of keys)."""
        answer = self._run(bytes((0x45,)), 1, _PLAIN | CMAC_COMMAND, _PLAIN | CMAC_COMMAND | CMAC_VERIFY)
        _require_length(answer, 2)
        return answer[0], answer[1] & 0x0F

    def get_key_version(self, key_no: int) -> int:
        """Return the version of key ``key_no``."""
        answer = self._run(
            bytes((0x64, key_no & 0xFF)),
            0,
            _PLAIN | CMAC_COMMAND,
            _PLAIN | CMAC_COMMAND | CMAC_VERIFY | MAC_VERIFY,
        )
        _require_length(answer, 1)
        return answer[0]

    # Applications

    def _create_application(
        self,
        aid: AidLike,
        settings1: int,
        settings2: int,
        want_iso_application: bool,
        want_iso_file_identifiers: bool,
        iso_file_id: int,
        iso_file_name: bytes,
    ) -> None:
        self._require_active()
        aid = _as_aid(aid)
        iso_file_name = bytes(iso_file_name)
        if len(iso_file_name) > _MAX_ISO_FILE_NAME:
            raise ValueError(f"an ISO file name is at most {_MAX_ISO_FILE_NAME} bytes long")
        if want_iso_file_identifiers:
            settings2 |= 0x20
        command = bytes((0xCA,)) + aid.to_bytes() + bytes((settings1 & 0xFF, settings2 & 0xFF))
        if want_iso_application:
            if not 0 <= iso_file_id <= 0xFFFF:
                raise ValueError("iso_file_id must fit in 16 bits")
            command += iso_file_id.to_bytes(2, "little")
        command += iso_file_name
        self._run(command, 0, _PLAIN | CMAC_COMMAND, _PLAIN | CMAC_COMMAND | CMAC_VERIFY | MAC_VERIFY)

    def create_application(self, aid: AidLike, settings: int, key_no: int) -> None:
        """Create a DES/3DES application."""
        self._create_application(aid, settings, key_no, False, False, 0, b"")

    def create_application_iso(
        self,
        aid: AidLike,
        settings: int,
        key_no: int,
        want_iso_file_identifiers: bool,
        iso_file_id: int,
        iso_file_name: bytes = b"",
    ) -> None:
        """Create a DES/3DES application with an ISO file identifier and DF name."""
        self._create_application(
            aid, settings, key_no, True, want_iso_file_identifiers, iso_file_id, iso_file_name
        )

    def create_application_3k3des(self, aid: AidLike, settings: int, key_no: int) -> None:
        """Create a 3K3DES application."""
        self._create_application(aid, settings, APPLICATION_CRYPTO_3K3DES | key_no, False, False, 0, b"")

    def create_application_3k3des_iso(
        self,
        aid: AidLike,
        settings: int,
        key_no: int,
        want_iso_file_identifiers: bool,
        iso_file_id: int,
        iso_file_name: bytes = b"",
    ) -> None:
        """Create a 3K3DES application with an ISO file identifier and DF name."""
        self._create_application(
            aid,
            settings,
            APPLICATION_CRYPTO_3K3DES | key_no,
            True,
            want_iso_file_identifiers,
            iso_file_id,
            iso_file_name,
        )

    def create_application_aes(self, aid: AidLike, settings: int, key_no: int) -> None:
        """Create an AES application."""
        self._create_application(aid, settings, APPLICATION_CRYPTO_AES | key_no, False, False, 0, b"")

    def create_application_aes_iso(
        self,
        aid: AidLike,
        settings: int,
        key_no: int,
        want_iso_file_identifiers: bool,
        iso_file_id: int,
        iso_file_name: bytes = b"",
    ) -> None:
        """Create an AES application with an ISO file identifier and DF name."""
        self._create_application(
            aid,
            settings,
            APPLICATION_CRYPTO_AES | key_no,
            True,
            want_iso_file_identifiers,
            iso_file_id,
            iso_file_name,
        )

    def delete_application(self, aid: AidLike) -> None:
        """Delete an application; deleting the selected one returns to the master application."""
        aid = _as_aid(aid)
        self._run(
            bytes((0xDA,)) + aid.to_bytes(),
            0,
            _PLAIN | CMAC_COMMAND,
            _PLAIN | CMAC_COMMAND | CMAC_VERIFY,
        )
        if self.selected_application == aid.value:
            self._clear_session()
            self.selected_application = 0

    def get_application_ids(self) -> List[DesfireAid]:
        """List the AIDs of the applications on the card."""
        self._require_active()
        command = self.processor.preprocess(bytes((0x6A,)), 0, _PLAIN | CMAC_COMMAND)
        gathered = self._collect_frames(command)
        answer = self.processor.postprocess(
            gathered, _PLAIN | CMAC_COMMAND | CMAC_VERIFY | MAC_VERIFY
        )
        payload = answer[:-1]
        count = len(payload) // 3
        return [DesfireAid.from_bytes(payload[3 * i : 3 * i + 3]) for i in range(count)]

    def get_df_names(self) -> List[DfName]:
        """List the AID, ISO file identifier and DF name of ISO applications."""
        self._require_active()
        command = self.processor.preprocess(bytes((0x6D,)), 0, _PLAIN | CMAC_COMMAND)
        names: List[DfName] = []
        answer = self.transceive(command)
        while True:
            if len(answer) > 1:
                names.append(DfName.from_bytes(answer[:-1]))
            if answer[-1:] != _ADDITIONAL_FRAME:
                return names
            answer = self.transceive(_ADDITIONAL_FRAME)

    def select_application(self, aid: Optional[AidLike] = None) -> None:
        """Select an application; None selects the master application."""
        selected = DesfireAid(0) if aid is None else _as_aid(aid)
        self._run(bytes((0x5A,)) + selected.to_bytes(), 0, _PLAIN | CMAC_COMMAND, _PLAIN | CMAC_COMMAND)
        self._file_settings.clear()
        self._clear_session()
        self.selected_application = selected.value

    def format_picc(self) -> None:
        """Erase every application and file on the card."""
        self._require_active()
        self._require_authenticated()
        self._run(bytes((0xFC,)), 0, _PLAIN | CMAC_COMMAND, _PLAIN | CMAC_COMMAND | CMAC_VERIFY)
        self._clear_session()
        self.selected_application = 0

    # Card information and configuration

    def get_version(self) -> VersionInfo:
        """Read manufacturing and version information of the card."""
        self._require_active()
        command = self.processor.preprocess(bytes((0x60,)), 0, _PLAIN | CMAC_COMMAND)
        hardware = self.transceive(command)
        _require_length(hardware, 7)
        software = self.transceive(_ADDITIONAL_FRAME)
        _require_length(software, 7)
        production = self.transceive(_ADDITIONAL_FRAME)
        _require_length(production, 14)
        self.processor.postprocess(
            hardware[:7] + software[:7] + production, _PLAIN | CMAC_COMMAND | CMAC_VERIFY
        )
        return VersionInfo.from_bytes(hardware[:7] + software[:7] + production[:14])

    def free_mem(self) -> int:
        """Return the free memory of the card, in bytes."""
        answer = self._run(bytes((0x6E,)), 0, _PLAIN | CMAC_COMMAND, _PLAIN | CMAC_COMMAND | CMAC_VERIFY)
        _require_length(answer, 3)
        return int.from_bytes(answer[:3], "little")

    def set_configuration(self, disable_format: bool, enable_random_uid: bool) -> None:
        """Set the card configuration flags."""
        flags = (0x02 if enable_random_uid else 0x00) | (0x01 if disable_format else 0x00)
        self._run(
            bytes((0x5C, 0x00, flags)),
            2,
            _ENCIPHERED | ENC_COMMAND,
            _PLAIN | CMAC_COMMAND | CMAC_VERIFY,
        )

    def get_card_uid_raw(self) -> bytes:
        """Return the seven bytes of the card's real UID."""
        answer = self._run(bytes((0x51,)), 1, _PLAIN | CMAC_COMMAND, _ENCIPHERED)
        _require_length(answer, 7)
        return answer[:7]

    def get_card_uid(self) -> str:
        """Return the card's real UID as lower-case hexadecimal."""
        return self.get_card_uid_raw().hex()