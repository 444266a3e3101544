"""MIFARE DESFire application-level commands: files, data, values and records."""

from __future__ import annotations

import struct
from typing import List, Optional, Union

from .desfire_protocol import (
    ACCESS_FREE,
    CMAC_COMMAND,
    CMAC_VERIFY,
    ENC_COMMAND,
    MAC_COMMAND,
    MAC_VERIFY,
    MAX_CAPDU_SIZE,
    MAX_FILE_COUNT,
    AccessRights,
    CommunicationMode,
    DesfireError,
    FileSettings,
    FileType,
    PiccStatus,
    check_communication_mode,
)
from .desfire_tag import DesfireTag

_PLAIN = int(CommunicationMode.PLAIN)
_ENCIPHERED = int(CommunicationMode.ENCIPHERED)
_ADDITIONAL_FRAME = bytes((PiccStatus.ADDITIONAL_FRAME,))

_CMD_READ_DATA = 0xBD
_CMD_WRITE_DATA = 0x3D
_CMD_READ_RECORDS = 0xBB
_CMD_WRITE_RECORD = 0x3B
_CMD_CREATE_STD_DATA_FILE = 0xCD
_CMD_CREATE_BACKUP_DATA_FILE = 0xCB
_CMD_CREATE_VALUE_FILE = 0xCC
_CMD_CREATE_LINEAR_RECORD_FILE = 0xC1
_CMD_CREATE_CYCLIC_RECORD_FILE = 0xC0
_CMD_CREDIT = 0x0C
_CMD_DEBIT = 0xDC
_CMD_LIMITED_CREDIT = 0x1C

AccessRightsLike = Union[AccessRights, int]


def _check_file_no(file_no: int) -> int:
    if not 0 <= file_no < MAX_FILE_COUNT:
        raise ValueError(f"file number must be in range 0..{MAX_FILE_COUNT - 1}")
    return file_no


def _unsigned(value: int, size: int, name: str) -> bytes:
    if not 0 <= value < 1 << (8 * size):
        raise ValueError(f"{name} must fit in {size} unsigned bytes")
    return value.to_bytes(size, "little")


def _signed32(value: int, name: str) -> bytes:
    if not -(2**31) <= value < 2**31:
        raise ValueError(f"{name} must fit in a signed 32-bit integer")
    return struct.pack("<i", value)


def _access_rights(access_rights: AccessRightsLike) -> bytes:
    if isinstance(access_rights, AccessRights):
        access_rights = access_rights.to_int()
    return _unsigned(access_rights, 2, "access_rights")


def _communication_byte(cs: int) -> bytes:
    return bytes((int(check_communication_mode(cs)),))


class DesfireCard(DesfireTag):
    """A DESFire card with the file, value and record commands of its applications."""

    # Helpers

    def _forget_settings(self, file_no: int) -> None:
        self._file_settings.pop(file_no, None)

    def _plain_command(self, command: bytes) -> bytes:
        return self._run(command, 0, _PLAIN | CMAC_COMMAND, _PLAIN | CMAC_COMMAND | CMAC_VERIFY)

    def _read_mode(self, file_no: int) -> int:
        settings = self.get_file_settings(file_no)
        rights = settings.access_rights
        if self.authenticated_key_no in (rights.read, rights.read_write):
            return settings.communication_settings
        return _PLAIN

    def _write_mode(self, file_no: int) -> int:
        settings = self.get_file_settings(file_no)
        rights = settings.access_rights
        if self.authenticated_key_no in (rights.write, rights.read_write):
            return settings.communication_settings
        return _PLAIN

    def _resolve_mode(self, file_no: int, cs: Optional[int], write: bool) -> int:
        if cs is None:
            cs = self._write_mode(file_no) if write else self._read_mode(file_no)
        self._require_active()
        return int(check_communication_mode(cs))

    # File management

    def get_file_ids(self) -> List[int]:
        """List the file numbers of the selected application."""
        answer = self._plain_command(bytes((0x6F,)))
        return list(answer[:-1])

    def get_iso_file_ids(self) -> List[int]:
        """List the ISO file identifiers of the selected application."""
        self._require_active()
        command = self.processor.preprocess(bytes((0x61,)), 0, _PLAIN | CMAC_COMMAND)
        gathered = self._collect_frames(command)
        answer = self.processor.postprocess(gathered, _PLAIN | CMAC_COMMAND)
        payload = answer[:-1]
        usable = len(payload) - len(payload) % 2
        return [int.from_bytes(payload[i : i + 2], "little") for i in range(0, usable, 2)]

    def get_file_settings(self, file_no: int) -> FileSettings:
        """Return the settings of a file; answers are cached until the file changes."""
        self._require_active()
        file_no = _check_file_no(file_no)
        cached = self._file_settings.get(file_no)
        if cached is not None:
            return cached
        answer = self._plain_command(bytes((0xF5, file_no)))
        try:
            settings = FileSettings.from_bytes(answer[:-1])
        except ValueError as exc:
            raise DesfireError(str(exc)) from exc
        self._file_settings[file_no] = settings
        return settings

    def change_file_settings(
        self, file_no: int, communication_settings: int, access_rights: AccessRightsLike
    ) -> None:
        """Change the communication settings and access rights of a file."""
        self._require_active()
        settings = self.get_file_settings(file_no)
        self._forget_settings(file_no)
        command = (
            bytes((0x5F, file_no))
            + _communication_byte(communication_settings)
            + _access_rights(access_rights)
        )
        post_mode = _PLAIN | CMAC_COMMAND | CMAC_VERIFY
        if settings.access_rights.change_access_rights == ACCESS_FREE:
            self._run(command, 0, _PLAIN | CMAC_COMMAND, post_mode)
        else:
            self._run(command, 2, _ENCIPHERED | ENC_COMMAND, post_mode)

    def _create_sized_file(
        self,
        code: int,
        file_no: int,
        iso_file_id: Optional[int],
        communication_settings: int,
        access_rights: AccessRightsLike,
        sizes: bytes,
    ) -> None:
        self._require_active()
        file_no = _check_file_no(file_no)
        command = bytes((code, file_no))
        if iso_file_id is not None:
            command += _unsigned(iso_file_id, 2, "iso_file_id")
        command += _communication_byte(communication_settings) + _access_rights(access_rights) + sizes
        self._plain_command(command)
        self._forget_settings(file_no)

    def create_std_data_file(
        self, file_no: int, communication_settings: int, access_rights: AccessRightsLike, file_size: int
    ) -> None:
        """Create a standard data file."""
        self._create_sized_file(
            _CMD_CREATE_STD_DATA_FILE, file_no, None, communication_settings, access_rights,
            _unsigned(file_size, 3, "file_size"),
        )

    def create_std_data_file_iso(
        self,
        file_no: int,
        communication_settings: int,
        access_rights: AccessRightsLike,
        file_size: int,
        iso_file_id: int,
    ) -> None:
        """Create a standard data file with an ISO file identifier."""
        self._create_sized_file(
            _CMD_CREATE_STD_DATA_FILE, file_no, iso_file_id, communication_settings, access_rights,
            _unsigned(file_size, 3, "file_size"),
        )

    def create_backup_data_file(
        self, file_no: int, communication_settings: int, access_rights: AccessRightsLike, file_size: int
    ) -> None:
        """Create a backup data file."""
        self._create_sized_file(
            _CMD_CREATE_BACKUP_DATA_FILE, file_no, None, communication_settings, access_rights,
            _unsigned(file_size, 3, "file_size"),
        )

    def create_backup_data_file_iso(
        self,
        file_no: int,
        communication_settings: int,
        access_rights: AccessRightsLike,
        file_size: int,
        iso_file_id: int,
    ) -> None:
        """Create a backup data file with an ISO file identifier."""
        self._create_sized_file(
            _CMD_CREATE_BACKUP_DATA_FILE, file_no, iso_file_id, communication_settings, access_rights,
            _unsigned(file_size, 3, "file_size"),
        )

    def create_value_file(
        self,
        file_no: int,
        communication_settings: int,
        access_rights: AccessRightsLike,
        lower_limit: int,
        upper_limit: int,
        value: int,
        limited_credit_enable: int,
    ) -> None:
        """Create a value file with its limits and initial value."""
        sizes = (
            _signed32(lower_limit, "lower_limit")
            + _signed32(upper_limit, "upper_limit")
            + _signed32(value, "value")
            + _unsigned(int(limited_credit_enable), 1, "limited_credit_enable")
        )
        self._create_sized_file(
            _CMD_CREATE_VALUE_FILE, file_no, None, communication_settings, access_rights, sizes
        )

    @staticmethod
    def _record_sizes(record_size: int, max_number_of_records: int) -> bytes:
        return _unsigned(record_size, 3, "record_size") + _unsigned(
            max_number_of_records, 3, "max_number_of_records"
        )

    def create_linear_record_file(
        self,
        file_no: int,
        communication_settings: int,
        access_rights: AccessRightsLike,
        record_size: int,
        max_number_of_records: int,
    ) -> None:
        """Create a linear record file."""
        self._create_sized_file(
            _CMD_CREATE_LINEAR_RECORD_FILE, file_no, None, communication_settings, access_rights,
            self._record_sizes(record_size, max_number_of_records),
        )

    def create_linear_record_file_iso(
        self,
        file_no: int,
        communication_settings: int,
        access_rights: AccessRightsLike,
        record_size: int,
        max_number_of_records: int,
        iso_file_id: int,
    ) -> None:
        """Create a linear record file with an ISO file identifier."""
        self._create_sized_file(
            _CMD_CREATE_LINEAR_RECORD_FILE, file_no, iso_file_id, communication_settings, access_rights,
            self._record_sizes(record_size, max_number_of_records),
        )

    def create_cyclic_record_file(
        self,
        file_no: int,
        communication_settings: int,
        access_rights: AccessRightsLike,
        record_size: int,
        max_number_of_records: int,
    ) -> None:
        """Create a cyclic record file."""
        self._create_sized_file(
            _CMD_CREATE_CYCLIC_RECORD_FILE, file_no, None, communication_settings, access_rights,
            self._record_sizes(record_size, max_number_of_records),
        )

    def create_cyclic_record_file_iso(
        self,
        file_no: int,
        communication_settings: int,
        access_rights: AccessRightsLike,
        record_size: int,
        max_number_of_records: int,
        iso_file_id: int,
    ) -> None:
        """Create a cyclic record file with an ISO file identifier."""
        self._create_sized_file(
            _CMD_CREATE_CYCLIC_RECORD_FILE, file_no, iso_file_id, communication_settings, access_rights,
            self._record_sizes(record_size, max_number_of_records),
        )

    def delete_file(self, file_no: int) -> None:
        """Delete a file of the selected application."""
        self._require_active()
        file_no = _check_file_no(file_no)
        self._plain_command(bytes((0xDF, file_no)))
        self._forget_settings(file_no)

    # Data manipulation

    def _read(self, code: int, file_no: int, offset: int, length: int, cs: Optional[int]) -> bytes:
        file_no = _check_file_no(file_no)
        mode = self._resolve_mode(file_no, cs, write=False)
        command = (
            bytes((code, file_no)) + _unsigned(offset, 3, "offset") + _unsigned(length, 3, "length")
        )
        settings = self.get_file_settings(file_no)
        if length == 0 and settings.file_type is FileType.VALUE_FILE_WITH_BACKUP:
            raise ValueError("a value file cannot be read whole")
        sent = self.processor.preprocess(command, 8, _PLAIN | CMAC_COMMAND)
        gathered = self._collect_frames(sent)
        answer = self.processor.postprocess(
            gathered[:-1] + bytes((PiccStatus.OPERATION_OK,)),
            mode | CMAC_COMMAND | CMAC_VERIFY | MAC_VERIFY,
        )
        return answer[:-1]

    def _write(self, code: int, file_no: int, offset: int, data: bytes, cs: Optional[int]) -> int:
        file_no = _check_file_no(file_no)
        mode = self._resolve_mode(file_no, cs, write=True)
        data = bytes(data)
        command = (
            bytes((code, file_no))
            + _unsigned(offset, 3, "offset")
            + _unsigned(len(data), 3, "length")
            + data
        )
        sent = self.processor.preprocess(command, 8, mode | MAC_COMMAND | CMAC_COMMAND | ENC_COMMAND)
        overhead = len(sent) - len(data)

        position = 0
        prefix = b""
        answer = b""
        while position < len(sent):
            chunk = sent[position : position + MAX_CAPDU_SIZE - len(prefix)]
            answer = self.transceive(prefix + chunk)
            position += len(chunk)
            if answer[-1] == PiccStatus.OPERATION_OK:
                break
            # The card answered ADDITIONAL_FRAME and waits for more data.
            prefix = _ADDITIONAL_FRAME

        answer = self.processor.postprocess(answer, _PLAIN | CMAC_COMMAND | CMAC_VERIFY)
        self._forget_settings(file_no)
        status = answer[-1]
        if status != PiccStatus.OPERATION_OK:
            error = DesfireError(f"write ended with status 0x{status:02x}", status)
            self.last_picc_error = error.status if error.status is not None else status
            raise error
        return position - overhead

    def read_data(
        self, file_no: int, offset: int = 0, length: int = 0, cs: Optional[int] = None
    ) -> bytes:
        """Read ``length`` bytes of a data file at ``offset``; 0 reads to the end."""
        return self._read(_CMD_READ_DATA, file_no, offset, length, cs)

    def write_data(self, file_no: int, offset: int, data: bytes, cs: Optional[int] = None) -> int:
        """Write ``data`` into a data file at ``offset``; return the number of bytes written."""
        return self._write(_CMD_WRITE_DATA, file_no, offset, data, cs)

    def get_value(self, file_no: int, cs: Optional[int] = None) -> int:
        """Return the current value of a value file."""
        file_no = _check_file_no(file_no)
        mode = self._resolve_mode(file_no, cs, write=False)
        answer = self._run(
            bytes((0x6C, file_no)),
            0,
            _PLAIN | CMAC_COMMAND,
            mode | CMAC_COMMAND | CMAC_VERIFY | MAC_VERIFY,
        )
        if len(answer) < 4:
            raise DesfireError("answer too short for a value")
        (value,) = struct.unpack("<i", answer[:4])
        return value

    def _value_operation(self, code: int, file_no: int, amount: int, cs: Optional[int]) -> None:
        file_no = _check_file_no(file_no)
        mode = self._resolve_mode(file_no, cs, write=True)
        command = bytes((code, file_no)) + _signed32(amount, "amount")
        self._run(
            command,
            2,
            mode | MAC_COMMAND | CMAC_COMMAND | ENC_COMMAND,
            _PLAIN | CMAC_COMMAND | CMAC_VERIFY,
        )
        self._forget_settings(file_no)

    def credit(self, file_no: int, amount: int, cs: Optional[int] = None) -> None:
        """Add ``amount`` to a value file (effective on commit)."""
        self._value_operation(_CMD_CREDIT, file_no, amount, cs)

    def debit(self, file_no: int, amount: int, cs: Optional[int] = None) -> None:
        """Subtract ``amount`` from a value file (effective on commit)."""
        self._value_operation(_CMD_DEBIT, file_no, amount, cs)

    def limited_credit(self, file_no: int, amount: int, cs: Optional[int] = None) -> None:
        """Give back at most the amount debited in the last transaction."""
        self._value_operation(_CMD_LIMITED_CREDIT, file_no, amount, cs)

    def write_record(self, file_no: int, offset: int, data: bytes, cs: Optional[int] = None) -> int:
        """Write ``data`` into a new record at ``offset``; return the number of bytes written."""
        return self._write(_CMD_WRITE_RECORD, file_no, offset, data, cs)

    def read_records(
        self, file_no: int, offset: int = 0, length: int = 0, cs: Optional[int] = None
    ) -> bytes:
        """Read ``length`` records starting ``offset`` records back; 0 reads them all."""
        return self._read(_CMD_READ_RECORDS, file_no, offset, length, cs)

    def clear_record_file(self, file_no: int) -> None:
        """Empty a record file (effective on commit)."""
        self._require_active()
        file_no = _check_file_no(file_no)
        self._plain_command(bytes((0xEB, file_no)))
        self._forget_settings(file_no)

    def commit_transaction(self) -> None:
        """Make the pending changes to backup, value and record files permanent."""
        self._plain_command(bytes((0xC7,)))

    def abort_transaction(self) -> None:
        """Discard the pending changes to backup, value and record files."""
        self._plain_command(bytes((0xA7,)))