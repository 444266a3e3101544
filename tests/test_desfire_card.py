import struct

import pytest

from mifarekit.desfire_card import DesfireCard
from mifarekit.desfire_protocol import (
    ENC_COMMAND,
    MODE_MASK,
    AccessRights,
    CommunicationMode,
    DesfireError,
    FileType,
    PiccStatus,
    PlainProcessor,
)
from mifarekit.transport import Modulation, TagStateError, Target

TARGET = Target(
    modulation=Modulation.ISO14443A,
    sak=0x20,
    uid=bytes((0x04, 0x11, 0x22, 0x33, 0x44, 0x55, 0x66)),
    ats=bytes((0x75, 0x77, 0x81, 0x02, 0x80)),
)


class FakeDevice:
    def __init__(self):
        self.sent = []
        self.responses = []

    def select_passive_target(self, modulation, baud_rate, uid):
        return TARGET

    def deselect_target(self):
        pass

    def transceive(self, data, timeout):
        self.sent.append(bytes(data))
        return self.responses.pop(0)

    def queue(self, data=b"", status=0x00):
        self.responses.append(bytes(data) + bytes((0x91, status)))


class RecordingProcessor(PlainProcessor):
    def __init__(self):
        self.pre = []
        self.post = []

    def preprocess(self, data, offset, mode):
        self.pre.append((bytes(data), offset, mode))
        return super().preprocess(data, offset, mode)

    def postprocess(self, data, mode):
        self.post.append(mode)
        return super().postprocess(data, mode)


def native(apdu):
    return apdu[1:2] + apdu[5:-1]


def data_file_settings(size, access_rights=0xEEEE, cs=0, file_type=0):
    return bytes((file_type, cs)) + access_rights.to_bytes(2, "little") + size.to_bytes(3, "little")


def record_file_settings(record_size, max_records, current, access_rights=0xEEEE, cs=0):
    return (
        bytes((FileType.CYCLIC_RECORD_FILE_WITH_BACKUP, cs))
        + access_rights.to_bytes(2, "little")
        + record_size.to_bytes(3, "little")
        + max_records.to_bytes(3, "little")
        + current.to_bytes(3, "little")
    )


def make_card(processor=None):
    device = FakeDevice()
    card = DesfireCard(device, TARGET, processor)
    device.responses.append(b"\x90\x00")
    card.connect()
    device.sent.clear()
    return card, device


@pytest.fixture
def card_and_device():
    return make_card()


def test_get_file_ids(card_and_device):
    card, device = card_and_device
    device.queue(bytes((0, 4, 5, 15)))
    assert card.get_file_ids() == [0, 4, 5, 15]
    assert native(device.sent[0]) == bytes((0x6F,))


def test_get_file_ids_empty(card_and_device):
    card, device = card_and_device
    device.queue()
    assert card.get_file_ids() == []


def test_get_iso_file_ids_collects_frames(card_and_device):
    card, device = card_and_device
    ids = [0x3F00, 0xE104]
    device.queue(ids[0].to_bytes(2, "little"), PiccStatus.ADDITIONAL_FRAME)
    device.queue(ids[1].to_bytes(2, "little"))
    assert card.get_iso_file_ids() == ids
    assert native(device.sent[0]) == bytes((0x61,))
    assert native(device.sent[1]) == bytes((0xAF,))


def test_get_file_settings_standard_file_and_cache(card_and_device):
    card, device = card_and_device
    device.queue(data_file_settings(100))
    settings = card.get_file_settings(15)
    assert settings.file_type is FileType.STANDARD_DATA_FILE
    assert settings.communication_settings == CommunicationMode.PLAIN
    assert settings.access_rights.to_int() == 0xEEEE
    assert settings.file_size == 100
    assert native(device.sent[0]) == bytes((0xF5, 15))
    again = card.get_file_settings(15)
    assert again == settings
    assert len(device.sent) == 1


def test_get_file_settings_cyclic_record(card_and_device):
    card, device = card_and_device
    device.queue(record_file_settings(4, 10, 9))
    settings = card.get_file_settings(0)
    assert settings.file_type is FileType.CYCLIC_RECORD_FILE_WITH_BACKUP
    assert settings.record_size == 4
    assert settings.max_number_of_records == 10
    assert settings.current_number_of_records == 9


def test_get_file_settings_rejects_bad_file_number(card_and_device):
    card, _ = card_and_device
    with pytest.raises(ValueError):
        card.get_file_settings(32)


def test_create_std_data_file_wire_bytes(card_and_device):
    card, device = card_and_device
    device.queue()
    card.create_std_data_file(15, CommunicationMode.PLAIN, 0xEEEE, 100)
    expected = bytes((0xCD, 15, 0)) + (0xEEEE).to_bytes(2, "little") + (100).to_bytes(3, "little")
    assert native(device.sent[0]) == expected


def test_create_std_data_file_iso_places_file_id(card_and_device):
    card, device = card_and_device
    device.queue()
    card.create_std_data_file_iso(15, CommunicationMode.PLAIN, AccessRights.from_int(0xEEEE), 100, 0x1234)
    expected = (
        bytes((0xCD, 15))
        + (0x1234).to_bytes(2, "little")
        + bytes((0,))
        + (0xEEEE).to_bytes(2, "little")
        + (100).to_bytes(3, "little")
    )
    assert native(device.sent[0]) == expected


def test_create_backup_data_file_code(card_and_device):
    card, device = card_and_device
    device.queue()
    card.create_backup_data_file(5, CommunicationMode.PLAIN, 0xEEEE, 64)
    assert native(device.sent[0])[:2] == bytes((0xCB, 5))


def test_create_value_file_signed_limits(card_and_device):
    card, device = card_and_device
    device.queue()
    card.create_value_file(4, 0, 0x1324, -987654321, -1000, -1000000, 1)
    expected = (
        bytes((0xCC, 4, 0))
        + (0x1324).to_bytes(2, "little")
        + struct.pack("<iii", -987654321, -1000, -1000000)
        + bytes((1,))
    )
    assert native(device.sent[0]) == expected


def test_create_record_files_codes(card_and_device):
    card, device = card_and_device
    device.queue()
    device.queue()
    card.create_linear_record_file(1, 0, 0x1324, 25, 4)
    card.create_cyclic_record_file_iso(0, 0, 0xEEEE, 4, 10, 0xE105)
    linear = native(device.sent[0])
    assert linear == bytes((0xC1, 1, 0)) + (0x1324).to_bytes(2, "little") + (25).to_bytes(3, "little") + (4).to_bytes(3, "little")
    assert native(device.sent[1])[:4] == bytes((0xC0, 0)) + (0xE105).to_bytes(2, "little")


def test_create_file_rejects_invalid_communication_settings(card_and_device):
    card, device = card_and_device
    with pytest.raises(ValueError):
        card.create_std_data_file(1, 2, 0xEEEE, 10)
    assert device.sent == []


def test_write_data_short(card_and_device):
    card, device = card_and_device
    payload = b"Some data to write to the card"
    device.queue()
    assert card.write_data(15, 0, payload, CommunicationMode.PLAIN) == 30
    expected = bytes((0x3D, 15)) + (0).to_bytes(3, "little") + len(payload).to_bytes(3, "little") + payload
    assert native(device.sent[0]) == expected


def test_write_data_splits_into_frames(card_and_device):
    card, device = card_and_device
    payload = bytes(range(100))
    device.queue(b"", PiccStatus.ADDITIONAL_FRAME)
    device.queue()
    assert card.write_data(14, 0, payload, CommunicationMode.PLAIN) == len(payload)
    first, second = (native(apdu) for apdu in device.sent)
    assert len(first) == 55
    assert second[0] == 0xAF
    assert first + second[1:] == bytes((0x3D, 14, 0, 0, 0, 100, 0, 0)) + payload


def test_write_data_permission_error(card_and_device):
    card, device = card_and_device
    device.queue(b"", PiccStatus.PERMISSION_ERROR)
    with pytest.raises(DesfireError) as info:
        card.write_data(15, 20, b"Test!", CommunicationMode.PLAIN)
    assert info.value.status == PiccStatus.PERMISSION_ERROR
    assert card.last_picc_error == PiccStatus.PERMISSION_ERROR


def test_write_data_invalidates_settings_cache(card_and_device):
    card, device = card_and_device
    device.queue(data_file_settings(64, file_type=FileType.BACKUP_DATA_FILE))
    card.get_file_settings(5)
    device.queue()
    card.write_data(5, 0, b"00", CommunicationMode.PLAIN)
    device.queue(data_file_settings(64, file_type=FileType.BACKUP_DATA_FILE))
    card.get_file_settings(5)
    assert [native(apdu)[0] for apdu in device.sent] == [0xF5, 0x3D, 0xF5]


def test_write_data_detects_mode_from_settings(card_and_device):
    card, device = card_and_device
    device.queue(data_file_settings(100))
    device.queue()
    assert card.write_data(15, 0, b"abc") == 3
    assert native(device.sent[0]) == bytes((0xF5, 15))
    assert native(device.sent[1])[0] == 0x3D


def test_read_data_with_length(card_and_device):
    card, device = card_and_device
    content = b"to write to the card\0\0\0\0Another block of data.\0\0\0\0"
    device.queue(data_file_settings(100))
    device.queue(content)
    assert card.read_data(15, 10, 50, CommunicationMode.PLAIN) == content
    assert native(device.sent[1]) == bytes((0xBD, 15)) + (10).to_bytes(3, "little") + (50).to_bytes(3, "little")


def test_read_data_collects_additional_frames(card_and_device):
    card, device = card_and_device
    part1 = bytes(range(59))
    part2 = bytes(range(41))
    device.queue(data_file_settings(100))
    device.queue(part1, PiccStatus.ADDITIONAL_FRAME)
    device.queue(part2)
    assert card.read_data(15, 0, 0, CommunicationMode.PLAIN) == part1 + part2
    assert native(device.sent[2]) == bytes((0xAF,))


def test_read_whole_value_file_is_refused(card_and_device):
    card, device = card_and_device
    value_settings = bytes((FileType.VALUE_FILE_WITH_BACKUP, 0)) + (0xEEEE).to_bytes(2, "little") + struct.pack("<iiiB", 0, 1000, 0, 0)
    device.queue(value_settings)
    with pytest.raises(ValueError):
        card.read_data(4, 0, 0, CommunicationMode.PLAIN)
    assert len(device.sent) == 1


def test_read_records(card_and_device):
    card, device = card_and_device
    device.queue(record_file_settings(4, 10, 9))
    device.queue(b"r.01")
    assert card.read_records(0, 0, 1, CommunicationMode.PLAIN) == b"r.01"
    assert native(device.sent[1])[0] == 0xBB


def test_read_mode_detection_uses_authenticated_key():
    processor = RecordingProcessor()
    card, device = make_card(processor)
    card.authenticated_key_no = 1
    device.queue(data_file_settings(100, access_rights=0x1234, cs=CommunicationMode.ENCIPHERED))
    device.queue(b"xy")
    assert card.read_data(14, 0, 2) == b"xy"
    assert processor.post[-1] & MODE_MASK == CommunicationMode.ENCIPHERED


def test_get_value(card_and_device):
    card, device = card_and_device
    device.queue(struct.pack("<i", -1000000))
    assert card.get_value(4, CommunicationMode.PLAIN) == -1000000
    assert native(device.sent[0]) == bytes((0x6C, 4))


@pytest.mark.parametrize(
    "method, code, amount",
    [("credit", 0x0C, 100), ("debit", 0xDC, 97), ("limited_credit", 0x1C, 20)],
)
def test_value_operations_wire_bytes(card_and_device, method, code, amount):
    card, device = card_and_device
    device.queue()
    getattr(card, method)(4, amount, CommunicationMode.PLAIN)
    assert native(device.sent[0]) == bytes((code, 4)) + struct.pack("<i", amount)


def test_limited_credit_failure_raises(card_and_device):
    card, device = card_and_device
    device.queue(b"", PiccStatus.PERMISSION_ERROR)
    with pytest.raises(DesfireError):
        card.limited_credit(4, 20, CommunicationMode.PLAIN)
    assert card.last_picc_error == PiccStatus.PERMISSION_ERROR


def test_change_file_settings_free_is_plain():
    processor = RecordingProcessor()
    card, device = make_card(processor)
    device.queue(data_file_settings(100, access_rights=0xEEEE))
    device.queue()
    card.change_file_settings(15, CommunicationMode.PLAIN, 0xEFFF)
    data, offset, mode = processor.pre[-1]
    assert data == bytes((0x5F, 15, 0)) + (0xEFFF).to_bytes(2, "little")
    assert offset == 0
    assert not mode & ENC_COMMAND


def test_change_file_settings_protected_is_enciphered():
    processor = RecordingProcessor()
    card, device = make_card(processor)
    device.queue(data_file_settings(100, access_rights=0x1234))
    device.queue()
    card.change_file_settings(14, CommunicationMode.MACED, 0x1234)
    data, offset, mode = processor.pre[-1]
    assert data == bytes((0x5F, 14, 1)) + (0x1234).to_bytes(2, "little")
    assert offset == 2
    assert mode & ENC_COMMAND
    assert mode & MODE_MASK == CommunicationMode.ENCIPHERED


def test_change_file_settings_drops_cache(card_and_device):
    card, device = card_and_device
    device.queue(data_file_settings(100))
    device.queue()
    card.change_file_settings(15, CommunicationMode.PLAIN, 0xEFFF)
    device.queue(data_file_settings(100, access_rights=0xEFFF))
    assert card.get_file_settings(15).access_rights.to_int() == 0xEFFF


@pytest.mark.parametrize(
    "call, command",
    [
        (lambda card: card.delete_file(5), bytes((0xDF, 5))),
        (lambda card: card.clear_record_file(1), bytes((0xEB, 1))),
        (lambda card: card.commit_transaction(), bytes((0xC7,))),
        (lambda card: card.abort_transaction(), bytes((0xA7,))),
    ],
)
def test_simple_commands(card_and_device, call, command):
    card, device = card_and_device
    device.queue()
    call(card)
    assert native(device.sent[0]) == command


def test_commands_need_connection():
    card = DesfireCard(FakeDevice(), TARGET)
    with pytest.raises(TagStateError):
        card.commit_transaction()
    with pytest.raises(TagStateError):
        card.write_data(1, 0, b"x", CommunicationMode.PLAIN)


def test_invalid_communication_settings_for_data(card_and_device):
    card, device = card_and_device
    with pytest.raises(ValueError):
        card.write_data(1, 0, b"x", 2)
    with pytest.raises(ValueError):
        card.read_data(1, 0, 1, 4)
    assert device.sent == []