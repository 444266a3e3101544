# mifarekit

`mifarekit` builds and interprets the commands of MIFARE contactless tags:

- **MIFARE Classic** (Mini, 1K, 4K): key authentication, block read and
  write, value blocks (increment, decrement, restore, transfer), access-bit
  decoding, sector formatting, and sector/block arithmetic.
- **MIFARE DESFire**: native commands wrapped in ISO 7816-4 APDUs,
  applications, files (standard, backup, value, linear and cyclic record),
  data, values and records, transactions, and card information.

The package does not drive a reader. You pass it a
`mifarekit.transport.Device`: an object with `select_passive_target`,
`deselect_target` and `transceive`. A serial reader, a network bridge or a
simulated card used in tests can all fill that role.

## Installation

```
pip install mifarekit
```

To run the test suite:

```
pip install "mifarekit[test]"
pytest
```

## Modules

| Module | Contents |
| --- | --- |
| `mifarekit.transport` | `Device`, `Target`, `Modulation`, `BaudRate`, and the errors `NfcError`, `TransceiveError`, `AuthenticationError`, `TagStateError` |
| `mifarekit.classic` | `ClassicTag`, tag detection (`is_mini`, `is_classic_1k`, `is_classic_4k`), sector helpers, and `trailer_block`, `encode_value_block`, `decode_value_block` |
| `mifarekit.desfire_aid` | `DesfireAid`, the 24-bit DESFire application identifier |
| `mifarekit.desfire_protocol` | `wrap_command`, `unwrap_response`, `is_desfire`, `PiccStatus`, `DesfireError`, `CommunicationMode`, `FileType`, `AccessRights`, `FileSettings`, `VersionInfo`, `DfName`, and the `CryptoProcessor` / `PlainProcessor` hooks |
| `mifarekit.desfire_tag` | `DesfireTag`: connection, key settings, applications, card-level commands |
| `mifarekit.desfire_card` | `DesfireCard` (a `DesfireTag`): files, data, values, records and transactions |

## MIFARE Classic memory layout

The helpers in `mifarekit.classic` follow the card's layout. Sectors 0–31
hold 4 blocks each. Sectors 32 and up hold 16 blocks each. The last block of
every sector is its trailer.

```python
from mifarekit.classic import block_sector, sector_first_block, sector_last_block

block_sector(130)        # 32
sector_first_block(32)   # 128
sector_last_block(32)    # 143
sector_last_block(1)     # 7
```

A value block holds a signed 32-bit value and an address byte. Each is stored
together with inverted copies so that the card can check it:

```python
from mifarekit.classic import encode_value_block, decode_value_block

block = encode_value_block(1000, 5)   # 16 bytes, ready for ClassicTag.write
decode_value_block(block)             # (1000, 5)
```

`decode_value_block` raises `ValueError` if the copies in a block do not
agree. `trailer_block(key_a, ab_0, ab_1, ab_2, ab_tb, gpb, key_b)` builds a
sector trailer from two six-byte keys, the C3C2C1 access bits (0–7) of each
block and the general purpose byte.

## Working with a Classic tag

```python
from mifarekit.classic import ClassicTag, ClassicTagType, KeyType, DataPermission, is_classic_1k

if is_classic_1k(target):
    tag = ClassicTag(device, target, ClassicTagType.CLASSIC_1K)
    tag.connect()
    tag.authenticate(4, sector_key, KeyType.A)
    data = tag.read(4)
    if tag.get_data_block_permission(5, DataPermission.WRITE, KeyType.A):
        tag.write(5, bytes(16))
    tag.disconnect()
```

Your reader supplies `device` and `target`. `sector_key` is the six-byte key
of the sector.

Failures raise exceptions:

- A rejected authentication raises `AuthenticationError`.
- Other exchange failures raise `TransceiveError`.
- A command on a tag that is not connected, or a second `connect`, raises `TagStateError`.
- `format_sector` raises `PermissionError` if the key last used cannot rewrite the sector's data blocks and trailer.

## DESFire application identifiers

```python
from mifarekit.desfire_aid import DesfireAid

aid = DesfireAid.from_mad_aid(0x03, 0xE1, 1)
raw = aid.to_bytes()              # three bytes, least significant first
DesfireAid.from_bytes(raw)        # the same identifier again
```

`DesfireAid` refuses values above 24 bits. `from_mad_aid` refuses a MAD index
`n` above 15.

## Working with a DESFire card

```python
from mifarekit.desfire_card import DesfireCard
from mifarekit.desfire_protocol import CommunicationMode

card = DesfireCard(device, target)
card.connect()
card.select_application(aid)
card.create_std_data_file(1, CommunicationMode.PLAIN, 0xEEEE, 100)
card.write_data(1, 0, b"Some data to write to the card", CommunicationMode.PLAIN)
card.read_data(1, 0, 30, CommunicationMode.PLAIN)
card.commit_transaction()
card.disconnect()
```

If you pass no `cs` to `read_data`, `write_data`, `get_value`, `credit`,
`debit`, `limited_credit`, `write_record` or `read_records`, the card object
works out the communication mode itself. It uses the file's settings when
`authenticated_key_no` matches the file's read or write key, and plain mode
otherwise.

When the card answers with an error status, a `DesfireError` is raised. Its
`status` holds the returned status code, as a `PiccStatus` where the code is
a known one. `last_picc_error` on the card object also records it.

## What the package does not do

- **No DESFire session security.** The package has no DESFire authentication
  and no key changing, and it does no session encryption or MAC
  computation. `CryptoProcessor` is only an interface for such work.
  `PlainProcessor`, the default, passes every command and answer through
  unchanged.
- **Authenticated-only commands need a key number set by hand.**
  `change_key_settings` and `format_picc` raise `DesfireError` unless
  `authenticated_key_no` has been set on the card object.
- **No reader driver.** Talking to hardware is the job of the `Device` you
  supply.