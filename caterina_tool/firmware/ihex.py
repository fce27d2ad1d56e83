# firmware/ihex.py
"""Разбор Intel HEX в плоский образ памяти.

Формат записи: ``:LLAAAATT<данные>CC``, где

* ``LL``: число байт данных,
* ``AAAA``: 16-битный адрес загрузки (big-endian),
* ``TT``: тип записи,
* ``CC``: контрольная сумма (дополнение до двух суммы всех байт записи).

Незаписанные промежутки внутри образа заполняются 0xFF, так выглядит
стёртая флеш-память.
"""

from __future__ import annotations

import binascii
import zlib
from dataclasses import dataclass
from enum import IntEnum
from pathlib import Path

from ..errors import (
    AddressOutOfRange,
    ChecksumMismatch,
    InvalidRecordLength,
    MalformedLine,
    MissingEndOfFile,
    UnknownRecordType,
)
from .map import DEFAULT_PROFILE

EMPTY_VALUE = 0xFF
SMALLEST_RECORD = 11  # ':' + LL + AAAA + TT + CC


class RecordType(IntEnum):
    DATA = 0x00
    END_OF_FILE = 0x01
    EXTENDED_SEGMENT_ADDRESS = 0x02
    START_SEGMENT_ADDRESS = 0x03
    EXTENDED_LINEAR_ADDRESS = 0x04
    START_LINEAR_ADDRESS = 0x05


# обязательный byte_count управляющих записей
_CONTROL_LENGTHS = {
    RecordType.EXTENDED_SEGMENT_ADDRESS: 2,
    RecordType.START_SEGMENT_ADDRESS: 4,
    RecordType.EXTENDED_LINEAR_ADDRESS: 2,
    RecordType.START_LINEAR_ADDRESS: 4,
}


@dataclass(frozen=True)
class HexRecord:
    """Одна строка HEX-файла после декодирования."""

    byte_count: int
    load_address: int
    record_type: int
    data: bytes
    checksum: int

    def expected_checksum(self) -> int:
        total = self.byte_count + (self.load_address >> 8) + (self.load_address & 0xFF) + self.record_type
        total += sum(self.data)
        return (0x100 - (total & 0xFF)) & 0xFF

    def value(self) -> int:
        return int.from_bytes(self.data, "big")

    def to_line(self) -> str:
        return f":{self.byte_count:02X}{self.load_address:04X}{self.record_type:02X}{self.data.hex().upper()}{self.checksum:02X}"

    @classmethod
    def build(cls, record_type: int, load_address: int = 0, data: bytes = b"") -> "HexRecord":
        if len(data) > 0xFF:
            raise ValueError(f"record holds at most 255 data bytes, got {len(data)}")
        if not 0 <= load_address <= 0xFFFF:
            raise ValueError(f"load address 0x{load_address:X} does not fit in 16 bits")
        rec = cls(len(data), load_address, int(record_type), bytes(data), 0)
        return cls(rec.byte_count, rec.load_address, rec.record_type, rec.data, rec.expected_checksum())


@dataclass(frozen=True)
class MemoryImage:
    """Образ прошивки: байты с адреса 0 и необязательные стартовые адреса."""

    data: bytes
    start_segment_address: int | None = None
    start_linear_address: int | None = None

    @property
    def length(self) -> int:
        return len(self.data)

    def page_count(self, page_size: int) -> int:
        return -(-self.length // page_size)

    def page(self, offset: int, page_size: int) -> bytes:
        chunk = self.data[offset:offset + page_size]
        return chunk + bytes([EMPTY_VALUE]) * (page_size - len(chunk))

    def crc32(self) -> int:
        return zlib.crc32(self.data) & 0xFFFFFFFF


def _field(text: str, pos: int, width: int, line: int) -> int:
    chunk = text[pos:pos + width]
    if len(chunk) != width:
        raise MalformedLine("record is truncated", line)
    try:
        return int.from_bytes(binascii.a2b_hex(chunk), "big")
    except ValueError:
        raise MalformedLine(f"'{chunk}' is not a hex field", line) from None


def _read_record(text: str, pos: int, line: int) -> tuple[HexRecord, int]:
    if text[pos] != ":":
        raise MalformedLine("does not start with a colon (:)", line)
    pos += 1

    byte_count = _field(text, pos, 2, line); pos += 2
    load_address = _field(text, pos, 4, line); pos += 4
    record_type = _field(text, pos, 2, line); pos += 2

    hex_data = text[pos:pos + byte_count * 2]
    if len(hex_data) != byte_count * 2:
        raise MalformedLine("record is truncated", line)
    try:
        data = binascii.a2b_hex(hex_data)
    except ValueError:
        raise MalformedLine("data field is not hex", line) from None
    pos += byte_count * 2

    checksum = _field(text, pos, 2, line); pos += 2
    return HexRecord(byte_count, load_address, record_type, data, checksum), pos


def parse_ihex(text: str | bytes, capacity: int = DEFAULT_PROFILE.flash_size) -> MemoryImage:
    """
    Разобрать Intel HEX в MemoryImage.
    capacity: объём флеша устройства в байтах; данные за его пределами дают AddressOutOfRange.
    """
    if isinstance(text, (bytes, bytearray)):
        try:
            text = text.decode("ascii")
        except UnicodeDecodeError:
            raise MalformedLine("input is not ASCII text") from None

    buf = bytearray()
    high_address = 0
    start_segment = None
    start_linear = None
    line = 0
    pos = 0

    while pos + SMALLEST_RECORD <= len(text):
        line += 1
        rec, pos = _read_record(text, pos, line)

        expected = rec.expected_checksum()
        if rec.checksum != expected:
            raise ChecksumMismatch(line, expected, rec.checksum)

        if rec.record_type == RecordType.DATA:
            address = high_address + rec.load_address
            if address + rec.byte_count > capacity:
                raise AddressOutOfRange(line, address, rec.byte_count, capacity)
            if address > len(buf):
                buf.extend(bytes([EMPTY_VALUE]) * (address - len(buf)))
            buf[address:address + rec.byte_count] = rec.data

        elif rec.record_type == RecordType.END_OF_FILE:
            if rec.byte_count != 0:
                raise InvalidRecordLength(line, rec.record_type, rec.byte_count, rec.load_address)
            return MemoryImage(bytes(buf), start_segment, start_linear)

        elif rec.record_type in _CONTROL_LENGTHS:
            if rec.byte_count != _CONTROL_LENGTHS[rec.record_type] or rec.load_address != 0:
                raise InvalidRecordLength(line, rec.record_type, rec.byte_count, rec.load_address)
            if rec.record_type == RecordType.EXTENDED_SEGMENT_ADDRESS:
                high_address = rec.value() << 4
            elif rec.record_type == RecordType.EXTENDED_LINEAR_ADDRESS:
                high_address = rec.value() << 16
            elif rec.record_type == RecordType.START_SEGMENT_ADDRESS:
                start_segment = rec.value()
            else:
                start_linear = rec.value()

        else:
            raise UnknownRecordType(line, rec.record_type)

        # перевод строки после записи: \r, \n или \r\n
        if text[pos:pos + 1] == "\r":
            pos += 1
        if text[pos:pos + 1] == "\n":
            pos += 1

    raise MissingEndOfFile("unexpected end of input: missing EOF record")


def load_hex(path: Path, capacity: int = DEFAULT_PROFILE.flash_size) -> MemoryImage:
    return parse_ihex(Path(path).read_bytes(), capacity)
