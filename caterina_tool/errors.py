# errors.py
"""
Иерархия исключений инструмента.

ParseError: всё, что ломается при разборе Intel HEX (до любого обмена с
устройством). FlashError: всё, что ломается во время сессии с загрузчиком;
такие ошибки несут состояние автомата и позицию страницы, чтобы было понятно,
насколько успела прошиться микросхема.
"""
from __future__ import annotations


class CaterinaToolError(Exception):
    pass


# ---- Разбор HEX ----
class ParseError(CaterinaToolError):
    def __init__(self, message: str, line: int | None = None):
        if line is not None:
            message = f"line {line}: {message}"
        super().__init__(message)
        self.line = line


class MalformedLine(ParseError):
    pass


class ChecksumMismatch(ParseError):
    def __init__(self, line: int, expected: int, actual: int):
        super().__init__(f"invalid checksum: got 0x{actual:02X}, expected 0x{expected:02X}", line)
        self.expected = expected
        self.actual = actual


class UnknownRecordType(ParseError):
    def __init__(self, line: int, record_type: int):
        super().__init__(f"invalid record type 0x{record_type:02X}", line)
        self.record_type = record_type


class InvalidRecordLength(ParseError):
    def __init__(self, line: int, record_type: int, byte_count: int, load_address: int = 0):
        super().__init__(
            f"invalid record of type 0x{record_type:02X}: "
            f"byte count {byte_count}, load address 0x{load_address:04X}",
            line,
        )
        self.record_type = record_type
        self.byte_count = byte_count
        self.load_address = load_address


class AddressOutOfRange(ParseError):
    def __init__(self, line: int, address: int, length: int, capacity: int):
        super().__init__(
            f"data at 0x{address:X}..0x{address + length:X} exceeds device capacity 0x{capacity:X}",
            line,
        )
        self.address = address
        self.length = length
        self.capacity = capacity


class MissingEndOfFile(ParseError):
    pass


# ValueError оставлен в базах для вызывающих, которые ловят его напрямую
class EmptyImage(ParseError, ValueError):
    def __init__(self, message: str = "image contains no data"):
        super().__init__(message)


# ---- Сессия с загрузчиком ----
class FlashError(CaterinaToolError):
    """
    Ошибка сессии. state: FlashState на момент сбоя,
    page/pages: номер текущей страницы (с 1) и их общее число.
    """

    def __init__(self, message: str, state=None, page: int | None = None,
                 pages: int | None = None, word_address: int | None = None):
        self.reason = message
        self.state = state
        self.page = page
        self.pages = pages
        self.word_address = word_address
        super().__init__(self._format())

    @property
    def phase(self) -> str | None:
        return self.state.phase if self.state is not None else None

    def where(self) -> str:
        if self.phase == "page" and self.pages:
            text = f"page {self.page} of {self.pages}"
            if self.word_address is not None:
                text += f" (word address 0x{self.word_address:04X})"
            return text
        return self.phase or "session"

    def _format(self) -> str:
        if self.state is None:
            return self.reason
        return f"{self.reason} [{self.state.value}, {self.where()}]"


class ProtocolDesync(FlashError):
    def __init__(self, state, expected: bytes, actual: bytes, **context):
        super().__init__(f"unexpected response {actual!r}, expected {expected!r}", state, **context)
        self.expected = expected
        self.actual = actual


class ProtocolTimeout(FlashError):
    def __init__(self, state, timeout: float, **context):
        super().__init__(f"no response within {timeout:g} s", state, **context)
        self.timeout = timeout


class TransportClosedEarly(FlashError):
    def __init__(self, state, **context):
        super().__init__("connection closed before the session finished", state, **context)


class TransportError(FlashError):
    pass


class FlashCancelled(FlashError):
    def __init__(self, state, **context):
        super().__init__("cancelled", state, **context)
