# boot_transport/avr109.py
"""
AVR109 поверх байтового потока (загрузчик Caterina).

Сессия записи флеша:
- 'S'           -> "CATERIN"  идентификатор программатора
- 'P'           -> CR         вход в режим программирования
- 'A' hi lo     -> CR         адрес (в словах), один раз в начале
- 'B' hi lo 'F' + страница -> CR   запись страницы, адрес в загрузчике растёт сам
- 'L'           -> CR         выход из режима программирования
- 'E'                         выход из загрузчика, плата перезагружается

Обмен строго полудуплексный: одна команда, один ответ. Ответы позиционные,
поэтому страницы уходят только по порядку и только после CR на предыдущую.
"""
from __future__ import annotations

import logging
import struct
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from ..config import (
    COMMAND_SETTLE,
    IDENTITY_SETTLE,
    POLL_INTERVAL,
    PROBE_DELAY,
    READ_TIMEOUT,
    RETRY_LIMIT,
)
from ..errors import (
    EmptyImage,
    FlashCancelled,
    ProtocolDesync,
    ProtocolTimeout,
    TransportClosedEarly,
    TransportError,
)

_logger = logging.getLogger(__name__)

CMD_IDENTIFY = b"S"
CMD_ENTER_PROG = b"P"
CMD_SET_ADDRESS = b"A"
CMD_WRITE_BLOCK = b"B"
CMD_LEAVE_PROG = b"L"
CMD_EXIT = b"E"
MEM_FLASH = b"F"

PROGRAMMER_ID = b"CATERIN"
ACK = b"\r"

ProgressSink = Callable[[int], None]


class FlashState(Enum):
    AWAITING_IDENTITY = "AwaitingIdentity"
    AWAITING_MODE_ACK = "AwaitingModeAck"
    AWAITING_PAGE_ACK = "AwaitingPageAck"
    AWAITING_FINAL_PAGE_ACK = "AwaitingFinalPageAck"
    AWAITING_LEAVE_ACK = "AwaitingLeaveAck"
    SUCCEEDED = "Terminated(success)"
    FAILED = "Terminated(failure)"

    @property
    def terminal(self) -> bool:
        return self in (FlashState.SUCCEEDED, FlashState.FAILED)

    @property
    def phase(self) -> str:
        if self in (FlashState.AWAITING_IDENTITY, FlashState.AWAITING_MODE_ACK):
            return "handshake"
        if self in (FlashState.AWAITING_PAGE_ACK, FlashState.AWAITING_FINAL_PAGE_ACK):
            return "page"
        if self is FlashState.AWAITING_LEAVE_ACK:
            return "exit"
        return "done"


# Ответ, которого ждём в каждом состоянии. Читаем ровно столько байт,
# так что для L/E проверка «первый байт CR» совпадает с проверкой целиком.
EXPECTED = {
    FlashState.AWAITING_IDENTITY: PROGRAMMER_ID,
    FlashState.AWAITING_MODE_ACK: ACK,
    FlashState.AWAITING_PAGE_ACK: ACK,
    FlashState.AWAITING_FINAL_PAGE_ACK: ACK,
    FlashState.AWAITING_LEAVE_ACK: ACK,
}


@dataclass(frozen=True)
class SessionTiming:
    probe_delay: float = PROBE_DELAY
    identity_settle: float = IDENTITY_SETTLE
    command_settle: float = COMMAND_SETTLE
    read_timeout: float = READ_TIMEOUT
    poll_interval: float = POLL_INTERVAL


@dataclass
class PageCursor:
    byte_offset: int = 0
    word_address: int = 0
    page_index: int = 0   # сколько страниц уже отправлено
    page_count: int = 0


def progress_percent(offset: int, length: int) -> int:
    # round() с округлением половины вверх, целочисленно
    return (offset * 200 + length) // (2 * length)


class Avr109Session:
    """Одна сессия записи образа через загрузчик. Транспорт принадлежит сессии и закрывается ею."""

    def __init__(self, image, transport, page_size: int = 128,
                 progress: Optional[ProgressSink] = None,
                 timing: Optional[SessionTiming] = None,
                 retry_limit: int = RETRY_LIMIT,
                 cancel: Optional[threading.Event] = None):
        if image.length == 0:
            raise EmptyImage("image is empty, nothing to flash")
        if page_size <= 0 or page_size % 2 or page_size > 0xFFFF:
            raise ValueError(f"Page size must be an even number 2..65534, got {page_size}")
        self.image = image
        self.t = transport
        self.page_size = page_size
        self.progress = progress
        self.timing = timing or SessionTiming()
        self.retry_limit = retry_limit
        self.cancel = cancel or threading.Event()

        self.state = FlashState.AWAITING_IDENTITY
        self.cursor = PageCursor(page_count=image.page_count(page_size))
        self._retries = 0
        self._last_reply: bytes | None = None   # последний неверный ответ в текущем состоянии
        self._closed = False

    # ---------- публичное ----------
    def run(self) -> dict:
        try:
            self._send(CMD_IDENTIFY, self.timing.probe_delay)
            while not self.state.terminal:
                expected = EXPECTED[self.state]
                response = self._await_response(expected)
                if response != expected:
                    self._mismatch(expected, response)
                    continue
                self._retries = 0
                self._last_reply = None
                self._on_ack()
        finally:
            if self.state is not FlashState.SUCCEEDED:
                self.state = FlashState.FAILED
            self._close()
        return {
            "bytes": self.image.length,
            "pages": self.cursor.page_index,
            "page_size": self.page_size,
            "crc32": f"0x{self.image.crc32():08X}",
        }

    # ---------- переходы ----------
    def _on_ack(self):
        if self.state is FlashState.AWAITING_IDENTITY:
            _logger.info("programmer %s detected, entering programming mode", PROGRAMMER_ID.decode())
            self._settle(self.timing.identity_settle)
            self._send(CMD_ENTER_PROG)
            self.state = FlashState.AWAITING_MODE_ACK

        elif self.state is FlashState.AWAITING_MODE_ACK:
            self.cursor.word_address = 0
            self._send(CMD_SET_ADDRESS + struct.pack(">H", self.cursor.word_address))
            self.state = FlashState.AWAITING_PAGE_ACK

        elif self.state is FlashState.AWAITING_PAGE_ACK:
            self._write_page()

        elif self.state is FlashState.AWAITING_FINAL_PAGE_ACK:
            _logger.info("last page written, leaving programming mode")
            self._send(CMD_LEAVE_PROG)
            self.state = FlashState.AWAITING_LEAVE_ACK

        elif self.state is FlashState.AWAITING_LEAVE_ACK:
            _logger.info("exiting bootloader")
            self._send(CMD_EXIT)
            self._close()
            self.state = FlashState.SUCCEEDED

    def _write_page(self):
        c = self.cursor
        if self.progress is not None:
            self.progress(progress_percent(c.byte_offset, self.image.length))

        final = c.byte_offset + self.page_size >= self.image.length
        payload = self.image.page(c.byte_offset, self.page_size)
        c.page_index += 1
        _logger.debug("page %d/%d at word 0x%04X", c.page_index, c.page_count, c.word_address)
        self._send(CMD_WRITE_BLOCK + struct.pack(">H", self.page_size) + MEM_FLASH + payload)

        c.byte_offset += self.page_size
        c.word_address += self.page_size // 2
        if final:
            self.state = FlashState.AWAITING_FINAL_PAGE_ACK

    def _mismatch(self, expected: bytes, actual: bytes):
        self._retries += 1
        self._last_reply = actual
        _logger.warning("%s: got %r, expected %r (%d/%d)",
                        self.state.value, actual, expected, self._retries, self.retry_limit)
        if self._retries > self.retry_limit:
            raise ProtocolDesync(self.state, expected, actual, **self._context())
        if self.state is FlashState.AWAITING_IDENTITY:
            # 'S' ничего не меняет в загрузчике, его можно повторить
            self._send(CMD_IDENTIFY, self.timing.probe_delay)

    # ---------- ввод/вывод ----------
    def _send(self, data: bytes, settle: Optional[float] = None):
        self._check_cancel()
        _logger.debug(">> %s", data[:4].hex(" ") + (" ..." if len(data) > 4 else ""))
        self._io(self.t.write, data)
        self._settle(self.timing.command_settle if settle is None else settle)

    def _await_response(self, expected: bytes) -> bytes:
        size = len(expected)
        deadline = time.monotonic() + self.timing.read_timeout
        buf = bytearray()
        while len(buf) < size:
            self._check_cancel()
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                # устройство ответило не то (NACK "?" или обрывок) и замолчало
                if buf:
                    raise ProtocolDesync(self.state, expected, bytes(buf), **self._context())
                if self._last_reply is not None:
                    raise ProtocolDesync(self.state, expected, self._last_reply, **self._context())
                raise ProtocolTimeout(self.state, self.timing.read_timeout, **self._context())
            chunk = self._io(self.t.read, size - len(buf), min(remaining, self.timing.poll_interval))
            if chunk is None:
                raise TransportClosedEarly(self.state, **self._context())
            if chunk:
                _logger.debug("<< %s", chunk.hex(" "))
                buf += chunk
        return bytes(buf)

    def _io(self, fn, *args):
        try:
            return fn(*args)
        except TransportError as e:
            if e.state is not None:
                raise
            raise TransportError(e.reason, self.state, **self._context()) from e
        except OSError as e:
            raise TransportError(str(e), self.state, **self._context()) from e

    def _settle(self, delay: float):
        if delay > 0:
            if self.cancel.wait(delay):
                raise FlashCancelled(self.state, **self._context())
        else:
            self._check_cancel()

    def _check_cancel(self):
        if self.cancel.is_set():
            raise FlashCancelled(self.state, **self._context())

    def _context(self) -> dict:
        c = self.cursor
        return {"page": c.page_index or 1, "pages": c.page_count, "word_address": c.word_address}

    def _close(self):
        if not self._closed:
            self._closed = True
            self.t.close()
