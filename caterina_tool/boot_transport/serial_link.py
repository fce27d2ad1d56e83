import logging
from dataclasses import dataclass
from typing import Protocol

import serial
from serial.tools import list_ports

from ..config import BAUD_RATE, DEFAULT_PID, DEFAULT_VID, READ_TIMEOUT
from ..errors import TransportError

_logger = logging.getLogger(__name__)


class Transport(Protocol):
    """
    Байтовый поток до загрузчика.
    read() возвращает до size байт, b"" если за timeout ничего не пришло,
    и None, если поток закрыт с той стороны.
    """
    def write(self, data: bytes) -> None: ...
    def read(self, size: int, timeout: float) -> bytes | None: ...
    def close(self) -> None: ...


@dataclass(frozen=True)
class PortSelector:
    port: str | None = None          # COM3, /dev/ttyACM0 или URL pyserial (loop://, socket://...)
    vid: int | None = DEFAULT_VID
    pid: int | None = DEFAULT_PID
    baudrate: int = BAUD_RATE

    def matches(self, info) -> bool:
        if self.vid is not None and info.vid != self.vid:
            return False
        if self.pid is not None and info.pid != self.pid:
            return False
        return True


def find_port(selector: PortSelector) -> str:
    """Найти порт по VID/PID, если он не задан явно."""
    if selector.port:
        return selector.port
    found = [p for p in list_ports.comports() if p.vid is not None and selector.matches(p)]
    if not found:
        vid = f"{selector.vid:04X}" if selector.vid is not None else "*"
        pid = f"{selector.pid:04X}" if selector.pid is not None else "*"
        raise TransportError(f"No serial port with VID:PID {vid}:{pid}. Is the board in bootloader mode?")
    if len(found) > 1:
        _logger.warning("several ports match, using %s", found[0].device)
    return found[0].device


class SerialTransport:
    """Transport поверх pyserial."""

    def __init__(self, ser: serial.SerialBase):
        self.ser = ser

    @classmethod
    def open(cls, port: str, baudrate: int = BAUD_RATE, timeout: float = READ_TIMEOUT) -> "SerialTransport":
        try:
            ser = serial.serial_for_url(port, baudrate=baudrate, timeout=timeout)
        except (serial.SerialException, ValueError) as e:
            raise TransportError(f"Cannot open {port}: {e}") from e
        _logger.debug("opened %s at %d baud", port, baudrate)
        return cls(ser)

    def write(self, data: bytes) -> None:
        try:
            self.ser.write(data)
            self.ser.flush()
        except serial.SerialException as e:
            raise TransportError(f"Write failed: {e}") from e

    def read(self, size: int, timeout: float) -> bytes | None:
        if not self.ser.is_open:
            return None
        try:
            self.ser.timeout = timeout
            return self.ser.read(size)
        except serial.SerialException as e:
            raise TransportError(f"Read failed: {e}") from e

    def close(self) -> None:
        try:
            self.ser.close()
        except serial.SerialException as e:
            # после 'E' плата уходит в перезагрузку и порт может исчезнуть раньше нас
            _logger.debug("close: %s", e)


def open_transport(selector: PortSelector) -> SerialTransport:
    return SerialTransport.open(find_port(selector), selector.baudrate)
