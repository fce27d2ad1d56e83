# firmware/simulate.py
import logging
import time
import zlib
from pathlib import Path

from .map import DEFAULT_PROFILE, DeviceProfile

_logger = logging.getLogger(__name__)

class SimCaterina:
    """
    Очень простой симулятор загрузчика Caterina (подмножество AVR109):
    - реализует интерфейс Transport, так что сессия не отличает его от порта
    - S, P, A, B..F, L, E; на всё остальное отвечает '?'
    - хранит "флеш" в памяти и, если задан store, в файле .bin
    - после 'E' "перезагружается": поток закрывается
    """
    def __init__(self, profile: DeviceProfile = DEFAULT_PROFILE, store: Path | None = None,
                 identity: bytes = b"CATERIN"):
        self.profile = profile
        self.identity = identity
        self.store = Path(store) if store is not None else None
        if self.store is not None and self.store.exists() and self.store.stat().st_size == profile.flash_size:
            self.flash = bytearray(self.store.read_bytes())
        else:
            self.flash = bytearray([0xFF] * profile.flash_size)

        self.address = 0           # в словах
        self.programming = False
        self.exited = False
        self.closed = False
        self.close_calls = 0
        self.pages_written = 0
        self._rx = bytearray()
        self._tx = bytearray()

    # ---- Transport ----
    def write(self, data: bytes) -> None:
        if self.closed:
            raise OSError("Simulated port is closed")
        self._rx += data
        self._process()

    def read(self, size: int, timeout: float) -> bytes | None:
        if self._tx:
            out = bytes(self._tx[:size])
            del self._tx[:size]
            return out
        if self.exited or self.closed:
            return None
        time.sleep(timeout)
        return b""

    def close(self) -> None:
        self.close_calls += 1
        if not self.closed:
            self.closed = True
            self._save()

    # ---- разбор команд ----
    def _process(self):
        while self._rx:
            cmd = self._rx[0]
            if cmd == ord("A"):
                if len(self._rx) < 3:
                    return
                self.address = (self._rx[1] << 8) | self._rx[2]
                self._consume(3, b"\r")
            elif cmd == ord("B"):
                if len(self._rx) < 4:
                    return
                size = (self._rx[1] << 8) | self._rx[2]
                if len(self._rx) < 4 + size:
                    return
                mem = self._rx[3]
                payload = bytes(self._rx[4:4 + size])
                if mem == ord("F") and self._write_flash(payload):
                    self._consume(4 + size, b"\r")
                else:
                    self._consume(4 + size, b"?")
            elif cmd == ord("S"):
                self._consume(1, self.identity)
            elif cmd == ord("P"):
                self.programming = True
                self._consume(1, b"\r")
            elif cmd == ord("L"):
                self.programming = False
                self._consume(1, b"\r")
            elif cmd == ord("E"):
                self._consume(1, b"\r")
                self.exited = True
                self._save()
            else:
                self._consume(1, b"?")

    def _consume(self, n: int, reply: bytes):
        del self._rx[:n]
        self._tx += reply

    def _write_flash(self, payload: bytes) -> bool:
        start = self.address * 2
        end = start + len(payload)
        if end > len(self.flash):
            _logger.warning("sim: write past end of flash at 0x%04X", start)
            return False
        self.flash[start:end] = payload
        self.address += len(payload) // 2
        self.pages_written += 1
        _logger.debug("sim: page at 0x%04X", start)
        return True

    def _save(self):
        if self.store is not None:
            self.store.parent.mkdir(parents=True, exist_ok=True)
            self.store.write_bytes(bytes(self.flash))

    def crc32(self) -> int:
        return zlib.crc32(self.flash) & 0xFFFFFFFF

    def info(self) -> dict:
        return {
            "device": self.profile.name,
            "size": self.profile.flash_size,
            "pages_written": self.pages_written,
            "crc32": f"0x{self.crc32():08X}",
            "store": str(self.store) if self.store else None,
        }
