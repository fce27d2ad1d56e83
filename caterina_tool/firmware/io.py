# firmware/io.py
from __future__ import annotations
import logging
import threading
from pathlib import Path
from typing import Callable, Optional

from ..boot_transport.avr109 import Avr109Session, ProgressSink, SessionTiming
from ..boot_transport.serial_link import PortSelector, Transport, open_transport
from ..config import RETRY_LIMIT
from ..errors import EmptyImage
from .ihex import MemoryImage, load_hex, parse_ihex
from .map import DEFAULT_PROFILE, DeviceProfile

_logger = logging.getLogger(__name__)

Opener = Callable[[PortSelector], Transport]

# ---- Высокоуровневые операции ----
def image_info(image: MemoryImage, profile: DeviceProfile = DEFAULT_PROFILE) -> dict:
    return {
        "device": profile.name,
        "bytes": image.length,
        "pages": image.page_count(profile.page_size),
        "page_size": profile.page_size,
        "used": f"{image.length * 100 / profile.flash_size:.1f}%",
        "start_segment_address": _hex_or_none(image.start_segment_address),
        "start_linear_address": _hex_or_none(image.start_linear_address),
        "crc32": f"0x{image.crc32():08X}",
    }

def _hex_or_none(value: int | None) -> str | None:
    return None if value is None else f"0x{value:08X}"

def read_image(path: Path, profile: DeviceProfile = DEFAULT_PROFILE) -> MemoryImage:
    return load_hex(path, profile.flash_size)

def flash_image(image: MemoryImage, transport: Transport,
                profile: DeviceProfile = DEFAULT_PROFILE,
                progress: Optional[ProgressSink] = None,
                timing: Optional[SessionTiming] = None,
                retry_limit: int = RETRY_LIMIT,
                cancel: Optional[threading.Event] = None) -> dict:
    """Записать уже разобранный образ. Транспорт будет закрыт в любом случае."""
    try:
        session = Avr109Session(image, transport, profile.page_size, progress,
                                timing, retry_limit, cancel)
    except ValueError:
        transport.close()
        raise
    result = session.run()
    result["device"] = profile.name
    return result

def flash_hex(hex_text: str | bytes, selector: PortSelector,
              progress: Optional[ProgressSink] = None, *,
              profile: DeviceProfile = DEFAULT_PROFILE,
              timing: Optional[SessionTiming] = None,
              retry_limit: int = RETRY_LIMIT,
              cancel: Optional[threading.Event] = None,
              opener: Opener = open_transport) -> dict:
    """
    Точка входа: HEX-текст -> загрузчик.
    Сначала разбор (ошибка HEX не трогает устройство), потом порт, потом сессия.
    Возвращает словарь с итогом либо бросает ParseError / FlashError.
    """
    image = parse_ihex(hex_text, profile.flash_size)
    if image.length == 0:
        raise EmptyImage("HEX file contains no data")
    _logger.info("parsed %d bytes, %d pages of %d", image.length,
                 image.page_count(profile.page_size), profile.page_size)
    transport = opener(selector)
    return flash_image(image, transport, profile, progress, timing, retry_limit, cancel)
