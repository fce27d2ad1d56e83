# boot_tools.py
import time
from rich import print

from .boot_transport.avr109 import CMD_IDENTIFY, PROGRAMMER_ID
from .config import PROBE_DELAY, READ_TIMEOUT
from .errors import TransportError

def bootloader_probe(transport, timeout: float = READ_TIMEOUT, verbose=True) -> str | None:
    """
    Безопасный тест загрузчика:
    - Посылает 'S' (запрос идентификатора программатора)
    - Ждёт 7 байт ответа ("CATERIN" у Caterina, "AVRBOOT" у AVR109 от Atmel)
    Ничего не пишет во флеш. Возвращает идентификатор или None.
    """
    try:
        transport.write(CMD_IDENTIFY)
        time.sleep(PROBE_DELAY)
        deadline = time.monotonic() + timeout
        resp = b""
        while len(resp) < len(PROGRAMMER_ID) and time.monotonic() < deadline:
            chunk = transport.read(len(PROGRAMMER_ID) - len(resp), max(0.0, deadline - time.monotonic()))
            if chunk is None:
                break
            resp += chunk
        if verbose: print("[cyan]>> S[/]"); print(repr(resp))
        return resp.decode("ascii", errors="replace") if resp else None
    except TransportError as e:
        if verbose: print(f"[red]Ошибка probe:[/] {e}")
        return None
