from __future__ import annotations
import json
import logging
from datetime import datetime, timezone
from pathlib import Path

import typer
from rich import print
from rich.logging import RichHandler
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn
from serial.tools import list_ports

from .boot_tools import bootloader_probe
from .boot_transport.avr109 import SessionTiming
from .boot_transport.serial_link import PortSelector, open_transport
from .config import BAUD_RATE, DEFAULT_PID, DEFAULT_VID, LOG_FILE, READ_TIMEOUT, RETRY_LIMIT, SIM_STORE
from .errors import CaterinaToolError, FlashError, ParseError
from .firmware.io import flash_hex, image_info, read_image
from .firmware.map import DEFAULT_PROFILE, PROFILES, get_profile
from .firmware.simulate import SimCaterina

app = typer.Typer(add_completion=False, help="Caterina CLI: прошивка Intel HEX через загрузчик AVR109.")

def _log_event(kind: str, payload: dict):
    LOG_FILE.parent.mkdir(parents=True, exist_ok=True)
    record = {
        "ts": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        "kind": kind,
        "payload": payload,
    }
    with open(LOG_FILE, "a", encoding="utf-8") as f:
        f.write(json.dumps(record, ensure_ascii=False) + "\n")

def _hex_id(value: str) -> int:
    try:
        return int(value, 16)
    except ValueError:
        raise typer.BadParameter(f"ожидается HEX, например 2341, получено '{value}'")

def _profile(device: str, page_size: int | None):
    try:
        return get_profile(device).with_overrides(page_size=page_size)
    except ValueError as e:
        print(f"[red]{e}[/]")
        raise typer.Exit(code=2)

def _error_payload(e: Exception) -> dict:
    payload = {"error": type(e).__name__, "message": str(e)}
    if isinstance(e, FlashError) and e.state is not None:
        payload.update(state=e.state.value, phase=e.phase, page=e.page, pages=e.pages)
    if isinstance(e, ParseError):
        payload["line"] = e.line
    return payload

@app.callback()
def _setup(verbose: bool = typer.Option(False, "--verbose", "-v", help="Подробный лог обмена")):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(show_path=False, rich_tracebacks=True)],
    )

@app.command()
def ports(
    vid: str = typer.Option(f"{DEFAULT_VID:04X}", help="USB VID загрузчика (HEX)"),
    pid: str = typer.Option(f"{DEFAULT_PID:04X}", help="USB PID загрузчика (HEX)"),
):
    """Показать доступные COM-порты (* — совпадает с VID:PID загрузчика)."""
    selector = PortSelector(vid=_hex_id(vid), pid=_hex_id(pid))
    found = list_ports.comports()
    if not found:
        print("[yellow]Порты не найдены.[/]")
        return
    for p in found:
        mark = "[green]*[/]" if p.vid is not None and selector.matches(p) else " "
        ids = f"{p.vid:04X}:{p.pid:04X}" if p.vid is not None else "----:----"
        print(f"{mark} [cyan]{p.device}[/] {ids} - {p.description}")

@app.command("hex-info")
def hex_info(
    hex_file: Path = typer.Argument(..., help="Файл Intel HEX"),
    device: str = typer.Option(DEFAULT_PROFILE.name, help=f"Профиль: {', '.join(PROFILES)}"),
):
    """Разобрать HEX и показать, что будет записано."""
    if not hex_file.exists():
        print(f"[red]Файл не найден:[/] {hex_file}")
        raise typer.Exit(code=2)
    profile = _profile(device, None)
    try:
        image = read_image(hex_file, profile)
    except ParseError as e:
        print(f"[red]Ошибка разбора HEX:[/] {e}")
        _log_event("parse_failed", {"file": str(hex_file), **_error_payload(e)})
        raise typer.Exit(code=1)
    info = image_info(image, profile)
    _log_event("hex_info", {"file": str(hex_file), **info})
    print(json.dumps(info, ensure_ascii=False, indent=2))

@app.command()
def probe(
    port: str = typer.Option(None, help="Порт, напр. COM5 или /dev/ttyACM0"),
    vid: str = typer.Option(f"{DEFAULT_VID:04X}", help="USB VID загрузчика (HEX)"),
    pid: str = typer.Option(f"{DEFAULT_PID:04X}", help="USB PID загрузчика (HEX)"),
    baud: int = typer.Option(BAUD_RATE, help="Скорость порта"),
    demo: bool = typer.Option(False, help="Симулятор вместо платы"),
):
    """
    Безопасный тест: запросить идентификатор загрузчика ('S'). Флеш не трогается.
    """
    if demo:
        transport = SimCaterina(DEFAULT_PROFILE)
    else:
        try:
            transport = open_transport(PortSelector(port, _hex_id(vid), _hex_id(pid), baud))
        except CaterinaToolError as e:
            print(f"[red]{e}[/]")
            raise typer.Exit(code=1)
    try:
        ident = bootloader_probe(transport, verbose=False)
    finally:
        transport.close()
    _log_event("probe", {"port": port, "demo": demo, "identity": ident})
    if ident:
        print(f"[bold green]Загрузчик ответил:[/] {ident}")
    else:
        print("[bold yellow]Загрузчик не ответил. Нажми reset на плате и повтори.[/]")
        raise typer.Exit(code=1)

@app.command()
def flash(
    hex_file: Path = typer.Argument(..., help="Прошивка Intel HEX"),
    port: str = typer.Option(None, help="Порт, напр. COM5 или /dev/ttyACM0 (иначе поиск по VID/PID)"),
    vid: str = typer.Option(f"{DEFAULT_VID:04X}", help="USB VID загрузчика (HEX)"),
    pid: str = typer.Option(f"{DEFAULT_PID:04X}", help="USB PID загрузчика (HEX)"),
    baud: int = typer.Option(BAUD_RATE, help="Скорость порта"),
    device: str = typer.Option(DEFAULT_PROFILE.name, help=f"Профиль: {', '.join(PROFILES)}"),
    page_size: int = typer.Option(None, help="Размер страницы, байт (по умолчанию из профиля)"),
    timeout: float = typer.Option(READ_TIMEOUT, help="Таймаут ответа загрузчика, с"),
    retries: int = typer.Option(RETRY_LIMIT, help="Сколько неверных ответов терпеть"),
    demo: bool = typer.Option(False, help="Писать в симулятор загрузчика вместо платы"),
):
    """
    Записать прошивку через загрузчик Caterina.
    Плата должна быть в режиме загрузчика (reset, ~8 секунд).
    """
    if not hex_file.exists():
        print(f"[red]Файл не найден:[/] {hex_file}")
        raise typer.Exit(code=2)

    profile = _profile(device, page_size)
    selector = PortSelector(port, _hex_id(vid), _hex_id(pid), baud)
    opener = (lambda _sel: SimCaterina(profile, SIM_STORE)) if demo else open_transport

    try:
        with Progress(SpinnerColumn(), TextColumn("{task.description}"), BarColumn(),
                      TextColumn("{task.percentage:>3.0f}%")) as bar:
            task = bar.add_task(f"Запись {hex_file.name}", total=100)
            result = flash_hex(
                hex_file.read_bytes(), selector,
                lambda percent: bar.update(task, completed=percent),
                profile=profile,
                timing=SessionTiming(read_timeout=timeout),
                retry_limit=retries,
                opener=opener,
            )
            bar.update(task, completed=100)
    except ParseError as e:
        print(f"[red]Ошибка разбора HEX:[/] {e}")
        _log_event("flash_failed", {"file": str(hex_file), **_error_payload(e)})
        raise typer.Exit(code=1)
    except CaterinaToolError as e:
        print(f"[red]Ошибка записи:[/] {e}")
        _log_event("flash_failed", {"file": str(hex_file), "demo": demo, **_error_payload(e)})
        raise typer.Exit(code=1)

    result["source"] = str(hex_file)
    _log_event("flash", result)
    print(f"[green]Готово:[/] записано {result['bytes']} байт ({result['pages']} стр.) из {result['source']}")
    if demo:
        print(f"[dim]Симулятор: {SIM_STORE}[/]")
    print(f"[dim]Логи записаны в: {LOG_FILE}[/]")


if __name__ == "__main__":
    app()
