# gui/main_qt.py
from __future__ import annotations
import re
import sys
import threading
from pathlib import Path

from PySide6.QtWidgets import (
    QApplication, QMainWindow, QWidget, QTabWidget, QVBoxLayout, QHBoxLayout, QFormLayout,
    QPushButton, QLabel, QFileDialog, QComboBox, QCheckBox, QMessageBox, QSpinBox,
    QLineEdit, QStatusBar, QGroupBox, QTextEdit, QTableView, QProgressBar
)
from PySide6.QtCore import Qt, QObject, QThread, Signal, Slot
from PySide6.QtGui import QFontDatabase, QPalette, QColor
from serial.tools import list_ports

from ..boot_transport.serial_link import PortSelector, open_transport
from ..config import APP_NAME, DEFAULT_PID, DEFAULT_VID, SIM_STORE
from ..errors import CaterinaToolError
from ..firmware.ihex import parse_ihex
from ..firmware.io import flash_hex, image_info
from ..firmware.map import DEFAULT_PROFILE, PROFILES
from ..firmware.simulate import SimCaterina
from .hex_model import ImageTableModel, BYTES_PER_ROW

_DARK = {
    QPalette.Window: (30, 32, 36),
    QPalette.WindowText: (220, 220, 220),
    QPalette.Base: (27, 29, 33),
    QPalette.AlternateBase: (42, 44, 48),
    QPalette.Text: (220, 220, 220),
    QPalette.Button: (42, 44, 48),
    QPalette.ButtonText: (220, 220, 220),
    QPalette.Highlight: (77, 163, 255),
    QPalette.HighlightedText: (255, 255, 255),
}

_STYLE = """
QWidget { font-size: 13px; color: #dcdcdc; }
QGroupBox { margin-top: 1ex; }
QGroupBox::title { color: #9aa3ad; }
QPushButton { background: #2d2f33; border: 1px solid #3c3f43; border-radius: 4px; padding: 4px 10px; }
QPushButton:hover { background: #3c3f43; }
QPushButton:disabled { color: #6b7078; }
QTextEdit, QLineEdit, QSpinBox { background: #1e2024; }
QProgressBar { border: 1px solid #3c3f43; border-radius: 4px; text-align: center; }
QProgressBar::chunk { background: #4DA3FF; }
"""

# ---------- тема ----------
def setup_theme(app):
    app.setStyle("Fusion")
    pal = QPalette()
    for role, rgb in _DARK.items():
        pal.setColor(role, QColor(*rgb))
    app.setPalette(pal)
    app.setStyleSheet(_STYLE)


# ---------- фоновая запись ----------
class FlashWorker(QObject):
    """Сессия с загрузчиком в отдельном потоке: окно не замирает, отмена через cancel."""
    progress = Signal(int)
    finished = Signal(dict)
    failed = Signal(str)

    def __init__(self, hex_text: bytes, selector: PortSelector, profile, demo: bool, cancel: threading.Event):
        super().__init__()
        self.hex_text = hex_text
        self.selector = selector
        self.profile = profile
        self.demo = demo
        self.cancel = cancel

    @Slot()
    def run(self):
        opener = (lambda _sel: SimCaterina(self.profile, SIM_STORE)) if self.demo else open_transport
        try:
            result = flash_hex(self.hex_text, self.selector, self.progress.emit,
                               profile=self.profile, cancel=self.cancel, opener=opener)
        except CaterinaToolError as e:
            self.failed.emit(str(e))
            return
        self.finished.emit(result)


def start_in_thread(worker: FlashWorker, parent=None, on_finished=None) -> QThread:
    """Запустить worker в своём QThread. Поток и worker удаляются сами после finished/failed."""
    thread = QThread(parent)
    worker.moveToThread(thread)
    thread.started.connect(worker.run)
    for done in (worker.finished, worker.failed):
        done.connect(thread.quit)
        done.connect(worker.deleteLater)
    if on_finished is not None:
        thread.finished.connect(on_finished)
    thread.finished.connect(thread.deleteLater)
    thread.start()
    return thread


# ---------- окно ----------
class MainWindow(QMainWindow):
    def __init__(self):
        super().__init__()
        self.setWindowTitle(APP_NAME)
        self.resize(1000, 700)
        self.setStatusBar(QStatusBar())

        self.current_hex_path: Path | None = None
        self._thread: QThread | None = None
        self._worker: FlashWorker | None = None
        self._cancel = threading.Event()

        self.tabs = QTabWidget()
        self.setCentralWidget(self.tabs)
        self.tabs.addTab(self._build_flash_tab(), "Прошивка")
        self.tabs.addTab(self._build_image_tab(), "Образ")
        self._refresh_ports()

    # ----------- вкладка "Прошивка" -----------
    def _build_flash_tab(self) -> QWidget:
        page = QWidget()
        layout = QVBoxLayout(page)

        board = QGroupBox("Плата")
        form = QFormLayout(board)
        port_row = QHBoxLayout()
        self.cb_ports = QComboBox()
        self.btn_refresh = QPushButton("Обновить")
        port_row.addWidget(self.cb_ports, 1)
        port_row.addWidget(self.btn_refresh)
        form.addRow("Порт:", port_row)
        self.cb_device = QComboBox()
        for name, profile in PROFILES.items():
            self.cb_device.addItem(f"{name} ({profile.flash_size // 1024} КБ)", profile)
        self.cb_device.setCurrentIndex(list(PROFILES).index(DEFAULT_PROFILE.name))
        form.addRow("Микросхема:", self.cb_device)
        self.chk_demo = QCheckBox("Симулятор вместо платы")
        self.chk_demo.setChecked(True)
        form.addRow(self.chk_demo)

        job = QGroupBox("Запись")
        job_layout = QVBoxLayout(job)
        file_row = QHBoxLayout()
        self.ed_file = QLineEdit()
        self.ed_file.setReadOnly(True)
        self.ed_file.setPlaceholderText("Файл .hex не выбран")
        self.btn_open = QPushButton("Открыть .hex…")
        self.btn_flash = QPushButton("Записать")
        self.btn_cancel = QPushButton("Отмена")
        self.btn_cancel.setEnabled(False)
        for wdg in (self.ed_file, self.btn_open, self.btn_flash, self.btn_cancel):
            file_row.addWidget(wdg)
        self.bar = QProgressBar()
        self.bar.setRange(0, 100)
        job_layout.addLayout(file_row)
        job_layout.addWidget(self.bar)

        self.log = QTextEdit()
        self.log.setReadOnly(True)

        layout.addWidget(board)
        layout.addWidget(job)
        layout.addWidget(self.log, 1)

        self.btn_refresh.clicked.connect(self._refresh_ports)
        self.btn_open.clicked.connect(self._open_hex)
        self.btn_flash.clicked.connect(self._do_flash)
        self.btn_cancel.clicked.connect(self._do_cancel)
        self.cb_device.currentIndexChanged.connect(lambda _i: self._reload_image())
        return page

    # ----------- вкладка "Образ" -----------
    def _build_image_tab(self) -> QWidget:
        page = QWidget()
        layout = QVBoxLayout(page)

        top = QHBoxLayout()
        self.lbl_info = QLabel("Образ не загружен")
        self.sp_page = QSpinBox()
        self.sp_page.setPrefix("стр. ")
        self.sp_page.setRange(1, 1)
        self.sp_page.valueChanged.connect(self._goto_page)
        top.addWidget(self.lbl_info, 1)
        top.addWidget(self.sp_page)
        layout.addLayout(top)

        self.model = ImageTableModel()
        self.table = QTableView()
        self.table.setModel(self.model)
        mono = QFontDatabase.systemFont(QFontDatabase.FixedFont)
        mono.setPointSize(11)
        self.table.setFont(mono)
        self.table.verticalHeader().setDefaultSectionSize(22)
        self.table.horizontalHeader().setDefaultSectionSize(34)
        self.table.setCornerButtonEnabled(False)
        layout.addWidget(self.table, 1)
        return page

    # ---------- утилиты ----------
    def _log(self, html: str):
        self.log.append(html)
        self.statusBar().showMessage(re.sub(r"<[^>]+>", "", html), 3000)

    def _profile(self):
        return self.cb_device.currentData()

    def _set_busy(self, busy: bool):
        for wdg in (self.btn_open, self.btn_flash, self.btn_refresh, self.cb_device, self.chk_demo):
            wdg.setEnabled(not busy)
        self.btn_cancel.setEnabled(busy)

    # ---------- действия ----------
    def _refresh_ports(self):
        bootloader = PortSelector(vid=DEFAULT_VID, pid=DEFAULT_PID)
        self.cb_ports.clear()
        for p in list_ports.comports():
            label = p.device
            if p.vid is not None:
                label += f" [{p.vid:04X}:{p.pid:04X}]"
                if bootloader.matches(p):
                    label += " загрузчик"
            self.cb_ports.addItem(label, p.device)
        self._log(f"<span style='color:#9aa3ad'>Портов найдено: {self.cb_ports.count()}</span>")

    def _open_hex(self):
        path, _ = QFileDialog.getOpenFileName(self, "Открыть прошивку", "", "Intel HEX (*.hex *.ihex)")
        if not path:
            return
        self.current_hex_path = Path(path)
        self.ed_file.setText(path)
        self._reload_image()

    def _reload_image(self):
        if not self.current_hex_path:
            return
        profile = self._profile()
        try:
            image = parse_ihex(self.current_hex_path.read_bytes(), profile.flash_size)
        except CaterinaToolError as e:
            self.model.load_image(b"", profile.page_size)
            self.lbl_info.setText("Образ не загружен")
            QMessageBox.critical(self, "Ошибка HEX", str(e))
            return
        self.model.load_image(image.data, profile.page_size)
        self.sp_page.setRange(1, max(1, self.model.page_count()))
        info = image_info(image, profile)
        self.lbl_info.setText(f"{info['bytes']} байт | {info['pages']} стр. по {info['page_size']} | "
                              f"занято {info['used']} | CRC32 {info['crc32']}")
        self._log(f"Открыт <b>{self.current_hex_path.name}</b>: {info['bytes']} байт, {info['pages']} стр.")

    def _goto_page(self, number: int):
        if not self.model.bytes():
            return
        row = self.model.page_offset(number - 1) // BYTES_PER_ROW
        idx = self.model.index(row, 0)
        self.table.setCurrentIndex(idx)
        self.table.scrollTo(idx, QTableView.ScrollHint.PositionAtTop)

    def _do_flash(self):
        if not self.current_hex_path or not self.current_hex_path.exists():
            QMessageBox.warning(self, "Нет файла", "Сначала открой .hex.")
            return
        demo = self.chk_demo.isChecked()
        port = self.cb_ports.currentData()
        selector = PortSelector(port=port) if port else PortSelector()

        self._cancel = threading.Event()
        self._worker = FlashWorker(self.current_hex_path.read_bytes(), selector,
                                   self._profile(), demo, self._cancel)
        self._worker.progress.connect(self.bar.setValue)
        self._worker.finished.connect(self._on_flash_done)
        self._worker.failed.connect(self._on_flash_failed)

        self.bar.setValue(0)
        self._set_busy(True)
        target = "симулятор" if demo else (port or "поиск по VID:PID")
        self._log(f"<b>Запись…</b> ({target})")
        self._thread = start_in_thread(self._worker, self, self._forget_worker)

    def _forget_worker(self):
        # оба объекта уже отданы deleteLater, обращаться к ним больше нельзя
        self._thread = None
        self._worker = None

    def _do_cancel(self):
        self._cancel.set()
        self._log("<span style='color:#d7ba7d'>Отмена…</span>")

    def _on_flash_done(self, result: dict):
        self._set_busy(False)
        self.bar.setValue(100)
        self._log(f"<span style='color:#7ed321'>Готово:</span> {result['bytes']} байт, "
                  f"{result['pages']} стр., CRC32 {result['crc32']}")

    def _on_flash_failed(self, message: str):
        self._set_busy(False)
        self._log(f"<b style='color:#e06c75'>Ошибка:</b> {message}")
        QMessageBox.critical(self, "Запись прошивки", message)

    def closeEvent(self, event):
        if self._thread is not None and self._thread.isRunning():
            self._cancel.set()
            self._thread.wait(5000)
        super().closeEvent(event)


def main():
    app = QApplication(sys.argv)
    setup_theme(app)
    win = MainWindow()
    win.show()
    sys.exit(app.exec())

if __name__ == "__main__":
    main()
