# gui/hex_model.py
from __future__ import annotations
from PySide6.QtCore import QAbstractTableModel, QModelIndex, Qt
from PySide6.QtGui import QBrush, QColor

BYTES_PER_ROW = 16
ERASED = 0xFF

_ERASED_FG = QColor(110, 116, 124)
_ODD_PAGE_BG = QColor(38, 41, 46)


def _printable(chunk: bytes) -> str:
    return "".join(chr(b) if 32 <= b <= 126 else "." for b in chunk)


class ImageTableModel(QAbstractTableModel):
    """
    Образ прошивки так, как его увидит загрузчик: 16 байт в строке + ASCII.
    Каждая вторая страница подкрашена, стёртые байты (0xFF) приглушены.
    Слева адрес в байтах и в словах (в словах считает команда 'A').
    """
    def __init__(self, data: bytes = b"", page_size: int = 128):
        super().__init__()
        self._buf = bytes(data)
        self._page_size = page_size

    def load_image(self, data: bytes, page_size: int):
        self.beginResetModel()
        self._buf = bytes(data)
        self._page_size = page_size
        self.endResetModel()

    def bytes(self) -> bytes:
        return self._buf

    def page_count(self) -> int:
        return -(-len(self._buf) // self._page_size)

    def page_of(self, offset: int) -> int:
        return offset // self._page_size

    def page_offset(self, page: int) -> int:
        return page * self._page_size

    def index_to_offset(self, row: int, col: int) -> int:
        return row * BYTES_PER_ROW + col

    # ---------- Qt ----------
    def rowCount(self, parent=QModelIndex()) -> int:
        if parent.isValid():
            return 0
        return -(-len(self._buf) // BYTES_PER_ROW)

    def columnCount(self, parent=QModelIndex()) -> int:
        return BYTES_PER_ROW + 1

    def data(self, index, role=Qt.DisplayRole):
        if not index.isValid():
            return None
        row, col = index.row(), index.column()
        start = row * BYTES_PER_ROW

        if col == BYTES_PER_ROW:
            return _printable(self._buf[start:start + BYTES_PER_ROW]) if role == Qt.DisplayRole else None

        offset = start + col
        if offset >= len(self._buf):
            return None
        value = self._buf[offset]
        if role == Qt.DisplayRole:
            return f"{value:02X}"
        if role == Qt.TextAlignmentRole:
            return Qt.AlignCenter
        if role == Qt.ForegroundRole and value == ERASED:
            return QBrush(_ERASED_FG)
        if role == Qt.BackgroundRole and self.page_of(offset) % 2:
            return QBrush(_ODD_PAGE_BG)
        if role == Qt.ToolTipRole:
            return f"страница {self.page_of(offset) + 1}, слово 0x{offset // 2:04X}"
        return None

    def headerData(self, section, orientation, role=Qt.DisplayRole):
        if role != Qt.DisplayRole:
            return None
        if orientation == Qt.Vertical:
            offset = section * BYTES_PER_ROW
            return f"{offset:05X} w{offset // 2:04X}"
        return f"{section:X}" if section < BYTES_PER_ROW else "ASCII"

    def flags(self, index):
        return Qt.ItemIsEnabled | Qt.ItemIsSelectable if index.isValid() else Qt.NoItemFlags
