# firmware/map.py
from __future__ import annotations
from dataclasses import dataclass, replace

@dataclass(frozen=True)
class DeviceProfile:
    name: str
    flash_size: int      # байт, верхняя граница для HEX-парсера
    page_size: int = 128  # байт за одну команду записи страницы

    def __post_init__(self):
        # размер страницы уходит в команду B двумя байтами и пишется словами
        if not 2 <= self.page_size <= 0xFFFE or self.page_size % 2:
            raise ValueError(f"Page size must be an even number 2..65534, got {self.page_size}")
        if self.flash_size <= 0:
            raise ValueError(f"Flash size must be positive, got {self.flash_size}")

    def with_overrides(self, flash_size: int | None = None, page_size: int | None = None) -> "DeviceProfile":
        changes = {}
        if flash_size is not None:
            changes["flash_size"] = flash_size
        if page_size is not None:
            changes["page_size"] = page_size
        if not changes:
            return self
        return replace(self, name=f"{self.name}*", **changes)

# Caterina живёт на 32U4/16U4 (Leonardo, Micro и клоны).
# 32 КБ у 32U4, это же верхняя граница образа по умолчанию.
ATMEGA32U4 = DeviceProfile("atmega32u4", flash_size=32 * 1024, page_size=128)
ATMEGA16U4 = DeviceProfile("atmega16u4", flash_size=16 * 1024, page_size=128)

PROFILES = {p.name: p for p in (ATMEGA32U4, ATMEGA16U4)}
DEFAULT_PROFILE = ATMEGA32U4

def get_profile(name: str) -> DeviceProfile:
    try:
        return PROFILES[name.lower()]
    except KeyError:
        known = ", ".join(sorted(PROFILES))
        raise ValueError(f"Unknown device '{name}'. Known: {known}") from None
