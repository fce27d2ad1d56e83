from pathlib import Path

LOG_DIR = Path(__file__).parent / "logs"
LOG_DIR.mkdir(parents=True, exist_ok=True)

LOG_FILE = LOG_DIR / "session.jsonl"
SIM_STORE = LOG_DIR / "sim_flash.bin"
APP_NAME = "Caterina Flasher"

# Порт: Arduino Leonardo в режиме загрузчика, 57600 как у avrdude -c avr109
BAUD_RATE = 57600
DEFAULT_VID = 0x2341
DEFAULT_PID = 0x0036

# Тайминги загрузчика (секунды). Это требования железа, не убирать.
PROBE_DELAY = 0.010       # после 'S'
IDENTITY_SETTLE = 0.100   # после "CATERIN", перед 'P'
COMMAND_SETTLE = 0.005    # после каждой остальной команды
READ_TIMEOUT = 2.0
POLL_INTERVAL = 0.05

RETRY_LIMIT = 3
