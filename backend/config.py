"""Application-wide configuration constants."""

import os
import platform
import uuid
from pathlib import Path


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    return int(value) if value else default


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    return float(value) if value else default


# --- Identity ---
APP_ID = "lanfile"
APP_VERSION = "1.0.0"
CONFIG_DIR = Path(os.environ.get("LANFILE_CONFIG_DIR", Path.home() / ".lanfile"))
CONFIG_DIR.mkdir(parents=True, exist_ok=True)

# Persistent device ID so a restarted process keeps its identity on the LAN
_ID_FILE = CONFIG_DIR / "device_id"
if _ID_FILE.exists():
    DEVICE_ID = _ID_FILE.read_text().strip()
else:
    DEVICE_ID = str(uuid.uuid4())
    _ID_FILE.write_text(DEVICE_ID)

DEVICE_NAME = os.environ.get("LANFILE_DEVICE_NAME", platform.node())
PLATFORM = platform.system().lower()  # "windows" | "darwin" | "linux"
DEVICE_TYPE = "desktop"

# --- Networking ---
API_HOST = os.environ.get("LANFILE_API_HOST", "0.0.0.0")
API_PORT = _env_int("LANFILE_API_PORT", 8765)
# Origins of the presentation layer allowed to call the API (comma separated)
CORS_ORIGINS = [
    o.strip()
    for o in os.environ.get(
        "LANFILE_CORS_ORIGINS", "http://localhost:5173,http://127.0.0.1:5173"
    ).split(",")
    if o.strip()
]
HEARTBEAT_PORT = _env_int("LANFILE_HEARTBEAT_PORT", 32199)
SIGNALING_PORT = _env_int("LANFILE_SIGNALING_PORT", 8090)
SERVICE_TYPE = "_lanfile._tcp.local."

# --- Presence ---
DISCOVERY_SCAN_TIMEOUT = _env_float("LANFILE_SCAN_TIMEOUT", 5.0)  # seconds
HEARTBEAT_TIMEOUT = _env_float("LANFILE_HEARTBEAT_TIMEOUT", 3.0)  # seconds
RECONCILE_INTERVAL = _env_float("LANFILE_RECONCILE_INTERVAL", 30.0)  # seconds

# --- Signaling / negotiation ---
SIGNALING_CONNECT_TIMEOUT = _env_float("LANFILE_SIGNALING_TIMEOUT", 5.0)
NEGOTIATION_TIMEOUT = min(30.0, max(10.0, _env_float("LANFILE_NEGOTIATION_TIMEOUT", 20.0)))
CHECK_TIMEOUT = 2.0  # per candidate-pair connectivity check

# --- Transfer ---
DEFAULT_CHUNK_SIZE = _env_int("LANFILE_CHUNK_SIZE", 16384)  # 16 KiB
FILE_INFO_ACK_TIMEOUT = _env_float("LANFILE_ACK_TIMEOUT", 10.0)
RESEND_GRACE_PERIOD = _env_float("LANFILE_RESEND_GRACE", 60.0)  # completed uploads stay resendable

# --- Storage ---
DEFAULT_SAVE_DIR = os.environ.get(
    "LANFILE_SAVE_DIR", str(Path.home() / "Downloads" / "LanFile")
)
