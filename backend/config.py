"""Application-wide configuration constants."""

import os
from pathlib import Path


def _env(name: str, default: str) -> str:
    return os.environ.get(f"PINDROP_{name}", default)


# --- Relay ---
RELAY_HOST = _env("RELAY_HOST", "0.0.0.0")
RELAY_PORT = int(_env("RELAY_PORT", "3001"))
RELAY_URL = _env("RELAY_URL", f"ws://127.0.0.1:{RELAY_PORT}/ws")
SSL_CERTFILE = _env("SSL_CERTFILE", "") or None
SSL_KEYFILE = _env("SSL_KEYFILE", "") or None

PIN_MIN = 1000
PIN_MAX = 9999

# Close code sent to a consumer when its producer leaves
CLOSE_PEER_LEFT = 4000

# --- Negotiation ---
ICE_SERVERS = [
    url.strip()
    for url in _env("ICE_SERVERS", "stun:stun.l.google.com:19302").split(",")
    if url.strip()
]
NEGOTIATION_TIMEOUT = float(_env("NEGOTIATION_TIMEOUT", "30"))  # seconds

# --- Transfer ---
POOL_SIZE = int(_env("POOL_SIZE", "3"))
CHUNK_SIZE = 16 * 1024  # 16 KB, safe message size for data channels
SEND_BUFFER_LIMIT = 2 * 1024 * 1024  # 2 MB
SEND_BUFFER_LOW_THRESHOLD = 1
PROGRESS_INTERVAL = 0.5  # seconds between progress samples
SEND_IDLE_TIMEOUT = float(_env("SEND_IDLE_TIMEOUT", "30"))  # seconds

# --- Storage ---
DEFAULT_SAVE_DIR = _env(
    "SAVE_DIR", str(Path.home() / "Downloads" / "Pindrop")
)
