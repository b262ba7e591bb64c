"""Application-wide configuration constants."""

import os
from pathlib import Path

# --- Identity ---
APP_ID = "karli-share-v1"
CONFIG_DIR = Path(
    os.getenv("KARLI_CONFIG_DIR", str(Path.home() / ".karli_share"))
)
DEVICE_ID_KEY = "device_id"

# --- Backend (Supabase) ---
SUPABASE_URL = os.getenv("SUPABASE_URL", "http://localhost:54321").rstrip("/")
SUPABASE_KEY = os.getenv("SUPABASE_KEY", "")
STORE_BACKEND = os.getenv("KARLI_STORE_BACKEND", "rest")  # "rest" | "memory"
REALTIME_POLL_INTERVAL = float(os.getenv("KARLI_POLL_INTERVAL", "2"))  # seconds

UPLOAD_FUNCTION = "upload-file"
DOWNLOAD_FUNCTION = "download-file"

# --- Networking ---
API_HOST = os.getenv("KARLI_API_HOST", "127.0.0.1")
API_PORT = int(os.getenv("KARLI_API_PORT", "8765"))

# --- Transfer ---
CHUNK_SIZE = 1048576  # 1 MB, advertised to the upload function only
ACCEPT_TIMEOUT = 60.0  # seconds to wait for the user to accept a transfer
ENCRYPT_TRANSFERS = os.getenv("KARLI_ENCRYPT_TRANSFERS", "false").lower() == "true"

# --- Sessions & payloads ---
SESSION_CODE_LENGTH = 6
SESSION_TTL_MINUTES = 30
ENCRYPTION_KEY_LENGTH = 26
MAX_QR_BYTES = 2953  # QR version 40-L, byte mode

# --- Storage ---
DEFAULT_SAVE_DIR = os.getenv(
    "KARLI_SAVE_DIR", str(Path.home() / "Downloads" / "KarliShare")
)

# --- Logging ---
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
