"""Application configuration — paths, defaults, persistence."""
from __future__ import annotations

import json
import logging
import os
from pathlib import Path

APP_NAME = "InboxTriage"
APP_VERSION = "0.4.0"

logger = logging.getLogger(__name__)

# ── Directories ───────────────────────────────────────────────────────────────

_XDG_DATA = Path(os.environ.get("XDG_DATA_HOME", Path.home() / ".local" / "share"))
_XDG_CONFIG = Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))

DATA_DIR: Path = _XDG_DATA / "inboxtriage"
CONFIG_DIR: Path = _XDG_CONFIG / "inboxtriage"
DB_PATH: Path = DATA_DIR / "inboxtriage.sqlite3"
LOG_PATH: Path = DATA_DIR / "inboxtriage.log"
SETTINGS_PATH: Path = CONFIG_DIR / "settings.json"
LEGACY_FILTERS_PATH: Path = CONFIG_DIR / "filters.json"

for _d in (DATA_DIR, CONFIG_DIR):
    _d.mkdir(parents=True, exist_ok=True)

# ── Remote mailbox ────────────────────────────────────────────────────────────

DEFAULT_IMAP_HOST: str = "imap.gmail.com"
DEFAULT_IMAP_PORT: int = 993
DEFAULT_MAILBOX: str = "INBOX"
IMAP_TIMEOUT_SECONDS: int = 60
MAX_UID_BATCH: int = 500          # UIDs per protocol command (server line-length limits)

# ── Sync ──────────────────────────────────────────────────────────────────────

SYNC_BATCH_SIZE: int = 200        # headers fetched + upserted per transaction
SYNC_INTERVAL_MINUTES: int = 5    # 0 disables the background interval
DEFAULT_SYNC_MODE: str = "unread"  # unread | full
ACCOUNT: str = ""                 # address used by the headless watcher

# ── Query ─────────────────────────────────────────────────────────────────────

DEFAULT_PAGE_SIZE: int = 50
MAX_PAGE_SIZE: int = 500


# ── Persistence ───────────────────────────────────────────────────────────────

def save_settings() -> None:
    """Persist user-changeable settings to disk.  Passwords go to keyring."""
    data = {
        "account": ACCOUNT,
        "imap_host": DEFAULT_IMAP_HOST,
        "imap_port": DEFAULT_IMAP_PORT,
        "mailbox": DEFAULT_MAILBOX,
        "sync_batch_size": SYNC_BATCH_SIZE,
        "sync_interval_minutes": SYNC_INTERVAL_MINUTES,
        "sync_mode": DEFAULT_SYNC_MODE,
        "page_size": DEFAULT_PAGE_SIZE,
    }
    try:
        SETTINGS_PATH.write_text(json.dumps(data, indent=2), encoding="utf-8")
    except Exception as exc:
        logger.warning("Could not save settings: %s", exc)


def load_settings() -> None:
    """Load persisted settings from disk, falling back to defaults."""
    global ACCOUNT, DEFAULT_IMAP_HOST, DEFAULT_IMAP_PORT, DEFAULT_MAILBOX
    global SYNC_BATCH_SIZE, SYNC_INTERVAL_MINUTES, DEFAULT_SYNC_MODE, DEFAULT_PAGE_SIZE
    if not SETTINGS_PATH.exists():
        return
    try:
        data = json.loads(SETTINGS_PATH.read_text(encoding="utf-8"))
        ACCOUNT = data.get("account", ACCOUNT)
        DEFAULT_IMAP_HOST = data.get("imap_host", DEFAULT_IMAP_HOST)
        DEFAULT_IMAP_PORT = int(data.get("imap_port", DEFAULT_IMAP_PORT))
        DEFAULT_MAILBOX = data.get("mailbox", DEFAULT_MAILBOX)
        SYNC_BATCH_SIZE = max(1, int(data.get("sync_batch_size", SYNC_BATCH_SIZE)))
        SYNC_INTERVAL_MINUTES = max(0, int(data.get("sync_interval_minutes", SYNC_INTERVAL_MINUTES)))
        saved_mode = data.get("sync_mode", DEFAULT_SYNC_MODE)
        if saved_mode in ("unread", "full"):
            DEFAULT_SYNC_MODE = saved_mode
        DEFAULT_PAGE_SIZE = min(MAX_PAGE_SIZE, max(1, int(data.get("page_size", DEFAULT_PAGE_SIZE))))
    except Exception as exc:
        logger.warning("Could not load settings: %s", exc)


# Load on import so settings are available immediately
load_settings()
