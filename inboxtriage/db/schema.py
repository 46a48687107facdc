"""Database schema — init_db() creates all tables and indexes."""
from __future__ import annotations

import json
import logging
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path

from inboxtriage.db.repository import _load_filters, _rewrite_filter_matches

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS messages (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    uid           INTEGER NOT NULL,
    message_id    TEXT    NOT NULL DEFAULT '',
    subject       TEXT    NOT NULL DEFAULT '',
    sender        TEXT    NOT NULL DEFAULT '',
    date_received TEXT    NOT NULL DEFAULT '',
    date_epoch    INTEGER NOT NULL DEFAULT 0,
    mailbox       TEXT    NOT NULL,
    account       TEXT    NOT NULL,
    is_read       INTEGER NOT NULL DEFAULT 0,
    cached_at     TEXT    NOT NULL,
    body_text     TEXT,
    body_html     TEXT,
    UNIQUE(account, mailbox, uid)
);

CREATE TABLE IF NOT EXISTS filters (
    id         INTEGER PRIMARY KEY AUTOINCREMENT,
    name       TEXT    NOT NULL,
    pattern    TEXT    NOT NULL,
    field      TEXT    NOT NULL DEFAULT 'any',
    is_regex   INTEGER NOT NULL DEFAULT 0,
    enabled    INTEGER NOT NULL DEFAULT 1,
    created_at TEXT    NOT NULL,
    updated_at TEXT    NOT NULL
);

CREATE TABLE IF NOT EXISTS filtered_emails (
    email_id   INTEGER NOT NULL REFERENCES messages(id) ON DELETE CASCADE,
    filter_id  INTEGER NOT NULL REFERENCES filters(id)  ON DELETE CASCADE,
    matched_at TEXT    NOT NULL,
    PRIMARY KEY (email_id, filter_id)
);

CREATE TABLE IF NOT EXISTS sync_state (
    account        TEXT    NOT NULL,
    mailbox        TEXT    NOT NULL DEFAULT '',
    uid_validity   INTEGER NOT NULL DEFAULT 0,
    last_uid       INTEGER NOT NULL DEFAULT 0,
    last_synced_at TEXT,
    PRIMARY KEY (account, mailbox)
);

CREATE INDEX IF NOT EXISTS idx_messages_account_read ON messages(account, is_read);
CREATE INDEX IF NOT EXISTS idx_messages_msgid        ON messages(message_id);
CREATE INDEX IF NOT EXISTS idx_filtered_filter       ON filtered_emails(filter_id);
"""


class LockingConnection(sqlite3.Connection):
    """sqlite3 connection carrying the lock that serialises every transaction.

    One connection is shared between the GUI thread and sync worker threads,
    so readers must never observe another thread's open transaction.
    """

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.lock = threading.RLock()


def init_db(path: str | Path = ":memory:", legacy_filters: Path | None = None) -> LockingConnection:
    """Create (or open) the SQLite database, apply schema, return connection."""
    conn = sqlite3.connect(str(path), check_same_thread=False, factory=LockingConnection)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.executescript(SCHEMA_SQL)
    _migrate(conn)
    conn.commit()
    if legacy_filters is not None:
        _import_legacy_filters(conn, legacy_filters)
    return conn


def _migrate(conn: sqlite3.Connection) -> None:
    """Apply incremental schema migrations for existing databases."""
    cols = {row[1] for row in conn.execute("PRAGMA table_info(messages)").fetchall()}
    if "date_epoch" not in cols:
        conn.execute("ALTER TABLE messages ADD COLUMN date_epoch INTEGER NOT NULL DEFAULT 0")
    for col in ("body_text", "body_html"):
        if col not in cols:
            conn.execute(f"ALTER TABLE messages ADD COLUMN {col} TEXT")

    # Created here rather than in SCHEMA_SQL so older databases gain date_epoch first
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_messages_account_date "
        "ON messages(account, date_epoch DESC, uid DESC)"
    )
    _backfill_date_epoch(conn)
    _rekey_sync_state(conn)


def _rekey_sync_state(conn: sqlite3.Connection) -> None:
    """Older databases kept one cursor per account; cursors are now per mailbox."""
    pk = {row[1]: row[5] for row in conn.execute("PRAGMA table_info(sync_state)").fetchall()}
    if pk.get("mailbox"):
        return
    conn.execute("ALTER TABLE sync_state RENAME TO sync_state_old")
    conn.execute(
        """
        CREATE TABLE sync_state (
            account        TEXT    NOT NULL,
            mailbox        TEXT    NOT NULL DEFAULT '',
            uid_validity   INTEGER NOT NULL DEFAULT 0,
            last_uid       INTEGER NOT NULL DEFAULT 0,
            last_synced_at TEXT,
            PRIMARY KEY (account, mailbox)
        )
        """
    )
    conn.execute(
        "INSERT INTO sync_state (account, mailbox, uid_validity, last_uid, last_synced_at) "
        "SELECT account, mailbox, COALESCE(uid_validity, 0), COALESCE(last_uid, 0), last_synced_at "
        "FROM sync_state_old"
    )
    conn.execute("DROP TABLE sync_state_old")
    logger.info("Migrated sync_state to per-mailbox cursors")


def _backfill_date_epoch(conn: sqlite3.Connection) -> None:
    """Derive date_epoch for rows cached before it existed."""
    rows = conn.execute(
        "SELECT id, date_received FROM messages WHERE date_epoch = 0 AND date_received != ''"
    ).fetchall()
    updates = []
    for row in rows:
        try:
            dt = datetime.fromisoformat(row["date_received"])
        except ValueError:
            continue
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        updates.append((int(dt.timestamp()), row["id"]))
    if updates:
        conn.executemany("UPDATE messages SET date_epoch = ? WHERE id = ?", updates)
        logger.info("Backfilled date_epoch for %d cached message(s)", len(updates))


def _import_legacy_filters(conn: sqlite3.Connection, path: Path) -> None:
    """One-time import of filters.json written by older releases.

    Only runs while the filters table is empty.  Match edges against the
    messages already cached are built in the same transaction.
    """
    if not path.exists():
        return
    if conn.execute("SELECT COUNT(*) FROM filters").fetchone()[0] > 0:
        return
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        patterns = data.get("patterns", []) if isinstance(data, dict) else list(data)
    except Exception as exc:
        logger.warning("Could not read legacy filters from %s: %s", path, exc)
        return
    now = datetime.now(timezone.utc).isoformat()
    rows = [
        (
            p.get("name", ""), p.get("pattern", ""), p.get("field", "any"),
            int(bool(p.get("is_regex", False))), int(bool(p.get("enabled", True))),
            now, now,
        )
        for p in patterns
        if isinstance(p, dict) and p.get("pattern")
    ]
    if not rows:
        return
    with conn.lock:
        try:
            conn.executemany(
                "INSERT INTO filters (name, pattern, field, is_regex, enabled, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                rows,
            )
            edges = sum(_rewrite_filter_matches(conn, flt) for flt in _load_filters(conn))
            conn.commit()
        except sqlite3.Error:
            conn.rollback()
            raise
    logger.info("Imported %d legacy filter(s) from %s (%d match(es))", len(rows), path, edges)
