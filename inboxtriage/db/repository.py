"""Repository — all DB read/write operations for messages, filters, match edges and sync cursors.

Every multi-row mutation runs inside ``_safe_commit``: the whole batch lands or
none of it does.  Filter match edges are regenerated, never patched, in the
same transaction as the rows they describe.
"""
from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Generator, Iterable, Sequence

from inboxtriage.errors import StoreFailure
from inboxtriage.filters.engine import CompiledFilter, compile_filter, compile_filters, match_filter_ids
from inboxtriage.models.filter import Filter
from inboxtriage.models.message import Message, MessageBody, RawHeaderRecord
from inboxtriage.models.sync import Counts, SyncCursor

logger = logging.getLogger(__name__)

# Keeps IN (...) lists well below SQLITE_MAX_VARIABLE_NUMBER
_IN_CHUNK = 500


@contextmanager
def _safe_commit(conn: sqlite3.Connection) -> Generator[None, None, None]:
    """Serialise on the connection lock; commit on success, rollback on error."""
    with conn.lock:
        try:
            yield
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            raise StoreFailure(f"Transaction failed: {exc}") from exc
        except Exception:
            conn.rollback()
            raise


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _chunks(items: Sequence[Any], size: int = _IN_CHUNK) -> Iterable[Sequence[Any]]:
    for start in range(0, len(items), size):
        yield items[start: start + size]


def _placeholders(n: int) -> str:
    return ",".join("?" * n)


def _scope(account: str, mailbox: str | None, prefix: str = "") -> tuple[list[str], list[Any]]:
    """WHERE clauses for one account, narrowed to one mailbox when given."""
    clauses = [f"{prefix}account = ?"]
    params: list[Any] = [account]
    if mailbox is not None:
        clauses.append(f"{prefix}mailbox = ?")
        params.append(mailbox)
    return clauses, params


# ── Match-edge helpers (caller holds the transaction) ─────────────────────────

def _rewrite_message_matches(
    conn: sqlite3.Connection, message_ids: Sequence[int], compiled: list[CompiledFilter]
) -> int:
    """Replace the edge set of each message with exactly the filters matching it now."""
    now = _now_iso()
    written = 0
    for chunk in _chunks(list(message_ids)):
        marks = _placeholders(len(chunk))
        conn.execute(f"DELETE FROM filtered_emails WHERE email_id IN ({marks})", list(chunk))
        rows = conn.execute(
            f"SELECT id, subject, sender FROM messages WHERE id IN ({marks})", list(chunk)
        ).fetchall()
        edges = [
            (row["id"], filter_id, now)
            for row in rows
            for filter_id in match_filter_ids(row["subject"], row["sender"], compiled)
        ]
        conn.executemany(
            "INSERT INTO filtered_emails (email_id, filter_id, matched_at) VALUES (?, ?, ?)",
            edges,
        )
        written += len(edges)
    return written


def _rewrite_filter_matches(conn: sqlite3.Connection, flt: Filter) -> int:
    """Replace every edge of one filter by evaluating it against all cached messages."""
    conn.execute("DELETE FROM filtered_emails WHERE filter_id = ?", (flt.id,))
    compiled = [compile_filter(flt)]
    now = _now_iso()
    edges = [
        (row["id"], flt.id, now)
        for row in conn.execute("SELECT id, subject, sender FROM messages")
        if match_filter_ids(row["subject"], row["sender"], compiled)
    ]
    conn.executemany(
        "INSERT INTO filtered_emails (email_id, filter_id, matched_at) VALUES (?, ?, ?)",
        edges,
    )
    return len(edges)


def _load_filters(conn: sqlite3.Connection) -> list[Filter]:
    rows = conn.execute("SELECT * FROM filters ORDER BY id").fetchall()
    return [Filter.from_row(dict(r)) for r in rows]


class MessageRepository:
    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    def upsert_messages(
        self, account: str, mailbox: str, records: list[RawHeaderRecord]
    ) -> list[int]:
        """Batch upsert one fetched batch and regenerate its filter edges.

        Returns the local row ids of the upserted messages.
        """
        if not records:
            return []
        now = _now_iso()
        with _safe_commit(self._conn):
            self._conn.executemany(
                """
                INSERT INTO messages
                    (uid, message_id, subject, sender, date_received, date_epoch,
                     mailbox, account, is_read, cached_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(account, mailbox, uid) DO UPDATE SET
                    message_id    = excluded.message_id,
                    subject       = excluded.subject,
                    sender        = excluded.sender,
                    date_received = excluded.date_received,
                    date_epoch    = excluded.date_epoch,
                    is_read       = excluded.is_read,
                    cached_at     = excluded.cached_at
                """,
                [
                    (
                        r.uid, r.message_id, r.subject, r.sender,
                        r.date_received, r.date_epoch,
                        mailbox, account, int(r.is_read), now,
                    )
                    for r in records
                ],
            )
            ids = self._ids_for_uids(account, [r.uid for r in records], mailbox)
            _rewrite_message_matches(self._conn, ids, compile_filters(_load_filters(self._conn)))
        return ids

    def mark_read(self, account: str, uids: list[int], mailbox: str | None = None) -> int:
        return self._set_read(account, uids, True, mailbox)

    def mark_unread(self, account: str, uids: list[int], mailbox: str | None = None) -> int:
        return self._set_read(account, uids, False, mailbox)

    def _set_read(self, account: str, uids: list[int], is_read: bool, mailbox: str | None) -> int:
        if not uids:
            return 0
        clauses, params = _scope(account, mailbox)
        updated = 0
        with _safe_commit(self._conn):
            for chunk in _chunks(list(uids)):
                cur = self._conn.execute(
                    f"UPDATE messages SET is_read = ? "
                    f"WHERE {' AND '.join(clauses)} AND uid IN ({_placeholders(len(chunk))})",
                    [int(is_read), *params, *chunk],
                )
                updated += cur.rowcount
        return updated

    def apply_flags(
        self, account: str, mailbox: str, read_uids: list[int], unread_uids: list[int]
    ) -> list[int]:
        """Reconcile \\Seen state observed on the server in one transaction.

        Returns the row ids whose flag changed.
        """
        if not read_uids and not unread_uids:
            return []
        with _safe_commit(self._conn):
            for uids, value in ((read_uids, 1), (unread_uids, 0)):
                for chunk in _chunks(list(uids)):
                    self._conn.execute(
                        f"UPDATE messages SET is_read = ? "
                        f"WHERE account = ? AND mailbox = ? AND uid IN ({_placeholders(len(chunk))})",
                        [value, account, mailbox, *chunk],
                    )
            ids = self._ids_for_uids(account, list(read_uids) + list(unread_uids), mailbox)
        return ids

    def _ids_for_uids(self, account: str, uids: list[int], mailbox: str | None = None) -> list[int]:
        ids: list[int] = []
        for chunk in _chunks(uids):
            clauses, params = _scope(account, mailbox)
            clauses.append(f"uid IN ({_placeholders(len(chunk))})")
            params.extend(chunk)
            rows = self._conn.execute(
                f"SELECT id FROM messages WHERE {' AND '.join(clauses)}", params
            ).fetchall()
            ids.extend(r["id"] for r in rows)
        return ids

    def get_read_state(self, account: str, mailbox: str) -> dict[int, bool]:
        """Return {uid: is_read} for every cached message of this mailbox."""
        with self._conn.lock:
            rows = self._conn.execute(
                "SELECT uid, is_read FROM messages WHERE account = ? AND mailbox = ?",
                (account, mailbox),
            ).fetchall()
        return {r["uid"]: bool(r["is_read"]) for r in rows}

    def cached_uids(self, account: str, mailbox: str) -> set[int]:
        return set(self.get_read_state(account, mailbox))

    def get_by_uids(self, account: str, uids: list[int], mailbox: str | None = None) -> list[Message]:
        clauses, params = _scope(account, mailbox)
        results: list[Message] = []
        with self._conn.lock:
            for chunk in _chunks(list(uids)):
                rows = self._conn.execute(
                    f"SELECT * FROM messages WHERE {' AND '.join(clauses)} "
                    f"AND uid IN ({_placeholders(len(chunk))})",
                    [*params, *chunk],
                ).fetchall()
                results.extend(Message.from_row(dict(r)) for r in rows)
        return sorted(results, key=lambda m: m.uid)

    def get_all(self, account: str, mailbox: str | None = None) -> list[Message]:
        clauses, params = _scope(account, mailbox)
        with self._conn.lock:
            rows = self._conn.execute(
                f"SELECT * FROM messages WHERE {' AND '.join(clauses)} ORDER BY date_epoch DESC, uid DESC",
                params,
            ).fetchall()
        return [Message.from_row(dict(r)) for r in rows]

    def query_messages(
        self,
        account: str,
        unread_only: bool = False,
        filter_ids: list[int] | None = None,
        max_id: int | None = None,
        limit: int = 50,
        offset: int = 0,
        mailbox: str | None = None,
    ) -> list[Message]:
        where, params = self._where(account, unread_only, filter_ids, max_id, mailbox)
        sql = f"""
            SELECT m.*
            FROM messages m
            {where}
            ORDER BY m.date_epoch DESC, m.uid DESC
            LIMIT ? OFFSET ?
        """
        with self._conn.lock:
            rows = self._conn.execute(sql, [*params, limit, offset]).fetchall()
        return [Message.from_row(dict(r)) for r in rows]

    def count_messages(
        self,
        account: str,
        unread_only: bool = False,
        filter_ids: list[int] | None = None,
        max_id: int | None = None,
        mailbox: str | None = None,
    ) -> int:
        where, params = self._where(account, unread_only, filter_ids, max_id, mailbox)
        with self._conn.lock:
            row = self._conn.execute(f"SELECT COUNT(*) FROM messages m {where}", params).fetchone()
        return row[0] if row else 0

    @staticmethod
    def _where(
        account: str,
        unread_only: bool,
        filter_ids: list[int] | None,
        max_id: int | None,
        mailbox: str | None = None,
    ) -> tuple[str, list[Any]]:
        clauses, params = _scope(account, mailbox, "m.")
        if unread_only:
            clauses.append("m.is_read = 0")
        if max_id is not None:
            clauses.append("m.id <= ?")
            params.append(max_id)
        if filter_ids is not None:
            # EXISTS keeps one row per message however many filters match
            clauses.append(
                "EXISTS (SELECT 1 FROM filtered_emails fe WHERE fe.email_id = m.id "
                f"AND fe.filter_id IN ({_placeholders(len(filter_ids)) or 'NULL'}))"
            )
            params.extend(filter_ids)
        return "WHERE " + " AND ".join(clauses), params

    def counts(self, account: str, mailbox: str | None = None) -> Counts:
        clauses, params = _scope(account, mailbox)
        with self._conn.lock:
            row = self._conn.execute(
                "SELECT COUNT(*) AS total, COALESCE(SUM(is_read = 0), 0) AS unread "
                f"FROM messages WHERE {' AND '.join(clauses)}",
                params,
            ).fetchone()
        return Counts(total=row["total"], unread=row["unread"])

    def max_id(self, account: str, mailbox: str | None = None) -> int:
        clauses, params = _scope(account, mailbox)
        with self._conn.lock:
            row = self._conn.execute(
                f"SELECT COALESCE(MAX(id), 0) FROM messages WHERE {' AND '.join(clauses)}", params
            ).fetchone()
        return row[0]

    def max_uid(self, account: str, mailbox: str) -> int:
        with self._conn.lock:
            row = self._conn.execute(
                "SELECT COALESCE(MAX(uid), 0) FROM messages WHERE account = ? AND mailbox = ?",
                (account, mailbox),
            ).fetchone()
        return row[0]

    def get_body(self, account: str, mailbox: str, uid: int) -> MessageBody | None:
        """Cached body of one message, or None when it was never fetched."""
        with self._conn.lock:
            row = self._conn.execute(
                "SELECT body_html, body_text FROM messages "
                "WHERE account = ? AND mailbox = ? AND uid = ?",
                (account, mailbox, uid),
            ).fetchone()
        if row is None or (row["body_html"] is None and row["body_text"] is None):
            return None
        return MessageBody(html=row["body_html"], text=row["body_text"])

    def set_bodies(self, account: str, mailbox: str, bodies: dict[int, MessageBody]) -> int:
        """Store fetched bodies for cached rows.  Returns the number of rows updated.

        A body with neither part is stored as empty text so it is not fetched again.
        """
        if not bodies:
            return 0
        updated = 0
        with _safe_commit(self._conn):
            for uid, body in bodies.items():
                text = body.text
                if body.html is None and text is None:
                    text = ""
                cur = self._conn.execute(
                    "UPDATE messages SET body_html = ?, body_text = ? "
                    "WHERE account = ? AND mailbox = ? AND uid = ?",
                    (body.html, text, account, mailbox, uid),
                )
                updated += cur.rowcount
        return updated

    def reset_mailbox(self, account: str, mailbox: str | None = None) -> int:
        """Drop cached rows (and their edges, by cascade) plus the sync cursor.

        Used when the server's UIDVALIDITY changes: cached UIDs no longer
        identify the same messages.
        """
        clauses, params = _scope(account, mailbox)
        where = " AND ".join(clauses)
        with _safe_commit(self._conn):
            cur = self._conn.execute(f"DELETE FROM messages WHERE {where}", params)
            self._conn.execute(f"DELETE FROM sync_state WHERE {where}", params)
        logger.info("Reset cache for %s (%s): %d row(s) dropped", account, mailbox or "all", cur.rowcount)
        return cur.rowcount


class FilterRepository:
    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    def get_all(self) -> list[Filter]:
        with self._conn.lock:
            return _load_filters(self._conn)

    def get_by_id(self, filter_id: int) -> Filter | None:
        with self._conn.lock:
            row = self._conn.execute("SELECT * FROM filters WHERE id = ?", (filter_id,)).fetchone()
        return Filter.from_row(dict(row)) if row else None

    def enabled_ids(self) -> list[int]:
        with self._conn.lock:
            rows = self._conn.execute("SELECT id FROM filters WHERE enabled = 1 ORDER BY id").fetchall()
        return [r["id"] for r in rows]

    def create(self, flt: Filter) -> Filter:
        now = _now_iso()
        with _safe_commit(self._conn):
            cur = self._conn.execute(
                """
                INSERT INTO filters (name, pattern, field, is_regex, enabled, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                RETURNING id
                """,
                (flt.name, flt.pattern, flt.field.value, int(flt.is_regex), int(flt.enabled), now, now),
            )
            flt.id = cur.fetchone()["id"]
            edges = _rewrite_filter_matches(self._conn, flt)
        logger.info("Created filter %d %r (%d match(es))", flt.id, flt.name, edges)
        return flt

    def update(self, flt: Filter) -> Filter | None:
        """Update one filter; edges are regenerated only when the rule itself changed."""
        if flt.id is None:
            raise ValueError("Cannot update a filter without an id")
        with _safe_commit(self._conn):
            row = self._conn.execute("SELECT * FROM filters WHERE id = ?", (flt.id,)).fetchone()
            if row is None:
                return None
            previous = Filter.from_row(dict(row))
            self._conn.execute(
                """
                UPDATE filters
                SET name = ?, pattern = ?, field = ?, is_regex = ?, enabled = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    flt.name, flt.pattern, flt.field.value, int(flt.is_regex),
                    int(flt.enabled), _now_iso(), flt.id,
                ),
            )
            if not previous.same_rule(flt):
                edges = _rewrite_filter_matches(self._conn, flt)
                logger.info("Filter %d rule changed; %d match(es)", flt.id, edges)
        return flt

    def delete(self, filter_id: int) -> bool:
        """Delete one filter.  Its edges go with it (ON DELETE CASCADE)."""
        with _safe_commit(self._conn):
            cur = self._conn.execute("DELETE FROM filters WHERE id = ?", (filter_id,))
        return cur.rowcount > 0

    def recompute_matches(self, message_ids: list[int] | None = None) -> int:
        """Regenerate edges for the given messages, or for every message when None."""
        with _safe_commit(self._conn):
            compiled = compile_filters(_load_filters(self._conn))
            if message_ids is None:
                message_ids = [r["id"] for r in self._conn.execute("SELECT id FROM messages")]
            written = _rewrite_message_matches(self._conn, message_ids, compiled)
        logger.debug("Recomputed matches for %d message(s): %d edge(s)", len(message_ids), written)
        return written

    def match_ids_for_message(self, message_id: int) -> set[int]:
        with self._conn.lock:
            rows = self._conn.execute(
                "SELECT filter_id FROM filtered_emails WHERE email_id = ?", (message_id,)
            ).fetchall()
        return {r["filter_id"] for r in rows}

    def filter_match_counts(
        self, account: str, unread_only: bool = False, mailbox: str | None = None
    ) -> dict[int, int]:
        """Return {filter_id: matched message count} for every filter, zero included."""
        with self._conn.lock:
            rows = self._conn.execute(
                """
                SELECT f.id AS filter_id, COUNT(m.id) AS cnt
                FROM filters f
                LEFT JOIN filtered_emails fe ON fe.filter_id = f.id
                LEFT JOIN messages m
                       ON m.id = fe.email_id AND m.account = ?
                      AND (? IS NULL OR m.mailbox = ?)
                      AND (? = 0 OR m.is_read = 0)
                GROUP BY f.id
                ORDER BY f.id
                """,
                (account, mailbox, mailbox, int(unread_only)),
            ).fetchall()
        return {r["filter_id"]: r["cnt"] for r in rows}


class CursorRepository:
    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    def get(self, account: str, mailbox: str | None = None) -> SyncCursor | None:
        """Cursor of one mailbox, or the most recently synced one when *mailbox* is None."""
        clauses, params = _scope(account, mailbox)
        with self._conn.lock:
            row = self._conn.execute(
                f"SELECT * FROM sync_state WHERE {' AND '.join(clauses)} "
                "ORDER BY last_synced_at DESC LIMIT 1",
                params,
            ).fetchone()
        if row is None:
            return None
        return SyncCursor(
            account=row["account"],
            mailbox=row["mailbox"],
            uid_validity=row["uid_validity"],
            last_uid=row["last_uid"],
            last_synced_at=(
                datetime.fromisoformat(row["last_synced_at"]) if row["last_synced_at"] else None
            ),
        )

    def save(self, cursor: SyncCursor) -> None:
        with _safe_commit(self._conn):
            self._conn.execute(
                """
                INSERT INTO sync_state (account, mailbox, uid_validity, last_uid, last_synced_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(account, mailbox) DO UPDATE SET
                    uid_validity   = excluded.uid_validity,
                    last_uid       = excluded.last_uid,
                    last_synced_at = excluded.last_synced_at
                """,
                (
                    cursor.account, cursor.mailbox, cursor.uid_validity, cursor.last_uid,
                    cursor.last_synced_at.isoformat() if cursor.last_synced_at else None,
                ),
            )


class LocalStore:
    """The three repositories sharing one locked connection."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn
        self.messages = MessageRepository(conn)
        self.filters = FilterRepository(conn)
        self.cursors = CursorRepository(conn)
