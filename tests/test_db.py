"""Tests for DB schema + repositories (in-memory SQLite)."""
from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timezone

import pytest

from inboxtriage.db.repository import LocalStore
from inboxtriage.db.schema import init_db
from inboxtriage.errors import StoreFailure
from inboxtriage.filters.engine import matches
from inboxtriage.models.filter import Filter, FilterField
from inboxtriage.models.message import MessageBody, RawHeaderRecord
from inboxtriage.models.sync import SyncCursor

ACCOUNT = "a@x.com"
MAILBOX = "INBOX"


def rec(uid: int, subject: str = "Hello", sender: str = "Alice <alice@example.com>",
        is_read: bool = False, epoch: int | None = None) -> RawHeaderRecord:
    epoch = 1_700_000_000 + uid if epoch is None else epoch
    return RawHeaderRecord(
        uid=uid,
        message_id=f"<{uid}@example.com>",
        subject=subject,
        sender=sender,
        date_received=datetime.fromtimestamp(epoch, tz=timezone.utc).isoformat(),
        date_epoch=epoch,
        is_read=is_read,
    )


def edges(conn) -> set[tuple[int, int]]:
    return {(r[0], r[1]) for r in conn.execute("SELECT email_id, filter_id FROM filtered_emails")}


def expected_edges(store) -> set[tuple[int, int]]:
    filters = store.filters.get_all()
    return {
        (m.id, f.id)
        for m in store.messages.get_all(ACCOUNT)
        for f in filters
        if matches(m, f)
    }


class TestSchema:
    def test_tables_exist(self, conn):
        names = {r[0] for r in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}
        assert {"messages", "filters", "filtered_emails", "sync_state"} <= names

    def test_hot_path_indexes_exist(self, conn):
        names = {r[0] for r in conn.execute("SELECT name FROM sqlite_master WHERE type='index'")}
        assert "idx_messages_account_read" in names
        assert "idx_messages_account_date" in names
        assert "idx_filtered_filter" in names

    def test_foreign_keys_enabled(self, conn):
        assert conn.execute("PRAGMA foreign_keys").fetchone()[0] == 1

    def test_migration_backfills_date_epoch(self, tmp_path):
        path = tmp_path / "old.sqlite3"
        old = sqlite3.connect(path)
        old.execute("""
            CREATE TABLE messages (
                id INTEGER PRIMARY KEY AUTOINCREMENT, uid INTEGER NOT NULL,
                message_id TEXT NOT NULL DEFAULT '', subject TEXT NOT NULL DEFAULT '',
                sender TEXT NOT NULL DEFAULT '', date_received TEXT NOT NULL DEFAULT '',
                mailbox TEXT NOT NULL, account TEXT NOT NULL,
                is_read INTEGER NOT NULL DEFAULT 0, cached_at TEXT NOT NULL,
                UNIQUE(account, mailbox, uid)
            )
        """)
        old.execute(
            "INSERT INTO messages (uid, subject, date_received, mailbox, account, cached_at) "
            "VALUES (1, 'old', '2024-01-01T00:00:00+00:00', 'INBOX', ?, '2024-01-01T00:00:00')",
            (ACCOUNT,),
        )
        old.commit()
        old.close()

        c = init_db(path)
        row = c.execute("SELECT date_epoch FROM messages WHERE uid = 1").fetchone()
        assert row[0] == int(datetime(2024, 1, 1, tzinfo=timezone.utc).timestamp())
        c.close()

    def test_legacy_filters_imported_once(self, tmp_path):
        legacy = tmp_path / "filters.json"
        legacy.write_text(json.dumps({"patterns": [
            {"name": "News", "pattern": "newsletter", "field": "subject"},
            {"name": "Empty", "pattern": ""},
        ]}))
        path = tmp_path / "db.sqlite3"
        c = init_db(path, legacy_filters=legacy)
        assert [r["name"] for r in c.execute("SELECT name FROM filters")] == ["News"]
        c.close()

        legacy.write_text(json.dumps({"patterns": [{"name": "Other", "pattern": "x"}]}))
        c = init_db(path, legacy_filters=legacy)
        assert [r["name"] for r in c.execute("SELECT name FROM filters")] == ["News"]
        c.close()

    def test_legacy_import_matches_cached_messages(self, tmp_path):
        path = tmp_path / "db.sqlite3"
        c = init_db(path)
        LocalStore(c).messages.upsert_messages(
            ACCOUNT, MAILBOX, [rec(uid, subject="Weekly Newsletter") for uid in (1, 2, 3)]
        )
        c.close()

        legacy = tmp_path / "filters.json"
        legacy.write_text(json.dumps([{"pattern": "newsletter"}]))
        c = init_db(path, legacy_filters=legacy)
        assert LocalStore(c).filters.filter_match_counts(ACCOUNT) == {1: 3}
        assert len(edges(c)) == 3
        c.close()

    def test_migration_rekeys_sync_state_per_mailbox(self, tmp_path):
        path = tmp_path / "old.sqlite3"
        old = sqlite3.connect(path)
        old.execute("""
            CREATE TABLE sync_state (
                account TEXT PRIMARY KEY, mailbox TEXT NOT NULL DEFAULT '',
                uid_validity INTEGER, last_uid INTEGER NOT NULL DEFAULT 0, last_synced_at TEXT
            )
        """)
        old.execute("INSERT INTO sync_state VALUES (?, 'INBOX', 7, 42, NULL)", (ACCOUNT,))
        old.commit()
        old.close()

        c = init_db(path)
        store = LocalStore(c)
        assert store.cursors.get(ACCOUNT, "INBOX").last_uid == 42
        store.cursors.save(SyncCursor(account=ACCOUNT, mailbox="Work", uid_validity=9, last_uid=5))
        assert store.cursors.get(ACCOUNT, "INBOX").uid_validity == 7
        assert store.cursors.get(ACCOUNT, "Work").uid_validity == 9
        c.close()


class TestMessageRepository:
    def test_upsert_returns_ids(self, store):
        ids = store.messages.upsert_messages(ACCOUNT, MAILBOX, [rec(1), rec(2)])
        assert len(ids) == 2
        assert all(i > 0 for i in ids)

    def test_upsert_empty_is_noop(self, store):
        assert store.messages.upsert_messages(ACCOUNT, MAILBOX, []) == []

    def test_upsert_updates_in_place(self, store):
        first = store.messages.upsert_messages(ACCOUNT, MAILBOX, [rec(1, subject="A")])
        second = store.messages.upsert_messages(ACCOUNT, MAILBOX, [rec(1, subject="B", is_read=True)])
        assert first == second
        [msg] = store.messages.get_by_uids(ACCOUNT, [1])
        assert msg.subject == "B"
        assert msg.is_read is True
        assert store.messages.counts(ACCOUNT).total == 1

    def test_same_uid_in_other_account_is_separate(self, store):
        store.messages.upsert_messages(ACCOUNT, MAILBOX, [rec(1)])
        store.messages.upsert_messages("b@y.com", MAILBOX, [rec(1)])
        assert store.messages.counts(ACCOUNT).total == 1
        assert store.messages.counts("b@y.com").total == 1

    def test_same_uid_in_other_mailbox_is_scoped(self, store):
        store.messages.upsert_messages(ACCOUNT, MAILBOX, [rec(5, subject="inbox five")])
        store.messages.upsert_messages(ACCOUNT, "Work", [rec(5, subject="work five")])

        assert store.messages.mark_read(ACCOUNT, [5], "Work") == 1
        assert store.messages.get_read_state(ACCOUNT, MAILBOX) == {5: False}
        assert store.messages.get_read_state(ACCOUNT, "Work") == {5: True}
        assert store.messages.counts(ACCOUNT, MAILBOX).unread == 1
        assert store.messages.counts(ACCOUNT).total == 2
        assert [m.subject for m in store.messages.get_by_uids(ACCOUNT, [5], "Work")] == ["work five"]
        assert [m.subject for m in store.messages.query_messages(ACCOUNT, mailbox=MAILBOX)] == ["inbox five"]
        assert store.messages.count_messages(ACCOUNT, mailbox="Work") == 1

    def test_failed_batch_commits_nothing(self, store):
        bad = RawHeaderRecord(uid=None)  # violates NOT NULL
        with pytest.raises(StoreFailure):
            store.messages.upsert_messages(ACCOUNT, MAILBOX, [rec(1), bad])
        assert store.messages.counts(ACCOUNT).total == 0

    def test_mark_read_and_unread(self, store):
        store.messages.upsert_messages(ACCOUNT, MAILBOX, [rec(1), rec(2), rec(3)])
        assert store.messages.mark_read(ACCOUNT, [1, 2]) == 2
        assert store.messages.counts(ACCOUNT).unread == 1
        assert store.messages.mark_unread(ACCOUNT, [2]) == 1
        assert store.messages.counts(ACCOUNT).unread == 2

    def test_mark_read_empty(self, store):
        assert store.messages.mark_read(ACCOUNT, []) == 0

    def test_apply_flags_returns_changed_ids(self, store):
        store.messages.upsert_messages(ACCOUNT, MAILBOX, [rec(1), rec(2, is_read=True), rec(3)])
        changed = store.messages.apply_flags(ACCOUNT, MAILBOX, read_uids=[1], unread_uids=[2])
        assert set(changed) == {m.id for m in store.messages.get_by_uids(ACCOUNT, [1, 2])}
        state = store.messages.get_read_state(ACCOUNT, MAILBOX)
        assert state == {1: True, 2: False, 3: False}

    def test_cached_uids(self, store):
        store.messages.upsert_messages(ACCOUNT, MAILBOX, [rec(5), rec(9)])
        assert store.messages.cached_uids(ACCOUNT, MAILBOX) == {5, 9}
        assert store.messages.cached_uids(ACCOUNT, "Archive") == set()

    def test_query_sorted_by_date_then_uid(self, store):
        store.messages.upsert_messages(ACCOUNT, MAILBOX, [
            rec(1, epoch=100), rec(2, epoch=300), rec(3, epoch=300), rec(4, epoch=200),
        ])
        rows = store.messages.query_messages(ACCOUNT, limit=10)
        assert [m.uid for m in rows] == [3, 2, 4, 1]

    def test_reset_mailbox_drops_rows_edges_and_cursor(self, store, conn):
        store.filters.create(Filter(name="all", pattern="hello"))
        store.messages.upsert_messages(ACCOUNT, MAILBOX, [rec(1), rec(2)])
        store.cursors.save(SyncCursor(account=ACCOUNT, mailbox=MAILBOX, uid_validity=7, last_uid=2))
        assert edges(conn)

        dropped = store.messages.reset_mailbox(ACCOUNT, MAILBOX)
        assert dropped == 2
        assert store.messages.counts(ACCOUNT).total == 0
        assert edges(conn) == set()
        assert store.cursors.get(ACCOUNT) is None


class TestFilterEdges:
    def test_upsert_writes_exact_edges(self, store, conn):
        store.filters.create(Filter(name="news", pattern="newsletter"))
        store.filters.create(Filter(name="bob", pattern="bob@", field=FilterField.SENDER))
        store.messages.upsert_messages(ACCOUNT, MAILBOX, [
            rec(1, subject="Weekly Newsletter"),
            rec(2, sender="Bob <bob@example.com>"),
            rec(3, subject="Newsletter", sender="Bob <bob@example.com>"),
            rec(4),
        ])
        assert edges(conn) == expected_edges(store)
        assert len(edges(conn)) == 4

    def test_header_change_rewrites_edges(self, store, conn):
        store.filters.create(Filter(name="news", pattern="newsletter"))
        store.messages.upsert_messages(ACCOUNT, MAILBOX, [rec(1, subject="Newsletter")])
        assert len(edges(conn)) == 1
        store.messages.upsert_messages(ACCOUNT, MAILBOX, [rec(1, subject="Invoice")])
        assert edges(conn) == set()

    def test_create_matches_existing_messages(self, store, conn):
        store.messages.upsert_messages(ACCOUNT, MAILBOX, [rec(1, subject="Newsletter"), rec(2)])
        store.filters.create(Filter(name="news", pattern="NEWSLETTER"))
        assert edges(conn) == expected_edges(store)
        assert len(edges(conn)) == 1

    def test_update_rule_regenerates_edges(self, store, conn):
        store.messages.upsert_messages(ACCOUNT, MAILBOX, [
            rec(1, subject="Newsletter"), rec(2, subject="Invoice"),
        ])
        flt = store.filters.create(Filter(name="f", pattern="newsletter"))
        flt.pattern = "invoice"
        store.filters.update(flt)
        assert edges(conn) == expected_edges(store)
        [(email_id, _)] = edges(conn)
        assert store.messages.get_by_uids(ACCOUNT, [2])[0].id == email_id

    def test_update_name_only_keeps_edges(self, store, conn):
        store.messages.upsert_messages(ACCOUNT, MAILBOX, [rec(1, subject="Newsletter")])
        flt = store.filters.create(Filter(name="f", pattern="newsletter"))
        before = conn.execute("SELECT matched_at FROM filtered_emails").fetchone()[0]
        flt.name = "renamed"
        flt.enabled = False
        store.filters.update(flt)
        after = conn.execute("SELECT matched_at FROM filtered_emails").fetchone()[0]
        assert before == after
        assert store.filters.get_by_id(flt.id).name == "renamed"

    def test_update_missing_filter_returns_none(self, store):
        assert store.filters.update(Filter(id=99, pattern="x")) is None

    def test_delete_cascades_edges(self, store, conn):
        store.messages.upsert_messages(ACCOUNT, MAILBOX, [rec(1, subject="Newsletter")])
        flt = store.filters.create(Filter(name="f", pattern="newsletter"))
        assert store.filters.delete(flt.id) is True
        assert edges(conn) == set()
        assert store.filters.delete(flt.id) is False

    def test_ids_never_reused(self, store):
        a = store.filters.create(Filter(name="a", pattern="a"))
        b = store.filters.create(Filter(name="b", pattern="b"))
        store.filters.delete(b.id)
        c = store.filters.create(Filter(name="c", pattern="c"))
        assert c.id > b.id > a.id

    def test_invalid_regex_matches_nothing_on_full_recompute(self, store, conn):
        store.messages.upsert_messages(ACCOUNT, MAILBOX, [rec(i) for i in range(1, 6)])
        flt = store.filters.create(Filter(name="bad", pattern="(unclosed", is_regex=True))
        assert store.filters.recompute_matches() == 0
        assert store.filters.filter_match_counts(ACCOUNT) == {flt.id: 0}

    def test_newsletter_count(self, store):
        records = [rec(i, subject="Weekly Newsletter") for i in range(1, 4)]
        records += [rec(i, subject=f"Message {i}") for i in range(4, 11)]
        store.messages.upsert_messages(ACCOUNT, MAILBOX, records)
        flt = store.filters.create(Filter(name="news", pattern="newsletter", field=FilterField.ANY))
        assert store.filters.filter_match_counts(ACCOUNT)[flt.id] == 3

    def test_match_counts_unread_only(self, store):
        store.messages.upsert_messages(ACCOUNT, MAILBOX, [
            rec(1, subject="Newsletter"), rec(2, subject="Newsletter", is_read=True),
        ])
        flt = store.filters.create(Filter(name="news", pattern="newsletter"))
        assert store.filters.filter_match_counts(ACCOUNT)[flt.id] == 2
        assert store.filters.filter_match_counts(ACCOUNT, unread_only=True)[flt.id] == 1

    def test_recompute_subset(self, store, conn):
        ids = store.messages.upsert_messages(ACCOUNT, MAILBOX, [rec(1, subject="Newsletter")])
        store.filters.create(Filter(name="news", pattern="newsletter"))
        conn.execute("DELETE FROM filtered_emails")
        conn.commit()
        assert store.filters.recompute_matches(ids) == 1
        assert edges(conn) == expected_edges(store)


class TestCursorRepository:
    def test_missing_cursor(self, store):
        assert store.cursors.get(ACCOUNT) is None

    def test_save_overwrites(self, store):
        now = datetime(2024, 5, 1, tzinfo=timezone.utc)
        store.cursors.save(SyncCursor(account=ACCOUNT, mailbox=MAILBOX, uid_validity=1, last_uid=10))
        store.cursors.save(SyncCursor(
            account=ACCOUNT, mailbox=MAILBOX, uid_validity=2, last_uid=20, last_synced_at=now,
        ))
        cursor = store.cursors.get(ACCOUNT)
        assert (cursor.uid_validity, cursor.last_uid, cursor.last_synced_at) == (2, 20, now)

    def test_cursor_per_mailbox(self, store):
        early = datetime(2024, 5, 1, tzinfo=timezone.utc)
        late = datetime(2024, 5, 2, tzinfo=timezone.utc)
        store.cursors.save(SyncCursor(
            account=ACCOUNT, mailbox=MAILBOX, uid_validity=1, last_uid=10, last_synced_at=late,
        ))
        store.cursors.save(SyncCursor(
            account=ACCOUNT, mailbox="Work", uid_validity=2, last_uid=3, last_synced_at=early,
        ))
        assert store.cursors.get(ACCOUNT, MAILBOX).uid_validity == 1
        assert store.cursors.get(ACCOUNT, "Work").uid_validity == 2
        assert store.cursors.get(ACCOUNT).mailbox == MAILBOX

    def test_reset_one_mailbox_keeps_other_cursor(self, store):
        for mailbox in (MAILBOX, "Work"):
            store.messages.upsert_messages(ACCOUNT, mailbox, [rec(1)])
            store.cursors.save(SyncCursor(account=ACCOUNT, mailbox=mailbox, uid_validity=1, last_uid=1))
        store.messages.reset_mailbox(ACCOUNT, "Work")
        assert store.cursors.get(ACCOUNT, "Work") is None
        assert store.cursors.get(ACCOUNT, MAILBOX) is not None
        assert store.messages.cached_uids(ACCOUNT, MAILBOX) == {1}


class TestMessageBodies:
    def test_not_fetched_is_none(self, store):
        store.messages.upsert_messages(ACCOUNT, MAILBOX, [rec(1)])
        assert store.messages.get_body(ACCOUNT, MAILBOX, 1) is None

    def test_store_and_read_back(self, store):
        store.messages.upsert_messages(ACCOUNT, MAILBOX, [rec(1), rec(2)])
        updated = store.messages.set_bodies(ACCOUNT, MAILBOX, {
            1: MessageBody(html="<p>hi</p>", text=None),
            2: MessageBody(text="plain"),
        })
        assert updated == 2
        assert store.messages.get_body(ACCOUNT, MAILBOX, 1) == MessageBody(html="<p>hi</p>")
        assert store.messages.get_body(ACCOUNT, MAILBOX, 2).text == "plain"

    def test_empty_body_counts_as_fetched(self, store):
        store.messages.upsert_messages(ACCOUNT, MAILBOX, [rec(1)])
        store.messages.set_bodies(ACCOUNT, MAILBOX, {1: MessageBody()})
        body = store.messages.get_body(ACCOUNT, MAILBOX, 1)
        assert body is not None and body.is_empty

    def test_uncached_uid_not_stored(self, store):
        assert store.messages.set_bodies(ACCOUNT, MAILBOX, {9: MessageBody(text="x")}) == 0

    def test_body_scoped_to_mailbox(self, store):
        store.messages.upsert_messages(ACCOUNT, MAILBOX, [rec(5)])
        store.messages.upsert_messages(ACCOUNT, "Work", [rec(5)])
        store.messages.set_bodies(ACCOUNT, "Work", {5: MessageBody(text="work")})
        assert store.messages.get_body(ACCOUNT, MAILBOX, 5) is None

    def test_headers_upsert_keeps_body(self, store):
        store.messages.upsert_messages(ACCOUNT, MAILBOX, [rec(1)])
        store.messages.set_bodies(ACCOUNT, MAILBOX, {1: MessageBody(text="kept")})
        store.messages.upsert_messages(ACCOUNT, MAILBOX, [rec(1, subject="Changed")])
        assert store.messages.get_body(ACCOUNT, MAILBOX, 1).text == "kept"
