"""Shared fixtures: in-memory store, a fake IMAP server and a QCoreApplication."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from inboxtriage.db.repository import LocalStore
from inboxtriage.db.schema import init_db
from inboxtriage.models.account import Account, Credential


class MockAddress:
    """Mimics imapclient.response_types.Address (attribute-based)."""
    def __init__(self, name, route, mailbox, host):
        self.name = name
        self.route = route
        self.mailbox = mailbox
        self.host = host


class MockEnvelope:
    """Mimics imapclient.response_types.Envelope (attribute-based)."""
    def __init__(self, date, subject, from_, message_id=None):
        self.date = date
        self.subject = subject
        self.from_ = from_
        self.message_id = message_id


def build_envelope(
    date=None,
    subject: bytes = b"Test Subject",
    from_name: bytes = b"Alice",
    from_mbox: bytes = b"alice",
    from_host: bytes = b"example.com",
    message_id: bytes = b"<test@example.com>",
):
    if date is None:
        date = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
    addr = MockAddress(from_name, None, from_mbox, from_host)
    return MockEnvelope(date=date, subject=subject, from_=(addr,), message_id=message_id)


class FakeMailServer:
    """
    In-memory stand-in for IMAPClient over a single mailbox.

    Records every FETCH/STORE UID list so tests can count round trips.
    ``fail(method, exc, on_call=n)`` makes the n-th call of *method* raise.
    """

    def __init__(self, uid_validity: int = 100) -> None:
        self.uid_validity = uid_validity
        self.messages: dict[int, dict] = {}
        self.fetch_calls: list[list[int]] = []
        self.store_calls: list[tuple[str, list[int]]] = []
        self.search_calls: list[list[str]] = []
        self.logins = 0
        self.logouts = 0
        self._failures: dict[str, tuple[int, Exception]] = {}
        self._counts: dict[str, int] = {}

    # ── test controls ──

    def add(self, uid: int, subject: str = "Hello", sender: str = "alice",
            seen: bool = False, minutes: int = 0, body: bytes | None = None) -> None:
        if body is None:
            body = (
                f"From: {sender}@example.com\r\nSubject: {subject}\r\n"
                f"Content-Type: text/plain; charset=utf-8\r\n\r\nBody of {uid}\r\n"
            ).encode()
        self.messages[uid] = {
            "subject": subject,
            "mbox": sender,
            "seen": seen,
            "body": body,
            "date": datetime(2024, 1, 1, tzinfo=timezone.utc) + timedelta(minutes=minutes or uid),
        }

    def fail(self, method: str, exc: Exception, on_call: int = 1) -> None:
        self._failures[method] = (on_call, exc)

    def _tick(self, method: str) -> None:
        self._counts[method] = self._counts.get(method, 0) + 1
        failure = self._failures.get(method)
        if failure and failure[0] == self._counts[method]:
            raise failure[1]

    # ── IMAPClient surface ──

    def login(self, username, password):
        self._tick("login")
        self.logins += 1

    def logout(self):
        self.logouts += 1

    def select_folder(self, name, readonly=False):
        self._tick("select_folder")
        return {b"UIDVALIDITY": self.uid_validity, b"EXISTS": len(self.messages)}

    def search(self, criteria):
        self._tick("search")
        self.search_calls.append(list(criteria))
        key = criteria[0]
        uids = sorted(self.messages)
        if key == "UNSEEN":
            return [u for u in uids if not self.messages[u]["seen"]]
        if key == "SEEN":
            return [u for u in uids if self.messages[u]["seen"]]
        return uids

    def fetch(self, uids, items):
        self._tick("fetch")
        self.fetch_calls.append(list(uids))
        result = {}
        for uid in uids:
            msg = self.messages.get(uid)
            if msg is None:
                continue
            if b"BODY.PEEK[]" in items:
                result[uid] = {b"BODY[]": msg["body"], b"SEQ": uid}
                continue
            result[uid] = {
                b"ENVELOPE": build_envelope(
                    date=msg["date"],
                    subject=msg["subject"].encode(),
                    from_name=msg["mbox"].capitalize().encode(),
                    from_mbox=msg["mbox"].encode(),
                    message_id=f"<{uid}@example.com>".encode(),
                ),
                b"FLAGS": (b"\\Seen",) if msg["seen"] else (),
                b"INTERNALDATE": msg["date"],
            }
        return result

    def add_flags(self, uids, flags):
        self._tick("add_flags")
        self.store_calls.append(("+", list(uids)))
        for uid in uids:
            if uid in self.messages:
                self.messages[uid]["seen"] = True
        return {uid: (b"\\Seen",) for uid in uids}

    def remove_flags(self, uids, flags):
        self._tick("remove_flags")
        self.store_calls.append(("-", list(uids)))
        for uid in uids:
            if uid in self.messages:
                self.messages[uid]["seen"] = False
        return {uid: () for uid in uids}


@pytest.fixture(scope="session")
def qapp():
    from PyQt6.QtCore import QCoreApplication
    app = QCoreApplication.instance() or QCoreApplication([])
    yield app


@pytest.fixture
def conn():
    c = init_db(":memory:")
    yield c
    c.close()


@pytest.fixture
def store(conn):
    return LocalStore(conn)


@pytest.fixture
def account():
    return Account(address="a@x.com", host="imap.x.com")


@pytest.fixture
def server(monkeypatch):
    """A FakeMailServer returned by every IMAPClient(...) construction."""
    srv = FakeMailServer()
    monkeypatch.setattr("inboxtriage.imap.connection.IMAPClient", lambda **kwargs: srv)
    return srv


@pytest.fixture
def credentials():
    return lambda acct: Credential(username=acct.address, secret="app-password")


@pytest.fixture
def make_envelope():
    return build_envelope
