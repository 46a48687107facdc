"""IMAP session wrapper — connect, search, fetch headers and store flags in bounded UID batches.

Every imapclient/socket failure leaving this module is mapped onto the
RemoteError taxonomy in ``inboxtriage.errors``.
"""
from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Iterator

from imapclient import IMAPClient
from imapclient.exceptions import IMAPClientAbortError, IMAPClientError, LoginError

from inboxtriage import config
from inboxtriage.errors import AuthFailure, ProtocolFailure, RemoteError, TransientNetworkFailure
from inboxtriage.imap.headers import FETCH_ITEMS, SEEN_FLAG, parse_fetch_response
from inboxtriage.models.account import Account, Credential
from inboxtriage.models.message import MessageBody, RawHeaderRecord
from inboxtriage.utils.mime_utils import extract_bodies

logger = logging.getLogger(__name__)


class FlagPredicate(str, Enum):
    UNREAD = "unread"
    READ = "read"


class FlagDelta(str, Enum):
    MARK_READ = "+seen"
    MARK_UNREAD = "-seen"


_SEARCH_CRITERIA = {
    None: ["ALL"],
    FlagPredicate.UNREAD: ["UNSEEN"],
    FlagPredicate.READ: ["SEEN"],
}


@dataclass(frozen=True)
class UidBatch:
    """An explicit, bounded set of UIDs sent as one protocol command."""

    uids: tuple[int, ...]

    def __post_init__(self) -> None:
        if not self.uids:
            raise ValueError("UidBatch cannot be empty")

    def __len__(self) -> int:
        return len(self.uids)

    def __iter__(self) -> Iterator[int]:
        return iter(self.uids)

    def as_list(self) -> list[int]:
        return list(self.uids)

    @classmethod
    def split(cls, uids: Iterable[int], max_size: int | None = None) -> list["UidBatch"]:
        """De-duplicate, sort and chunk *uids* into batches of at most *max_size*."""
        size = max_size or config.MAX_UID_BATCH
        if size < 1:
            raise ValueError(f"max_size must be positive, got {size}")
        ordered = sorted({int(u) for u in uids})
        return [cls(tuple(ordered[i: i + size])) for i in range(0, len(ordered), size)]


@contextmanager
def remote_errors(action: str) -> Iterator[None]:
    """Translate imapclient/socket exceptions raised inside the block."""
    try:
        yield
    except RemoteError:
        raise
    except LoginError as exc:
        raise AuthFailure(f"{action}: authentication rejected: {exc}") from exc
    except (TimeoutError, OSError, IMAPClientAbortError) as exc:
        raise TransientNetworkFailure(f"{action}: connection problem: {exc}") from exc
    except IMAPClientError as exc:
        raise ProtocolFailure(f"{action}: server error: {exc}") from exc


def _logout(client: IMAPClient) -> None:
    try:
        client.logout()
    except Exception:
        logger.debug("Failed to logout from IMAP server", exc_info=True)


class MailboxSession:
    """One authenticated client with one selected mailbox.  Not safe for two callers."""

    def __init__(self, client: IMAPClient, account: Account, uid_validity: int, exists: int = 0) -> None:
        self.client = client
        self.account = account
        self.uid_validity = uid_validity
        self.exists = exists
        self._closed = False

    @property
    def mailbox(self) -> str:
        return self.account.mailbox

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            _logout(self.client)

    def __enter__(self) -> "MailboxSession":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


def open_session(
    account: Account,
    credential: Credential | None,
    timeout: int | None = None,
    readonly: bool = False,
) -> MailboxSession:
    """Connect, log in and select the account's mailbox.

    Raises AuthFailure when no credential is available.
    """
    if credential is None or not credential.secret:
        raise AuthFailure(f"No credential available for {account.address}")

    with remote_errors(f"connect {account.host}:{account.port}"):
        client = IMAPClient(
            host=account.host,
            port=account.port,
            ssl=account.use_ssl,
            timeout=timeout or config.IMAP_TIMEOUT_SECONDS,
        )

    try:
        with remote_errors(f"login {credential.username}"):
            client.login(credential.username, credential.secret)
        logger.info("Authenticated %s@%s", credential.username, account.host)
        with remote_errors(f"select {account.mailbox}"):
            info = client.select_folder(account.mailbox, readonly=readonly)
        uid_validity = info.get(b"UIDVALIDITY")
        if not isinstance(uid_validity, int):
            raise ProtocolFailure(f"SELECT {account.mailbox} returned no usable UIDVALIDITY")
        exists = info.get(b"EXISTS", 0)
    except BaseException:
        _logout(client)
        raise

    return MailboxSession(client, account, uid_validity, exists if isinstance(exists, int) else 0)


def search_uids(session: MailboxSession, predicate: FlagPredicate | None = None) -> list[int]:
    """Return the mailbox UIDs matching *predicate* (all UIDs when None), ascending."""
    criteria = _SEARCH_CRITERIA[predicate]
    start = time.monotonic()
    with remote_errors(f"search {criteria[0]}"):
        result = session.client.search(criteria)
    try:
        uids = sorted(int(u) for u in result)
    except (TypeError, ValueError) as exc:
        raise ProtocolFailure(f"Malformed SEARCH response: {exc}") from exc
    logger.info(
        "SEARCH %s in %s: %d uid(s) in %.2fs",
        criteria[0], session.mailbox, len(uids), time.monotonic() - start,
    )
    return uids


def fetch_headers(session: MailboxSession, uids: Iterable[int]) -> list[RawHeaderRecord]:
    """Fetch ENVELOPE FLAGS INTERNALDATE for an explicit UID set, one command per UidBatch."""
    records: list[RawHeaderRecord] = []
    for batch in UidBatch.split(uids):
        start = time.monotonic()
        with remote_errors(f"fetch {len(batch)} header(s)"):
            data = session.client.fetch(batch.as_list(), FETCH_ITEMS)
        if not isinstance(data, dict):
            raise ProtocolFailure(f"Malformed FETCH response of type {type(data).__name__}")
        for uid, item in data.items():
            record = parse_fetch_response(uid, item)
            if record is not None:
                records.append(record)
        logger.info(
            "FETCH %d uid(s) from %s: %d record(s) in %.2fs",
            len(batch), session.mailbox, len(data), time.monotonic() - start,
        )
    records.sort(key=lambda r: r.uid)
    return records


BODY_ITEM = b"BODY.PEEK[]"
_BODY_KEY = b"BODY[]"


def fetch_body(session: MailboxSession, uid: int) -> MessageBody | None:
    """Fetch and decode the full message for one UID without setting \\Seen.

    Returns None when the server has no such UID.
    """
    start = time.monotonic()
    with remote_errors(f"fetch body of uid {uid}"):
        data = session.client.fetch([uid], [BODY_ITEM])
    if not isinstance(data, dict):
        raise ProtocolFailure(f"Malformed FETCH response of type {type(data).__name__}")
    item = data.get(uid)
    if item is None:
        return None
    raw = item.get(_BODY_KEY)
    if not isinstance(raw, (bytes, bytearray)):
        raise ProtocolFailure(f"FETCH response for uid {uid} carries no message body")
    logger.info(
        "FETCH body of uid %d from %s: %d byte(s) in %.2fs",
        uid, session.mailbox, len(raw), time.monotonic() - start,
    )
    return extract_bodies(bytes(raw), uid)


def store_flags(session: MailboxSession, uids: Iterable[int], delta: FlagDelta) -> int:
    """Add or remove \\Seen on an explicit UID set.  Returns the number of UIDs sent."""
    applied = 0
    for batch in UidBatch.split(uids):
        with remote_errors(f"store {delta.value} on {len(batch)} uid(s)"):
            if delta == FlagDelta.MARK_READ:
                session.client.add_flags(batch.as_list(), [SEEN_FLAG])
            else:
                session.client.remove_flags(batch.as_list(), [SEEN_FLAG])
        applied += len(batch)
    logger.info("STORE %s on %d uid(s) in %s", delta.value, applied, session.mailbox)
    return applied


def test_connection(account: Account, secret: str, timeout: int | None = None) -> int:
    """Check credentials without storing them; return the mailbox message count."""
    credential = Credential(username=account.address, secret=secret)
    with open_session(account, credential, timeout=timeout, readonly=True) as session:
        return session.exists


# not a pytest test
test_connection.__test__ = False
