"""SyncCoordinator — runs the per-account sync state machine and the mark-read/unread flow.

State per account:

    IDLE → STARTING → FETCHING → UPSERTING → RECOMPUTING → COMPLETING → IDLE
                  any active state → ERROR_HALT → IDLE

At most one run per account is active; a second request is rejected with
SyncAlreadyRunning before any event is emitted.  The coordinator is the only
place that classifies failures: ``sync()`` reports them through an ``error``
event and a SyncReport with ``ok=False`` rather than raising.
"""
from __future__ import annotations

import logging
import sqlite3
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Iterable

from inboxtriage import config
from inboxtriage.db.repository import LocalStore
from inboxtriage.errors import ProtocolFailure, RemoteError, StoreFailure, SyncAlreadyRunning, TriageError
from inboxtriage.imap.connection import (
    FlagDelta,
    FlagPredicate,
    MailboxSession,
    fetch_body,
    fetch_headers,
    open_session,
    search_uids,
    store_flags,
)
from inboxtriage.models.account import Account, Credential
from inboxtriage.models.message import MessageBody
from inboxtriage.models.sync import ProgressEvent, Stage, SyncCursor, SyncMode, SyncReport, SyncState
from inboxtriage.sync.delta import flag_changes, new_uids

logger = logging.getLogger(__name__)

CredentialProvider = Callable[[Account], "Credential | None"]
SessionFactory = Callable[[Account, "Credential | None"], MailboxSession]
EventListener = Callable[[ProgressEvent], None]
StateListener = Callable[[str, SyncState], None]


def classify(exc: BaseException) -> TriageError:
    """Map any exception onto the error taxonomy."""
    if isinstance(exc, (RemoteError, StoreFailure)):
        return exc
    if isinstance(exc, sqlite3.Error):
        return StoreFailure(str(exc))
    return ProtocolFailure(f"{type(exc).__name__}: {exc}")


@dataclass
class _Run:
    account: Account
    mode: SyncMode
    on_event: EventListener | None
    processed: int = 0
    total: int = 0
    touched: set[int] = field(default_factory=set)


class SyncCoordinator:
    def __init__(
        self,
        store: LocalStore,
        credentials: CredentialProvider,
        accounts: Iterable[Account] = (),
        session_factory: SessionFactory = open_session,
        batch_size: int | None = None,
    ) -> None:
        self.store = store
        self._credentials = credentials
        self._session_factory = session_factory
        self._batch_size = batch_size
        self._accounts: dict[str, Account] = {a.address: a for a in accounts}
        self._states: dict[str, SyncState] = {}
        self._state_lock = threading.Lock()
        self._session_locks: dict[str, threading.Lock] = {}
        self._event_listeners: list[EventListener] = []
        self._state_listeners: list[StateListener] = []

    # ── Accounts & listeners ──────────────────────────────────────────────────

    def add_account(self, account: Account) -> None:
        self._accounts[account.address] = account

    def account(self, address: str) -> Account:
        try:
            return self._accounts[address]
        except KeyError:
            raise ValueError(f"Unknown account: {address!r}") from None

    @property
    def accounts(self) -> list[str]:
        return sorted(self._accounts)

    def add_listener(self, listener: EventListener) -> None:
        self._event_listeners.append(listener)

    def add_state_listener(self, listener: StateListener) -> None:
        self._state_listeners.append(listener)

    # ── State ─────────────────────────────────────────────────────────────────

    def state(self, account: str) -> SyncState:
        with self._state_lock:
            return self._states.get(account, SyncState.IDLE)

    def is_running(self, account: str) -> bool:
        return self.state(account).is_active

    def cursor(self, account: str) -> SyncCursor | None:
        return self.store.cursors.get(account, self.account(account).mailbox)

    def _claim(self, account: str) -> None:
        with self._state_lock:
            if self._states.get(account, SyncState.IDLE).is_active:
                raise SyncAlreadyRunning(f"A sync is already running for {account}")
            self._states[account] = SyncState.STARTING
        self._notify_state(account, SyncState.STARTING)

    def _set_state(self, account: str, state: SyncState) -> None:
        with self._state_lock:
            if self._states.get(account) == state:
                return
            self._states[account] = state
        logger.debug("%s → %s", account, state.value)
        self._notify_state(account, state)

    def _notify_state(self, account: str, state: SyncState) -> None:
        for listener in list(self._state_listeners):
            try:
                listener(account, state)
            except Exception:
                logger.exception("State listener failed for %s", account)

    def _session_lock(self, account: str) -> threading.Lock:
        with self._state_lock:
            return self._session_locks.setdefault(account, threading.Lock())

    def _emit(self, run: _Run, stage: Stage, message: str | None = None, error_kind=None) -> None:
        event = ProgressEvent(
            stage=stage,
            processed=run.processed,
            total=run.total,
            account=run.account.address,
            message=message,
            error_kind=error_kind,
        )
        targets = list(self._event_listeners)
        if run.on_event is not None:
            targets.append(run.on_event)
        for listener in targets:
            try:
                listener(event)
            except Exception:
                logger.exception("Progress listener failed for %s", run.account.address)

    # ── Sync ──────────────────────────────────────────────────────────────────

    def sync(
        self,
        account: str,
        mode: SyncMode = SyncMode.UNREAD,
        on_event: EventListener | None = None,
    ) -> SyncReport:
        """Run one sync for *account*.

        Raises SyncAlreadyRunning (before emitting anything) when a run is
        active.  Every other failure is classified, emitted as an ``error``
        event and returned as a report with ``ok=False``; batches committed
        before the failure stay, the cursor does not advance.
        """
        acct = self.account(account)
        self._claim(account)
        run = _Run(account=acct, mode=SyncMode(mode), on_event=on_event)
        report = SyncReport(account=account, mode=run.mode)
        try:
            self._emit(run, Stage.START)
            with self._session_lock(account):
                self._run(run, report)
        except Exception as exc:
            err = classify(exc)
            self._set_state(account, SyncState.ERROR_HALT)
            report.ok = False
            report.error = str(err)
            report.error_kind = err.kind
            logger.error("Sync failed for %s (%s): %s", account, err.kind.value, err)
            self._emit(run, Stage.ERROR, message=str(err), error_kind=err.kind)
        finally:
            self._set_state(account, SyncState.IDLE)
        return report

    def _run(self, run: _Run, report: SyncReport) -> None:
        acct = run.account
        address = acct.address
        msgs = self.store.messages
        batch_size = self._batch_size or config.SYNC_BATCH_SIZE

        self._set_state(address, SyncState.FETCHING)
        cursor = self.store.cursors.get(address, acct.mailbox)
        with self._session_factory(acct, self._credentials(acct)) as session:
            mailbox = session.mailbox
            if (
                cursor is not None
                and cursor.uid_validity
                and cursor.uid_validity != session.uid_validity
            ):
                logger.warning(
                    "UIDVALIDITY changed for %s/%s (%d → %d); dropping cache and refetching",
                    address, mailbox, cursor.uid_validity, session.uid_validity,
                )
                msgs.reset_mailbox(address, mailbox)
                run.mode = report.mode = SyncMode.FULL

            unread_on_server = search_uids(session, FlagPredicate.UNREAD)
            if run.mode == SyncMode.FULL:
                target = search_uids(session, None)
            else:
                target = unread_on_server
            cached = msgs.get_read_state(address, mailbox)
            delta = new_uids(target, cached)
            run.total = len(delta)
            logger.info(
                "Sync %s (%s): %d target uid(s), %d to fetch",
                address, run.mode.value, len(target), run.total,
            )

            for start in range(0, run.total, batch_size):
                chunk = delta[start: start + batch_size]
                self._set_state(address, SyncState.FETCHING)
                records = fetch_headers(session, chunk)
                self._set_state(address, SyncState.UPSERTING)
                run.touched.update(msgs.upsert_messages(address, mailbox, records))
                report.fetched += len(records)
                run.processed += len(chunk)
                self._emit(run, Stage.PROGRESS)

            self._set_state(address, SyncState.UPSERTING)
            now_read, now_unread = flag_changes(cached, unread_on_server)
            if now_read or now_unread:
                run.touched.update(msgs.apply_flags(address, mailbox, now_read, now_unread))
                report.flags_changed = len(now_read) + len(now_unread)
                logger.info(
                    "%s: %d message(s) now read, %d now unread on server",
                    address, len(now_read), len(now_unread),
                )
            uid_validity = session.uid_validity

        self._set_state(address, SyncState.RECOMPUTING)
        if run.touched:
            self.store.filters.recompute_matches(sorted(run.touched))
        report.counts = msgs.counts(address, mailbox)
        report.filter_counts = self.store.filters.filter_match_counts(address, mailbox=mailbox)

        self._set_state(address, SyncState.COMPLETING)
        last_uid = max(msgs.max_uid(address, mailbox), max(target, default=0))
        self.store.cursors.save(SyncCursor(
            account=address,
            mailbox=mailbox,
            uid_validity=uid_validity,
            last_uid=last_uid,
            last_synced_at=datetime.now(timezone.utc),
        ))
        run.processed = run.total
        self._emit(run, Stage.COMPLETE)
        logger.info(
            "Sync %s done: %d fetched, %d flag change(s), %d total / %d unread",
            address, report.fetched, report.flags_changed,
            report.counts.total, report.counts.unread,
        )

    # ── Flag changes from the user ────────────────────────────────────────────

    def mark_as_read(self, account: str, uids: Iterable[int]) -> int:
        return self._set_flags(account, uids, FlagDelta.MARK_READ)

    def mark_as_unread(self, account: str, uids: Iterable[int]) -> int:
        return self._set_flags(account, uids, FlagDelta.MARK_UNREAD)

    def _set_flags(self, account: str, uids: Iterable[int], delta: FlagDelta) -> int:
        """Server first, cache second.  A remote failure leaves the cache untouched."""
        uid_list = sorted(set(uids))
        if not uid_list:
            raise ValueError("No UIDs given")
        acct = self.account(account)
        with self._session_lock(account):
            try:
                with self._session_factory(acct, self._credentials(acct)) as session:
                    store_flags(session, uid_list, delta)
            except Exception as exc:
                err = classify(exc)
                logger.error("Flag change %s failed for %s: %s", delta.value, account, err)
                if err is exc:
                    raise
                raise err from exc
            if delta == FlagDelta.MARK_READ:
                updated = self.store.messages.mark_read(account, uid_list, acct.mailbox)
            else:
                updated = self.store.messages.mark_unread(account, uid_list, acct.mailbox)
        logger.info("%s: %s applied to %d uid(s), %d cached row(s)", account, delta.value, len(uid_list), updated)
        return updated

    def reset_mailbox(self, account: str) -> int:
        """Drop cached rows and the cursor of the account's mailbox.  Refused while a sync is active."""
        acct = self.account(account)
        if self.is_running(account):
            raise SyncAlreadyRunning(f"Cannot reset {account} while a sync is running")
        with self._session_lock(account):
            return self.store.messages.reset_mailbox(account, acct.mailbox)

    # ── Message bodies ────────────────────────────────────────────────────────

    def message_body(self, account: str, uid: int, refresh: bool = False) -> MessageBody | None:
        """Return the body of a cached message, fetching it on first use.

        Fetched bodies are stored on the cached row; later calls read the
        cache unless *refresh* is set.  Returns None when the server has no
        such UID.
        """
        acct = self.account(account)
        msgs = self.store.messages
        if not refresh:
            cached = msgs.get_body(account, acct.mailbox, uid)
            if cached is not None:
                return cached
        with self._session_lock(account):
            try:
                with self._session_factory(acct, self._credentials(acct)) as session:
                    body = fetch_body(session, uid)
            except Exception as exc:
                err = classify(exc)
                logger.error("Body fetch of uid %d failed for %s: %s", uid, account, err)
                if err is exc:
                    raise
                raise err from exc
            if body is not None:
                msgs.set_bodies(account, acct.mailbox, {uid: body})
        return body
