"""InboxTriage CLI — one-shot sync, listing, flag and filter commands against the local cache."""
from __future__ import annotations

import argparse
import getpass
import logging
import sys

from inboxtriage import config
from inboxtriage.db.repository import LocalStore
from inboxtriage.db.schema import init_db
from inboxtriage.errors import InvalidPattern, TriageError
from inboxtriage.imap.connection import open_session, test_connection
from inboxtriage.models.account import Account
from inboxtriage.models.filter import Filter, FilterField
from inboxtriage.models.sync import ProgressEvent, Stage, SyncMode
from inboxtriage.query import QueryFacade, Scope
from inboxtriage.sync.coordinator import SyncCoordinator
from inboxtriage.utils.keyring_store import (
    KeyringCredentialProvider,
    delete_password,
    get_password,
    set_password,
)

logger = logging.getLogger(__name__)

_FIELDS = [f.value for f in FilterField]


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="inboxtriage-cli",
        description="InboxTriage — IMAP unread triage (CLI)",
    )
    p.add_argument("--account", default=config.ACCOUNT, help="Mailbox address / IMAP username")
    p.add_argument("--host", default=config.DEFAULT_IMAP_HOST, help="IMAP server hostname")
    p.add_argument("--port", type=int, default=config.DEFAULT_IMAP_PORT, help="IMAP port")
    p.add_argument("--no-ssl", action="store_true", help="Disable SSL/TLS")
    p.add_argument("--mailbox", default=config.DEFAULT_MAILBOX, help="Mailbox to triage")
    p.add_argument("--db", default=str(config.DB_PATH), help="SQLite DB path")
    p.add_argument("-v", "--verbose", action="store_true")

    sub = p.add_subparsers(dest="command", required=True)

    sub.add_parser("login", help="Store the app password in the system keyring")
    sub.add_parser("logout", help="Remove the stored app password from the keyring")
    sub.add_parser("test", help="Check the connection and credentials")

    s = sub.add_parser("sync", help="Fetch new headers and reconcile flags")
    s.add_argument("--full", action="store_true", help="Sync the whole mailbox, not just unread")

    ls = sub.add_parser("list", help="List cached messages")
    ls.add_argument("--unread", action="store_true")
    ls.add_argument("--filtered", action="store_true", help="Only messages matched by enabled filters")
    ls.add_argument("--page", type=int, default=1)
    ls.add_argument("--page-size", type=int, default=config.DEFAULT_PAGE_SIZE)
    ls.add_argument("--snapshot", type=int, help="Snapshot printed with page 1; keeps later pages stable")

    sh = sub.add_parser("show", help="Print one message, fetching its body on first use")
    sh.add_argument("uid", type=int)
    sh.add_argument("--refresh", action="store_true", help="Fetch the body again from the server")
    sh.add_argument("--html", action="store_true", help="Prefer the HTML part")

    sub.add_parser("counts", help="Show total/unread and per-filter counts")

    for name in ("mark-read", "mark-unread"):
        m = sub.add_parser(name, help=f"{name.replace('-', ' ').capitalize()} on server and cache")
        m.add_argument("uids", nargs="+", type=int)

    f = sub.add_parser("filters", help="Manage filters")
    fsub = f.add_subparsers(dest="filter_command", required=True)
    fsub.add_parser("list")

    fa = fsub.add_parser("add")
    fa.add_argument("pattern")
    fa.add_argument("--name", default="")
    fa.add_argument("--field", choices=_FIELDS, default=FilterField.ANY.value)
    fa.add_argument("--regex", action="store_true")
    fa.add_argument("--disabled", action="store_true")

    fe = fsub.add_parser("edit")
    fe.add_argument("id", type=int)
    fe.add_argument("--name")
    fe.add_argument("--pattern")
    fe.add_argument("--field", choices=_FIELDS)
    fe.add_argument("--regex", action=argparse.BooleanOptionalAction, default=None)
    fe.add_argument("--enabled", action=argparse.BooleanOptionalAction, default=None)

    fd = fsub.add_parser("delete")
    fd.add_argument("id", type=int)

    fp = fsub.add_parser("preview")
    fp.add_argument("pattern")
    fp.add_argument("--field", choices=_FIELDS, default=FilterField.ANY.value)
    fp.add_argument("--regex", action="store_true")

    sub.add_parser("rematch", help="Recompute every filter match")
    return p


def _account(args: argparse.Namespace) -> Account:
    return Account(
        address=args.account,
        host=args.host,
        port=args.port,
        use_ssl=not args.no_ssl,
        mailbox=args.mailbox,
    )


def _print_event(event: ProgressEvent) -> None:
    if event.stage == Stage.PROGRESS:
        print(f"  {event.processed}/{event.total}\r", end="", flush=True)
    elif event.stage == Stage.COMPLETE:
        print(f"  {event.processed}/{event.total} done")
    elif event.stage == Stage.ERROR:
        print(f"\nERROR ({event.error_kind.value if event.error_kind else '?'}): {event.message}",
              file=sys.stderr)


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )

    if not args.account:
        print("ERROR: no account given (use --account or log in first)", file=sys.stderr)
        return 2
    account = _account(args)

    if args.command == "login":
        password = getpass.getpass(f"App password for {account.address}@{account.host}: ")
        if not set_password(account.address, account.host, password):
            print("ERROR: could not store password in keyring", file=sys.stderr)
            return 1
        config.ACCOUNT = account.address
        config.DEFAULT_IMAP_HOST = account.host
        config.DEFAULT_IMAP_PORT = account.port
        config.DEFAULT_MAILBOX = account.mailbox
        config.save_settings()
        print(f"Stored credentials for {account.address}")
        return 0

    if args.command == "logout":
        if not delete_password(account.address, account.host):
            print("ERROR: no stored password removed", file=sys.stderr)
            return 1
        print(f"Removed credentials for {account.address}")
        return 0

    if args.command == "test":
        secret = get_password(account.address, account.host)
        if secret is None:
            secret = getpass.getpass(f"App password for {account.address}@{account.host}: ")
        try:
            count = test_connection(account, secret)
        except TriageError as exc:
            print(f"ERROR: {exc}", file=sys.stderr)
            return 1
        print(f"Connected. {account.mailbox} holds {count} message(s).")
        return 0

    conn = init_db(args.db, legacy_filters=config.LEGACY_FILTERS_PATH)
    try:
        store = LocalStore(conn)
        return _run_local(args, account, store)
    finally:
        conn.close()


def _run_local(args: argparse.Namespace, account: Account, store: LocalStore) -> int:
    query = QueryFacade(store)
    coordinator = SyncCoordinator(
        store, KeyringCredentialProvider(), [account], session_factory=open_session
    )

    if args.command == "sync":
        mode = SyncMode.FULL if args.full else SyncMode(config.DEFAULT_SYNC_MODE)
        print(f"Syncing {account} ({mode.value})…")
        try:
            report = coordinator.sync(account.address, mode, on_event=_print_event)
        except TriageError as exc:
            print(f"ERROR: {exc}", file=sys.stderr)
            return 1
        if not report.ok:
            return 1
        print(
            f"Fetched {report.fetched}, {report.flags_changed} flag change(s). "
            f"{report.counts.total} cached, {report.counts.unread} unread."
        )
        return 0

    if args.command == "list":
        scope = Scope.UNREAD if args.unread else Scope.ALL
        if args.filtered:
            page = query.list_filtered(
                account.address, scope, args.page, args.page_size,
                snapshot=args.snapshot, mailbox=account.mailbox,
            )
        else:
            page = query.list_messages(
                account.address, scope, args.page, args.page_size,
                snapshot=args.snapshot, mailbox=account.mailbox,
            )
        print(f"{'UID':>8}  {'':1} {'DATE':<16} {'FROM':<32} SUBJECT")
        for msg in page.rows:
            marker = " " if msg.is_read else "*"
            print(f"{msg.uid:>8}  {marker} {msg.date_received[:16]:<16} {msg.sender[:32]:<32} {msg.subject}")
        print(
            f"-- page {page.page}/{max(page.page_count, 1)}, {page.total_count} message(s), "
            f"snapshot {page.snapshot}"
        )
        return 0

    if args.command == "show":
        return _show(args, account, store, coordinator)

    if args.command == "counts":
        counts = query.counts(account.address, account.mailbox)
        print(f"Total: {counts.total}  Unread: {counts.unread}")
        filter_counts = query.filter_counts(account.address, mailbox=account.mailbox)
        for flt in store.filters.get_all():
            state = "" if flt.enabled else " (disabled)"
            print(f"  [{flt.id}] {flt.name or flt.pattern}: {filter_counts.get(flt.id, 0)}{state}")
        return 0

    if args.command in ("mark-read", "mark-unread"):
        try:
            if args.command == "mark-read":
                updated = coordinator.mark_as_read(account.address, args.uids)
            else:
                updated = coordinator.mark_as_unread(account.address, args.uids)
        except TriageError as exc:
            print(f"ERROR: {exc}", file=sys.stderr)
            return 1
        print(f"Updated {updated} cached message(s)")
        return 0

    if args.command == "filters":
        return _run_filters(args, account, store, query)

    if args.command == "rematch":
        edges = store.filters.recompute_matches()
        print(f"Recomputed matches: {edges} edge(s)")
        return 0

    return 2


def _show(args: argparse.Namespace, account: Account, store: LocalStore, coordinator: SyncCoordinator) -> int:
    found = store.messages.get_by_uids(account.address, [args.uid], account.mailbox)
    if not found:
        print(f"ERROR: uid {args.uid} is not cached (run sync first)", file=sys.stderr)
        return 1
    msg = found[0]
    try:
        body = coordinator.message_body(account.address, args.uid, refresh=args.refresh)
    except TriageError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1
    print(f"From:    {msg.sender}")
    print(f"Date:    {msg.date_received}")
    print(f"Subject: {msg.subject}")
    print()
    if body is None:
        print("(message no longer on the server)")
    elif args.html:
        print(body.html or body.text or "")
    else:
        print(body.text or body.html or "")
    return 0


def _run_filters(args: argparse.Namespace, account: Account, store: LocalStore, query: QueryFacade) -> int:
    repo = store.filters
    cmd = args.filter_command

    if cmd == "list":
        for flt in repo.get_all():
            kind = "regex" if flt.is_regex else "text"
            state = "on" if flt.enabled else "off"
            print(f"[{flt.id}] {flt.name!r} {kind} {flt.field.value}: {flt.pattern!r} ({state})")
        return 0

    if cmd == "add":
        flt = repo.create(Filter(
            name=args.name or args.pattern,
            pattern=args.pattern,
            field=FilterField(args.field),
            is_regex=args.regex,
            enabled=not args.disabled,
        ))
        print(f"Created filter {flt.id}")
        return 0

    if cmd == "edit":
        flt = repo.get_by_id(args.id)
        if flt is None:
            print(f"ERROR: no filter {args.id}", file=sys.stderr)
            return 1
        if args.name is not None:
            flt.name = args.name
        if args.pattern is not None:
            flt.pattern = args.pattern
        if args.field is not None:
            flt.field = FilterField(args.field)
        if args.regex is not None:
            flt.is_regex = args.regex
        if args.enabled is not None:
            flt.enabled = args.enabled
        repo.update(flt)
        print(f"Updated filter {flt.id}")
        return 0

    if cmd == "delete":
        if not repo.delete(args.id):
            print(f"ERROR: no filter {args.id}", file=sys.stderr)
            return 1
        print(f"Deleted filter {args.id}")
        return 0

    if cmd == "preview":
        try:
            result = query.preview_pattern(
                account.address, args.pattern, args.field, args.regex, mailbox=account.mailbox
            )
        except InvalidPattern as exc:
            print(f"ERROR: {exc}", file=sys.stderr)
            return 1
        print(f"{result.match_count} of {result.total_count} message(s) match")
        for msg in result.sample_matches:
            print(f"  {msg.uid:>8}  {msg.sender[:32]:<32} {msg.subject}")
        return 0

    return 2


if __name__ == "__main__":
    sys.exit(main())
