"""Query façade — paginated, sorted, read-only views of the local cache.

Never talks to the server and never starts a sync.  A sqlite error is logged
and answered with an empty result so the presentation layer keeps working.
"""
from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field
from enum import Enum

from inboxtriage import config
from inboxtriage.db.repository import LocalStore
from inboxtriage.filters.engine import PatternPreview, preview
from inboxtriage.models.filter import FilterField
from inboxtriage.models.message import Message, MessageBody
from inboxtriage.models.sync import Counts

logger = logging.getLogger(__name__)


class Scope(str, Enum):
    ALL = "all"
    UNREAD = "unread"


@dataclass
class Page:
    rows: list[Message] = field(default_factory=list)
    total_count: int = 0
    page: int = 1
    page_size: int = config.DEFAULT_PAGE_SIZE
    snapshot: int | None = None

    @property
    def page_count(self) -> int:
        if self.total_count == 0:
            return 0
        return (self.total_count + self.page_size - 1) // self.page_size


def clamp_page_size(page_size: int | None) -> int:
    if page_size is None:
        return config.DEFAULT_PAGE_SIZE
    return max(1, min(int(page_size), config.MAX_PAGE_SIZE))


class QueryFacade:
    def __init__(self, store: LocalStore) -> None:
        self._store = store

    def list_messages(
        self,
        account: str,
        scope: Scope | str = Scope.ALL,
        page: int = 1,
        page_size: int | None = None,
        snapshot: int | None = None,
        mailbox: str | None = None,
    ) -> Page:
        """One page sorted by date_epoch DESC, uid DESC.

        *snapshot* is the highest row id seen when page 1 was served (returned
        in ``Page.snapshot``); passing it back hides rows inserted since.
        *mailbox* narrows the view to one folder; None covers the whole account.
        """
        return self._page(account, scope, page, page_size, snapshot, None, mailbox)

    def list_filtered(
        self,
        account: str,
        scope: Scope | str = Scope.ALL,
        page: int = 1,
        page_size: int | None = None,
        filter_ids: list[int] | None = None,
        snapshot: int | None = None,
        mailbox: str | None = None,
    ) -> Page:
        """Messages carrying an edge to any enabled filter, or to *filter_ids*."""
        try:
            ids = self._store.filters.enabled_ids() if filter_ids is None else list(filter_ids)
        except sqlite3.Error as exc:
            logger.error("Filtered listing failed for %s: %s", account, exc)
            return Page(page=max(1, int(page)), page_size=clamp_page_size(page_size))
        return self._page(account, scope, page, page_size, snapshot, ids, mailbox)

    def _page(
        self,
        account: str,
        scope: Scope | str,
        page: int,
        page_size: int | None,
        snapshot: int | None,
        filter_ids: list[int] | None,
        mailbox: str | None = None,
    ) -> Page:
        page = max(1, int(page))
        size = clamp_page_size(page_size)
        unread_only = Scope(scope) == Scope.UNREAD
        msgs = self._store.messages
        try:
            if snapshot is None:
                snapshot = msgs.max_id(account, mailbox)
            rows = msgs.query_messages(
                account,
                unread_only=unread_only,
                filter_ids=filter_ids,
                max_id=snapshot,
                limit=size,
                offset=(page - 1) * size,
                mailbox=mailbox,
            )
            total = msgs.count_messages(
                account, unread_only=unread_only, filter_ids=filter_ids, max_id=snapshot,
                mailbox=mailbox,
            )
        except sqlite3.Error as exc:
            logger.error("Listing failed for %s: %s", account, exc)
            return Page(page=page, page_size=size, snapshot=snapshot)
        return Page(rows=rows, total_count=total, page=page, page_size=size, snapshot=snapshot)

    def counts(self, account: str, mailbox: str | None = None) -> Counts:
        try:
            return self._store.messages.counts(account, mailbox)
        except sqlite3.Error as exc:
            logger.error("Counts failed for %s: %s", account, exc)
            return Counts()

    def filter_counts(
        self, account: str, unread_only: bool = False, mailbox: str | None = None
    ) -> dict[int, int]:
        try:
            return self._store.filters.filter_match_counts(account, unread_only, mailbox)
        except sqlite3.Error as exc:
            logger.error("Filter counts failed for %s: %s", account, exc)
            return {}

    def preview_pattern(
        self,
        account: str,
        pattern: str,
        field: FilterField | str = FilterField.ANY,
        is_regex: bool = False,
        mailbox: str | None = None,
    ) -> PatternPreview:
        """Dry-run a pattern over the cached messages.  Raises InvalidPattern for a bad regex."""
        try:
            messages = self._store.messages.get_all(account, mailbox)
        except sqlite3.Error as exc:
            logger.error("Preview failed for %s: %s", account, exc)
            messages = []
        return preview(messages, pattern, FilterField.parse(field), is_regex)

    def get_body(self, account: str, uid: int, mailbox: str) -> MessageBody | None:
        """Cached body of one message; None when it has not been fetched yet."""
        try:
            return self._store.messages.get_body(account, mailbox, uid)
        except sqlite3.Error as exc:
            logger.error("Body lookup failed for %s uid=%d: %s", account, uid, exc)
            return None
