"""Delta helpers — which UIDs to fetch and which cached flags the server contradicts."""
from __future__ import annotations

import logging
from typing import Iterable, Mapping

logger = logging.getLogger(__name__)


def new_uids(target_uids: Iterable[int], cached: Mapping[int, bool]) -> list[int]:
    """Return target UIDs not yet cached, ascending.  Cached rows are never re-fetched."""
    delta = sorted({u for u in target_uids if u not in cached})
    logger.debug("Delta: %d new uid(s) of %d cached", len(delta), len(cached))
    return delta


def flag_changes(
    cached: Mapping[int, bool], server_unread: Iterable[int]
) -> tuple[list[int], list[int]]:
    """
    Return (now_read, now_unread) for cached rows whose \\Seen state disagrees
    with the server's UNSEEN set.

    A cached unread UID missing from UNSEEN is taken as read on the server.
    """
    unread = set(server_unread)
    now_read = sorted(uid for uid, is_read in cached.items() if not is_read and uid not in unread)
    now_unread = sorted(uid for uid, is_read in cached.items() if is_read and uid in unread)
    return now_read, now_unread
