"""Parsers turning an IMAP FETCH (ENVELOPE FLAGS INTERNALDATE) response into RawHeaderRecords."""
from __future__ import annotations

import email.errors
import email.header
import logging
import re
from datetime import datetime, timezone
from typing import Any

from imapclient.datetime_util import parse_to_datetime

from inboxtriage.models.message import RawHeaderRecord

logger = logging.getLogger(__name__)

FETCH_ITEMS = [b"ENVELOPE", b"FLAGS", b"INTERNALDATE"]

SEEN_FLAG = b"\\Seen"
DEFAULT_SUBJECT = "(No Subject)"
DEFAULT_SENDER = "Unknown"


def parse_fetch_response(uid: int, data: dict) -> RawHeaderRecord | None:
    try:
        envelope = data.get(b"ENVELOPE")
        flags = data.get(b"FLAGS", ()) or ()

        # imapclient 3.x returns an Envelope object with named attributes:
        #   .date (datetime|None), .subject (bytes), .from_ (tuple[Address]|None)
        if envelope is not None:
            sender = envelope_addr(getattr(envelope, "from_", None))
            subject = decode_header(getattr(envelope, "subject", b""))
            message_id = _b(getattr(envelope, "message_id", b""))
            raw_date = getattr(envelope, "date", None)
            date = raw_date if isinstance(raw_date, datetime) else parse_date(raw_date)
        else:
            sender = ""
            subject = ""
            message_id = ""
            date = None

        if date is None:
            internal = data.get(b"INTERNALDATE")
            date = internal if isinstance(internal, datetime) else parse_date(internal)

        date_received, date_epoch = date_fields(date)
        return RawHeaderRecord(
            uid=uid,
            message_id=message_id.strip(),
            subject=subject.strip() or DEFAULT_SUBJECT,
            sender=sender or DEFAULT_SENDER,
            date_received=date_received,
            date_epoch=date_epoch,
            is_read=is_seen(flags),
        )
    except Exception as exc:
        logger.warning("Failed to parse message uid=%d: %s", uid, exc)
        return None


def is_seen(flags: Any) -> bool:
    for flag in flags:
        value = flag if isinstance(flag, bytes) else str(flag).encode()
        if value.lower() == SEEN_FLAG.lower():
            return True
    return False


def date_fields(date: datetime | None) -> tuple[str, int]:
    """Return (ISO-8601 string, epoch seconds) from one datetime.

    Naive datetimes are taken as UTC.  No date gives ("", 0).
    """
    if date is None:
        return "", 0
    if date.tzinfo is None:
        date = date.replace(tzinfo=timezone.utc)
    return date.isoformat(), int(date.timestamp())


def envelope_addr(addr_list: Any) -> str:
    """First sender of an ENVELOPE address list as 'Name <mailbox@host>'.

    Accepts imapclient Address objects and plain (name, route, mailbox, host) tuples.
    """
    try:
        first = addr_list[0] if addr_list else None
        if first is None:
            return ""
        if hasattr(first, "mailbox"):
            raw_name, local, host = first.name, first.mailbox, first.host
        else:
            raw_name, local, host = first[0], first[2], first[3]
    except (IndexError, KeyError, TypeError) as exc:
        logger.debug("Unusable envelope address %r: %s", addr_list, exc)
        return ""
    name = decode_header(raw_name)
    local, host = _b(local), _b(host)
    addr = f"{local}@{host}" if local and host else ""
    if name and addr:
        return f"{name} <{addr}>"
    return addr or name


def decode_header(value: Any) -> str:
    """Decode an IMAP header value (bytes or RFC 2047 encoded-word string)."""
    if value is None:
        return ""
    text = _b(value)
    try:
        return str(email.header.make_header(email.header.decode_header(text)))
    except (LookupError, ValueError, email.errors.HeaderParseError):
        return text


def parse_date(value: Any) -> datetime | None:
    """Parse an ENVELOPE date or an INTERNALDATE string ("01-Jan-2024 12:00:00 +0000")."""
    if not value or not isinstance(value, (bytes, str)):
        return None
    if isinstance(value, str):
        value = value.encode("utf-8", errors="replace")
    # Strip comments like "(UTC)"
    value = re.sub(rb"\s*\([^)]*\)", b"", value).strip()
    try:
        return parse_to_datetime(value, normalise=False)
    except (IndexError, OverflowError, TypeError, ValueError) as exc:
        logger.debug("Could not parse date %r: %s", value, exc)
        return None


def _b(val: Any) -> str:
    if isinstance(val, bytes):
        return val.decode("utf-8", errors="replace")
    return str(val) if val is not None else ""
