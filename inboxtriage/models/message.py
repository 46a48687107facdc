"""Message dataclasses — cached metadata rows and raw header records from IMAP."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass
class RawHeaderRecord:
    """Header metadata for one UID as parsed from a FETCH response."""

    uid: int
    message_id: str = ""
    subject: str = ""
    sender: str = ""
    date_received: str = ""
    date_epoch: int = 0
    is_read: bool = False


@dataclass
class Message:
    id: int | None = None
    uid: int = 0
    message_id: str = ""
    subject: str = ""
    sender: str = ""
    date_received: str = ""
    date_epoch: int = 0
    mailbox: str = ""
    account: str = ""
    is_read: bool = False
    cached_at: datetime | None = None

    @classmethod
    def from_row(cls, row: dict) -> "Message":
        return cls(
            id=row["id"],
            uid=row["uid"],
            message_id=row.get("message_id") or "",
            subject=row["subject"] or "",
            sender=row["sender"] or "",
            date_received=row.get("date_received") or "",
            date_epoch=row.get("date_epoch") or 0,
            mailbox=row["mailbox"],
            account=row["account"],
            is_read=bool(row["is_read"]),
            cached_at=datetime.fromisoformat(row["cached_at"]) if row.get("cached_at") else None,
        )


@dataclass
class MessageBody:
    """Decoded message text.  Either part may be missing."""

    html: str | None = None
    text: str | None = None

    @property
    def is_empty(self) -> bool:
        return not self.html and not self.text
