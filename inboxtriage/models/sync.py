"""Sync state, cursor and progress-event types."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from inboxtriage.errors import ErrorKind


class SyncMode(str, Enum):
    UNREAD = "unread"
    FULL = "full"


class SyncState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    FETCHING = "fetching"
    UPSERTING = "upserting"
    RECOMPUTING = "recomputing"
    COMPLETING = "completing"
    ERROR_HALT = "error_halt"

    @property
    def is_active(self) -> bool:
        return self not in (SyncState.IDLE, SyncState.ERROR_HALT)


class Stage(str, Enum):
    START = "start"
    PROGRESS = "progress"
    COMPLETE = "complete"
    ERROR = "error"


@dataclass(frozen=True)
class ProgressEvent:
    stage: Stage
    processed: int = 0
    total: int = 0
    account: str = ""
    message: str | None = None
    error_kind: ErrorKind | None = None

    @property
    def is_terminal(self) -> bool:
        return self.stage in (Stage.COMPLETE, Stage.ERROR)

    def to_dict(self) -> dict:
        data = {
            "stage": self.stage.value,
            "processed": self.processed,
            "total": self.total,
        }
        if self.message is not None:
            data["message"] = self.message
        return data


@dataclass
class SyncCursor:
    account: str
    mailbox: str = ""
    uid_validity: int = 0
    last_uid: int = 0
    last_synced_at: datetime | None = None


@dataclass
class Counts:
    total: int = 0
    unread: int = 0


@dataclass
class SyncReport:
    account: str
    mode: SyncMode
    ok: bool = True
    fetched: int = 0
    flags_changed: int = 0
    counts: Counts = field(default_factory=Counts)
    filter_counts: dict[int, int] = field(default_factory=dict)
    error: str | None = None
    error_kind: ErrorKind | None = None
