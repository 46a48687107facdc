"""Error taxonomy shared by the store, the IMAP adapter and the sync coordinator."""
from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    AUTH = "auth"
    TRANSIENT = "transient"
    PROTOCOL = "protocol"
    STORE = "store"


class TriageError(Exception):
    pass


class RemoteError(TriageError):
    """Base for failures raised by the remote mailbox adapter."""

    kind: ErrorKind = ErrorKind.PROTOCOL


class AuthFailure(RemoteError):
    """Bad or missing credential.  Never retried automatically."""

    kind = ErrorKind.AUTH


class TransientNetworkFailure(RemoteError):
    """Timeout or dropped connection.  Left to the next scheduled run."""

    kind = ErrorKind.TRANSIENT


class ProtocolFailure(RemoteError):
    """The server answered with something we cannot interpret."""

    kind = ErrorKind.PROTOCOL


class StoreFailure(TriageError):
    """A local transaction could not commit.  Prior commits are unaffected."""

    kind = ErrorKind.STORE


class SyncAlreadyRunning(TriageError):
    """A sync for this account is already active; the request was rejected."""


class InvalidPattern(TriageError):
    """A regex filter pattern failed to compile (interactive preview only)."""
