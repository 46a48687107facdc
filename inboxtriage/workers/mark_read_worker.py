"""MarkReadWorker — STORE ±FLAGS \\Seen on the server, then the cache, on a background thread."""
from __future__ import annotations

import logging

from PyQt6.QtCore import QObject, pyqtSignal

from inboxtriage.errors import TriageError

logger = logging.getLogger(__name__)


class MarkReadWorker(QObject):
    """
    Applies one mark-read (or mark-unread) request through the coordinator.

    The coordinator waits for any running sync of the same account, updates
    the server first and touches the cache only when the server accepted.
    """

    done = pyqtSignal(int)                 # cached rows updated
    error = pyqtSignal(str, str)           # message, error kind
    finished = pyqtSignal()

    def __init__(
        self,
        coordinator,
        account: str,
        uids: list[int],
        unread: bool = False,
        parent: QObject | None = None,
    ) -> None:
        super().__init__(parent)
        self._coordinator = coordinator
        self._account = account
        self._uids = list(uids)
        self._unread = unread

    def run(self) -> None:
        try:
            if self._unread:
                updated = self._coordinator.mark_as_unread(self._account, self._uids)
            else:
                updated = self._coordinator.mark_as_read(self._account, self._uids)
            self.done.emit(updated)
        except TriageError as exc:
            kind = getattr(exc, "kind", None)
            self.error.emit(str(exc), kind.value if kind is not None else "")
        except ValueError as exc:
            self.error.emit(str(exc), "")
        finally:
            self.finished.emit()
