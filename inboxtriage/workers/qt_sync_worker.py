"""QObject wrapper around SyncCoordinator.sync for use with QThread (moveToThread pattern)."""
from __future__ import annotations

import logging

from PyQt6.QtCore import QObject, pyqtSignal

from inboxtriage.errors import SyncAlreadyRunning
from inboxtriage.models.sync import SyncMode

logger = logging.getLogger(__name__)


class QtSyncWorker(QObject):
    """
    Runs one sync on a background thread.

    Usage (moveToThread pattern):
        worker = QtSyncWorker(coordinator, "me@example.com", SyncMode.UNREAD)
        thread = QThread()
        worker.moveToThread(thread)
        thread.started.connect(worker.run)
        worker.finished.connect(thread.quit)
        worker.finished.connect(worker.deleteLater)
        thread.finished.connect(thread.deleteLater)
        thread.start()
    """

    progress = pyqtSignal(object)      # ProgressEvent
    report_ready = pyqtSignal(object)  # SyncReport
    rejected = pyqtSignal(str)         # account already syncing
    error = pyqtSignal(str)
    finished = pyqtSignal()

    def __init__(
        self,
        coordinator,
        account: str,
        mode: SyncMode = SyncMode.UNREAD,
        parent: QObject | None = None,
    ) -> None:
        super().__init__(parent)
        self._coordinator = coordinator
        self._account = account
        self._mode = mode

    def run(self) -> None:
        try:
            report = self._coordinator.sync(self._account, self._mode, on_event=self.progress.emit)
            self.report_ready.emit(report)
        except SyncAlreadyRunning as exc:
            logger.info("%s", exc)
            self.rejected.emit(self._account)
        except Exception as exc:
            logger.error("Sync worker for %s failed: %s", self._account, exc)
            self.error.emit(str(exc))
        finally:
            self.finished.emit()
