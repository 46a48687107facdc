"""SyncScheduler — fires coordinator runs at start, on a QTimer interval and on demand."""
from __future__ import annotations

import logging
from typing import Callable

from PyQt6.QtCore import QObject, QThread, QTimer, pyqtSignal

from inboxtriage import config
from inboxtriage.models.sync import SyncMode
from inboxtriage.workers.qt_sync_worker import QtSyncWorker

logger = logging.getLogger(__name__)

Launcher = Callable[[str, SyncMode], None]


class SyncScheduler(QObject):
    """
    Never overlaps runs: accounts the coordinator reports as running are
    skipped, and the coordinator's own STARTING guard rejects anything that
    slips through.  Rejected runs are not queued.
    """

    progress = pyqtSignal(object)      # ProgressEvent
    run_finished = pyqtSignal(object)  # SyncReport
    skipped = pyqtSignal(str)          # account

    def __init__(
        self,
        coordinator,
        interval_minutes: int | None = None,
        mode: SyncMode | str | None = None,
        launcher: Launcher | None = None,
        parent: QObject | None = None,
    ) -> None:
        super().__init__(parent)
        self._coordinator = coordinator
        self._mode = SyncMode(mode or config.DEFAULT_SYNC_MODE)
        self._interval = max(0, int(
            config.SYNC_INTERVAL_MINUTES if interval_minutes is None else interval_minutes
        ))
        self._launcher = launcher or self._launch_in_thread
        self._started = False
        self._threads: dict[str, tuple[QThread, QtSyncWorker]] = {}
        self._timer = QTimer(self)
        self._timer.timeout.connect(self._on_interval)

    @property
    def interval_minutes(self) -> int:
        return self._interval

    @property
    def timer(self) -> QTimer:
        return self._timer

    def start(self) -> None:
        """Run every account now, then arm the interval timer.

        Accounts that have never completed a sync get a full run.
        """
        self._started = True
        for account in self._coordinator.accounts:
            mode = SyncMode.FULL if self._coordinator.cursor(account) is None else self._mode
            self.trigger(account, mode)
        self._arm()

    def stop(self) -> None:
        self._started = False
        self._timer.stop()

    def set_interval_minutes(self, minutes: int) -> None:
        """Reschedule.  The same value is a no-op; 0 disables the interval."""
        minutes = max(0, int(minutes))
        if minutes == self._interval:
            return
        self._interval = minutes
        logger.info("Sync interval set to %d minute(s)", minutes)
        if self._started:
            self._arm()

    def _arm(self) -> None:
        self._timer.stop()
        if self._interval > 0:
            self._timer.start(self._interval * 60_000)

    def trigger(self, account: str, mode: SyncMode | str | None = None) -> bool:
        """Request a run for *account*.  Returns False when it was skipped."""
        if self._coordinator.is_running(account) or self._thread_busy(account):
            logger.info("Sync for %s already running; request skipped", account)
            self.skipped.emit(account)
            return False
        self._launcher(account, SyncMode(mode or self._mode))
        return True

    def _on_interval(self) -> None:
        for account in self._coordinator.accounts:
            self.trigger(account, self._mode)

    def _thread_busy(self, account: str) -> bool:
        entry = self._threads.get(account)
        if entry is None:
            return False
        thread, _worker = entry
        if thread.isRunning():
            return True
        del self._threads[account]
        thread.deleteLater()
        return False

    def _launch_in_thread(self, account: str, mode: SyncMode) -> None:
        worker = QtSyncWorker(self._coordinator, account, mode)
        thread = QThread(self)
        worker.moveToThread(thread)

        thread.started.connect(worker.run)
        worker.progress.connect(self.progress)
        worker.report_ready.connect(self.run_finished)
        worker.rejected.connect(self.skipped)
        worker.finished.connect(thread.quit)
        worker.finished.connect(worker.deleteLater)

        # Keep references until the next trigger for this account finds the thread stopped
        self._threads[account] = (thread, worker)
        thread.start()

    def wait_for_threads(self, msecs: int = 5000) -> None:
        for thread, _worker in list(self._threads.values()):
            if thread.isRunning():
                thread.quit()
                thread.wait(msecs)
