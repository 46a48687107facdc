"""InboxTriage — entry point for the headless background watcher."""
from __future__ import annotations

import logging
import signal
import sys

from inboxtriage import config
from inboxtriage.config import LOG_PATH


def _setup_logging() -> None:
    fmt = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"
    logging.basicConfig(
        level=logging.INFO,
        format=fmt,
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler(LOG_PATH, encoding="utf-8"),
        ],
    )


def _log_event(event) -> None:
    log = logging.getLogger("inboxtriage.watcher")
    if event.stage.value == "error":
        log.warning("%s: sync error (%s): %s", event.account,
                    event.error_kind.value if event.error_kind else "?", event.message)
    else:
        log.info("%s: %s %d/%d", event.account, event.stage.value, event.processed, event.total)


def main() -> None:
    _setup_logging()
    if not config.ACCOUNT:
        logging.error("No account configured; run `inboxtriage-cli --account ADDRESS login` first")
        sys.exit(2)

    from PyQt6.QtCore import QCoreApplication, QTimer

    from inboxtriage.db.repository import LocalStore
    from inboxtriage.db.schema import init_db
    from inboxtriage.models.account import Account
    from inboxtriage.sync.coordinator import SyncCoordinator
    from inboxtriage.sync.scheduler import SyncScheduler
    from inboxtriage.utils.keyring_store import KeyringCredentialProvider

    app = QCoreApplication(sys.argv)
    app.setApplicationName(config.APP_NAME)
    app.setOrganizationName(config.APP_NAME)

    conn = init_db(config.DB_PATH, legacy_filters=config.LEGACY_FILTERS_PATH)
    account = Account(
        address=config.ACCOUNT,
        host=config.DEFAULT_IMAP_HOST,
        port=config.DEFAULT_IMAP_PORT,
        mailbox=config.DEFAULT_MAILBOX,
    )
    coordinator = SyncCoordinator(LocalStore(conn), KeyringCredentialProvider(), [account])
    scheduler = SyncScheduler(coordinator)
    scheduler.progress.connect(_log_event)
    scheduler.skipped.connect(lambda a: logging.info("%s: sync still running, tick skipped", a))

    # Ctrl+C quits the event loop; the idle tick wakes the interpreter so the handler runs
    signal.signal(signal.SIGINT, lambda *_: app.quit())
    tick = QTimer()
    tick.timeout.connect(lambda: None)
    tick.start(500)

    logging.info("Watching %s every %d minute(s)", account, scheduler.interval_minutes)
    scheduler.start()
    code = app.exec()
    scheduler.stop()
    scheduler.wait_for_threads()
    conn.close()
    sys.exit(code)


if __name__ == "__main__":
    main()
