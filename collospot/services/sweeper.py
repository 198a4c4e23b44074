import logging
import threading

from sqlalchemy.exc import SQLAlchemyError


logger = logging.getLogger(__name__)


class MaintenanceSweeper:
    """
    Daemon thread that expires overdue sessions and resolves stale payments
    every ``interval_seconds``. A failed tick is logged and the loop goes on.
    """

    def __init__(self, session_factory, ledger, reconciler, interval_seconds: int = 300):
        self.session_factory = session_factory
        self.ledger = ledger
        self.reconciler = reconciler
        self.interval_seconds = interval_seconds
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def run_once(self) -> dict:
        db = self.session_factory()
        try:
            expired = self.ledger.sweep(db)
            report = self.reconciler.reconcile_stale_payments(db)
            return {"expired_sessions": expired, "janitor": report}
        finally:
            db.close()

    def _loop(self) -> None:
        logger.info("Maintenance sweeper started (interval=%ss)", self.interval_seconds)
        while not self._stop.wait(self.interval_seconds):
            try:
                self.run_once()
            except SQLAlchemyError as exc:
                logger.warning("Sweep skipped, database unavailable: %s", exc)
            except Exception:
                logger.exception("Sweep tick failed")
        logger.info("Maintenance sweeper stopped")

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="collospot-sweeper", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
