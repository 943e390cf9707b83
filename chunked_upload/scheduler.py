"""
Module for periodic cleanup of expired and stale upload sessions.
"""
import threading
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from .manager import UploadSessionManager
from .models import CleanupReport, utcnow

logger = logging.getLogger(__name__)

DEFAULT_CLEANUP_INTERVAL = timedelta(minutes=15)
DEFAULT_RETENTION = timedelta(hours=24)


class CleanupScheduler:
    """Sweeps expired pending sessions and old completed sessions.

    One background thread runs a tick immediately on start and then every
    ``interval``. Ticks never overlap: a tick requested while another is in
    flight is skipped.
    """

    def __init__(self, manager: UploadSessionManager,
                 interval: timedelta = DEFAULT_CLEANUP_INTERVAL,
                 retention: timedelta = DEFAULT_RETENTION,
                 clock: Optional[Callable[[], datetime]] = None):
        self.manager = manager
        self.interval = interval
        self.retention = retention
        self._clock = clock or utcnow
        self._tick_lock = threading.Lock()
        self._stop_event: Optional[threading.Event] = None
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the background cleanup thread."""
        with self._lock:
            if self.is_running:
                logger.warning("Cleanup scheduler already running")
                return

            stop_event = threading.Event()
            self._stop_event = stop_event
            self._thread = threading.Thread(
                target=self._run,
                args=(stop_event,),
                name="upload-session-cleanup",
                daemon=True
            )
            self._thread.start()

        logger.info(f"Upload session cleanup scheduler started (interval {self.interval})")

    def stop(self, timeout: float = 5) -> None:
        """Stop the background thread and wait for it to finish."""
        with self._lock:
            if self._stop_event is None:
                return
            self._stop_event.set()
            if self._thread is not None:
                self._thread.join(timeout=timeout)
            self._stop_event = None
            self._thread = None

        logger.info("Upload session cleanup scheduler stopped")

    def _run(self, stop_event: threading.Event) -> None:
        """Background loop: tick, then wait for the interval or a stop."""
        while not stop_event.is_set():
            self.run_once()
            stop_event.wait(self.interval.total_seconds())

    def run_once(self) -> Optional[CleanupReport]:
        """Run one cleanup sweep.

        Returns:
            CleanupReport, or None if another sweep was in flight or the sweep failed
        """
        if not self._tick_lock.acquire(blocking=False):
            logger.warning("Previous upload session cleanup still running; skipping")
            return None

        try:
            now = self._clock()
            report = CleanupReport(
                expired=self.manager.cleanup_expired_sessions(now),
                completed=self.manager.cleanup_completed_sessions(now - self.retention),
            )
        except Exception as e:
            logger.error(f"Upload session cleanup failed: {e}", exc_info=True)
            return None
        finally:
            self._tick_lock.release()

        if report.expired or report.completed:
            logger.info(
                f"Upload session cleanup removed {report.expired} expired "
                f"and {report.completed} completed sessions"
            )
        return report
