"""Background sweeper that deletes expired ceremony challenges."""
from __future__ import annotations

import logging
import threading
from typing import Optional

from .storage import Storage

__all__ = ["ChallengeSweeper"]

_MIN_INTERVAL_SECONDS = 1.0


class ChallengeSweeper:
    """Periodically remove challenges older than ``max_age`` seconds.

    Expired challenges are already rejected when read, so the sweep only
    keeps the table small. Failures are logged and retried on the next tick.
    """

    def __init__(
        self,
        storage: Storage,
        *,
        interval: float = 300.0,
        max_age: Optional[float] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._storage = storage
        self.interval = max(float(interval), _MIN_INTERVAL_SECONDS)
        self.max_age = max_age
        self._logger = logger or logging.getLogger(__name__)
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._state_lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> int:
        """Sweep now; return the number of deleted challenges (0 on failure)."""

        try:
            deleted = self._storage.sweep_expired(self.max_age)
        except Exception:
            self._logger.exception("Error cleaning up expired challenges.")
            return 0

        if deleted:
            self._logger.info("Cleaned up %d expired challenges.", deleted)
        else:
            self._logger.debug("No expired challenges to clean up.")
        return deleted

    def _loop(self) -> None:
        self._logger.info("Starting challenge sweeper (every %.0f seconds).", self.interval)
        while not self._stop_event.wait(self.interval):
            self.run_once()
        self._logger.info("Stopping challenge sweeper.")

    def start(self) -> None:
        """Launch the sweeper thread if not already running."""

        with self._state_lock:
            if self.running:
                return
            self._stop_event.clear()
            self._thread = threading.Thread(
                target=self._loop, name="challenge-sweeper", daemon=True
            )
            self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        """Ask the sweeper thread to stop and wait briefly for it."""

        self._stop_event.set()
        with self._state_lock:
            thread = self._thread
            self._thread = None
        if thread is not None and thread.is_alive():
            thread.join(timeout=timeout)
