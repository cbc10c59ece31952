"""
Background thread firing the time-triggered flush on a fixed period.
"""

import threading
from typing import Callable, Optional

from anonsync.observability.logger import get_logger

logger = get_logger(__name__)


class FlushTimer:
    """
    Calls ``flush`` every ``interval_seconds`` until stopped.

    The timer owns no pipeline state beyond its stop signal. If ``flush``
    raises, the error is kept in ``error`` and the timer stops; the owner is
    expected to check it and fail.
    """

    def __init__(self, flush: Callable[[], object], interval_seconds: float, name: str = "flush-timer"):
        """
        Args:
            flush: Callable performing one flush
            interval_seconds: Flush period
            name: Thread name
        """
        self.flush = flush
        self.interval_seconds = interval_seconds
        self.name = name
        self.error: Optional[BaseException] = None
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            raise RuntimeError("Flush timer is already running")

        self._stop_event.clear()
        self.error = None
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        """Signal the timer to stop and wait for an in-flight flush to finish."""
        self._stop_event.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout)
        self._thread = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self) -> None:
        # wait() returns True once stop is requested
        while not self._stop_event.wait(self.interval_seconds):
            try:
                self.flush()
            except Exception as e:
                logger.error(f"Periodic flush failed, stopping timer: {e}", exc_info=True)
                self.error = e
                return
