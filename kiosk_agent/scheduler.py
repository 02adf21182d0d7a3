# Repeating background tasks for heartbeat and periodic sync

import logging
import threading
from typing import Callable, Optional


logger = logging.getLogger(__name__)


class RepeatingTask:
    """Runs `func` every `interval` seconds on a daemon thread until cancelled.

    With run_immediately=True the first call happens right away,
    otherwise after the first interval.
    """

    def __init__(self, name: str, interval: float, func: Callable[[], None],
                 run_immediately: bool = False):
        self.name = name
        self.interval = interval
        self.func = func
        self.run_immediately = run_immediately
        self._stop_event = threading.Event()
        self.thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self.thread is not None and self.thread.is_alive() and not self._stop_event.is_set()

    def start(self):
        if self.running:
            return
        self._stop_event.clear()
        self.thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self.thread.start()
        logger.debug(f"Task {self.name} started (every {self.interval}s)")

    def cancel(self):
        """Safe to call repeatedly and from any thread"""
        self._stop_event.set()
        thread = self.thread
        self.thread = None
        if thread and thread is not threading.current_thread():
            thread.join(timeout=1)

    def _loop(self):
        if self.run_immediately:
            self._run_once()
        while not self._stop_event.wait(self.interval):
            self._run_once()

    def _run_once(self):
        try:
            self.func()
        except Exception:
            logger.exception(f"Task {self.name} raised")
