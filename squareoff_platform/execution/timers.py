"""
Timer and lock primitives shared by the exit scheduler and the
confirmation monitor.

Timers are process-local. They are never authoritative: the durable
record decides whether a fired timer still has anything to do.
"""

import logging
import threading
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)


class RepeatingTask:
    """Daemon thread calling ``callback`` every ``interval_sec`` until cancelled."""

    def __init__(self, interval_sec: float, callback: Callable[[], None], name: str):
        self.interval_sec = interval_sec
        self.callback = callback
        self.name = name
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)

    def start(self) -> "RepeatingTask":
        self._thread.start()
        return self

    def _run(self):
        while not self._stop.wait(self.interval_sec):
            try:
                self.callback()
            except Exception:
                logger.exception("REPEATING TASK ERROR | task=%s", self.name)

    def cancel(self):
        self._stop.set()


class ThreadingTimerFactory:
    """
    Production timer factory.

    schedule() arms a one-shot daemon threading.Timer.
    repeat() starts a RepeatingTask.
    Both return handles exposing cancel().
    """

    def schedule(self, delay_sec: float, callback: Callable[[], None], name: Optional[str] = None):
        timer = threading.Timer(max(0.0, delay_sec), callback)
        timer.daemon = True
        if name:
            timer.name = name
        timer.start()
        return timer

    def repeat(self, interval_sec: float, callback: Callable[[], None], name: str):
        return RepeatingTask(interval_sec, callback, name).start()


class KeyedLocks:
    """One re-entrant lock per key (position_id / order_id)."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.RLock] = {}

    def get(self, key: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    def discard(self, key: str) -> None:
        with self._guard:
            self._locks.pop(key, None)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
