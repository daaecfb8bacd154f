# securechat/runtime/scheduler.py

import logging
import threading

logger = logging.getLogger(__name__)


class Ticker:
    """
    Background timer driving engine.tick().

    The engine serializes ticks with user actions, so the loop never needs
    its own locking.
    """

    def __init__(self, engine, interval: float = 60):
        self.engine = engine
        self.interval = interval
        self.running = False
        self._wake = threading.Event()
        self._thread = None

    def start(self):
        if self.running:
            return self
        self.running = True
        self._wake.clear()
        self._thread = threading.Thread(target=self._loop, daemon=True)
        self._thread.start()
        return self

    def stop(self):
        self.running = False
        self._wake.set()

    # ---------------- internal ----------------

    def _loop(self):
        while self.running:
            self._wake.wait(self.interval)
            if not self.running:
                break
            try:
                removed = self.engine.tick()
            except Exception:
                logger.exception("Timer tick failed")
                continue
            if removed:
                logger.debug("Tick swept %d message(s)", removed)
