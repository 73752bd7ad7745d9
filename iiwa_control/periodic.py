"""
Fixed-rate background loops.

Rate keeps an absolute schedule (next deadline += period) and resynchronises
after an overrun instead of bursting to catch up. PeriodicLoop owns one
daemon thread plus a stop event; subclasses implement `setup()` (blocking
gate before the first cycle) and `cycle()`.
"""

import logging
import threading
import time
from typing import Optional

from .perf_tracker import LoopPerfTracker

logger = logging.getLogger(__name__)


class Rate:
    """Sleep helper for a loop running at `hz`."""

    def __init__(self, hz: float):
        if hz <= 0:
            raise ValueError(f"Rate must be positive, got {hz}")
        self.hz = float(hz)
        self.period = 1.0 / self.hz
        self._next = time.perf_counter() + self.period

    def reset(self) -> None:
        self._next = time.perf_counter() + self.period

    def sleep(self, stop_event: Optional[threading.Event] = None) -> bool:
        """Wait for the next deadline. Returns False if stop_event was set."""
        remaining = self._next - time.perf_counter()
        if remaining > 0:
            if stop_event is not None:
                if stop_event.wait(remaining):
                    return False
            else:
                time.sleep(remaining)
            self._next += self.period
        else:
            # Behind schedule, drop the missed deadlines
            self._next = time.perf_counter() + self.period
        return stop_event is None or not stop_event.is_set()


class PeriodicLoop:
    """Base class for the long-running control threads."""

    name = "loop"

    def __init__(self, hz: float, enable_perf_tracking: bool = True):
        self.hz = float(hz)
        self.period = 1.0 / self.hz
        self.logger = logging.getLogger(f"{self.__module__}.{type(self).__name__}")
        self.perf = LoopPerfTracker(enabled=enable_perf_tracking, target_hz=self.hz)

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.failure: Optional[BaseException] = None

    # Subclass hooks

    def setup(self) -> bool:
        """Block until the loop may start cycling. Return False to exit early."""
        return True

    def cycle(self) -> None:
        raise NotImplementedError

    def teardown(self) -> None:
        pass

    # Lifecycle

    @property
    def stop_event(self) -> threading.Event:
        return self._stop_event

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running:
            self.logger.warning("%s already running!", self.name)
            return
        self._stop_event.clear()
        self.failure = None
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()
        self.logger.info("%s started (%.1f Hz)", self.name, self.hz)

    def request_stop(self) -> None:
        self._stop_event.set()

    def stop(self, timeout_s: float = 5.0) -> None:
        self._stop_event.set()
        self.join(timeout_s)

    def join(self, timeout_s: Optional[float] = None) -> None:
        if self._thread is None:
            return
        self._thread.join(timeout=timeout_s)
        if self._thread.is_alive():
            self.logger.warning("%s did not stop within %.1fs", self.name, timeout_s)
        else:
            self._thread = None

    def run(self) -> None:
        """Loop body; runs in the caller's thread (start() runs it in the background)."""
        if not self.setup():
            return
        rate = Rate(self.hz)
        while not self._stop_event.is_set():
            self.perf.tick_start()
            self.cycle()
            self.perf.tick_end()
            if not rate.sleep(self._stop_event):
                break

    def _run(self) -> None:
        try:
            self.run()
        except Exception as e:
            self.failure = e
            self.logger.exception("%s failed: %s", self.name, e)
        finally:
            self.teardown()
            self._stop_event.set()
            self.logger.info("%s stopped", self.name)
