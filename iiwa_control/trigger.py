"""
Start trigger: the manual gate between initial positioning and tracking.

The IK loop only depends on StartTrigger.wait(); where the signal comes from
(operator console, a control-plane message, a test) is up to the subclass.
"""

import logging
import sys
import threading
from typing import Optional, TextIO

logger = logging.getLogger(__name__)


class StartTrigger:
    """Programmatic trigger; `fire()` releases every waiter."""

    def __init__(self):
        self._event = threading.Event()

    def fire(self) -> None:
        self._event.set()

    @property
    def fired(self) -> bool:
        return self._event.is_set()

    def arm(self) -> None:
        """Called when the loop starts waiting; subclasses start listening here."""

    def wait(self, stop_event: Optional[threading.Event] = None, poll_s: float = 0.1) -> bool:
        """Block until fired. Returns False if stop_event is set first."""
        self.arm()
        while not self._event.wait(poll_s):
            if stop_event is not None and stop_event.is_set():
                return False
        return True


class AutoTrigger(StartTrigger):
    """Already fired; for unattended runs (simulation, tests)."""

    def __init__(self):
        super().__init__()
        self.fire()


class ConsoleTrigger(StartTrigger):
    """Fires when the operator enters a line on the console."""

    def __init__(self, stream: Optional[TextIO] = None,
                 prompt: str = "Press Enter to start tracking"):
        super().__init__()
        self._stream = stream
        self._prompt = prompt
        self._reader: Optional[threading.Thread] = None

    def arm(self) -> None:
        if self._reader is not None or self.fired:
            return
        logger.info(self._prompt)
        self._reader = threading.Thread(target=self._read_line, name="console-trigger", daemon=True)
        self._reader.start()

    def _read_line(self) -> None:
        stream = self._stream if self._stream is not None else sys.stdin
        line = stream.readline()
        if line == "":
            logger.warning("Console closed before the start signal; trajectory will not start")
            return
        logger.info("Start signal received from console")
        self.fire()
