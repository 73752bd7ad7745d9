"""
Joint-space move to a fixed reference configuration before tracking starts.

The reference is commanded on every joint channel each poll cycle; the joint
position controllers do the actual motion. The move is complete when the
largest |reference - measured| over all joints, sampled in one cycle, is
below the threshold. There is no timeout: the joint controllers are assumed
to reach their setpoints. Only a shutdown request ends the wait early.
"""

import enum
import logging
import threading
import time
from typing import Optional, Sequence

import numpy as np

from .periodic import Rate
from .shared_state import SharedControlState
from .transport import JointCommandSink

logger = logging.getLogger(__name__)


class PositioningState(enum.Enum):
    RUNNING = "running"
    CONVERGED = "converged"


class InitialPositioningController:

    def __init__(self, state: SharedControlState, commands: JointCommandSink,
                 reference: Sequence[float], threshold: float = 0.002,
                 poll_hz: float = 10.0, settle_s: float = 2.0):
        reference = np.asarray(reference, dtype=np.float64)
        if reference.shape != (state.n_joints,):
            raise ValueError(f"Reference must have {state.n_joints} values, got {reference.shape[0]}")
        if threshold <= 0:
            raise ValueError("threshold must be positive")
        self.state = state
        self.commands = commands
        self.reference = reference
        self.threshold = float(threshold)
        self.poll_hz = float(poll_hz)
        self.settle_s = float(settle_s)

        self.status = PositioningState.RUNNING
        self.cycles = 0
        self.last_max_error = float("inf")

    def step(self) -> float:
        """One cycle: command the reference, then sample the max joint error."""
        self.commands.publish(self.reference)
        measured = self.state.get_measurement()
        if measured is None:
            max_error = float("inf")
        else:
            max_error = float(np.max(np.abs(self.reference - measured)))

        self.cycles += 1
        self.last_max_error = max_error
        if max_error < self.threshold:
            self.status = PositioningState.CONVERGED
        return max_error

    def run(self, stop_event: Optional[threading.Event] = None) -> bool:
        """Block until converged (True) or until stop_event is set (False)."""
        stop_event = stop_event if stop_event is not None else threading.Event()
        logger.info("Moving to initial configuration %s", np.array2string(self.reference, precision=3))

        rate = Rate(self.poll_hz)
        last_report = time.monotonic()
        while self.step() >= self.threshold:
            now = time.monotonic()
            if now - last_report >= 1.0:
                logger.info("Initial positioning: max joint error %.4f rad", self.last_max_error)
                last_report = now
            if not rate.sleep(stop_event):
                logger.info("Initial positioning interrupted")
                return False

        logger.info("Initial configuration reached after %d cycles (max error %.4f rad)",
                    self.cycles, self.last_max_error)
        if self.settle_s > 0 and stop_event.wait(self.settle_s):
            return False
        return True
