"""
Boundary between the control loops and the outside world.

- MeasurementSource pushes joint states into a callback (its own thread).
- PoseSink receives every pose computed by the FK loop.
- JointCommandSink exposes one independent position channel per joint.

SimulatedArm plays the robot in-process: per-joint first-order position
servos, measurements pushed at a fixed rate.
"""

import logging
import math
import threading
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence

import numpy as np

from .frames import CartesianPose
from .periodic import PeriodicLoop
from .trigger import StartTrigger

logger = logging.getLogger(__name__)

MeasurementCallback = Callable[[Sequence[float]], None]


class PoseSink:
    def publish(self, pose: CartesianPose) -> None:
        raise NotImplementedError

    def close(self) -> None:
        pass


class JointCommandSink:
    """Position setpoint channels, one per joint."""

    def __init__(self, n_joints: int):
        self.n_joints = int(n_joints)

    def publish_joint(self, index: int, value: float) -> None:
        raise NotImplementedError

    def publish(self, q: Sequence[float]) -> None:
        """Publish a full configuration, one message per joint channel."""
        if len(q) != self.n_joints:
            raise ValueError(f"Expected {self.n_joints} joint commands, got {len(q)}")
        for i in range(self.n_joints):
            self.publish_joint(i, float(q[i]))

    def close(self) -> None:
        pass


class MeasurementSource:
    def start(self, callback: MeasurementCallback) -> None:
        raise NotImplementedError

    def stop(self) -> None:
        pass


class NullPoseSink(PoseSink):
    def publish(self, pose: CartesianPose) -> None:
        pass


class LoggingPoseSink(PoseSink):
    """Logs poses at DEBUG, decimated to `every_n` cycles."""

    def __init__(self, every_n: int = 50):
        self.every_n = max(1, int(every_n))
        self._count = 0

    def publish(self, pose: CartesianPose) -> None:
        self._count += 1
        if self._count % self.every_n == 0:
            logger.debug("EE pose: %s", pose)


@dataclass
class Transport:
    """Everything the supervisor needs from the outside world."""

    source: MeasurementSource
    commands: JointCommandSink
    pose_sink: PoseSink = field(default_factory=NullPoseSink)
    trigger: StartTrigger = field(default_factory=StartTrigger)

    def start(self, callback: MeasurementCallback) -> None:
        self.source.start(callback)

    def close(self) -> None:
        self.source.stop()
        self.commands.close()
        self.pose_sink.close()


class SimulatedArm(PeriodicLoop, JointCommandSink, MeasurementSource):
    """
    In-process arm: each joint tracks its last setpoint with a first-order lag.

    Joint states carry `extra_values` trailing entries (e.g. gripper fingers)
    the way a full joint_states message would; only the first n are used.
    """

    name = "sim-arm"

    def __init__(self, n_joints: int, rate_hz: float = 100.0, time_constant_s: float = 0.05,
                 initial: Optional[Sequence[float]] = None, extra_values: int = 0):
        PeriodicLoop.__init__(self, rate_hz, enable_perf_tracking=False)
        JointCommandSink.__init__(self, n_joints)
        if time_constant_s <= 0:
            raise ValueError("time_constant_s must be positive")
        self.time_constant_s = float(time_constant_s)
        self.extra_values = int(extra_values)

        start = np.zeros(n_joints) if initial is None else np.asarray(initial, dtype=np.float64)
        if start.shape != (n_joints,):
            raise ValueError(f"initial must have {n_joints} values")
        self._lock = threading.Lock()
        self._positions = start.copy()
        self._setpoints = start.copy()
        self._callback: Optional[MeasurementCallback] = None
        self._alpha = 1.0 - math.exp(-self.period / self.time_constant_s)

    def publish_joint(self, index: int, value: float) -> None:
        with self._lock:
            self._setpoints[index] = value

    @property
    def positions(self) -> np.ndarray:
        with self._lock:
            return self._positions.copy()

    @property
    def setpoints(self) -> np.ndarray:
        with self._lock:
            return self._setpoints.copy()

    def start(self, callback: Optional[MeasurementCallback] = None) -> None:
        if callback is not None:
            self._callback = callback
        PeriodicLoop.start(self)

    def cycle(self) -> None:
        with self._lock:
            self._positions += self._alpha * (self._setpoints - self._positions)
            state: List[float] = self._positions.tolist()
        if self._callback is not None:
            self._callback(state + [0.0] * self.extra_values)


def simulated_transport(n_joints: int, trigger: Optional[StartTrigger] = None,
                        pose_sink: Optional[PoseSink] = None, **sim_kwargs) -> Transport:
    arm = SimulatedArm(n_joints, **sim_kwargs)
    return Transport(
        source=arm,
        commands=arm,
        pose_sink=pose_sink if pose_sink is not None else LoggingPoseSink(),
        trigger=trigger if trigger is not None else StartTrigger(),
    )
