"""
Forward kinematics loop.

Waits for the first joint state, then every cycle: advance the trajectory
clock (only moves while tracking is active), compute the tip pose of the
latest measurement, publish it and store it as the shared pose.
"""

import time
from typing import Optional

from .frames import CartesianPose
from .kinematic_solver import KinematicSolver
from .periodic import PeriodicLoop
from .shared_state import SharedControlState
from .transport import PoseSink


class ForwardKinematicsLoop(PeriodicLoop):

    name = "fk-loop"

    def __init__(self, solver: KinematicSolver, state: SharedControlState, pose_sink: PoseSink,
                 hz: float = 50.0, measurement_timeout_s: Optional[float] = 0.5,
                 enable_perf_tracking: bool = True):
        super().__init__(hz, enable_perf_tracking=enable_perf_tracking)
        self.solver = solver
        self.state = state
        self.pose_sink = pose_sink
        self.measurement_timeout_s = measurement_timeout_s
        self.poses_published = 0
        self._stale = False
        self._last_stale_warning = 0.0

    def setup(self) -> bool:
        self.logger.info("Waiting for the first joint state...")
        while not self.state.wait_for_measurement(timeout=0.1):
            if self.stop_event.is_set():
                return False
        self.logger.info("First joint state received")
        return True

    def cycle(self) -> None:
        self.state.tick_clock(self.period)
        self.compute_and_publish()
        self._check_staleness()

    def compute_and_publish(self) -> Optional[CartesianPose]:
        measurement = self.state.get_measurement()
        if measurement is None:
            return None
        pose = self.solver.forward(measurement)
        self.pose_sink.publish(pose)
        self.state.set_pose(pose)
        self.poses_published += 1
        return pose

    def _check_staleness(self) -> None:
        if not self.measurement_timeout_s:
            return
        age = self.state.measurement_age()
        if age > self.measurement_timeout_s:
            now = time.monotonic()
            if not self._stale or now - self._last_stale_warning > 5.0:
                self.logger.warning("Joint states are stale (%.2fs old); using last known values", age)
                self._last_stale_warning = now
            self._stale = True
        elif self._stale:
            self.logger.info("Joint state feed recovered")
            self._stale = False
