"""
Inverse kinematics control loop.

Phases, in order (tracking lasts until shutdown):

    WAIT_FOR_POSE -> INITIAL_POSITIONING -> WAIT_FOR_TRIGGER -> TRACKING

Each tracking cycle evaluates the trajectory at the shared clock, solves IK
seeded with the measured configuration and publishes the joint commands.
A solver failure is never fatal: it is logged and the configured policy
decides what gets published.
"""

import enum
import threading
import time
from typing import Optional

import numpy as np

from .initial_positioning import InitialPositioningController
from .kinematic_solver import KinematicSolver, NoConvergence
from .periodic import PeriodicLoop
from .recorder import TrackingRecorder
from .shared_state import SharedControlState
from .trajectory import CircularTrajectory
from .transport import JointCommandSink
from .trigger import StartTrigger


class ControlPhase(enum.Enum):
    WAIT_FOR_POSE = "wait_for_pose"
    INITIAL_POSITIONING = "initial_positioning"
    WAIT_FOR_TRIGGER = "wait_for_trigger"
    TRACKING = "tracking"


class NoConvergencePolicy(enum.Enum):
    PUBLISH_SOLVER_OUTPUT = "publish_solver_output"
    """Publish the last Newton-Raphson candidate anyway."""

    HOLD_LAST_GOOD = "hold_last_good"
    """Republish the last converged command (solver output if none yet)."""


class InverseKinematicsControlLoop(PeriodicLoop):

    name = "ik-loop"

    def __init__(self, solver: KinematicSolver, state: SharedControlState,
                 trajectory: CircularTrajectory, positioning: InitialPositioningController,
                 commands: JointCommandSink, trigger: StartTrigger, hz: float = 200.0,
                 policy: NoConvergencePolicy = NoConvergencePolicy.PUBLISH_SOLVER_OUTPUT,
                 hold_start_orientation: bool = False,
                 recorder: Optional[TrackingRecorder] = None,
                 enable_perf_tracking: bool = True):
        super().__init__(hz, enable_perf_tracking=enable_perf_tracking)
        self.solver = solver
        self.state = state
        self.trajectory = trajectory
        self.positioning = positioning
        self.commands = commands
        self.trigger = trigger
        self.policy = NoConvergencePolicy(policy)
        self.hold_start_orientation = hold_start_orientation
        self.recorder = recorder

        self._phase_lock = threading.Lock()
        self._phase = ControlPhase.WAIT_FOR_POSE
        self.tracking_cycles = 0
        self.failure_count = 0
        self.last_command: Optional[np.ndarray] = None
        self._last_good: Optional[np.ndarray] = None
        self._last_failure_log = 0.0
        self._failures_since_log = 0

    @property
    def phase(self) -> ControlPhase:
        with self._phase_lock:
            return self._phase

    def _enter(self, phase: ControlPhase) -> None:
        with self._phase_lock:
            self._phase = phase
        self.logger.info("Phase: %s", phase.value)

    def setup(self) -> bool:
        self._enter(ControlPhase.WAIT_FOR_POSE)
        while not self.state.wait_for_pose(timeout=0.1):
            if self.stop_event.is_set():
                return False

        self._enter(ControlPhase.INITIAL_POSITIONING)
        if not self.positioning.run(self.stop_event):
            return False

        self._enter(ControlPhase.WAIT_FOR_TRIGGER)
        if not self.trigger.wait(self.stop_event):
            return False

        if self.hold_start_orientation:
            pose = self.state.get_pose()
            if pose is not None:
                self.trajectory = self.trajectory.with_orientation(pose.rotation)
                self.logger.info("Holding start orientation %s", pose)

        self.state.set_tracking_active(True)
        self._enter(ControlPhase.TRACKING)
        self.logger.info("Tracking %s", self.trajectory)
        return True

    def cycle(self) -> None:
        self.step()

    def teardown(self) -> None:
        self.state.set_tracking_active(False)
        if self.failure_count:
            self.logger.info("IK did not converge in %d of %d tracking cycles",
                             self.failure_count, self.tracking_cycles)

    def step(self) -> np.ndarray:
        """One tracking cycle; returns the configuration that was published."""
        elapsed = self.state.elapsed
        target = self.trajectory.target_at(elapsed)
        seed = self.state.get_measurement()
        if seed is None:
            raise RuntimeError("Tracking started without a joint state")

        converged = True
        try:
            solution = self.solver.inverse_position(seed, target)
            command = solution.q
            iterations = solution.iterations
            self._last_good = command
        except NoConvergence as e:
            converged = False
            iterations = e.iterations
            self.failure_count += 1
            self._log_failure(e)
            if self.policy is NoConvergencePolicy.HOLD_LAST_GOOD and self._last_good is not None:
                command = self._last_good
            else:
                command = e.q

        if not np.all(np.isfinite(command)):
            self.logger.error("IK produced a non-finite configuration; holding measured joints")
            command = np.array(seed, dtype=np.float64)

        self.commands.publish(command)
        self.last_command = command
        self.tracking_cycles += 1

        if self.recorder is not None:
            self.recorder.record(elapsed, target, self.state.get_pose(), seed, command,
                                 converged, iterations)
        return command

    def _log_failure(self, e: NoConvergence) -> None:
        self._failures_since_log += 1
        now = time.monotonic()
        if now - self._last_failure_log >= 1.0:
            self.logger.warning("%s; policy %s (%d failures since last report)",
                                e, self.policy.value, self._failures_since_log)
            self._last_failure_log = now
            self._failures_since_log = 0
