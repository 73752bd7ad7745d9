"""
Wires model, solver, shared state, trajectory and loops to a transport and
owns their lifetime.

Startup order: model -> solver (JIT warm-up) -> shared state -> transport
callback -> FK loop -> IK loop. Shutdown runs in reverse; loop performance
statistics are logged on the way out.
"""

import logging
import signal
import threading
import time
from typing import Optional

from .config import ConfigurationError, ControlConfig
from .fk_loop import ForwardKinematicsLoop
from .ik_loop import InverseKinematicsControlLoop, NoConvergencePolicy
from .initial_positioning import InitialPositioningController
from .kinematic_model import ChainDescriptor, load_chain
from .kinematic_solver import KinematicSolver
from .recorder import TrackingRecorder
from .shared_state import SharedControlState
from .trajectory import DEFAULT_ANGULAR_RATE, CircularTrajectory
from .transport import Transport

logger = logging.getLogger(__name__)


class Supervisor:

    def __init__(self, chain: ChainDescriptor, solver: KinematicSolver, state: SharedControlState,
                 transport: Transport, fk_loop: ForwardKinematicsLoop,
                 ik_loop: InverseKinematicsControlLoop, recorder: Optional[TrackingRecorder] = None):
        self.chain = chain
        self.solver = solver
        self.state = state
        self.transport = transport
        self.fk_loop = fk_loop
        self.ik_loop = ik_loop
        self.recorder = recorder

        self._shutdown = threading.Event()
        self._started = False
        self._stopped = False

    @classmethod
    def from_config(cls, config: ControlConfig, transport: Transport,
                    record: bool = False) -> "Supervisor":
        """Build the whole controller. ModelLoadFailure propagates to the caller."""
        chain = load_chain(config.description_path(), config.robot.base_frame, config.robot.tip_frame)
        logger.info("Loaded chain %s -> %s with %d joints", chain.base_frame, chain.tip_frame, chain.n_joints)

        solver = KinematicSolver(chain, config.solver.to_parameters())
        t0 = time.perf_counter()
        solver.warmup()
        logger.info("Kinematic kernels compiled in %.2fs", time.perf_counter() - t0)

        state = SharedControlState(chain.n_joints)

        tc = config.trajectory
        trajectory = CircularTrajectory(
            radius=tc.radius,
            height=tc.height,
            angular_rate=tc.angular_rate if tc.angular_rate is not None else DEFAULT_ANGULAR_RATE,
        )

        pc = config.initial_positioning
        if len(pc.reference) != chain.n_joints:
            raise ConfigurationError(
                f"initial_positioning.reference has {len(pc.reference)} values but chain "
                f"{chain.base_frame} -> {chain.tip_frame} has {chain.n_joints} joints")
        if transport.commands.n_joints != chain.n_joints:
            raise ConfigurationError(
                f"Transport has {transport.commands.n_joints} joint channels but chain "
                f"{chain.base_frame} -> {chain.tip_frame} has {chain.n_joints} joints")
        try:
            positioning = InitialPositioningController(
                state, transport.commands, pc.reference,
                threshold=pc.threshold, poll_hz=pc.poll_hz, settle_s=pc.settle_s,
            )
        except ValueError as e:
            raise ConfigurationError(f"initial_positioning: {e}") from e

        recorder = TrackingRecorder(chain.joint_names) if record else None
        rates = config.rates
        fk_loop = ForwardKinematicsLoop(
            solver, state, transport.pose_sink,
            hz=rates.fk_hz,
            measurement_timeout_s=config.safety.measurement_timeout_s,
            enable_perf_tracking=rates.enable_perf_tracking,
        )
        ik_loop = InverseKinematicsControlLoop(
            solver, state, trajectory, positioning, transport.commands, transport.trigger,
            hz=rates.ik_hz,
            policy=NoConvergencePolicy(config.safety.on_no_convergence),
            hold_start_orientation=tc.hold_start_orientation,
            recorder=recorder,
            enable_perf_tracking=rates.enable_perf_tracking,
        )
        return cls(chain, solver, state, transport, fk_loop, ik_loop, recorder)

    def _on_measurement(self, values) -> None:
        try:
            self.state.set_measurement(values)
        except ValueError as e:
            logger.warning("Dropping joint state: %s", e)

    def start(self) -> None:
        if self._started:
            logger.warning("Supervisor already started")
            return
        self._started = True
        self.transport.start(self._on_measurement)
        self.fk_loop.start()
        self.ik_loop.start()

    @property
    def failure(self) -> Optional[BaseException]:
        return self.fk_loop.failure or self.ik_loop.failure

    def request_shutdown(self) -> None:
        self._shutdown.set()

    def run_forever(self, duration_s: Optional[float] = None, install_signal_handlers: bool = True) -> None:
        """Block until shutdown is requested, a loop fails or duration_s elapses; then stop()."""
        if not self._started:
            self.start()
        previous = {}
        if install_signal_handlers and threading.current_thread() is threading.main_thread():
            for sig in (signal.SIGINT, signal.SIGTERM):
                previous[sig] = signal.signal(sig, self._handle_signal)

        deadline = None if duration_s is None else time.monotonic() + duration_s
        try:
            while not self._shutdown.wait(0.1):
                if self.failure is not None:
                    logger.error("A control loop failed; shutting down")
                    break
                if not (self.fk_loop.is_running and self.ik_loop.is_running):
                    logger.error("A control loop exited; shutting down")
                    break
                if deadline is not None and time.monotonic() >= deadline:
                    logger.info("Run duration of %.1fs reached", duration_s)
                    break
        finally:
            for sig, handler in previous.items():
                signal.signal(sig, handler)
            self.stop()

    def _handle_signal(self, signum, frame) -> None:
        logger.info("Received %s, stopping controller...", signal.Signals(signum).name)
        self._shutdown.set()

    def stop(self, timeout_s: float = 5.0) -> None:
        if self._stopped:
            return
        self._stopped = True
        self._shutdown.set()
        self.ik_loop.stop(timeout_s)
        self.fk_loop.stop(timeout_s)
        self.transport.close()

        for loop in (self.fk_loop, self.ik_loop):
            if loop.perf.enabled:
                logger.info("%s: %s", loop.name, loop.perf.format_stats())
        logger.info("Poses published: %d, tracking cycles: %d, IK failures: %d",
                    self.fk_loop.poses_published, self.ik_loop.tracking_cycles,
                    self.ik_loop.failure_count)

    def __enter__(self) -> "Supervisor":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()
