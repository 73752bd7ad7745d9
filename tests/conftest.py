import threading

import numpy as np
import pytest

from iiwa_control.config import DEFAULT_CONFIG_PATH, load_config
from iiwa_control.kinematic_solver import KinematicSolver, SolverParameters
from iiwa_control.kinematic_model import load_chain
from iiwa_control.transport import JointCommandSink, PoseSink

IIWA_REFERENCE = [0.0, 1.57, 0.0, 1.57, 0.0, 0.0, 0.0]


class RecordingCommandSink(JointCommandSink):
    """Keeps every per-joint message and the last full command."""

    def __init__(self, n_joints=7):
        super().__init__(n_joints)
        self.lock = threading.Lock()
        self.messages = []
        self.commands = []

    def publish_joint(self, index, value):
        with self.lock:
            self.messages.append((index, value))

    def publish(self, q):
        super().publish(q)
        with self.lock:
            self.commands.append(np.array(q, dtype=np.float64))


class RecordingPoseSink(PoseSink):
    def __init__(self):
        self.lock = threading.Lock()
        self.poses = []

    def publish(self, pose):
        with self.lock:
            self.poses.append(pose)


@pytest.fixture(scope="session")
def config():
    return load_config(DEFAULT_CONFIG_PATH)


@pytest.fixture(scope="session")
def chain(config):
    return load_chain(config.description_path(), config.robot.base_frame, config.robot.tip_frame)


@pytest.fixture(scope="session")
def solver(chain):
    s = KinematicSolver(chain, SolverParameters())
    s.warmup()
    return s


@pytest.fixture
def command_sink():
    return RecordingCommandSink(7)


@pytest.fixture
def pose_sink():
    return RecordingPoseSink()


@pytest.fixture
def rng():
    return np.random.default_rng(1234)
