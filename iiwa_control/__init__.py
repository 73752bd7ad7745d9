"""Cartesian kinematic control of a KUKA LBR iiwa: FK/IK loops, trajectory and transports."""

from .config import ConfigurationError, ControlConfig, load_config
from .frames import CartesianPose
from .kinematic_model import ChainDescriptor, ModelLoadFailure, load_chain
from .kinematic_solver import IKSolution, KinematicSolver, NoConvergence, SolverParameters
from .shared_state import SharedControlState
from .supervisor import Supervisor
from .trajectory import CircularTrajectory

__version__ = "0.1.0"
