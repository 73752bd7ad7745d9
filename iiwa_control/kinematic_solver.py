"""
Forward / inverse kinematics for a serial chain with numpy+numba.

- forward(): composes the per-segment transforms base -> tip.
- inverse_velocity(): one pseudo-inverse Jacobian step (truncated SVD).
- inverse_position(): Newton-Raphson refinement built on the two above,
  bounded by SolverParameters.max_iterations.

Notes:
- The Jacobian is geometric, expressed in the base frame with the reference
  point at the tip; the twist layout is [vx, vy, vz, wx, wy, wz].
- Cartesian error is [target.p - p, rotvec(target.R * R^T)], both base frame.
"""

import logging
from dataclasses import dataclass

import numba
import numpy as np

from .frames import CartesianPose
from .kinematic_model import JOINT_PRISMATIC, JOINT_REVOLUTE, ChainDescriptor
from .quaternion_math import rotation_about_axis, rotation_error

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SolverParameters:
    """Fixed at solver construction."""

    max_iterations: int = 100
    """Newton-Raphson iteration cap."""

    tolerance: float = 1e-6
    """Convergence threshold on the norm of the 6D Cartesian error."""

    min_singular_value: float = 1e-5
    """Singular values below this are dropped from the pseudo-inverse."""

    def __post_init__(self):
        if int(self.max_iterations) < 1:
            raise ValueError(f"max_iterations must be >= 1, got {self.max_iterations}")
        if not self.tolerance > 0.0:
            raise ValueError(f"tolerance must be positive, got {self.tolerance}")
        if self.min_singular_value < 0.0:
            raise ValueError(f"min_singular_value must be >= 0, got {self.min_singular_value}")


@dataclass(frozen=True, eq=False)
class IKSolution:
    q: np.ndarray
    iterations: int
    error: float


class NoConvergence(RuntimeError):
    """Iteration cap reached without meeting the tolerance.

    The partial configuration is kept on the exception; whether to use it is
    the caller's decision.
    """

    def __init__(self, q: np.ndarray, iterations: int, error: float):
        self.q = q
        self.iterations = iterations
        self.error = error
        super().__init__(f"IK did not converge after {iterations} iterations (error {error:.3e})")


# Numba-optimized kinematics kernels

@numba.njit(fastmath=False)
def chain_frames_core(q, origins, axes, joint_types, joint_index):
    """
    Absolute frame of every segment after its joint motion.

    Returns:
        frames [n_segments + 1, 4, 4]; frames[0] is the base, frames[-1] the tip
    """
    n_seg = origins.shape[0]
    frames = np.empty((n_seg + 1, 4, 4))
    current = np.eye(4)
    frames[0] = current
    for i in range(n_seg):
        current = np.dot(current, origins[i])
        j = joint_index[i]
        if j >= 0:
            motion = np.eye(4)
            if joint_types[i] == JOINT_REVOLUTE:
                motion[:3, :3] = rotation_about_axis(axes[i], q[j])
            elif joint_types[i] == JOINT_PRISMATIC:
                for k in range(3):
                    motion[k, 3] = axes[i, k] * q[j]
            current = np.dot(current, motion)
        frames[i + 1] = current
    return frames


@numba.njit(fastmath=False)
def tip_transform_core(q, origins, axes, joint_types, joint_index):
    frames = chain_frames_core(q, origins, axes, joint_types, joint_index)
    return frames[-1].copy()


@numba.njit(fastmath=False)
def jacobian_core(q, origins, axes, joint_types, joint_index, n_joints):
    """6xN geometric Jacobian, base frame, reference point at the tip."""
    frames = chain_frames_core(q, origins, axes, joint_types, joint_index)
    n_seg = origins.shape[0]
    jacobian = np.zeros((6, n_joints))
    tip = frames[n_seg, :3, 3].copy()

    for i in range(n_seg):
        j = joint_index[i]
        if j < 0:
            continue
        rot = frames[i + 1, :3, :3]
        # Joint axis in base frame (unchanged by motion about itself)
        world_axis = np.zeros(3)
        for r in range(3):
            world_axis[r] = rot[r, 0] * axes[i, 0] + rot[r, 1] * axes[i, 1] + rot[r, 2] * axes[i, 2]

        if joint_types[i] == JOINT_PRISMATIC:
            for r in range(3):
                jacobian[r, j] += world_axis[r]
        else:
            lever = tip - frames[i + 1, :3, 3]
            linear = np.cross(world_axis, lever)
            for r in range(3):
                jacobian[r, j] += linear[r]
                jacobian[r + 3, j] += world_axis[r]

    return jacobian


@numba.njit(fastmath=False)
def pose_error_core(transform, target_pos, target_rot):
    """6D error [dp, dtheta] from the tip `transform` to the target (base frame)."""
    err = np.empty(6)
    for k in range(3):
        err[k] = target_pos[k] - transform[k, 3]
    rot_err = rotation_error(transform[:3, :3], target_rot)
    for k in range(3):
        err[k + 3] = rot_err[k]
    return err


@numba.njit(fastmath=False)
def pinv_step_core(jacobian, twist, min_singular_value):
    """Pseudo-inverse step dq = J^+ twist via SVD with singular value truncation."""
    U, S, Vh = np.linalg.svd(jacobian, full_matrices=False)
    ut_twist = np.dot(U.T, twist)
    result = np.zeros(jacobian.shape[1])
    for i in range(len(S)):
        if S[i] > min_singular_value:
            result += Vh[i] * (ut_twist[i] / S[i])
    return result


class KinematicSolver:
    """Kinematics of one chain. Stateless after construction; safe to share between threads."""

    def __init__(self, chain: ChainDescriptor, params: SolverParameters = SolverParameters()):
        self.chain = chain
        self.params = params
        self.n_joints = chain.n_joints

        # Contiguous private copies for the numba kernels
        self._origins = np.ascontiguousarray(chain.origins, dtype=np.float64)
        self._axes = np.ascontiguousarray(chain.axes, dtype=np.float64)
        self._joint_types = np.ascontiguousarray(chain.joint_types, dtype=np.int64)
        self._joint_index = np.ascontiguousarray(chain.joint_index, dtype=np.int64)

    def _as_configuration(self, q) -> np.ndarray:
        arr = np.array(q, dtype=np.float64, copy=True).reshape(-1)
        if arr.shape[0] != self.n_joints:
            raise ValueError(f"Expected {self.n_joints} joint values, got {arr.shape[0]}")
        return arr

    def forward(self, q) -> CartesianPose:
        """Tip pose for joint configuration `q`."""
        q = self._as_configuration(q)
        transform = tip_transform_core(q, self._origins, self._axes, self._joint_types, self._joint_index)
        return CartesianPose.from_matrix(transform)

    def jacobian(self, q) -> np.ndarray:
        q = self._as_configuration(q)
        return jacobian_core(q, self._origins, self._axes, self._joint_types,
                             self._joint_index, self.n_joints)

    def inverse_velocity(self, q, twist) -> np.ndarray:
        """Joint velocity realising the Cartesian `twist` at configuration `q` (least squares)."""
        twist = np.ascontiguousarray(twist, dtype=np.float64)
        if twist.shape != (6,):
            raise ValueError(f"Twist must have 6 components, got shape {twist.shape}")
        return pinv_step_core(self.jacobian(q), twist, float(self.params.min_singular_value))

    def inverse_position(self, seed, target: CartesianPose) -> IKSolution:
        """
        Newton-Raphson inverse position solve from `seed` toward `target`.

        Raises:
            NoConvergence: after exactly max_iterations corrections without
                reaching the tolerance; carries the last candidate. A
                non-finite error aborts early, so iterations is then below
                max_iterations and the candidate may contain NaN/inf.
        """
        q = self._as_configuration(seed)
        target_pos = np.ascontiguousarray(target.position, dtype=np.float64).copy()
        target_rot = np.ascontiguousarray(target.rotation, dtype=np.float64).copy()
        max_iter = int(self.params.max_iterations)
        tol = float(self.params.tolerance)
        min_sv = float(self.params.min_singular_value)

        iterations = 0
        twist = self._pose_error(q, target_pos, target_rot)
        err_norm = float(np.linalg.norm(twist))
        while err_norm >= tol and iterations < max_iter:
            jac = jacobian_core(q, self._origins, self._axes, self._joint_types,
                                self._joint_index, self.n_joints)
            q = q + pinv_step_core(jac, twist, min_sv)
            iterations += 1
            twist = self._pose_error(q, target_pos, target_rot)
            err_norm = float(np.linalg.norm(twist))
            if not np.isfinite(err_norm):
                break

        if err_norm < tol:
            return IKSolution(q=q, iterations=iterations, error=err_norm)
        raise NoConvergence(q, iterations, err_norm)

    def _pose_error(self, q, target_pos, target_rot) -> np.ndarray:
        transform = tip_transform_core(q, self._origins, self._axes, self._joint_types, self._joint_index)
        return pose_error_core(transform, target_pos, target_rot)

    def warmup(self) -> None:
        """Compile the numba kernels so the first control cycle doesn't pay for it."""
        q = np.zeros(self.n_joints)
        pose = self.forward(q)
        self.inverse_velocity(q, np.zeros(6))
        self._pose_error(q, pose.position.copy(), pose.rotation.copy())
        pose.error_to(pose)
        _ = pose.quaternion
        logger.debug("Kinematic kernels compiled")
