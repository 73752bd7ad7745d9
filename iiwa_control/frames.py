"""
Cartesian pose value type.

A pose is a base-frame position plus an orientation stored as a 3x3 rotation
matrix; the [w, x, y, z] quaternion view is derived on demand. Arrays are
copied and frozen on construction so a pose can be handed between threads
as a whole value.
"""

from dataclasses import dataclass
from typing import Dict, Sequence, Tuple

import numpy as np

from .quaternion_math import (
    is_rotation_matrix,
    matrix_from_quat,
    quat_from_matrix,
    quat_normalize,
    rotation_error,
)


def _frozen(values, shape) -> np.ndarray:
    arr = np.array(values, dtype=np.float64, copy=True)
    if arr.shape != shape:
        raise ValueError(f"Expected shape {shape}, got {arr.shape}")
    arr.setflags(write=False)
    return arr


@dataclass(frozen=True, eq=False)
class CartesianPose:
    """End-effector pose expressed in the chain's base frame."""

    position: np.ndarray
    """[x, y, z] in metres."""

    rotation: np.ndarray
    """3x3 orthonormal rotation matrix."""

    def __post_init__(self):
        position = _frozen(self.position, (3,))
        rotation = _frozen(self.rotation, (3, 3))
        if not is_rotation_matrix(rotation):
            raise ValueError("Orientation is not a valid rotation matrix")
        object.__setattr__(self, "position", position)
        object.__setattr__(self, "rotation", rotation)

    @classmethod
    def identity(cls, position: Sequence[float] = (0.0, 0.0, 0.0)) -> "CartesianPose":
        return cls(position, np.eye(3))

    @classmethod
    def from_quaternion(cls, position: Sequence[float], quat: Sequence[float]) -> "CartesianPose":
        """Build from a [w, x, y, z] quaternion (normalized here)."""
        q = np.asarray(quat, dtype=np.float64)
        if q.shape != (4,) or np.linalg.norm(q) < 1e-12:
            raise ValueError("Quaternion must be a non-zero [w, x, y, z] vector")
        return cls(position, matrix_from_quat(quat_normalize(q)))

    @classmethod
    def from_matrix(cls, transform: np.ndarray) -> "CartesianPose":
        """Build from a 4x4 homogeneous transform."""
        transform = np.asarray(transform, dtype=np.float64)
        return cls(transform[:3, 3], transform[:3, :3])

    @property
    def quaternion(self) -> np.ndarray:
        """Orientation as unit quaternion [w, x, y, z] with w >= 0."""
        return quat_from_matrix(self.rotation)

    def as_matrix(self) -> np.ndarray:
        transform = np.eye(4)
        transform[:3, :3] = self.rotation
        transform[:3, 3] = self.position
        return transform

    def error_to(self, target: "CartesianPose") -> np.ndarray:
        """6D twist [dp, dtheta] that takes this pose onto `target` (base frame)."""
        return np.concatenate((
            target.position - self.position,
            rotation_error(self.rotation, target.rotation),
        ))

    def distance_to(self, other: "CartesianPose") -> Tuple[float, float]:
        """(translation distance, rotation angle in radians)."""
        err = self.error_to(other)
        return float(np.linalg.norm(err[:3])), float(np.linalg.norm(err[3:]))

    def as_dict(self) -> Dict[str, list]:
        """Position triple plus quaternion, the layout used for publishing."""
        w, x, y, z = self.quaternion
        return {
            "position": [float(v) for v in self.position],
            "orientation": {"w": float(w), "x": float(x), "y": float(y), "z": float(z)},
        }

    def __repr__(self) -> str:
        w, x, y, z = self.quaternion
        px, py, pz = self.position
        return (f"CartesianPose(p=[{px:+.4f}, {py:+.4f}, {pz:+.4f}], "
                f"q=[{w:+.4f}, {x:+.4f}, {y:+.4f}, {z:+.4f}])")
