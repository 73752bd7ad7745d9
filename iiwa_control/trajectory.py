"""
Cartesian trajectory generation: a horizontal circle at fixed height.

    x = R cos(w t),  y = R sin(w t),  z = H

Orientation is held fixed (identity by default).
"""

import math
from typing import Optional

import numpy as np

from .frames import CartesianPose
from .quaternion_math import is_rotation_matrix

# The trajectory clock advances 1/fk_hz per FK tick, so t is in seconds;
# the angle advances as t / (2*pi).
DEFAULT_ANGULAR_RATE = 1.0 / (2.0 * math.pi)


class CircularTrajectory:
    """Pure function of elapsed time; restartable by resetting the clock."""

    def __init__(self, radius: float = 0.3, height: float = 1.0,
                 angular_rate: float = DEFAULT_ANGULAR_RATE,
                 orientation: Optional[np.ndarray] = None):
        if radius < 0.0:
            raise ValueError(f"radius must be >= 0, got {radius}")
        if angular_rate == 0.0:
            raise ValueError("angular_rate must be non-zero")
        self.radius = float(radius)
        self.height = float(height)
        self.angular_rate = float(angular_rate)

        rotation = np.eye(3) if orientation is None else np.array(orientation, dtype=np.float64)
        if not is_rotation_matrix(rotation):
            raise ValueError("orientation must be a rotation matrix")
        rotation.setflags(write=False)
        self.orientation = rotation

    @property
    def period(self) -> float:
        """Seconds per revolution."""
        return 2.0 * math.pi / abs(self.angular_rate)

    def target_at(self, elapsed: float) -> CartesianPose:
        angle = elapsed * self.angular_rate
        position = (
            self.radius * math.cos(angle),
            self.radius * math.sin(angle),
            self.height,
        )
        return CartesianPose(position, self.orientation)

    def with_orientation(self, rotation: np.ndarray) -> "CircularTrajectory":
        return CircularTrajectory(self.radius, self.height, self.angular_rate, rotation)

    def __repr__(self) -> str:
        return (f"CircularTrajectory(radius={self.radius}, height={self.height}, "
                f"angular_rate={self.angular_rate:.4f}, period={self.period:.2f}s)")
