"""
Cross-thread control state.

One lock guards the whole record. Joint configurations are stored as
read-only copies and replaced wholesale, so a reader always gets one
complete write. The `has_measurement` / `has_pose` gates are Conditions on
the same lock, letting the loops block instead of spinning.
"""

import threading
import time
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np

from .frames import CartesianPose


@dataclass(frozen=True, eq=False)
class ControlSnapshot:
    measurement: Optional[np.ndarray]
    pose: Optional[CartesianPose]
    elapsed: float
    has_measurement: bool
    has_pose: bool
    tracking_active: bool
    measurement_age: float


class SharedControlState:
    """Latest measurement, latest pose, trajectory clock and the three gates."""

    def __init__(self, n_joints: int):
        if n_joints < 1:
            raise ValueError("n_joints must be positive")
        self.n_joints = int(n_joints)

        self._lock = threading.Lock()
        self._measurement_cv = threading.Condition(self._lock)
        self._pose_cv = threading.Condition(self._lock)

        self._measurement: Optional[np.ndarray] = None
        self._measurement_time = 0.0
        self._pose: Optional[CartesianPose] = None
        self._elapsed = 0.0
        self._tracking_active = False

    # Measurement (external writer)

    def set_measurement(self, values: Sequence[float]) -> None:
        """Store the first n_joints values of a joint state message."""
        arr = np.array(values, dtype=np.float64, copy=True).reshape(-1)
        if arr.shape[0] < self.n_joints:
            raise ValueError(f"Joint state has {arr.shape[0]} values, need at least {self.n_joints}")
        arr = arr[:self.n_joints].copy()
        arr.setflags(write=False)
        with self._lock:
            self._measurement = arr
            self._measurement_time = time.monotonic()
            self._measurement_cv.notify_all()

    def get_measurement(self) -> Optional[np.ndarray]:
        """Latest joint configuration (read-only array) or None before the first one."""
        with self._lock:
            return self._measurement

    @property
    def has_measurement(self) -> bool:
        with self._lock:
            return self._measurement is not None

    def measurement_age(self) -> float:
        with self._lock:
            if self._measurement is None:
                return float("inf")
            return time.monotonic() - self._measurement_time

    def wait_for_measurement(self, timeout: Optional[float] = None) -> bool:
        with self._measurement_cv:
            return self._measurement_cv.wait_for(lambda: self._measurement is not None, timeout)

    # Pose (FK loop)

    def set_pose(self, pose: CartesianPose) -> None:
        with self._lock:
            self._pose = pose
            self._pose_cv.notify_all()

    def get_pose(self) -> Optional[CartesianPose]:
        with self._lock:
            return self._pose

    @property
    def has_pose(self) -> bool:
        with self._lock:
            return self._pose is not None

    def wait_for_pose(self, timeout: Optional[float] = None) -> bool:
        with self._pose_cv:
            return self._pose_cv.wait_for(lambda: self._pose is not None, timeout)

    # Trajectory clock

    def tick_clock(self, dt: float) -> float:
        """Advance the clock by dt if tracking is active; returns the elapsed time."""
        with self._lock:
            if self._tracking_active:
                self._elapsed += float(dt)
            return self._elapsed

    @property
    def elapsed(self) -> float:
        with self._lock:
            return self._elapsed

    def reset_clock(self) -> None:
        with self._lock:
            self._elapsed = 0.0

    def set_tracking_active(self, active: bool) -> None:
        with self._lock:
            self._tracking_active = bool(active)

    @property
    def tracking_active(self) -> bool:
        with self._lock:
            return self._tracking_active

    def snapshot(self) -> ControlSnapshot:
        with self._lock:
            age = float("inf") if self._measurement is None else time.monotonic() - self._measurement_time
            return ControlSnapshot(
                measurement=self._measurement,
                pose=self._pose,
                elapsed=self._elapsed,
                has_measurement=self._measurement is not None,
                has_pose=self._pose is not None,
                tracking_active=self._tracking_active,
                measurement_age=age,
            )
