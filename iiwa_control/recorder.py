"""
Tracking data recorder: one row per IK cycle, saved as CSV with pandas.
"""

import logging
import os
import threading
from collections import deque
from typing import Any, Deque, Dict, List, Optional

import numpy as np
import pandas as pd

from .frames import CartesianPose

logger = logging.getLogger(__name__)


class TrackingRecorder:
    """
    Collects one row per tracking cycle. Rows are kept in memory (about 200
    per second while tracking); set max_rows to keep only the newest ones on
    long runs.
    """

    def __init__(self, joint_names, max_rows: Optional[int] = None):
        if max_rows is not None and max_rows <= 0:
            raise ValueError("max_rows must be positive")
        self.joint_names = list(joint_names)
        self.max_rows = max_rows
        self.rows_dropped = 0
        self._lock = threading.Lock()
        self._rows: Deque[List[float]] = deque(maxlen=max_rows)

    @property
    def columns(self) -> List[str]:
        cols = ["elapsed",
                "target_x", "target_y", "target_z",
                "target_qw", "target_qx", "target_qy", "target_qz",
                "actual_x", "actual_y", "actual_z",
                "actual_qw", "actual_qx", "actual_qy", "actual_qz"]
        cols += [f"measured_{n}" for n in self.joint_names]
        cols += [f"command_{n}" for n in self.joint_names]
        cols += ["converged", "iterations"]
        return cols

    def record(self, elapsed: float, target: CartesianPose, actual: Optional[CartesianPose],
               measured, command, converged: bool, iterations: int) -> None:
        if actual is None:
            actual_values = [np.nan] * 7
        else:
            actual_values = list(actual.position) + list(actual.quaternion)
        row = ([float(elapsed)]
               + list(target.position) + list(target.quaternion)
               + actual_values
               + [float(v) for v in measured]
               + [float(v) for v in command]
               + [1.0 if converged else 0.0, float(iterations)])
        with self._lock:
            if self.max_rows is not None and len(self._rows) == self.max_rows:
                if self.rows_dropped == 0:
                    logger.warning("Recorder full (%d rows); dropping the oldest rows", self.max_rows)
                self.rows_dropped += 1
            self._rows.append(row)

    def __len__(self) -> int:
        with self._lock:
            return len(self._rows)

    def to_dataframe(self) -> pd.DataFrame:
        with self._lock:
            rows = list(self._rows)
        df = pd.DataFrame(rows, columns=self.columns)
        df["converged"] = df["converged"].astype(bool)
        df["iterations"] = df["iterations"].astype(int)
        return df

    def summary(self) -> Dict[str, Any]:
        df = self.to_dataframe()
        if df.empty:
            return {"samples": 0, "max_tracking_error": 0.0, "mean_tracking_error": 0.0,
                    "convergence_ratio": 0.0}
        error = np.linalg.norm(
            df[["target_x", "target_y", "target_z"]].to_numpy()
            - df[["actual_x", "actual_y", "actual_z"]].to_numpy(),
            axis=1,
        )
        return {
            "samples": int(len(df)),
            "max_tracking_error": float(np.nanmax(error)) if np.any(np.isfinite(error)) else float("nan"),
            "mean_tracking_error": float(np.nanmean(error)) if np.any(np.isfinite(error)) else float("nan"),
            "convergence_ratio": float(df["converged"].mean()),
        }

    def save(self, path) -> Optional[str]:
        """Write all samples to CSV. Returns the path, or None if nothing was recorded."""
        df = self.to_dataframe()
        if df.empty:
            logger.info("No tracking samples recorded; nothing saved")
            return None
        directory = os.path.dirname(os.path.abspath(path))
        os.makedirs(directory, exist_ok=True)
        df.to_csv(path, index=False)
        logger.info("Saved %d tracking samples to %s", len(df), path)
        return str(path)
