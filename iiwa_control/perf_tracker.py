"""
Loop timing statistics using Welford's online algorithm.

O(1) memory; one lock so the owning loop can update while the supervisor
reads. When disabled, tick_start/tick_end return after a boolean check.

Usage:
    tracker = LoopPerfTracker(enabled=True, target_hz=50.0)

    while running:
        tracker.tick_start()
        # ... do work ...
        tracker.tick_end()

    stats = tracker.get_stats()
"""

import math
import threading
import time
from typing import Any, Dict, Optional

__all__ = ['RunningStats', 'LoopPerfTracker']


class RunningStats:
    """Mean / std / min / max of a stream of samples."""

    __slots__ = ('n', 'mean', '_m2', 'min', 'max')

    def __init__(self):
        self.n = 0
        self.mean = 0.0
        self._m2 = 0.0
        self.min = float('inf')
        self.max = float('-inf')

    def add(self, x: float) -> None:
        self.n += 1
        delta = x - self.mean
        self.mean += delta / self.n
        self._m2 += delta * (x - self.mean)
        if x < self.min:
            self.min = x
        if x > self.max:
            self.max = x

    @property
    def std(self) -> float:
        return math.sqrt(self._m2 / (self.n - 1)) if self.n > 1 else 0.0

    def as_ms(self) -> Dict[str, float]:
        if self.n == 0:
            return {'avg_ms': 0.0, 'std_ms': 0.0, 'min_ms': 0.0, 'max_ms': 0.0}
        return {
            'avg_ms': self.mean * 1000.0,
            'std_ms': self.std * 1000.0,
            'min_ms': self.min * 1000.0,
            'max_ms': self.max * 1000.0,
        }


class LoopPerfTracker:
    """Tracks loop interval (jitter), compute time and deadline overruns."""

    def __init__(self, enabled: bool = True, target_hz: float = 0.0):
        self._enabled = bool(enabled)
        self.target_period = 1.0 / target_hz if target_hz > 0 else 0.0
        self._lock = threading.Lock()
        self.reset()

    @property
    def enabled(self) -> bool:
        return self._enabled

    def reset(self) -> None:
        with self._lock:
            self._interval = RunningStats()
            self._compute = RunningStats()
            self._overruns = 0
            self._cycles = 0
            self._last_start: Optional[float] = None
            self._current_start: Optional[float] = None

    def tick_start(self) -> None:
        if not self._enabled:
            return
        now = time.perf_counter()
        with self._lock:
            if self._last_start is not None:
                self._interval.add(now - self._last_start)
            self._last_start = now
            self._current_start = now

    def tick_end(self) -> None:
        """Call after the cycle's work, before sleeping."""
        if not self._enabled:
            return
        now = time.perf_counter()
        with self._lock:
            if self._current_start is None:
                return
            compute = now - self._current_start
            self._compute.add(compute)
            self._cycles += 1
            if self.target_period > 0 and compute > self.target_period:
                self._overruns += 1
            self._current_start = None

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            hz = 1.0 / self._interval.mean if self._interval.n and self._interval.mean > 0 else 0.0
            return {
                'cycles': self._cycles,
                'hz': hz,
                'overruns': self._overruns,
                'interval': self._interval.as_ms(),
                'compute': self._compute.as_ms(),
            }

    def format_stats(self) -> str:
        s = self.get_stats()
        return (f"{s['cycles']} cycles @ {s['hz']:.1f} Hz, "
                f"compute avg {s['compute']['avg_ms']:.3f} ms / max {s['compute']['max_ms']:.3f} ms, "
                f"jitter {s['interval']['std_ms']:.3f} ms, overruns {s['overruns']}")
