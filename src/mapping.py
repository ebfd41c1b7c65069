"""
Bounded global map for SPARSEFUSE.

Accumulates world-frame points from keyframes and the camera trajectory
for one capture session:
- Keyframe gating on a fixed frame interval
- FIFO eviction once the point budget is exceeded
- Consistent snapshots for rendering while the pipeline keeps inserting

All state is guarded by a single lock; callers do the heavy numeric work
(selection, transforms) before entering it.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, List, Optional, Sequence, Tuple

import numpy as np

from pose import CameraPose, Point3D, points_to_array

LOGGER = logging.getLogger(__name__)

MAX_GLOBAL_POINTS = 200_000
KEYFRAME_INTERVAL = 10


@dataclass
class MapConfig:
    """Configuration for the global map."""

    max_points: int = MAX_GLOBAL_POINTS  # sliding-window budget
    keyframe_interval: int = KEYFRAME_INTERVAL  # 1 of every N frames is kept

    def __post_init__(self):
        if self.max_points < 0:
            raise ValueError("max_points must be non-negative")
        if self.keyframe_interval <= 0:
            raise ValueError("keyframe_interval must be positive")


@dataclass(frozen=True)
class MapSnapshot:
    """Read-only copy of the map taken inside the lock."""

    points: Tuple[Point3D, ...] = ()
    trajectory: Tuple[CameraPose, ...] = ()
    frame_counter: int = 0


@dataclass
class MapStatistics:
    total_points_inserted: int = 0
    total_points_evicted: int = 0
    total_keyframes: int = 0


class GlobalMap:
    """
    Session-scoped point accumulator.

    Frames are indexed from zero: the frame seen while ``frame_counter`` is
    ``n`` is a keyframe when ``n % keyframe_interval == 0``, so the first
    frame of every session seeds the map.
    """

    def __init__(self, config: Optional[MapConfig] = None):
        self.config = config or MapConfig()

        self._lock = threading.RLock()
        self._points: Deque[Point3D] = deque()
        self._trajectory: List[CameraPose] = []
        self._frame_counter: int = 0
        self.stats = MapStatistics()

    def reset(self):
        """Clear points, trajectory and frame counter."""
        with self._lock:
            self._points.clear()
            self._trajectory.clear()
            self._frame_counter = 0
            self.stats = MapStatistics()
        LOGGER.info("GlobalMap reset")

    # ------------------------------------------------------------------ #
    # Mutation
    # ------------------------------------------------------------------ #
    @property
    def frame_counter(self) -> int:
        with self._lock:
            return self._frame_counter

    def is_keyframe_tick(self) -> bool:
        """True when the next frame to be committed is a keyframe."""
        with self._lock:
            return self._frame_counter % self.config.keyframe_interval == 0

    def maybe_insert_keyframe(self, pose: CameraPose, world_points: Sequence[Point3D]) -> bool:
        """
        Insert a keyframe if the current tick is a keyframe tick.

        Appends ``pose`` to the trajectory and ``world_points`` to the map,
        then evicts the oldest points beyond the budget.

        Returns:
            True if the keyframe was inserted
        """
        with self._lock:
            if self._frame_counter % self.config.keyframe_interval != 0:
                return False

            self._trajectory.append(pose)
            self._points.extend(world_points)
            self.stats.total_points_inserted += len(world_points)
            self.stats.total_keyframes += 1

            excess = len(self._points) - self.config.max_points
            if excess > 0:
                for _ in range(excess):
                    self._points.popleft()
                self.stats.total_points_evicted += excess

            LOGGER.debug(
                "Keyframe at frame %d: %d points added, %d evicted",
                self._frame_counter, len(world_points), max(excess, 0),
            )
        return True

    def advance(self) -> int:
        """Count one processed frame; returns the index of that frame."""
        with self._lock:
            index = self._frame_counter
            self._frame_counter += 1
            return index

    def commit_frame(
        self,
        pose: CameraPose,
        world_points: Sequence[Point3D],
    ) -> Tuple[bool, MapSnapshot]:
        """
        Apply one processed frame atomically.

        Gates and inserts the keyframe, advances the counter exactly once and
        returns a snapshot, all inside one critical section.

        Returns:
            (is_keyframe, snapshot after the update)
        """
        with self._lock:
            inserted = self.maybe_insert_keyframe(pose, world_points)
            self.advance()
            return inserted, self.snapshot()

    # ------------------------------------------------------------------ #
    # Queries
    # ------------------------------------------------------------------ #
    def snapshot(self) -> MapSnapshot:
        """Consistent read-only copy of points and trajectory."""
        with self._lock:
            return MapSnapshot(
                points=tuple(self._points),
                trajectory=tuple(self._trajectory),
                frame_counter=self._frame_counter,
            )

    def __len__(self) -> int:
        with self._lock:
            return len(self._points)

    def get_point_cloud(self) -> np.ndarray:
        """Get all map points as Nx3 array."""
        return points_to_array(self.snapshot().points)

    def get_trajectory_positions(self) -> np.ndarray:
        """Get keyframe camera positions as Nx3 array."""
        trajectory = self.snapshot().trajectory
        if not trajectory:
            return np.empty((0, 3), dtype=np.float64)
        return np.array([pose.translation for pose in trajectory], dtype=np.float64)

    def get_statistics(self) -> Dict:
        """Get map statistics."""
        with self._lock:
            return {
                "total_points_inserted": self.stats.total_points_inserted,
                "total_points_evicted": self.stats.total_points_evicted,
                "total_keyframes": self.stats.total_keyframes,
                "current_points": len(self._points),
                "trajectory_length": len(self._trajectory),
                "frame_count": self._frame_counter,
            }
