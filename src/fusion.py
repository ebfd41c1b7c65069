"""
Depth fusion pipeline.

Ties the pieces of a mapping session together:
- Frames are pulled from an ImageSource
- Each frame is sent to the depth server
- Returned depth maps are turned into world-frame points
- Points are committed to the bounded GlobalMap

The pipeline owns its map exclusively. Consumers receive FusionResult
objects through a callback after every fused frame.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional

import numpy as np

from inference import DepthResult
from mapping import GlobalMap, MapConfig
from pixel_selector import PixelSelector
from pose import CameraIntrinsics, CameraPose, Point3D, transform_points

LOGGER = logging.getLogger(__name__)


class PipelineState(Enum):
    IDLE = "idle"
    RUNNING = "running"


@dataclass
class FusionResult:
    """What a consumer needs to draw one update."""

    points: List[Point3D] = field(default_factory=list)  # map history + live frame
    trajectory: List[CameraPose] = field(default_factory=list)
    frame_index: int = 0
    is_keyframe: bool = False
    live_point_count: int = 0
    processing_time_s: float = 0.0
    fps: float = 0.0


class FpsCounter:
    """Frames per second, refreshed once per measurement window."""

    def __init__(self, window_s: float = 1.0):
        self.window_s = window_s
        self.fps = 0.0
        self._frames = 0
        self._window_start: Optional[float] = None

    def reset(self):
        self.fps = 0.0
        self._frames = 0
        self._window_start = None

    def tick(self, now: Optional[float] = None) -> float:
        now = time.perf_counter() if now is None else now
        if self._window_start is None:
            self._window_start = now

        self._frames += 1
        elapsed = now - self._window_start
        if elapsed >= self.window_s:
            self.fps = self._frames / elapsed
            self._frames = 0
            self._window_start = now
        return self.fps


UpdateCallback = Callable[[FusionResult], None]
ErrorCallback = Callable[[Exception], None]


class FusionPipeline:
    """
    Single-consumer fusion loop.

    ``process_frame`` is the synchronous core and can be driven directly;
    ``start``/``stop`` run it on a worker thread fed by a source and a depth
    client.
    """

    def __init__(
        self,
        config: Optional[Dict] = None,
        selector: Optional[PixelSelector] = None,
        global_map: Optional[GlobalMap] = None,
    ):
        config = config or {}
        self.selector = selector or PixelSelector(config.get("selector"))

        if global_map is None:
            map_cfg = config.get("mapping", {})
            global_map = GlobalMap(MapConfig(**{
                k: v for k, v in map_cfg.items()
                if k in MapConfig.__dataclass_fields__
            }))
        self.global_map = global_map

        self.intrinsics = CameraIntrinsics()
        self.fps_counter = FpsCounter()

        self._state = PipelineState.IDLE
        self._state_lock = threading.Lock()
        # Held across the stop check and the map commit so nothing lands after stop()
        self._commit_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._worker: Optional[threading.Thread] = None
        self._source = None

        self.frames_fused = 0
        self.frames_failed = 0

    @property
    def state(self) -> PipelineState:
        with self._state_lock:
            return self._state

    @property
    def is_running(self) -> bool:
        return self.state is PipelineState.RUNNING

    def set_intrinsics(self, intrinsics: Optional[CameraIntrinsics]):
        """Use calibrated intrinsics, or the defaults when None."""
        self.intrinsics = intrinsics or CameraIntrinsics()

    def reset(self):
        """Clear the map and metrics for a new session."""
        self.global_map.reset()
        self.fps_counter.reset()
        self.frames_fused = 0
        self.frames_failed = 0

    # ------------------------------------------------------------------ #
    # Synchronous core
    # ------------------------------------------------------------------ #
    def process_frame(
        self,
        color_image: np.ndarray,
        depth_image: np.ndarray,
        pose: CameraPose,
    ) -> FusionResult:
        """
        Fuse one (color, depth, pose) triple into the map.

        Args:
            color_image: BGR frame the depth was inferred from
            depth_image: Depth map returned by the server
            pose: Camera-to-world pose of the frame

        Returns:
            FusionResult whose points are the map history plus this frame
        """
        start = time.perf_counter()
        world_points = self._world_points(color_image, depth_image, pose)
        return self._commit(pose, world_points, start)

    def _world_points(self, color_image, depth_image, pose: CameraPose) -> List[Point3D]:
        camera_points = self.selector.select(color_image, depth_image, self.intrinsics)
        return transform_points(camera_points, pose)

    def _commit(self, pose: CameraPose, world_points: List[Point3D], start: float) -> FusionResult:
        is_keyframe, snapshot = self.global_map.commit_frame(pose, world_points)
        fps = self.fps_counter.tick()

        # No deduplication: on keyframes the live points also appear in history
        render = list(snapshot.points)
        render.extend(world_points)

        return FusionResult(
            points=render,
            trajectory=list(snapshot.trajectory),
            frame_index=snapshot.frame_counter - 1,
            is_keyframe=is_keyframe,
            live_point_count=len(world_points),
            processing_time_s=time.perf_counter() - start,
            fps=fps,
        )

    def handle_depth_result(
        self,
        result: DepthResult,
        on_error: Optional[ErrorCallback] = None,
        started_at: Optional[float] = None,
    ) -> Optional[FusionResult]:
        """
        Fuse one inference result, dropping the frame on failure.

        The map is left untouched when fusion fails.

        Returns:
            FusionResult, or None if the frame was dropped
        """
        return self._fuse_result(result, on_error, started_at)

    def _fuse_result(
        self,
        result: DepthResult,
        on_error: Optional[ErrorCallback],
        started_at: Optional[float],
        stop_event: Optional[threading.Event] = None,
    ) -> Optional[FusionResult]:
        """Selection and transforms run unlocked; only the commit checks ``stop_event``."""
        try:
            start = time.perf_counter()
            world_points = self._world_points(result.color_image, result.depth_map, result.pose)
            if stop_event is None:
                fusion = self._commit(result.pose, world_points, start)
            else:
                with self._commit_lock:
                    if stop_event.is_set():
                        LOGGER.debug("Discarding depth result received after stop")
                        return None
                    fusion = self._commit(result.pose, world_points, start)
        except Exception as e:
            self.frames_failed += 1
            LOGGER.error("Frame fusion failed: %s", e)
            if on_error is not None:
                on_error(e)
            return None

        self.frames_fused += 1
        network_ms = result.network_time_s * 1000
        processing_ms = fusion.processing_time_s * 1000
        if started_at is not None:
            total_ms = (time.perf_counter() - started_at) * 1000
        else:
            total_ms = network_ms + processing_ms
        LOGGER.debug(
            "%d,%.1f,%.1f,%.1f", fusion.frame_index, total_ms, network_ms, processing_ms,
        )
        return fusion

    # ------------------------------------------------------------------ #
    # Session lifecycle
    # ------------------------------------------------------------------ #
    def start(
        self,
        source,
        client,
        on_update: Optional[UpdateCallback] = None,
        on_error: Optional[ErrorCallback] = None,
        max_frames: Optional[int] = None,
    ) -> bool:
        """
        Begin a new session on a worker thread.

        The map is cleared first. Calibration is taken from the source when
        it provides one.

        Returns:
            False if a session is already running
        """
        with self._state_lock:
            if self._state is PipelineState.RUNNING:
                LOGGER.warning("Pipeline already running")
                return False
            self._state = PipelineState.RUNNING

        # Each session owns its stop event; a worker left over from a
        # stopped session only ever sees its own (already set) event.
        stop_event = threading.Event()
        try:
            self.reset()
            self.set_intrinsics(source.get_calibration())
            worker = threading.Thread(
                target=self._run,
                args=(source, client, on_update, on_error, max_frames, stop_event),
                daemon=True,
                name="fusion-worker",
            )
            with self._state_lock:
                self._stop_event = stop_event
                self._source = source
                self._worker = worker
            worker.start()
        except Exception:
            with self._state_lock:
                if self._stop_event is stop_event:
                    self._source = None
                    self._worker = None
                self._state = PipelineState.IDLE
            stop_event.set()
            raise

        LOGGER.info("Fusion session started")
        return True

    def stop(self, timeout: Optional[float] = 5.0):
        """
        End the session. The map is kept until the next start() or reset().

        A depth request still in flight is abandoned: its result is
        discarded when it arrives and the pipeline can be restarted at once.
        """
        with self._state_lock:
            stop_event = self._stop_event
            source = self._source
            worker = self._worker

        with self._commit_lock:
            stop_event.set()

        if source is not None:
            source.stop()

        if worker is not None and worker is not threading.current_thread():
            worker.join(timeout)
            if worker.is_alive():
                LOGGER.warning(
                    "Fusion worker still waiting on a depth request after %.1fs; abandoning it",
                    timeout,
                )

        with self._state_lock:
            if self._stop_event is stop_event:
                self._state = PipelineState.IDLE

        LOGGER.info(
            "Fusion session stopped: %d frames fused, %d failed",
            self.frames_fused, self.frames_failed,
        )

    def wait(self, timeout: Optional[float] = None) -> bool:
        """
        Block until the worker finishes.

        Returns:
            True if the worker is no longer running
        """
        worker = self._worker
        if worker is None:
            return True
        worker.join(timeout)
        return not worker.is_alive()

    def _run(self, source, client, on_update, on_error, max_frames, stop_event):
        fused = 0
        try:
            source.start()
            for frame in source.frames():
                if stop_event.is_set():
                    break

                started_at = time.perf_counter()
                try:
                    result = client.predict_depth(frame.image, frame.pose)
                except Exception as e:
                    if stop_event.is_set():
                        break
                    self.frames_failed += 1
                    LOGGER.warning("Frame %d dropped: %s", frame.index, e)
                    self._notify(on_error, e)
                    continue

                fusion = self._fuse_result(result, on_error, started_at, stop_event)
                if fusion is None:
                    if stop_event.is_set():
                        break
                    continue
                fused += 1
                self._notify(on_update, fusion)

                if max_frames is not None and fused >= max_frames:
                    LOGGER.info("Reached %d frames", max_frames)
                    break
        except Exception as e:
            if not stop_event.is_set():
                LOGGER.error("Fusion session aborted: %s", e)
                self._notify(on_error, e)
        finally:
            # After stop() the source is already released and may belong to a new session
            if not stop_event.is_set():
                source.stop()
            with self._state_lock:
                if self._stop_event is stop_event:
                    self._state = PipelineState.IDLE

    @staticmethod
    def _notify(callback, payload):
        if callback is None:
            return
        try:
            callback(payload)
        except Exception as e:
            LOGGER.error("Callback %r failed: %s", callback, e)
