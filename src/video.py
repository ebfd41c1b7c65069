"""
Frame sources.

This module turns image folders and live cameras into a common iterator of
VisualFrame objects, each with the camera pose the frame was taken from.
"""

from __future__ import annotations

import logging
import platform
import queue
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator, List, Optional

import cv2
import numpy as np

from pose import CameraIntrinsics, CameraPose, identity_pose, load_calibration, load_trajectory

IMAGE_EXTENSIONS = ('.png', '.jpg', '.jpeg', '.bmp')
TRAJECTORY_FILES = ('groundtruthSync.txt', 'groundtruth.txt')
CALIBRATION_FILE = 'camera.txt'


@dataclass
class VisualFrame:
    """A color frame and the pose it was captured from."""

    image: np.ndarray
    pose: CameraPose
    index: int = 0
    timestamp: float = 0.0


class ImageSource:
    """Base class for frame producers with a start/stop lifecycle."""

    def __init__(self):
        self.logger = logging.getLogger(__name__)
        self._stop_event = threading.Event()
        self._stop_event.set()

    @property
    def is_running(self) -> bool:
        return not self._stop_event.is_set()

    def start(self):
        self._stop_event.clear()

    def stop(self):
        self._stop_event.set()

    def frames(self) -> Iterator[VisualFrame]:
        raise NotImplementedError

    def get_calibration(self) -> Optional[CameraIntrinsics]:
        """Relative intrinsics for this source, or None to use defaults."""
        return None

    def __enter__(self) -> ImageSource:
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.stop()


class DatasetImageSource(ImageSource):
    """
    Replays an image folder at a fixed rate.

    Images are sorted by filename and paired positionally with the poses in
    ``groundtruthSync.txt`` (or ``groundtruth.txt``); frames past the end of
    the trajectory get the identity pose. When the folder itself is named
    ``images`` the metadata files are looked up in its parent.
    """

    def __init__(
        self,
        folder,
        frame_delay_s: float = 0.1,
        loop: bool = False,
        loop_delay_s: float = 1.0,
    ):
        super().__init__()
        self.folder = Path(folder)
        self.frame_delay_s = frame_delay_s
        self.loop = loop
        self.loop_delay_s = loop_delay_s

        self.image_files: List[Path] = []
        self.poses: List[CameraPose] = []

    @property
    def metadata_dir(self) -> Path:
        return self.folder.parent if self.folder.name == 'images' else self.folder

    def start(self):
        """
        Index the folder and load the trajectory.

        Raises:
            FileNotFoundError: If the folder does not exist
        """
        if not self.folder.is_dir():
            raise FileNotFoundError(f"Dataset folder not found: {self.folder}")

        self.image_files = sorted(
            (p for p in self.folder.iterdir()
             if p.is_file() and p.suffix.lower() in IMAGE_EXTENSIONS),
            key=lambda p: p.name,
        )
        self.poses = self._load_poses()

        self.logger.info(
            "Dataset %s: %d images, %d poses",
            self.folder, len(self.image_files), len(self.poses),
        )
        super().start()

    def _load_poses(self) -> List[CameraPose]:
        for name in TRAJECTORY_FILES:
            path = self.metadata_dir / name
            if path.is_file():
                return load_trajectory(path)
        self.logger.warning("No trajectory file in %s, using identity poses", self.metadata_dir)
        return []

    def get_calibration(self) -> Optional[CameraIntrinsics]:
        return load_calibration(self.metadata_dir / CALIBRATION_FILE)

    def pose_for(self, index: int) -> CameraPose:
        if index < len(self.poses):
            return self.poses[index]
        return identity_pose()

    def frames(self) -> Iterator[VisualFrame]:
        if not self.image_files:
            self.logger.warning("No images to replay in %s", self.folder)
            return

        index = 0
        while self.is_running:
            if index >= len(self.image_files):
                if not self.loop:
                    break
                index = 0
                if self._stop_event.wait(self.loop_delay_s):
                    break

            path = self.image_files[index]
            image = cv2.imread(str(path), cv2.IMREAD_COLOR)
            if image is None:
                self.logger.warning("Skipping unreadable image %s", path.name)
            else:
                yield VisualFrame(
                    image=image,
                    pose=self.pose_for(index),
                    index=index,
                    timestamp=time.time(),
                )
                if self._stop_event.wait(self.frame_delay_s):
                    break
            index += 1


class CameraImageSource(ImageSource):
    """
    Live OpenCV camera.

    A capture thread keeps only the most recent frame; consumers that fall
    behind skip stale frames instead of queueing them. There is no tracking,
    so every frame carries the identity pose.
    """

    def __init__(self, config=None, capture_factory: Optional[Callable] = None):
        super().__init__()
        self.config = config or {}
        self.camera_id = self.config.get('camera_id', 0)
        self.width = self.config.get('video_width', 640)
        self.height = self.config.get('video_height', 480)
        self.fps = self.config.get('video_fps', 30)
        self.max_init_attempts = self.config.get('camera_init_attempts', 10)
        self.read_timeout_s = self.config.get('read_timeout_s', 1.0)
        self.backend_priority = self._resolve_backend_priority(
            self.config.get('camera_backend_priority')
        )

        self.capture_factory = capture_factory or cv2.VideoCapture
        self.cap = None
        self.selected_backend: Optional[int] = None

        self._frames: queue.Queue = queue.Queue(maxsize=1)
        self._thread: Optional[threading.Thread] = None
        self._frame_index = 0
        self.dropped_frames = 0

    @staticmethod
    def _resolve_backend_priority(user_priority: Optional[List[int]]) -> List[int]:
        """Backends to try, most specific for this platform first."""
        if user_priority:
            return list(user_priority)

        system = platform.system()
        if system == 'Darwin':
            names = ['CAP_AVFOUNDATION', 'CAP_QT']
        elif system == 'Windows':
            names = ['CAP_DSHOW', 'CAP_MSMF']
        else:
            names = ['CAP_V4L2', 'CAP_GSTREAMER']
        names.append('CAP_ANY')

        backends = [getattr(cv2, name) for name in names if getattr(cv2, name, None) is not None]
        return backends or [cv2.CAP_ANY]

    @staticmethod
    def _backend_name(backend: Optional[int]) -> str:
        if backend is None:
            return "Unknown"
        for attr in dir(cv2):
            if attr.startswith("CAP_") and getattr(cv2, attr) == backend:
                return attr
        return f"Backend({backend})"

    def start(self):
        """
        Open the camera and start the capture thread.

        Raises:
            RuntimeError: If no backend delivers frames
        """
        if self.is_running:
            return

        self.cap = self._open_capture()
        if self.cap is None:
            raise RuntimeError(
                f"Unable to open camera {self.camera_id} with backends "
                f"{[self._backend_name(b) for b in self.backend_priority]}"
            )

        # Frames left over from a previous session are stale
        while True:
            try:
                self._frames.get_nowait()
            except queue.Empty:
                break

        super().start()
        self._thread = threading.Thread(target=self._capture_loop, daemon=True, name="camera-capture")
        self._thread.start()

    def _open_capture(self):
        for backend in self.backend_priority:
            self.logger.info(
                "Opening camera %s using backend %s", self.camera_id, self._backend_name(backend)
            )
            cap = self.capture_factory(self.camera_id, backend)
            if not cap.isOpened():
                self.logger.warning("Backend %s failed to open camera", self._backend_name(backend))
                cap.release()
                continue

            cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
            cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)
            cap.set(cv2.CAP_PROP_FPS, self.fps)

            if self._warmup(cap) is None:
                self.logger.warning(
                    "Camera opened but delivered no frames (backend %s)", self._backend_name(backend)
                )
                cap.release()
                continue

            self.selected_backend = backend
            self.logger.info("Camera ready with backend %s", self._backend_name(backend))
            return cap
        return None

    def _warmup(self, cap) -> Optional[np.ndarray]:
        """Read until a non-black frame arrives."""
        for attempt in range(1, self.max_init_attempts + 1):
            ret, frame = cap.read()
            if ret and frame is not None and frame.size > 0:
                if frame.mean() == 0:
                    self.logger.debug("Warmup frame %s is black; retrying", attempt)
                    continue
                return frame
        return None

    def _capture_loop(self):
        while self.is_running:
            ret, frame = self.cap.read()
            if not ret or frame is None:
                self.logger.warning("Failed to capture frame")
                if self._stop_event.wait(0.01):
                    break
                continue
            self.offer(frame)

    def offer(self, image: np.ndarray):
        """Publish a frame, replacing any frame the consumer has not taken yet."""
        frame = VisualFrame(
            image=image,
            pose=identity_pose(),
            index=self._frame_index,
            timestamp=time.time(),
        )
        self._frame_index += 1
        while True:
            try:
                self._frames.put_nowait(frame)
                return
            except queue.Full:
                try:
                    self._frames.get_nowait()
                    self.dropped_frames += 1
                except queue.Empty:
                    pass

    def read_latest(self, timeout: Optional[float] = None) -> Optional[VisualFrame]:
        """Take the pending frame, waiting up to ``timeout`` seconds."""
        try:
            return self._frames.get(timeout=timeout)
        except queue.Empty:
            return None

    def frames(self) -> Iterator[VisualFrame]:
        while self.is_running:
            frame = self.read_latest(self.read_timeout_s)
            if frame is not None:
                yield frame

    def stop(self):
        super().stop()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=2.0)
        self._thread = None

        if self.cap is not None:
            self.cap.release()
            self.cap = None
            self.logger.info("Camera released (%d stale frames dropped)", self.dropped_frames)
