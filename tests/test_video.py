"""
Tests for dataset replay and live camera frame sources.
"""

import os
import sys
import tempfile
import threading
import unittest
from pathlib import Path

import cv2
import numpy as np

sys.path.append(os.path.join(os.path.dirname(__file__), "..", "src"))

from pose import identity_pose  # type: ignore
from video import CameraImageSource, DatasetImageSource  # type: ignore


def write_image(path, value):
    image = np.full((24, 32, 3), value, dtype=np.uint8)
    assert cv2.imwrite(str(path), image)


class TestDatasetImageSource(unittest.TestCase):
    """Folder replay with ground-truth poses."""

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.root = Path(self.tmp.name)
        self.images = self.root / "images"
        self.images.mkdir()

        write_image(self.images / "00002.png", 20)
        write_image(self.images / "00000.png", 0)
        write_image(self.images / "00001.bmp", 10)
        (self.images / "00003.png").write_bytes(b"corrupt")
        (self.images / "notes.txt").write_text("ignored")

        (self.root / "groundtruthSync.txt").write_text(
            "# timestamp tx ty tz qx qy qz qw\n"
            "0.0 1 0 0 0 0 0 1\n"
            "0.1 2 0 0 0 0 0 1\n"
        )
        (self.root / "camera.txt").write_text("0.5 0.6 0.5 0.5 0\n")

    def tearDown(self):
        self.tmp.cleanup()

    def test_frames_in_filename_order_with_poses(self):
        source = DatasetImageSource(self.images, frame_delay_s=0.0)
        with source:
            frames = list(source.frames())

        self.assertEqual([f.index for f in frames], [0, 1, 2])
        self.assertEqual([int(f.image[0, 0, 0]) for f in frames], [0, 10, 20])
        self.assertEqual(frames[0].pose.translation, (1.0, 0.0, 0.0))
        self.assertEqual(frames[1].pose.translation, (2.0, 0.0, 0.0))
        self.assertEqual(frames[2].pose, identity_pose())

    def test_metadata_dir(self):
        self.assertEqual(DatasetImageSource(self.images).metadata_dir, self.root)

        plain = self.root / "frames"
        plain.mkdir()
        source = DatasetImageSource(plain)
        self.assertEqual(source.metadata_dir, plain)
        self.assertIsNone(source.get_calibration())

    def test_calibration_from_parent(self):
        calibration = DatasetImageSource(self.images).get_calibration()
        self.assertTrue(calibration.is_calibrated)
        self.assertAlmostEqual(calibration.fy_rel, 0.6)

    def test_fallback_trajectory_name(self):
        other = self.root / "seq"
        other.mkdir()
        write_image(other / "a.png", 5)
        (other / "groundtruth.txt").write_text("0.0 7 8 9 0 0 0 1\n")

        source = DatasetImageSource(other, frame_delay_s=0.0)
        with source:
            frames = list(source.frames())
        self.assertEqual(frames[0].pose.translation, (7.0, 8.0, 9.0))

    def test_loop_until_stopped(self):
        source = DatasetImageSource(self.images, frame_delay_s=0.0, loop=True, loop_delay_s=0.0)
        source.start()
        indices = []
        for frame in source.frames():
            indices.append(frame.index)
            if len(indices) == 7:
                source.stop()

        self.assertEqual(indices, [0, 1, 2, 0, 1, 2, 0])

    def test_stop_interrupts_delay(self):
        source = DatasetImageSource(self.images, frame_delay_s=30.0)
        source.start()
        frames = source.frames()
        next(frames)

        threading.Timer(0.05, source.stop).start()
        self.assertEqual(list(frames), [])

    def test_missing_folder(self):
        with self.assertRaises(FileNotFoundError):
            DatasetImageSource(self.root / "missing").start()


class FakeCapture:
    """cv2.VideoCapture stand-in producing numbered frames."""

    def __init__(self, camera_id, backend, opened=True):
        self.opened = opened
        self.count = 0
        self.released = False
        self.properties = {}

    def isOpened(self):
        return self.opened

    def set(self, prop, value):
        self.properties[prop] = value
        return True

    def read(self):
        self.count += 1
        # First frame is black, as cameras often deliver while warming up
        value = 0 if self.count == 1 else min(self.count, 255)
        return True, np.full((8, 8, 3), value, dtype=np.uint8)

    def release(self):
        self.released = True


class TestCameraImageSource(unittest.TestCase):
    """Live capture with keep-latest buffering."""

    def test_keeps_only_latest_frame(self):
        source = CameraImageSource({"camera_backend_priority": [cv2.CAP_ANY]})
        for value in (1, 2, 3):
            source.offer(np.full((4, 4, 3), value, dtype=np.uint8))

        frame = source.read_latest(timeout=0.1)
        self.assertEqual(int(frame.image[0, 0, 0]), 3)
        self.assertEqual(frame.index, 2)
        self.assertEqual(frame.pose, identity_pose())
        self.assertEqual(source.dropped_frames, 2)
        self.assertIsNone(source.read_latest(timeout=0.01))

    def test_capture_thread_delivers_frames(self):
        captures = []

        def factory(camera_id, backend):
            captures.append(FakeCapture(camera_id, backend))
            return captures[-1]

        source = CameraImageSource(
            {"camera_id": 3, "camera_backend_priority": [cv2.CAP_ANY], "video_width": 320},
            capture_factory=factory,
        )
        with source:
            frame = next(source.frames())
            self.assertTrue(source.is_running)

        self.assertGreater(int(frame.image[0, 0, 0]), 0)
        self.assertEqual(frame.pose, identity_pose())
        self.assertFalse(source.is_running)
        self.assertTrue(captures[0].released)
        self.assertEqual(captures[0].properties[cv2.CAP_PROP_FRAME_WIDTH], 320)

    def test_falls_back_to_next_backend(self):
        attempts = []

        def factory(camera_id, backend):
            attempts.append(backend)
            return FakeCapture(camera_id, backend, opened=len(attempts) > 1)

        source = CameraImageSource(
            {"camera_backend_priority": [cv2.CAP_ANY, cv2.CAP_ANY]}, capture_factory=factory
        )
        source.start()
        source.stop()
        self.assertEqual(len(attempts), 2)

    def test_unavailable_camera_raises(self):
        source = CameraImageSource(
            {"camera_backend_priority": [cv2.CAP_ANY]},
            capture_factory=lambda camera_id, backend: FakeCapture(camera_id, backend, opened=False),
        )
        with self.assertRaises(RuntimeError):
            source.start()
        self.assertFalse(source.is_running)

    def test_default_backend_priority_ends_with_any(self):
        self.assertEqual(CameraImageSource._resolve_backend_priority(None)[-1], cv2.CAP_ANY)

    def test_restart_discards_stale_frame(self):
        source = CameraImageSource(
            {"camera_backend_priority": [cv2.CAP_ANY]},
            capture_factory=lambda camera_id, backend: FakeCapture(camera_id, backend),
        )
        source.offer(np.full((4, 4, 3), 250, dtype=np.uint8))

        with source:
            frame = next(source.frames())

        self.assertEqual(frame.image.shape, (8, 8, 3))


if __name__ == "__main__":
    unittest.main()
