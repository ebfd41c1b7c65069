"""
Tests for gradient-based pixel selection and back-projection.
"""

import os
import sys
import unittest

import numpy as np

sys.path.append(os.path.join(os.path.dirname(__file__), "..", "src"))

from pixel_selector import PixelSelector, SelectorConfig, select_points  # type: ignore
from pose import BLACK, CameraIntrinsics  # type: ignore


def make_color(height=64, width=64, green=0):
    image = np.zeros((height, width, 3), dtype=np.uint8)
    image[:, :, 1] = green
    return image


def make_depth(height=64, width=64, red=128, dtype=np.uint8):
    depth = np.zeros((height, width, 3), dtype=dtype)
    depth[:, :, 2] = red
    return depth


class TestCandidateSelection(unittest.TestCase):
    """Block-wise gradient maxima."""

    def setUp(self):
        self.selector = PixelSelector()

    def test_flat_image_selects_nothing(self):
        self.assertEqual(self.selector.select(make_color(green=90), make_depth()), [])

    def test_missing_or_empty_input(self):
        self.assertEqual(self.selector.select(None, make_depth()), [])
        self.assertEqual(self.selector.select(make_color(), None), [])
        self.assertEqual(self.selector.select(np.zeros((0, 0, 3), np.uint8), make_depth()), [])

    def test_one_pixel_wide_image(self):
        rng = np.random.default_rng(0)
        color = rng.integers(0, 255, size=(64, 1, 3), dtype=np.uint8)
        self.assertEqual(self.selector.select(color, make_depth(64, 1)), [])

    def test_spike_is_best_pixel_of_its_block(self):
        color = make_color()
        color[5, 7, 1] = 100

        candidates = self.selector.select_candidates(color)
        self.assertEqual(len(candidates), 1)
        self.assertEqual((candidates[0].u, candidates[0].v), (7, 5))
        self.assertEqual(candidates[0].gradient, 2 * 100 * 100)

    def test_threshold_is_strict(self):
        color = make_color()
        color[10, 10, 1] = 5  # gradient 25 + 25 == 50
        self.assertEqual(self.selector.select_candidates(color), [])

        color[10, 10, 1] = 6  # 36 + 36 > 50
        self.assertEqual(len(self.selector.select_candidates(color)), 1)

    def test_at_most_one_point_per_block(self):
        rng = np.random.default_rng(42)
        color = rng.integers(0, 255, size=(64, 96, 3), dtype=np.uint8)

        candidates = self.selector.select_candidates(color)
        blocks = {(c.u // 32, c.v // 32) for c in candidates}
        self.assertEqual(len(candidates), 6)
        self.assertEqual(len(blocks), 6)

    def test_last_row_and_column_have_no_gradient(self):
        green = np.zeros((4, 4), dtype=np.uint8)
        green[3, :] = 200
        green[:, 3] = 200

        grad = PixelSelector.gradient_map(green)
        self.assertEqual(grad[3, :].tolist(), [0, 0, 0, 0])
        self.assertEqual(grad[:, 3].tolist(), [0, 0, 0, 0])
        self.assertGreater(grad[2, 2], 0)

    def test_top_n_keeps_strongest(self):
        selector = PixelSelector({"max_points_per_frame": 3})
        color = make_color()
        # One spike per block with increasing strength
        spikes = {(4, 4): 50, (36, 4): 100, (4, 36): 150, (36, 36): 200}
        for (u, v), value in spikes.items():
            color[v, u, 1] = value

        points = selector.select(color, make_depth())
        fx, fy, cx, cy = CameraIntrinsics().resolve(64, 64)
        pixels = [
            (round(p.x * fx / p.z + cx), round(p.y * fy / p.z + cy)) for p in points
        ]

        self.assertEqual(pixels, [(36, 36), (4, 36), (36, 4)])


class TestBackProjection(unittest.TestCase):
    """Depth handling and pinhole math."""

    def setUp(self):
        self.selector = PixelSelector()
        self.color = make_color()
        self.color[5, 7, 1] = 100

    def test_pinhole_math(self):
        points = self.selector.select(self.color, make_depth(red=128))
        fx, fy, cx, cy = CameraIntrinsics().resolve(64, 64)
        z = 128 / 255.0 * 10.0 * 2.0

        self.assertEqual(len(points), 1)
        self.assertAlmostEqual(points[0].z, z)
        self.assertAlmostEqual(points[0].x, (7 - cx) * z / fx)
        self.assertAlmostEqual(points[0].y, (5 - cy) * z / fy)
        self.assertEqual(points[0].color, BLACK)

    def test_calibrated_intrinsics(self):
        intrinsics = CameraIntrinsics(0.5, 0.5, 0.5, 0.5, is_calibrated=True)
        points = self.selector.select(self.color, make_depth(red=255), intrinsics)
        self.assertEqual(len(points), 0)  # 10 m is beyond the max depth

        points = self.selector.select(self.color, make_depth(red=51), intrinsics)
        z = 51 / 255.0 * 10.0 * 2.0
        self.assertAlmostEqual(points[0].x, (7 - 32) * z / 32)
        self.assertAlmostEqual(points[0].y, (5 - 32) * z / 32)

    def test_max_depth_boundary(self):
        depth = np.full((64, 64), 0.95, dtype=np.float64)
        self.assertEqual(len(self.selector.select(self.color, depth)), 1)

        self.assertEqual(len(self.selector.select(self.color, make_depth(red=242))), 1)
        self.assertEqual(len(self.selector.select(self.color, make_depth(red=243))), 0)

    def test_min_depth_boundary(self):
        depth = np.full((64, 64), 0.01, dtype=np.float64)
        self.assertEqual(len(self.selector.select(self.color, depth)), 1)

        self.assertEqual(len(self.selector.select(self.color, make_depth(red=3))), 1)
        self.assertEqual(len(self.selector.select(self.color, make_depth(red=2))), 0)
        self.assertEqual(len(self.selector.select(self.color, make_depth(red=0))), 0)

    def test_single_channel_and_16bit_depth(self):
        gray = np.full((64, 64), 128, dtype=np.uint8)
        self.assertEqual(len(self.selector.select(self.color, gray)), 1)

        deep = np.full((64, 64), 32768, dtype=np.uint16)
        points = self.selector.select(self.color, deep)
        self.assertAlmostEqual(points[0].z, 32768 / 65535.0 * 20.0)

    def test_color_resampled_to_depth_resolution(self):
        rng = np.random.default_rng(7)
        color = rng.integers(0, 255, size=(128, 128, 3), dtype=np.uint8)

        points = self.selector.select(color, make_depth(64, 64))
        self.assertGreater(len(points), 0)
        self.assertLessEqual(len(points), 4)

    def test_custom_point_color(self):
        selector = PixelSelector(SelectorConfig(point_color=[255, 0, 0]))
        points = selector.select(self.color, make_depth())
        self.assertEqual(points[0].color, (255, 0, 0))

    def test_module_level_helper(self):
        self.assertEqual(len(select_points(self.color, make_depth())), 1)


if __name__ == "__main__":
    unittest.main()
