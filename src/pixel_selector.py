"""
Gradient-based pixel selection and back-projection.

Picks a sparse, spatially spread set of informative pixels from a color
image and lifts them into camera-frame 3D points using an aligned depth map:
- Block (grid) selection: at most one pixel per BLOCK_SIZE x BLOCK_SIZE cell
- Squared forward-difference gradient on the green channel
- Global top-N by gradient
- Pinhole back-projection with depth range clamping
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

import cv2
import numpy as np

from pose import BLACK, RGB, CameraIntrinsics, Point3D

LOGGER = logging.getLogger(__name__)

BLOCK_SIZE = 32
GRADIENT_SQ_THRESHOLD = 50
MAX_POINTS_PER_FRAME = 2000
MIN_DEPTH = 0.1
MAX_DEPTH = 9.5
DEPTH_RANGE = 10.0
DEPTH_SCALE = 2.0


@dataclass
class SelectorConfig:
    """Configuration for the pixel selector."""

    block_size: int = BLOCK_SIZE
    gradient_sq_threshold: int = GRADIENT_SQ_THRESHOLD
    max_points_per_frame: int = MAX_POINTS_PER_FRAME
    min_depth: float = MIN_DEPTH  # meters, before DEPTH_SCALE
    max_depth: float = MAX_DEPTH
    depth_range: float = DEPTH_RANGE  # metric value of a fully saturated depth pixel
    depth_scale: float = DEPTH_SCALE  # calibration factor applied after clamping
    point_color: RGB = BLACK

    def __post_init__(self):
        if self.block_size < 2:
            raise ValueError("block_size must be at least 2")
        self.point_color = tuple(int(c) for c in self.point_color)


@dataclass
class PixelCandidate:
    """A selected pixel and its squared gradient."""

    u: int
    v: int
    gradient: int


class PixelSelector:
    """
    Stateless selector turning (color, depth) pairs into camera-frame points.

    Images follow the OpenCV convention (BGR, HxWx3). The depth map may be
    single channel or multi channel; in the latter case the red channel holds
    the depth value.
    """

    def __init__(self, config: Optional[Dict] = None):
        if isinstance(config, SelectorConfig):
            self.config = config
        else:
            cfg_dict = dict(config or {})
            self.config = SelectorConfig(**{
                k: v for k, v in cfg_dict.items()
                if k in SelectorConfig.__dataclass_fields__
            })

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #
    def select(
        self,
        color_image: Optional[np.ndarray],
        depth_image: Optional[np.ndarray],
        intrinsics: Optional[CameraIntrinsics] = None,
    ) -> List[Point3D]:
        """
        Select gradient-significant pixels and back-project them.

        Args:
            color_image: BGR image used for gradients
            depth_image: Depth map, resampling target resolution
            intrinsics: Camera intrinsics (defaults when None)

        Returns:
            Camera-frame points, strongest gradients first
        """
        if color_image is None or depth_image is None:
            return []
        if color_image.size == 0 or depth_image.size == 0:
            return []

        height, width = depth_image.shape[:2]
        color = self._align_color(color_image, width, height)

        candidates = self.select_candidates(color)
        if not candidates:
            return []

        candidates.sort(key=lambda c: c.gradient, reverse=True)
        candidates = candidates[: self.config.max_points_per_frame]

        return self._back_project(candidates, depth_image, intrinsics or CameraIntrinsics())

    def select_candidates(self, color_image: np.ndarray) -> List[PixelCandidate]:
        """Return the best pixel of every block whose gradient passes the threshold."""
        green = self._green_channel(color_image)
        if green is None:
            return []

        grad = self.gradient_map(green)
        if grad is None:
            return []

        height, width = grad.shape
        bs = self.config.block_size
        blocks_y = (height + bs - 1) // bs
        blocks_x = (width + bs - 1) // bs

        padded = np.zeros((blocks_y * bs, blocks_x * bs), dtype=np.int32)
        padded[:height, :width] = grad

        # (by, bx, row-major offset inside block)
        tiles = (
            padded.reshape(blocks_y, bs, blocks_x, bs)
            .transpose(0, 2, 1, 3)
            .reshape(blocks_y, blocks_x, bs * bs)
        )
        best_offsets = tiles.argmax(axis=2)
        best_values = tiles.max(axis=2)

        candidates: List[PixelCandidate] = []
        threshold = self.config.gradient_sq_threshold
        for by, bx in zip(*np.nonzero(best_values > threshold)):
            offset = int(best_offsets[by, bx])
            candidates.append(
                PixelCandidate(
                    u=int(bx) * bs + offset % bs,
                    v=int(by) * bs + offset // bs,
                    gradient=int(best_values[by, bx]),
                )
            )
        return candidates

    @staticmethod
    def gradient_map(green: np.ndarray) -> Optional[np.ndarray]:
        """
        Squared forward-difference gradient magnitude.

        Pixels without a right and a lower neighbour (last image column and
        row) get 0, so they can never win a block.
        """
        if green.ndim != 2 or green.shape[0] < 2 or green.shape[1] < 2:
            return None

        g = green.astype(np.int32)
        grad = np.zeros_like(g)
        dx = g[:-1, :-1] - g[:-1, 1:]
        dy = g[:-1, :-1] - g[1:, :-1]
        grad[:-1, :-1] = dx * dx + dy * dy
        return grad

    # ------------------------------------------------------------------ #
    # Internals
    # ------------------------------------------------------------------ #
    @staticmethod
    def _align_color(color_image: np.ndarray, width: int, height: int) -> np.ndarray:
        """Resample the color image to the depth-map resolution if needed."""
        if color_image.shape[0] == height and color_image.shape[1] == width:
            return color_image
        LOGGER.debug(
            "Resampling color %sx%s to depth resolution %sx%s",
            color_image.shape[1], color_image.shape[0], width, height,
        )
        return cv2.resize(color_image, (width, height), interpolation=cv2.INTER_LINEAR)

    @staticmethod
    def _green_channel(color_image: np.ndarray) -> Optional[np.ndarray]:
        if color_image.ndim == 2:
            return color_image
        if color_image.ndim == 3 and color_image.shape[2] >= 3:
            return color_image[:, :, 1]
        return None

    def _normalized_depth(self, depth_image: np.ndarray) -> np.ndarray:
        """Depth in meters: red channel normalized to [0, 1] times the range."""
        if depth_image.ndim == 3:
            # BGR(A) layout: red is channel 2
            channel = depth_image[:, :, 2] if depth_image.shape[2] >= 3 else depth_image[:, :, 0]
        else:
            channel = depth_image

        if channel.dtype == np.uint8:
            normalized = channel / 255.0
        elif channel.dtype == np.uint16:
            normalized = channel / 65535.0
        else:
            normalized = channel.astype(np.float64)
        return normalized * self.config.depth_range

    def _back_project(
        self,
        candidates: List[PixelCandidate],
        depth_image: np.ndarray,
        intrinsics: CameraIntrinsics,
    ) -> List[Point3D]:
        height, width = depth_image.shape[:2]
        fx, fy, cx, cy = intrinsics.resolve(width, height)

        us = np.array([c.u for c in candidates], dtype=np.int64)
        vs = np.array([c.v for c in candidates], dtype=np.int64)
        depth = self._normalized_depth(depth_image)[vs, us]

        keep = (depth >= self.config.min_depth) & (depth <= self.config.max_depth)
        us, vs, depth = us[keep], vs[keep], depth[keep]

        z = depth * self.config.depth_scale
        x = (us - cx) * z / fx
        y = (vs - cy) * z / fy

        color = self.config.point_color
        return [
            Point3D(float(px), float(py), float(pz), color)
            for px, py, pz in zip(x.tolist(), y.tolist(), z.tolist())
        ]


def select_points(
    color_image: Optional[np.ndarray],
    depth_image: Optional[np.ndarray],
    intrinsics: Optional[CameraIntrinsics] = None,
) -> List[Point3D]:
    """Run the selector with default settings."""
    return PixelSelector().select(color_image, depth_image, intrinsics)
