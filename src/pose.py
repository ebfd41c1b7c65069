"""
Camera pose and calibration module.

Provides the immutable value types shared by the mapping pipeline and the
rigid-transform math used to move camera-frame points into the world frame:
- Point3D and CameraPose value types
- Quaternion to 4x4 transform conversion (TUM trajectory convention)
- Point transformation (single and batched)
- Camera intrinsics with relative calibration and default fallback
- Calibration and ground-truth trajectory file parsing
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, replace
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

import numpy as np

LOGGER = logging.getLogger(__name__)

RGB = Tuple[int, int, int]

BLACK: RGB = (0, 0, 0)

# Default pinhole parameters, in pixels, for a 640x480 reference image.
DEFAULT_FX = 256.0
DEFAULT_FY = 254.4
DEFAULT_CX = 319.5
DEFAULT_CY = 239.5
REFERENCE_WIDTH = 640
REFERENCE_HEIGHT = 480

_IDENTITY = (
    1.0, 0.0, 0.0, 0.0,
    0.0, 1.0, 0.0, 0.0,
    0.0, 0.0, 1.0, 0.0,
    0.0, 0.0, 0.0, 1.0,
)


@dataclass(frozen=True)
class Point3D:
    """A colored 3D point."""

    x: float
    y: float
    z: float
    color: RGB = BLACK

    def with_position(self, x: float, y: float, z: float) -> Point3D:
        """Return a copy with new coordinates and the same color."""
        return replace(self, x=float(x), y=float(y), z=float(z))


@dataclass(frozen=True)
class CameraPose:
    """
    Rigid camera-to-world transform.

    Stored as 16 floats in column-major order (OpenGL layout), so the
    translation lives at indices 12, 13 and 14. Equality is exact
    element-wise comparison.
    """

    matrix: Tuple[float, ...] = _IDENTITY

    def __post_init__(self):
        values = tuple(float(v) for v in self.matrix)
        if len(values) != 16:
            raise ValueError(f"CameraPose needs 16 values, got {len(values)}")
        object.__setattr__(self, "matrix", values)

    @property
    def tx(self) -> float:
        return self.matrix[12]

    @property
    def ty(self) -> float:
        return self.matrix[13]

    @property
    def tz(self) -> float:
        return self.matrix[14]

    @property
    def translation(self) -> Tuple[float, float, float]:
        return (self.tx, self.ty, self.tz)

    def as_matrix(self) -> np.ndarray:
        """Return the transform as a row-major 4x4 numpy array."""
        return np.array(self.matrix, dtype=np.float64).reshape(4, 4).T

    @classmethod
    def from_matrix(cls, transform: np.ndarray) -> CameraPose:
        """Build a pose from a row-major 4x4 numpy array."""
        arr = np.asarray(transform, dtype=np.float64).reshape(4, 4)
        return cls(tuple(arr.T.reshape(16).tolist()))


@dataclass
class CameraIntrinsics:
    """Pinhole intrinsics expressed relative to the image size."""

    fx_rel: float = 0.0
    fy_rel: float = 0.0
    cx_rel: float = 0.0
    cy_rel: float = 0.0
    is_calibrated: bool = False

    def resolve(self, width: int, height: int) -> Tuple[float, float, float, float]:
        """Return (fx, fy, cx, cy) in pixels for an image of the given size."""
        if self.is_calibrated:
            return (
                self.fx_rel * width,
                self.fy_rel * height,
                self.cx_rel * width,
                self.cy_rel * height,
            )

        sx = width / float(REFERENCE_WIDTH)
        sy = height / float(REFERENCE_HEIGHT)
        return (DEFAULT_FX * sx, DEFAULT_FY * sy, DEFAULT_CX * sx, DEFAULT_CY * sy)


# ---------------------------------------------------------------------- #
# Transform math
# ---------------------------------------------------------------------- #
def identity_pose() -> CameraPose:
    """Return the identity transform (no tracking available)."""
    return CameraPose(_IDENTITY)


def pose_from_quaternion(
    tx: float,
    ty: float,
    tz: float,
    qx: float,
    qy: float,
    qz: float,
    qw: float,
) -> CameraPose:
    """
    Convert a TUM-style translation + quaternion into a CameraPose.

    The quaternion is normalized first so slightly denormalized input from
    text files still yields an orthonormal rotation.

    Raises:
        ValueError: If the quaternion has zero length or non-finite entries.
    """
    values = (tx, ty, tz, qx, qy, qz, qw)
    if not all(math.isfinite(float(v)) for v in values):
        raise ValueError(f"Non-finite pose values: {values}")

    norm = math.sqrt(qx * qx + qy * qy + qz * qz + qw * qw)
    if norm < 1e-12:
        raise ValueError("Quaternion has zero length")
    qx, qy, qz, qw = qx / norm, qy / norm, qz / norm, qw / norm

    xx = qx * qx; xy = qx * qy; xz = qx * qz; xw = qx * qw
    yy = qy * qy; yz = qy * qz; yw = qy * qw
    zz = qz * qz; zw = qz * qw

    m = [0.0] * 16
    # Column 0
    m[0] = 1 - 2 * (yy + zz)
    m[1] = 2 * (xy + zw)
    m[2] = 2 * (xz - yw)
    # Column 1
    m[4] = 2 * (xy - zw)
    m[5] = 1 - 2 * (xx + zz)
    m[6] = 2 * (yz + xw)
    # Column 2
    m[8] = 2 * (xz + yw)
    m[9] = 2 * (yz - xw)
    m[10] = 1 - 2 * (xx + yy)
    # Column 3 (translation)
    m[12] = float(tx)
    m[13] = float(ty)
    m[14] = float(tz)
    m[15] = 1.0

    return CameraPose(tuple(m))


def transform_point(point: Point3D, pose: CameraPose) -> Point3D:
    """Apply ``pose * [x, y, z, 1]`` to a point; color is unchanged."""
    m = pose.matrix
    x, y, z = point.x, point.y, point.z
    return point.with_position(
        m[0] * x + m[4] * y + m[8] * z + m[12],
        m[1] * x + m[5] * y + m[9] * z + m[13],
        m[2] * x + m[6] * y + m[10] * z + m[14],
    )


def transform_points(points: Sequence[Point3D], pose: CameraPose) -> List[Point3D]:
    """Batched ``transform_point`` using a single matrix product."""
    if not points:
        return []

    transform = pose.as_matrix()
    coords = points_to_array(points)
    world = coords @ transform[:3, :3].T + transform[:3, 3]

    return [
        p.with_position(*xyz)
        for p, xyz in zip(points, world.tolist())
    ]


def points_to_array(points: Sequence[Point3D]) -> np.ndarray:
    """Stack point coordinates into an Nx3 float64 array."""
    if not points:
        return np.empty((0, 3), dtype=np.float64)
    return np.array([(p.x, p.y, p.z) for p in points], dtype=np.float64)


# ---------------------------------------------------------------------- #
# File inputs
# ---------------------------------------------------------------------- #
def load_calibration(path) -> Optional[CameraIntrinsics]:
    """
    Read relative intrinsics from a calibration file.

    The first line holds ``fx_rel fy_rel cx_rel cy_rel``. A missing file or a
    malformed line yields None so callers fall back to default intrinsics.
    """
    calib_path = Path(path)
    if not calib_path.is_file():
        LOGGER.debug("No calibration file at %s", calib_path)
        return None

    try:
        with calib_path.open("r", encoding="utf-8") as f:
            line = f.readline()
    except (OSError, UnicodeDecodeError) as e:
        LOGGER.error("Failed to read calibration %s: %s", calib_path, e)
        return None

    parts = line.split()
    if len(parts) < 4:
        LOGGER.warning("Malformed calibration line in %s: %r", calib_path, line)
        return None

    try:
        fx_rel, fy_rel, cx_rel, cy_rel = (float(v) for v in parts[:4])
    except ValueError:
        LOGGER.warning("Non-numeric calibration values in %s: %r", calib_path, line)
        return None

    LOGGER.info("Calibration loaded from %s: %s", calib_path, line.strip())
    return CameraIntrinsics(
        fx_rel=fx_rel,
        fy_rel=fy_rel,
        cx_rel=cx_rel,
        cy_rel=cy_rel,
        is_calibrated=True,
    )


def load_trajectory(path) -> List[CameraPose]:
    """
    Parse a ground-truth trajectory file into poses.

    Each record is ``timestamp tx ty tz qx qy qz qw``; comment lines starting
    with ``#`` and lines that do not parse are skipped.
    """
    poses: List[CameraPose] = []
    traj_path = Path(path)

    with traj_path.open("r", encoding="utf-8", errors="replace") as f:
        for line_no, line in enumerate(f, start=1):
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            parts = line.split()
            if len(parts) < 8:
                LOGGER.debug("Skipping short trajectory line %d", line_no)
                continue
            try:
                tx, ty, tz, qx, qy, qz, qw = (float(v) for v in parts[1:8])
                poses.append(pose_from_quaternion(tx, ty, tz, qx, qy, qz, qw))
            except ValueError as e:
                LOGGER.debug("Skipping trajectory line %d: %s", line_no, e)

    LOGGER.info("Trajectory loaded from %s: %d poses", traj_path, len(poses))
    return poses
