"""
Remote depth inference client.

Sends color frames to a depth-estimation HTTP server and maps its JSON
response into DepthResult objects the fusion pipeline consumes.

Server endpoints:
    GET  /health          -> {"status": "healthy", "model": "...", "ready": true}
    POST /api/v1/predict  -> {"status": "success", "model_info": {...},
                              "timing": {...}, "image_info": {...},
                              "depth_data": {"format": "base64_png", "data": "..."}}
"""

from __future__ import annotations

import base64
import binascii
import logging
import time
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import cv2
import numpy as np
import requests

from pose import CameraPose, identity_pose

LOGGER = logging.getLogger(__name__)


class InferenceError(RuntimeError):
    """A depth request failed; the frame should be dropped."""


@dataclass
class InferenceConfig:
    """Connection settings for the depth server."""

    host: str = "192.168.3.42"
    port: int = 5000
    timeout_s: float = 60.0
    request_width: int = 640
    request_height: int = 480
    jpeg_quality: int = 80
    predict_path: str = "api/v1/predict"
    health_path: str = "health"

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}/"


@dataclass
class DepthResult:
    """One inferred depth map together with the frame it belongs to."""

    depth_map: np.ndarray
    color_image: np.ndarray
    pose: CameraPose
    inference_time_s: float
    image_shape: Tuple[int, int]  # depth (width, height)
    original_shape: Tuple[int, int] = (0, 0)
    model_label: str = ""
    network_time_s: float = 0.0


class DepthClient:
    """
    HTTP client for the depth server.

    Each client owns its own ``requests.Session``; create a new client when
    the server address changes.
    """

    def __init__(self, config: Optional[Dict] = None, session: Optional[requests.Session] = None):
        if isinstance(config, InferenceConfig):
            self.config = config
        else:
            cfg_dict = dict(config or {})
            self.config = InferenceConfig(**{
                k: v for k, v in cfg_dict.items()
                if k in InferenceConfig.__dataclass_fields__
            })
        self.session = session or requests.Session()
        LOGGER.info("DepthClient configured for %s", self.config.base_url)

    def close(self):
        self.session.close()

    def __enter__(self) -> DepthClient:
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #
    def check_health(self) -> bool:
        """
        Query the health endpoint.

        Raises:
            InferenceError: If the server is unreachable or not ready
        """
        url = self.config.base_url + self.config.health_path
        try:
            response = self.session.get(url, timeout=self.config.timeout_s)
            response.raise_for_status()
            payload = response.json()
        except (requests.RequestException, ValueError) as e:
            raise InferenceError(f"Health check failed: {e}") from e

        if not isinstance(payload, dict):
            raise InferenceError(f"Health check failed: unexpected payload {payload!r}")
        status = payload.get("status")
        if payload.get("ready") and status in ("healthy", "success"):
            LOGGER.info("Depth server ready: %s", payload.get("model", "unknown model"))
            return True
        raise InferenceError(f"Server not ready: {status}")

    def predict_depth(self, image: np.ndarray, pose: Optional[CameraPose] = None) -> DepthResult:
        """
        Request a depth map for one BGR image.

        Args:
            image: Color frame to send
            pose: Camera pose carried through to the result (identity if None)

        Returns:
            DepthResult with the decoded depth map

        Raises:
            InferenceError: On transport failure, non-success status or a
                malformed payload
        """
        if image is None or image.size == 0:
            raise InferenceError("Empty image")

        body = self._encode_image(image)
        url = self.config.base_url + self.config.predict_path

        network_start = time.perf_counter()
        try:
            response = self.session.post(
                url,
                files={"image": ("frame.jpg", body, "image/jpeg")},
                timeout=self.config.timeout_s,
            )
            response.raise_for_status()
            payload = response.json()
        except (requests.RequestException, ValueError) as e:
            raise InferenceError(f"Depth request failed: {e}") from e
        network_time = time.perf_counter() - network_start

        return self._parse_response(payload, image, pose or identity_pose(), network_time)

    # ------------------------------------------------------------------ #
    # Internals
    # ------------------------------------------------------------------ #
    def _encode_image(self, image: np.ndarray) -> bytes:
        size = (self.config.request_width, self.config.request_height)
        if (image.shape[1], image.shape[0]) != size:
            image = cv2.resize(image, size, interpolation=cv2.INTER_LINEAR)
        ok, buffer = cv2.imencode(
            ".jpg", image, [int(cv2.IMWRITE_JPEG_QUALITY), int(self.config.jpeg_quality)]
        )
        if not ok:
            raise InferenceError("JPEG encoding failed")
        return buffer.tobytes()

    def _parse_response(
        self,
        payload: Dict,
        image: np.ndarray,
        pose: CameraPose,
        network_time: float,
    ) -> DepthResult:
        if not isinstance(payload, dict):
            raise InferenceError(f"Malformed server response: expected an object, got {type(payload).__name__}")
        status = payload.get("status")
        if status != "success":
            raise InferenceError(f"Server error: {status}")

        try:
            model_info = payload.get("model_info", {})
            timing = payload["timing"]
            image_info = payload["image_info"]
            encoded = payload["depth_data"]["data"]

            depth_map = decode_depth_png(encoded)
            result = DepthResult(
                depth_map=depth_map,
                color_image=image,
                pose=pose,
                inference_time_s=float(timing["inference_ms"]) / 1000.0,
                image_shape=(int(image_info["depth_width"]), int(image_info["depth_height"])),
                original_shape=(
                    int(image_info.get("original_width", image.shape[1])),
                    int(image_info.get("original_height", image.shape[0])),
                ),
                model_label=f"{model_info.get('name', '')} {model_info.get('version', '')}".strip(),
                network_time_s=network_time,
            )
        except (KeyError, TypeError, ValueError) as e:
            raise InferenceError(f"Malformed depth response: {e}") from e

        LOGGER.debug(
            "Depth %sx%s from %s (inference %.1f ms, network %.1f ms)",
            result.image_shape[0], result.image_shape[1], result.model_label or "server",
            result.inference_time_s * 1000, network_time * 1000,
        )
        return result


def decode_depth_png(encoded: str) -> np.ndarray:
    """
    Decode a base64 PNG depth map.

    Raises:
        ValueError: If the payload is not valid base64 or not an image
    """
    try:
        raw = base64.b64decode(encoded, validate=False)
    except (binascii.Error, TypeError) as e:
        raise ValueError(f"Invalid base64 depth data: {e}") from e
    if not raw:
        raise ValueError("Empty depth payload")

    try:
        depth = cv2.imdecode(np.frombuffer(raw, dtype=np.uint8), cv2.IMREAD_UNCHANGED)
    except cv2.error as e:
        raise ValueError(f"Depth payload could not be decoded: {e}") from e
    if depth is None:
        raise ValueError("Depth payload is not a decodable image")
    return depth
