"""
Check that the depth server is reachable and returns usable depth maps.

Usage:
    python examples/check_server.py --host 192.168.3.42 --port 5000
    python examples/check_server.py --host 10.0.0.5 --image frame.png
"""

import argparse
import os
import sys

import cv2
import numpy as np

# Add src directory to path
sys.path.append(os.path.join(os.path.dirname(__file__), '..', 'src'))

from inference import DepthClient, InferenceError
from pixel_selector import PixelSelector
from utils import DEFAULT_PORT, parse_server_address, setup_logging


def synthetic_frame(width=640, height=480):
    """Checkerboard with enough texture for pixel selection."""
    ys, xs = np.mgrid[0:height, 0:width]
    board = (((xs // 40) + (ys // 40)) % 2 * 255).astype(np.uint8)
    return cv2.merge([board, board, board])


def check_server(client, image):
    print("=" * 60)
    print("Depth Server Check")
    print("=" * 60)
    print(f"\nServer: {client.config.base_url}")

    print("\n1. Health endpoint...")
    try:
        client.check_health()
        print("   ✓ Server ready")
    except InferenceError as e:
        print(f"   ✗ {e}")
        return False

    print("\n2. Depth prediction...")
    try:
        result = client.predict_depth(image)
    except InferenceError as e:
        print(f"   ✗ {e}")
        return False

    depth = result.depth_map
    print(f"   ✓ Model: {result.model_label or 'unknown'}")
    print(f"   Depth map: {result.image_shape[0]}x{result.image_shape[1]} ({depth.dtype})")
    print(f"   Depth range: {depth.min()} - {depth.max()}")
    print(f"   Inference: {result.inference_time_s * 1000:.1f} ms")
    print(f"   Round trip: {result.network_time_s * 1000:.1f} ms")

    print("\n3. Pixel selection on the returned depth...")
    points = PixelSelector().select(image, depth)
    print(f"   Selected points: {len(points)}")
    if points:
        zs = np.array([p.z for p in points])
        print(f"   Point depth: {zs.min():.2f} - {zs.max():.2f} m")

    print("\n" + "=" * 60)
    print("SUCCESS: Depth server is working")
    print("=" * 60)
    return True


def main():
    parser = argparse.ArgumentParser(description="Probe the depth inference server")
    parser.add_argument("--host", default="192.168.3.42", help="Server host, host:port or URL")
    parser.add_argument("--port", type=int, default=None, help="Server port")
    parser.add_argument("--image", help="Image to send (synthetic checkerboard if omitted)")
    args = parser.parse_args()

    setup_logging()

    address = parse_server_address(args.host, args.port or DEFAULT_PORT)
    if address is None:
        print(f"Invalid server address: {args.host}")
        sys.exit(2)
    host, port = address
    if args.port is not None:
        port = args.port

    if args.image:
        image = cv2.imread(args.image, cv2.IMREAD_COLOR)
        if image is None:
            print(f"Cannot read image: {args.image}")
            sys.exit(2)
    else:
        image = synthetic_frame()

    with DepthClient({"host": host, "port": port}) as client:
        success = check_server(client, image)
    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
