"""
Main entry point for the SPARSEFUSE mapper.

Runs one mapping session: frames from a dataset folder or a live camera are
sent to the depth server and fused into a bounded point map.

Usage:
    python main.py --dataset path/to/sequence           # Replay a dataset
    python main.py --camera 0 --host 10.0.0.5           # Live camera
    python main.py --dataset seq --max-frames 100 -V    # Debug logging
"""

from __future__ import annotations

import argparse
import logging
import sys

from fusion import FusionPipeline, FusionResult
from inference import DepthClient, InferenceError
from utils import get_config, merge_config, parse_server_address, setup_logging, validate_config
from video import CameraImageSource, DatasetImageSource

LOGGER = logging.getLogger(__name__)


def parse_args(argv=None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="SPARSEFUSE - Sparse depth fusion into a bounded 3D point map",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py --dataset data/seq_01/images
  python main.py --camera 0 --host 192.168.3.42 --port 5000
  python main.py --dataset data/seq_01 --loop --config sparsefuse.json

Dataset layout:
  <folder>/*.png|jpg            Color frames, sorted by filename
  <meta>/groundtruthSync.txt    timestamp tx ty tz qx qy qz qw (or groundtruth.txt)
  <meta>/camera.txt             fx_rel fy_rel cx_rel cy_rel (first line)
  <meta> is the parent of <folder> when <folder> is named "images".
        """,
    )

    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--dataset", "-d", help="Image folder to replay")
    source.add_argument("--camera", "-c", type=int, help="Camera index for live capture")

    parser.add_argument("--host", help="Depth server host, host:port or URL")
    parser.add_argument("--port", "-p", type=int, help="Depth server port")
    parser.add_argument("--config", help="JSON configuration file")
    parser.add_argument("--max-frames", "-n", type=int, help="Stop after N fused frames")
    parser.add_argument("--loop", action="store_true", help="Restart the dataset when it ends")
    parser.add_argument(
        "--verbose", "-V",
        action="store_true",
        help="Enable verbose/debug logging (includes per-frame timing)",
    )

    return parser.parse_args(argv)


def build_config(args: argparse.Namespace):
    """Defaults, then the config file, then command-line overrides."""
    config = get_config(args.config)
    overrides = {}

    server = {}
    if args.host:
        parsed = parse_server_address(args.host, config['server']['port'])
        if parsed is None:
            raise ValueError(f"Invalid server address: {args.host}")
        server['host'], server['port'] = parsed
    if args.port is not None:
        server['port'] = args.port
    if server:
        overrides['server'] = server

    if args.loop:
        overrides['capture'] = {'loop': True}
    if args.camera is not None:
        overrides['camera'] = {'camera_id': args.camera}

    return merge_config(config, overrides)


def build_source(args: argparse.Namespace, config):
    if args.dataset:
        capture = config['capture']
        return DatasetImageSource(
            args.dataset,
            frame_delay_s=capture.get('frame_delay_s', 0.1),
            loop=capture.get('loop', False),
            loop_delay_s=capture.get('loop_delay_s', 1.0),
        )
    return CameraImageSource(config['camera'])


def log_progress(result: FusionResult):
    if result.is_keyframe:
        LOGGER.info(
            "Keyframe %d: %d live points, %d rendered, %d poses, %.1f fps",
            result.frame_index,
            result.live_point_count,
            len(result.points),
            len(result.trajectory),
            result.fps,
        )


def main(argv=None):
    """Main entry point."""
    args = parse_args(argv)

    log_level = logging.DEBUG if args.verbose else logging.INFO
    setup_logging(level=log_level)

    try:
        config = build_config(args)
    except ValueError as e:
        LOGGER.error("%s", e)
        sys.exit(2)
    if not validate_config(config):
        sys.exit(2)

    LOGGER.info("Starting SPARSEFUSE...")

    client = DepthClient(config['server'])
    try:
        client.check_health()
    except InferenceError as e:
        LOGGER.error("Depth server unavailable: %s", e)
        client.close()
        sys.exit(1)

    pipeline = FusionPipeline(config)
    source = build_source(args, config)

    pipeline.start(
        source,
        client,
        on_update=log_progress,
        on_error=lambda e: LOGGER.debug("Frame error: %s", e),
        max_frames=args.max_frames,
    )

    try:
        while not pipeline.wait(timeout=0.5):
            pass
    except KeyboardInterrupt:
        LOGGER.info("Interrupted, stopping session")
    finally:
        pipeline.stop()
        client.close()

    stats = pipeline.global_map.get_statistics()
    LOGGER.info(
        "Map summary: %d points, %d keyframes, %d frames, %d points evicted",
        stats['current_points'],
        stats['trajectory_length'],
        stats['frame_count'],
        stats['total_points_evicted'],
    )
    LOGGER.info("SPARSEFUSE exited normally")
    sys.exit(0)


if __name__ == "__main__":
    main()
