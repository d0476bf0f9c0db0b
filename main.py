#!/usr/bin/env python3
"""
Stereo Calibration & Disparity Pipeline - Main Entry Point
==========================================================

Calibrates a stereo rig from a side-by-side composite feed with a chessboard
target, then shows rectified views, the normalized disparity map and the
reprojected depth every few frames.

Usage:
    python main.py --video stereo_sbs.mp4
    python main.py --webcam 0 --calibration calibration.npz

References:
- OpenCV Python Tutorials: https://docs.opencv.org/4.x/d6/d00/tutorial_py_root.html
- OpenCV Camera Calibration: https://docs.opencv.org/4.x/dc/dbb/tutorial_py_calibration.html
"""

import argparse
import logging
import sys
from pathlib import Path

import cv2

from stereo_calib.calibration import load_rectification_maps, save_rectification_maps
from stereo_calib.config import PipelineConfig, create_default_config, load_config_from_json
from stereo_calib.display import WindowSink
from stereo_calib.frame import CompositeVideoSource
from stereo_calib.scheduler import FrameScheduler
from stereo_calib.state import SessionState

logger = logging.getLogger("stereo_calib")


def parse_args():
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Stereo calibration and disparity from a side-by-side feed",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Calibrate from a side-by-side video, saving the result
    python main.py --video stereo_sbs.mp4 --save-calibration calibration.npz

    # Reuse a saved calibration on a live side-by-side webcam
    python main.py --webcam 0 --calibration calibration.npz

    # Headless run over the first 400 ticks
    python main.py --video stereo_sbs.mp4 --calibration calibration.npz --no-display --max-ticks 400
        """,
    )

    # Input sources
    input_group = parser.add_mutually_exclusive_group(required=True)
    input_group.add_argument(
        "--webcam", type=int, metavar="INDEX",
        help="Index of a webcam that delivers both eyes side by side",
    )
    input_group.add_argument("--video", type=str, help="Path to a side-by-side stereo video")

    # Configuration
    parser.add_argument("--config", type=str, help="Path to pipeline JSON configuration")
    parser.add_argument("--calibration", type=str, help="Load calibration results (.npz)")
    parser.add_argument(
        "--save-calibration", type=str,
        help="Save calibration results (.npz) after a successful calibration",
    )

    # Matcher
    parser.add_argument(
        "--matcher", type=str, choices=["bm", "sgbm"],
        help="Stereo matcher (default: bm)",
    )
    parser.add_argument(
        "--num-disparities", type=int,
        help="Disparity search range (default: 64, must be divisible by 16)",
    )
    parser.add_argument("--block-size", type=int, help="Matching block size (default: 21, must be odd)")
    parser.add_argument("--min-disparity", type=int, help="Minimum disparity (default: 0)")

    # Performance
    parser.add_argument(
        "--downsample", type=float, default=1.0,
        help="Downsample factor for performance (default: 1.0 = no downsampling)",
    )
    parser.add_argument("--max-ticks", type=int, help="Stop after this many ticks")

    # Output
    parser.add_argument("--output", type=str, help="Output directory for point clouds")
    parser.add_argument(
        "--no-display", action="store_true",
        help="Run without display (useful for headless processing)",
    )
    parser.add_argument(
        "--log-level", type=str, default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )

    return parser.parse_args()


def setup_config(args) -> PipelineConfig:
    """Load or create the pipeline configuration, then apply CLI overrides."""
    if args.config:
        logger.info("Loading configuration from: %s", args.config)
        config = load_config_from_json(args.config)
    else:
        config = create_default_config()

    if args.matcher is not None:
        config.matcher_type = args.matcher
    if args.num_disparities is not None:
        config.num_disparities = args.num_disparities
    if args.block_size is not None:
        config.block_size = args.block_size
    if args.min_disparity is not None:
        config.min_disparity = args.min_disparity
    config.validate()
    return config


def handle_key(key: int, state: SessionState, sink: WindowSink, args, frame_idx: int) -> bool:
    """
    Apply a key press to the session.

    Returns:
        False if the user asked to quit
    """
    if key == ord("q"):
        print("\nQuitting...")
        return False
    elif key == ord("c"):
        mode = state.toggle_calibration_mode()
        print(f"Calibration mode: {'ON' if mode else 'OFF'}")
    elif key == ord(" "):
        if not state.calibration_mode:
            print("Enable calibration mode ('c') before capturing pairs")
        pending = state.request_capture_pair()
        print(f"Capture requested (pair #{pending})")
    elif key == ord("k"):
        outcome = state.run_calibration()
        print(f"Calibration {outcome.status.value}: {outcome.message}")
        if outcome.errors:
            print("  RMS errors: " + ", ".join(f"{k}={v:.4f}" for k, v in outcome.errors.items()))
        if outcome.succeeded and args.save_calibration:
            save_rectification_maps(state.calibration_results, args.save_calibration)
    elif key == ord("p"):
        if args.output and state.have_calibration_results:
            sink.save_point_cloud_to = str(Path(args.output) / f"pointcloud_{frame_idx:04d}.ply")
            print("Point cloud will be saved from the next processed frame")
    return True


def main():
    """Main entry point."""
    args = parse_args()
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # Print header
    print("=" * 60)
    print("  Stereo Calibration & Disparity Pipeline")
    print("=" * 60)
    print()

    try:
        config = setup_config(args)
        maps = None
        if args.calibration:
            logger.info("Loading calibration from: %s", args.calibration)
            maps = load_rectification_maps(args.calibration)
    except (FileNotFoundError, ValueError) as e:
        print(f"Error: {e}")
        sys.exit(1)

    source = CompositeVideoSource(
        args.webcam if args.webcam is not None else args.video,
        downsample_factor=args.downsample,
    )
    if not source.open():
        print("Error: Could not open video source")
        sys.exit(1)

    if args.output:
        Path(args.output).mkdir(parents=True, exist_ok=True)

    state = SessionState(config)
    sink = None if args.no_display else WindowSink()
    scheduler = FrameScheduler(state, source.read, sink=sink)
    scheduler.attach()

    # attach() resets the session, so results go in afterwards
    if maps is not None:
        state.install_calibration_results(maps)

    print(f"Matcher: {config.matcher_type} "
          f"(disparities={config.num_disparities}, block={config.block_size})")
    print(f"Processing every {scheduler.cadence} ticks")
    print()
    print("Controls:")
    print("  'c' - Toggle calibration (chessboard capture) mode")
    print("  'SPACE' - Capture calibration pair")
    print("  'k' - Run calibration")
    print("  'p' - Save point cloud")
    print("  'q' - Quit")
    print()

    try:
        if args.no_display:
            scheduler.run(args.max_ticks)
        else:
            while args.max_ticks is None or state.tick_count < args.max_ticks:
                if scheduler.run(1) == 0:
                    break
                key = cv2.waitKey(1) & 0xFF
                if not handle_key(key, state, sink, args, state.tick_count):
                    break

    except KeyboardInterrupt:
        print("\nInterrupted by user")

    finally:
        scheduler.detach()
        source.close()
        if sink is not None:
            sink.close()

    print(f"\nProcessed {state.tick_count} ticks, dropped {scheduler.dropped_frames} frames")
    print("Done!")


if __name__ == "__main__":
    main()
