"""
Main entry point for the TAGBRIDGE application.

Runs the capture/detection loop and publishes marker poses to the host over
UDP, or runs a short capture diagnostic.

Usage:
    tagbridge --calibration camera_parameters.json     # Detect and publish
    tagbridge --diagnose --output-dir debug_frames      # Save debug frames
    tagbridge --video recording.mp4 --max-frames 300    # Replay a recording
    tagbridge --verbose                                 # Enable debug logging
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import time

from .calibration import CalibrationError
from .diagnostics import OrientationProbe, run_diagnostics
from .marker_detect import MarkerDetector
from .plugin import AprilTagDetector
from .pose import PoseEstimator
from .publisher import DetectionPublisher
from .utils import get_config, setup_logging, validate_config
from .video import create_source

LOGGER = logging.getLogger(__name__)

STATS_INTERVAL = 5.0


def parse_args(argv=None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="TAGBRIDGE - AprilTag pose reporting for a host game engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  tagbridge --calibration camera_parameters.json
  tagbridge --backend opencv --camera-id 1 --udp-port 5000
  tagbridge --diagnose --max-frames 30 --output-dir debug_frames
        """,
    )

    parser.add_argument("--config", "-c", help="JSON or TOML configuration file")
    parser.add_argument("--calibration", help="Camera parameter file (.json or .toml)")
    parser.add_argument(
        "--backend",
        choices=["auto", "libcamera", "opencv", "file"],
        help="Capture backend (default from config: auto)",
    )
    parser.add_argument("--camera-id", type=int, help="Camera index")
    parser.add_argument("--video", help="Replay a video file instead of a camera")
    parser.add_argument("--flip", action="store_true", help="Mirror frames horizontally")
    parser.add_argument("--marker-size", type=float, help="Marker side length in meters")
    parser.add_argument("--dictionary", help="Marker dictionary (default apriltag_36h11)")
    parser.add_argument("--udp-host", help="Host to publish detections to")
    parser.add_argument("--udp-port", type=int, help="UDP port to publish detections to")
    parser.add_argument("--rate", type=float, help="Publish rate in Hz")
    parser.add_argument("--no-publish", action="store_true", help="Do not publish over UDP")
    parser.add_argument("--diagnose", action="store_true", help="Run capture diagnostics and exit")
    parser.add_argument("--max-frames", type=int, help="Stop after this many frames")
    parser.add_argument("--output-dir", help="Directory for diagnostic images")
    parser.add_argument(
        "--verbose", "-V",
        action="store_true",
        help="Enable verbose/debug logging",
    )

    return parser.parse_args(argv)


def apply_overrides(config: dict, args: argparse.Namespace) -> dict:
    """Fold command-line options into the configuration."""
    camera = config["camera"]
    if args.backend:
        camera["backend"] = args.backend
    if args.camera_id is not None:
        camera["camera_id"] = args.camera_id
    if args.video:
        camera["video_path"] = args.video
        if not args.backend:
            camera["backend"] = "file"
    if args.flip:
        camera["flip_horizontal"] = True

    if args.calibration:
        config["pose"]["calibration_file"] = args.calibration
    if args.marker_size is not None:
        config["pose"]["marker_size"] = args.marker_size
    if args.dictionary:
        config["detector"]["dictionary"] = args.dictionary

    publisher = config["publisher"]
    if args.udp_host:
        publisher["host"] = args.udp_host
    if args.udp_port is not None:
        publisher["port"] = args.udp_port
    if args.rate is not None:
        publisher["rate_hz"] = args.rate
    if args.no_publish:
        publisher["enabled"] = False

    diagnostics = config["diagnostics"]
    if args.max_frames is not None:
        diagnostics["max_frames"] = args.max_frames
    if args.output_dir:
        diagnostics["output_dir"] = args.output_dir
    return config


def run_diagnose(config: dict) -> int:
    diagnostics = config["diagnostics"]
    estimator = PoseEstimator(config["pose"])
    estimator.initialize()
    probe = OrientationProbe(
        MarkerDetector(config["detector"]),
        estimator,
        output_dir=diagnostics.get("output_dir"),
        save_every=diagnostics.get("save_every", 10),
        axis_length=diagnostics.get("axis_length", 0.02),
    )
    summary = run_diagnostics(create_source(config["camera"]), probe, diagnostics.get("max_frames", 30))
    print(json.dumps(summary, indent=2))
    return 0


def run_detection(config: dict, max_frames=None) -> int:
    detector = AprilTagDetector(config)
    if not detector.initialize_camera() or not detector.start_camera():
        LOGGER.error("Could not start the camera")
        detector.close()
        return 1

    publisher = None
    if config["publisher"].get("enabled", True):
        publisher = DetectionPublisher.from_config(detector.get_latest_detections, config["publisher"])
        publisher.start()

    pipeline = detector.pipeline
    next_stats = time.monotonic() + STATS_INTERVAL
    try:
        while True:
            if max_frames and pipeline.wait_for_frames(max_frames, timeout=0.5):
                break
            if not max_frames:
                time.sleep(0.5)
            if detector.source is not None and detector.source.finished.is_set():
                LOGGER.info("Capture source finished")
                break
            if time.monotonic() >= next_stats:
                LOGGER.info("Pipeline stats: %s", pipeline.stats())
                next_stats += STATS_INTERVAL
    except KeyboardInterrupt:
        LOGGER.info("Interrupted")
    finally:
        if publisher is not None:
            publisher.stop()
        detector.close()

    LOGGER.info("Final stats: %s", pipeline.stats())
    return 0


def main(argv=None):
    """Main entry point."""
    args = parse_args(argv)

    log_level = logging.DEBUG if args.verbose else logging.INFO
    setup_logging(level=log_level)

    LOGGER.info("Starting TAGBRIDGE...")

    try:
        config = apply_overrides(get_config(args.config), args)
        if not validate_config(config):
            sys.exit(2)

        if args.diagnose:
            code = run_diagnose(config)
        else:
            code = run_detection(config, max_frames=args.max_frames)
    except (FileNotFoundError, CalibrationError, ValueError) as e:
        LOGGER.error("%s", e)
        sys.exit(1)
    except RuntimeError as e:
        LOGGER.error("Application error: %s", e)
        sys.exit(1)

    LOGGER.info("TAGBRIDGE exited normally")
    sys.exit(code)


if __name__ == "__main__":
    main()
