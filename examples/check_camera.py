"""
Check camera access and marker detection.

This script lists the cameras libcamera can see, captures a short burst of
frames through the configured capture backend, and reports frame rate and any
markers found.
"""

import argparse
import os
import platform
import sys
import threading
import time

import cv2

# Add src directory to path
sys.path.append(os.path.join(os.path.dirname(__file__), '..', 'src'))

from tagbridge.marker_detect import MarkerDetector
from tagbridge.utils import get_config, setup_logging
from tagbridge.video import create_source, libcamera_available, list_cameras


def check_camera(config, num_frames=30, save_path=None):
    """Capture ``num_frames`` frames and run detection on each."""
    print("=" * 60)
    print("Camera Check")
    print("=" * 60)

    print(f"\nSystem: {platform.system()} {platform.release()}")
    print(f"OpenCV version: {cv2.__version__}")

    print("\n1. Listing libcamera cameras...")
    if not libcamera_available():
        print("   picamera2 not installed - libcamera backend unavailable")
    else:
        cameras = list_cameras()
        if not cameras:
            print("   No libcamera cameras found")
        for index, info in enumerate(cameras):
            print(f"   [{index}] {info.get('Model', 'unknown')} {info.get('Id', '')}")

    print("\n2. Opening capture source...")
    source = create_source(config['camera'])
    print(f"   Backend: {source.name}")

    detector = MarkerDetector(config['detector'])
    frames = []
    marker_ids = set()
    done = threading.Event()

    def on_frame(frame, sequence, timestamp):
        if len(frames) >= num_frames:
            return
        frames.append(frame)
        for detection in detector.detect(frame):
            marker_ids.add(detection.marker_id)
        if len(frames) >= num_frames:
            done.set()

    if not source.start(on_frame):
        print("\n" + "=" * 60)
        print("ERROR: Cannot start camera!")
        print("=" * 60)
        print("\nTroubleshooting steps:")
        print("  - Make sure the camera ribbon/USB cable is connected")
        print("  - Close other apps using the camera")
        print("  - Run 'libcamera-hello --list-cameras' to check the driver")
        print("  - Try '--backend opencv' for USB webcams")
        print("=" * 60)
        return False

    print(f"\n3. Capturing {num_frames} frames...")
    started = time.monotonic()
    done.wait(timeout=max(10.0, num_frames / 5.0))
    elapsed = time.monotonic() - started
    source.stop()

    if not frames:
        print("   ✗ No frames received")
        return False

    height, width = frames[0].shape[:2]
    print(f"   ✓ {len(frames)} frames at {width}x{height}")
    print(f"   FPS: {len(frames) / elapsed:.1f}")

    print("\n4. Marker detection...")
    if marker_ids:
        print(f"   ✓ Markers seen: {sorted(marker_ids)}")
    else:
        print("   ✗ No markers seen - hold a printed tag in view, or try --flip")

    if save_path:
        cv2.imwrite(save_path, frames[-1])
        print(f"\n   Last frame saved to {save_path}")

    print("\n" + "=" * 60)
    print("SUCCESS: Camera is working correctly!")
    print("=" * 60)
    print("\nRun 'tagbridge --calibration camera_parameters.json' to start publishing.")
    print()
    return True


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Check camera access and marker detection")
    parser.add_argument("--config", "-c", help="JSON or TOML configuration file")
    parser.add_argument("--backend", choices=["auto", "libcamera", "opencv"], help="Capture backend")
    parser.add_argument("--frames", type=int, default=30, help="Number of frames to capture")
    parser.add_argument("--flip", action="store_true", help="Mirror frames horizontally")
    parser.add_argument("--save", help="Save the last captured frame to this path")
    args = parser.parse_args()

    setup_logging()

    config = get_config(args.config)
    if args.backend:
        config['camera']['backend'] = args.backend
    if args.flip:
        config['camera']['flip_horizontal'] = True

    success = check_camera(config, num_frames=args.frames, save_path=args.save)
    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
