#!/usr/bin/env python3
"""
arraycal CLI - incremental camera/fiducial array calibration.

Usage:
    arraycal run CONFIG DETECTIONS [-o OUTPUT]  - Replay a detection log and write a calibration
    arraycal show CALIBRATION                   - Print a stored calibration
    arraycal --help                             - Show this help
"""

import argparse
import sys
from pathlib import Path


def run_main(argv=None) -> int:
    from arraycal.calibrator import ArrayCalibrator
    from arraycal.config import load_calibrator_config
    from arraycal.errors import ArraycalError
    from arraycal.logging_utils import setup_logging
    from arraycal.replay import read_detection_log, replay

    parser = argparse.ArgumentParser(prog="arraycal run", description="Replay a detection log")
    parser.add_argument("config", type=Path, help="Calibrator config (TOML)")
    parser.add_argument("detections", type=Path, help="Detection log (CSV)")
    parser.add_argument("-o", "--output", type=Path, default=None, help="Calibration output path")
    parser.add_argument("--log-file", default=None, help="Also log to this file")
    args = parser.parse_args(argv)

    try:
        config = load_calibrator_config(args.config)
        setup_logging(config.log_level, args.log_file)
        detections = read_detection_log(args.detections)
    except (OSError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    calibrator = ArrayCalibrator(config)
    replay(detections, calibrator.buffer_detection, calibrator.process_until)
    if detections:
        # Flush what is still inside the lag window
        calibrator.process_until(max(d.timestamp for d in detections) + config.max_lag)
    calibrator.optimize()

    try:
        path = calibrator.save(args.output)
    except ArraycalError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(calibrator.summary())
    print(f"\nSaved calibration to {path}")
    return 0


def show_main(argv=None) -> int:
    from arraycal.calibrator import format_snapshot
    from arraycal.config import read_array_calibration

    parser = argparse.ArgumentParser(prog="arraycal show", description="Print a stored calibration")
    parser.add_argument("calibration", type=Path, help="Calibration file (TOML)")
    args = parser.parse_args(argv)

    try:
        snapshot = read_array_calibration(args.calibration)
    except (OSError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(format_snapshot(snapshot))
    return 0


def main(argv=None):
    argv = sys.argv[1:] if argv is None else list(argv)

    if not argv or argv[0] in ("-h", "--help"):
        print(__doc__)
        print("Commands:")
        print("  run       Replay a detection log through the calibrator")
        print("  show      Print a stored calibration")
        print()
        return 0

    command, rest = argv[0], argv[1:]

    if command == "run":
        return run_main(rest)

    elif command == "show":
        return show_main(rest)

    else:
        print(f"Unknown command: {command}")
        print("Run 'arraycal --help' for usage")
        return 1


if __name__ == "__main__":
    sys.exit(main())
