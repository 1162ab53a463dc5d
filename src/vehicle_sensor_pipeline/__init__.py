from __future__ import annotations

import argparse
import logging
import sys

from .models import PowerMode
from .power import APP_STATE_ACTIVE

logger = logging.getLogger(__name__)


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="vehicle-sensor-pipeline",
        description=(
            "Acquire accelerometer, gyroscope and magnetometer streams, calibrate "
            "and filter them, and adapt sampling to the power mode. Records go to "
            "stdout as CSV and/or to session files."
        ),
    )

    source = parser.add_mutually_exclusive_group()
    source.add_argument(
        "--mock",
        action="store_true",
        help="Use synthetic sensors (default; no device required)",
    )
    source.add_argument(
        "--ble",
        action="store_true",
        help="Read accelerometer and gyroscope from a XIAO nRF52840 Sense over BLE",
    )
    parser.add_argument("--address", help="BLE address of the device (discovered when omitted)")
    parser.add_argument(
        "--device-name",
        default=None,
        help="Device name to look for while scanning (default: XIAO Sense IMU)",
    )
    parser.add_argument(
        "--scan-timeout",
        type=float,
        default=10.0,
        help="BLE scan timeout in seconds",
    )
    parser.add_argument(
        "--idle-timeout",
        type=float,
        default=30.0,
        help="Seconds without BLE data before the connection is considered lost",
    )

    parser.add_argument(
        "--power-mode",
        choices=[mode.value for mode in PowerMode],
        default=None,
        help="Force a power mode instead of following the app state",
    )
    parser.add_argument(
        "--app-state",
        default=APP_STATE_ACTIVE,
        help="Initial host app state: active, inactive or background (default: active)",
    )
    parser.add_argument(
        "--calibrate",
        type=int,
        default=0,
        metavar="N",
        help="Calibrate gravity from the first N accelerometer readings (device must be still)",
    )
    parser.add_argument(
        "--calibration-file",
        default=None,
        help="JSON file to load the calibration from and save it to",
    )

    parser.add_argument(
        "--record-dir",
        default=None,
        help="Record a session (CSV + .meta.json) under this directory",
    )
    parser.add_argument(
        "--duration",
        type=float,
        default=None,
        help="Stop after this many seconds (default: run until Ctrl+C)",
    )
    parser.add_argument(
        "--csv",
        action="store_true",
        help="Stream records to stdout as CSV",
    )
    parser.add_argument(
        "--no-header",
        action="store_true",
        help="Do not print the CSV header row (only with --csv)",
    )
    parser.add_argument(
        "--check-availability",
        action="store_true",
        help="Check which sensors are available and exit",
    )

    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=[
            "CRITICAL",
            "ERROR",
            "WARNING",
            "INFO",
            "DEBUG",
            "NOTSET",
        ],
        help="Log level (default: WARNING)",
    )
    parser.add_argument(
        "--log-file",
        default=None,
        help="Also write logs to this file (default: stderr only)",
    )

    args = parser.parse_args()

    # Records may go to stdout, so logs go to stderr and/or a file
    level = getattr(logging, str(args.log_level).upper(), logging.WARNING)
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if args.log_file:
        try:
            handlers.append(logging.FileHandler(args.log_file, encoding="utf-8"))
        except OSError as e:
            print(f"Cannot open log file {args.log_file}: {e}", file=sys.stderr)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=handlers,
        force=True,
    )

    from .config import RuntimeConfig
    from .runner import run

    try:
        config = RuntimeConfig.from_args(args)
    except ValueError as e:
        parser.error(str(e))

    logger.info("Starting with %s sensors", config.source)
    raise SystemExit(run(config))
