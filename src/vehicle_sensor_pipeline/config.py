"""Runtime configuration assembled from command-line options."""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .models import PowerMode
from .power import APP_STATE_ACTIVE

SOURCE_MOCK = "mock"
SOURCE_BLE = "ble"


@dataclass
class RuntimeConfig:
    """Options for one CLI run.

    Attributes:
        source: "mock" for synthetic sensors, "ble" for a XIAO device.
        address: BLE address; discovered by name when None.
        device_name: Advertised BLE name to look for; the firmware default
            when None.
        scan_timeout: BLE discovery duration in seconds.
        idle_timeout: Seconds without BLE data before the link is checked.
        power_mode: Manual mode override applied after the app state.
        app_state: Initial host lifecycle state.
        calibrate_samples: Live accelerometer samples to calibrate from; 0 skips.
        calibration_file: JSON file the calibration is loaded from and saved to.
        record_dir: Directory for recorded sessions; no recording when None.
        duration: Seconds to run; until interrupted when None.
        csv: Stream records to stdout as CSV.
        show_header: Emit the CSV header row.
        check_availability: Only check sensor availability and exit.
        log_level: Root logging level name.
        log_file: Additional log file.
    """

    source: str = SOURCE_MOCK
    address: Optional[str] = None
    device_name: Optional[str] = None
    scan_timeout: float = 10.0
    idle_timeout: Optional[float] = 30.0
    power_mode: Optional[PowerMode] = None
    app_state: str = APP_STATE_ACTIVE
    calibrate_samples: int = 0
    calibration_file: Optional[Path] = None
    record_dir: Optional[Path] = None
    duration: Optional[float] = None
    csv: bool = False
    show_header: bool = True
    check_availability: bool = False
    log_level: str = "WARNING"
    log_file: Optional[str] = None

    def __post_init__(self) -> None:
        if self.source not in (SOURCE_MOCK, SOURCE_BLE):
            raise ValueError(f"Unknown sensor source: {self.source}")
        if self.power_mode is not None:
            self.power_mode = PowerMode(self.power_mode)
        if self.calibrate_samples < 0:
            raise ValueError("calibrate_samples must not be negative")
        if self.duration is not None and self.duration <= 0:
            raise ValueError("duration must be positive")

    @classmethod
    def from_args(cls, args: argparse.Namespace) -> "RuntimeConfig":
        return cls(
            source=SOURCE_BLE if args.ble else SOURCE_MOCK,
            address=args.address,
            device_name=args.device_name,
            scan_timeout=args.scan_timeout,
            idle_timeout=args.idle_timeout,
            power_mode=args.power_mode,
            app_state=args.app_state,
            calibrate_samples=args.calibrate,
            calibration_file=Path(args.calibration_file) if args.calibration_file else None,
            record_dir=Path(args.record_dir) if args.record_dir else None,
            duration=args.duration,
            csv=args.csv,
            show_header=not args.no_header,
            check_availability=args.check_availability,
            log_level=args.log_level,
            log_file=args.log_file,
        )
