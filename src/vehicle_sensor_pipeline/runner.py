"""Blocking command-line session: build the pipeline, run it, tear it down."""

from __future__ import annotations

import asyncio
import logging
import sys
import threading
from typing import Optional

from .acquisition import AcquisitionManager
from .calibration import CalibrationEngine, CalibrationResult, CalibrationStore
from .config import SOURCE_BLE, RuntimeConfig
from .dynamics import VehicleDynamics
from .models import AccelerometerReading, SensorType, StagedReading
from .pipeline import SensorPipeline
from .power import PowerModeController, SimpleLifecycle
from .processor import SensorProcessor
from .records import BufferDrainThread, CsvRecordStream, RecordBuffer, RecorderManager
from .sources import SensorSource, create_mock_sources

logger = logging.getLogger(__name__)

# Sensors a XIAO nRF52840 Sense carries
BLE_SENSORS = (SensorType.ACCELEROMETER, SensorType.GYROSCOPE)


def build_sources(config: RuntimeConfig) -> dict[SensorType, SensorSource]:
    if config.source == SOURCE_BLE:
        # bleak is only needed for real hardware
        from .ble_source import DEVICE_NAME, XiaoImuLink, create_ble_sources

        link = XiaoImuLink(
            config.address,
            device_name=config.device_name or DEVICE_NAME,
            scan_timeout=config.scan_timeout,
            idle_timeout=config.idle_timeout,
        )
        return create_ble_sources(link)
    return create_mock_sources()


def check_availability(acquisition: AcquisitionManager) -> int:
    """Print one "sensor,available|unavailable" line per sensor.

    Returns:
        0 if at least one sensor is available, 1 otherwise.
    """
    availability = asyncio.run(acquisition.check_sensors_availability())
    for sensor, available in availability.items():
        print(f"{sensor.value},{'available' if available else 'unavailable'}")
    return 0 if any(availability.values()) else 1


def run(config: RuntimeConfig) -> int:
    """Run one acquisition session.

    Returns:
        int: Exit code following Unix conventions:
            0: Normal completion
            1: Error termination (no sensors, device not found, etc.)
            130: Keyboard interrupt (SIGINT/Ctrl+C)
    """
    pipeline: Optional[SensorPipeline] = None
    recorder: Optional[RecorderManager] = None
    csv_output: Optional[BufferDrainThread] = None
    power: Optional[PowerModeController] = None

    try:
        acquisition = AcquisitionManager(build_sources(config))
        if config.check_availability:
            return check_availability(acquisition)

        store = CalibrationStore(config.calibration_file) if config.calibration_file else None
        calibration = CalibrationEngine(store.load() if store else None)
        processor = SensorProcessor(calibration)

        power = PowerModeController()
        power.initialize(SimpleLifecycle(config.app_state))
        if config.power_mode is not None:
            power.set_power_mode(config.power_mode)

        # Sensor threads only append to the buffer; terminal and file output
        # run on their own drain threads
        buffer = RecordBuffer()
        outputs = config.csv or config.record_dir is not None
        if config.csv:
            stream = CsvRecordStream(sys.stdout, show_header=config.show_header)
            csv_output = BufferDrainThread(buffer, stream.write, name="CsvOutput")
            csv_output.start()
        if config.record_dir is not None:
            recorder = RecorderManager(
                buffer,
                config.record_dir,
                device_info={"source": config.source, "device_name": config.device_name or ""},
            )
            recorder.start_recording()

        dynamics = VehicleDynamics()

        def on_reading(sensor: SensorType, staged: StagedReading) -> None:
            if isinstance(staged, AccelerometerReading):
                dynamics.update(staged)

        pipeline = SensorPipeline(
            acquisition,
            calibration,
            processor,
            power,
            record_sink=buffer.append if outputs else None,
            on_reading=on_reading,
            sensors=BLE_SENSORS if config.source == SOURCE_BLE else None,
        )
        if not pipeline.start():
            logger.error("Failed to start sensor pipeline")
            return 1

        if config.calibrate_samples:
            def on_calibrated(result: Optional[CalibrationResult]) -> None:
                if result is None:
                    logger.error("Calibration failed")
                    return
                logger.info("Calibration complete from %d samples", result.sample_count)
                if store is not None:
                    store.save(calibration.state)

            logger.warning("Keep the device still: calibrating from %d samples", config.calibrate_samples)
            pipeline.start_calibration(config.calibrate_samples, on_complete=on_calibrated)

        done = threading.Event()
        if config.duration is None:
            while not done.wait(1.0):
                pass
        else:
            done.wait(config.duration)
        return 0

    except KeyboardInterrupt:
        # SIGINT: Return 130 by convention
        return 130
    except Exception as e:
        logger.exception("Fatal error: %s", e)
        return 1
    finally:
        if pipeline is not None:
            pipeline.stop()
            logger.info("Final status: %s", pipeline.status())
            logger.info("Peak traction circle usage: %.1f%%", dynamics.peak_traction_circle)
        if csv_output is not None:
            csv_output.stop()
        if recorder is not None and recorder.is_recording:
            session = recorder.stop_recording()
            logger.info("Recorded %d records to %s", session.total_samples, session.file_path)
        if power is not None:
            power.cleanup()
