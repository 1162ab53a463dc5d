"""Composition root wiring power control, acquisition, processing and output.

    PowerModeController --(mode, config)--> SensorPipeline._apply_mode
        -> AcquisitionManager.update_configuration / start_sensors
        -> SensorProcessor.set_processing_level

    SensorSource -> AcquisitionManager -> SensorPipeline._handle_reading
        -> SensorProcessor -> on_reading(sensor, staged)
        -> reading_to_record -> batch -> record_sink(record)

Nothing here is a singleton: every collaborator is constructed by the caller
and passed in, and start()/stop() are explicit.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Iterable, Optional, Sequence

from .acquisition import AcquisitionManager
from .calibration import CalibrationEngine, CalibrationResult, CalibrationSession
from .models import ModeConfig, PowerMode, Reading, SensorType, StagedReading
from .power import PowerModeController
from .processor import SensorProcessor
from .records import Record, reading_to_record

logger = logging.getLogger(__name__)

RecordSink = Callable[[Record], None]
ReadingListener = Callable[[SensorType, StagedReading], None]


class SensorPipeline:
    """Runs the acquisition pipeline under control of the power mode.

    The active mode decides which sensors run (interval 0 switches a sensor
    off), their sampling intervals, the processing level and how many records
    are batched before they reach record_sink. Exceptions raised by
    on_reading or record_sink are logged and never reach the sensor thread.

    Args:
        acquisition: Manager owning the sensor subscriptions.
        calibration: Engine shared with processor.
        processor: Staged transform applied to every reading.
        power: Controller whose mode changes reconfigure the pipeline.
        record_sink: Receives every record once its batch is full. It is
            called without any pipeline lock held, possibly from several
            sensor threads at once, so it must be thread-safe. Records of one
            sensor arrive in order.
        on_reading: Receives every staged reading as soon as it is processed.
        sensors: Sensors the pipeline may use. Defaults to all of them; pass
            a subset when the device lacks some hardware.
    """

    def __init__(
        self,
        acquisition: AcquisitionManager,
        calibration: CalibrationEngine,
        processor: SensorProcessor,
        power: PowerModeController,
        record_sink: Optional[RecordSink] = None,
        on_reading: Optional[ReadingListener] = None,
        *,
        sensors: Optional[Iterable[SensorType]] = None,
    ) -> None:
        self._acquisition = acquisition
        self._calibration = calibration
        self._processor = processor
        self._power = power
        self._record_sink = record_sink
        self._on_reading = on_reading
        allowed = set(SensorType) if sensors is None else {SensorType(s) for s in sensors}
        self._sensors = tuple(sensor for sensor in SensorType if sensor in allowed)

        self._lock = threading.Lock()
        self._pending: list[Record] = []
        self._batch_size = 1
        self._running = False
        self._enabled: tuple[SensorType, ...] = ()
        self._sensors_ok = False
        self._processed = {sensor: 0 for sensor in SensorType}
        self._calibration_session: Optional[CalibrationSession] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> bool:
        """Follow the power controller and open the sensors of the current mode.

        Returns:
            False if the sensors of the current mode could not be started;
            the pipeline is then left stopped.
        """
        if self._running:
            logger.info("SensorPipeline already running")
            return True

        self._running = True
        # subscribe() delivers the current mode immediately
        self._power.subscribe(self._apply_mode)

        if not self._sensors_ok:
            logger.error("SensorPipeline failed to start sensors for %s mode", self._power.current_mode.value)
            self.stop()
            return False

        logger.info("SensorPipeline started in %s mode", self._power.current_mode.value)
        return True

    def stop(self) -> bool:
        """Stop following the power mode, close sensors and flush. Idempotent."""
        if not self._running:
            return True
        self._running = False

        self._power.unsubscribe(self._apply_mode)
        ok = self._acquisition.stop_sensors()
        self._enabled = ()
        self.flush()
        logger.info("SensorPipeline stopped")
        return ok

    @property
    def is_running(self) -> bool:
        return self._running

    def _apply_mode(self, mode: PowerMode, config: ModeConfig) -> None:
        if not self._running:
            return

        # A sensor missing from the interval map keeps its current interval;
        # only an explicit 0 switches it off
        enabled = tuple(
            sensor for sensor in self._sensors if config.interval_for(sensor) != 0
        )
        intervals = {
            sensor: config.update_interval[sensor]
            for sensor in enabled
            if sensor in config.update_interval
        }

        self._processor.set_processing_level(config.processing_level)
        self._acquisition.update_configuration(
            {"update_interval": intervals, "batch_size": config.batch_size}
        )

        with self._lock:
            self._batch_size = max(1, config.batch_size)
            flush_now = len(self._pending) >= self._batch_size

        if flush_now:
            self.flush()

        if enabled == self._enabled and self._acquisition.is_running:
            self._sensors_ok = True
            return

        if not enabled:
            logger.info("No sensors enabled in %s mode", mode.value)
            self._acquisition.stop_sensors()
            self._enabled = ()
            self._sensors_ok = True
            return

        self._sensors_ok = self._acquisition.start_sensors(
            {sensor: self._make_callback(sensor) for sensor in enabled}
        )
        self._enabled = enabled if self._sensors_ok else ()
        logger.info(
            "%s mode: sensors %s",
            mode.value,
            ", ".join(sensor.value for sensor in self._enabled) or "none",
        )

    # ------------------------------------------------------------------
    # Data path
    # ------------------------------------------------------------------

    def _make_callback(self, sensor: SensorType) -> Callable[[Reading], None]:
        def callback(reading: Reading) -> None:
            self._handle_reading(sensor, reading)

        return callback

    def _handle_reading(self, sensor: SensorType, reading: Reading) -> None:
        session = self._calibration_session
        if sensor is SensorType.ACCELEROMETER and session is not None and session.is_active:
            session.add_sample(reading)

        staged = self._processor.process(sensor, reading)
        with self._lock:
            self._processed[sensor] += 1

        if self._on_reading is not None:
            try:
                self._on_reading(sensor, staged)
            except Exception:
                logger.exception("Error in reading listener for %s", sensor.value)

        if self._record_sink is None:
            return

        record = reading_to_record(staged, sensor)
        with self._lock:
            self._pending.append(record)
            if len(self._pending) < self._batch_size:
                return
            batch, self._pending = self._pending, []
        self._emit(batch)

    def flush(self) -> int:
        """Hand any partially filled batch to the sink. Returns the record count."""
        with self._lock:
            batch, self._pending = self._pending, []
        self._emit(batch)
        return len(batch)

    def _emit(self, batch: Sequence[Record]) -> None:
        if self._record_sink is None:
            return
        for record in batch:
            try:
                self._record_sink(record)
            except Exception:
                logger.exception("Error in record sink")

    # ------------------------------------------------------------------
    # Calibration
    # ------------------------------------------------------------------

    def calibrate(self, samples: Sequence[Any]) -> Optional[CalibrationResult]:
        """Calibrate from rest samples and restart filtering from the new baseline."""
        result = self._calibration.calibrate_gravity_vector(samples)
        if result is not None:
            self._processor.reset()
        return result

    def start_calibration(
        self,
        target_sample_count: int,
        on_complete: Optional[Callable[[Optional[CalibrationResult]], None]] = None,
        on_progress: Optional[Callable[[float], None]] = None,
    ) -> CalibrationSession:
        """Calibrate from the next target_sample_count live accelerometer readings."""

        def complete(result: Optional[CalibrationResult]) -> None:
            if result is not None:
                self._processor.reset()
            if on_complete is not None:
                on_complete(result)

        session = CalibrationSession(
            self._calibration,
            target_sample_count,
            on_progress=on_progress,
            on_complete=complete,
        )
        session.start()
        self._calibration_session = session
        return session

    # ------------------------------------------------------------------
    # Monitoring
    # ------------------------------------------------------------------

    def status(self) -> dict[str, Any]:
        statistics = self._acquisition.get_statistics()
        with self._lock:
            pending = len(self._pending)
            processed = {sensor.value: count for sensor, count in self._processed.items()}
        return {
            "running": self._running,
            "power_mode": self._power.current_mode.value,
            "processing_level": self._processor.processing_level.value,
            "active_sensors": [sensor.value for sensor in self._acquisition.active_sensors],
            "calibrated": self._calibration.is_calibrated,
            "pending_records": pending,
            "processed": processed,
            "statistics": {
                sensor.value: {
                    "reading_count": stats.reading_count,
                    "error_count": stats.error_count,
                    "last_reading_timestamp": stats.last_reading_timestamp,
                }
                for sensor, stats in statistics.items()
            },
        }

    def __repr__(self) -> str:
        state = "running" if self._running else "stopped"
        return f"<SensorPipeline({state}, mode={self._power.current_mode.value})>"
