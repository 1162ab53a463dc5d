"""Staged signal processing for validated sensor readings.

Each reading moves through up to five stages:

    raw -> transformed -> limited -> filtered -> processed

- transformed: calibration applied (removal of the gravity-aligned component for
  the accelerometer, pass-through for the other sensors)
- limited: per-axis rate-of-change clamp against the previous limited value
- filtered: first-order low-pass (exponential smoothing)
- processed: the final value handed to consumers

How many stages run is decided by the active ProcessingLevel so that low
power modes skip the per-sample arithmetic they do not need.
"""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass, field
from typing import Optional

from .calibration import CalibrationEngine
from .models import (
    AccelerometerReading,
    GyroscopeReading,
    ProcessingLevel,
    Reading,
    SensorType,
    StagedReading,
    Vector3,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AxisFilter:
    """Rate limit and smoothing factor for one sensor.

    Attributes:
        max_delta: Largest allowed change per sample on each axis. None
            disables rate limiting for the sensor.
        alpha: Low-pass weight of the new sample on each axis (0..1].
    """

    max_delta: Optional[Vector3]
    alpha: Vector3


@dataclass(frozen=True)
class FilterSettings:
    accelerometer: AxisFilter = AxisFilter(max_delta=(0.025, 0.025, 0.05), alpha=(0.1, 0.1, 0.2))
    gyroscope: AxisFilter = AxisFilter(max_delta=(0.3, 0.3, 0.3), alpha=(0.5, 0.5, 0.5))
    magnetometer: AxisFilter = AxisFilter(max_delta=None, alpha=(0.2, 0.2, 0.2))

    def for_sensor(self, sensor: SensorType) -> AxisFilter:
        return getattr(self, SensorType(sensor).value)


def limit_rate_of_change(new_value: float, old_value: float, max_delta: float) -> float:
    delta = new_value - old_value
    if delta > max_delta:
        return old_value + max_delta
    if delta < -max_delta:
        return old_value - max_delta
    return new_value


def low_pass(new_value: float, old_value: float, alpha: float) -> float:
    if math.isnan(new_value) or math.isnan(old_value):
        return new_value
    return (new_value - old_value) * alpha + old_value


@dataclass
class _AxisState:
    previous_limited: Vector3 = (0.0, 0.0, 0.0)
    previous_filtered: Vector3 = (0.0, 0.0, 0.0)
    samples: int = field(default=0)


class SensorProcessor:
    """Turns validated readings into staged readings.

    Limiter and filter state is kept per sensor; the first sample of a sensor
    seeds that state so the output does not ramp up from zero.

    Args:
        calibration: Engine used for the transformed stage.
        filters: Rate limit and smoothing settings per sensor.
        processing_level: Initial processing level.
    """

    def __init__(
        self,
        calibration: CalibrationEngine,
        filters: Optional[FilterSettings] = None,
        processing_level: ProcessingLevel = ProcessingLevel.FULL,
    ) -> None:
        self._calibration = calibration
        self._filters = filters or FilterSettings()
        self._level = ProcessingLevel(processing_level)
        self._lock = threading.Lock()
        self._state = {sensor: _AxisState() for sensor in SensorType}

    @property
    def processing_level(self) -> ProcessingLevel:
        return self._level

    def set_processing_level(self, level: ProcessingLevel) -> None:
        level = ProcessingLevel(level)
        if level != self._level:
            logger.info("Processing level: %s -> %s", self._level.value, level.value)
            self._level = level

    def reset(self) -> None:
        with self._lock:
            self._state = {sensor: _AxisState() for sensor in SensorType}
        logger.info("SensorProcessor reset")

    def process(self, sensor: SensorType, reading: Reading) -> StagedReading:
        sensor = SensorType(sensor)
        if sensor is SensorType.ACCELEROMETER:
            return self.process_accelerometer(reading)
        if sensor is SensorType.GYROSCOPE:
            return self.process_gyroscope(reading)
        return self.process_magnetometer(reading)

    def process_accelerometer(self, reading: Reading) -> AccelerometerReading:
        return self._run(SensorType.ACCELEROMETER, reading, AccelerometerReading)

    def process_gyroscope(self, reading: Reading) -> GyroscopeReading:
        return self._run(SensorType.GYROSCOPE, reading, GyroscopeReading)

    def process_magnetometer(self, reading: Reading) -> StagedReading:
        return self._run(SensorType.MAGNETOMETER, reading, StagedReading)

    def _transform(self, sensor: SensorType, reading: Reading) -> Reading:
        if sensor is not SensorType.ACCELEROMETER or not self._calibration.is_calibrated:
            return reading
        return self._calibration.compensate_for_gravity(reading)

    def _run(self, sensor: SensorType, reading: Reading, kind: type) -> StagedReading:
        level = self._level
        if level is ProcessingLevel.NONE:
            return kind(raw=reading)

        try:
            transformed = self._transform(sensor, reading)
            if level is ProcessingLevel.MINIMAL:
                return kind(raw=reading, transformed=transformed, processed=transformed)

            settings = self._filters.for_sensor(sensor)
            with self._lock:
                state = self._state[sensor]
                values = transformed.as_tuple()
                if state.samples == 0:
                    state.previous_limited = values
                    state.previous_filtered = values

                if settings.max_delta is None:
                    limited_values = values
                else:
                    limited_values = tuple(
                        limit_rate_of_change(v, prev, d)
                        for v, prev, d in zip(values, state.previous_limited, settings.max_delta)
                    )
                filtered_values = tuple(
                    low_pass(v, prev, a)
                    for v, prev, a in zip(limited_values, state.previous_filtered, settings.alpha)
                )
                state.previous_limited = limited_values
                state.previous_filtered = filtered_values
                state.samples += 1

            limited = Reading(*limited_values, timestamp=reading.timestamp)
            filtered = Reading(*filtered_values, timestamp=reading.timestamp)
            return kind(
                raw=reading,
                transformed=transformed,
                limited=limited,
                filtered=filtered,
                processed=filtered,
            )
        except Exception as e:
            logger.exception("Error processing %s data", sensor.value)
            return kind(raw=reading, error=True, error_message=str(e))
