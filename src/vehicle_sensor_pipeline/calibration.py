"""Gravity calibration and compensation for accelerometer readings.

The calibration assumes the device is at rest while samples are collected:
the mean of the samples is then the gravity vector as seen in the sensor
frame. From it the engine derives

- the unit gravity direction, used to strip the gravity-aligned component
  from live readings (compensate_for_gravity), and
- an offset baseline, subtracted from live readings
  (apply_calibration_offsets).

The engine state is replaced atomically: a calibration either produces a
complete new CalibrationState or leaves the previous one in place.
"""

from __future__ import annotations

import json
import logging
import math
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Mapping, Optional, Sequence

from .models import CalibrationState, Reading, Vector3, validate_data

logger = logging.getLogger(__name__)

DEFAULT_TARGET_SAMPLES = 30


@dataclass(frozen=True)
class CalibrationResult:
    """Outcome of a successful gravity calibration.

    Attributes:
        vector: Unit gravity direction in the sensor frame.
        magnitude: Euclidean norm of the mean sample.
        offsets: Mean sample, used as the offset baseline.
        sample_count: Number of samples that went into the mean.
    """

    vector: Vector3
    magnitude: float
    offsets: Vector3
    sample_count: int


def _axes(sample: Any) -> Vector3:
    if isinstance(sample, Reading):
        return sample.as_tuple()
    if not validate_data(sample):
        raise ValueError(f"Malformed calibration sample: {sample!r}")
    if isinstance(sample, Mapping):
        return (float(sample["x"]), float(sample["y"]), float(sample["z"]))
    return (float(sample.x), float(sample.y), float(sample.z))


class CalibrationEngine:
    """Computes and applies the gravity calibration.

    Args:
        state: Previously persisted state to start from. Defaults to an
            uncalibrated device lying flat.
    """

    def __init__(self, state: Optional[CalibrationState] = None) -> None:
        self._state = state or CalibrationState()
        self._lock = threading.Lock()

    @property
    def state(self) -> CalibrationState:
        with self._lock:
            return self._state

    @property
    def is_calibrated(self) -> bool:
        return self.state.is_calibrated

    def load_state(self, state: CalibrationState) -> None:
        with self._lock:
            self._state = state
        logger.info("Calibration state loaded: %s", state)

    def reset(self) -> None:
        with self._lock:
            self._state = CalibrationState()
        logger.info("Calibration reset to default gravity vector")

    def calibrate_gravity_vector(
        self, samples: Optional[Sequence[Any]]
    ) -> Optional[CalibrationResult]:
        """Derive gravity direction, magnitude and offsets from rest samples.

        Args:
            samples: Readings (or x/y/z mappings) captured while the device
                was stationary.

        Returns:
            CalibrationResult on success. None when samples is empty or
            missing, contains a malformed sample, or averages to the zero
            vector; in those cases the current state is kept.
        """
        if not samples:
            logger.error("Calibration failed: no samples provided")
            return None

        try:
            axes = [_axes(sample) for sample in samples]
        except ValueError as e:
            logger.error("Calibration failed: %s", e)
            return None

        count = len(axes)
        mean_x = math.fsum(a[0] for a in axes) / count
        mean_y = math.fsum(a[1] for a in axes) / count
        mean_z = math.fsum(a[2] for a in axes) / count

        magnitude = math.sqrt(mean_x * mean_x + mean_y * mean_y + mean_z * mean_z)
        if magnitude == 0.0 or not math.isfinite(magnitude):
            logger.error("Calibration failed: degenerate mean vector (magnitude=%s)", magnitude)
            return None

        vector = (mean_x / magnitude, mean_y / magnitude, mean_z / magnitude)
        offsets = (mean_x, mean_y, mean_z)

        with self._lock:
            self._state = CalibrationState(
                gravity_vector=vector, magnitude=magnitude, offsets=offsets
            )

        logger.info("Calibrated gravity vector: %s", vector)
        logger.info("Calibrated magnitude: %.6f (%d samples)", magnitude, count)
        return CalibrationResult(
            vector=vector, magnitude=magnitude, offsets=offsets, sample_count=count
        )

    def compensate_for_gravity(self, reading: Reading) -> Reading:
        """Remove the gravity-aligned component from a reading.

        Projects the reading onto the calibrated gravity direction (or
        (0, 0, 1) when uncalibrated) and subtracts that projection, leaving
        the dynamic acceleration. The timestamp is preserved.
        """
        g = self.state.gravity_vector
        dot = reading.dot(g)
        return Reading(
            x=reading.x - dot * g[0],
            y=reading.y - dot * g[1],
            z=reading.z - dot * g[2],
            timestamp=reading.timestamp,
        )

    def apply_calibration_offsets(
        self, reading: Reading, offsets: Optional[Vector3] = None
    ) -> Reading:
        """Subtract the offset baseline from a reading.

        The z offset is reduced by the calibrated magnitude before it is
        applied: the z baseline already contains one full gravity unit and
        that unit is kept in the result.

        Args:
            reading: Reading to correct.
            offsets: Offsets to apply. Defaults to the calibrated offsets;
                when neither exists the reading is returned unchanged.
        """
        state = self.state
        if offsets is None:
            offsets = state.offsets
        if offsets is None:
            return reading

        return Reading(
            x=reading.x - offsets[0],
            y=reading.y - offsets[1],
            z=reading.z - (offsets[2] - state.magnitude),
            timestamp=reading.timestamp,
        )


class CalibrationSession:
    """Collects rest samples and calibrates once enough have arrived.

    Feed accelerometer readings through add_sample() while the session is
    active. When target_sample_count samples have been collected the engine
    is calibrated and on_complete receives the result (None if calibration
    failed). Callback errors are logged and never reach the caller.
    """

    def __init__(
        self,
        engine: CalibrationEngine,
        target_sample_count: int = DEFAULT_TARGET_SAMPLES,
        *,
        on_progress: Optional[Callable[[float], None]] = None,
        on_complete: Optional[Callable[[Optional[CalibrationResult]], None]] = None,
        on_cancel: Optional[Callable[[], None]] = None,
    ) -> None:
        if target_sample_count < 1:
            raise ValueError("target_sample_count must be at least 1")
        self._engine = engine
        self._target = target_sample_count
        self._on_progress = on_progress
        self._on_complete = on_complete
        self._on_cancel = on_cancel
        self._samples: list[Reading] = []
        self._active = False
        self._lock = threading.Lock()
        self.result: Optional[CalibrationResult] = None

    @property
    def is_active(self) -> bool:
        with self._lock:
            return self._active

    @property
    def progress(self) -> float:
        with self._lock:
            return min(len(self._samples) / self._target, 1.0)

    def start(self) -> bool:
        with self._lock:
            if self._active:
                logger.info("Calibration already in progress")
                return False
            self._active = True
            self._samples = []
            self.result = None
        logger.info("Starting calibration sample collection (%d samples)", self._target)
        return True

    def add_sample(self, reading: Reading) -> bool:
        """Add one rest sample. Returns False if the session is not active."""
        with self._lock:
            if not self._active:
                logger.debug("Not calibrating, sample ignored")
                return False
            self._samples.append(reading)
            collected = len(self._samples)
            complete = collected >= self._target
            if complete:
                self._active = False
                samples = list(self._samples)

        self._notify(self._on_progress, min(collected / self._target, 1.0))

        if complete:
            logger.info("Target sample count reached, completing calibration")
            self.result = self._engine.calibrate_gravity_vector(samples)
            self._notify(self._on_complete, self.result)
        return True

    def cancel(self) -> bool:
        with self._lock:
            if not self._active:
                logger.info("No calibration in progress to cancel")
                return False
            self._active = False
            self._samples = []
        logger.info("Calibration cancelled")
        self._notify(self._on_cancel)
        return True

    @staticmethod
    def _notify(callback: Optional[Callable[..., None]], *args: Any) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            logger.exception("Error in calibration callback")


class CalibrationStore:
    """Persists a CalibrationState as a small JSON document."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def save(self, state: CalibrationState) -> bool:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with open(self._path, "w", encoding="utf-8") as f:
                json.dump(state.to_dict(), f, indent=2)
        except OSError as e:
            logger.error("Error saving calibration to %s: %s", self._path, e)
            return False
        logger.info("Calibration saved to %s", self._path)
        return True

    def load(self) -> Optional[CalibrationState]:
        if not self._path.exists():
            return None
        try:
            with open(self._path, "r", encoding="utf-8") as f:
                state = CalibrationState.from_dict(json.load(f))
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.error("Error loading calibration from %s: %s", self._path, e)
            return None
        logger.info("Loaded saved calibration from %s", self._path)
        return state

    def clear(self) -> bool:
        try:
            self._path.unlink(missing_ok=True)
        except OSError as e:
            logger.error("Error clearing calibration at %s: %s", self._path, e)
            return False
        logger.info("Calibration cleared")
        return True
