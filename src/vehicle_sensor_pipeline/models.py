"""Data model shared by acquisition, calibration, processing and power control.

Everything that crosses a component boundary in the pipeline is defined here:
sensor readings and their processing stages, the calibration state, the power
mode profiles and the per-sensor statistics snapshot. Value objects are frozen
dataclasses so a reading handed to a consumer can never be changed behind the
producer's back. The only mutable type is ModeConfig, which is always handed
out as an explicit clone.
"""

from __future__ import annotations

import math
import numbers
from dataclasses import dataclass, fields
from enum import Enum
from typing import Any, Mapping, Optional

Vector3 = tuple[float, float, float]

AXES = ("x", "y", "z")


class SensorType(str, Enum):
    """Physical sensors handled by the pipeline, in canonical order."""

    ACCELEROMETER = "accelerometer"
    GYROSCOPE = "gyroscope"
    MAGNETOMETER = "magnetometer"


@dataclass(frozen=True)
class Reading:
    """Single tri-axis sample with its acquisition timestamp.

    Attributes:
        x: X-axis value in sensor units.
        y: Y-axis value in sensor units.
        z: Z-axis value in sensor units.
        timestamp: Acquisition time in milliseconds since the epoch.
    """

    x: float
    y: float
    z: float
    timestamp: int

    @staticmethod
    def from_sample(sample: Any, timestamp: int) -> "Reading":
        """Build a reading from a raw mapping or x/y/z object.

        The sample must already have passed validate_data().
        """
        return Reading(
            x=float(_axis_value(sample, "x")),
            y=float(_axis_value(sample, "y")),
            z=float(_axis_value(sample, "z")),
            timestamp=int(timestamp),
        )

    def as_tuple(self) -> Vector3:
        return (self.x, self.y, self.z)

    def dot(self, vector: Vector3) -> float:
        return self.x * vector[0] + self.y * vector[1] + self.z * vector[2]

    def norm(self) -> float:
        return math.sqrt(self.x * self.x + self.y * self.y + self.z * self.z)


class Stage(str, Enum):
    """Successive processing states of a reading, in pipeline order."""

    RAW = "raw"
    TRANSFORMED = "transformed"
    LIMITED = "limited"
    FILTERED = "filtered"
    PROCESSED = "processed"


# Most processed first; used whenever a consumer wants "the best we have".
STAGE_PREFERENCE = (
    Stage.PROCESSED,
    Stage.FILTERED,
    Stage.LIMITED,
    Stage.TRANSFORMED,
    Stage.RAW,
)


@dataclass(frozen=True)
class StagedReading:
    """A sample as it moves through the processing pipeline.

    Each stage slot holds the Reading produced by that stage, or None when the
    stage did not run (for example because the active power mode only asks for
    minimal processing). Consumers should use best() instead of chaining
    fallbacks by hand so every consumer picks the same stage.

    Attributes:
        raw: Reading as delivered by the acquisition layer.
        transformed: Reading after calibration.
        limited: Reading after rate-of-change limiting.
        filtered: Reading after low-pass filtering.
        processed: Final reading handed to consumers.
        error: True when processing failed and only raw data is trustworthy.
        error_message: Description of the processing failure, if any.
    """

    raw: Optional[Reading] = None
    transformed: Optional[Reading] = None
    limited: Optional[Reading] = None
    filtered: Optional[Reading] = None
    processed: Optional[Reading] = None
    error: bool = False
    error_message: Optional[str] = None

    def stage(self, stage: Stage) -> Optional[Reading]:
        return getattr(self, stage.value)

    def populated(self) -> list[Stage]:
        """Stages that carry a reading, in pipeline order."""
        return [stage for stage in Stage if self.stage(stage) is not None]

    def best(self) -> Optional[tuple[Stage, Reading]]:
        """Return the most processed available stage and its reading.

        Returns:
            (stage, reading) for the first populated stage in STAGE_PREFERENCE
            order, or None when no stage is populated.
        """
        for stage in STAGE_PREFERENCE:
            reading = self.stage(stage)
            if reading is not None:
                return stage, reading
        return None

    @property
    def timestamp(self) -> Optional[int]:
        selected = self.best()
        return selected[1].timestamp if selected else None

    def _best_axis(self, axis: str) -> Optional[float]:
        selected = self.best()
        if selected is None:
            return None
        return getattr(selected[1], axis)


@dataclass(frozen=True)
class AccelerometerReading(StagedReading):
    """Staged accelerometer sample with vehicle-dynamics axis names.

    Lateral, longitudinal and vertical are the y, x and z axes of the best
    available stage.
    """

    @property
    def lateral(self) -> Optional[float]:
        return self._best_axis("y")

    @property
    def longitudinal(self) -> Optional[float]:
        return self._best_axis("x")

    @property
    def vertical(self) -> Optional[float]:
        return self._best_axis("z")

    def domain_values(self) -> dict[str, Optional[float]]:
        return {
            "lateral": self.lateral,
            "longitudinal": self.longitudinal,
            "vertical": self.vertical,
        }


@dataclass(frozen=True)
class GyroscopeReading(StagedReading):
    """Staged gyroscope sample with roll/pitch/yaw taken from x/y/z."""

    @property
    def roll(self) -> Optional[float]:
        return self._best_axis("x")

    @property
    def pitch(self) -> Optional[float]:
        return self._best_axis("y")

    @property
    def yaw(self) -> Optional[float]:
        return self._best_axis("z")

    def domain_values(self) -> dict[str, Optional[float]]:
        return {"roll": self.roll, "pitch": self.pitch, "yaw": self.yaw}


@dataclass(frozen=True)
class CalibrationState:
    """Calibrated gravity direction and offset baseline.

    The default state describes a device lying flat with no offsets. Offsets
    are only present after a calibration has run.
    """

    gravity_vector: Vector3 = (0.0, 0.0, 1.0)
    magnitude: float = 1.0
    offsets: Optional[Vector3] = None

    @property
    def is_calibrated(self) -> bool:
        return self.offsets is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "gravity_vector": list(self.gravity_vector),
            "magnitude": self.magnitude,
            "offsets": list(self.offsets) if self.offsets is not None else None,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CalibrationState":
        vector = data["gravity_vector"]
        offsets = data.get("offsets")
        if len(vector) != 3 or (offsets is not None and len(offsets) != 3):
            raise ValueError("Calibration vectors must have exactly 3 components")
        return cls(
            gravity_vector=(float(vector[0]), float(vector[1]), float(vector[2])),
            magnitude=float(data["magnitude"]),
            offsets=(
                (float(offsets[0]), float(offsets[1]), float(offsets[2]))
                if offsets is not None
                else None
            ),
        )


class PowerMode(str, Enum):
    NORMAL = "normal"
    LOW = "low"
    BACKGROUND = "background"


class ProcessingLevel(str, Enum):
    FULL = "full"
    MINIMAL = "minimal"
    NONE = "none"


@dataclass
class ModeConfig:
    """Sampling and processing profile for one power mode.

    Attributes:
        update_interval: Base sampling interval per sensor in milliseconds.
            An interval of 0 switches the sensor off for this mode.
        processing_level: How much of the processing pipeline runs.
        batch_size: Number of records accumulated before they are handed on.
        cloud_sync_interval: Interval for the external sync collaborator (ms).
        motion_detection_enabled: Whether motion detection consumers should run.

    Note:
        Instances owned by PowerModeController are templates. Callers only
        ever receive clone() results, so mutating a returned config has no
        effect on the controller.
    """

    update_interval: dict[SensorType, int]
    processing_level: ProcessingLevel = ProcessingLevel.FULL
    batch_size: int = 1
    cloud_sync_interval: int = 5000
    motion_detection_enabled: bool = True

    def __post_init__(self) -> None:
        self.update_interval = normalize_intervals(self.update_interval)
        self.processing_level = ProcessingLevel(self.processing_level)

    def clone(self) -> "ModeConfig":
        return ModeConfig(
            update_interval=dict(self.update_interval),
            processing_level=self.processing_level,
            batch_size=self.batch_size,
            cloud_sync_interval=self.cloud_sync_interval,
            motion_detection_enabled=self.motion_detection_enabled,
        )

    def merged(self, partial: Mapping[str, Any]) -> "ModeConfig":
        """Return a copy with the given top-level fields replaced.

        The merge is shallow: a supplied update_interval replaces the whole
        interval mapping rather than individual sensors.

        Raises:
            ValueError: If partial names a field ModeConfig does not have.
        """
        known = {f.name for f in fields(self)}
        unknown = sorted(set(partial) - known)
        if unknown:
            raise ValueError(f"Unknown mode config fields: {', '.join(unknown)}")

        values = {name: getattr(self, name) for name in known}
        values.update(partial)
        values["update_interval"] = dict(values["update_interval"])
        return ModeConfig(**values)

    def interval_for(self, sensor: SensorType) -> Optional[int]:
        return self.update_interval.get(sensor)


def normalize_intervals(intervals: Mapping[Any, Any]) -> dict[SensorType, int]:
    """Convert an interval mapping keyed by names or SensorType to SensorType keys.

    Raises:
        ValueError: On unknown sensor names or negative intervals.
    """
    normalized: dict[SensorType, int] = {}
    for key, value in intervals.items():
        sensor = SensorType(key)
        interval = int(value)
        if interval < 0:
            raise ValueError(f"Negative update interval for {sensor.value}: {interval}")
        normalized[sensor] = interval
    return normalized


def default_mode_configs() -> dict[PowerMode, ModeConfig]:
    """Fresh copies of the built-in power mode templates."""
    return {
        PowerMode.NORMAL: ModeConfig(
            update_interval={
                SensorType.ACCELEROMETER: 100,  # 10 Hz
                SensorType.GYROSCOPE: 100,
                SensorType.MAGNETOMETER: 200,  # 5 Hz
            },
            processing_level=ProcessingLevel.FULL,
            batch_size=1,
            cloud_sync_interval=5000,
            motion_detection_enabled=True,
        ),
        PowerMode.LOW: ModeConfig(
            update_interval={
                SensorType.ACCELEROMETER: 200,
                SensorType.GYROSCOPE: 200,
                SensorType.MAGNETOMETER: 500,
            },
            processing_level=ProcessingLevel.MINIMAL,
            batch_size=2,
            cloud_sync_interval=10000,
            motion_detection_enabled=True,
        ),
        PowerMode.BACKGROUND: ModeConfig(
            update_interval={
                SensorType.ACCELEROMETER: 1000,
                SensorType.GYROSCOPE: 1000,
                SensorType.MAGNETOMETER: 0,  # off
            },
            processing_level=ProcessingLevel.NONE,
            batch_size=5,
            cloud_sync_interval=30000,
            motion_detection_enabled=False,
        ),
    }


@dataclass(frozen=True)
class SensorStatistics:
    """Snapshot of one sensor's acquisition counters."""

    reading_count: int = 0
    error_count: int = 0
    last_reading_timestamp: Optional[int] = None


_MISSING = object()


def _axis_value(sample: Any, axis: str) -> Any:
    if isinstance(sample, Mapping):
        return sample.get(axis, _MISSING)
    return getattr(sample, axis, _MISSING)


def validate_data(sample: Any) -> bool:
    """Check that a raw sample carries three numeric, non-NaN axes.

    Args:
        sample: Mapping with x/y/z keys or an object with x/y/z attributes,
            as handed over by a SensorSource.

    Returns:
        True if every axis is present, a real number and not NaN.
    """
    if sample is None:
        return False
    for axis in AXES:
        value = _axis_value(sample, axis)
        if value is _MISSING or value is None or isinstance(value, bool):
            return False
        if not isinstance(value, numbers.Real):
            return False
        if math.isnan(value):
            return False
    return True

