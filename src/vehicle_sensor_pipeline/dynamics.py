"""Vehicle dynamics derived from processed accelerometer readings.

Accelerations arrive in g along the vehicle axes (lateral, longitudinal,
vertical). VehicleDynamics turns them into:

- traction circle usage: how much of the vehicle's grip envelope is in use,
  modelled as an ellipse whose axes are the cornering limit and the
  acceleration or braking limit, depending on the longitudinal sign
- velocity by integrating acceleration (m/s), or taking the forward speed
  from an external source such as GPS when one is given
- turning radius (v^2 / a_lat) and stopping distance (v^2 / 2 a_brake)

Time steps come from reading timestamps. Gaps longer than
MAX_INTEGRATION_STEP_S, or non-increasing timestamps, skip integration for
that reading.
"""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass, replace
from typing import Optional

from .models import AccelerometerReading

logger = logging.getLogger(__name__)

GRAVITY = 9.81  # m/s^2
MAX_INTEGRATION_STEP_S = 0.5

MIN_MOVING_SPEED = 1.0  # m/s
MIN_LATERAL_FOR_RADIUS = 0.1  # m/s^2


@dataclass(frozen=True)
class PerformanceLimits:
    """Grip limits of the vehicle in g."""

    braking: float = 1.0
    acceleration: float = 0.6
    cornering: float = 0.9

    def __post_init__(self) -> None:
        for name in ("braking", "acceleration", "cornering"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} limit must be positive")


@dataclass(frozen=True)
class DynamicsState:
    """Dynamics computed for one accelerometer reading.

    Attributes:
        timestamp: Timestamp of the reading (ms).
        lateral: Lateral acceleration in g.
        longitudinal: Longitudinal acceleration in g; negative when braking.
        vertical: Vertical acceleration in g.
        traction_circle: Percentage (0-100) of the grip envelope in use.
        velocity: Integrated (longitudinal, lateral, vertical) velocity in
            m/s, or None when this reading was not integrated.
        speed: Planar speed in m/s, or None when not integrated.
        turning_radius: Metres, when moving and cornering noticeably.
        stopping_distance: Metres at the braking limit, when moving forward.
    """

    timestamp: int
    lateral: float
    longitudinal: float
    vertical: float
    traction_circle: float
    velocity: Optional[tuple[float, float, float]] = None
    speed: Optional[float] = None
    turning_radius: Optional[float] = None
    stopping_distance: Optional[float] = None


def traction_circle_usage(lateral: float, longitudinal: float, limits: PerformanceLimits) -> float:
    """Percentage of the elliptical grip envelope used by (lateral, longitudinal)."""
    combined = math.hypot(lateral, longitudinal)
    if combined == 0.0:
        return 0.0

    max_longitudinal = limits.acceleration if longitudinal >= 0 else limits.braking
    angle = math.atan2(lateral, abs(longitudinal))
    max_g = (limits.cornering * max_longitudinal) / math.hypot(
        max_longitudinal * math.sin(angle), limits.cornering * math.cos(angle)
    )
    return min(combined / max_g * 100.0, 100.0)


class VehicleDynamics:
    """Stateful dynamics estimator fed with staged accelerometer readings.

    Args:
        limits: Grip limits; defaults to a typical passenger car.
        use_external_speed: Take forward speed from update(speed=...) when
            it is given instead of integrating it.
    """

    def __init__(self, limits: Optional[PerformanceLimits] = None, *, use_external_speed: bool = True):
        self._limits = limits or PerformanceLimits()
        self._use_external_speed = use_external_speed
        self._lock = threading.Lock()
        self._last_timestamp: Optional[int] = None
        self._velocity = (0.0, 0.0, 0.0)
        self._latest: Optional[DynamicsState] = None
        self._peak_traction = 0.0

    @property
    def limits(self) -> PerformanceLimits:
        return self._limits

    def set_limits(self, **limits: float) -> PerformanceLimits:
        """Replace some of the grip limits, e.g. set_limits(braking=0.8)."""
        with self._lock:
            self._limits = replace(self._limits, **limits)
        logger.info("Vehicle performance limits updated: %s", self._limits)
        return self._limits

    def reset(self) -> None:
        with self._lock:
            self._last_timestamp = None
            self._velocity = (0.0, 0.0, 0.0)
            self._latest = None
            self._peak_traction = 0.0
        logger.info("VehicleDynamics reset")

    @property
    def latest(self) -> Optional[DynamicsState]:
        with self._lock:
            return self._latest

    @property
    def peak_traction_circle(self) -> float:
        with self._lock:
            return self._peak_traction

    def update(self, reading: AccelerometerReading, speed: Optional[float] = None) -> Optional[DynamicsState]:
        """Advance the estimate with one staged accelerometer reading.

        Args:
            reading: Output of SensorProcessor.process_accelerometer().
            speed: Forward speed in m/s from an external source, if known.

        Returns:
            The new DynamicsState, or None when the reading carries no stage.
        """
        timestamp = reading.timestamp
        if timestamp is None:
            return None

        lateral = reading.lateral or 0.0
        longitudinal = reading.longitudinal or 0.0
        vertical = reading.vertical or 0.0

        with self._lock:
            limits = self._limits
            traction = traction_circle_usage(lateral, longitudinal, limits)
            dt = 0.0
            if self._last_timestamp is not None:
                dt = (timestamp - self._last_timestamp) / 1000.0
            self._last_timestamp = timestamp

            state = DynamicsState(
                timestamp=timestamp,
                lateral=lateral,
                longitudinal=longitudinal,
                vertical=vertical,
                traction_circle=traction,
            )
            if 0.0 < dt <= MAX_INTEGRATION_STEP_S:
                state = self._integrate(state, dt, speed, limits)

            self._latest = state
            self._peak_traction = max(self._peak_traction, traction)
        return state

    def _integrate(
        self, state: DynamicsState, dt: float, speed: Optional[float], limits: PerformanceLimits
    ) -> DynamicsState:
        accel_x = state.longitudinal * GRAVITY
        accel_y = state.lateral * GRAVITY
        accel_z = state.vertical * GRAVITY

        vx, vy, vz = self._velocity
        if self._use_external_speed and speed is not None:
            vx = speed
            vy += accel_y * dt
        else:
            vx += accel_x * dt
            vy += accel_y * dt
            vz += accel_z * dt
        self._velocity = (vx, vy, vz)

        turning_radius = None
        if abs(vx) > MIN_MOVING_SPEED and abs(accel_y) > MIN_LATERAL_FOR_RADIUS:
            turning_radius = vx * vx / abs(accel_y)

        stopping_distance = None
        if vx > MIN_MOVING_SPEED:
            stopping_distance = vx * vx / (2 * limits.braking * GRAVITY)

        return replace(
            state,
            velocity=self._velocity,
            speed=math.hypot(vx, vy),
            turning_radius=turning_radius,
            stopping_distance=stopping_distance,
        )
