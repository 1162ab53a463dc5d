"""Sensor source capability and the synthetic source used for development.

A SensorSource is the platform-specific collaborator that owns one physical
sensor. The pipeline never talks to hardware directly: it registers listeners,
adjusts the sampling interval and checks availability through this interface,
so real devices (see ble_source) and synthetic data are interchangeable.

Key design principles:
1. **One instance per sensor**: each sensor is an independent event source
   with its own cadence; no ordering exists across sensors.
2. **Serial delivery per sensor**: callbacks for a given sensor are invoked
   one at a time, but may interleave with other sensors' callbacks.
3. **Explicit teardown**: every listener returns a Subscription whose
   remove() is idempotent. Nothing relies on garbage collection.
"""

from __future__ import annotations

import logging
import math
import random
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

from .models import SensorType

logger = logging.getLogger(__name__)

RawSampleCallback = Callable[[Any], None]


class SensorSubscriptionError(RuntimeError):
    """Raised by a SensorSource when a listener cannot be started."""


class Subscription:
    """Handle for an open sensor listener.

    Args:
        on_remove: Called exactly once, on the first remove() call.
        name: Label used in log messages.
    """

    def __init__(self, on_remove: Callable[[], None], name: str = "subscription"):
        self._on_remove: Optional[Callable[[], None]] = on_remove
        self._lock = threading.Lock()
        self.name = name

    @property
    def active(self) -> bool:
        with self._lock:
            return self._on_remove is not None

    def remove(self) -> None:
        """Stop delivery. Safe to call more than once."""
        with self._lock:
            on_remove, self._on_remove = self._on_remove, None
        if on_remove is None:
            logger.debug("%s already removed", self.name)
            return
        on_remove()

    def __repr__(self) -> str:
        status = "active" if self.active else "removed"
        return f"<Subscription({self.name}, {status})>"


class SensorSource(ABC):
    """Abstract capability for one physical tri-axis sensor.

    Implementations must deliver raw samples (mappings or objects exposing
    x, y and z) to each registered callback, serially per listener. Samples
    are not validated here; that is the acquisition layer's job.
    """

    sensor_type: SensorType

    @abstractmethod
    def add_listener(self, callback: RawSampleCallback) -> Subscription:
        """Start delivering raw samples to callback.

        Raises:
            SensorSubscriptionError: If the backend cannot start delivery.
        """

    @abstractmethod
    def set_update_interval(self, milliseconds: int) -> None:
        """Set the sampling interval for all listeners of this sensor."""

    @abstractmethod
    async def is_available(self) -> bool:
        """Whether the sensor exists and can deliver data."""


class MockSensorSource(SensorSource):
    """Synthetic sensor producing sinusoidal signals with gaussian noise.

    Every listener gets a daemon thread that emits one sample per update
    interval. The interval is re-read before each wait, so a call to
    set_update_interval() applies from the next sample on. An interval of 0
    pauses delivery until a non-zero interval is set.

    The signal shapes roughly follow what a phone mounted in a car reports:
    the accelerometer sees about 1 g on z plus small lateral/longitudinal
    oscillation, the gyroscope a few deg/s, the magnetometer a slowly rotating
    field of ~45 uT.

    Args:
        sensor_type: Sensor this source simulates.
        update_interval: Initial interval in milliseconds.
        available: Result reported by is_available().
        fail_on_subscribe: Raise SensorSubscriptionError from add_listener(),
            for exercising start-up rollback.
        noise: Standard deviation of the added gaussian noise.
    """

    def __init__(
        self,
        sensor_type: SensorType,
        update_interval: int = 100,
        *,
        available: bool = True,
        fail_on_subscribe: bool = False,
        noise: float = 0.02,
    ) -> None:
        self.sensor_type = SensorType(sensor_type)
        self._interval_ms = int(update_interval)
        self._available = available
        self._fail_on_subscribe = fail_on_subscribe
        self._noise = noise
        self._lock = threading.Lock()
        self._threads: dict[int, threading.Event] = {}
        self._next_id = 0
        self._start_time = time.time()

    @property
    def update_interval(self) -> int:
        with self._lock:
            return self._interval_ms

    @property
    def listener_count(self) -> int:
        with self._lock:
            return len(self._threads)

    def set_update_interval(self, milliseconds: int) -> None:
        with self._lock:
            self._interval_ms = max(0, int(milliseconds))
        logger.debug(
            "Mock %s interval set to %dms", self.sensor_type.value, milliseconds
        )

    async def is_available(self) -> bool:
        return self._available

    def add_listener(self, callback: RawSampleCallback) -> Subscription:
        if self._fail_on_subscribe:
            raise SensorSubscriptionError(
                f"Mock {self.sensor_type.value} refused subscription"
            )

        stop_event = threading.Event()
        with self._lock:
            listener_id = self._next_id
            self._next_id += 1
            self._threads[listener_id] = stop_event

        thread = threading.Thread(
            target=self._emit_loop,
            args=(callback, stop_event),
            name=f"Mock-{self.sensor_type.value}-{listener_id}",
            daemon=True,
        )
        thread.start()

        def remove() -> None:
            stop_event.set()
            with self._lock:
                self._threads.pop(listener_id, None)

        return Subscription(remove, name=f"mock-{self.sensor_type.value}")

    def generate_sample(self, elapsed: float) -> dict[str, float]:
        """Return one synthetic raw sample for the given elapsed seconds."""
        n = self._noise
        if self.sensor_type is SensorType.ACCELEROMETER:
            return {
                "x": 0.15 * math.sin(2 * math.pi * 0.2 * elapsed) + random.gauss(0, n),
                "y": 0.10 * math.cos(2 * math.pi * 0.3 * elapsed) + random.gauss(0, n),
                "z": 1.0 + 0.05 * math.sin(2 * math.pi * 1.5 * elapsed)
                + random.gauss(0, n),
            }
        if self.sensor_type is SensorType.GYROSCOPE:
            return {
                "x": 2.0 * math.sin(2 * math.pi * 0.8 * elapsed) + random.gauss(0, n * 10),
                "y": 1.5 * math.cos(2 * math.pi * 0.6 * elapsed) + random.gauss(0, n * 10),
                "z": 5.0 * math.sin(2 * math.pi * 0.1 * elapsed) + random.gauss(0, n * 10),
            }
        heading = 2 * math.pi * 0.02 * elapsed
        return {
            "x": 45.0 * math.cos(heading) + random.gauss(0, n * 20),
            "y": 45.0 * math.sin(heading) + random.gauss(0, n * 20),
            "z": -20.0 + random.gauss(0, n * 20),
        }

    def _emit_loop(self, callback: RawSampleCallback, stop_event: threading.Event) -> None:
        logger.debug("Mock %s emitter started", self.sensor_type.value)
        while not stop_event.is_set():
            interval_ms = self.update_interval
            if interval_ms <= 0:
                stop_event.wait(0.05)
                continue

            if stop_event.wait(interval_ms / 1000.0):
                break

            sample = self.generate_sample(time.time() - self._start_time)
            try:
                callback(sample)
            except Exception:
                # Listener errors must not kill the emitter thread
                logger.exception("Mock %s listener failed", self.sensor_type.value)
        logger.debug("Mock %s emitter stopped", self.sensor_type.value)

    def __repr__(self) -> str:
        return (
            f"<MockSensorSource({self.sensor_type.value}, "
            f"interval={self.update_interval}ms, listeners={self.listener_count})>"
        )


def create_mock_sources(
    *, unavailable: tuple[SensorType, ...] = ()
) -> dict[SensorType, SensorSource]:
    """Build one MockSensorSource per sensor type.

    Args:
        unavailable: Sensors that should report unavailable and refuse
            subscriptions, to mimic devices lacking that hardware.
    """
    sources: dict[SensorType, SensorSource] = {}
    for sensor in SensorType:
        missing = sensor in unavailable
        sources[sensor] = MockSensorSource(
            sensor, available=not missing, fail_on_subscribe=missing
        )
    return sources
