"""Sensor acquisition: subscriptions, validation, timestamping and statistics.

AcquisitionManager sits between the SensorSource collaborators and the rest
of the pipeline. It owns one subscription per running sensor, rejects
malformed samples before anything downstream sees them, stamps accepted
samples with the acquisition time and keeps per-sensor counters.

Threading model:
- Each sensor delivers on its own thread (or event loop). Callbacks for
  different sensors may run concurrently.
- Configuration and counters are guarded by a single lock. The lock is held
  only for the counter update or config merge, never while calling back into
  downstream code, so one sensor's consumer cannot stall another sensor.
- Reconfiguration is read-your-writes: once update_configuration() returns,
  the sources have been given the new intervals. Samples already in flight
  may still reflect the previous interval.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional

from .models import (
    Reading,
    SensorStatistics,
    SensorType,
    normalize_intervals,
    validate_data,
)
from .sources import SensorSource, SensorSubscriptionError, Subscription

logger = logging.getLogger(__name__)

ReadingCallback = Callable[[Reading], None]

LOW_POWER_MULTIPLIER = 2
DEFAULT_UPDATE_INTERVAL_MS = 100  # 10 Hz


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class AcquisitionConfig:
    """Acquisition settings.

    Attributes:
        update_interval: Base interval per sensor in milliseconds.
        batch_size: Samples per batch handed to consumers that batch.
        low_power_mode: Doubles every effective interval when set.
    """

    update_interval: dict[SensorType, int] = field(
        default_factory=lambda: {
            sensor: DEFAULT_UPDATE_INTERVAL_MS for sensor in SensorType
        }
    )
    batch_size: int = 1
    low_power_mode: bool = False

    def copy(self) -> "AcquisitionConfig":
        return AcquisitionConfig(
            update_interval=dict(self.update_interval),
            batch_size=self.batch_size,
            low_power_mode=self.low_power_mode,
        )


@dataclass
class _SensorCounters:
    reading_count: int = 0
    error_count: int = 0
    last_reading_timestamp: Optional[int] = None

    def snapshot(self) -> SensorStatistics:
        return SensorStatistics(
            reading_count=self.reading_count,
            error_count=self.error_count,
            last_reading_timestamp=self.last_reading_timestamp,
        )


class AcquisitionManager:
    """Manages sensor subscriptions with rate control and error accounting.

    Args:
        sources: One SensorSource per sensor the device offers. Sensors
            without a source cannot be started.
        clock: Returns the acquisition timestamp in epoch milliseconds.
            Defaults to the wall clock; tests inject a fake.

    Example:
        >>> manager = AcquisitionManager(create_mock_sources())
        >>> _ = manager.initialize({"low_power_mode": True})
        >>> manager.start_sensors({SensorType.ACCELEROMETER: print})
        True
        >>> manager.stop_sensors()
        True
    """

    def __init__(
        self,
        sources: Mapping[SensorType, SensorSource],
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        self._sources: dict[SensorType, SensorSource] = {
            SensorType(sensor): source for sensor, source in sources.items()
        }
        self._clock = clock or _now_ms
        self._lock = threading.Lock()
        self._config = AcquisitionConfig()
        self._subscriptions: dict[SensorType, Subscription] = {}
        self._counters = {sensor: _SensorCounters() for sensor in SensorType}

        logger.info(
            "AcquisitionManager initialized with sources: %s",
            ", ".join(sensor.value for sensor in self._sources) or "none",
        )

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def initialize(self, config: Optional[Mapping[str, Any]] = None) -> "AcquisitionManager":
        """Merge partial configuration without touching open subscriptions.

        Args:
            config: Any of "update_interval" (per-sensor mapping, merged
                sensor by sensor), "batch_size" (int) and "low_power_mode"
                (bool). Values of the wrong type are ignored.
        """
        self._merge_config(config or {})
        logger.info("AcquisitionManager configured: %s", self.config)
        return self

    def update_configuration(
        self, config: Optional[Mapping[str, Any]] = None
    ) -> "AcquisitionManager":
        """Merge partial configuration and re-apply intervals to live sensors.

        Open subscriptions are kept; only their sampling interval changes.
        """
        self._merge_config(config or {})
        self.apply_update_intervals()
        logger.info("AcquisitionManager reconfigured: %s", self.config)
        return self

    def _merge_config(self, config: Mapping[str, Any]) -> None:
        intervals = config.get("update_interval")
        normalized = normalize_intervals(intervals) if intervals else {}

        with self._lock:
            self._config.update_interval.update(normalized)

            batch_size = config.get("batch_size")
            if isinstance(batch_size, int) and not isinstance(batch_size, bool):
                self._config.batch_size = batch_size

            low_power = config.get("low_power_mode")
            if isinstance(low_power, bool):
                self._config.low_power_mode = low_power

    @property
    def config(self) -> AcquisitionConfig:
        with self._lock:
            return self._config.copy()

    def set_low_power_mode(self, enabled: bool) -> None:
        with self._lock:
            if self._config.low_power_mode == enabled:
                return
            self._config.low_power_mode = enabled
        logger.info("Low power mode %s", "enabled" if enabled else "disabled")
        self.apply_update_intervals()

    def effective_interval(self, sensor: SensorType) -> int:
        """Base interval for sensor times the low-power multiplier."""
        with self._lock:
            return self._effective_interval_locked(SensorType(sensor))

    def _effective_interval_locked(self, sensor: SensorType) -> int:
        multiplier = LOW_POWER_MULTIPLIER if self._config.low_power_mode else 1
        base = self._config.update_interval.get(sensor, DEFAULT_UPDATE_INTERVAL_MS)
        return base * multiplier

    def apply_update_intervals(self) -> None:
        """Push the current effective intervals to every open subscription."""
        with self._lock:
            targets = [
                (sensor, self._sources[sensor], self._effective_interval_locked(sensor))
                for sensor in self._subscriptions
            ]

        for sensor, source, interval in targets:
            try:
                source.set_update_interval(interval)
                logger.info("%s interval updated to %dms", sensor.value, interval)
            except Exception:
                logger.exception("Error applying update interval to %s", sensor.value)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start_sensors(
        self, callbacks: Optional[Mapping[SensorType, Optional[ReadingCallback]]]
    ) -> bool:
        """Open one subscription per sensor that has a callback.

        Setup is all-or-nothing: if any sensor fails to start, every
        subscription opened during this call is removed again. Calling this
        while sensors are running restarts them with the new callbacks.

        Args:
            callbacks: Mapping of sensor to reading callback. None entries
                are skipped.

        Returns:
            True if every requested sensor started, False otherwise.
        """
        requested = {
            SensorType(sensor): callback
            for sensor, callback in (callbacks or {}).items()
            if callback is not None
        }
        if not requested:
            logger.error("Cannot start sensors: no callbacks provided")
            return False

        if self.is_running:
            logger.info("Sensors already running, restarting subscriptions")
            self.stop_sensors()

        opened: dict[SensorType, Subscription] = {}
        try:
            for sensor in SensorType:
                callback = requested.get(sensor)
                if callback is None:
                    continue

                source = self._sources.get(sensor)
                if source is None:
                    raise SensorSubscriptionError(f"No source for {sensor.value}")

                interval = self.effective_interval(sensor)
                source.set_update_interval(interval)
                logger.info("Starting %s listener at %dms interval", sensor.value, interval)
                opened[sensor] = source.add_listener(self._make_handler(sensor, callback))
                logger.info("%s started", sensor.value)

        except Exception as e:
            logger.error("Error starting sensors: %s", e)
            self._remove_all(opened)
            return False

        with self._lock:
            self._subscriptions = opened
        return True

    def stop_sensors(self) -> bool:
        """Remove every open subscription. Idempotent.

        Returns:
            False if any subscription raised while being removed; the other
            sensors are still stopped.
        """
        with self._lock:
            subscriptions, self._subscriptions = self._subscriptions, {}

        if not subscriptions:
            logger.debug("stop_sensors: nothing to stop")
            return True

        logger.info("Stopping %d sensors", len(subscriptions))
        return self._remove_all(subscriptions)

    @staticmethod
    def _remove_all(subscriptions: Mapping[SensorType, Subscription]) -> bool:
        ok = True
        for sensor, subscription in subscriptions.items():
            try:
                subscription.remove()
                logger.info("%s stopped", sensor.value)
            except Exception:
                ok = False
                logger.exception("Error stopping %s", sensor.value)
        return ok

    @property
    def is_running(self) -> bool:
        with self._lock:
            return bool(self._subscriptions)

    @property
    def active_sensors(self) -> list[SensorType]:
        with self._lock:
            return [sensor for sensor in SensorType if sensor in self._subscriptions]

    # ------------------------------------------------------------------
    # Data path
    # ------------------------------------------------------------------

    @staticmethod
    def validate_data(sample: Any) -> bool:
        return validate_data(sample)

    def _make_handler(
        self, sensor: SensorType, callback: ReadingCallback
    ) -> Callable[[Any], None]:
        counters = self._counters[sensor]

        def handle(sample: Any) -> None:
            # error_count tracks rejected samples only; a failing consumer
            # does not make an accepted reading count twice
            if not self.validate_data(sample):
                with self._lock:
                    counters.error_count += 1
                logger.warning("Invalid %s data format: %r", sensor.value, sample)
                return

            try:
                timestamp = self._clock()
                reading = Reading.from_sample(sample, timestamp)
            except Exception:
                with self._lock:
                    counters.error_count += 1
                logger.exception("Error stamping %s sample", sensor.value)
                return

            with self._lock:
                counters.reading_count += 1
                counters.last_reading_timestamp = timestamp

            try:
                callback(reading)
            except Exception:
                logger.exception("Error in %s reading callback", sensor.value)

        return handle

    # ------------------------------------------------------------------
    # Monitoring
    # ------------------------------------------------------------------

    async def check_sensors_availability(self) -> dict[SensorType, bool]:
        """Check every sensor concurrently.

        Independent of subscription state. A check that raises, or a sensor
        without a source, is reported as unavailable.
        """

        async def check(sensor: SensorType) -> bool:
            source = self._sources.get(sensor)
            if source is None:
                return False
            try:
                available = bool(await source.is_available())
            except Exception:
                logger.exception("Error checking %s availability", sensor.value)
                return False
            logger.info("%s available: %s", sensor.value, available)
            return available

        sensors = list(SensorType)
        results = await asyncio.gather(*(check(sensor) for sensor in sensors))
        return dict(zip(sensors, results))

    def get_statistics(self) -> dict[SensorType, SensorStatistics]:
        """Value snapshot of every sensor's counters."""
        with self._lock:
            return {sensor: counters.snapshot() for sensor, counters in self._counters.items()}

    def reset_statistics(self) -> None:
        # Handlers hold references to the counter objects, so reset in place
        with self._lock:
            for counters in self._counters.values():
                counters.reading_count = 0
                counters.error_count = 0
                counters.last_reading_timestamp = None

    def __repr__(self) -> str:
        active = ",".join(sensor.value for sensor in self.active_sensors) or "none"
        return f"<AcquisitionManager(active={active})>"
