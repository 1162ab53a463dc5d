"""Shared fixtures: a synchronous fake sensor source and a controllable clock."""

from typing import Any, Callable, Optional

import pytest

from vehicle_sensor_pipeline.models import SensorType
from vehicle_sensor_pipeline.sources import SensorSource, SensorSubscriptionError, Subscription


class FakeSensorSource(SensorSource):
    """Sensor source whose samples are pushed by the test via emit()."""

    def __init__(
        self,
        sensor_type: SensorType,
        *,
        available: bool = True,
        fail_on_subscribe: bool = False,
        availability_error: Optional[Exception] = None,
    ):
        self.sensor_type = sensor_type
        self.available = available
        self.fail_on_subscribe = fail_on_subscribe
        self.availability_error = availability_error
        self.listeners: list[Callable[[Any], None]] = []
        self.intervals: list[int] = []
        self.subscribe_calls = 0
        self.remove_calls = 0

    @property
    def interval(self) -> Optional[int]:
        return self.intervals[-1] if self.intervals else None

    def add_listener(self, callback):
        self.subscribe_calls += 1
        if self.fail_on_subscribe:
            raise SensorSubscriptionError(f"{self.sensor_type.value} unavailable")
        self.listeners.append(callback)

        def remove():
            self.remove_calls += 1
            self.listeners.remove(callback)

        return Subscription(remove, name=f"fake-{self.sensor_type.value}")

    def set_update_interval(self, milliseconds):
        self.intervals.append(milliseconds)

    async def is_available(self):
        if self.availability_error is not None:
            raise self.availability_error
        return self.available

    def emit(self, sample):
        for listener in list(self.listeners):
            listener(sample)


class FakeClock:
    def __init__(self, start: int = 1_700_000_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture()
def fake_sources():
    return {sensor: FakeSensorSource(sensor) for sensor in SensorType}


@pytest.fixture()
def clock():
    return FakeClock()
