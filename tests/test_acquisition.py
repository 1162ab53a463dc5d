"""Tests for AcquisitionManager."""

import pytest

from conftest import FakeSensorSource
from vehicle_sensor_pipeline.acquisition import AcquisitionManager
from vehicle_sensor_pipeline.models import Reading, SensorType

ACC = SensorType.ACCELEROMETER
GYRO = SensorType.GYROSCOPE
MAG = SensorType.MAGNETOMETER


@pytest.fixture()
def manager(fake_sources, clock):
    return AcquisitionManager(fake_sources, clock=clock)


class TestStartStop:
    def test_start_without_callbacks_fails(self, manager, fake_sources):
        assert manager.start_sensors({}) is False
        assert manager.start_sensors(None) is False
        assert manager.start_sensors({ACC: None}) is False
        assert all(source.subscribe_calls == 0 for source in fake_sources.values())
        assert manager.active_sensors == []

    def test_start_opens_only_requested_sensors(self, manager, fake_sources):
        assert manager.start_sensors({ACC: lambda r: None, GYRO: lambda r: None})
        assert manager.active_sensors == [ACC, GYRO]
        assert len(fake_sources[ACC].listeners) == 1
        assert fake_sources[MAG].subscribe_calls == 0
        assert fake_sources[ACC].interval == 100

    def test_failed_sensor_rolls_back_opened_subscriptions(self, clock):
        sources = {
            ACC: FakeSensorSource(ACC),
            GYRO: FakeSensorSource(GYRO),
            MAG: FakeSensorSource(MAG, fail_on_subscribe=True),
        }
        manager = AcquisitionManager(sources, clock=clock)

        ok = manager.start_sensors({ACC: print, GYRO: print, MAG: print})

        assert ok is False
        assert sources[ACC].listeners == []
        assert sources[GYRO].listeners == []
        assert sources[ACC].remove_calls == 1
        assert manager.is_running is False

    def test_missing_source_fails_start(self, clock):
        manager = AcquisitionManager({ACC: FakeSensorSource(ACC)}, clock=clock)
        assert manager.start_sensors({ACC: print, MAG: print}) is False
        assert manager.active_sensors == []

    def test_stop_is_idempotent(self, manager, fake_sources):
        manager.start_sensors({ACC: print})
        assert manager.stop_sensors() is True
        assert manager.stop_sensors() is True
        assert fake_sources[ACC].remove_calls == 1
        assert manager.is_running is False

    def test_restart_replaces_subscriptions(self, manager, fake_sources):
        first, second = [], []
        manager.start_sensors({ACC: first.append})
        manager.start_sensors({ACC: second.append})

        fake_sources[ACC].emit({"x": 0.0, "y": 0.0, "z": 1.0})

        assert first == []
        assert len(second) == 1
        assert len(fake_sources[ACC].listeners) == 1


class TestDataPath:
    def test_valid_sample_is_stamped_and_forwarded(self, manager, fake_sources, clock):
        received = []
        manager.start_sensors({ACC: received.append})

        fake_sources[ACC].emit({"x": 0.1, "y": -0.2, "z": 0.98})

        assert received == [Reading(0.1, -0.2, 0.98, clock.now)]
        stats = manager.get_statistics()[ACC]
        assert stats.reading_count == 1
        assert stats.error_count == 0
        assert stats.last_reading_timestamp == clock.now

    @pytest.mark.parametrize(
        "sample",
        [{"x": 1.0, "y": 2.0}, {"x": float("nan"), "y": 0.0, "z": 0.0}, None],
    )
    def test_malformed_sample_counts_one_error(self, manager, fake_sources, sample):
        received = []
        manager.start_sensors({GYRO: received.append})

        fake_sources[GYRO].emit(sample)

        assert received == []
        stats = manager.get_statistics()[GYRO]
        assert stats.error_count == 1
        assert stats.reading_count == 0

    def test_callback_exception_is_contained(self, manager, fake_sources):
        def explode(reading):
            raise RuntimeError("consumer failure")

        manager.start_sensors({ACC: explode})
        fake_sources[ACC].emit({"x": 0.0, "y": 0.0, "z": 1.0})

        stats = manager.get_statistics()[ACC]
        assert stats.reading_count == 1
        assert stats.error_count == 0

    def test_each_sample_is_counted_once(self, manager, fake_sources):
        def explode(reading):
            raise RuntimeError("consumer failure")

        manager.start_sensors({ACC: explode})
        fake_sources[ACC].emit({"x": 0.0, "y": 0.0, "z": 1.0})
        fake_sources[ACC].emit({"x": float("nan"), "y": 0.0, "z": 1.0})

        stats = manager.get_statistics()[ACC]
        assert stats.reading_count + stats.error_count == 2

    def test_statistics_are_snapshots(self, manager, fake_sources):
        manager.start_sensors({ACC: print})
        before = manager.get_statistics()
        fake_sources[ACC].emit({"x": 0.0, "y": 0.0, "z": 1.0})
        assert before[ACC].reading_count == 0

    def test_reset_statistics_keeps_counting(self, manager, fake_sources):
        manager.start_sensors({ACC: lambda r: None})
        fake_sources[ACC].emit({"x": 0.0, "y": 0.0, "z": 1.0})
        manager.reset_statistics()
        fake_sources[ACC].emit({"x": 0.0, "y": 0.0, "z": 1.0})
        assert manager.get_statistics()[ACC].reading_count == 1


class TestConfiguration:
    def test_initialize_merges_per_sensor(self, manager):
        manager.initialize({"update_interval": {"gyroscope": 50}, "batch_size": 4})
        config = manager.config
        assert config.update_interval[GYRO] == 50
        assert config.update_interval[ACC] == 100
        assert config.batch_size == 4

    def test_config_property_is_a_copy(self, manager):
        manager.config.update_interval[ACC] = 1
        assert manager.effective_interval(ACC) == 100

    def test_low_power_doubles_and_reapplies(self, manager, fake_sources):
        manager.start_sensors({ACC: print})
        manager.set_low_power_mode(True)
        assert manager.effective_interval(ACC) == 200
        assert fake_sources[ACC].interval == 200
        assert fake_sources[ACC].subscribe_calls == 1

    def test_update_configuration_keeps_subscriptions(self, manager, fake_sources):
        manager.start_sensors({ACC: print, GYRO: print})
        manager.update_configuration({"update_interval": {ACC: 1000}, "low_power_mode": True})

        assert fake_sources[ACC].interval == 2000
        assert fake_sources[GYRO].interval == 200
        assert fake_sources[ACC].subscribe_calls == 1
        assert fake_sources[ACC].remove_calls == 0

    def test_initialize_does_not_touch_live_sources(self, manager, fake_sources):
        manager.start_sensors({ACC: print})
        manager.initialize({"update_interval": {ACC: 500}})
        assert fake_sources[ACC].interval == 100


class TestAvailability:
    @pytest.mark.asyncio
    async def test_reports_every_sensor(self, clock):
        sources = {
            ACC: FakeSensorSource(ACC),
            GYRO: FakeSensorSource(GYRO, available=False),
            MAG: FakeSensorSource(MAG, availability_error=OSError("no hardware")),
        }
        manager = AcquisitionManager(sources, clock=clock)

        result = await manager.check_sensors_availability()

        assert result == {ACC: True, GYRO: False, MAG: False}

    @pytest.mark.asyncio
    async def test_sensor_without_source_is_unavailable(self, clock):
        manager = AcquisitionManager({ACC: FakeSensorSource(ACC)}, clock=clock)
        result = await manager.check_sensors_availability()
        assert result[MAG] is False
        assert result[ACC] is True
