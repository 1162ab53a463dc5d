"""Tests for SensorPipeline wiring."""

import threading

import pytest

from conftest import FakeSensorSource
from vehicle_sensor_pipeline.acquisition import AcquisitionManager
from vehicle_sensor_pipeline.calibration import CalibrationEngine
from vehicle_sensor_pipeline.models import PowerMode, ProcessingLevel, SensorType, Stage
from vehicle_sensor_pipeline.pipeline import SensorPipeline
from vehicle_sensor_pipeline.power import PowerModeController
from vehicle_sensor_pipeline.processor import SensorProcessor

ACC = SensorType.ACCELEROMETER
GYRO = SensorType.GYROSCOPE
MAG = SensorType.MAGNETOMETER

SAMPLE = {"x": 0.0, "y": 0.0, "z": 1.0}


class Harness:
    def __init__(self, sources, clock, **kwargs):
        self.sources = sources
        self.acquisition = AcquisitionManager(sources, clock=clock)
        self.calibration = CalibrationEngine()
        self.processor = SensorProcessor(self.calibration)
        self.power = PowerModeController()
        self.records = []
        self.readings = []
        self.pipeline = SensorPipeline(
            self.acquisition,
            self.calibration,
            self.processor,
            self.power,
            record_sink=self.records.append,
            on_reading=lambda sensor, staged: self.readings.append((sensor, staged)),
            **kwargs,
        )


@pytest.fixture()
def harness(fake_sources, clock):
    h = Harness(fake_sources, clock)
    yield h
    h.pipeline.stop()


class TestStartStop:
    def test_start_opens_sensors_of_normal_mode(self, harness):
        assert harness.pipeline.start()
        assert harness.acquisition.active_sensors == [ACC, GYRO, MAG]
        assert harness.sources[MAG].interval == 200
        assert harness.processor.processing_level is ProcessingLevel.FULL

    def test_stop_is_idempotent(self, harness):
        harness.pipeline.start()
        assert harness.pipeline.stop()
        assert harness.pipeline.stop()
        assert harness.acquisition.active_sensors == []
        assert harness.power.listener_count == 0

    def test_start_fails_when_sensor_missing(self, clock):
        sources = {
            ACC: FakeSensorSource(ACC),
            GYRO: FakeSensorSource(GYRO),
            MAG: FakeSensorSource(MAG, fail_on_subscribe=True),
        }
        h = Harness(sources, clock)
        assert h.pipeline.start() is False
        assert not h.pipeline.is_running
        assert h.power.listener_count == 0
        assert sources[ACC].listeners == []

    def test_sensor_subset(self, clock):
        sources = {
            ACC: FakeSensorSource(ACC),
            GYRO: FakeSensorSource(GYRO),
            MAG: FakeSensorSource(MAG, fail_on_subscribe=True),
        }
        h = Harness(sources, clock, sensors=[ACC, GYRO])
        assert h.pipeline.start()
        assert h.acquisition.active_sensors == [ACC, GYRO]
        h.pipeline.stop()


class TestPowerModes:
    def test_background_switches_magnetometer_off(self, harness):
        harness.pipeline.start()
        harness.power.set_power_mode(PowerMode.BACKGROUND)

        assert harness.acquisition.active_sensors == [ACC, GYRO]
        assert harness.sources[MAG].listeners == []
        assert harness.sources[ACC].interval == 1000
        assert harness.processor.processing_level is ProcessingLevel.NONE

    def test_low_mode_keeps_subscriptions_and_changes_intervals(self, harness):
        harness.pipeline.start()
        harness.power.set_power_mode(PowerMode.LOW)

        assert harness.sources[ACC].subscribe_calls == 1
        assert harness.sources[ACC].interval == 200
        assert harness.sources[MAG].interval == 500
        assert harness.processor.processing_level is ProcessingLevel.MINIMAL

    def test_returning_to_normal_reopens_magnetometer(self, harness):
        harness.pipeline.start()
        harness.power.set_power_mode(PowerMode.BACKGROUND)
        harness.power.set_power_mode(PowerMode.NORMAL)
        assert harness.acquisition.active_sensors == [ACC, GYRO, MAG]

    def test_partial_interval_update_keeps_other_sensors(self, harness):
        harness.pipeline.start()
        harness.power.update_mode_config(PowerMode.NORMAL, update_interval={"accelerometer": 50})

        assert harness.acquisition.active_sensors == [ACC, GYRO, MAG]
        assert harness.sources[ACC].interval == 50
        assert harness.sources[GYRO].interval == 100
        assert harness.sources[MAG].interval == 200

    def test_explicit_zero_interval_stops_sensor(self, harness):
        harness.pipeline.start()
        harness.power.update_mode_config(PowerMode.NORMAL, update_interval={"gyroscope": 0})
        assert harness.acquisition.active_sensors == [ACC, MAG]

    def test_stopped_pipeline_ignores_mode_changes(self, harness):
        harness.pipeline.start()
        harness.pipeline.stop()
        harness.power.set_power_mode(PowerMode.LOW)
        assert harness.acquisition.active_sensors == []


class TestDataFlow:
    def test_reading_reaches_listener_and_sink(self, harness):
        harness.pipeline.start()
        harness.sources[ACC].emit(SAMPLE)

        sensor, staged = harness.readings[0]
        assert sensor is ACC
        assert staged.best()[0] is Stage.PROCESSED
        assert harness.records[0]["sensor"] == "accelerometer"
        assert harness.records[0]["processed_vertical"] == pytest.approx(1.0)

    def test_records_are_batched(self, harness):
        harness.pipeline.start()
        harness.power.set_power_mode(PowerMode.BACKGROUND)  # batch size 5

        for _ in range(4):
            harness.sources[ACC].emit(SAMPLE)
        assert harness.records == []
        assert harness.pipeline.status()["pending_records"] == 4

        harness.sources[GYRO].emit(SAMPLE)
        assert len(harness.records) == 5
        assert harness.records[-1]["sensor"] == "gyroscope"

    def test_stop_flushes_partial_batch(self, harness):
        harness.pipeline.start()
        harness.power.set_power_mode(PowerMode.LOW)  # batch size 2
        harness.sources[ACC].emit(SAMPLE)
        assert harness.records == []

        harness.pipeline.stop()
        assert len(harness.records) == 1

    def test_consumer_errors_are_isolated(self, fake_sources, clock):
        def broken_sink(record):
            raise RuntimeError("disk full")

        h = Harness(fake_sources, clock)
        h.pipeline = SensorPipeline(
            h.acquisition, h.calibration, h.processor, h.power,
            record_sink=broken_sink,
            on_reading=lambda sensor, staged: 1 / 0,
        )
        h.pipeline.start()
        fake_sources[ACC].emit(SAMPLE)

        stats = h.acquisition.get_statistics()[ACC]
        assert stats.reading_count == 1
        assert stats.error_count == 0
        h.pipeline.stop()


class TestCalibration:
    def test_live_calibration_session(self, harness):
        results = []
        harness.pipeline.start()
        harness.pipeline.start_calibration(3, on_complete=results.append)

        for _ in range(3):
            harness.sources[ACC].emit({"x": 0.0, "y": 0.0, "z": 9.8})

        assert results and results[0].magnitude == pytest.approx(9.8)
        assert harness.calibration.is_calibrated
        assert harness.pipeline.status()["calibrated"] is True

    def test_calibrate_from_samples(self, harness):
        result = harness.pipeline.calibrate([{"x": 0.0, "y": 0.0, "z": 1.0}] * 5)
        assert result.vector == pytest.approx((0.0, 0.0, 1.0))


class TestSinkConcurrency:
    def test_slow_sink_does_not_block_other_sensor(self, fake_sources, clock):
        sink_entered = threading.Event()
        release_sink = threading.Event()
        records = []

        def slow_sink(record):
            if record["sensor"] == "accelerometer":
                sink_entered.set()
                release_sink.wait(5.0)
            records.append(record)

        h = Harness(fake_sources, clock)
        h.pipeline = SensorPipeline(h.acquisition, h.calibration, h.processor, h.power, record_sink=slow_sink)
        h.pipeline.start()

        acc_thread = threading.Thread(target=fake_sources[ACC].emit, args=(SAMPLE,))
        acc_thread.start()
        assert sink_entered.wait(2.0)

        gyro_thread = threading.Thread(target=fake_sources[GYRO].emit, args=(SAMPLE,))
        gyro_thread.start()
        gyro_thread.join(1.0)
        gyro_done = not gyro_thread.is_alive()
        status = h.pipeline.status()

        release_sink.set()
        acc_thread.join(2.0)
        h.pipeline.stop()

        assert gyro_done
        assert status["pending_records"] == 0
        assert [r["sensor"] for r in records] == ["gyroscope", "accelerometer"]

    def test_sink_may_call_back_into_pipeline(self, fake_sources, clock):
        seen = []
        h = Harness(fake_sources, clock)

        def reentrant_sink(record):
            seen.append(h.pipeline.status()["pending_records"])
            h.pipeline.flush()

        h.pipeline = SensorPipeline(h.acquisition, h.calibration, h.processor, h.power, record_sink=reentrant_sink)
        h.pipeline.start()
        fake_sources[ACC].emit(SAMPLE)
        h.pipeline.stop()

        assert seen == [0]
