"""Tests for gravity calibration, calibration sessions and persistence."""

import math

import pytest

from vehicle_sensor_pipeline.calibration import (
    CalibrationEngine,
    CalibrationSession,
    CalibrationStore,
)
from vehicle_sensor_pipeline.models import CalibrationState, Reading


def reading(x, y, z, ts=1000):
    return Reading(x=x, y=y, z=z, timestamp=ts)


class TestCalibrateGravityVector:
    def test_identical_samples_along_z(self):
        engine = CalibrationEngine()
        result = engine.calibrate_gravity_vector([reading(0.0, 0.0, 9.8)] * 20)

        assert result is not None
        assert result.vector == pytest.approx((0.0, 0.0, 1.0))
        assert result.magnitude == pytest.approx(9.8)
        assert result.offsets == pytest.approx((0.0, 0.0, 9.8))
        assert engine.state.gravity_vector == pytest.approx((0.0, 0.0, 1.0))
        assert engine.is_calibrated

    def test_vector_is_unit_length(self):
        engine = CalibrationEngine()
        samples = [reading(0.3, -0.2, 0.9), reading(0.31, -0.19, 0.92), {"x": 0.29, "y": -0.21, "z": 0.91}]
        result = engine.calibrate_gravity_vector(samples)
        assert math.sqrt(sum(c * c for c in result.vector)) == pytest.approx(1.0)

    @pytest.mark.parametrize("samples", [None, []])
    def test_empty_input_keeps_state(self, samples):
        engine = CalibrationEngine()
        assert engine.calibrate_gravity_vector(samples) is None
        assert engine.state == CalibrationState()

    def test_zero_magnitude_keeps_previous_state(self):
        engine = CalibrationEngine()
        engine.calibrate_gravity_vector([reading(0.0, 0.0, 1.0)])
        before = engine.state

        assert engine.calibrate_gravity_vector([reading(1.0, 0.0, 0.0), reading(-1.0, 0.0, 0.0)]) is None
        assert engine.state is before

    def test_malformed_sample_aborts(self):
        engine = CalibrationEngine()
        samples = [reading(0.0, 0.0, 1.0), {"x": 0.0, "y": float("nan"), "z": 1.0}]
        assert engine.calibrate_gravity_vector(samples) is None
        assert not engine.is_calibrated


class TestCompensation:
    def test_gravity_along_z_zeroes_z(self):
        engine = CalibrationEngine()
        samples = [reading(0.2, -0.1, 9.8), reading(-0.2, 0.1, 9.8)]
        engine.calibrate_gravity_vector(samples)

        compensated = engine.compensate_for_gravity(reading(0.3, 0.4, 9.8, ts=42))

        assert compensated.x == pytest.approx(0.3)
        assert compensated.y == pytest.approx(0.4)
        assert compensated.z == pytest.approx(0.0)
        assert compensated.timestamp == 42

    def test_uncalibrated_uses_default_vector(self):
        compensated = CalibrationEngine().compensate_for_gravity(reading(1.0, 2.0, 3.0))
        assert compensated.as_tuple() == pytest.approx((1.0, 2.0, 0.0))

    def test_offsets_keep_one_gravity_unit_on_z(self):
        engine = CalibrationEngine(CalibrationState(magnitude=1.0))
        corrected = engine.apply_calibration_offsets(reading(5.0, 5.0, 5.0), offsets=(1.0, 2.0, 3.0))
        assert corrected.as_tuple() == pytest.approx((4.0, 3.0, 3.0))

    def test_no_offsets_returns_reading_unchanged(self):
        r = reading(1.0, 2.0, 3.0)
        assert CalibrationEngine().apply_calibration_offsets(r) is r

    def test_reset_restores_default(self):
        engine = CalibrationEngine()
        engine.calibrate_gravity_vector([reading(0.0, 1.0, 0.0)])
        engine.reset()
        assert engine.state == CalibrationState()


class TestCalibrationSession:
    def test_completes_once_at_target(self):
        engine = CalibrationEngine()
        progress, results = [], []
        session = CalibrationSession(
            engine, 3, on_progress=progress.append, on_complete=results.append
        )
        assert session.start()

        for _ in range(3):
            session.add_sample(reading(0.0, 0.0, 1.0))
        assert session.add_sample(reading(0.0, 0.0, 1.0)) is False

        assert progress == pytest.approx([1 / 3, 2 / 3, 1.0])
        assert len(results) == 1
        assert results[0].sample_count == 3
        assert not session.is_active
        assert engine.is_calibrated

    def test_cancel_discards_samples(self):
        cancelled = []
        session = CalibrationSession(CalibrationEngine(), 5, on_cancel=lambda: cancelled.append(True))
        session.start()
        session.add_sample(reading(0.0, 0.0, 1.0))

        assert session.cancel()
        assert cancelled == [True]
        assert session.progress == 0.0
        assert session.cancel() is False

    def test_callback_errors_do_not_propagate(self):
        def broken(_):
            raise RuntimeError("ui went away")

        session = CalibrationSession(CalibrationEngine(), 1, on_progress=broken, on_complete=broken)
        session.start()
        assert session.add_sample(reading(0.0, 0.0, 1.0))
        assert session.result is not None


class TestCalibrationStore:
    def test_save_and_load(self, tmp_path):
        store = CalibrationStore(tmp_path / "cal" / "calibration.json")
        state = CalibrationState(gravity_vector=(0.0, 0.6, 0.8), magnitude=9.81, offsets=(0.0, 5.9, 7.8))

        assert store.save(state)
        assert store.load() == state

    def test_missing_and_corrupt_files(self, tmp_path):
        path = tmp_path / "calibration.json"
        store = CalibrationStore(path)
        assert store.load() is None

        path.write_text("{not json")
        assert store.load() is None

    def test_clear(self, tmp_path):
        store = CalibrationStore(tmp_path / "calibration.json")
        store.save(CalibrationState())
        assert store.clear()
        assert store.load() is None
