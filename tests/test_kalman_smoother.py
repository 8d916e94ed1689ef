"""
Unit tests for the per-device Kalman smoother.

Tests cover:
- First-call passthrough
- Convergence towards repeated measurements
- Outlier damping
- Fixed per-device anchor
- Singular innovation handling
- Reset behavior
"""

import math

import numpy as np
import pytest

from ble_core.localization import (
    KalmanSmoother,
    KalmanSmootherConfig,
    to_local,
    to_geo,
)
from ble_core.metrics import get_metrics

from conftest import BASE_LAT, BASE_LNG


def geo(x: float, y: float):
    """Local meters around the base point -> (lat, lng)."""
    return to_geo(x, y, BASE_LAT, BASE_LNG)


def local(lat: float, lng: float):
    """(lat, lng) -> local meters around the base point."""
    return to_local(lat, lng, BASE_LAT, BASE_LNG)


class TestKalmanSmootherConfig:
    """Tests for KalmanSmootherConfig."""

    def test_defaults(self):
        config = KalmanSmootherConfig()

        assert config.process_noise == 0.5
        assert config.measurement_noise == 2.0
        assert config.dt == 1.0
        assert config.initial_position_variance == 100.0
        assert config.initial_velocity_variance == 10.0

    def test_invalid_values_rejected(self):
        with pytest.raises(ValueError):
            KalmanSmootherConfig(process_noise=-0.1)
        with pytest.raises(ValueError):
            KalmanSmootherConfig(measurement_noise=-1.0)
        with pytest.raises(ValueError):
            KalmanSmootherConfig(dt=0.0)


class TestFirstMeasurement:
    """Tests for state initialization."""

    def test_first_call_returns_input(self):
        """Test that the first measurement passes through unchanged."""
        smoother = KalmanSmoother()

        lat, lng = smoother.smooth("dev-1", 50.0001, 6.0002, 3.0)

        assert lat == 50.0001
        assert lng == 6.0002

    def test_state_initialized_at_origin(self):
        smoother = KalmanSmoother()
        smoother.smooth("dev-1", 50.0001, 6.0002, 3.0, timestamp=12.5)

        state = smoother.get_state("dev-1")

        assert "dev-1" in smoother
        assert state.position == (0.0, 0.0)
        assert state.velocity == (0.0, 0.0)
        assert state.ref_lat == 50.0001
        assert state.ref_lng == 6.0002
        assert state.last_update == 12.5
        assert state.update_count == 0
        np.testing.assert_array_equal(
            state.covariance, np.diag([100.0, 100.0, 10.0, 10.0])
        )
        assert get_metrics().get_counter("kalman_initialized") == 1

    def test_devices_are_independent(self):
        smoother = KalmanSmoother()
        smoother.smooth("a", 50.0, 6.0)

        lat, lng = smoother.smooth("b", 50.001, 6.001)

        assert (lat, lng) == (50.001, 6.001)
        assert len(smoother) == 2


class TestConvergence:
    """Tests for the predict/update cycle."""

    def test_update_moves_towards_measurement(self):
        """Test that the output is closer to z than the prediction was."""
        smoother = KalmanSmoother()
        smoother.smooth("dev-1", *geo(0.0, 0.0), 1.0)

        z = (0.0, 10.0)
        state = smoother.get_state("dev-1")
        predicted = (
            state.position[0] + state.velocity[0],
            state.position[1] + state.velocity[1],
        )

        out = local(*smoother.smooth("dev-1", *geo(*z), 1.0))

        assert math.dist(out, z) < math.dist(predicted, z)

    def test_first_update_gain(self):
        """Test the first update against a hand-computed Kalman gain."""
        smoother = KalmanSmoother()
        smoother.smooth("dev-1", *geo(0.0, 0.0), 1.0)

        out = local(*smoother.smooth("dev-1", *geo(0.0, 10.0), 1.0))

        # P_pred[0,0] = 100 + 10 + 0.5, R = 2 * (1 + 1/10) = 2.2
        gain = 110.5 / (110.5 + 2.2)
        assert out[0] == pytest.approx(0.0, abs=1e-6)
        assert out[1] == pytest.approx(10.0 * gain, abs=1e-6)

    def test_repeated_measurement_converges(self):
        """Test that a stationary device converges to its measured position."""
        smoother = KalmanSmoother()
        smoother.smooth("dev-1", *geo(0.0, 0.0), 1.0)

        z = (6.0, -8.0)
        for _ in range(30):
            out = local(*smoother.smooth("dev-1", *geo(*z), 1.0))

        assert math.dist(out, z) < 0.5

    def test_identical_measurements_stay_put(self):
        smoother = KalmanSmoother()
        for _ in range(5):
            lat, lng = smoother.smooth("dev-1", 50.0, 6.0, 2.0)

        assert lat == pytest.approx(50.0, abs=1e-12)
        assert lng == pytest.approx(6.0, abs=1e-12)

    def test_outlier_damped(self):
        """Test that a sudden 50 m jump is not followed all the way."""
        smoother = KalmanSmoother()
        for _ in range(10):
            smoother.smooth("dev-1", *geo(0.0, 0.0), 1.0)

        out = local(*smoother.smooth("dev-1", *geo(50.0, 0.0), 1.0))

        assert 0.0 < out[0] < 50.0

    def test_noisy_measurement_trusted_less(self):
        """Test that a larger raw variance gives a smaller correction."""
        precise = KalmanSmoother()
        noisy = KalmanSmoother()
        for smoother in (precise, noisy):
            for _ in range(5):
                smoother.smooth("dev-1", *geo(0.0, 0.0), 1.0)

        out_precise = local(*precise.smooth("dev-1", *geo(0.0, 20.0), 1.0))
        out_noisy = local(*noisy.smooth("dev-1", *geo(0.0, 20.0), 50.0))

        assert out_noisy[1] < out_precise[1]

    def test_missing_quality_uses_default(self):
        """Test that None / 0 variance behaves like 5 m."""
        a, b, c = KalmanSmoother(), KalmanSmoother(), KalmanSmoother()
        for smoother, quality in ((a, None), (b, 0.0), (c, 5.0)):
            smoother.smooth("dev-1", *geo(0.0, 0.0), quality)
            smoother.smooth("dev-1", *geo(3.0, 4.0), quality)

        np.testing.assert_allclose(a.get_state("dev-1").state, c.get_state("dev-1").state)
        np.testing.assert_allclose(b.get_state("dev-1").state, c.get_state("dev-1").state)

    @pytest.mark.parametrize("quality", [float("nan"), float("inf")])
    def test_non_finite_quality_uses_default(self, quality):
        """Test that a NaN/inf variance does not poison the device state."""
        bad, good = KalmanSmoother(), KalmanSmoother()
        for smoother, q in ((bad, quality), (good, 5.0)):
            smoother.smooth("dev-1", *geo(0.0, 0.0), q)
            smoother.smooth("dev-1", *geo(3.0, 4.0), q)

        np.testing.assert_allclose(bad.get_state("dev-1").state, good.get_state("dev-1").state)

        lat, lng = bad.smooth("dev-1", *geo(3.0, 4.0), 1.0)

        assert math.isfinite(lat) and math.isfinite(lng)

    def test_anchor_never_moves(self):
        smoother = KalmanSmoother()
        smoother.smooth("dev-1", *geo(0.0, 0.0))
        for i in range(5):
            smoother.smooth("dev-1", *geo(10.0 * i, 5.0 * i))

        state = smoother.get_state("dev-1")
        assert (state.ref_lat, state.ref_lng) == geo(0.0, 0.0)
        assert state.update_count == 5
        assert get_metrics().get_counter("kalman_updates") == 5


class TestSingularInnovation:
    """Tests for a singular innovation covariance."""

    def test_update_skipped(self):
        """Test that det(S) ~ 0 keeps the prediction."""
        config = KalmanSmootherConfig(
            process_noise=0.0,
            measurement_noise=0.0,
            initial_position_variance=0.0,
            initial_velocity_variance=0.0,
        )
        smoother = KalmanSmoother(config)
        smoother.smooth("dev-1", *geo(0.0, 0.0))

        out = local(*smoother.smooth("dev-1", *geo(10.0, 10.0)))

        assert out[0] == pytest.approx(0.0, abs=1e-9)
        assert out[1] == pytest.approx(0.0, abs=1e-9)
        assert smoother.get_state("dev-1").update_count == 1
        assert get_metrics().get_counter("kalman_singular_innovation") == 1
        assert get_metrics().get_counter("kalman_updates") == 0


class TestReset:
    """Tests for reset()."""

    def test_reset_clears_all_devices(self):
        smoother = KalmanSmoother()
        smoother.smooth("a", 50.0, 6.0)
        smoother.smooth("b", 50.0, 6.0)

        smoother.reset()

        assert len(smoother) == 0
        assert smoother.get_state("a") is None

    def test_after_reset_first_call_passes_through(self):
        smoother = KalmanSmoother()
        smoother.smooth("dev-1", *geo(0.0, 0.0))
        smoother.smooth("dev-1", *geo(5.0, 5.0))

        smoother.reset()
        lat, lng = smoother.smooth("dev-1", 50.0003, 6.0003)

        assert (lat, lng) == (50.0003, 6.0003)

    def test_reset_device(self):
        smoother = KalmanSmoother()
        smoother.smooth("a", 50.0, 6.0)

        assert smoother.reset_device("a") is True
        assert smoother.reset_device("a") is False
        assert "a" not in smoother
