import math

import numpy as np
import pytest
from scipy.special import erfcx

from conftest import make_config
from tlc.cal import Interp, InterpMethod, IterationMethod, ShapeError
from tlc.cal.interp import interp1d
from tlc.cal.solve import PointData, make_solver, newton_down, newton_tangent, solve_nu

K = 0.19
A = 1.09e-7
DT = 0.01


def step_case(h_true, peak_frame=105, step_frame=5, t0=20.0, t1=40.0):
    """Fluid temperature stepping from t0 to t1, wall reaching Tw exactly at h_true."""
    temps = np.full(peak_frame + 10, t0, dtype=np.float32)
    temps[step_frame:] = t1
    at = A * DT * (peak_frame - step_frame)
    peak_temp = t0 + (1.0 - erfcx(h_true / K * math.sqrt(at))) * (t1 - t0)
    return PointData(peak_frame, temps, peak_temp, DT, K, A)


class TestNewton:
    @pytest.mark.parametrize("make", [newton_tangent, newton_down])
    def test_linear_root(self, make):
        solve = make(0.0, 10)
        assert solve(lambda h: (h - 5.0, 1.0)) == pytest.approx(5.0)

    @pytest.mark.parametrize("make", [newton_tangent, newton_down])
    def test_zero_derivative(self, make):
        assert math.isnan(make(1.0, 10)(lambda h: (1.0, 0.0)))

    @pytest.mark.parametrize("make", [newton_tangent, newton_down])
    def test_divergence(self, make):
        assert math.isnan(make(0.0, 10)(lambda h: (h - 1e5, 1.0)))

    def test_damping_exhausted(self):
        # a constant residual never decreases
        assert math.isnan(newton_down(0.0, 10)(lambda h: (100.0, 1.0)))

    def test_steps_exhausted_returns_last_iterate(self):
        assert newton_tangent(0.0, 3)(lambda h: (100.0, 1.0)) == pytest.approx(-300.0)

    def test_make_solver(self):
        equation = lambda h: (h * h - 4.0, 2.0 * h)
        assert make_solver(IterationMethod.newton_tangent(1.0))(equation) == pytest.approx(2.0, abs=1e-3)
        assert make_solver(IterationMethod.newton_down(1.0))(equation) == pytest.approx(2.0, abs=1e-3)


class TestThermalEquation:
    def test_residual_vanishes_at_true_h(self):
        point = step_case(120.0)
        f, df = point.thermal_equation(120.0)
        assert f == pytest.approx(0.0, abs=1e-4)
        assert df < 0

    def test_derivative_matches_finite_difference(self):
        point = step_case(120.0)
        h, eps = 80.0, 1e-3
        _, df = point.thermal_equation(h)
        numeric = (point.thermal_equation(h + eps)[0] - point.thermal_equation(h - eps)[0]) / (2 * eps)
        assert df == pytest.approx(numeric, rel=1e-4)

    def test_large_h_does_not_overflow(self):
        point = step_case(120.0)
        f, df = point.thermal_equation(1e6)
        assert math.isfinite(f) and math.isfinite(df)

    def test_history_shorter_than_peak(self):
        with pytest.raises(ShapeError):
            PointData(20, np.zeros(10, dtype=np.float32), 30.0, DT, K, A)

    @pytest.mark.parametrize("method", [
        IterationMethod.newton_tangent(50.0, 20),
        IterationMethod.newton_down(50.0, 20),
    ])
    def test_recovers_h(self, method):
        point = step_case(120.0)
        assert make_solver(method)(point.thermal_equation) == pytest.approx(120.0, abs=0.05)


class TestSolveNu:
    def interp_for(self, temps, config, pool):
        t2d = np.stack([temps, temps])
        return Interp(
            interp1d(t2d, InterpMethod.horizontal(), config.thermocouples,
                     config.top_left_pos, config.region_shape, pool),
            InterpMethod.horizontal(),
            config.region_shape,
        )

    @pytest.mark.parametrize("method", [IterationMethod.newton_tangent(), IterationMethod.newton_down()])
    def test_early_peaks_are_nan(self, pool, method):
        config = make_config(iteration_method=method)
        temps = np.linspace(20, 40, config.frame_num, dtype=np.float32)
        interp = self.interp_for(temps, config, pool)
        peak_frames = np.array([0, 1, 2, 3, 4, 4])
        nu2d, nu_nan_mean = solve_nu(peak_frames, interp, config, pool)
        assert nu2d.shape == config.region_shape
        assert np.isnan(nu2d).all()
        assert math.isnan(nu_nan_mean)

    def test_nusselt_map(self, pool):
        h_true = 120.0
        point = step_case(h_true, peak_frame=30, step_frame=5)
        config = make_config(
            frame_num=40,
            frame_rate=int(round(1 / DT)),
            peak_temp=point.peak_temp,
            solid_thermal_conductivity=K,
            solid_thermal_diffusivity=A,
            iteration_method=IterationMethod.newton_tangent(50.0, 20),
        )
        temps = np.asarray(point.temps[:40], dtype=np.float32)
        interp = self.interp_for(temps, config, pool)
        # pixel 0 peaks too early, the rest at frame 30
        peak_frames = np.array([3, 30, 30, 30, 30, 30])

        nu2d, nu_nan_mean = solve_nu(peak_frames, interp, config, pool)

        expected = h_true * config.characteristic_length / config.air_thermal_conductivity
        assert nu2d.dtype == np.float32
        # row 0 of the map is the bottom row of the region
        assert math.isnan(nu2d[1, 0])
        np.testing.assert_allclose(nu2d[0], expected, rtol=1e-3)
        assert nu_nan_mean == pytest.approx(expected, rel=1e-3)

    def test_peak_count_mismatch(self, pool):
        config = make_config()
        temps = np.linspace(20, 40, config.frame_num, dtype=np.float32)
        with pytest.raises(ShapeError):
            solve_nu(np.array([10, 10]), self.interp_for(temps, config, pool), config, pool)
