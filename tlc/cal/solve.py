"""
Inverse solution of the semi-infinite solid conduction equation.

For every pixel the wall reaches the indicator temperature ``Tw`` at its
peak frame ``N``. Superposing step responses of the reference temperature
history ``T`` gives

    f(h) = Tw - T0 - sum_{n=1}^{N-1} (1 - exp(h^2 a t_n / k^2) erfc(h sqrt(a t_n) / k)) (T[n] - T[n-1])

with ``t_n = (N - n) dt`` and ``T0`` the mean of the first samples. The
convective coefficient ``h`` is the root of ``f``; it is found with
Newton's method and converted to a Nusselt number.
"""

import logging
import math
import time
from typing import Callable, Tuple

import numpy as np
from scipy.special import erfcx

from .config import IterationKind, IterationMethod
from .errors import ShapeError
from .postprocess import nan_mean

logger = logging.getLogger(__name__)

# T0 is the mean of the first few reference temperatures
FIRST_FEW_TO_CAL_T0 = 4

# Newton step below which the iteration has converged
CONVERGENCE = 1e-3

# |h| beyond which the iteration has diverged
DIVERGENCE = 10000.0

# Damping factor below which damped Newton gives up
MIN_DAMPING = 1e-3

Equation = Callable[[float], Tuple[float, float]]


class PointData:
    """
    Data needed to solve the conduction equation at one pixel.

    Attributes:
        peak_frame: Frame of peak green intensity
        temps: Reference temperature history of the pixel
        peak_temp: Indicator temperature reached at the peak
        dt: Time step in seconds
        solid_thermal_conductivity: k
        solid_thermal_diffusivity: a
    """

    def __init__(
        self,
        peak_frame: int,
        temps: np.ndarray,
        peak_temp: float,
        dt: float,
        solid_thermal_conductivity: float,
        solid_thermal_diffusivity: float
    ):
        if len(temps) < max(peak_frame, FIRST_FEW_TO_CAL_T0):
            raise ShapeError(f"Temperature history of {len(temps)} frames ends before frame {peak_frame}")
        self.peak_frame = peak_frame
        self.temps = temps
        self.peak_temp = peak_temp
        self.dt = dt
        self.solid_thermal_conductivity = solid_thermal_conductivity
        self.solid_thermal_diffusivity = solid_thermal_diffusivity

        history = np.asarray(temps[:peak_frame], dtype=np.float64)
        self._t0 = float(np.mean(np.asarray(temps[:FIRST_FEW_TO_CAL_T0], dtype=np.float64)))
        self._delta_temp = np.diff(history)
        # a * t for n = 1 .. peak_frame - 1
        self._at = solid_thermal_diffusivity * dt * np.arange(peak_frame - 1, 0, -1, dtype=np.float64)
        self._sqrt_at = np.sqrt(self._at)

    def thermal_equation(self, h: float) -> Tuple[float, float]:
        """
        Residual of the conduction equation and its derivative at ``h``.

        Returns:
            (f(h), f'(h))
        """
        k = self.solid_thermal_conductivity
        # exp(x^2) * erfc(x) without overflow
        exp_erfc = erfcx(h / k * self._sqrt_at)
        step = (1.0 - exp_erfc) * self._delta_temp
        d_step = -self._delta_temp * (
            2.0 * self._sqrt_at / k / math.sqrt(math.pi) - 2.0 * self._at * h * exp_erfc / k ** 2
        )
        return self.peak_temp - self._t0 - float(step.sum()), float(d_step.sum())


def newton_tangent(h0: float, max_iter_num: int) -> Callable[[Equation], float]:
    """
    Plain Newton iteration.

    Args:
        h0: Initial value
        max_iter_num: Maximum number of steps

    Returns:
        Solver taking ``equation(h) -> (f, df)`` and returning the root,
        ``nan`` on divergence, or the last iterate when steps run out
    """
    def solve(equation: Equation) -> float:
        h = h0
        for _ in range(max_iter_num):
            f, df = equation(h)
            if not df:
                return math.nan
            next_h = h - f / df
            if abs(next_h) > DIVERGENCE:
                return math.nan
            if abs(next_h - h) < CONVERGENCE:
                return next_h
            h = next_h
        return h

    return solve


def newton_down(h0: float, max_iter_num: int) -> Callable[[Equation], float]:
    """
    Damped Newton iteration.

    Each step is halved until the residual decreases in magnitude; if the
    damping factor falls below MIN_DAMPING the pixel is given up as ``nan``.
    """
    def solve(equation: Equation) -> float:
        h = h0
        f, df = equation(h)
        for _ in range(max_iter_num):
            if not df:
                return math.nan
            damping = 1.0
            while True:
                next_h = h - damping * f / df
                if abs(next_h - h) < CONVERGENCE:
                    return next_h
                next_f, next_df = equation(next_h)
                if abs(next_f) < abs(f):
                    h, f, df = next_h, next_f, next_df
                    break
                damping /= 2.0
                if damping < MIN_DAMPING:
                    return math.nan
            if abs(h) > DIVERGENCE:
                return math.nan
        return h

    return solve


def make_solver(method: IterationMethod) -> Callable[[Equation], float]:
    if method.kind is IterationKind.NEWTON_DOWN:
        return newton_down(method.h0, method.max_iter_num)
    return newton_tangent(method.h0, method.max_iter_num)


def solve_nu(peak_frames: np.ndarray, interp, config, pool) -> Tuple[np.ndarray, float]:
    """
    Nusselt number map of the calculation region.

    Pixels whose peak lies within the first FIRST_FEW_TO_CAL_T0 frames
    have too little history and are ``nan``, as are pixels whose iteration
    diverged.

    Args:
        peak_frames: Peak frame per pixel, region row-major
        interp: Interp with the reference temperature field
        config: TLCConfig with physical constants and iteration method
        pool: WorkerPool

    Returns:
        (float32 array of shape region_shape flipped vertically, nan-ignoring mean)
    """
    pix_num = config.pix_num
    if len(peak_frames) != pix_num:
        raise ShapeError(f"{len(peak_frames)} peak frames for {pix_num} pixels")

    solver = make_solver(config.iteration_method)
    dt = config.dt
    nu_factor = config.characteristic_length / config.air_thermal_conductivity
    nus = np.full(pix_num, np.nan, dtype=np.float32)
    t0 = time.perf_counter()

    def work(chunk: range) -> None:
        with np.errstate(over='ignore', invalid='ignore', divide='ignore'):
            for pos in chunk:
                peak_frame = int(peak_frames[pos])
                if peak_frame <= FIRST_FEW_TO_CAL_T0:
                    continue
                point_data = PointData(
                    peak_frame,
                    interp.single_point(pos),
                    config.peak_temp,
                    dt,
                    config.solid_thermal_conductivity,
                    config.solid_thermal_diffusivity,
                )
                nus[pos] = solver(point_data.thermal_equation) * nu_factor

    pool.for_each(work, pix_num)

    nu2d = nus.reshape(config.region_shape)[::-1].copy()
    nu_nan_mean = nan_mean(nu2d)
    logger.info("Solved %d pixels in %.2f s, %d not converged, mean Nu %.3f",
                pix_num, time.perf_counter() - t0, int(np.isnan(nu2d).sum()), nu_nan_mean)
    return nu2d, nu_nan_mean
