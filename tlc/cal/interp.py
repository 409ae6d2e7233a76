"""
Interpolation of thermocouple temperature histories onto the calculation region.

Two families are supported:

- 1D (horizontal or vertical): one temperature history per region column
  (or row); the orthogonal axis shares it.
- Bilinear: thermocouples form a regular ``tc_h x tc_w`` grid listed row
  by row; one temperature history per pixel.

Thermocouple coordinates must ascend along each interpolated axis.
Without extrapolation, positions outside the outermost thermocouples are
clamped to them.
"""

import logging
import time
from typing import List, Sequence, Tuple

import numpy as np

from .config import InterpKind, InterpMethod, Thermocouple
from .errors import HandleError, InterpolationError, ShapeError

logger = logging.getLogger(__name__)

# Block size of single-frame previews
SCALING = 5

# Output rows computed per block inside one worker
BLOCK_ROWS = 4096


def _brackets(
    tc_pos: Sequence[int],
    pos: np.ndarray,
    extrapolate: bool
) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """
    Bracketing thermocouple pair and integer distances for each position.

    The right index starts at 1 and advances while the position is at or
    beyond the right thermocouple and a further one exists. Distances are
    exact small integers stored as float32, so that interpolated values are
    ``(T_l * (r - pos) + T_r * (pos - l)) / (r - l)`` evaluated in float32.

    Returns:
        (left index, right index, r - pos, pos - l, r - l)
    """
    tc_pos = np.asarray(tc_pos, dtype=np.int64)
    if len(tc_pos) < 2:
        raise InterpolationError("At least two thermocouples are needed along an interpolated axis",
                                 tc_pos.tolist())

    ri = 1 + np.searchsorted(tc_pos[1:-1], pos, side='right')
    li = ri - 1
    left, right = tc_pos[li], tc_pos[ri]
    if np.any(right == left):
        raise InterpolationError("Thermocouples share a coordinate, no bracket found",
                                 tc_pos.tolist())

    if not extrapolate:
        pos = np.minimum(np.maximum(pos, left), right)
    return (
        li,
        ri,
        (right - pos).astype(np.float32),
        (pos - left).astype(np.float32),
        (right - left).astype(np.float32),
    )


class Interp:
    """
    Interpolated temperature field.

    Attributes:
        temps: float32 array of shape (rows, frame_num); rows are region
               columns (horizontal), region rows (vertical) or pixels
               (bilinear)
        method: InterpMethod used
        region_shape: (height, width) of the calculation region
    """

    def __init__(self, temps: np.ndarray, method: InterpMethod, region_shape: Tuple[int, int]):
        cal_h, cal_w = region_shape
        expected = {
            InterpKind.HORIZONTAL: cal_w,
            InterpKind.VERTICAL: cal_h,
            InterpKind.BILINEAR: cal_h * cal_w,
        }[method.kind]
        if temps.ndim != 2 or temps.shape[0] != expected:
            raise ShapeError(f"{method.kind.value} interpolation needs {expected} rows", temps.shape)
        self.temps = temps
        self.method = method
        self.region_shape = region_shape

    @classmethod
    def new(
        cls,
        t2d: np.ndarray,
        method: InterpMethod,
        thermocouples: List[Thermocouple],
        top_left_pos: Tuple[int, int],
        region_shape: Tuple[int, int],
        pool
    ) -> 'Interp':
        """
        Interpolate the reference temperature matrix.

        Args:
            t2d: float32 array of shape (len(thermocouples), frame_num)
            method: InterpMethod
            thermocouples: Thermocouples in t2d row order
            top_left_pos: (y, x) of the region in video coordinates
            region_shape: (height, width) of the region
            pool: WorkerPool

        Returns:
            Interp instance
        """
        if t2d.shape[0] != len(thermocouples):
            raise ShapeError(f"{t2d.shape[0]} temperature rows for {len(thermocouples)} thermocouples")

        t0 = time.perf_counter()
        if method.kind is InterpKind.BILINEAR:
            temps = interp_bilinear(t2d, method, thermocouples, top_left_pos, region_shape, pool)
        else:
            temps = interp1d(t2d, method, thermocouples, top_left_pos, region_shape, pool)
        logger.info("Interpolated %s field %s in %.2f s",
                    method.kind.value, temps.shape, time.perf_counter() - t0)
        return cls(temps, method, region_shape)

    @property
    def frame_num(self) -> int:
        return self.temps.shape[1]

    def single_point(self, pos: int) -> np.ndarray:
        """Temperature history of the pixel at flat region index ``pos``."""
        cal_w = self.region_shape[1]
        if self.method.kind is InterpKind.HORIZONTAL:
            return self.temps[pos % cal_w]
        if self.method.kind is InterpKind.VERTICAL:
            return self.temps[pos // cal_w]
        return self.temps[pos]

    def single_frame(self, frame: int) -> np.ndarray:
        """
        Coarse temperature map of one frame for display.

        The field is averaged over SCALING x SCALING blocks (incomplete
        edge blocks are dropped) and flipped vertically so that row 0 is
        the bottom of the region.

        Returns:
            float32 array of shape (cal_h // SCALING, cal_w // SCALING)
        """
        if not 0 <= frame < self.frame_num:
            raise HandleError(f"Frame out of range [0, {self.frame_num})", frame)

        cal_h, cal_w = self.region_shape
        col = self.temps[:, frame]
        if self.method.kind is InterpKind.HORIZONTAL:
            single_frame = np.broadcast_to(col, (cal_h, cal_w))
        elif self.method.kind is InterpKind.VERTICAL:
            single_frame = np.broadcast_to(col[:, np.newaxis], (cal_h, cal_w))
        else:
            single_frame = col.reshape(cal_h, cal_w)

        h, w = cal_h // SCALING, cal_w // SCALING
        blocks = single_frame[:h * SCALING, :w * SCALING].reshape(h, SCALING, w, SCALING)
        return blocks.mean(axis=(1, 3), dtype=np.float32)[::-1].copy()

    def __repr__(self) -> str:
        return f"<Interp {self.method.to_json()} shape={self.temps.shape}>"


def interp1d(
    t2d: np.ndarray,
    method: InterpMethod,
    thermocouples: List[Thermocouple],
    top_left_pos: Tuple[int, int],
    region_shape: Tuple[int, int],
    pool
) -> np.ndarray:
    """Horizontal or vertical line interpolation, one row per region column/row."""
    cal_h, cal_w = region_shape
    if method.kind is InterpKind.HORIZONTAL:
        interp_len = cal_w
        tc_pos = [tc.pos[1] - top_left_pos[1] for tc in thermocouples]
    else:
        interp_len = cal_h
        tc_pos = [tc.pos[0] - top_left_pos[0] for tc in thermocouples]

    li, ri, dr, dl, span = _brackets(tc_pos, np.arange(interp_len), method.extrapolate)
    dr, dl, span = dr[:, np.newaxis], dl[:, np.newaxis], span[:, np.newaxis]
    t2d = np.asarray(t2d, dtype=np.float32)
    temps = np.empty((interp_len, t2d.shape[1]), dtype=np.float32)

    def work(chunk: range) -> None:
        rows = slice(chunk.start, chunk.stop)
        temps[rows] = (t2d[li[rows]] * dr[rows] + t2d[ri[rows]] * dl[rows]) / span[rows]

    pool.for_each(work, interp_len)
    return temps


def interp_bilinear(
    t2d: np.ndarray,
    method: InterpMethod,
    thermocouples: List[Thermocouple],
    top_left_pos: Tuple[int, int],
    region_shape: Tuple[int, int],
    pool
) -> np.ndarray:
    """Bilinear interpolation over a regular thermocouple grid, one row per pixel."""
    tc_h, tc_w = method.tc_shape
    if len(thermocouples) != tc_h * tc_w:
        raise ShapeError(f"Thermocouple grid {tc_h}x{tc_w} does not match "
                         f"{len(thermocouples)} thermocouples")
    tc_x = [tc.pos[1] - top_left_pos[1] for tc in thermocouples[:tc_w]]
    tc_y = [tc.pos[0] - top_left_pos[0] for tc in thermocouples[::tc_w][:tc_h]]

    cal_h, cal_w = region_shape
    pix_num = cal_h * cal_w
    temps = np.empty((pix_num, t2d.shape[1]), dtype=np.float32)

    xi0, xi1, dx1, dx0, span_x = _brackets(tc_x, np.arange(cal_w), method.extrapolate)
    yi0, yi1, dy1, dy0, span_y = _brackets(tc_y, np.arange(cal_h), method.extrapolate)
    t2d = np.asarray(t2d, dtype=np.float32)

    def work(chunk: range) -> None:
        for start in range(chunk.start, chunk.stop, BLOCK_ROWS):
            pos = np.arange(start, min(start + BLOCK_ROWS, chunk.stop))
            x, y = pos % cal_w, pos // cal_w
            ax, bx, sx = dx1[x, None], dx0[x, None], span_x[x, None]
            ay, by, sy = dy1[y, None], dy0[y, None], span_y[y, None]
            # float32 throughout, divided by the spans last
            temps[pos[0]:pos[-1] + 1] = (
                t2d[tc_w * yi0[y] + xi0[x]] * ax * ay
                + t2d[tc_w * yi0[y] + xi1[x]] * bx * ay
                + t2d[tc_w * yi1[y] + xi0[x]] * ax * by
                + t2d[tc_w * yi1[y] + xi1[x]] * bx * by
            ) / sx / sy

    pool.for_each(work, pix_num)
    return temps
