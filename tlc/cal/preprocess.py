"""
Per-pixel preprocessing of the green-intensity matrix and the reference
temperatures.

The intensity matrix has one row per frame and one column per pixel, so
every operation here is a reduction or a filter along axis 0, independent
for each column. Columns are split across the worker pool; inside a worker
they are processed in blocks to bound temporary memory.
"""

import logging
import math
from typing import List, Sequence, Tuple

import numpy as np
import pywt
from numpy.lib.stride_tricks import sliding_window_view

from .config import FilterKind, FilterMethod, Thermocouple
from .errors import DAQError, PeakDetectionError, ShapeError

logger = logging.getLogger(__name__)

# Columns filtered per block inside one worker
BLOCK_COLUMNS = 1024

# Daubechies 8, see http://wavelets.pybytes.com/wavelet/db8
WAVELET = pywt.Wavelet('db8')


def _lower_median(data: np.ndarray) -> np.ndarray:
    k = (data.shape[0] - 1) // 2
    return np.partition(data, k, axis=0)[k]


def median_filter(data: np.ndarray, window_size: int) -> np.ndarray:
    """
    Causal running median along axis 0.

    Output frame ``i`` is the median of input frames
    ``max(0, i - window_size + 1) .. i``; with an even number of samples
    the lower middle value is taken, so the output keeps the input dtype.
    """
    if window_size <= 1:
        return data.copy()

    n = data.shape[0]
    out = np.empty_like(data)
    for i in range(min(window_size - 1, n)):
        out[i] = _lower_median(data[:i + 1])
    if n >= window_size:
        k = (window_size - 1) // 2
        windows = sliding_window_view(data, window_size, axis=0)
        out[window_size - 1:] = np.partition(windows, k, axis=-1)[..., k]
    return out


def wavelet_prepare(data_len: int, wavelet: pywt.Wavelet = WAVELET) -> Tuple[int, int]:
    """
    Decomposition level and filtered length for a series of ``data_len`` frames.

    The level is the largest whose coarsest approximation still spans one
    filter length (see pywt.dwt_max_level); the filtered length is the
    largest multiple of ``2**level`` not exceeding ``data_len``.

    Returns:
        (level, filtering_len)
    """
    quotient = data_len // (wavelet.dec_len - 1)
    if quotient < 1:
        return 0, data_len
    level = int(math.log2(quotient))
    level_2 = 1 << level
    return level, (data_len // level_2) * level_2


def wavelet_filter(
    data: np.ndarray,
    threshold_ratio: float,
    level: int,
    filtering_len: int,
    wavelet: pywt.Wavelet = WAVELET
) -> np.ndarray:
    """
    Wavelet soft-threshold denoising along axis 0.

    Each detail level is shrunk by ``max(|coefficients|) * threshold_ratio``
    (per column); the approximation is kept. Frames from ``filtering_len``
    on are copied unfiltered.
    """
    out = data.copy()
    if level < 1:
        return out

    arr = data[:filtering_len].astype(np.float32)
    coeffs = pywt.wavedec(arr, wavelet, mode='periodization', level=level, axis=0)
    for i in range(1, len(coeffs)):
        detail = coeffs[i]
        magnitude = np.abs(detail)
        threshold = magnitude.max(axis=0) * threshold_ratio
        coeffs[i] = np.sign(detail) * np.maximum(magnitude - threshold, 0)
    rec = pywt.waverec(coeffs, wavelet, mode='periodization', axis=0)[:filtering_len]

    rec = np.clip(np.nan_to_num(rec), 0, 255)
    out[:filtering_len] = rec.astype(data.dtype)
    return out


def _filter_block(data: np.ndarray, method: FilterMethod, wavelet_params: Tuple[int, int]) -> np.ndarray:
    if method.kind is FilterKind.MEDIAN:
        return median_filter(data, method.window_size)
    if method.kind is FilterKind.WAVELET:
        level, filtering_len = wavelet_params
        return wavelet_filter(data, method.threshold_ratio, level, filtering_len)
    return data.copy()


def filter_matrix(g2d: np.ndarray, method: FilterMethod, pool) -> np.ndarray:
    """
    Filter every pixel's intensity series.

    Args:
        g2d: uint8 array of shape (frame_num, pix_num)
        method: FilterMethod
        pool: WorkerPool

    Returns:
        Filtered array of the same shape and dtype
    """
    if method.kind is FilterKind.NO:
        return g2d.copy()

    wavelet_params = wavelet_prepare(g2d.shape[0])
    filtered = np.empty_like(g2d)

    def work(chunk: range) -> None:
        for start in range(chunk.start, chunk.stop, BLOCK_COLUMNS):
            cols = slice(start, min(start + BLOCK_COLUMNS, chunk.stop))
            filtered[:, cols] = _filter_block(g2d[:, cols], method, wavelet_params)

    pool.for_each(work, g2d.shape[1])
    return filtered


def filter_single_point(series: np.ndarray, method: FilterMethod) -> np.ndarray:
    """Filter one pixel's series exactly as :func:`filter_matrix` would."""
    return _filter_block(np.asarray(series), method, wavelet_prepare(len(series)))


def detect_peaks(filtered: np.ndarray, pool) -> np.ndarray:
    """
    Frame index of maximum intensity for every pixel.

    Ties resolve to the earliest frame.

    Args:
        filtered: Array of shape (frame_num, pix_num)
        pool: WorkerPool

    Returns:
        Integer array of length pix_num

    Raises:
        PeakDetectionError: If the series are empty
    """
    if filtered.ndim != 2:
        raise ShapeError("Intensity matrix must be 2D", filtered.shape)
    if filtered.shape[0] == 0:
        raise PeakDetectionError("Cannot detect peaks of empty intensity series", filtered.shape)

    peak_frames = np.zeros(filtered.shape[1], dtype=np.intp)

    def work(chunk: range) -> None:
        cols = slice(chunk.start, chunk.stop)
        peak_frames[cols] = np.argmax(filtered[:, cols], axis=0)

    pool.for_each(work, filtered.shape[1])
    return peak_frames


def build_t2d(
    daq: np.ndarray,
    thermocouples: List[Thermocouple],
    start_row: int,
    frame_num: int,
    regulator: Sequence[float]
) -> np.ndarray:
    """
    Reference temperature matrix, one row per thermocouple.

    Args:
        daq: DAQ table of shape (rows, channels)
        thermocouples: Thermocouples, each naming its DAQ column
        start_row: DAQ row synchronized with the first processed frame
        frame_num: Number of processed frames
        regulator: Calibration multiplier per thermocouple

    Returns:
        float32 array of shape (len(thermocouples), frame_num)
    """
    if len(regulator) != len(thermocouples):
        raise ShapeError(
            f"{len(regulator)} regulator values for {len(thermocouples)} thermocouples"
        )
    if start_row < 0 or start_row + frame_num > daq.shape[0]:
        raise ShapeError(
            f"DAQ rows {start_row}..{start_row + frame_num} exceed the {daq.shape[0]} rows of the log"
        )
    columns = [tc.column_num for tc in thermocouples]
    bad = [c for c in columns if not 0 <= c < daq.shape[1]]
    if bad:
        raise DAQError(f"DAQ log has {daq.shape[1]} columns, thermocouple column out of range", bad)

    t2d = daq[start_row:start_row + frame_num, columns].T.astype(np.float32)
    t2d *= np.asarray(regulator, dtype=np.float32)[:, np.newaxis]
    return t2d
