"""
Result statistics, plotting and the delimited-text format of result matrices.

Nusselt maps are written one row per line with comma-separated float
fields and no header; ``nan`` marks pixels without a solution.
"""

import csv
import io
import logging
from pathlib import Path
from typing import Optional, Union

import numpy as np
from matplotlib.backends.backend_agg import FigureCanvasAgg
from matplotlib.figure import Figure

from .errors import DataReadError, DataSaveError

logger = logging.getLogger(__name__)

# Enough significant digits to round-trip float32
FLOAT_FORMAT = '{:.9g}'


def nan_mean(data: np.ndarray) -> float:
    """Mean ignoring ``nan``; ``nan`` if every value is ``nan``."""
    valid = data[~np.isnan(data)]
    if valid.size == 0:
        logger.warning("All %d values are nan, mean undefined", data.size)
        return float('nan')
    return float(valid.mean(dtype=np.float64))


def plot_area(
    data: np.ndarray,
    vmin: float,
    vmax: float,
    path: Optional[Union[str, Path]] = None,
    title: Optional[str] = None
) -> bytes:
    """
    Render a 2D map with a colorbar.

    Row 0 of ``data`` is drawn at the bottom.

    Args:
        data: 2D array
        vmin: Lower color-scale bound
        vmax: Upper color-scale bound
        path: Also write the PNG here if given
        title: Optional plot title

    Returns:
        PNG image bytes
    """
    h, w = data.shape
    fig = Figure(figsize=(8, 8 * h / max(w, 1) + 0.5), dpi=100)
    FigureCanvasAgg(fig)
    ax = fig.add_subplot(111)
    image = ax.imshow(data, cmap='jet', vmin=vmin, vmax=vmax, origin='lower')
    fig.colorbar(image, ax=ax, fraction=0.046, pad=0.04)
    if title:
        ax.set_title(title)
    fig.tight_layout()

    buf = io.BytesIO()
    fig.savefig(buf, format='png')
    png = buf.getvalue()

    if path is not None:
        try:
            Path(path).parent.mkdir(parents=True, exist_ok=True)
            Path(path).write_bytes(png)
        except OSError as err:
            raise DataSaveError(f"Cannot write plot ({err})", path) from err
        logger.debug("Saved plot to %s", path)
    return png


def save_nu(data: np.ndarray, data_path: Union[str, Path]) -> Path:
    """
    Write a 2D matrix as comma-separated text.

    Raises:
        DataSaveError: If the file cannot be written
    """
    path = Path(data_path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w', newline='') as f:
            writer = csv.writer(f)
            for row in data:
                writer.writerow([FLOAT_FORMAT.format(v) for v in row])
    except OSError as err:
        raise DataSaveError(f"Cannot write data ({err})", path) from err
    logger.debug("Saved %s matrix to %s", data.shape, path)
    return path


def read_nu(data_path: Union[str, Path]) -> np.ndarray:
    """
    Read a matrix written by :func:`save_nu`.

    Returns:
        float32 array of shape (lines, fields)

    Raises:
        DataReadError: If the file is missing, empty, ragged or not numeric
    """
    try:
        with open(data_path, 'r', newline='') as f:
            rows = [row for row in csv.reader(f) if row]
    except OSError as err:
        raise DataReadError(f"Cannot read data ({err})", data_path) from err

    if not rows:
        raise DataReadError("Matrix is empty", data_path)
    width = len(rows[0])
    if any(len(row) != width for row in rows):
        raise DataReadError(f"Rows must all have {width} fields", data_path)

    try:
        return np.array([[float(v) for v in row] for row in rows], dtype=np.float32)
    except ValueError as err:
        raise DataReadError(f"Non-numeric field ({err})", data_path) from err
