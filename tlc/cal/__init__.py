"""
TLC Calculation Library

Reduces a transient liquid crystal recording and its synchronized DAQ
temperature log to a Nusselt number map:

    video ─> green intensity ─> filter ─> peak frames ─┐
                                                        ├─> Nusselt map
    DAQ log ─> reference temperatures ─> interpolation ─┘

Example:
    >>> from tlc.cal import open_case
    >>> data = open_case("cases/config/case1.json")
    >>> nu2d = data.get_nu2d()
    >>> data.save_nu()
"""

from pathlib import Path
from typing import Optional, Union

from .config import (
    FilterKind,
    FilterMethod,
    InterpKind,
    InterpMethod,
    IterationKind,
    IterationMethod,
    TLCConfig,
    Thermocouple,
)
from .daq import read_daq
from .data import TLCData
from .errors import (
    ConfigError,
    DAQError,
    DAQIOError,
    DataReadError,
    DataSaveError,
    HandleError,
    InterpolationError,
    PeakDetectionError,
    ShapeError,
    TLCError,
    VideoError,
    VideoIOError,
)
from .interp import Interp
from .packets import PacketCache
from .parallel import WorkerPool
from .postprocess import nan_mean, plot_area, read_nu, save_nu
from .video import Decoder, StreamDescriptor, VideoStream, probe_video


def open_case(
    config_path: Union[str, Path],
    workers: Optional[int] = None
) -> TLCData:
    """
    Open a saved case configuration.

    The recording and DAQ log named in the configuration are probed so
    that frame rate, frame counts and the processed frame window reflect
    the files on disk.

    Args:
        config_path: Path to a configuration JSON written by TLCConfig.save
        workers: Number of worker threads, defaults to one per CPU

    Returns:
        TLCData with nothing computed yet

    Example:
        >>> data = open_case("case1.json", workers=4)
        >>> data.set_filter_method(FilterMethod.median(10))
        >>> print(data.get_nu_nan_mean())
    """
    return TLCData.from_path(config_path, pool=WorkerPool(workers))


__all__ = [
    # Core classes
    'TLCData',
    'TLCConfig',
    'Interp',
    'WorkerPool',
    'PacketCache',
    'VideoStream',
    'Decoder',

    # Data classes
    'Thermocouple',
    'FilterKind',
    'FilterMethod',
    'InterpKind',
    'InterpMethod',
    'IterationKind',
    'IterationMethod',
    'StreamDescriptor',

    # Errors
    'TLCError',
    'ConfigError',
    'VideoIOError',
    'VideoError',
    'DAQIOError',
    'DAQError',
    'DataSaveError',
    'DataReadError',
    'ShapeError',
    'PeakDetectionError',
    'InterpolationError',
    'HandleError',

    # Convenience functions
    'open_case',
    'probe_video',
    'read_daq',
    'read_nu',
    'save_nu',
    'plot_area',
    'nan_mean',
]
