"""
Transient Liquid Crystal Data Reduction Library

Provides tools for reducing thermochromic liquid crystal heat transfer
experiments with support for:
- Background demuxing and parallel per-frame decoding of recordings (PyAV)
- Median and wavelet denoising of per-pixel intensity histories
- 1D and bilinear interpolation of thermocouple temperatures
- Newton solution of the semi-infinite solid conduction equation
- Lazily computed results that are invalidated when parameters change

Example:
    >>> from tlc import open_case, FilterMethod
    >>> data = open_case("case1.json")
    >>> print(f"Frames: {data.config.frame_num}, FPS: {data.config.frame_rate}")
    >>> nu2d = data.get_nu2d()

    >>> # Change a parameter, only dependent results are recomputed
    >>> data.set_filter_method(FilterMethod.wavelet(0.8))
    >>> nu2d = data.get_nu2d()
    >>> png = data.get_nu_img()
"""

from .cal import (
    # Core classes
    TLCData,
    TLCConfig,
    Interp,
    WorkerPool,

    # Data classes
    Thermocouple,
    FilterMethod,
    InterpMethod,
    IterationMethod,

    # Errors
    TLCError,

    # Convenience functions
    open_case,
    read_nu,
)

__version__ = "0.1.0"

__all__ = [
    # Core classes
    'TLCData',
    'TLCConfig',
    'Interp',
    'WorkerPool',

    # Data classes
    'Thermocouple',
    'FilterMethod',
    'InterpMethod',
    'IterationMethod',

    # Errors
    'TLCError',

    # Convenience functions
    'open_case',
    'read_nu',
]
