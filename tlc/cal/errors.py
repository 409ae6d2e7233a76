"""
Exception types raised by the TLC reduction pipeline.

Every error carries a human-readable message and, where one exists, the
offending path or value so that a front end can render it directly.
Per-pixel non-convergence of the solver is not an error: it is reported
as ``nan`` in the Nusselt map.
"""

from typing import Any, Optional


class TLCError(Exception):
    """
    Base class for all pipeline errors.

    Attributes:
        message: Description of what went wrong
        path: Offending file path or value, if any
    """

    def __init__(self, message: str, path: Optional[Any] = None):
        self.message = message
        self.path = path
        super().__init__(message, path)

    def __str__(self) -> str:
        if self.path is None:
            return self.message
        return f"{self.message}: {self.path}"


class ConfigError(TLCError):
    """Configuration file could not be read, parsed or written."""


class VideoIOError(TLCError):
    """Video file could not be opened or read."""


class VideoError(TLCError):
    """No video stream, decoder/scaler construction or frame decode failure."""


class DAQIOError(TLCError):
    """DAQ file missing or of an unsupported format."""


class DAQError(TLCError):
    """DAQ file content is empty or not numeric."""


class DataSaveError(TLCError):
    """Result matrix could not be written."""


class DataReadError(TLCError):
    """Result matrix could not be read back."""


class ShapeError(TLCError, ValueError):
    """Matrix reshape or broadcast mismatch."""


class PeakDetectionError(TLCError):
    """Peak detection on an empty intensity series."""


class InterpolationError(TLCError):
    """Thermocouple bracket could not be found."""


class HandleError(TLCError, ValueError):
    """Requested operation is invalid for the current configuration."""
