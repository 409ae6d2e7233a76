"""
DAQ log reader.

Returns the log as a 2D float32 table, row = sample, column = channel,
whatever the on-disk format:

- ``.lvm``: LabVIEW measurement file, tab-delimited, no header
- ``.csv``: comma-delimited, no header
- ``.xlsx``: first worksheet, no header
"""

import logging
from pathlib import Path
from typing import Union

import numpy as np
import pandas as pd

from .errors import DAQError, DAQIOError

logger = logging.getLogger(__name__)

DELIMITERS = {
    '.lvm': '\t',
    '.csv': ',',
}


def read_daq(daq_path: Union[str, Path]) -> np.ndarray:
    """
    Read a DAQ log.

    Args:
        daq_path: Path to a .lvm, .csv or .xlsx file

    Returns:
        float32 array of shape (rows, channels)

    Raises:
        DAQIOError: If the file is missing or its extension unsupported
        DAQError: If the file is empty or holds non-numeric cells
    """
    path = Path(daq_path)
    suffix = path.suffix.lower()
    if suffix not in DELIMITERS and suffix != '.xlsx':
        raise DAQIOError("Only .lvm, .csv or .xlsx DAQ files are supported", path)
    if not path.is_file():
        raise DAQIOError("DAQ file not found", path)

    if suffix == '.xlsx':
        daq = _read_excel(path)
    else:
        daq = _read_delimited(path, DELIMITERS[suffix])

    if daq.size == 0:
        raise DAQError("DAQ file is empty", path)
    logger.debug("Read DAQ log %s with shape %s", path.name, daq.shape)
    return daq


def _read_delimited(path: Path, delimiter: str) -> np.ndarray:
    try:
        daq = np.loadtxt(path, delimiter=delimiter, dtype=np.float32, ndmin=2)
    except OSError as err:
        raise DAQIOError(f"Cannot read DAQ file ({err})", path) from err
    except ValueError as err:
        raise DAQError(f"DAQ file should only contain numbers ({err})", path) from err
    return daq


def _read_excel(path: Path) -> np.ndarray:
    try:
        sheet = pd.read_excel(path, sheet_name=0, header=None)
    except OSError as err:
        raise DAQIOError(f"Cannot read DAQ file ({err})", path) from err
    except ValueError as err:
        raise DAQError(f"Cannot find a worksheet ({err})", path) from err

    try:
        return sheet.to_numpy(dtype=np.float32)
    except (TypeError, ValueError) as err:
        raise DAQError(f"DAQ file should only contain numbers ({err})", path) from err
