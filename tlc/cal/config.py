"""
Configuration of a TLC experiment case.

A case pairs one video recording with one DAQ log. The configuration holds
the calculation region, the video/DAQ synchronization window, the reference
thermocouples, the processing methods and the physical constants. It is a
plain value: derived results live in :class:`tlc.cal.data.TLCData`, whose
setters keep the two consistent.

The JSON layout stores method variants in tagged form, as in existing case
files, e.g. ``"filter_method": {"Median": 10}``.
"""

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from .errors import ConfigError, HandleError

logger = logging.getLogger(__name__)

# Default initial convective coefficient for Newton iteration
DEFAULT_H0 = 50.0

# Default maximum Newton steps
DEFAULT_MAX_ITER_NUM = 10


def _untag(obj: Any, what: str) -> Tuple[str, Any]:
    """Split ``"Name"`` or ``{"Name": payload}`` into (name, payload)."""
    if isinstance(obj, str):
        return obj, None
    if isinstance(obj, dict) and len(obj) == 1:
        return next(iter(obj.items()))
    raise ConfigError(f"Malformed {what}", obj)


@dataclass(frozen=True)
class Thermocouple:
    """
    Reference thermocouple.

    Attributes:
        column_num: Column of the DAQ table holding this sensor's readings
        pos: (y, x) position in video pixel coordinates
    """
    column_num: int
    pos: Tuple[int, int]

    def to_json(self) -> Dict[str, Any]:
        return {'column_num': self.column_num, 'pos': list(self.pos)}

    @classmethod
    def from_json(cls, obj: Dict[str, Any]) -> 'Thermocouple':
        try:
            y, x = obj['pos']
            return cls(column_num=int(obj['column_num']), pos=(int(y), int(x)))
        except (KeyError, TypeError, ValueError) as err:
            raise ConfigError(f"Malformed thermocouple ({err})", obj) from err


class FilterKind(Enum):
    NO = 'No'
    MEDIAN = 'Median'
    WAVELET = 'Wavelet'


@dataclass(frozen=True)
class FilterMethod:
    """
    Temporal filter applied to each pixel's green-intensity series.

    Use the constructors rather than filling fields by hand:

        >>> FilterMethod.no()
        >>> FilterMethod.median(window_size=10)
        >>> FilterMethod.wavelet(threshold_ratio=0.8)
    """
    kind: FilterKind = FilterKind.NO
    window_size: int = 1
    threshold_ratio: float = 0.0

    def __post_init__(self):
        if self.kind is FilterKind.MEDIAN and self.window_size < 1:
            raise HandleError("Median window size must be at least 1", self.window_size)
        if self.kind is FilterKind.WAVELET and self.threshold_ratio < 0:
            raise HandleError("Wavelet threshold ratio must be non-negative", self.threshold_ratio)

    @classmethod
    def no(cls) -> 'FilterMethod':
        return cls(FilterKind.NO)

    @classmethod
    def median(cls, window_size: int) -> 'FilterMethod':
        return cls(FilterKind.MEDIAN, window_size=int(window_size))

    @classmethod
    def wavelet(cls, threshold_ratio: float) -> 'FilterMethod':
        return cls(FilterKind.WAVELET, threshold_ratio=float(threshold_ratio))

    def to_json(self) -> Union[str, Dict[str, Any]]:
        if self.kind is FilterKind.MEDIAN:
            return {self.kind.value: self.window_size}
        if self.kind is FilterKind.WAVELET:
            return {self.kind.value: self.threshold_ratio}
        return self.kind.value

    @classmethod
    def from_json(cls, obj: Any) -> 'FilterMethod':
        name, payload = _untag(obj, "filter method")
        if name == FilterKind.NO.value:
            return cls.no()
        if name == FilterKind.MEDIAN.value:
            return cls.median(payload)
        if name == FilterKind.WAVELET.value:
            return cls.wavelet(payload)
        raise ConfigError("Unknown filter method", name)


class InterpKind(Enum):
    HORIZONTAL = 'Horizontal'
    VERTICAL = 'Vertical'
    BILINEAR = 'Bilinear'


@dataclass(frozen=True)
class InterpMethod:
    """
    Spatial interpolation of thermocouple temperatures onto the region.

    Attributes:
        kind: Horizontal/vertical line interpolation or bilinear grid
        extrapolate: Extrapolate beyond the outermost thermocouples instead
                     of clamping to them
        tc_shape: (rows, columns) of the thermocouple grid, bilinear only
    """
    kind: InterpKind = InterpKind.HORIZONTAL
    extrapolate: bool = False
    tc_shape: Optional[Tuple[int, int]] = None

    def __post_init__(self):
        if self.kind is InterpKind.BILINEAR:
            if self.tc_shape is None or min(self.tc_shape) < 2:
                raise HandleError("Bilinear interpolation needs a thermocouple grid of at least 2x2",
                                  self.tc_shape)
            object.__setattr__(self, 'tc_shape', (int(self.tc_shape[0]), int(self.tc_shape[1])))

    @classmethod
    def horizontal(cls, extrapolate: bool = False) -> 'InterpMethod':
        return cls(InterpKind.HORIZONTAL, extrapolate)

    @classmethod
    def vertical(cls, extrapolate: bool = False) -> 'InterpMethod':
        return cls(InterpKind.VERTICAL, extrapolate)

    @classmethod
    def bilinear(cls, tc_shape: Tuple[int, int], extrapolate: bool = False) -> 'InterpMethod':
        return cls(InterpKind.BILINEAR, extrapolate, tuple(tc_shape))

    @property
    def is_1d(self) -> bool:
        return self.kind is not InterpKind.BILINEAR

    def to_json(self) -> Union[str, Dict[str, Any]]:
        name = self.kind.value + ('Extra' if self.extrapolate else '')
        if self.kind is InterpKind.BILINEAR:
            return {name: list(self.tc_shape)}
        return name

    @classmethod
    def from_json(cls, obj: Any) -> 'InterpMethod':
        name, payload = _untag(obj, "interpolation method")
        extrapolate = name.endswith('Extra')
        base = name[:-len('Extra')] if extrapolate else name
        try:
            kind = InterpKind(base)
        except ValueError:
            raise ConfigError("Unknown interpolation method", name) from None
        if kind is InterpKind.BILINEAR:
            if not isinstance(payload, (list, tuple)) or len(payload) != 2:
                raise ConfigError("Bilinear interpolation needs [rows, columns]", payload)
            return cls.bilinear(tuple(payload), extrapolate)
        return cls(kind, extrapolate)


class IterationKind(Enum):
    NEWTON_TANGENT = 'NewtonTangent'
    NEWTON_DOWN = 'NewtonDown'


@dataclass(frozen=True)
class IterationMethod:
    """Root finder for the conduction equation (initial value, max steps)."""
    kind: IterationKind = IterationKind.NEWTON_TANGENT
    h0: float = DEFAULT_H0
    max_iter_num: int = DEFAULT_MAX_ITER_NUM

    @classmethod
    def newton_tangent(cls, h0: float = DEFAULT_H0,
                       max_iter_num: int = DEFAULT_MAX_ITER_NUM) -> 'IterationMethod':
        return cls(IterationKind.NEWTON_TANGENT, float(h0), int(max_iter_num))

    @classmethod
    def newton_down(cls, h0: float = DEFAULT_H0,
                    max_iter_num: int = DEFAULT_MAX_ITER_NUM) -> 'IterationMethod':
        return cls(IterationKind.NEWTON_DOWN, float(h0), int(max_iter_num))

    def to_json(self) -> Dict[str, Any]:
        return {self.kind.value: {'h0': self.h0, 'max_iter_num': self.max_iter_num}}

    @classmethod
    def from_json(cls, obj: Any) -> 'IterationMethod':
        name, payload = _untag(obj, "iteration method")
        try:
            kind = IterationKind(name)
        except ValueError:
            raise ConfigError("Unknown iteration method", name) from None
        payload = payload or {}
        return cls(kind,
                   float(payload.get('h0', DEFAULT_H0)),
                   int(payload.get('max_iter_num', DEFAULT_MAX_ITER_NUM)))


@dataclass
class TLCConfig:
    """
    All configuration of one experiment case.

    Video metadata (``frame_rate``, ``total_frames``, ``video_shape``) and
    ``total_rows`` are normally filled by probing the recordings; they can
    also be given directly, e.g. for synthetic data.

    Attributes:
        case_name: Case name, the video file stem
        save_dir: Root directory for configuration, data and plots
        video_path: Video recording
        daq_path: DAQ log (.lvm, .csv or .xlsx)
        start_frame: First video frame used
        total_frames: Number of frames in the recording
        frame_rate: Video frame rate in fps
        start_row: DAQ row synchronized with ``start_frame``
        total_rows: Number of rows in the DAQ log
        frame_num: Number of frames actually processed
        video_shape: (height, width) of the video
        top_left_pos: (y, x) of the calculation region's top-left corner
        region_shape: (height, width) of the calculation region
        thermocouples: Reference thermocouples
        interp_method: Spatial interpolation method
        filter_method: Temporal filter method
        iteration_method: Conduction equation root finder
        peak_temp: Indicator temperature at peak green intensity
        solid_thermal_conductivity: k of the solid
        solid_thermal_diffusivity: a of the solid
        characteristic_length: Length scale of the Nusselt number
        air_thermal_conductivity: k of the air
        regulator: Calibration multiplier per thermocouple
    """
    case_name: str = ''
    save_dir: str = ''
    video_path: str = ''
    daq_path: str = ''

    start_frame: int = 0
    total_frames: int = 0
    frame_rate: int = 0
    start_row: int = 0
    total_rows: int = 0
    frame_num: int = 0
    video_shape: Tuple[int, int] = (0, 0)

    top_left_pos: Tuple[int, int] = (0, 0)
    region_shape: Tuple[int, int] = (0, 0)
    thermocouples: List[Thermocouple] = field(default_factory=list)
    interp_method: InterpMethod = field(default_factory=InterpMethod)
    filter_method: FilterMethod = field(default_factory=FilterMethod)
    iteration_method: IterationMethod = field(default_factory=IterationMethod)

    peak_temp: float = 0.0
    solid_thermal_conductivity: float = 0.0
    solid_thermal_diffusivity: float = 0.0
    characteristic_length: float = 0.0
    air_thermal_conductivity: float = 0.0

    regulator: List[float] = field(default_factory=list)

    def __post_init__(self):
        self.video_shape = tuple(self.video_shape)
        self.top_left_pos = tuple(self.top_left_pos)
        self.region_shape = tuple(self.region_shape)
        self.thermocouples = list(self.thermocouples)
        self.regulator = [float(r) for r in self.regulator]
        self.init_regulator()

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    @property
    def pix_num(self) -> int:
        """Number of pixels in the calculation region."""
        return self.region_shape[0] * self.region_shape[1]

    @property
    def dt(self) -> float:
        """Time step between frames in seconds."""
        if self.frame_rate <= 0:
            raise HandleError("Frame rate unknown, open the video first", self.frame_rate)
        return 1.0 / self.frame_rate

    def _output_path(self, sub_dir: str, suffix: str) -> Path:
        if not self.save_dir:
            raise HandleError("Save directory not set")
        if not self.case_name:
            raise HandleError("Case name not set, open the video first")
        return Path(self.save_dir) / sub_dir / f"{self.case_name}{suffix}"

    @property
    def config_path(self) -> Path:
        return self._output_path('config', '.json')

    @property
    def data_path(self) -> Path:
        return self._output_path('data', '.csv')

    @property
    def plots_path(self) -> Path:
        return self._output_path('plots', '.png')

    # ------------------------------------------------------------------
    # Consistency
    # ------------------------------------------------------------------

    def init_regulator(self) -> 'TLCConfig':
        """Reset the regulator to ones if it no longer matches the thermocouples."""
        if len(self.regulator) != len(self.thermocouples):
            self.regulator = [1.0] * len(self.thermocouples)
        return self

    def init_frame_num(self) -> 'TLCConfig':
        """Recompute the processed frame count from the known recording lengths."""
        candidates = []
        if self.total_frames > 0:
            candidates.append(self.total_frames - self.start_frame)
        if self.total_rows > 0:
            candidates.append(self.total_rows - self.start_row)
        if candidates:
            self.frame_num = max(0, min(candidates))
        return self

    def update_video_metadata(self, descriptor) -> 'TLCConfig':
        """
        Take frame rate, frame count, shape and case name from a probed video.

        Args:
            descriptor: StreamDescriptor returned by ``probe_video``
        """
        self.frame_rate = descriptor.frame_rate
        self.total_frames = descriptor.total_frames
        self.video_shape = (descriptor.height, descriptor.width)
        self.case_name = Path(descriptor.path).stem
        return self.init_frame_num()

    def update_daq_metadata(self, total_rows: int) -> 'TLCConfig':
        self.total_rows = int(total_rows)
        return self.init_frame_num()

    def set_thermocouples(self, thermocouples: List[Thermocouple]) -> 'TLCConfig':
        self.thermocouples = list(thermocouples)
        return self.init_regulator()

    def set_start_frame(self, start_frame: int) -> 'TLCConfig':
        """
        Move the first frame, shifting the first DAQ row by the same amount.

        Raises:
            HandleError: If either window start leaves its recording
        """
        if self.total_frames and start_frame >= self.total_frames:
            raise HandleError("Start frame beyond the end of the video", start_frame)
        start_row = self.start_row + start_frame - self.start_frame
        if start_row < 0:
            raise HandleError("Synchronized start row would be negative", start_row)
        if self.total_rows and start_row >= self.total_rows:
            raise HandleError("Synchronized start row beyond the end of the DAQ log", start_row)
        self.start_frame = start_frame
        self.start_row = start_row
        return self.init_frame_num()

    def set_start_row(self, start_row: int) -> 'TLCConfig':
        """
        Move the first DAQ row, shifting the first frame by the same amount.

        Raises:
            HandleError: If either window start leaves its recording
        """
        if self.total_rows and start_row >= self.total_rows:
            raise HandleError("Start row beyond the end of the DAQ log", start_row)
        start_frame = self.start_frame + start_row - self.start_row
        if start_frame < 0:
            raise HandleError("Synchronized start frame would be negative", start_frame)
        if self.total_frames and start_frame >= self.total_frames:
            raise HandleError("Synchronized start frame beyond the end of the video", start_frame)
        self.start_row = start_row
        self.start_frame = start_frame
        return self.init_frame_num()

    def synchronize(self, frame_index: int, row_index: int) -> 'TLCConfig':
        """Align video frame ``frame_index`` with DAQ row ``row_index``."""
        if frame_index < row_index:
            self.start_frame = 0
            self.start_row = row_index - frame_index
        else:
            self.start_row = 0
            self.start_frame = frame_index - row_index
        return self.init_frame_num()

    def check_region(self, top_left_pos: Tuple[int, int], region_shape: Tuple[int, int]) -> None:
        """Raise HandleError if the region does not fit inside the video."""
        (y, x), (h, w) = top_left_pos, region_shape
        if y < 0 or x < 0 or h <= 0 or w <= 0:
            raise HandleError("Invalid calculation region", (top_left_pos, region_shape))
        video_h, video_w = self.video_shape
        if video_h and video_w and (y + h > video_h or x + w > video_w):
            raise HandleError("Calculation region exceeds the video frame",
                              (top_left_pos, region_shape))

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        return {
            'case_name': self.case_name,
            'save_dir': self.save_dir,
            'video_path': self.video_path,
            'daq_path': self.daq_path,
            'start_frame': self.start_frame,
            'total_frames': self.total_frames,
            'frame_rate': self.frame_rate,
            'start_row': self.start_row,
            'total_rows': self.total_rows,
            'frame_num': self.frame_num,
            'video_shape': list(self.video_shape),
            'top_left_pos': list(self.top_left_pos),
            'region_shape': list(self.region_shape),
            'thermocouples': [tc.to_json() for tc in self.thermocouples],
            'interp_method': self.interp_method.to_json(),
            'filter_method': self.filter_method.to_json(),
            'iteration_method': self.iteration_method.to_json(),
            'peak_temp': self.peak_temp,
            'solid_thermal_conductivity': self.solid_thermal_conductivity,
            'solid_thermal_diffusivity': self.solid_thermal_diffusivity,
            'characteristic_length': self.characteristic_length,
            'air_thermal_conductivity': self.air_thermal_conductivity,
            'regulator': list(self.regulator),
        }

    @classmethod
    def from_dict(cls, obj: Dict[str, Any]) -> 'TLCConfig':
        kwargs = dict(obj)
        try:
            kwargs['thermocouples'] = [Thermocouple.from_json(tc)
                                       for tc in obj.get('thermocouples', [])]
            if 'interp_method' in obj:
                kwargs['interp_method'] = InterpMethod.from_json(obj['interp_method'])
            if 'filter_method' in obj:
                kwargs['filter_method'] = FilterMethod.from_json(obj['filter_method'])
            if 'iteration_method' in obj:
                kwargs['iteration_method'] = IterationMethod.from_json(obj['iteration_method'])
            return cls(**kwargs)
        except TypeError as err:
            raise ConfigError(f"Unexpected configuration field ({err})") from err

    @classmethod
    def from_path(cls, config_path: Union[str, Path]) -> 'TLCConfig':
        """
        Load a configuration saved with :meth:`save`.

        Raises:
            ConfigError: If the file cannot be read or is malformed
        """
        try:
            with open(config_path, 'r', encoding='utf-8') as f:
                obj = json.load(f)
        except OSError as err:
            raise ConfigError(f"Cannot read configuration ({err})", config_path) from err
        except ValueError as err:
            raise ConfigError(f"Malformed configuration ({err})", config_path) from err
        if not isinstance(obj, dict):
            raise ConfigError("Configuration must be a JSON object", config_path)
        return cls.from_dict(obj)

    def save(self, config_path: Optional[Union[str, Path]] = None) -> Path:
        """
        Write the configuration as pretty-printed JSON.

        Args:
            config_path: Destination, defaults to ``<save_dir>/config/<case>.json``

        Returns:
            Path written
        """
        path = Path(config_path) if config_path is not None else self.config_path
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, 'w', encoding='utf-8') as f:
                json.dump(self.to_dict(), f, indent=2)
        except OSError as err:
            raise ConfigError(f"Cannot write configuration ({err})", path) from err
        logger.debug("Saved configuration to %s", path)
        return path
