"""
TLCData - configuration plus lazily computed, invalidated derived data.

Derived entities form a DAG over the configuration:

    video ──> raw_g2d ──> filtered_g2d ──> peak_frames ──┐
                                                         ├──> nu2d ──> nu_nan_mean
    daq file ──> daq ──> t2d ──> interp ─────────────────┘

Each entity is computed on first access and kept until a setter changes a
configuration field it depends on, directly or through an upstream
entity; the setter then drops it and everything downstream of it. An
entity is never partially valid and never recomputed while present.
"""

import logging
import threading
import time
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

import numpy as np

from .config import (
    FilterMethod,
    InterpMethod,
    IterationMethod,
    TLCConfig,
    Thermocouple,
)
from .daq import read_daq
from .errors import HandleError
from .interp import Interp
from .parallel import WorkerPool
from .postprocess import nan_mean, plot_area, save_nu
from .preprocess import build_t2d, detect_peaks, filter_matrix, filter_single_point
from .solve import solve_nu
from .video import Decoder, VideoStream, probe_video, read_frame, read_intensity

logger = logging.getLogger(__name__)

ENTITIES = (
    'raw_g2d',
    'filtered_g2d',
    'peak_frames',
    'daq',
    't2d',
    'interp',
    'nu2d',
    'nu_nan_mean',
)

# Entities computed directly from each entity
DOWNSTREAM: Dict[str, Tuple[str, ...]] = {
    'raw_g2d': ('filtered_g2d',),
    'filtered_g2d': ('peak_frames',),
    'peak_frames': ('nu2d',),
    'daq': ('t2d',),
    't2d': ('interp',),
    'interp': ('nu2d',),
    'nu2d': ('nu_nan_mean',),
    'nu_nan_mean': (),
}

# Entities that read each configuration field directly
FIELD_DEPENDENTS: Dict[str, Tuple[str, ...]] = {
    'video_path': ('raw_g2d', 'nu2d'),
    'daq_path': ('daq',),
    'start_frame': ('raw_g2d',),
    'start_row': ('t2d',),
    'frame_num': ('raw_g2d', 't2d'),
    'top_left_pos': ('raw_g2d', 'interp'),
    'region_shape': ('raw_g2d', 'interp'),
    'thermocouples': ('t2d', 'interp'),
    'regulator': ('t2d',),
    'filter_method': ('filtered_g2d',),
    'interp_method': ('interp',),
    'iteration_method': ('nu2d',),
    'frame_rate': ('nu2d',),
    'peak_temp': ('nu2d',),
    'solid_thermal_conductivity': ('nu2d',),
    'solid_thermal_diffusivity': ('nu2d',),
    'characteristic_length': ('nu2d',),
    'air_thermal_conductivity': ('nu2d',),
}


def downstream_closure(entities: Iterable[str]) -> Set[str]:
    """The given entities and every entity derived from them."""
    closure: Set[str] = set()
    stack = list(entities)
    while stack:
        entity = stack.pop()
        if entity not in closure:
            closure.add(entity)
            stack.extend(DOWNSTREAM[entity])
    return closure


def _frozen(arr: np.ndarray) -> np.ndarray:
    arr.setflags(write=False)
    return arr


class TLCData:
    """
    Configuration of one case plus its runtime data.

    Attributes are computed on demand by the ``get_*`` accessors; the
    stage methods (``read_video``, ``filtering``, ...) force a
    recomputation and return ``self`` for chaining. Cached arrays are
    read-only.

    Example:
        >>> data = TLCData(TLCConfig.from_path("case.json"))
        >>> data.set_filter_method(FilterMethod.median(10))
        >>> nu2d = data.get_nu2d()
        >>> png = data.get_nu_img()
    """

    def __init__(
        self,
        config: TLCConfig,
        pool: Optional[WorkerPool] = None,
        intensity_reader: Optional[Callable[['TLCData'], np.ndarray]] = None,
        daq_reader: Optional[Callable[[str], np.ndarray]] = None
    ):
        """
        Args:
            config: Case configuration, owned by this object from now on
            pool: Worker pool for parallel stages, defaults to one worker per CPU
            intensity_reader: Function producing the raw intensity matrix
                              (frame_num, pix_num) for this object; defaults
                              to decoding the configured video
            daq_reader: Function reading a DAQ table from a path,
                        defaults to :func:`tlc.cal.daq.read_daq`
        """
        self._config = config
        self._owns_pool = pool is None
        self._pool = pool if pool is not None else WorkerPool()
        self._intensity_reader = intensity_reader or TLCData._decode_intensity
        self._daq_reader = daq_reader or read_daq
        self._video: Optional[VideoStream] = None
        self._preview_decoder: Optional[Decoder] = None
        self._video_lock = threading.Lock()
        self._cache: Dict[str, object] = {}

    @classmethod
    def from_path(cls, config_path, pool: Optional[WorkerPool] = None) -> 'TLCData':
        """Load a saved configuration and refresh its recording metadata."""
        data = cls(TLCConfig.from_path(config_path), pool=pool)
        data.refresh_metadata()
        return data

    def refresh_metadata(self) -> 'TLCData':
        """Probe the configured video and DAQ log, if set, and recompute the frame window."""
        config = self._config
        if config.video_path:
            config.update_video_metadata(probe_video(config.video_path))
        if config.daq_path:
            config.update_daq_metadata(self.get_daq().shape[0])
        return self

    # ------------------------------------------------------------------
    # Cache bookkeeping
    # ------------------------------------------------------------------

    def _invalidate_fields(self, *fields: str) -> None:
        direct = [e for f in fields for e in FIELD_DEPENDENTS[f]]
        dropped = [e for e in downstream_closure(direct) if self._cache.pop(e, None) is not None]
        if dropped:
            logger.debug("%s changed, dropped %s", ', '.join(fields), ', '.join(sorted(dropped)))

    def _get(self, entity: str, compute: Callable[[], None]):
        if entity not in self._cache:
            compute()
        return self._cache[entity]

    def is_cached(self, entity: str) -> bool:
        """Check whether a derived entity is currently held."""
        if entity not in DOWNSTREAM:
            raise KeyError(f"Unknown entity: {entity}")
        return entity in self._cache

    def cached_entities(self) -> List[str]:
        return [e for e in ENTITIES if e in self._cache]

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    def get_config(self) -> TLCConfig:
        return self._config

    @property
    def config(self) -> TLCConfig:
        return self._config

    @property
    def pool(self) -> WorkerPool:
        return self._pool

    def get_raw_g2d(self) -> np.ndarray:
        """Raw green intensity, shape (frame_num, pix_num)."""
        return self._get('raw_g2d', self.read_video)

    def get_filtered_g2d(self) -> np.ndarray:
        return self._get('filtered_g2d', self.filtering)

    def get_peak_frames(self) -> np.ndarray:
        """Peak frame per pixel, region row-major."""
        return self._get('peak_frames', self.detect_peak)

    def get_daq(self) -> np.ndarray:
        return self._get('daq', self.read_daq)

    def get_t2d(self) -> np.ndarray:
        """Reference temperatures, shape (thermocouples, frame_num)."""
        return self._get('t2d', self.init_t2d)

    def get_interp(self) -> Interp:
        return self._get('interp', self.interp)

    def get_nu2d(self) -> np.ndarray:
        """Nusselt map, shape region_shape, row 0 at the bottom."""
        return self._get('nu2d', self.solve)

    def get_nu_nan_mean(self) -> float:
        return self._get('nu_nan_mean', self.solve)

    # ------------------------------------------------------------------
    # Setters
    # ------------------------------------------------------------------

    def set_save_dir(self, save_dir: str) -> 'TLCData':
        self._config.save_dir = save_dir
        return self

    def set_video_path(self, video_path: str) -> 'TLCData':
        """
        Switch to another recording and take over its metadata.

        Raises:
            VideoIOError: If the file cannot be opened
            VideoError: If it has no video stream
        """
        descriptor = probe_video(video_path)
        self.drop_video()
        self._config.video_path = str(video_path)
        self._config.update_video_metadata(descriptor)
        self._invalidate_fields('video_path', 'frame_rate', 'frame_num')
        return self

    def set_daq_path(self, daq_path: str) -> 'TLCData':
        """
        Switch to another DAQ log and read it.

        Raises:
            DAQIOError: If the log cannot be read; the case is left unchanged
        """
        daq = _frozen(self._daq_reader(str(daq_path)))
        self._config.daq_path = str(daq_path)
        self._invalidate_fields('daq_path', 'frame_num')
        self._cache['daq'] = daq
        self._config.update_daq_metadata(daq.shape[0])
        return self

    def set_filter_method(self, filter_method: FilterMethod) -> 'TLCData':
        self._config.filter_method = filter_method
        self._invalidate_fields('filter_method')
        return self

    def set_interp_method(self, interp_method: InterpMethod) -> 'TLCData':
        self._config.interp_method = interp_method
        self._invalidate_fields('interp_method')
        return self

    def set_iteration_method(self, iteration_method: IterationMethod) -> 'TLCData':
        self._config.iteration_method = iteration_method
        self._invalidate_fields('iteration_method')
        return self

    def set_region(self, top_left_pos: Tuple[int, int], region_shape: Tuple[int, int]) -> 'TLCData':
        top_left_pos, region_shape = tuple(top_left_pos), tuple(region_shape)
        self._config.check_region(top_left_pos, region_shape)
        self._config.top_left_pos = top_left_pos
        self._config.region_shape = region_shape
        self._invalidate_fields('top_left_pos', 'region_shape')
        return self

    def set_regulator(self, regulator: List[float]) -> 'TLCData':
        if len(regulator) != len(self._config.thermocouples):
            raise HandleError(
                f"Regulator needs {len(self._config.thermocouples)} values", len(regulator)
            )
        self._config.regulator = [float(r) for r in regulator]
        self._invalidate_fields('regulator')
        return self

    def set_thermocouples(self, thermocouples: List[Thermocouple]) -> 'TLCData':
        """Replace the thermocouples; the regulator is reset if the count changes."""
        self._config.set_thermocouples(thermocouples)
        self._invalidate_fields('thermocouples', 'regulator')
        return self

    def set_start_frame(self, start_frame: int) -> 'TLCData':
        self._config.set_start_frame(start_frame)
        self._invalidate_fields('start_frame', 'start_row', 'frame_num')
        return self

    def set_start_row(self, start_row: int) -> 'TLCData':
        self._config.set_start_row(start_row)
        self._invalidate_fields('start_frame', 'start_row', 'frame_num')
        return self

    def synchronize(self, frame_index: int, row_index: int) -> 'TLCData':
        """Declare video frame ``frame_index`` simultaneous with DAQ row ``row_index``."""
        self._config.synchronize(frame_index, row_index)
        self._invalidate_fields('start_frame', 'start_row', 'frame_num')
        return self

    def set_peak_temp(self, peak_temp: float) -> 'TLCData':
        self._config.peak_temp = peak_temp
        self._invalidate_fields('peak_temp')
        return self

    def set_solid_thermal_conductivity(self, solid_thermal_conductivity: float) -> 'TLCData':
        self._config.solid_thermal_conductivity = solid_thermal_conductivity
        self._invalidate_fields('solid_thermal_conductivity')
        return self

    def set_solid_thermal_diffusivity(self, solid_thermal_diffusivity: float) -> 'TLCData':
        self._config.solid_thermal_diffusivity = solid_thermal_diffusivity
        self._invalidate_fields('solid_thermal_diffusivity')
        return self

    def set_characteristic_length(self, characteristic_length: float) -> 'TLCData':
        self._config.characteristic_length = characteristic_length
        self._invalidate_fields('characteristic_length')
        return self

    def set_air_thermal_conductivity(self, air_thermal_conductivity: float) -> 'TLCData':
        self._config.air_thermal_conductivity = air_thermal_conductivity
        self._invalidate_fields('air_thermal_conductivity')
        return self

    # ------------------------------------------------------------------
    # Video
    # ------------------------------------------------------------------

    def _ensure_video(self) -> VideoStream:
        with self._video_lock:
            if self._video is None:
                config = self._config
                if not config.video_path:
                    raise HandleError("Video path not set")
                descriptor = probe_video(config.video_path)
                self._video = VideoStream(descriptor, config.total_frames or descriptor.total_frames)
            return self._video

    def drop_video(self) -> None:
        """Release cached packets and decode contexts."""
        with self._video_lock:
            if self._video is not None:
                self._video.close()
                self._video = None
            if self._preview_decoder is not None:
                self._preview_decoder.close()
                self._preview_decoder = None

    @staticmethod
    def _decode_intensity(data: 'TLCData') -> np.ndarray:
        stream = data._ensure_video()
        try:
            return read_intensity(stream, data._config, data._pool)
        finally:
            data.drop_video()

    def get_frame(self, frame_index: int) -> np.ndarray:
        """
        Preview frame at half resolution.

        The recording keeps being demuxed in the background so that
        later previews and :meth:`read_video` reuse the packets.

        Returns:
            RGB24 array of shape (height // 2, width // 2, 3)
        """
        stream = self._ensure_video()
        if self._preview_decoder is None:
            self._preview_decoder = Decoder(stream.descriptor, compress=True)
        return read_frame(stream, frame_index, self._preview_decoder)

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def read_video(self) -> 'TLCData':
        """Extract the raw green-intensity matrix of the calculation region."""
        config = self._config
        g2d = self._intensity_reader(self)
        expected = (config.frame_num, config.pix_num)
        if g2d.shape != expected:
            raise HandleError(f"Intensity matrix has shape {g2d.shape}, expected {expected}")
        self._cache['raw_g2d'] = _frozen(g2d)
        return self

    def read_daq(self) -> 'TLCData':
        config = self._config
        if not config.daq_path:
            raise HandleError("DAQ path not set")
        self._cache['daq'] = _frozen(self._daq_reader(config.daq_path))
        return self

    def filtering(self) -> 'TLCData':
        """Filter the raw intensity matrix along time."""
        t0 = time.perf_counter()
        filtered = filter_matrix(self.get_raw_g2d(), self._config.filter_method, self._pool)
        self._cache['filtered_g2d'] = _frozen(filtered)
        logger.info("Filtered with %s in %.2f s",
                    self._config.filter_method.to_json(), time.perf_counter() - t0)
        return self

    def filtering_single_point(self, pos: int) -> np.ndarray:
        """Filtered intensity series of one pixel, without filtering the whole matrix."""
        raw_g2d = self.get_raw_g2d()
        if not 0 <= pos < raw_g2d.shape[1]:
            raise HandleError(f"Pixel out of range [0, {raw_g2d.shape[1]})", pos)
        return filter_single_point(raw_g2d[:, pos], self._config.filter_method)

    def detect_peak(self) -> 'TLCData':
        peak_frames = detect_peaks(self.get_filtered_g2d(), self._pool)
        self._cache['peak_frames'] = _frozen(peak_frames)
        return self

    def init_t2d(self) -> 'TLCData':
        """Reference temperature matrix from the DAQ log and regulator."""
        config = self._config
        t2d = build_t2d(self.get_daq(), config.thermocouples, config.start_row,
                        config.frame_num, config.regulator)
        self._cache['t2d'] = _frozen(t2d)
        return self

    def interp(self) -> 'TLCData':
        """Interpolate the reference temperatures over the region."""
        config = self._config
        interp = Interp.new(self.get_t2d(), config.interp_method, config.thermocouples,
                            config.top_left_pos, config.region_shape, self._pool)
        _frozen(interp.temps)
        self._cache['interp'] = interp
        return self

    def interp_single_point(self, pos: int) -> np.ndarray:
        return self.get_interp().single_point(pos)

    def interp_single_frame(self, frame: int) -> np.ndarray:
        return self.get_interp().single_frame(frame)

    def solve(self) -> 'TLCData':
        """Solve the conduction equation for every pixel."""
        peak_frames = self.get_peak_frames()
        interp = self.get_interp()
        nu2d, nu_nan_mean = solve_nu(peak_frames, interp, self._config, self._pool)
        self._cache['nu2d'] = _frozen(nu2d)
        self._cache['nu_nan_mean'] = nu_nan_mean
        return self

    # ------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------

    def get_nu_img(self, vrange: Optional[Tuple[float, float]] = None) -> bytes:
        """
        Nusselt map as a PNG image.

        Args:
            vrange: (vmin, vmax) of the color scale, defaults to
                    (0.6, 2.0) times the mean
        """
        if vrange is None:
            mean = self.get_nu_nan_mean()
            vrange = (mean * 0.6, mean * 2.0)
        return plot_area(self.get_nu2d(), *vrange)

    def plot_nu(self, vrange: Optional[Tuple[float, float]] = None) -> bytes:
        """Like :meth:`get_nu_img`, also writing ``<save_dir>/plots/<case>.png``."""
        if vrange is None:
            mean = self.get_nu_nan_mean()
            vrange = (mean * 0.6, mean * 2.0)
        return plot_area(self.get_nu2d(), *vrange, path=self._config.plots_path,
                         title=self._config.case_name)

    def plot_temps_single_frame(self, frame: int) -> bytes:
        temps = self.interp_single_frame(frame)
        mean = nan_mean(temps)
        return plot_area(temps, mean * 0.5, mean * 1.2)

    def save_nu(self, data_path=None):
        """Write the Nusselt map, by default to ``<save_dir>/data/<case>.csv``."""
        return save_nu(self.get_nu2d(), data_path if data_path is not None else self._config.data_path)

    def save_config(self, config_path=None):
        return self._config.save(config_path)

    def close(self) -> None:
        """Release the recording and stop the worker pool if this object created it."""
        self.drop_video()
        if self._owns_pool:
            self._pool.close()

    def __enter__(self) -> 'TLCData':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def __repr__(self) -> str:
        return (
            f"<TLCData case='{self._config.case_name}' "
            f"cached=[{', '.join(self.cached_entities())}]>"
        )
