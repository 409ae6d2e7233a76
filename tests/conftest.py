"""Shared fixtures: synthetic cases, DAQ logs and a small lossless recording."""

import numpy as np
import pytest

from tlc.cal import (
    FilterMethod,
    InterpMethod,
    IterationMethod,
    TLCConfig,
    TLCData,
    Thermocouple,
    WorkerPool,
)

FRAME_NUM = 40
REGION_SHAPE = (2, 3)
VIDEO_SHAPE = (8, 16)
VIDEO_FPS = 25


@pytest.fixture(params=[1, 3], ids=["serial", "threads"])
def pool(request):
    return WorkerPool(request.param)


def make_config(**overrides) -> TLCConfig:
    """Case with a 2x3 region, two thermocouples at x = 0 and x = 2."""
    fields = dict(
        case_name='synthetic',
        video_path='synthetic.mov',
        daq_path='synthetic.lvm',
        start_frame=0,
        total_frames=FRAME_NUM,
        frame_rate=10,
        start_row=0,
        total_rows=FRAME_NUM,
        frame_num=FRAME_NUM,
        top_left_pos=(0, 0),
        region_shape=REGION_SHAPE,
        thermocouples=[Thermocouple(0, (0, 0)), Thermocouple(1, (0, 2))],
        interp_method=InterpMethod.horizontal(),
        filter_method=FilterMethod.no(),
        iteration_method=IterationMethod.newton_tangent(),
        peak_temp=22.0,
        solid_thermal_conductivity=0.19,
        solid_thermal_diffusivity=1.09e-7,
        characteristic_length=0.015,
        air_thermal_conductivity=0.0276,
    )
    fields.update(overrides)
    return TLCConfig(**fields)


def make_daq(rows: int = FRAME_NUM) -> np.ndarray:
    """Two channels heating up linearly, the second one 2 K ahead."""
    t = np.arange(rows, dtype=np.float32)
    return np.stack([20.0 + 0.5 * t, 22.0 + 0.5 * t], axis=1)


def make_g2d(frame_num: int = FRAME_NUM, pix_num: int = REGION_SHAPE[0] * REGION_SHAPE[1]) -> np.ndarray:
    """Intensity histories whose peak frame is 10 + pixel index."""
    frames = np.arange(frame_num)[:, np.newaxis]
    peaks = 10 + np.arange(pix_num)[np.newaxis, :]
    return np.clip(200 - 8 * np.abs(frames - peaks), 0, 255).astype(np.uint8)


class CountingReader:
    """Injectable reader recording how often it was called."""

    def __init__(self, result):
        self.result = result
        self.calls = 0

    def __call__(self, _arg):
        self.calls += 1
        return np.array(self.result, copy=True)


@pytest.fixture
def synthetic_data():
    """TLCData over synthetic intensity and DAQ tables, no files involved."""
    intensity_reader = CountingReader(make_g2d())
    daq_reader = CountingReader(make_daq())
    data = TLCData(
        make_config(),
        pool=WorkerPool(2),
        intensity_reader=intensity_reader,
        daq_reader=daq_reader,
    )
    data.intensity_reader = intensity_reader
    data.daq_reader = daq_reader
    return data


@pytest.fixture
def lvm_file(tmp_path):
    path = tmp_path / "case.lvm"
    np.savetxt(path, make_daq(), delimiter='\t', fmt='%.3f')
    return path


def frame_pattern(index: int) -> np.ndarray:
    """RGB frame whose green channel encodes the frame index and pixel position."""
    h, w = VIDEO_SHAPE
    rgb = np.zeros((h, w, 3), dtype=np.uint8)
    rgb[..., 0] = 7
    rgb[..., 1] = (index * 10 + np.arange(w)[np.newaxis, :] + 16 * np.arange(h)[:, np.newaxis]) % 256
    rgb[..., 2] = 200
    return rgb


@pytest.fixture
def recording(tmp_path):
    """Lossless rgb24 rawvideo recording of 12 frames in a QuickTime container."""
    av = pytest.importorskip("av")
    path = tmp_path / "recording.mov"
    frame_count = 12

    container = av.open(str(path), mode='w')
    stream = container.add_stream('rawvideo', rate=VIDEO_FPS)
    stream.width = VIDEO_SHAPE[1]
    stream.height = VIDEO_SHAPE[0]
    stream.pix_fmt = 'rgb24'
    for i in range(frame_count):
        frame = av.VideoFrame.from_ndarray(frame_pattern(i), format='rgb24')
        for packet in stream.encode(frame):
            container.mux(packet)
    for packet in stream.encode():
        container.mux(packet)
    container.close()
    return path, frame_count
