import numpy as np
import pytest

pytest.importorskip("av")

from conftest import VIDEO_FPS, VIDEO_SHAPE, frame_pattern, make_config, make_daq
from tlc.cal import HandleError, TLCData, VideoError, VideoIOError, WorkerPool
from tlc.cal.video import (
    COMPRESSION_RATIO,
    Decoder,
    VideoStream,
    extract_green,
    probe_video,
    read_frame,
    read_intensity,
)


def region_green(index, top_left_pos, region_shape):
    (y, x), (h, w) = top_left_pos, region_shape
    return frame_pattern(index)[y:y + h, x:x + w, 1].reshape(-1)


def test_extract_green_row_major():
    rgb = frame_pattern(3)
    green = extract_green(rgb, (2, 5), (3, 4))
    flat = rgb.reshape(-1)
    row_bytes = rgb.shape[1] * 3
    expected = [flat[(2 + r) * row_bytes + (5 + c) * 3 + 1] for r in range(3) for c in range(4)]
    np.testing.assert_array_equal(green, expected)


def test_extract_green_outside_frame():
    with pytest.raises(VideoError):
        extract_green(frame_pattern(0), (6, 0), (4, 4))


def test_probe(recording):
    path, frame_count = recording
    descriptor = probe_video(path)
    assert descriptor.shape == VIDEO_SHAPE
    assert descriptor.frame_rate == VIDEO_FPS
    assert descriptor.codec_name == 'rawvideo'
    assert descriptor.total_frames == frame_count


def test_probe_missing_file(tmp_path):
    with pytest.raises(VideoIOError):
        probe_video(tmp_path / "missing.mov")


def test_probe_not_a_video(tmp_path):
    path = tmp_path / "notes.mov"
    path.write_bytes(b"not a recording")
    with pytest.raises(VideoIOError):
        probe_video(path)


def test_decode_and_preview(recording):
    path, frame_count = recording
    descriptor = probe_video(path)
    with VideoStream(descriptor, frame_count) as stream:
        rgb = read_frame(stream, 4, Decoder(descriptor))
        np.testing.assert_array_equal(rgb, frame_pattern(4))

        preview = read_frame(stream, frame_count - 1, Decoder(descriptor, compress=True))
        h, w = VIDEO_SHAPE
        assert preview.shape == (h // COMPRESSION_RATIO, w // COMPRESSION_RATIO, 3)

        with pytest.raises(HandleError) as excinfo:
            read_frame(stream, frame_count, Decoder(descriptor))
        assert excinfo.value.path == frame_count


def test_end_of_stream_before_expected_frames(recording):
    path, frame_count = recording
    descriptor = probe_video(path)
    with VideoStream(descriptor, frame_count + 5) as stream:
        with pytest.raises(VideoError):
            stream.cache.wait_for(frame_count + 5, timeout=10)


@pytest.mark.parametrize("workers", [1, 4])
def test_read_intensity(recording, workers):
    path, frame_count = recording
    descriptor = probe_video(path)
    config = make_config(
        start_frame=2, frame_num=7, top_left_pos=(1, 3), region_shape=(4, 5),
    )
    with VideoStream(descriptor, frame_count) as stream:
        g2d = read_intensity(stream, config, WorkerPool(workers))

    assert g2d.shape == (7, 20)
    assert g2d.dtype == np.uint8
    for row in range(7):
        np.testing.assert_array_equal(g2d[row], region_green(2 + row, (1, 3), (4, 5)))


def test_read_intensity_window_beyond_recording(recording):
    path, frame_count = recording
    descriptor = probe_video(path)
    config = make_config(start_frame=frame_count - 2, frame_num=5, region_shape=(2, 2))
    with VideoStream(descriptor, frame_count) as stream:
        with pytest.raises(VideoError):
            read_intensity(stream, config, WorkerPool(2))


def test_case_from_recording(recording):
    path, frame_count = recording
    config = make_config(
        video_path='', total_frames=0, frame_rate=0, frame_num=0,
        total_rows=frame_count, region_shape=(2, 3), top_left_pos=(1, 1),
        thermocouples=[],
    )
    daq = make_daq(frame_count)
    with TLCData(config, pool=WorkerPool(2), daq_reader=lambda _: daq) as data:
        data.set_video_path(str(path))
        assert data.config.case_name == 'recording'
        assert data.config.frame_rate == VIDEO_FPS
        assert data.config.frame_num == frame_count

        preview = data.get_frame(0)
        assert preview.shape == (VIDEO_SHAPE[0] // 2, VIDEO_SHAPE[1] // 2, 3)

        data.synchronize(2, 0)
        raw = data.get_raw_g2d()
        assert raw.shape == (frame_count - 2, 6)
        np.testing.assert_array_equal(raw[0], region_green(2, (1, 1), (2, 3)))
        # packets are released once the matrix is read
        assert data._video is None
