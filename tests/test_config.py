import json

import pytest

from conftest import make_config
from tlc.cal import (
    ConfigError,
    FilterMethod,
    HandleError,
    InterpMethod,
    IterationMethod,
    TLCConfig,
    Thermocouple,
)


class TestMethods:
    @pytest.mark.parametrize("method, tagged", [
        (FilterMethod.no(), "No"),
        (FilterMethod.median(10), {"Median": 10}),
        (FilterMethod.wavelet(0.5), {"Wavelet": 0.5}),
    ])
    def test_filter_method_json(self, method, tagged):
        assert method.to_json() == tagged
        assert FilterMethod.from_json(tagged) == method

    @pytest.mark.parametrize("method, tagged", [
        (InterpMethod.horizontal(), "Horizontal"),
        (InterpMethod.vertical(extrapolate=True), "VerticalExtra"),
        (InterpMethod.bilinear((3, 4)), {"Bilinear": [3, 4]}),
        (InterpMethod.bilinear((2, 2), extrapolate=True), {"BilinearExtra": [2, 2]}),
    ])
    def test_interp_method_json(self, method, tagged):
        assert method.to_json() == tagged
        assert InterpMethod.from_json(tagged) == method

    def test_iteration_method_json(self):
        method = IterationMethod.newton_down(h0=80, max_iter_num=20)
        tagged = {"NewtonDown": {"h0": 80.0, "max_iter_num": 20}}
        assert method.to_json() == tagged
        assert IterationMethod.from_json(tagged) == method
        assert IterationMethod.from_json("NewtonTangent") == IterationMethod.newton_tangent()

    @pytest.mark.parametrize("parse, obj", [
        (FilterMethod.from_json, "Gaussian"),
        (FilterMethod.from_json, {"Median": 3, "Wavelet": 0.1}),
        (InterpMethod.from_json, "Cubic"),
        (InterpMethod.from_json, {"Bilinear": 3}),
        (IterationMethod.from_json, "Bisection"),
    ])
    def test_malformed_method(self, parse, obj):
        with pytest.raises(ConfigError):
            parse(obj)

    def test_invalid_method_parameters(self):
        with pytest.raises(HandleError):
            FilterMethod.median(0)
        with pytest.raises(HandleError):
            FilterMethod.wavelet(-0.1)
        with pytest.raises(HandleError):
            InterpMethod.bilinear((1, 3))

    def test_is_1d(self):
        assert InterpMethod.horizontal().is_1d
        assert not InterpMethod.bilinear((2, 2)).is_1d


class TestTLCConfig:
    def test_regulator_follows_thermocouples(self):
        config = make_config()
        assert config.regulator == [1.0, 1.0]
        config.regulator = [1.1, 0.9]
        config.set_thermocouples(config.thermocouples + [Thermocouple(2, (0, 1))])
        assert config.regulator == [1.0, 1.0, 1.0]

    def test_regulator_kept_when_count_matches(self):
        config = make_config(regulator=[1.1, 0.9])
        config.set_thermocouples(list(reversed(config.thermocouples)))
        assert config.regulator == [1.1, 0.9]

    def test_frame_num_is_shortest_window(self):
        config = make_config(total_frames=100, total_rows=80, start_frame=10, start_row=0)
        config.init_frame_num()
        assert config.frame_num == 80

        config.update_daq_metadata(200)
        assert config.frame_num == 90

    def test_set_start_frame_shifts_start_row(self):
        config = make_config(total_frames=100, total_rows=100, start_frame=10, start_row=5)
        config.set_start_frame(20)
        assert (config.start_frame, config.start_row) == (20, 15)
        assert config.frame_num == 80

    def test_set_start_row_rejects_negative_frame(self):
        config = make_config(total_frames=100, total_rows=100, start_frame=0, start_row=5)
        with pytest.raises(HandleError):
            config.set_start_row(2)
        assert (config.start_frame, config.start_row) == (0, 5)

    def test_set_start_frame_beyond_video(self):
        config = make_config(total_frames=100, total_rows=200)
        with pytest.raises(HandleError):
            config.set_start_frame(100)

    @pytest.mark.parametrize("frame_index, row_index, expected", [
        (30, 10, (20, 0)),
        (10, 30, (0, 20)),
        (5, 5, (0, 0)),
    ])
    def test_synchronize(self, frame_index, row_index, expected):
        config = make_config(total_frames=100, total_rows=100)
        config.synchronize(frame_index, row_index)
        assert (config.start_frame, config.start_row) == expected
        assert config.frame_num == 100 - max(expected)

    def test_dt(self):
        assert make_config(frame_rate=25).dt == pytest.approx(0.04)
        with pytest.raises(HandleError):
            make_config(frame_rate=0).dt

    def test_output_paths(self, tmp_path):
        config = make_config(save_dir=str(tmp_path), case_name='run-1')
        assert config.config_path == tmp_path / 'config' / 'run-1.json'
        assert config.data_path == tmp_path / 'data' / 'run-1.csv'
        assert config.plots_path == tmp_path / 'plots' / 'run-1.png'
        with pytest.raises(HandleError):
            make_config(save_dir='').data_path

    def test_check_region(self):
        config = make_config(video_shape=(100, 200))
        config.check_region((10, 10), (90, 190))
        with pytest.raises(HandleError):
            config.check_region((10, 10), (91, 190))
        with pytest.raises(HandleError):
            config.check_region((0, 0), (0, 10))

    def test_save_and_load(self, tmp_path):
        config = make_config(
            save_dir=str(tmp_path),
            video_shape=(480, 640),
            regulator=[1.02, 0.98],
            filter_method=FilterMethod.wavelet(0.8),
            interp_method=InterpMethod.bilinear((2, 2), extrapolate=True),
            thermocouples=[Thermocouple(i, (10 * (i // 2), 10 * (i % 2))) for i in range(4)],
        )
        config.regulator = [1.0, 1.0, 0.9, 1.1]
        path = config.save()
        assert path == config.config_path

        with open(path) as f:
            obj = json.load(f)
        assert obj['filter_method'] == {'Wavelet': 0.8}
        assert obj['interp_method'] == {'BilinearExtra': [2, 2]}
        assert obj['thermocouples'][3] == {'column_num': 3, 'pos': [10, 10]}

        loaded = TLCConfig.from_path(path)
        assert loaded == config
        assert loaded.video_shape == (480, 640)

    def test_load_errors(self, tmp_path):
        with pytest.raises(ConfigError):
            TLCConfig.from_path(tmp_path / 'missing.json')

        broken = tmp_path / 'broken.json'
        broken.write_text('{"case_name": ')
        with pytest.raises(ConfigError):
            TLCConfig.from_path(broken)

        unknown = tmp_path / 'unknown.json'
        unknown.write_text('{"colour_space": "HSV"}')
        with pytest.raises(ConfigError):
            TLCConfig.from_path(unknown)
