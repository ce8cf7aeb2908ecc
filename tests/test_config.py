"""Tests for reader configuration and region-of-interest geometry."""

import json

import numpy as np
import pytest

from scalecam.config import (
    PROFILES,
    ReaderConfig,
    RegionOfInterest,
    load_config,
)
from scalecam.errors import ConfigError
from scalecam.recognition import ParseMode


class TestRegionOfInterest:
    def test_full_frame_crop_is_identity(self):
        image = np.zeros((100, 200, 3), dtype=np.uint8)
        assert RegionOfInterest().crop(image) is image

    def test_crop(self):
        image = np.arange(100 * 200).reshape(100, 200)
        roi = RegionOfInterest(x=0.25, y=0.5, width=0.5, height=0.25)
        crop = roi.crop(image)
        assert crop.shape == (25, 100)
        assert crop[0, 0] == image[50, 50]

    def test_tiny_region_keeps_one_pixel(self):
        image = np.zeros((10, 10), dtype=np.uint8)
        assert RegionOfInterest(0.0, 0.0, 0.01, 0.01).crop(image).shape == (1, 1)

    def test_box_back_to_frame(self):
        roi = RegionOfInterest(x=0.2, y=0.4, width=0.5, height=0.5)
        assert roi.to_frame_box((0.0, 0.0, 1.0, 1.0)) == pytest.approx((0.2, 0.4, 0.7, 0.9))

    @pytest.mark.parametrize(
        "args",
        [
            (0.0, 0.0, 0.0, 1.0),
            (0.0, 0.0, 1.0, -0.5),
            (-0.1, 0.0, 0.5, 0.5),
            (0.6, 0.0, 0.5, 0.5),
            (0.0, 0.8, 0.5, 0.5),
        ],
    )
    def test_invalid(self, args):
        with pytest.raises(ConfigError):
            RegionOfInterest(*args)


class TestReaderConfig:
    def test_defaults(self):
        config = ReaderConfig()
        assert config.backend == "easyocr"
        assert config.confidence_threshold == 1.0
        assert config.window_duration == 5.0
        assert config.capacity == 300
        assert config.region_of_interest.is_full_frame

    def test_profiles(self):
        assert PROFILES["remote"].request_interval == 0.6
        assert PROFILES["vlm"].request_interval == 2.0
        assert PROFILES["vlm"].stale_interval == 3.0
        assert PROFILES["vlm"].parse_mode is ParseMode.REPLY
        assert PROFILES["easyocr"].parse_mode is ParseMode.PERMISSIVE
        assert PROFILES["two_stage"].parse_mode is ParseMode.STRICT

    def test_profile_overrides(self):
        profile = ReaderConfig(backend="remote", stale_interval=4.0).profile
        assert profile.request_interval == 0.6
        assert profile.stale_interval == 4.0

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"backend": "tesseract"},
            {"confidence_threshold": 1.5},
            {"min_text_height": -0.1},
            {"window_duration": 0.5},
            {"window_duration": 31},
            {"eviction_policy": "lru"},
            {"capacity": 0},
            {"request_interval": -0.1},
            {"stale_interval": 0},
            {"stale_interval": -1.0},
        ],
    )
    def test_invalid(self, kwargs):
        with pytest.raises(ConfigError):
            ReaderConfig(**kwargs)

    def test_config_error_is_value_error(self):
        with pytest.raises(ValueError):
            ReaderConfig(backend="nope")

    def test_from_dict(self):
        config = ReaderConfig.from_dict(
            {
                "backend": "vlm",
                "region_of_interest": {"x": 0.1, "y": 0.1, "width": 0.5, "height": 0.5},
                "languages": ["en", "de"],
            }
        )
        assert config.region_of_interest == RegionOfInterest(0.1, 0.1, 0.5, 0.5)
        assert config.languages == ("en", "de")

    @pytest.mark.parametrize(
        "roi",
        [[0.1, 0.1, 0.5, 0.5], "0.1,0.1,0.5,0.5", {"x": 0.1, "left": 0.2}],
    )
    def test_from_dict_rejects_malformed_region(self, roi):
        with pytest.raises(ConfigError):
            ReaderConfig.from_dict({"region_of_interest": roi})

    def test_zero_request_interval_allowed(self):
        assert ReaderConfig(backend="vlm", request_interval=0.0).profile.request_interval == 0.0

    def test_from_dict_rejects_unknown_keys(self):
        with pytest.raises(ConfigError, match="threshhold"):
            ReaderConfig.from_dict({"threshhold": 0.5})


class TestLoadConfig:
    def test_load(self, tmp_path):
        path = tmp_path / "reader.json"
        path.write_text(json.dumps({"backend": "remote", "confidence_threshold": 0.8}))
        config = load_config(str(path))
        assert config.backend == "remote"
        assert config.confidence_threshold == 0.8

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError):
            load_config(str(tmp_path / "missing.json"))

    def test_bad_json(self, tmp_path):
        path = tmp_path / "reader.json"
        path.write_text("{backend: remote")
        with pytest.raises(ConfigError):
            load_config(str(path))

    def test_not_an_object(self, tmp_path):
        path = tmp_path / "reader.json"
        path.write_text("[1, 2]")
        with pytest.raises(ConfigError):
            load_config(str(path))
