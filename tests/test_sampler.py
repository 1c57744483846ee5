"""
Unit tests for FrameSampler, channel combinations and ROI locators.
Run with:  pytest tests/test_sampler.py
"""

from __future__ import annotations

import numpy as np
import pytest

from heartlens.roi import CenterRoiLocator, FaceRoiLocator, FingerRoiLocator
from heartlens.sampler import CombinationConfig, FrameSampler


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _make_bgr(r: int, g: int, b: int, h: int = 40, w: int = 40) -> np.ndarray:
    frame = np.zeros((h, w, 3), dtype=np.uint8)
    frame[:, :, 2] = r
    frame[:, :, 1] = g
    frame[:, :, 0] = b
    return frame


class _NoRoi:
    def locate(self, frame):
        return None


# ---------------------------------------------------------------------------
# CombinationConfig
# ---------------------------------------------------------------------------

class TestCombinationConfig:

    def test_parse_known_names(self):
        assert CombinationConfig.parse("chrom") is CombinationConfig.CHROM
        assert CombinationConfig.parse(" Green ") is CombinationConfig.GREEN
        assert CombinationConfig.parse(CombinationConfig.RED) is CombinationConfig.RED

    def test_unknown_name_falls_back_to_default(self):
        assert CombinationConfig.parse("infrared") is CombinationConfig.DEFAULT
        assert CombinationConfig.parse(None) is CombinationConfig.DEFAULT


# ---------------------------------------------------------------------------
# FrameSampler
# ---------------------------------------------------------------------------

class TestFrameSampler:

    def test_default_is_green_mean(self):
        sampler = FrameSampler()
        sample = sampler.sample(_make_bgr(r=200, g=120, b=50), timestamp=1.5)
        assert sample is not None
        assert sample.value == pytest.approx(120.0)
        assert sample.timestamp == 1.5

    @pytest.mark.parametrize("name, expected", [
        ("red", 90.0),
        ("green", 60.0),
        ("blue", 30.0),
        ("luminance", 0.299 * 90 + 0.587 * 60 + 0.114 * 30),
        ("chrom", 3 * 1.5 - 2 * 1.0),
        ("green_red", 1.0 - 1.5),
    ])
    def test_strategies(self, name, expected):
        sampler = FrameSampler(name)
        sample = sampler.sample(_make_bgr(r=90, g=60, b=30), timestamp=0.0)
        assert sample.value == pytest.approx(expected)

    def test_unknown_strategy_uses_default(self):
        sampler = FrameSampler("does-not-exist")
        assert sampler.combination is CombinationConfig.DEFAULT
        assert sampler.sample(_make_bgr(10, 70, 10), 0.0).value == pytest.approx(70.0)

    def test_chrom_on_black_frame_is_finite(self):
        sample = FrameSampler("chrom").sample(_make_bgr(0, 0, 0), 0.0)
        assert sample is not None
        assert sample.value == 0.0

    def test_only_roi_pixels_count(self):
        frame = _make_bgr(0, 0, 0, h=100, w=100)
        x, y, w, h = CenterRoiLocator(0.2).locate(frame)
        frame[y:y + h, x:x + w, 1] = 200
        sampler = FrameSampler(locator=CenterRoiLocator(0.2))
        assert sampler.sample(frame, 0.0).value == pytest.approx(200.0)

    def test_alpha_channel_is_dropped(self):
        frame = np.zeros((10, 10, 4), dtype=np.uint8)
        frame[:, :, 1] = 80
        frame[:, :, 3] = 255
        assert FrameSampler().sample(frame, 0.0).value == pytest.approx(80.0)

    @pytest.mark.parametrize("frame", [
        None,
        np.zeros((10, 10), dtype=np.uint8),
        np.zeros((10, 10, 5), dtype=np.uint8),
        np.zeros((0, 10, 3), dtype=np.uint8),
        "not a frame",
    ])
    def test_malformed_frames_dropped(self, frame):
        sampler = FrameSampler()
        assert sampler.sample(frame, 0.0) is None
        assert sampler.dropped == 1

    def test_missing_roi_drops_frame(self):
        sampler = FrameSampler(locator=_NoRoi())
        assert sampler.sample(_make_bgr(50, 50, 50), 0.0) is None
        assert sampler.last_roi is None
        assert sampler.dropped == 1


# ---------------------------------------------------------------------------
# ROI locators
# ---------------------------------------------------------------------------

class TestRoiLocators:

    def _make_frame(self, r, g, b, noise=0) -> np.ndarray:
        """Create a uniform-colour frame with optional noise."""
        rng = np.random.default_rng(42)
        frame = np.zeros((480, 640, 3), dtype=np.uint8)
        frame[:, :, 2] = np.clip(r + rng.integers(-noise, noise + 1, (480, 640)), 0, 255)
        frame[:, :, 1] = np.clip(g + rng.integers(-noise, noise + 1, (480, 640)), 0, 255)
        frame[:, :, 0] = np.clip(b + rng.integers(-noise, noise + 1, (480, 640)), 0, 255)
        return frame

    def test_center_square(self):
        rect = CenterRoiLocator(0.35).locate(np.zeros((480, 640, 3), dtype=np.uint8))
        assert rect == (236, 156, 168, 168)

    def test_center_rejects_bad_fraction(self):
        with pytest.raises(ValueError):
            CenterRoiLocator(0.0)

    def test_finger_dark_reddish(self):
        locator = FingerRoiLocator(brightness_threshold=100, variance_threshold=800)
        frame = self._make_frame(r=80, g=40, b=30, noise=3)
        assert locator.locate(frame) is not None

    def test_no_finger_bright_scene(self):
        frame = self._make_frame(r=200, g=180, b=160, noise=20)
        assert FingerRoiLocator().locate(frame) is None

    def test_no_finger_uniform_but_bright(self):
        frame = self._make_frame(r=150, g=140, b=130, noise=0)
        assert FingerRoiLocator(brightness_threshold=100).locate(frame) is None

    def test_face_locator_without_face(self):
        locator = FaceRoiLocator()
        assert locator.locate(self._make_frame(120, 120, 120)) is None
