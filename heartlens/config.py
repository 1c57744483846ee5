"""
Pipeline configuration.

Every tunable of the estimation pipeline lives on :class:`PipelineConfig`.
The defaults target a 30 fps camera; ``main.py`` maps its command-line
options onto this dataclass.
"""

from __future__ import annotations

from dataclasses import dataclass, replace


# Minimum number of raw samples before quality is assessed.
QUALITY_MIN_SAMPLES = 100


@dataclass(frozen=True)
class PipelineConfig:
    """
    Immutable settings for one recording session.

    Parameters
    ----------
    fs:
        Nominal sample rate in Hz (one sample per frame).
    buffer_capacity:
        Capacity of the rolling :class:`~heartlens.buffer.SignalBuffer`.
        600 samples ≈ 20 s at 30 Hz.
    analysis_window:
        Number of most recent samples detrended on every tick for valley
        detection.
    drift_window_seconds:
        Length of the centred moving average removed by the detrender.
    smoothing_cutoff_hz:
        Cut-off of the zero-phase low-pass applied after drift removal.
        ``0`` disables smoothing.
    min_bpm, max_bpm:
        Physiological band.  ``max_bpm`` also fixes the refractory interval
        between accepted valleys.
    valley_history:
        Number of accepted valleys remembered by the detector.
    interval_count:
        Number of valid valley-to-valley intervals (K) used per estimate.
    cv_threshold:
        Coefficient of variation at which confidence reaches zero.
    quality_window:
        Number of most recent raw samples handed to the quality classifier.
    quality_min_samples:
        Minimum window length before quality is assessed.
    quality_stride:
        Assess quality every ``quality_stride`` samples.
    combination:
        Channel-combination strategy name (see :mod:`heartlens.sampler`).
    """

    fs: float = 30.0
    buffer_capacity: int = 600
    analysis_window: int = 150
    drift_window_seconds: float = 1.5
    smoothing_cutoff_hz: float = 4.0
    min_bpm: float = 40.0
    max_bpm: float = 240.0
    valley_history: int = 20
    interval_count: int = 10
    cv_threshold: float = 0.4
    quality_window: int = 300
    quality_min_samples: int = QUALITY_MIN_SAMPLES
    quality_stride: int = 15
    combination: str = "default"

    def __post_init__(self) -> None:
        if self.fs <= 0:
            raise ValueError(f"fs must be positive, got {self.fs}")
        if not 0 < self.min_bpm < self.max_bpm:
            raise ValueError(
                f"invalid BPM band [{self.min_bpm}, {self.max_bpm}]"
            )
        if self.quality_min_samples < 1:
            raise ValueError("quality_min_samples must be at least 1")
        if self.quality_window < self.quality_min_samples:
            raise ValueError(
                "quality_window must be at least quality_min_samples "
                f"({self.quality_window} < {self.quality_min_samples})"
            )
        if self.buffer_capacity < max(self.quality_window, self.analysis_window):
            raise ValueError(
                "buffer_capacity must cover both the quality window and the "
                f"analysis window (got {self.buffer_capacity})"
            )
        if self.analysis_window < 3:
            raise ValueError("analysis_window must be at least 3 samples")
        if 2 * self.detector_lag + 1 > self.analysis_window:
            raise ValueError(
                "analysis_window must be longer than the drift window"
            )
        if self.interval_count < 2:
            raise ValueError("interval_count must be at least 2")
        if self.valley_history < self.interval_count + 1:
            raise ValueError(
                "valley_history must hold interval_count + 1 valleys"
            )
        if self.cv_threshold <= 0:
            raise ValueError("cv_threshold must be positive")
        if self.quality_stride < 1:
            raise ValueError("quality_stride must be at least 1")

    @property
    def refractory_seconds(self) -> float:
        """Minimum spacing between valleys (240 bpm → 0.25 s)."""
        return 60.0 / self.max_bpm

    @property
    def min_interval_ms(self) -> float:
        return 60_000.0 / self.max_bpm

    @property
    def max_interval_ms(self) -> float:
        return 60_000.0 / self.min_bpm

    @property
    def detector_lag(self) -> int:
        """Samples between the newest sample and the one fed to the detector."""
        return int(round(self.drift_window_seconds * self.fs)) // 2

    def with_combination(self, combination: str) -> "PipelineConfig":
        return replace(self, combination=combination)
