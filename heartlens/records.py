"""
Value types shared by every stage of the pipeline.

All types are immutable.  Estimates use ``None`` for "unset" so that an
absent measurement is never confused with a measured zero.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Optional, Tuple


@dataclass(frozen=True)
class Sample:
    """One scalar reduction of a video frame."""

    timestamp: float  # seconds, monotonic
    value: float


@dataclass(frozen=True)
class Valley:
    """A local minimum of the detrended waveform marking a beat onset."""

    timestamp: float
    value: float


@dataclass(frozen=True)
class HeartRateEstimate:
    bpm: Optional[float] = None
    confidence: float = 0.0

    @property
    def is_set(self) -> bool:
        return self.bpm is not None


@dataclass(frozen=True)
class HRVEstimate:
    sdnn_ms: Optional[float] = None
    confidence: float = 0.0

    @property
    def is_set(self) -> bool:
        return self.sdnn_ms is not None


class QualityLabel(str, enum.Enum):
    """Signal-quality classes, in the classifier's output order."""

    BAD = "bad"
    ACCEPTABLE = "acceptable"
    EXCELLENT = "excellent"


QUALITY_LABELS: Tuple[QualityLabel, ...] = (
    QualityLabel.BAD,
    QualityLabel.ACCEPTABLE,
    QualityLabel.EXCELLENT,
)


@dataclass(frozen=True)
class QualityResult:
    label: Optional[QualityLabel] = None
    confidence: float = 0.0

    @property
    def is_set(self) -> bool:
        return self.label is not None


@dataclass(frozen=True)
class VitalsReport:
    """
    Everything a display needs for one refresh.

    ``raw_window`` holds the most recent raw sample values (with their
    ``raw_timestamps``) and ``valleys`` the accepted valley marks, oldest
    first.
    """

    heart_rate: HeartRateEstimate = field(default_factory=HeartRateEstimate)
    hrv: HRVEstimate = field(default_factory=HRVEstimate)
    quality: QualityResult = field(default_factory=QualityResult)
    raw_window: Tuple[float, ...] = ()
    raw_timestamps: Tuple[float, ...] = ()
    valleys: Tuple[Valley, ...] = ()
    session_id: int = 0
