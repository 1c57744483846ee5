"""
Heart rate and HRV from valley-to-valley intervals.

Given the most recent intervals between accepted valleys:

* intervals outside the physiological band (40 – 240 bpm, i.e.
  250 – 1500 ms) are discarded and do not count toward the K intervals used;
* BPM is the mean of the per-interval rates ``60 / interval``;
* SDNN is the population standard deviation of the retained intervals (ms);
* confidence falls linearly with the coefficient of variation (CV) of the
  retained intervals, from 100 at CV = 0 to 0 at ``cv_threshold``.

BPM needs at least two retained intervals and SDNN at least three; with
fewer the estimate stays unset.
"""

from __future__ import annotations

import logging
from typing import List, Sequence, Tuple

import numpy as np

from heartlens.records import HeartRateEstimate, HRVEstimate

logger = logging.getLogger(__name__)

MIN_BPM_INTERVALS = 2
MIN_SDNN_INTERVALS = 3


def select_intervals(
    intervals_ms: Sequence[float],
    count: int,
    min_ms: float,
    max_ms: float,
) -> List[float]:
    """Return up to *count* most recent in-band intervals, oldest first."""
    kept: List[float] = []
    for iv in reversed(intervals_ms):
        if len(kept) == count:
            break
        if np.isfinite(iv) and min_ms <= iv <= max_ms:
            kept.append(float(iv))
        else:
            logger.debug("Interval %.0f ms outside [%.0f, %.0f] – excluded.",
                         iv, min_ms, max_ms)
    kept.reverse()
    return kept


def regularity_confidence(intervals_ms: Sequence[float], cv_threshold: float) -> float:
    """Map the intervals' coefficient of variation to a 0 – 100 score."""
    if len(intervals_ms) < MIN_BPM_INTERVALS:
        return 0.0
    arr = np.asarray(intervals_ms, dtype=np.float64)
    mean = float(arr.mean())
    if mean <= 0:
        return 0.0
    cv = float(arr.std()) / mean
    return float(np.clip(100.0 * (1.0 - cv / cv_threshold), 0.0, 100.0))


def estimate_from_intervals(
    intervals_ms: Sequence[float],
    count: int = 10,
    min_ms: float = 250.0,
    max_ms: float = 1500.0,
    cv_threshold: float = 0.4,
) -> Tuple[HeartRateEstimate, HRVEstimate]:
    """
    Compute ``(heart_rate, hrv)`` from raw valley-to-valley intervals.

    Unset estimates carry zero confidence.
    """
    kept = select_intervals(intervals_ms, count, min_ms, max_ms)

    heart_rate = HeartRateEstimate()
    hrv = HRVEstimate()
    if len(kept) >= MIN_BPM_INTERVALS:
        arr = np.asarray(kept, dtype=np.float64)
        confidence = regularity_confidence(kept, cv_threshold)
        heart_rate = HeartRateEstimate(
            bpm=float(np.mean(60_000.0 / arr)), confidence=confidence
        )
        if len(kept) >= MIN_SDNN_INTERVALS:
            hrv = HRVEstimate(sdnn_ms=float(arr.std()), confidence=confidence)
    return heart_rate, hrv


class VitalsEstimator:
    """
    Holds the current heart-rate and HRV estimates for a session.

    :meth:`update` is called whenever a new valley is accepted.  An estimate
    is only replaced by a newer *set* estimate; a recomputation that lacks
    enough valid intervals keeps the previous one.  :meth:`reset` returns
    both to unset.

    Parameters
    ----------
    count:
        Number of valid intervals (K) per estimate.
    min_bpm, max_bpm:
        Physiological band used for outlier rejection.
    cv_threshold:
        Coefficient of variation at which confidence reaches zero.
    """

    def __init__(
        self,
        count: int = 10,
        min_bpm: float = 40.0,
        max_bpm: float = 240.0,
        cv_threshold: float = 0.4,
    ) -> None:
        self.count = count
        self.min_ms = 60_000.0 / max_bpm
        self.max_ms = 60_000.0 / min_bpm
        self.cv_threshold = cv_threshold

        self._heart_rate = HeartRateEstimate()
        self._hrv = HRVEstimate()

    def update(self, intervals_ms: Sequence[float]) -> Tuple[HeartRateEstimate, HRVEstimate]:
        heart_rate, hrv = estimate_from_intervals(
            intervals_ms, self.count, self.min_ms, self.max_ms, self.cv_threshold
        )
        if heart_rate.is_set:
            self._heart_rate = heart_rate
        if hrv.is_set:
            self._hrv = hrv
        return self._heart_rate, self._hrv

    @property
    def heart_rate(self) -> HeartRateEstimate:
        return self._heart_rate

    @property
    def hrv(self) -> HRVEstimate:
        return self._hrv

    def reset(self) -> None:
        self._heart_rate = HeartRateEstimate()
        self._hrv = HRVEstimate()
