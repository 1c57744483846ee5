"""
Drift removal for the valley detector.

Algorithm
---------
1. Subtract a centred moving average (``drift_window_seconds`` long); this
   removes illumination drift and the DC offset.
2. Smooth with a zero-phase Butterworth low-pass (``sosfiltfilt``) to
   suppress sensor noise above the highest plausible heart rate.
3. Remove the remaining mean.

Every step is zero-phase, so minima stay where they were in time.
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence

import numpy as np
from scipy.ndimage import uniform_filter1d
from scipy.signal import butter, sosfiltfilt

logger = logging.getLogger(__name__)


class Detrender:
    """
    Pure window → window transform; holds only precomputed coefficients.

    Parameters
    ----------
    fs:
        Sample rate in Hz.
    drift_window_seconds:
        Length of the centred moving average.
    smoothing_cutoff_hz:
        Low-pass cut-off; ``0`` (or a value at/above Nyquist) disables it.
    filter_order:
        Order of the Butterworth low-pass.
    """

    def __init__(
        self,
        fs: float = 30.0,
        drift_window_seconds: float = 1.5,
        smoothing_cutoff_hz: float = 4.0,
        filter_order: int = 2,
    ) -> None:
        self.fs = fs
        self.drift_window = max(1, int(round(drift_window_seconds * fs)))
        self.smoothing_cutoff_hz = smoothing_cutoff_hz
        self.filter_order = filter_order
        self._sos = self._build_filter()

    def __call__(self, values: Sequence[float]) -> np.ndarray:
        signal = np.asarray(values, dtype=np.float64).copy()
        if signal.size == 0:
            return signal

        finite = np.isfinite(signal)
        if not finite.all():
            fill = float(np.median(signal[finite])) if finite.any() else 0.0
            signal[~finite] = fill

        size = min(self.drift_window, signal.size)
        if size > 1:
            signal -= uniform_filter1d(signal, size=size, mode="nearest")

        if self._sos is not None:
            padlen = 3 * (2 * len(self._sos) + 1)
            if signal.size > padlen:
                signal = sosfiltfilt(self._sos, signal, padlen=padlen)

        return signal - signal.mean()

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _build_filter(self) -> Optional[np.ndarray]:
        """Construct the Butterworth low-pass (SOS form), or *None*."""
        nyq = self.fs / 2.0
        if self.smoothing_cutoff_hz <= 0 or self.smoothing_cutoff_hz >= nyq:
            logger.debug("Detrender smoothing disabled (cut-off %.2f Hz).",
                         self.smoothing_cutoff_hz)
            return None
        return butter(
            self.filter_order, self.smoothing_cutoff_hz / nyq,
            btype="lowpass", output="sos",
        )
