"""
Rolling window of timestamped samples.

A fixed-capacity ring buffer (``collections.deque`` with ``maxlen``): the
oldest sample is evicted on overflow.  Readers never see the deque itself,
only immutable snapshots, so an append can never disturb a computation that
is already working on a window.
"""

from __future__ import annotations

from collections import deque
from typing import Deque, Optional, Tuple

import numpy as np

from heartlens.records import Sample


class SignalBuffer:
    """
    Parameters
    ----------
    capacity:
        Maximum number of samples kept.  Must cover the longest analysis
        window plus the detector look-back (600 ≈ 20 s at 30 Hz).
    """

    def __init__(self, capacity: int = 600) -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be positive, got {capacity}")
        self._samples: Deque[Sample] = deque(maxlen=capacity)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def append(self, sample: Sample) -> None:
        self._samples.append(sample)

    def window(self, n: Optional[int] = None) -> Tuple[Sample, ...]:
        """Snapshot of the last *n* samples (all samples when *n* is None)."""
        if n is None or n >= len(self._samples):
            return tuple(self._samples)
        if n <= 0:
            return ()
        return tuple(self._samples)[-n:]

    def values(self, n: Optional[int] = None) -> np.ndarray:
        """Sample values of :meth:`window` as a fresh float64 array."""
        return np.fromiter(
            (s.value for s in self.window(n)), dtype=np.float64
        )

    def reset(self) -> None:
        """Clear all samples."""
        self._samples.clear()

    @property
    def capacity(self) -> int:
        return self._samples.maxlen

    @property
    def fill_ratio(self) -> float:
        """How full the buffer is (0 – 1)."""
        return len(self._samples) / self._samples.maxlen

    @property
    def last(self) -> Optional[Sample]:
        return self._samples[-1] if self._samples else None

    def __len__(self) -> int:
        return len(self._samples)
