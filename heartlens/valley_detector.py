"""
Streaming pulse-onset (valley) detector.

A two-state machine over the detrended waveform.  A valley candidate is the
sample at which the signal stops falling and starts rising.  Candidates
closer than the refractory interval to the previous accepted valley are
discarded as noise, which bounds the highest detectable heart rate
(240 bpm → 250 ms).
"""

from __future__ import annotations

import enum
import logging
from collections import deque
from typing import Deque, List, Optional, Tuple

from heartlens.records import Valley

logger = logging.getLogger(__name__)


class SlopeState(enum.Enum):
    DESCENDING = "descending"
    ASCENDING = "ascending"


class ValleyDetector:
    """
    Parameters
    ----------
    refractory_seconds:
        Minimum spacing between two accepted valleys.
    history:
        Number of accepted valleys kept; older ones are evicted.
    """

    def __init__(self, refractory_seconds: float = 0.25, history: int = 20) -> None:
        if refractory_seconds <= 0:
            raise ValueError("refractory_seconds must be positive")
        self.refractory_seconds = refractory_seconds
        self._valleys: Deque[Valley] = deque(maxlen=history)
        self._state = SlopeState.ASCENDING
        self._prev: Optional[Tuple[float, float]] = None
        self.rejected = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def update(self, timestamp: float, value: float) -> Optional[Valley]:
        """
        Feed one detrended sample; return the newly accepted valley, if any.

        Samples must arrive in increasing timestamp order; out-of-order or
        repeated timestamps are ignored.
        """
        prev = self._prev
        if prev is not None and timestamp <= prev[0]:
            return None
        self._prev = (timestamp, value)
        if prev is None:
            return None

        prev_ts, prev_value = prev
        if value < prev_value:
            self._state = SlopeState.DESCENDING
            return None
        if value == prev_value:
            # Flat run: keep the current state
            return None

        turned = self._state is SlopeState.DESCENDING
        self._state = SlopeState.ASCENDING
        if not turned:
            return None
        return self._consider(Valley(timestamp=prev_ts, value=prev_value))

    @property
    def state(self) -> SlopeState:
        return self._state

    @property
    def valleys(self) -> Tuple[Valley, ...]:
        """Accepted valleys, oldest first."""
        return tuple(self._valleys)

    @property
    def last_valley(self) -> Optional[Valley]:
        return self._valleys[-1] if self._valleys else None

    def intervals_ms(self) -> List[float]:
        """Valley-to-valley intervals in milliseconds, oldest first."""
        v = self._valleys
        return [(v[i].timestamp - v[i - 1].timestamp) * 1000.0 for i in range(1, len(v))]

    def reset(self) -> None:
        self._valleys.clear()
        self._state = SlopeState.ASCENDING
        self._prev = None
        self.rejected = 0

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _consider(self, candidate: Valley) -> Optional[Valley]:
        last = self.last_valley
        if last is not None and candidate.timestamp - last.timestamp < self.refractory_seconds:
            self.rejected += 1
            logger.debug(
                "Valley at %.3f s rejected (%.0f ms after previous).",
                candidate.timestamp, (candidate.timestamp - last.timestamp) * 1000.0,
            )
            return None
        self._valleys.append(candidate)
        return candidate
