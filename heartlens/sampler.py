"""
Frame → sample reduction.

Each incoming BGR frame is reduced to the mean intensity of every colour
channel inside the region of interest, and the three means are combined into
one scalar by the channel-combination strategy chosen for the session.

Strategies
----------
``default``
    Green-channel mean.  Green is the channel most sensitive to haemoglobin
    absorption changes (Verkruysse et al., 2008).
``red`` / ``green`` / ``blue``
    Single-channel means.
``luminance``
    Rec. 601 luma ``0.299 R + 0.587 G + 0.114 B``.
``chrom``
    Chrominance ``3 R' − 2 G'`` over luminance-normalised channels
    ``C' = C / mean(R, G, B)`` (the X signal of de Haan & Jeanne, 2013).
``green_red``
    Normalised difference ``G' − R'``, which cancels most of the
    intensity change common to all channels.

Unknown strategy names fall back to ``default``.
"""

from __future__ import annotations

import enum
import logging
import math
from typing import Callable, Dict, Optional

import numpy as np

from heartlens.records import Sample
from heartlens.roi import CenterRoiLocator, Rect, RoiLocator

logger = logging.getLogger(__name__)


class CombinationConfig(str, enum.Enum):
    """Channel-combination strategy names."""

    DEFAULT = "default"
    RED = "red"
    GREEN = "green"
    BLUE = "blue"
    LUMINANCE = "luminance"
    CHROM = "chrom"
    GREEN_RED = "green_red"

    @classmethod
    def parse(cls, name: "str | CombinationConfig | None") -> "CombinationConfig":
        """Map *name* to a strategy, falling back to :attr:`DEFAULT`."""
        if isinstance(name, cls):
            return name
        if name is None:
            return cls.DEFAULT
        try:
            return cls(str(name).strip().lower())
        except ValueError:
            logger.warning(
                "Unknown channel combination %r – using %r.", name, cls.DEFAULT.value
            )
            return cls.DEFAULT


def _normalised(r: float, g: float, b: float) -> tuple[float, float, float]:
    level = (r + g + b) / 3.0
    if level <= 0:
        return 0.0, 0.0, 0.0
    return r / level, g / level, b / level


def _chrom(r: float, g: float, b: float) -> float:
    rn, gn, _ = _normalised(r, g, b)
    return 3.0 * rn - 2.0 * gn


def _green_red(r: float, g: float, b: float) -> float:
    rn, gn, _ = _normalised(r, g, b)
    return gn - rn


# Each strategy maps (mean_red, mean_green, mean_blue) to one scalar.
STRATEGIES: Dict[CombinationConfig, Callable[[float, float, float], float]] = {
    CombinationConfig.DEFAULT:   lambda r, g, b: g,
    CombinationConfig.RED:       lambda r, g, b: r,
    CombinationConfig.GREEN:     lambda r, g, b: g,
    CombinationConfig.BLUE:      lambda r, g, b: b,
    CombinationConfig.LUMINANCE: lambda r, g, b: 0.299 * r + 0.587 * g + 0.114 * b,
    CombinationConfig.CHROM:     _chrom,
    CombinationConfig.GREEN_RED: _green_red,
}


class FrameSampler:
    """
    Reduce one video frame to one :class:`~heartlens.records.Sample`.

    Parameters
    ----------
    combination:
        Strategy name or :class:`CombinationConfig`.  Fixed for the lifetime
        of the sampler (one recording session).
    locator:
        ROI locator; defaults to a centred square.
    """

    def __init__(
        self,
        combination: "str | CombinationConfig | None" = CombinationConfig.DEFAULT,
        locator: Optional[RoiLocator] = None,
    ) -> None:
        self.combination = CombinationConfig.parse(combination)
        self.locator: RoiLocator = locator if locator is not None else CenterRoiLocator()
        self._combine = STRATEGIES[self.combination]
        self.last_roi: Optional[Rect] = None
        self.dropped = 0

    def sample(self, frame: Optional[np.ndarray], timestamp: float) -> Optional[Sample]:
        """
        Return the sample for *frame*, or *None* if it cannot be used.

        Malformed frames and frames without a locatable ROI are dropped
        silently (counted in :attr:`dropped`).
        """
        means = self.channel_means(frame)
        if means is None:
            self.dropped += 1
            return None
        value = float(self._combine(*means))
        if not math.isfinite(value):
            self.dropped += 1
            return None
        return Sample(timestamp=float(timestamp), value=value)

    def channel_means(self, frame: Optional[np.ndarray]) -> Optional[tuple[float, float, float]]:
        """Return ``(mean_red, mean_green, mean_blue)`` over the ROI, or *None*."""
        frame = _as_bgr(frame)
        if frame is None:
            self.last_roi = None
            return None
        rect = self.locator.locate(frame)
        self.last_roi = rect
        if rect is None:
            logger.debug("ROI not found – frame dropped.")
            return None
        x, y, rw, rh = rect
        patch = frame[max(0, y):y + rh, max(0, x):x + rw]
        if patch.size == 0:
            return None
        # BGR channel order
        b_mean, g_mean, r_mean = (float(v) for v in patch.reshape(-1, 3).mean(axis=0))
        if not all(math.isfinite(v) for v in (r_mean, g_mean, b_mean)):
            return None
        return r_mean, g_mean, b_mean


def _as_bgr(frame: object) -> Optional[np.ndarray]:
    """Validate *frame* as an H × W × 3 image (alpha dropped), else *None*."""
    if not isinstance(frame, np.ndarray):
        return None
    if frame.ndim != 3 or frame.shape[0] == 0 or frame.shape[1] == 0:
        return None
    if frame.shape[2] == 4:
        frame = frame[:, :, :3]
    elif frame.shape[2] != 3:
        return None
    if not (np.issubdtype(frame.dtype, np.integer) or np.issubdtype(frame.dtype, np.floating)):
        return None
    return frame
