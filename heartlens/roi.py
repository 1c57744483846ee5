"""
Region-of-interest locators.

A locator inspects a BGR frame and returns the ``(x, y, w, h)`` rectangle to
sample, or *None* when no usable skin region can be found.  A *None* result
means the frame produces no sample; the pipeline simply continues with the
next frame.

Three locators are provided:

* :class:`CenterRoiLocator`: a fixed square in the frame centre.
* :class:`FingerRoiLocator`: the centre square, gated on a finger covering
  the lens (dark, uniform, red-dominant patch).
* :class:`FaceRoiLocator`: forehead region above a Haar-cascade face.
"""

from __future__ import annotations

import logging
from typing import Optional, Protocol, Tuple

import cv2
import numpy as np

logger = logging.getLogger(__name__)

Rect = Tuple[int, int, int, int]  # x, y, w, h


class RoiLocator(Protocol):
    def locate(self, frame: np.ndarray) -> Optional[Rect]:
        ...


class CenterRoiLocator:
    """
    Square ROI centred in the frame.

    Parameters
    ----------
    fraction:
        Fraction of the shorter frame dimension used for the square side.
    """

    def __init__(self, fraction: float = 0.35) -> None:
        if not 0 < fraction <= 1:
            raise ValueError(f"fraction must be in (0, 1], got {fraction}")
        self.fraction = fraction

    def locate(self, frame: np.ndarray) -> Optional[Rect]:
        h, w = frame.shape[:2]
        side = int(min(w, h) * self.fraction)
        if side < 1:
            return None
        cx, cy = w // 2, h // 2
        return (cx - side // 2, cy - side // 2, side, side)


class FingerRoiLocator:
    """
    Centre ROI, accepted only while a finger covers the lens.

    When a finger covers the camera the patch becomes dark, nearly uniform
    and dominated by red tones.

    Parameters
    ----------
    brightness_threshold:
        Maximum allowed mean pixel brightness (0 – 255).
    variance_threshold:
        Maximum allowed spatial variance of the green channel.
    red_dominance:
        Minimum ratio ``mean_red / mean_green``.
    fraction:
        Size of the centre square, as for :class:`CenterRoiLocator`.
    """

    def __init__(
        self,
        brightness_threshold: float = 100.0,
        variance_threshold: float = 800.0,
        red_dominance: float = 1.05,
        fraction: float = 0.35,
    ) -> None:
        self.brightness_threshold = brightness_threshold
        self.variance_threshold = variance_threshold
        self.red_dominance = red_dominance
        self._center = CenterRoiLocator(fraction)

    def locate(self, frame: np.ndarray) -> Optional[Rect]:
        rect = self._center.locate(frame)
        if rect is None:
            return None
        x, y, rw, rh = rect
        if not self.is_finger(frame[y:y + rh, x:x + rw]):
            return None
        return rect

    def is_finger(self, patch: np.ndarray) -> bool:
        """Return *True* if the BGR *patch* looks like a finger on the lens."""
        b_ch = patch[:, :, 0].astype(np.float64)
        g_ch = patch[:, :, 1].astype(np.float64)
        r_ch = patch[:, :, 2].astype(np.float64)

        mean_r = float(r_ch.mean())
        mean_g = float(g_ch.mean())
        mean_b = float(b_ch.mean())
        brightness = (mean_r + mean_g + mean_b) / 3.0
        variance = float(g_ch.var())

        red_ratio = mean_r / (mean_g + 1e-6)

        dark_enough     = brightness < self.brightness_threshold
        uniform_enough  = variance < self.variance_threshold
        skin_tone       = red_ratio >= self.red_dominance

        return dark_enough and uniform_enough and skin_tone


class FaceRoiLocator:
    """
    Forehead ROI above the largest face found by a Haar cascade.

    The last face rectangle is reused for up to ``max_stale_frames`` frames
    when detection momentarily fails.

    Parameters
    ----------
    forehead_fraction:
        Height of the forehead strip relative to the face box.
    min_face:
        Minimum face size in pixels passed to ``detectMultiScale``.
    max_stale_frames:
        How many consecutive missed detections may reuse the previous face.
    cascade_path:
        Path to a Haar cascade XML file.  Defaults to OpenCV's bundled
        frontal-face cascade.
    """

    def __init__(
        self,
        forehead_fraction: float = 0.25,
        min_face: int = 80,
        max_stale_frames: int = 15,
        cascade_path: Optional[str] = None,
    ) -> None:
        self.forehead_fraction = forehead_fraction
        self.min_face = min_face
        self.max_stale_frames = max_stale_frames
        if cascade_path is None:
            cascade_path = cv2.data.haarcascades + "haarcascade_frontalface_default.xml"
        self._cascade = cv2.CascadeClassifier(cascade_path)
        if self._cascade.empty():
            logger.warning("Haar cascade could not be loaded from %s", cascade_path)
        self._last_face: Optional[Rect] = None
        self._stale = 0

    def locate(self, frame: np.ndarray) -> Optional[Rect]:
        face = self._detect(frame)
        if face is None:
            self._stale += 1
            if self._last_face is None or self._stale > self.max_stale_frames:
                return None
            face = self._last_face
        else:
            self._stale = 0
            self._last_face = face

        fx, fy, fw, fh = face
        h, w = frame.shape[:2]
        roi_x = max(0, fx + fw // 6)
        roi_y = max(0, fy)
        roi_w = min(fw - fw // 3, w - roi_x)
        roi_h = min(int(fh * self.forehead_fraction), h - roi_y)
        if roi_w <= 5 or roi_h <= 5:
            return None
        return (roi_x, roi_y, roi_w, roi_h)

    def reset(self) -> None:
        self._last_face = None
        self._stale = 0

    def _detect(self, frame: np.ndarray) -> Optional[Rect]:
        if self._cascade.empty():
            return None
        gray = cv2.cvtColor(frame.astype(np.uint8), cv2.COLOR_BGR2GRAY)
        faces = self._cascade.detectMultiScale(
            gray, 1.3, 5, minSize=(self.min_face, self.min_face)
        )
        if len(faces) == 0:
            return None
        # Largest face wins
        areas = [fw * fh for (_, _, fw, fh) in faces]
        fx, fy, fw, fh = faces[int(np.argmax(areas))]
        return (int(fx), int(fy), int(fw), int(fh))
