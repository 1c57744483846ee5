"""
Real-time overlay visualiser.

Draws the following elements onto each video frame:
  • The region-of-interest rectangle, when one was located.
  • BPM, HRV (SDNN) and signal-quality readouts with confidence bars.
  • A buffer-fill bar.
  • A waveform strip of the raw signal with valley marks.
  • Optional frame-rate counter.
"""

from __future__ import annotations

from typing import Optional, Tuple

import cv2
import numpy as np

from heartlens.records import QualityLabel, VitalsReport


# ---------------------------------------------------------------------------
# Colour palette (BGR)
# ---------------------------------------------------------------------------
_GREEN  = (0, 220,  80)
_RED    = (0,  50, 220)
_YELLOW = (0, 210, 210)
_WHITE  = (255, 255, 255)
_BLACK  = (0, 0, 0)
_CYAN   = (220, 200,  0)
_DARK   = (30, 30, 30)

_QUALITY_COLOURS = {
    QualityLabel.BAD: _RED,
    QualityLabel.ACCEPTABLE: _YELLOW,
    QualityLabel.EXCELLENT: _GREEN,
}


def _confidence_colour(confidence: float) -> Tuple[int, int, int]:
    """Green (high confidence) → yellow → red (low); *confidence* in 0 – 100."""
    if confidence >= 70:
        return _GREEN
    if confidence >= 40:
        return _YELLOW
    return _RED


class Visualizer:
    """
    Draws the vitals overlay onto OpenCV frames in-place.

    Parameters
    ----------
    resolution:
        (width, height) of the video frame.
    waveform_height:
        Pixel height of the waveform panel at the bottom of the frame.
    show_fps:
        Whether to overlay the measured FPS in the top-right corner.
    """

    def __init__(
        self,
        resolution: Tuple[int, int] = (640, 480),
        waveform_height: int = 80,
        show_fps: bool = True,
    ) -> None:
        self.w, self.h = resolution
        self.waveform_height = waveform_height
        self.show_fps = show_fps

        self._fps_tick = cv2.getTickCount()
        self._fps_display: float = 0.0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def draw(
        self,
        frame: np.ndarray,
        report: VitalsReport,
        roi: Optional[Tuple[int, int, int, int]] = None,
        buffer_fill: float = 0.0,
    ) -> np.ndarray:
        """
        Annotate *frame* in-place and return it.

        Parameters
        ----------
        frame:
            BGR frame from the camera.
        report:
            Latest pipeline report.
        roi:
            Sampled rectangle ``(x, y, w, h)``; *None* when no ROI was found.
        buffer_fill:
            How full the signal buffer is (0 – 1).
        """
        self.h, self.w = frame.shape[:2]
        self._update_fps()

        if roi is not None:
            x, y, rw, rh = roi
            cv2.rectangle(frame, (x, y), (x + rw, y + rh), _GREEN, 2)
        else:
            cv2.putText(
                frame, "No skin region found",
                (16, self.h - self.waveform_height - 24),
                cv2.FONT_HERSHEY_SIMPLEX, 0.5, _YELLOW, 1, cv2.LINE_AA,
            )

        self._draw_vitals(frame, report)
        self._draw_fill_bar(frame, buffer_fill)

        if len(report.raw_window) > 1:
            self._draw_waveform(frame, report)

        if self.show_fps:
            cv2.putText(
                frame,
                f"FPS {self._fps_display:.1f}",
                (self.w - 100, 20),
                cv2.FONT_HERSHEY_SIMPLEX, 0.45, _WHITE, 1, cv2.LINE_AA,
            )
        return frame

    # ------------------------------------------------------------------
    # Private drawing helpers
    # ------------------------------------------------------------------

    def _draw_vitals(self, frame: np.ndarray, report: VitalsReport) -> None:
        hr = report.heart_rate
        if hr.is_set:
            col = _confidence_colour(hr.confidence)
            cv2.putText(
                frame, f"{hr.bpm:.0f} BPM",
                (16, 52), cv2.FONT_HERSHEY_SIMPLEX, 1.6, _BLACK, 5, cv2.LINE_AA,
            )
            cv2.putText(
                frame, f"{hr.bpm:.0f} BPM",
                (16, 52), cv2.FONT_HERSHEY_SIMPLEX, 1.6, col, 3, cv2.LINE_AA,
            )
            self._draw_confidence_bar(frame, 60, hr.confidence, col)
        else:
            cv2.putText(
                frame, "Warming up...",
                (16, 52), cv2.FONT_HERSHEY_SIMPLEX, 0.7, _YELLOW, 2, cv2.LINE_AA,
            )

        hrv = report.hrv
        text = f"SDNN {hrv.sdnn_ms:.0f} ms" if hrv.is_set else "SDNN --"
        col = _confidence_colour(hrv.confidence) if hrv.is_set else _WHITE
        cv2.putText(
            frame, text,
            (16, 110), cv2.FONT_HERSHEY_SIMPLEX, 0.7, _BLACK, 3, cv2.LINE_AA,
        )
        cv2.putText(
            frame, text,
            (16, 110), cv2.FONT_HERSHEY_SIMPLEX, 0.7, col, 2, cv2.LINE_AA,
        )

        quality = report.quality
        if quality.is_set:
            text = f"Quality: {quality.label.value} ({quality.confidence:.0f}%)"
            col = _QUALITY_COLOURS[quality.label]
        else:
            text, col = "Quality: --", _WHITE
        cv2.putText(
            frame, text,
            (16, 136), cv2.FONT_HERSHEY_SIMPLEX, 0.5, col, 1, cv2.LINE_AA,
        )

    def _draw_confidence_bar(
        self, frame: np.ndarray, y: int, confidence: float, col: Tuple[int, int, int]
    ) -> None:
        bar_w = int(120 * min(max(confidence, 0.0), 100.0) / 100.0)
        cv2.rectangle(frame, (16, y), (136, y + 12), _DARK, -1)
        cv2.rectangle(frame, (16, y), (16 + bar_w, y + 12), col, -1)
        cv2.putText(
            frame, f"conf {confidence:.0f}%",
            (16, y + 26), cv2.FONT_HERSHEY_SIMPLEX, 0.4, _WHITE, 1, cv2.LINE_AA,
        )

    def _draw_fill_bar(self, frame: np.ndarray, fill: float) -> None:
        """Thin strip above the waveform panel showing how full the buffer is."""
        top = self.h - self.waveform_height - 10
        right = self.w - 16
        filled = 16 + int((right - 16) * float(np.clip(fill, 0.0, 1.0)))
        cv2.rectangle(frame, (16, top), (right, top + 6), _DARK, -1)
        if filled > 16:
            cv2.rectangle(frame, (16, top), (filled, top + 6), _CYAN, -1)

    def _draw_waveform(self, frame: np.ndarray, report: VitalsReport) -> None:
        """
        Raw signal in a dark strip at the bottom, valleys marked in red.

        The x axis is time, so gaps left by skipped frames stay visible.
        """
        top = self.h - self.waveform_height
        cv2.rectangle(frame, (0, top), (self.w, self.h), _DARK, -1)

        values = np.asarray(report.raw_window, dtype=np.float64)
        times = np.asarray(report.raw_timestamps, dtype=np.float64)
        if times.size != values.size or times[-1] <= times[0]:
            times = np.arange(values.size, dtype=np.float64)
        t0, span = times[0], times[-1] - times[0]

        spread = float(np.ptp(values)) or 1.0
        pad = 6
        height = self.waveform_height - 2 * pad

        def to_pixel(t: float, v: float) -> Tuple[int, int]:
            x = int(round((t - t0) / span * (self.w - 1)))
            y = int(round(top + pad + (1.0 - (v - values.min()) / spread) * height))
            return x, y

        points = np.array([to_pixel(t, v) for t, v in zip(times, values)], dtype=np.int32)
        cv2.polylines(frame, [points.reshape(-1, 1, 2)], False, _GREEN, 1, cv2.LINE_AA)

        if report.raw_timestamps:
            for valley in report.valleys:
                if report.raw_timestamps[0] <= valley.timestamp <= report.raw_timestamps[-1]:
                    i = min(int(np.searchsorted(times, valley.timestamp)), values.size - 1)
                    cv2.circle(frame, to_pixel(times[i], values[i]), 3, _RED, -1, cv2.LINE_AA)

        cv2.putText(
            frame, "raw",
            (4, top + 14), cv2.FONT_HERSHEY_SIMPLEX, 0.4, _WHITE, 1, cv2.LINE_AA,
        )

    def _update_fps(self) -> None:
        """Exponentially smoothed frame rate."""
        now = cv2.getTickCount()
        elapsed = (now - self._fps_tick) / cv2.getTickFrequency()
        self._fps_tick = now
        if elapsed <= 0:
            return
        rate = 1.0 / elapsed
        self._fps_display = rate if self._fps_display == 0.0 else 0.9 * self._fps_display + 0.1 * rate
