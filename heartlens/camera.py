"""
Frame source.

Wraps OpenCV ``VideoCapture`` (a webcam index or a video file) and yields
BGR frames.  When no frame is ready the source yields *None* rather than a
placeholder frame, so the pipeline can skip the tick.
"""

from __future__ import annotations

import logging
import time
from typing import Generator, Optional, Tuple, Union

import cv2
import numpy as np

from heartlens.errors import FrameSourceError

logger = logging.getLogger(__name__)


class Camera:
    """
    Parameters
    ----------
    source:
        OpenCV camera index, or the path of a recorded video.
    resolution:
        (width, height) requested from a live camera.
    fps:
        Requested frame rate of a live camera.
    flip_horizontal:
        Mirror the image left-to-right (selfie view).
    max_null_streak:
        Stop :meth:`frames` after this many consecutive missing frames.
    """

    def __init__(
        self,
        source: Union[int, str] = 0,
        resolution: Tuple[int, int] = (640, 480),
        fps: int = 30,
        flip_horizontal: bool = False,
        max_null_streak: int = 10,
    ) -> None:
        self.source = source
        self.resolution = resolution
        self.fps = fps
        self.flip_horizontal = flip_horizontal
        self.max_null_streak = max_null_streak

        self._cam: "cv2.VideoCapture | None" = None
        self._is_file = isinstance(source, str)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open(self) -> None:
        """Open the capture device or file."""
        cap = cv2.VideoCapture(self.source)
        if not cap.isOpened():
            raise FrameSourceError(f"Cannot open video source {self.source!r}")
        if not self._is_file:
            w, h = self.resolution
            cap.set(cv2.CAP_PROP_FRAME_WIDTH, w)
            cap.set(cv2.CAP_PROP_FRAME_HEIGHT, h)
            cap.set(cv2.CAP_PROP_FPS, self.fps)
        self._cam = cap
        logger.info(
            "Video source opened – source=%r resolution=%s fps=%d",
            self.source, self.resolution, self.fps,
        )

    def close(self) -> None:
        """Release the capture."""
        if self._cam is None:
            return
        self._cam.release()
        self._cam = None
        logger.info("Video source closed.")

    def __enter__(self) -> "Camera":
        self.open()
        return self

    def __exit__(self, *_) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Frame acquisition
    # ------------------------------------------------------------------

    def read_frame(self) -> Optional[np.ndarray]:
        """
        Capture a single frame.

        Returns
        -------
        numpy.ndarray
            BGR image array (H × W × 3, uint8), or *None* if no frame is
            available.
        """
        if self._cam is None:
            raise RuntimeError("Camera is not open.  Call open() first.")
        ok, frame = self._cam.read()
        if not ok or frame is None:
            logger.debug("VideoCapture.read() returned no frame.")
            return None
        if self.flip_horizontal:
            frame = cv2.flip(frame, 1)
        return frame

    def timestamp(self) -> float:
        """Time of the last frame in seconds (stream position for files)."""
        if self._is_file and self._cam is not None:
            return float(self._cam.get(cv2.CAP_PROP_POS_MSEC)) / 1000.0
        return time.monotonic()

    def frames(self) -> Generator[Optional[np.ndarray], None, None]:
        """
        Yield frames (or *None* for a missed frame) until the source closes
        or ``max_null_streak`` frames in a row are missing.

        Usage::

            with Camera() as cam:
                for frame in cam.frames():
                    pipeline.on_frame(frame, cam.timestamp())
        """
        null_streak = 0
        while self._cam is not None:
            frame = self.read_frame()
            if frame is None:
                null_streak += 1
                if null_streak >= self.max_null_streak:
                    logger.warning(
                        "Video source returned %d consecutive empty reads – stopping.",
                        null_streak,
                    )
                    break
            else:
                null_streak = 0
            yield frame
