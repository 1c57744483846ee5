"""
Streaming vitals pipeline.

One :class:`VitalsPipeline` object owns a recording session::

    frames ─► FrameSampler ─► SignalBuffer ─┬─► Detrender ─► ValleyDetector ─► VitalsEstimator
                                            └─► QualityFeatureExtractor ─► QualityClassifier

Every new sample advances both branches.  Both work on immutable snapshots
taken from the buffer.  The valley detector is fed the detrended value that
lags the newest sample by half the drift window, so each value it sees was
computed with its full centred neighbourhood.

Usage::

    pipeline = VitalsPipeline(PipelineConfig(combination="chrom"), quality_model=model)
    unsubscribe = pipeline.subscribe(print)
    for frame in camera.frames():
        pipeline.on_frame(frame, time.monotonic())
"""

from __future__ import annotations

import logging
import math
import time
from typing import Callable, List, Optional

import numpy as np

from heartlens.buffer import SignalBuffer
from heartlens.config import PipelineConfig
from heartlens.detrend import Detrender
from heartlens.persistence import RecordStore, SaveOutcome, SessionRecord
from heartlens.quality import QualityClassifier, QualityModel, QualityWorker
from heartlens.records import (
    HeartRateEstimate,
    HRVEstimate,
    QualityResult,
    Sample,
    Valley,
    VitalsReport,
)
from heartlens.roi import RoiLocator
from heartlens.sampler import CombinationConfig, FrameSampler
from heartlens.valley_detector import ValleyDetector
from heartlens.vitals import VitalsEstimator

logger = logging.getLogger(__name__)

Subscriber = Callable[[VitalsReport], None]


class VitalsPipeline:
    """
    Parameters
    ----------
    config:
        Session settings; defaults to :class:`PipelineConfig()`.
    quality_model:
        Injected inference capability (``classify(features) -> probs[3]``).
        Without one, quality stays unset.
    locator:
        ROI locator handed to the frame sampler.
    asynchronous_quality:
        Run quality inference on a background thread.
    """

    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        quality_model: Optional[QualityModel] = None,
        locator: Optional[RoiLocator] = None,
        asynchronous_quality: bool = False,
    ) -> None:
        self.config = config if config is not None else PipelineConfig()
        cfg = self.config

        self.locator = locator
        self.sampler = FrameSampler(cfg.combination, locator)
        self.buffer = SignalBuffer(cfg.buffer_capacity)
        self.detrender = Detrender(
            fs=cfg.fs,
            drift_window_seconds=cfg.drift_window_seconds,
            smoothing_cutoff_hz=cfg.smoothing_cutoff_hz,
        )
        self.detector = ValleyDetector(cfg.refractory_seconds, cfg.valley_history)
        self.estimator = VitalsEstimator(
            count=cfg.interval_count,
            min_bpm=cfg.min_bpm,
            max_bpm=cfg.max_bpm,
            cv_threshold=cfg.cv_threshold,
        )
        self.classifier = QualityClassifier(quality_model, cfg.fs, cfg.quality_min_samples)
        self.worker = QualityWorker(self.classifier, asynchronous=asynchronous_quality)

        self._subscribers: List[Subscriber] = []
        self._session_id = 0
        self._since_quality = cfg.quality_stride
        self._waveform: np.ndarray = np.zeros(0)
        self._saving = False
        self.frames_skipped = 0

    # ------------------------------------------------------------------
    # Input
    # ------------------------------------------------------------------

    def on_frame(self, frame: Optional[np.ndarray], timestamp: Optional[float] = None) -> Optional[VitalsReport]:
        """
        Reduce *frame* to a sample and process it.

        *None* (no frame available) and unusable frames are skipped; the
        return value is then *None*.
        """
        if frame is None:
            self.frames_skipped += 1
            logger.debug("No frame available – sample skipped.")
            return None
        if timestamp is None:
            timestamp = time.monotonic()
        sample = self.sampler.sample(frame, timestamp)
        if sample is None:
            self.frames_skipped += 1
            return None
        return self.on_sample(sample)

    def on_sample(self, sample: Sample) -> Optional[VitalsReport]:
        """Append *sample*, update both branches and notify subscribers."""
        if not (math.isfinite(sample.value) and math.isfinite(sample.timestamp)):
            logger.debug("Non-finite sample dropped: %r", sample)
            return None
        last = self.buffer.last
        if last is not None and sample.timestamp <= last.timestamp:
            logger.debug("Out-of-order sample at %.3f s dropped.", sample.timestamp)
            return None

        self.buffer.append(sample)
        self._update_vitals()
        self._update_quality()

        report = self.report()
        self._publish(report)
        return report

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def heart_rate(self) -> HeartRateEstimate:
        return self.estimator.heart_rate

    @property
    def hrv(self) -> HRVEstimate:
        return self.estimator.hrv

    @property
    def quality(self) -> QualityResult:
        return self.classifier.result

    @property
    def valleys(self) -> tuple[Valley, ...]:
        return self.detector.valleys

    @property
    def waveform(self) -> np.ndarray:
        """Latest detrended analysis window (for plotting)."""
        return self._waveform

    @property
    def combination(self) -> CombinationConfig:
        return self.sampler.combination

    @property
    def session_id(self) -> int:
        return self._session_id

    def report(self) -> VitalsReport:
        window = self.buffer.window()
        return VitalsReport(
            heart_rate=self.heart_rate,
            hrv=self.hrv,
            quality=self.quality,
            raw_window=tuple(s.value for s in window),
            raw_timestamps=tuple(s.timestamp for s in window),
            valleys=self.valleys,
            session_id=self._session_id,
        )

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Call *callback* with every new report; returns an unsubscribe function."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def start_session(self, combination: "str | CombinationConfig | None" = None) -> None:
        """Begin a fresh session, optionally switching channel combination."""
        if combination is not None:
            self.config = self.config.with_combination(CombinationConfig.parse(combination).value)
            self.sampler = FrameSampler(self.config.combination, self.locator)
        self.reset()
        logger.info(
            "Session %d started (combination=%s).",
            self._session_id, self.sampler.combination.value,
        )

    def reset(self) -> None:
        """Discard all session state; in-flight quality results become stale."""
        self.buffer.reset()
        self.detector.reset()
        self.estimator.reset()
        self.classifier.reset()
        self._session_id += 1
        self._since_quality = self.config.quality_stride
        self._waveform = np.zeros(0)
        self.frames_skipped = 0
        self.sampler.dropped = 0
        reset_locator = getattr(self.locator, "reset", None)
        if callable(reset_locator):
            reset_locator()

    def close(self) -> None:
        self.worker.close()

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    def build_record(self, subject_id: str) -> Optional[SessionRecord]:
        """Finalised record of the session, or *None* if nothing to save."""
        subject_id = (subject_id or "").strip()
        if not subject_id or len(self.buffer) == 0:
            return None
        return SessionRecord(
            subject_id=subject_id,
            heart_rate=self.heart_rate,
            hrv=self.hrv,
            raw_signal=tuple(s.value for s in self.buffer.window()),
        )

    def save_session(self, subject_id: str, store: RecordStore) -> SaveOutcome:
        """Persist the session; failures are reported, never raised."""
        if self._saving:
            return SaveOutcome(False, "Save already in progress")
        if not (subject_id or "").strip():
            return SaveOutcome(False, "Missing subjectId")
        record = self.build_record(subject_id)
        if record is None:
            return SaveOutcome(False, "No data to save")

        self._saving = True
        try:
            return store.save(record)
        except Exception as exc:  # noqa: BLE001 – storage must not affect the session
            logger.error("Saving session for %s failed: %s", subject_id, exc)
            return SaveOutcome(False, str(exc))
        finally:
            self._saving = False

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _update_vitals(self) -> None:
        lag = self.config.detector_lag
        window = self.buffer.window(self.config.analysis_window)
        # The fed sample needs `lag` neighbours on both sides
        if len(window) < 2 * lag + 1:
            return
        detrended = self.detrender([s.value for s in window])
        self._waveform = detrended

        idx = len(window) - 1 - lag
        valley = self.detector.update(window[idx].timestamp, float(detrended[idx]))
        if valley is not None:
            self.estimator.update(self.detector.intervals_ms())

    def _update_quality(self) -> None:
        cfg = self.config
        self._since_quality += 1
        if (
            self.classifier.available
            and len(self.buffer) >= cfg.quality_min_samples
            and self._since_quality >= cfg.quality_stride
        ):
            if self.worker.submit(self.buffer.values(cfg.quality_window), self._session_id):
                self._since_quality = 0
        self.classifier.accept(self.worker.poll(self._session_id))

    def _publish(self, report: VitalsReport) -> None:
        for callback in list(self._subscribers):
            try:
                callback(report)
            except Exception:  # noqa: BLE001
                logger.exception("Report subscriber %r failed.", callback)
