"""
End-to-end tests for VitalsPipeline and the overlay visualiser.
Run with:  pytest tests/test_pipeline.py
"""

from __future__ import annotations

import threading

import numpy as np
import pytest

from heartlens.config import PipelineConfig
from heartlens.persistence import MemoryRecordStore, SaveOutcome
from heartlens.pipeline import VitalsPipeline
from heartlens.records import QualityLabel, Sample
from heartlens.sampler import CombinationConfig
from heartlens.visualizer import Visualizer


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

FS = 30.0


class StubModel:
    def __init__(self, probabilities=(0.05, 0.15, 0.8)):
        self.probabilities = probabilities
        self.calls = 0

    def classify(self, features):
        self.calls += 1
        return self.probabilities


class BlockingModel(StubModel):
    def __init__(self):
        super().__init__()
        self.release = threading.Event()

    def classify(self, features):
        self.release.wait(timeout=5)
        return super().classify(features)


class BrokenStore:
    def save(self, record):
        raise ConnectionError("database unreachable")


def _pulse(n: int, hz: float = 1.2, fs: float = FS):
    t = np.arange(n) / fs
    return t, 100.0 + 0.02 * t + np.sin(2 * np.pi * hz * t)


def _feed(pipeline: VitalsPipeline, n: int, hz: float = 1.2):
    t, x = _pulse(n, hz)
    for ts, v in zip(t, x):
        pipeline.on_sample(Sample(float(ts), float(v)))
    return t


def _green_frame(value: float) -> np.ndarray:
    frame = np.full((48, 64, 3), 80.0)
    frame[:, :, 1] = value
    return frame


# ---------------------------------------------------------------------------
# Estimation
# ---------------------------------------------------------------------------

class TestVitalsPipeline:

    def test_recovers_heart_rate(self):
        pipeline = VitalsPipeline()
        _feed(pipeline, 600, hz=1.2)
        hr = pipeline.heart_rate
        assert hr.is_set
        assert hr.bpm == pytest.approx(72.0, abs=3.0)
        assert hr.confidence > 80.0
        assert pipeline.hrv.is_set
        assert pipeline.hrv.sdnn_ms < 30.0

    def test_valleys_respect_refractory(self):
        pipeline = VitalsPipeline()
        _feed(pipeline, 600, hz=1.5)
        stamps = np.diff([v.timestamp for v in pipeline.valleys])
        assert len(stamps) > 5
        assert np.all(stamps >= pipeline.config.refractory_seconds)

    def test_frames_drive_the_pipeline(self):
        pipeline = VitalsPipeline()
        t, x = _pulse(600)
        for ts, v in zip(t, x):
            pipeline.on_frame(_green_frame(v), float(ts))
        assert pipeline.heart_rate.bpm == pytest.approx(72.0, abs=3.0)
        assert len(pipeline.buffer) == pipeline.config.buffer_capacity

    def test_no_frame_is_skipped(self):
        pipeline = VitalsPipeline()
        assert pipeline.on_frame(None, 0.0) is None
        assert pipeline.on_frame(np.zeros((4, 4)), 0.1) is None
        assert pipeline.frames_skipped == 2
        assert len(pipeline.buffer) == 0

    def test_out_of_order_and_non_finite_samples_dropped(self):
        pipeline = VitalsPipeline()
        assert pipeline.on_sample(Sample(1.0, 5.0)) is not None
        assert pipeline.on_sample(Sample(0.5, 5.0)) is None
        assert pipeline.on_sample(Sample(2.0, float("nan"))) is None
        assert len(pipeline.buffer) == 1

    def test_report_contents(self):
        pipeline = VitalsPipeline()
        _feed(pipeline, 60)
        report = pipeline.report()
        assert len(report.raw_window) == 60
        assert len(report.raw_timestamps) == 60
        assert report.session_id == pipeline.session_id
        assert pipeline.waveform.size == 60

    def test_reset_starts_fresh_session(self):
        pipeline = VitalsPipeline()
        _feed(pipeline, 300)
        previous = pipeline.session_id
        pipeline.reset()
        report = pipeline.on_sample(Sample(100.0, 1.0))
        assert pipeline.session_id == previous + 1
        assert len(report.raw_window) == 1
        assert report.valleys == ()
        assert not report.heart_rate.is_set
        assert not report.hrv.is_set
        assert not report.quality.is_set

    def test_start_session_switches_combination(self):
        pipeline = VitalsPipeline()
        pipeline.start_session("chrom")
        assert pipeline.combination is CombinationConfig.CHROM
        assert pipeline.config.combination == "chrom"
        pipeline.start_session("unknown")
        assert pipeline.combination is CombinationConfig.DEFAULT

    def test_start_session_keeps_combination_by_default(self):
        pipeline = VitalsPipeline(PipelineConfig(combination="red"))
        pipeline.start_session()
        assert pipeline.combination is CombinationConfig.RED


# ---------------------------------------------------------------------------
# Quality branch
# ---------------------------------------------------------------------------

class TestPipelineQuality:

    def test_quality_unset_without_model(self):
        pipeline = VitalsPipeline()
        _feed(pipeline, 300)
        assert not pipeline.quality.is_set

    def test_quality_needs_minimum_window(self):
        pipeline = VitalsPipeline(quality_model=StubModel())
        t, x = _pulse(300)
        for i, (ts, v) in enumerate(zip(t, x)):
            pipeline.on_sample(Sample(float(ts), float(v)))
            if i + 1 < pipeline.config.quality_min_samples:
                assert not pipeline.quality.is_set
        assert pipeline.quality.label is QualityLabel.EXCELLENT
        assert pipeline.quality.confidence == pytest.approx(80.0)

    def test_quality_assessed_on_stride(self):
        model = StubModel()
        pipeline = VitalsPipeline(quality_model=model)
        _feed(pipeline, 130)
        # Samples 100, 115 and 130
        assert model.calls == 3

    def test_async_result_from_previous_session_discarded(self):
        model = BlockingModel()
        pipeline = VitalsPipeline(quality_model=model, asynchronous_quality=True)
        _feed(pipeline, 100)
        assert pipeline.worker.busy

        pipeline.reset()
        model.release.set()
        pipeline.close()

        pipeline.on_sample(Sample(50.0, 1.0))
        assert not pipeline.quality.is_set

    def test_async_result_adopted(self):
        model = StubModel()
        pipeline = VitalsPipeline(quality_model=model, asynchronous_quality=True)
        _feed(pipeline, 100)
        pipeline.close()
        pipeline.on_sample(Sample(100.0, 1.0))
        assert pipeline.quality.label is QualityLabel.EXCELLENT


# ---------------------------------------------------------------------------
# Subscribers
# ---------------------------------------------------------------------------

class TestSubscribers:

    def test_subscribe_and_unsubscribe(self):
        pipeline = VitalsPipeline()
        received = []
        unsubscribe = pipeline.subscribe(received.append)
        pipeline.on_sample(Sample(0.0, 1.0))
        unsubscribe()
        pipeline.on_sample(Sample(0.1, 1.0))
        assert len(received) == 1
        assert received[0].raw_window == (1.0,)
        unsubscribe()

    def test_failing_subscriber_does_not_stop_pipeline(self):
        pipeline = VitalsPipeline()
        received = []

        def explode(report):
            raise RuntimeError("display closed")

        pipeline.subscribe(explode)
        pipeline.subscribe(received.append)
        assert pipeline.on_sample(Sample(0.0, 1.0)) is not None
        assert len(received) == 1


# ---------------------------------------------------------------------------
# Saving
# ---------------------------------------------------------------------------

class TestSaveSession:

    def test_nothing_to_save(self):
        outcome = VitalsPipeline().save_session("subject-1", MemoryRecordStore())
        assert outcome == SaveOutcome(False, "No data to save")

    @pytest.mark.parametrize("subject", ["", "   ", None])
    def test_missing_subject(self, subject):
        pipeline = VitalsPipeline()
        _feed(pipeline, 30)
        outcome = pipeline.save_session(subject, MemoryRecordStore())
        assert outcome == SaveOutcome(False, "Missing subjectId")

    def test_saves_record(self):
        pipeline = VitalsPipeline()
        _feed(pipeline, 600)
        store = MemoryRecordStore()
        assert pipeline.save_session(" subject-1 ", store).success
        records = store.records("subject-1")
        assert len(records) == 1
        assert records[0].heart_rate == pipeline.heart_rate
        assert len(records[0].raw_signal) == pipeline.config.buffer_capacity

    def test_unset_estimates_are_saved_as_none(self):
        pipeline = VitalsPipeline()
        _feed(pipeline, 30)
        store = MemoryRecordStore()
        pipeline.save_session("subject-2", store)
        doc = store.records("subject-2")[0].to_document()
        assert doc["heartRate"]["bpm"] is None
        assert doc["hrv"]["sdnn"] is None

    def test_store_failure_is_reported(self):
        pipeline = VitalsPipeline()
        _feed(pipeline, 30)
        outcome = pipeline.save_session("subject-1", BrokenStore())
        assert not outcome.success
        assert "unreachable" in outcome.error
        # Session state is untouched
        assert len(pipeline.buffer) == 30


# ---------------------------------------------------------------------------
# Visualizer
# ---------------------------------------------------------------------------

class TestVisualizer:

    def test_draw_overlay(self):
        pipeline = VitalsPipeline(quality_model=StubModel())
        _feed(pipeline, 300)
        frame = np.zeros((480, 640, 3), dtype=np.uint8)
        out = Visualizer((640, 480)).draw(
            frame, pipeline.report(), roi=(10, 10, 50, 50), buffer_fill=pipeline.buffer.fill_ratio,
        )
        assert out is frame
        assert frame.any()

    def test_draw_empty_report(self):
        frame = np.zeros((240, 320, 3), dtype=np.uint8)
        Visualizer((320, 240), show_fps=False).draw(frame, VitalsPipeline().report())
        assert frame.any()
