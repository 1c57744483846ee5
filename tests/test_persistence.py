"""
Unit tests for subject records and the record stores.
Run with:  pytest tests/test_persistence.py
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from pymongo import DESCENDING
from pymongo.errors import PyMongoError

from heartlens.persistence import (
    MemoryRecordStore,
    MongoRecordStore,
    SaveOutcome,
    SessionRecord,
    SubjectAverages,
)
from heartlens.records import HeartRateEstimate, HRVEstimate


def _record(subject="subject-1", bpm=72.0, sdnn=40.0, minutes=0):
    return SessionRecord(
        subject_id=subject,
        heart_rate=HeartRateEstimate(bpm=bpm, confidence=90.0 if bpm is not None else 0.0),
        hrv=HRVEstimate(sdnn_ms=sdnn, confidence=80.0 if sdnn is not None else 0.0),
        raw_signal=[1.0, 2.0, 3.0],
        timestamp=datetime(2024, 1, 1, tzinfo=timezone.utc) + timedelta(minutes=minutes),
    )


# ---------------------------------------------------------------------------
# SessionRecord
# ---------------------------------------------------------------------------

class TestSessionRecord:

    def test_document_layout(self):
        doc = _record().to_document()
        assert doc["subjectId"] == "subject-1"
        assert doc["heartRate"] == {"bpm": 72.0, "confidence": 90.0}
        assert doc["hrv"] == {"sdnn": 40.0, "confidence": 80.0}
        assert doc["rawSignal"] == [1.0, 2.0, 3.0]
        assert isinstance(doc["timestamp"], datetime)

    def test_document_round_trip(self):
        record = _record(bpm=None, sdnn=None)
        restored = SessionRecord.from_document(record.to_document())
        assert restored.heart_rate == record.heart_rate
        assert restored.hrv == record.hrv
        assert tuple(restored.raw_signal) == (1.0, 2.0, 3.0)

    def test_default_timestamp_is_utc(self):
        record = SessionRecord("s", HeartRateEstimate(), HRVEstimate(), [])
        assert record.timestamp.tzinfo is timezone.utc


# ---------------------------------------------------------------------------
# MemoryRecordStore
# ---------------------------------------------------------------------------

class TestMemoryRecordStore:

    def test_no_history_is_none(self):
        store = MemoryRecordStore()
        assert store.average_vitals("nobody") is None
        assert store.last_access("nobody") is None

    def test_average_of_zero_is_not_no_data(self):
        store = MemoryRecordStore()
        store.save(_record(bpm=0.0, sdnn=0.0))
        averages = store.average_vitals("subject-1")
        assert averages == SubjectAverages(bpm=0.0, sdnn_ms=0.0, count=1)

    def test_averages_skip_unset_estimates(self):
        store = MemoryRecordStore()
        store.save(_record(bpm=60.0, sdnn=None))
        store.save(_record(bpm=None, sdnn=None))
        store.save(_record(bpm=80.0, sdnn=30.0))
        store.save(_record(subject="other", bpm=120.0))
        averages = store.average_vitals("subject-1")
        assert averages.bpm == pytest.approx(70.0)
        assert averages.sdnn_ms == pytest.approx(30.0)
        assert averages.count == 3

    def test_last_access_is_most_recent(self):
        store = MemoryRecordStore()
        store.save(_record(minutes=5))
        store.save(_record(minutes=30))
        store.save(_record(minutes=10))
        assert store.last_access(" subject-1 ") == datetime(2024, 1, 1, 0, 30, tzinfo=timezone.utc)

    def test_blank_subject_rejected(self):
        store = MemoryRecordStore()
        assert store.save(_record(subject="  ")) == SaveOutcome(False, "Missing subjectId")
        assert store.average_vitals("") is None


# ---------------------------------------------------------------------------
# MongoRecordStore
# ---------------------------------------------------------------------------

class TestMongoRecordStore:

    def test_creates_index(self):
        collection = MagicMock()
        MongoRecordStore(collection)
        collection.create_index.assert_called_once()

    def test_index_failure_is_logged_not_raised(self):
        collection = MagicMock()
        collection.create_index.side_effect = PyMongoError("no permission")
        MongoRecordStore(collection)

    def test_save_inserts_document(self):
        collection = MagicMock()
        record = _record()
        assert MongoRecordStore(collection).save(record) == SaveOutcome(True)
        collection.insert_one.assert_called_once_with(record.to_document())

    def test_save_failure(self):
        collection = MagicMock()
        collection.insert_one.side_effect = PyMongoError("connection refused")
        outcome = MongoRecordStore(collection).save(_record())
        assert not outcome.success
        assert "connection refused" in outcome.error

    def test_average_without_records_is_none(self):
        collection = MagicMock()
        collection.aggregate.return_value = iter([])
        assert MongoRecordStore(collection).average_vitals("subject-1") is None

    def test_average_row(self):
        collection = MagicMock()
        collection.aggregate.return_value = iter(
            [{"_id": None, "avgHeartRate": 71.5, "avgHRV": None, "count": 4}]
        )
        averages = MongoRecordStore(collection).average_vitals("subject-1")
        assert averages == SubjectAverages(bpm=71.5, sdnn_ms=None, count=4)
        pipeline = collection.aggregate.call_args[0][0]
        assert pipeline[0] == {"$match": {"subjectId": "subject-1"}}

    def test_average_query_failure_is_none(self):
        collection = MagicMock()
        collection.aggregate.side_effect = PyMongoError("timeout")
        assert MongoRecordStore(collection).average_vitals("subject-1") is None

    def test_last_access(self):
        collection = MagicMock()
        stamp = datetime(2024, 3, 1, tzinfo=timezone.utc)
        collection.find_one.return_value = {"timestamp": stamp}
        store = MongoRecordStore(collection)
        assert store.last_access("subject-1") == stamp
        _, kwargs = collection.find_one.call_args
        assert kwargs["sort"] == [("timestamp", DESCENDING)]

    def test_last_access_without_records(self):
        collection = MagicMock()
        collection.find_one.return_value = None
        assert MongoRecordStore(collection).last_access("subject-1") is None

    def test_from_uri_requires_uri(self, monkeypatch):
        monkeypatch.delenv("MONGODB_URI", raising=False)
        with pytest.raises(ValueError):
            MongoRecordStore.from_uri()
