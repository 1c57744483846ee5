"""
Subject records.

A finished session is stored as one record::

    {
        "subjectId": str,
        "heartRate": {"bpm": float | None, "confidence": float},
        "hrv": {"sdnn": float | None, "confidence": float},
        "rawSignal": [float, ...],
        "timestamp": datetime,
    }

Two read queries are supported per subject: the average BPM/SDNN across all
records, and the timestamp of the most recent record.  Both return *None*
("no data") when the subject has no records, so that an absent history is
never mistaken for an average of zero.  Unset estimates are stored as
``None`` and left out of the averages.

Storage failures never reach the estimation pipeline: writes report a
:class:`SaveOutcome`, reads log the failure and return *None*.
"""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol, Sequence

from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.errors import PyMongoError

from heartlens.records import HeartRateEstimate, HRVEstimate

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionRecord:
    subject_id: str
    heart_rate: HeartRateEstimate
    hrv: HRVEstimate
    raw_signal: Sequence[float]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_document(self) -> Dict[str, Any]:
        return {
            "subjectId": self.subject_id,
            "heartRate": {
                "bpm": self.heart_rate.bpm,
                "confidence": self.heart_rate.confidence,
            },
            "hrv": {
                "sdnn": self.hrv.sdnn_ms,
                "confidence": self.hrv.confidence,
            },
            "rawSignal": [float(v) for v in self.raw_signal],
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "SessionRecord":
        heart_rate = doc.get("heartRate") or {}
        hrv = doc.get("hrv") or {}
        return cls(
            subject_id=doc["subjectId"],
            heart_rate=HeartRateEstimate(
                bpm=heart_rate.get("bpm"), confidence=heart_rate.get("confidence", 0.0)
            ),
            hrv=HRVEstimate(
                sdnn_ms=hrv.get("sdnn"), confidence=hrv.get("confidence", 0.0)
            ),
            raw_signal=tuple(doc.get("rawSignal", ())),
            timestamp=doc["timestamp"],
        )


@dataclass(frozen=True)
class SaveOutcome:
    success: bool
    error: Optional[str] = None


@dataclass(frozen=True)
class SubjectAverages:
    """Mean BPM and SDNN over a subject's records (*None* if never measured)."""

    bpm: Optional[float]
    sdnn_ms: Optional[float]
    count: int


class RecordStore(Protocol):
    def save(self, record: SessionRecord) -> SaveOutcome:
        ...

    def average_vitals(self, subject_id: str) -> Optional[SubjectAverages]:
        ...

    def last_access(self, subject_id: str) -> Optional[datetime]:
        ...


def _clean_subject(subject_id: Optional[str]) -> Optional[str]:
    if subject_id is None:
        return None
    subject_id = subject_id.strip()
    return subject_id or None


def _mean(values: List[float]) -> Optional[float]:
    return sum(values) / len(values) if values else None


class MemoryRecordStore:
    """In-process store, used for headless runs and tests."""

    def __init__(self) -> None:
        self._records: List[SessionRecord] = []
        self._lock = threading.Lock()

    def save(self, record: SessionRecord) -> SaveOutcome:
        if _clean_subject(record.subject_id) is None:
            return SaveOutcome(False, "Missing subjectId")
        with self._lock:
            self._records.append(record)
        return SaveOutcome(True)

    def records(self, subject_id: str) -> List[SessionRecord]:
        with self._lock:
            return [r for r in self._records if r.subject_id == subject_id]

    def average_vitals(self, subject_id: str) -> Optional[SubjectAverages]:
        subject_id = _clean_subject(subject_id)
        if subject_id is None:
            return None
        records = self.records(subject_id)
        if not records:
            return None
        return SubjectAverages(
            bpm=_mean([r.heart_rate.bpm for r in records if r.heart_rate.bpm is not None]),
            sdnn_ms=_mean([r.hrv.sdnn_ms for r in records if r.hrv.sdnn_ms is not None]),
            count=len(records),
        )

    def last_access(self, subject_id: str) -> Optional[datetime]:
        subject_id = _clean_subject(subject_id)
        if subject_id is None:
            return None
        records = self.records(subject_id)
        if not records:
            return None
        return max(r.timestamp for r in records)


class MongoRecordStore:
    """
    MongoDB-backed store.

    Parameters
    ----------
    collection:
        A ``pymongo`` collection (or compatible object).  Use
        :meth:`from_uri` to connect with a connection string.
    """

    def __init__(self, collection: Any) -> None:
        self.collection = collection
        self._setup_indexes()

    @classmethod
    def from_uri(
        cls,
        uri: Optional[str] = None,
        database: str = "heartlens",
        collection: str = "records",
    ) -> "MongoRecordStore":
        if uri is None:
            uri = os.getenv("MONGODB_URI")
        if not uri:
            raise ValueError("MongoDB URI not given and MONGODB_URI is not set")
        client = MongoClient(uri)
        return cls(client[database][collection])

    def _setup_indexes(self) -> None:
        try:
            self.collection.create_index([("subjectId", ASCENDING), ("timestamp", DESCENDING)])
        except PyMongoError as exc:
            logger.error("Failed to create indexes: %s", exc)

    def save(self, record: SessionRecord) -> SaveOutcome:
        if _clean_subject(record.subject_id) is None:
            return SaveOutcome(False, "Missing subjectId")
        try:
            self.collection.insert_one(record.to_document())
        except PyMongoError as exc:
            logger.error("Saving record for %s failed: %s", record.subject_id, exc)
            return SaveOutcome(False, str(exc))
        logger.info("Record saved for subject %s.", record.subject_id)
        return SaveOutcome(True)

    def average_vitals(self, subject_id: str) -> Optional[SubjectAverages]:
        subject_id = _clean_subject(subject_id)
        if subject_id is None:
            return None
        pipeline = [
            {"$match": {"subjectId": subject_id}},
            {"$group": {
                "_id": None,
                "avgHeartRate": {"$avg": "$heartRate.bpm"},
                "avgHRV": {"$avg": "$hrv.sdnn"},
                "count": {"$sum": 1},
            }},
        ]
        try:
            result = list(self.collection.aggregate(pipeline))
        except PyMongoError as exc:
            logger.error("Average query for %s failed: %s", subject_id, exc)
            return None
        if not result:
            return None
        row = result[0]
        return SubjectAverages(
            bpm=row.get("avgHeartRate"),
            sdnn_ms=row.get("avgHRV"),
            count=int(row.get("count", 0)),
        )

    def last_access(self, subject_id: str) -> Optional[datetime]:
        subject_id = _clean_subject(subject_id)
        if subject_id is None:
            return None
        try:
            doc = self.collection.find_one(
                {"subjectId": subject_id},
                sort=[("timestamp", DESCENDING)],
                projection={"timestamp": 1},
            )
        except PyMongoError as exc:
            logger.error("Last-access query for %s failed: %s", subject_id, exc)
            return None
        if doc is None:
            return None
        return doc["timestamp"]
