"""Shared fixtures and in-memory collaborators for ingestion tests."""
import os
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional
from unittest.mock import patch
from zoneinfo import ZoneInfo

import pytest

from processor.datetime_extractor import DateTimeExtractor
from processor.errors import StoreError
from processor.models import Category, RecordFilter, ScheduleState, StoredRecord
from processor.normalizer import Normalizer
from storage.cache import CacheInvalidator
from storage.record_store import RecordStore, ScheduleStateStore

CIVIC_TZ = ZoneInfo('America/Edmonton')


class InMemoryRecordStore(RecordStore):
    """Dict-backed record store; optionally fails writes for chosen titles."""

    def __init__(self, fail_titles=()):
        self.records: Dict[str, StoredRecord] = {}
        self.writes = 0
        self.category_counts = 0
        self.fail_titles = set(fail_titles)

    def find_by_fingerprint(self, fingerprint: str) -> Optional[StoredRecord]:
        record = self.records.get(fingerprint)
        return replace(record, curated_fields=list(record.curated_fields)) if record else None

    def upsert(self, record: StoredRecord) -> StoredRecord:
        if record.title in self.fail_titles:
            raise StoreError(f"Error writing record '{record.title}': throttled", record.fingerprint)
        self.writes += 1
        self.records[record.fingerprint] = record
        return record

    def delete_many(self, record_filter: RecordFilter) -> int:
        doomed = [key for key, record in self.records.items() if self._matches(record, record_filter)]
        for key in doomed:
            del self.records[key]
        return len(doomed)

    def count_documents(self, record_filter: RecordFilter) -> int:
        return sum(1 for record in self.records.values() if self._matches(record, record_filter))

    def count_by_category(self) -> Dict[Category, int]:
        self.category_counts += 1
        totals = {category: 0 for category in Category}
        for record in self.records.values():
            totals[record.category] += 1
        return totals

    def _matches(self, record: StoredRecord, record_filter: RecordFilter) -> bool:
        if record_filter.origin is not None and record.origin != record_filter.origin:
            return False
        if record_filter.source_names and record.source_name not in record_filter.source_names:
            return False
        if record_filter.category is not None and record.category != record_filter.category:
            return False
        if record_filter.start_before is not None and record.start_at >= record_filter.start_before:
            return False
        return True


class InMemoryScheduleStateStore(ScheduleStateStore):
    def __init__(self):
        self.states: Dict[str, ScheduleState] = {}

    def get(self, job_kind: str) -> Optional[ScheduleState]:
        state = self.states.get(job_kind)
        return replace(state) if state else None

    def put(self, state: ScheduleState) -> None:
        self.states[state.job_kind] = replace(state)


class RecordingCacheInvalidator(CacheInvalidator):
    def __init__(self, error: Optional[Exception] = None):
        self.calls = 0
        self.error = error

    def clear(self) -> None:
        self.calls += 1
        if self.error:
            raise self.error


class FixedClock:
    """Clock whose current instant is set by the test."""

    def __init__(self, now: datetime):
        self.current = now

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current = self.current + timedelta(**kwargs)


@pytest.fixture(autouse=True)
def aws_credentials():
    """Keep boto3 away from real AWS accounts."""
    env_vars = {
        'AWS_ACCESS_KEY_ID': 'testing',
        'AWS_SECRET_ACCESS_KEY': 'testing',
        'AWS_SECURITY_TOKEN': 'testing',
        'AWS_SESSION_TOKEN': 'testing',
        'AWS_DEFAULT_REGION': 'us-east-1'
    }
    with patch.dict(os.environ, env_vars):
        yield


@pytest.fixture
def civic_tz():
    return CIVIC_TZ


@pytest.fixture
def extractor():
    return DateTimeExtractor(CIVIC_TZ)


@pytest.fixture
def normalizer(extractor):
    return Normalizer(extractor)


@pytest.fixture
def record_store():
    return InMemoryRecordStore()


@pytest.fixture
def state_store():
    return InMemoryScheduleStateStore()


@pytest.fixture
def cache_invalidator():
    return RecordingCacheInvalidator()


@pytest.fixture
def utc_now():
    return datetime(2025, 7, 1, 20, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock(utc_now):
    return FixedClock(utc_now)

