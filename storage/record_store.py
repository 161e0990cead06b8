"""Persistence interfaces consumed by the ingestion core."""
from abc import ABC, abstractmethod
from typing import Dict, Optional

from processor.models import Category, RecordFilter, ScheduleState, StoredRecord


class RecordStore(ABC):
    """
    Listing store with a unique constraint on fingerprint.

    Implementations raise StoreError for persistence failures.
    """

    @abstractmethod
    def find_by_fingerprint(self, fingerprint: str) -> Optional[StoredRecord]:
        """Return the stored record with this fingerprint, if any."""

    @abstractmethod
    def upsert(self, record: StoredRecord) -> StoredRecord:
        """Insert or replace the record keyed by its fingerprint."""

    @abstractmethod
    def delete_many(self, record_filter: RecordFilter) -> int:
        """Delete every record matching the filter and return the count."""

    @abstractmethod
    def count_documents(self, record_filter: RecordFilter) -> int:
        """Count records matching the filter."""

    @abstractmethod
    def count_by_category(self) -> Dict[Category, int]:
        """Count every record by category in one pass; every category is present."""


class ScheduleStateStore(ABC):
    """Persisted schedule state keyed by job kind."""

    @abstractmethod
    def get(self, job_kind: str) -> Optional[ScheduleState]:
        """Return the saved state for a job kind, if any."""

    @abstractmethod
    def put(self, state: ScheduleState) -> None:
        """Save the state for its job kind."""
