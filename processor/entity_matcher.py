"""Fingerprinting and merge-on-write reconciliation against the record store."""
import hashlib
import logging
import re
import time
from dataclasses import replace
from datetime import datetime, timedelta
from typing import List

from processor.models import (
    INGESTION_ORIGIN,
    MERGEABLE_FIELDS,
    MatchOutcome,
    NormalizedRecord,
    StoredRecord,
)
from storage.record_store import RecordStore

logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r'\s+')


def normalize_title(title: str) -> str:
    return _WHITESPACE.sub(' ', title or '').strip().lower()


def fingerprint(title: str, source_name: str, start_at: datetime) -> str:
    """
    Generate the dedup key for a listing.

    Args:
        title: Listing title; case and whitespace are ignored
        source_name: Name of the source that published the listing
        start_at: Start of the listing; only its calendar date is used

    Returns:
        SHA256 hex digest
    """
    composite = f"{normalize_title(title)}|{source_name.strip()}|{start_at.date().isoformat()}"
    return hashlib.sha256(composite.encode('utf-8')).hexdigest()


class EntityMatcher:
    """Decides whether a normalized record is new, changed or already stored."""

    def __init__(self, store: RecordStore, retention_days: int = 90):
        self.store = store
        self.retention_days = retention_days

    def fingerprint(self, record: NormalizedRecord) -> str:
        return fingerprint(record.title, record.source_name, record.start_at)

    def reconcile(self, record: NormalizedRecord) -> MatchOutcome:
        """
        Insert or merge a record.

        Args:
            record: Normalized record from one source

        Returns:
            MatchOutcome.NEW, UPDATED or UNCHANGED

        Raises:
            StoreError: If reading or writing this record fails
        """
        key = self.fingerprint(record)
        existing = self.store.find_by_fingerprint(key)
        now = int(time.time())

        if existing is None:
            self.store.upsert(StoredRecord(
                fingerprint=key,
                title=record.title,
                start_at=record.start_at,
                end_at=record.end_at,
                location=record.location,
                category=record.category,
                source_name=record.source_name,
                source_url=record.source_url,
                description=record.description,
                url=record.url,
                kind=record.kind,
                origin=INGESTION_ORIGIN,
                created_at=now,
                updated_at=now,
                ttl=self._calculate_ttl(record.start_at)
            ))
            logger.debug(f"Inserted '{record.title}' ({key[:12]})")
            return MatchOutcome.NEW

        changes = self.diff(existing, record)
        if not changes:
            return MatchOutcome.UNCHANGED

        merged = replace(existing, **changes, updated_at=now)
        merged.ttl = self._calculate_ttl(merged.start_at)
        self.store.upsert(merged)
        logger.debug(
            f"Updated '{record.title}' ({key[:12]}): {', '.join(sorted(changes))}"
        )
        return MatchOutcome.UPDATED

    def diff(self, existing: StoredRecord, record: NormalizedRecord) -> dict:
        """
        Compute the fields an incoming record would change.

        Empty incoming values and curated fields never overwrite what is stored.
        """
        curated: List[str] = existing.curated_fields or []
        changes = {}
        for name in MERGEABLE_FIELDS:
            if name in curated:
                continue
            incoming = getattr(record, name)
            if incoming is None or incoming == '':
                continue
            if getattr(existing, name) != incoming:
                changes[name] = incoming
        return changes

    def _calculate_ttl(self, start_at: datetime) -> int:
        return int((start_at + timedelta(days=self.retention_days)).timestamp())
