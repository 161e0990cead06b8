"""DynamoDB-backed record and schedule state stores."""
import logging
from collections import Counter
from datetime import datetime, timezone
from functools import reduce
from typing import Any, Dict, Iterator, Optional

import boto3
from boto3.dynamodb.conditions import Attr
from botocore.exceptions import ClientError

from processor.errors import StoreError
from processor.models import (
    Category,
    JobStatus,
    RecordFilter,
    ScheduleState,
    StoredRecord,
)
from storage.record_store import RecordStore, ScheduleStateStore

logger = logging.getLogger(__name__)


def _to_iso(value: Optional[datetime]) -> Optional[str]:
    """Store instants as UTC ISO strings so they sort lexicographically."""
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat()


def _from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)


class DynamoDBRecordStore(RecordStore):
    """Listing table keyed by fingerprint."""

    BATCH_SIZE = 25  # DynamoDB batch operation limit

    def __init__(self, table_name: str, region_name: Optional[str] = None):
        """
        Initialize DynamoDB resource and table reference.

        Args:
            table_name: Name of the DynamoDB table (hash key: fingerprint)
            region_name: AWS region; falls back to the environment
        """
        self.table_name = table_name
        self.dynamodb = boto3.resource('dynamodb', region_name=region_name)
        self.table = self.dynamodb.Table(table_name)
        logger.info(f"Initialized DynamoDBRecordStore for table: {table_name}")

    def find_by_fingerprint(self, fingerprint: str) -> Optional[StoredRecord]:
        try:
            response = self.table.get_item(Key={'fingerprint': fingerprint})
        except ClientError as e:
            raise StoreError(
                f"Error reading record {fingerprint[:12]}: {e}", fingerprint
            ) from e

        item = response.get('Item')
        return self._item_to_record(item) if item else None

    def upsert(self, record: StoredRecord) -> StoredRecord:
        try:
            self.table.put_item(Item=self._record_to_item(record))
        except ClientError as e:
            raise StoreError(
                f"Error writing record '{record.title}': {e}", record.fingerprint
            ) from e
        return record

    def delete_many(self, record_filter: RecordFilter) -> int:
        """
        Delete matching records in batches of 25 items.

        Returns:
            Count of deleted records
        """
        try:
            fingerprints = [
                item['fingerprint']
                for item in self._scan(record_filter, ProjectionExpression='fingerprint')
            ]
        except ClientError as e:
            raise StoreError(f"Error scanning records for deletion: {e}") from e

        if not fingerprints:
            return 0

        logger.info(f"Deleting {len(fingerprints)} records from DynamoDB")
        deleted = 0

        for i in range(0, len(fingerprints), self.BATCH_SIZE):
            batch = fingerprints[i:i + self.BATCH_SIZE]
            try:
                with self.table.batch_writer() as writer:
                    for fingerprint in batch:
                        writer.delete_item(Key={'fingerprint': fingerprint})
            except ClientError as e:
                raise StoreError(
                    f"Error deleting batch {i // self.BATCH_SIZE + 1} "
                    f"after {deleted} deletions: {e}"
                ) from e
            deleted += len(batch)

        logger.info(f"Successfully deleted {deleted} records")
        return deleted

    def count_documents(self, record_filter: RecordFilter) -> int:
        kwargs: Dict[str, Any] = {'Select': 'COUNT'}
        expression = self._filter_expression(record_filter)
        if expression is not None:
            kwargs['FilterExpression'] = expression

        total = 0
        try:
            response = self.table.scan(**kwargs)
            total += response.get('Count', 0)
            while 'LastEvaluatedKey' in response:
                response = self.table.scan(
                    ExclusiveStartKey=response['LastEvaluatedKey'], **kwargs
                )
                total += response.get('Count', 0)
        except ClientError as e:
            raise StoreError(f"Error counting records: {e}") from e
        return total

    def count_by_category(self) -> Dict[Category, int]:
        """Tally categories from a single projected scan."""
        tally: Counter = Counter()
        try:
            for item in self._scan(
                RecordFilter(),
                ProjectionExpression='#c',
                ExpressionAttributeNames={'#c': 'category'}
            ):
                tally[self._category(item)] += 1
        except ClientError as e:
            raise StoreError(f"Error counting records by category: {e}") from e
        return {category: tally[category] for category in Category}

    def _scan(self, record_filter: RecordFilter, **kwargs) -> Iterator[dict]:
        """Scan the table (following pagination) for matching items."""
        expression = self._filter_expression(record_filter)
        if expression is not None:
            kwargs['FilterExpression'] = expression

        response = self.table.scan(**kwargs)
        yield from response.get('Items', [])
        while 'LastEvaluatedKey' in response:
            response = self.table.scan(
                ExclusiveStartKey=response['LastEvaluatedKey'], **kwargs
            )
            yield from response.get('Items', [])

    def _filter_expression(self, record_filter: RecordFilter):
        conditions = []
        if record_filter.origin is not None:
            conditions.append(Attr('origin').eq(record_filter.origin))
        if record_filter.source_names:
            conditions.append(Attr('source_name').is_in(list(record_filter.source_names)))
        if record_filter.category is not None:
            conditions.append(Attr('category').eq(record_filter.category.value))
        if record_filter.start_before is not None:
            conditions.append(Attr('start_at').lt(_to_iso(record_filter.start_before)))

        if not conditions:
            return None
        return reduce(lambda left, right: left & right, conditions)

    def _item_to_record(self, item: dict) -> StoredRecord:
        """
        Convert DynamoDB item to StoredRecord.

        Unknown category values (e.g. written by an admin tool) read as OTHER.
        """
        category = self._category(item)

        return StoredRecord(
            fingerprint=item['fingerprint'],
            title=item['title'],
            start_at=_from_iso(item['start_at']),
            end_at=_from_iso(item.get('end_at')),
            location=item.get('location'),
            category=category,
            source_name=item['source_name'],
            source_url=item.get('source_url', ''),
            description=item.get('description'),
            url=item.get('url'),
            kind=item.get('kind', 'event'),
            origin=item.get('origin'),
            curated_fields=list(item.get('curated_fields') or []),
            created_at=int(item['created_at']) if 'created_at' in item else None,
            updated_at=int(item['updated_at']) if 'updated_at' in item else None,
            ttl=int(item['ttl']) if 'ttl' in item else None
        )

    @staticmethod
    def _category(item: dict) -> Category:
        try:
            return Category(item.get('category', Category.OTHER.value))
        except ValueError:
            return Category.OTHER

    def _record_to_item(self, record: StoredRecord) -> dict:
        item = {
            'fingerprint': record.fingerprint,
            'title': record.title,
            'start_at': _to_iso(record.start_at),
            'category': record.category.value,
            'source_name': record.source_name,
            'source_url': record.source_url,
            'kind': record.kind,
        }

        # Add optional fields if present
        optional = {
            'end_at': _to_iso(record.end_at),
            'location': record.location,
            'description': record.description,
            'url': record.url,
            'origin': record.origin,
            'created_at': record.created_at,
            'updated_at': record.updated_at,
            'ttl': record.ttl,
        }
        item.update({key: value for key, value in optional.items() if value is not None})
        if record.curated_fields:
            item['curated_fields'] = list(record.curated_fields)

        return item


class DynamoDBScheduleStateStore(ScheduleStateStore):
    """Schedule state table keyed by job_kind."""

    def __init__(self, table_name: str, region_name: Optional[str] = None):
        self.table_name = table_name
        self.dynamodb = boto3.resource('dynamodb', region_name=region_name)
        self.table = self.dynamodb.Table(table_name)

    def get(self, job_kind: str) -> Optional[ScheduleState]:
        try:
            response = self.table.get_item(Key={'job_kind': job_kind})
        except ClientError as e:
            raise StoreError(f"Error reading schedule state for {job_kind}: {e}") from e

        item = response.get('Item')
        if not item:
            return None
        return ScheduleState(
            job_kind=item['job_kind'],
            enabled=bool(item.get('enabled', True)),
            status=JobStatus(item.get('status', JobStatus.IDLE.value)),
            last_run_at=_from_iso(item.get('last_run_at')),
            next_run_at=_from_iso(item.get('next_run_at')),
            running_since=_from_iso(item.get('running_since'))
        )

    def put(self, state: ScheduleState) -> None:
        item: Dict[str, Any] = {
            'job_kind': state.job_kind,
            'enabled': state.enabled,
            'status': state.status.value,
        }
        for key in ('last_run_at', 'next_run_at', 'running_since'):
            value = _to_iso(getattr(state, key))
            if value is not None:
                item[key] = value

        try:
            self.table.put_item(Item=item)
        except ClientError as e:
            raise StoreError(f"Error saving schedule state for {state.job_kind}: {e}") from e
