"""Data models for listing ingestion."""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple

INGESTION_ORIGIN = 'ingestion'

_TRUE_STRINGS = {'true', '1', 'yes', 'on'}
_FALSE_STRINGS = {'false', '0', 'no', 'off', ''}


def parse_flag(value: Any, name: str) -> bool:
    """
    Read a boolean option from an invocation payload.

    Raises:
        ValueError: If the value is neither a boolean nor a recognised string
    """
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    if isinstance(value, str):
        text = value.strip().lower()
        if text in _TRUE_STRINGS:
            return True
        if text in _FALSE_STRINGS:
            return False
    raise ValueError(f"{name} must be a boolean, got {value!r}")


class Category(str, Enum):
    """Fixed category enumeration for stored listings."""
    COMMUNITY = 'community'
    GOVERNMENT = 'government'
    MUSIC = 'music'
    SPORTS = 'sports'
    ARTS = 'arts'
    FOOD = 'food'
    EDUCATION = 'education'
    BUSINESS = 'business'
    FAMILY = 'family'
    HEALTH = 'health'
    NEWS = 'news'
    OTHER = 'other'


class MatchOutcome(str, Enum):
    """Result of reconciling one record against the store."""
    NEW = 'new'
    UPDATED = 'updated'
    UNCHANGED = 'unchanged'


class JobStatus(str, Enum):
    DISABLED = 'disabled'
    IDLE = 'idle'
    RUNNING = 'running'


@dataclass
class RawRecord:
    """Listing as scraped; lives for one adapter pass only."""
    title: str
    source_name: str
    source_url: str
    datetime_text: str = ''
    start_at: Optional[datetime] = None
    end_at: Optional[datetime] = None
    location: str = ''
    category_hint: str = ''
    description: str = ''
    url: Optional[str] = None
    kind: str = 'event'


@dataclass(frozen=True)
class NormalizedRecord:
    """Validated listing in canonical shape."""
    title: str
    start_at: datetime
    category: Category
    source_name: str
    source_url: str
    end_at: Optional[datetime] = None
    location: Optional[str] = None
    description: Optional[str] = None
    url: Optional[str] = None
    kind: str = 'event'


@dataclass
class StoredRecord:
    """Persisted listing as the record store returns it."""
    fingerprint: str
    title: str
    start_at: datetime
    category: Category
    source_name: str
    source_url: str
    end_at: Optional[datetime] = None
    location: Optional[str] = None
    description: Optional[str] = None
    url: Optional[str] = None
    kind: str = 'event'
    origin: Optional[str] = INGESTION_ORIGIN
    curated_fields: List[str] = field(default_factory=list)
    created_at: Optional[int] = None
    updated_at: Optional[int] = None
    ttl: Optional[int] = None


# Fields ingestion may write onto a stored record.
MERGEABLE_FIELDS = (
    'title', 'start_at', 'end_at', 'location', 'category',
    'description', 'url', 'source_url', 'kind',
)


@dataclass(frozen=True)
class RecordFilter:
    """Store query; every set attribute must match."""
    origin: Optional[str] = None
    source_names: Optional[Tuple[str, ...]] = None
    category: Optional[Category] = None
    start_before: Optional[datetime] = None


@dataclass(frozen=True)
class TriggerOptions:
    clear_old_data: bool = False
    force_refresh: bool = False
    sources: Optional[Tuple[str, ...]] = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> 'TriggerOptions':
        """Build options from a camelCase invocation payload."""
        sources = payload.get('sources')
        return cls(
            clear_old_data=parse_flag(payload.get('clearOldData'), 'clearOldData'),
            force_refresh=parse_flag(payload.get('forceRefresh'), 'forceRefresh'),
            sources=tuple(sources) if sources else None
        )


@dataclass(frozen=True)
class SourceResult:
    new: int = 0
    updated: int = 0
    unchanged: int = 0
    errors: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'new': self.new,
            'updated': self.updated,
            'errors': list(self.errors)
        }


@dataclass(frozen=True)
class ScrapeRunSummary:
    """Aggregated result of one orchestrator invocation."""
    new: int
    updated: int
    deleted: int
    errors: Tuple[str, ...]
    duration_ms: int
    per_source: Mapping[str, SourceResult]

    def __post_init__(self):
        object.__setattr__(
            self, 'per_source', MappingProxyType(dict(self.per_source))
        )

    @property
    def clean(self) -> bool:
        return not self.errors

    def to_dict(self) -> Dict[str, Any]:
        return {
            'new': self.new,
            'updated': self.updated,
            'deleted': self.deleted,
            'errors': list(self.errors),
            'durationMs': self.duration_ms,
            'perSource': {
                name: result.to_dict()
                for name, result in self.per_source.items()
            }
        }


@dataclass
class ScheduleState:
    """Persisted schedule bookkeeping for one job kind."""
    job_kind: str
    enabled: bool = True
    status: JobStatus = JobStatus.IDLE
    last_run_at: Optional[datetime] = None
    next_run_at: Optional[datetime] = None
    running_since: Optional[datetime] = None
