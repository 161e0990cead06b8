"""Unit tests for IngestionOrchestrator."""
import threading
from datetime import datetime, timezone

import pytest
import responses
from requests.exceptions import ConnectionError

from conftest import CIVIC_TZ, InMemoryRecordStore, RecordingCacheInvalidator
from ingestion.orchestrator import IngestionOrchestrator
from processor.errors import FetchError, ParseError
from processor.models import (
    INGESTION_ORIGIN,
    Category,
    JobStatus,
    RawRecord,
    ScheduleState,
    StoredRecord,
    TriggerOptions,
)
from scraper.base import SourceAdapter
from scraper.city_calendar import CityCalendarAdapter


class FakeAdapter(SourceAdapter):
    """Adapter serving canned parse results instead of HTTP content."""

    def __init__(self, name, items=(), fetch_error=None, not_modified=False, crash=None):
        super().__init__(base_delay=0)
        self.name = name
        self.items = list(items)
        self.fetch_error = fetch_error
        self.not_modified = not_modified
        self.crash = crash
        self.fetch_calls = []
        self.cancel_event = None

    def fetch(self, endpoint=None, force_refresh=False, cancel_event=None):
        self.fetch_calls.append(force_refresh)
        self.cancel_event = cancel_event
        if self.fetch_error:
            raise self.fetch_error
        if self.not_modified and not force_refresh:
            return None
        return 'content'

    def parse(self, raw_content):
        if self.crash:
            raise self.crash
        yield from self.items


def event(title, text='July 19, 2025, 10:00 AM - 4:00 PM@ Pet Centre', source='CityCalendar',
          category_hint='Community Events', **kwargs):
    return RawRecord(
        title=title,
        source_name=source,
        source_url='https://wetaskiwin.ca/calendar.aspx',
        datetime_text=text,
        category_hint=category_hint,
        **kwargs
    )


CITY_LISTING = """
<html>
    <body>
        <h2>Community Events</h2>
        <h3><a href="/Calendar.aspx?EID=101">Pet Adoption Day</a></h3>
        <p>July 19, 2025, 10:00 AM - 4:00 PM@ Pet Centre</p>
    </body>
</html>
"""


@pytest.fixture
def city():
    return FakeAdapter('CityCalendar', [
        event('Pet Adoption Day'),
        event('Farmers Market', 'July 20, 2025, 9:00 AM', category_hint='Market'),
        event('Mystery Event', 'sometime next week'),
    ])


@pytest.fixture
def orchestrator_factory(normalizer, record_store, cache_invalidator, state_store):
    def build(*adapters, store=None):
        return IngestionOrchestrator(
            adapters=adapters,
            normalizer=normalizer,
            store=store or record_store,
            cache_invalidator=cache_invalidator,
            schedule_store=state_store,
            job_kinds=['events', 'news']
        )
    return build


class TestConstruction:
    """Test cases for adapter registration."""

    def test_duplicate_source_names_rejected(self, orchestrator_factory):
        with pytest.raises(ValueError, match='Duplicate'):
            orchestrator_factory(FakeAdapter('A'), FakeAdapter('A'))

    def test_unnamed_adapter_rejected(self, orchestrator_factory):
        with pytest.raises(ValueError):
            orchestrator_factory(FakeAdapter(''))

    def test_unknown_source_rejected(self, orchestrator_factory, city):
        orchestrator = orchestrator_factory(city)

        with pytest.raises(ValueError, match='Unknown source'):
            orchestrator.trigger(TriggerOptions(sources=('Nope',)))


class TestTrigger:
    """Test cases for IngestionOrchestrator.trigger."""

    def test_end_to_end_with_one_unparseable_record(self, orchestrator_factory, city, record_store):
        """Three records, one bad date line: two stored, one error, run continues."""
        summary = orchestrator_factory(city).trigger()

        assert summary.new == 2
        assert summary.updated == 0
        assert len(summary.errors) == 1
        assert summary.errors[0].startswith('CityCalendar: ')
        assert 'Mystery Event' in summary.errors[0]
        assert len(record_store.records) == 2

        stored = {r.title: r for r in record_store.records.values()}
        assert stored['Pet Adoption Day'].start_at == datetime(2025, 7, 19, 10, 0, tzinfo=CIVIC_TZ)
        assert stored['Pet Adoption Day'].location == 'Pet Centre'
        assert stored['Farmers Market'].category == Category.FOOD

    def test_rerun_is_idempotent(self, orchestrator_factory, city, record_store):
        """Identical input a second time creates and updates nothing."""
        orchestrator = orchestrator_factory(city)
        orchestrator.trigger()
        writes = record_store.writes

        summary = orchestrator.trigger()

        assert summary.new == 0
        assert summary.updated == 0
        assert summary.per_source['CityCalendar'].unchanged == 2
        assert record_store.writes == writes

    def test_changed_source_reports_updated(self, orchestrator_factory, record_store):
        adapter = FakeAdapter('CityCalendar', [event('Pet Adoption Day')])
        orchestrator = orchestrator_factory(adapter)
        orchestrator.trigger()

        adapter.items = [event('Pet Adoption Day', location='Main Hall')]
        summary = orchestrator.trigger()

        assert summary.updated == 1
        assert next(iter(record_store.records.values())).location == 'Main Hall'

    def test_failed_source_does_not_cancel_siblings(self, orchestrator_factory, city, cache_invalidator):
        """One source failing to fetch is recorded against that source only."""
        community = FakeAdapter('CommunityCalendar', [
            event('Quilt Show', 'August 2, 2025, 10:00 AM', source='CommunityCalendar')
        ])
        news = FakeAdapter('LocalNews', fetch_error=FetchError('LocalNews', 'Failed to fetch: 503'))

        summary = orchestrator_factory(city, community, news).trigger()

        assert summary.per_source['LocalNews'].errors == ('Failed to fetch: 503',)
        assert summary.per_source['CommunityCalendar'].new == 1
        assert summary.per_source['CityCalendar'].new == 2
        assert summary.new == 3
        assert 'LocalNews: Failed to fetch: 503' in summary.errors
        assert cache_invalidator.calls == 1

    def test_adapter_crash_is_contained(self, orchestrator_factory, city):
        broken = FakeAdapter('Broken', crash=RuntimeError('markup changed'))

        summary = orchestrator_factory(city, broken).trigger()

        assert summary.per_source['Broken'].errors == ('Unexpected error: markup changed',)
        assert summary.per_source['CityCalendar'].new == 2

    def test_parse_errors_from_adapter_are_recorded(self, orchestrator_factory):
        adapter = FakeAdapter('CityCalendar', [
            ParseError('Unreadable calendar entry'),
            event('Pet Adoption Day'),
        ])

        summary = orchestrator_factory(adapter).trigger()

        assert summary.new == 1
        assert summary.per_source['CityCalendar'].errors == ('Unreadable calendar entry',)

    def test_store_error_scoped_to_one_record(self, orchestrator_factory, city):
        store = InMemoryRecordStore(fail_titles=['Farmers Market'])

        summary = orchestrator_factory(city, store=store).trigger()

        assert summary.new == 1
        assert len(summary.per_source['CityCalendar'].errors) == 2
        assert len(store.records) == 1

    def test_validation_error_recorded(self, orchestrator_factory):
        adapter = FakeAdapter('CityCalendar', [event('  ')])

        summary = orchestrator_factory(adapter).trigger()

        assert summary.new == 0
        assert 'missing required field: title' in summary.errors[0]

    def test_source_selection(self, orchestrator_factory, city):
        other = FakeAdapter('LocalNews', [event('Budget', source='LocalNews')])

        summary = orchestrator_factory(city, other).trigger(TriggerOptions(sources=('LocalNews',)))

        assert list(summary.per_source) == ['LocalNews']
        assert city.fetch_calls == []

    def test_not_modified_source_is_skipped(self, orchestrator_factory):
        adapter = FakeAdapter('CityCalendar', [event('Pet Adoption Day')], not_modified=True)

        summary = orchestrator_factory(adapter).trigger()

        assert summary.new == 0
        assert summary.clean

    def test_force_refresh_reaches_adapters(self, orchestrator_factory):
        adapter = FakeAdapter('CityCalendar', [event('Pet Adoption Day')], not_modified=True)

        summary = orchestrator_factory(adapter).trigger(TriggerOptions(force_refresh=True))

        assert adapter.fetch_calls == [True]
        assert summary.new == 1

    def test_clear_old_data_spares_seed_and_unselected_sources(self, orchestrator_factory, record_store):
        """Only ingested records of the selected sources are deleted."""
        start = datetime(2025, 6, 1, tzinfo=timezone.utc)
        for fp, origin, source in (
            ('old-1', INGESTION_ORIGIN, 'CityCalendar'),
            ('old-2', INGESTION_ORIGIN, 'CityCalendar'),
            ('seed-1', 'seed', 'CityCalendar'),
            ('news-1', INGESTION_ORIGIN, 'LocalNews'),
        ):
            record_store.records[fp] = StoredRecord(
                fingerprint=fp, title=fp, start_at=start, category=Category.OTHER,
                source_name=source, source_url='https://example.com', origin=origin
            )
        city = FakeAdapter('CityCalendar', [event('Pet Adoption Day')])
        news = FakeAdapter('LocalNews')

        summary = orchestrator_factory(city, news).trigger(
            TriggerOptions(clear_old_data=True, sources=('CityCalendar',))
        )

        assert summary.deleted == 2
        assert summary.new == 1
        assert 'seed-1' in record_store.records
        assert 'news-1' in record_store.records
        assert 'old-1' not in record_store.records

    @responses.activate
    def test_clear_old_data_refetches_unchanged_source(self, orchestrator_factory, record_store):
        """A cleared source is re-read in full even if it would answer 304."""
        def listing(request):
            if request.headers.get('If-None-Match') == '"v1"':
                return 304, {}, ''
            return 200, {'ETag': '"v1"'}, CITY_LISTING

        responses.add_callback(responses.GET, CityCalendarAdapter.endpoint, callback=listing)
        orchestrator = orchestrator_factory(CityCalendarAdapter(base_delay=0))

        first = orchestrator.trigger()
        second = orchestrator.trigger(TriggerOptions(clear_old_data=True))

        assert first.new == 1
        assert second.deleted == 1
        assert second.new == 1
        assert len(record_store.records) == 1
        assert 'If-None-Match' not in responses.calls[1].request.headers

    def test_clear_old_data_forces_refresh(self, orchestrator_factory):
        adapter = FakeAdapter('CityCalendar', [event('Pet Adoption Day')], not_modified=True)

        summary = orchestrator_factory(adapter).trigger(TriggerOptions(clear_old_data=True))

        assert adapter.fetch_calls == [True]
        assert summary.new == 1

    def test_cancelled_run_skips_fetching(self, orchestrator_factory, city, cache_invalidator):
        cancel = threading.Event()
        cancel.set()

        summary = orchestrator_factory(city).trigger(cancel_event=cancel)

        assert city.fetch_calls == []
        assert summary.errors == ('CityCalendar: run cancelled before fetch',)
        assert cache_invalidator.calls == 1

    def test_cancel_event_reaches_adapters(self, orchestrator_factory, city):
        cancel = threading.Event()

        orchestrator_factory(city).trigger(cancel_event=cancel)

        assert city.cancel_event is cancel

    @responses.activate
    def test_cancel_mid_run_stops_retries(self, orchestrator_factory, record_store):
        """Cancelling while a source is retrying ends its fetch without further attempts."""
        cancel = threading.Event()

        def fail_and_cancel(request):
            cancel.set()
            raise ConnectionError('connection reset')

        responses.add_callback(responses.GET, CityCalendarAdapter.endpoint, callback=fail_and_cancel)
        orchestrator = orchestrator_factory(CityCalendarAdapter(base_delay=5))

        summary = orchestrator.trigger(cancel_event=cancel)

        assert len(responses.calls) == 1
        assert summary.errors == ('CityCalendar: run cancelled',)
        assert summary.duration_ms < 5000
        assert record_store.records == {}

    def test_cache_invalidated_once_even_on_total_failure(self, orchestrator_factory, cache_invalidator):
        adapters = [
            FakeAdapter(name, fetch_error=FetchError(name, 'down'))
            for name in ('A', 'B', 'C')
        ]

        summary = orchestrator_factory(*adapters).trigger()

        assert cache_invalidator.calls == 1
        assert len(summary.errors) == 3

    def test_cache_failure_is_reported(self, normalizer, record_store, city):
        invalidator = RecordingCacheInvalidator(error=RuntimeError('webhook 502'))
        orchestrator = IngestionOrchestrator([city], normalizer, record_store, cache_invalidator=invalidator)

        summary = orchestrator.trigger()

        assert summary.new == 2
        assert 'Cache invalidation failed: webhook 502' in summary.errors

    def test_summary_is_immutable(self, orchestrator_factory, city):
        summary = orchestrator_factory(city).trigger()

        with pytest.raises(AttributeError):
            summary.new = 5
        with pytest.raises(TypeError):
            summary.per_source['Other'] = None

    def test_summary_to_dict(self, orchestrator_factory, city):
        body = orchestrator_factory(city).trigger().to_dict()

        assert body['new'] == 2
        assert body['perSource']['CityCalendar']['new'] == 2
        assert isinstance(body['durationMs'], int)


class TestStats:
    """Test cases for IngestionOrchestrator.stats."""

    def test_stats_counts_and_job_state(self, orchestrator_factory, city, state_store, record_store):
        state_store.put(ScheduleState(
            job_kind='events',
            status=JobStatus.IDLE,
            last_run_at=datetime(2025, 7, 1, 12, 5, tzinfo=timezone.utc),
            next_run_at=datetime(2025, 7, 2, 6, 0, tzinfo=CIVIC_TZ)
        ))
        orchestrator = orchestrator_factory(city)
        orchestrator.trigger()
        city.fetch_calls.clear()

        stats = orchestrator.stats()

        assert stats['totalRecords'] == 2
        assert record_store.category_counts == 1
        assert stats['totalsByCategory']['music'] == 0
        assert stats['totalsByCategory']['community'] == 1
        assert stats['totalsByCategory']['food'] == 1
        assert stats['perJob']['events']['lastRunAt'] == '2025-07-01T12:05:00+00:00'
        assert stats['perJob']['events']['nextRunAt'] == '2025-07-02T06:00:00-06:00'
        assert stats['perJob']['news'] == {
            'enabled': True, 'status': 'idle', 'lastRunAt': None, 'nextRunAt': None
        }
        assert city.fetch_calls == []
