"""Runs source adapters concurrently and reconciles their records with the store."""
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence

from processor.entity_matcher import EntityMatcher
from processor.errors import FetchError, IngestError, ParseError, StoreError, ValidationError
from processor.models import (
    INGESTION_ORIGIN,
    MatchOutcome,
    RecordFilter,
    ScrapeRunSummary,
    SourceResult,
    TriggerOptions,
)
from processor.normalizer import Normalizer
from scraper.base import SourceAdapter
from storage.cache import CacheInvalidator, NoopCacheInvalidator
from storage.record_store import RecordStore, ScheduleStateStore

logger = logging.getLogger(__name__)


@dataclass
class _SourceTally:
    """Mutable per-source counters, frozen into a SourceResult at the end."""
    new: int = 0
    updated: int = 0
    unchanged: int = 0
    errors: List[str] = field(default_factory=list)

    def freeze(self) -> SourceResult:
        return SourceResult(
            new=self.new,
            updated=self.updated,
            unchanged=self.unchanged,
            errors=tuple(self.errors)
        )


class IngestionOrchestrator:
    """Drives every configured source through fetch, parse, normalize and reconcile."""

    def __init__(
        self,
        adapters: Iterable[SourceAdapter],
        normalizer: Normalizer,
        store: RecordStore,
        matcher: Optional[EntityMatcher] = None,
        cache_invalidator: Optional[CacheInvalidator] = None,
        schedule_store: Optional[ScheduleStateStore] = None,
        job_kinds: Sequence[str] = ()
    ):
        self.adapters: Dict[str, SourceAdapter] = {}
        for adapter in adapters:
            if not adapter.name:
                raise ValueError(f"{type(adapter).__name__} has no source name")
            if adapter.name in self.adapters:
                raise ValueError(f"Duplicate source name: {adapter.name}")
            self.adapters[adapter.name] = adapter

        self.normalizer = normalizer
        self.store = store
        self.matcher = matcher or EntityMatcher(store)
        self.cache_invalidator = cache_invalidator or NoopCacheInvalidator()
        self.schedule_store = schedule_store
        self.job_kinds = tuple(job_kinds)

    def trigger(
        self,
        options: Optional[TriggerOptions] = None,
        cancel_event: Optional[threading.Event] = None
    ) -> ScrapeRunSummary:
        """
        Run one ingestion pass.

        Args:
            options: Source selection and clear/force-refresh flags
            cancel_event: Set by the caller to stop issuing further fetches

        Returns:
            ScrapeRunSummary for the whole pass

        Raises:
            ValueError: If a requested source is not configured
        """
        options = options or TriggerOptions()
        cancel_event = cancel_event or threading.Event()
        selected = self._select_sources(options.sources)
        start_time = time.monotonic()
        run_errors: List[str] = []
        deleted = 0

        logger.info(
            f"Ingestion run started for {len(selected)} source(s): {', '.join(selected)}",
            extra={
                'clear_old_data': options.clear_old_data,
                'force_refresh': options.force_refresh
            }
        )

        if options.clear_old_data:
            try:
                deleted = self.store.delete_many(RecordFilter(
                    origin=INGESTION_ORIGIN,
                    source_names=tuple(selected)
                ))
                logger.info(f"Cleared {deleted} previously ingested records")
            except StoreError as e:
                logger.error(f"Failed to clear previously ingested records: {e}")
                run_errors.append(f"Clearing old data failed: {e}")

        # Cleared sources must be re-read in full; a 304 would leave them empty
        force_refresh = options.force_refresh or options.clear_old_data
        tallies: Dict[str, _SourceTally] = {}
        with ThreadPoolExecutor(max_workers=max(len(selected), 1)) as executor:
            futures = {
                executor.submit(
                    self._run_source, self.adapters[name], force_refresh, cancel_event
                ): name
                for name in selected
            }
            for future in as_completed(futures):
                name = futures[future]
                try:
                    tallies[name] = future.result()
                except Exception as e:
                    # Unexpected bug in one adapter; siblings still report
                    logger.error(f"{name}: ingestion task crashed: {e}", exc_info=True)
                    tallies[name] = _SourceTally(errors=[f"Unexpected error: {e}"])

        per_source = {name: tallies[name].freeze() for name in selected}
        for name, result in per_source.items():
            run_errors.extend(f"{name}: {message}" for message in result.errors)

        try:
            self.cache_invalidator.clear()
        except Exception as e:
            logger.error(f"Read cache invalidation failed: {e}", exc_info=True)
            run_errors.append(f"Cache invalidation failed: {e}")

        summary = ScrapeRunSummary(
            new=sum(result.new for result in per_source.values()),
            updated=sum(result.updated for result in per_source.values()),
            deleted=deleted,
            errors=tuple(run_errors),
            duration_ms=int((time.monotonic() - start_time) * 1000),
            per_source=per_source
        )

        logger.info(
            f"Ingestion run completed: {summary.new} new, {summary.updated} updated, "
            f"{summary.deleted} deleted, {len(summary.errors)} errors",
            extra={'duration_ms': summary.duration_ms}
        )
        return summary

    def stats(self) -> Dict[str, Any]:
        """
        Read-only totals by category and per-job schedule state.

        Performs no network activity against sources.
        """
        totals = {
            category.value: count
            for category, count in self.store.count_by_category().items()
        }

        per_job = {}
        for kind in self.job_kinds:
            state = self.schedule_store.get(kind) if self.schedule_store else None
            per_job[kind] = {
                'enabled': state.enabled if state else True,
                'status': state.status.value if state else 'idle',
                'lastRunAt': state.last_run_at.isoformat() if state and state.last_run_at else None,
                'nextRunAt': state.next_run_at.isoformat() if state and state.next_run_at else None,
            }

        return {
            'totalsByCategory': totals,
            'totalRecords': sum(totals.values()),
            'perJob': per_job
        }

    def _select_sources(self, sources: Optional[Sequence[str]]) -> List[str]:
        if not sources:
            return list(self.adapters)
        unknown = [name for name in sources if name not in self.adapters]
        if unknown:
            raise ValueError(
                f"Unknown source(s): {', '.join(unknown)}. "
                f"Configured: {', '.join(self.adapters)}"
            )
        return list(dict.fromkeys(sources))

    def _run_source(
        self,
        adapter: SourceAdapter,
        force_refresh: bool,
        cancel_event: threading.Event
    ) -> _SourceTally:
        """Fetch, parse and reconcile one source; never raises expected errors."""
        tally = _SourceTally()

        if cancel_event.is_set():
            logger.warning(f"{adapter.name}: run cancelled before fetch")
            tally.errors.append("run cancelled before fetch")
            return tally

        try:
            raw_content = adapter.fetch(force_refresh=force_refresh, cancel_event=cancel_event)
        except FetchError as e:
            logger.error(f"{adapter.name}: {e}")
            tally.errors.append(str(e))
            return tally

        if raw_content is None:
            logger.info(f"{adapter.name}: unchanged upstream, nothing to reparse")
            return tally

        for item in adapter.parse(raw_content):
            try:
                if isinstance(item, IngestError):
                    raise item
                outcome = self.matcher.reconcile(self.normalizer.normalize(item))
            except (ParseError, ValidationError, StoreError) as e:
                logger.warning(f"{adapter.name}: skipped record: {e}")
                tally.errors.append(str(e))
                continue

            if outcome is MatchOutcome.NEW:
                tally.new += 1
            elif outcome is MatchOutcome.UPDATED:
                tally.updated += 1
            else:
                tally.unchanged += 1

        logger.info(
            f"{adapter.name}: {tally.new} new, {tally.updated} updated, "
            f"{tally.unchanged} unchanged, {len(tally.errors)} errors"
        )
        return tally
