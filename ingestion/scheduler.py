"""Civic-time job schedule computation and the per-job run state machine."""
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone, tzinfo
from typing import Dict, List, Optional, Tuple

from ingestion.orchestrator import IngestionOrchestrator
from processor.models import JobStatus, ScheduleState, ScrapeRunSummary, TriggerOptions
from storage.record_store import ScheduleStateStore

logger = logging.getLogger(__name__)

DAILY = 'daily'
WEEKLY = 'weekly'
MONDAY = 0

# A run still marked running after this long belongs to a crashed invocation.
STALE_RUN_AFTER = timedelta(minutes=15)


@dataclass(frozen=True)
class JobSpec:
    kind: str
    cadence: str
    hour: int
    weekday: Optional[int] = None
    sources: Optional[Tuple[str, ...]] = None
    force_refresh: bool = False

    def options(self) -> TriggerOptions:
        return TriggerOptions(force_refresh=self.force_refresh, sources=self.sources)


JOBS: Dict[str, JobSpec] = {
    'events': JobSpec(
        kind='events', cadence=DAILY, hour=6,
        sources=('CityCalendar', 'CommunityCalendar')
    ),
    'news': JobSpec(kind='news', cadence=DAILY, hour=6, sources=('LocalNews',)),
    'full-refresh': JobSpec(
        kind='full-refresh', cadence=WEEKLY, hour=6, weekday=MONDAY, force_refresh=True
    ),
}


class Clock:
    """Source of the current instant; replaced by a fixed clock in tests."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


def next_run(
    job_kind: str,
    now: datetime,
    enabled: bool,
    civic_tz: tzinfo,
    last_run: Optional[datetime] = None,
    jobs: Dict[str, JobSpec] = JOBS
) -> Optional[datetime]:
    """
    Compute when a job should next run.

    Args:
        job_kind: Key into the job table
        now: Current instant (timezone-aware)
        enabled: Whether the job is enabled
        civic_tz: Timezone the job's hour is expressed in
        last_run: Completion time of the previous run, if any

    Returns:
        Civic-time datetime strictly after now, or None when disabled

    Raises:
        ValueError: If the job kind is unknown or now is naive
    """
    if job_kind not in jobs:
        raise ValueError(f"Unknown job kind: {job_kind}")
    if now.tzinfo is None:
        raise ValueError("now must be timezone-aware")
    if not enabled:
        return None

    spec = jobs[job_kind]
    reference = max(now, last_run) if last_run is not None else now
    local = reference.astimezone(civic_tz)

    candidate = datetime.combine(local.date(), time(spec.hour), tzinfo=civic_tz)
    if spec.cadence == WEEKLY:
        candidate += timedelta(days=(spec.weekday - local.weekday()) % 7)
        step = timedelta(days=7)
    else:
        step = timedelta(days=1)

    while candidate <= reference:
        # Re-anchor on the civic date so DST shifts keep the wall-clock hour
        candidate = datetime.combine(
            (candidate + step).date(), time(spec.hour), tzinfo=civic_tz
        )
    return candidate


class JobScheduler:
    """
    Per-job state machine over persisted ScheduleState.

    disabled <-> idle (toggle), idle -> running (slot reached),
    running -> idle (run finished, successfully or not).
    """

    def __init__(
        self,
        state_store: ScheduleStateStore,
        orchestrator: IngestionOrchestrator,
        civic_tz: tzinfo,
        clock: Optional[Clock] = None,
        jobs: Dict[str, JobSpec] = JOBS
    ):
        self.state_store = state_store
        self.orchestrator = orchestrator
        self.civic_tz = civic_tz
        self.clock = clock or Clock()
        self.jobs = jobs

    def state(self, job_kind: str) -> ScheduleState:
        if job_kind not in self.jobs:
            raise ValueError(f"Unknown job kind: {job_kind}")
        return self.state_store.get(job_kind) or ScheduleState(job_kind=job_kind)

    def enable(self, job_kind: str) -> ScheduleState:
        state = self.state(job_kind)
        state.enabled = True
        if state.status is JobStatus.DISABLED:
            state.status = JobStatus.IDLE
        state.next_run_at = self._next_run(job_kind, state)
        self.state_store.put(state)
        logger.info(f"Job {job_kind} enabled; next run at {state.next_run_at}")
        return state

    def disable(self, job_kind: str) -> ScheduleState:
        state = self.state(job_kind)
        state.enabled = False
        if state.status is not JobStatus.RUNNING:
            state.status = JobStatus.DISABLED
        state.next_run_at = None
        self.state_store.put(state)
        logger.info(f"Job {job_kind} disabled")
        return state

    def due_jobs(self, now: Optional[datetime] = None) -> List[str]:
        """
        Job kinds whose slot has been reached.

        A job with no computed slot yet is scheduled, not run.
        """
        now = now or self.clock.now()
        due = []
        for kind in self.jobs:
            state = self.state(kind)
            if not state.enabled:
                continue
            if state.status is JobStatus.RUNNING and not self._is_stale(state, now):
                continue
            if state.next_run_at is None:
                state.next_run_at = next_run(
                    kind, now, True, self.civic_tz,
                    last_run=state.last_run_at, jobs=self.jobs
                )
                self.state_store.put(state)
                logger.info(f"Job {kind} scheduled for {state.next_run_at}")
                continue
            if state.next_run_at <= now:
                due.append(kind)
        return due

    def run_due_jobs(
        self, cancel_event: Optional[threading.Event] = None
    ) -> Dict[str, ScrapeRunSummary]:
        return {
            kind: self.run_job(kind, cancel_event=cancel_event)
            for kind in self.due_jobs()
        }

    def run_job(
        self, job_kind: str, cancel_event: Optional[threading.Event] = None
    ) -> ScrapeRunSummary:
        """
        Run one job and advance its schedule from the completion time.

        The schedule advances even when the run fails; no immediate retry.
        """
        state = self.state(job_kind)
        state.status = JobStatus.RUNNING
        state.running_since = self.clock.now()
        self.state_store.put(state)

        try:
            summary = self.orchestrator.trigger(
                self.jobs[job_kind].options(), cancel_event=cancel_event
            )
        finally:
            completed_at = self.clock.now()
            state.status = JobStatus.IDLE if state.enabled else JobStatus.DISABLED
            state.running_since = None
            state.last_run_at = completed_at
            state.next_run_at = self._next_run(job_kind, state, completed_at)
            self.state_store.put(state)

        logger.info(
            f"Job {job_kind} finished with {len(summary.errors)} errors; "
            f"next run at {state.next_run_at}"
        )
        return summary

    def _next_run(
        self,
        job_kind: str,
        state: ScheduleState,
        now: Optional[datetime] = None
    ) -> Optional[datetime]:
        return next_run(
            job_kind,
            now or self.clock.now(),
            state.enabled,
            self.civic_tz,
            last_run=state.last_run_at,
            jobs=self.jobs
        )

    def _is_stale(self, state: ScheduleState, now: datetime) -> bool:
        return state.running_since is None or now - state.running_since > STALE_RUN_AFTER
