"""AWS Lambda handler for civic listings ingestion."""
import json
import logging
import os
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ingestion.orchestrator import IngestionOrchestrator
from ingestion.scheduler import JOBS, JobScheduler
from processor.datetime_extractor import DateTimeExtractor
from processor.entity_matcher import EntityMatcher
from processor.models import TriggerOptions
from processor.normalizer import Normalizer
from scraper.city_calendar import CityCalendarAdapter
from scraper.community_calendar import CommunityCalendarAdapter
from scraper.local_news import LocalNewsAdapter
from storage.cache import CacheInvalidator, NoopCacheInvalidator, WebhookCacheInvalidator
from storage.dynamodb_store import DynamoDBRecordStore, DynamoDBScheduleStateStore


# Configure JSON logging
class JsonFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            'timestamp': self.formatTime(record),
            'level': record.levelname,
            'message': record.getMessage(),
            'logger': record.name
        }

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data)


def setup_logging(log_level: str = 'INFO') -> None:
    """
    Configure logging with JSON formatter.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
    """
    root_logger = logging.getLogger()

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root_logger.addHandler(handler)

    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))


@dataclass(frozen=True)
class Config:
    table_name: str
    state_table_name: str
    log_level: str
    timeout_seconds: int
    civic_tz: ZoneInfo
    retention_days: int
    news_max_pages: int
    cache_invalidation_url: Optional[str]
    cache_invalidation_token: Optional[str]


def load_config() -> Config:
    """
    Read configuration from environment variables.

    Raises:
        ValueError: If a value is malformed
    """
    tz_name = os.environ.get('CIVIC_TIMEZONE', 'America/Edmonton')
    try:
        civic_tz = ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ValueError(f"Invalid CIVIC_TIMEZONE {tz_name!r}") from e

    return Config(
        table_name=os.environ.get('TABLE_NAME', 'civic-listings'),
        state_table_name=os.environ.get('STATE_TABLE_NAME', 'civic-listings-schedule'),
        log_level=os.environ.get('LOG_LEVEL', 'INFO'),
        timeout_seconds=int(os.environ.get('TIMEOUT_SECONDS', '15')),
        civic_tz=civic_tz,
        retention_days=int(os.environ.get('RETENTION_DAYS', '90')),
        news_max_pages=int(os.environ.get('NEWS_MAX_PAGES', '3')),
        cache_invalidation_url=os.environ.get('CACHE_INVALIDATION_URL') or None,
        cache_invalidation_token=os.environ.get('CACHE_INVALIDATION_TOKEN') or None
    )


def build_scheduler(config: Config) -> JobScheduler:
    """Wire adapters, pipeline stages, stores and cache into a scheduler."""
    store = DynamoDBRecordStore(table_name=config.table_name)
    state_store = DynamoDBScheduleStateStore(table_name=config.state_table_name)

    cache_invalidator: CacheInvalidator = NoopCacheInvalidator()
    if config.cache_invalidation_url:
        cache_invalidator = WebhookCacheInvalidator(
            config.cache_invalidation_url, token=config.cache_invalidation_token
        )

    orchestrator = IngestionOrchestrator(
        adapters=[
            CityCalendarAdapter(timeout=config.timeout_seconds),
            CommunityCalendarAdapter(timeout=config.timeout_seconds),
            LocalNewsAdapter(max_pages=config.news_max_pages, timeout=config.timeout_seconds),
        ],
        normalizer=Normalizer(DateTimeExtractor(config.civic_tz)),
        store=store,
        matcher=EntityMatcher(store, retention_days=config.retention_days),
        cache_invalidator=cache_invalidator,
        schedule_store=state_store,
        job_kinds=list(JOBS)
    )
    return JobScheduler(state_store, orchestrator, civic_tz=config.civic_tz)


# Stop starting new source fetches this long before Lambda times out
CANCEL_MARGIN_SECONDS = 30


def _deadline_cancel(context: Any) -> Tuple[threading.Event, Optional[threading.Timer]]:
    """Event that is set shortly before the invocation runs out of time."""
    cancel_event = threading.Event()
    remaining = getattr(context, 'get_remaining_time_in_millis', None)
    remaining_ms = remaining() if callable(remaining) else None
    if not isinstance(remaining_ms, (int, float)):
        return cancel_event, None

    timer = threading.Timer(
        max(remaining_ms / 1000 - CANCEL_MARGIN_SECONDS, 0), cancel_event.set
    )
    timer.daemon = True
    timer.start()
    return cancel_event, timer


def _response(status_code: int, body: Dict[str, Any]) -> Dict[str, Any]:
    return {'statusCode': status_code, 'body': json.dumps(body)}


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Main Lambda handler function.

    Args:
        event: Direct invocation payload with an "action", or an EventBridge
            scheduled event (runs every job whose slot has been reached)
        context: Lambda context object

    Returns:
        Response dict with statusCode and a JSON body
    """
    start_time = time.time()
    event = event or {}

    try:
        config = load_config()
    except ValueError as e:
        setup_logging()
        logging.getLogger(__name__).error(f"Invalid configuration: {e}")
        return _response(400, {'message': 'Invalid configuration', 'error': str(e)})

    setup_logging(config.log_level)
    logger = logging.getLogger(__name__)
    action = event.get('action', 'scheduled')

    logger.info(
        f"Lambda execution started: {action}",
        extra={'table_name': config.table_name, 'action': action}
    )

    cancel_event, timer = _deadline_cancel(context)
    try:
        scheduler = build_scheduler(config)

        if action == 'trigger':
            summary = scheduler.orchestrator.trigger(
                TriggerOptions.from_payload(event), cancel_event=cancel_event
            )
            body = {'message': 'Ingestion completed', 'summary': summary.to_dict()}
        elif action == 'stats':
            body = {'message': 'Ingestion stats', 'stats': scheduler.orchestrator.stats()}
        elif action in ('enable', 'disable'):
            job = event.get('job', '')
            state = scheduler.enable(job) if action == 'enable' else scheduler.disable(job)
            body = {
                'message': f"Job {job} {action}d",
                'job': job,
                'enabled': state.enabled,
                'nextRunAt': state.next_run_at.isoformat() if state.next_run_at else None
            }
        elif action == 'scheduled':
            summaries = scheduler.run_due_jobs(cancel_event=cancel_event)
            body = {
                'message': f"Ran {len(summaries)} due job(s)",
                'jobs': {kind: summary.to_dict() for kind, summary in summaries.items()}
            }
        else:
            return _response(400, {'message': f"Unknown action: {action}"})

    except ValueError as e:
        # Bad request: unknown source or job kind, unreadable flag
        logger.error(f"Invalid request: {e}", extra={'error_type': type(e).__name__})
        return _response(400, {
            'message': 'Invalid request',
            'error': str(e),
            'error_type': type(e).__name__
        })

    except Exception as e:
        duration = time.time() - start_time
        logger.error(
            f"Lambda execution failed: {str(e)}",
            extra={
                'duration_seconds': round(duration, 2),
                'error_type': type(e).__name__
            },
            exc_info=True
        )
        return _response(500, {
            'message': 'Ingestion failed',
            'error': str(e),
            'error_type': type(e).__name__,
            'duration_seconds': round(duration, 2)
        })

    finally:
        if timer is not None:
            timer.cancel()

    duration = time.time() - start_time
    body['duration_seconds'] = round(duration, 2)
    logger.info(
        f"Lambda execution completed: {action}",
        extra={'duration_seconds': round(duration, 2)}
    )
    return _response(200, body)
