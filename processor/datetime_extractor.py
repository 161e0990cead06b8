"""Free-text date/time/location extraction for calendar listings."""
import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, tzinfo
from typing import Callable, Optional, Tuple, Union

from processor.errors import ParseError

logger = logging.getLogger(__name__)

# Full and abbreviated English month names; strptime's %B depends on locale.
MONTHS = {
    'january': 1, 'jan': 1,
    'february': 2, 'feb': 2,
    'march': 3, 'mar': 3,
    'april': 4, 'apr': 4,
    'may': 5,
    'june': 6, 'jun': 6,
    'july': 7, 'jul': 7,
    'august': 8, 'aug': 8,
    'september': 9, 'sep': 9, 'sept': 9,
    'october': 10, 'oct': 10,
    'november': 11, 'nov': 11,
    'december': 12, 'dec': 12,
}

_UNICODE_SPACES = re.compile(r'[\u00a0\u1680\u2000-\u200a\u202f\u205f\u3000]')
_WHITESPACE = re.compile(r'\s+')

_DATE = r'[A-Za-z]+\.?\s+\d{1,2},\s*\d{4}'
_TIME = r'\d{1,2}:\d{2}\s*[AaPp]\.?\s*[Mm]\.?'
_WEEKDAY = r'(?:[A-Za-z]+,\s*)?'
_DASH = r'\s*[-\u2013\u2014]\s*'
# Trailing location, "@" optional; text holding a clock time is never a location.
_LOCATION = (
    r'(?:\s*@?\s*(?P<location>(?![^@]*\d{1,2}:\d{2}\s*[AaPp])[^@]*?))?\s*$'
)

_DATE_PARTS = re.compile(r'(?P<month>[A-Za-z]+)\.?\s+(?P<day>\d{1,2}),\s*(?P<year>\d{4})')
_TIME_PARTS = re.compile(
    r'(?P<hour>\d{1,2}):(?P<minute>\d{2})\s*(?P<meridiem>[AaPp])\.?\s*[Mm]\.?'
)


@dataclass(frozen=True)
class ExtractedDateTime:
    start_at: datetime
    end_at: Optional[datetime] = None
    location: Optional[str] = None
    pattern: str = ''


def normalize_text(text: str) -> str:
    """Replace unicode spaces and collapse whitespace runs."""
    return _WHITESPACE.sub(' ', _UNICODE_SPACES.sub(' ', text or '')).strip()


def parse_date(text: str) -> date:
    """
    Parse a "Month D, YYYY" date.

    Raises:
        ValueError: If the month name is unknown or the date is impossible
    """
    match = _DATE_PARTS.fullmatch(text.strip())
    if not match:
        raise ValueError(f"Unrecognized date: {text!r}")
    month = MONTHS.get(match.group('month').lower())
    if month is None:
        raise ValueError(f"Unknown month name: {match.group('month')!r}")
    return date(int(match.group('year')), month, int(match.group('day')))


def parse_clock_time(text: str) -> time:
    """
    Parse a 12-hour "H:MM AM" time.

    Raises:
        ValueError: If the text is not a valid 12-hour time
    """
    match = _TIME_PARTS.fullmatch(text.strip())
    if not match:
        raise ValueError(f"Unrecognized time: {text!r}")
    hour = int(match.group('hour'))
    minute = int(match.group('minute'))
    if not 1 <= hour <= 12 or minute > 59:
        raise ValueError(f"Time out of range: {text!r}")
    hour %= 12
    if match.group('meridiem').lower() == 'p':
        hour += 12
    return time(hour, minute)


class DateTimeExtractor:
    """
    Turn listing text such as "July 19, 2025, 10:00 AM - 4:00 PM@ Pet Centre"
    into civic-time datetimes.

    Variants are tried in order and the first match wins. Each pattern
    spans the whole text (an optional leading weekday aside). Trailing text
    is kept as the location, with or without "@", unless it holds a clock
    time, so a time range never matches the single-time variant.
    """

    def __init__(self, civic_tz: tzinfo):
        self.civic_tz = civic_tz
        self.variants: Tuple[Tuple[str, re.Pattern, Callable], ...] = (
            (
                'single',
                re.compile(
                    rf'{_WEEKDAY}(?P<date>{_DATE}),\s*(?P<start>{_TIME}){_LOCATION}'
                ),
                self._single
            ),
            (
                'same_day_range',
                re.compile(
                    rf'{_WEEKDAY}(?P<date>{_DATE}),\s*(?P<start>{_TIME}){_DASH}'
                    rf'(?P<end>{_TIME}){_LOCATION}'
                ),
                self._same_day_range
            ),
            (
                'multi_day_range',
                re.compile(
                    rf'{_WEEKDAY}(?P<date>{_DATE}),\s*(?P<start>{_TIME}){_DASH}'
                    rf'(?P<end_date>{_DATE}),\s*(?P<end>{_TIME}){_LOCATION}'
                ),
                self._multi_day_range
            ),
        )

    def extract(self, text: str) -> Union[ExtractedDateTime, ParseError]:
        """
        Extract start/end datetimes and an optional trailing location.

        Args:
            text: Free text from a listing

        Returns:
            ExtractedDateTime on success, otherwise a ParseError (never raised)
        """
        normalized = normalize_text(text)
        for name, pattern, extractor in self.variants:
            match = pattern.match(normalized)
            if not match:
                continue
            try:
                start_at, end_at = extractor(match)
            except ValueError as e:
                return ParseError(f"Invalid date/time in {normalized!r}: {e}", text)
            location = (match.group('location') or '').strip(' ,') or None
            return ExtractedDateTime(
                start_at=start_at,
                end_at=end_at,
                location=location,
                pattern=name
            )

        logger.debug(f"No date/time pattern matched: {normalized!r}")
        return ParseError(f"No date/time pattern matched {normalized!r}", text)

    def _civic(self, day: date, clock: time) -> datetime:
        return datetime.combine(day, clock, tzinfo=self.civic_tz)

    def _single(self, match: re.Match) -> Tuple[datetime, Optional[datetime]]:
        day = parse_date(match.group('date'))
        return self._civic(day, parse_clock_time(match.group('start'))), None

    def _same_day_range(self, match: re.Match) -> Tuple[datetime, Optional[datetime]]:
        day = parse_date(match.group('date'))
        start_clock = parse_clock_time(match.group('start'))
        end_clock = parse_clock_time(match.group('end'))
        end_day = day + timedelta(days=1) if end_clock < start_clock else day
        return self._civic(day, start_clock), self._civic(end_day, end_clock)

    def _multi_day_range(self, match: re.Match) -> Tuple[datetime, Optional[datetime]]:
        start_at = self._civic(
            parse_date(match.group('date')),
            parse_clock_time(match.group('start'))
        )
        end_at = self._civic(
            parse_date(match.group('end_date')),
            parse_clock_time(match.group('end'))
        )
        return start_at, end_at
