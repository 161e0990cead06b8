"""Adapter for the community Tockify calendar (JSON-LD events)."""
import json
import logging
from datetime import date, datetime
from typing import Any, Dict, Iterator, List, Optional

from bs4 import BeautifulSoup

from processor.errors import ParseError
from processor.models import RawRecord
from scraper.base import ParseResult, SourceAdapter

logger = logging.getLogger(__name__)


def parse_iso_datetime(value: str) -> datetime:
    """
    Parse an ISO 8601 date or datetime.

    Date-only values are returned as naive midnight (an all-day event).

    Raises:
        ValueError: If the value is not ISO 8601
    """
    value = value.strip()
    if len(value) == 10:
        return datetime.combine(date.fromisoformat(value), datetime.min.time())
    if value.endswith('Z'):
        value = value[:-1] + '+00:00'
    return datetime.fromisoformat(value)


class CommunityCalendarAdapter(SourceAdapter):
    """Reads schema.org Event objects embedded in the calendar page."""

    name = 'CommunityCalendar'
    endpoint = 'https://tockify.com/connectwetaskiwin'
    source_url = 'https://connectwetaskiwin.com/calendar-of-events.html'

    def parse(self, raw_content: str) -> Iterator[ParseResult]:
        """
        Parse events from JSON-LD script blocks.

        Args:
            raw_content: HTML content from the calendar page

        Yields:
            RawRecord per Event object, ParseError per unreadable block or event
        """
        soup = BeautifulSoup(raw_content, 'html.parser')

        for index, script in enumerate(soup.find_all('script', type='application/ld+json')):
            text = script.string or script.get_text()
            if not text or not text.strip():
                continue

            try:
                structured = json.loads(text)
            except json.JSONDecodeError as e:
                logger.warning(f"Error parsing JSON-LD script at index {index}: {e}")
                yield ParseError(f"Invalid JSON-LD block {index}: {e}", text[:200])
                continue

            items = structured if isinstance(structured, list) else [structured]
            for item in items:
                if isinstance(item, dict) and '@graph' in item:
                    items.extend(item['@graph'])
                    continue
                if not isinstance(item, dict) or item.get('@type') != 'Event':
                    continue
                yield self._parse_event(item)

    def _parse_event(self, data: Dict[str, Any]) -> ParseResult:
        title = (data.get('name') or '').strip()
        start = data.get('startDate')
        if not start:
            return ParseError(f"Event '{title or 'untitled'}' has no startDate", json.dumps(data)[:200])

        try:
            start_at = parse_iso_datetime(str(start))
            end_at = parse_iso_datetime(str(data['endDate'])) if data.get('endDate') else None
        except ValueError as e:
            return ParseError(f"Event '{title or 'untitled'}' has an invalid date: {e}", str(start))

        return RawRecord(
            title=title,
            source_name=self.name,
            source_url=self.source_url,
            start_at=start_at,
            end_at=end_at,
            location=self._location(data.get('location')),
            description=(data.get('description') or '').strip(),
            category_hint=self._keywords(data.get('keywords')),
            url=data.get('url') or None,
            kind='event'
        )

    def _location(self, location: Any) -> str:
        """Physical place name plus street address; virtual locations are ignored."""
        places: List[Dict[str, Any]] = location if isinstance(location, list) else [location]
        place: Optional[Dict[str, Any]] = next(
            (p for p in places if isinstance(p, dict) and p.get('@type') == 'Place'),
            None
        )
        if place is None:
            return ''

        name = (place.get('name') or '').strip()
        address = place.get('address')
        street = ''
        if isinstance(address, dict):
            street = (address.get('streetAddress') or '').strip()
        elif isinstance(address, str):
            street = address.strip()

        if street and street != name:
            return f"{name}, {street}" if name else street
        return name

    def _keywords(self, keywords: Any) -> str:
        if isinstance(keywords, list):
            return ' '.join(str(k) for k in keywords)
        return str(keywords or '')
