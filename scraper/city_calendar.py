"""Adapter for the municipal online calendar."""
import logging
import re
from typing import Iterator, Optional, Tuple
from urllib.parse import urljoin

from bs4 import BeautifulSoup

from processor.datetime_extractor import normalize_text
from processor.errors import ParseError
from processor.models import RawRecord
from scraper.base import ParseResult, SourceAdapter

logger = logging.getLogger(__name__)

CALENDAR_LINK = re.compile(r'calendar\.aspx', re.IGNORECASE)
DATE_HINT = re.compile(r'[A-Za-z]+\.?\s+\d{1,2},\s*\d{4}')


class CityCalendarAdapter(SourceAdapter):
    """
    Scraper for the city calendar listing page.

    Each event is an ``<h3>`` linking to its Calendar.aspx detail page. The
    siblings up to the next ``<h3>`` carry the date/time/location line
    ("July 19, 2025, 10:00 AM - 4:00 PM@ Pet Centre") and a description.
    Events are grouped under ``<h2>`` calendar names, used as category hints.
    """

    name = 'CityCalendar'
    BASE_URL = 'https://wetaskiwin.ca'
    # City and community calendars in one listing, upcoming events only
    endpoint = 'https://wetaskiwin.ca/calendar.aspx?CID=25,23&showPastEvents=false'

    def parse(self, raw_content: str) -> Iterator[ParseResult]:
        """
        Parse events from calendar HTML.

        Args:
            raw_content: HTML content from the calendar page

        Yields:
            RawRecord per event heading, ParseError per unreadable heading
        """
        soup = BeautifulSoup(raw_content, 'html.parser')

        for heading in soup.find_all('h3'):
            link = heading.find('a', href=CALENDAR_LINK)
            if link is None:
                continue

            try:
                record = self._parse_event_heading(heading, link)
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                logger.warning(f"Failed to parse calendar heading: {e}")
                yield ParseError(f"Unreadable calendar entry: {e}", str(heading)[:200])
                continue

            yield record

    def _parse_event_heading(self, heading, link) -> ParseResult:
        title = normalize_text(link.get_text(' ', strip=True))
        if not title:
            return ParseError("Calendar entry without a title", str(heading)[:200])

        date_text, description = self._read_details(heading)
        if not date_text:
            logger.info(f"Skipping event '{title}' - no date/time information found")
            return ParseError(f"No date/time text found for '{title}'", str(heading)[:200])

        group = heading.find_previous('h2')
        return RawRecord(
            title=title,
            source_name=self.name,
            source_url=self.endpoint,
            datetime_text=date_text,
            description=description or '',
            category_hint=normalize_text(group.get_text(' ', strip=True)) if group else '',
            url=urljoin(self.BASE_URL + '/', link.get('href', '')),
            kind='event'
        )

    def _read_details(self, heading) -> Tuple[Optional[str], Optional[str]]:
        """
        Collect the date line and description that follow an event heading.

        Returns:
            Tuple of (date_text, description)
        """
        date_text = None
        description = None

        for sibling in heading.find_next_siblings():
            if sibling.name in ('h2', 'h3'):
                break

            text = normalize_text(sibling.get_text(' ', strip=True))
            if not text:
                continue

            match = DATE_HINT.search(text)
            if date_text is None and match:
                date_text = text[match.start():]
            elif description is None and len(text) > 10 and 'More Details' not in text:
                description = text

            if date_text and description:
                break

        return date_text, description
