"""Adapter for the local newspaper's news listing."""
import logging
import re
import threading
from typing import Iterator, List, Optional, Set
from urllib.parse import urljoin

from bs4 import BeautifulSoup

from processor.errors import FetchError, ParseError
from processor.models import RawRecord
from scraper.base import ParseResult, SourceAdapter
from scraper.community_calendar import parse_iso_datetime

logger = logging.getLogger(__name__)

# Individual article paths look like /news/local-news/article-slug
ARTICLE_PATH = re.compile(r'/(news|sports|entertainment|life|opinion)/[^/]+/[^/]+/?$')


class LocalNewsAdapter(SourceAdapter):
    """
    Scraper for the local news section.

    The listing is paginated; ``fetch`` follows ``rel="next"`` links up to
    ``max_pages`` and returns every page body, so ``parse`` emits one flat
    sequence of articles.
    """

    name = 'LocalNews'
    BASE_URL = 'https://www.wetaskiwintimes.com'
    endpoint = 'https://www.wetaskiwintimes.com/category/news/local-news/'

    def __init__(self, max_pages: int = 3, **kwargs):
        super().__init__(**kwargs)
        self.max_pages = max_pages

    def fetch(
        self,
        endpoint: Optional[str] = None,
        force_refresh: bool = False,
        cancel_event: Optional[threading.Event] = None
    ) -> Optional[List[str]]:
        """
        Fetch the listing and its following pages.

        A later page that fails, or a cancellation after the first page,
        ends pagination and keeps the pages already fetched.

        Returns:
            List of page bodies, or None when the first page is not modified

        Raises:
            FetchError: If the first page cannot be fetched
        """
        first = self._get(
            endpoint or self.endpoint,
            conditional=not force_refresh,
            cancel_event=cancel_event
        )
        if first is None:
            return None

        pages = [first.text]
        next_url = self._next_page_url(first.text, first.url)
        seen = {first.url}

        while next_url and next_url not in seen and len(pages) < self.max_pages:
            seen.add(next_url)
            # Later pages are always fetched in full; only page one is conditional
            try:
                response = self._get(next_url, conditional=False, cancel_event=cancel_event)
            except FetchError as e:
                logger.warning(
                    f"{self.name}: stopped after {len(pages)} page(s), {next_url} failed: {e}"
                )
                break
            pages.append(response.text)
            next_url = self._next_page_url(response.text, response.url)

        logger.info(f"{self.name}: fetched {len(pages)} listing page(s)")
        return pages

    def parse(self, raw_content: List[str]) -> Iterator[ParseResult]:
        """
        Parse article cards from every fetched page.

        Args:
            raw_content: Page bodies returned by fetch

        Yields:
            RawRecord per article, ParseError per unreadable card
        """
        seen_links: Set[str] = set()

        for page in raw_content:
            soup = BeautifulSoup(page, 'html.parser')
            for card in soup.find_all('article'):
                link = next(
                    (a for a in card.find_all('a', href=True)
                     if ARTICLE_PATH.search(urljoin(self.BASE_URL, a['href']))),
                    None
                )
                if link is None:
                    continue

                url = urljoin(self.BASE_URL, link['href'])
                if url in seen_links:
                    continue
                seen_links.add(url)

                yield self._parse_card(card, link, url)

    def _parse_card(self, card, link, url: str) -> ParseResult:
        headline = card.find(['h2', 'h3'])
        title = (headline or link).get_text(' ', strip=True)

        stamp = card.find('time')
        published = stamp.get('datetime') if stamp else None
        if not published:
            return ParseError(f"Article '{title or url}' has no publication time", url)

        try:
            published_at = parse_iso_datetime(published)
        except ValueError as e:
            return ParseError(f"Article '{title or url}' has an invalid publication time: {e}", published)

        category = card.find(class_=re.compile(r'category|kicker'))
        excerpt = card.find('p')
        return RawRecord(
            title=title,
            source_name=self.name,
            source_url=self.endpoint,
            start_at=published_at,
            category_hint=category.get_text(' ', strip=True) if category else 'news',
            description=excerpt.get_text(' ', strip=True) if excerpt else '',
            url=url,
            kind='news'
        )

    def _next_page_url(self, html: str, current_url: str) -> Optional[str]:
        soup = BeautifulSoup(html, 'html.parser')
        link = soup.find(['link', 'a'], rel='next', href=True)
        if link is None:
            return None
        return urljoin(current_url, link['href'])
