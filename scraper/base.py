"""Base class for per-source fetch/parse adapters."""
import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterator, Optional, Union

import requests

from processor.errors import FetchError, ParseError
from processor.models import RawRecord

logger = logging.getLogger(__name__)

DEFAULT_HEADERS = {
    'User-Agent': (
        'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 '
        '(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36'
    ),
    'Accept': 'text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8',
    'Accept-Language': 'en-US,en;q=0.5',
}

ParseResult = Union[RawRecord, ParseError]


class SourceAdapter(ABC):
    """
    One upstream source: fetch raw content, parse it into raw records.

    Subclasses set ``name`` and ``endpoint`` and implement ``parse``.
    """

    name: str = ''
    endpoint: str = ''

    def __init__(
        self,
        timeout: int = 15,
        max_retries: int = 3,
        base_delay: float = 1.0,
        session: Optional[requests.Session] = None
    ):
        """
        Initialize the adapter.

        Args:
            timeout: HTTP request timeout in seconds (default: 15)
            max_retries: Attempts per request before giving up
            base_delay: First retry delay in seconds; doubles per attempt
            session: Optional requests session to reuse
        """
        self.timeout = timeout
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.session = session or requests.Session()
        self._validators: Dict[str, Dict[str, str]] = {}

    def fetch(
        self,
        endpoint: Optional[str] = None,
        force_refresh: bool = False,
        cancel_event: Optional[threading.Event] = None
    ) -> Optional[Any]:
        """
        Fetch raw content for this source.

        Args:
            endpoint: URL to fetch; defaults to the adapter's endpoint
            force_refresh: Skip conditional-request validators
            cancel_event: Stops retries and backoff waits once set

        Returns:
            Response body, or None when the source answered 304 Not Modified

        Raises:
            FetchError: If all retry attempts fail or the run is cancelled
        """
        response = self._get(
            endpoint or self.endpoint,
            conditional=not force_refresh,
            cancel_event=cancel_event
        )
        if response is None:
            return None
        return response.text

    @abstractmethod
    def parse(self, raw_content: Any) -> Iterator[ParseResult]:
        """Yield raw records, or ParseError for fragments that could not be read."""

    def _get(
        self,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        conditional: bool = True,
        cancel_event: Optional[threading.Event] = None
    ) -> Optional[requests.Response]:
        """
        GET a URL with retry logic and optional conditional headers.

        Returns:
            Response, or None on 304 Not Modified

        Raises:
            FetchError: If all retry attempts fail or the run is cancelled
        """
        cancel_event = cancel_event or threading.Event()
        headers = dict(DEFAULT_HEADERS)
        cached = self._validators.get(url, {})
        if conditional:
            if 'etag' in cached:
                headers['If-None-Match'] = cached['etag']
            if 'last_modified' in cached:
                headers['If-Modified-Since'] = cached['last_modified']

        for attempt in range(self.max_retries):
            if cancel_event.is_set():
                logger.warning(f"{self.name}: run cancelled before fetching {url}")
                raise FetchError(self.name, "run cancelled")

            try:
                logger.info(
                    f"{self.name}: fetching {url} (attempt {attempt + 1}/{self.max_retries})"
                )
                response = self.session.get(
                    url,
                    params=params,
                    headers=headers,
                    timeout=self.timeout
                )
                if response.status_code == 304:
                    logger.info(f"{self.name}: {url} not modified since last fetch")
                    return None
                response.raise_for_status()
                self._remember_validators(url, response)
                return response

            except requests.RequestException as e:
                if attempt < self.max_retries - 1:
                    # Calculate exponential backoff delay
                    delay = self.base_delay * (2 ** attempt)
                    logger.warning(
                        f"{self.name}: request failed (attempt {attempt + 1}/{self.max_retries}): "
                        f"{e}. Retrying in {delay} seconds..."
                    )
                    cancel_event.wait(delay)
                else:
                    logger.error(
                        f"{self.name}: all {self.max_retries} retry attempts failed. Last error: {e}"
                    )
                    raise FetchError(self.name, f"Failed to fetch {url}: {e}") from e

        raise FetchError(self.name, f"Failed to fetch {url}: no attempts made")

    def _remember_validators(self, url: str, response: requests.Response) -> None:
        validators = {}
        if response.headers.get('ETag'):
            validators['etag'] = response.headers['ETag']
        if response.headers.get('Last-Modified'):
            validators['last_modified'] = response.headers['Last-Modified']
        if validators:
            self._validators[url] = validators
