"""Read-cache invalidation after an ingest run commits."""
import logging
from abc import ABC, abstractmethod
from typing import Optional

import requests

logger = logging.getLogger(__name__)


class CacheInvalidator(ABC):
    """Clears the external read cache once per ingest run."""

    @abstractmethod
    def clear(self) -> None:
        """Invalidate cached read results; raises on failure."""


class NoopCacheInvalidator(CacheInvalidator):
    """Used when no read cache is configured."""

    def clear(self) -> None:
        logger.debug("No read cache configured; skipping invalidation")


class WebhookCacheInvalidator(CacheInvalidator):
    """Asks the front end to drop its cache through an authenticated webhook."""

    def __init__(self, url: str, token: Optional[str] = None, timeout: int = 10):
        self.url = url
        self.token = token
        self.timeout = timeout

    def clear(self) -> None:
        headers = {'Authorization': f"Bearer {self.token}"} if self.token else {}
        response = requests.post(self.url, headers=headers, timeout=self.timeout)
        response.raise_for_status()
        logger.info(f"Read cache invalidated via {self.url}")
