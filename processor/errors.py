"""Error taxonomy for the ingestion pipeline."""
from typing import Optional


class IngestError(Exception):
    """Base class for expected, recordable ingestion failures."""


class FetchError(IngestError):
    """A source could not be fetched (network failure, bad status, timeout)."""

    def __init__(self, source: str, message: str):
        super().__init__(message)
        self.source = source


class ParseError(IngestError):
    """A fragment of source content could not be parsed."""

    def __init__(self, message: str, fragment: Optional[str] = None):
        super().__init__(message)
        self.fragment = fragment


class ValidationError(IngestError):
    """A normalized record is missing a required field."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class StoreError(IngestError):
    """Persisting a single record failed."""

    def __init__(self, message: str, fingerprint: Optional[str] = None):
        super().__init__(message)
        self.fingerprint = fingerprint
