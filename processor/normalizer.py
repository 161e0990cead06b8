"""Normalizer for turning scraped records into canonical listings."""
import logging
import re
from datetime import datetime, tzinfo
from typing import Optional

from processor.datetime_extractor import DateTimeExtractor
from processor.errors import ParseError, ValidationError
from processor.models import Category, NormalizedRecord, RawRecord

logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r'\s+')

# Whole category hints as sources publish them.
CATEGORY_PHRASES = {
    'city events': Category.GOVERNMENT,
    'city of wetaskiwin': Category.GOVERNMENT,
    'council': Category.GOVERNMENT,
    'community events': Category.COMMUNITY,
    'local news': Category.NEWS,
    'local-news': Category.NEWS,
    'news': Category.NEWS,
    'arts & culture': Category.ARTS,
    'food & drink': Category.FOOD,
    'kids & family': Category.FAMILY,
}

# Single words looked up when the whole hint is not a known phrase.
CATEGORY_KEYWORDS = {
    'community': Category.COMMUNITY,
    'government': Category.GOVERNMENT,
    'city': Category.GOVERNMENT,
    'music': Category.MUSIC,
    'concert': Category.MUSIC,
    'band': Category.MUSIC,
    'sports': Category.SPORTS,
    'sport': Category.SPORTS,
    'hockey': Category.SPORTS,
    'baseball': Category.SPORTS,
    'soccer': Category.SPORTS,
    'curling': Category.SPORTS,
    'arts': Category.ARTS,
    'art': Category.ARTS,
    'gallery': Category.ARTS,
    'exhibition': Category.ARTS,
    'theatre': Category.ARTS,
    'food': Category.FOOD,
    'dining': Category.FOOD,
    'market': Category.FOOD,
    'education': Category.EDUCATION,
    'school': Category.EDUCATION,
    'workshop': Category.EDUCATION,
    'library': Category.EDUCATION,
    'business': Category.BUSINESS,
    'networking': Category.BUSINESS,
    'family': Category.FAMILY,
    'kids': Category.FAMILY,
    'children': Category.FAMILY,
    'health': Category.HEALTH,
    'fitness': Category.HEALTH,
    'wellness': Category.HEALTH,
    'news': Category.NEWS,
}


def collapse_whitespace(value: Optional[str]) -> str:
    return _WHITESPACE.sub(' ', value or '').strip()


def resolve_category(hint: Optional[str]) -> Category:
    """
    Map a free-text category hint onto the fixed enumeration.

    Args:
        hint: Category text scraped from the source

    Returns:
        Matching Category, or Category.OTHER when unmapped
    """
    text = collapse_whitespace(hint).lower()
    if not text:
        return Category.OTHER

    if text in CATEGORY_PHRASES:
        return CATEGORY_PHRASES[text]

    for token in re.findall(r'[a-z]+', text):
        if token in CATEGORY_KEYWORDS:
            return CATEGORY_KEYWORDS[token]

    logger.debug(f"Unmapped category hint: {hint!r}")
    return Category.OTHER


class Normalizer:
    """Validates and normalizes raw records."""

    MAX_TITLE_LENGTH = 200
    MAX_DESCRIPTION_LENGTH = 2000

    def __init__(self, extractor: DateTimeExtractor):
        self.extractor = extractor

    @property
    def civic_tz(self) -> tzinfo:
        return self.extractor.civic_tz

    def normalize(self, raw: RawRecord) -> NormalizedRecord:
        """
        Normalize a single raw record.

        Args:
            raw: Record emitted by a source adapter

        Returns:
            NormalizedRecord

        Raises:
            ParseError: If the date/time text cannot be extracted
            ValidationError: If a required field is missing
        """
        title = collapse_whitespace(raw.title)[:self.MAX_TITLE_LENGTH]
        source_name = collapse_whitespace(raw.source_name)
        source_url = (raw.source_url or '').strip()
        location = collapse_whitespace(raw.location)
        description = collapse_whitespace(raw.description)[:self.MAX_DESCRIPTION_LENGTH]

        if not title:
            raise ValidationError(
                f"Record from {source_name or 'unknown source'} missing required field: title",
                field='title'
            )

        if raw.start_at is not None:
            start_at = self._to_civic(raw.start_at)
            end_at = self._to_civic(raw.end_at) if raw.end_at else None
        elif collapse_whitespace(raw.datetime_text):
            extracted = self.extractor.extract(raw.datetime_text)
            if isinstance(extracted, ParseError):
                raise ParseError(f"'{title}': {extracted}", extracted.fragment)
            start_at, end_at = extracted.start_at, extracted.end_at
            if not location and extracted.location:
                location = collapse_whitespace(extracted.location)
        else:
            raise ValidationError(
                f"'{title}' missing required field: start_at", field='start_at'
            )

        for field_name, value in (('source_name', source_name), ('source_url', source_url)):
            if not value:
                raise ValidationError(
                    f"'{title}' missing required field: {field_name}", field=field_name
                )

        return NormalizedRecord(
            title=title,
            start_at=start_at,
            end_at=end_at,
            location=location or None,
            category=resolve_category(raw.category_hint),
            source_name=source_name,
            source_url=source_url,
            description=description or None,
            url=(raw.url or '').strip() or None,
            kind=raw.kind
        )

    def _to_civic(self, value: datetime) -> datetime:
        """Naive datetimes are civic wall time; aware ones are converted."""
        if value.tzinfo is None:
            return value.replace(tzinfo=self.civic_tz)
        return value.astimezone(self.civic_tz)
