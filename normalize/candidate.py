from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime

from geo.geocoder import NO_RESULT, GeocodeError, GeoResolver
from normalize.classify import categorize_event, is_protest_event
from normalize.text_extract import (
    collapse_whitespace,
    extract_date_from_text,
    extract_hashtags,
    extract_location_from_text,
)
from store.events import CandidateEvent


logger = logging.getLogger(__name__)

NOT_PROTEST = "not_protest"
NO_LOCATION = "no_location"
GEOCODE_FAILED = "geocode_failed"
NO_COORDINATES = "no_coordinates"
NO_DATE = "no_date"


@dataclass(frozen=True)
class ExtractionResult:
    candidate: CandidateEvent | None = None
    skip_reason: str | None = None

    @classmethod
    def skip(cls, reason: str) -> ExtractionResult:
        return cls(candidate=None, skip_reason=reason)


async def build_candidate(
    *,
    geo: GeoResolver,
    title: str,
    description: str | None,
    content: str | None,
    source_type: str,
    source_url: str | None,
    published_at: datetime | None,
    hashtags: Iterable[str] = (),
    address: str | None = None,
    require_protest: bool = True,
) -> ExtractionResult:
    """Turn a free-text item into a candidate event or a definitive skip.

    The start time comes from the text, relative to `published_at`, and falls
    back to `published_at` itself.
    """
    title = collapse_whitespace(title or "")
    description = collapse_whitespace(description or "")
    full_text = " ".join(p for p in (title, description, content or "") if p)

    if not title:
        return ExtractionResult.skip(NOT_PROTEST)
    if require_protest and not is_protest_event(title, description):
        return ExtractionResult.skip(NOT_PROTEST)

    location = address or extract_location_from_text(full_text)
    if not location:
        return ExtractionResult.skip(NO_LOCATION)

    try:
        coords = await geo.resolve(location)
    except GeocodeError as e:
        logger.info("geocoding failed for %r: %s", location, e)
        return ExtractionResult.skip(GEOCODE_FAILED)
    if coords is NO_RESULT:
        return ExtractionResult.skip(NO_COORDINATES)

    start_time = extract_date_from_text(full_text, published_at) or published_at
    if start_time is None:
        return ExtractionResult.skip(NO_DATE)

    tags = set(hashtags) | extract_hashtags(full_text)
    if not description and content:
        description = collapse_whitespace(content)[:500]
    candidate = CandidateEvent(
        title=title,
        description=description,
        cause=categorize_event(title, description),
        address=location,
        latitude=coords.latitude,
        longitude=coords.longitude,
        start_time=start_time,
        source_type=source_type,
        source_url=source_url,
        hashtags=tags,
    )
    return ExtractionResult(candidate=candidate)
