from __future__ import annotations

import logging
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

from dateutil import parser as date_parser

from app.settings import Settings
from geo.geocoder import NO_RESULT, GeocodeError
from ingest.fetch import fetch_json
from ingest.parsers.json import extract_records
from ingest.sources.base import (
    SourceAdapter,
    SourceContext,
    SourceRunStats,
    store_candidates,
)
from normalize.classify import categorize_event, is_protest_event
from normalize.text_extract import collapse_whitespace
from store.events import CandidateEvent


logger = logging.getLogger(__name__)

NAME = "NYC Permits"
NYC_PERMITS_URL = "https://data.cityofnewyork.us/resource/tvpp-9vvx.json"
NYC_TZ = ZoneInfo("America/New_York")
WINDOW_DAYS = 30
PAGE_LIMIT = 1000


def _local_time(value: str | None) -> datetime | None:
    """Socrata floating timestamps are New York wall-clock times."""
    if not value:
        return None
    try:
        parsed = date_parser.isoparse(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=NYC_TZ)
    return parsed


def _coordinate(record: dict, key: str) -> float | None:
    value = record.get(key)
    if value in (None, ""):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


async def _position(
    ctx: SourceContext, record: dict, location: str
) -> tuple[float | None, float | None]:
    lat = _coordinate(record, "latitude")
    lon = _coordinate(record, "longitude")
    if lat is not None and lon is not None:
        return lat, lon
    if not ctx.geo.enabled:
        return None, None
    try:
        coords = await ctx.geo.resolve(f"{location}, New York, NY")
    except GeocodeError as e:
        logger.info("%s: geocoding failed for %r: %s", NAME, location, e)
        return None, None
    if coords is NO_RESULT:
        return None, None
    return coords.latitude, coords.longitude


async def _candidate(
    ctx: SourceContext, record: dict, stats: SourceRunStats
) -> CandidateEvent | None:
    title = collapse_whitespace(str(record.get("event_name") or ""))
    location = collapse_whitespace(str(record.get("event_location") or ""))
    start_time = _local_time(record.get("start_date_time"))
    if not title or not location or start_time is None:
        stats.drop("missing_fields")
        return None

    details = collapse_whitespace(str(record.get("event_details") or ""))
    if not is_protest_event(title, details):
        stats.drop("not_protest")
        return None

    end_time = _local_time(record.get("end_date_time"))
    if end_time is not None and end_time < start_time:
        end_time = None

    lat, lon = await _position(ctx, record, location)
    event_id = record.get("event_id")
    return CandidateEvent(
        title=title,
        description=details,
        cause=categorize_event(title, details),
        address=location,
        latitude=lat,
        longitude=lon,
        start_time=start_time,
        end_time=end_time,
        source_type="permit",
        source_url=f"{NYC_PERMITS_URL}/{event_id}" if event_id else None,
        permit_status="approved",
    )


async def run_permits(ctx: SourceContext) -> SourceRunStats:
    now = ctx.now()
    since = (now - timedelta(days=WINDOW_DAYS)).date().isoformat()
    until = (now + timedelta(days=WINDOW_DAYS)).date().isoformat()
    doc = await fetch_json(
        ctx.client,
        url=NYC_PERMITS_URL,
        user_agent=ctx.settings.user_agent,
        params={
            "$where": f"start_date_time >= '{since}' AND start_date_time <= '{until}'",
            "$limit": PAGE_LIMIT,
        },
    )
    records = extract_records(doc)

    stats = SourceRunStats(fetched=len(records))
    candidates: list[CandidateEvent] = []
    for record in records:
        candidate = await _candidate(ctx, record, stats)
        if candidate is not None:
            candidates.append(candidate)

    logger.info("%s: %d permits, %d protest candidates", NAME, len(records), len(candidates))
    await store_candidates(ctx, candidates, stats, source_name=NAME)
    return stats


def permits_source(settings: Settings) -> SourceAdapter:
    if not settings.nyc_permits_enabled:
        return SourceAdapter.disabled(
            name=NAME,
            source_type="permit",
            url=NYC_PERMITS_URL,
            reason="NYC_PERMITS_ENABLED is false",
        )
    return SourceAdapter(name=NAME, source_type="permit", url=NYC_PERMITS_URL, run=run_permits)
