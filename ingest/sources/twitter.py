from __future__ import annotations

import logging
from datetime import datetime, timedelta

from dateutil import parser as date_parser

from app.settings import Settings
from geo.rate_limit import RateLimiter
from ingest.errors import SourceConfigurationError, require_credential
from ingest.fetch import fetch_json
from ingest.sources.base import (
    SourceAdapter,
    SourceContext,
    SourceRunStats,
    store_candidates,
)
from normalize.candidate import build_candidate
from normalize.text_extract import first_sentence
from store.events import CandidateEvent, to_iso


logger = logging.getLogger(__name__)

NAME = "Twitter Hashtags"
TWITTER_API_URL = "https://api.twitter.com/2/tweets/search/recent"

PROTEST_HASHTAGS: tuple[str, ...] = (
    "#protest",
    "#rally",
    "#march",
    "#climatestrike",
    "#blacklivesmatter",
    "#immigration",
    "#reproductiverights",
    "#lgbtq",
    "#labor",
    "#strike",
)

REQUESTS_PER_WINDOW = 450
WINDOW_SECONDS = 15 * 60


def _places_by_id(doc: dict) -> dict[str, str]:
    places = (doc.get("includes") or {}).get("places") or []
    return {
        str(p["id"]): str(p["full_name"])
        for p in places
        if isinstance(p, dict) and p.get("id") and p.get("full_name")
    }


def _created_at(tweet: dict) -> datetime | None:
    value = tweet.get("created_at")
    if not isinstance(value, str) or not value:
        return None
    try:
        return date_parser.isoparse(value)
    except (ValueError, OverflowError):
        logger.debug("bad created_at on tweet %s: %r", tweet.get("id"), value)
        return None


def _run_twitter(bearer_token: str, limiter: RateLimiter):
    async def run(ctx: SourceContext) -> SourceRunStats:
        settings = ctx.settings
        start_time = ctx.now() - timedelta(days=settings.twitter_search_days_back)

        await limiter.acquire()
        doc = await fetch_json(
            ctx.client,
            url=TWITTER_API_URL,
            user_agent=settings.user_agent,
            params={
                "query": " OR ".join(PROTEST_HASHTAGS),
                "max_results": settings.twitter_max_results_per_request,
                "start_time": to_iso(start_time),
                "tweet.fields": "created_at,geo,entities",
                "expansions": "geo.place_id",
                "place.fields": "full_name,geo",
            },
            extra_headers={"Authorization": f"Bearer {bearer_token}"},
        )
        doc = doc if isinstance(doc, dict) else {}
        tweets = [t for t in doc.get("data") or [] if isinstance(t, dict)]
        places = _places_by_id(doc)

        stats = SourceRunStats(fetched=len(tweets))
        candidates: list[CandidateEvent] = []
        for tweet in tweets:
            text = str(tweet.get("text") or "")
            place_id = (tweet.get("geo") or {}).get("place_id")
            result = await build_candidate(
                geo=ctx.geo,
                title=first_sentence(text),
                description=text,
                content=None,
                source_type="social",
                source_url=f"https://twitter.com/i/web/status/{tweet.get('id')}",
                published_at=_created_at(tweet),
                address=places.get(str(place_id)) if place_id else None,
                require_protest=False,
            )
            if result.candidate is None:
                logger.debug("skipping tweet (%s): %s", result.skip_reason, tweet.get("id"))
                stats.drop(result.skip_reason or "unknown")
                continue
            candidates.append(result.candidate)

        logger.info("%s: %d tweets, %d candidates", NAME, len(tweets), len(candidates))
        await store_candidates(ctx, candidates, stats, source_name=NAME)
        return stats

    return run


def twitter_source(settings: Settings, *, limiter: RateLimiter | None = None) -> SourceAdapter:
    try:
        token = require_credential(settings.twitter_bearer_token, "TWITTER_BEARER_TOKEN")
    except SourceConfigurationError as e:
        return SourceAdapter.disabled(
            name=NAME, source_type="social", url=TWITTER_API_URL, reason=str(e)
        )
    limiter = limiter or RateLimiter(REQUESTS_PER_WINDOW, WINDOW_SECONDS)
    return SourceAdapter(
        name=NAME,
        source_type="social",
        url=TWITTER_API_URL,
        run=_run_twitter(token, limiter),
    )
