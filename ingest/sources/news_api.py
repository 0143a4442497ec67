from __future__ import annotations

import logging
from collections.abc import Iterable

from dateutil import parser as date_parser

from app.settings import Settings
from ingest.errors import SourceConfigurationError, SourceError, require_credential
from ingest.fetch import fetch_json
from ingest.sources.base import (
    SourceAdapter,
    SourceContext,
    SourceRunStats,
    store_candidates,
)
from normalize.candidate import build_candidate
from store.events import CandidateEvent


logger = logging.getLogger(__name__)

NAME = "News API"
NEWS_API_URL = "https://newsapi.org/v2/everything"
QUERY = "protest OR demonstration OR rally OR march"


def _as_hashtag(term: str) -> str:
    return "".join(ch for ch in str(term).lstrip("#") if ch.isalnum() or ch == "_")


async def collect_candidates(
    ctx: SourceContext,
    articles: list[dict],
    stats: SourceRunStats,
    *,
    source_type: str,
    tags: Iterable[str] = (),
) -> list[CandidateEvent]:
    """Shared article path for NewsAPI and feed pack items.

    Item categories and the source's own `tags` become hashtags.
    """
    candidates: list[CandidateEvent] = []
    for article in articles:
        published = article.get("publishedAt") or article.get("published")
        if isinstance(published, str):
            try:
                published = date_parser.isoparse(published)
            except ValueError:
                published = None
        hashtags = {_as_hashtag(t) for t in (*(article.get("tags") or ()), *tags)}

        result = await build_candidate(
            geo=ctx.geo,
            title=article.get("title") or "",
            description=article.get("description") or article.get("summary"),
            content=article.get("content"),
            source_type=source_type,
            source_url=article.get("url") or article.get("link"),
            published_at=published,
            hashtags=hashtags - {""},
        )
        if result.candidate is None:
            logger.debug(
                "skipping article (%s): %s", result.skip_reason, article.get("title")
            )
            stats.drop(result.skip_reason or "unknown")
            continue
        candidates.append(result.candidate)
    return candidates


def _run_news_api(api_key: str):
    async def run(ctx: SourceContext) -> SourceRunStats:
        settings = ctx.settings
        doc = await fetch_json(
            ctx.client,
            url=NEWS_API_URL,
            user_agent=settings.user_agent,
            params={
                "q": QUERY,
                "sources": settings.news_api_sources,
                "language": "en",
                "sortBy": "publishedAt",
                "pageSize": settings.news_api_max_articles,
            },
            extra_headers={"X-Api-Key": api_key},
        )
        if not isinstance(doc, dict) or doc.get("status") != "ok":
            message = doc.get("message") if isinstance(doc, dict) else None
            raise SourceError(f"news api error: {message or 'unknown error'}")

        articles = [a for a in doc.get("articles") or [] if isinstance(a, dict)]
        stats = SourceRunStats(fetched=len(articles))
        candidates = await collect_candidates(ctx, articles, stats, source_type="news")
        logger.info("%s: %d articles, %d candidates", NAME, len(articles), len(candidates))
        await store_candidates(ctx, candidates, stats, source_name=NAME)
        return stats

    return run


def news_api_source(settings: Settings) -> SourceAdapter:
    try:
        api_key = require_credential(settings.news_api_key, "NEWS_API_KEY")
    except SourceConfigurationError as e:
        return SourceAdapter.disabled(
            name=NAME, source_type="news", url=NEWS_API_URL, reason=str(e)
        )
    return SourceAdapter(
        name=NAME, source_type="news", url=NEWS_API_URL, run=_run_news_api(api_key)
    )
