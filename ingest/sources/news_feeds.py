from __future__ import annotations

import logging

from app.settings import Settings
from ingest.feed_packs import FeedPackEntry, load_feed_packs
from ingest.fetch import fetch
from ingest.parsers.rss import parse_rss
from ingest.sources.base import (
    SourceAdapter,
    SourceContext,
    SourceRunStats,
    store_candidates,
)
from ingest.sources.news_api import collect_candidates


logger = logging.getLogger(__name__)


def _run_feed(entry: FeedPackEntry):
    async def run(ctx: SourceContext) -> SourceRunStats:
        body, fetch_ms = await fetch(
            ctx.client, url=entry.url, user_agent=ctx.settings.user_agent
        )
        items = parse_rss(body)
        logger.info("%s: %d items in %dms", entry.name, len(items), fetch_ms)

        stats = SourceRunStats(fetched=len(items))
        candidates = await collect_candidates(
            ctx, items, stats, source_type="news", tags=entry.tags
        )
        await store_candidates(ctx, candidates, stats, source_name=entry.name)
        return stats

    return run


def feed_pack_sources(settings: Settings) -> list[SourceAdapter]:
    adapters: list[SourceAdapter] = []
    for entry in load_feed_packs(settings.feeds_dir):
        if not entry.enabled:
            adapters.append(
                SourceAdapter.disabled(
                    name=entry.name,
                    source_type="news",
                    url=entry.url,
                    reason=f"disabled in feed pack {entry.pack_id}",
                )
            )
            continue
        adapters.append(
            SourceAdapter(
                name=entry.name, source_type="news", url=entry.url, run=_run_feed(entry)
            )
        )
    return adapters
