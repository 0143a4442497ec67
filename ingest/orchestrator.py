from __future__ import annotations

import asyncio
import logging
import sqlite3
from collections.abc import Iterable
from dataclasses import dataclass, field

from app.settings import Settings
from health.health import initialize_source, record_source_error, record_source_success
from ingest.sources.base import SourceAdapter, SourceContext, SourceRunStats
from ingest.sources.news_api import news_api_source
from ingest.sources.news_feeds import feed_pack_sources
from ingest.sources.permits import permits_source
from ingest.sources.twitter import twitter_source


logger = logging.getLogger(__name__)


def configured_sources(settings: Settings) -> list[SourceAdapter]:
    return [
        permits_source(settings),
        news_api_source(settings),
        twitter_source(settings),
        *feed_pack_sources(settings),
    ]


@dataclass
class RunReport:
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[dict] = field(default_factory=list)
    stats: dict[str, SourceRunStats] = field(default_factory=dict)

    @property
    def exit_code(self) -> int:
        return 1 if self.failed > 0 else 0

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "errors": list(self.errors),
            "stats": {name: s.to_dict() for name, s in self.stats.items()},
        }


def _error_message(e: BaseException, timeout_seconds: float) -> str:
    if isinstance(e, TimeoutError):
        return f"timed out after {timeout_seconds:g}s"
    return str(e) or e.__class__.__name__


def _record_failure(ctx: SourceContext, adapter: SourceAdapter, message: str) -> None:
    try:
        record_source_error(ctx.db, name=adapter.name, error=message)
    except sqlite3.Error:
        logger.exception("could not record failure for source %s", adapter.name)


async def _run_one(
    adapter: SourceAdapter,
    ctx: SourceContext,
    report: RunReport,
    sem: asyncio.Semaphore,
    timeout_seconds: float,
) -> None:
    async with sem:
        logger.info("running source: %s", adapter.name)
        try:
            initialize_source(
                ctx.db, name=adapter.name, source_type=adapter.source_type, url=adapter.url
            )
            stats = await asyncio.wait_for(adapter.run(ctx), timeout=timeout_seconds)
            record_source_success(ctx.db, name=adapter.name)
        except Exception as e:
            message = _error_message(e, timeout_seconds)
            logger.warning("source %s failed: %s", adapter.name, message)
            _record_failure(ctx, adapter, message)
            report.failed += 1
            report.errors.append({"source": adapter.name, "message": message})
            return

        report.succeeded += 1
        report.stats[adapter.name] = stats
        logger.info(
            "source %s done: fetched=%d inserted=%d duplicates=%d dropped=%d failed=%d",
            adapter.name,
            stats.fetched,
            stats.inserted,
            stats.duplicates,
            stats.dropped,
            stats.failed_records,
        )


async def run_sources(
    adapters: Iterable[SourceAdapter],
    ctx: SourceContext,
    *,
    timeout_seconds: float,
    concurrency: int = 1,
) -> RunReport:
    """Run every enabled adapter once; a failing adapter never stops the others."""
    adapters = list(adapters)
    report = RunReport(total=len(adapters))
    sem = asyncio.Semaphore(max(1, concurrency))

    tasks = []
    for adapter in adapters:
        if not adapter.enabled:
            logger.warning("skipping %s: %s", adapter.name, adapter.disabled_reason)
            report.skipped += 1
            continue
        tasks.append(_run_one(adapter, ctx, report, sem, timeout_seconds))

    if tasks:
        await asyncio.gather(*tasks)

    logger.info(
        "source run finished: %d total, %d succeeded, %d failed, %d skipped",
        report.total,
        report.succeeded,
        report.failed,
        report.skipped,
    )
    return report


async def run_sources_periodically(
    adapters: list[SourceAdapter], ctx: SourceContext
) -> None:
    settings = ctx.settings
    interval = settings.source_run_interval_seconds
    while True:
        try:
            await run_sources(
                adapters,
                ctx,
                timeout_seconds=settings.source_run_timeout_seconds,
                concurrency=settings.source_run_concurrency,
            )
        except Exception:
            logger.exception("source run failed")
        await asyncio.sleep(interval)
