import asyncio
from datetime import UTC, datetime

import httpx
import pytest

from app.settings import Settings
from geo.geocoder import GeoResolver
from health.health import get_source, list_sources
from ingest.orchestrator import RunReport, configured_sources, run_sources
from ingest.sources.base import SourceAdapter, SourceContext, SourceRunStats
from realtime.bus import Broadcaster
from store.db import close_database, open_database


def _settings(tmp_path, **overrides) -> Settings:
    values = {
        "DB_PATH": str(tmp_path / "test.db"),
        "FEEDS_DIR": str(tmp_path / "feeds"),
        "GOOGLE_MAPS_API_KEY": "",
        "NEWS_API_KEY": "",
        "TWITTER_BEARER_TOKEN": "",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
async def ctx(tmp_path):
    settings = _settings(tmp_path)
    db = open_database(settings.db_path)
    async with httpx.AsyncClient() as client:
        yield SourceContext(
            settings=settings,
            db=db,
            bus=Broadcaster(),
            geo=GeoResolver(None),
            client=client,
            now=lambda: datetime(2026, 3, 10, tzinfo=UTC),
        )
    close_database(db)


def _adapter(name: str, run) -> SourceAdapter:
    return SourceAdapter(name=name, source_type="news", url=f"https://{name}.test", run=run)


async def _ok(ctx: SourceContext) -> SourceRunStats:
    return SourceRunStats(fetched=2, inserted=1, duplicates=1)


async def _boom(ctx: SourceContext) -> SourceRunStats:
    raise RuntimeError("provider exploded")


async def _slow(ctx: SourceContext) -> SourceRunStats:
    await asyncio.sleep(10)
    return SourceRunStats()


async def test_one_failing_source_does_not_stop_the_others(ctx) -> None:
    adapters = [_adapter("first", _ok), _adapter("second", _boom), _adapter("third", _ok)]

    report = await run_sources(adapters, ctx, timeout_seconds=5)

    assert (report.total, report.succeeded, report.failed, report.skipped) == (3, 2, 1, 0)
    assert report.errors == [{"source": "second", "message": "provider exploded"}]
    assert report.exit_code == 1
    assert report.stats["first"].inserted == 1

    assert get_source(ctx.db, "first")["status"] == "active"
    assert get_source(ctx.db, "first")["last_scraped"] is not None
    failed = get_source(ctx.db, "second")
    assert failed["status"] == "error"
    assert failed["error_message"] == "provider exploded"
    assert failed["last_error_at"] is not None
    assert get_source(ctx.db, "third")["status"] == "active"


async def test_disabled_source_is_skipped_without_health_record(ctx) -> None:
    disabled = SourceAdapter.disabled(
        name="off", source_type="social", url=None, reason="TOKEN not configured"
    )
    report = await run_sources([disabled, _adapter("on", _ok)], ctx, timeout_seconds=5)

    assert (report.total, report.succeeded, report.failed, report.skipped) == (2, 1, 0, 1)
    assert report.exit_code == 0
    assert get_source(ctx.db, "off") is None
    assert [s["name"] for s in list_sources(ctx.db)] == ["on"]


async def test_timeout_counts_as_failure(ctx) -> None:
    report = await run_sources(
        [_adapter("slow", _slow), _adapter("fast", _ok)],
        ctx,
        timeout_seconds=0.05,
        concurrency=2,
    )

    assert (report.succeeded, report.failed) == (1, 1)
    assert report.errors[0]["source"] == "slow"
    assert "timed out" in report.errors[0]["message"]
    assert get_source(ctx.db, "slow")["status"] == "error"


async def test_health_write_failure_only_fails_that_source(ctx) -> None:
    ctx.db.conn.executescript(
        """
        CREATE TRIGGER data_sources_reject_second BEFORE INSERT ON data_sources
        WHEN NEW.name = 'second'
        BEGIN
          SELECT RAISE(ABORT, 'disk full');
        END;
        """
    )
    adapters = [_adapter("first", _ok), _adapter("second", _ok), _adapter("third", _ok)]

    report = await run_sources(adapters, ctx, timeout_seconds=5)

    assert (report.total, report.succeeded, report.failed) == (3, 2, 1)
    assert report.errors == [{"source": "second", "message": "disk full"}]
    assert report.exit_code == 1
    assert get_source(ctx.db, "second") is None
    assert get_source(ctx.db, "third")["last_scraped"] is not None


async def test_recovered_source_clears_error(ctx) -> None:
    await run_sources([_adapter("flaky", _boom)], ctx, timeout_seconds=5)
    await run_sources([_adapter("flaky", _ok)], ctx, timeout_seconds=5)

    record = get_source(ctx.db, "flaky")
    assert record["status"] == "active"
    assert record["error_message"] is None


def test_report_to_dict() -> None:
    report = RunReport(total=1, succeeded=1, stats={"a": SourceRunStats(fetched=3)})
    doc = report.to_dict()
    assert doc["stats"]["a"]["fetched"] == 3
    assert doc["errors"] == []


def test_configured_sources_disable_missing_credentials(tmp_path) -> None:
    adapters = {a.name: a for a in configured_sources(_settings(tmp_path))}

    assert adapters["NYC Permits"].enabled
    assert not adapters["News API"].enabled
    assert adapters["News API"].disabled_reason == "NEWS_API_KEY not configured"
    assert not adapters["Twitter Hashtags"].enabled


def test_placeholder_credentials_count_as_unset(tmp_path) -> None:
    settings = _settings(tmp_path, NEWS_API_KEY="your_newsapi_key_here")
    assert settings.news_api_key is None
