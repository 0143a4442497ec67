from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from datetime import UTC, datetime

import httpx

from app.settings import Settings
from geo.geocoder import build_resolver
from ingest.orchestrator import RunReport, configured_sources, run_sources
from ingest.sources.base import SourceContext
from realtime.bus import Broadcaster
from store.db import close_database, open_database
from store.events import count_events_by_source


logger = logging.getLogger("scripts.run_sources")


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


async def run_once(settings: Settings, only: list[str] | None = None) -> RunReport:
    db = open_database(settings.db_path)
    try:
        async with httpx.AsyncClient(follow_redirects=True) as client:
            geo = build_resolver(settings, client)
            ctx = SourceContext(
                settings=settings,
                db=db,
                bus=Broadcaster(),
                geo=geo,
                client=client,
                now=_utc_now,
            )
            adapters = configured_sources(settings)
            if only:
                wanted = {name.casefold() for name in only}
                adapters = [a for a in adapters if a.name.casefold() in wanted]
            try:
                report = await run_sources(
                    adapters,
                    ctx,
                    timeout_seconds=settings.source_run_timeout_seconds,
                    concurrency=settings.source_run_concurrency,
                )
            finally:
                await geo.close()

        for row in count_events_by_source(db):
            logger.info(
                "%s: %d events (%d planned, %d active, %d ended)",
                row["source_type"],
                row["count"],
                row["planned"],
                row["active"],
                row["ended"],
            )
        return report
    finally:
        close_database(db)


def main() -> None:
    parser = argparse.ArgumentParser(description="Run every configured source once.")
    parser.add_argument(
        "--only", action="append", default=None, help="source name to run (repeatable)"
    )
    parser.add_argument("--json", action="store_true", help="print the run report as JSON")
    args = parser.parse_args()

    settings = Settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    report = asyncio.run(run_once(settings, args.only))
    for error in report.errors:
        logger.error("%s failed: %s", error["source"], error["message"])
    if args.json:
        print(json.dumps(report.to_dict(), indent=2))
    sys.exit(report.exit_code)


if __name__ == "__main__":
    main()
