from __future__ import annotations

import logging
import sqlite3
from collections import Counter
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime

import httpx

from app.settings import Settings
from geo.geocoder import GeoResolver
from realtime.bus import NEW_EVENT, Broadcaster, Message
from store.db import Database
from store.events import CandidateEvent, insert_event


logger = logging.getLogger(__name__)


@dataclass
class SourceContext:
    settings: Settings
    db: Database
    bus: Broadcaster
    geo: GeoResolver
    client: httpx.AsyncClient
    now: Callable[[], datetime]


@dataclass
class SourceRunStats:
    fetched: int = 0
    inserted: int = 0
    duplicates: int = 0
    dropped: int = 0
    failed_records: int = 0
    dropped_reasons: Counter[str] = field(default_factory=Counter)

    def drop(self, reason: str) -> None:
        self.dropped += 1
        self.dropped_reasons[reason] += 1

    def to_dict(self) -> dict:
        return {
            "fetched": self.fetched,
            "inserted": self.inserted,
            "duplicates": self.duplicates,
            "dropped": self.dropped,
            "failed_records": self.failed_records,
            "dropped_reasons": dict(self.dropped_reasons),
        }


RunFn = Callable[[SourceContext], Awaitable[SourceRunStats]]


@dataclass(frozen=True)
class SourceAdapter:
    name: str
    source_type: str
    url: str | None
    run: RunFn
    enabled: bool = True
    disabled_reason: str | None = None

    @classmethod
    def disabled(
        cls, *, name: str, source_type: str, url: str | None, reason: str
    ) -> SourceAdapter:
        async def _never(ctx: SourceContext) -> SourceRunStats:
            raise RuntimeError(f"{name} is disabled: {reason}")

        return cls(
            name=name,
            source_type=source_type,
            url=url,
            run=_never,
            enabled=False,
            disabled_reason=reason,
        )


async def store_candidates(
    ctx: SourceContext,
    candidates: Iterable[CandidateEvent],
    stats: SourceRunStats,
    *,
    source_name: str,
) -> None:
    for candidate in candidates:
        try:
            result = insert_event(ctx.db, candidate, now=ctx.now())
        except (sqlite3.Error, ValueError) as e:
            stats.failed_records += 1
            logger.warning("%s: failed to store %r: %s", source_name, candidate.title, e)
            continue

        if result.inserted is None:
            stats.duplicates += 1
            continue

        stats.inserted += 1
        await ctx.bus.publish(Message(type=NEW_EVENT, data=result.inserted.to_json()))
