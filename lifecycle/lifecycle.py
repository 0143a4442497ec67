from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from datetime import UTC, datetime, timedelta

from app.settings import Settings
from realtime.bus import STATUS_UPDATE, Broadcaster, Message
from store.db import Database
from store.events import (
    OPEN_STATUSES,
    EventRecord,
    Transition,
    apply_transitions,
    list_events_by_status,
    to_iso,
)


logger = logging.getLogger(__name__)


def _next_status(event: EventRecord, now: datetime, default_duration: timedelta) -> str:
    end = event.end_time or event.start_time + default_duration
    if event.status == "planned":
        if now < event.start_time:
            return "planned"
        return "ended" if now >= end else "active"
    if event.status == "active" and now >= end:
        return "ended"
    return event.status


def compute_transitions(
    events: Iterable[EventRecord], now: datetime, default_duration: timedelta
) -> list[Transition]:
    transitions: list[Transition] = []
    for event in events:
        new_status = _next_status(event, now, default_duration)
        if new_status != event.status:
            transitions.append(
                Transition(
                    event_id=event.id,
                    title=event.title,
                    old_status=event.status,
                    new_status=new_status,
                )
            )
    return transitions


async def run_lifecycle_tick(
    db: Database,
    bus: Broadcaster,
    *,
    default_duration: timedelta,
    now: datetime | None = None,
) -> list[Transition]:
    now = now or datetime.now(tz=UTC)
    events = list_events_by_status(db, OPEN_STATUSES)
    transitions = compute_transitions(events, now, default_duration)
    applied = apply_transitions(db, transitions, now=now)
    timestamp = to_iso(now)
    for t in applied:
        logger.info("event %s: %s -> %s", t.event_id, t.old_status, t.new_status)
        await bus.publish(
            Message(
                type=STATUS_UPDATE,
                data={
                    "eventId": t.event_id,
                    "title": t.title,
                    "oldStatus": t.old_status,
                    "newStatus": t.new_status,
                    "timestamp": timestamp,
                },
            )
        )
    return applied


async def run_lifecycle_scheduler(
    settings: Settings, db: Database, bus: Broadcaster
) -> None:
    default_duration = timedelta(hours=settings.default_event_duration_hours)
    while True:
        try:
            await run_lifecycle_tick(db, bus, default_duration=default_duration)
        except Exception:
            logger.exception("lifecycle tick failed")
        await asyncio.sleep(settings.lifecycle_tick_seconds)
