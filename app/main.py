from __future__ import annotations

import asyncio
import logging
import sqlite3
from contextlib import asynccontextmanager, suppress
from datetime import UTC, datetime

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from app.settings import Settings
from geo.geocoder import NO_RESULT, GeocodeError, GeoResolver, build_resolver
from health.health import list_sources
from ingest.orchestrator import configured_sources, run_sources_periodically
from ingest.sources.base import SourceContext
from lifecycle.lifecycle import run_lifecycle_scheduler
from normalize.classify import CAUSES, coerce_cause
from normalize.text_extract import extract_hashtags
from realtime.bus import NEW_EVENT, Broadcaster, Message
from realtime.ws import router as ws_router
from store.db import Database, close_database, open_database
from store.events import (
    STATUSES,
    CandidateEvent,
    cause_counts,
    get_event,
    insert_event,
    query_events,
    to_iso,
)


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


async def _cancel(task: asyncio.Task | None) -> None:
    if task is None:
        return
    task.cancel()
    with suppress(asyncio.CancelledError):
        await task


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = Settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    db = open_database(settings.db_path)
    bus = Broadcaster()
    client = httpx.AsyncClient(follow_redirects=True)
    geo = build_resolver(settings, client)
    app.state.settings = settings
    app.state.db = db
    app.state.bus = bus
    app.state.geo = geo

    lifecycle_task = asyncio.create_task(run_lifecycle_scheduler(settings, db, bus))
    sources_task = None
    if settings.source_run_interval_seconds > 0:
        ctx = SourceContext(
            settings=settings, db=db, bus=bus, geo=geo, client=client, now=_utc_now
        )
        sources_task = asyncio.create_task(
            run_sources_periodically(configured_sources(settings), ctx)
        )
    try:
        yield
    finally:
        await _cancel(sources_task)
        await _cancel(lifecycle_task)
        await geo.close()
        await client.aclose()
        close_database(db)


app = FastAPI(lifespan=lifespan)
app.include_router(ws_router)


def _invalid(detail: str) -> JSONResponse:
    return JSONResponse({"error": "invalid_parameter", "detail": detail}, status_code=422)


@app.get("/api/events")
def api_events(
    request: Request,
    lat: float | None = None,
    lng: float | None = None,
    radius: float = 10.0,
    causes: str | None = None,
    status: str = "active",
) -> JSONResponse:
    db: Database = request.app.state.db

    statuses = _split_csv(status)
    unknown = [s for s in statuses if s not in STATUSES]
    if unknown:
        return _invalid(f"unknown status: {', '.join(unknown)}")
    cause_list = _split_csv(causes)
    unknown = [c for c in cause_list if c not in CAUSES]
    if unknown:
        return _invalid(f"unknown cause: {', '.join(unknown)}")
    if (lat is None) != (lng is None):
        return _invalid("lat and lng must be given together")
    if radius <= 0:
        return _invalid("radius must be positive")

    center = (lat, lng) if lat is not None and lng is not None else None
    try:
        events = query_events(
            db, statuses=statuses, causes=cause_list, center=center, radius_km=radius
        )
    except sqlite3.Error:
        logger.exception("event query failed")
        return JSONResponse({"error": "server_error"}, status_code=500)
    return JSONResponse([e.to_json() for e in events])


@app.get("/api/events/{event_id}")
def api_event(request: Request, event_id: str) -> JSONResponse:
    db: Database = request.app.state.db
    event = get_event(db, event_id)
    if event is None:
        return JSONResponse({"error": "not_found"}, status_code=404)
    return JSONResponse(event.to_json())


class EventSubmission(BaseModel):
    title: str = Field(min_length=1, max_length=500)
    description: str = ""
    cause: str | None = None
    address: str = Field(min_length=1)
    latitude: float | None = Field(default=None, ge=-90, le=90)
    longitude: float | None = Field(default=None, ge=-180, le=180)
    start_time: datetime
    end_time: datetime | None = None
    organizers: list[str] = Field(default_factory=list)
    hashtags: list[str] = Field(default_factory=list)
    expected_size: int | None = Field(default=None, ge=0)


async def _submission_position(
    geo: GeoResolver, body: EventSubmission
) -> tuple[float | None, float | None]:
    if body.latitude is not None and body.longitude is not None:
        return body.latitude, body.longitude
    if not geo.enabled:
        return None, None
    try:
        coords = await geo.resolve(body.address)
    except GeocodeError as e:
        logger.info("geocoding failed for submitted address %r: %s", body.address, e)
        return None, None
    if coords is NO_RESULT:
        return None, None
    return coords.latitude, coords.longitude


@app.post("/api/events")
async def api_submit_event(request: Request, body: EventSubmission) -> JSONResponse:
    db: Database = request.app.state.db
    bus: Broadcaster = request.app.state.bus
    geo: GeoResolver = request.app.state.geo

    lat, lon = await _submission_position(geo, body)
    try:
        candidate = CandidateEvent(
            title=body.title,
            description=body.description,
            cause=coerce_cause(body.cause, body.title, body.description),
            address=body.address,
            latitude=lat,
            longitude=lon,
            start_time=body.start_time,
            end_time=body.end_time,
            source_type="user",
            organizers=set(body.organizers),
            hashtags=set(body.hashtags) | extract_hashtags(body.description),
            expected_size=body.expected_size,
        )
    except ValueError as e:
        return _invalid(str(e))

    try:
        result = insert_event(db, candidate)
    except sqlite3.Error:
        logger.exception("event insert failed")
        return JSONResponse({"error": "server_error"}, status_code=500)
    if result.inserted is None:
        return JSONResponse({"error": "duplicate"}, status_code=409)

    doc = result.inserted.to_json()
    await bus.publish(Message(type=NEW_EVENT, data=doc))
    return JSONResponse(doc, status_code=201)


@app.get("/api/causes")
def api_causes(request: Request) -> JSONResponse:
    db: Database = request.app.state.db
    return JSONResponse(cause_counts(db))


@app.get("/api/data-sources")
def api_data_sources(request: Request) -> JSONResponse:
    db: Database = request.app.state.db
    return JSONResponse(list_sources(db))


@app.get("/health")
def health() -> JSONResponse:
    return JSONResponse({"status": "ok", "timestamp": to_iso(_utc_now())})
