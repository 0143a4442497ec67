from __future__ import annotations

import hashlib
import json
import logging
import sqlite3
import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime

from geo.distance import bbox_around, haversine_km
from normalize.classify import CAUSES
from normalize.text_extract import canonicalize_url, collapse_whitespace, normalize_title
from store.db import Database


logger = logging.getLogger(__name__)

STATUSES: tuple[str, ...] = ("planned", "active", "ended")
OPEN_STATUSES: tuple[str, ...] = ("planned", "active")
SOURCE_TYPES: tuple[str, ...] = ("permit", "user", "news", "social")

CONFIDENCE_BY_SOURCE: dict[str, float] = {
    "permit": 0.9,
    "user": 0.8,
    "news": 0.7,
    "social": 0.6,
}


def to_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return (
        value.astimezone(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")
    )


def parse_iso(ts: str) -> datetime:
    if ts.endswith("Z"):
        return datetime.fromisoformat(ts.removesuffix("Z") + "+00:00")
    parsed = datetime.fromisoformat(ts)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


@dataclass
class CandidateEvent:
    """An extracted record that has not been stored yet."""

    title: str
    cause: str
    address: str
    start_time: datetime
    source_type: str
    description: str = ""
    latitude: float | None = None
    longitude: float | None = None
    end_time: datetime | None = None
    source_url: str | None = None
    confidence_score: float | None = None
    organizers: set[str] = field(default_factory=set)
    hashtags: set[str] = field(default_factory=set)
    permit_status: str | None = None
    expected_size: int | None = None

    def __post_init__(self) -> None:
        if not self.title.strip():
            raise ValueError("title is required")
        if self.cause not in CAUSES:
            raise ValueError(f"unknown cause: {self.cause}")
        if self.source_type not in SOURCE_TYPES:
            raise ValueError(f"unknown source_type: {self.source_type}")
        if self.start_time.tzinfo is None:
            self.start_time = self.start_time.replace(tzinfo=UTC)
        if self.end_time is not None:
            if self.end_time.tzinfo is None:
                self.end_time = self.end_time.replace(tzinfo=UTC)
            if self.end_time < self.start_time:
                raise ValueError("end_time must not precede start_time")
        if self.confidence_score is None:
            self.confidence_score = CONFIDENCE_BY_SOURCE[self.source_type]
        if not 0.0 <= self.confidence_score <= 1.0:
            raise ValueError("confidence_score must be within [0, 1]")
        if (self.latitude is None) != (self.longitude is None):
            self.latitude = None
            self.longitude = None
        if self.source_url:
            self.source_url = canonicalize_url(self.source_url)
        else:
            self.source_url = None

    @property
    def dedup_key(self) -> str:
        start = self.start_time.astimezone(tz=UTC).replace(second=0, microsecond=0)
        parts = [
            normalize_title(self.title),
            to_iso(start),
            collapse_whitespace(self.address.casefold()),
        ]
        return hashlib.sha256("\n".join(parts).encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class EventRecord:
    id: str
    title: str
    description: str
    cause: str
    address: str
    latitude: float | None
    longitude: float | None
    start_time: datetime
    end_time: datetime | None
    status: str
    source_type: str
    source_url: str | None
    confidence_score: float
    organizers: frozenset[str]
    hashtags: frozenset[str]
    permit_status: str | None
    expected_size: int | None
    created_at: datetime
    updated_at: datetime
    distance_km: float | None = None

    def to_json(self) -> dict:
        doc = {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "cause": self.cause,
            "address": self.address,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "start_time": to_iso(self.start_time),
            "end_time": to_iso(self.end_time) if self.end_time else None,
            "status": self.status,
            "source_type": self.source_type,
            "source_url": self.source_url,
            "confidence_score": self.confidence_score,
            "organizers": sorted(self.organizers),
            "hashtags": sorted(self.hashtags),
            "permit_status": self.permit_status,
            "expected_size": self.expected_size,
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
        }
        if self.distance_km is not None:
            doc["distance_km"] = round(self.distance_km, 3)
        return doc


@dataclass(frozen=True)
class InsertResult:
    """`inserted` is None when the candidate duplicated a stored event."""

    inserted: EventRecord | None

    @property
    def skipped(self) -> bool:
        return self.inserted is None


@dataclass(frozen=True)
class Transition:
    event_id: str
    title: str
    old_status: str
    new_status: str


def _row_to_event(row: sqlite3.Row, distance_km: float | None = None) -> EventRecord:
    return EventRecord(
        id=str(row["id"]),
        title=str(row["title"]),
        description=str(row["description"]),
        cause=str(row["cause"]),
        address=str(row["address"]),
        latitude=float(row["latitude"]) if row["latitude"] is not None else None,
        longitude=float(row["longitude"]) if row["longitude"] is not None else None,
        start_time=parse_iso(str(row["start_time"])),
        end_time=parse_iso(str(row["end_time"])) if row["end_time"] else None,
        status=str(row["status"]),
        source_type=str(row["source_type"]),
        source_url=str(row["source_url"]) if row["source_url"] is not None else None,
        confidence_score=float(row["confidence_score"]),
        organizers=frozenset(json.loads(row["organizers"] or "[]")),
        hashtags=frozenset(json.loads(row["hashtags"] or "[]")),
        permit_status=row["permit_status"],
        expected_size=int(row["expected_size"])
        if row["expected_size"] is not None
        else None,
        created_at=parse_iso(str(row["created_at"])),
        updated_at=parse_iso(str(row["updated_at"])),
        distance_km=distance_km,
    )


def insert_event(
    db: Database, candidate: CandidateEvent, *, now: datetime | None = None
) -> InsertResult:
    now_iso = to_iso(now or _utc_now())
    event_id = str(uuid.uuid4())
    params = {
        "id": event_id,
        "title": candidate.title.strip(),
        "description": candidate.description or "",
        "cause": candidate.cause,
        "address": candidate.address,
        "latitude": candidate.latitude,
        "longitude": candidate.longitude,
        "start_time": to_iso(candidate.start_time),
        "end_time": to_iso(candidate.end_time) if candidate.end_time else None,
        "source_type": candidate.source_type,
        "source_url": candidate.source_url,
        "confidence_score": candidate.confidence_score,
        "organizers": json.dumps(sorted(candidate.organizers), ensure_ascii=False),
        "hashtags": json.dumps(sorted(candidate.hashtags), ensure_ascii=False),
        "permit_status": candidate.permit_status,
        "expected_size": candidate.expected_size,
        "created_at": now_iso,
        "updated_at": now_iso,
        "dedup_key": candidate.dedup_key,
    }
    with db.lock:
        try:
            db.conn.execute(
                """
                INSERT INTO events(
                  id, title, description, cause, address, latitude, longitude,
                  start_time, end_time, status, source_type, source_url, confidence_score,
                  organizers, hashtags, permit_status, expected_size,
                  created_at, updated_at, dedup_key
                )
                VALUES(
                  :id, :title, :description, :cause, :address, :latitude, :longitude,
                  :start_time, :end_time, 'planned', :source_type, :source_url, :confidence_score,
                  :organizers, :hashtags, :permit_status, :expected_size,
                  :created_at, :updated_at, :dedup_key
                );
                """,
                params,
            )
        except sqlite3.IntegrityError as e:
            db.conn.rollback()
            if "UNIQUE" not in str(e):
                raise
            logger.debug("duplicate event skipped: %s", candidate.title)
            return InsertResult(inserted=None)
        db.conn.commit()
        row = db.conn.execute("SELECT * FROM events WHERE id = ?;", (event_id,)).fetchone()
    return InsertResult(inserted=_row_to_event(row))


def get_event(db: Database, event_id: str) -> EventRecord | None:
    with db.lock:
        row = db.conn.execute("SELECT * FROM events WHERE id = ?;", (event_id,)).fetchone()
    return _row_to_event(row) if row is not None else None


def _in_clause(column: str, values: Iterable[str]) -> tuple[str, list[object]]:
    values = list(values)
    return f"{column} IN ({','.join('?' for _ in values)})", list(values)


def _select(
    db: Database,
    where: list[str],
    params: list[object],
    order: str,
    limit: int | None = None,
) -> list[EventRecord]:
    sql = "SELECT * FROM events"
    if where:
        sql += f" WHERE {' AND '.join(where)}"
    sql += f" ORDER BY {order}"
    if limit is not None:
        sql += " LIMIT ?"
        params = [*params, limit]
    sql += ";"
    with db.lock:
        rows = db.conn.execute(sql, params).fetchall()
    return [_row_to_event(r) for r in rows]


def list_events_by_source(db: Database, source_type: str) -> list[EventRecord]:
    return _select(db, ["source_type = ?"], [source_type], "start_time ASC, id ASC")


def list_events_by_status(db: Database, statuses: Iterable[str]) -> list[EventRecord]:
    clause, params = _in_clause("status", statuses)
    return _select(db, [clause], params, "start_time ASC, id ASC")


def list_events_by_cause(db: Database, causes: Iterable[str]) -> list[EventRecord]:
    clause, params = _in_clause("cause", causes)
    return _select(db, [clause], params, "start_time ASC, id ASC")


def query_events(
    db: Database,
    *,
    statuses: Iterable[str] = ("active",),
    causes: Iterable[str] = (),
    center: tuple[float, float] | None = None,
    radius_km: float = 10.0,
    limit: int = 500,
) -> list[EventRecord]:
    """Filter by status and cause sets, optionally within `radius_km` of `center`.

    With a center, results carry `distance_km` and are ordered nearest first;
    otherwise they are ordered by start time.
    """
    where: list[str] = []
    params: list[object] = []

    statuses = list(statuses)
    if statuses:
        clause, values = _in_clause("status", statuses)
        where.append(clause)
        params.extend(values)

    causes = list(causes)
    if causes:
        clause, values = _in_clause("cause", causes)
        where.append(clause)
        params.extend(values)

    if center is None:
        return _select(db, where, params, "start_time ASC, id ASC", limit)

    lat, lon = center
    min_lon, min_lat, max_lon, max_lat = bbox_around(lat, lon, radius_km)
    where.append("latitude IS NOT NULL AND longitude IS NOT NULL")
    where.append("latitude >= ? AND latitude <= ?")
    params.extend([min_lat, max_lat])
    if min_lon >= -180.0 and max_lon <= 180.0:
        where.append("longitude >= ? AND longitude <= ?")
        params.extend([min_lon, max_lon])

    sql = f"SELECT * FROM events WHERE {' AND '.join(where)};"
    with db.lock:
        rows = db.conn.execute(sql, params).fetchall()

    nearby: list[tuple[float, sqlite3.Row]] = []
    for row in rows:
        dist = haversine_km(lat, lon, float(row["latitude"]), float(row["longitude"]))
        if dist <= radius_km:
            nearby.append((dist, row))
    nearby.sort(key=lambda pair: (pair[0], str(pair[1]["start_time"])))
    return [_row_to_event(row, distance_km=dist) for dist, row in nearby[:limit]]


def cause_counts(db: Database) -> list[dict]:
    clause, params = _in_clause("status", OPEN_STATUSES)
    with db.lock:
        rows = db.conn.execute(
            f"""
            SELECT cause, COUNT(*) AS count
            FROM events
            WHERE {clause}
            GROUP BY cause
            ORDER BY count DESC, cause ASC;
            """,
            params,
        ).fetchall()
    return [{"cause": str(r["cause"]), "count": int(r["count"])} for r in rows]


def count_events_by_source(db: Database) -> list[dict]:
    with db.lock:
        rows = db.conn.execute(
            """
            SELECT source_type,
                   COUNT(*) AS count,
                   SUM(CASE WHEN status = 'planned' THEN 1 ELSE 0 END) AS planned,
                   SUM(CASE WHEN status = 'active' THEN 1 ELSE 0 END) AS active,
                   SUM(CASE WHEN status = 'ended' THEN 1 ELSE 0 END) AS ended
            FROM events
            GROUP BY source_type
            ORDER BY count DESC;
            """
        ).fetchall()
    return [{k: r[k] for k in r.keys()} for r in rows]


def apply_transitions(
    db: Database, transitions: Iterable[Transition], *, now: datetime | None = None
) -> list[Transition]:
    """Apply a batch of status changes in one transaction.

    A row only changes while it still holds the transition's old status, so a
    stale batch can never move an event backward. Returns the rows changed.
    """
    now_iso = to_iso(now or _utc_now())
    applied: list[Transition] = []
    with db.lock:
        try:
            for t in transitions:
                if STATUSES.index(t.new_status) <= STATUSES.index(t.old_status):
                    raise ValueError(
                        f"non-forward transition {t.old_status}->{t.new_status}"
                    )
                cur = db.conn.execute(
                    """
                    UPDATE events
                    SET status = ?, updated_at = ?
                    WHERE id = ? AND status = ?;
                    """,
                    (t.new_status, now_iso, t.event_id, t.old_status),
                )
                if cur.rowcount > 0:
                    applied.append(t)
            db.conn.commit()
        except Exception:
            db.conn.rollback()
            raise
    return applied
