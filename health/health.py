from __future__ import annotations

import logging
from datetime import UTC, datetime

from store.db import Database


logger = logging.getLogger(__name__)


def _utc_now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


def initialize_source(db: Database, *, name: str, source_type: str, url: str | None) -> None:
    now_iso = _utc_now_iso()
    with db.lock:
        db.conn.execute(
            """
            INSERT INTO data_sources(name, type, url, status, created_at, updated_at)
            VALUES(?, ?, ?, 'active', ?, ?)
            ON CONFLICT(name) DO UPDATE
            SET type = excluded.type,
                url = excluded.url,
                status = 'active',
                updated_at = excluded.updated_at;
            """,
            (name, source_type, url, now_iso, now_iso),
        )
        db.conn.commit()
    logger.debug("data source initialized: %s", name)


def record_source_success(db: Database, *, name: str) -> None:
    now_iso = _utc_now_iso()
    with db.lock:
        db.conn.execute(
            """
            UPDATE data_sources
            SET last_scraped = ?,
                status = 'active',
                error_message = NULL,
                updated_at = ?
            WHERE name = ?;
            """,
            (now_iso, now_iso, name),
        )
        db.conn.commit()


def record_source_error(db: Database, *, name: str, error: str) -> None:
    now_iso = _utc_now_iso()
    with db.lock:
        db.conn.execute(
            """
            UPDATE data_sources
            SET status = 'error',
                error_message = ?,
                last_error_at = ?,
                updated_at = ?
            WHERE name = ?;
            """,
            (error, now_iso, now_iso, name),
        )
        db.conn.commit()
    logger.error("data source error recorded: %s - %s", name, error)


_SOURCE_COLUMNS = "name, type, url, status, last_scraped, error_message, last_error_at"


def list_sources(db: Database) -> list[dict]:
    with db.lock:
        rows = db.conn.execute(
            f"""
            SELECT {_SOURCE_COLUMNS}
            FROM data_sources
            ORDER BY last_scraped IS NULL, last_scraped DESC, name ASC;
            """
        ).fetchall()
    return [{k: r[k] for k in r.keys()} for r in rows]


def get_source(db: Database, name: str) -> dict | None:
    with db.lock:
        row = db.conn.execute(
            f"SELECT {_SOURCE_COLUMNS} FROM data_sources WHERE name = ?;",
            (name,),
        ).fetchone()
    return {k: row[k] for k in row.keys()} if row is not None else None
