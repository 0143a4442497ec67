from __future__ import annotations

import sqlite3
import threading
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class Database:
    conn: sqlite3.Connection
    lock: threading.Lock


_MIGRATIONS: list[tuple[int, str]] = [
    (
        1,
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
          version INTEGER NOT NULL PRIMARY KEY
        );

        CREATE TABLE IF NOT EXISTS events (
          id TEXT NOT NULL PRIMARY KEY,
          title TEXT NOT NULL,
          description TEXT NOT NULL DEFAULT '',
          cause TEXT NOT NULL,
          address TEXT NOT NULL,
          latitude REAL NULL,
          longitude REAL NULL,
          start_time TEXT NOT NULL,
          end_time TEXT NULL,
          status TEXT NOT NULL DEFAULT 'planned',
          source_type TEXT NOT NULL,
          source_url TEXT NULL,
          confidence_score REAL NOT NULL,
          organizers TEXT NOT NULL DEFAULT '[]',
          hashtags TEXT NOT NULL DEFAULT '[]',
          permit_status TEXT NULL,
          expected_size INTEGER NULL,
          created_at TEXT NOT NULL,
          updated_at TEXT NOT NULL,
          dedup_key TEXT NOT NULL,

          CHECK (status IN ('planned', 'active', 'ended')),
          CHECK (source_type IN ('permit', 'user', 'news', 'social')),
          CHECK (confidence_score >= 0 AND confidence_score <= 1),
          CHECK (end_time IS NULL OR end_time >= start_time)
        );

        CREATE UNIQUE INDEX IF NOT EXISTS events_dedup_key_uq ON events(dedup_key);
        CREATE UNIQUE INDEX IF NOT EXISTS events_source_url_uq
          ON events(source_url) WHERE source_url IS NOT NULL;

        CREATE INDEX IF NOT EXISTS events_status_idx ON events(status);
        CREATE INDEX IF NOT EXISTS events_cause_idx ON events(cause);
        CREATE INDEX IF NOT EXISTS events_start_time_idx ON events(start_time);
        CREATE INDEX IF NOT EXISTS events_lat_lon_idx ON events(latitude, longitude);

        CREATE TABLE IF NOT EXISTS data_sources (
          name TEXT NOT NULL PRIMARY KEY,
          type TEXT NOT NULL,
          url TEXT NULL,
          status TEXT NOT NULL DEFAULT 'active',
          last_scraped TEXT NULL,
          error_message TEXT NULL,
          last_error_at TEXT NULL,
          created_at TEXT NOT NULL,
          updated_at TEXT NOT NULL,

          CHECK (status IN ('active', 'error'))
        );
        """,
    ),
]


def open_database(path: Path) -> Database:
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA foreign_keys=ON;")
    conn.execute("PRAGMA busy_timeout=5000;")
    _apply_migrations(conn)
    return Database(conn=conn, lock=threading.Lock())


def close_database(db: Database) -> None:
    with db.lock:
        db.conn.close()


def _apply_migrations(conn: sqlite3.Connection) -> None:
    conn.execute(
        "CREATE TABLE IF NOT EXISTS schema_migrations (version INTEGER NOT NULL PRIMARY KEY);"
    )
    row = conn.execute(
        "SELECT COALESCE(MAX(version), 0) AS v FROM schema_migrations;"
    ).fetchone()
    current_version = int(row["v"])

    for version, sql in _MIGRATIONS:
        if version <= current_version:
            continue
        conn.executescript(sql)
        conn.execute("INSERT INTO schema_migrations(version) VALUES (?);", (version,))
        conn.commit()
