from __future__ import annotations

import calendar
from datetime import UTC, datetime

import feedparser


def _entry_time(entry: dict, key: str) -> datetime | None:
    parsed = entry.get(f"{key}_parsed")
    if not parsed:
        return None
    return datetime.fromtimestamp(calendar.timegm(parsed), tz=UTC)


def parse_rss(data: bytes) -> list[dict]:
    """Parse an RSS or Atom document into plain records."""
    parsed = feedparser.parse(data)
    records: list[dict] = []
    for entry in parsed.entries:
        content = None
        if "content" in entry and entry["content"]:
            content = entry["content"][0].get("value")

        records.append(
            {
                "id": entry.get("id") or entry.get("guid") or entry.get("link"),
                "link": entry.get("link"),
                "title": entry.get("title", ""),
                "summary": entry.get("summary", ""),
                "content": content,
                "published": _entry_time(entry, "published")
                or _entry_time(entry, "updated"),
                "tags": [t.get("term") for t in entry.get("tags") or [] if t.get("term")],
            }
        )
    return records
