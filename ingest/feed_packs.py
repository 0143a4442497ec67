from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlsplit

import yaml


logger = logging.getLogger(__name__)


class FeedPackError(ValueError):
    pass


@dataclass(frozen=True)
class FeedPackEntry:
    """One RSS/Atom news feed listed in `feeds/<pack>.yaml`."""

    pack_id: str
    source_id: str
    name: str
    url: str
    enabled: bool = True
    tags: tuple[str, ...] = field(default_factory=tuple)


def _entry(pack_id: str, raw: object, path: Path) -> FeedPackEntry:
    if not isinstance(raw, dict):
        raise FeedPackError(f"{path}: feed entries must be mappings")
    missing = [k for k in ("id", "name", "url") if not raw.get(k)]
    if missing:
        raise FeedPackError(f"{path}: entry missing {', '.join(missing)}")

    url = str(raw["url"]).strip()
    if urlsplit(url).scheme not in ("http", "https"):
        raise FeedPackError(f"{path}: not an http(s) feed url: {url}")

    return FeedPackEntry(
        pack_id=pack_id,
        source_id=str(raw["id"]),
        name=str(raw["name"]).strip(),
        url=url,
        enabled=bool(raw.get("enabled", True)),
        tags=tuple(str(t).casefold() for t in raw.get("tags") or ()),
    )


def load_feed_packs(feeds_dir: Path) -> list[FeedPackEntry]:
    """Every feed from every pack, in file then listing order.

    A missing directory means no feeds. Later duplicates of a source id are
    ignored with a warning.
    """
    if not feeds_dir.is_dir():
        logger.info("no feed pack directory at %s", feeds_dir)
        return []

    entries: list[FeedPackEntry] = []
    seen: set[str] = set()
    for path in sorted(feeds_dir.glob("*.yaml")):
        doc = yaml.safe_load(path.read_text(encoding="utf-8")) or []
        if not isinstance(doc, list):
            raise FeedPackError(f"{path}: expected a list of feeds")
        for raw in doc:
            entry = _entry(path.stem, raw, path)
            if entry.source_id in seen:
                logger.warning("duplicate feed id %s in %s ignored", entry.source_id, path)
                continue
            seen.add(entry.source_id)
            entries.append(entry)
    return entries
