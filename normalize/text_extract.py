from __future__ import annotations

import logging
import re
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from dateutil import parser as date_parser
from dateutil.relativedelta import FR, MO, SA, SU, TH, TU, WE, relativedelta


logger = logging.getLogger(__name__)


_WS_RE = re.compile(r"\s+")
_TITLE_PUNCT_RE = re.compile(r"[^\w\s]+", flags=re.UNICODE)


def collapse_whitespace(text: str) -> str:
    return _WS_RE.sub(" ", text).strip()


def normalize_title(title: str) -> str:
    normalized = title.strip().casefold()
    normalized = _TITLE_PUNCT_RE.sub(" ", normalized)
    return collapse_whitespace(normalized)


_TRACKING_KEYS = frozenset({"fbclid", "gclid", "mc_cid", "mc_eid", "igshid"})


def _is_tracking_param(name: str) -> bool:
    name = name.casefold()
    return name.startswith("utm_") or name in _TRACKING_KEYS


def canonicalize_url(url: str) -> str:
    """Stable form of a source link: lowercase host, no fragment or tracking params."""
    parts = urlsplit(url.strip())
    query = [
        (k, v)
        for k, v in parse_qsl(parts.query, keep_blank_values=True)
        if not _is_tracking_param(k)
    ]
    return urlunsplit(
        parts._replace(
            scheme=parts.scheme.lower(),
            netloc=parts.netloc.lower(),
            query=urlencode(query),
            fragment="",
        )
    )


_FIRST_SENTENCE_RE = re.compile(r"^[^.!?]+[.!?]")


def first_sentence(text: str, fallback_chars: int = 100) -> str:
    match = _FIRST_SENTENCE_RE.match(text)
    if match is not None:
        return match.group(0).strip()
    return text[:fallback_chars].strip()


_HASHTAG_RE = re.compile(r"#(\w+)", flags=re.UNICODE)


def extract_hashtags(text: str | None) -> set[str]:
    if not text:
        return set()
    return set(_HASHTAG_RE.findall(text))


# --- locations -------------------------------------------------------------

_LOCATION_STOPWORDS = frozenset({"the", "a", "an", "this", "that", "these", "those"})

_CALENDAR_WORDS = (
    r"(?:Monday|Tuesday|Wednesday|Thursday|Friday|Saturday|Sunday|Today|Tonight|Tomorrow"
    r"|January|February|March|April|June|July|August|September|October|November|December)"
)
_WORD = rf"(?!{_CALENDAR_WORDS}\b)[A-Z][\w'&.-]*"
_NAME = rf"{_WORD}(?:[ \t]+(?:(?:of|the|and|de|la)[ \t]+)?{_WORD})*"
_STATE = r"(?:,[ \t]*[A-Z]{2}\b)?"
_STREET_SUFFIX = (
    r"(?i:street|st|avenue|ave|road|rd|boulevard|blvd|drive|dr|lane|ln|way"
    r"|court|ct|plaza|place|pl)"
)

LocationFormatter = Callable[[re.Match[str]], str]

LOCATION_PATTERNS: tuple[tuple[str, re.Pattern[str], LocationFormatter], ...] = (
    (
        "in_place",
        re.compile(rf"\b(?i:in)[ \t]+(?P<place>{_NAME}{_STATE})"),
        lambda m: m.group("place"),
    ),
    (
        "at_place",
        re.compile(
            rf"\b(?i:at)[ \t]+(?P<place>(?:\d+[ \t]+(?![AaPp]\.?[Mm]\b))?{_NAME}"
            rf"(?:,[ \t]*{_NAME})?{_STATE})"
        ),
        lambda m: m.group("place"),
    ),
    (
        "city_state",
        re.compile(rf"\b(?P<city>{_NAME}),[ \t]*(?P<state>[A-Z]{{2}})\b"),
        lambda m: f"{m.group('city')}, {m.group('state')}",
    ),
    (
        "venue_city",
        re.compile(rf"\b(?P<venue>{_NAME}),[ \t]*(?P<city>{_NAME})"),
        lambda m: f"{m.group('venue')}, {m.group('city')}",
    ),
    (
        "street_address",
        re.compile(
            rf"\b\d+[ \t]+(?:[A-Z][\w'-]*[ \t]+)+{_STREET_SUFFIX}\b\.?"
            rf"(?:,[ \t]*{_NAME})?"
        ),
        lambda m: m.group(0),
    ),
)


def _clean_location(value: str) -> str:
    return collapse_whitespace(value).strip(" ,;:").rstrip(".")


def extract_location_from_text(text: str | None) -> str | None:
    """Return the first plausible place mention, trying patterns in order.

    Only the first match of each pattern is considered. A match starting with
    an article or demonstrative is rejected and the next pattern is tried.
    """
    if not text:
        return None

    for name, pattern, formatter in LOCATION_PATTERNS:
        match = pattern.search(text)
        if match is None:
            continue
        location = _clean_location(formatter(match))
        if not location:
            continue
        if location.split(" ", 1)[0].casefold() in _LOCATION_STOPWORDS:
            continue
        logger.debug("location via %s: %s", name, location)
        return location

    return None


# --- dates -----------------------------------------------------------------

_MONTH = (
    r"(?:Jan(?:uary)?|Feb(?:ruary)?|Mar(?:ch)?|Apr(?:il)?|May|June?|July?|Aug(?:ust)?"
    r"|Sep(?:t(?:ember)?)?|Oct(?:ober)?|Nov(?:ember)?|Dec(?:ember)?)"
)
_ORDINAL = r"(?:st|nd|rd|th)?"
_YEAR = r"(?:,?[ \t]+\d{4}\b)?"

_WEEKDAYS = {
    "monday": MO,
    "tuesday": TU,
    "wednesday": WE,
    "thursday": TH,
    "friday": FR,
    "saturday": SA,
    "sunday": SU,
}

_ISO_DATE_RE = re.compile(
    r"\b\d{4}-\d{2}-\d{2}(?:[T ]\d{2}:\d{2}(?::\d{2}(?:\.\d+)?)?(?:Z|[+-]\d{2}:?\d{2})?)?"
)
_MONTH_DAY_RE = re.compile(rf"\b{_MONTH}\.?[ \t]+\d{{1,2}}{_ORDINAL}\b{_YEAR}")
_DAY_MONTH_RE = re.compile(
    rf"\b\d{{1,2}}{_ORDINAL}[ \t]+(?:of[ \t]+)?{_MONTH}\b\.?{_YEAR}"
)
_NUMERIC_DATE_RE = re.compile(r"\b\d{1,2}/\d{1,2}(?:/\d{2,4})?\b")
_RELATIVE_DAY_RE = re.compile(r"\b(?P<word>today|tonight|tomorrow)\b", re.IGNORECASE)
_WEEKDAY_RE = re.compile(
    r"\b(?:(?P<mod>this|next|on)[ \t]+)?"
    r"(?P<day>monday|tuesday|wednesday|thursday|friday|saturday|sunday)s?\b",
    re.IGNORECASE,
)
_CLOCK = (
    r"(?:(?P<hour>\d{1,2})(?::(?P<minute>\d{2}))?[ \t]*(?P<ampm>[ap])\.?m\.?(?!\w)"
    r"|(?P<h24>[01]?\d|2[0-3]):(?P<m24>[0-5]\d)\b"
    r"|(?P<named>noon|midnight)\b)"
)
_TRAILING_TIME_RE = re.compile(
    rf"[ \t]*,?[ \t]*(?:(?:at|@|from|starting(?:[ \t]+at)?)[ \t]+)?{_CLOCK}",
    re.IGNORECASE,
)
_BARE_TIME_RE = re.compile(
    r"\b\d{1,2}(?::\d{2})?[ \t]*[ap]\.?m\.?(?!\w)", re.IGNORECASE
)


def _midday(reference: datetime) -> datetime:
    return reference.replace(hour=12, minute=0, second=0, microsecond=0)


def _parse_absolute(value: str, reference: datetime) -> datetime:
    cleaned = re.sub(r"\bof\b", " ", value, flags=re.IGNORECASE)
    return date_parser.parse(cleaned, default=_midday(reference))


def _resolve_iso(match: re.Match[str], reference: datetime) -> tuple[datetime, bool]:
    value = match.group(0)
    parsed = date_parser.isoparse(value)
    if len(value) == 10:
        parsed = parsed.replace(hour=12)
    return parsed, len(value) > 10


def _resolve_month_name(
    match: re.Match[str], reference: datetime
) -> tuple[datetime, bool]:
    return _parse_absolute(match.group(0), reference), False


def _resolve_numeric(match: re.Match[str], reference: datetime) -> tuple[datetime, bool]:
    return date_parser.parse(match.group(0), default=_midday(reference)), False


def _resolve_relative_day(
    match: re.Match[str], reference: datetime
) -> tuple[datetime, bool]:
    word = match.group("word").casefold()
    base = _midday(reference)
    if word == "tomorrow":
        return base + timedelta(days=1), False
    if word == "tonight":
        return base.replace(hour=20), False
    return base, False


def _resolve_weekday(match: re.Match[str], reference: datetime) -> tuple[datetime, bool]:
    weekday = _WEEKDAYS[match.group("day").casefold()]
    base = _midday(reference)
    if (match.group("mod") or "").casefold() == "next":
        return base + relativedelta(days=+1, weekday=weekday(+1)), False
    return base + relativedelta(weekday=weekday(+1)), False


def _resolve_bare_time(
    match: re.Match[str], reference: datetime
) -> tuple[datetime, bool]:
    clock = _TRAILING_TIME_RE.match(match.group(0))
    if clock is None:
        raise ValueError(f"unrecognized time: {match.group(0)}")
    hour_minute = _clock_from_match(clock)
    if hour_minute is None:
        raise ValueError(f"invalid time: {match.group(0)}")
    hour, minute = hour_minute
    return reference.replace(hour=hour, minute=minute, second=0, microsecond=0), True


DateResolver = Callable[[re.Match[str], datetime], tuple[datetime, bool]]

# Ties at the same text offset go to the earlier entry.
DATE_PATTERNS: tuple[tuple[str, re.Pattern[str], DateResolver], ...] = (
    ("iso", _ISO_DATE_RE, _resolve_iso),
    ("month_day", _MONTH_DAY_RE, _resolve_month_name),
    ("day_month", _DAY_MONTH_RE, _resolve_month_name),
    ("numeric", _NUMERIC_DATE_RE, _resolve_numeric),
    ("relative_day", _RELATIVE_DAY_RE, _resolve_relative_day),
    ("weekday", _WEEKDAY_RE, _resolve_weekday),
    ("bare_time", _BARE_TIME_RE, _resolve_bare_time),
)


def _clock_from_match(match: re.Match[str]) -> tuple[int, int] | None:
    named = match.group("named")
    if named:
        return (12, 0) if named.casefold() == "noon" else (0, 0)
    if match.group("h24") is not None:
        return int(match.group("h24")), int(match.group("m24"))
    hour = int(match.group("hour"))
    minute = int(match.group("minute") or 0)
    if not 1 <= hour <= 12 or minute > 59:
        return None
    hour = hour % 12
    if match.group("ampm").casefold() == "p":
        hour += 12
    return hour, minute


def _as_aware(reference: datetime) -> datetime:
    if reference.tzinfo is None:
        return reference.replace(tzinfo=UTC)
    return reference


def _iter_dates(text: str, reference: datetime):
    reference = _as_aware(reference)
    candidates: list[tuple[int, int, re.Match[str], DateResolver]] = []
    for order, (_, pattern, resolver) in enumerate(DATE_PATTERNS):
        for match in pattern.finditer(text):
            candidates.append((match.start(), order, match, resolver))
    candidates.sort(key=lambda c: (c[0], c[1]))

    consumed_until = -1
    for start, _, match, resolver in candidates:
        if start < consumed_until:
            continue
        try:
            value, has_time = resolver(match, reference)
        except (ValueError, OverflowError) as e:
            logger.debug("unparseable date %r: %s", match.group(0), e)
            continue

        end = match.end()
        if not has_time:
            clock = _TRAILING_TIME_RE.match(text, end)
            if clock is not None:
                hour_minute = _clock_from_match(clock)
                if hour_minute is not None:
                    value = value.replace(
                        hour=hour_minute[0], minute=hour_minute[1], second=0
                    )
                    end = clock.end()

        if value.tzinfo is None:
            value = value.replace(tzinfo=reference.tzinfo)
        consumed_until = end
        yield value


def extract_date_from_text(
    text: str | None, reference: datetime | None = None
) -> datetime | None:
    if not text:
        return None
    reference = reference or datetime.now(tz=UTC)
    for value in _iter_dates(text, reference):
        return value
    return None


def extract_all_dates_from_text(
    text: str | None, reference: datetime | None = None
) -> list[datetime]:
    if not text:
        return []
    reference = reference or datetime.now(tz=UTC)
    return list(_iter_dates(text, reference))


def parse_event_info(text: str, reference: datetime | None = None) -> dict:
    reference = reference or datetime.now(tz=UTC)
    dates = extract_all_dates_from_text(text, reference)
    return {
        "dates": dates,
        "location": extract_location_from_text(text),
        "hashtags": extract_hashtags(text),
        "start_date": dates[0] if dates else None,
    }
