from datetime import UTC, datetime

from normalize.text_extract import (
    canonicalize_url,
    extract_all_dates_from_text,
    extract_date_from_text,
    extract_hashtags,
    extract_location_from_text,
    first_sentence,
    normalize_title,
    parse_event_info,
)


# Tuesday
REFERENCE = datetime(2026, 3, 10, 9, 0, tzinfo=UTC)


def test_normalize_title_basic() -> None:
    assert normalize_title("  Hello,   World!! ") == "hello world"


def test_canonicalize_url_strips_tracking() -> None:
    url = "https://Example.com/path?a=1&utm_source=x&fbclid=y#frag"
    assert canonicalize_url(url) == "https://example.com/path?a=1"


def test_location_city_state() -> None:
    text = "Climate strike in Seattle, WA on Friday"
    assert extract_location_from_text(text) == "Seattle, WA"


def test_location_rejects_leading_article() -> None:
    assert extract_location_from_text("Rally at The Capitol") is None


def test_location_street_address() -> None:
    assert extract_location_from_text("Rally 450 Broad Street tonight") == "450 Broad Street"


def test_location_at_street_address() -> None:
    text = "Teachers march at 123 Main Street today"
    assert extract_location_from_text(text) == "123 Main Street"


def test_location_none_for_empty_text() -> None:
    assert extract_location_from_text("") is None
    assert extract_location_from_text(None) is None
    assert extract_location_from_text("no places mentioned here") is None


def test_date_weekday_with_time() -> None:
    value = extract_date_from_text("Rally on Friday at 3pm", REFERENCE)
    assert value == datetime(2026, 3, 13, 15, 0, tzinfo=UTC)


def test_date_relative_days() -> None:
    assert extract_date_from_text("March tomorrow!", REFERENCE) is not None
    assert extract_date_from_text("Vigil tomorrow", REFERENCE) == datetime(
        2026, 3, 11, 12, 0, tzinfo=UTC
    )
    assert extract_date_from_text("Vigil tonight", REFERENCE) == datetime(
        2026, 3, 10, 20, 0, tzinfo=UTC
    )


def test_date_month_name_with_year_and_time() -> None:
    value = extract_date_from_text("Join us March 14, 2026 at 2:30 pm", REFERENCE)
    assert value == datetime(2026, 3, 14, 14, 30, tzinfo=UTC)


def test_date_iso() -> None:
    value = extract_date_from_text("Starts 2026-04-01T18:00:00Z sharp", REFERENCE)
    assert value == datetime(2026, 4, 1, 18, 0, tzinfo=UTC)


def test_date_next_weekday_skips_today() -> None:
    friday = datetime(2026, 3, 13, 9, 0, tzinfo=UTC)
    assert extract_date_from_text("Strike on Friday", friday) == datetime(
        2026, 3, 13, 12, 0, tzinfo=UTC
    )
    assert extract_date_from_text("Strike next Friday", friday) == datetime(
        2026, 3, 20, 12, 0, tzinfo=UTC
    )


def test_date_none_without_date() -> None:
    assert extract_date_from_text("A rally happened", REFERENCE) is None


def test_all_dates_in_text_order() -> None:
    dates = extract_all_dates_from_text("Vigil tonight and again on Saturday", REFERENCE)
    assert dates == [
        datetime(2026, 3, 10, 20, 0, tzinfo=UTC),
        datetime(2026, 3, 14, 12, 0, tzinfo=UTC),
    ]


def test_hashtags() -> None:
    assert extract_hashtags("#ClimateStrike now! #climatestrike #ClimateStrike") == {
        "ClimateStrike",
        "climatestrike",
    }
    assert extract_hashtags(None) == set()


def test_first_sentence() -> None:
    assert first_sentence("Huge rally today! Bring signs.") == "Huge rally today!"
    assert first_sentence("x" * 150) == "x" * 100


def test_parse_event_info() -> None:
    info = parse_event_info("#MarchForOurLives in Denver, CO tomorrow", REFERENCE)
    assert info["location"] == "Denver, CO"
    assert info["hashtags"] == {"MarchForOurLives"}
    assert info["start_date"] == datetime(2026, 3, 11, 12, 0, tzinfo=UTC)
