import pytest

from ingest.feed_packs import FeedPackError, load_feed_packs


def test_load_feed_packs_in_file_order(tmp_path) -> None:
    (tmp_path / "a.yaml").write_text(
        "- id: one\n  name: One\n  url: https://one.test/rss\n  tags: [News]\n",
        encoding="utf-8",
    )
    (tmp_path / "b.yaml").write_text(
        "- id: two\n  name: Two\n  url: https://two.test/rss\n  enabled: false\n"
        "- id: one\n  name: Copy\n  url: https://copy.test/rss\n",
        encoding="utf-8",
    )
    (tmp_path / "empty.yaml").write_text("", encoding="utf-8")

    entries = load_feed_packs(tmp_path)

    assert [(e.pack_id, e.source_id, e.enabled) for e in entries] == [
        ("a", "one", True),
        ("b", "two", False),
    ]
    assert entries[0].tags == ("news",)


def test_missing_directory_has_no_feeds(tmp_path) -> None:
    assert load_feed_packs(tmp_path / "missing") == []


def test_invalid_entries_are_rejected(tmp_path) -> None:
    (tmp_path / "bad.yaml").write_text("- id: x\n  name: X\n  url: ftp://x.test\n", encoding="utf-8")
    with pytest.raises(FeedPackError, match="http"):
        load_feed_packs(tmp_path)

    (tmp_path / "bad.yaml").write_text("- id: x\n  name: X\n", encoding="utf-8")
    with pytest.raises(FeedPackError, match="missing url"):
        load_feed_packs(tmp_path)
