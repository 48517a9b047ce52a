"""Tests for utility functions."""

import hashlib
from datetime import datetime, timezone

import pytest

from nga_crawler.utils import (
    clean_text,
    decode_body,
    extract_title_prefix,
    format_compare,
    from_timestamp,
    is_numeric_text,
    looks_like_html,
    normalize_html_encoding,
    parse_datetime,
    repair_legacy_encoding,
    sha256_string,
    to_local,
)


class TestSha256String:
    def test_known_content(self):
        expected = hashlib.sha256(b"hello world").hexdigest()
        assert sha256_string("hello world") == expected

    def test_empty_string(self):
        assert sha256_string("") == hashlib.sha256(b"").hexdigest()

    def test_utf8_encoding(self):
        expected = hashlib.sha256("你好".encode("utf-8")).hexdigest()
        assert sha256_string("你好") == expected


class TestParseDatetime:
    def test_full_timestamp(self):
        assert parse_datetime("2026-01-23 17:48:05") == datetime(2026, 1, 23, 17, 48, 5)

    def test_without_seconds(self):
        assert parse_datetime("2026-01-23 17:48") == datetime(2026, 1, 23, 17, 48)

    def test_slashes(self):
        assert parse_datetime("2026/01/23 17:48") == datetime(2026, 1, 23, 17, 48)

    def test_epoch_seconds_are_shanghai_time(self):
        # 2026-01-01 00:00:00 UTC
        assert parse_datetime("1767225600") == datetime(2026, 1, 1, 8, 0, 0)

    def test_iso_with_offset_converted(self):
        assert parse_datetime("2026-01-01T00:00:00Z") == datetime(2026, 1, 1, 8, 0, 0)

    def test_short_form_uses_current_year(self):
        parsed = parse_datetime("01-23 17:48")
        assert (parsed.month, parsed.day, parsed.hour, parsed.minute) == (1, 23, 17, 48)

    def test_garbage_raises(self):
        with pytest.raises(ValueError):
            parse_datetime("yesterday")

    def test_empty_raises(self):
        with pytest.raises(ValueError):
            parse_datetime("   ")

    def test_out_of_range_epoch_raises_value_error(self):
        with pytest.raises(ValueError):
            parse_datetime("9" * 30)

    @pytest.mark.parametrize("seconds", [99999999999999, 10 ** 30])
    def test_from_timestamp_out_of_range(self, seconds):
        with pytest.raises(ValueError):
            from_timestamp(seconds)


class TestFormatCompare:
    def test_none(self):
        assert format_compare(None) is None

    def test_ignores_microseconds(self):
        a = datetime(2026, 1, 1, 12, 0, 0, 1)
        b = datetime(2026, 1, 1, 12, 0, 0, 999)
        assert format_compare(a) == format_compare(b)

    def test_aware_value_converted(self):
        aware = datetime(2026, 1, 1, 4, 0, 0, tzinfo=timezone.utc)
        assert format_compare(aware) == "2026-01-01 12:00:00"
        assert to_local(aware) == datetime(2026, 1, 1, 12, 0, 0)


class TestText:
    def test_numeric_text(self):
        assert is_numeric_text("12345")
        assert not is_numeric_text("12a")
        assert not is_numeric_text("")
        assert not is_numeric_text(None)

    def test_title_prefix(self):
        assert extract_title_prefix("[water] First thread") == "water"
        assert extract_title_prefix("No prefix") is None

    def test_clean_text(self):
        assert clean_text("  a \n\t b  ") == "a b"
        assert clean_text(None) == ""

    def test_looks_like_html(self):
        assert looks_like_html("  <html><body></body></html>")
        assert looks_like_html("<!DOCTYPE html>")
        assert not looks_like_html('{"threads": []}')
        assert not looks_like_html("")


class TestEncoding:
    def test_repairs_latin1_mojibake(self):
        mojibake = "你好".encode("gbk").decode("latin-1")
        assert repair_legacy_encoding(mojibake) == "你好"

    def test_real_text_unchanged(self):
        assert repair_legacy_encoding("你好") == "你好"

    def test_normalize_rewrites_charset(self):
        page = '<meta charset=gbk><p>' + "帖子".encode("gbk").decode("latin-1") + "</p>"
        normalized = normalize_html_encoding(page)
        assert "charset=UTF-8" in normalized
        assert "帖子" in normalized

    def test_normalize_leaves_utf8_pages(self):
        page = '<meta charset="utf-8"><p>ok</p>'
        assert normalize_html_encoding(page) == page

    def test_decode_body_falls_back_to_gb18030(self):
        assert decode_body("中文".encode("gb18030")) == "中文"
        assert decode_body("中文".encode("utf-8")) == "中文"
