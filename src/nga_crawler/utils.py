"""
Utility functions shared by the parsers, the crawler and the audit service.

Timestamps throughout the package are naive datetimes holding Asia/Shanghai
wall-clock time, which is what the forum renders and what gets persisted.
"""

import hashlib
import re
from datetime import datetime, timedelta, timezone
from typing import Optional, Union


# Asia/Shanghai has had no DST since 1991, a fixed offset is exact
SHANGHAI_TZ = timezone(timedelta(hours=8), "Asia/Shanghai")

COMPARE_FORMAT = "%Y-%m-%d %H:%M:%S"

_DATE_FORMATS = (
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M",
    "%Y/%m/%d %H:%M:%S",
    "%Y/%m/%d %H:%M",
    "%Y-%m-%d",
)

_SHORT_DATE_FORMATS = (
    "%m-%d %H:%M",
    "%m/%d %H:%M",
)

_CONTROL_CHARS = re.compile(r"[\x00-\x1F]")
_LEGACY_CHARSET_MARKER = re.compile(r"charset\s*=\s*(gbk|gb2312|gb18030)", re.IGNORECASE)
LEGACY_ENCODINGS = ("gb18030", "gbk", "gb2312")


def now_local() -> datetime:
    """Current Asia/Shanghai wall-clock time, without tzinfo."""
    return datetime.now(SHANGHAI_TZ).replace(tzinfo=None, microsecond=0)


def to_local(value: datetime) -> datetime:
    """Convert an aware datetime to naive Asia/Shanghai time; naive input is returned as-is."""
    if value.tzinfo is None:
        return value
    return value.astimezone(SHANGHAI_TZ).replace(tzinfo=None)


def from_timestamp(seconds: Union[int, float]) -> datetime:
    """
    Epoch seconds to naive Asia/Shanghai time.

    Raises:
        ValueError: if the value is outside the representable range
    """
    try:
        return datetime.fromtimestamp(int(seconds), SHANGHAI_TZ).replace(tzinfo=None)
    except (OverflowError, OSError) as exc:
        raise ValueError(f"timestamp out of range: {seconds}") from exc


def parse_datetime(value: str) -> datetime:
    """
    Parse the timestamp renderings the forum emits.

    Accepts epoch seconds given as digits, ISO 8601 strings (with or without
    offset), "YYYY-MM-DD HH:MM[:SS]" with dashes or slashes, and the short
    "MM-DD HH:MM" form used on listing pages, which is assumed to be in the
    current year.

    Raises:
        ValueError: if no known format matches
    """
    text = value.strip()
    if not text:
        raise ValueError("empty timestamp")

    if text.isdigit():
        return from_timestamp(int(text))

    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue

    for fmt in _SHORT_DATE_FORMATS:
        try:
            parsed = datetime.strptime(text, fmt)
        except ValueError:
            continue
        return parsed.replace(year=now_local().year)

    return to_local(datetime.fromisoformat(text.replace("Z", "+00:00")))


def format_compare(value: Optional[datetime]) -> Optional[str]:
    """Render a timestamp for change comparison, ignoring sub-second noise."""
    if value is None:
        return None
    return to_local(value).strftime(COMPARE_FORMAT)


def sha256_string(text: str) -> str:
    """
    Hex SHA256 of a UTF-8 string.

    Used as the post content fingerprint, so it is always computed over the
    raw source text, never over sanitized HTML.
    """
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def is_numeric_text(text: Optional[str]) -> bool:
    """True for strings made only of ASCII digits."""
    return bool(text) and re.fullmatch(r"\d+", text) is not None


def extract_title_prefix(title: str) -> Optional[str]:
    """Return the bracketed prefix of a title, e.g. "water" for "[water] Hi"."""
    match = re.match(r"^\[(.+?)]", title or "")
    return match.group(1) if match else None


def strip_control_chars(text: str) -> str:
    return _CONTROL_CHARS.sub("", text)


def clean_text(text: Optional[str]) -> str:
    """Collapse whitespace runs and trim."""
    return re.sub(r"\s+", " ", text or "").strip()


def looks_like_html(raw: str) -> bool:
    """Content sniffing used to pick the HTML or the payload parse path."""
    trimmed = raw.lstrip()
    if not trimmed:
        return False
    return trimmed.startswith("<") or "<html" in raw.lower()


def repair_legacy_encoding(text: str) -> str:
    """
    Undo latin-1 mojibake of a GBK-family body.

    When a GBK page was decoded as latin-1 every byte became one code point
    below 256; re-encoding recovers the bytes. Text that already holds real
    CJK characters cannot be re-encoded and is returned unchanged.
    """
    try:
        raw_bytes = text.encode("latin-1")
    except UnicodeEncodeError:
        return text

    for encoding in LEGACY_ENCODINGS:
        try:
            return raw_bytes.decode(encoding)
        except UnicodeDecodeError:
            continue
    return text


def normalize_html_encoding(html: str) -> str:
    """Fix a mis-decoded GBK page and rewrite its charset marker to UTF-8."""
    if not _LEGACY_CHARSET_MARKER.search(html):
        return html
    return _LEGACY_CHARSET_MARKER.sub("charset=UTF-8", repair_legacy_encoding(html))


def decode_body(raw: Union[str, bytes]) -> str:
    """Bytes are decoded as UTF-8 first, then as GB18030."""
    if isinstance(raw, str):
        return raw
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError:
        return raw.decode("gb18030", errors="replace")
