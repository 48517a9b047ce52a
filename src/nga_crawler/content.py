"""Post content pipeline: UBB conversion followed by sanitizing."""

import re
from typing import Optional

from .sanitizer import HtmlSanitizer
from .ubb import UbbConverter
from .url_policy import SafeUrlPolicy


_LEADING_BREAKS = re.compile(r"^(?:\s*<br\s*/?>\s*)+", re.IGNORECASE)
_TRAILING_BREAKS = re.compile(r"(?:\s*<br\s*/?>\s*)+$", re.IGNORECASE)


class ContentProcessor:
    """
    Turn raw post content into HTML that is safe to store and render.

    Args:
        converter: UBB converter applied to non-HTML content
        sanitizer: Allow-list sanitizer applied to every result
    """

    def __init__(self, converter: UbbConverter, sanitizer: HtmlSanitizer):
        self.converter = converter
        self.sanitizer = sanitizer

    @classmethod
    def default(cls) -> "ContentProcessor":
        policy = SafeUrlPolicy()
        return cls(UbbConverter(policy), HtmlSanitizer(policy))

    def to_safe_html(self, raw: str, content_format: Optional[str] = "ubb") -> str:
        fmt = (content_format or "").strip().lower()
        html = raw if fmt == "html" else self.converter.convert(raw)
        sanitized = self.sanitizer.sanitize(html)
        return trim_edge_breaks(sanitized)


def trim_edge_breaks(html: str) -> str:
    """Drop <br> runs at the very start and end of a fragment."""
    if not html:
        return ""
    html = _LEADING_BREAKS.sub("", html)
    return _TRAILING_BREAKS.sub("", html)
