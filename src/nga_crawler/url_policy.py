"""URL allow-list shared by the UBB converter and the HTML sanitizer."""

import html
import re
from typing import FrozenSet, Optional
from urllib.parse import urlsplit


ALLOWED_SCHEMES = frozenset({"http", "https"})

_FORBIDDEN_CHARS = re.compile(r"[\x00-\x1F\x7F\s]")


class SafeUrlPolicy:
    """
    Validate and normalize a candidate link or image URL.

    The candidate is HTML-entity decoded and trimmed, then rejected if it
    still contains control or whitespace characters, has a scheme outside
    the allow-list, or has no host. ``normalize`` returns the decoded URL on
    success and None on rejection.
    """

    def __init__(self, allowed_schemes: FrozenSet[str] = ALLOWED_SCHEMES):
        self.allowed_schemes = allowed_schemes

    def normalize(self, candidate: Optional[str]) -> Optional[str]:
        if candidate is None:
            return None

        decoded = html.unescape(candidate).strip()
        if not decoded:
            return None

        if _FORBIDDEN_CHARS.search(decoded):
            return None

        try:
            parts = urlsplit(decoded)
        except ValueError:
            return None

        if parts.scheme.lower() not in self.allowed_schemes:
            return None
        if not parts.hostname:
            return None

        return decoded

    def is_allowed(self, candidate: Optional[str]) -> bool:
        return self.normalize(candidate) is not None
