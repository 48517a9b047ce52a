"""
Schema-drift tolerant field access for parsed pages.

Upstream payloads rename keys between endpoints and over time, and the HTML
templates move elements around. Both are handled the same way: an ordered
chain of candidates per logical field, tried in order, with a typed
coercion and an explicit default.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, List, Mapping, Optional, Sequence, Tuple

from bs4 import Tag

from .utils import from_timestamp, now_local, parse_datetime

logger = logging.getLogger(__name__)

_TRUE_STRINGS = {"1", "true", "on", "yes"}


# -------------------------------------------------------
# COERCIONS
# -------------------------------------------------------

def to_str(value: Any) -> str:
    if isinstance(value, bool):
        return "1" if value else ""
    return str(value)


def to_int(value: Any) -> int:
    """Integer coercion that also accepts "12", "12.0" and leading-digit strings."""
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return int(value)
    text = str(value).strip()
    match = re.match(r"-?\d+", text)
    if match is None:
        raise ValueError(f"not an integer: {value!r}")
    return int(match.group(0))


def to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    return str(value).strip().lower() in _TRUE_STRINGS


def to_datetime(value: Any) -> datetime:
    """Numbers are epoch seconds, strings go through parse_datetime."""
    if isinstance(value, bool):
        raise ValueError("boolean is not a timestamp")
    if isinstance(value, (int, float)):
        return from_timestamp(value)
    return parse_datetime(str(value))


@dataclass(frozen=True)
class Field:
    """
    One logical field read from a payload record.

    Attributes:
        keys: Candidate keys, tried in order; None and "" values are skipped
        coerce: Typed conversion applied to the first usable value
        default: Returned when no key is usable or coercion fails; a
            callable default is invoked (used for "now")
    """
    keys: Tuple[str, ...]
    coerce: Callable[[Any], Any] = to_str
    default: Any = None

    def read(self, record: Mapping[str, Any]) -> Any:
        for key in self.keys:
            if key not in record:
                continue
            value = record[key]
            if value is None or value == "":
                continue
            try:
                return self.coerce(value)
            except (TypeError, ValueError, OverflowError, OSError):
                logger.debug("Field %s: could not coerce %r", key, value)
                break
        return self.default() if callable(self.default) else self.default


def string_field(*keys: str, default: Optional[str] = "") -> Field:
    return Field(tuple(keys), to_str, default)


def int_field(*keys: str, default: Optional[int] = None) -> Field:
    return Field(tuple(keys), to_int, default)


def bool_field(*keys: str, default: bool = False) -> Field:
    return Field(tuple(keys), to_bool, default)


def datetime_field(*keys: str, nullable: bool = False) -> Field:
    return Field(tuple(keys), to_datetime, None if nullable else now_local)


# -------------------------------------------------------
# PAYLOAD NAVIGATION
# -------------------------------------------------------

def dig(payload: Any, *paths: Sequence[str]) -> Any:
    """
    Return the first non-None value found under any of the key paths.

    Example:
        dig(payload, ("threads",), ("data", "threads"), ("__T",))
    """
    for path in paths:
        node = payload
        for key in path:
            if not isinstance(node, Mapping) or key not in node:
                node = None
                break
            node = node[key]
        if node is not None:
            return node
    return None


def as_records(value: Any) -> Optional[List[Any]]:
    """Records arrays arrive as JSON lists or as index-keyed objects."""
    if isinstance(value, list):
        return value
    if isinstance(value, Mapping):
        return list(value.values())
    return None


# -------------------------------------------------------
# HTML SELECTORS
# -------------------------------------------------------

class SelectorChain:
    """
    CSS selector fallback chain for resilient parsing.

    Tries multiple selectors in order until one matches inside the given
    element, so a template change that drops one marker still finds the
    element through another.
    """

    def __init__(self, selectors: List[str], name: str = "unnamed"):
        self.selectors = selectors
        self.name = name

    def select_one(self, context: Tag) -> Optional[Tag]:
        for index, selector in enumerate(self.selectors):
            result = context.select_one(selector)
            if result is not None:
                if index > 0:
                    logger.debug("%s: using fallback selector #%d: %s", self.name, index + 1, selector)
                return result
        return None

    def select(self, context: Tag) -> List[Tag]:
        for selector in self.selectors:
            results = context.select(selector)
            if results:
                return results
        return []
