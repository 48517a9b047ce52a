"""
Failure taxonomy for crawl and audit runs.

Every failure that reaches a run record is reduced to one of the summary
tokens below, optionally followed by a short diagnostic message. The audit
service later classifies those stored summaries into coarse categories by
looking at the token prefix.
"""

import re
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError


# -------------------------------------------------------
# SUMMARY TOKENS
# -------------------------------------------------------
HTTP_429 = "http_429"
HTTP_5XX = "http_5xx"
HTTP_4XX = "http_4xx"
HTTP_TIMEOUT = "http_timeout"
HTTP_CONNECT_ERROR = "http_connect_error"
GUEST_BLOCKED = "guest_blocked"
PARSE_LIST_FAILED = "parse_list_failed"
PARSE_THREAD_FAILED = "parse_thread_failed"
DB_WRITE_FAILED = "db_write_failed"
UNKNOWN_ERROR = "unknown_error"

# error_summary columns are VARCHAR(200)
MAX_SUMMARY_LENGTH = 200

CATEGORY_HTTP = "http"
CATEGORY_PARSE = "parse"
CATEGORY_DB = "db"
CATEGORY_UNKNOWN = "unknown"


class CrawlError(Exception):
    """Base class for failures that carry a summary token."""

    def __init__(self, token: str, message: str = ""):
        super().__init__(message or token)
        self.token = token


class RequestError(CrawlError):
    """
    A fetch failed at the transport or access layer.

    Attributes:
        token: One of the http_* tokens or guest_blocked
        status_code: HTTP status when a response was received, else None
    """

    def __init__(self, token: str, status_code: Optional[int] = None, message: str = ""):
        super().__init__(token, message)
        self.status_code = status_code


class ParseError(CrawlError):
    """A page was fetched but its mandatory structure was missing."""


class DecodeError(ValueError):
    """No decoding stage produced a structured payload."""


def format_with_message(token: str, message: str) -> str:
    """
    Append a whitespace-collapsed message to a token, capped at 200 chars.

    Example:
        >>> format_with_message("unknown_error", "boom\\n  again")
        'unknown_error;msg=boom again'
    """
    normalized = re.sub(r"\s+", " ", message or "").strip()
    if not normalized:
        return token

    summary = f"{token};msg={normalized}"
    return summary[:MAX_SUMMARY_LENGTH]


@dataclass
class ThreadFailure:
    """Tagged failure value recorded against one thread of a run."""
    summary: str
    status_code: Optional[int] = None

    @property
    def category(self) -> str:
        return error_category(self.summary)


def resolve_failure(exc: BaseException) -> ThreadFailure:
    """Reduce any exception raised while crawling a thread to a ThreadFailure."""
    if isinstance(exc, RequestError):
        return ThreadFailure(exc.token, exc.status_code)
    if isinstance(exc, CrawlError):
        return ThreadFailure(exc.token)
    if isinstance(exc, SQLAlchemyError):
        return ThreadFailure(DB_WRITE_FAILED)
    return ThreadFailure(format_with_message(UNKNOWN_ERROR, str(exc)))


def error_category(summary: Optional[str]) -> str:
    """Classify a stored error summary into http / parse / db / unknown."""
    if not summary:
        return CATEGORY_UNKNOWN
    if summary.startswith("http_") or summary.startswith(GUEST_BLOCKED):
        return CATEGORY_HTTP
    if summary.startswith("parse_"):
        return CATEGORY_PARSE
    if summary.startswith(DB_WRITE_FAILED):
        return CATEGORY_DB
    return CATEGORY_UNKNOWN
