"""
Parser for forum listing pages.

Two source shapes are supported and picked by content sniffing:

- the structured "lite" payload (see payload.py), whose thread array and
  field names vary between endpoint versions;
- the guest HTML page, where rows are ``tr.topicrow`` elements and the
  authoritative timestamps live in inline ``commonui.topicArg.add(...)``
  calls.

A page whose thread array or topic rows are missing entirely raises
ParseError; a well-formed page with zero threads returns an empty list.
"""

import logging
import re
from typing import Any, Dict, List, Optional, Union

from bs4 import BeautifulSoup, Tag

from .errors import PARSE_LIST_FAILED, DecodeError, ParseError
from .fields import (
    SelectorChain,
    as_records,
    bool_field,
    datetime_field,
    dig,
    int_field,
    string_field,
)
from .payload import PayloadDecoder
from .records import ThreadSummary
from .utils import (
    clean_text,
    decode_body,
    extract_title_prefix,
    from_timestamp,
    is_numeric_text,
    looks_like_html,
    normalize_html_encoding,
    now_local,
    parse_datetime,
    strip_control_chars,
)

logger = logging.getLogger(__name__)

# Bit set in the topicArg "type" argument for sticky threads
PINNED_TYPE_FLAG = 134217728

PINNED_MARKER = "置顶"
DIGEST_MARKER = "精华"

# -------------------------------------------------------
# PAYLOAD FIELD CHAINS
# -------------------------------------------------------
THREAD_ID = int_field("tid", "thread_id", "id", default=0)
TITLE = string_field("title", "subject")
AUTHOR_NAME = string_field("author", "author_name", "poster")
AUTHOR_ID = int_field("author_id", "author_uid", "author_source_user_id", "authorid")
CREATED_AT = datetime_field("post_time", "thread_created_at", "created_at", "post_at", "postdate")
LAST_REPLY_AT = datetime_field("last_reply", "last_reply_at", "reply_at", "lastpost", nullable=True)
REPLY_COUNT = int_field("reply_count", "replies", "reply_count_display")
VIEW_COUNT = int_field("view_count", "views", "view_count_display", "hits")
IS_PINNED = bool_field("is_pinned", "pinned", "top")
IS_DIGEST = bool_field("is_digest", "digest")

THREAD_ARRAY_PATHS = (
    ("threads",),
    ("data", "threads"),
    ("t",),
    ("data", "t"),
    ("data", "__T"),
    ("__T",),
)

# -------------------------------------------------------
# HTML SELECTORS
# -------------------------------------------------------
TOPIC_ROWS = SelectorChain(['tr[class*="topicrow"]'], "topic rows")
TOPIC_LINKS = SelectorChain(['a[href*="read.php?tid="]'], "topic links")
AUTHOR_LINK = SelectorChain(['a[href*="uid="]'], "author link")
POSTDATE_SPANS = SelectorChain(['span[class*="postdate"]'], "row dates")
REPLIES_CELL = SelectorChain(['td[class*="replies"] a', 'td[class*="replies"]'], "replies cell")

_TOPIC_ARG = re.compile(r"commonui\.topicArg\.add\(([^)]+)\)")
_TID_IN_HREF = re.compile(r"\btid=(\d+)")
_UID_IN_HREF = re.compile(r"\buid=(\d+)")
_INT_ARG = re.compile(r"-?\d+")


class ListParser:
    """Turn a listing page body into ThreadSummary records."""

    def __init__(self, decoder: Optional[PayloadDecoder] = None):
        self.decoder = decoder or PayloadDecoder()

    def parse(self, raw: Union[str, bytes]) -> List[ThreadSummary]:
        text = decode_body(raw)
        if looks_like_html(text):
            return self.parse_html(text)
        return self.parse_payload(text)

    # -------------------------------------------------------
    # Structured payload
    # -------------------------------------------------------

    def parse_payload(self, raw: str) -> List[ThreadSummary]:
        try:
            payload = self.decoder.decode(raw)
        except DecodeError as exc:
            raise ParseError(PARSE_LIST_FAILED, str(exc)) from exc

        threads = as_records(dig(payload, *THREAD_ARRAY_PATHS))
        if threads is None:
            raise ParseError(PARSE_LIST_FAILED, "List payload missing threads")

        results = []
        for record in threads:
            if not isinstance(record, dict):
                continue

            title = TITLE.read(record)
            results.append(ThreadSummary(
                source_thread_id=THREAD_ID.read(record),
                title=title,
                title_prefix=extract_title_prefix(title),
                author_name=AUTHOR_NAME.read(record),
                author_source_user_id=AUTHOR_ID.read(record),
                thread_created_at=CREATED_AT.read(record),
                last_reply_at=LAST_REPLY_AT.read(record),
                reply_count_display=REPLY_COUNT.read(record),
                view_count_display=VIEW_COUNT.read(record),
                is_pinned=IS_PINNED.read(record),
                is_digest=IS_DIGEST.read(record),
            ))
        return results

    # -------------------------------------------------------
    # Guest HTML page
    # -------------------------------------------------------

    def parse_html(self, raw: str) -> List[ThreadSummary]:
        html = strip_control_chars(normalize_html_encoding(raw))
        topic_meta = self._extract_topic_meta(html)
        soup = BeautifulSoup(html, "lxml")

        rows = TOPIC_ROWS.select(soup)
        if not rows:
            raise ParseError(PARSE_LIST_FAILED, "List HTML missing topic rows")

        results = []
        for row in rows:
            link = self._select_best_topic_link(row)
            if link is None:
                continue

            tid_match = _TID_IN_HREF.search(link.get("href", ""))
            if tid_match is None:
                continue
            tid = int(tid_match.group(1))
            if tid <= 0:
                continue

            title = self._topic_title(link)
            author_id, author_name = self._extract_author(row)

            meta = topic_meta.get(tid, {})
            created_at = self._from_meta_timestamp(meta.get("postdate"))
            last_reply_at = self._from_meta_timestamp(meta.get("lastpost"))
            reply_count = meta.get("replies")

            if created_at is None or last_reply_at is None:
                created_text, last_text = self._extract_row_dates(row)
                if created_at is None:
                    created_at = self._safe_parse_date(created_text)
                if last_reply_at is None:
                    last_reply_at = self._safe_parse_date(last_text)

            if reply_count is None:
                reply_count = self._extract_reply_count(row)

            type_flags = meta.get("type")
            is_pinned = bool(type_flags is not None and type_flags & PINNED_TYPE_FLAG)

            results.append(ThreadSummary(
                source_thread_id=tid,
                title=title,
                title_prefix=extract_title_prefix(title),
                author_name=author_name,
                author_source_user_id=author_id,
                thread_created_at=created_at or now_local(),
                last_reply_at=last_reply_at,
                reply_count_display=reply_count,
                view_count_display=None,
                is_pinned=is_pinned or self._row_has_marker(row, PINNED_MARKER),
                is_digest=self._row_has_marker(row, DIGEST_MARKER),
            ))

        logger.debug("Parsed %d topic rows from list HTML", len(results))
        return results

    @staticmethod
    def _extract_topic_meta(html: str) -> Dict[int, Dict[str, Any]]:
        """Read tid, postdate, lastpost, replies and type from topicArg calls."""
        result: Dict[int, Dict[str, Any]] = {}
        for match in _TOPIC_ARG.finditer(html):
            args = [part.strip() for part in match.group(1).split(",")]

            def int_arg(index: int) -> Optional[int]:
                if index >= len(args):
                    return None
                found = _INT_ARG.search(args[index])
                return int(found.group(0)) if found else None

            tid = int_arg(1)
            if tid is None or tid <= 0:
                continue
            result[tid] = {
                "postdate": int_arg(2) or 0,
                "lastpost": int_arg(3) or 0,
                "replies": int_arg(4) or 0,
                "type": int_arg(5),
            }
        return result

    def _select_best_topic_link(self, row: Tag) -> Optional[Tag]:
        """Prefer the longest non-numeric title among the row's topic links."""
        links = TOPIC_LINKS.select(row)
        if not links:
            return None

        best, best_score = None, -1
        for link in links:
            candidate = self._topic_title(link)
            if not candidate:
                continue
            score = (0 if is_numeric_text(candidate) else 100) + len(candidate)
            if score > best_score:
                best, best_score = link, score
        return best or links[0]

    @staticmethod
    def _topic_title(link: Tag) -> str:
        text = clean_text(link.get_text())
        title_attr = clean_text(link.get("title", ""))
        if text and not is_numeric_text(text):
            return text
        if title_attr and not is_numeric_text(title_attr):
            return title_attr
        return text or title_attr

    @staticmethod
    def _extract_author(row: Tag):
        node = AUTHOR_LINK.select_one(row)
        author_id = None
        author_name = ""
        if node is not None:
            uid_match = _UID_IN_HREF.search(node.get("href", ""))
            author_id = int(uid_match.group(1)) if uid_match else None
            author_name = clean_text(node.get_text())
        if not author_name and author_id is not None:
            author_name = f"UID:{author_id}"
        return author_id, author_name or "unknown"

    @staticmethod
    def _from_meta_timestamp(value: Optional[int]):
        if not value or value <= 0:
            return None
        try:
            return from_timestamp(value)
        except ValueError:
            logger.debug("Ignoring out-of-range topic timestamp %s", value)
            return None

    @staticmethod
    def _extract_row_dates(row: Tag):
        values = [clean_text(span.get_text()) for span in POSTDATE_SPANS.select(row)]
        if not values:
            return None, None
        return values[0], values[-1]

    @staticmethod
    def _safe_parse_date(value: Optional[str]):
        if not value or not value.strip():
            return None
        try:
            return parse_datetime(value)
        except ValueError:
            return None

    @staticmethod
    def _extract_reply_count(row: Tag) -> Optional[int]:
        node = REPLIES_CELL.select_one(row)
        if node is None:
            return None
        match = re.search(r"\d+", node.get_text())
        return int(match.group(0)) if match else None

    @staticmethod
    def _row_has_marker(row: Tag, marker: str) -> bool:
        for icon in row.find_all("img"):
            label = icon.get("alt") or icon.get("title") or ""
            if marker in label:
                return True
        return marker in row.get_text()
