"""
Parser for thread detail pages.

Like the list parser it has a structured payload path and a guest HTML
path. Besides the posts it reports the page number, the total page count
(explicit, derived from row counts, or inferred from pagination links) and
the thread title, which the crawler uses to fix placeholder titles.

Floor numbers are normalized to zero-based (floor 0 is the opening post).
"""

import logging
import math
import re
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

import orjson
from bs4 import BeautifulSoup, Tag

from .errors import PARSE_THREAD_FAILED, DecodeError, ParseError
from .fields import (
    SelectorChain,
    as_records,
    bool_field,
    datetime_field,
    dig,
    int_field,
    string_field,
)
from .payload import PayloadDecoder, normalize_js_escapes
from .records import PostRecord, ThreadPage
from .utils import (
    clean_text,
    decode_body,
    from_timestamp,
    looks_like_html,
    normalize_html_encoding,
    now_local,
    parse_datetime,
    strip_control_chars,
)

logger = logging.getLogger(__name__)

DELETED_MARKERS = ("帖子被删除", "该帖被删除")
FOLDED_MARKERS = ("帖子被折叠", "被折叠")

# -------------------------------------------------------
# PAYLOAD FIELD CHAINS
# -------------------------------------------------------
POST_ARRAY_PATHS = (
    ("posts",),
    ("data", "posts"),
    ("p",),
    ("data", "p"),
    ("data", "__R"),
    ("__R",),
)

PAGE = int_field("page", "page_no", "page_number", "__PAGE", default=1)
PAGE_TOTAL = int_field("page_total", "page_count", "total_page", "total_pages")
ROW_COUNT = int_field("__R__ROWS")
ROWS_PER_PAGE = int_field("__R__ROWS_PAGE")
THREAD_ID = int_field("tid", "thread_id", "id", default=0)
TOPIC_POST_ID = int_field("tpid", default=0)
THREAD_TITLE = string_field("subject", "title", "thread_title")
REPLY_TOTAL = int_field("reply_count_total", "replies")

AUTHOR_ID = int_field("author_id", "author_uid", "author_source_user_id", "authorid")
AUTHOR_NAME = string_field("author", "author_name", "poster")
USER_NAME = string_field("nickname", "username", "name")
FLOOR_ZERO_BASED = int_field("floor_number", "lou")
FLOOR_ONE_BASED = int_field("floor")
POST_ID = int_field("pid", "post_id", "source_post_id", default=0)
POST_CREATED_AT = datetime_field(
    "postdatetimestamp", "post_time", "post_created_at", "created_at", "post_at", "postdate"
)
CONTENT = string_field("content", "content_raw", "content_html", "message")
IS_DELETED = bool_field("is_deleted", "is_deleted_by_source", "deleted")
IS_FOLDED = bool_field("is_folded", "is_folded_by_source", "folded")
EDITED_AT = datetime_field("edited_at", "source_edited_at", nullable=True)

# -------------------------------------------------------
# HTML SELECTORS
# -------------------------------------------------------
POST_ROWS = SelectorChain(['tr[class*="postrow"]'], "post rows")
AUTHOR_LINK = SelectorChain(['a[href*="uid="]'], "author link")
FLOOR_ANCHORS = SelectorChain(["a[name]", "a[id]"], "floor anchors")
FLOOR_LABEL = SelectorChain(['[class*="postnum"]', '[class*="floor"]'], "floor label")
POST_DATE = SelectorChain(['[id^="postdate"]', 'span[class*="postdate"]'], "post date")
POST_CONTENT = SelectorChain(['[id^="postcontent"]', '[class*="postcontent"]'], "post content")
THREAD_SUBJECT = SelectorChain(["h3#postsubject0", "title"], "thread subject")

_EDIT_MARK = re.compile(r"\[E(\d{10})\s")
_PAGE_BLOCK = re.compile(r"var\s+__PAGE\s*=\s*\{([^}]+)\}")
_PAGE_LINK = re.compile(r"[?&]page=(\d+)")
_USER_INFO = re.compile(r"commonui\.userInfo\.setAll\((\{.*\})\);", re.DOTALL)
_FLOOR_ANCHOR = re.compile(r"\bl(\d+)\b")
_PID_ANCHOR = re.compile(r"pid(\d+)Anchor")
_UID_IN_HREF = re.compile(r"\buid=(\d+)")
_UID_KEY = re.compile(r"UID:(\d+)")
_SITE_SUFFIX = re.compile(r"\s+NGA.*$")


class ThreadParser:
    """Turn a thread page body into a ThreadPage."""

    def __init__(self, decoder: Optional[PayloadDecoder] = None):
        self.decoder = decoder or PayloadDecoder()

    def parse(self, raw: Union[str, bytes]) -> ThreadPage:
        text = decode_body(raw)
        if looks_like_html(text):
            return self.parse_html(text)
        return self.parse_payload(text)

    # -------------------------------------------------------
    # Structured payload
    # -------------------------------------------------------

    def parse_payload(self, raw: str) -> ThreadPage:
        try:
            payload = self.decoder.decode(raw)
        except DecodeError as exc:
            raise ParseError(PARSE_THREAD_FAILED, str(exc)) from exc

        posts = as_records(dig(payload, *POST_ARRAY_PATHS))
        if posts is None:
            raise ParseError(PARSE_THREAD_FAILED, "Thread payload missing posts")

        root: Mapping[str, Any] = payload if isinstance(payload, dict) else {}
        data = root.get("data") if isinstance(root.get("data"), dict) else root
        thread_meta = dig(root, ("data", "__T"), ("__T",))
        if not isinstance(thread_meta, dict):
            thread_meta = {}
        users = dig(root, ("data", "__U"), ("__U",))
        if not isinstance(users, dict):
            users = {}

        page_total = PAGE_TOTAL.read(root)
        if page_total is None:
            page_total = PAGE_TOTAL.read(data)
        if page_total is None:
            rows, per_page = ROW_COUNT.read(data), ROWS_PER_PAGE.read(data)
            if rows is not None and per_page:
                page_total = math.ceil(rows / per_page)

        source_thread_id = THREAD_ID.read(data) or THREAD_ID.read(thread_meta)
        topic_post_id = TOPIC_POST_ID.read(thread_meta)

        records = []
        for post in posts:
            if not isinstance(post, dict):
                continue
            records.append(self._post_from_payload(post, users, topic_post_id))

        reply_total = REPLY_TOTAL.read(thread_meta)
        if reply_total is None:
            reply_total = REPLY_TOTAL.read(data)

        return ThreadPage(
            source_thread_id=source_thread_id,
            page=PAGE.read(data),
            page_total=max(1, page_total or 1),
            posts=records,
            thread_title=clean_text(THREAD_TITLE.read(thread_meta) or THREAD_TITLE.read(data)),
            reply_count_total=reply_total if reply_total is not None and reply_total >= 0 else None,
        )

    @staticmethod
    def _post_from_payload(post: Dict[str, Any], users: Dict[str, Any], topic_post_id: int) -> PostRecord:
        author_id = AUTHOR_ID.read(post)
        author_name = AUTHOR_NAME.read(post)
        if not author_name and author_id is not None:
            user = users.get(str(author_id))
            if isinstance(user, dict):
                author_name = USER_NAME.read(user)

        floor = FLOOR_ZERO_BASED.read(post)
        if floor is None:
            one_based = FLOOR_ONE_BASED.read(post)
            floor = one_based - 1 if one_based is not None else 0

        source_post_id = POST_ID.read(post)
        if source_post_id <= 0 and topic_post_id > 0:
            source_post_id = topic_post_id

        edited_at = None
        alter_info = post.get("alterinfo")
        if isinstance(alter_info, str):
            match = _EDIT_MARK.search(alter_info)
            if match:
                try:
                    edited_at = from_timestamp(int(match.group(1)))
                except ValueError:
                    edited_at = None
        if edited_at is None:
            edited_at = EDITED_AT.read(post)

        return PostRecord(
            source_post_id=source_post_id,
            floor_number=floor,
            author_name=author_name,
            author_source_user_id=author_id,
            post_created_at=POST_CREATED_AT.read(post),
            content_raw=CONTENT.read(post),
            content_format="ubb",
            is_deleted_by_source=IS_DELETED.read(post),
            is_folded_by_source=IS_FOLDED.read(post),
            source_edited_at=edited_at,
        )

    # -------------------------------------------------------
    # Guest HTML page
    # -------------------------------------------------------

    def parse_html(self, raw: str) -> ThreadPage:
        html = strip_control_chars(normalize_html_encoding(raw))
        user_map = self._extract_user_map(html)
        source_thread_id = self._extract_thread_id(html)
        page, page_total = self._extract_page_meta(html)
        soup = BeautifulSoup(html, "lxml")

        rows = POST_ROWS.select(soup)
        if not rows:
            raise ParseError(PARSE_THREAD_FAILED, "Thread HTML missing post rows")

        records = []
        for index, row in enumerate(rows):
            author_id, author_name = self._extract_author(row, user_map)

            floor = self._extract_floor(row)
            if floor is None:
                floor = index

            content_node = POST_CONTENT.select_one(row)
            content_html = content_node.decode_contents().strip() if content_node is not None else ""
            is_deleted, is_folded = self._detect_flags(content_node)

            records.append(PostRecord(
                source_post_id=self._extract_pid(row),
                floor_number=floor,
                author_name=author_name,
                author_source_user_id=author_id,
                post_created_at=self._extract_post_date(row),
                content_raw=content_html,
                content_format="html",
                is_deleted_by_source=is_deleted,
                is_folded_by_source=is_folded,
            ))

        return ThreadPage(
            source_thread_id=source_thread_id,
            page=page,
            page_total=page_total,
            posts=records,
            thread_title=self._extract_title(soup),
        )

    @staticmethod
    def _extract_thread_id(html: str) -> int:
        match = re.search(r"read\.php\?tid=(\d+)", html) or re.search(r"\btid=(\d+)", html)
        return int(match.group(1)) if match else 0

    @staticmethod
    def _extract_page_meta(html: str) -> Tuple[int, int]:
        """Page and page total from ``var __PAGE = {1:total,2:page}``, else pagination links."""
        page, page_total = 1, 1

        block = _PAGE_BLOCK.search(html)
        if block:
            total_match = re.search(r"\b1\s*:\s*(\d+)", block.group(1))
            page_match = re.search(r"\b2\s*:\s*(\d+)", block.group(1))
            if total_match:
                page_total = int(total_match.group(1))
            if page_match:
                page = int(page_match.group(1))

        if page_total <= 1:
            linked = [int(value) for value in _PAGE_LINK.findall(html)]
            if linked:
                page_total = max(page_total, max(linked))

        return page, max(1, page_total)

    @staticmethod
    def _extract_user_map(html: str) -> Dict[int, str]:
        match = _USER_INFO.search(html)
        if match is None:
            return {}

        try:
            decoded = orjson.loads(strip_control_chars(normalize_js_escapes(match.group(1))))
        except orjson.JSONDecodeError:
            logger.debug("Could not decode userInfo block")
            return {}
        if not isinstance(decoded, dict):
            return {}

        result = {}
        for key, user in decoded.items():
            if not isinstance(user, dict):
                continue

            uid = None
            key_match = _UID_KEY.search(key)
            if key_match:
                uid = int(key_match.group(1))
            elif key.isdigit():
                uid = int(key)
            elif str(user.get("uid", "")).isdigit():
                uid = int(user["uid"])
            if uid is None:
                continue

            name = USER_NAME.read(user)
            if name:
                result[uid] = name
        return result

    @staticmethod
    def _extract_author(row: Tag, user_map: Dict[int, str]):
        node = AUTHOR_LINK.select_one(row)
        author_id = None
        author_name = ""
        if node is not None:
            uid_match = _UID_IN_HREF.search(node.get("href", ""))
            author_id = int(uid_match.group(1)) if uid_match else None
            author_name = clean_text(node.get_text())
        if not author_name and author_id is not None:
            author_name = user_map.get(author_id, f"UID:{author_id}")
        return author_id, author_name or "unknown"

    @staticmethod
    def _extract_floor(row: Tag) -> Optional[int]:
        # Anchors are named l0, l1, ... with l0 being the opening post
        for anchor in row.find_all("a"):
            for attr in ("name", "id"):
                match = _FLOOR_ANCHOR.search(anchor.get(attr) or "")
                if match:
                    return int(match.group(1))

        label = FLOOR_LABEL.select_one(row)
        if label is not None:
            match = re.search(r"\d+", label.get_text())
            if match:
                return int(match.group(0))
        return None

    @staticmethod
    def _extract_pid(row: Tag) -> int:
        match = _PID_ANCHOR.search(str(row))
        return int(match.group(1)) if match else 0

    @staticmethod
    def _extract_post_date(row: Tag):
        node = POST_DATE.select_one(row)
        text = clean_text(node.get_text()) if node is not None else ""
        if not text:
            return now_local()
        try:
            return parse_datetime(text)
        except ValueError:
            return now_local()

    @staticmethod
    def _detect_flags(content_node: Optional[Tag]) -> Tuple[bool, bool]:
        if content_node is None:
            return False, False
        text = clean_text(content_node.get_text())
        is_deleted = any(marker in text for marker in DELETED_MARKERS)
        is_folded = any(marker in text for marker in FOLDED_MARKERS)
        return is_deleted, is_folded

    @staticmethod
    def _extract_title(soup: BeautifulSoup) -> str:
        node = THREAD_SUBJECT.select_one(soup)
        if node is None:
            return ""
        return _SITE_SUFFIX.sub("", clean_text(node.get_text()))
