"""
Incremental crawl orchestration.

The Crawler ties a SiteClient, the list/thread parsers, the content pipeline
and the database together. Per thread it keeps a small state machine stored
on the Thread row:

- cursors (max floor / max post id) mark what has been persisted
- ``crawl_backfill_next_page_number`` resumes a thread cut short by the
  per-run page budget (``is_truncated_by_page_limit``)
- ``is_skipped_by_page_total_limit`` parks threads with more than
  PAGE_TOTAL_SKIP_LIMIT pages; their posts are never crawled again

Failures inside one thread are converted to a ThreadFailure at the thread
boundary and recorded against that thread's CrawlRunThread row; the run
carries on with the next thread. Only a failing list page aborts a run.
"""

import html
import logging
import re
from dataclasses import dataclass
from datetime import datetime, time, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from sqlalchemy.orm import Session

from .client import SiteClient
from .content import ContentProcessor
from .errors import (
    PARSE_LIST_FAILED,
    PARSE_THREAD_FAILED,
    CrawlError,
    ParseError,
    RequestError,
    ThreadFailure,
    resolve_failure,
)
from .list_parser import ListParser
from .models import CrawlRunThread, Forum, Post, PostRevision, Thread
from .records import PostRecord, ThreadPage, ThreadSummary
from .recorder import CrawlRunRecorder
from .state import find_post_for_upsert, find_thread, get_or_create_forum, new_thread
from .thread_parser import ThreadParser
from .utils import extract_title_prefix, format_compare, is_numeric_text, now_local, sha256_string

logger = logging.getLogger(__name__)

# -------------------------------------------------------
# CONSTANTS
# -------------------------------------------------------
PAGE_TOTAL_SKIP_LIMIT = 1000
DEFAULT_FORUM_ID = 7
DEFAULT_RATE_LIMIT_PER_SEC = 1.0

CHANGE_REASON_CONTENT = "content_fingerprint_changed"
CHANGE_REASON_DELETED = "marked_deleted_by_source"
CHANGE_REASON_FOLDED = "marked_folded_by_source"

POST_NEW = "new"
POST_UPDATED = "updated"

_LEADING_BREAKS = re.compile(r"^(?:\s*<br\s*/?>\s*)+", re.IGNORECASE)
_TRAILING_NUMBER = re.compile(r"\s*\d+\s*$")


@dataclass
class SegmentResult:
    """What one pass over a thread's pages wrote."""
    posts: int = 0
    new_posts: int = 0
    updated_posts: int = 0
    fetched_pages: int = 0
    page_limit_applied: bool = False


ThreadOutcome = Union[SegmentResult, ThreadFailure]


class Crawler:
    """
    Crawl forum listings and threads into the database.

    Usage:
        with db.session() as session:
            crawler = Crawler(HttpSiteClient(), session)
            result = crawler.crawl_forum(7, max_post_pages=5, recent_days=3)
    """

    def __init__(
        self,
        client: SiteClient,
        session: Session,
        list_parser: Optional[ListParser] = None,
        thread_parser: Optional[ThreadParser] = None,
        content_processor: Optional[ContentProcessor] = None,
        default_forum_id: int = DEFAULT_FORUM_ID,
    ):
        self.client = client
        self.session = session
        self.list_parser = list_parser or ListParser()
        self.thread_parser = thread_parser or ThreadParser()
        self.content_processor = content_processor or ContentProcessor.default()
        self.default_forum_id = default_forum_id

    # -------------------------------------------------------
    # Listing crawl
    # -------------------------------------------------------

    def crawl_forum(
        self,
        fid: int,
        max_post_pages: int = 5,
        recent_days: Optional[int] = 3,
        list_page: int = 1,
        window_start: Optional[datetime] = None,
        window_end: Optional[datetime] = None,
        trigger_text: str = "manual",
    ) -> Dict[str, Any]:
        """
        Crawl one forum listing and every changed or unfinished thread on it.

        Args:
            fid: Forum id on the site
            max_post_pages: Page budget per thread for threads outside the window
            recent_days: Size of the creation-date window ending today; None
                or 0 disables the window
            list_page: First listing page to read
            window_start: Explicit window start, overrides recent_days
            window_end: Explicit window end, overrides recent_days
            trigger_text: Stored on the crawl run

        Returns:
            ``threads`` and ``posts`` upserted, plus the run summary

        Raises:
            RequestError: The listing page could not be fetched
            ParseError: The listing page could not be parsed
        """
        now = now_local()
        if window_start is None and window_end is None and recent_days:
            window_start = datetime.combine(now.date() - timedelta(days=recent_days - 1), time.min)
            window_end = datetime.combine(now.date(), time.max)
        has_window = window_start is not None or window_end is not None

        forum = get_or_create_forum(self.session, fid, max_post_pages, DEFAULT_RATE_LIMIT_PER_SEC)

        recorder = CrawlRunRecorder(self.session)
        run = recorder.start_run(forum.id, trigger_text, window_start, window_end, now)
        self._configure_client(forum, recorder)

        threads_upserted = 0
        posts_upserted = 0
        current_page = max(1, list_page)

        try:
            while True:
                summaries = self._fetch_list_page(fid, current_page)
                if not summaries:
                    break

                stop_paging = has_window and self._should_stop_paging(summaries, window_start, window_end)

                for summary in summaries:
                    if summary.source_thread_id <= 0:
                        continue

                    recorder.increase_thread_scanned()
                    run_thread = None
                    try:
                        thread, changed = self._upsert_listed_thread(forum, summary, current_page, now, recorder)
                        threads_upserted += 1

                        run_thread = recorder.start_thread(
                            thread, changed, summary.last_reply_at if changed else None, now_local()
                        )
                        recorder.begin_thread_http_tracking()

                        in_window = self._is_within_window(summary.thread_created_at, window_start, window_end)
                        if not in_window:
                            self._mark_idle(recorder, run_thread)
                            continue

                        self._bootstrap_backfill(thread, max_post_pages)
                        start_page = self._determine_start_page(thread, changed)
                        if thread.is_skipped_by_page_total_limit or start_page is None:
                            self._mark_idle(recorder, run_thread)
                            continue

                        page_budget = PAGE_TOTAL_SKIP_LIMIT if has_window else max_post_pages
                        outcome = self._attempt(
                            self._crawl_segment, thread, start_page, page_budget, now, changed, run_thread.id
                        )
                        if isinstance(outcome, SegmentResult):
                            posts_upserted += outcome.posts
                        self._record_outcome(recorder, run_thread, thread, outcome)
                    except Exception as exc:
                        failure = self._recover(exc)
                        recorder.increase_failed_thread()
                        logger.warning("Thread %d failed: %s", summary.source_thread_id, failure.summary)
                        if run_thread is not None:
                            recorder.mark_thread_failure(
                                run_thread, now_local(), failure, recorder.end_thread_http_tracking()
                            )

                if not has_window or stop_paging:
                    break
                current_page += 1
        finally:
            recorder.finish_run(now_local())
            self.client.set_request_observer(None)

        logger.info(
            "Forum %d crawled: %d threads, %d posts (run %d)", fid, threads_upserted, posts_upserted, run.id
        )
        result: Dict[str, Any] = {"threads": threads_upserted, "posts": posts_upserted}
        result.update(recorder.summary())
        return result

    def _fetch_list_page(self, fid: int, page: int) -> List[ThreadSummary]:
        logger.debug("Fetching list fid=%d page=%d", fid, page)
        try:
            return self.list_parser.parse(self.client.fetch_list(fid, page))
        except RequestError:
            raise
        except Exception as exc:
            raise ParseError(PARSE_LIST_FAILED, str(exc)) from exc

    def _upsert_listed_thread(self, forum: Forum, summary: ThreadSummary, list_page: int, now: datetime, recorder: CrawlRunRecorder):
        thread = find_thread(self.session, summary.source_thread_id, forum.id)
        is_new = thread is None
        if is_new:
            thread = new_thread(forum, summary.source_thread_id)
            thread.first_seen_on_list_page_number = list_page
            self.session.add(thread)

        changed = is_new or format_compare(thread.last_reply_at) != format_compare(summary.last_reply_at)
        if changed:
            thread.last_detected_change_at = now
            recorder.increase_change_detected()

        thread.title = summary.title
        thread.title_prefix_text = summary.title_prefix
        thread.author_name = summary.author_name
        thread.author_source_user_id = summary.author_source_user_id
        thread.thread_created_at = summary.thread_created_at
        thread.last_reply_at = summary.last_reply_at
        if summary.reply_count_display is not None:
            thread.reply_count_display = summary.reply_count_display
        elif thread.reply_count_display is None:
            thread.reply_count_display = 0
        thread.view_count_display = summary.view_count_display
        thread.is_pinned = summary.is_pinned
        thread.is_digest = summary.is_digest
        thread.last_seen_on_list_page_number = list_page

        self.session.commit()
        return thread, changed

    # -------------------------------------------------------
    # Single-thread crawl
    # -------------------------------------------------------

    def crawl_single_thread(
        self,
        tid: int,
        max_post_pages: int = 5,
        force: bool = False,
        trigger_text: str = "manual",
    ) -> Dict[str, Any]:
        """
        Crawl one thread from page 1, re-checking floors already stored.

        With ``force`` the cursors, backfill pointer and skip flag are cleared
        first, so even a thread parked by the page-total limit is crawled.
        """
        now = now_local()
        thread = self._find_or_create_thread(tid, now)

        if force:
            thread.crawl_cursor_max_floor_number = None
            thread.crawl_cursor_max_source_post_id = None
            thread.crawl_backfill_next_page_number = None
            thread.is_truncated_by_page_limit = False
            thread.truncated_at_page_number = None
            thread.is_skipped_by_page_total_limit = False
            thread.skipped_by_page_total_limit_at = None
        self.session.commit()

        if not force:
            self._bootstrap_backfill(thread, max_post_pages)

        forum = self._forum_for(thread)
        recorder = CrawlRunRecorder(self.session)
        recorder.start_run(forum.id, trigger_text, None, None, now)
        self._configure_client(forum, recorder)

        recorder.increase_thread_scanned()
        run_thread = recorder.start_thread(thread, False, None, now_local())
        recorder.begin_thread_http_tracking()

        thread_count = 0
        post_count = 0
        try:
            if not force and thread.is_skipped_by_page_total_limit:
                self._mark_idle(recorder, run_thread)
            else:
                outcome = self._attempt(self._crawl_segment, thread, 1, max_post_pages, now, True, run_thread.id)
                if isinstance(outcome, SegmentResult):
                    thread_count = 1
                    post_count = outcome.posts
                self._record_outcome(recorder, run_thread, thread, outcome)
        finally:
            recorder.finish_run(now_local())
            self.client.set_request_observer(None)

        result: Dict[str, Any] = {"thread": thread_count, "posts": post_count}
        result.update(recorder.summary())
        return result

    # -------------------------------------------------------
    # Targeted repair
    # -------------------------------------------------------

    def repair_thread_missing_floors_by_pages(
        self,
        tid: int,
        pages: Iterable[int],
        cap_max_floor: int,
        trigger_text: str = "floor_audit",
    ) -> Dict[str, Any]:
        """
        Fetch exactly ``pages`` of a thread and upsert floors up to ``cap_max_floor``.

        Cursors and truncation state are left alone; each page is committed on
        its own so a failure on a later page keeps the earlier pages' rows.

        Returns:
            ``thread``/``posts`` counts plus the summary of the dedicated
            crawl run (``run_id``, ``failed_thread_count``, ...)
        """
        now = now_local()
        thread = self._find_or_create_thread(tid, now)
        self.session.commit()

        forum = self._forum_for(thread)
        recorder = CrawlRunRecorder(self.session)
        recorder.start_run(forum.id, trigger_text, None, None, now)
        self._configure_client(forum, recorder)

        recorder.increase_thread_scanned()
        run_thread = recorder.start_thread(thread, False, None, now_local())
        recorder.begin_thread_http_tracking()

        normalized = sorted({int(page) for page in pages if int(page) > 0}) or [1]

        thread_count = 0
        post_count = 0
        try:
            outcome = self._attempt(
                self._crawl_pages, thread, normalized, max(0, cap_max_floor), now, run_thread.id
            )
            if isinstance(outcome, SegmentResult):
                thread_count = 1
                post_count = outcome.posts
            self._record_outcome(recorder, run_thread, thread, outcome)
        finally:
            recorder.finish_run(now_local())
            self.client.set_request_observer(None)

        result: Dict[str, Any] = {"thread": thread_count, "posts": post_count}
        result.update(recorder.summary())
        return result

    def _crawl_pages(self, thread: Thread, pages: List[int], cap_max_floor: int, now: datetime, run_thread_id: Optional[int]) -> SegmentResult:
        result = SegmentResult()
        known_total = None

        for page in pages:
            if known_total is not None and page > known_total:
                break

            page_data = self._fetch_thread_page(thread.source_thread_id, page)
            result.fetched_pages += 1
            if page_data.page_total > 0:
                known_total = max(known_total or 0, page_data.page_total)

            title = (page_data.thread_title or "").strip()
            for record in page_data.posts:
                if record.floor_number < 0 or record.floor_number > cap_max_floor:
                    continue
                self._tally(result, self._apply_post(thread, record, title, now, run_thread_id))

            self.session.commit()

        return result

    # -------------------------------------------------------
    # Page loop
    # -------------------------------------------------------

    def _crawl_segment(
        self,
        thread: Thread,
        start_page: int,
        max_pages: int,
        now: datetime,
        recheck_existing: bool,
        run_thread_id: Optional[int],
    ) -> SegmentResult:
        """
        Fetch pages from ``start_page`` until the thread's last page or the budget.

        In recheck mode floors under the cursor are compared again so edits,
        deletions and folds produce revisions; otherwise they are skipped.
        """
        result = SegmentResult()
        page = max(1, start_page)
        page_total = 1
        max_floor = thread.crawl_cursor_max_floor_number
        max_pid = thread.crawl_cursor_max_source_post_id
        cursor_floor = max_floor
        cursor_pid = max_pid
        end_page = None
        reply_total = None
        last_page = page + max(1, max_pages) - 1

        while page <= last_page:
            page_data = self._fetch_thread_page(thread.source_thread_id, page)
            result.fetched_pages += 1
            page_total = max(page_total, page_data.page_total)
            if reply_total is None and page_data.reply_count_total is not None and page_data.reply_count_total >= 0:
                reply_total = page_data.reply_count_total

            thread.crawl_page_total_last_seen = page_total
            title = (page_data.thread_title or "").strip()
            if should_update_title(thread.title, title):
                thread.title = title
                thread.title_prefix_text = extract_title_prefix(title)
                thread.title_last_changed_at = now

            if page_total > PAGE_TOTAL_SKIP_LIMIT:
                logger.warning(
                    "Thread %d has %d pages, skipping post crawl permanently",
                    thread.source_thread_id, page_total,
                )
                if not thread.is_skipped_by_page_total_limit:
                    thread.is_skipped_by_page_total_limit = True
                    thread.skipped_by_page_total_limit_at = now
                if reply_total is not None:
                    thread.reply_count_display = reply_total
                thread.crawl_backfill_next_page_number = None
                thread.is_truncated_by_page_limit = True
                thread.truncated_at_page_number = None
                self.session.commit()
                return SegmentResult(fetched_pages=result.fetched_pages)

            for record in page_data.posts:
                if record.floor_number < 0:
                    continue
                pid = record.source_post_id if record.source_post_id > 0 else record.floor_number
                if not recheck_existing and _below_cursor(record.floor_number, pid, cursor_floor, cursor_pid):
                    continue

                self._tally(result, self._apply_post(thread, record, title, now, run_thread_id))
                max_floor = record.floor_number if max_floor is None else max(max_floor, record.floor_number)
                max_pid = pid if max_pid is None else max(max_pid, pid)

            self.session.commit()
            end_page = page
            if page >= page_total:
                break
            page += 1

        end_page = end_page if end_page is not None else start_page
        has_more = end_page < page_total

        thread.last_crawled_at = now
        thread.crawl_cursor_max_floor_number = max_floor
        thread.crawl_cursor_max_source_post_id = max_pid
        thread.is_truncated_by_page_limit = has_more
        thread.truncated_at_page_number = end_page if has_more else None
        thread.crawl_backfill_next_page_number = end_page + 1 if has_more else None
        if reply_total is not None:
            thread.reply_count_display = reply_total
        elif not has_more and max_floor is not None:
            # Floor 0 is the opening post, so the last floor equals the reply count
            thread.reply_count_display = max(0, max_floor)
        self.session.commit()

        result.page_limit_applied = has_more
        return result

    def _fetch_thread_page(self, tid: int, page: int) -> ThreadPage:
        logger.debug("Fetching thread tid=%d page=%d", tid, page)
        try:
            return self.thread_parser.parse(self.client.fetch_thread(tid, page))
        except CrawlError:
            raise
        except Exception as exc:
            raise ParseError(PARSE_THREAD_FAILED, str(exc)) from exc

    # -------------------------------------------------------
    # Post upsert
    # -------------------------------------------------------

    def _apply_post(
        self,
        thread: Thread,
        record: PostRecord,
        thread_title: str,
        now: datetime,
        run_thread_id: Optional[int],
    ) -> Optional[str]:
        """
        Upsert one parsed floor.

        Returns:
            POST_NEW, POST_UPDATED, or None when nothing changed
        """
        floor = record.floor_number
        pid = record.source_post_id if record.source_post_id > 0 else floor

        content_html = self.content_processor.to_safe_html(record.content_raw, record.content_format)
        if floor == 0 and thread_title:
            content_html = strip_leading_thread_title(content_html, thread_title)
        # Fingerprint the raw text so sanitizer changes never look like edits
        fingerprint = sha256_string(record.content_raw or "")

        post = find_post_for_upsert(self.session, thread.id, pid, floor)
        existed = post is not None
        if not existed:
            post = Post(thread_id=thread.id, source_post_id=pid)
            self.session.add(post)

        previous = _snapshot(post) if existed else None
        deleted = bool(record.is_deleted_by_source)
        folded = bool(record.is_folded_by_source)

        post.source_post_id = pid
        post.floor_number = floor
        post.author_name = record.author_name
        post.author_source_user_id = record.author_source_user_id
        post.post_created_at = record.post_created_at
        post.content_html = content_html
        post.content_fingerprint_sha256 = fingerprint
        post.is_deleted_by_source = deleted
        post.is_folded_by_source = folded

        reasons = change_reasons(previous, fingerprint, deleted, folded)
        if reasons:
            self.session.add(PostRevision(
                post_id=post.id,
                revision_created_at=now,
                source_edited_at=record.source_edited_at,
                content_html=previous["content_html"],
                content_fingerprint_sha256=previous["content_fingerprint_sha256"],
                change_detected_reason=";".join(reasons),
                crawl_run_thread_id=run_thread_id,
            ))

        if existed and not reasons:
            return None

        post.content_last_changed_at = now
        self.session.flush()
        return POST_UPDATED if existed else POST_NEW

    @staticmethod
    def _tally(result: SegmentResult, change: Optional[str]) -> None:
        if change is None:
            return
        result.posts += 1
        if change == POST_NEW:
            result.new_posts += 1
        else:
            result.updated_posts += 1

    # -------------------------------------------------------
    # Thread state helpers
    # -------------------------------------------------------

    def _find_or_create_thread(self, tid: int, now: datetime) -> Thread:
        thread = find_thread(self.session, tid)
        if thread is not None:
            return thread

        forum = get_or_create_forum(self.session, self.default_forum_id)
        thread = new_thread(
            forum,
            tid,
            title=str(tid),
            author_name="unknown",
            thread_created_at=now,
            reply_count_display=0,
        )
        self.session.add(thread)
        return thread

    def _forum_for(self, thread: Thread) -> Forum:
        forum = self.session.get(Forum, thread.forum_id)
        return forum or get_or_create_forum(self.session, self.default_forum_id)

    def _bootstrap_backfill(self, thread: Thread, max_post_pages: int) -> None:
        """Give a truncated thread that predates backfill pointers its resume page."""
        if thread.is_skipped_by_page_total_limit:
            return
        if thread.crawl_backfill_next_page_number is not None:
            return
        if not thread.is_truncated_by_page_limit:
            return

        truncated_at = thread.truncated_at_page_number or 0
        if truncated_at <= 0:
            truncated_at = max(1, max_post_pages)
        thread.crawl_backfill_next_page_number = truncated_at + 1
        self.session.commit()

    @staticmethod
    def _determine_start_page(thread: Thread, changed: bool) -> Optional[int]:
        if thread.crawl_backfill_next_page_number is not None:
            return thread.crawl_backfill_next_page_number
        if changed:
            known_total = thread.crawl_page_total_last_seen or 0
            return known_total if known_total > 0 else 1
        return None

    @staticmethod
    def _is_within_window(created_at: Optional[datetime], start: Optional[datetime], end: Optional[datetime]) -> bool:
        if start is None and end is None:
            return True
        if created_at is None:
            return True
        if start is not None and created_at < start:
            return False
        if end is not None and created_at > end:
            return False
        return True

    def _should_stop_paging(self, summaries: List[ThreadSummary], start: Optional[datetime], end: Optional[datetime]) -> bool:
        """True when every non-pinned thread on the page is outside the window."""
        regular = [summary for summary in summaries if not summary.is_pinned]
        if not regular:
            return False
        return not any(self._is_within_window(s.thread_created_at, start, end) for s in regular)

    # -------------------------------------------------------
    # Outcome handling
    # -------------------------------------------------------

    def _attempt(self, step: Callable[..., SegmentResult], *args) -> ThreadOutcome:
        """Run a per-thread step and return its result or the failure it raised."""
        try:
            return step(*args)
        except Exception as exc:
            return self._recover(exc)

    def _recover(self, exc: Exception) -> ThreadFailure:
        self.session.rollback()
        failure = resolve_failure(exc)
        logger.debug("Recovered from %s", type(exc).__name__, exc_info=True)
        return failure

    def _record_outcome(self, recorder: CrawlRunRecorder, run_thread: CrawlRunThread, thread: Thread, outcome: ThreadOutcome) -> None:
        if isinstance(outcome, ThreadFailure):
            recorder.increase_failed_thread()
            logger.warning("Thread %d failed: %s", thread.source_thread_id, outcome.summary)
            recorder.mark_thread_failure(run_thread, now_local(), outcome, recorder.end_thread_http_tracking())
            return

        recorder.increase_thread_updated()
        recorder.increase_new_posts(outcome.new_posts)
        recorder.increase_updated_posts(outcome.updated_posts)
        recorder.mark_thread_success(
            run_thread,
            now_local(),
            outcome.fetched_pages,
            outcome.page_limit_applied,
            outcome.new_posts,
            outcome.updated_posts,
            recorder.end_thread_http_tracking(),
        )

    @staticmethod
    def _mark_idle(recorder: CrawlRunRecorder, run_thread: CrawlRunThread) -> None:
        recorder.mark_thread_success(run_thread, now_local(), 0, False, 0, 0, recorder.end_thread_http_tracking())

    def _configure_client(self, forum: Forum, recorder: CrawlRunRecorder) -> None:
        rate = forum.request_rate_limit_per_sec
        if rate is not None and rate > 0:
            self.client.set_rate_limit(float(rate))
        self.client.set_request_observer(recorder.increase_http_request)


# -------------------------------------------------------
# Pure helpers
# -------------------------------------------------------

def should_update_title(current: Optional[str], candidate: str) -> bool:
    """Only an empty or numeric placeholder title is replaced, never by a numeric one."""
    if not candidate or is_numeric_text(candidate):
        return False
    current = current or ""
    return current == "" or is_numeric_text(current)


def change_reasons(previous: Optional[Dict[str, Any]], fingerprint: str, deleted: bool, folded: bool) -> List[str]:
    """Revision reasons for an existing post; always empty for a new one."""
    if previous is None:
        return []

    reasons = []
    if previous["content_fingerprint_sha256"] != fingerprint:
        reasons.append(CHANGE_REASON_CONTENT)
    if previous["is_deleted_by_source"] != deleted:
        reasons.append(CHANGE_REASON_DELETED)
    if previous["is_folded_by_source"] != folded:
        reasons.append(CHANGE_REASON_FOLDED)
    return reasons


def strip_leading_thread_title(content_html: str, thread_title: str) -> str:
    """
    Remove a copy of the thread title from the start of the opening post.

    Tries the whitespace-normalized title and the title without a trailing
    number, each plain and HTML-escaped; the first variant that matches wins.
    Leading ``<br>`` runs are trimmed afterwards.

    Example:
        >>> strip_leading_thread_title("Hello world<br>Body", "Hello world")
        'Body'
    """
    if not content_html or not thread_title:
        return content_html

    normalized = re.sub(r"\s+", " ", thread_title).strip()
    candidates = [normalized]
    without_number = _TRAILING_NUMBER.sub("", normalized).strip()
    if without_number != normalized:
        candidates.append(without_number)

    variants: List[str] = []
    for candidate in candidates:
        if not candidate:
            continue
        for variant in (candidate, html.escape(candidate, quote=False), html.escape(candidate, quote=True)):
            if variant not in variants:
                variants.append(variant)

    for variant in variants:
        pattern = re.compile(
            r"^\s*(?:<br\s*/?>\s*)*" + re.escape(variant) + r"(?:\s*<br\s*/?>\s*)*",
            re.IGNORECASE,
        )
        if pattern.search(content_html):
            content_html = pattern.sub("", content_html, count=1)
            break

    return _LEADING_BREAKS.sub("", content_html)


def _snapshot(post: Post) -> Dict[str, Any]:
    return {
        "content_html": post.content_html or "",
        "content_fingerprint_sha256": post.content_fingerprint_sha256 or "",
        "is_deleted_by_source": bool(post.is_deleted_by_source),
        "is_folded_by_source": bool(post.is_folded_by_source),
    }


def _below_cursor(floor: int, pid: int, max_floor: Optional[int], max_pid: Optional[int]) -> bool:
    if max_floor is not None:
        return floor <= max_floor
    if max_pid is not None:
        return pid <= max_pid
    return False
