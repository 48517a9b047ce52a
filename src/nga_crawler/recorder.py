"""
Crawl run bookkeeping.

One CrawlRunRecorder is bound to one CrawlRun row. The crawler reports
progress through the counter methods and reports each thread's outcome
through start_thread / mark_thread_success / mark_thread_failure. HTTP
requests are counted both per run and, while tracking is active, per thread.
"""

import logging
from datetime import date, datetime
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from .errors import ThreadFailure
from .models import CrawlRun, CrawlRunThread, Thread
from .utils import now_local

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"
DATE_FORMAT = "%Y-%m-%d"


class CrawlRunRecorder:
    """
    Records a single crawl run and its per-thread outcomes.

    Usage:
        recorder = CrawlRunRecorder(session)
        recorder.start_run(forum.id, "manual", None, None)
        run_thread = recorder.start_thread(thread, True, thread.last_reply_at)
        recorder.mark_thread_success(run_thread, now_local(), 2, False, 10, 0, 2)
        recorder.finish_run()
        print(recorder.summary())
    """

    def __init__(self, session: Session):
        self.session = session
        self.run: Optional[CrawlRun] = None
        self.thread_scanned_count = 0
        self.thread_change_detected_count = 0
        self.thread_updated_count = 0
        self.http_request_count = 0
        self.new_post_count = 0
        self.updated_post_count = 0
        self.failed_thread_count = 0
        self._thread_http_count: Optional[int] = None

    # -------------------------------------------------------
    # Run lifecycle
    # -------------------------------------------------------

    def start_run(
        self,
        forum_id: int,
        trigger_text: str,
        window_start: Optional[datetime],
        window_end: Optional[datetime],
        started_at: Optional[datetime] = None,
        audit_run_id: Optional[int] = None,
    ) -> CrawlRun:
        self.run = CrawlRun(
            forum_id=forum_id,
            run_started_at=started_at or now_local(),
            run_trigger_text=(trigger_text or "manual")[:30],
            date_window_start=_as_date(window_start),
            date_window_end=_as_date(window_end),
            thread_scanned_count=0,
            thread_change_detected_count=0,
            thread_updated_count=0,
            http_request_count=0,
            audit_run_id=audit_run_id,
        )
        self.session.add(self.run)
        self.session.commit()
        logger.info("Crawl run %d started (trigger=%s)", self.run.id, self.run.run_trigger_text)
        return self.run

    def finish_run(self, finished_at: Optional[datetime] = None) -> None:
        """Stamp the finish time once; later calls are no-ops."""
        if self.run is None or self.run.run_finished_at is not None:
            return
        self.run.run_finished_at = finished_at or now_local()
        self._commit()
        logger.info(
            "Crawl run %d finished: scanned=%d changed=%d updated=%d failed=%d http=%d",
            self.run.id,
            self.thread_scanned_count,
            self.thread_change_detected_count,
            self.thread_updated_count,
            self.failed_thread_count,
            self.http_request_count,
        )

    def summary(self) -> Dict[str, Any]:
        run = self.run
        if run is None:
            return {}

        finished = run.run_finished_at or now_local()
        duration_ms = max(0, int((finished - run.run_started_at).total_seconds() * 1000))
        return {
            "run_id": run.id,
            "run_started_at": run.run_started_at.strftime(TIMESTAMP_FORMAT),
            "run_finished_at": run.run_finished_at.strftime(TIMESTAMP_FORMAT) if run.run_finished_at else None,
            "date_window_start": run.date_window_start.strftime(DATE_FORMAT) if run.date_window_start else None,
            "date_window_end": run.date_window_end.strftime(DATE_FORMAT) if run.date_window_end else None,
            "thread_scanned_count": self.thread_scanned_count,
            "thread_change_detected_count": self.thread_change_detected_count,
            "thread_updated_count": self.thread_updated_count,
            "http_request_count": self.http_request_count,
            "new_post_count": self.new_post_count,
            "updated_post_count": self.updated_post_count,
            "failed_thread_count": self.failed_thread_count,
            "duration_ms": duration_ms,
        }

    # -------------------------------------------------------
    # Counters
    # -------------------------------------------------------

    def increase_thread_scanned(self) -> None:
        self.thread_scanned_count += 1

    def increase_change_detected(self) -> None:
        self.thread_change_detected_count += 1

    def increase_thread_updated(self) -> None:
        self.thread_updated_count += 1

    def increase_http_request(self) -> None:
        """Request observer hook: one call per HTTP request sent."""
        self.http_request_count += 1
        if self._thread_http_count is not None:
            self._thread_http_count += 1

    def increase_new_posts(self, count: int) -> None:
        self.new_post_count += count

    def increase_updated_posts(self, count: int) -> None:
        self.updated_post_count += count

    def increase_failed_thread(self) -> None:
        self.failed_thread_count += 1

    def begin_thread_http_tracking(self) -> None:
        self._thread_http_count = 0

    def end_thread_http_tracking(self) -> int:
        count = self._thread_http_count or 0
        self._thread_http_count = None
        return count

    # -------------------------------------------------------
    # Per-thread outcomes
    # -------------------------------------------------------

    def start_thread(
        self,
        thread: Thread,
        change_detected: bool,
        detected_last_reply_at: Optional[datetime],
        started_at: Optional[datetime] = None,
    ) -> CrawlRunThread:
        run_thread = self.session.query(CrawlRunThread).filter_by(
            crawl_run_id=self.run.id, thread_id=thread.id
        ).first()

        if run_thread is None:
            run_thread = CrawlRunThread(crawl_run_id=self.run.id, thread_id=thread.id)
            self.session.add(run_thread)

        run_thread.change_detected_by_last_reply_at = bool(change_detected)
        run_thread.detected_last_reply_at = detected_last_reply_at
        run_thread.started_at = started_at or now_local()
        run_thread.fetched_page_count = 0
        run_thread.page_limit_applied = False
        run_thread.new_post_count = 0
        run_thread.updated_post_count = 0
        run_thread.http_request_count = 0
        run_thread.http_error_code = None
        run_thread.error_summary = None
        run_thread.finished_at = None

        self._commit()
        return run_thread

    def mark_thread_success(
        self,
        run_thread: CrawlRunThread,
        finished_at: datetime,
        fetched_pages: int,
        page_limit_applied: bool,
        new_posts: int,
        updated_posts: int,
        http_request_count: int,
    ) -> None:
        run_thread.finished_at = finished_at
        run_thread.fetched_page_count = fetched_pages
        run_thread.page_limit_applied = bool(page_limit_applied)
        run_thread.new_post_count = new_posts
        run_thread.updated_post_count = updated_posts
        run_thread.http_request_count = http_request_count
        run_thread.http_error_code = None
        run_thread.error_summary = None
        self._commit()

    def mark_thread_failure(
        self,
        run_thread: CrawlRunThread,
        finished_at: datetime,
        failure: ThreadFailure,
        http_request_count: int,
    ) -> None:
        run_thread.finished_at = finished_at
        run_thread.http_error_code = failure.status_code
        run_thread.error_summary = failure.summary
        run_thread.http_request_count = http_request_count
        self._commit()

    def _commit(self) -> None:
        """Copy the counters onto the run row and commit."""
        self.run.thread_scanned_count = self.thread_scanned_count
        self.run.thread_change_detected_count = self.thread_change_detected_count
        self.run.thread_updated_count = self.thread_updated_count
        self.run.http_request_count = self.http_request_count
        self.session.commit()


def _as_date(value) -> Optional[date]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    return value
