"""
Floor gap audit and bounded repair.

A fully crawled thread whose cursor says floors 0..N exist should hold N+1
posts. The audit finds threads that hold fewer, records exactly which floors
are missing, and, when repair is enabled, refetches the pages most likely to
contain them through Crawler.repair_thread_missing_floors_by_pages.

Each (thread, floor) pair has a persistent attempt counter. Floors that
already had MAX_REPAIR_ATTEMPTS_PER_FLOOR attempts are recorded as ignored
and left alone, so a floor the site no longer serves stops costing requests.
"""

import logging
from collections import Counter
from typing import Dict, List, Optional, Sequence

from sqlalchemy.orm import Session
from tqdm import tqdm

from .crawler import Crawler
from .errors import CATEGORY_DB, CATEGORY_HTTP, CATEGORY_PARSE, CATEGORY_UNKNOWN, error_category
from .models import (
    CrawlRunThread,
    Thread,
    ThreadFloorAuditPost,
    ThreadFloorAuditRun,
    ThreadFloorAuditThread,
)
from .state import (
    count_auditable_threads,
    find_gap_candidates,
    floor_stats,
    missing_floors,
    record_repair_attempts,
    repair_attempt_counts,
)
from .utils import now_local

logger = logging.getLogger(__name__)

# -------------------------------------------------------
# CONSTANTS
# -------------------------------------------------------
DEFAULT_PAGE_SIZE_ESTIMATE = 20
MAX_REPAIR_ATTEMPTS_PER_FLOOR = 3
REPAIR_TRIGGER_TEXT = "floor_audit"

# Thread-level repair status
STATUS_MISSING = "missing"
STATUS_REPAIRED = "repaired"
STATUS_PARTIAL = "partial"
STATUS_FAILED = "failed"
STATUS_SKIPPED = "skipped"

# Floor-level repair status
POST_STATUS_MISSING = "missing"
POST_STATUS_IGNORED = "ignored"
POST_STATUS_REPAIRED = "repaired"
POST_STATUS_STILL_MISSING = "still_missing"
POST_STATUS_FAILED = "failed"


class AuditService:
    """
    Audit stored threads for missing floors and optionally repair them.

    Usage:
        service = AuditService(crawler, session)
        audit_run = service.run(repair_enabled=True, max_post_pages=3)
        print(audit_run.repaired_thread_count)
    """

    def __init__(
        self,
        crawler: Crawler,
        session: Session,
        page_size_estimate: int = DEFAULT_PAGE_SIZE_ESTIMATE,
        max_attempts_per_floor: int = MAX_REPAIR_ATTEMPTS_PER_FLOOR,
        show_progress: bool = False,
    ):
        self.crawler = crawler
        self.session = session
        self.page_size_estimate = page_size_estimate
        self.max_attempts_per_floor = max_attempts_per_floor
        self.show_progress = show_progress

    def run(
        self,
        repair_enabled: bool,
        max_post_pages: int,
        limit: Optional[int] = None,
        trigger_text: str = "manual",
        source_thread_ids: Optional[Sequence[int]] = None,
    ) -> ThreadFloorAuditRun:
        """
        Run one audit pass.

        Args:
            repair_enabled: Refetch pages for pending floors
            max_post_pages: Page budget per thread for repair
            limit: Audit at most this many gap candidates
            trigger_text: Stored on the audit run
            source_thread_ids: Restrict the audit to these tids

        Returns:
            The persisted ThreadFloorAuditRun with its counters filled in
        """
        audit_run = ThreadFloorAuditRun(
            run_started_at=now_local(),
            run_trigger_text=(trigger_text or "manual")[:30],
            repair_enabled=bool(repair_enabled),
            total_thread_count=count_auditable_threads(self.session, source_thread_ids),
            missing_thread_count=0,
            repaired_thread_count=0,
            partial_thread_count=0,
            failed_thread_count=0,
            failed_http_count=0,
            failed_parse_count=0,
            failed_db_count=0,
            failed_unknown_count=0,
        )
        self.session.add(audit_run)
        self.session.commit()
        logger.info(
            "Audit run %d started: %d auditable threads (repair=%s)",
            audit_run.id, audit_run.total_thread_count, repair_enabled,
        )

        candidates = find_gap_candidates(self.session, limit, source_thread_ids)
        statuses: List[str] = []
        failures: Counter = Counter()

        for thread, post_count in tqdm(candidates, desc="Auditing threads", disable=not self.show_progress):
            max_floor = thread.crawl_cursor_max_floor_number
            missing = missing_floors(self.session, thread.id, max_floor)
            if not missing:
                continue

            attempts = repair_attempt_counts(self.session, thread.id, missing)
            ignored = [floor for floor in missing if attempts.get(floor, 0) >= self.max_attempts_per_floor]
            pending = [floor for floor in missing if attempts.get(floor, 0) < self.max_attempts_per_floor]

            audit_thread = self._record_gap(audit_run, thread, post_count, missing, ignored, attempts)
            statuses.append(STATUS_MISSING)
            logger.info(
                "Thread %d: %d missing floors (%d ignored)",
                thread.source_thread_id, len(missing), len(ignored),
            )

            if not repair_enabled:
                continue

            if not pending:
                audit_thread.repair_status = STATUS_SKIPPED
                audit_thread.repair_finished_at = now_local()
                self.session.commit()
                continue

            status, category = self._repair(audit_thread, thread, pending, attempts, max_post_pages)
            statuses.append(status)
            if status == STATUS_FAILED:
                failures[category] += 1

        audit_run.run_finished_at = now_local()
        audit_run.missing_thread_count = statuses.count(STATUS_MISSING)
        audit_run.repaired_thread_count = statuses.count(STATUS_REPAIRED)
        audit_run.partial_thread_count = statuses.count(STATUS_PARTIAL)
        audit_run.failed_thread_count = statuses.count(STATUS_FAILED)
        audit_run.failed_http_count = failures[CATEGORY_HTTP]
        audit_run.failed_parse_count = failures[CATEGORY_PARSE]
        audit_run.failed_db_count = failures[CATEGORY_DB]
        audit_run.failed_unknown_count = failures[CATEGORY_UNKNOWN]
        self.session.commit()

        logger.info(
            "Audit run %d finished: missing=%d repaired=%d partial=%d failed=%d",
            audit_run.id,
            audit_run.missing_thread_count,
            audit_run.repaired_thread_count,
            audit_run.partial_thread_count,
            audit_run.failed_thread_count,
        )
        return audit_run

    # -------------------------------------------------------
    # Recording
    # -------------------------------------------------------

    def _record_gap(
        self,
        audit_run: ThreadFloorAuditRun,
        thread: Thread,
        post_count: int,
        missing: List[int],
        ignored: List[int],
        attempts: Dict[int, int],
    ) -> ThreadFloorAuditThread:
        audit_thread = ThreadFloorAuditThread(
            audit_run_id=audit_run.id,
            thread_id=thread.id,
            source_thread_id=thread.source_thread_id,
            max_floor_number=thread.crawl_cursor_max_floor_number,
            post_count=post_count,
            missing_floor_count=len(missing),
            ignored_floor_count=len(ignored),
            repair_status=STATUS_MISSING,
        )
        self.session.add(audit_thread)
        self.session.flush()

        ignored_set = set(ignored)
        for floor in missing:
            self.session.add(ThreadFloorAuditPost(
                audit_run_id=audit_run.id,
                audit_thread_id=audit_thread.id,
                thread_id=thread.id,
                source_thread_id=thread.source_thread_id,
                floor_number=floor,
                repair_status=POST_STATUS_IGNORED if floor in ignored_set else POST_STATUS_MISSING,
                attempt_count_before=attempts.get(floor, 0),
            ))
        self.session.commit()
        return audit_thread

    def _audit_posts(self, audit_thread: ThreadFloorAuditThread, floors: List[int]) -> List[ThreadFloorAuditPost]:
        return (
            self.session.query(ThreadFloorAuditPost)
            .filter(
                ThreadFloorAuditPost.audit_thread_id == audit_thread.id,
                ThreadFloorAuditPost.floor_number.in_(floors),
            )
            .all()
        )

    # -------------------------------------------------------
    # Repair
    # -------------------------------------------------------

    def _repair(
        self,
        audit_thread: ThreadFloorAuditThread,
        thread: Thread,
        pending: List[int],
        attempts: Dict[int, int],
        max_post_pages: int,
    ):
        """
        Attempt to refetch the pending floors of one thread.

        Returns:
            (repair status, error category or None)
        """
        audit_thread.repair_attempted_at = now_local()
        audit_thread.repair_error_summary = None
        audit_thread.repair_error_category = None
        audit_thread.repair_http_error_code = None

        record_repair_attempts(self.session, thread, pending, now_local())
        for audit_post in self._audit_posts(audit_thread, pending):
            audit_post.attempt_count_after = attempts.get(audit_post.floor_number, 0) + 1
        self.session.commit()

        pages = estimate_pages_to_fetch(pending, max_post_pages, self.page_size_estimate)
        logger.debug("Repairing thread %d floors %s via pages %s", thread.source_thread_id, pending, pages)

        result = self.crawler.repair_thread_missing_floors_by_pages(
            thread.source_thread_id,
            pages,
            audit_thread.max_floor_number,
            REPAIR_TRIGGER_TEXT,
        )
        audit_thread.repair_crawl_run_id = result.get("run_id")

        if result.get("failed_thread_count", 0) > 0:
            summary, category, status_code = self._repair_error_context(audit_thread.repair_crawl_run_id, thread.id)
            self._apply_after_snapshot(audit_thread, thread)
            audit_thread.repair_status = STATUS_FAILED
            audit_thread.repair_error_summary = summary
            audit_thread.repair_error_category = category
            audit_thread.repair_http_error_code = status_code
            audit_thread.repair_finished_at = now_local()

            for audit_post in self._audit_posts(audit_thread, pending):
                audit_post.repair_status = POST_STATUS_FAILED
                audit_post.repair_error_category = category
                audit_post.repair_http_error_code = status_code
                audit_post.repair_error_summary = summary
            self.session.commit()

            logger.warning(
                "Repair of thread %d failed: %s (%s)", thread.source_thread_id, summary, category
            )
            return STATUS_FAILED, category

        remaining = set(self._apply_after_snapshot(audit_thread, thread))
        status = STATUS_PARTIAL if remaining else STATUS_REPAIRED
        audit_thread.repair_status = status
        audit_thread.repair_finished_at = now_local()

        for audit_post in self._audit_posts(audit_thread, pending):
            if audit_post.floor_number in remaining:
                audit_post.repair_status = POST_STATUS_STILL_MISSING
            else:
                audit_post.repair_status = POST_STATUS_REPAIRED
        self.session.commit()

        logger.info(
            "Repair of thread %d: %s (%d floors remaining)", thread.source_thread_id, status, len(remaining)
        )
        return status, None

    def _apply_after_snapshot(self, audit_thread: ThreadFloorAuditThread, thread: Thread) -> List[int]:
        """Store the post-repair floor state on the audit row and return the floors still missing."""
        self.session.refresh(thread)
        max_floor = thread.crawl_cursor_max_floor_number
        _, post_count = floor_stats(self.session, thread.id)
        remaining = missing_floors(self.session, thread.id, max_floor)

        audit_thread.repair_after_max_floor_number = max_floor
        audit_thread.repair_after_post_count = post_count
        audit_thread.repair_remaining_floor_count = None if max_floor is None else len(remaining)
        return remaining

    def _repair_error_context(self, crawl_run_id: Optional[int], thread_id: int):
        if crawl_run_id is None:
            return None, CATEGORY_UNKNOWN, None

        record = self.session.query(CrawlRunThread).filter_by(
            crawl_run_id=crawl_run_id, thread_id=thread_id
        ).first()
        if record is None:
            return None, CATEGORY_UNKNOWN, None

        return record.error_summary, error_category(record.error_summary), record.http_error_code


def estimate_pages_to_fetch(
    missing: Sequence[int],
    max_pages: int,
    page_size: int = DEFAULT_PAGE_SIZE_ESTIMATE,
) -> List[int]:
    """
    Pick the pages most likely to contain the missing floors.

    Floors are bucketed into pages by ``floor // page_size + 1``. Pages
    covering the most floors are taken first (ties keep floor order); any
    budget left over goes to neighbouring pages of those already chosen,
    breadth first, to absorb an inaccurate page size.

    Example:
        >>> estimate_pages_to_fetch([2, 4, 45], max_pages=3)
        [1, 2, 3]

    Returns:
        Sorted, unique 1-based page numbers; [1] when nothing is missing
    """
    budget = max(1, max_pages)
    size = max(1, page_size)

    buckets: Counter = Counter()
    for floor in missing:
        if floor >= 0:
            buckets[floor // size + 1] += 1
    if not buckets:
        return [1]

    ranked = sorted(buckets, key=lambda page: -buckets[page])
    pages = ranked[:budget]

    cursor = 0
    while len(pages) < budget and cursor < len(pages):
        page = pages[cursor]
        cursor += 1
        for neighbour in (page - 1, page + 1):
            if neighbour <= 0 or neighbour in pages:
                continue
            pages.append(neighbour)
            if len(pages) >= budget:
                break

    return sorted(set(pages))
