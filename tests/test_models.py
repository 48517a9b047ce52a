"""Tests for data models and the database layer."""

from datetime import datetime

import pytest
from sqlalchemy.exc import IntegrityError

from nga_crawler.models import Post, Thread, ThreadFloorRepairAttempt
from nga_crawler.records import PostRecord, ThreadPage, ThreadSummary
from nga_crawler.state import (
    backfill_reply_count_display,
    count_auditable_threads,
    find_gap_candidates,
    find_post_for_upsert,
    find_thread,
    floor_stats,
    get_or_create_forum,
    missing_floors,
    new_thread,
    record_repair_attempts,
    repair_attempt_counts,
)

CREATED = datetime(2026, 1, 20, 9, 0, 0)


def make_thread(session, forum, tid, max_floor=None, **fields):
    thread = new_thread(
        forum,
        tid,
        title=f"Thread {tid}",
        author_name="Alice",
        thread_created_at=CREATED,
        crawl_cursor_max_floor_number=max_floor,
        **fields,
    )
    session.add(thread)
    session.commit()
    return thread


def add_posts(session, thread, floors):
    for floor in floors:
        session.add(Post(
            thread_id=thread.id,
            source_post_id=1000 + floor,
            floor_number=floor,
            author_name="Bob",
            post_created_at=CREATED,
            content_html="",
            content_fingerprint_sha256="0" * 64,
        ))
    session.commit()


class TestRecords:
    def test_thread_summary_defaults(self):
        summary = ThreadSummary(source_thread_id=1, title="t", author_name="a", thread_created_at=CREATED)
        assert summary.last_reply_at is None
        assert summary.reply_count_display is None
        assert summary.is_pinned is False
        assert summary.to_dict()["source_thread_id"] == 1

    def test_post_record_defaults(self):
        record = PostRecord(source_post_id=1, floor_number=0, author_name="a", post_created_at=CREATED)
        assert record.content_raw == ""
        assert record.content_format == "ubb"
        assert record.source_edited_at is None

    def test_thread_page_defaults(self):
        page = ThreadPage(source_thread_id=1)
        assert page.page == 1
        assert page.page_total == 1
        assert page.posts == []


class TestForum:
    def test_get_or_create_is_idempotent(self, session):
        first = get_or_create_forum(session, 7)
        second = get_or_create_forum(session, 7)
        assert first.id == second.id
        assert first.forum_name == "NGA fid 7"
        assert "fid=7" in first.list_url
        assert first.request_rate_limit_per_sec == 1.0


class TestThreadAndPost:
    def test_find_thread_scoped_by_forum(self, session):
        forum = get_or_create_forum(session, 7)
        other = get_or_create_forum(session, 8)
        make_thread(session, forum, 100)
        assert find_thread(session, 100).forum_id == forum.id
        assert find_thread(session, 100, other.id) is None

    def test_unique_source_thread_per_forum(self, session):
        forum = get_or_create_forum(session, 7)
        make_thread(session, forum, 100)
        with pytest.raises(IntegrityError):
            make_thread(session, forum, 100)
        session.rollback()

    def test_unique_floor_per_thread(self, session):
        forum = get_or_create_forum(session, 7)
        thread = make_thread(session, forum, 100)
        add_posts(session, thread, [0])
        session.add(Post(
            thread_id=thread.id,
            source_post_id=5555,
            floor_number=0,
            author_name="Eve",
            post_created_at=CREATED,
            content_fingerprint_sha256="1" * 64,
        ))
        with pytest.raises(IntegrityError):
            session.commit()
        session.rollback()

    def test_upsert_lookup_prefers_post_id_then_floor(self, session):
        forum = get_or_create_forum(session, 7)
        thread = make_thread(session, forum, 100)
        add_posts(session, thread, [0, 1])

        by_pid = find_post_for_upsert(session, thread.id, 1001, 0)
        assert by_pid.floor_number == 1

        by_floor = find_post_for_upsert(session, thread.id, 424242, 0)
        assert by_floor.source_post_id == 1000

        assert find_post_for_upsert(session, thread.id, 424242, 9) is None

    def test_floor_stats(self, session):
        forum = get_or_create_forum(session, 7)
        thread = make_thread(session, forum, 100)
        assert floor_stats(session, thread.id) == (None, 0)
        add_posts(session, thread, [0, 1, 4])
        assert floor_stats(session, thread.id) == (4, 3)


class TestAuditQueries:
    def test_gap_candidates_exclude_complete_and_unfinished_threads(self, session):
        forum = get_or_create_forum(session, 7)
        gap = make_thread(session, forum, 1, max_floor=5)
        add_posts(session, gap, [0, 1, 3, 5])
        complete = make_thread(session, forum, 2, max_floor=2)
        add_posts(session, complete, [0, 1, 2])
        truncated = make_thread(session, forum, 3, max_floor=5, is_truncated_by_page_limit=True)
        add_posts(session, truncated, [0])
        skipped = make_thread(session, forum, 4, max_floor=5, is_skipped_by_page_total_limit=True)
        make_thread(session, forum, 5)

        assert count_auditable_threads(session) == 2
        candidates = find_gap_candidates(session)
        assert [(thread.source_thread_id, count) for thread, count in candidates] == [(1, 4)]
        assert skipped.id not in [thread.id for thread, _ in candidates]

    def test_gap_candidates_filter_and_limit(self, session):
        forum = get_or_create_forum(session, 7)
        for tid in (1, 2, 3):
            make_thread(session, forum, tid, max_floor=3)

        assert [t.source_thread_id for t, _ in find_gap_candidates(session, limit=2)] == [1, 2]
        assert [t.source_thread_id for t, _ in find_gap_candidates(session, source_thread_ids=[3])] == [3]
        assert count_auditable_threads(session, [1, 3]) == 2

    def test_thread_without_posts_is_candidate_with_zero_count(self, session):
        forum = get_or_create_forum(session, 7)
        make_thread(session, forum, 1, max_floor=0)
        assert [(t.source_thread_id, c) for t, c in find_gap_candidates(session)] == [(1, 0)]

    def test_missing_floors(self, session):
        forum = get_or_create_forum(session, 7)
        thread = make_thread(session, forum, 1, max_floor=5)
        add_posts(session, thread, [0, 1, 3, 5])
        assert missing_floors(session, thread.id, 5) == [2, 4]
        assert missing_floors(session, thread.id, None) == []

    def test_repair_attempts_accumulate(self, session):
        forum = get_or_create_forum(session, 7)
        thread = make_thread(session, forum, 1, max_floor=5)
        at = datetime(2026, 1, 21, 10, 0, 0)

        record_repair_attempts(session, thread, [2, 4], at)
        session.commit()
        record_repair_attempts(session, thread, [2], at)
        session.commit()

        assert repair_attempt_counts(session, thread.id, [2, 4, 7]) == {2: 2, 4: 1}
        assert repair_attempt_counts(session, thread.id, []) == {}
        row = session.query(ThreadFloorRepairAttempt).filter_by(thread_id=thread.id, floor_number=2).one()
        assert row.last_attempted_at == at
        assert row.source_thread_id == 1


class TestThreadDefaults:
    def test_flags_default_false(self, session):
        forum = get_or_create_forum(session, 7)
        thread = make_thread(session, forum, 1)
        stored = session.get(Thread, thread.id)
        assert stored.is_truncated_by_page_limit is False
        assert stored.is_skipped_by_page_total_limit is False
        assert stored.reply_count_display == 0


class TestBackfillReplyCount:
    def make_threads(self, session):
        forum = get_or_create_forum(session, 7)
        lagging = make_thread(session, forum, 1, max_floor=40, reply_count_display=12)
        ahead = make_thread(session, forum, 2, max_floor=5, reply_count_display=30)
        uncrawled = make_thread(session, forum, 3, reply_count_display=4)
        return lagging, ahead, uncrawled

    def test_dry_run_counts_only(self, session):
        lagging, _, _ = self.make_threads(session)
        assert backfill_reply_count_display(session, dry_run=True) == 1
        session.expire_all()
        assert session.get(Thread, lagging.id).reply_count_display == 12

    def test_raises_lagging_counts_only(self, session):
        lagging, ahead, uncrawled = self.make_threads(session)
        assert backfill_reply_count_display(session) == 1

        session.expire_all()
        assert session.get(Thread, lagging.id).reply_count_display == 40
        assert session.get(Thread, ahead.id).reply_count_display == 30
        assert session.get(Thread, uncrawled.id).reply_count_display == 4
        assert backfill_reply_count_display(session) == 0
