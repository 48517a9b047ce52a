"""Tests for crawl run bookkeeping."""

from datetime import datetime

from nga_crawler.errors import ThreadFailure
from nga_crawler.models import CrawlRun, CrawlRunThread
from nga_crawler.recorder import CrawlRunRecorder
from nga_crawler.state import get_or_create_forum, new_thread

STARTED = datetime(2026, 1, 20, 8, 0, 0)


def make_recorder(session, **kwargs):
    forum = get_or_create_forum(session, 7)
    recorder = CrawlRunRecorder(session)
    recorder.start_run(forum.id, kwargs.pop("trigger", "manual"), started_at=STARTED, **kwargs)
    return recorder, forum


def make_thread(session, forum, tid=1001):
    thread = new_thread(
        forum,
        tid,
        title="Thread",
        author_name="Alice",
        thread_created_at=STARTED,
    )
    session.add(thread)
    session.commit()
    return thread


class TestRunLifecycle:
    def test_start_run_persists_row(self, session):
        recorder, forum = make_recorder(
            session,
            window_start=datetime(2026, 1, 1, 0, 0, 0),
            window_end=datetime(2026, 1, 31, 23, 59, 59),
        )
        run = session.query(CrawlRun).one()
        assert run is recorder.run
        assert run.forum_id == forum.id
        assert run.run_trigger_text == "manual"
        assert run.date_window_start.isoformat() == "2026-01-01"
        assert run.date_window_end.isoformat() == "2026-01-31"
        assert run.run_finished_at is None

    def test_trigger_text_truncated(self, session):
        recorder, _ = make_recorder(session, trigger="x" * 50, window_start=None, window_end=None)
        assert recorder.run.run_trigger_text == "x" * 30

    def test_finish_run_only_once(self, session):
        recorder, _ = make_recorder(session, window_start=None, window_end=None)
        first = datetime(2026, 1, 20, 8, 5, 0)
        recorder.finish_run(first)
        recorder.finish_run(datetime(2026, 1, 20, 9, 0, 0))
        assert recorder.run.run_finished_at == first

    def test_counters_synced_on_commit(self, session):
        recorder, _ = make_recorder(session, window_start=None, window_end=None)
        recorder.increase_thread_scanned()
        recorder.increase_thread_scanned()
        recorder.increase_change_detected()
        recorder.increase_thread_updated()
        recorder.increase_http_request()
        recorder.finish_run()

        run = session.query(CrawlRun).one()
        assert run.thread_scanned_count == 2
        assert run.thread_change_detected_count == 1
        assert run.thread_updated_count == 1
        assert run.http_request_count == 1


class TestSummary:
    def test_summary_fields(self, session):
        recorder, _ = make_recorder(
            session,
            window_start=datetime(2026, 1, 1),
            window_end=datetime(2026, 1, 31),
        )
        recorder.increase_new_posts(12)
        recorder.increase_updated_posts(3)
        recorder.increase_failed_thread()
        recorder.finish_run(datetime(2026, 1, 20, 8, 0, 2))

        summary = recorder.summary()
        assert summary["run_id"] == recorder.run.id
        assert summary["run_started_at"] == "2026-01-20 08:00:00"
        assert summary["run_finished_at"] == "2026-01-20 08:00:02"
        assert summary["date_window_start"] == "2026-01-01"
        assert summary["date_window_end"] == "2026-01-31"
        assert summary["new_post_count"] == 12
        assert summary["updated_post_count"] == 3
        assert summary["failed_thread_count"] == 1
        assert summary["duration_ms"] == 2000

    def test_summary_before_start(self, session):
        assert CrawlRunRecorder(session).summary() == {}

    def test_unfinished_run_has_no_finish_time(self, session):
        recorder, _ = make_recorder(session, window_start=None, window_end=None)
        summary = recorder.summary()
        assert summary["run_finished_at"] is None
        assert summary["date_window_start"] is None
        assert summary["duration_ms"] >= 0


class TestThreadOutcomes:
    def test_http_tracking_per_thread(self, session):
        recorder, _ = make_recorder(session, window_start=None, window_end=None)
        recorder.increase_http_request()
        recorder.begin_thread_http_tracking()
        recorder.increase_http_request()
        recorder.increase_http_request()

        assert recorder.end_thread_http_tracking() == 2
        assert recorder.http_request_count == 3
        assert recorder.end_thread_http_tracking() == 0

    def test_success(self, session):
        recorder, forum = make_recorder(session, window_start=None, window_end=None)
        thread = make_thread(session, forum)
        detected = datetime(2026, 1, 20, 12, 0, 0)

        run_thread = recorder.start_thread(thread, True, detected)
        recorder.mark_thread_success(run_thread, datetime(2026, 1, 20, 8, 1, 0), 2, True, 30, 1, 2)

        stored = session.query(CrawlRunThread).one()
        assert stored.change_detected_by_last_reply_at is True
        assert stored.detected_last_reply_at == detected
        assert stored.fetched_page_count == 2
        assert stored.page_limit_applied is True
        assert stored.new_post_count == 30
        assert stored.updated_post_count == 1
        assert stored.http_request_count == 2
        assert stored.error_summary is None

    def test_failure(self, session):
        recorder, forum = make_recorder(session, window_start=None, window_end=None)
        thread = make_thread(session, forum)

        run_thread = recorder.start_thread(thread, False, None)
        recorder.mark_thread_failure(run_thread, datetime(2026, 1, 20, 8, 1, 0), ThreadFailure("http_5xx", 502), 1)

        stored = session.query(CrawlRunThread).one()
        assert stored.error_summary == "http_5xx"
        assert stored.http_error_code == 502
        assert stored.http_request_count == 1
        assert stored.finished_at == datetime(2026, 1, 20, 8, 1, 0)

    def test_start_thread_reuses_row_and_resets_it(self, session):
        recorder, forum = make_recorder(session, window_start=None, window_end=None)
        thread = make_thread(session, forum)

        run_thread = recorder.start_thread(thread, True, None)
        recorder.mark_thread_failure(run_thread, datetime(2026, 1, 20, 8, 1, 0), ThreadFailure("parse_thread_failed"), 1)
        again = recorder.start_thread(thread, False, None)

        assert again.id == run_thread.id
        assert session.query(CrawlRunThread).count() == 1
        assert again.error_summary is None
        assert again.finished_at is None
        assert again.change_detected_by_last_reply_at is False
