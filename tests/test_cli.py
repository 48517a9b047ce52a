"""Tests for the command line interface, run against the on-disk fixtures."""

import pytest
from click.testing import CliRunner

from nga_crawler.cli import main
from nga_crawler.models import CrawlRun, Post, Thread
from nga_crawler.state import Database


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite:///{tmp_path / 'cli.db'}"


def invoke(database_url, *args):
    return CliRunner().invoke(main, ["--database-url", database_url, *args])


def output_fields(output):
    fields = {}
    for line in output.splitlines():
        key, sep, value = line.partition(": ")
        if sep:
            fields[key] = value
    return fields


class TestCrawlForumCommand:
    def test_crawl_from_fixtures(self, database_url, fixtures_dir):
        result = invoke(
            database_url, "crawl-forum", "--fid", "7", "--recent-days", "0",
            "--source", "fixture", "--fixtures", str(fixtures_dir),
        )
        assert result.exit_code == 0, result.output

        fields = output_fields(result.output)
        assert fields["threads"] == "2"
        assert fields["posts"] == "4"
        assert fields["date_window_start"] == ""

        db = Database(database_url)
        with db.session() as session:
            assert session.query(Thread).count() == 2
            assert session.query(Post).count() == 4
            assert session.query(CrawlRun).one().run_finished_at is not None
        db.dispose()

    def test_bad_window_option(self, database_url, fixtures_dir):
        result = invoke(
            database_url, "crawl-forum", "--start-at", "yesterday-ish",
            "--source", "fixture", "--fixtures", str(fixtures_dir),
        )
        assert result.exit_code == 2
        assert "--start-at" in result.output

    def test_list_failure_exits_with_token(self, database_url, fixtures_dir):
        result = invoke(
            database_url, "crawl-forum", "--fid", "99", "--recent-days", "0",
            "--source", "fixture", "--fixtures", str(fixtures_dir),
        )
        assert result.exit_code == 1
        assert "Error: parse_list_failed" in result.output

        db = Database(database_url)
        with db.session() as session:
            assert session.query(CrawlRun).one().run_finished_at is not None
        db.dispose()


class TestCrawlThreadCommand:
    def test_single_thread(self, database_url, fixtures_dir):
        result = invoke(
            database_url, "crawl-thread", "1001",
            "--source", "fixture", "--fixtures", str(fixtures_dir),
        )
        assert result.exit_code == 0, result.output

        fields = output_fields(result.output)
        assert fields["thread"] == "1"
        assert fields["posts"] == "3"


class TestAuditCommand:
    def test_audit_after_crawl(self, database_url, fixtures_dir):
        invoke(
            database_url, "crawl-forum", "--recent-days", "0",
            "--source", "fixture", "--fixtures", str(fixtures_dir),
        )
        result = invoke(database_url, "audit-floors", "--source", "fixture", "--fixtures", str(fixtures_dir))
        assert result.exit_code == 0, result.output

        fields = output_fields(result.output)
        assert fields["total_thread_count"] == "2"
        assert fields["missing_thread_count"] == "0"
        assert fields["repair_enabled"] == "False"

    def test_invalid_thread_ids(self, database_url):
        result = invoke(database_url, "audit-floors", "--thread-ids", "1,abc")
        assert result.exit_code == 2
        assert "invalid tid" in result.output


class TestBackfillReplyCountCommand:
    def crawl_and_lower_counts(self, database_url, fixtures_dir):
        invoke(
            database_url, "crawl-forum", "--recent-days", "0",
            "--source", "fixture", "--fixtures", str(fixtures_dir),
        )
        db = Database(database_url)
        with db.session() as session:
            threads = session.query(Thread).all()
            for thread in threads:
                thread.reply_count_display = 0
            session.commit()
            lagging = sorted(t.source_thread_id for t in threads if (t.crawl_cursor_max_floor_number or 0) > 0)
        db.dispose()
        return lagging

    def test_dry_run_leaves_counts(self, database_url, fixtures_dir):
        lagging = self.crawl_and_lower_counts(database_url, fixtures_dir)
        assert lagging

        result = invoke(database_url, "backfill-reply-count", "--dry-run")
        assert result.exit_code == 0, result.output
        fields = output_fields(result.output)
        assert fields["dry_run"] == "True"
        assert fields["thread_count"] == str(len(lagging))

        db = Database(database_url)
        with db.session() as session:
            assert {t.reply_count_display for t in session.query(Thread)} == {0}
        db.dispose()

    def test_raises_counts_to_floor_ceiling(self, database_url, fixtures_dir):
        lagging = self.crawl_and_lower_counts(database_url, fixtures_dir)

        result = invoke(database_url, "backfill-reply-count")
        assert result.exit_code == 0, result.output
        assert output_fields(result.output)["thread_count"] == str(len(lagging))

        db = Database(database_url)
        with db.session() as session:
            for thread in session.query(Thread):
                assert thread.reply_count_display == (thread.crawl_cursor_max_floor_number or 0)
        db.dispose()

        result = invoke(database_url, "backfill-reply-count")
        assert output_fields(result.output)["thread_count"] == "0"
