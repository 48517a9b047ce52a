"""CLI interface for the NGA crawler."""

import logging
import sys
import time
from typing import Any, Dict, List, Optional

import click

from .audit import AuditService
from .client import FixtureSiteClient, HttpSiteClient, SiteClient
from .config import Settings
from .crawler import Crawler
from .errors import CrawlError
from .models import CrawlRun, ThreadFloorAuditRun
from .state import Database, backfill_reply_count_display
from .utils import parse_datetime

logger = logging.getLogger(__name__)

SOURCES = ("http", "fixture")


@click.group()
@click.option("--database-url", default=None, help="SQLAlchemy database URL (overrides NGA_DATABASE_URL)")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def main(ctx, database_url, verbose):
    """NGA forum crawler - incremental crawl, floor audit and repair."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    settings = Settings.from_env()
    if database_url:
        settings.database_url = database_url
    ctx.obj = settings


@main.command("crawl-forum")
@click.option("--fid", default=7, show_default=True, type=int, help="Forum id")
@click.option("--list-page", default=1, show_default=True, type=int, help="First listing page")
@click.option("--max-post-pages", default=5, show_default=True, type=int, help="Page budget per thread")
@click.option("--recent-days", default=3, show_default=True, type=int, help="Creation-date window in days, 0 disables")
@click.option("--start-at", default=None, help="Window start, e.g. 2026-01-23 17:48:00")
@click.option("--end-at", default=None, help="Window end, e.g. 2026-01-23 17:50:00")
@click.option("--trigger-text", default="manual", show_default=True, help="Stored on the crawl run")
@click.option("--source", type=click.Choice(SOURCES), default="http", show_default=True)
@click.option("--fixtures", default=None, help="Fixture directory for --source fixture")
@click.pass_obj
def crawl_forum(settings, fid, list_page, max_post_pages, recent_days, start_at, end_at, trigger_text, source, fixtures):
    """Crawl one forum listing and its changed threads."""
    window_start = _parse_option_datetime(start_at, "--start-at")
    window_end = _parse_option_datetime(end_at, "--end-at")

    try:
        result = _crawl_forum(settings, fid, list_page, max_post_pages, recent_days or None,
                              window_start, window_end, trigger_text, source, fixtures)
    except CrawlError as exc:
        raise click.ClickException(exc.token)
    _echo_summary(result)


@main.command("crawl-thread")
@click.argument("tid", type=int)
@click.option("--max-post-pages", default=5, show_default=True, type=int, help="Page budget")
@click.option("--force", is_flag=True, help="Reset cursors and crawl from page 1")
@click.option("--trigger-text", default="manual", show_default=True)
@click.option("--source", type=click.Choice(SOURCES), default="http", show_default=True)
@click.option("--fixtures", default=None, help="Fixture directory for --source fixture")
@click.pass_obj
def crawl_thread(settings, tid, max_post_pages, force, trigger_text, source, fixtures):
    """Crawl a single thread by TID."""
    db = Database(settings.database_url)
    with _build_client(settings, source, fixtures) as client, db.session() as session:
        crawler = Crawler(client, session, default_forum_id=settings.default_forum_id)
        result = crawler.crawl_single_thread(tid, max_post_pages, force, trigger_text)
    _echo_summary(result)


@main.command("audit-floors")
@click.option("--repair", is_flag=True, help="Refetch pages for missing floors")
@click.option("--max-post-pages", default=5, show_default=True, type=int, help="Repair page budget per thread")
@click.option("--limit", default=None, type=int, help="Audit at most this many threads")
@click.option("--thread-ids", default=None, help="Comma-separated tids to audit")
@click.option("--trigger-text", default="manual", show_default=True)
@click.option("--source", type=click.Choice(SOURCES), default="http", show_default=True)
@click.option("--fixtures", default=None, help="Fixture directory for --source fixture")
@click.pass_obj
def audit_floors(settings, repair, max_post_pages, limit, thread_ids, trigger_text, source, fixtures):
    """Find threads with missing floors and optionally repair them."""
    source_thread_ids = _parse_thread_ids(thread_ids)
    audit_run = _audit(settings, repair, max_post_pages, limit, trigger_text, source, fixtures, source_thread_ids)
    _echo_summary(_audit_summary(audit_run))


@main.command("crawl-and-audit")
@click.option("--fid", default=7, show_default=True, type=int)
@click.option("--recent-days", default=3, show_default=True, type=int)
@click.option("--max-post-pages", default=5, show_default=True, type=int)
@click.option("--audit-delay", default=300, show_default=True, type=int, help="Seconds to wait before auditing")
@click.option("--trigger-text", default="scheduler", show_default=True)
@click.pass_obj
def crawl_and_audit(settings, fid, recent_days, max_post_pages, audit_delay, trigger_text):
    """Crawl a forum, wait, then audit and repair missing floors."""
    if fid <= 0 or recent_days < 0 or audit_delay < 0:
        raise click.BadParameter("fid must be positive, recent-days and audit-delay non-negative")

    try:
        crawl_result = _crawl_forum(settings, fid, 1, max_post_pages, recent_days or None,
                                    None, None, trigger_text, "http", None)
    except CrawlError as exc:
        logger.error("Crawl failed, audit skipped: %s", exc.token)
        sys.exit(1)
    _echo_summary(crawl_result)

    if audit_delay > 0:
        logger.info("Waiting %d seconds before audit", audit_delay)
        time.sleep(audit_delay)

    audit_run = _audit(settings, True, max_post_pages, None, trigger_text, "http", None, None)

    db = Database(settings.database_url)
    with db.session() as session:
        crawl_run = session.get(CrawlRun, crawl_result["run_id"])
        if crawl_run is not None:
            crawl_run.audit_run_id = audit_run.id
            session.commit()

    _echo_summary(_audit_summary(audit_run))


@main.command("backfill-reply-count")
@click.option("--dry-run", is_flag=True, help="Only count the threads that would change")
@click.pass_obj
def backfill_reply_count(settings, dry_run):
    """Raise reply counts to the crawled floor ceiling where they lag behind."""
    db = Database(settings.database_url)
    with db.session() as session:
        count = backfill_reply_count_display(session, dry_run=dry_run)
    _echo_summary({"dry_run": dry_run, "thread_count": count})


# -------------------------------------------------------
# Helpers
# -------------------------------------------------------

def _build_client(settings: Settings, source: str, fixtures: Optional[str]) -> SiteClient:
    if source == "fixture":
        return FixtureSiteClient(fixtures or settings.fixtures_path)
    return HttpSiteClient(
        forum_id=settings.default_forum_id,
        base_url=settings.base_url,
        connect_timeout=settings.connect_timeout,
        timeout=settings.timeout,
    )


def _crawl_forum(settings, fid, list_page, max_post_pages, recent_days, window_start, window_end,
                 trigger_text, source, fixtures) -> Dict[str, Any]:
    db = Database(settings.database_url)
    with _build_client(settings, source, fixtures) as client, db.session() as session:
        crawler = Crawler(client, session, default_forum_id=settings.default_forum_id)
        return crawler.crawl_forum(fid, max_post_pages, recent_days, list_page,
                                   window_start, window_end, trigger_text)


def _audit(settings, repair, max_post_pages, limit, trigger_text, source, fixtures,
           source_thread_ids) -> ThreadFloorAuditRun:
    db = Database(settings.database_url)
    with _build_client(settings, source, fixtures) as client, db.session() as session:
        crawler = Crawler(client, session, default_forum_id=settings.default_forum_id)
        service = AuditService(crawler, session, show_progress=True)
        return service.run(repair, max_post_pages, limit, trigger_text, source_thread_ids)


def _audit_summary(audit_run: ThreadFloorAuditRun) -> Dict[str, Any]:
    return {
        "audit_run_id": audit_run.id,
        "repair_enabled": audit_run.repair_enabled,
        "total_thread_count": audit_run.total_thread_count,
        "missing_thread_count": audit_run.missing_thread_count,
        "repaired_thread_count": audit_run.repaired_thread_count,
        "partial_thread_count": audit_run.partial_thread_count,
        "failed_thread_count": audit_run.failed_thread_count,
        "failed_http_count": audit_run.failed_http_count,
        "failed_parse_count": audit_run.failed_parse_count,
        "failed_db_count": audit_run.failed_db_count,
        "failed_unknown_count": audit_run.failed_unknown_count,
    }


def _parse_option_datetime(value: Optional[str], option: str):
    if not value:
        return None
    try:
        return parse_datetime(value)
    except ValueError:
        raise click.BadParameter(f"cannot parse {value!r}", param_hint=option)


def _parse_thread_ids(value: Optional[str]) -> Optional[List[int]]:
    if not value:
        return None
    ids = []
    for part in value.split(","):
        part = part.strip()
        if not part:
            continue
        if not part.isdigit() or int(part) <= 0:
            raise click.BadParameter(f"invalid tid {part!r}", param_hint="--thread-ids")
        ids.append(int(part))
    return sorted(set(ids)) or None


def _echo_summary(summary: Dict[str, Any]) -> None:
    for key, value in summary.items():
        click.echo(f"{key}: {'' if value is None else value}")


if __name__ == "__main__":
    main()
