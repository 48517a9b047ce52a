"""
SQLAlchemy models for crawled content, crawl runs and floor audits.

Tables fall into three groups:

- Content: forums, threads, posts and post_revisions
- Crawl bookkeeping: crawl_runs and crawl_run_threads
- Floor audits: thread_floor_audit_runs, thread_floor_audit_threads,
  thread_floor_audit_posts and thread_floor_repair_attempts

All timestamps are naive Asia/Shanghai wall-clock values.
"""

from datetime import date, datetime
from typing import List, Optional

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from .utils import now_local


class Base(DeclarativeBase):
    """Base class for SQLAlchemy models using modern declarative style."""
    pass


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=now_local)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=now_local, onupdate=now_local
    )


# -------------------------------------------------------
# Content
# -------------------------------------------------------

class Forum(TimestampMixin, Base):
    __tablename__ = "forums"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    source_forum_id: Mapped[int] = mapped_column(Integer, nullable=False, unique=True)
    forum_name: Mapped[str] = mapped_column(String(100), nullable=False)
    list_url: Mapped[str] = mapped_column(String(255), nullable=False)
    crawl_page_limit: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    request_rate_limit_per_sec: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)

    threads: Mapped[List["Thread"]] = relationship(back_populates="forum")

    def __repr__(self) -> str:
        return f"Forum(source_forum_id={self.source_forum_id!r}, forum_name={self.forum_name!r})"


class Thread(TimestampMixin, Base):
    """
    A forum thread plus its incremental crawl state.

    The crawl_* columns drive incremental crawling: the cursors record the
    highest floor / post id stored, ``crawl_backfill_next_page_number`` is
    where the next run resumes a truncated thread, and the
    ``is_skipped_by_page_total_limit`` flag parks oversized threads.
    """
    __tablename__ = "threads"
    __table_args__ = (UniqueConstraint("forum_id", "source_thread_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    forum_id: Mapped[int] = mapped_column(ForeignKey("forums.id"), nullable=False)
    source_thread_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    title_prefix_text: Mapped[Optional[str]] = mapped_column(String(50))
    author_name: Mapped[str] = mapped_column(String(100), nullable=False)
    author_source_user_id: Mapped[Optional[int]] = mapped_column(Integer)
    thread_created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    last_reply_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    reply_count_display: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    view_count_display: Mapped[Optional[int]] = mapped_column(Integer)
    is_pinned: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_digest: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    first_seen_on_list_page_number: Mapped[Optional[int]] = mapped_column(Integer)
    last_seen_on_list_page_number: Mapped[Optional[int]] = mapped_column(Integer)
    is_truncated_by_page_limit: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    truncated_at_page_number: Mapped[Optional[int]] = mapped_column(Integer)
    last_crawled_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    last_detected_change_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    crawl_cursor_max_floor_number: Mapped[Optional[int]] = mapped_column(Integer)
    crawl_cursor_max_source_post_id: Mapped[Optional[int]] = mapped_column(Integer)
    title_last_changed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    crawl_page_total_last_seen: Mapped[Optional[int]] = mapped_column(Integer)
    crawl_backfill_next_page_number: Mapped[Optional[int]] = mapped_column(Integer)
    is_skipped_by_page_total_limit: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    skipped_by_page_total_limit_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    forum: Mapped[Forum] = relationship(back_populates="threads")
    posts: Mapped[List["Post"]] = relationship(back_populates="thread")

    def __repr__(self) -> str:
        return (
            f"Thread(source_thread_id={self.source_thread_id!r}, "
            f"title={self.title!r}, "
            f"last_reply_at={self.last_reply_at})"
        )


class Post(TimestampMixin, Base):
    __tablename__ = "posts"
    __table_args__ = (
        UniqueConstraint("thread_id", "source_post_id"),
        UniqueConstraint("thread_id", "floor_number"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    thread_id: Mapped[int] = mapped_column(ForeignKey("threads.id"), nullable=False, index=True)
    source_post_id: Mapped[int] = mapped_column(Integer, nullable=False)
    floor_number: Mapped[int] = mapped_column(Integer, nullable=False)
    author_name: Mapped[str] = mapped_column(String(100), nullable=False)
    author_source_user_id: Mapped[Optional[int]] = mapped_column(Integer)
    post_created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    content_html: Mapped[str] = mapped_column(Text, nullable=False, default="")
    content_fingerprint_sha256: Mapped[str] = mapped_column(String(64), nullable=False)
    is_deleted_by_source: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_folded_by_source: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    content_last_changed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    thread: Mapped[Thread] = relationship(back_populates="posts")
    revisions: Mapped[List["PostRevision"]] = relationship(back_populates="post")

    def __repr__(self) -> str:
        return f"Post(source_post_id={self.source_post_id!r}, floor_number={self.floor_number!r})"


class PostRevision(TimestampMixin, Base):
    """Previous content of a post, written when a recrawl detects a change."""
    __tablename__ = "post_revisions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    post_id: Mapped[int] = mapped_column(ForeignKey("posts.id"), nullable=False, index=True)
    revision_created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    source_edited_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    content_html: Mapped[str] = mapped_column(Text, nullable=False)
    content_fingerprint_sha256: Mapped[str] = mapped_column(String(64), nullable=False)
    change_detected_reason: Mapped[str] = mapped_column(String(120), nullable=False)
    crawl_run_thread_id: Mapped[Optional[int]] = mapped_column(ForeignKey("crawl_run_threads.id"))

    post: Mapped[Post] = relationship(back_populates="revisions")


# -------------------------------------------------------
# Crawl bookkeeping
# -------------------------------------------------------

class CrawlRun(TimestampMixin, Base):
    __tablename__ = "crawl_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    forum_id: Mapped[int] = mapped_column(ForeignKey("forums.id"), nullable=False)
    run_started_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    run_finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    run_trigger_text: Mapped[str] = mapped_column(String(30), nullable=False, default="manual")
    date_window_start: Mapped[Optional[date]] = mapped_column(Date)
    date_window_end: Mapped[Optional[date]] = mapped_column(Date)
    thread_scanned_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    thread_change_detected_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    thread_updated_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    http_request_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    audit_run_id: Mapped[Optional[int]] = mapped_column(ForeignKey("thread_floor_audit_runs.id"))

    thread_runs: Mapped[List["CrawlRunThread"]] = relationship(back_populates="crawl_run")


class CrawlRunThread(TimestampMixin, Base):
    """Outcome of one thread inside one crawl run."""
    __tablename__ = "crawl_run_threads"
    __table_args__ = (UniqueConstraint("crawl_run_id", "thread_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    crawl_run_id: Mapped[int] = mapped_column(ForeignKey("crawl_runs.id"), nullable=False)
    thread_id: Mapped[int] = mapped_column(ForeignKey("threads.id"), nullable=False)
    change_detected_by_last_reply_at: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    detected_last_reply_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    fetched_page_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    page_limit_applied: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    new_post_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_post_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    http_error_code: Mapped[Optional[int]] = mapped_column(Integer)
    error_summary: Mapped[Optional[str]] = mapped_column(String(200))
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    http_request_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    crawl_run: Mapped[CrawlRun] = relationship(back_populates="thread_runs")
    thread: Mapped[Thread] = relationship()


# -------------------------------------------------------
# Floor audits
# -------------------------------------------------------

class ThreadFloorAuditRun(TimestampMixin, Base):
    __tablename__ = "thread_floor_audit_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    run_started_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    run_finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    run_trigger_text: Mapped[str] = mapped_column(String(30), nullable=False, default="manual")
    repair_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    total_thread_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    missing_thread_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    repaired_thread_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    partial_thread_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_thread_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_http_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_parse_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_db_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_unknown_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    audit_threads: Mapped[List["ThreadFloorAuditThread"]] = relationship(back_populates="audit_run")


class ThreadFloorAuditThread(TimestampMixin, Base):
    __tablename__ = "thread_floor_audit_threads"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    audit_run_id: Mapped[int] = mapped_column(ForeignKey("thread_floor_audit_runs.id"), nullable=False)
    thread_id: Mapped[int] = mapped_column(ForeignKey("threads.id"), nullable=False)
    source_thread_id: Mapped[int] = mapped_column(Integer, nullable=False)
    max_floor_number: Mapped[int] = mapped_column(Integer, nullable=False)
    post_count: Mapped[int] = mapped_column(Integer, nullable=False)
    missing_floor_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    ignored_floor_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    repair_status: Mapped[str] = mapped_column(String(20), nullable=False, default="missing")
    repair_crawl_run_id: Mapped[Optional[int]] = mapped_column(ForeignKey("crawl_runs.id"))
    repair_attempted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    repair_finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    repair_after_max_floor_number: Mapped[Optional[int]] = mapped_column(Integer)
    repair_after_post_count: Mapped[Optional[int]] = mapped_column(Integer)
    repair_remaining_floor_count: Mapped[Optional[int]] = mapped_column(Integer)
    repair_error_summary: Mapped[Optional[str]] = mapped_column(String(200))
    repair_error_category: Mapped[Optional[str]] = mapped_column(String(20))
    repair_http_error_code: Mapped[Optional[int]] = mapped_column(Integer)

    audit_run: Mapped[ThreadFloorAuditRun] = relationship(back_populates="audit_threads")
    audit_posts: Mapped[List["ThreadFloorAuditPost"]] = relationship(back_populates="audit_thread")


class ThreadFloorAuditPost(TimestampMixin, Base):
    """One missing floor recorded by an audit, and what became of it."""
    __tablename__ = "thread_floor_audit_posts"
    __table_args__ = (UniqueConstraint("audit_thread_id", "floor_number"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    audit_run_id: Mapped[int] = mapped_column(ForeignKey("thread_floor_audit_runs.id"), nullable=False)
    audit_thread_id: Mapped[int] = mapped_column(ForeignKey("thread_floor_audit_threads.id"), nullable=False)
    thread_id: Mapped[int] = mapped_column(ForeignKey("threads.id"), nullable=False)
    source_thread_id: Mapped[int] = mapped_column(Integer, nullable=False)
    floor_number: Mapped[int] = mapped_column(Integer, nullable=False)
    repair_status: Mapped[str] = mapped_column(String(20), nullable=False, default="missing")
    attempt_count_before: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    attempt_count_after: Mapped[Optional[int]] = mapped_column(Integer)
    repair_error_category: Mapped[Optional[str]] = mapped_column(String(20))
    repair_http_error_code: Mapped[Optional[int]] = mapped_column(Integer)
    repair_error_summary: Mapped[Optional[str]] = mapped_column(String(200))

    audit_thread: Mapped[ThreadFloorAuditThread] = relationship(back_populates="audit_posts")


class ThreadFloorRepairAttempt(TimestampMixin, Base):
    """Running count of repair attempts per missing floor, across audits."""
    __tablename__ = "thread_floor_repair_attempts"
    __table_args__ = (UniqueConstraint("thread_id", "floor_number"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    thread_id: Mapped[int] = mapped_column(ForeignKey("threads.id"), nullable=False)
    source_thread_id: Mapped[int] = mapped_column(Integer, nullable=False)
    floor_number: Mapped[int] = mapped_column(Integer, nullable=False)
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_attempted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
