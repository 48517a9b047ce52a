"""
Database access for the crawler and the floor audit.

Database owns the engine and session factory. The functions below are the
narrow repository the crawler and audit use: every upsert is an explicit
lookup followed by either an update of the found row or a new, unsaved row
the caller adds, so "exists vs. new" stays a visible branch in the caller.
"""

import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from sqlalchemy import create_engine, event, func
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from .models import Base, Forum, Post, Thread, ThreadFloorRepairAttempt

logger = logging.getLogger(__name__)

# -------------------------------------------------------
# CONSTANTS
# -------------------------------------------------------
DEFAULT_DATABASE_URL = "sqlite:///nga_crawler.db"
FORUM_LIST_URL = "https://nga.178.com/thread.php?fid={fid}&order_by=postdatedesc"


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class Database:
    """
    Engine and session factory for the crawler database.

    Creates the tables on first use.

    Usage:
        db = Database("sqlite:///nga_crawler.db")
        with db.session() as session:
            crawler = Crawler(client, session)
    """

    def __init__(self, url: str = DEFAULT_DATABASE_URL, echo: bool = False):
        self.url = url
        self.engine: Engine = create_engine(url, echo=echo)

        if self.engine.dialect.name == "sqlite":
            event.listen(self.engine, "connect", _enable_sqlite_foreign_keys)

        Base.metadata.create_all(self.engine)

        # Rows stay readable after the per-page commits
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)

        logger.debug("Database initialized: %s", self.engine.url)

    def session(self) -> Session:
        return self.SessionLocal()

    def dispose(self) -> None:
        self.engine.dispose()


# -------------------------------------------------------
# Forums and threads
# -------------------------------------------------------

def get_or_create_forum(
    session: Session,
    source_forum_id: int,
    crawl_page_limit: int = 5,
    request_rate_limit_per_sec: float = 1.0,
) -> Forum:
    """Return the forum for ``source_forum_id``, creating and committing it if new."""
    forum = session.query(Forum).filter_by(source_forum_id=source_forum_id).first()
    if forum is not None:
        return forum

    forum = Forum(
        source_forum_id=source_forum_id,
        forum_name=f"NGA fid {source_forum_id}",
        list_url=FORUM_LIST_URL.format(fid=source_forum_id),
        crawl_page_limit=crawl_page_limit,
        request_rate_limit_per_sec=request_rate_limit_per_sec,
    )
    session.add(forum)
    session.commit()
    logger.info("Created forum fid=%d", source_forum_id)
    return forum


def find_thread(session: Session, source_thread_id: int, forum_id: Optional[int] = None) -> Optional[Thread]:
    query = session.query(Thread).filter_by(source_thread_id=source_thread_id)
    if forum_id is not None:
        query = query.filter_by(forum_id=forum_id)
    return query.order_by(Thread.id).first()


def new_thread(forum: Forum, source_thread_id: int, **fields) -> Thread:
    """Build an unsaved Thread; the caller decides when to add it."""
    return Thread(forum_id=forum.id, source_thread_id=source_thread_id, **fields)


# -------------------------------------------------------
# Posts
# -------------------------------------------------------

def find_post_for_upsert(session: Session, thread_id: int, source_post_id: int, floor_number: int) -> Optional[Post]:
    """
    Locate the stored post a parsed row should update.

    Matches on post id first, then on floor number, so a post whose id
    changed upstream still lands on its floor instead of colliding with the
    (thread, floor) unique key.

    Returns:
        The existing Post, or None when the row is new
    """
    post = session.query(Post).filter_by(thread_id=thread_id, source_post_id=source_post_id).first()
    if post is not None:
        return post
    return session.query(Post).filter_by(thread_id=thread_id, floor_number=floor_number).first()


def floor_numbers(session: Session, thread_id: int) -> Set[int]:
    rows = session.query(Post.floor_number).filter(Post.thread_id == thread_id).all()
    return {row[0] for row in rows}


def floor_stats(session: Session, thread_id: int) -> Tuple[Optional[int], int]:
    """Return (max stored floor, stored post count) for a thread."""
    max_floor, count = (
        session.query(func.max(Post.floor_number), func.count(Post.id))
        .filter(Post.thread_id == thread_id)
        .one()
    )
    return max_floor, int(count or 0)


def backfill_reply_count_display(session: Session, dry_run: bool = False) -> int:
    """
    Raise reply_count_display to the crawled floor ceiling where it lags behind.

    The displayed count only ever grows. With ``dry_run`` the matching threads
    are counted and nothing is written.

    Returns:
        Number of threads whose count is (or would be) raised
    """
    query = session.query(Thread).filter(
        Thread.crawl_cursor_max_floor_number.isnot(None),
        Thread.reply_count_display < Thread.crawl_cursor_max_floor_number,
    )
    if dry_run:
        return query.count()

    updated = query.update(
        {Thread.reply_count_display: Thread.crawl_cursor_max_floor_number},
        synchronize_session="fetch",
    )
    session.commit()
    logger.info("Backfilled reply_count_display on %d threads", updated)
    return updated


# -------------------------------------------------------
# Audit queries
# -------------------------------------------------------

def _auditable(query, source_thread_ids: Optional[Sequence[int]]):
    query = query.filter(
        Thread.is_truncated_by_page_limit.is_(False),
        Thread.is_skipped_by_page_total_limit.is_(False),
        Thread.crawl_cursor_max_floor_number.isnot(None),
    )
    if source_thread_ids:
        query = query.filter(Thread.source_thread_id.in_(list(source_thread_ids)))
    return query


def count_auditable_threads(session: Session, source_thread_ids: Optional[Sequence[int]] = None) -> int:
    """Threads that are fully crawled and have a known floor ceiling."""
    return _auditable(session.query(func.count(Thread.id)), source_thread_ids).scalar() or 0


def find_gap_candidates(
    session: Session,
    limit: Optional[int] = None,
    source_thread_ids: Optional[Sequence[int]] = None,
) -> List[Tuple[Thread, int]]:
    """
    Auditable threads storing fewer posts than their floor ceiling implies.

    Returns:
        (thread, stored post count) pairs ordered by thread id
    """
    post_count = func.count(Post.id)
    query = (
        session.query(Thread, post_count)
        .outerjoin(Post, Post.thread_id == Thread.id)
    )
    query = (
        _auditable(query, source_thread_ids)
        .group_by(Thread.id)
        .having(post_count < Thread.crawl_cursor_max_floor_number + 1)
        .order_by(Thread.id)
    )
    if limit is not None and limit > 0:
        query = query.limit(limit)
    return [(thread, int(count)) for thread, count in query.all()]


def missing_floors(session: Session, thread_id: int, max_floor: Optional[int]) -> List[int]:
    """Floors 0..max_floor with no stored post."""
    if max_floor is None or max_floor < 0:
        return []
    stored = floor_numbers(session, thread_id)
    return [floor for floor in range(max_floor + 1) if floor not in stored]


def repair_attempt_counts(session: Session, thread_id: int, floors: Iterable[int]) -> Dict[int, int]:
    floors = list(floors)
    if not floors:
        return {}
    rows = (
        session.query(ThreadFloorRepairAttempt.floor_number, ThreadFloorRepairAttempt.attempt_count)
        .filter(
            ThreadFloorRepairAttempt.thread_id == thread_id,
            ThreadFloorRepairAttempt.floor_number.in_(floors),
        )
        .all()
    )
    return {floor: count for floor, count in rows}


def record_repair_attempts(
    session: Session,
    thread: Thread,
    floors: Iterable[int],
    attempted_at: datetime,
) -> None:
    """Increment the attempt counter of each floor, creating counters as needed."""
    for floor in floors:
        attempt = session.query(ThreadFloorRepairAttempt).filter_by(
            thread_id=thread.id, floor_number=floor
        ).first()

        if attempt:
            attempt.attempt_count = (attempt.attempt_count or 0) + 1
            attempt.last_attempted_at = attempted_at
        else:
            session.add(ThreadFloorRepairAttempt(
                thread_id=thread.id,
                source_thread_id=thread.source_thread_id,
                floor_number=floor,
                attempt_count=1,
                last_attempted_at=attempted_at,
            ))
