"""
Typed records produced by the list and thread parsers.

These are plain dataclasses so parsers stay independent of persistence; the
crawler copies their fields onto ORM rows.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import List, Optional


@dataclass
class ThreadSummary:
    """
    One row of a forum listing page.

    Attributes:
        source_thread_id: Forum-side thread id (tid)
        title: Thread title as listed
        title_prefix: Bracketed prefix of the title, e.g. "water"
        author_name: Display name of the thread starter
        author_source_user_id: Forum-side uid of the starter, when known
        thread_created_at: Creation time (falls back to parse time)
        last_reply_at: Last reply time, the change signal for incremental crawls
        reply_count_display: Reply count as shown on the list, None when absent
        view_count_display: View count as shown on the list, None when absent
        is_pinned: Sticky thread
        is_digest: Featured thread
    """
    source_thread_id: int
    title: str
    author_name: str
    thread_created_at: datetime
    title_prefix: Optional[str] = None
    author_source_user_id: Optional[int] = None
    last_reply_at: Optional[datetime] = None
    reply_count_display: Optional[int] = None
    view_count_display: Optional[int] = None
    is_pinned: bool = False
    is_digest: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class PostRecord:
    """
    One floor of a thread page.

    Floor numbers are zero-based: floor 0 is the opening post.
    ``content_format`` is "ubb" for payload pages and "html" for pages
    parsed from markup.
    """
    source_post_id: int
    floor_number: int
    author_name: str
    post_created_at: datetime
    content_raw: str = ""
    content_format: str = "ubb"
    author_source_user_id: Optional[int] = None
    is_deleted_by_source: bool = False
    is_folded_by_source: bool = False
    source_edited_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ThreadPage:
    """One parsed page of a thread."""
    source_thread_id: int
    page: int = 1
    page_total: int = 1
    posts: List[PostRecord] = field(default_factory=list)
    thread_title: str = ""
    reply_count_total: Optional[int] = None

    def to_dict(self) -> dict:
        return asdict(self)
