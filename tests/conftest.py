"""Configure test paths and shared fixtures."""
import json
import sys
from pathlib import Path

import pytest

# Add src/ to path so tests can import the package
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from nga_crawler.client import SiteClient  # noqa: E402
from nga_crawler.errors import RequestError  # noqa: E402
from nga_crawler.state import Database  # noqa: E402

FIXTURES_DIR = Path(__file__).parent / "fixtures" / "nga"


def list_payload(threads):
    return json.dumps({"threads": threads}, ensure_ascii=False)


def listed_thread(tid, title="Thread", last_reply="2026-01-20 12:00:00", created="2026-01-20 09:00:00", **extra):
    record = {
        "tid": tid,
        "title": title,
        "author": "Alice",
        "author_id": 1,
        "post_time": created,
        "last_reply": last_reply,
        "replies": 0,
    }
    record.update(extra)
    return record


def thread_payload(tid, page, page_total, posts, subject="Thread", reply_count_total=None):
    payload = {
        "tid": tid,
        "page": page,
        "page_total": page_total,
        "subject": subject,
        "posts": posts,
    }
    if reply_count_total is not None:
        payload["reply_count_total"] = reply_count_total
    return json.dumps(payload, ensure_ascii=False)


def post(floor, pid=None, content=None, **extra):
    record = {
        "pid": pid if pid is not None else 9000 + floor,
        "floor_number": floor,
        "author": "Bob",
        "author_id": 2,
        "post_time": "2026-01-20 10:00:00",
        "content": content if content is not None else f"floor {floor}",
    }
    record.update(extra)
    return record


def paged_posts(tid, page_total, per_page=20, subject="Thread", first_page=1, last_floor=None):
    """Thread bodies for pages first_page..page_total with per_page floors each."""
    pages = {}
    for page in range(first_page, page_total + 1):
        floors = range((page - 1) * per_page, page * per_page)
        if last_floor is not None:
            floors = [floor for floor in floors if floor <= last_floor]
        pages[(tid, page)] = thread_payload(tid, page, page_total, [post(f) for f in floors], subject=subject)
    return pages


class SequenceClient(SiteClient):
    """
    Scripted site client.

    ``lists`` maps (fid, page) and ``threads`` maps (tid, page) to a body or
    to an exception instance to raise. Every fetch is logged in ``calls``
    and counted through the request observer like a real HTTP request.
    """

    def __init__(self, lists=None, threads=None):
        self.lists = dict(lists or {})
        self.threads = dict(threads or {})
        self.calls = []
        self.observer = None
        self.rate_limit = None

    @property
    def thread_calls(self):
        return [call[1:] for call in self.calls if call[0] == "thread"]

    def fetch_list(self, fid, page=1):
        self.calls.append(("list", fid, page))
        self._notify()
        return self._respond(self.lists.get((fid, page), list_payload([])))

    def fetch_thread(self, tid, page=1):
        self.calls.append(("thread", tid, page))
        self._notify()
        if (tid, page) not in self.threads:
            raise RequestError("http_4xx", 404, f"no page {tid}/{page}")
        return self._respond(self.threads[(tid, page)])

    def set_request_observer(self, observer):
        self.observer = observer

    def set_rate_limit(self, per_second):
        self.rate_limit = per_second

    def _notify(self):
        if self.observer is not None:
            self.observer()

    @staticmethod
    def _respond(body):
        if isinstance(body, Exception):
            raise body
        return body


@pytest.fixture
def db(tmp_path):
    database = Database(f"sqlite:///{tmp_path / 'test.db'}")
    yield database
    database.dispose()


@pytest.fixture
def session(db):
    with db.session() as session:
        yield session


@pytest.fixture
def fixtures_dir():
    return FIXTURES_DIR
