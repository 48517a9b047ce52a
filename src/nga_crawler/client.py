"""
Site clients: the live guest HTTP client and a fixture-backed replay client.

The forum only serves guests that carry a short-lived cookie pair obtained
from a handshake request. HttpSiteClient keeps that pair in an explicit
GuestSession, refreshes it when a response says the guest was blocked, and
retries the blocked request exactly once. There are no other retries at
this layer; every failure is raised as RequestError with a summary token.
"""

import logging
import random
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Optional, Union

import httpx

from .errors import (
    GUEST_BLOCKED,
    HTTP_4XX,
    HTTP_5XX,
    HTTP_429,
    HTTP_CONNECT_ERROR,
    HTTP_TIMEOUT,
    RequestError,
)
from .throttle import TokenBucket

logger = logging.getLogger(__name__)

# -------------------------------------------------------
# CONSTANTS
# -------------------------------------------------------
BASE_URL = "https://nga.178.com"
DEFAULT_FORUM_ID = 7

CONNECT_TIMEOUT = 5.0
REQUEST_TIMEOUT = 20.0

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36"
)

BLOCKED_MARKERS = ("访客不能直接访问", "ERROR:15")

_GUEST_JS = re.compile(r"guestJs=([0-9]+_[0-9a-z]+)", re.IGNORECASE)
_CHARSET = re.compile(r"charset=([a-zA-Z0-9\-]+)", re.IGNORECASE)

RequestObserver = Callable[[], None]


class SiteClient(ABC):
    """Interface the crawler consumes: one call per list or thread page."""

    @abstractmethod
    def fetch_list(self, fid: int, page: int = 1) -> str:
        """Return the body of listing page ``page`` of forum ``fid``."""

    @abstractmethod
    def fetch_thread(self, tid: int, page: int = 1) -> str:
        """Return the body of page ``page`` of thread ``tid``."""

    def set_request_observer(self, observer: Optional[RequestObserver]) -> None:
        """Register a callback invoked once per HTTP request sent."""

    def set_rate_limit(self, per_second: Optional[float]) -> None:
        """Limit outgoing requests per second; None or <= 0 disables."""

    def close(self) -> None:
        pass

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()


@dataclass
class GuestSession:
    """
    Guest cookie state for one client instance.

    Attributes:
        guest_js: ``guestJs`` token scraped from the handshake body
        last_visit: ``lastvisit`` cookie from the handshake response
        passport_uid: ``ngaPassportUid`` cookie, optional
    """
    guest_js: Optional[str] = None
    last_visit: Optional[str] = None
    passport_uid: Optional[str] = None

    @property
    def is_ready(self) -> bool:
        return bool(self.guest_js and self.last_visit)

    def cookie_header(self) -> str:
        parts = [f"lastvisit={self.last_visit}", f"guestJs={self.guest_js}"]
        if self.passport_uid:
            parts.append(f"ngaPassportUid={self.passport_uid}")
        return "; ".join(parts)


@dataclass
class _Response:
    status_code: int
    text: str

    @property
    def is_success(self) -> bool:
        return 200 <= self.status_code < 300


class HttpSiteClient(SiteClient):
    """
    Guest HTTP client for the live forum.

    Usage:
        with HttpSiteClient(forum_id=7) as client:
            body = client.fetch_list(7, page=1)
    """

    def __init__(
        self,
        forum_id: int = DEFAULT_FORUM_ID,
        base_url: str = BASE_URL,
        connect_timeout: float = CONNECT_TIMEOUT,
        timeout: float = REQUEST_TIMEOUT,
        transport: Optional[httpx.BaseTransport] = None,
        session: Optional[GuestSession] = None,
    ):
        """
        Args:
            forum_id: Forum used for the handshake and the Referer header
            base_url: Site root
            connect_timeout: Seconds allowed to establish a connection
            timeout: Seconds allowed for the whole request
            transport: Optional httpx transport (tests pass a MockTransport)
            session: Pre-existing guest cookies, otherwise a handshake runs
                before the first request
        """
        self.forum_id = forum_id
        self.base_url = base_url.rstrip("/")
        self.session = session or GuestSession()
        self._observer: Optional[RequestObserver] = None
        self._bucket: Optional[TokenBucket] = None
        self._client = httpx.Client(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout, connect=connect_timeout),
            headers=self._default_headers(),
            transport=transport,
            follow_redirects=True,
        )

    def fetch_list(self, fid: int, page: int = 1) -> str:
        return self._fetch_as_guest(
            "thread.php", {"fid": fid, "page": page, "order_by": "postdatedesc"}
        )

    def fetch_thread(self, tid: int, page: int = 1) -> str:
        return self._fetch_as_guest("read.php", {"tid": tid, "page": page})

    def set_request_observer(self, observer: Optional[RequestObserver]) -> None:
        self._observer = observer

    def set_rate_limit(self, per_second: Optional[float]) -> None:
        self._bucket = TokenBucket(per_second) if per_second and per_second > 0 else None

    def close(self) -> None:
        self._client.close()

    # -------------------------------------------------------
    # Guest session handling
    # -------------------------------------------------------

    def _fetch_as_guest(self, path: str, params: Dict[str, Union[int, str]]) -> str:
        if not self.session.is_ready:
            self.refresh_session()

        response = self._request(path, params, with_cookies=True)
        if self._is_blocked(response):
            logger.warning("Guest blocked on %s %s, refreshing session", path, params)
            self.refresh_session()
            response = self._request(path, params, with_cookies=True)
            if self._is_blocked(response):
                raise RequestError(GUEST_BLOCKED, response.status_code, f"Guest blocked on {path}")

        if not response.is_success:
            raise self._status_error(response)
        return response.text

    def refresh_session(self) -> GuestSession:
        """
        Run the guest handshake and replace the session cookies.

        A blocked handshake is repeated once.

        Raises:
            RequestError: guest_blocked when no usable cookies are issued,
                or the mapped status token when the handshake fails
        """
        params = {"fid": self.forum_id, "order_by": "postdatedesc"}
        response, tokens = self._handshake(params)
        if self._is_blocked(response):
            logger.warning("Guest handshake blocked (status %d), retrying", response.status_code)
            response, tokens = self._handshake(params)
            if self._is_blocked(response):
                raise RequestError(GUEST_BLOCKED, response.status_code, "Guest handshake blocked")

        if not response.is_success:
            raise self._status_error(response)

        if not tokens.is_ready:
            raise RequestError(GUEST_BLOCKED, response.status_code, "Unable to acquire guest cookies")

        self.session = tokens
        logger.debug("Guest session refreshed (guestJs=%s)", tokens.guest_js)
        return self.session

    def _handshake(self, params: Dict[str, Union[int, str]]):
        raw = self._send("thread.php", params, with_cookies=False)
        guest_js = _GUEST_JS.search(raw.text)
        tokens = GuestSession(
            guest_js=guest_js.group(1) if guest_js else None,
            last_visit=self._cookie_value(raw, "lastvisit"),
            passport_uid=self._cookie_value(raw, "ngaPassportUid"),
        )
        return self._wrap(raw), tokens

    # -------------------------------------------------------
    # Transport
    # -------------------------------------------------------

    def _request(self, path: str, params: Dict[str, Union[int, str]], with_cookies: bool) -> _Response:
        return self._wrap(self._send(path, params, with_cookies))

    def _send(self, path: str, params: Dict[str, Union[int, str]], with_cookies: bool) -> httpx.Response:
        if self._bucket is not None:
            self._bucket.acquire()

        query = dict(params)
        # rand defeats the upstream page cache
        query["rand"] = random.randint(100, 999)

        headers = {}
        if with_cookies and self.session.is_ready:
            headers["Cookie"] = self.session.cookie_header()

        if self._observer is not None:
            self._observer()

        logger.debug("GET %s %s (cookies=%s)", path, query, with_cookies)
        try:
            response = self._client.get(f"/{path}", params=query, headers=headers)
        except httpx.TimeoutException as exc:
            raise RequestError(HTTP_TIMEOUT, None, str(exc)) from exc
        except httpx.RequestError as exc:
            raise RequestError(HTTP_CONNECT_ERROR, None, str(exc)) from exc
        finally:
            # Cookies are sent explicitly from the GuestSession only
            self._client.cookies.clear()

        return response

    def _wrap(self, response: httpx.Response) -> _Response:
        return _Response(response.status_code, self._decode_body(response))

    @staticmethod
    def _decode_body(response: httpx.Response) -> str:
        content = response.content
        match = _CHARSET.search(response.headers.get("content-type", ""))
        if match is None:
            match = _CHARSET.search(content[:4096].decode("ascii", errors="ignore"))
        charset = match.group(1).lower() if match else "utf-8"
        try:
            return content.decode(charset, errors="replace")
        except LookupError:
            return content.decode("utf-8", errors="replace")

    @staticmethod
    def _cookie_value(response: httpx.Response, name: str) -> Optional[str]:
        pattern = re.compile(r"(?:^|;\s*)" + re.escape(name) + r"=([^;]*)")
        for header in response.headers.get_list("set-cookie"):
            match = pattern.search(header)
            if match and match.group(1):
                return match.group(1)
        return None

    @staticmethod
    def _is_blocked(response: _Response) -> bool:
        if response.status_code == 403:
            return True
        return any(marker in response.text for marker in BLOCKED_MARKERS)

    @staticmethod
    def _status_error(response: _Response) -> RequestError:
        return RequestError(
            status_token(response.status_code),
            response.status_code,
            f"HTTP {response.status_code}",
        )

    def _default_headers(self) -> Dict[str, str]:
        return {
            "User-Agent": USER_AGENT,
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
            "Accept-Language": "zh-CN,zh;q=0.9,en;q=0.8",
            "Referer": f"{self.base_url}/thread.php?fid={self.forum_id}",
        }


def status_token(status_code: int) -> str:
    """Map a non-success HTTP status to its summary token."""
    if status_code == 429:
        return HTTP_429
    if status_code == 408:
        return HTTP_TIMEOUT
    if status_code >= 500:
        return HTTP_5XX
    return HTTP_4XX


class FixtureSiteClient(SiteClient):
    """
    Replays canned payloads from disk.

    Files are named ``list-fid-{fid}-page-{page}.json`` and
    ``thread-{tid}-page-{page}.json`` under ``base_path``.
    """

    def __init__(self, base_path: Union[str, Path]):
        self.base_path = Path(base_path)

    def fetch_list(self, fid: int, page: int = 1) -> str:
        return self._read(f"list-fid-{fid}-page-{page}.json")

    def fetch_thread(self, tid: int, page: int = 1) -> str:
        return self._read(f"thread-{tid}-page-{page}.json")

    def _read(self, name: str) -> str:
        path = self.base_path / name
        if not path.is_file():
            raise FileNotFoundError(f"Fixture not found: {path}")
        return path.read_text(encoding="utf-8")
