"""
Runtime settings read from the environment.

Every setting has a module-level default; environment variables override
them and CLI options override both.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Mapping, Optional, TypeVar

from .client import BASE_URL, CONNECT_TIMEOUT, DEFAULT_FORUM_ID, REQUEST_TIMEOUT
from .state import DEFAULT_DATABASE_URL as DATABASE_URL

logger = logging.getLogger(__name__)

T = TypeVar("T")

FIXTURES_PATH = "tests/fixtures/nga"


@dataclass
class Settings:
    """
    Attributes:
        database_url: SQLAlchemy database URL
        base_url: Site root for the HTTP client
        connect_timeout: Seconds allowed to connect
        timeout: Seconds allowed per request
        default_forum_id: Forum used for threads crawled directly by tid
        fixtures_path: Directory read by the fixture client
    """
    database_url: str = DATABASE_URL
    base_url: str = BASE_URL
    connect_timeout: float = CONNECT_TIMEOUT
    timeout: float = REQUEST_TIMEOUT
    default_forum_id: int = DEFAULT_FORUM_ID
    fixtures_path: Path = Path(FIXTURES_PATH)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        return cls(
            database_url=env.get("NGA_DATABASE_URL") or DATABASE_URL,
            base_url=env.get("NGA_BASE_URL") or BASE_URL,
            connect_timeout=_read(env, "NGA_CONNECT_TIMEOUT", float, CONNECT_TIMEOUT),
            timeout=_read(env, "NGA_TIMEOUT", float, REQUEST_TIMEOUT),
            default_forum_id=_read(env, "NGA_DEFAULT_FORUM_ID", int, DEFAULT_FORUM_ID),
            fixtures_path=Path(env.get("NGA_FIXTURES_PATH") or FIXTURES_PATH),
        )


def _read(env: Mapping[str, str], name: str, convert: Callable[[str], T], default: T) -> T:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = convert(raw.strip())
    except ValueError:
        logger.warning("Invalid %s=%r, using default %r", name, raw, default)
        return default
    if value <= 0:
        logger.warning("Invalid %s=%r, using default %r", name, raw, default)
        return default
    return value
