"""
NGA Crawler - incremental forum crawler with floor gap audit.

Main components:
- HttpSiteClient / FixtureSiteClient: guest HTTP access and canned replays
- ListParser / ThreadParser: listing and thread page parsing
- ContentProcessor: UBB to sanitized HTML
- Crawler: incremental crawl with cursors and segmented backfill
- AuditService: missing floor detection and bounded repair

Usage:
    from nga_crawler import Crawler, Database, HttpSiteClient

    db = Database("sqlite:///nga_crawler.db")
    with HttpSiteClient() as client, db.session() as session:
        Crawler(client, session).crawl_forum(7)
"""

from .audit import AuditService, estimate_pages_to_fetch
from .client import FixtureSiteClient, GuestSession, HttpSiteClient, SiteClient
from .content import ContentProcessor
from .crawler import Crawler
from .list_parser import ListParser
from .payload import PayloadDecoder
from .state import Database
from .thread_parser import ThreadParser
from .url_policy import SafeUrlPolicy

__all__ = [
    'AuditService',
    'ContentProcessor',
    'Crawler',
    'Database',
    'FixtureSiteClient',
    'GuestSession',
    'HttpSiteClient',
    'ListParser',
    'PayloadDecoder',
    'SafeUrlPolicy',
    'SiteClient',
    'ThreadParser',
    'estimate_pages_to_fetch',
]

__version__ = '1.0.0'
