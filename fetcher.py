#!/usr/bin/env python3
"""
Feed fetcher and entry reconciler.

Fetches one feed over HTTP, parses it with feedparser and upserts one article
per entry. A previously stored article keeps its publish date when the
refreshed entry carries none.
"""

from asyncio import get_running_loop, TimeoutError
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from functools import partial
from io import BytesIO
from typing import Any, List, Optional

import feedparser
from aiohttp import ClientError, ClientSession, ClientTimeout

from config import config, get_logger
from errors import FeedFetchError, FeedParseError, StorageError
from models import Article, Feed
from repositories import ArticleRepository
from store import UserStore
from telemetry import trace_span
from utils import struct_time_to_datetime, utcnow

# Module-specific logger
logger = get_logger("fetcher")


def _entry_value(entry, field: str) -> Any:
    """Safely fetch feedparser entry fields with attribute or dict access."""
    getter = getattr(entry, 'get', None)
    if callable(getter):
        return getter(field)
    return getattr(entry, field, None)


def resolve_entry_url(entry) -> Optional[str]:
    """Prefer an embedded content source, then the entry's first link."""
    for content_item in _entry_value(entry, 'content') or []:
        src = content_item.get('src') if hasattr(content_item, 'get') else None
        if src:
            return src

    links = _entry_value(entry, 'links') or []
    for link in links:
        if link.get('rel') != 'enclosure' and link.get('href'):
            return link['href']
    return None


def resolve_entry_content(entry) -> str:
    content = _entry_value(entry, 'content') or []
    if content:
        return content[0].get('value') or ""
    return ""


def resolve_entry_summary(entry) -> str:
    """The entry's own summary; feedparser's copy of the first content item does not count."""
    summary = _entry_value(entry, 'summary') or ""
    content = _entry_value(entry, 'content') or []
    if summary and content and summary == (content[0].get('value') or ""):
        return ""
    return summary


def resolve_entry_published(entry) -> Optional[datetime]:
    return struct_time_to_datetime(_entry_value(entry, 'published_parsed'))


def build_article(entry, feed_id: int, previous: Optional[Article], now: datetime) -> Article:
    """Turn a parsed entry into the article record to store.

    ``published`` comes from the entry, else from ``previous``, else ``now``.
    """
    published = resolve_entry_published(entry)
    if published is None and previous is not None:
        published = previous.published
    if published is None:
        published = now

    return Article(
        id=_entry_value(entry, 'id'),
        feed_id=feed_id,
        published=published,
        url=resolve_entry_url(entry),
        title=_entry_value(entry, 'title') or "",
        summary=resolve_entry_summary(entry),
        content=resolve_entry_content(entry),
    )


class FeedFetcher:
    """Fetches and ingests feeds over a shared HTTP session."""

    def __init__(self, session: Optional[ClientSession] = None) -> None:
        self.executor = ThreadPoolExecutor()
        self.session = session
        self._owns_session = session is None

    async def initialize(self) -> None:
        """Create the HTTP session, unless one was injected."""
        if self.session is None:
            timeout = ClientTimeout(total=config.HTTP_TIMEOUT, connect=config.HTTP_CONNECT_TIMEOUT)
            self.session = ClientSession(timeout=timeout, headers={'User-Agent': config.USER_AGENT})
            self._owns_session = True
        logger.info("FeedFetcher initialized")

    async def close(self) -> None:
        """Close connections and clean up resources."""
        if self.session is not None and self._owns_session:
            await self.session.close()
            self.session = None
        self.executor.shutdown(wait=False)
        logger.info("FeedFetcher closed")

    async def run_in_executor(self, func, *args) -> Any:
        """Run a blocking function in the thread pool executor."""
        loop = get_running_loop()
        return await loop.run_in_executor(self.executor, partial(func, *args))

    @trace_span(
        "fetch_http_feed",
        tracer_name="fetcher",
        attr_from_args=lambda self, url: {"http.url": url},
    )
    async def fetch_feed_content(self, url: str) -> bytes:
        """Return the body of ``url``; any transport error or non-2xx status raises FeedFetchError."""
        if self.session is None:
            raise RuntimeError("FeedFetcher.initialize() was not called")
        try:
            async with self.session.get(url) as response:
                if not 200 <= response.status < 300:
                    raise FeedFetchError(f"HTTP {response.status} from {url}", status=response.status)
                return await response.read()
        except TimeoutError as e:
            raise FeedFetchError(f"timed out fetching {url}") from e
        except ClientError as e:
            raise FeedFetchError(self._format_client_error(e)) from e

    def parse_feed_content(self, content: bytes, base_url: str):
        """Parse feed bytes, resolving relative links against ``base_url``."""
        parsed = feedparser.parse(BytesIO(content), response_headers={'content-location': base_url})
        if not parsed.get('version') and not parsed.entries:
            reason = parsed.get('bozo_exception') or "unrecognised feed format"
            raise FeedParseError(str(reason))
        if parsed.bozo:
            logger.debug(f"Feed parsing warning for {base_url}: {parsed.get('bozo_exception')}")
        return parsed

    @trace_span(
        "fetch_feed",
        tracer_name="fetcher",
        attr_from_args=lambda self, user, feed: {
            "feed.id": feed.id,
            "feed.url": feed.url,
            "user": user.username,
        },
    )
    async def fetch_feed(self, user: UserStore, feed: Feed) -> int:
        """Fetch, parse and upsert every entry of ``feed``.

        Returns:
            The number of articles written.

        Raises:
            FeedFetchError, FeedParseError: the feed could not be retrieved or parsed.
            StorageError: an article could not be written.
        """
        content = await self.fetch_feed_content(feed.url)
        parsed = await self.run_in_executor(self.parse_feed_content, content, feed.url)
        logger.debug(f"Feed {feed.id} parsed as {parsed.get('version') or 'unknown'} format")

        return await self.reconcile_entries(user, feed, parsed.entries)

    async def reconcile_entries(self, user: UserStore, feed: Feed, entries: List[Any]) -> int:
        """Upsert ``entries`` in order; duplicate ids within a batch are last-write-wins."""
        articles = ArticleRepository(user)
        now = utcnow()
        written = 0
        skipped = 0

        for entry in entries:
            entry_id = _entry_value(entry, 'id')
            if not entry_id:
                skipped += 1
                continue

            try:
                previous = await articles.get(entry_id)
            except StorageError as e:
                # An unreadable prior record must not block fresh data
                logger.warning(f"could not get article {entry_id!r} from db: {e}")
                previous = None

            await articles.insert_or_replace(build_article(entry, feed.id, previous, now))
            written += 1

        if skipped:
            logger.warning(
                f"Feed {feed.id} ({feed.url}): skipped {skipped} of {len(entries)} entries without an id"
            )
        return written

    def _format_client_error(self, error: ClientError) -> str:
        """Class name, then status and errno when aiohttp exposes them, then the message."""
        details = [type(error).__name__]
        status = getattr(error, 'status', None)
        errno = getattr(getattr(error, 'os_error', None), 'errno', None)
        details.extend(f"{label}={value}" for label, value in (('status', status), ('errno', errno)) if value is not None)
        if str(error):
            details.append(str(error))
        return " ".join(details)
