#!/usr/bin/env python3
"""
Refresh orchestration.

Runs the fetcher over every feed of a user with bounded concurrency, records
each feed's outcome on its record, and rebuilds the search index once every
feed has finished. A failing feed never affects its siblings; its error is
stored in ``last_error`` instead of being raised.
"""

from asyncio import Lock, Semaphore, gather
from typing import Dict, List, Optional, Tuple

from config import config, get_logger
from errors import IndexBuildError, NanoreaderError
from fetcher import FeedFetcher
from models import Feed, RefreshReport
from repositories import FeedRegistry
from search import rebuild_search_index
from store import TenantStore, UserStore
from telemetry import trace_span
from utils import utcnow

# Module-specific logger
logger = get_logger("refresh")


class RefreshOrchestrator:
    """Refreshes all feeds of a user and rebuilds their search index."""

    def __init__(self, store: TenantStore, fetcher: FeedFetcher, concurrency: Optional[int] = None) -> None:
        self.store = store
        self.fetcher = fetcher
        self.concurrency = concurrency or config.REFRESH_CONCURRENCY
        # One refresh per user at a time; different users run in parallel
        self._user_locks: Dict[str, Lock] = {}

    def _lock_for(self, username: str) -> Lock:
        return self._user_locks.setdefault(username, Lock())

    @trace_span(
        "refresh_all",
        tracer_name="refresh",
        attr_from_args=lambda self, username: {"user": username},
    )
    async def refresh_all(self, username: str) -> RefreshReport:
        """Refresh every feed of ``username`` and rebuild the search index.

        Raises:
            StorageError: feed health could not be recorded.
            IndexBuildError: the index could not be rebuilt.
        """
        lock = self._lock_for(username)
        if lock.locked():
            logger.info(f"{username}: refresh already running, waiting for it to finish")
        async with lock:
            return await self._refresh_locked(self.store.open_user(username))

    async def _refresh_locked(self, user: UserStore) -> RefreshReport:
        report = RefreshReport(username=user.username, started_at=utcnow())
        registry = FeedRegistry(user)
        feeds = await registry.list()
        report.feeds_total = len(feeds)
        logger.info(f"{user.username}: refreshing {len(feeds)} feeds (concurrency {self.concurrency})")

        semaphore = Semaphore(self.concurrency)

        async def refresh_with_semaphore(feed: Feed) -> Tuple[int, Optional[str]]:
            async with semaphore:
                return await self.refresh_feed(user, registry, feed)

        outcomes = await gather(*(refresh_with_semaphore(feed) for feed in feeds), return_exceptions=True)

        failures: List[BaseException] = []
        for feed, outcome in zip(feeds, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(f"{user.username}: could not record refresh of feed {feed.id}: {outcome}")
                failures.append(outcome)
                continue
            written, error = outcome
            report.articles_written += written
            if error is not None:
                report.feeds_failed += 1

        if failures:
            raise failures[0]

        try:
            report.articles_indexed = await rebuild_search_index(user)
        except IndexBuildError:
            raise
        except NanoreaderError as e:
            raise IndexBuildError(str(e)) from e

        report.finished_at = utcnow()
        logger.info(
            f"{user.username}: refresh finished, {report.feeds_succeeded}/{report.feeds_total} feeds ok, "
            f"{report.articles_written} articles written, {report.articles_indexed} indexed"
        )
        return report

    async def refresh_feed(self, user: UserStore, registry: FeedRegistry, feed: Feed) -> Tuple[int, Optional[str]]:
        """Fetch one feed and record the attempt on its record.

        Fetch and parse failures are returned as the error message; only a
        failure to write the feed record itself is raised.
        """
        written = 0
        error: Optional[str] = None
        try:
            written = await self.fetcher.fetch_feed(user, feed)
            logger.info(f"{user.username}: feed {feed.id} ({feed.url}) ok, {written} articles")
        except Exception as e:
            error = str(e) or type(e).__name__
            logger.warning(f"{user.username}: feed {feed.id} ({feed.url}) failed: {error}")

        # Re-read so edits and deletions made while fetching are kept
        current = await registry.get(feed.id)
        if current is None:
            logger.info(f"{user.username}: feed {feed.id} was removed during refresh, not recording its health")
            return written, error
        await registry.insert(current.model_copy(update={"last_fetch_time": utcnow(), "last_error": error}))
        return written, error
