import asyncio

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

import refresh
from errors import IndexBuildError, StorageError
from models import NEVER_FETCHED, FeedPatch, NewFeed
from refresh import RefreshOrchestrator
from repositories import ArticleRepository, FeedRegistry
from search import search
from utils import utcnow

from conftest import rss_feed, rss_item


async def subscribe_all(store, username, urls):
    registry = FeedRegistry(store.open_user(username))
    return [await registry.subscribe(NewFeed(url=url)) for url in urls]


class SlowFeedServer:
    """Counts how many requests are being served at the same time."""

    def __init__(self, delay=0.05):
        self.delay = delay
        self.in_flight = 0
        self.peak = 0
        app = web.Application()
        app.router.add_get("/{name}", self._handle)
        self.server = TestServer(app)

    async def _handle(self, request):
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
            name = request.match_info["name"]
            body = rss_feed(rss_item(f"{name}-1", f"Post from {name}"))
            return web.Response(text=body, content_type="application/rss+xml")
        finally:
            self.in_flight -= 1

    def url(self, name):
        return str(self.server.make_url(f"/{name}"))


@pytest_asyncio.fixture
async def slow_server():
    server = SlowFeedServer()
    await server.server.start_server()
    yield server
    await server.server.close()


@pytest.mark.asyncio
async def test_failing_feed_does_not_affect_siblings(store, fetcher, feed_server):
    good_a = feed_server.add("a", rss_feed(rss_item("a-1", "Alpha post")))
    good_c = feed_server.add("c", rss_feed(rss_item("c-1", "Gamma post")))
    feeds = await subscribe_all(store, "alice", [good_a, feed_server.url("missing"), good_c])
    started = utcnow()

    report = await RefreshOrchestrator(store, fetcher).refresh_all("alice")

    user = store.open_user("alice")
    refreshed = {feed.id: feed for feed in await FeedRegistry(user).list()}
    assert refreshed[feeds[0].id].last_error is None
    assert "404" in refreshed[feeds[1].id].last_error
    assert refreshed[feeds[2].id].last_error is None
    assert all(feed.last_fetch_time >= started for feed in refreshed.values())

    ids = {article.id for article in await ArticleRepository(user).list_all()}
    assert ids == {"a-1", "c-1"}

    assert report.feeds_total == 3
    assert report.feeds_failed == 1
    assert report.feeds_succeeded == 2
    assert report.articles_written == 2
    assert report.articles_indexed == 2


@pytest.mark.asyncio
async def test_error_is_cleared_after_successful_refresh(store, fetcher, feed_server):
    feeds = await subscribe_all(store, "alice", [feed_server.url("flaky")])
    orchestrator = RefreshOrchestrator(store, fetcher)

    await orchestrator.refresh_all("alice")
    registry = FeedRegistry(store.open_user("alice"))
    assert (await registry.get(feeds[0].id)).last_error is not None

    feed_server.add("flaky", rss_feed(rss_item("f-1", "Back online")))
    await orchestrator.refresh_all("alice")
    assert (await registry.get(feeds[0].id)).last_error is None


@pytest.mark.asyncio
async def test_index_covers_articles_after_refresh(store, fetcher, feed_server):
    url = feed_server.add("news", rss_feed(
        rss_item("n-1", "Quantum computing breakthrough"),
        rss_item("n-2", "Gardening tips", description="&lt;p&gt;Grow &lt;b&gt;tomatoes&lt;/b&gt;&lt;/p&gt;"),
    ))
    await subscribe_all(store, "alice", [url])

    await RefreshOrchestrator(store, fetcher).refresh_all("alice")

    user = store.open_user("alice")
    assert await search(user, "quantum") == ["n-1"]
    assert await search(user, "tomatoes") == ["n-2"]
    assert await search(user, "unicorn") == []


@pytest.mark.asyncio
async def test_refresh_without_feeds_builds_empty_index(store, fetcher):
    report = await RefreshOrchestrator(store, fetcher).refresh_all("alice")

    assert report.feeds_total == 0
    assert report.articles_indexed == 0
    assert await search(store.open_user("alice"), "anything") == []


@pytest.mark.asyncio
async def test_refresh_is_scoped_to_one_user(store, fetcher, feed_server):
    url = feed_server.add("a", rss_feed(rss_item("a-1", "Alpha post")))
    await subscribe_all(store, "alice", [url])
    bob_feeds = await subscribe_all(store, "bob", [url])

    await RefreshOrchestrator(store, fetcher).refresh_all("alice")

    bob = store.open_user("bob")
    assert await ArticleRepository(bob).list_all() == []
    assert (await FeedRegistry(bob).get(bob_feeds[0].id)).last_fetch_time == NEVER_FETCHED


@pytest.mark.asyncio
async def test_index_failure_surfaces_as_index_build_error(store, fetcher, feed_server, monkeypatch):
    url = feed_server.add("a", rss_feed(rss_item("a-1", "Alpha post")))
    feeds = await subscribe_all(store, "alice", [url])

    async def broken_rebuild(user):
        raise StorageError("disk full", operation="put")

    monkeypatch.setattr(refresh, "rebuild_search_index", broken_rebuild)

    with pytest.raises(IndexBuildError):
        await RefreshOrchestrator(store, fetcher).refresh_all("alice")

    # Feed health was still recorded before the rebuild
    feed = await FeedRegistry(store.open_user("alice")).get(feeds[0].id)
    assert feed.last_fetch_time > NEVER_FETCHED
    assert feed.last_error is None


@pytest.mark.asyncio
async def test_failure_to_record_health_is_raised_without_rebuilding(store, fetcher, feed_server, monkeypatch):
    url = feed_server.add("a", rss_feed(rss_item("a-1", "Alpha post")))
    await subscribe_all(store, "alice", [url])
    rebuilt = []

    async def failing_insert(self, feed):
        raise StorageError("read-only database", operation="put")

    async def tracking_rebuild(user):
        rebuilt.append(user.username)
        return 0

    monkeypatch.setattr(FeedRegistry, "insert", failing_insert)
    monkeypatch.setattr(refresh, "rebuild_search_index", tracking_rebuild)

    with pytest.raises(StorageError):
        await RefreshOrchestrator(store, fetcher).refresh_all("alice")
    assert rebuilt == []


@pytest.mark.asyncio
async def test_concurrency_ceiling_is_respected(store, fetcher, slow_server):
    await subscribe_all(store, "alice", [slow_server.url(f"feed{i}") for i in range(6)])

    report = await RefreshOrchestrator(store, fetcher, concurrency=2).refresh_all("alice")

    assert report.feeds_failed == 0
    assert 1 <= slow_server.peak <= 2


@pytest.mark.asyncio
async def test_refreshes_of_same_user_do_not_overlap(store, fetcher, slow_server):
    await subscribe_all(store, "alice", [slow_server.url(f"feed{i}") for i in range(3)])
    orchestrator = RefreshOrchestrator(store, fetcher, concurrency=10)

    first, second = await asyncio.gather(
        orchestrator.refresh_all("alice"),
        orchestrator.refresh_all("alice"),
    )

    assert first.feeds_failed == second.feeds_failed == 0
    assert slow_server.peak <= 3
    assert second.articles_indexed == 3


async def wait_for_request(server):
    async def poll():
        while server.in_flight == 0:
            await asyncio.sleep(0.005)
    await asyncio.wait_for(poll(), timeout=5)


@pytest.mark.asyncio
async def test_feed_deleted_during_refresh_stays_deleted(store, fetcher, slow_server):
    [feed] = await subscribe_all(store, "alice", [slow_server.url("gone")])
    registry = FeedRegistry(store.open_user("alice"))

    refreshing = asyncio.create_task(RefreshOrchestrator(store, fetcher).refresh_all("alice"))
    await wait_for_request(slow_server)
    await registry.delete(feed.id)
    await refreshing

    assert await registry.list() == []


@pytest.mark.asyncio
async def test_rename_during_refresh_is_kept(store, fetcher, slow_server):
    [feed] = await subscribe_all(store, "alice", [slow_server.url("renamed")])
    registry = FeedRegistry(store.open_user("alice"))

    refreshing = asyncio.create_task(RefreshOrchestrator(store, fetcher).refresh_all("alice"))
    await wait_for_request(slow_server)
    await registry.apply_patch(FeedPatch(id=feed.id, name="Renamed"))
    await refreshing

    stored = await registry.get(feed.id)
    assert stored.name == "Renamed"
    assert stored.last_fetch_time > NEVER_FETCHED
    assert stored.last_error is None
