from typing import Dict, Optional, Tuple

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from config import config
from fetcher import FeedFetcher
from store import TenantStore


RSS_TEMPLATE = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
  <channel>
    <title>{title}</title>
    <link>http://example.com/</link>
    <description>Test feed</description>
    {items}
  </channel>
</rss>
"""

ATOM_TEMPLATE = """<?xml version="1.0" encoding="utf-8"?>
<feed xmlns="http://www.w3.org/2005/Atom">
  <title>{title}</title>
  <id>urn:test:{title}</id>
  <updated>2024-01-01T00:00:00Z</updated>
  {entries}
</feed>
"""


def rss_item(guid: str, title: str, link: Optional[str] = None, pub_date: Optional[str] = None,
             description: str = "") -> str:
    parts = [f'<guid isPermaLink="false">{guid}</guid>', f"<title>{title}</title>"]
    if link:
        parts.append(f"<link>{link}</link>")
    if pub_date:
        parts.append(f"<pubDate>{pub_date}</pubDate>")
    if description:
        parts.append(f"<description>{description}</description>")
    return "<item>" + "".join(parts) + "</item>"


def rss_feed(*items: str, title: str = "Test") -> str:
    return RSS_TEMPLATE.format(title=title, items="\n".join(items))


def atom_feed(*entries: str, title: str = "Atom") -> str:
    return ATOM_TEMPLATE.format(title=title, entries="\n".join(entries))


class FeedServer:
    """Serves canned feed documents from a local aiohttp server."""

    def __init__(self) -> None:
        self.documents: Dict[str, Tuple[int, str]] = {}
        self.requests = 0
        app = web.Application()
        app.router.add_get("/{name}", self._handle)
        self.server = TestServer(app)

    async def _handle(self, request: web.Request) -> web.Response:
        self.requests += 1
        status, body = self.documents.get(request.match_info["name"], (404, "not found"))
        return web.Response(status=status, text=body, content_type="application/xml")

    def add(self, name: str, body: str, status: int = 200) -> str:
        self.documents[name] = (status, body)
        return self.url(name)

    def url(self, name: str) -> str:
        return str(self.server.make_url(f"/{name}"))


@pytest.fixture(autouse=True)
def cheap_password_hashing(monkeypatch):
    monkeypatch.setattr(config, "PASSWORD_HASH_N", 2 ** 10)


@pytest_asyncio.fixture
async def store(tmp_path):
    store = TenantStore(str(tmp_path / "test.sqlite3"))
    await store.start()
    yield store
    await store.stop()


@pytest_asyncio.fixture
async def fetcher():
    fetcher = FeedFetcher()
    await fetcher.initialize()
    yield fetcher
    await fetcher.close()


@pytest_asyncio.fixture
async def feed_server():
    server = FeedServer()
    await server.server.start_server()
    yield server
    await server.server.close()
