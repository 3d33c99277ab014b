#!/usr/bin/env python3
"""
HTTP API for nanoreader.

Every route lives under ``/api/v1`` and requires HTTP Basic credentials of a
user in the credential collection. Errors raised by the lower layers are
turned into responses by ``error_middleware``.
"""

import json
from typing import Any, Optional, Tuple

from aiohttp import web
from pydantic import ValidationError

from auth import parse_basic_auth
from config import get_logger
from errors import (
    AuthenticationError,
    NanoreaderError,
    NotFound,
    OpmlError,
    UsernameTaken,
)
from fetcher import FeedFetcher
from models import ArticleOrderBy, FeedPatch, NewFeed, NewUser, Order
from opml import export_opml, import_opml
from refresh import RefreshOrchestrator
from repositories import ArticleRepository, FeedRegistry, UserDirectory
from search import query_articles
from store import TenantStore, UserStore

# Module-specific logger
logger = get_logger("server")

API_PREFIX = "/api/v1"

STORE_KEY = web.AppKey("store", TenantStore)
FETCHER_KEY = web.AppKey("fetcher", FeedFetcher)
ORCHESTRATOR_KEY = web.AppKey("orchestrator", RefreshOrchestrator)
SEED_USER_KEY = web.AppKey("seed_user", object)

REFRESH_OK = "rebuilt index successfully"


def _text_error(status: int, message: str) -> web.Response:
    return web.Response(status=status, text=message)


@web.middleware
async def error_middleware(request: web.Request, handler):
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except UsernameTaken:
        return _text_error(400, "Username already taken")
    except AuthenticationError:
        response = _text_error(401, "Username or password incorrect")
        response.headers["WWW-Authenticate"] = 'Basic realm="nanoreader"'
        return response
    except NotFound as e:
        return _text_error(404, str(e))
    except (ValidationError, OpmlError) as e:
        return _text_error(400, str(e))
    except NanoreaderError as e:
        logger.error(f"{request.method} {request.path} failed: {e}")
        return _text_error(500, str(e))


@web.middleware
async def auth_middleware(request: web.Request, handler):
    username, password = parse_basic_auth(request.headers.get("Authorization"))
    user = await UserDirectory(request.app[STORE_KEY]).authenticate(username, password)
    request["username"] = user.username
    return await handler(request)


def _user(request: web.Request) -> UserStore:
    return request.app[STORE_KEY].open_user(request["username"])


async def _json_body(request: web.Request) -> Any:
    try:
        return await request.json()
    except json.JSONDecodeError as e:
        raise web.HTTPBadRequest(text=f"invalid JSON body: {e}")


def _optional_int(request: web.Request, name: str) -> Optional[int]:
    raw = request.query.get(name)
    if raw in (None, ""):
        return None
    try:
        return int(raw)
    except ValueError:
        raise web.HTTPBadRequest(text=f"{name} must be an integer")


def _ordering(request: web.Request) -> Tuple[Optional[ArticleOrderBy], Optional[Order]]:
    try:
        order_by = ArticleOrderBy(request.query["order_by"]) if request.query.get("order_by") else None
        order = Order(request.query["order"]) if request.query.get("order") else None
    except ValueError as e:
        raise web.HTTPBadRequest(text=str(e))
    return order_by, order


async def get_status(request: web.Request) -> web.Response:
    status = await ArticleRepository(_user(request)).status()
    return web.json_response(status.model_dump(mode="json"))


async def get_feeds(request: web.Request) -> web.Response:
    feeds = await FeedRegistry(_user(request)).list()
    return web.json_response([feed.model_dump(mode="json") for feed in feeds])


async def post_feed(request: web.Request) -> web.Response:
    new_feed = NewFeed.model_validate(await _json_body(request))
    feed = await FeedRegistry(_user(request)).subscribe(new_feed)
    return web.json_response(feed.model_dump(mode="json"), status=201)


async def patch_feed(request: web.Request) -> web.Response:
    patch = FeedPatch.model_validate(await _json_body(request))
    feed = await FeedRegistry(_user(request)).apply_patch(patch)
    return web.json_response(feed.model_dump(mode="json"))


async def delete_feed(request: web.Request) -> web.Response:
    try:
        feed_id = int(request.match_info["feed_id"])
    except ValueError:
        raise web.HTTPBadRequest(text="feed id must be an integer")
    await FeedRegistry(_user(request)).delete(feed_id)
    return web.Response(status=204)


async def get_articles(request: web.Request) -> web.Response:
    articles = await ArticleRepository(_user(request)).list_all()
    return web.json_response([article.model_dump(mode="json") for article in articles])


async def search_articles(request: web.Request) -> web.Response:
    order_by, order = _ordering(request)
    ids = await query_articles(
        _user(request),
        term=request.query.get("q"),
        feed_id=_optional_int(request, "feed_id"),
        order_by=order_by,
        order=order,
    )
    return web.json_response(ids)


async def refresh(request: web.Request) -> web.Response:
    await request.app[ORCHESTRATOR_KEY].refresh_all(request["username"])
    return web.Response(text=REFRESH_OK)


async def import_feeds(request: web.Request) -> web.Response:
    feeds = await import_opml(FeedRegistry(_user(request)), await request.text())
    return web.json_response({"imported": len(feeds)})


async def export_feeds(request: web.Request) -> web.Response:
    kind = request.query.get("kind", "opml")
    if kind != "opml":
        raise web.HTTPBadRequest(text=f"unsupported export kind {kind!r}")
    feeds = await FeedRegistry(_user(request)).list()
    return web.Response(text=export_opml(feeds), content_type="text/x-opml")


async def _lifecycle(app: web.Application):
    store = app[STORE_KEY]
    fetcher = app[FETCHER_KEY]
    await store.start()
    await fetcher.initialize()

    seed = app[SEED_USER_KEY]
    if seed is not None:
        try:
            await UserDirectory(store).create(seed)
        except UsernameTaken:
            logger.info(f"Seed user {seed.username} already exists")
        except NanoreaderError as e:
            logger.warning(f"could not create user: {e}")

    yield

    await fetcher.close()
    await store.stop()


def create_app(
    store: TenantStore,
    fetcher: Optional[FeedFetcher] = None,
    seed_user: Optional[NewUser] = None,
    concurrency: Optional[int] = None,
) -> web.Application:
    """Build the application; the store and fetcher are started with it."""
    fetcher = fetcher or FeedFetcher()
    app = web.Application(middlewares=[error_middleware, auth_middleware])
    app[STORE_KEY] = store
    app[FETCHER_KEY] = fetcher
    app[ORCHESTRATOR_KEY] = RefreshOrchestrator(store, fetcher, concurrency=concurrency)
    app[SEED_USER_KEY] = seed_user
    app.cleanup_ctx.append(_lifecycle)

    app.router.add_route("*", f"{API_PREFIX}/status", get_status)
    app.router.add_get(f"{API_PREFIX}/feeds", get_feeds)
    app.router.add_post(f"{API_PREFIX}/feeds", post_feed)
    app.router.add_patch(f"{API_PREFIX}/feeds", patch_feed)
    app.router.add_delete(f"{API_PREFIX}/feeds/{{feed_id}}", delete_feed)
    app.router.add_get(f"{API_PREFIX}/articles", get_articles)
    app.router.add_post(f"{API_PREFIX}/search", search_articles)
    app.router.add_post(f"{API_PREFIX}/refresh", refresh)
    app.router.add_post(f"{API_PREFIX}/import", import_feeds)
    app.router.add_post(f"{API_PREFIX}/export", export_feeds)
    return app
