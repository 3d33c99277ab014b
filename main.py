#!/usr/bin/env python3
"""
nanoreader command line.

Modes:
    serve     run the HTTP API (creates the USERNAME/PASSWORD seed user if set)
    refresh   refresh every feed of --user and rebuild their search index
    add-user  create a user (--user, --password or prompt)
    status    print article statistics and feed health for --user
"""

import argparse
import asyncio
import sys
from getpass import getpass
from typing import Optional

from aiohttp import web

from config import config, get_logger
from errors import NanoreaderError
from fetcher import FeedFetcher
from models import NewUser
from refresh import RefreshOrchestrator
from repositories import ArticleRepository, FeedRegistry, UserDirectory
from server import create_app
from store import TenantStore
from telemetry import init_telemetry
from utils import format_timestamp

# Module-specific logger
logger = get_logger("main")


def _seed_user() -> Optional[NewUser]:
    if config.USERNAME and config.PASSWORD:
        return NewUser(username=config.USERNAME, password=config.PASSWORD)
    if config.USERNAME or config.PASSWORD:
        logger.error("both USERNAME and PASSWORD need to be set to create a user")
    return None


def serve(database: str) -> None:
    init_telemetry("nanoreader-server")
    logger.info(f"Configuration: {config.get_config_summary()}")
    app = create_app(TenantStore(database), seed_user=_seed_user())
    web.run_app(app, host=config.ADDRESS, port=config.PORT, print=None)


async def run_refresh(database: str, username: str) -> bool:
    store = TenantStore(database)
    fetcher = FeedFetcher()
    await store.start()
    await fetcher.initialize()
    try:
        if await UserDirectory(store).get(username) is None:
            logger.error(f"Unknown user {username}")
            return False
        report = await RefreshOrchestrator(store, fetcher).refresh_all(username)
        print(f"{report.feeds_succeeded}/{report.feeds_total} feeds refreshed, "
              f"{report.articles_written} articles written, {report.articles_indexed} indexed")
        return True
    except NanoreaderError as e:
        logger.error(f"Refresh failed: {e}")
        return False
    finally:
        await fetcher.close()
        await store.stop()


async def run_add_user(database: str, username: str, password: str) -> bool:
    store = TenantStore(database)
    await store.start()
    try:
        await UserDirectory(store).create(NewUser(username=username, password=password))
        print(f"created user {username}")
        return True
    except NanoreaderError as e:
        logger.error(f"could not create user: {e}")
        return False
    finally:
        await store.stop()


async def run_status(database: str, username: str) -> bool:
    store = TenantStore(database)
    await store.start()
    try:
        user = store.open_user(username)
        status = await ArticleRepository(user).status()
        feeds = await FeedRegistry(user).list()
        print(f"User: {username}")
        print(f"Articles: {status.total_articles} (newest {format_timestamp(status.last_new_article)})")
        print(f"Feeds: {len(feeds)}")
        for feed in feeds:
            health = f"error: {feed.last_error}" if feed.last_error else "ok"
            print(f"  [{feed.id}] {feed.name or feed.url} - last fetch {format_timestamp(feed.last_fetch_time)} - {health}")
        return True
    except NanoreaderError as e:
        logger.error(f"Could not read status: {e}")
        return False
    finally:
        await store.stop()


def main():
    parser = argparse.ArgumentParser(description='nanoreader feed aggregation service')
    parser.add_argument('mode', choices=['serve', 'refresh', 'add-user', 'status'],
                        help='What to run')
    parser.add_argument('--user', type=str,
                        help='Username for refresh, add-user and status')
    parser.add_argument('--password', type=str,
                        help='Password for add-user (prompted when omitted)')
    parser.add_argument('--database', type=str, default=None,
                        help='Path to the database file (defaults to DATABASE_PATH)')
    args = parser.parse_args()

    database = args.database or config.DATABASE_PATH

    if args.mode == 'serve':
        serve(database)
        return

    if not args.user:
        parser.error(f"--user is required for {args.mode}")

    if args.mode == 'refresh':
        init_telemetry("nanoreader-refresh")
        success = asyncio.run(run_refresh(database, args.user))
    elif args.mode == 'add-user':
        password = args.password or getpass(f"Password for {args.user}: ")
        if not password:
            parser.error("password must not be empty")
        success = asyncio.run(run_add_user(database, args.user, password))
    else:
        success = asyncio.run(run_status(database, args.user))

    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
