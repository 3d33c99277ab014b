#!/usr/bin/env python3
"""
Typed access to the tenant store: users, feed subscriptions and articles.
"""

from asyncio import get_running_loop
from functools import partial
from typing import AsyncIterator, List, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

from auth import hash_password, verify_password
from config import get_logger
from errors import CorruptRecordError, NotFound, PasswordIncorrect, UsernameNotFound, UsernameTaken
from models import NEVER_FETCHED, Article, Feed, FeedPatch, NewFeed, NewUser, Status, User
from store import Namespace, TenantStore, UserStore

# Module-specific logger
logger = get_logger("repositories")

RecordT = TypeVar("RecordT", bound=BaseModel)


def _encode(record: BaseModel) -> bytes:
    return record.model_dump_json().encode("utf-8")


def _decode(model: Type[RecordT], namespace: Namespace, key: bytes, raw: bytes) -> RecordT:
    try:
        return model.model_validate_json(raw)
    except ValidationError as e:
        raise CorruptRecordError(namespace.name, key, str(e)) from e


def feed_key(feed_id: int) -> bytes:
    """Big-endian u64, so the namespace iterates in id order."""
    return feed_id.to_bytes(8, "big")


def article_key(article_id: str) -> bytes:
    return article_id.encode("utf-8")


class UserDirectory:
    """Global credential collection."""

    def __init__(self, store: TenantStore):
        self.users = store.users

    async def create(self, new_user: NewUser) -> User:
        loop = get_running_loop()
        pass_hash = await loop.run_in_executor(None, partial(hash_password, new_user.password))
        user = User(username=new_user.username, pass_hash=pass_hash)
        if not await self.users.put_if_absent(new_user.username.encode("utf-8"), _encode(user)):
            raise UsernameTaken(new_user.username)
        logger.info(f"Created user {user.username}")
        return user

    async def get(self, username: str) -> Optional[User]:
        key = username.encode("utf-8")
        raw = await self.users.get(key)
        if raw is None:
            return None
        return _decode(User, self.users, key, raw)

    async def authenticate(self, username: str, password: str) -> User:
        """Return the user if ``password`` matches, else raise an AuthenticationError."""
        user = await self.get(username)
        if user is None:
            raise UsernameNotFound()
        loop = get_running_loop()
        if not await loop.run_in_executor(None, partial(verify_password, password, user.pass_hash)):
            raise PasswordIncorrect()
        return user


class FeedRegistry:
    """Feed subscriptions of one user."""

    def __init__(self, user: UserStore):
        self.user = user
        self.feeds = user.feeds

    async def insert(self, feed: Feed) -> None:
        await self.feeds.put(feed_key(feed.id), _encode(feed))

    async def get(self, feed_id: int) -> Optional[Feed]:
        key = feed_key(feed_id)
        raw = await self.feeds.get(key)
        if raw is None:
            return None
        return _decode(Feed, self.feeds, key, raw)

    async def list(self) -> List[Feed]:
        return [_decode(Feed, self.feeds, key, raw) for key, raw in await self.feeds.scan()]

    async def subscribe(self, new_feed: NewFeed) -> Feed:
        feed = Feed(
            id=await self.user.generate_id(),
            url=new_feed.url,
            name=new_feed.name or "",
            scraper=new_feed.scraper,
            last_fetch_time=NEVER_FETCHED,
            last_error=None,
        )
        await self.insert(feed)
        logger.info(f"{self.user.username}: subscribed to {feed.url} as feed {feed.id}")
        return feed

    async def apply_patch(self, patch: FeedPatch) -> Feed:
        feed = await self.get(patch.id)
        if feed is None:
            raise NotFound("feed")
        updated = patch.apply_to(feed)
        await self.insert(updated)
        return updated

    async def delete(self, feed_id: int) -> None:
        if not await self.feeds.delete(feed_key(feed_id)):
            raise NotFound("feed")
        logger.info(f"{self.user.username}: unsubscribed from feed {feed_id}")


class ArticleRepository:
    """Articles of one user, keyed by the entry id their feed assigned."""

    def __init__(self, user: UserStore):
        self.user = user
        self.articles = user.articles

    async def get(self, article_id: str) -> Optional[Article]:
        key = article_key(article_id)
        raw = await self.articles.get(key)
        if raw is None:
            return None
        return _decode(Article, self.articles, key, raw)

    async def insert_or_replace(self, article: Article) -> None:
        await self.articles.put(article_key(article.id), _encode(article))

    async def iter_all(self) -> AsyncIterator[Article]:
        for key, raw in await self.articles.scan():
            yield _decode(Article, self.articles, key, raw)

    async def list_all(self) -> List[Article]:
        return [article async for article in self.iter_all()]

    async def status(self) -> Status:
        status = Status()
        async for article in self.iter_all():
            status.total_articles += 1
            status.last_new_article = max(status.last_new_article, article.published)
        return status
