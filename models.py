#!/usr/bin/env python3
"""
Record types for users, feed subscriptions and articles.

Every record is a pydantic model; the store persists them as JSON produced by
``model_dump_json`` and reads them back with ``model_validate_json``.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from utils import validate_url

# Sentinel for feeds that have never been fetched
NEVER_FETCHED = datetime.min.replace(tzinfo=timezone.utc)

U64_MAX = (1 << 64) - 1


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _checked_url(value: str) -> str:
    value = value.strip()
    if not validate_url(value):
        raise ValueError(f"not a valid http(s) url: {value!r}")
    return value


class User(BaseModel):
    username: str
    pass_hash: str


class NewUser(BaseModel):
    username: str = Field(min_length=1)
    password: str = Field(min_length=1)


class ScraperConfig(BaseModel):
    """Per-feed scraping options. No options exist yet."""

    model_config = ConfigDict(extra="forbid")


class NewFeed(BaseModel):
    """A subscription request: the id and health fields are assigned on insert."""

    url: str
    name: Optional[str] = None
    scraper: Optional[ScraperConfig] = None

    @field_validator("url")
    @classmethod
    def _url(cls, value: str) -> str:
        return _checked_url(value)


class Feed(BaseModel):
    id: int = Field(ge=0, le=U64_MAX)
    url: str
    name: str = ""
    scraper: Optional[ScraperConfig] = None
    last_fetch_time: datetime = NEVER_FETCHED
    last_error: Optional[str] = None

    @field_validator("last_fetch_time")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return _as_utc(value)


class FeedPatch(BaseModel):
    """Partial update for a feed.

    Only fields present in the payload are applied. ``url`` and ``name`` set to
    null count as absent; ``scraper`` set to null clears the scraper config.
    """

    id: int = Field(ge=0, le=U64_MAX)
    url: Optional[str] = None
    name: Optional[str] = None
    scraper: Optional[ScraperConfig] = None

    @field_validator("url")
    @classmethod
    def _url(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return _checked_url(value)

    def apply_to(self, feed: Feed) -> Feed:
        supplied = self.model_fields_set
        updates = {}
        if "url" in supplied and self.url is not None:
            updates["url"] = self.url
        if "name" in supplied and self.name is not None:
            updates["name"] = self.name
        if "scraper" in supplied:
            updates["scraper"] = self.scraper
        return feed.model_copy(update=updates)


class Article(BaseModel):
    id: str
    feed_id: int = Field(ge=0, le=U64_MAX)
    published: datetime
    url: Optional[str] = None
    title: str = ""
    summary: str = ""
    content: str = ""

    @field_validator("published")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return _as_utc(value)


class Status(BaseModel):
    last_new_article: datetime = NEVER_FETCHED
    total_articles: int = 0


class ArticleOrderBy(str, Enum):
    TITLE = "title"
    PUBLISHED = "published"


class Order(str, Enum):
    ASC = "asc"
    DESC = "desc"


class RefreshReport(BaseModel):
    """Outcome of one refresh batch, for logging and the CLI."""

    username: str
    feeds_total: int = 0
    feeds_failed: int = 0
    articles_written: int = 0
    articles_indexed: int = 0
    started_at: datetime
    finished_at: Optional[datetime] = None

    @property
    def feeds_succeeded(self) -> int:
        return self.feeds_total - self.feeds_failed
