#!/usr/bin/env python3
"""
Full-text search over a user's articles.

The index maps each token to the ids of the articles containing it. It is
rebuilt from the whole article collection after every refresh and persisted
as a single JSON blob under a reserved key of the user's index namespace.
Queries read that blob back, so results reflect the last rebuild.
"""

import json
import re
from typing import Dict, Iterable, List, Optional, Set

from config import config, get_logger
from errors import CorruptRecordError
from models import Article, ArticleOrderBy, Order
from repositories import ArticleRepository
from store import UserStore
from telemetry import trace_span
from utils import html_to_text

# Module-specific logger
logger = get_logger("search")

SEARCH_INDEX_KEY = b"__article_search_index"

_TOKEN_PATTERN = re.compile(r"\w+")

SearchIndex = Dict[str, Set[str]]


def tokenize(text: Optional[str], max_length: Optional[int] = None) -> List[str]:
    """Split text into lowercase word tokens, ignoring markup and over-long words."""
    if not text:
        return []
    limit = max_length or config.SEARCH_MAX_TOKEN_LENGTH
    return [token for token in _TOKEN_PATTERN.findall(html_to_text(text).lower()) if len(token) <= limit]


def article_tokens(article: Article) -> Set[str]:
    tokens: Set[str] = set()
    for text in (article.title, article.summary, article.content):
        tokens.update(tokenize(text))
    return tokens


def build_index(articles: Iterable[Article]) -> SearchIndex:
    index: SearchIndex = {}
    for article in articles:
        for token in article_tokens(article):
            index.setdefault(token, set()).add(article.id)
    return index


def query_index(index: SearchIndex, term: str) -> List[str]:
    """Return the ids of articles containing every token of ``term``."""
    tokens = set(tokenize(term))
    if not tokens:
        return []

    # Start from the rarest token to keep the intersection small
    postings = sorted((index.get(token, set()) for token in tokens), key=len)
    matches = set(postings[0])
    for posting in postings[1:]:
        matches &= posting
        if not matches:
            break
    return sorted(matches)


def serialize_index(index: SearchIndex) -> bytes:
    payload = {token: sorted(ids) for token, ids in index.items()}
    return json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")


def deserialize_index(raw: bytes) -> SearchIndex:
    try:
        payload = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise CorruptRecordError("index", SEARCH_INDEX_KEY, str(e)) from e
    if not isinstance(payload, dict):
        raise CorruptRecordError("index", SEARCH_INDEX_KEY, "index blob is not a mapping")
    return {token: set(ids) for token, ids in payload.items()}


@trace_span(
    "rebuild_search_index",
    tracer_name="search",
    attr_from_args=lambda user: {"user": user.username},
)
async def rebuild_search_index(user: UserStore) -> int:
    """Rebuild the whole index from the article collection and overwrite the blob.

    Returns:
        The number of articles indexed.
    """
    articles = await ArticleRepository(user).list_all()
    index = build_index(articles)
    await user.index.put(SEARCH_INDEX_KEY, serialize_index(index))
    logger.info(f"{user.username}: indexed {len(articles)} articles ({len(index)} tokens)")
    return len(articles)


async def load_search_index(user: UserStore) -> SearchIndex:
    """Read the persisted index; a user that was never indexed has an empty one."""
    raw = await user.index.get(SEARCH_INDEX_KEY)
    if raw is None:
        return {}
    return deserialize_index(raw)


async def search(user: UserStore, term: str) -> List[str]:
    return query_index(await load_search_index(user), term)


async def query_articles(
    user: UserStore,
    term: Optional[str] = None,
    feed_id: Optional[int] = None,
    order_by: Optional[ArticleOrderBy] = None,
    order: Optional[Order] = None,
) -> List[str]:
    """Filter the user's articles by search term and feed, then sort them.

    Sorting defaults to newest first; ordering by title defaults to A-Z.

    Returns:
        Article ids in the requested order.
    """
    matches = set(await search(user, term)) if term is not None else None

    selected: List[Article] = []
    async for article in ArticleRepository(user).iter_all():
        if matches is not None and article.id not in matches:
            continue
        if feed_id is not None and article.feed_id != feed_id:
            continue
        selected.append(article)

    order_by = order_by or ArticleOrderBy.PUBLISHED
    if order is None:
        order = Order.ASC if order_by == ArticleOrderBy.TITLE else Order.DESC

    if order_by == ArticleOrderBy.TITLE:
        selected.sort(key=lambda article: article.title)
    else:
        selected.sort(key=lambda article: article.published)

    if order == Order.DESC:
        selected.reverse()

    return [article.id for article in selected]
