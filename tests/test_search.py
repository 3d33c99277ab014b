from datetime import datetime, timezone

import pytest

from errors import CorruptRecordError
from models import Article, ArticleOrderBy, Order
from repositories import ArticleRepository
from search import (
    SEARCH_INDEX_KEY,
    build_index,
    deserialize_index,
    load_search_index,
    query_articles,
    query_index,
    rebuild_search_index,
    search,
    serialize_index,
    tokenize,
)


def article(article_id, title="", summary="", content="", month=1, feed_id=0):
    return Article(
        id=article_id,
        feed_id=feed_id,
        published=datetime(2024, month, 1, tzinfo=timezone.utc),
        title=title,
        summary=summary,
        content=content,
    )


async def store_articles(user, *articles):
    repository = ArticleRepository(user)
    for item in articles:
        await repository.insert_or_replace(item)


def test_tokenize_lowercases_and_splits_on_words():
    assert tokenize("Hello, World! It's 2024.") == ["hello", "world", "it", "s", "2024"]


def test_tokenize_ignores_markup():
    assert tokenize("<p>Fresh <em>news</em></p><script>var tracker = 1;</script>") == ["fresh", "news"]


def test_tokenize_drops_overlong_tokens():
    assert tokenize("short " + "x" * 25, max_length=24) == ["short"]
    assert tokenize("") == []
    assert tokenize(None) == []


def test_index_finds_article_by_any_of_its_tokens():
    item = article("a", title="Rust async", summary="Tokio runtime", content="<b>executors</b>")
    index = build_index([item])

    for token in ("rust", "async", "tokio", "runtime", "executors"):
        assert query_index(index, token) == ["a"]
    assert query_index(index, "python") == []


def test_multi_token_query_requires_all_tokens():
    index = build_index([
        article("a", title="python asyncio"),
        article("b", title="python threads"),
    ])
    assert query_index(index, "python") == ["a", "b"]
    assert query_index(index, "Python asyncio") == ["a"]
    assert query_index(index, "asyncio threads") == []


def test_query_without_tokens_matches_nothing():
    index = build_index([article("a", title="anything")])
    assert query_index(index, "") == []
    assert query_index(index, "!!!") == []


def test_serialized_index_is_readable_back():
    index = build_index([article("a", title="one two"), article("b", title="two")])
    assert deserialize_index(serialize_index(index)) == index


def test_corrupt_blob_raises():
    with pytest.raises(CorruptRecordError):
        deserialize_index(b"\xff not json")
    with pytest.raises(CorruptRecordError):
        deserialize_index(b"[1, 2]")


@pytest.mark.asyncio
async def test_user_without_index_has_empty_index(store):
    user = store.open_user("alice")
    assert await load_search_index(user) == {}
    assert await search(user, "anything") == []


@pytest.mark.asyncio
async def test_rebuild_persists_under_reserved_key(store):
    user = store.open_user("alice")
    await store_articles(user, article("a", title="hello"))

    assert await rebuild_search_index(user) == 1
    assert await user.index.contains(SEARCH_INDEX_KEY)
    assert await search(user, "hello") == ["a"]


@pytest.mark.asyncio
async def test_search_reflects_last_rebuild_only(store):
    user = store.open_user("alice")
    await store_articles(user, article("a", title="hello"))
    await rebuild_search_index(user)
    await store_articles(user, article("b", title="hello again"))

    assert await search(user, "hello") == ["a"]
    await rebuild_search_index(user)
    assert await search(user, "hello") == ["a", "b"]


@pytest.mark.asyncio
async def test_query_defaults_to_newest_first(store):
    user = store.open_user("alice")
    await store_articles(user, article("jan", month=1), article("mar", month=3), article("feb", month=2))

    assert await query_articles(user) == ["mar", "feb", "jan"]
    assert await query_articles(user, order=Order.ASC) == ["jan", "feb", "mar"]


@pytest.mark.asyncio
async def test_title_ordering_defaults_to_ascending(store):
    user = store.open_user("alice")
    await store_articles(user, article("1", title="Beta"), article("2", title="Alpha"), article("3", title="Gamma"))

    assert await query_articles(user, order_by=ArticleOrderBy.TITLE) == ["2", "1", "3"]
    assert await query_articles(user, order_by=ArticleOrderBy.TITLE, order=Order.DESC) == ["3", "1", "2"]


@pytest.mark.asyncio
async def test_query_filters_by_term_and_feed(store):
    user = store.open_user("alice")
    await store_articles(
        user,
        article("a", title="python news", feed_id=1, month=1),
        article("b", title="python tips", feed_id=2, month=2),
        article("c", title="rust news", feed_id=1, month=3),
    )
    await rebuild_search_index(user)

    assert await query_articles(user, term="python") == ["b", "a"]
    assert await query_articles(user, feed_id=1) == ["c", "a"]
    assert await query_articles(user, term="python", feed_id=1) == ["a"]
    assert await query_articles(user, term="haskell") == []
