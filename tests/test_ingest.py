import asyncio

import pytest

from errors import NetworkError, StorageError
from fetcher import RawFeedItem
from ingest import (
    FeedFailed,
    FeedInserted,
    FeedSkipped,
    IngestionOrchestrator,
    IngestionStats,
    fold_outcome,
    select_candidates,
    sync_feed_sources,
)
from llm_client import LLMClient
from models import Article, DatabaseQueue
from summarizer import Summarizer


class FakeFetcher:
    """Serves canned items (or raises) per feed URL."""

    def __init__(self, feeds, delay: float = 0.0):
        self.feeds = feeds
        self.delay = delay
        self.calls = []
        self.active = 0
        self.max_active = 0

    async def fetch(self, url, timeout=None):
        self.calls.append(url)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            result = self.feeds[url]
            if isinstance(result, Exception):
                raise result
            return list(result)
        finally:
            self.active -= 1


def item(slug, title=None):
    return RawFeedItem(title=title if title is not None else f"Story {slug}", link=f"https://example.com/{slug}", content=f"Body of {slug}")


def offline_summarizer():
    return Summarizer(LLMClient(api_key=""), prompt="PROMPT")


def test_select_candidates_needs_title_and_link_and_caps_count():
    items = [item("a"), RawFeedItem(title="", link="https://example.com/x"), RawFeedItem(title="No link", link="")]
    items += [item(str(n)) for n in range(10)]

    chosen = select_candidates(items, 5)

    assert [c.link.rsplit('/', 1)[-1] for c in chosen] == ["a", "0", "1", "2", "3"]


def test_fold_outcome_counts_each_feed_once():
    stats = IngestionStats()
    fold_outcome(stats, FeedInserted("A", added=2, skipped=1))
    fold_outcome(stats, FeedSkipped("B", skipped=3))
    fold_outcome(stats, FeedFailed("C", "C: HTTP 500", added=1))

    assert stats.to_dict() == {
        "processed": 2,
        "added": 3,
        "skipped": 4,
        "errors": 1,
        "errorDetails": ["C: HTTP 500"],
    }


@pytest.mark.asyncio
async def test_existing_urls_are_skipped(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        await db.execute('register_feed', name='Example', url='https://feed.example.com/rss')
        await db.execute('insert_article', article=Article(
            title="Already here", url="https://example.com/b", published_at="2025-01-01T00:00:00.000Z",
        ))
        fetcher = FakeFetcher({'https://feed.example.com/rss': [item("a"), item("b"), item("c")]})
        orchestrator = IngestionOrchestrator(db, fetcher, offline_summarizer())

        stats = await orchestrator.run()
        stored = await db.execute('query_articles_page', offset=0, limit=10)
    finally:
        await db.stop()

    assert stats.added == 2
    assert stats.skipped == 1
    assert stats.processed == 1
    assert stats.errors == 0
    assert sorted(a.url for a in stored) == [
        "https://example.com/a", "https://example.com/b", "https://example.com/c",
    ]
    new_article = next(a for a in stored if a.url == "https://example.com/a")
    assert new_article.source == "Example"
    assert new_article.summary == "Body of a"
    assert new_article.tags == ["Tech"]


@pytest.mark.asyncio
async def test_one_failing_feed_does_not_stop_the_run(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        await db.execute('register_feed', name='F1', url='https://f1.example.com/rss')
        await db.execute('register_feed', name='F2', url='https://f2.example.com/rss')
        fetcher = FakeFetcher({
            'https://f1.example.com/rss': NetworkError("HTTP 500", url='https://f1.example.com/rss'),
            'https://f2.example.com/rss': [item("x"), item("y")],
        })
        stats = await IngestionOrchestrator(db, fetcher, offline_summarizer()).run()
        count = await db.execute('count_articles')
    finally:
        await db.stop()

    assert stats.errors == 1
    assert stats.added == 2
    assert stats.processed == 1
    assert len(stats.error_details) == 1
    assert stats.error_details[0].startswith("F1")
    assert count == 2


@pytest.mark.asyncio
async def test_unsafe_feed_url_is_never_fetched(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        await db.execute('register_feed', name='Intranet', url='http://192.168.0.10/rss')
        fetcher = FakeFetcher({})
        stats = await IngestionOrchestrator(db, fetcher, offline_summarizer()).run()
    finally:
        await db.stop()

    assert fetcher.calls == []
    assert stats.errors == 1
    assert "Unsafe feed URL" in stats.error_details[0]


@pytest.mark.asyncio
async def test_feed_without_usable_items_counts_as_processed(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        await db.execute('register_feed', name='Empty', url='https://empty.example.com/rss')
        fetcher = FakeFetcher({'https://empty.example.com/rss': [RawFeedItem(title="", link="")]})
        stats = await IngestionOrchestrator(db, fetcher, offline_summarizer()).run()
    finally:
        await db.stop()

    assert stats.to_dict() == {"processed": 1, "added": 0, "skipped": 0, "errors": 0, "errorDetails": []}


@pytest.mark.asyncio
async def test_repeated_link_within_a_feed_is_stored_once(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        await db.execute('register_feed', name='Echo', url='https://echo.example.com/rss')
        fetcher = FakeFetcher({'https://echo.example.com/rss': [item("same"), item("same", title="Reposted")]})
        stats = await IngestionOrchestrator(db, fetcher, offline_summarizer()).run()
        count = await db.execute('count_articles')
    finally:
        await db.stop()

    assert stats.added == 1
    assert stats.skipped == 1
    assert count == 1


@pytest.mark.asyncio
async def test_overlapping_runs_are_serialized(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        await db.execute('register_feed', name='Slow', url='https://slow.example.com/rss')
        fetcher = FakeFetcher({'https://slow.example.com/rss': [item("a"), item("b")]}, delay=0.05)
        orchestrator = IngestionOrchestrator(db, fetcher, offline_summarizer())

        first, second = await asyncio.gather(orchestrator.run(), orchestrator.run())
        count = await db.execute('count_articles')
    finally:
        await db.stop()

    assert fetcher.max_active == 1
    assert first.added + second.added == 2
    assert first.skipped + second.skipped == 2
    assert count == 2
    assert orchestrator.running is False


@pytest.mark.asyncio
async def test_storage_outage_ends_the_run(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    orchestrator = IngestionOrchestrator(db, FakeFetcher({}), offline_summarizer())

    with pytest.raises(StorageError):
        await orchestrator.run()


@pytest.mark.asyncio
async def test_sync_feed_sources_registers_safe_new_feeds(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        sources = [
            {'name': 'Good', 'url': 'https://good.example.com/rss', 'is_active': True},
            {'name': 'Local', 'url': 'http://localhost/rss', 'is_active': True},
            {'name': 'Off', 'url': 'https://off.example.com/rss', 'is_active': False},
        ]
        assert await sync_feed_sources(db, sources) == 2
        assert await sync_feed_sources(db, sources) == 0
        active = await db.execute('list_active_feeds')
    finally:
        await db.stop()

    assert [f.name for f in active] == ['Good']
