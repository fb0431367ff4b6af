#!/usr/bin/env python3
"""
Ingestion orchestrator.

One run walks every active feed in order: check the URL, fetch, keep the
first few usable items, bulk-dedup their links, summarize and insert what is
new. Each feed ends in exactly one outcome (inserted, skipped or failed) that
is folded into the run's `IngestionStats`. A feed's failure never stops the
run; only an unreachable store does.
"""

from asyncio import Lock
from dataclasses import dataclass, field
from datetime import datetime, timezone
from time import monotonic
from typing import Any, Dict, List, Optional, Union

from config import config, get_logger
from errors import FeedFetchError, StorageError, StorageConflictError
from fetcher import FeedFetcher, RawFeedItem
from models import Article, DatabaseQueue, Feed
from summarizer import Summarizer
from telemetry import trace_span
from utils import format_duration, is_safe_feed_url, to_iso_timestamp

logger = get_logger("ingest")


@dataclass
class IngestionStats:
    """Aggregate result of one ingestion run."""

    processed: int = 0
    added: int = 0
    skipped: int = 0
    errors: int = 0
    error_details: List[str] = field(default_factory=list)
    feeds: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "added": self.added,
            "skipped": self.skipped,
            "errors": self.errors,
            "errorDetails": list(self.error_details),
        }


@dataclass(frozen=True)
class FeedInserted:
    """The feed was handled and ``added`` new articles were stored."""

    feed: str
    added: int
    skipped: int = 0


@dataclass(frozen=True)
class FeedSkipped:
    """The feed was handled but had nothing new (all duplicates or no usable items)."""

    feed: str
    skipped: int = 0


@dataclass(frozen=True)
class FeedFailed:
    """The feed could not be handled; partial inserts still count as added."""

    feed: str
    reason: str
    added: int = 0
    skipped: int = 0


FeedOutcome = Union[FeedInserted, FeedSkipped, FeedFailed]


def fold_outcome(stats: IngestionStats, outcome: FeedOutcome) -> IngestionStats:
    """Accumulate one feed outcome into the run statistics."""
    stats.added += getattr(outcome, "added", 0)
    stats.skipped += outcome.skipped
    if isinstance(outcome, FeedFailed):
        stats.errors += 1
        stats.error_details.append(outcome.reason)
    else:
        stats.processed += 1
    return stats


def select_candidates(items: List[RawFeedItem], limit: int) -> List[RawFeedItem]:
    """First ``limit`` items carrying both a title and a link, in feed order."""
    candidates: List[RawFeedItem] = []
    for item in items:
        if not item.title or not item.link:
            continue
        candidates.append(item)
        if len(candidates) >= limit:
            break
    return candidates


async def sync_feed_sources(db: DatabaseQueue, sources: Optional[List[Dict[str, Any]]] = None) -> int:
    """Register configured feed sources that are not stored yet. Returns how many were added."""
    sources = config.FEED_SOURCES if sources is None else sources
    added = 0
    for source in sources:
        if not is_safe_feed_url(source['url']):
            logger.warning(f"Not registering feed '{source['name']}': unsafe URL {source['url']}")
            continue
        if await db.execute('register_feed', name=source['name'], url=source['url'], is_active=source.get('is_active', True)):
            added += 1
    if added:
        logger.info(f"Registered {added} new feeds from configuration")
    return added


class IngestionOrchestrator:
    """Coordinates a full ingestion run across all active feeds."""

    def __init__(
        self,
        db: DatabaseQueue,
        fetcher: FeedFetcher,
        summarizer: Summarizer,
        max_items_per_feed: Optional[int] = None,
    ) -> None:
        self.db = db
        self.fetcher = fetcher
        self.summarizer = summarizer
        self.max_items_per_feed = max_items_per_feed or config.MAX_ITEMS_PER_FEED
        # Overlapping triggers queue behind the current run
        self._run_lock = Lock()

    @property
    def running(self) -> bool:
        return self._run_lock.locked()

    @trace_span("ingest.run", tracer_name="ingest")
    async def run(self) -> IngestionStats:
        """Run one ingestion pass and return its statistics.

        Raises:
            StorageError: the store could not be read (active feeds or dedup lookup).
        """
        if self._run_lock.locked():
            logger.info("Ingestion already in progress; waiting for it to finish")
        async with self._run_lock:
            started = monotonic()
            feeds: List[Feed] = await self.db.execute('list_active_feeds')
            logger.info(f"Starting ingestion run over {len(feeds)} active feeds")

            stats = IngestionStats(feeds=len(feeds))
            for feed in feeds:
                outcome = await self.process_feed(feed)
                fold_outcome(stats, outcome)

            logger.info(
                f"Ingestion run finished in {format_duration(monotonic() - started)}: "
                f"processed={stats.processed} added={stats.added} skipped={stats.skipped} errors={stats.errors}"
            )
            return stats

    @trace_span(
        "ingest.process_feed",
        tracer_name="ingest",
        attr_from_args=lambda self, feed: {"feed.id": feed.id, "feed.name": feed.name},
    )
    async def process_feed(self, feed: Feed) -> FeedOutcome:
        """Take one feed from Pending to Inserted, Skipped or Failed."""
        logger.debug(f"[{feed.name}] Pending")

        if not is_safe_feed_url(feed.url):
            logger.warning(f"[{feed.name}] Failed: unsafe feed URL {feed.url}")
            return FeedFailed(feed.name, f"{feed.name}: Unsafe feed URL: {feed.url}")
        logger.debug(f"[{feed.name}] URLChecked")

        try:
            items = await self.fetcher.fetch(feed.url)
        except FeedFetchError as e:
            logger.error(f"[{feed.name}] Failed: {e.kind} error fetching {feed.url}: {e}")
            return FeedFailed(feed.name, f"{feed.name}: {e}")
        logger.debug(f"[{feed.name}] Fetched {len(items)} items")

        candidates = select_candidates(items, self.max_items_per_feed)
        if not candidates:
            logger.info(f"[{feed.name}] No usable items")
            return FeedSkipped(feed.name)

        # A failed lookup means the store is down: propagate and end the run
        existing = await self.db.execute('check_existing_urls', urls=[item.link for item in candidates])
        new_items = [item for item in candidates if item.link not in existing]
        skipped = len(candidates) - len(new_items)
        logger.debug(f"[{feed.name}] Deduplicated: {len(new_items)} new, {skipped} already stored")

        added = 0
        for item in new_items:
            logger.debug(f"[{feed.name}] Summarizing '{item.title}'")
            summary = await self.summarizer.summarize(item.title, item.content)
            article = self._build_article(feed, item, summary)
            try:
                await self.db.execute('insert_article', article=article)
            except StorageConflictError:
                # Stored by a concurrent writer since the dedup lookup
                skipped += 1
                continue
            except StorageError as e:
                logger.error(f"[{feed.name}] Failed: insert of {item.link} failed: {e}")
                return FeedFailed(feed.name, f"{feed.name}: {e}", added=added, skipped=skipped)
            added += 1

        if added:
            logger.info(f"[{feed.name}] Inserted {added} new articles ({skipped} skipped)")
            return FeedInserted(feed.name, added=added, skipped=skipped)
        logger.info(f"[{feed.name}] Skipped: nothing new ({skipped} duplicates)")
        return FeedSkipped(feed.name, skipped=skipped)

    def _build_article(self, feed: Feed, item: RawFeedItem, summary) -> Article:
        published = item.published_at or datetime.now(timezone.utc)
        return Article(
            feed_id=feed.id,
            title=summary.title or item.title,
            url=item.link,
            summary=summary.summary or None,
            tags=list(summary.tags),
            source=feed.name,
            published_at=to_iso_timestamp(published),
        )
