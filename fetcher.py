#!/usr/bin/env python3
"""
RSS/Atom feed fetcher.

This module retrieves a feed document over HTTP and parses it into an ordered
list of raw items for the ingestion orchestrator. The whole fetch-and-parse is
bounded by a hard deadline; failures surface as ``FetchTimeoutError``,
``NetworkError`` or ``ParseError`` and are never retried here.
"""

from asyncio import get_running_loop, wait_for, TimeoutError
from calendar import timegm
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from functools import partial
from typing import Any, List, Optional
from urllib.parse import urljoin
import re

import feedparser
from aiohttp import ClientSession, ClientError, ClientTimeout

from config import config, get_logger
from errors import FetchTimeoutError, NetworkError, ParseError
from telemetry import trace_span
from utils import html_to_text, is_safe_feed_url

logger = get_logger("fetcher")

HTTP_OK = 200
REDIRECT_STATUSES = frozenset({301, 302, 303, 307, 308})
READ_CHUNK_BYTES = 64 * 1024

DATE_FIELDS = (
    'published',
    'updated',
    'created',
    'modified',
    'date',
    'pubDate',
    'pubdate',
    'issued',
)

GUID_DATE_PATTERNS = (
    re.compile(r'(\d{4})-(\d{2})-(\d{2})'),
    re.compile(r'(\d{4})/(\d{2})/(\d{2})'),
)

CUSTOM_DATE_FORMATS = (
    "%d %b %Y %H:%M:%S %z",
    "%d %b %Y %H:%M:%S %Z",
    "%d %b %Y %H:%M:%S",
)


@dataclass
class RawFeedItem:
    """One entry as it came out of the feed, before dedup or summarization."""

    title: str
    link: str
    content: str = ""
    published_at: Optional[datetime] = None


class FeedFetcher:
    """Fetches and parses feeds with a per-call deadline."""

    def __init__(self, session: Optional[ClientSession] = None) -> None:
        self.executor = ThreadPoolExecutor(max_workers=2)
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> ClientSession:
        if self._session is None or self._session.closed:
            self._session = ClientSession(headers={'User-Agent': config.USER_AGENT})
            self._owns_session = True
        return self._session

    async def run_in_executor(self, func, *args) -> Any:
        """Run a blocking function in the thread pool executor."""
        loop = get_running_loop()
        return await loop.run_in_executor(self.executor, partial(func, *args))

    @trace_span(
        "fetch_feed",
        tracer_name="fetcher",
        attr_from_args=lambda self, url, timeout=None: {"feed.url": url},
    )
    async def fetch(self, url: str, timeout: Optional[float] = None) -> List[RawFeedItem]:
        """Fetch ``url`` and return its items in document order.

        Raises:
            FetchTimeoutError: the deadline expired.
            NetworkError: connection/DNS/TLS failure or a non-200 response.
            ParseError: the body is not a usable feed.
        """
        deadline = timeout if timeout is not None else config.FETCH_TIMEOUT_SECONDS
        try:
            return await wait_for(self._fetch_and_parse(url, deadline), timeout=deadline)
        except TimeoutError as e:
            raise FetchTimeoutError(f"Timed out after {deadline:g}s", url=url) from e

    async def _fetch_and_parse(self, url: str, deadline: float) -> List[RawFeedItem]:
        content = await self._fetch_feed_content(url, deadline)
        parsed = await self.run_in_executor(feedparser.parse, content)
        return self._parse_entries(url, parsed)

    async def _fetch_feed_content(self, url: str, deadline: float) -> bytes:
        """GET the feed body, following redirects only to safe targets.

        HTTP and transport failures, unsafe or excessive redirects and
        oversized bodies all become NetworkError.
        """
        session = await self._get_session()
        current = url
        try:
            for _ in range(config.MAX_REDIRECTS + 1):
                async with session.get(
                    current,
                    timeout=ClientTimeout(total=deadline),
                    allow_redirects=False,
                    headers={'User-Agent': config.USER_AGENT},
                ) as response:
                    if response.status in REDIRECT_STATUSES:
                        current = self._redirect_target(url, response)
                        continue
                    if response.status != HTTP_OK:
                        raise NetworkError(f"HTTP {response.status}", url=url)
                    return await self._read_limited(url, response)
        except TimeoutError:
            # aiohttp's ServerTimeoutError is also a ClientError; keep it a timeout
            raise
        except ClientError as e:
            raise NetworkError(self._format_client_error(e), url=url) from e
        raise NetworkError(f"Too many redirects (more than {config.MAX_REDIRECTS})", url=url)

    def _redirect_target(self, url: str, response) -> str:
        location = response.headers.get('Location')
        if not location:
            raise NetworkError(f"HTTP {response.status} redirect without Location", url=url)
        target = urljoin(str(response.url), location)
        if not is_safe_feed_url(target):
            raise NetworkError(f"Redirect to unsafe URL: {target}", url=url)
        logger.debug(f"Following redirect for {url} to {target}")
        return target

    async def _read_limited(self, url: str, response) -> bytes:
        """Read the body, refusing anything larger than MAX_FEED_BYTES."""
        limit = config.MAX_FEED_BYTES
        if response.content_length is not None and response.content_length > limit:
            raise NetworkError(f"Feed body of {response.content_length} bytes exceeds {limit} bytes", url=url)
        body = bytearray()
        async for chunk in response.content.iter_chunked(READ_CHUNK_BYTES):
            body.extend(chunk)
            if len(body) > limit:
                raise NetworkError(f"Feed body exceeds {limit} bytes", url=url)
        return bytes(body)

    def _parse_entries(self, url: str, feed) -> List[RawFeedItem]:
        entries = feed.get('entries') or []
        if feed.get('bozo') and not entries:
            reason = feed.get('bozo_exception')
            raise ParseError(f"Malformed feed document: {reason}", url=url)
        if not entries and not feed.get('version'):
            raise ParseError("Not an RSS or Atom document", url=url)

        logger.debug(f"Feed {url} parsed as {feed.get('version') or 'unknown'} with {len(entries)} entries")
        if feed.get('bozo'):
            logger.warning(f"Feed parsing warning for {url}: {feed.get('bozo_exception')}")

        items: List[RawFeedItem] = []
        for entry in entries:
            title, link = self._normalize_entry_identity(
                self._get_entry_value(entry, 'title'),
                self._get_entry_value(entry, 'link'),
            )
            items.append(RawFeedItem(
                title=title,
                link=link,
                content=self.extract_content(entry),
                published_at=self.parse_entry_date(entry),
            ))
        return items

    def extract_content(self, entry) -> str:
        """Extract the entry body as plain text (content, then summary, then description)."""
        content = ""
        for content_item in self._get_entry_value(entry, 'content') or []:
            value = content_item.get('value') if isinstance(content_item, dict) else None
            if value:
                content = value
                break
        if not content:
            content = self._get_entry_value(entry, 'summary') or ""
        if not content:
            content = self._get_entry_value(entry, 'description') or ""
        return html_to_text(content)

    def parse_entry_date(self, entry) -> Optional[datetime]:
        """Resolve the publication date of an entry, or None if it has none."""
        for field in DATE_FIELDS:
            for candidate in (field, f"{field}_parsed"):
                value = self._date_value_to_datetime(self._get_entry_value(entry, candidate))
                if value:
                    return value

        # Fall back to a date embedded in the guid/permalink
        entry_id = self._get_entry_value(entry, 'id')
        if isinstance(entry_id, str):
            for pattern in GUID_DATE_PATTERNS:
                match = pattern.search(entry_id)
                if not match:
                    continue
                try:
                    year, month, day = map(int, match.groups())
                    return datetime(year, month, day, tzinfo=timezone.utc)
                except ValueError as e:
                    logger.debug(f"Failed to parse date components for '{entry_id}': {e}")
        return None

    def _get_entry_value(self, entry, field: str) -> Any:
        """Safely fetch feedparser entry fields with attribute or dict access."""
        if not field or entry is None:
            return None
        getter = getattr(entry, 'get', None)
        if callable(getter):
            value = getter(field)
            if value is not None:
                return value
        try:
            return getattr(entry, field)
        except AttributeError:
            return None

    def _date_value_to_datetime(self, value: Any) -> Optional[datetime]:
        """Convert assorted date representations into an aware UTC datetime."""
        if value in (None, ''):
            return None

        if isinstance(value, datetime):
            return value if value.tzinfo else value.replace(tzinfo=timezone.utc)

        if isinstance(value, (list, tuple)):
            # feedparser *_parsed values are UTC struct_time
            try:
                return datetime.fromtimestamp(timegm(tuple(value)), tz=timezone.utc)
            except (OverflowError, ValueError, OSError, TypeError):
                return None

        if isinstance(value, str):
            return self._parse_date_string(value)

        return None

    def _parse_date_string(self, date_str: str) -> Optional[datetime]:
        parsers = (
            self._parse_with_email_utils,
            self._parse_with_feedparser,
            self._parse_with_custom_formats,
        )
        for parser in parsers:
            value = parser(date_str)
            if value is not None:
                return value
        return None

    def _parse_with_feedparser(self, date_str: str) -> Optional[datetime]:
        try:
            time_struct = feedparser.datetimes._parse_date(date_str)
        except (ValueError, TypeError, AttributeError):
            return None
        if not time_struct:
            return None
        try:
            return datetime.fromtimestamp(timegm(time_struct), tz=timezone.utc)
        except (OverflowError, ValueError, OSError):
            return None

    def _parse_with_email_utils(self, date_str: str) -> Optional[datetime]:
        try:
            dt = parsedate_to_datetime(date_str)
        except (TypeError, ValueError, IndexError, OverflowError):
            return None
        if dt is None:
            return None
        return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)

    def _parse_with_custom_formats(self, date_str: str) -> Optional[datetime]:
        for fmt in CUSTOM_DATE_FORMATS:
            try:
                dt = datetime.strptime(date_str.strip(), fmt)
            except (ValueError, TypeError):
                continue
            return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)
        return None

    def _normalize_entry_identity(self, title: Optional[str], url: Optional[str]) -> tuple[str, str]:
        """Trim title and link to storage limits so dedup compares the stored form."""
        norm_title = html_to_text(title) if title else ""
        norm_title = norm_title[:255]

        norm_url = (url or "").strip()
        if norm_url:
            norm_url = norm_url[:2048]

        return norm_title, norm_url

    def _format_client_error(self, error: ClientError) -> str:
        """Describe aiohttp client errors with any available status/errno."""
        parts: List[str] = [error.__class__.__name__]
        status = getattr(error, 'status', None)
        if status is not None:
            parts.append(f"status={status}")
        os_error = getattr(error, 'os_error', None)
        if os_error is not None:
            errno = getattr(os_error, 'errno', None)
            strerror = getattr(os_error, 'strerror', None)
            if errno is not None:
                parts.append(f"errno={errno}")
            if strerror:
                parts.append(str(strerror))
        message = str(error)
        if message:
            parts.append(message)
        return " ".join(parts)

    async def close(self) -> None:
        """Close the HTTP session (if owned) and the parse executor."""
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self.executor.shutdown(wait=False)
        logger.debug("FeedFetcher closed")
