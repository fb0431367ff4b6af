#!/usr/bin/env python3
"""
Read path over stored articles.

Two stateless views, both newest-first by publication time: offset pages
(`latest`) and cursor pages (`timeline`). Query values arrive as raw strings
from the HTTP layer and are clamped to safe ranges here, never rejected.
"""

from datetime import datetime, timezone
from math import ceil
from typing import Any, Dict, List, Optional

from config import config, get_logger
from errors import ValidationError
from models import Article, DatabaseQueue
from telemetry import trace_span
from utils import parse_iso_timestamp, to_iso_timestamp

logger = get_logger("reader")

PAGE_DEFAULT_LIMIT = 50
PAGE_MAX_LIMIT = 100
TIMELINE_DEFAULT_LIMIT = 20
TIMELINE_MAX_LIMIT = 50
# SQLite OFFSET is a signed 64-bit integer
MAX_SQL_OFFSET = 2 ** 63 - 1


def clamp_int(raw: Any, default: int, minimum: int, maximum: Optional[int] = None) -> int:
    """Parse ``raw`` as an int and clamp it; missing or non-numeric input gives ``default``."""
    if raw is None or raw == "":
        return default
    try:
        value = int(float(raw))
    except (TypeError, ValueError, OverflowError):
        return default
    value = max(minimum, value)
    if maximum is not None:
        value = min(maximum, value)
    return value


def serialize_article(article: Article) -> Dict[str, Any]:
    """Public JSON shape of one article."""
    return {
        "title": article.title,
        "url": article.url,
        "summary": article.summary or "",
        "tag": article.tags[0] if article.tags else config.DEFAULT_TAG,
        "source": article.source or "Unknown",
        "publishedAt": article.published_at,
    }


def parse_cursor(raw: str) -> datetime:
    """Parse a client cursor into an aware UTC datetime or raise ValidationError."""
    parsed = parse_iso_timestamp(raw)
    if parsed is None:
        raise ValidationError(f"Unparseable cursor {raw!r}")
    try:
        return parsed.astimezone(timezone.utc)
    except OverflowError as e:
        raise ValidationError(f"Cursor {raw!r} is outside the representable range") from e


def resolve_cursor(raw: Optional[str], now: Optional[datetime] = None) -> str:
    """Turn a client cursor into a stored-format timestamp; bad or missing means now."""
    parsed = now or datetime.now(timezone.utc)
    if raw:
        try:
            parsed = parse_cursor(raw)
        except ValidationError as e:
            logger.debug(f"{e}; paging from now")
    return to_iso_timestamp(parsed)


class FeedReader:
    """Paginated access to stored articles."""

    def __init__(self, db: DatabaseQueue):
        self.db = db

    @trace_span("reader.latest", tracer_name="reader")
    async def latest(self, page: Any = None, limit: Any = None) -> Dict[str, Any]:
        """Offset pagination: one page plus total and page counts."""
        limit = clamp_int(limit, PAGE_DEFAULT_LIMIT, 1, PAGE_MAX_LIMIT)
        page = clamp_int(page, 1, 1, MAX_SQL_OFFSET // limit + 1)

        total = await self.db.execute('count_articles')
        articles: List[Article] = await self.db.execute(
            'query_articles_page', offset=(page - 1) * limit, limit=limit
        )
        return {
            "data": [serialize_article(a) for a in articles],
            "page": page,
            "limit": limit,
            "total": total,
            "totalPages": ceil(total / limit) if total else 0,
        }

    @trace_span("reader.timeline", tracer_name="reader")
    async def timeline(self, cursor: Optional[str] = None, limit: Any = None) -> Dict[str, Any]:
        """Cursor pagination: items strictly older than ``cursor``.

        One extra row is requested to learn whether another page exists.
        """
        cursor_iso = resolve_cursor(cursor)
        limit = clamp_int(limit, TIMELINE_DEFAULT_LIMIT, 1, TIMELINE_MAX_LIMIT)

        rows: List[Article] = await self.db.execute(
            'query_articles_before', cursor_iso=cursor_iso, limit=limit + 1
        )
        has_more = len(rows) > limit
        page = rows[:limit]
        return {
            "data": [serialize_article(a) for a in page],
            "nextCursor": page[-1].published_at if page else None,
            "hasMore": has_more,
        }
