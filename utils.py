#!/usr/bin/env python3
"""
Utility classes and functions for the ingestion service.

This module contains shared utilities used by the fetcher, summarizer,
orchestrator and HTTP layer, including feed URL safety checks, the
fixed-window rate limiter guarding the ingest trigger, timestamp helpers
and text cleanup.
"""

from datetime import datetime, timezone
from threading import Lock
from time import monotonic
from typing import Callable, Dict, Optional
from urllib.parse import urlsplit
import re

from bs4 import BeautifulSoup

from config import get_logger

logger = get_logger("utils")

ALLOWED_SCHEMES = ("http", "https")
BLOCKED_HOSTS = frozenset({"localhost", "127.0.0.1", "0.0.0.0"})
# Literal prefixes; 172. covers more than the 172.16.0.0/12 private block
BLOCKED_HOST_PREFIXES = ("192.168.", "10.", "172.")
BLOCKED_HOST_SUFFIXES = (".local", ".internal")

WHITESPACE_PATTERN = re.compile(r'\s+')


def is_safe_feed_url(url: str) -> bool:
    """Decide whether a feed URL may be fetched.

    Only plain http/https URLs whose host is not loopback, a private network
    prefix or an internal name are accepted. Malformed input is rejected,
    never raised.

    Args:
        url: The candidate feed URL

    Returns:
        True if the URL may be fetched, False otherwise
    """
    if not url or not isinstance(url, str):
        return False
    try:
        parts = urlsplit(url.strip())
        host = parts.hostname
    except ValueError:
        return False

    if parts.scheme.lower() not in ALLOWED_SCHEMES:
        return False
    if not host:
        return False

    host = host.lower().rstrip(".")
    if host in BLOCKED_HOSTS:
        return False
    if host.startswith(BLOCKED_HOST_PREFIXES):
        return False
    if host.endswith(BLOCKED_HOST_SUFFIXES):
        return False
    return True


class FixedWindowRateLimiter:
    """A fixed-window request counter keyed by caller identity.

    Each key gets ``max_requests`` allowed calls per ``window_seconds``. The
    first call after a window expires opens a new window. State lives in
    memory only and is shared by everything holding this instance.
    """

    def __init__(self, max_requests: int, window_seconds: float, clock: Callable[[], float] = monotonic):
        """Initialize the rate limiter.

        Args:
            max_requests: Calls allowed per key within one window.
            window_seconds: Window length in seconds.
            clock: Monotonic time source; injectable for tests.
        """
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._windows: Dict[str, Dict[str, float]] = {}
        self._lock = Lock()
        self._next_sweep = clock() + window_seconds

    def check(self, key: str) -> bool:
        """Record a call for ``key`` and return whether it is allowed."""
        now = self._clock()
        with self._lock:
            if now >= self._next_sweep:
                self._drop_expired(now)
            entry = self._windows.get(key)
            if entry is None or now >= entry["reset_at"]:
                self._windows[key] = {"count": 1, "reset_at": now + self.window_seconds}
                return True
            if entry["count"] >= self.max_requests:
                logger.debug(f"Rate limit exceeded for {key}")
                return False
            entry["count"] += 1
            return True

    def retry_after(self, key: str) -> int:
        """Seconds until ``key``'s current window resets (0 if none is open)."""
        with self._lock:
            entry = self._windows.get(key)
            if entry is None:
                return 0
            remaining = entry["reset_at"] - self._clock()
        return max(0, int(remaining + 0.999))

    def _drop_expired(self, now: float) -> None:
        """Forget windows that have ended; runs at most once per window length."""
        expired = [key for key, entry in self._windows.items() if now >= entry["reset_at"]]
        for key in expired:
            del self._windows[key]
        if expired:
            logger.debug(f"Dropped {len(expired)} expired rate limit windows")
        self._next_sweep = now + self.window_seconds


def to_iso_timestamp(value: datetime) -> str:
    """Format a datetime as fixed-width UTC ISO-8601 with millisecond precision.

    Naive datetimes are taken to be UTC. The fixed width keeps string order
    equal to chronological order, which the timeline query relies on.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    # isoformat pads the year to four digits; strftime("%Y") does not everywhere
    return value.replace(tzinfo=None).isoformat(timespec="milliseconds") + "Z"


def parse_iso_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp (``Z`` suffix allowed) into an aware datetime.

    Returns None for empty or unparseable input.
    """
    if not value or not isinstance(value, str):
        return None
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def utc_now_iso() -> str:
    return to_iso_timestamp(datetime.now(timezone.utc))


def html_to_text(html_content: Optional[str]) -> str:
    """Reduce an HTML fragment to collapsed plain text.

    Script and style blocks are dropped; everything else contributes its text.
    """
    if not html_content:
        return ""
    soup = BeautifulSoup(html_content, 'html.parser')
    for tag in soup(["script", "style", "noscript", "iframe"]):
        tag.decompose()
    text = soup.get_text(separator=" ")
    return WHITESPACE_PATTERN.sub(" ", text).strip()


def format_duration(seconds: float) -> str:
    """Format a duration in seconds to a human-readable string.

    Args:
        seconds: Duration in seconds

    Returns:
        Formatted duration string (e.g., "1m 5s", "0.42s")
    """
    if seconds < 0:
        return "0s"
    if seconds < 10:
        return f"{seconds:.2f}s"

    minutes = int(seconds // 60)
    secs = int(seconds % 60)
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"
