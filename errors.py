#!/usr/bin/env python3
"""Common error types shared across modules.

Provides shared lightweight exceptions to avoid circular imports. Everything
raised inside the ingestion loop is caught and counted per feed; only
``StorageError`` escapes a run, and the HTTP layer maps ``AuthError`` and
``RateLimitError`` to 401 and 429.
"""

from typing import Dict, Any, Optional


class NewsIngestError(Exception):
    """Base class for all errors raised by this service."""


class ValidationError(NewsIngestError):
    """Rejected input such as an unsafe feed URL or a malformed cursor."""


class FeedFetchError(NewsIngestError):
    """A feed could not be retrieved or parsed.

    Attributes:
        url: The feed URL that failed.
    """

    kind = "fetch"

    def __init__(self, message: str, url: Optional[str] = None):
        super().__init__(message)
        self.url = url


class FetchTimeoutError(FeedFetchError):
    """The fetch did not complete before its deadline."""

    kind = "timeout"


class NetworkError(FeedFetchError):
    """Connection, DNS, TLS or HTTP status failure."""

    kind = "network"


class ParseError(FeedFetchError):
    """The response body was not a usable RSS/Atom document."""

    kind = "parse"


class ModelError(NewsIngestError):
    """The language model call failed or returned something unusable.

    Attributes:
        details: Optional provider-specific payload for diagnostics.
    """

    def __init__(self, message: str = "Language model call failed", details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.details = details or {}


class StorageError(NewsIngestError):
    """The relational store could not be read or written."""


class StorageConflictError(StorageError):
    """An insert collided with an existing unique article URL."""


class AuthError(NewsIngestError):
    """Missing or invalid bearer token."""


class RateLimitError(NewsIngestError):
    """Caller exceeded the fixed-window request allowance.

    Attributes:
        retry_after: Seconds until the caller's window resets.
    """

    def __init__(self, message: str = "Too many requests", retry_after: int = 0):
        super().__init__(message)
        self.retry_after = retry_after


__all__ = [
    "NewsIngestError",
    "ValidationError",
    "FeedFetchError",
    "FetchTimeoutError",
    "NetworkError",
    "ParseError",
    "ModelError",
    "StorageError",
    "StorageConflictError",
    "AuthError",
    "RateLimitError",
]
