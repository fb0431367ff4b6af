#!/usr/bin/env python3
"""
HTTP surface of the news ingestion service (aiohttp.web).

Routes:
    POST /api/ingest     trigger one ingestion run (bearer token, rate limited per IP)
    GET  /api/latest     offset-paginated articles
    GET  /api/timeline   cursor-paginated articles
    GET  /healthz        liveness

Domain errors raised by handlers are turned into JSON responses by
`error_middleware`: AuthError is 401, RateLimitError is 429 (with
Retry-After) and StorageError is 500.
"""

from hmac import compare_digest
from typing import Optional

from aiohttp import web

from config import config, get_logger
from errors import AuthError, RateLimitError, StorageError
from fetcher import FeedFetcher
from ingest import IngestionOrchestrator, IngestionStats, sync_feed_sources
from llm_client import LLMClient
from models import DatabaseQueue
from reader import FeedReader
from summarizer import Summarizer
from utils import FixedWindowRateLimiter

logger = get_logger("server")

DB_KEY = web.AppKey("db", DatabaseQueue)
ORCHESTRATOR_KEY = web.AppKey("orchestrator", IngestionOrchestrator)
READER_KEY = web.AppKey("reader", FeedReader)
RATE_LIMITER_KEY = web.AppKey("rate_limiter", FixedWindowRateLimiter)


def cache_control_header() -> str:
    max_age = config.CACHE_MAX_AGE_SECONDS
    return f"public, max-age={max_age}, s-maxage={max_age}"


def client_address(request: web.Request) -> str:
    """Caller identity for rate limiting.

    The peer address, unless TRUST_FORWARDED_FOR is set, in which case the
    first X-Forwarded-For hop wins when present.
    """
    if config.TRUST_FORWARDED_FOR:
        forwarded = request.headers.get("X-Forwarded-For", "")
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop
    return request.remote or "unknown"


def check_bearer_token(request: web.Request) -> None:
    """Raise AuthError unless the bearer token matches INGEST_API_KEY.

    With no key configured the endpoint is open and a warning is logged.
    """
    expected = config.INGEST_API_KEY
    if not expected:
        logger.warning("INGEST_API_KEY not configured - ingest endpoint is unprotected")
        return
    header = request.headers.get("Authorization", "")
    token = header[len("Bearer "):] if header.startswith("Bearer ") else ""
    if not compare_digest(token.encode("utf-8"), expected.encode("utf-8")):
        raise AuthError("Unauthorized: Invalid or missing API key")


@web.middleware
async def error_middleware(request: web.Request, handler):
    try:
        return await handler(request)
    except AuthError as e:
        return web.json_response({"error": str(e)}, status=401)
    except RateLimitError as e:
        return web.json_response(
            {"error": str(e), "retryAfter": e.retry_after},
            status=429,
            headers={"Retry-After": str(e.retry_after)},
        )
    except StorageError as e:
        logger.error(f"{request.method} {request.path} failed: {e}")
        return web.json_response({"error": "Storage unavailable"}, status=500)


async def handle_ingest(request: web.Request) -> web.Response:
    caller = client_address(request)
    limiter = request.app[RATE_LIMITER_KEY]
    if not limiter.check(caller):
        retry_after = limiter.retry_after(caller)
        logger.warning(f"Ingest rate limit exceeded for {caller}")
        raise RateLimitError("Too many requests", retry_after=retry_after)
    check_bearer_token(request)

    logger.info(f"Ingestion triggered by {caller}")
    stats: IngestionStats = await request.app[ORCHESTRATOR_KEY].run()
    body = stats.to_dict()
    if stats.feeds == 0:
        body = {"message": "No active feeds", **body}
    return web.json_response(body)


async def handle_latest(request: web.Request) -> web.Response:
    result = await request.app[READER_KEY].latest(
        page=request.query.get("page"),
        limit=request.query.get("limit"),
    )
    return web.json_response(result, headers={"Cache-Control": cache_control_header()})


async def handle_timeline(request: web.Request) -> web.Response:
    result = await request.app[READER_KEY].timeline(
        cursor=request.query.get("cursor"),
        limit=request.query.get("limit"),
    )
    return web.json_response(result, headers={"Cache-Control": cache_control_header()})


async def handle_health(request: web.Request) -> web.Response:
    return web.json_response({"status": "ok"})


def create_app(
    db: DatabaseQueue,
    orchestrator: IngestionOrchestrator,
    reader: FeedReader,
    rate_limiter: Optional[FixedWindowRateLimiter] = None,
) -> web.Application:
    """Wire handlers to already-constructed components."""
    app = web.Application(middlewares=[error_middleware])
    app[DB_KEY] = db
    app[ORCHESTRATOR_KEY] = orchestrator
    app[READER_KEY] = reader
    app[RATE_LIMITER_KEY] = rate_limiter or FixedWindowRateLimiter(
        config.INGEST_RATE_MAX_REQUESTS, config.INGEST_RATE_WINDOW_SECONDS
    )
    app.router.add_post("/api/ingest", handle_ingest)
    app.router.add_get("/api/latest", handle_latest)
    app.router.add_get("/api/timeline", handle_timeline)
    app.router.add_get("/healthz", handle_health)
    return app


def build_application() -> web.Application:
    """Build the full service from configuration, owning its resources' lifecycle."""
    db = DatabaseQueue(config.DATABASE_PATH)
    fetcher = FeedFetcher()
    llm = LLMClient()
    orchestrator = IngestionOrchestrator(db, fetcher, Summarizer(llm))
    app = create_app(db, orchestrator, FeedReader(db))

    async def resources(app: web.Application):
        await db.start()
        await sync_feed_sources(db)
        logger.info(f"Service ready: {config.get_config_summary()}")
        yield
        await fetcher.close()
        await llm.close()
        await db.stop()

    app.cleanup_ctx.append(resources)
    return app


def run_server(host: Optional[str] = None, port: Optional[int] = None) -> None:
    host = host or config.SERVER_HOST
    port = port or config.SERVER_PORT
    logger.info(f"Listening on http://{host}:{port}")
    web.run_app(build_application(), host=host, port=port, print=None)
