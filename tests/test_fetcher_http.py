import asyncio

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

import fetcher as fetcher_module
from config import config
from errors import FetchTimeoutError, NetworkError, ParseError
from fetcher import FeedFetcher

ATOM_DOCUMENT = """<?xml version="1.0" encoding="utf-8"?>
<feed xmlns="http://www.w3.org/2005/Atom">
  <title>Example Atom</title>
  <id>urn:example:feed</id>
  <updated>2025-02-01T12:00:00Z</updated>
  <entry>
    <title>Atom entry</title>
    <link href="https://example.com/atom-entry"/>
    <id>urn:example:1</id>
    <updated>2025-02-01T12:00:00Z</updated>
    <summary>Atom summary text</summary>
  </entry>
</feed>
"""


def make_app(status: int = 200, body: str = ATOM_DOCUMENT, delay: float = 0.0) -> web.Application:
    async def handler(request):
        if delay:
            await asyncio.sleep(delay)
        return web.Response(status=status, text=body, content_type="application/atom+xml")

    app = web.Application()
    app.router.add_get("/feed", handler)
    return app


@pytest.mark.asyncio
async def test_fetch_parses_atom_feed():
    async with TestServer(make_app()) as server:
        fetcher = FeedFetcher()
        try:
            items = await fetcher.fetch(str(server.make_url("/feed")))
        finally:
            await fetcher.close()

    assert len(items) == 1
    assert items[0].title == "Atom entry"
    assert items[0].link == "https://example.com/atom-entry"
    assert items[0].content == "Atom summary text"


@pytest.mark.asyncio
async def test_non_200_status_is_network_error():
    async with TestServer(make_app(status=503, body="down")) as server:
        fetcher = FeedFetcher()
        try:
            with pytest.raises(NetworkError, match="HTTP 503"):
                await fetcher.fetch(str(server.make_url("/feed")))
        finally:
            await fetcher.close()


@pytest.mark.asyncio
async def test_non_feed_body_is_parse_error():
    async with TestServer(make_app(body="<html><body>nope</body></html>")) as server:
        fetcher = FeedFetcher()
        try:
            with pytest.raises(ParseError):
                await fetcher.fetch(str(server.make_url("/feed")))
        finally:
            await fetcher.close()


@pytest.mark.asyncio
async def test_slow_server_hits_the_deadline():
    async with TestServer(make_app(delay=2.0)) as server:
        fetcher = FeedFetcher()
        try:
            with pytest.raises(FetchTimeoutError, match="Timed out after 0.2s"):
                await fetcher.fetch(str(server.make_url("/feed")), timeout=0.2)
        finally:
            await fetcher.close()


@pytest.mark.asyncio
async def test_connection_refused_is_network_error():
    fetcher = FeedFetcher()
    try:
        with pytest.raises(NetworkError) as excinfo:
            await fetcher.fetch("http://127.0.0.1:9/feed", timeout=5)
    finally:
        await fetcher.close()
    assert excinfo.value.kind == "network"
    assert excinfo.value.url == "http://127.0.0.1:9/feed"


def make_redirect_app(hits: list) -> web.Application:
    async def moved(request):
        raise web.HTTPFound("/feed")

    async def loop(request):
        raise web.HTTPMovedPermanently("/loop")

    async def feed(request):
        hits.append(request.path)
        return web.Response(text=ATOM_DOCUMENT, content_type="application/atom+xml")

    app = web.Application()
    app.router.add_get("/moved", moved)
    app.router.add_get("/loop", loop)
    app.router.add_get("/feed", feed)
    return app


@pytest.mark.asyncio
async def test_redirect_to_unsafe_host_is_not_followed():
    hits = []
    async with TestServer(make_redirect_app(hits)) as server:
        fetcher = FeedFetcher()
        try:
            with pytest.raises(NetworkError, match="Redirect to unsafe URL"):
                await fetcher.fetch(str(server.make_url("/moved")))
        finally:
            await fetcher.close()

    assert hits == []


@pytest.mark.asyncio
async def test_redirect_to_safe_target_is_followed(monkeypatch):
    monkeypatch.setattr(fetcher_module, 'is_safe_feed_url', lambda url: True)
    hits = []
    async with TestServer(make_redirect_app(hits)) as server:
        fetcher = FeedFetcher()
        try:
            items = await fetcher.fetch(str(server.make_url("/moved")))
        finally:
            await fetcher.close()

    assert hits == ["/feed"]
    assert [item.title for item in items] == ["Atom entry"]


@pytest.mark.asyncio
async def test_redirect_loop_stops_at_the_redirect_cap(monkeypatch):
    monkeypatch.setattr(fetcher_module, 'is_safe_feed_url', lambda url: True)
    monkeypatch.setattr(config, 'MAX_REDIRECTS', 3)
    async with TestServer(make_redirect_app([])) as server:
        fetcher = FeedFetcher()
        try:
            with pytest.raises(NetworkError, match="Too many redirects"):
                await fetcher.fetch(str(server.make_url("/loop")))
        finally:
            await fetcher.close()


@pytest.mark.asyncio
async def test_oversized_body_is_rejected(monkeypatch):
    monkeypatch.setattr(config, 'MAX_FEED_BYTES', 128)

    async def streamed(request):
        response = web.StreamResponse()
        response.enable_chunked_encoding()
        await response.prepare(request)
        for _ in range(4):
            await response.write(ATOM_DOCUMENT.encode("utf-8"))
        await response.write_eof()
        return response

    app = make_app()
    app.router.add_get("/streamed", streamed)
    async with TestServer(app) as server:
        fetcher = FeedFetcher()
        try:
            with pytest.raises(NetworkError, match="exceeds 128 bytes"):
                await fetcher.fetch(str(server.make_url("/feed")))
            with pytest.raises(NetworkError, match="exceeds 128 bytes"):
                await fetcher.fetch(str(server.make_url("/streamed")))
        finally:
            await fetcher.close()
