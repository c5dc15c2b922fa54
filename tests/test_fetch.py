"""
Tests for fetch, against a local aiohttp server.
"""

import socket

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from hoist.config import RuntimeConfig, set_config
from hoist.errors import (
    MalformedURLError,
    StreamTransportError,
    UnsupportedProtocolError,
)
from hoist.fetch import FetchOptions, FetchStream, fetch, normalize_url
from hoist.stream import read_all, to_list

BIG = b"0123456789" * 10_000


async def hello(request):
    return web.Response(text="<html>hello</html>", content_type="text/html")


async def big(request):
    return web.Response(body=BIG)


async def echo_headers(request):
    return web.json_response(
        {
            "user_agent": request.headers.get("User-Agent"),
            "x_test": request.headers.get("X-Test"),
        }
    )


async def redirect(request):
    raise web.HTTPFound("/hello")


@pytest_asyncio.fixture
async def server():
    app = web.Application()
    app.router.add_get("/hello", hello)
    app.router.add_get("/big", big)
    app.router.add_get("/headers", echo_headers)
    app.router.add_get("/redirect", redirect)
    test_server = TestServer(app)
    await test_server.start_server()
    yield test_server
    await test_server.close()


def _unused_port():
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


class TestNormalizeUrl:
    """Tests for URL validation."""

    def test_adds_default_scheme(self):
        assert normalize_url("example.com/path") == "http://example.com/path"
        assert normalize_url("localhost:8080") == "http://localhost:8080"

    def test_keeps_supported_scheme(self):
        assert normalize_url("https://example.com") == "https://example.com"
        assert normalize_url("HTTP://example.com") == "HTTP://example.com"

    @pytest.mark.parametrize(
        "url", ["", "-s www.example.com", "example .com", "http://", "http://host:port/"]
    )
    def test_malformed(self, url):
        with pytest.raises(MalformedURLError, match="malformed URL"):
            normalize_url(url)

    def test_unsupported_protocol(self):
        with pytest.raises(UnsupportedProtocolError, match="Protocol 'weird' not supported"):
            normalize_url("weird://protocol.com")

    def test_fetch_raises_synchronously(self):
        with pytest.raises(MalformedURLError):
            fetch("-s www.example.com")
        with pytest.raises(UnsupportedProtocolError):
            fetch("ftp://example.com/file")


class TestFetchOptions:
    """Tests for FetchOptions defaults."""

    def test_defaults_come_from_config(self):
        set_config(RuntimeConfig(fetch_max_retries=2, stream_capacity=4096, user_agent="ua"))
        options = FetchOptions.build()
        assert options.max_retries == 2
        assert options.capacity == 4096
        assert options.headers["User-Agent"] == "ua"

    def test_overrides(self):
        options = FetchOptions.build(timeout_ms=500, headers={"X-Test": "1"}, capacity=10)
        assert options.timeout_ms == 500
        assert options.capacity == 10
        assert options.headers["X-Test"] == "1"

    def test_negative_retries(self):
        with pytest.raises(ValueError):
            FetchOptions.build(max_retries=-1)


class TestFetch:
    """Tests for downloading into streams."""

    @pytest.mark.asyncio
    async def test_fetch_page(self, server):
        stream = fetch(str(server.make_url("/hello")))
        assert isinstance(stream, FetchStream)
        assert await read_all(stream) == b"<html>hello</html>"
        assert stream.status == 200
        assert stream.headers["Content-Type"].startswith("text/html")

    @pytest.mark.asyncio
    async def test_not_found_is_data(self, server):
        chunks = []
        stream = fetch(str(server.make_url("/missing")))
        await stream.pipe(to_list(chunks)).wait_finish()
        assert b"404" in b"".join(chunks)
        assert stream.status == 404
        assert stream.error is None

    @pytest.mark.asyncio
    async def test_wait_response(self, server):
        stream = fetch(str(server.make_url("/hello")))
        assert await stream.wait_response() == 200
        await read_all(stream)

    @pytest.mark.asyncio
    async def test_redirect(self, server):
        stream = fetch(str(server.make_url("/redirect")))
        assert await read_all(stream) == b"<html>hello</html>"
        assert stream.final_url.endswith("/hello")

    @pytest.mark.asyncio
    async def test_headers(self, server):
        set_config(RuntimeConfig(user_agent="hoist-tests"))
        stream = fetch(str(server.make_url("/headers")), headers={"X-Test": "yes"})
        body = (await read_all(stream)).decode()
        assert '"user_agent": "hoist-tests"' in body
        assert '"x_test": "yes"' in body

    @pytest.mark.asyncio
    async def test_backpressure(self, server):
        stream = fetch(str(server.make_url("/big")), capacity=1024)
        total = []
        async for chunk in stream:
            assert stream.buffered <= 1024
            total.append(chunk)
        assert b"".join(total) == BIG

    @pytest.mark.asyncio
    async def test_connection_refused(self):
        stream = fetch(f"http://127.0.0.1:{_unused_port()}/")
        with pytest.raises(StreamTransportError):
            await read_all(stream)
        with pytest.raises(StreamTransportError):
            await stream.wait_response()

    @pytest.mark.asyncio
    async def test_connection_refused_with_retries(self):
        stream = fetch(f"http://127.0.0.1:{_unused_port()}/", max_retries=1)
        with pytest.raises(StreamTransportError):
            await read_all(stream)

    @pytest.mark.asyncio
    async def test_unresolvable_host(self):
        stream = fetch("http://hoist-test.invalid/", connect_timeout_ms=5000)
        with pytest.raises(StreamTransportError):
            await read_all(stream)
