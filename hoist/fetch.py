"""
HTTP(S) downloads into hoist streams.

``fetch(url)`` validates the URL, returns a FetchStream right away and lets a
producer task fill it from an aiohttp response. The response body is plain
data whatever the status code; only transport failures (DNS, refused
connections, resets, timeouts) are posted to the stream as errors.
"""

from __future__ import annotations

import asyncio
import logging
import re
import socket
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional
from urllib.parse import urlsplit

import aiohttp
import tenacity as tc

from hoist.config import get_config
from hoist.errors import (
    MalformedURLError,
    StreamTransportError,
    UnresolvedHostError,
    UnsupportedProtocolError,
)
from hoist.scheduler import Future, get_scheduler, suspend
from hoist.stream import Stream

logger = logging.getLogger(__name__)

SUPPORTED_SCHEMES = ("http", "https")

_SCHEME = re.compile(r"^([A-Za-z][A-Za-z0-9+.-]*)://")


def normalize_url(url: str) -> str:
    """
    Validate ``url`` and return it with a scheme (``http://`` by default).

    Raises MalformedURLError or UnsupportedProtocolError.
    """
    if not isinstance(url, str) or not url:
        raise MalformedURLError("malformed URL", url=url)
    if url.startswith("-") or any(c.isspace() for c in url):
        raise MalformedURLError("malformed URL", url=url)

    match = _SCHEME.match(url)
    if match is None:
        url = f"http://{url}"
        scheme = "http"
    else:
        scheme = match.group(1).lower()
    if scheme not in SUPPORTED_SCHEMES:
        raise UnsupportedProtocolError(
            f"Protocol '{scheme}' not supported", url=url, scheme=scheme
        )

    parts = urlsplit(url)
    try:
        parts.port
    except ValueError as e:
        raise MalformedURLError("malformed URL: invalid port", url=url) from e
    if not parts.hostname:
        raise MalformedURLError("malformed URL: no host", url=url)
    return url


@dataclass(frozen=True, slots=True)
class FetchOptions:
    """Per-request settings; ``build()`` fills unset values from the config."""

    timeout_ms: float
    connect_timeout_ms: float
    max_retries: int
    headers: Mapping[str, str] = field(default_factory=dict)
    capacity: Optional[int] = None
    chunk_size: Optional[int] = None

    @classmethod
    def build(
        cls,
        *,
        timeout_ms: Optional[float] = None,
        connect_timeout_ms: Optional[float] = None,
        max_retries: Optional[int] = None,
        headers: Optional[Mapping[str, str]] = None,
        capacity: Optional[int] = None,
        chunk_size: Optional[int] = None,
    ) -> FetchOptions:
        config = get_config()
        if max_retries is not None and max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        return cls(
            timeout_ms=config.fetch_timeout_ms if timeout_ms is None else timeout_ms,
            connect_timeout_ms=(
                config.fetch_connect_timeout_ms
                if connect_timeout_ms is None
                else connect_timeout_ms
            ),
            max_retries=config.fetch_max_retries if max_retries is None else max_retries,
            headers={"User-Agent": config.user_agent, **(headers or {})},
            capacity=capacity or config.stream_capacity,
            chunk_size=chunk_size or config.read_chunk_size,
        )


class FetchStream(Stream):
    """
    Stream of a response body, plus the response metadata once it arrives.

    ``status``, ``headers`` and ``final_url`` stay None until the response
    headers have been received; ``wait_response()`` suspends until then.
    """

    def __init__(self, url: str, capacity: Optional[int] = None):
        super().__init__(capacity, name=f"fetch:{url}")
        self.url = url
        self.status: Optional[int] = None
        self.headers: Optional[dict[str, str]] = None
        self.final_url: Optional[str] = None
        self._response: Future[int] = Future(name=f"response:{url}")

    def _set_response(self, response: aiohttp.ClientResponse) -> None:
        self.status = response.status
        self.headers = dict(response.headers)
        self.final_url = str(response.url)
        self._response.resolve(response.status)

    def post_error(self, error: BaseException) -> None:
        if not self._response.done():
            self._response.reject(error)
        super().post_error(error)

    async def wait_response(self) -> int:
        """Suspend until the status is known; raises if the request failed first."""
        return await self._response


def _is_dns_failure(error: BaseException) -> bool:
    if isinstance(error, aiohttp.ClientConnectorDNSError):
        return True
    return isinstance(error, aiohttp.ClientConnectorError) and isinstance(
        error.os_error, socket.gaierror
    )


def _is_retryable(error: BaseException) -> bool:
    if _is_dns_failure(error):
        return False
    return isinstance(
        error,
        (aiohttp.ClientConnectorError, aiohttp.ServerDisconnectedError, asyncio.TimeoutError),
    )


def _retrying(max_retries: int) -> tc.AsyncRetrying:
    scheduler = get_scheduler()
    return tc.AsyncRetrying(
        stop=tc.stop_after_attempt(max_retries + 1),
        wait=tc.wait_exponential_jitter(initial=0.1, max=2.0),
        retry=tc.retry_if_exception(_is_retryable),
        sleep=lambda seconds: scheduler.sleep(seconds * 1000),
        before_sleep=tc.before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )


def _translate(error: BaseException, stream: FetchStream) -> BaseException:
    url = stream.url
    if _is_dns_failure(error):
        host = urlsplit(url).hostname
        return UnresolvedHostError(f"Couldn't resolve host '{host}'", url=url, host=host)
    if isinstance(error, asyncio.TimeoutError):
        return StreamTransportError(f"timed out fetching {url}", source=url)
    if isinstance(error, (aiohttp.ClientError, OSError)):
        return StreamTransportError(f"error fetching {url}: {error}", source=url)
    return error


async def _download(stream: FetchStream, options: FetchOptions) -> None:
    timeout = aiohttp.ClientTimeout(
        total=options.timeout_ms / 1000,
        connect=options.connect_timeout_ms / 1000,
    )
    try:
        async with aiohttp.ClientSession(timeout=timeout, headers=dict(options.headers)) as session:
            async for attempt in _retrying(options.max_retries):
                with attempt:
                    response = await suspend(session.get(stream.url), "fetch-connect")
            async with response:
                stream._set_response(response)
                logger.debug(f"GET {stream.url} -> {response.status}")
                while True:
                    data = await suspend(
                        response.content.read(options.chunk_size), "fetch-read"
                    )
                    if not data:
                        break
                    await stream.write(data)
        if not stream.ended:
            await stream.write()
    except Exception as e:
        error = _translate(e, stream)
        logger.debug(f"Fetching {stream.url} failed: {error}")
        stream.post_error(error)


def fetch(url: str, options: Optional[FetchOptions] = None, **overrides: Any) -> FetchStream:
    """
    Start downloading ``url`` and return the stream of its body.

    Keyword overrides are passed to ``FetchOptions.build()`` when no
    ``options`` are given.
    """
    url = normalize_url(url)
    if options is None:
        options = FetchOptions.build(**overrides)
    stream = FetchStream(url, capacity=options.capacity)
    get_scheduler().spawn(_download, stream, options)
    return stream
