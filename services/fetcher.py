import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import urljoin, urlparse

import aiohttp
from aiohttp import ClientSession, ClientTimeout, TCPConnector
from aiohttp_socks import ProxyConnector

from config import (
    FETCH_TIMEOUT, MAX_REDIRECTS, GLOBAL_PROXIES, TRANSPORT_ROUTES,
    get_proxy_for_url, get_ssl_setting_for_url,
)
from utils.redact import truncate_url, cookie_names

logger = logging.getLogger(__name__)

# Default User-Agent for all outgoing requests
DEFAULT_USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/136.0.0.0 Safari/537.36"

REDIRECT_STATUSES = (301, 302, 303, 307, 308)
AUTH_STATUSES = (401, 403)
CHUNK_SIZE = 8192


class UpstreamFetchFailure(Exception):
    """No strategy could retrieve the upstream resource."""

    def __init__(self, message: str, url: Optional[str] = None):
        self.url = url
        super().__init__(message)


class BadStatus(UpstreamFetchFailure):
    def __init__(self, status: int, url: Optional[str] = None):
        self.status = status
        super().__init__(f"upstream returned HTTP {status}", url)


class FetchTimeout(UpstreamFetchFailure):
    pass


class TooManyRedirects(UpstreamFetchFailure):
    pass


@dataclass
class FetchRequest:
    url: str
    referer: str = ""
    cookie_header: str = ""
    host_override: Optional[str] = None
    # Open browser page able to replay the request with its own network identity
    live_context: Any = None
    # Direct strategies hand back the open response instead of reading the body
    stream: bool = False
    range_header: Optional[str] = None


@dataclass
class FetchResult:
    body: Optional[bytes]
    content_type: Optional[str]
    url: str
    strategy: str = ""
    status: int = 200
    headers: Any = None
    # Open upstream response when the body is streamed; released by iter_chunks()
    response: Any = None

    async def iter_chunks(self, chunk_size: int = CHUNK_SIZE):
        if self.response is None:
            if self.body:
                yield self.body
            return
        try:
            async for chunk in self.response.content.iter_chunked(chunk_size):
                yield chunk
        finally:
            self.release()

    def release(self):
        if self.response is not None:
            self.response.release()
            self.response = None


Strategy = Callable[[FetchRequest, Optional[UpstreamFetchFailure]], Awaitable[Optional[FetchResult]]]


def origin_of(url: str) -> str:
    parsed = urlparse(url)
    if not parsed.scheme or not parsed.netloc:
        return ""
    return f"{parsed.scheme}://{parsed.netloc}"


def build_headers(request: FetchRequest, include_host: bool = True) -> dict:
    """Browser-like headers carrying the identity the upstream expects."""
    referer = request.referer or f"{origin_of(request.url)}/"
    headers = {
        "User-Agent": DEFAULT_USER_AGENT,
        "Accept": "*/*",
        "Accept-Language": "en-US,en;q=0.9",
        "Referer": referer,
    }
    origin = origin_of(referer)
    if origin:
        headers["Origin"] = origin
    if request.cookie_header:
        headers["Cookie"] = request.cookie_header
    if include_host and request.host_override:
        headers["Host"] = request.host_override
    if request.range_header:
        headers["Range"] = request.range_header
    return headers


class MultiStrategyFetcher:
    """Fetches upstream resources, trying cheap spoofed requests before the live browser.

    Strategies run in order and the first one returning a result wins. A strategy
    returns None when it does not apply to the request (or to the previous error).
    """

    def __init__(self, timeout: float = FETCH_TIMEOUT, max_redirects: int = MAX_REDIRECTS,
                 strategies: Optional[list[Strategy]] = None):
        self.timeout = timeout
        self.max_redirects = max_redirects
        self.strategies = strategies if strategies is not None else [
            self.direct_http,
            self.retry_without_host,
            self.live_context_fetch,
        ]

        # Shared session for direct connections
        self.session = None

        # Cache for proxy sessions (proxy_url -> session)
        self.proxy_sessions = {}

    async def _get_session(self):
        if self.session is None or self.session.closed:
            connector = TCPConnector(
                limit=0,
                limit_per_host=0,
                keepalive_timeout=60,
                enable_cleanup_closed=True
            )
            self.session = aiohttp.ClientSession(
                timeout=ClientTimeout(total=self.timeout),
                connector=connector
            )
        return self.session

    async def _get_proxy_session(self, url: str):
        """Get a session routed through the outbound proxy configured for the URL.

        Sessions are cached and reused per proxy; without a matching proxy the
        shared direct session is returned.
        """
        proxy = get_proxy_for_url(url, TRANSPORT_ROUTES, GLOBAL_PROXIES)

        if proxy:
            cached_session = self.proxy_sessions.get(proxy)
            if cached_session is not None:
                if not cached_session.closed:
                    return cached_session
                del self.proxy_sessions[proxy]

            logger.info(f"🌍 Creating proxy session: {proxy}")
            try:
                connector = ProxyConnector.from_url(
                    proxy,
                    limit=0,
                    limit_per_host=0,
                    keepalive_timeout=60
                )
                session = ClientSession(timeout=ClientTimeout(total=self.timeout), connector=connector)
                self.proxy_sessions[proxy] = session
                return session
            except Exception as e:
                logger.warning(f"⚠️ Failed to create proxy connector: {e}, falling back to direct")

        return await self._get_session()

    async def _get_following_redirects(self, url: str, headers: dict, stream: bool = False) -> FetchResult:
        session = await self._get_proxy_session(url)
        current_url = url

        for _ in range(self.max_redirects + 1):
            disable_ssl = get_ssl_setting_for_url(current_url, TRANSPORT_ROUTES)
            resp = await session.get(current_url, headers=headers, allow_redirects=False,
                                     ssl=not disable_ssl, timeout=ClientTimeout(total=self.timeout))
            try:
                location = resp.headers.get('Location')
                if resp.status in REDIRECT_STATUSES and location:
                    # Same headers on every hop: the CDN checks Referer/Cookie again
                    current_url = urljoin(current_url, location)
                    logger.debug(f"↪️ Redirected to: {truncate_url(current_url)}")
                    continue

                if not 200 <= resp.status < 300:
                    raise BadStatus(resp.status, current_url)

                result = FetchResult(
                    body=None,
                    content_type=resp.headers.get('Content-Type'),
                    url=current_url,
                    status=resp.status,
                    headers=resp.headers,
                )
                if stream:
                    result.response, resp = resp, None
                else:
                    result.body = await resp.read()
                return result
            finally:
                if resp is not None:
                    resp.release()

        raise TooManyRedirects(f"more than {self.max_redirects} redirects", url)

    async def _http_get(self, url: str, headers: dict, stream: bool = False) -> FetchResult:
        try:
            # Cancelling the request on timeout closes its connection
            return await asyncio.wait_for(self._get_following_redirects(url, headers, stream), self.timeout)
        except asyncio.TimeoutError as e:
            raise FetchTimeout(f"timed out after {self.timeout}s", url) from e
        except aiohttp.ClientError as e:
            raise UpstreamFetchFailure(f"{type(e).__name__}: {e}", url) from e

    async def direct_http(self, request: FetchRequest, previous_error=None) -> Optional[FetchResult]:
        result = await self._http_get(request.url, build_headers(request), request.stream)
        result.strategy = "direct"
        return result

    async def retry_without_host(self, request: FetchRequest, previous_error=None) -> Optional[FetchResult]:
        if not request.host_override:
            return None
        if not isinstance(previous_error, BadStatus) or previous_error.status not in AUTH_STATUSES:
            return None
        logger.info(f"🔁 Retrying without Host override ({request.host_override}): {truncate_url(request.url)}")
        result = await self._http_get(request.url, build_headers(request, include_host=False), request.stream)
        result.strategy = "direct-no-host"
        return result

    async def live_context_fetch(self, request: FetchRequest, previous_error=None) -> Optional[FetchResult]:
        live = request.live_context
        if live is None or live.closed:
            return None
        logger.info(f"🌐 Falling back to browser fetch: {truncate_url(request.url)}")
        try:
            status, body, content_type = await asyncio.wait_for(live.fetch(request.url), self.timeout)
        except asyncio.TimeoutError as e:
            raise FetchTimeout(f"browser fetch timed out after {self.timeout}s", request.url) from e
        except UpstreamFetchFailure:
            raise
        except Exception as e:
            raise UpstreamFetchFailure(f"browser fetch failed: {e}", request.url) from e
        if not 200 <= status < 300:
            raise BadStatus(status, request.url)
        return FetchResult(body=body, content_type=content_type, url=request.url, strategy="browser")

    async def fetch(self, request: FetchRequest) -> FetchResult:
        last_error = None
        for strategy in self.strategies:
            name = getattr(strategy, '__name__', repr(strategy))
            try:
                result = await strategy(request, last_error)
            except UpstreamFetchFailure as e:
                logger.warning(
                    f"⚠️ Fetch strategy '{name}' failed ({e}) for {truncate_url(request.url)} "
                    f"[cookies: {cookie_names(request.cookie_header)}]"
                )
                last_error = e
                continue
            if result is not None:
                return result

        if last_error is not None:
            raise last_error
        raise UpstreamFetchFailure("no fetch strategy applied", request.url)

    async def close(self):
        if self.session and not self.session.closed:
            await self.session.close()

        for session in list(self.proxy_sessions.values()):
            if session and not session.closed:
                await session.close()
        self.proxy_sessions.clear()
