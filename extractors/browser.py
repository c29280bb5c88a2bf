import asyncio
import base64
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import unquote, unquote_plus, urlsplit, urlunsplit

from playwright.async_api import async_playwright

from config import (
    NAV_TIMEOUT, IFRAME_NAV_TIMEOUT, MANIFEST_WAIT, GRACE_WINDOW, MAX_IFRAMES,
    BROWSER_IDLE_TIMEOUT, BROWSER_HEADLESS, KEEP_BROWSER_CONTEXT, FETCH_TIMEOUT,
    RESOLVE_POLICY,
)
from extractors.sources import SourceTemplate, build_sources
from services.fetcher import DEFAULT_USER_AGENT
from services.manifest_rewriter import ManifestRewriter
from services.token_codec import encode
from utils.redact import truncate_url, cookie_names

logger = logging.getLogger(__name__)

MANIFEST_MARKER = ".m3u8"
HEADERS_HINT_PARAM = "headers"

# Resource types aborted before they hit the network
BLOCKED_RESOURCE_TYPES = frozenset({"image", "font", "stylesheet", "media"})

LAUNCH_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--disable-software-rasterizer",
    "--no-zygote",
    "--disable-extensions",
    "--disable-background-networking",
    "--js-flags=--max-old-space-size=256",
]

IFRAME_SOURCES_SCRIPT = "els => els.map(el => el.src).filter(s => s && s.startsWith('http'))"

# Runs inside the page so the request carries the page's cookies, TLS and IP identity
FETCH_SCRIPT = """
async (url) => {
    const res = await fetch(url, { credentials: 'include' });
    const bytes = new Uint8Array(await res.arrayBuffer());
    let binary = '';
    for (let i = 0; i < bytes.length; i += 0x8000) {
        binary += String.fromCharCode.apply(null, bytes.subarray(i, i + 0x8000));
    }
    return { status: res.status, contentType: res.headers.get('content-type'), body: btoa(binary) };
}
"""

# Upper bound for pending response.text() captures once a source has succeeded
BODY_CAPTURE_TIMEOUT = 5


class ExtractorError(Exception):
    """A source or iframe did not yield a manifest."""
    pass


@dataclass
class ManifestHint:
    url: str
    referer: Optional[str] = None
    origin: Optional[str] = None
    host: Optional[str] = None


@dataclass
class ResolvedStream:
    url: str
    referer: str
    host: Optional[str] = None
    body: Optional[str] = None
    variant_bodies: dict[str, str] = field(default_factory=dict)
    source_url: str = ""
    cookie_header: str = ""
    live_context: Any = None


def parse_manifest_url(url: str) -> ManifestHint:
    """Splits the upstream identity hint off an observed manifest URL.

    Some players request 'index.m3u8?headers=<url-encoded JSON>' where the JSON
    names the referer/origin/host the CDN actually expects.
    """
    parts = urlsplit(url)
    pairs = parts.query.split('&') if parts.query else []
    hint = {}
    # Pairs other than the hint are kept byte for byte
    kept = []
    for pair in pairs:
        key, _, value = pair.partition('=')
        if unquote_plus(key) != HEADERS_HINT_PARAM:
            kept.append(pair)
            continue
        value = unquote_plus(value)
        try:
            decoded = json.loads(value)
        except ValueError:
            try:
                decoded = json.loads(unquote(value))
            except ValueError:
                logger.debug(f"Unparseable headers hint on {truncate_url(url)}")
                continue
        if isinstance(decoded, dict):
            hint = {str(k).lower(): v for k, v in decoded.items() if isinstance(v, str) and v}

    clean_url = urlunsplit(parts._replace(query='&'.join(kept), fragment=''))

    return ManifestHint(
        url=clean_url,
        referer=hint.get("referer"),
        origin=hint.get("origin"),
        host=hint.get("host"),
    )


def cookie_header_from(cookies: list[dict]) -> str:
    return "; ".join(f"{c['name']}={c['value']}" for c in cookies if c.get('name'))


async def wait_for_manifests(queue: asyncio.Queue, timeout: float, grace: float) -> list:
    """Races the first observed manifest against a timer.

    After a hit, waits a grace window so sibling quality variants requested by
    the same player are collected too.
    """
    try:
        first = await asyncio.wait_for(queue.get(), timeout)
    except asyncio.TimeoutError:
        return []

    found = [first]
    if grace > 0:
        await asyncio.sleep(grace)
    while not queue.empty():
        found.append(queue.get_nowait())
    return found


async def _block_heavy_resources(route):
    if route.request.resource_type in BLOCKED_RESOURCE_TYPES:
        await route.abort()
    else:
        await route.continue_()


async def _close_quietly(page):
    if page is None:
        return
    try:
        await page.close()
    except Exception as e:
        logger.debug(f"Error closing page: {e}")


class BrowserHandle:
    """One Playwright driver, browser and context shared by a whole resolve call."""

    def __init__(self, playwright, browser, context):
        self.playwright = playwright
        self.browser = browser
        self.context = context
        self.closed = False

    @classmethod
    async def launch(cls, headless: bool = BROWSER_HEADLESS) -> "BrowserHandle":
        playwright = await async_playwright().start()
        try:
            browser = await playwright.chromium.launch(headless=headless, args=LAUNCH_ARGS)
            context = await browser.new_context(user_agent=DEFAULT_USER_AGENT, ignore_https_errors=True)
        except Exception:
            await playwright.stop()
            raise
        return cls(playwright, browser, context)

    async def new_page(self):
        return await self.context.new_page()

    async def cookies(self) -> list[dict]:
        # Engine-wide jar, HttpOnly cookies included
        return await self.context.cookies()

    async def close(self):
        if self.closed:
            return
        self.closed = True
        for closer in (self.context.close, self.browser.close, self.playwright.stop):
            try:
                await closer()
            except Exception as e:
                logger.debug(f"Error during browser teardown: {e}")


class LiveContext:
    """A page kept open after resolution to replay fetches with the browser's identity.

    Closed by an idle timer that restarts on every fetch, by the session TTL
    sweep, or at application shutdown, whichever comes first.
    """

    def __init__(self, handle: BrowserHandle, target, idle_timeout: float = BROWSER_IDLE_TIMEOUT):
        self.handle = handle
        self.target = target
        self.idle_timeout = idle_timeout
        self._closed = False
        self._timer = None
        self._close_task = None
        self.touch()

    @property
    def closed(self) -> bool:
        return self._closed or self.handle.closed

    def touch(self):
        if self._closed:
            return
        if self._timer is not None:
            self._timer.cancel()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self.idle_timeout, self._on_idle)

    def _on_idle(self):
        logger.info(f"💤 Browser context idle for {self.idle_timeout}s, closing")
        self._close_task = asyncio.ensure_future(self.close())

    async def fetch(self, url: str) -> tuple[int, bytes, Optional[str]]:
        if self.closed:
            raise RuntimeError("browser context already closed")
        self.touch()
        result = await self.target.evaluate(FETCH_SCRIPT, url)
        body = base64.b64decode(result.get("body") or "")
        return int(result.get("status") or 0), body, result.get("contentType")

    async def close(self):
        if self._closed:
            return
        self._closed = True
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        await _close_quietly(self.target)
        await self.handle.close()


class _PageWatcher:
    """Turns a page's response events into a queue of discovered manifests."""

    def __init__(self, page_url: str):
        self.page_url = page_url
        self.queue: asyncio.Queue = asyncio.Queue()
        self.found: dict[str, ResolvedStream] = {}
        self._captures = set()

    def on_response(self, response):
        url = response.url
        if MANIFEST_MARKER not in url:
            return

        hint = parse_manifest_url(url)
        if hint.url in self.found:
            return

        # An explicit origin in the hint beats its referer
        referer = hint.origin or hint.referer or self._request_referer(response) or self.page_url
        stream = ResolvedStream(url=hint.url, referer=referer, host=hint.host, source_url=self.page_url)
        self.found[hint.url] = stream
        logger.info(f"🎯 Found HLS: {truncate_url(hint.url)} (referer: {referer})")

        task = asyncio.ensure_future(self._capture_body(response, stream))
        self._captures.add(task)
        task.add_done_callback(self._captures.discard)
        self.queue.put_nowait(stream)

    @staticmethod
    def _request_referer(response) -> Optional[str]:
        try:
            return response.request.headers.get("referer")
        except Exception:
            return None

    async def _capture_body(self, response, stream: ResolvedStream):
        try:
            text = await response.text()
        except Exception as e:
            logger.debug(f"Could not capture body of {truncate_url(stream.url)}: {e}")
            return
        if text and text.lstrip().startswith("#EXTM3U"):
            stream.body = text

    async def settle(self, timeout: float = BODY_CAPTURE_TIMEOUT):
        if not self._captures:
            return
        await asyncio.wait(list(self._captures), timeout=timeout)


class BrowserExtractor:
    """Resolves a content id to HLS manifests by loading embed pages in a headless browser.

    Sources are tried strictly in priority order and the first one yielding a
    manifest wins. When a source page has nothing, its first iframes are loaded
    on their own. Every failure is logged and the next candidate tried; total
    failure is an empty list.
    """

    def __init__(
        self,
        sources: Optional[list[SourceTemplate]] = None,
        launcher: Callable[[], Awaitable[BrowserHandle]] = BrowserHandle.launch,
        nav_timeout: float = NAV_TIMEOUT,
        iframe_nav_timeout: float = IFRAME_NAV_TIMEOUT,
        manifest_wait: float = MANIFEST_WAIT,
        grace_window: float = GRACE_WINDOW,
        max_iframes: int = MAX_IFRAMES,
        keep_context: bool = KEEP_BROWSER_CONTEXT,
        idle_timeout: float = BROWSER_IDLE_TIMEOUT,
        fetch_timeout: float = FETCH_TIMEOUT,
    ):
        self.sources = sources if sources is not None else build_sources()
        self.launcher = launcher
        self.nav_timeout = nav_timeout
        self.iframe_nav_timeout = iframe_nav_timeout
        self.manifest_wait = manifest_wait
        self.grace_window = grace_window
        self.max_iframes = max_iframes
        self.keep_context = keep_context
        self.idle_timeout = idle_timeout
        self.fetch_timeout = fetch_timeout

    async def _observe(self, handle: BrowserHandle, url: str, nav_timeout: float):
        """Loads a URL in a fresh page and collects the manifests it requests."""
        page = await handle.new_page()
        watcher = _PageWatcher(url)
        try:
            await page.route("**/*", _block_heavy_resources)
            page.on("response", watcher.on_response)
            try:
                await page.goto(url, wait_until="domcontentloaded", timeout=nav_timeout * 1000)
            except Exception as e:
                if watcher.queue.empty():
                    raise ExtractorError(f"navigation failed: {e}") from e
                logger.debug(f"Navigation to {truncate_url(url)} incomplete but manifests seen: {e}")

            streams = await wait_for_manifests(watcher.queue, self.manifest_wait, self.grace_window)
        except BaseException:
            await _close_quietly(page)
            raise
        return page, watcher, streams

    async def _iframe_sources(self, page) -> list[str]:
        try:
            sources = await page.eval_on_selector_all("iframe", IFRAME_SOURCES_SCRIPT)
        except Exception as e:
            logger.debug(f"Could not enumerate iframes: {e}")
            return []
        return [s for s in sources if isinstance(s, str)][:self.max_iframes]

    async def _try_source(self, handle: BrowserHandle, url: str):
        """Returns (page, streams) for the first page of this source that yields manifests."""
        page, watcher, streams = await self._observe(handle, url, self.nav_timeout)
        if streams:
            await watcher.settle()
            return page, streams

        iframes = await self._iframe_sources(page)
        await _close_quietly(page)

        for src in iframes:
            logger.info(f"🖼️ Iframe: {truncate_url(src)}")
            try:
                frame_page, watcher, streams = await self._observe(handle, src, self.iframe_nav_timeout)
            except Exception as e:
                logger.warning(f"⚠️ Iframe failed ({type(e).__name__}): {truncate_url(src)} - {e}")
                continue
            if streams:
                await watcher.settle()
                return frame_page, streams
            await _close_quietly(frame_page)

        return None, []

    async def _prefetch_variants(self, live: LiveContext, stream: ResolvedStream):
        """Warms the cache with nested playlists while the browser identity is still alive."""
        for variant_url in ManifestRewriter.extract_variants(stream.body, stream.url):
            if variant_url in stream.variant_bodies:
                continue
            try:
                status, body, _ = await asyncio.wait_for(live.fetch(variant_url), self.fetch_timeout)
            except Exception as e:
                logger.debug(f"Variant prefetch failed for {truncate_url(variant_url)}: {e}")
                continue
            text = body.decode("utf-8", errors="replace")
            if 200 <= status < 300 and text.lstrip().startswith("#EXTM3U"):
                stream.variant_bodies[variant_url] = text

    async def resolve(self, content_id: str) -> list[ResolvedStream]:
        try:
            handle = await self.launcher()
        except Exception as e:
            logger.error(f"❌ Could not launch browser: {e}")
            return []

        keep_alive = False
        try:
            page, streams = None, []
            for build_url in self.sources:
                url = build_url(content_id)
                logger.info(f"🔎 Trying: {url}")
                try:
                    page, streams = await self._try_source(handle, url)
                except Exception as e:
                    logger.warning(f"⚠️ Source failed ({type(e).__name__}): {truncate_url(url)} - {e}")
                    continue
                if streams:
                    break

            if not streams:
                logger.warning(f"❌ No manifest found for '{content_id}'")
                return []

            try:
                cookie_header = cookie_header_from(await handle.cookies())
            except Exception as e:
                logger.warning(f"⚠️ Could not read browser cookies, continuing without them: {e}")
                cookie_header = ""
            logger.info(f"🍪 Harvested cookies: {cookie_names(cookie_header)}")

            live = LiveContext(handle, page, self.idle_timeout)
            for stream in streams:
                stream.cookie_header = cookie_header
                if stream.body:
                    await self._prefetch_variants(live, stream)

            if self.keep_context:
                keep_alive = True
                for stream in streams:
                    stream.live_context = live
            else:
                await live.close()

            logger.info(f"✅ Resolved '{content_id}': {len(streams)} manifest(s)")
            return streams
        finally:
            if not keep_alive:
                await handle.close()

    async def resolve_into(self, store, content_id: str, proxy_base_url: str,
                           policy: str = RESOLVE_POLICY) -> list[dict]:
        """Resolves and registers one session per stream; returns the client-facing entries."""
        streams = await self.resolve(content_id)
        if policy == "primary" and len(streams) > 1:
            streams = streams[:1]

        entries = []
        for stream in streams:
            manifests = dict(stream.variant_bodies)
            if stream.body:
                manifests[stream.url] = stream.body
            session = await store.create(
                referer=stream.referer,
                cookie_header=stream.cookie_header,
                host_override=stream.host,
                manifests=manifests,
                live_context=stream.live_context,
            )
            entries.append({
                "url": f"{proxy_base_url.rstrip('/')}/hls/{encode(session.id, stream.url)}.m3u8",
                "headers": {},
            })
        return entries
