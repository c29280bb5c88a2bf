import asyncio
import logging

import aiohttp
from aiohttp import web

from config import PUBLIC_BASE_URL, RESOLVE_POLICY
from extractors.browser import BrowserExtractor
from services.fetcher import MultiStrategyFetcher, FetchRequest, UpstreamFetchFailure
from services.manifest_rewriter import ManifestRewriter
from services.session_store import SessionStore, SessionExpired
from services.token_codec import decode, InvalidToken
from utils.redact import truncate_url

logger = logging.getLogger(__name__)

MANIFEST_CONTENT_TYPE = "application/vnd.apple.mpegurl"
SEGMENT_CONTENT_TYPE = "video/mp2t"
SUPPORTED_EXTENSIONS = ("m3u8", "ts")

# Upstream headers forwarded with segments (Content-Length is handled separately)
PASSTHROUGH_HEADERS = ('content-range', 'accept-ranges', 'last-modified', 'etag')

CORS_HEADERS = {
    'Access-Control-Allow-Origin': '*',
    'Access-Control-Allow-Methods': 'GET, HEAD, OPTIONS',
    'Access-Control-Allow-Headers': 'Range, Content-Type',
}


class HLSProxy:
    """Resolves content ids to proxied manifests and serves /hls/{token} for them.

    Owns the session store: every resolved stream becomes a session whose
    referer, cookies and cached manifests are used to re-fetch upstream resources
    on behalf of players that cannot send those themselves.
    """

    def __init__(self, store: SessionStore = None, fetcher: MultiStrategyFetcher = None,
                 extractor: BrowserExtractor = None, public_base_url: str = PUBLIC_BASE_URL,
                 resolve_policy: str = RESOLVE_POLICY):
        self.store = store if store is not None else SessionStore()
        self.fetcher = fetcher if fetcher is not None else MultiStrategyFetcher()
        self.extractor = extractor if extractor is not None else BrowserExtractor()
        self.public_base_url = public_base_url
        self.resolve_policy = resolve_policy

    def _proxy_base(self, request) -> str:
        if self.public_base_url:
            return self.public_base_url
        # Detect the correct scheme and host when behind a reverse proxy
        scheme = request.headers.get('X-Forwarded-Proto', request.scheme)
        host = request.headers.get('X-Forwarded-Host', request.host)
        return f"{scheme}://{host}"

    async def handle_resolve(self, request):
        """Resolves ?id=<contentId>. Always answers 200; failure is an empty stream list."""
        content_id = request.query.get('id', '').strip()
        if not content_id:
            return web.json_response(
                {"status": "running", "usage": "/stream?id=TMDB_ID"},
                headers=CORS_HEADERS
            )

        logger.info(f"🎬 Resolving content id: {content_id}")
        try:
            streams = await self.extractor.resolve_into(
                self.store, content_id, self._proxy_base(request), policy=self.resolve_policy
            )
        except Exception as e:
            logger.exception(f"❌ Fatal error resolving '{content_id}': {e}")
            streams = []

        logger.info(f"📺 Result for '{content_id}': {len(streams)} stream(s)")
        return web.json_response({"streams": streams}, headers=CORS_HEADERS)

    async def handle_hls(self, request):
        """Handles /hls/{token}[.m3u8|.ts]"""
        name = request.match_info.get('name', '')
        token, _, extension = name.partition('.')
        extension = extension or 'm3u8'
        if extension not in SUPPORTED_EXTENSIONS:
            return web.Response(status=404, headers=CORS_HEADERS)
        return await self.serve(request, token, extension, self._proxy_base(request))

    async def serve(self, request, token: str, extension: str, proxy_base: str) -> web.StreamResponse:
        try:
            session_id, url = decode(token)
        except InvalidToken as e:
            logger.info(f"⛔ Invalid token: {e}")
            return web.Response(status=400, headers=CORS_HEADERS)

        try:
            session = self.store.require(session_id)
        except SessionExpired:
            logger.info(f"⌛ Session expired or unknown: {session_id[:8]}")
            return web.Response(status=410, headers=CORS_HEADERS)

        is_manifest = extension == 'm3u8'
        if is_manifest:
            cached = self.store.get_manifest(session_id, url)
            if cached is not None:
                logger.debug(f"📦 Manifest cache hit: {truncate_url(url)}")
                return self._manifest_response(cached, url, session_id, proxy_base)

        try:
            result = await self.fetcher.fetch(FetchRequest(
                url=url,
                referer=session.referer,
                cookie_header=session.cookie_header,
                host_override=session.host_override,
                live_context=session.live_context,
                stream=not is_manifest,
                range_header=None if is_manifest else request.headers.get('Range'),
            ))
        except UpstreamFetchFailure as e:
            logger.warning(f"⚠️ Upstream fetch failed for {truncate_url(url)}: {e}")
            return web.Response(status=502, headers=CORS_HEADERS)

        if is_manifest:
            text = result.body.decode('utf-8', errors='replace')
            self.store.put_manifest(session_id, url, text)
            return self._manifest_response(text, url, session_id, proxy_base)

        return await self._segment_response(request, result, url)

    async def _segment_response(self, request, result, url: str) -> web.StreamResponse:
        """Streams segment bytes to the client as they arrive from upstream"""
        headers = dict(CORS_HEADERS)
        upstream_headers = result.headers or {}
        for header in PASSTHROUGH_HEADERS:
            if header in upstream_headers:
                headers[header] = upstream_headers[header]
        # aiohttp decodes compressed bodies, so the upstream length would be wrong
        if 'content-encoding' not in upstream_headers and 'content-length' in upstream_headers:
            headers['Content-Length'] = upstream_headers['content-length']
        elif result.response is None and result.body is not None:
            headers['Content-Length'] = str(len(result.body))
        headers['Content-Type'] = result.content_type or SEGMENT_CONTENT_TYPE

        response = web.StreamResponse(status=result.status, headers=headers)
        try:
            await response.prepare(request)
            async for chunk in result.iter_chunks():
                await response.write(chunk)
            await response.write_eof()
        except (ConnectionResetError, aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"⚠️ Segment stream interrupted for {truncate_url(url)}: {e}")
        finally:
            result.release()
        return response

    def _manifest_response(self, text: str, url: str, session_id: str, proxy_base: str) -> web.Response:
        rewritten = ManifestRewriter.rewrite(text, url, session_id, proxy_base)
        headers = dict(CORS_HEADERS)
        headers['Content-Type'] = MANIFEST_CONTENT_TYPE
        headers['Cache-Control'] = 'no-cache'
        return web.Response(text=rewritten, headers=headers)

    async def handle_health(self, request):
        return web.json_response({"status": "ok", "sessions": len(self.store)}, headers=CORS_HEADERS)

    async def handle_options(self, request):
        """Handles OPTIONS requests for CORS"""
        headers = dict(CORS_HEADERS)
        headers['Access-Control-Max-Age'] = '86400'
        return web.Response(headers=headers)

    async def cleanup(self):
        """Resource cleanup"""
        try:
            await self.store.close()
        except Exception as e:
            logger.error(f"Error closing sessions: {e}")
        try:
            await self.fetcher.close()
        except Exception as e:
            logger.error(f"Error closing HTTP sessions: {e}")
