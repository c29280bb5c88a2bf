import logging
import sys

from aiohttp import web

from config import PORT
from services.hls_proxy import HLSProxy

logger = logging.getLogger(__name__)


def create_app(proxy: HLSProxy = None) -> web.Application:
    """Builds the aiohttp application around a single HLSProxy (and its session store)."""
    proxy = proxy if proxy is not None else HLSProxy()

    app = web.Application()

    app.router.add_get('/', proxy.handle_resolve)
    app.router.add_get('/stream', proxy.handle_resolve)
    app.router.add_get('/health', proxy.handle_health)
    app.router.add_get('/hls/{name}', proxy.handle_hls)

    # Generic OPTIONS handler for CORS
    app.router.add_route('OPTIONS', '/{tail:.*}', proxy.handle_options)

    async def cleanup_handler(app):
        await proxy.cleanup()
    app.on_cleanup.append(cleanup_handler)

    return app


def main():
    """Starts the server."""
    if sys.platform == 'win32':
        # Silence ConnectionResetError spam from the Windows proactor loop
        logging.getLogger('asyncio').setLevel(logging.CRITICAL)

    logger.info(f"🚀 Stream proxy listening on http://0.0.0.0:{PORT}")
    logger.info("🔗 Endpoints: /?id=<TMDB_ID>, /hls/<token>.m3u8|.ts, /health")
    web.run_app(create_app(), host='0.0.0.0', port=PORT)


if __name__ == '__main__':
    main()
