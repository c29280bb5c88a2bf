import os
import logging
import random
from dotenv import load_dotenv

load_dotenv() # Load variables from .env file


def env_bool(name: str, default: bool) -> bool:
    """Reads a boolean flag (true/1/yes/on) from the environment."""
    value = os.environ.get(name)
    if value is None or not value.strip():
        return default
    return value.strip().lower() in ('true', '1', 'yes', 'on')

def env_int(name: str, default: int) -> int:
    value = os.environ.get(name, "").strip()
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        logging.warning(f"⚠️ Invalid integer for {name}: '{value}'. Using {default}.")
        return default


# Logging configuration
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format='%(asctime)s - %(levelname)s - %(message)s'
)

# Silence the asyncio "Unknown child process pid" warning (the browser driver spawns subprocesses)
class AsyncioWarningFilter(logging.Filter):
    def filter(self, record):
        return "Unknown child process pid" not in record.getMessage()

logging.getLogger('asyncio').addFilter(AsyncioWarningFilter())

logger = logging.getLogger(__name__)

# --- Outbound proxy configuration ---
def parse_proxies(proxy_env_var: str) -> list:
    """Parses a comma-separated proxy string from an environment variable."""
    proxies_str = os.environ.get(proxy_env_var, "").strip()
    if proxies_str:
        return [p.strip() for p in proxies_str.split(',') if p.strip()]
    return []

def parse_transport_routes() -> list:
    """Parses TRANSPORT_ROUTES in the format {URL=domain, PROXY=proxy, DISABLE_SSL=true/false}, {URL=domain2, PROXY=proxy2}"""
    routes_str = os.environ.get('TRANSPORT_ROUTES', "").strip()
    if not routes_str:
        return []

    routes = []
    try:
        route_parts = [part.strip() for part in routes_str.replace(' ', '').split('},{')]

        for part in route_parts:
            if not part:
                continue

            part = part.strip('{}')

            url_match = None
            proxy_match = None
            disable_ssl_match = None

            for item in part.split(','):
                if item.startswith('URL='):
                    url_match = item[4:]
                elif item.startswith('PROXY='):
                    proxy_match = item[6:]
                elif item.startswith('DISABLE_SSL='):
                    disable_ssl_match = item[12:].lower() in ('true', '1', 'yes', 'on')

            if url_match:
                routes.append({
                    'url': url_match,
                    'proxy': proxy_match if proxy_match else None,
                    'disable_ssl': disable_ssl_match if disable_ssl_match is not None else False
                })

    except Exception as e:
        logger.warning(f"Error parsing TRANSPORT_ROUTES: {e}")

    return routes

def get_proxy_for_url(url: str, transport_routes: list, global_proxies: list) -> str:
    """Finds the appropriate proxy for a URL based on TRANSPORT_ROUTES"""
    if not url or not transport_routes:
        return random.choice(global_proxies) if global_proxies else None

    for route in transport_routes:
        if route['url'] in url:
            # An empty PROXY means direct connection for this route
            return route['proxy'] or None

    return random.choice(global_proxies) if global_proxies else None

def get_ssl_setting_for_url(url: str, transport_routes: list) -> bool:
    """Determines if SSL verification should be disabled for a URL based on TRANSPORT_ROUTES"""
    if not url or not transport_routes:
        return False

    for route in transport_routes:
        if route['url'] in url:
            return route.get('disable_ssl', False)

    return False

GLOBAL_PROXIES = parse_proxies('GLOBAL_PROXY')
TRANSPORT_ROUTES = parse_transport_routes()

if GLOBAL_PROXIES: logging.info(f"🌍 Loaded {len(GLOBAL_PROXIES)} global proxies.")
if TRANSPORT_ROUTES: logging.info(f"🚦 Loaded {len(TRANSPORT_ROUTES)} transport rules.")

PORT = env_int("PORT", 7860)

# Fixed public base for rewritten URLs; empty means derive it from each request
PUBLIC_BASE_URL = os.environ.get("PUBLIC_BASE_URL", "").strip().rstrip('/')

# --- Sessions ---
SESSION_TTL = env_int("SESSION_TTL", 30 * 60)

# --- Upstream fetching ---
FETCH_TIMEOUT = env_int("FETCH_TIMEOUT", 30)
MAX_REDIRECTS = env_int("MAX_REDIRECTS", 5)

# --- Resolution (browser automation) ---
NAV_TIMEOUT = env_int("NAV_TIMEOUT", 25)
IFRAME_NAV_TIMEOUT = env_int("IFRAME_NAV_TIMEOUT", 20)
MANIFEST_WAIT = env_int("MANIFEST_WAIT", 20)
GRACE_WINDOW = env_int("GRACE_WINDOW", 6)
MAX_IFRAMES = env_int("MAX_IFRAMES", 2)
BROWSER_IDLE_TIMEOUT = env_int("BROWSER_IDLE_TIMEOUT", 10 * 60)
BROWSER_HEADLESS = env_bool("BROWSER_HEADLESS", True)
KEEP_BROWSER_CONTEXT = env_bool("KEEP_BROWSER_CONTEXT", True)

# 'all' keeps one session per discovered manifest, 'primary' only the first one
RESOLVE_POLICY = os.environ.get("RESOLVE_POLICY", "all").strip().lower()
if RESOLVE_POLICY not in ("all", "primary"):
    logging.warning(f"⚠️ Invalid RESOLVE_POLICY '{RESOLVE_POLICY}'. Using 'all' as default.")
    RESOLVE_POLICY = "all"

DEFAULT_SOURCE_TEMPLATES = [
    "https://vidlink.pro/movie/{id}",
    "https://vidsrc.icu/embed/movie/{id}",
    "https://moviesapi.club/movie/{id}",
]

def parse_source_templates() -> list:
    """Parses SOURCES as a comma-separated list of URL templates containing '{id}'."""
    raw = os.environ.get("SOURCES", "").strip()
    if not raw:
        return list(DEFAULT_SOURCE_TEMPLATES)

    templates = []
    for item in raw.split(','):
        item = item.strip()
        if not item:
            continue
        if '{id}' not in item:
            logger.warning(f"⚠️ Ignoring source template without '{{id}}': {item}")
            continue
        templates.append(item)
    return templates or list(DEFAULT_SOURCE_TEMPLATES)

SOURCE_TEMPLATES = parse_source_templates()
logging.info(f"🎬 {len(SOURCE_TEMPLATES)} resolution sources configured.")
