import os
import hmac
import random
import logging
from dotenv import load_dotenv

load_dotenv()  # .env in the working directory, if any

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format='%(asctime)s - %(levelname)s - %(message)s'
)

logger = logging.getLogger(__name__)

BASE_DIR = os.path.dirname(os.path.abspath(__file__))


def _resolve_path(value: str) -> str:
    """Relative bundle paths are taken from the project root."""
    return value if os.path.isabs(value) else os.path.join(BASE_DIR, value)


def _env_number(name: str, default, cast=int):
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return cast(raw)
    except ValueError:
        logger.warning(f"⚠️ Invalid {name}='{raw}', using default {default}")
        return default


# --- Outbound proxy routing ---
def parse_proxies(proxy_env_var: str) -> list:
    """Comma-separated proxy list from an environment variable."""
    raw = os.environ.get(proxy_env_var, "").strip()
    return [p.strip() for p in raw.split(',') if p.strip()]


def parse_transport_routes(raw: str = None) -> list:
    """TRANSPORT_ROUTES: {URL=domain, PROXY=socks5://..., DISABLE_SSL=true}, {URL=other}

    A route without PROXY forces a direct connection for matching URLs.
    """
    if raw is None:
        raw = os.environ.get('TRANSPORT_ROUTES', "")
    raw = raw.strip()
    if not raw:
        return []

    routes = []
    for block in raw.replace(' ', '').split('},{'):
        block = block.strip('{}')
        if not block:
            continue
        route = {'url': None, 'proxy': None, 'disable_ssl': False}
        for item in block.split(','):
            name, _, value = item.partition('=')
            name = name.upper()
            if name == 'URL':
                route['url'] = value
            elif name == 'PROXY':
                route['proxy'] = value or None
            elif name == 'DISABLE_SSL':
                route['disable_ssl'] = value.lower() in ('true', '1', 'yes', 'on')
        if route['url']:
            routes.append(route)
        else:
            logger.warning(f"⚠️ Ignoring TRANSPORT_ROUTES entry without URL: {block}")
    return routes


def _match_route(url: str, transport_routes: list):
    for route in transport_routes or []:
        if route['url'] in url:
            return route
    return None


def get_proxy_for_url(url: str, transport_routes: list, global_proxies: list):
    """Route proxy for the URL, else a random global proxy, else None (direct)."""
    route = _match_route(url, transport_routes) if url else None
    if route is not None:
        return route['proxy']
    return random.choice(global_proxies) if global_proxies else None


def get_ssl_setting_for_url(url: str, transport_routes: list) -> bool:
    """True when certificate verification is disabled for the URL."""
    route = _match_route(url, transport_routes) if url else None
    return bool(route and route.get('disable_ssl'))


GLOBAL_PROXIES = parse_proxies('GLOBAL_PROXY')
TRANSPORT_ROUTES = parse_transport_routes()

if GLOBAL_PROXIES: logger.info(f"🌍 Loaded {len(GLOBAL_PROXIES)} global proxies.")
if TRANSPORT_ROUTES: logger.info(f"🚦 Loaded {len(TRANSPORT_ROUTES)} transport rules.")

# --- Server ---
API_PASSWORD = os.environ.get("API_PASSWORD")
HOST = os.environ.get("HOST", "0.0.0.0")
PORT = _env_number("PORT", 7860)

# --- Decode pipeline ---
PROFILES_PATH = _resolve_path(os.environ.get("PROFILES_PATH", "data/profiles.json"))
DECRYPT_TABLES_PATH = _resolve_path(os.environ.get("DECRYPT_TABLES_PATH", "data/decrypt_tables.json"))
DEFAULT_CACHE_TTL = _env_number("DEFAULT_CACHE_TTL", 300.0, float)

# --- Relay ---
UPSTREAM_TIMEOUT = _env_number("UPSTREAM_TIMEOUT", 20.0, float)
MAX_PLAYLIST_BYTES = _env_number("MAX_PLAYLIST_BYTES", 5 * 1024 * 1024)
CORS_ALLOW_ORIGIN = os.environ.get("CORS_ALLOW_ORIGIN", "*")

if not API_PASSWORD:
    logger.warning("⚠️ API_PASSWORD is not set: every relay request will be rejected.")


def check_password(request, api_password=None) -> bool:
    """Constant-time check of the `key` query parameter or X-API-Key header.

    Without a configured secret nothing is accepted.
    """
    secret = API_PASSWORD if api_password is None else api_password
    if not secret:
        return False

    supplied = request.query.get("key") or request.headers.get("X-API-Key") or ""
    return hmac.compare_digest(supplied.encode("utf-8"), secret.encode("utf-8"))
