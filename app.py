import sys
import logging
from aiohttp import web

from config import (
    API_PASSWORD, HOST, PORT, PROFILES_PATH, DECRYPT_TABLES_PATH, DEFAULT_CACHE_TTL,
    UPSTREAM_TIMEOUT, MAX_PLAYLIST_BYTES, CORS_ALLOW_ORIGIN,
)
from extractors.registry import ProviderRegistry
from routes.info import routes as info_routes
from services.errors import ConfigurationError
from services.hls_proxy import HLSProxy, PROXY_KEY
from services.pipeline import DecodePipeline
from services.result_cache import ResultCache
from utils.decrypt_tables import DecryptTableStore

logger = logging.getLogger(__name__)


def create_app(tables=None, registry=None, api_password=API_PASSWORD,
               upstream_timeout=UPSTREAM_TIMEOUT, cors_origin=CORS_ALLOW_ORIGIN,
               max_playlist_bytes=MAX_PLAYLIST_BYTES, default_cache_ttl=DEFAULT_CACHE_TTL,
               global_proxies=None, transport_routes=None):
    """Builds tables -> registry -> cache -> pipeline -> relay and wires the routes.

    Bundles are loaded from the configured paths unless passed in. Any
    invalid bundle raises ConfigurationError before the app exists.
    """
    if tables is None:
        tables = DecryptTableStore.load(DECRYPT_TABLES_PATH)
    if registry is None:
        registry = ProviderRegistry.load(PROFILES_PATH, tables)

    pipeline = DecodePipeline(registry, tables, ResultCache(), default_ttl=default_cache_ttl)
    proxy = HLSProxy(
        registry, pipeline,
        api_password=api_password,
        upstream_timeout=upstream_timeout,
        cors_origin=cors_origin,
        max_playlist_bytes=max_playlist_bytes,
        global_proxies=global_proxies,
        transport_routes=transport_routes,
    )

    app = web.Application()
    app[PROXY_KEY] = proxy

    app.router.add_get('/proxy', proxy.handle_proxy_request)
    app.router.add_get('/extract', proxy.handle_extractor_request)
    app.router.add_post('/extract', proxy.handle_extractor_request)
    app.router.add_routes(info_routes)

    # Generic OPTIONS handler for CORS
    app.router.add_route('OPTIONS', '/{tail:.*}', proxy.handle_options)

    async def cleanup_handler(app):
        await proxy.cleanup()
    app.on_cleanup.append(cleanup_handler)

    return app


def main():
    """Starts the relay server."""
    try:
        app = create_app()
    except ConfigurationError as e:
        logger.critical(f"❌ Invalid configuration: {e}")
        sys.exit(1)

    logger.info(f"🚀 Relay listening on http://{HOST}:{PORT}")
    logger.info("🔗 Endpoints: /proxy, /extract, /health, /api/info")

    # A client disconnect cancels its handler, which releases the upstream connection
    web.run_app(app, host=HOST, port=PORT, handler_cancellation=True)


if __name__ == '__main__':
    main()
