from aiohttp import web

from config import check_password
from services.hls_proxy import PROXY_KEY

routes = web.RouteTableDef()


@routes.get('/health')
async def health(request):
    """Liveness probe, no auth."""
    return web.json_response({"status": "ok"})


@routes.get('/api/info')
async def api_info(request):
    """Loaded providers, tables and cache size."""
    proxy = request.app[PROXY_KEY]
    if not check_password(request, proxy.api_password):
        return web.Response(status=401, text="Unauthorized: Invalid API Key")

    pipeline = proxy.pipeline
    info = {
        "proxy": "Decode Relay",
        "status": "✅ Working",
        "providers": proxy.registry.ids(),
        "decrypt_tables": pipeline.tables.ids(),
        "cache_entries": len(pipeline.cache),
        "proxy_config": {
            "global_proxies": f"{len(proxy.global_proxies)} proxies loaded",
            "transport_routes": f"{len(proxy.transport_routes)} routing rules configured",
            "routes": [{"url": route['url'], "has_proxy": route['proxy'] is not None} for route in proxy.transport_routes]
        },
        "endpoints": {
            "/proxy": "Relay with spoofed headers - ?url=<URL>&key=<KEY>[&providerId=<ID>][&h_<Header>=<value>]",
            "/extract": "Decode a provider payload - ?providerId=<ID>&key=<KEY>&payload=<PAYLOAD>",
            "/health": "Liveness probe",
            "/api/info": "This page"
        }
    }
    return web.json_response(info)
